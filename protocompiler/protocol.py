"""
Protocols and Bindings

A Protocol holds the variable and handler bindings of one protocol
definition plus its raw command tokens. Templates are parsed once per
file; instances are copies with positional parameters filled in.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, TYPE_CHECKING

from .tokens import Token, TokenType, render_tokens
from .bytecode import FormatMode, Instruction, Program
from .errors import (ProtocolError, UndefinedReferenceError, GarbageError,
                     ValueRangeError, UnusedHandlerError)
from .formats import FormatConverter, StandardFormatConverter
from .codegen import ArgStream, CodeGenerator

if TYPE_CHECKING:
    from .client import Client, Diagnostics

logger = logging.getLogger(__name__)

MAX_PARAMETERS = 9
MAX_RECURSION_DEPTH = 32


@dataclass
class Binding:
    """A variable or handler of one protocol."""

    name: str
    value: List[Token] = field(default_factory=list)
    line: int = 0
    used: bool = False

    @property
    def is_handler(self) -> bool:
        return self.name.startswith('@')

    def copy(self) -> 'Binding':
        return Binding(self.name, list(self.value), self.line, self.used)


def escape_quotes(text: str) -> str:
    """Escape unescaped double quotes so text can be placed inside "..."."""
    out = []
    escaped = False
    for c in text:
        if c == '"' and not escaped:
            out.append('\\')
        if escaped:
            escaped = False
        elif c == '\\':
            escaped = True
        out.append(c)
    if escaped:
        # a dangling backslash means a literal backslash
        out.append('\\')
    return ''.join(out)


def quote_tokens(tokens: List[Token], line: int) -> List[Token]:
    """
    Turn a binding value into tokens for a quoted context.

    Strings contribute their content, words and special characters their
    text. Separators are dropped. References still pending stay
    references, marked as quoted.
    """
    result: List[Token] = []
    text: List[str] = []

    def flush():
        if text:
            result.append(Token(TokenType.STRING, ''.join(text), line, '"'))
            text.clear()

    for token in tokens:
        if token.type == TokenType.VARIABLE:
            flush()
            result.append(Token(TokenType.VARIABLE, token.text, token.line, '"'))
        elif token.is_blank() or token.type in (TokenType.END, TokenType.EOF):
            continue
        else:
            text.append(escape_quotes(token.text))
    flush()
    if not result:
        result.append(Token(TokenType.STRING, '', line, '"'))
    return result


class Protocol:
    """Bindings and raw commands of one protocol."""

    def __init__(self, filename: Optional[str] = None, name: str = '', line: int = 0):
        """
        Initialize a protocol.

        Args:
            filename: Protocol file the definition comes from
            name: Protocol name, or the instantiation string of an instance
            line: Line of the definition
        """
        self.filename = filename
        self.name = name
        self.line = line
        # bindings[0] holds the protocol's own commands
        self.bindings: List[Binding] = [Binding('', line=line)]
        self.parameters: List[Optional[str]] = [None] * (MAX_PARAMETERS + 1)
        self.parameter_names: List[str] = []
        self.converter: FormatConverter = StandardFormatConverter()
        self.max_recursion_depth = MAX_RECURSION_DEPTH

    def __repr__(self) -> str:
        return f"Protocol({self.name!r}, bindings={len(self.bindings)}, line={self.line})"

    @property
    def commands(self) -> Binding:
        return self.bindings[0]

    def copy(self, name: str, line: int = 0,
             arguments: Optional[Sequence[str]] = None) -> 'Protocol':
        """
        Make a deep copy of this protocol.

        Every binding is copied in order. Slot 0 of the parameters is the
        new name, the arguments fill slots 1 to 9.
        """
        new = Protocol(self.filename, name, line or self.line)
        new.bindings = [binding.copy() for binding in self.bindings]
        if line:
            new.commands.line = line
        new.parameter_names = list(self.parameter_names)
        new.converter = self.converter
        new.max_recursion_depth = self.max_recursion_depth
        new.parameters[0] = name
        for index, argument in enumerate(arguments or ()):
            if index >= MAX_PARAMETERS:
                logger.warning("Protocol %s: ignoring arguments after $%d",
                               name, MAX_PARAMETERS)
                break
            new.parameters[index + 1] = argument
            logger.debug("Protocol %s: $%d=\"%s\"", name, index + 1, argument)
        logger.debug("new Protocol(name=\"%s\", line=%d)", name, new.line)
        return new

    # =========================================================================
    # Bindings
    # =========================================================================

    def lookup(self, name: str) -> Optional[Binding]:
        """
        Find a binding by name without marking it used.

        An exact (case-insensitive) match wins; otherwise the first stored
        name that starts with the given name.
        """
        key = name.lower()
        for binding in self.bindings[1:]:
            if binding.name == key:
                return binding
        for binding in self.bindings[1:]:
            if binding.name.startswith(key):
                return binding
        return None

    def get_variable(self, name: str) -> Optional[Binding]:
        """Find a binding and mark it used."""
        binding = self.lookup(name)
        if binding is not None:
            binding.used = True
        return binding

    def create_variable(self, name: str, line: int) -> Binding:
        """Get the binding with exactly this name, creating it if needed."""
        key = name.lower()
        for binding in self.bindings[1:]:
            if binding.name == key:
                binding.line = line
                return binding
        binding = Binding(key, line=line)
        self.bindings.append(binding)
        return binding

    def variables(self) -> List[Binding]:
        return [b for b in self.bindings[1:] if not b.is_handler]

    def handlers(self) -> List[Binding]:
        return [b for b in self.bindings[1:] if b.is_handler]

    def parameter_index(self, name: str) -> Optional[int]:
        """Slot of a positional reference ($0..$9 or a formal name), else None."""
        if len(name) == 1 and name.isdigit():
            return int(name)
        if name in self.parameter_names:
            return self.parameter_names.index(name) + 1
        return None

    def replace_variable(self, token: Token) -> List[Token]:
        """
        Resolve a variable reference to the tokens it stands for.

        A quoted reference yields string tokens whose content is escaped
        so it stays valid inside the surrounding quotes.
        """
        name = token.text
        line = token.line
        logger.debug("replaceVariable %s line %d", name, line)

        index = self.parameter_index(name)
        if index is not None:
            value = self.parameters[index]
            if value is None:
                raise UndefinedReferenceError(
                    f"Missing value for parameter ${name}", line, self.filename)
            if not token.quoted:
                return [Token(TokenType.WORD, value, line)]
            return [Token(TokenType.STRING, escape_quotes(value), line, '"')]

        binding = self.get_variable(name)
        if binding is None:
            raise UndefinedReferenceError(
                f"Undefined variable '{name}' referenced", line, self.filename)
        if not token.quoted:
            return list(binding.value)
        return quote_tokens(binding.value, binding.line)

    # =========================================================================
    # Typed access for the host
    # =========================================================================

    def code_generator(self, client: Optional["Client"] = None) -> CodeGenerator:
        return CodeGenerator(self, client)

    def compile_string(self, tokens: List[Token], mode: FormatMode = FormatMode.NO_FORMAT,
                       client: Optional['Client'] = None) -> List[Instruction]:
        return self.code_generator(client).compile_string(tokens, mode)

    def get_number_variable(self, name: str, max_value: int = 0xFFFFFFFF) -> Optional[int]:
        """Compile a numeric variable, None if it is not defined."""
        binding = self.get_variable(name)
        if binding is None:
            return None
        args = ArgStream(binding.value)
        try:
            value = self.code_generator().compile_number(args, max_value)
        except ProtocolError as e:
            raise e.locate(binding.line, self.filename).add_note(
                f"in variable {name}", binding.line)
        args.skip_blanks()
        if not args.at_end():
            raise GarbageError(
                f"Garbage in variable '{name}' after numeric value {value}: "
                f"{render_tokens(args.remaining())}", binding.line, self.filename)
        return value

    def get_enum_variable(self, name: str, choices: Sequence[str]) -> Optional[int]:
        """Index of the choice a variable starts with, None if not defined."""
        binding = self.get_variable(name)
        if binding is None:
            return None
        text = ''.join(t.text for t in binding.value if not t.is_blank())
        for index, choice in enumerate(choices):
            if text.startswith(choice):
                return index
        alternatives = ' or '.join(f"'{c}'" for c in choices)
        raise ValueRangeError(
            f"Value '{text}' must be one of {alternatives} in variable '{name}'",
            binding.line, self.filename)

    def get_string_variable(self, name: str) -> Optional[List[Instruction]]:
        """Compile a string variable without formats, None if not defined."""
        binding = self.get_variable(name)
        if binding is None:
            return None
        try:
            return self.compile_string(binding.value, FormatMode.NO_FORMAT)
        except ProtocolError as e:
            raise e.locate(binding.line, self.filename).add_note(
                f"in string variable '{name}'", binding.line)

    def get_commands(self, handler_name: Optional[str], client: 'Client') -> Optional[Program]:
        """
        Compile the protocol's commands or one of its handlers.

        Returns:
            The compiled program, or None if the handler is not defined
            or empty
        """
        if handler_name is None:
            binding = self.commands
            binding.used = True
        else:
            binding = self.get_variable(handler_name)
        if binding is None or not binding.value:
            return None
        logger.debug("getCommands(handlername=\"%s\", client=\"%s\"): source=%s",
                     handler_name, client.name, render_tokens(binding.value))
        try:
            program = self.code_generator(client).compile_commands(binding.value)
        except ProtocolError as e:
            e.locate(binding.line, self.filename)
            if handler_name is not None:
                e.add_note(f"in handler '{handler_name}'", binding.line)
                e.add_note(f"used by protocol '{self.name}'", self.commands.line)
            else:
                e.add_note(f"in protocol '{self.name}'", binding.line)
            raise
        logger.debug("compiled to:\n%s", program.disassemble())
        return program

    def check_unused(self, diagnostics: Optional['Diagnostics'] = None) -> None:
        """
        Fail on handlers nobody asked for.

        Unused variables are only traced.
        """
        for binding in self.bindings[1:]:
            if binding.used:
                continue
            if binding.is_handler:
                raise UnusedHandlerError(
                    f"Unknown handler {binding.name} defined", binding.line, self.filename)
            message = (f"Unused variable {binding.name} in protocol file "
                       f"'{self.filename}' line {binding.line}")
            logger.debug("%s", message)
            if diagnostics is not None:
                diagnostics.trace(message)

    def report(self) -> str:
        """Text dump of variables, handlers and commands."""
        lines = []
        if self.name:
            lines.append(f"  Protocol {self.name}")
        lines.append("    Variables:")
        for binding in self.variables():
            lines.append(f"    {binding.name} = {render_tokens(binding.value)};")
        lines.append("    Handlers:")
        for binding in self.handlers():
            lines.append(f"    {binding.name} {{{render_tokens(binding.value)}}}")
        lines.append("    Commands:")
        lines.append(f"     {{ {render_tokens(self.commands.value)} }}")
        return "\n".join(lines)
