"""
Protocol File Parser

Recursive descent parser over the three contexts of a protocol file:

    file      := { assignment | handler | protocol }*
    protocol  := name ['(' names ')'] '{' { assignment | handler | command }* '}'
    handler   := '@' name '{' { command }* '}'
    assignment:= name '=' value ';'
    command   := name value ';'  |  protocolname ';'
"""

import logging
from enum import Enum, auto
from pathlib import Path
from typing import List, Optional, Tuple

from .tokens import Token, TokenType, STRUCTURE_CHARS, VALUE_CHARS
from .lexer import Lexer
from .errors import ProtocolError, ProtocolSyntaxError, UndefinedReferenceError
from .formats import FormatConverter, StandardFormatConverter
from .protocol import Protocol, MAX_PARAMETERS, MAX_RECURSION_DEPTH

logger = logging.getLogger(__name__)


class ParseContext(Enum):
    """Where in the file the parser currently is."""

    GLOBAL = auto()
    PROTOCOL = auto()
    HANDLER = auto()


def split_instantiation(text: str) -> Tuple[str, List[str]]:
    """
    Split "name(arg1,arg2)" into the name and its arguments.

    A backslash escapes the next character, so "\\," puts a comma into an
    argument. Parentheses nest and are kept.

    Raises:
        ProtocolSyntaxError: If the argument list is not closed
    """
    paren = text.find('(')
    if paren < 0:
        return text.strip(), []
    name = text[:paren].strip()
    args: List[str] = []
    current: List[str] = []
    depth = 0
    i = paren + 1
    while True:
        if i >= len(text):
            raise ProtocolSyntaxError(f"Missing ')' after protocol arguments: '{text}'")
        c = text[i]
        if c == '\\' and i + 1 < len(text):
            current.append(text[i + 1])
            i += 2
            continue
        if c == '(':
            depth += 1
        elif c == ')':
            if depth == 0:
                break
            depth -= 1
        elif c == ',' and depth == 0:
            args.append(''.join(current).strip())
            current = []
            i += 1
            continue
        current.append(c)
        i += 1
    args.append(''.join(current).strip())
    if text[i + 1:].strip():
        raise ProtocolSyntaxError(
            f"Garbage after protocol arguments: '{text[i + 1:].strip()}'")
    return name, args


class ProtocolFile:
    """The parsed content of one protocol file."""

    def __init__(self, filename: Optional[str] = None,
                 converter: Optional[FormatConverter] = None,
                 max_recursion_depth: int = MAX_RECURSION_DEPTH):
        self.filename = filename
        # Bindings made outside of any protocol, inherited by later protocols
        self.global_settings = Protocol(filename)
        self.global_settings.converter = converter or StandardFormatConverter()
        self.global_settings.max_recursion_depth = max_recursion_depth
        self.protocols: List[Protocol] = []
        self.valid = False

    def __repr__(self) -> str:
        return (f"ProtocolFile({self.filename!r}, protocols={len(self.protocols)}, "
                f"valid={self.valid})")

    @classmethod
    def load(cls, path, converter: Optional[FormatConverter] = None,
             max_recursion_depth: int = MAX_RECURSION_DEPTH) -> 'ProtocolFile':
        """
        Read and parse a protocol file.

        Args:
            path: File to read
            converter: Format converter handed to every protocol

        Returns:
            The parsed file
        """
        path = Path(path)
        source = path.read_text(encoding='utf-8', errors='replace')
        parser = Parser(source, str(path), converter, max_recursion_depth)
        return parser.parse()

    def find(self, name: str) -> Optional[Protocol]:
        """
        Find a protocol template by name.

        An exact (case-insensitive) match wins; otherwise the first protocol
        whose name starts with the given name.
        """
        key = name.lower()
        for protocol in self.protocols:
            if protocol.name == key:
                return protocol
        for protocol in self.protocols:
            if protocol.name.startswith(key):
                return protocol
        return None

    def get_protocol(self, instantiation: str) -> Protocol:
        """
        Instantiate a protocol.

        Args:
            instantiation: Protocol name optionally followed by
                           "(arg1,arg2,...)"

        Returns:
            A new protocol instance owned by the caller

        Raises:
            UndefinedReferenceError: If no protocol of that name exists
        """
        try:
            name, args = split_instantiation(instantiation)
        except ProtocolError as e:
            raise e.locate(None, self.filename)
        template = self.find(name) if name else None
        if template is None:
            raise UndefinedReferenceError(
                f"Protocol '{name}' not found in protocol file '{self.filename}'")
        return template.copy(instantiation, arguments=args)

    def report(self) -> str:
        """Text dump of global settings and all protocols."""
        lines = [f"Protocol file '{self.filename}'", "  Global settings:"]
        lines.append(self.global_settings.report())
        lines.append("  Protocols:")
        for protocol in self.protocols:
            lines.append(protocol.report())
        return "\n".join(lines)


class Parser:
    """Recursive descent parser for protocol files."""

    def __init__(self, source: str, filename: Optional[str] = None,
                 converter: Optional[FormatConverter] = None,
                 max_recursion_depth: int = MAX_RECURSION_DEPTH):
        """
        Initialize the parser.

        Args:
            source: Protocol file text
            filename: Name used in error messages
            converter: Format converter handed to every protocol
            max_recursion_depth: Limit for nested variable references
        """
        self.lexer = Lexer(source, filename)
        self.filename = filename
        self.file = ProtocolFile(filename, converter, max_recursion_depth)

    def parse(self) -> ProtocolFile:
        """
        Parse the whole file.

        Returns:
            The parsed file, marked valid

        Raises:
            ProtocolError: On the first error; the file stays invalid
        """
        logger.debug("parsing protocol file '%s'", self.filename)
        protocol = self.file.global_settings
        self.parse_protocol(protocol, protocol.commands.value, ParseContext.GLOBAL)
        self.file.valid = True
        logger.debug("protocol file '%s': %d protocols",
                     self.filename, len(self.file.protocols))
        return self.file

    def error(self, message: str) -> ProtocolSyntaxError:
        return self.lexer.error(message)

    # =========================================================================
    # Structure
    # =========================================================================

    def parse_protocol(self, protocol: Protocol, commands: List[Token],
                       context: ParseContext) -> None:
        """Parse definitions until the closing '}' (or EOF in global context)."""
        while True:
            token = self.lexer.read_token(STRUCTURE_CHARS,
                                          eof_allowed=context == ParseContext.GLOBAL)
            if token.type == TokenType.EOF:
                return
            if token.is_special(' ;'):
                continue
            if token.is_special('}'):
                if context == ParseContext.GLOBAL:
                    raise self.error("Unexpected '}' (no matching '{') in global context")
                return
            if token.is_special('{'):
                raise self.error("Expect name before '{'")
            if token.is_special('='):
                raise self.error("Expect name before '='")
            if token.type != TokenType.WORD or not (
                    token.text[0] == '@' or token.text[0].isalpha()):
                raise self.error(f"Unexpected '{token.source()}'")

            name = token.text
            line = token.line
            op = self.lexer.next_char()

            if op == '=':
                self.parse_assignment(protocol, name, line, context)
                continue

            if op == '{':
                if name.startswith('@'):
                    self.parse_handler(protocol, name, line, context)
                else:
                    self.parse_definition(name, line, context, [])
                continue

            if op == '(' and context == ParseContext.GLOBAL and not name.startswith('@'):
                parameter_names = self.parse_parameter_names(name)
                op = self.lexer.next_char()
                if op != '{':
                    raise self.error(
                        f"Expect '{{' instead of '{op}' after parameters of '{name}'")
                self.parse_definition(name, line, context, parameter_names)
                continue

            if name.startswith('@'):
                raise self.error(f"Expect '{{' after handler name '{name}'")

            if context == ParseContext.GLOBAL:
                raise self.error(f"Expect '=' or '{{' instead of '{op}' after '{name}'")

            if op in (';', '}'):
                reference = self.file.find(name)
                if reference is not None:
                    logger.debug("parseProtocol: inlining protocol '%s' into '%s'",
                                 reference.name, protocol.name)
                    commands.extend(reference.commands.value)
                    if op == '}':
                        self.lexer.unread(op)
                    continue

            self.lexer.unread(op)
            commands.append(Token(TokenType.WORD, name, line))
            try:
                self.parse_value(protocol, commands, lazy=True)
            except ProtocolError as e:
                raise e.add_note(f"after command '{name}'", line)
            commands.append(Token(TokenType.END, ';', self.lexer.line))

    def parse_assignment(self, protocol: Protocol, name: str, line: int,
                         context: ParseContext) -> None:
        if context == ParseContext.HANDLER:
            raise self.error("Variable assignment in handler context")
        if name.startswith('@'):
            raise self.error(f"Variable name '{name}' must not start with '@'")
        value: List[Token] = []
        try:
            self.parse_value(protocol, value, lazy=False)
        except ProtocolError as e:
            raise e.add_note(f"in variable assignment '{name} = ...'", line)
        binding = protocol.create_variable(name, line)
        binding.value = value
        logger.debug("parseProtocol: %s = %r", name, value)

    def parse_handler(self, protocol: Protocol, name: str, line: int,
                      context: ParseContext) -> None:
        if context == ParseContext.HANDLER:
            raise self.error(f"Handler '{name}' defined in handler context")
        value: List[Token] = []
        try:
            self.parse_protocol(protocol, value, ParseContext.HANDLER)
        except ProtocolError as e:
            raise e.add_note(f"in handler '{name}'", line)
        binding = protocol.create_variable(name, line)
        binding.value = value

    def parse_definition(self, name: str, line: int, context: ParseContext,
                         parameter_names: List[str]) -> None:
        """Parse a protocol definition into a copy of the global settings."""
        if context != ParseContext.GLOBAL:
            raise self.error(f"Definition of '{name}' not in global context (missing '}}' ?)")
        for other in self.file.protocols:
            if other.name == name:
                raise self.error(f"Protocol '{name}' redefined").add_note(
                    f"first definition of '{name}'", other.line)
        protocol = self.file.global_settings.copy(name, line)
        protocol.parameter_names = parameter_names
        try:
            self.parse_protocol(protocol, protocol.commands.value, ParseContext.PROTOCOL)
        except ProtocolError as e:
            raise e.add_note(f"in protocol '{name}'", line)
        self.file.protocols.append(protocol)

    def parse_parameter_names(self, name: str) -> List[str]:
        """Parse the formal parameter list after '('."""
        names: List[str] = []
        while True:
            token = self.lexer.read_token(STRUCTURE_CHARS)
            if token.is_special(')'):
                break
            if token.is_blank():
                continue
            if token.type != TokenType.WORD or not (
                    token.text[0].isalpha() or token.text[0] == '_'):
                raise self.error(
                    f"Unexpected '{token.source()}' in parameter list of '{name}'")
            if token.text in names:
                raise self.error(f"Parameter '{token.text}' repeated in '{name}'")
            names.append(token.text)
        if len(names) > MAX_PARAMETERS:
            raise self.error(
                f"Protocol '{name}' has more than {MAX_PARAMETERS} parameters")
        return names

    # =========================================================================
    # Values
    # =========================================================================

    def parse_value(self, protocol: Protocol, tokens: List[Token], lazy: bool) -> None:
        """
        Parse a value up to ';' or '}' and append its tokens.

        Positional references and, if lazy, all references are kept for
        later. Other references are replaced now from the bindings known
        to the protocol being parsed.
        """
        start = len(tokens)
        while True:
            token = self.lexer.read_token(VALUE_CHARS)
            if token.type == TokenType.VARIABLE:
                if lazy or protocol.parameter_index(token.text) is not None:
                    tokens.append(token)
                else:
                    tokens.extend(protocol.replace_variable(token))
                continue
            if token.is_special('{='):
                raise self.error(f"Unexpected '{token.text}' (missing ';' or '\"' ?)")
            if token.is_special(';'):
                break
            if token.is_special('}'):
                self.lexer.unread('}')
                break
            if token.is_blank() and len(tokens) == start:
                continue
            tokens.append(token)
        while len(tokens) > start and tokens[-1].is_blank():
            tokens.pop()
