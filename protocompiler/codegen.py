"""
Protocol Code Generator

Compiles the raw command tokens of a protocol instance into programs.

Strings are coded in two steps per source line:
    1) quoted text, escapes, byte values and named codes are coded and
       variables and parameters are replaced
    2) the '%' formats of the line are compiled
so variables can be used inside format info strings.
"""

import logging
import re
from dataclasses import replace
from typing import List, Optional, Tuple, Union, TYPE_CHECKING

from .tokens import (Token, TokenType, CONTROL_CODES, SKIP_WORDS, ESCAPES,
                     render_tokens)
from .bytecode import (Control, Field, FormatFlag, FormatMode, FormatType,
                       Instruction, Literal, Program, Sentinel,
                       merge_literals)
from .errors import (ProtocolError, ProtocolSyntaxError, UndefinedReferenceError,
                     ValueRangeError, GarbageError, FormatError,
                     RecursionDepthError)

if TYPE_CHECKING:
    from .client import Client
    from .protocol import Protocol

logger = logging.getLogger(__name__)

# C strtol/strtoul with base 0
_NUMBER_RE = re.compile(r'[+-]?(?:0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)')
_OCTAL_RE = re.compile(r'[0-7]{1,4}')
_HEX_RE = re.compile(r'[0-9a-fA-F]{1,2}')
_DECIMAL_RE = re.compile(r'[0-9]{1,3}')

# Pass 1 output: raw text chars (may start a format), literal bytes,
# control markers and, after pass 2, compiled fields
Cell = Union[str, int, Control, Field]


class ArgStream:
    """Cursor over the argument tokens of one command or value."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def __repr__(self) -> str:
        return f"ArgStream({render_tokens(self.remaining())!r})"

    def peek(self, offset: int = 0) -> Optional[Token]:
        index = self.pos + offset
        if index < len(self.tokens):
            return self.tokens[index]
        return None

    def next(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def skip_blanks(self) -> None:
        while not self.at_end() and self.tokens[self.pos].is_blank():
            self.pos += 1

    def expect_special(self, char: str) -> bool:
        """Consume the special character if it comes next (after blanks)."""
        self.skip_blanks()
        token = self.peek()
        if token is not None and token.is_special(char):
            self.pos += 1
            return True
        return False

    def remaining(self) -> List[Token]:
        return self.tokens[self.pos:]

    def line(self) -> int:
        token = self.peek()
        if token is None and self.tokens:
            token = self.tokens[-1]
        return token.line if token else 0


def parse_c_integer(text: str) -> Tuple[Optional[int], int]:
    """
    Parse a leading integer the way strtol(text, &end, 0) does.

    Returns:
        The value (None if there is no number) and the length consumed
    """
    match = _NUMBER_RE.match(text)
    if not match:
        return None, 0
    literal = match.group()
    digits = literal.lstrip('+-')
    if digits[:2] in ('0x', '0X'):
        value = int(digits[2:], 16)
    elif len(digits) > 1 and digits[0] == '0':
        value = int(digits, 8)
    else:
        value = int(digits)
    if literal.startswith('-'):
        value = -value
    return value, match.end()


class CodeGenerator:
    """Compiles strings, numbers and commands of one protocol instance."""

    def __init__(self, protocol: 'Protocol', client: Optional['Client'] = None):
        self.protocol = protocol
        self.client = client
        self.converter = protocol.converter
        self.max_depth = protocol.max_recursion_depth
        self.filename = protocol.filename
        self.line = protocol.line

    def error(self, cls, message: str) -> ProtocolError:
        return cls(message, self.line, self.filename)

    # =========================================================================
    # Commands
    # =========================================================================

    def compile_commands(self, tokens: List[Token]) -> Program:
        """
        Offer every command of a token sequence to the client.

        Returns:
            The compiled program
        """
        if self.client is None:
            raise self.error(ProtocolError, "No command compiler available")
        program = Program()
        pos = 0
        while pos < len(tokens):
            command = tokens[pos]
            end = pos + 1
            while end < len(tokens) and tokens[end].type != TokenType.END:
                end += 1
            args = ArgStream(tokens[pos + 1:end])
            args.skip_blanks()
            self.line = command.line
            try:
                self.client.compile_command(self, program, command.text, args, command.line)
            except ProtocolError as e:
                raise e.locate(command.line, self.filename).add_note(
                    f"in command '{command.text}'", command.line)
            args.skip_blanks()
            if not args.at_end():
                raise GarbageError(
                    f"Garbage after '{command.text}' command: "
                    f"'{render_tokens(args.remaining())}'", command.line, self.filename)
            pos = end + 1
        return program

    # =========================================================================
    # Numbers
    # =========================================================================

    def compile_number(self, args: ArgStream, max_value: int) -> int:
        """
        Compile an unsigned number from adjacent digit and variable tokens.

        Returns:
            The value, between 0 and max_value
        """
        parts = []
        self.line = args.line()
        while True:
            token = args.peek()
            if token is None:
                break
            if token.type == TokenType.VARIABLE:
                args.next()
                parts.extend(t.text for t in self.protocol.replace_variable(token)
                             if not t.is_blank())
            elif token.type == TokenType.WORD and token.text[:1].isdigit():
                args.next()
                parts.append(token.text)
            else:
                break
        text = ''.join(parts)
        logger.debug("compileNumber %s", text)

        value, length = parse_c_integer(text)
        if value is None or value < 0:
            raise self.error(ProtocolSyntaxError, f"Unsigned numeric value expected: {text}")
        if length != len(text):
            raise self.error(GarbageError, f"Garbage after numeric value: {text}")
        if value > max_value:
            raise self.error(ValueRangeError, f"Value {text} out of range [0...{max_value}]")
        return value

    # =========================================================================
    # Strings
    # =========================================================================

    def compile_string(self, args: Union[ArgStream, List[Token]],
                       mode: FormatMode = FormatMode.NO_FORMAT) -> List[Instruction]:
        """
        Compile all remaining tokens into one string.

        Args:
            args: Tokens of quoted strings, byte values, named codes and
                  variable references
            mode: SCAN for input, PRINT for output, NO_FORMAT for plain
                  strings in which '%' is a literal

        Returns:
            The compiled string
        """
        if not isinstance(args, ArgStream):
            args = ArgStream(args)
        tokens = args.remaining()
        args.pos = len(args.tokens)
        cells: List[Cell] = []
        if not tokens:
            return []

        # step 1 runs token by token; step 2 whenever the line changes
        line = tokens[0].line
        format_pos = 0
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if token.line != line:
                if mode != FormatMode.NO_FORMAT:
                    self._compile_formats(cells, format_pos, mode, line)
                format_pos = len(cells)
                line = token.line
            self.line = token.line
            index = self._encode_token(tokens, index, cells, mode, 0)
        if mode != FormatMode.NO_FORMAT:
            self._compile_formats(cells, format_pos, mode, line)

        return self._instructions(cells)

    def _encode(self, tokens: List[Token], cells: List[Cell], mode: FormatMode,
                depth: int) -> None:
        """Step 1 for the value of a variable."""
        if depth > self.max_depth:
            raise self.error(RecursionDepthError,
                             f"Variable references nested deeper than {self.max_depth} "
                             f"(reference cycle?)")
        saved_line = self.line
        index = 0
        while index < len(tokens):
            self.line = tokens[index].line
            index = self._encode_token(tokens, index, cells, mode, depth)
        self.line = saved_line

    def _encode_token(self, tokens: List[Token], index: int, cells: List[Cell],
                      mode: FormatMode, depth: int) -> int:
        """Code the token at index, returning the index of the next one."""
        token = tokens[index]

        if token.type == TokenType.STRING:
            self._encode_quoted(token.text, cells)
            return index + 1

        if token.type == TokenType.VARIABLE:
            value = self.protocol.replace_variable(token)
            self._encode(value, cells, mode, depth + 1)
            return index + 1

        if token.is_blank() or token.type == TokenType.END:
            return index + 1

        # an empty argument like p() or p(a,,b) adds nothing
        if token.type == TokenType.WORD and not token.text:
            return index + 1

        if token.type == TokenType.SPECIAL:
            if token.text in '+-' and index + 1 < len(tokens):
                following = tokens[index + 1]
                if following.type == TokenType.WORD and following.text[:1].isdigit():
                    self._encode_byte(token.text + following.text, cells)
                    return index + 2
            raise self.error(ProtocolSyntaxError, f"Unexpected '{token.text}' in string")

        if token.type == TokenType.WORD:
            if token.text[:1].isdigit():
                self._encode_byte(token.text, cells)
                return index + 1
            # parameter values keep their case
            name = token.text.lower()
            if name in SKIP_WORDS:
                if mode != FormatMode.SCAN:
                    raise self.error(ProtocolSyntaxError,
                                     f"Use of '{token.text}' only allowed in input formats")
                cells.append(Control(Sentinel.SKIP))
                return index + 1
            if name in CONTROL_CODES:
                cells.append(CONTROL_CODES[name])
                return index + 1

        raise self.error(ProtocolSyntaxError, f"Unexpected '{token.text}' in string")

    def _encode_byte(self, text: str, cells: List[Cell]) -> None:
        value, length = parse_c_integer(text)
        if length != len(text):
            raise self.error(GarbageError, f"Garbage after numeric source: {text}")
        if value > 0xFF or value < -0x80:
            raise self.error(ValueRangeError, f"Value {text} does not fit in byte")
        cells.append(value & 0xFF)

    def _encode_quoted(self, text: str, cells: List[Cell]) -> None:
        """Code the content of a quoted string, decoding escapes."""
        i = 0
        while i < len(text):
            c = text[i]
            if (ord(c) & 0x7F) < 0x20:
                raise self.error(ProtocolSyntaxError, f"Unexpected byte {ord(c):#04x}")
            if c != '\\':
                cells.append(c)
                i += 1
                continue

            i += 1
            if i >= len(text):
                raise self.error(ProtocolSyntaxError, "Backslash at end of string")
            c = text[i]
            if c == '?':
                cells.append(Control(Sentinel.SKIP))
                i += 1
            elif c == '_':
                cells.append(Control(Sentinel.WHITESPACE))
                i += 1
            elif c in ESCAPES:
                cells.append(ESCAPES[c])
                i += 1
            elif c == '0':
                # octal, max 4 digits including the 0
                digits = _OCTAL_RE.match(text, i).group()
                value = int(digits, 8)
                if value > 0xFF:
                    raise self.error(ValueRangeError,
                                     f"Octal number {value:#o} does not fit in byte: \"\\{digits}\"")
                cells.append(value)
                i += len(digits)
            elif c == 'x':
                match = _HEX_RE.match(text, i + 1)
                if not match:
                    raise self.error(ProtocolSyntaxError,
                                     f"Hex digit expected after \\x: \"\\{text[i:]}\"")
                cells.append(int(match.group(), 16))
                i = match.end()
            elif c.isdigit():
                digits = _DECIMAL_RE.match(text, i).group()
                value = int(digits)
                if value > 0xFF:
                    raise self.error(ValueRangeError,
                                     f"Decimal number {value} does not fit in byte: \"\\{digits}\"")
                cells.append(value)
                i += len(digits)
            else:
                # escaped literal
                cells.extend(c.encode('utf-8'))
                i += 1

    def _compile_formats(self, cells: List[Cell], start: int, mode: FormatMode,
                         line: int) -> None:
        """Step 2: replace the formats of one line by compiled fields."""
        count = 0
        i = start
        while i < len(cells):
            if cells[i] != '%':
                i += 1
                continue
            if i + 1 < len(cells) and cells[i + 1] == '%':
                # %% is a literal % like in printf/scanf
                cells[i:i + 2] = [ord('%')]
                i += 1
                continue
            end = i
            while end < len(cells) and isinstance(cells[end], str):
                end += 1
            source = ''.join(cells[i:end])
            logger.debug("compileString format=\"%s\"", source)
            self.line = line
            try:
                fld, length = self.compile_format(source, mode)
            except ProtocolError as e:
                raise e.locate(line, self.filename).add_note(
                    f"in format string: \"{source}\"", line)
            cells[i:i + length] = [fld]
            count += 1
            i += 1
        logger.debug("compileString %d formats found in line %d", count, line)

    def compile_format(self, source: str, mode: FormatMode) -> Tuple[Field, int]:
        """
        Compile the format at the start of source.

            format := '%' ['(' field ')'] [flags] [width] ['.' prec] conv [info]

        Returns:
            The compiled field and the number of characters it used
        """
        name = None
        address = None
        offset = 0
        text = source
        if source[1:2] == '(':
            if self.client is None:
                raise self.error(FormatError, "Using fieldname is not possible in this context")
            end = source.find(')', 2)
            if end < 0:
                raise self.error(FormatError, "Missing ')' after field name")
            name = source[2:end]
            address = self.client.get_field_address(name)
            if address is None:
                raise self.error(UndefinedReferenceError, f"Field '{name}' not found")
            offset = end
            text = '%' + source[end + 1:]

        descriptor, length, info = self.converter.parse_format(text, mode)

        if descriptor.type == FormatType.NONE:
            raise self.error(FormatError,
                             f"Illegal format type returned from '%{descriptor.conv}' converter")
        if name is not None and descriptor.type == FormatType.PSEUDO:
            raise self.error(FormatError,
                             f"Fieldname not allowed with pseudo format: '%({name}){descriptor.conv}'")
        if name is not None and descriptor.flags & FormatFlag.SKIP:
            raise self.error(FormatError,
                             "Use of skip modifier '*' not allowed together with redirection")
        if info and not info.endswith(b'\0'):
            info += b'\0'
        if descriptor.info_length != len(info):
            descriptor = replace(descriptor, info_length=len(info))

        logger.debug("compileFormat: type=%s info=%r", descriptor.type.name, info)
        return Field(descriptor, text[1:length], info, name, address), offset + length

    @staticmethod
    def _instructions(cells: List[Cell]) -> List[Instruction]:
        instructions: List[Instruction] = []
        for cell in cells:
            if isinstance(cell, str):
                instructions.append(Literal(cell.encode('utf-8')))
            elif isinstance(cell, int):
                instructions.append(Literal(bytes([cell])))
            else:
                instructions.append(cell)
        return merge_literals(instructions)
