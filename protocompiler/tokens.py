"""
Protocol File Token Definitions

Defines the lexical units produced by the lexer and the tables shared
by the parser and the string compiler.
"""

from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional


class TokenType(Enum):
    """All token types of the protocol language."""

    WORD = auto()        # lowercase-folded bare word
    STRING = auto()      # quoted string, escapes not yet decoded
    VARIABLE = auto()    # $name, ${name} or $0..$9
    SPECIAL = auto()     # one character from the active special set
    END = auto()         # terminates the arguments of one command
    EOF = auto()


# Special characters while reading protocol structure
STRUCTURE_CHARS = " ,;{}=()$'\""

# Special characters while reading values
VALUE_CHARS = " ,;{}=()$'\"+-*/"

# Special characters inside ${...}
BRACED_CHARS = "{}=;"

QUOTES = "\"'"


@dataclass(frozen=True)
class Token:
    """A lexical unit together with the line it started on."""

    type: TokenType
    text: str
    line: int
    quote: Optional[str] = None  # quote char of STRING, '"' for quoted VARIABLE

    def __repr__(self) -> str:
        if self.quote:
            return f"Token({self.type.name}, {self.text!r}, quote={self.quote!r}, line={self.line})"
        return f"Token({self.type.name}, {self.text!r}, line={self.line})"

    @property
    def quoted(self) -> bool:
        return self.quote is not None

    def is_special(self, chars: str) -> bool:
        """Check if this token is one of the given special characters."""
        return self.type == TokenType.SPECIAL and self.text in chars

    def is_blank(self) -> bool:
        """Check if this token only separates other tokens."""
        return self.type == TokenType.SPECIAL and self.text in " ,"

    def is_positional(self) -> bool:
        """Check if this token references a positional parameter."""
        return self.type == TokenType.VARIABLE and self.text.isdigit()

    def source(self) -> str:
        """Render the token back to protocol file syntax."""
        if self.type == TokenType.STRING:
            return f"{self.quote}{self.text}{self.quote}"
        if self.type == TokenType.VARIABLE:
            if self.quoted:
                return f"\\${{{self.text}}}"
            return f"${{{self.text}}}"
        if self.type == TokenType.END:
            return ";"
        return self.text


# Named byte values allowed as bare words in values.
# skip is a control marker, not a byte; it is only legal in input formats.
SKIP_WORDS = ("skip", "?")

CONTROL_CODES = {
    "nul": 0x00,
    "soh": 0x01,
    "stx": 0x02,
    "etx": 0x03,
    "eot": 0x04,
    "enq": 0x05,
    "ack": 0x06,
    "bel": 0x07,
    "bs": 0x08,
    "ht": 0x09,
    "tab": 0x09,
    "lf": 0x0A,
    "nl": 0x0A,
    "vt": 0x0B,
    "ff": 0x0C,
    "np": 0x0C,
    "cr": 0x0D,
    "so": 0x0E,
    "si": 0x0F,
    "dle": 0x10,
    "dc1": 0x11,
    "dc2": 0x12,
    "dc3": 0x13,
    "dc4": 0x14,
    "nak": 0x15,
    "syn": 0x16,
    "etb": 0x17,
    "can": 0x18,
    "em": 0x19,
    "sub": 0x1A,
    "esc": 0x1B,
    "fs": 0x1C,
    "gs": 0x1D,
    "rs": 0x1E,
    "us": 0x1F,
    "del": 0x7F,
}


# Single-character backslash escapes inside quoted strings
ESCAPES = {
    'a': 0x07,
    'b': 0x08,
    't': 0x09,
    'n': 0x0A,
    'r': 0x0D,
    'e': 0x1B,
}


def render_tokens(tokens) -> str:
    """Render a token sequence back to protocol syntax for messages."""
    return ''.join(token.source() for token in tokens)
