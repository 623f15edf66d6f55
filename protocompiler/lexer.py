"""
Protocol File Lexer

Character-level reader and tokenizer for protocol files.
"""

import logging
from typing import List, Optional

from .tokens import (Token, TokenType, VALUE_CHARS, BRACED_CHARS, QUOTES)
from .errors import ProtocolSyntaxError

logger = logging.getLogger(__name__)

EOF = ''


class Reader:
    """Produces one logical character at a time from protocol source."""

    def __init__(self, source: str):
        self.source = source
        self.current = 0    # Position of next unread character
        self.line = 1       # Current line number
        self.pushback: List[str] = []

    def getc(self) -> str:
        """Consume and return the next raw character, EOF at the end."""
        if self.pushback:
            c = self.pushback.pop()
        elif self.current < len(self.source):
            c = self.source[self.current]
            self.current += 1
        else:
            return EOF
        if c == '\n':
            self.line += 1
        return c

    def ungetc(self, c: str) -> None:
        """Push back a character so the next getc() returns it."""
        if c == EOF:
            return
        if c == '\n':
            self.line -= 1
        self.pushback.append(c)

    def peek(self) -> str:
        """Return the next raw character without consuming it."""
        c = self.getc()
        self.ungetc(c)
        return c

    def read_char(self) -> str:
        """
        Consume the next logical character.

        Comments from '#' to the end of the line count as whitespace and
        every run of whitespace collapses into a single ' '.
        """
        c = self.getc()
        if not (c.isspace() or c == '#'):
            return c
        while True:
            if c == '#':
                while c != '\n' and c != EOF:
                    c = self.getc()
            if c == EOF:
                break
            c = self.getc()
            if not (c.isspace() or c == '#'):
                break
        self.ungetc(c)
        return ' '

    def is_at_end(self) -> bool:
        return not self.pushback and self.current >= len(self.source)


class Lexer:
    """Tokenizer for protocol files honoring an active quote state."""

    def __init__(self, source: str, filename: Optional[str] = None):
        """
        Initialize the lexer.

        Args:
            source: Protocol file text
            filename: Name used in error messages
        """
        self.reader = Reader(source)
        self.filename = filename
        self.quote: Optional[str] = None  # Quote char of an open string
        self.escaped_dollar = False  # '\$' pushed back by _string()

    @property
    def line(self) -> int:
        return self.reader.line

    def error(self, message: str) -> ProtocolSyntaxError:
        return ProtocolSyntaxError(message, self.line, self.filename)

    def next_char(self) -> str:
        """Return the next logical character that is not a blank."""
        c = self.reader.read_char()
        while c == ' ':
            c = self.reader.read_char()
        return c

    def unread(self, c: str) -> None:
        self.reader.ungetc(c)

    def tokenize(self) -> List[Token]:
        """
        Tokenize the remaining source as one value.

        Returns:
            List of tokens terminated by an EOF token
        """
        tokens = []
        while True:
            token = self.read_token(eof_allowed=True)
            tokens.append(token)
            if token.type == TokenType.EOF:
                return tokens

    def read_token(self, special_chars: str = VALUE_CHARS,
                   eof_allowed: bool = False) -> Token:
        """
        Read the next token.

        A token is a quoted string, a variable reference, one of
        special_chars, a lowercase-folded word, or EOF.
        """
        if self.quote:
            c = self.reader.getc()
        else:
            c = self.reader.read_char()
        line = self.line

        # Inside quotes a bare '$' not followed by a name stays literal
        if c == '$' and (not self.quote or self.escaped_dollar
                         or self._starts_reference()):
            self.escaped_dollar = False
            return self._variable(line, special_chars)

        if self.quote or (c != EOF and c in QUOTES):
            return self._string(c, line)

        if c == EOF:
            if not eof_allowed:
                raise self.error("Unexpected end of file (looking for '}')")
            return Token(TokenType.EOF, '', line)

        if c in special_chars:
            return Token(TokenType.SPECIAL, c, line)

        return Token(TokenType.WORD, self._word(c, special_chars), line)

    def _word(self, c: str, special_chars: str) -> str:
        """Scan a word up to the next special character."""
        text = []
        while True:
            text.append(c.lower())
            c = self.reader.read_char()
            if c == EOF:
                break
            if c in special_chars:
                self.reader.ungetc(c)
                break
        return ''.join(text)

    def _variable(self, line: int, special_chars: str) -> Token:
        """Scan a variable reference after '$'."""
        quote = '"' if self.quote else None
        c = self.reader.getc()

        # Positional parameter $0 ... $9
        if c != EOF and c.isdigit():
            return Token(TokenType.VARIABLE, c, line, quote)

        if c == '{':
            saved = self.quote
            self.quote = None
            name = self.read_token(BRACED_CHARS)
            if name.type != TokenType.WORD:
                raise self.error(f"Expect variable name after '${{' instead of '{name.text}'")
            c = self.reader.getc()
            if c != '}':
                raise self.error(f"Expect '}}' instead of '{c}' after: ${{{name.text}")
            self.quote = saved
            return Token(TokenType.VARIABLE, name.text.strip(), line, quote)

        if c == EOF:
            raise self.error("Unexpected end of file after '$'")

        if quote:
            # Inside quotes the name ends at the first non-identifier char
            text = []
            while c != EOF and (c.isalnum() or c == '_'):
                text.append(c.lower())
                c = self.reader.getc()
            self.reader.ungetc(c)
            if not text:
                raise self.error(f"Unexpected '{c}' after '$'")
            return Token(TokenType.VARIABLE, ''.join(text), line, quote)

        if c in special_chars or c.isspace():
            raise self.error(f"Unexpected '{c}' after '$'")
        return Token(TokenType.VARIABLE, self._word(c, special_chars), line)

    def _starts_reference(self) -> bool:
        """Check if a '$' just read inside quotes starts a variable reference."""
        c = self.reader.peek()
        return c != EOF and (c.isalnum() or c in '{_')

    def _string(self, c: str, line: int) -> Token:
        """
        Scan a quoted string.

        Escape sequences are kept undecoded. A variable reference inside
        the string ends the token early while the quote stays open, so
        the next read_token() returns the variable and then resumes the
        string.
        """
        if not self.quote:
            self.quote = c
            c = self.reader.getc()
        quote = self.quote
        text = []

        while True:
            if c == EOF or c == '\n':
                raise self.error(f"Unterminated quoted string: {quote}{''.join(text)}")
            if c == quote:
                self.quote = None
                break
            if c == '\\':
                c = self.reader.getc()
                if c == '$':
                    self.reader.ungetc(c)
                    self.escaped_dollar = True
                    break
                if c == EOF or c == '\n':
                    raise self.error(f"Backslash at end of line: {quote}{''.join(text)}")
                text.append('\\')
                text.append(c)
            elif c == '$' and self._starts_reference():
                self.reader.ungetc(c)
                break
            else:
                text.append(c)
            c = self.reader.getc()

        logger.debug("readToken: quoted string %s%s%s line %d",
                     quote, ''.join(text), quote, line)
        return Token(TokenType.STRING, ''.join(text), line, quote)
