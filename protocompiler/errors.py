"""
Protocol Compiler Errors

Defines exception classes for parse and compile errors.
"""

from typing import List, Optional, Tuple


class ProtocolError(Exception):
    """Base exception for all protocol file errors."""

    def __init__(self, message: str, line: Optional[int] = None,
                 filename: Optional[str] = None):
        self.message = message
        self.line = line
        self.filename = filename
        self.notes: List[Tuple[Optional[int], str]] = []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with location information."""
        parts = []

        if self.filename:
            parts.append(self.filename)

        if self.line is not None:
            parts.append(f"line {self.line}")

        if parts:
            return f"{' '.join(parts)}: {self.message}"
        return self.message

    def locate(self, line: Optional[int], filename: Optional[str]) -> 'ProtocolError':
        """Fill in location information not known where the error was raised."""
        if self.line is None:
            self.line = line
        if self.filename is None:
            self.filename = filename
        return self

    def add_note(self, message: str, line: Optional[int] = None) -> 'ProtocolError':
        """Record an enclosing unit, e.g. "in protocol 'x'"."""
        self.notes.append((line, message))
        return self

    def report(self, diagnostics) -> None:
        """Forward this error and its notes to a diagnostics collaborator."""
        diagnostics.error(self.line, self.filename, self.message)
        for line, note in self.notes:
            diagnostics.error(line if line is not None else self.line,
                              self.filename, note)

    def __str__(self) -> str:
        text = self._format_message()
        for _, note in self.notes:
            text += f"\n  {note}"
        return text


class ProtocolFileNotFound(ProtocolError):
    """Raised when no readable protocol file is found on the search path."""
    pass


class InvalidProtocolFileError(ProtocolError):
    """Raised when a protocol file that failed to parse is referenced again."""
    pass


class ProtocolSyntaxError(ProtocolError):
    """Raised for structural violations, bad quotes and illegal characters."""
    pass


class UndefinedReferenceError(ProtocolError):
    """Raised for unknown variables, parameters, protocols or fields."""
    pass


class ValueRangeError(ProtocolError):
    """Raised when a numeric value does not fit its target."""
    pass


class GarbageError(ProtocolError):
    """Raised when input is left over after a complete token or command."""
    pass


class FormatError(ProtocolError):
    """Raised when a format specifier cannot be compiled."""
    pass


class UnusedHandlerError(ProtocolError):
    """Raised when a handler is defined but never used."""
    pass


class RecursionDepthError(ProtocolError):
    """Raised when variable references nest too deeply."""
    pass
