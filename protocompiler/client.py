"""
Compiler Collaborators

Interfaces the compiler calls out to: the device-specific command
compiler with its field-address resolver, and the diagnostics sink.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .bytecode import Program
    from .codegen import ArgStream, CodeGenerator


class Client(ABC):
    """A device-specific command compiler."""

    name = "client"

    @abstractmethod
    def compile_command(self, generator: 'CodeGenerator', program: 'Program',
                        command: str, args: 'ArgStream', line: int) -> None:
        """
        Encode one command into program.

        The client consumes the arguments it understands from args; any
        tokens left over are reported as garbage by the caller.

        Raises:
            ProtocolError: If the command is unknown or its arguments invalid
        """
        pass

    def get_field_address(self, name: str) -> Optional[bytes]:
        """Resolve a field name used in '%(name)' formats, None if unknown."""
        return None


class Diagnostics(ABC):
    """Receives error and trace messages; never affects control flow."""

    @abstractmethod
    def error(self, line: Optional[int], filename: Optional[str], message: str) -> None:
        pass

    def trace(self, message: str) -> None:
        pass


class LoggingDiagnostics(Diagnostics):
    """Diagnostics written to a logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("protocompiler")

    def error(self, line: Optional[int], filename: Optional[str], message: str) -> None:
        if filename and line is not None:
            self.logger.error("'%s' line %d: %s", filename, line, message)
        elif filename:
            self.logger.error("'%s': %s", filename, message)
        else:
            self.logger.error("%s", message)

    def trace(self, message: str) -> None:
        self.logger.debug("%s", message)


class CollectingDiagnostics(Diagnostics):
    """Diagnostics kept in memory."""

    def __init__(self):
        self.errors: List[Tuple[Optional[int], Optional[str], str]] = []
        self.traces: List[str] = []

    def error(self, line: Optional[int], filename: Optional[str], message: str) -> None:
        self.errors.append((line, filename, message))

    def trace(self, message: str) -> None:
        self.traces.append(message)

    def messages(self) -> List[str]:
        return [message for _, _, message in self.errors]
