"""
Stream Device Commands

The standard command vocabulary of the stream device runtime engine:

    out "string";          send formatted output
    in "string";           read and parse input
    wait milliseconds;     sleep
    event[(mask)] [ms];    wait for an I/O event
    exec "string";         run a shell command on the host
    connect milliseconds;  open the connection
    disconnect;            close the connection
"""

import logging
from typing import Dict, Optional

from .bytecode import FormatMode, OpCode, Program
from .client import Client
from .codegen import ArgStream, CodeGenerator
from .errors import ProtocolSyntaxError

logger = logging.getLogger(__name__)

# Handlers the runtime engine knows; any other handler is unused
HANDLERS = (
    '@init',
    '@mismatch',
    '@writetimeout',
    '@replytimeout',
    '@readtimeout',
    '@connect',
)

# Commands whose single argument is a string, with the mode it compiles in
STRING_COMMANDS = {
    'out': (OpCode.OUT, FormatMode.PRINT),
    'in': (OpCode.IN, FormatMode.SCAN),
    'exec': (OpCode.EXEC, FormatMode.PRINT),
}

# Commands whose single argument is a timeout
NUMBER_COMMANDS = {
    'wait': OpCode.WAIT,
    'connect': OpCode.CONNECT,
}

EVENT_MASK_ALL = 0xFFFFFFFF


class StandardClient(Client):
    """Command compiler for the stream device runtime engine."""

    name = "stream"

    def __init__(self, fields: Optional[Dict[str, bytes]] = None):
        """
        Initialize the client.

        Args:
            fields: Addresses of the fields '%(name)' formats may redirect to
        """
        self.fields: Dict[str, bytes] = dict(fields or {})

    def get_field_address(self, name: str) -> Optional[bytes]:
        return self.fields.get(name)

    def compile_command(self, generator: CodeGenerator, program: Program,
                        command: str, args: ArgStream, line: int) -> None:
        logger.debug("compileCommand %s line %d: %r", command, line, args)
        if command in STRING_COMMANDS:
            opcode, mode = STRING_COMMANDS[command]
            program.emit(opcode, line)
            program.emit_string(generator.compile_string(args, mode))
            return

        if command in NUMBER_COMMANDS:
            program.emit(NUMBER_COMMANDS[command], line)
            program.emit_number(generator.compile_number(args, 0xFFFFFFFF))
            return

        if command == 'event':
            mask = EVENT_MASK_ALL
            timeout = 0
            if args.expect_special('('):
                args.skip_blanks()
                mask = generator.compile_number(args, 0xFFFFFFFF)
                if not args.expect_special(')'):
                    raise generator.error(ProtocolSyntaxError,
                                          "Expect ')' after event mask")
            args.skip_blanks()
            if not args.at_end():
                timeout = generator.compile_number(args, 0xFFFFFFFF)
            program.emit(OpCode.EVENT, line)
            program.emit_number(mask)
            program.emit_number(timeout)
            return

        if command == 'disconnect':
            program.emit(OpCode.DISCONNECT, line)
            return

        raise generator.error(ProtocolSyntaxError, f"Unknown command name '{command}'")
