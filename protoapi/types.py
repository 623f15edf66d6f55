"""
Protocol API Types

Settings and compiled form of one protocol instance as handed to the
runtime engine.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import struct

import numpy as np

from protocompiler import FormatMode, Program, Protocol, print_string
from protocompiler.bytecode import Instruction, serialize_string


# Defaults of the runtime engine, in milliseconds
DEFAULT_LOCK_TIMEOUT = 5000
DEFAULT_WRITE_TIMEOUT = 100
DEFAULT_REPLY_TIMEOUT = 1000
DEFAULT_READ_TIMEOUT = 100

# Values of the extraInput variable
EXTRA_INPUT_CHOICES = ("error", "ignore")

# Settings variables: (variable name, attribute name)
NUMBER_SETTINGS = (
    ("locktimeout", "lock_timeout"),
    ("writetimeout", "write_timeout"),
    ("replytimeout", "reply_timeout"),
    ("readtimeout", "read_timeout"),
    ("pollperiod", "poll_period"),
    ("maxinput", "max_input"),
)


@dataclass
class ProtocolSettings:
    """Timeouts, terminators and input policy of one protocol."""

    lock_timeout: int = DEFAULT_LOCK_TIMEOUT
    write_timeout: int = DEFAULT_WRITE_TIMEOUT
    reply_timeout: int = DEFAULT_REPLY_TIMEOUT
    read_timeout: int = DEFAULT_READ_TIMEOUT
    poll_period: Optional[int] = None    # reply_timeout if not set
    max_input: int = 0                   # 0 means unlimited
    in_terminator: List[Instruction] = field(default_factory=list)
    out_terminator: List[Instruction] = field(default_factory=list)
    separator: List[Instruction] = field(default_factory=list)
    ignore_extra_input: bool = False

    def __post_init__(self):
        if self.poll_period is None:
            self.poll_period = self.reply_timeout

    def pack(self) -> bytes:
        """Pack the numeric settings as six little-endian u32 values."""
        return struct.pack('<6I', self.lock_timeout, self.write_timeout,
                           self.reply_timeout, self.read_timeout,
                           self.poll_period, self.max_input)

    def describe(self) -> Dict[str, str]:
        """Settings rendered as protocol file values."""
        def quoted(string):
            return f'"{print_string(string, FormatMode.NO_FORMAT)}"'

        return {
            "lockTimeout": str(self.lock_timeout),
            "writeTimeout": str(self.write_timeout),
            "replyTimeout": str(self.reply_timeout),
            "readTimeout": str(self.read_timeout),
            "pollPeriod": str(self.poll_period),
            "maxInput": str(self.max_input),
            "inTerminator": quoted(self.in_terminator),
            "outTerminator": quoted(self.out_terminator),
            "separator": quoted(self.separator),
            "extraInput": EXTRA_INPUT_CHOICES[self.ignore_extra_input],
        }


@dataclass
class CompiledProtocol:
    """
    A protocol instance compiled for the runtime engine.

    Contains the main commands, every defined handler and the settings.
    """

    name: str
    protocol: Protocol
    settings: ProtocolSettings
    commands: Program
    handlers: Dict[str, Program] = field(default_factory=dict)

    def disassemble(self) -> str:
        """Get disassembly of the commands and handlers."""
        lines = [f"protocol {self.name}:", self.commands.disassemble()]
        for name, program in self.handlers.items():
            lines.append(f"handler {name}:")
            lines.append(program.disassemble())
        return "\n".join(lines)

    def serialize(self) -> bytes:
        """
        Serialize settings, commands and handlers.

        Layout: packed numeric settings, the three terminator strings,
        the command stream, then per handler its name (NUL terminated)
        followed by its stream; a single NUL ends the handler list.
        """
        output = bytearray(self.settings.pack())
        for string in (self.settings.in_terminator, self.settings.out_terminator,
                       self.settings.separator):
            output.extend(serialize_string(string))
        output.extend(self.commands.serialize())
        for name, program in self.handlers.items():
            output.extend(name.encode('utf-8') + b'\0')
            output.extend(program.serialize())
        output.append(0)
        return bytes(output)

    def to_array(self) -> np.ndarray:
        """Serialized form as a uint8 array."""
        return np.frombuffer(self.serialize(), dtype=np.uint8)

    def save(self, path: str) -> None:
        """Save the serialized form to a file."""
        with open(path, 'wb') as f:
            f.write(self.serialize())
