"""
Protocol Instruction Stream Format

Defines the compiled representation of protocol commands and the
serialized byte stream consumed by the runtime engine.
"""

from enum import IntEnum, IntFlag
from dataclasses import dataclass, field
from typing import List, Optional, Union, Tuple
import struct

import numpy as np


class Sentinel(IntEnum):
    """Control bytes of the serialized stream."""

    END = 0x00
    SKIP = 0x01
    WHITESPACE = 0x02
    FORMAT = 0x03
    FORMAT_FIELD = 0x04
    ESCAPE = 0x1B


# Literal bytes with these values are prefixed with ESCAPE when serialized
SENTINEL_VALUES = frozenset(int(s) for s in Sentinel)


class OpCode(IntEnum):
    """Runtime engine commands."""

    END = 0x00
    IN = 0x01           # operand: scan format string
    OUT = 0x02          # operand: print format string
    WAIT = 0x03         # operand: milliseconds (u32)
    EVENT = 0x04        # operands: mask (u32), timeout (u32)
    EXEC = 0x05         # operand: print format string
    CONNECT = 0x06      # operand: timeout (u32)
    DISCONNECT = 0x07


# Operand layout per opcode: 's' = string, 'n' = u32 number
OPERANDS = {
    OpCode.END: '',
    OpCode.IN: 's',
    OpCode.OUT: 's',
    OpCode.WAIT: 'n',
    OpCode.EVENT: 'nn',
    OpCode.EXEC: 's',
    OpCode.CONNECT: 'n',
    OpCode.DISCONNECT: '',
}


class FormatMode(IntEnum):
    """Surrounding mode a string is compiled in."""

    NO_FORMAT = 0
    SCAN = 1
    PRINT = 2


class FormatType(IntEnum):
    """Conversion type of a compiled format."""

    NONE = 0
    UNSIGNED = 1
    SIGNED = 2
    ENUM = 3
    DOUBLE = 4
    STRING = 5
    PSEUDO = 6


class FormatFlag(IntFlag):
    """Modifier flags of a compiled format."""

    NONE = 0
    LEFT = 0x01        # -
    SIGN = 0x02        # +
    SPACE = 0x04       # ' '
    ALT = 0x08         # #
    ZERO = 0x10        # 0
    SKIP = 0x20        # *
    DEFAULT = 0x40     # ?
    COMPARE = 0x80     # =
    FIX_WIDTH = 0x100  # !


@dataclass(frozen=True)
class FormatDescriptor:
    """Fixed-layout part of a compiled format."""

    type: FormatType
    conv: str
    flags: FormatFlag = FormatFlag.NONE
    width: int = 0
    prec: int = -1
    info_length: int = 0

    @staticmethod
    def numpy_dtype() -> np.dtype:
        """Get the packed layout of a descriptor in the serialized stream."""
        return np.dtype([
            ('type', 'u1'),
            ('conv', 'u1'),
            ('flags', '<u2'),
            ('width', '<i2'),
            ('prec', '<i2'),
            ('infolen', '<u2'),
        ])

    def pack(self) -> bytes:
        record = np.array(
            [(self.type, ord(self.conv), self.flags, self.width, self.prec, self.info_length)],
            dtype=self.numpy_dtype())
        return record.tobytes()

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> 'FormatDescriptor':
        dtype = cls.numpy_dtype()
        record = np.frombuffer(data, dtype=dtype, count=1, offset=offset)[0]
        return cls(
            type=FormatType(int(record['type'])),
            conv=chr(int(record['conv'])),
            flags=FormatFlag(int(record['flags'])),
            width=int(record['width']),
            prec=int(record['prec']),
            info_length=int(record['infolen']),
        )

    @classmethod
    def size(cls) -> int:
        return cls.numpy_dtype().itemsize


# =============================================================================
# Compiled strings
# =============================================================================

@dataclass(frozen=True)
class Literal:
    """Literal payload bytes."""
    data: bytes


@dataclass(frozen=True)
class Control:
    """A control marker (skip or whitespace) inside a string."""
    code: Sentinel


@dataclass(frozen=True)
class Field:
    """A compiled format, optionally redirected to a named field."""
    format: FormatDescriptor
    source: str                       # format text after '%' for debugging
    info: bytes = b''
    name: Optional[str] = None
    address: Optional[bytes] = None


Instruction = Union[Literal, Control, Field]


def merge_literals(instructions: List[Instruction]) -> List[Instruction]:
    """Join adjacent literals into one."""
    merged: List[Instruction] = []
    for instr in instructions:
        if isinstance(instr, Literal) and merged and isinstance(merged[-1], Literal):
            merged[-1] = Literal(merged[-1].data + instr.data)
        else:
            merged.append(instr)
    return merged


def literal_bytes(instructions: List[Instruction]) -> bytes:
    """Concatenate the literal payload of a compiled string."""
    return b''.join(i.data for i in instructions if isinstance(i, Literal))


def print_string(instructions: List[Instruction],
                 mode: FormatMode = FormatMode.PRINT) -> str:
    """
    Render a compiled string back to protocol syntax.

    A literal '%' is doubled unless the string was compiled without formats.
    """
    out = []
    for instr in instructions:
        if isinstance(instr, Control):
            out.append("\\?" if instr.code == Sentinel.SKIP else "\\_")
        elif isinstance(instr, Field):
            if instr.name is not None:
                out.append(f"%({instr.name}){instr.source}")
            else:
                out.append(f"%{instr.source}")
        else:
            for b in instr.data:
                if b == 0x0D:
                    out.append("\\r")
                elif b == 0x0A:
                    out.append("\\n")
                elif b == ord('"'):
                    out.append('\\"')
                elif b == ord('\\'):
                    out.append("\\\\")
                elif b == ord('%') and mode != FormatMode.NO_FORMAT:
                    out.append("%%")
                elif (b & 0x7F) < 0x20 or (b & 0x7F) == 0x7F:
                    out.append(f"\\x{b:02x}")
                else:
                    out.append(chr(b))
    return ''.join(out)


def serialize_string(instructions: List[Instruction]) -> bytes:
    """Encode a compiled string, terminated by END."""
    output = bytearray()
    for instr in instructions:
        if isinstance(instr, Literal):
            for b in instr.data:
                if b in SENTINEL_VALUES:
                    output.append(Sentinel.ESCAPE)
                output.append(b)
        elif isinstance(instr, Control):
            output.append(instr.code)
        else:
            if instr.name is not None:
                # <format_field> name <eos> addrlen address formatstr <eos> descriptor info
                output.append(Sentinel.FORMAT_FIELD)
                output.extend(instr.name.encode('utf-8'))
                output.append(Sentinel.END)
                address = instr.address or b''
                output.extend(struct.pack('<H', len(address)))
                output.extend(address)
            else:
                output.append(Sentinel.FORMAT)
            output.extend(instr.source.encode('utf-8'))
            output.append(Sentinel.END)
            output.extend(instr.format.pack())
            output.extend(instr.info)
    output.append(Sentinel.END)
    return bytes(output)


def deserialize_string(data: bytes, offset: int = 0) -> Tuple[List[Instruction], int]:
    """Decode a compiled string, returning it and the offset after END."""
    instructions: List[Instruction] = []

    def read_cstring(pos: int) -> Tuple[str, int]:
        end = data.index(Sentinel.END, pos)
        return data[pos:end].decode('utf-8'), end + 1

    while True:
        b = data[offset]
        offset += 1
        if b == Sentinel.END:
            break
        if b == Sentinel.ESCAPE:
            instructions.append(Literal(data[offset:offset + 1]))
            offset += 1
        elif b in (Sentinel.SKIP, Sentinel.WHITESPACE):
            instructions.append(Control(Sentinel(b)))
        elif b in (Sentinel.FORMAT, Sentinel.FORMAT_FIELD):
            name = None
            address = None
            if b == Sentinel.FORMAT_FIELD:
                name, offset = read_cstring(offset)
                length = struct.unpack_from('<H', data, offset)[0]
                offset += 2
                address = bytes(data[offset:offset + length])
                offset += length
            source, offset = read_cstring(offset)
            descriptor = FormatDescriptor.unpack(data, offset)
            offset += FormatDescriptor.size()
            info = bytes(data[offset:offset + descriptor.info_length])
            offset += descriptor.info_length
            instructions.append(Field(descriptor, source, info, name, address))
        else:
            instructions.append(Literal(bytes([b])))

    return merge_literals(instructions), offset


# =============================================================================
# Programs
# =============================================================================

Operand = Union[int, List[Instruction]]


@dataclass
class Command:
    """One compiled command with its operands."""

    opcode: OpCode
    line: int = 0
    operands: List[Operand] = field(default_factory=list)


@dataclass
class Program:
    """Compiled instruction stream of one protocol or handler."""

    commands: List[Command] = field(default_factory=list)

    def emit(self, opcode: OpCode, line: int = 0) -> Command:
        """Start a new command."""
        command = Command(opcode, line)
        self.commands.append(command)
        return command

    def emit_number(self, value: int) -> None:
        """Append a u32 operand to the current command."""
        if value < 0 or value > 0xFFFFFFFF:
            raise ValueError(f"Operand {value} does not fit in u32")
        self.commands[-1].operands.append(value)

    def emit_string(self, instructions: List[Instruction]) -> None:
        """Append a compiled string operand to the current command."""
        self.commands[-1].operands.append(merge_literals(instructions))

    def __len__(self) -> int:
        return len(self.commands)

    def opcodes(self) -> List[OpCode]:
        return [c.opcode for c in self.commands]

    def strings(self) -> List[List[Instruction]]:
        """All string operands in command order."""
        return [op for c in self.commands for op in c.operands if isinstance(op, list)]

    def literal_payload(self) -> bytes:
        """Concatenated literal bytes of all string operands."""
        return b''.join(literal_bytes(s) for s in self.strings())

    def serialize(self) -> bytes:
        """Serialize to the byte stream consumed by the runtime engine."""
        output = bytearray()
        for command in self.commands:
            output.append(command.opcode)
            for operand in command.operands:
                if isinstance(operand, list):
                    output.extend(serialize_string(operand))
                else:
                    output.extend(struct.pack('<I', operand))
        output.append(OpCode.END)
        return bytes(output)

    def to_array(self) -> np.ndarray:
        """Serialized stream as a uint8 array for upload to the engine."""
        return np.frombuffer(self.serialize(), dtype=np.uint8)

    @classmethod
    def deserialize(cls, data: bytes) -> 'Program':
        """Decode a serialized stream."""
        program = cls()
        offset = 0
        while True:
            try:
                opcode = OpCode(data[offset])
            except ValueError:
                raise ValueError(f"Invalid opcode {data[offset]:#04x} at offset {offset}")
            offset += 1
            if opcode == OpCode.END:
                return program
            program.emit(opcode)
            for kind in OPERANDS[opcode]:
                if kind == 's':
                    string, offset = deserialize_string(data, offset)
                    program.emit_string(string)
                else:
                    program.emit_number(struct.unpack_from('<I', data, offset)[0])
                    offset += 4

    def disassemble(self) -> str:
        """Disassemble to human-readable format."""
        lines = []
        for index, command in enumerate(self.commands):
            operands = []
            for operand in command.operands:
                if isinstance(operand, list):
                    operands.append(f'"{print_string(operand)}"')
                else:
                    operands.append(str(operand))
            text = f"  {index:04d}: {command.opcode.name:12s} {' '.join(operands)}"
            if command.line:
                text = f"{text.rstrip():40s} ; line {command.line}"
            lines.append(text.rstrip())
        lines.append(f"  {len(self.commands):04d}: END")
        return "\n".join(lines)
