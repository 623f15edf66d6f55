"""
Format and Instruction Stream Tests

Tests for the standard format converter and the serialized form of
compiled programs.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from protocompiler import (compile_source, StandardClient, StandardFormatConverter,
                           FormatDescriptor, FormatFlag, FormatMode, FormatType,
                           Literal, Control, Field, OpCode, Program, Sentinel,
                           print_string)
from protocompiler.bytecode import serialize_string, deserialize_string
from protocompiler.errors import FormatError


@pytest.fixture
def converter():
    return StandardFormatConverter()


# =============================================================================
# Format Converter Tests
# =============================================================================

class TestStandardFormatConverter:
    """printf/scanf style format parsing."""

    @pytest.mark.parametrize("source,conv,format_type", [
        ("%d", "d", FormatType.SIGNED),
        ("%i", "i", FormatType.SIGNED),
        ("%u", "u", FormatType.UNSIGNED),
        ("%x", "x", FormatType.UNSIGNED),
        ("%X", "X", FormatType.UNSIGNED),
        ("%b", "b", FormatType.UNSIGNED),
        ("%f", "f", FormatType.DOUBLE),
        ("%g", "g", FormatType.DOUBLE),
        ("%s", "s", FormatType.STRING),
        ("%c", "c", FormatType.STRING),
    ])
    def test_conversions(self, converter, source, conv, format_type):
        descriptor, consumed, info = converter.parse_format(source, FormatMode.PRINT)
        assert descriptor.conv == conv
        assert descriptor.type == format_type
        assert consumed == len(source)
        assert info == b""

    def test_flags_width_precision(self, converter):
        descriptor, consumed, _ = converter.parse_format("%-+08.3f rest", FormatMode.PRINT)
        assert descriptor.flags == FormatFlag.LEFT | FormatFlag.SIGN | FormatFlag.ZERO
        assert descriptor.width == 8
        assert descriptor.prec == 3
        assert consumed == 8

    def test_default_precision(self, converter):
        descriptor, _, _ = converter.parse_format("%d", FormatMode.PRINT)
        assert descriptor.width == 0
        assert descriptor.prec == -1

    def test_char_set(self, converter):
        descriptor, consumed, info = converter.parse_format("%[^]a-z]x", FormatMode.SCAN)
        assert descriptor.type == FormatType.STRING
        assert info == b"^]a-z\0"
        assert consumed == 8

    def test_enum(self, converter):
        descriptor, consumed, info = converter.parse_format("%{a|bb|c}", FormatMode.SCAN)
        assert descriptor.type == FormatType.ENUM
        assert info == b"a\0bb\0c\0"
        assert descriptor.info_length == len(info)
        assert consumed == 9

    def test_checksum(self, converter):
        descriptor, consumed, info = converter.parse_format("%<CRC8>", FormatMode.PRINT)
        assert descriptor.type == FormatType.PSEUDO
        assert info == b"crc8\0"
        assert consumed == 7

    @pytest.mark.parametrize("source", [
        "%",
        "%5",
        "%q",
        "%[abc",
        "%{a|b",
        "%{}",
        "%<nosuchsum>",
        "%99999d",
    ])
    def test_invalid_formats(self, converter, source):
        with pytest.raises(FormatError):
            converter.parse_format(source, FormatMode.SCAN)

    def test_skip_only_in_scan(self, converter):
        descriptor, _, _ = converter.parse_format("%*d", FormatMode.SCAN)
        assert descriptor.flags & FormatFlag.SKIP
        with pytest.raises(FormatError):
            converter.parse_format("%*d", FormatMode.PRINT)


# =============================================================================
# Descriptor Tests
# =============================================================================

class TestFormatDescriptor:
    """Fixed layout of descriptors in the stream."""

    def test_size(self):
        assert FormatDescriptor.size() == 10

    def test_pack_unpack(self):
        descriptor = FormatDescriptor(FormatType.ENUM, "{", FormatFlag.DEFAULT,
                                      width=3, prec=-1, info_length=6)
        data = descriptor.pack()
        assert len(data) == FormatDescriptor.size()
        assert data[0] == FormatType.ENUM
        assert data[1] == ord("{")
        assert FormatDescriptor.unpack(data) == descriptor


# =============================================================================
# Serialization Tests
# =============================================================================

class TestSerialization:
    """The byte stream consumed by the runtime engine."""

    def test_literal_colliding_with_sentinel_is_escaped(self):
        program = compile_source('p { out 0x01 "A" 0x1b; }', "p")
        assert program.serialize() == bytes([
            OpCode.OUT, Sentinel.ESCAPE, 0x01, ord("A"),
            Sentinel.ESCAPE, 0x1B, Sentinel.END, OpCode.END])

    def test_control_markers_are_not_escaped(self):
        data = serialize_string([Literal(b"a"), Control(Sentinel.SKIP),
                                 Control(Sentinel.WHITESPACE)])
        assert data == bytes([ord("a"), Sentinel.SKIP, Sentinel.WHITESPACE, Sentinel.END])

    def test_numbers_are_little_endian(self):
        program = compile_source("p { wait 500; event(1) 2; }", "p")
        assert program.serialize() == bytes([
            OpCode.WAIT, 0xF4, 0x01, 0, 0,
            OpCode.EVENT, 1, 0, 0, 0, 2, 0, 0, 0,
            OpCode.END])

    def test_field_layout(self):
        program = compile_source('p { in "%(x)2d"; }', "p",
                                 StandardClient({"x": b"\xaa\xbb"}))
        data = program.serialize()
        field = program.strings()[0][0]
        expected = (bytes([OpCode.IN, Sentinel.FORMAT_FIELD]) + b"x\0"
                    + b"\x02\x00\xaa\xbb" + b"2d\0" + field.format.pack()
                    + bytes([Sentinel.END, OpCode.END]))
        assert data == expected

    def test_deserialize(self):
        source = 'p { out "V=%.2f" cr; in "%{on|off}" "\\?"; wait 10; disconnect; }'
        program = compile_source(source, "p")
        decoded = Program.deserialize(program.serialize())
        assert decoded.opcodes() == program.opcodes()
        assert decoded.strings() == program.strings()
        assert decoded.commands[2].operands == [10]

    def test_deserialize_invalid_opcode(self):
        with pytest.raises(ValueError, match="Invalid opcode"):
            Program.deserialize(b"\x7f")

    def test_deserialize_string_offset(self):
        data = b"xx" + serialize_string([Literal(b"ab")]) + b"yy"
        string, offset = deserialize_string(data, 2)
        assert string == [Literal(b"ab")]
        assert data[offset:] == b"yy"

    def test_to_array(self):
        program = compile_source('p { out "hi"; }', "p")
        array = program.to_array()
        assert array.dtype == np.uint8
        assert array.tobytes() == program.serialize()


class TestPrintString:
    """Compiled strings rendered back to protocol syntax."""

    def test_print_string(self):
        program = compile_source(r'p { in "A\r\n\?%%\x01%5d" "\""; }', "p")
        assert print_string(program.strings()[0]) == r'A\r\n\?%%\x01%5d\"'

    def test_percent_plain_without_formats(self):
        string = [Literal(b"50%\r")]
        assert print_string(string, FormatMode.NO_FORMAT) == r"50%\r"
        assert print_string(string) == r"50%%\r"

    def test_disassemble(self):
        program = compile_source('p {\n out "a";\n wait 5;\n}', "p")
        text = program.disassemble()
        assert 'OUT' in text
        assert '"a"' in text
        assert "line 3" in text
        assert text.splitlines()[-1].endswith("END")
