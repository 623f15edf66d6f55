"""
Format Converters

Parses '%' format specifiers found in command strings into format
descriptors.

    format := '%' [flags] [width] ['.' prec] conv [info]
"""

from abc import ABC, abstractmethod
from typing import Dict, Tuple

from .bytecode import FormatDescriptor, FormatFlag, FormatMode, FormatType
from .errors import FormatError


class FormatConverter(ABC):
    """Interface of the format-converter collaborator."""

    @abstractmethod
    def parse_format(self, source: str, mode: FormatMode) -> Tuple[FormatDescriptor, int, bytes]:
        """
        Parse the format at the start of source.

        Args:
            source: Text starting with '%' (a field name is already removed)
            mode: SCAN for input strings, PRINT for output strings

        Returns:
            The descriptor, the number of characters consumed including
            the '%', and the info string (NUL terminated or empty)

        Raises:
            FormatError: If the format is not valid
        """
        pass


FLAG_CHARS: Dict[str, FormatFlag] = {
    '-': FormatFlag.LEFT,
    '+': FormatFlag.SIGN,
    ' ': FormatFlag.SPACE,
    '#': FormatFlag.ALT,
    '0': FormatFlag.ZERO,
    '*': FormatFlag.SKIP,
    '?': FormatFlag.DEFAULT,
    '=': FormatFlag.COMPARE,
    '!': FormatFlag.FIX_WIDTH,
}

CONVERSIONS: Dict[str, FormatType] = {
    'd': FormatType.SIGNED,
    'i': FormatType.SIGNED,
    'r': FormatType.SIGNED,
    'u': FormatType.UNSIGNED,
    'o': FormatType.UNSIGNED,
    'x': FormatType.UNSIGNED,
    'X': FormatType.UNSIGNED,
    'b': FormatType.UNSIGNED,
    'D': FormatType.UNSIGNED,
    'f': FormatType.DOUBLE,
    'e': FormatType.DOUBLE,
    'E': FormatType.DOUBLE,
    'g': FormatType.DOUBLE,
    'G': FormatType.DOUBLE,
    's': FormatType.STRING,
    'c': FormatType.STRING,
    '[': FormatType.STRING,
    '{': FormatType.ENUM,
    '<': FormatType.PSEUDO,
}

CHECKSUMS = frozenset([
    'sum', 'sum8', 'sum16', 'sum32', 'nsum', 'negsum', '-sum',
    'notsum', '~sum', 'xor', 'xor7', 'crc8', 'crc16', 'crc32',
    'ccitt8', 'ccitt16', 'ccitt16a', 'jamcrc', 'adler32',
    'hexsum8', 'lrc', 'hexlrc', 'modbus', 'leybold', 'brkscryo',
])


class StandardFormatConverter(FormatConverter):
    """printf/scanf style formats with enum, char-set and checksum extensions."""

    def parse_format(self, source: str, mode: FormatMode) -> Tuple[FormatDescriptor, int, bytes]:
        if not source.startswith('%'):
            raise FormatError(f"Format must start with '%': {source}")

        pos = 1
        flags = FormatFlag.NONE
        while pos < len(source) and source[pos] in FLAG_CHARS:
            flags |= FLAG_CHARS[source[pos]]
            pos += 1

        start = pos
        while pos < len(source) and source[pos].isdigit():
            pos += 1
        width = int(source[start:pos]) if pos > start else 0

        prec = -1
        if pos < len(source) and source[pos] == '.':
            pos += 1
            start = pos
            while pos < len(source) and source[pos].isdigit():
                pos += 1
            prec = int(source[start:pos]) if pos > start else 0

        if width > 0x7FFF or prec > 0x7FFF:
            raise FormatError(f"Field width or precision too large: {source[:pos]}")

        if pos >= len(source):
            raise FormatError(f"Missing conversion character: {source}")
        conv = source[pos]
        pos += 1

        if conv not in CONVERSIONS:
            raise FormatError(f"Unknown format conversion character '{conv}'")
        format_type = CONVERSIONS[conv]

        if flags & FormatFlag.SKIP and mode != FormatMode.SCAN:
            raise FormatError("Use of skip modifier '*' only allowed in input formats")

        info = b''
        if conv == '[':
            info, pos = self._char_set(source, pos)
        elif conv == '{':
            info, pos = self._enum(source, pos)
        elif conv == '<':
            info, pos = self._checksum(source, pos)

        descriptor = FormatDescriptor(
            type=format_type,
            conv=conv,
            flags=flags,
            width=width,
            prec=prec,
            info_length=len(info),
        )
        return descriptor, pos, info

    def _char_set(self, source: str, pos: int) -> Tuple[bytes, int]:
        start = pos
        if pos < len(source) and source[pos] == '^':
            pos += 1
        if pos < len(source) and source[pos] == ']':
            pos += 1
        end = source.find(']', pos)
        if end < 0:
            raise FormatError(f"Missing ']' after %[ format: {source}")
        return source[start:end].encode('utf-8') + b'\0', end + 1

    def _enum(self, source: str, pos: int) -> Tuple[bytes, int]:
        end = source.find('}', pos)
        if end < 0:
            raise FormatError(f"Missing '}}' after %{{ format: {source}")
        choices = source[pos:end].split('|')
        if not any(choices):
            raise FormatError("Empty enum format %{}")
        return '\0'.join(choices).encode('utf-8') + b'\0', end + 1

    def _checksum(self, source: str, pos: int) -> Tuple[bytes, int]:
        end = source.find('>', pos)
        if end < 0:
            raise FormatError(f"Missing '>' after %< format: {source}")
        name = source[pos:end].lower()
        if name not in CHECKSUMS:
            raise FormatError(f"Unknown checksum algorithm '{source[pos:end]}'")
        return name.encode('utf-8') + b'\0', end + 1
