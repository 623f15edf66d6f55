"""
StreamProto - Protocol File Compiler

Compiles stream device protocol files into instruction streams for the
runtime protocol engine.

Example:
    from protoapi import Context

    ctx = Context(path="protocols")
    compiled = ctx.compile("demo.proto", "read_voltage(1)")
    print(compiled.disassemble())
"""

from protoapi.context import Context
from protoapi.registry import ProtocolRegistry
from protoapi.types import ProtocolSettings, CompiledProtocol
from protocompiler import compile_source, compile_file, Program, ProtocolError

__version__ = "0.1.0"
__author__ = "StreamProto Team"

__all__ = [
    # Main API
    'Context',
    'ProtocolRegistry',

    # Types
    'ProtocolSettings',
    'CompiledProtocol',

    # Compiler
    'compile_source',
    'compile_file',
    'Program',
    'ProtocolError',
]


def version() -> str:
    """Get StreamProto version string."""
    return __version__
