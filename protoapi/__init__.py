"""
Protocol Python API

Provides the host interface for compiling protocols from protocol files.
"""

from .context import Context
from .registry import ProtocolRegistry
from .types import ProtocolSettings, CompiledProtocol

__all__ = [
    'Context',
    'ProtocolRegistry',
    'ProtocolSettings',
    'CompiledProtocol',
]
