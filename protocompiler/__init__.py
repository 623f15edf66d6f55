"""
Protocol Compiler Package

Compiles stream device protocol files into instruction streams for the
runtime protocol engine.
"""

from .tokens import Token, TokenType
from .lexer import Lexer, Reader
from .parser import Parser, ProtocolFile, split_instantiation
from .protocol import Binding, Protocol, MAX_PARAMETERS, MAX_RECURSION_DEPTH
from .bytecode import (Command, Control, Field, FormatDescriptor, FormatFlag,
                       FormatMode, FormatType, Literal, OpCode, Program, Sentinel,
                       print_string)
from .codegen import ArgStream, CodeGenerator
from .formats import FormatConverter, StandardFormatConverter
from .client import Client, Diagnostics, LoggingDiagnostics, CollectingDiagnostics
from .commands import StandardClient, HANDLERS
from .errors import (ProtocolError, ProtocolFileNotFound, InvalidProtocolFileError,
                     ProtocolSyntaxError, UndefinedReferenceError, ValueRangeError,
                     GarbageError, FormatError, UnusedHandlerError,
                     RecursionDepthError)

__version__ = "0.1.0"
__all__ = [
    "Token",
    "TokenType",
    "Lexer",
    "Reader",
    "Parser",
    "ProtocolFile",
    "split_instantiation",
    "Binding",
    "Protocol",
    "MAX_PARAMETERS",
    "MAX_RECURSION_DEPTH",
    "Command",
    "Control",
    "Field",
    "FormatDescriptor",
    "FormatFlag",
    "FormatMode",
    "FormatType",
    "Literal",
    "OpCode",
    "Program",
    "Sentinel",
    "print_string",
    "ArgStream",
    "CodeGenerator",
    "FormatConverter",
    "StandardFormatConverter",
    "Client",
    "Diagnostics",
    "LoggingDiagnostics",
    "CollectingDiagnostics",
    "StandardClient",
    "HANDLERS",
    "ProtocolError",
    "ProtocolFileNotFound",
    "InvalidProtocolFileError",
    "ProtocolSyntaxError",
    "UndefinedReferenceError",
    "ValueRangeError",
    "GarbageError",
    "FormatError",
    "UnusedHandlerError",
    "RecursionDepthError",
]


def compile_source(source: str, protocol: str, client: Client = None,
                   filename: str = "<string>") -> Program:
    """
    Compile the commands of one protocol defined in source text.

    Handlers are compiled too so that errors in them and handlers
    with unknown names are reported, but only the commands are returned.

    Args:
        source: Protocol file text
        protocol: Protocol name, optionally with "(arg1,arg2,...)"
        client: Command compiler, the standard one if not given
        filename: Name used in error messages

    Returns:
        Program ready for the runtime engine

    Raises:
        ProtocolError: If parsing or compilation fails
    """
    parser = Parser(source, filename)
    protocol_file = parser.parse()
    instance = protocol_file.get_protocol(protocol)
    client = client or StandardClient()
    for name in HANDLERS:
        instance.get_commands(name, client)
    program = instance.get_commands(None, client)
    instance.check_unused()
    return program if program is not None else Program()


def compile_file(filepath: str, protocol: str, client: Client = None) -> Program:
    """
    Compile the commands of one protocol defined in a protocol file.

    Args:
        filepath: Path to the protocol file
        protocol: Protocol name, optionally with "(arg1,arg2,...)"

    Returns:
        Program ready for the runtime engine
    """
    with open(filepath, 'r', encoding='utf-8') as f:
        source = f.read()
    return compile_source(source, protocol, client, filepath)
