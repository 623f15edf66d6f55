"""
Protocol Context

The main interface for compiling protocols from protocol files.
"""

import logging
from typing import Dict, Optional

from protocompiler import (Client, Diagnostics, LoggingDiagnostics, Program, Protocol,
                           StandardClient, FormatConverter, HANDLERS,
                           MAX_RECURSION_DEPTH)
from protocompiler.errors import ProtocolError

from .registry import ProtocolRegistry, SearchPath
from .types import (CompiledProtocol, ProtocolSettings, NUMBER_SETTINGS,
                    EXTRA_INPUT_CHOICES)

logger = logging.getLogger(__name__)


class Context:
    """
    Protocol compilation context.

    Holds the registry of parsed files, the command compiler and the
    diagnostics sink.

    Example:
        ctx = Context(path="protocols")
        compiled = ctx.compile("demo.proto", "read_value(1)")
        print(compiled.disassemble())
    """

    def __init__(self,
                 path: SearchPath = None,
                 client: Optional[Client] = None,
                 converter: Optional[FormatConverter] = None,
                 diagnostics: Optional[Diagnostics] = None,
                 max_recursion_depth: int = MAX_RECURSION_DEPTH):
        """
        Initialize the context.

        Args:
            path: Directories searched for protocol files, as a list or a
                  string separated by os.pathsep or ';'
            client: Command compiler, the standard one if not given
            converter: Format converter, the standard one if not given
            diagnostics: Receives error messages, logged if not given
            max_recursion_depth: Limit for nested variable references
        """
        self.registry = ProtocolRegistry(path, converter, max_recursion_depth)
        self.client = client or StandardClient()
        self.diagnostics = diagnostics or LoggingDiagnostics()

    def __enter__(self) -> 'Context':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.free()

    def get_protocol(self, filename: str, protocol_and_params: str) -> Protocol:
        """
        Instantiate a protocol without compiling it.

        Errors are reported to the diagnostics sink and raised.
        """
        try:
            return self.registry.get_protocol(filename, protocol_and_params)
        except ProtocolError as e:
            e.report(self.diagnostics)
            raise

    def compile(self, filename: str, protocol_and_params: str) -> CompiledProtocol:
        """
        Compile a protocol with its settings and handlers.

        Args:
            filename: Protocol file, relative to the search path or absolute
            protocol_and_params: "name" or "name(arg1,arg2,...)"

        Returns:
            The compiled protocol

        Raises:
            ProtocolError: After reporting it to the diagnostics sink
        """
        protocol = self.get_protocol(filename, protocol_and_params)
        try:
            settings = self.read_settings(protocol)
            handlers: Dict[str, Program] = {}
            for name in HANDLERS:
                program = protocol.get_commands(name, self.client)
                if program is not None:
                    handlers[name] = program
            commands = protocol.get_commands(None, self.client) or Program()
            protocol.check_unused(self.diagnostics)
        except ProtocolError as e:
            e.report(self.diagnostics)
            raise
        logger.debug("compiled protocol %s: %d commands, %d handlers",
                     protocol.name, len(commands), len(handlers))
        return CompiledProtocol(protocol.name, protocol, settings, commands, handlers)

    def read_settings(self, protocol: Protocol) -> ProtocolSettings:
        """Read the settings variables of a protocol instance."""
        settings = ProtocolSettings()
        for variable, attribute in NUMBER_SETTINGS:
            value = protocol.get_number_variable(variable)
            if value is not None:
                setattr(settings, attribute, value)
        if protocol.lookup("pollperiod") is None:
            settings.poll_period = settings.reply_timeout

        terminator = protocol.get_string_variable("terminator")
        if terminator is not None:
            settings.in_terminator = list(terminator)
            settings.out_terminator = list(terminator)
        for variable, attribute in (("interminator", "in_terminator"),
                                    ("outterminator", "out_terminator"),
                                    ("separator", "separator")):
            value = protocol.get_string_variable(variable)
            if value is not None:
                setattr(settings, attribute, value)

        extra_input = protocol.get_enum_variable("extrainput", EXTRA_INPUT_CHOICES)
        if extra_input is not None:
            settings.ignore_extra_input = bool(extra_input)
        return settings

    def free(self) -> None:
        """Drop all parsed protocol files."""
        self.registry.free()
