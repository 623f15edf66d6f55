"""
Unit tests for the protocol Python API.

Tests for the registry, the context and the compiled protocol types.
"""

import os
import tempfile
import unittest
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from protoapi.context import Context
from protoapi.registry import ProtocolRegistry, split_path
from protoapi.types import CompiledProtocol, ProtocolSettings
from protocompiler import (CollectingDiagnostics, LoggingDiagnostics, Literal, OpCode,
                           StandardClient)
from protocompiler.errors import (ProtocolFileNotFound, InvalidProtocolFileError,
                                  ProtocolSyntaxError, UnusedHandlerError,
                                  UndefinedReferenceError, ValueRangeError)


class ProtocolDirTestCase(unittest.TestCase):
    """Base class providing a temporary protocol directory."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def write(self, name, text):
        path = os.path.join(self.dir, name)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(text)
        return path


class TestSearchPath(unittest.TestCase):
    """Test search path handling."""

    def test_default_is_current_directory(self):
        self.assertEqual(split_path(None), ['.'])

    def test_string_path(self):
        path = 'a' + os.pathsep + 'b;c'
        self.assertEqual(split_path(path), ['a', 'b', 'c'])

    def test_list_path(self):
        self.assertEqual(split_path([Path('a'), 'b']), ['a', 'b'])

    def test_empty_entries_dropped(self):
        self.assertEqual(split_path(';;'), ['.'])


class TestRegistry(ProtocolDirTestCase):
    """Test ProtocolRegistry caching."""

    def test_get_protocol(self):
        self.write('dev.proto', 'p { out "$1"; }')
        registry = ProtocolRegistry([self.dir])
        protocol = registry.get_protocol('dev.proto', 'p(X)')
        self.assertEqual(protocol.name, 'p(X)')
        self.assertEqual(protocol.parameters[1], 'X')

    def test_file_parsed_once(self):
        self.write('dev.proto', 'p { }')
        registry = ProtocolRegistry([self.dir])
        first = registry.load('dev.proto')
        self.write('dev.proto', 'q { }')
        second = registry.load('dev.proto')
        self.assertIs(first, second)
        self.assertEqual(len(registry), 1)
        self.assertIn('dev.proto', registry)

    def test_prefix_match(self):
        self.write('device.proto', 'p { }')
        registry = ProtocolRegistry([self.dir])
        registry.load('device.proto')
        self.assertIs(registry.load('device'), registry.load('device.proto'))

    def test_search_path_order(self):
        other = tempfile.TemporaryDirectory()
        self.addCleanup(other.cleanup)
        with open(os.path.join(other.name, 'dev.proto'), 'w') as f:
            f.write('second { }')
        self.write('dev.proto', 'first { }')
        registry = ProtocolRegistry([self.dir, other.name])
        self.assertEqual(registry.load('dev.proto').protocols[0].name, 'first')

    def test_absolute_path(self):
        path = self.write('dev.proto', 'p { }')
        registry = ProtocolRegistry(['/nonexistent'])
        self.assertTrue(registry.load(path).valid)

    def test_file_not_found(self):
        registry = ProtocolRegistry([self.dir])
        with self.assertRaises(ProtocolFileNotFound):
            registry.load('missing.proto')
        self.assertEqual(len(registry), 0)

    def test_invalid_file_remembered(self):
        self.write('bad.proto', 'p { out "x"; ')
        registry = ProtocolRegistry([self.dir])
        with self.assertRaises(ProtocolSyntaxError) as ctx:
            registry.load('bad.proto')
        self.assertIn('bad.proto', ctx.exception.filename)
        # fixing the file does not help, the parse result is cached
        self.write('bad.proto', 'p { }')
        with self.assertRaises(InvalidProtocolFileError):
            registry.get_protocol('bad.proto', 'p')

    def test_free(self):
        self.write('dev.proto', 'p { }')
        with ProtocolRegistry([self.dir]) as registry:
            registry.load('dev.proto')
            self.assertEqual(len(registry), 1)
        self.assertEqual(len(registry), 0)

    def test_reload_after_free(self):
        self.write('dev.proto', 'p { }')
        registry = ProtocolRegistry([self.dir])
        registry.load('dev.proto')
        registry.free()
        self.write('dev.proto', 'q { }')
        self.assertEqual(registry.load('dev.proto').protocols[0].name, 'q')


class TestContextCompile(ProtocolDirTestCase):
    """Test Context.compile()."""

    def make_context(self, **kwargs):
        self.diagnostics = CollectingDiagnostics()
        return Context(path=self.dir, diagnostics=self.diagnostics, **kwargs)

    def test_compile_simple(self):
        self.write('dev.proto', 'p { out "hello"; in "%d"; }')
        compiled = self.make_context().compile('dev.proto', 'p')
        self.assertIsInstance(compiled, CompiledProtocol)
        self.assertEqual(compiled.commands.opcodes(), [OpCode.OUT, OpCode.IN])
        self.assertEqual(compiled.handlers, {})

    def test_handlers(self):
        self.write('dev.proto', '''
            @init { out "init"; }
            p {
                @mismatch { in "ERR"; }
                out "x";
            }
        ''')
        compiled = self.make_context().compile('dev.proto', 'p')
        self.assertEqual(sorted(compiled.handlers), ['@init', '@mismatch'])
        self.assertEqual(compiled.handlers['@init'].literal_payload(), b'init')

    def test_unused_handler_reported(self):
        self.write('dev.proto', 'p { @foo { out "x"; } out "y"; }')
        ctx = self.make_context()
        with self.assertRaises(UnusedHandlerError):
            ctx.compile('dev.proto', 'p')
        self.assertTrue(any('@foo' in m for m in self.diagnostics.messages()))

    def test_unused_variable_not_fatal(self):
        self.write('dev.proto', 'unused = 1; p { out "y"; }')
        ctx = self.make_context()
        ctx.compile('dev.proto', 'p')
        self.assertEqual(self.diagnostics.errors, [])
        self.assertTrue(any('unused' in m for m in self.diagnostics.traces))

    def test_default_settings(self):
        self.write('dev.proto', 'p { out "y"; }')
        settings = self.make_context().compile('dev.proto', 'p').settings
        self.assertEqual(settings.lock_timeout, 5000)
        self.assertEqual(settings.reply_timeout, 1000)
        self.assertEqual(settings.poll_period, 1000)
        self.assertEqual(settings.in_terminator, [])
        self.assertFalse(settings.ignore_extra_input)

    def test_settings(self):
        self.write('dev.proto', '''
            terminator = CR LF;
            replyTimeout = 2000;
            p {
                outTerminator = ";";
                maxInput = 0x40;
                extraInput = ignore;
                out "y";
            }
        ''')
        settings = self.make_context().compile('dev.proto', 'p').settings
        self.assertEqual(settings.reply_timeout, 2000)
        self.assertEqual(settings.poll_period, 2000)
        self.assertEqual(settings.max_input, 64)
        self.assertEqual(settings.in_terminator, [Literal(b'\r\n')])
        self.assertEqual(settings.out_terminator, [Literal(b';')])
        self.assertTrue(settings.ignore_extra_input)
        self.assertEqual(self.diagnostics.traces, [])

    def test_bad_setting(self):
        self.write('dev.proto', 'p { extraInput = maybe; out "y"; }')
        with self.assertRaises(ValueRangeError):
            self.make_context().compile('dev.proto', 'p')

    def test_errors_reported_with_notes(self):
        self.write('dev.proto', 'p {\n  out $nothing;\n}')
        ctx = self.make_context()
        with self.assertRaises(UndefinedReferenceError):
            ctx.compile('dev.proto', 'p')
        messages = self.diagnostics.messages()
        self.assertIn("Undefined variable 'nothing' referenced", messages)
        self.assertIn("in command 'out'", messages)
        self.assertIn("in protocol 'p'", messages)
        lines = [line for line, _, _ in self.diagnostics.errors]
        self.assertEqual(lines[0], 2)

    def test_custom_client_fields(self):
        self.write('dev.proto', 'p { in "%(temp)f"; }')
        client = StandardClient({'temp': b'\x10'})
        compiled = self.make_context(client=client).compile('dev.proto', 'p')
        field = compiled.commands.strings()[0][0]
        self.assertEqual(field.address, b'\x10')

    def test_recursion_limit_setting(self):
        self.write('dev.proto', 'x = "a"; p { out $x; }')
        ctx = self.make_context(max_recursion_depth=5)
        compiled = ctx.compile('dev.proto', 'p')
        self.assertEqual(compiled.commands.literal_payload(), b'a')

    def test_context_manager_frees(self):
        self.write('dev.proto', 'p { out "y"; }')
        with self.make_context() as ctx:
            ctx.compile('dev.proto', 'p')
            self.assertEqual(len(ctx.registry), 1)
        self.assertEqual(len(ctx.registry), 0)


class TestCompiledProtocol(ProtocolDirTestCase):
    """Test the compiled protocol container."""

    def test_serialize_layout(self):
        self.write('dev.proto', 'p { @init { wait 1; } disconnect; }')
        compiled = Context(path=self.dir).compile('dev.proto', 'p')
        data = compiled.serialize()
        header = ProtocolSettings().pack()
        self.assertEqual(data[:len(header)], header)
        tail = bytes([0, 0, 0, OpCode.DISCONNECT, OpCode.END]) + b'@init\0'
        self.assertIn(tail, data)
        self.assertEqual(data[-1], 0)

    def test_save(self):
        self.write('dev.proto', 'p { out "y"; }')
        compiled = Context(path=self.dir).compile('dev.proto', 'p')
        path = os.path.join(self.dir, 'p.bin')
        compiled.save(path)
        with open(path, 'rb') as f:
            self.assertEqual(f.read(), compiled.serialize())
        self.assertEqual(compiled.to_array().nbytes, len(compiled.serialize()))

    def test_disassemble(self):
        self.write('dev.proto', 'p { @init { wait 1; } out "y"; }')
        compiled = Context(path=self.dir).compile('dev.proto', 'p')
        text = compiled.disassemble()
        self.assertIn('protocol p:', text)
        self.assertIn('handler @init:', text)

    def test_describe_settings(self):
        settings = ProtocolSettings(in_terminator=[Literal(b'\r\n')])
        described = settings.describe()
        self.assertEqual(described['inTerminator'], '"\\r\\n"')
        self.assertEqual(described['extraInput'], 'error')

    def test_describe_terminator_with_percent(self):
        self.write('dev.proto', 'terminator = "%"; p { out "y"; }')
        settings = Context(path=self.dir).compile('dev.proto', 'p').settings
        self.assertEqual(settings.in_terminator, [Literal(b'%')])
        self.assertEqual(settings.describe()['outTerminator'], '"%"')


class TestLoggingDiagnostics(unittest.TestCase):
    """Test the default diagnostics sink."""

    def test_errors_logged(self):
        diagnostics = LoggingDiagnostics()
        with self.assertLogs('protocompiler', level='ERROR') as logs:
            diagnostics.error(3, 'dev.proto', 'Unexpected')
        self.assertIn("'dev.proto' line 3: Unexpected", logs.output[0])

    def test_trace_is_debug(self):
        diagnostics = LoggingDiagnostics()
        with self.assertLogs('protocompiler', level='DEBUG') as logs:
            diagnostics.trace('Unused variable x')
        self.assertEqual(logs.records[0].levelname, 'DEBUG')


if __name__ == '__main__':
    unittest.main()
