"""
Integration tests for StreamProto.

Tests end-to-end compilation of the bundled demo protocol file.
"""

import contextlib
import io
import os
import shutil
import tempfile
import unittest
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from protoapi.context import Context
from protocompiler import (CollectingDiagnostics, Field, FormatType, Literal, OpCode,
                           Parser, StandardClient, compile_file)
from protocompiler.bytecode import literal_bytes
from protocompiler.errors import UndefinedReferenceError

PROTOCOL_DIR = Path(__file__).parent.parent / "protocols"


class TestDemoProtocols(unittest.TestCase):
    """Compile every protocol of protocols/demo.proto."""

    def setUp(self):
        self.diagnostics = CollectingDiagnostics()
        self.ctx = Context(path=str(PROTOCOL_DIR), diagnostics=self.diagnostics)

    def tearDown(self):
        self.ctx.free()

    def test_read_voltage(self):
        compiled = self.ctx.compile("demo.proto", "read_voltage(1)")
        self.assertEqual(compiled.commands.opcodes(), [OpCode.OUT, OpCode.IN])
        out, scan = compiled.commands.strings()
        self.assertEqual(out, [Literal(b"PS:VOLT? 1")])
        self.assertEqual(scan[0].format.type, FormatType.DOUBLE)
        self.assertEqual(compiled.settings.reply_timeout, 2000)
        self.assertEqual(compiled.settings.read_timeout, 200)
        self.assertEqual(compiled.settings.out_terminator, [Literal(b"\r\n")])
        self.assertEqual(compiled.handlers["@init"].literal_payload(), b"PS:INITOK")

    def test_set_voltage(self):
        compiled = self.ctx.compile("demo.proto", "set_voltage(2,V)")
        out = compiled.commands.strings()[0]
        self.assertEqual(out[0], Literal(b"PS:VOLT 2,"))
        self.assertIsInstance(out[1], Field)
        self.assertEqual(out[1].source, ".3f")
        self.assertEqual(out[2], Literal(b"V"))
        self.assertIn("@mismatch", compiled.handlers)

    def test_state(self):
        compiled = self.ctx.compile("demo.proto", "state")
        scan = compiled.commands.strings()[1]
        self.assertEqual(scan[0].info, b"OFF\0ON\0FAULT\0")
        self.assertTrue(compiled.settings.ignore_extra_input)

    def test_reset_inlines_state(self):
        compiled = self.ctx.compile("demo.proto", "reset")
        self.assertEqual(compiled.commands.opcodes(),
                         [OpCode.OUT, OpCode.WAIT, OpCode.OUT, OpCode.IN])
        self.assertFalse(compiled.settings.ignore_extra_input)

    def test_missing_argument(self):
        with self.assertRaises(UndefinedReferenceError):
            self.ctx.compile("demo.proto", "read_voltage")
        self.assertTrue(self.diagnostics.errors)

    def test_no_errors_reported(self):
        for name in ("read_voltage(1)", "set_voltage(1,mV)", "state", "reset"):
            self.ctx.compile("demo.proto", name)
        self.assertEqual(self.diagnostics.errors, [])

    def test_report(self):
        protocol_file = self.ctx.registry.load("demo.proto")
        text = protocol_file.report()
        for name in ("read_voltage", "set_voltage", "state", "reset"):
            self.assertIn(f"Protocol {name}", text)


class TestIdempotentParsing(unittest.TestCase):
    """Parsing the same file twice yields the same compiled output."""

    def test_two_registries(self):
        first = Context(path=str(PROTOCOL_DIR)).compile("demo.proto", "set_voltage(3,A)")
        second = Context(path=str(PROTOCOL_DIR)).compile("demo.proto", "set_voltage(3,A)")
        self.assertEqual(first.serialize(), second.serialize())

    def test_two_parsers(self):
        source = (PROTOCOL_DIR / "demo.proto").read_text(encoding="utf-8")
        client = StandardClient()
        programs = []
        for _ in range(2):
            protocol_file = Parser(source, "demo.proto").parse()
            instance = protocol_file.get_protocol("read_voltage(4)")
            programs.append(instance.get_commands(None, client).serialize())
        self.assertEqual(programs[0], programs[1])

    def test_instances_do_not_share_state(self):
        ctx = Context(path=str(PROTOCOL_DIR))
        a = ctx.compile("demo.proto", "read_voltage(1)")
        b = ctx.compile("demo.proto", "read_voltage(2)")
        self.assertNotEqual(a.commands.literal_payload(), b.commands.literal_payload())
        self.assertIsNot(a.protocol, b.protocol)


class TestDemoScript(unittest.TestCase):
    """The demo entry point works from any working directory."""

    def test_protocol_dir(self):
        import demo
        self.assertEqual(demo.protocol_dir().resolve(), PROTOCOL_DIR.resolve())

    def test_main_outside_source_root(self):
        import demo
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp)
        self.addCleanup(os.chdir, os.getcwd())
        os.chdir(tmp)
        with contextlib.redirect_stdout(io.StringIO()) as output:
            self.assertEqual(demo.main(), 0)
        self.assertIn("SUCCESS", output.getvalue())


class TestExampleFile(unittest.TestCase):
    """The variable-in-quotes example compiled from a file."""

    def test_example(self):
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp)
        path = os.path.join(tmp, "example.proto")
        with open(path, "w", encoding="utf-8") as f:
            f.write('x = "abc";  demo { out "$x" ; }\n')
        program = compile_file(path, "demo")
        self.assertEqual(program.opcodes(), [OpCode.OUT])
        self.assertEqual(literal_bytes(program.strings()[0]), b"abc")
        self.assertEqual(program.serialize(), bytes([OpCode.OUT]) + b"abc\0" + bytes([OpCode.END]))


if __name__ == '__main__':
    unittest.main()
