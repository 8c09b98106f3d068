#!/usr/bin/env python3
"""
CLI tests
Argument handling, exit codes and traceback output
"""

import io
import json
import tempfile
import unittest
import sys
from pathlib import Path
from unittest import mock

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bfstream import INPUT_PROMPT, _line_buffered_input, build_parser, run_cli, run_repl
from extensions import RuntimeServices


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.dir = Path(self.tmp.name)

    def write(self, name, data):
        path = self.dir / name
        if isinstance(data, bytes):
            path.write_bytes(data)
        else:
            path.write_text(data, encoding="utf-8")
        return str(path)

    def invoke(self, argv, stdin=b""):
        stdout = io.TextIOWrapper(io.BytesIO(), encoding="utf-8")
        stderr = io.StringIO()
        fake_stdin = io.TextIOWrapper(io.BytesIO(stdin), encoding="utf-8")
        with mock.patch.object(sys, "stdout", stdout), \
                mock.patch.object(sys, "stderr", stderr), \
                mock.patch.object(sys, "stdin", fake_stdin):
            code = run_cli(argv)
            stdout.flush()
        return code, stdout.buffer.getvalue(), stderr.getvalue()

    def test_source_mode(self):
        code, out, err = self.invoke(["-source", "+++++++++[>++++++++<-]>."])
        self.assertEqual(code, 0)
        self.assertEqual(out, b"H")
        self.assertEqual(err, "")

    def test_program_file_with_input_file(self):
        program = self.write("echo.bf", "read two bytes\n,.\n,.\n")
        data = self.write("input.bin", b"ok")
        code, out, _ = self.invoke([program, "--input", data])
        self.assertEqual(code, 0)
        self.assertEqual(out, b"ok")

    def test_input_from_stdin(self):
        code, out, _ = self.invoke(["-source", ",+."], stdin=b"a")
        self.assertEqual(code, 0)
        self.assertEqual(out, b"b")

    def test_program_from_stdin(self):
        code, out, _ = self.invoke(["-"], stdin=b"++++++++[>++++++<-]>+.\n")
        self.assertEqual(code, 0)
        self.assertEqual(out, b"1")

    def test_structure_error_exit_code(self):
        program = self.write("bad.bf", "+\n]\n")
        code, _, err = self.invoke([program])
        self.assertEqual(code, 1)
        self.assertIn("Traceback (most recent call last):", err)
        self.assertIn("line 2, column 1", err)
        self.assertIn("BFStructureError", err)

    def test_traceback_json(self):
        code, _, err = self.invoke(["-source", "+[,]", "--traceback-json"])
        self.assertEqual(code, 1)
        payload = err[err.index("{"):]
        data = json.loads(payload)
        self.assertEqual(data["error"]["type"], "BFInputError")
        self.assertEqual(data["traceback"][0]["ledger_index"], 1)

    def test_step_limit(self):
        code, _, err = self.invoke(["-source", "+[]", "--max-steps", "20"])
        self.assertEqual(code, 1)
        self.assertIn("StepLimitExceeded", err)

    def test_dump_tape(self):
        code, _, err = self.invoke(["-source", "++>+>-", "--dump-tape"])
        self.assertEqual(code, 0)
        self.assertIn("tape[0..2] pointer=2", err)
        self.assertIn("2 1 -1", err)

    def test_missing_program(self):
        code, _, err = self.invoke([str(self.dir / "nope.bf")])
        self.assertEqual(code, 1)
        self.assertIn("Failed to read", err)

    def test_missing_input(self):
        code, _, err = self.invoke(["-source", "+", "--input", str(self.dir / "nope.bin")])
        self.assertEqual(code, 1)
        self.assertIn("Failed to read", err)

    def test_source_flag_needs_program(self):
        code, _, err = self.invoke(["-source"])
        self.assertEqual(code, 1)
        self.assertIn("-source requires a program string", err)

    def test_extension_flag(self):
        ext = self.write("shout.py", (
            "import sys\n"
            "def bfstream_register(ext):\n"
            "    ext.on_event('program_end', lambda interp: print('steps', interp.steps, file=sys.stderr))\n"
        ))
        code, _, err = self.invoke(["-source", "++", "--ext", ext])
        self.assertEqual(code, 0)
        self.assertIn("steps 2", err)

    def test_bad_extension(self):
        code, _, err = self.invoke(["-source", "+", "--ext", str(self.dir / "gone.py")])
        self.assertEqual(code, 1)
        self.assertIn("ExtensionError", err)

    def test_parser_defaults(self):
        args = build_parser().parse_args(["prog.bf"])
        self.assertEqual(args.extensions, [])
        self.assertIsNone(args.max_steps)
        self.assertFalse(args.verbose)



class TestRepl(unittest.TestCase):

    def repl(self, lines, services=None, max_steps=None):
        stdout = io.TextIOWrapper(io.BytesIO(), encoding="utf-8")
        stderr = io.StringIO()
        answers = list(lines) + [EOFError()]
        with mock.patch("builtins.input", side_effect=answers) as fake_input, \
                mock.patch.object(sys, "stdout", stdout), \
                mock.patch.object(sys, "stderr", stderr):
            code = run_repl(False, services or RuntimeServices(), max_steps)
            stdout.flush()
        self.prompts = [c.args[0] for c in fake_input.call_args_list]
        return code, stdout.buffer.getvalue(), stderr.getvalue()

    def recorder(self):
        events = []
        services = RuntimeServices()
        registry = services.hook_registry
        registry.on_event("program_start", lambda interp: events.append("start"), priority=0, ext_name="t")
        registry.on_event("program_end", lambda interp: events.append("end"), priority=0, ext_name="t")
        registry.on_event(
            "on_error", lambda interp, error: events.append(type(error).__name__), priority=0, ext_name="t"
        )
        return services, events

    def test_loop_spans_lines(self):
        code, out, err = self.repl(["+++[", ">+<-]", ">."])
        self.assertEqual(code, 0)
        self.assertIn(b"\x03", out)
        self.assertEqual(err, "")

    def test_recovers_after_stray_loop_end(self):
        code, out, err = self.repl(["+", "]", "+++."])
        self.assertEqual(code, 0)
        self.assertIn("BFStructureError", err)
        # the failed engine is discarded, so the cell starts from zero again
        self.assertIn(b"\x03", out)
        self.assertNotIn(b"\x04", out)

    def test_eof_inside_open_loop(self):
        code, _, err = self.repl(["+["])
        self.assertEqual(code, 1)
        self.assertIn("Unterminated loop", err)

    def test_input_prompts_for_a_line(self):
        code, out, _ = self.repl([",.", "A"])
        self.assertEqual(code, 0)
        self.assertIn(b"A", out)
        self.assertEqual(self.prompts[1], INPUT_PROMPT)

    def test_lifecycle_events(self):
        services, events = self.recorder()
        code, _, _ = self.repl(["+++[-]"], services=services)
        self.assertEqual(code, 0)
        self.assertEqual(events, ["start", "end"])

    def test_error_events_then_fresh_start(self):
        services, events = self.recorder()
        code, _, _ = self.repl(["]", "+"], services=services)
        self.assertEqual(code, 0)
        self.assertEqual(events, ["start", "BFStructureError", "start", "end"])

    def test_unterminated_loop_reports_error_event(self):
        services, events = self.recorder()
        code, _, _ = self.repl(["+["], services=services)
        self.assertEqual(code, 1)
        self.assertEqual(events, ["start", "BFStructureError"])

    def test_line_buffered_input(self):
        with mock.patch("builtins.input", side_effect=["hi", EOFError()]):
            read = _line_buffered_input("in> ")
            self.assertEqual([read(), read(), read()], [ord("h"), ord("i"), 10])
            self.assertIsNone(read())


if __name__ == '__main__':
    unittest.main()
