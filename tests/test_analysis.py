import json
import os
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from analysis import AnalysisError, TraceRecorder
from helpers import make_interpreter, program
from hooks import StepContext
from interpreter import WSRuntimeError
from parser import DROP, DUP, EXIT, JMP, JZ, LABEL, PUSH, PUTN, SUB, Instruction

LOOP = program(
    (PUSH, 3),
    (LABEL, 0),
    (PUSH, 1),
    SUB,
    DUP,
    (JZ, 1),
    (JMP, 0),
    (LABEL, 1),
    DROP,
    EXIT,
)


class TestTraceRecorder(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "trace.json")

    def tearDown(self):
        self.tmp.cleanup()

    def _run(self, prog, recorder):
        interpreter, _ = make_interpreter(prog, observer=recorder)
        steps = interpreter.run()
        return steps

    def test_artifact_has_program_and_executions(self):
        recorder = TraceRecorder(LOOP, self.path)
        steps = self._run(LOOP, recorder)
        with open(self.path, encoding="utf-8") as handle:
            data = json.load(handle)
        self.assertEqual(set(data), {"program", "executions"})
        self.assertEqual(data["program"], LOOP.to_list())
        self.assertEqual(len(data["executions"]), steps)
        self.assertEqual(data["executions"][0], {"kind": "PUSH", "operand": 3})
        self.assertEqual(data["executions"][-1], {"kind": "EXIT", "operand": 0})
        self.assertEqual(recorder.flush_count, 1)

    def test_loop_repeats_are_recorded(self):
        recorder = TraceRecorder(LOOP, None)
        steps = self._run(LOOP, recorder)
        kinds = [ins.kind for ins in recorder.executions]
        self.assertEqual(len(kinds), steps)
        self.assertEqual(kinds.count(SUB), 3)
        self.assertEqual(kinds.count(JMP), 2)

    def test_back_pressure_with_tiny_channel(self):
        recorder = TraceRecorder(LOOP, self.path, capacity=1)
        steps = self._run(LOOP, recorder)
        self.assertEqual(len(recorder.executions), steps)

    def test_flushed_after_error(self):
        prog = program((PUSH, 1), PUTN, DROP, EXIT)
        recorder = TraceRecorder(prog, self.path)
        interpreter, _ = make_interpreter(prog, observer=recorder)
        with self.assertRaises(WSRuntimeError):
            interpreter.run()
        self.assertTrue(recorder.closed)
        with open(self.path, encoding="utf-8") as handle:
            data = json.load(handle)
        self.assertEqual(len(data["executions"]), interpreter.steps)
        self.assertEqual(data["executions"][-1]["kind"], DROP)

    def test_close_is_idempotent(self):
        recorder = TraceRecorder(LOOP, self.path)
        recorder.close()
        recorder.close()
        self.assertEqual(recorder.flush_count, 1)
        self.assertEqual(recorder.executions, [])

    def test_rejects_events_after_close(self):
        recorder = TraceRecorder(LOOP, None)
        recorder.close()
        with self.assertRaises(AnalysisError):
            recorder.instruction_executed(StepContext(0, 0, Instruction(PUSH, 3)))

    def test_incomplete_trace_is_not_readable(self):
        recorder = TraceRecorder(LOOP, None)
        try:
            with self.assertRaises(AnalysisError):
                recorder.executions
            with self.assertRaises(AnalysisError):
                recorder.profile()
        finally:
            recorder.close()

    def test_unwritable_path(self):
        recorder = TraceRecorder(LOOP, os.path.join(self.tmp.name, "missing", "trace.json"))
        with self.assertRaises(AnalysisError):
            recorder.close()

    def test_runtime_error_survives_unwritable_path(self):
        prog = program((PUSH, 1), DROP, DROP, EXIT)
        recorder = TraceRecorder(prog, os.path.join(self.tmp.name, "missing", "trace.json"))
        interpreter, _ = make_interpreter(prog, observer=recorder)
        with self.assertRaises(WSRuntimeError) as cm:
            interpreter.run()
        self.assertEqual(cm.exception.rule, DROP)
        self.assertIsInstance(cm.exception.observer_error, AnalysisError)
        self.assertTrue(recorder.closed)

    def test_successful_run_reports_unwritable_path(self):
        recorder = TraceRecorder(LOOP, os.path.join(self.tmp.name, "missing", "trace.json"))
        interpreter, _ = make_interpreter(LOOP, observer=recorder)
        with self.assertRaises(AnalysisError):
            interpreter.run()


class TestProfile(unittest.TestCase):

    def test_counts(self):
        recorder = TraceRecorder(LOOP, None)
        interpreter, _ = make_interpreter(LOOP, observer=recorder)
        steps = interpreter.run()
        profile = recorder.profile()
        self.assertEqual(profile.total, steps)
        self.assertEqual(len(profile.pc_counts), len(LOOP))
        self.assertEqual(int(profile.pc_counts[0]), 1)
        self.assertEqual(int(profile.pc_counts[3]), 3)
        self.assertEqual(profile.kind_counts[SUB], 3)
        self.assertEqual(profile.kind_counts[LABEL], 4)
        self.assertEqual(sum(profile.kind_counts.values()), steps)

    def test_hottest_and_text(self):
        recorder = TraceRecorder(LOOP, None)
        interpreter, _ = make_interpreter(LOOP, observer=recorder)
        interpreter.run()
        profile = recorder.profile()
        hot = profile.hottest(2)
        self.assertEqual(hot, [(1, 3), (2, 3)])
        text = profile.format_text()
        self.assertTrue(text.startswith(f"Executed {profile.total} instructions"))
        self.assertIn("Hottest instructions:", text)
        self.assertIn("SUB", text)

    def test_empty_trace(self):
        recorder = TraceRecorder(program(), None)
        recorder.close()
        profile = recorder.profile()
        self.assertEqual(profile.total, 0)
        self.assertEqual(profile.kind_counts, {})
        self.assertEqual(profile.hottest(), [])


if __name__ == "__main__":
    unittest.main()
