"""Tests for run log naming, outcome classification and supervisor logging."""

from __future__ import annotations

import io
import json
import re
import tempfile
import unittest
from pathlib import Path

import conftest  # noqa: F401  (import side-effect: sys.path bootstrap)

from simrunner import runlog


class TestRunLogNaming(unittest.TestCase):
    def test_name_uses_timestamp_and_slot(self) -> None:
        p = runlog.run_log_path(Path("/var/log/sim"), 3, ts="20250102_030405")
        self.assertEqual(p, Path("/var/log/sim/simulator_20250102_030405_run3.log"))

    def test_default_timestamp_shape(self) -> None:
        p = runlog.run_log_path(Path("logs"), 12)
        self.assertRegex(p.name, r"^simulator_\d{8}_\d{6}_run12\.log$")

    def test_exit_status_is_appended(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log = Path(td) / "simulator_x_run1.log"
            log.write_text("sim output\n", encoding="utf-8")
            runlog.append_exit_status(log, 124)
            self.assertEqual(log.read_text(encoding="utf-8"), "sim output\nExit status: 124\n")


class TestClassifyExit(unittest.TestCase):
    def test_outcomes(self) -> None:
        self.assertIs(runlog.classify_exit(0), runlog.RunOutcome.SUCCEEDED)
        self.assertIs(runlog.classify_exit(124), runlog.RunOutcome.TIMED_OUT)
        self.assertIs(runlog.classify_exit(1), runlog.RunOutcome.FAILED)
        self.assertIs(runlog.classify_exit(137), runlog.RunOutcome.FAILED)
        self.assertIs(runlog.classify_exit(127), runlog.RunOutcome.FAILED)

    def test_format_hours(self) -> None:
        self.assertEqual(runlog.format_hours(5), "5h")
        self.assertEqual(runlog.format_hours(5.0), "5h")
        self.assertEqual(runlog.format_hours(0.5), "0.5h")


class TestSupervisorLog(unittest.TestCase):
    def test_lines_go_to_stream_and_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "supervisor.log"
            buf = io.StringIO()
            emit = runlog.SupervisorLog(path, stream=buf)
            emit("Slot 1 starting new run")
            emit("Slot 1 restarting next run...")

            out = buf.getvalue().splitlines()
            self.assertEqual(len(out), 2)
            self.assertTrue(re.match(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] Slot 1 starting new run$", out[0]))
            self.assertEqual(path.read_text(encoding="utf-8").splitlines(), out)

    def test_stream_only(self) -> None:
        buf = io.StringIO()
        runlog.SupervisorLog(None, stream=buf)("hello")
        self.assertTrue(buf.getvalue().endswith(" hello\n"))


class TestSlotState(unittest.TestCase):
    def test_state_file_is_rewritten(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            runlog.write_slot_state(Path(td), 2, {"attempt": 1, "running": True})
            path = runlog.write_slot_state(Path(td), 2, {"attempt": 1, "running": False, "exit_code": 0})
            self.assertEqual(path.name, "slot2_state.json")
            state = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(state["slot"], 2)
            self.assertEqual(state["version"], 1)
            self.assertFalse(state["running"])
            self.assertEqual(state["exit_code"], 0)
            self.assertFalse(path.with_suffix(".json.tmp").exists())


if __name__ == "__main__":
    unittest.main()
