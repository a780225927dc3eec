"""Tests for executing a single stage unit."""

import os
import shutil
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from metaprep.exceptions import StageExecutionError
from metaprep.executor import COMMAND_LOG, COMMAND_SCRIPT, ProcessLauncher, StageExecutor
from metaprep.routing import FileRouter
from metaprep.tasks import DEDUP, QC_RAW, R1, R2, REPORT, TRIM, InputGroup

from fakes import FakeLauncher, make_config


def process_alive(pid):
    """True while ``pid`` exists and is not a zombie awaiting its parent."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        status = Path(f"/proc/{pid}/status").read_text()
    except OSError:
        return True
    return "State:\tZ" not in status


class TestStageExecutor(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.config = make_config(self.test_dir)
        self.router = FileRouter(self.config)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def executor(self, launcher):
        return StageExecutor(self.config, launcher=launcher, tool_resolver=lambda name: name)

    def test_successful_unit(self):
        launcher = FakeLauncher()
        executor = self.executor(launcher)
        (group,) = self.router.resolve(DEDUP, {})

        result = executor.run(DEDUP, group)

        workdir = self.config.run_dir / "tmp" / "2_dedup"
        self.assertEqual(result.stage, "dedup")
        self.assertEqual(result.exit_status, 0)
        self.assertEqual([h.role for h in result.outputs], [R1, R2])
        self.assertEqual(result.outputs[0].path, workdir / "sample_dedupe_R1.fq.gz")
        self.assertTrue(all(h.path.exists() for h in result.outputs))
        self.assertTrue((workdir / COMMAND_LOG).exists())
        self.assertIn("clumpify.sh", (workdir / COMMAND_SCRIPT).read_text())
        self.assertGreaterEqual(result.elapsed, 0.0)

    def test_fragment_holds_metrics_block(self):
        executor = self.executor(FakeLauncher())
        (group,) = self.router.resolve(DEDUP, {})
        result = executor.run(DEDUP, group)

        fragment = result.fragment
        self.assertEqual(fragment.key, (2, ""))
        self.assertTrue(fragment.lines[0].startswith("Reads In:"))
        self.assertTrue(fragment.lines[-1].startswith("Duplicates Found:"))
        self.assertNotIn("Total time", "\n".join(fragment.lines))

        fragment_file = executor.logs_dir / ".log.2"
        self.assertTrue(fragment_file.exists())
        self.assertEqual(fragment_file.read_text(), fragment.render())

    def test_per_file_unit_reads_fastqc_data(self):
        executor = self.executor(FakeLauncher())
        groups = self.router.resolve(QC_RAW, {})
        result = executor.run(QC_RAW, groups[1])

        workdir = self.config.run_dir / "tmp" / "1_qc_raw_R2"
        self.assertEqual(result.label, "_R2")
        self.assertEqual([h.role for h in result.outputs], [REPORT, REPORT])
        self.assertEqual(result.publish, (workdir / "sample_R2_fastqc.html", workdir / "sample_R2_fastqc.zip"))
        self.assertEqual(result.fragment.lines[0], ">>Basic Statistics\tpass")
        self.assertIn("Total Sequences\t1000", result.fragment.lines)
        self.assertTrue((executor.logs_dir / ".log.1_R2").exists())
        self.assertEqual(result.summary, "1,000 sequences, length 150, 45% GC")
        # extracted FastQC directory is a temporary
        self.assertFalse((workdir / "sample_R2_fastqc").exists())

    def test_temporaries_are_removed(self):
        launcher = FakeLauncher()
        executor = self.executor(launcher)
        group = InputGroup(label="", inputs={
            R1: self.router.raw_outputs()[0],
            R2: self.router.raw_outputs()[1],
        })
        result = executor.run(TRIM, group)

        workdir = self.config.run_dir / "tmp" / "3_trim"
        self.assertEqual(launcher.tools_called(), ["bbduk.sh", "bbduk.sh", "bbduk.sh"])
        self.assertEqual(list(workdir.glob("*_tmp.fq.gz")), [])
        self.assertEqual(len(result.outputs), 3)
        self.assertEqual(len([l for l in result.fragment.lines if l.startswith("Input:")]), 3)

    def test_non_zero_exit(self):
        executor = self.executor(FakeLauncher(fail_on="clumpify.sh", exit_code=3))
        (group,) = self.router.resolve(DEDUP, {})
        with self.assertRaises(StageExecutionError) as ctx:
            executor.run(DEDUP, group)
        error = ctx.exception
        self.assertEqual(error.stage, "dedup")
        self.assertEqual(error.exit_code, 3)
        self.assertEqual(error.log_path, self.config.run_dir / "tmp" / "2_dedup" / COMMAND_LOG)
        self.assertFalse((executor.logs_dir / ".log.2").exists())

    def test_chain_stops_at_first_failure(self):
        launcher = FakeLauncher(fail_on="bbduk.sh")
        executor = self.executor(launcher)
        group = InputGroup(label="", inputs={R1: self.router.raw_outputs()[0], R2: self.router.raw_outputs()[1]})
        with self.assertRaises(StageExecutionError):
            executor.run(TRIM, group)
        self.assertEqual(launcher.tools_called(), ["bbduk.sh"])

    def test_missing_declared_output(self):
        executor = self.executor(FakeLauncher(skip_outputs="clumpify.sh"))
        (group,) = self.router.resolve(DEDUP, {})
        with self.assertRaises(StageExecutionError) as ctx:
            executor.run(DEDUP, group)
        self.assertIn("sample_dedupe_R1.fq.gz", str(ctx.exception))
        self.assertEqual(ctx.exception.exit_code, 0)

    def test_missing_executable(self):
        launcher = MagicMock()
        launcher.run.side_effect = FileNotFoundError("clumpify.sh")
        executor = self.executor(launcher)
        (group,) = self.router.resolve(DEDUP, {})
        with self.assertRaises(StageExecutionError) as ctx:
            executor.run(DEDUP, group)
        self.assertIn("executable not found", str(ctx.exception))

    def test_file_system_error_becomes_stage_failure(self):
        executor = self.executor(FakeLauncher())
        (group,) = self.router.resolve(DEDUP, {})
        with patch("metaprep.executor.LogFragment.write", side_effect=OSError(28, "No space left on device")):
            with self.assertRaises(StageExecutionError) as ctx:
                executor.run(DEDUP, group)
        self.assertEqual(ctx.exception.stage, "dedup")
        self.assertIn("No space left on device", str(ctx.exception))
        self.assertEqual(ctx.exception.log_path, self.config.run_dir / "tmp" / "2_dedup" / COMMAND_LOG)

    def test_plan_does_not_run(self):
        launcher = FakeLauncher()
        executor = self.executor(launcher)
        (group,) = self.router.resolve(DEDUP, {})
        (cmd,) = executor.plan(DEDUP, group)
        self.assertEqual(cmd[0], "clumpify.sh")
        self.assertEqual(launcher.calls, [])


class TestProcessLauncher(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_streams_combined_output_to_log(self):
        launcher = ProcessLauncher()
        log_path = self.test_dir / COMMAND_LOG
        with open(log_path, "w") as log_file:
            code = launcher.run(["sh", "-c", "echo out; echo err 1>&2; exit 4"], self.test_dir, log_file)
        self.assertEqual(code, 4)
        self.assertEqual(sorted(log_path.read_text().split()), ["err", "out"])

    def test_terminate_stops_running_tool_and_its_children(self):
        # Like the BBTools wrappers: a shell script whose real work runs in a child
        script = self.test_dir / "wrapper.sh"
        script.write_text("#!/bin/sh\nsleep 30 &\necho $! > child.pid\nwait\n")
        pid_file = self.test_dir / "child.pid"
        launcher = ProcessLauncher()
        result = {}

        def run_tool():
            with open(self.test_dir / COMMAND_LOG, "w") as log_file:
                result["code"] = launcher.run(["sh", str(script)], self.test_dir, log_file)

        thread = threading.Thread(target=run_tool)
        thread.start()
        deadline = time.monotonic() + 10
        while not (pid_file.exists() and pid_file.read_text().strip()) and time.monotonic() < deadline:
            time.sleep(0.05)
        child = int(pid_file.read_text())

        started = time.monotonic()
        launcher.terminate_all()
        thread.join(timeout=10)

        self.assertFalse(thread.is_alive())
        self.assertLess(time.monotonic() - started, 4.0)
        self.assertEqual(result["code"], -15)
        deadline = time.monotonic() + 5
        while process_alive(child) and time.monotonic() < deadline:
            time.sleep(0.05)
        self.assertFalse(process_alive(child))

    def test_refuses_new_commands_after_terminate(self):
        launcher = ProcessLauncher()
        launcher.terminate_all()
        with open(self.test_dir / COMMAND_LOG, "w") as log_file:
            self.assertEqual(launcher.run(["sh", "-c", "exit 0"], self.test_dir, log_file), -15)


if __name__ == "__main__":
    unittest.main()
