"""
Execution of one stage unit: run its command chain in a scratch directory,
capture tool output, extract metrics and clean up.
"""

import os
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, TextIO, Tuple

from metaprep.config import RunConfig
from metaprep.discovery import make_tool_resolver
from metaprep.exceptions import StageExecutionError
from metaprep.logmerge import LogFragment
from metaprep.metrics import extract_metrics, read_metrics_source
from metaprep.progress import Colors, is_tty
from metaprep.tasks import FileHandle, InputGroup, TaskDescriptor


COMMAND_LOG = ".command.log"
COMMAND_SCRIPT = ".command.sh"


@dataclass(frozen=True)
class StageResult:
    """Outcome of one executed unit (or the placeholder of a skipped stage)."""

    stage: str
    number: int
    label: str = ""
    outputs: Tuple[FileHandle, ...] = ()
    fragment: Optional[LogFragment] = None
    exit_status: Optional[int] = None
    elapsed: float = 0.0
    publish: Tuple[Path, ...] = ()
    summary: str = ""
    skipped: bool = False

    @classmethod
    def placeholder(cls, stage: TaskDescriptor) -> "StageResult":
        return cls(stage=stage.name, number=stage.number, skipped=True)

    def with_outputs(self, outputs: Tuple[FileHandle, ...]) -> "StageResult":
        return replace(self, outputs=tuple(outputs))


def stream_output_to_file_and_console(
    proc: subprocess.Popen,
    log_file: TextIO,
    verbose: bool = False,
    prefix: str = "",
) -> int:
    """
    Stream subprocess output to the log file (verbatim) and optionally the console.

    Returns the process exit code.
    """
    def reader_thread(stream: TextIO):
        try:
            for line in iter(stream.readline, ''):
                if not line:
                    break
                log_file.write(line)
                log_file.flush()

                if verbose:
                    timestamp = datetime.now().strftime("%H:%M:%S")
                    raw_line = line.rstrip('\n\r')
                    if is_tty():
                        formatted = f"{Colors.dim(f'[{timestamp}]')} {prefix}{raw_line}\n"
                    else:
                        formatted = f"[{timestamp}] {prefix}{raw_line}\n"
                    sys.stdout.write(formatted)
                    sys.stdout.flush()
        finally:
            stream.close()

    thread = None
    if proc.stdout:
        thread = threading.Thread(target=reader_thread, args=(proc.stdout,), daemon=True)
        thread.start()

    proc.wait()

    if thread is not None:
        thread.join(timeout=5.0)

    return proc.returncode


class ProcessLauncher:
    """
    Starts external tools and keeps track of the ones still running.

    Each tool runs in its own process group: the BBTools and FastQC entry
    points are wrapper scripts that start java as a child, and the whole
    group has to go when the run is cancelled.

    :meth:`terminate_all` is called by the driver on the first failure; any
    command started after that returns immediately with -15 (SIGTERM).
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self._procs = set()
        self._lock = threading.Lock()
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def run(self, cmd: List[str], cwd: Path, log_file: TextIO, prefix: str = "") -> int:
        with self._lock:
            if self._terminated:
                return -15
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,  # Merge stderr into stdout for ordering
                cwd=str(cwd),
                text=True,
                bufsize=1,  # Line buffered
                start_new_session=True,
            )
            self._procs.add(proc)
        try:
            return stream_output_to_file_and_console(proc, log_file, verbose=self.verbose, prefix=prefix)
        finally:
            with self._lock:
                self._procs.discard(proc)

    def terminate_all(self) -> None:
        with self._lock:
            self._terminated = True
            procs = list(self._procs)
        for proc in procs:
            # The group outlives the wrapper while its children still run
            try:
                os.killpg(proc.pid, signal.SIGTERM)
            except ProcessLookupError:
                continue


class StageExecutor:
    """Runs stage units inside ``<outdir>/<prefix>/tmp/<n>_<name><label>/``."""

    def __init__(
        self,
        config: RunConfig,
        launcher: Optional[ProcessLauncher] = None,
        tool_resolver: Optional[Callable[[str], str]] = None,
    ):
        self.config = config
        self.launcher = launcher or ProcessLauncher(verbose=False)
        self.resolve_tool = tool_resolver or make_tool_resolver(config.tool_dirs)

    @property
    def scratch_dir(self) -> Path:
        return self.config.run_dir / "tmp"

    @property
    def logs_dir(self) -> Path:
        return self.scratch_dir / "logs"

    def work_dir(self, stage: TaskDescriptor, label: str = "") -> Path:
        return self.scratch_dir / f"{stage.number}_{stage.name}{label}"

    def plan(self, stage: TaskDescriptor, group: InputGroup) -> List[List[str]]:
        """Command chain the unit would run (used for dry runs)."""
        cwd = self.work_dir(stage, group.label)
        outputs = {s.key: cwd / s.filename for s in stage.outputs(group.inputs, self.config)}
        return stage.commands(group.inputs, outputs, self.config, self.resolve_tool)

    def run(self, stage: TaskDescriptor, group: InputGroup) -> StageResult:
        """Run one unit; every failure surfaces as StageExecutionError."""
        try:
            return self._run(stage, group)
        except OSError as e:
            log_path = self.work_dir(stage, group.label) / COMMAND_LOG
            raise StageExecutionError(
                stage.name,
                f"file system error: {e}",
                label=group.label,
                log_path=log_path if log_path.exists() else None,
            )

    def _run(self, stage: TaskDescriptor, group: InputGroup) -> StageResult:
        label = group.label
        cwd = self.work_dir(stage, label)
        cwd.mkdir(parents=True, exist_ok=True)

        specs = stage.outputs(group.inputs, self.config)
        outputs = {s.key: cwd / s.filename for s in specs}
        commands = stage.commands(group.inputs, outputs, self.config, self.resolve_tool)

        (cwd / COMMAND_SCRIPT).write_text(
            "\n".join(shlex.join(cmd) for cmd in commands) + "\n", encoding="utf-8"
        )

        log_path = cwd / COMMAND_LOG
        start = time.monotonic()
        exit_status = 0
        with open(log_path, "w", encoding="utf-8") as log_file:
            for cmd in commands:
                tool = Path(cmd[0]).name
                try:
                    exit_status = self.launcher.run(cmd, cwd, log_file, prefix=f"[{stage.name}{label}] ")
                except FileNotFoundError:
                    raise StageExecutionError(
                        stage.name, f"executable not found: {cmd[0]}", label=label, log_path=log_path
                    )
                except OSError as e:
                    raise StageExecutionError(
                        stage.name, f"cannot start {tool}: {e}", label=label, log_path=log_path
                    )
                if exit_status != 0:
                    raise StageExecutionError(
                        stage.name,
                        f"{tool} exited with status {exit_status} (see {log_path})",
                        label=label,
                        exit_code=exit_status,
                        log_path=log_path,
                    )

        if stage.finalize is not None:
            try:
                stage.finalize(group.inputs, outputs, self.config)
            except OSError as e:
                raise StageExecutionError(stage.name, f"finalising outputs: {e}", label=label, log_path=log_path)

        missing = [spec.filename for spec in specs if not outputs[spec.key].exists()]
        if missing:
            raise StageExecutionError(
                stage.name,
                f"declared output(s) not produced: {', '.join(missing)}",
                label=label,
                exit_code=exit_status,
                log_path=log_path,
            )

        lines = self.collect_metrics(stage, group, cwd, log_path)
        fragment = LogFragment(stage_number=stage.number, stage=stage.name, label=label, lines=tuple(lines))
        fragment.write(self.logs_dir)

        summary = stage.summarise(lines) if stage.summarise is not None and lines else ""

        self.remove_temporaries(cwd, stage.temporaries(group.inputs, self.config))
        elapsed = time.monotonic() - start

        return StageResult(
            stage=stage.name,
            number=stage.number,
            label=label,
            outputs=tuple(FileHandle(outputs[s.key], s.role) for s in specs),
            fragment=fragment,
            exit_status=exit_status,
            elapsed=elapsed,
            publish=tuple(outputs[s.key] for s in specs if s.publish),
            summary=summary,
        )

    def collect_metrics(self, stage: TaskDescriptor, group: InputGroup, cwd: Path, log_path: Path) -> List[str]:
        """Metrics lines from the stage's metrics file, or its captured output."""
        if stage.metrics_source is not None:
            source = cwd / stage.metrics_source(group.inputs)
        else:
            source = log_path
        if not source.exists():
            return []
        text = read_metrics_source(source)
        if stage.metrics_parser is not None:
            return stage.metrics_parser(text, self.config)
        return extract_metrics(text, stage.metrics(self.config))

    @staticmethod
    def remove_temporaries(cwd: Path, patterns: List[str]) -> None:
        for pattern in patterns:
            for path in cwd.glob(pattern):
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
