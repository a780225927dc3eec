"""
Pipeline driver: schedules stage units on a thread pool, publishes outputs
and runs the cleanup tasks once every stage is terminal.
"""

import shutil
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from metaprep.config import RunConfig
from metaprep.exceptions import MetaprepError, RoutingError
from metaprep.executor import StageExecutor, StageResult
from metaprep.logmerge import LogAggregator, RunLog
from metaprep.progress import ProgressTracker
from metaprep.routing import FileRouter
from metaprep.tasks import (
    MERGE_LOGS,
    PUBLISH_TMP,
    RAW_SOURCE,
    STAGES,
    FileHandle,
    InputGroup,
    TaskDescriptor,
)


class StageState:
    """Stage lifecycle: pending -> activated|skipped -> running -> succeeded|failed."""

    PENDING = "pending"
    ACTIVATED = "activated"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    TERMINAL = (SKIPPED, SUCCEEDED, FAILED)


@dataclass
class PipelineOutcome:
    """Everything the driver knows once the run is over."""

    states: Dict[str, str]
    results: Dict[str, List[StageResult]]
    failure: Optional[MetaprepError] = None
    published: List[Path] = field(default_factory=list)
    log_text: str = ""

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def skipped(self) -> List[str]:
        return [name for name, state in self.states.items() if state == StageState.SKIPPED]

    def all_results(self) -> List[StageResult]:
        """Executed unit results in stage/label order."""
        flat = [r for results in self.results.values() for r in results if not r.skipped]
        return sorted(flat, key=lambda r: (r.number, r.label))


class PipelineDriver:
    """Runs the stage graph for one RunConfig."""

    def __init__(
        self,
        config: RunConfig,
        executor: Optional[StageExecutor] = None,
        router: Optional[FileRouter] = None,
        tracker: Optional[ProgressTracker] = None,
        stages: Sequence[TaskDescriptor] = STAGES,
    ):
        self.config = config
        self.executor = executor or StageExecutor(config)
        self.router = router or FileRouter(config)
        self.stages = list(stages)
        self.tracker = tracker or ProgressTracker(
            prefix=config.prefix,
            stage_defs=[(s.name, s.title) for s in self.stages],
            verbose=config.verbose,
        )
        self._lock = threading.Lock()
        self.states: Dict[str, str] = {}
        self.results: Dict[str, List[StageResult]] = {}
        self._remaining: Dict[str, int] = {}
        self._failure: Optional[MetaprepError] = None
        self._published: List[Path] = []

    # ------------------------------------------------------------------ state

    def _set_state(self, name: str, state: str) -> None:
        with self._lock:
            self.states[name] = state

    def _predecessors(self, stage: TaskDescriptor) -> List[str]:
        return [p for p in stage.predecessors(self.config) if p != RAW_SOURCE]

    def _is_ready(self, stage: TaskDescriptor) -> bool:
        return all(self.states.get(p) in StageState.TERMINAL for p in self._predecessors(stage))

    def _fail(self, stage: TaskDescriptor, error: MetaprepError) -> None:
        self._set_state(stage.name, StageState.FAILED)
        self.tracker.complete_stage(stage.name, "failed", str(error))
        if self._failure is None:
            self._failure = error

    # ------------------------------------------------------------- scheduling

    def _run_unit(self, stage: TaskDescriptor, group: InputGroup) -> StageResult:
        with self._lock:
            first = self.states[stage.name] == StageState.ACTIVATED
            if first:
                self.states[stage.name] = StageState.RUNNING
        if first:
            self.tracker.start_stage(stage.name, "running")
        if group.label:
            self.tracker.log(f"started {', '.join(h.path.name for h in group.files)}", f"{stage.name}{group.label}")
        return self.executor.run(stage, group)

    def _schedule_ready(self, pool: ThreadPoolExecutor, futures: Dict[Future, Tuple[TaskDescriptor, str]]) -> None:
        progress = True
        while progress and self._failure is None:
            progress = False
            for stage in self.stages:
                if self.states[stage.name] != StageState.PENDING or not self._is_ready(stage):
                    continue
                progress = True

                if not stage.is_active(self.config):
                    self._set_state(stage.name, StageState.SKIPPED)
                    self.results[stage.name] = [StageResult.placeholder(stage)]
                    self.tracker.complete_stage(stage.name, "skipped", "not active for this run")
                    continue

                self._set_state(stage.name, StageState.ACTIVATED)
                try:
                    groups = self.router.resolve(stage, self.results)
                except RoutingError as e:
                    self._fail(stage, e)
                    break

                self.results[stage.name] = []
                self._remaining[stage.name] = len(groups)
                for group in groups:
                    future = pool.submit(self._run_unit, stage, group)
                    futures[future] = (stage, group.label)

    def _abort(self, futures: Dict[Future, Tuple[TaskDescriptor, str]]) -> None:
        """Stop everything after the first failure."""
        for future in futures:
            future.cancel()
        self.executor.launcher.terminate_all()

    def _stage_succeeded(self, stage: TaskDescriptor) -> None:
        self._set_state(stage.name, StageState.SUCCEEDED)
        self.results[stage.name] = [self.publish(r) for r in self.results[stage.name]]
        elapsed = sum(r.elapsed for r in self.results[stage.name])
        summaries = [f"{r.label.lstrip('_')}: {r.summary}" if r.label else r.summary
                     for r in self.results[stage.name] if r.summary]
        message = f"{elapsed:.1f}s"
        if summaries:
            message += f", {'; '.join(summaries)}"
        self.tracker.complete_stage(stage.name, "succeeded", message)

    def execute(self) -> None:
        """Run every stage to a terminal state (or until the first failure)."""
        self.states = {stage.name: StageState.PENDING for stage in self.stages}
        self.results = {}
        futures: Dict[Future, Tuple[TaskDescriptor, str]] = {}

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            try:
                while True:
                    self._schedule_ready(pool, futures)
                    if self._failure is not None:
                        self._abort(futures)
                    if not futures:
                        break

                    done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                    for future in done:
                        stage, label = futures.pop(future)
                        if future.cancelled():
                            continue
                        try:
                            result = future.result()
                        except MetaprepError as e:
                            if self.states[stage.name] != StageState.FAILED:
                                self._fail(stage, e)
                            self._abort(futures)
                            continue

                        if self.states[stage.name] == StageState.FAILED:
                            continue
                        self.results[stage.name].append(result)
                        self._remaining[stage.name] -= 1
                        if self._remaining[stage.name] == 0:
                            self._stage_succeeded(stage)
            except BaseException:
                self._abort(futures)
                raise

        # Stages whose units were cancelled never reached a terminal state
        for stage in self.stages:
            if self.states[stage.name] in (StageState.ACTIVATED, StageState.RUNNING):
                self._set_state(stage.name, StageState.FAILED)
                self.tracker.complete_stage(stage.name, "failed", "cancelled")

    # ------------------------------------------------------------ publication

    def publish(self, result: StageResult) -> StageResult:
        """Move a unit's published outputs into the run directory."""
        if not result.publish:
            return result
        run_dir = self.config.run_dir
        moved = {}
        for path in result.publish:
            dest = run_dir / path.name
            shutil.move(str(path), str(dest))
            moved[path] = dest
            self._published.append(dest)
        outputs = tuple(FileHandle(moved.get(h.path, h.path), h.role) for h in result.outputs)
        return replace(result.with_outputs(outputs), publish=tuple(moved.values()))

    def publish_intermediates(self) -> List[Path]:
        """Copy the FASTQ outputs of intermediate stages into the run directory."""
        copied = []
        for stage in self.stages:
            if not stage.intermediate or self.states.get(stage.name) != StageState.SUCCEEDED:
                continue
            for result in self.results.get(stage.name, []):
                for handle in result.outputs:
                    if handle.path is None:
                        continue
                    dest = self.config.run_dir / handle.path.name
                    shutil.copy2(handle.path, dest)
                    copied.append(dest)
        self._published.extend(copied)
        return copied

    # ---------------------------------------------------------------- cleanup

    def merge_logs(self, run_log: RunLog, started: datetime) -> str:
        """Write the merged run log from the fragments of succeeded stages."""
        fragments = [
            r.fragment
            for name, results in self.results.items()
            if self.states.get(name) == StageState.SUCCEEDED
            for r in results
            if r.fragment is not None
        ]
        skipped = [s.name for s in self.stages if self.states.get(s.name) == StageState.SKIPPED]
        aggregator = LogAggregator(self.config, titles={s.number: s.title for s in self.stages})
        failure = str(self._failure) if self._failure is not None else None
        return aggregator.merge(run_log, fragments, skipped=skipped, failure=failure, started=started)

    def remove_scratch(self) -> None:
        scratch = self.executor.scratch_dir
        if scratch.exists():
            shutil.rmtree(scratch)

    def run(self, run_log: RunLog) -> PipelineOutcome:
        """Execute the graph, then the cleanup tasks."""
        started = datetime.now()
        self.config.run_dir.mkdir(parents=True, exist_ok=True)

        self.execute()

        if self._failure is None and PUBLISH_TMP.is_active(self.config):
            self.tracker.start_stage(PUBLISH_TMP.name, PUBLISH_TMP.title)
            copied = self.publish_intermediates()
            self.tracker.complete_stage(PUBLISH_TMP.name, "succeeded", f"{len(copied)} file(s)")

        log_text = ""
        if MERGE_LOGS.is_active(self.config):
            log_text = self.merge_logs(run_log, started)

        if self._failure is None:
            self.remove_scratch()
        else:
            self.tracker.log(
                f"scratch files kept for inspection: {self.executor.scratch_dir}"
            )

        return PipelineOutcome(
            states=dict(self.states),
            results=dict(self.results),
            failure=self._failure,
            published=list(self._published),
            log_text=log_text,
        )
