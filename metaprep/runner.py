"""Top-level run: validation, dry runs, driver invocation and reporting."""

import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

from metaprep.config import RunConfig, validate_config, write_config
from metaprep.discovery import find_tool
from metaprep.driver import PipelineDriver, PipelineOutcome
from metaprep.exceptions import MetaprepError
from metaprep.executor import StageExecutor, StageResult
from metaprep.logmerge import RunLog
from metaprep.progress import Colors, ProgressTracker, print_stage_summary
from metaprep.report import build_stage_table, report_path, total_elapsed, write_stage_report
from metaprep.routing import FileRouter
from metaprep.tasks import STAGES, FileHandle, TaskDescriptor


def required_tools(config: RunConfig) -> List[str]:
    """Executables needed by the stages active under ``config``."""
    tools = []
    for stage in STAGES:
        if not stage.is_active(config):
            continue
        for name in stage.tools(config):
            if name not in tools:
                tools.append(name)
    return tools


def validate_preflight(config: RunConfig, check_tools: bool = True) -> List[str]:
    """
    Validate configuration and tool availability before anything runs.

    Returns a list of error messages (empty if ready to run).
    """
    errors = validate_config(config)
    if check_tools:
        for name in required_tools(config):
            if find_tool(name, config.tool_dirs) is None:
                errors.append(f"Required executable not found: {name} (run 'metaprep setup' or use --tool-dir)")
    return errors


def plan_pipeline(config: RunConfig, executor: Optional[StageExecutor] = None) -> List[Dict[str, Any]]:
    """
    Resolve every stage without executing anything.

    Outputs of planned stages are assumed to appear in their scratch
    directories, so downstream routing is the same as in a real run.
    """
    executor = executor or StageExecutor(config)
    router = FileRouter(config)
    results: Dict[str, List[StageResult]] = {}
    plan = []
    for stage in STAGES:
        if not stage.is_active(config):
            results[stage.name] = [StageResult.placeholder(stage)]
            plan.append({"stage": stage, "active": False, "units": []})
            continue
        units = []
        stage_results = []
        for group in router.resolve(stage, results):
            cwd = executor.work_dir(stage, group.label)
            specs = stage.outputs(group.inputs, config)
            outputs = tuple(FileHandle(cwd / s.filename, s.role) for s in specs)
            units.append({"label": group.label, "commands": executor.plan(stage, group)})
            stage_results.append(StageResult(stage=stage.name, number=stage.number, label=group.label, outputs=outputs))
        results[stage.name] = stage_results
        plan.append({"stage": stage, "active": True, "units": units})
    return plan


def print_dry_run(config: RunConfig, plan: List[Dict[str, Any]]) -> None:
    """Print what would be executed in dry-run mode."""
    print("=" * 70)
    print("DRY RUN - No tools will be executed")
    print("=" * 70)
    print()
    print("Resolved settings:")
    print(f"  Prefix:         {config.prefix}")
    print(f"  Mode:           {config.mode}")
    print(f"  Layout:         {config.library_layout}")
    print(f"  Reads:          {', '.join(config.read_files)}")
    print(f"  Output dir:     {config.run_dir}")
    print(f"  De-duplication: {'enabled' if config.dedup else 'disabled'}")
    keep = [name for name, enabled in config.keep_temp_files.items() if enabled]
    print(f"  Keep tmp files: {', '.join(keep) if keep else 'none'}")
    print(f"  Threads:        {config.threads}")
    print(f"  Max memory:     {config.max_memory}")
    print(f"  Max workers:    {config.max_workers}")
    print()
    for entry in plan:
        stage: TaskDescriptor = entry["stage"]
        if not entry["active"]:
            print(f"  {Colors.dim('−')} [{stage.number}] {Colors.dim(stage.name)} {Colors.dim('(skipped)')}")
            continue
        print(f"  {Colors.cyan_bold('●')} [{stage.number}] {stage.name}: {stage.title}")
        for unit in entry["units"]:
            for cmd in unit["commands"]:
                tag = f"{unit['label'].lstrip('_')}: " if unit["label"] else ""
                print(f"      {tag}{shlex.join(cmd)}")
    print()


def print_failure_info(config: RunConfig, outcome: PipelineOutcome) -> None:
    failure = outcome.failure
    print()
    print(f"{Colors.red_bold('✗ ERROR')}: {failure}")
    print()
    print(f"{Colors.dim('Debug info:')}")
    print(f"  Run directory:  {config.run_dir}")
    print(f"  Run log:        {config.run_dir / f'{config.prefix}.log'}")
    print(f"  Scratch:        {config.run_dir / 'tmp'}")

    log_path = getattr(failure, "log_path", None)
    if log_path is not None and Path(log_path).exists():
        lines = Path(log_path).read_text(encoding="utf-8", errors="replace").strip().split("\n")
        print(f"  Tool output:    {log_path}")
        if lines and lines[0]:
            print()
            print(f"{Colors.dim('Last 10 lines of tool output:')}")
            for line in lines[-10:]:
                print(f"  {Colors.dim(line)}")
    print()


def run_pipeline(
    config: RunConfig,
    dry_run: bool = False,
    executor: Optional[StageExecutor] = None,
    check_tools: bool = True,
) -> int:
    """
    Run the preprocessing pipeline with the given configuration.

    Returns the exit code (0 for success).
    """
    errors = validate_preflight(config, check_tools=check_tools)
    if errors:
        print(f"\n{Colors.red_bold('ERROR')}: Pre-flight validation failed")
        print()
        for error in errors:
            print(f"  {Colors.dim('•')} {error}")
        print()
        print("Fix these issues before running the pipeline.")
        return 1

    if not config.is_paired and config.reads2:
        print(f"{Colors.yellow_bold('Warning')}: single-end layout, ignoring reads2 ({config.reads2})")

    if dry_run:
        print_dry_run(config, plan_pipeline(config, executor))
        return 0

    run_dir = config.run_dir
    try:
        run_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise MetaprepError(f"Cannot create output directory: {run_dir}\n{e}")

    write_config(config.to_dict(), run_dir / "effective_config.json")

    tracker = ProgressTracker(
        prefix=config.prefix,
        stage_defs=[(s.name, s.title) for s in STAGES],
        verbose=config.verbose,
    )
    if config.verbose:
        tracker.print_header()

    driver = PipelineDriver(config, executor=executor, tracker=tracker)
    with RunLog(run_dir / f"{config.prefix}.log") as run_log:
        outcome = driver.run(run_log)

    df = build_stage_table(outcome.states, outcome.results)
    tsv = write_stage_report(df, report_path(run_dir, config.prefix))

    if config.verbose:
        print_stage_summary(tracker.stages)

    if not outcome.succeeded:
        print_failure_info(config, outcome)
        return 1

    if config.verbose:
        elapsed = total_elapsed(df)
        print()
        print(f"{Colors.green_bold('✓')} Preprocessing finished" + (f" in {elapsed:.1f}s" if elapsed is not None else ""))
        print(f"  Run log:        {run_log.path}")
        print(f"  Stage report:   {tsv}")
        for path in outcome.published:
            print(f"  Output:         {path}")
    return 0
