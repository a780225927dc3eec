"""Tabular run report: one row per executed unit, written as TSV."""

from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from metaprep.executor import StageResult
from metaprep.tasks import STAGES


REPORT_COLUMNS = [
    "stage_number",
    "stage",
    "label",
    "status",
    "exit_status",
    "elapsed_s",
    "outputs",
]


def build_stage_table(
    states: Dict[str, str],
    results: Dict[str, List[StageResult]],
) -> pd.DataFrame:
    """
    Build a DataFrame describing every stage of the run.

    Executed stages get one row per unit; stages that never ran (skipped,
    or not reached after a failure) get a single row with empty columns.
    """
    rows = []
    for stage in STAGES:
        status = states.get(stage.name, "pending")
        units = [r for r in results.get(stage.name, []) if not r.skipped]
        if not units:
            rows.append({
                "stage_number": stage.number,
                "stage": stage.name,
                "label": "",
                "status": status,
                "exit_status": None,
                "elapsed_s": None,
                "outputs": "",
            })
            continue
        for result in units:
            rows.append({
                "stage_number": stage.number,
                "stage": stage.name,
                "label": result.label.lstrip("_"),
                "status": status,
                "exit_status": result.exit_status,
                "elapsed_s": round(result.elapsed, 2),
                "outputs": ",".join(h.path.name for h in result.outputs if h.path is not None),
            })

    df = pd.DataFrame(rows, columns=REPORT_COLUMNS)
    df["exit_status"] = pd.array([row["exit_status"] for row in rows], dtype="Int64")
    return df.sort_values(["stage_number", "label"], kind="stable").reset_index(drop=True)


def write_stage_report(df: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False)
    return path


def report_path(run_dir: Path, prefix: str) -> Path:
    return Path(run_dir) / f"{prefix}_stages.tsv"


def total_elapsed(df: pd.DataFrame) -> Optional[float]:
    """Summed wall-clock time of all executed units, or None if nothing ran."""
    elapsed = df["elapsed_s"].dropna()
    if elapsed.empty:
        return None
    return float(elapsed.sum())
