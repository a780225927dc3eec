"""
Per-stage log fragments and the merged run log.

Each executed unit leaves a fragment ``.log.<n><label>`` in the scratch
``tmp/logs`` directory. Once every stage is terminal the aggregator writes
``<outdir>/<prefix>/<prefix>.log``: a header with the run parameters, one
section per stage number holding that stage's fragments, the skipped stages
and the outcome.

Fragments are ordered by their ``(stage_number, label)`` key, never by the
order in which units happened to finish. Apart from the ``Date:`` and
``Completed:`` lines the merged log is a pure function of the configuration
and the fragments, so re-running on the same inputs reproduces it.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from metaprep.config import RunConfig
from metaprep.exceptions import MetaprepError


RULE = "=" * 60
THIN_RULE = "-" * 60

# RunConfig fields echoed into the log header, in order
HEADER_FIELDS = (
    ("prefix", "Sample prefix"),
    ("mode", "Mode"),
    ("library_layout", "Library layout"),
    ("reads1", "Reads (R1)"),
    ("reads2", "Reads (R2)"),
    ("qin", "Quality offset"),
    ("dedup", "De-duplication"),
    ("adapters", "Adapters"),
    ("artifacts", "Artifacts"),
    ("phix174ill", "PhiX reference"),
    ("foreign_genome_ref", "Foreign genome index"),
    ("kcontaminants", "k-mer size"),
    ("mink", "Minimum k-mer"),
    ("hdist", "Hamming distance"),
    ("ktrim", "k-mer trim end"),
    ("phred", "Trim quality"),
    ("minlength", "Minimum length"),
    ("mind", "Minimum identity"),
    ("maxindel", "Max indel"),
    ("bwr", "Bandwidth ratio"),
)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class LogFragment:
    """Metrics lines captured from one executed unit."""

    stage_number: int
    stage: str
    label: str
    lines: Tuple[str, ...] = ()

    @property
    def key(self) -> Tuple[int, str]:
        return (self.stage_number, self.label)

    @property
    def filename(self) -> str:
        return f".log.{self.stage_number}{self.label}"

    def render(self) -> str:
        body = list(self.lines)
        if self.label:
            body.insert(0, f"[{self.label.lstrip('_')}]")
        return "\n".join(body) + "\n" if body else ""

    def write(self, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / self.filename
        path.write_text(self.render(), encoding="utf-8")
        return path


class RunLog:
    """
    The run log file, opened once when the pipeline starts.

    Use as a context manager. The merged content is written exactly once,
    by :meth:`write_merged`; a second call is a programming error.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._handle = None
        self._written = False

    def __enter__(self) -> "RunLog":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, "w", encoding="utf-8")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._handle:
            self._handle.close()
            self._handle = None

    @property
    def written(self) -> bool:
        return self._written

    def write_merged(self, text: str) -> None:
        if self._handle is None:
            raise MetaprepError(f"Run log {self.path} is not open")
        if self._written:
            raise MetaprepError(f"Run log {self.path} has already been written")
        self._handle.write(text)
        self._handle.flush()
        self._written = True


def order_fragments(fragments: Iterable[LogFragment]) -> List[LogFragment]:
    """Sort fragments by stage number, then label (``""`` < ``_R1`` < ``_R2``)."""
    return sorted(fragments, key=lambda f: f.key)


class LogAggregator:
    """Builds the merged run log from stage fragments."""

    def __init__(self, config: RunConfig, titles: Optional[Dict[int, str]] = None):
        self.config = config
        self.titles = titles or {}

    def render_header(self, started: datetime) -> List[str]:
        lines = [RULE, f"metaprep preprocessing log: {self.config.prefix}", RULE]
        for key, name in HEADER_FIELDS:
            if key == "reads2" and not self.config.is_paired:
                continue
            lines.append(f"{name}: {getattr(self.config, key)}")
        lines.append(f"Date: {started.strftime(TIMESTAMP_FORMAT)}")
        return lines

    def render(
        self,
        fragments: Iterable[LogFragment],
        skipped: Sequence[str] = (),
        failure: Optional[str] = None,
        started: Optional[datetime] = None,
        completed: Optional[datetime] = None,
    ) -> str:
        started = started or datetime.now()
        completed = completed or datetime.now()

        lines = self.render_header(started)
        current = None
        for fragment in order_fragments(fragments):
            if fragment.stage_number != current:
                current = fragment.stage_number
                title = self.titles.get(current, fragment.stage)
                lines.extend(["", THIN_RULE, f"[{current}] {title}", THIN_RULE])
            text = fragment.render()
            if text:
                lines.extend(text.rstrip("\n").split("\n"))

        lines.append("")
        lines.append(THIN_RULE)
        lines.append(f"Skipped stages: {', '.join(skipped) if skipped else 'none'}")
        if failure:
            lines.append(f"FAILED: {failure}")
        lines.append(f"Completed: {completed.strftime(TIMESTAMP_FORMAT)}")
        return "\n".join(lines) + "\n"

    def merge(
        self,
        run_log: RunLog,
        fragments: Iterable[LogFragment],
        skipped: Sequence[str] = (),
        failure: Optional[str] = None,
        started: Optional[datetime] = None,
    ) -> str:
        """Render and write the merged log; returns the written text."""
        text = self.render(fragments, skipped=skipped, failure=failure, started=started)
        run_log.write_merged(text)
        return text
