"""Extraction of per-stage metrics from captured tool output.

Every external tool prints a block of read/base counts somewhere in its
output. A :class:`MetricsRule` names the start and end markers of such a
block; the extraction follows ``sed -n '/start/,/end/p'``: every line from a
line containing the start marker up to and including the next line
containing the end marker is kept, and the search restarts after it.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence


@dataclass(frozen=True)
class MetricsRule:
    """Start/end marker pair delimiting a metrics block."""

    start: str
    end: str
    include_end: bool = True


def extract_block(lines: Iterable[str], rule: MetricsRule) -> List[str]:
    """Return every line inside the ranges delimited by ``rule``."""
    selected = []
    inside = False
    for raw in lines:
        line = raw.rstrip("\n\r")
        if not inside:
            if rule.start in line:
                inside = True
                selected.append(line)
                # sed checks the end address only from the following line
            continue
        if rule.end in line:
            inside = False
            if rule.include_end:
                selected.append(line)
            continue
        selected.append(line)
    return selected


def extract_metrics(text: str, rules: Sequence[MetricsRule]) -> List[str]:
    """Apply each rule in turn to ``text`` and concatenate the blocks."""
    lines = text.splitlines()
    metrics = []
    for rule in rules:
        metrics.extend(extract_block(lines, rule))
    return metrics


def extract_blocks(text: str, rules: Sequence[MetricsRule]) -> List[List[str]]:
    """
    Blocks delimited by any of ``rules``, in the order they appear in ``text``.

    Unlike :func:`extract_metrics`, blocks of different rules stay
    interleaved as the tool printed them. A block left open at the end of
    the text runs to the last line, as with sed.
    """
    blocks = []
    current = None
    rule = None
    for raw in text.splitlines():
        line = raw.rstrip("\n\r")
        if current is None:
            for candidate in rules:
                if candidate.start in line:
                    rule = candidate
                    current = [line]
                    break
            continue
        if rule.end in line:
            if rule.include_end:
                current.append(line)
            blocks.append(current)
            current = None
            continue
        current.append(line)
    if current is not None:
        blocks.append(current)
    return blocks


def read_metrics_source(path: Path) -> str:
    """Read a metrics file written by a tool, tolerating odd encodings."""
    return Path(path).read_text(encoding="utf-8", errors="replace")


def parse_fastqc_basic_statistics(lines: Iterable[str]) -> dict:
    """Pull the headline numbers out of a FastQC 'Basic Statistics' block."""
    stats = {
        "total_sequences": 0,
        "sequence_length": "0",
        "gc_content": 0.0,
    }
    for line in lines:
        parts = line.strip().split("\t")
        if len(parts) < 2:
            continue
        if parts[0] == "Total Sequences":
            stats["total_sequences"] = int(parts[1])
        elif parts[0] == "Sequence length":
            stats["sequence_length"] = parts[1]
        elif parts[0] == "%GC":
            stats["gc_content"] = float(parts[1])
    return stats
