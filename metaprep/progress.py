"""Progress tracking and stage display utilities for the metaprep CLI."""

import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple


def is_tty() -> bool:
    """Check if stdout is a TTY."""
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


# ANSI color codes
class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"

    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_PURPLE = "\033[95m"
    BRIGHT_CYAN = "\033[96m"

    @classmethod
    def colorize(cls, text: str, *codes: str) -> str:
        """Apply color codes to text if TTY, otherwise return plain text."""
        if not is_tty():
            return text
        return f"{''.join(codes)}{text}{cls.RESET}"

    @classmethod
    def purple_bold(cls, text: str) -> str:
        return cls.colorize(text, cls.BOLD, cls.BRIGHT_PURPLE)

    @classmethod
    def red_bold(cls, text: str) -> str:
        return cls.colorize(text, cls.BOLD, cls.BRIGHT_RED)

    @classmethod
    def green_bold(cls, text: str) -> str:
        return cls.colorize(text, cls.BOLD, cls.BRIGHT_GREEN)

    @classmethod
    def yellow_bold(cls, text: str) -> str:
        return cls.colorize(text, cls.BOLD, cls.BRIGHT_YELLOW)

    @classmethod
    def cyan_bold(cls, text: str) -> str:
        return cls.colorize(text, cls.BOLD, cls.BRIGHT_CYAN)

    @classmethod
    def dim(cls, text: str) -> str:
        return cls.colorize(text, cls.DIM)


def print_banner():
    """Print the metaprep banner."""
    border = "#" * 42
    if is_tty():
        print()
        print(Colors.purple_bold(border))
        print(Colors.purple_bold("#") + Colors.purple_bold("    metaprep") + " " + Colors.dim("- read preprocessing") + " " * 8 + Colors.purple_bold("#"))
        print(Colors.purple_bold("#") + Colors.dim("    QC, trimming, decontamination") + " " * 7 + Colors.purple_bold("#"))
        print(Colors.purple_bold(border))
        print()
    else:
        print()
        print(border)
        print("#    metaprep - read preprocessing       #")
        print("#    QC, trimming, decontamination       #")
        print(border)
        print()


@dataclass
class Stage:
    """Represents a pipeline stage (or one per-file unit of it)."""
    name: str
    label: str
    status: str = "pending"  # pending, running, succeeded, failed, skipped
    message: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class ProgressTracker:
    """Tracks pipeline progress and displays stage updates.

    Stage updates arrive from worker threads, so every state change and the
    line it prints happen under one lock.
    """

    prefix: str
    stage_defs: Iterable[Tuple[str, str]] = ()
    verbose: bool = True
    stages: List[Stage] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self):
        self.stages = [Stage(name=name, label=label) for name, label in self.stage_defs]

    def _format_status_icon(self, status: str) -> str:
        """Get status icon for a stage."""
        icons = {
            "pending": Colors.dim("○"),
            "running": Colors.yellow_bold("●"),
            "succeeded": Colors.green_bold("✓"),
            "failed": Colors.red_bold("✗"),
            "skipped": Colors.dim("−"),
        }
        return icons.get(status, "?")

    def _format_progress_bar(self) -> str:
        total = len(self.stages)
        if total == 0:
            return ""
        completed = sum(1 for s in self.stages if s.status in ("succeeded", "skipped"))
        if is_tty():
            bar_width = 20
            filled = int((completed / total) * bar_width)
            bar = Colors.green_bold("█" * filled) + Colors.dim("░" * (bar_width - filled))
            return f"[{bar}] {completed}/{total}"
        return f"[{completed}/{total}]"

    def _get(self, stage_name: str) -> Stage:
        for stage in self.stages:
            if stage.name == stage_name:
                return stage
        stage = Stage(name=stage_name, label=stage_name)
        self.stages.append(stage)
        return stage

    def print_header(self):
        """Print run header with progress bar."""
        header = f"Run: {Colors.cyan_bold(self.prefix)}"
        print(f"\n{header}  {self._format_progress_bar()}")
        print(Colors.dim("─" * 50))

    def start_stage(self, stage_name: str, message: str = ""):
        """Mark a stage as started."""
        with self._lock:
            stage = self._get(stage_name)
            stage.status = "running"
            stage.message = message
            stage.started_at = datetime.now()
            if self.verbose:
                icon = self._format_status_icon("running")
                print(f"  {icon} {Colors.yellow_bold(stage.label)} {Colors.dim('- ' + message) if message else ''}")

    def complete_stage(self, stage_name: str, status: str = "succeeded", message: str = ""):
        """Mark a stage as completed."""
        with self._lock:
            stage = self._get(stage_name)
            stage.status = status
            stage.message = message
            stage.ended_at = datetime.now()
            if self.verbose:
                icon = self._format_status_icon(status)
                label = stage.label
                if status == "succeeded":
                    label = Colors.green_bold(label)
                elif status == "failed":
                    label = Colors.red_bold(label)
                elif status == "skipped":
                    label = Colors.dim(label)
                print(f"  {icon} {label} {Colors.dim('- ' + message) if message else ''}")

    def log(self, message: str, stage_prefix: str = ""):
        """Print a timestamped message."""
        if not self.verbose:
            return
        timestamp = datetime.now().strftime("%H:%M:%S")
        prefix = f"[{timestamp}] [{stage_prefix}] " if stage_prefix else f"[{timestamp}] "
        with self._lock:
            print(Colors.dim(f"{prefix}{message}"))


def print_stage_summary(stages: List[Stage]):
    """Print a summary of stage results."""
    succeeded = sum(1 for s in stages if s.status == "succeeded")
    failed = sum(1 for s in stages if s.status == "failed")
    skipped = sum(1 for s in stages if s.status == "skipped")

    print()
    print(Colors.dim("─" * 50))

    summary = f"Summary: {Colors.green_bold(str(succeeded))} succeeded"
    if skipped:
        summary += f", {Colors.dim(str(skipped))} skipped"
    if failed:
        summary += f", {Colors.red_bold(str(failed))} failed"

    print(summary)
