"""Error types raised by the metaprep pipeline."""

from pathlib import Path
from typing import Optional


class MetaprepError(Exception):
    """Base class for all pipeline errors."""

    pass


class ConfigurationError(MetaprepError):
    """Invalid run configuration, detected before any stage runs."""

    pass


class RoutingError(MetaprepError):
    """The file router could not resolve the inputs of a stage.

    This is an internal consistency error, not something the user can fix
    by changing flags.
    """

    pass


class StageExecutionError(MetaprepError):
    """An external tool failed or did not produce its declared outputs."""

    def __init__(
        self,
        stage: str,
        message: str,
        label: str = "",
        exit_code: Optional[int] = None,
        log_path: Optional[Path] = None,
    ):
        self.stage = stage
        self.label = label
        self.exit_code = exit_code
        self.log_path = log_path
        super().__init__(f"Stage '{stage}{label}' failed: {message}")
