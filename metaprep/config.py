"""Run configuration: defaults, config-file loading and validation."""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from metaprep.exceptions import ConfigurationError


MODES = ("QC", "characterisation", "complete")
LAYOUTS = ("single", "paired")
QUALITY_OFFSETS = (33, 64)

# Modes in which the preprocessing stages run
QC_MODES = ("QC", "complete")

# Reference files shipped in the data directory, keyed by RunConfig field
DEFAULT_REFERENCES = {
    "adapters": "adapters.fa",
    "artifacts": "sequencing_artifacts.fa.gz",
    "phix174ill": "phix174_ill.ref.fa.gz",
}

TRUE_STRINGS = ("true", "t", "yes", "y", "1", "on")
FALSE_STRINGS = ("false", "f", "no", "n", "0", "off")


def str2bool(value: Any) -> bool:
    """Parse boolean flag values such as ``--dedup false`` or ``yes``."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    raise ValueError(f"Not a boolean value: {value!r}")


@dataclass(frozen=True)
class RunConfig:
    """Configuration for a preprocessing run.

    Built once at startup and never modified afterwards; every activation
    predicate and command template reads from it.
    """

    prefix: str
    outdir: str = "./preprocessed"
    mode: str = "QC"
    library_layout: str = "paired"
    qin: int = 33
    dedup: bool = True
    keep_qc_tmpfile: bool = False
    keep_cc_tmpfile: bool = False

    # Input reads
    reads1: str = ""
    reads2: str = ""

    # Reference files
    adapters: str = ""
    artifacts: str = ""
    phix174ill: str = ""
    foreign_genome_ref: str = ""  # BBMap index directory (contains ref/)

    # bbduk trimming
    kcontaminants: int = 23  # k-mer size
    mink: int = 11
    hdist: int = 1  # hamming distance
    ktrim: str = "r"
    phred: int = 10  # quality cutoff
    minlength: int = 60

    # bbwrap decontamination
    mind: float = 0.95  # minimum identity
    maxindel: int = 3
    bwr: float = 0.16

    # Resources
    threads: int = 4
    max_memory: str = "8g"
    max_workers: int = 2

    tool_dirs: Tuple[str, ...] = ()
    verbose: bool = True

    @property
    def is_paired(self) -> bool:
        return self.library_layout == "paired"

    @property
    def runs_qc(self) -> bool:
        """True when the preprocessing stages are part of this run."""
        return self.mode in QC_MODES

    @property
    def keep_temp_files(self) -> Dict[str, bool]:
        return {"qc": self.keep_qc_tmpfile, "characterisation": self.keep_cc_tmpfile}

    @property
    def run_dir(self) -> Path:
        """Working directory of the run: <outdir>/<prefix>."""
        return Path(self.outdir) / self.prefix

    @property
    def read_files(self) -> List[str]:
        """Read files that apply to the configured layout."""
        if self.is_paired:
            return [self.reads1, self.reads2]
        return [self.reads1]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        d = asdict(self)
        d["tool_dirs"] = list(self.tool_dirs)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RunConfig":
        """Create from dictionary, coercing types and ignoring unknown keys."""
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__ and v is not None}
        try:
            for key in ("dedup", "keep_qc_tmpfile", "keep_cc_tmpfile", "verbose"):
                if key in known:
                    known[key] = str2bool(known[key])
            for key in ("qin", "kcontaminants", "mink", "hdist", "phred", "minlength",
                        "maxindel", "threads", "max_workers"):
                if key in known:
                    known[key] = int(known[key])
            for key in ("mind", "bwr"):
                if key in known:
                    known[key] = float(known[key])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}")
        if "tool_dirs" in known:
            tool_dirs = known["tool_dirs"]
            if isinstance(tool_dirs, (str, Path)):
                tool_dirs = [tool_dirs]
            elif not isinstance(tool_dirs, (list, tuple)):
                raise ConfigurationError(
                    f"tool_dirs must be a directory or a list of directories, got {tool_dirs!r}"
                )
            known["tool_dirs"] = tuple(str(p) for p in tool_dirs)
        if "prefix" not in known:
            raise ConfigurationError("A run prefix is required (--prefix)")
        return cls(**known)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dicts, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a JSON config file of RunConfig keys."""
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return data


def write_config(config_dict: Dict[str, Any], path: Path) -> None:
    """Write config dict to a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(config_dict, f, ensure_ascii=False, indent=2)


def apply_reference_defaults(values: Dict[str, Any], data_dir: Optional[Path]) -> Dict[str, Any]:
    """Fill unset reference paths with the files bundled in ``data_dir``."""
    if data_dir is None:
        return values
    result = dict(values)
    for key, filename in DEFAULT_REFERENCES.items():
        if not result.get(key):
            result[key] = str(Path(data_dir) / filename)
    return result


def validate_config(config: RunConfig) -> List[str]:
    """
    Check a RunConfig before anything is executed.

    Returns a list of error messages (empty if the configuration is usable).
    """
    errors = []

    if config.mode not in MODES:
        errors.append(f"Invalid mode '{config.mode}' (expected one of: {', '.join(MODES)})")
    if config.library_layout not in LAYOUTS:
        errors.append(
            f"Invalid library layout '{config.library_layout}' (expected one of: {', '.join(LAYOUTS)})"
        )
    if config.qin not in QUALITY_OFFSETS:
        errors.append(f"Invalid quality offset qin={config.qin} (expected 33 or 64)")
    if not config.prefix or "/" in config.prefix:
        errors.append(f"Invalid prefix '{config.prefix}': must be a non-empty name without '/'")

    for name in ("kcontaminants", "mink", "minlength", "threads", "max_workers"):
        if getattr(config, name) < 1:
            errors.append(f"{name} must be a positive integer, got {getattr(config, name)}")
    for name in ("hdist", "phred", "maxindel"):
        if getattr(config, name) < 0:
            errors.append(f"{name} must not be negative, got {getattr(config, name)}")
    if not 0 < config.mind <= 1:
        errors.append(f"mind must be in (0, 1], got {config.mind}")
    if not 0 <= config.bwr <= 1:
        errors.append(f"bwr must be in [0, 1], got {config.bwr}")

    # Reads and references are only needed when the preprocessing stages run
    if config.mode in QC_MODES and config.library_layout in LAYOUTS:
        if not config.reads1:
            errors.append("reads1 is required when mode is QC or complete")
        elif not Path(config.reads1).is_file():
            errors.append(f"reads1 file not found: {config.reads1}")

        if config.is_paired:
            if not config.reads2:
                errors.append("reads2 is required for paired-end libraries")
            elif not Path(config.reads2).is_file():
                errors.append(f"reads2 file not found: {config.reads2}")
            elif config.reads1 and Path(config.reads1).resolve() == Path(config.reads2).resolve():
                errors.append("reads1 and reads2 point to the same file")

        for key in DEFAULT_REFERENCES:
            value = getattr(config, key)
            if not value:
                errors.append(f"Reference file '{key}' is not set")
            elif not Path(value).is_file():
                errors.append(f"Reference file '{key}' not found: {value}")

        if not config.foreign_genome_ref:
            errors.append("foreign_genome_ref (BBMap index directory) is not set")
        elif not Path(config.foreign_genome_ref).is_dir():
            errors.append(f"foreign_genome_ref directory not found: {config.foreign_genome_ref}")

    return errors


def check_config(config: RunConfig) -> RunConfig:
    """Validate ``config`` and raise ConfigurationError listing every problem."""
    errors = validate_config(config)
    if errors:
        raise ConfigurationError("Invalid configuration:\n  - " + "\n  - ".join(errors))
    return config
