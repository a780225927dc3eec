"""Discovery utilities for finding tools, bundled data and stage metadata."""

import os
import shutil
from pathlib import Path
from typing import Iterable, List, Optional


# External executables and the stages that need them
TOOL_INFO = {
    "fastqc": {
        "package": "FastQC",
        "stages": ["qc_raw", "qc_trimmed"],
        "subdir": "FastQC",
    },
    "clumpify.sh": {
        "package": "BBMap",
        "stages": ["dedup"],
        "subdir": "bbmap",
    },
    "bbduk.sh": {
        "package": "BBMap",
        "stages": ["trim"],
        "subdir": "bbmap",
    },
    "bbwrap.sh": {
        "package": "BBMap",
        "stages": ["decontaminate"],
        "subdir": "bbmap",
    },
    "bbmerge.sh": {
        "package": "BBMap",
        "stages": ["merge"],
        "subdir": "bbmap",
    },
    "reformat.sh": {
        "package": "BBMap",
        "stages": ["merge"],
        "subdir": "bbmap",
    },
}


def find_repo_root(start_path: Optional[Path] = None) -> Path:
    """
    Find the project root directory by looking for marker files/directories.

    Searches upward from start_path (or the package location) for a
    directory containing the ``metaprep`` package next to ``pyproject.toml``.
    Falls back to the current working directory.
    """
    if start_path is None:
        start_path = Path(__file__).resolve().parent

    current = Path(start_path).resolve()
    for _ in range(10):  # Limit search depth
        if (current / "metaprep").is_dir() and (current / "pyproject.toml").exists():
            return current
        parent = current.parent
        if parent == current:  # Reached filesystem root
            break
        current = parent

    return Path.cwd()


def get_home_dir() -> Path:
    """User-level metaprep directory (tools and data live here after setup)."""
    override = os.environ.get("METAPREP_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".metaprep"


def get_tools_dir() -> Path:
    """Directory that ``metaprep setup`` installs BBMap and FastQC into."""
    return get_home_dir() / "tools"


def get_data_dir() -> Optional[Path]:
    """
    Directory holding the default reference files.

    Prefers ``<repo>/data`` (source checkout), then ``~/.metaprep/data``,
    then the ``resources`` directory of the BBMap installed by setup, which
    ships the adapter, artifact and phiX files. Returns None if none exists.
    """
    candidates = [
        find_repo_root() / "data",
        get_home_dir() / "data",
        get_tools_dir() / "bbmap" / "resources",
    ]
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    return None


def tool_search_path(tool_dirs: Iterable[str] = ()) -> List[Path]:
    """Directories searched for executables before PATH, in order."""
    tools_dir = get_tools_dir()
    dirs = [Path(d).expanduser() for d in tool_dirs]
    dirs.append(tools_dir / "bbmap")
    dirs.append(tools_dir / "FastQC")
    return dirs


def find_tool(name: str, tool_dirs: Iterable[str] = ()) -> Optional[str]:
    """Locate an executable in the configured tool directories or on PATH."""
    for directory in tool_search_path(tool_dirs):
        candidate = directory / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return shutil.which(name)


def make_tool_resolver(tool_dirs: Iterable[str] = ()):
    """
    Return a ``name -> command`` function for building command lines.

    Unresolvable tools are returned by bare name; starting them then fails
    with FileNotFoundError, which the executor reports as a stage failure.
    """
    dirs = tuple(tool_dirs)

    def resolve(name: str) -> str:
        return find_tool(name, dirs) or name

    return resolve
