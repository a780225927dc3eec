"""Setup and environment validation for the metaprep CLI."""

import shutil
import ssl
import subprocess
import tarfile
import urllib.error
import urllib.request
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from metaprep.config import DEFAULT_REFERENCES
from metaprep.discovery import TOOL_INFO, find_tool, get_data_dir, get_tools_dir
from metaprep.progress import Colors, is_tty


# Third-party tool bundles installed by `metaprep setup`
PACKAGES = {
    "bbmap": {
        "name": "BBMap 37.56",
        "url": "https://sourceforge.net/projects/bbmap/files/BBMap_37.56.tar.gz",
        "archive": "BBMap_37.56.tar.gz",
        "size_mb": 60,
        "executables": ["clumpify.sh", "bbduk.sh", "bbwrap.sh", "bbmerge.sh", "reformat.sh"],
    },
    "FastQC": {
        "name": "FastQC 0.11.5",
        "url": "http://www.bioinformatics.babraham.ac.uk/projects/fastqc/fastqc_v0.11.5.zip",
        "archive": "fastqc_v0.11.5.zip",
        "size_mb": 10,
        "executables": ["fastqc"],
    },
}

USER_AGENT = "metaprep/0.1"


def check_java() -> Tuple[bool, str]:
    """Check that a Java runtime is available (BBMap and FastQC need one)."""
    java = shutil.which("java")
    if not java:
        return False, "java not found in PATH"
    try:
        result = subprocess.run(
            ["java", "-version"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except subprocess.TimeoutExpired:
        return False, "java -version timed out"
    except OSError as e:
        return False, f"Error running java: {e}"
    if result.returncode != 0:
        return False, f"java -version exited with status {result.returncode}"
    # java prints its version on stderr
    first_line = (result.stderr or result.stdout).strip().split("\n")[0]
    return True, first_line


def check_disk_space(path: Path, required_gb: float) -> Tuple[bool, float]:
    """Check if there's enough disk space.

    Returns:
        Tuple of (has_space, available_gb)
    """
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    total, used, free = shutil.disk_usage(probe)
    available_gb = free / (1024 ** 3)
    return available_gb >= required_gb, available_gb


def get_ssl_context() -> ssl.SSLContext:
    """Get an SSL context for HTTPS requests, preferring certifi's CA bundle."""
    try:
        import certifi
        return ssl.create_default_context(cafile=certifi.where())
    except ImportError:
        return ssl.create_default_context()


def download_with_progress(url: str, dest: Path, desc: str = "Downloading") -> bool:
    """Download a file with progress display."""
    req = urllib.request.Request(url, headers={'User-Agent': USER_AGENT})
    downloaded = 0
    chunk_size = 1024 * 1024  # 1MB chunks
    try:
        with urllib.request.urlopen(req, context=get_ssl_context()) as response:
            total_size = int(response.headers.get('content-length', 0))
            with open(dest, 'wb') as f:
                while True:
                    chunk = response.read(chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
                    downloaded += len(chunk)

                    downloaded_mb = downloaded / (1024 * 1024)
                    if total_size > 0:
                        pct = (downloaded / total_size) * 100
                        total_mb = total_size / (1024 * 1024)
                        print(f"\r  {desc}: {downloaded_mb:.1f}/{total_mb:.1f} MB ({pct:.1f}%)", end="", flush=True)
                    else:
                        print(f"\r  {desc}: {downloaded_mb:.1f} MB", end="", flush=True)
        print()  # Newline after progress
        return True
    except (urllib.error.URLError, OSError) as e:
        print(f"\n  {Colors.red_bold('Error')}: {e}")
        return False


def extract_tarball(archive: Path, dest_dir: Path) -> bool:
    """Extract a tar archive (supports .tar, .tar.gz, .tgz)."""
    print(f"  Extracting to {dest_dir}...")
    try:
        with tarfile.open(archive, "r:*") as tar:
            tar.extractall(path=dest_dir)
        return True
    except (tarfile.TarError, OSError) as e:
        print(f"  {Colors.red_bold('Error')} extracting: {e}")
        return False


def extract_zip(archive: Path, dest_dir: Path) -> bool:
    """Extract a zip archive, restoring the executable bit of its members."""
    print(f"  Extracting to {dest_dir}...")
    try:
        with zipfile.ZipFile(archive, 'r') as zf:
            for info in zf.infolist():
                target = Path(zf.extract(info, path=dest_dir))
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)
        return True
    except (zipfile.BadZipFile, OSError) as e:
        print(f"  {Colors.red_bold('Error')} extracting: {e}")
        return False


def prompt_yes_no(question: str, default: bool = True) -> bool:
    """Prompt user for yes/no answer."""
    if default:
        prompt = f"{question} [Y/n]: "
    else:
        prompt = f"{question} [y/N]: "

    try:
        response = input(prompt).strip().lower()
        if not response:
            return default
        return response in ('y', 'yes')
    except (EOFError, KeyboardInterrupt):
        print()
        return False


def install_package(package_id: str, tools_dir: Path) -> bool:
    """Download and unpack one tool bundle into ``tools_dir``."""
    info = PACKAGES[package_id]
    tools_dir.mkdir(parents=True, exist_ok=True)
    archive = tools_dir / info["archive"]

    print(f"\n{Colors.cyan_bold(info['name'])}")
    if not download_with_progress(info["url"], archive, desc=info["archive"]):
        return False

    if archive.name.endswith(".zip"):
        ok = extract_zip(archive, tools_dir)
    else:
        ok = extract_tarball(archive, tools_dir)
    archive.unlink()
    if not ok:
        return False

    for name in info["executables"]:
        exe = tools_dir / package_id / name
        if exe.exists():
            exe.chmod(exe.stat().st_mode | 0o111)
    print(f"  {Colors.green_bold('OK')} installed into {tools_dir / package_id}")
    return True


def run_setup(interactive: bool = True, packages: Optional[List[str]] = None, force: bool = False) -> int:
    """Install BBMap and FastQC into the metaprep tools directory.

    Returns:
        Exit code (0 = success, 1 = at least one install failed)
    """
    tools_dir = get_tools_dir()
    selected = packages or list(PACKAGES.keys())

    print()
    print(Colors.cyan_bold("metaprep setup") if is_tty() else "=== metaprep setup ===")
    print("=" * 40)
    print(f"Tools directory: {tools_dir}")

    needed_mb = sum(PACKAGES[p]["size_mb"] for p in selected if p in PACKAGES)
    has_space, available = check_disk_space(tools_dir, needed_mb / 1024)
    if not has_space:
        print(f"{Colors.red_bold('ERROR')}: {needed_mb} MB needed, only {available:.1f} GB available")
        return 1

    failures = 0
    for package_id in selected:
        if package_id not in PACKAGES:
            print(f"{Colors.red_bold('ERROR')}: unknown package '{package_id}' (choose from: {', '.join(PACKAGES)})")
            failures += 1
            continue
        target = tools_dir / package_id
        if target.exists() and not force:
            print(f"\n  {Colors.green_bold('OK')} {PACKAGES[package_id]['name']} already installed: {target}")
            continue
        if interactive and not prompt_yes_no(f"Download {PACKAGES[package_id]['name']} (~{PACKAGES[package_id]['size_mb']} MB)?"):
            print("  Skipped")
            continue
        if target.exists():
            shutil.rmtree(target)
        if not install_package(package_id, tools_dir):
            failures += 1

    print()
    java_ok, java_msg = check_java()
    if not java_ok:
        print(f"{Colors.yellow_bold('Warning')}: {java_msg}. BBMap and FastQC need a Java runtime.")

    return 1 if failures else 0


def tool_status(tool_dirs: Tuple[str, ...] = ()) -> Dict[str, Optional[str]]:
    """Map each required executable to its resolved path (None when missing)."""
    return {name: find_tool(name, tool_dirs) for name in TOOL_INFO}


def _status_line(label: str, text: str) -> str:
    colors = {"OK": Colors.green_bold, "MISSING": Colors.yellow_bold, "LOW": Colors.yellow_bold,
              "ERROR": Colors.red_bold, "CRITICAL": Colors.red_bold}
    if is_tty():
        return f"  {colors.get(label, Colors.dim)(label)} {text}"
    return f"  [{label}] {text}"


def run_doctor(tool_dirs: Tuple[str, ...] = ()) -> int:
    """Run system diagnostics and report status.

    Returns:
        Exit code (0 = all OK, 1 = issues found)
    """
    print()
    print(Colors.cyan_bold("metaprep doctor") if is_tty() else "=== metaprep doctor ===")
    print("=" * 40)
    print()

    all_ok = True

    print("Java runtime:")
    java_ok, java_msg = check_java()
    print(_status_line("OK" if java_ok else "ERROR", java_msg))
    all_ok = all_ok and java_ok
    print()

    print("External tools:")
    for name, path in tool_status(tool_dirs).items():
        info = TOOL_INFO[name]
        if path:
            print(_status_line("OK", f"{name}: {path}"))
        else:
            print(_status_line("MISSING", f"{name} ({info['package']}, needed by {', '.join(info['stages'])})"))
            all_ok = False
    print()

    print("Reference data:")
    data_dir = get_data_dir()
    if data_dir is None:
        print(_status_line("MISSING", "no data directory found; pass --adapters/--artifacts/--phix174ill"))
    else:
        for key, filename in DEFAULT_REFERENCES.items():
            path = data_dir / filename
            print(_status_line("OK" if path.exists() else "MISSING", f"{key}: {path}"))
    print()

    print("Disk Space:")
    has_space, available = check_disk_space(Path.cwd(), 10)
    if available >= 50:
        print(_status_line("OK", f"{available:.1f} GB available"))
    elif available >= 10:
        print(_status_line("LOW", f"{available:.1f} GB available"))
    else:
        print(_status_line("CRITICAL", f"Only {available:.1f} GB available"))
        all_ok = False
    print()

    print("Python Environment:")
    try:
        import pandas
        print(_status_line("OK", f"pandas {pandas.__version__}"))
    except ImportError:
        print(_status_line("MISSING", "pandas (needed for the stage report)"))
        all_ok = False
    print()

    if all_ok:
        print(Colors.green_bold("All systems operational!") if is_tty() else "[OK] All systems operational!")
        return 0
    print(Colors.yellow_bold("Some issues found. Run 'metaprep setup' to resolve.") if is_tty()
          else "[WARN] Some issues found.")
    return 1
