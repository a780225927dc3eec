#!/usr/bin/env python3
"""metaprep CLI entry point."""

import argparse
import sys
import textwrap
from typing import Any, Dict, List, Optional

from metaprep.config import (
    LAYOUTS,
    MODES,
    RunConfig,
    apply_reference_defaults,
    deep_merge,
    load_config_file,
    str2bool,
)
from metaprep.discovery import get_data_dir
from metaprep.exceptions import MetaprepError
from metaprep.progress import Colors, is_tty, print_banner
from metaprep.runner import run_pipeline
from metaprep.tasks import CLEANUP_TASKS, PUBLISH_TMP, STAGES


class MetaprepHelpFormatter(argparse.RawDescriptionHelpFormatter):
    """Custom help formatter with colored headers and better styling."""

    def __init__(self, prog, indent_increment=2, max_help_position=40, width=100):
        super().__init__(prog, indent_increment, max_help_position, width)

    def start_section(self, heading):
        """Override to add colors to section headers."""
        if heading:
            if "REQUIRED" in heading.upper():
                heading = Colors.red_bold(heading) if is_tty() else f"*** {heading} ***"
            elif any(x in heading.upper() for x in ["OUTPUT", "REFERENCE", "THRESHOLD", "EXECUTION", "PIPELINE"]):
                heading = Colors.cyan_bold(heading) if is_tty() else heading
        super().start_section(heading)


def build_run_epilog():
    """Build the detailed epilog for the run command with examples."""
    if is_tty():
        examples_header = Colors.green_bold("EXAMPLES:")
        modes_header = Colors.cyan_bold("MODES:")
    else:
        examples_header = "EXAMPLES:"
        modes_header = "MODES:"

    return f"""
{examples_header}
  # Paired-end run with de-duplication (default)
  metaprep run --reads1 s_R1.fq.gz --reads2 s_R2.fq.gz --prefix s1 \\
      --foreign-genome-ref refs/hg19_index

  # Single-end run, no de-duplication, keep intermediate reads
  metaprep run --reads1 s.fq.gz --librarylayout single --prefix s1 \\
      --dedup false --keepQCtmpfile true --foreign-genome-ref refs/hg19_index

  # Parameters from a JSON file, overridden by flags
  metaprep run --config run.json --threads 8

  # Preview the commands without running anything
  metaprep run --config run.json --dry-run

{modes_header}
  QC                Quality control only (all preprocessing stages)
  complete          Quality control followed by characterisation
  characterisation  Characterisation only (no preprocessing stages)
"""


# argparse dest -> RunConfig field
RUN_ARG_FIELDS = {
    "reads1": "reads1",
    "reads2": "reads2",
    "prefix": "prefix",
    "outdir": "outdir",
    "mode": "mode",
    "librarylayout": "library_layout",
    "qin": "qin",
    "dedup": "dedup",
    "keepQCtmpfile": "keep_qc_tmpfile",
    "keepCCtmpfile": "keep_cc_tmpfile",
    "adapters": "adapters",
    "artifacts": "artifacts",
    "phix174ill": "phix174ill",
    "foreign_genome_ref": "foreign_genome_ref",
    "kcontaminants": "kcontaminants",
    "mink": "mink",
    "hdist": "hdist",
    "ktrim": "ktrim",
    "phred": "phred",
    "minlength": "minlength",
    "mind": "mind",
    "maxindel": "maxindel",
    "bwr": "bwr",
    "threads": "threads",
    "max_memory": "max_memory",
    "max_workers": "max_workers",
    "tool_dirs": "tool_dirs",
}


def bool_arg(value: str) -> bool:
    try:
        return str2bool(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="metaprep",
        formatter_class=MetaprepHelpFormatter,
        description=textwrap.dedent("""
        metaprep - metagenomic read preprocessing

        Quality assessment, de-duplication, trimming, decontamination and
        mate merging of shotgun metagenomics reads (FastQC + BBTools).
        """),
        epilog=textwrap.dedent(f"""
{Colors.cyan_bold("COMMANDS:") if is_tty() else "COMMANDS:"}
  run      Preprocess a sample
  stages   List the pipeline stages and when they run
  setup    Download BBMap and FastQC
  doctor   Check system requirements and diagnose issues

Use 'metaprep <command> --help' for more information on a specific command.
        """),
    )
    subparsers = parser.add_subparsers(dest="command", metavar="command")

    # =========================================================================
    # RUN COMMAND
    # =========================================================================
    # Flags default to None so that only explicit flags override --config
    run_parser = subparsers.add_parser(
        "run",
        help="Preprocess a sample",
        formatter_class=MetaprepHelpFormatter,
        description=textwrap.dedent("""
        Run the preprocessing stages on one sample.

        Raw reads are quality-assessed, optionally de-duplicated, trimmed,
        quality-assessed again, decontaminated against a foreign genome and
        (for paired-end data) mate-merged into <prefix>_QCd.fq.gz.
        """),
        epilog=build_run_epilog(),
    )

    required_group = run_parser.add_argument_group(
        'REQUIRED arguments',
        'Needed for every run (may also come from --config)'
    )
    required_group.add_argument("--reads1", metavar="FASTQ", help="Forward (or single-end) reads")
    required_group.add_argument("--reads2", metavar="FASTQ", help="Reverse reads (paired-end only)")
    required_group.add_argument("--prefix", metavar="NAME", help="Sample prefix used for all output names")

    pipeline_group = run_parser.add_argument_group('PIPELINE options')
    pipeline_group.add_argument("--mode", choices=MODES, help="Run mode (default: QC)")
    pipeline_group.add_argument("--librarylayout", choices=LAYOUTS, help="Library layout (default: paired)")
    pipeline_group.add_argument("--qin", type=int, choices=[33, 64], help="Input quality offset (default: 33)")
    pipeline_group.add_argument("--dedup", type=bool_arg, metavar="{true,false}",
                                help="Remove exact duplicates with clumpify.sh (default: true)")
    pipeline_group.add_argument("--keepQCtmpfile", type=bool_arg, metavar="{true,false}",
                                help="Publish intermediate reads of the QC stages (default: false)")
    pipeline_group.add_argument("--keepCCtmpfile", type=bool_arg, metavar="{true,false}",
                                help="Keep characterisation temporary files (default: false)")

    ref_group = run_parser.add_argument_group(
        'REFERENCE options',
        'Default to the files in the metaprep data directory'
    )
    ref_group.add_argument("--adapters", metavar="FASTA", help="Adapter sequences for bbduk.sh")
    ref_group.add_argument("--artifacts", metavar="FASTA", help="Sequencing artifacts for bbduk.sh")
    ref_group.add_argument("--phix174ill", metavar="FASTA", help="PhiX reference for bbduk.sh")
    ref_group.add_argument("--foreign-genome-ref", dest="foreign_genome_ref", metavar="DIR",
                           help="BBMap index directory of the contaminant (e.g. host) genome")

    threshold_group = run_parser.add_argument_group('THRESHOLD options')
    threshold_group.add_argument("--kcontaminants", type=int, metavar="K", help="k-mer size (default: 23)")
    threshold_group.add_argument("--mink", type=int, metavar="K", help="Minimum k-mer at read ends (default: 11)")
    threshold_group.add_argument("--hdist", type=int, metavar="N", help="Hamming distance (default: 1)")
    threshold_group.add_argument("--ktrim", choices=["r", "l"], help="Trim to the right or left of k-mer hits (default: r)")
    threshold_group.add_argument("--phred", type=int, metavar="Q", help="Quality trimming cutoff (default: 10)")
    threshold_group.add_argument("--minlength", type=int, metavar="N", help="Minimum read length (default: 60)")
    threshold_group.add_argument("--mind", type=float, metavar="F", help="Minimum identity for decontamination (default: 0.95)")
    threshold_group.add_argument("--maxindel", type=int, metavar="N", help="Maximum indel length (default: 3)")
    threshold_group.add_argument("--bwr", type=float, metavar="F", help="Bandwidth ratio (default: 0.16)")

    output_group = run_parser.add_argument_group('OUTPUT options')
    output_group.add_argument("--outdir", "-o", metavar="DIR", help="Output directory (default: ./preprocessed)")

    exec_group = run_parser.add_argument_group(
        'EXECUTION options',
        'Control how the pipeline runs'
    )
    exec_group.add_argument("--config", "-c", metavar="JSON", help="JSON file of run parameters")
    exec_group.add_argument("--threads", "-t", type=int, metavar="N", help="Threads per tool (default: 4)")
    exec_group.add_argument("--max-memory", dest="max_memory", metavar="MEM", help="Java heap per tool (default: 8g)")
    exec_group.add_argument("--max-workers", dest="max_workers", type=int, metavar="N",
                            help="Stage units run concurrently (default: 2)")
    exec_group.add_argument("--tool-dir", dest="tool_dirs", action="append", metavar="DIR",
                            help="Extra directory searched for executables (repeatable)")
    exec_group.add_argument("--dry-run", action="store_true", help="Show what would run without executing anything")
    exec_group.add_argument("--quiet", "-q", action="store_true", help="Suppress progress output")

    # =========================================================================
    # STAGES COMMAND
    # =========================================================================
    stages_parser = subparsers.add_parser(
        "stages",
        help="List pipeline stages",
        formatter_class=MetaprepHelpFormatter,
        description="List the preprocessing stages and whether they run under a mode/layout.",
    )
    stages_parser.add_argument("--mode", choices=MODES, default="QC")
    stages_parser.add_argument("--librarylayout", choices=LAYOUTS, default="paired")
    stages_parser.add_argument("--dedup", type=bool_arg, default=True, metavar="{true,false}")

    # =========================================================================
    # SETUP COMMAND
    # =========================================================================
    setup_parser = subparsers.add_parser(
        "setup",
        help="Download BBMap and FastQC",
        formatter_class=MetaprepHelpFormatter,
        description="Download BBMap and FastQC into the metaprep tools directory.",
    )
    setup_parser.add_argument("--non-interactive", action="store_true", help="Run without prompts (for CI/automation)")
    setup_parser.add_argument("--package", action="append", dest="packages", choices=["bbmap", "FastQC"],
                              help="Package to install (repeatable; default: all)")
    setup_parser.add_argument("--force", action="store_true", help="Reinstall packages that are already present")

    # =========================================================================
    # DOCTOR COMMAND
    # =========================================================================
    doctor_parser = subparsers.add_parser(
        "doctor",
        help="Check system requirements",
        formatter_class=MetaprepHelpFormatter,
        description="Check Java, the external tools, reference data and disk space.",
    )
    doctor_parser.add_argument("--tool-dir", dest="tool_dirs", action="append", metavar="DIR",
                               help="Extra directory searched for executables (repeatable)")

    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Merge defaults < --config file < explicit flags into a RunConfig."""
    values: Dict[str, Any] = {}
    if args.config:
        values = load_config_file(args.config)

    overrides = {}
    for dest, key in RUN_ARG_FIELDS.items():
        value = getattr(args, dest, None)
        if value is not None:
            overrides[key] = value
    if args.quiet:
        overrides["verbose"] = False

    merged = deep_merge(values, overrides)
    merged = apply_reference_defaults(merged, get_data_dir())
    return RunConfig.from_dict(merged)


def print_stages(mode: str, layout: str, dedup: bool) -> None:
    config = RunConfig(prefix="example", mode=mode, library_layout=layout, dedup=dedup)
    print(f"\nStages ({mode}, {layout}-end, dedup {'on' if dedup else 'off'}):")
    for stage in STAGES:
        active = stage.is_active(config)
        icon = Colors.green_bold("✓") if active else Colors.dim("−")
        upstream = ", ".join(stage.predecessors(config))
        name = Colors.cyan_bold(stage.name) if active else Colors.dim(stage.name)
        print(f"  {icon} [{stage.number}] {name:<14} {stage.title}")
        print(f"        {Colors.dim('reads from: ' + upstream)}")
    print("\nAfter all stages:")
    for task in CLEANUP_TASKS:
        note = " (with --keepQCtmpfile true)" if task is PUBLISH_TMP else ""
        print(f"  - {task.name:<18} {task.title}{Colors.dim(note)}")
    print()


def main(argv: Optional[List[str]] = None):
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()

    if len(argv) >= 1 and argv[0] == "run" and ("--help" in argv or "-h" in argv):
        print_banner()

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.command == "stages":
        print_stages(args.mode, args.librarylayout, args.dedup)
        sys.exit(0)

    if args.command == "setup":
        from metaprep.setup import run_setup
        exit_code = run_setup(
            interactive=not args.non_interactive,
            packages=args.packages,
            force=args.force,
        )
        sys.exit(exit_code)

    if args.command == "doctor":
        from metaprep.setup import run_doctor
        exit_code = run_doctor(tuple(args.tool_dirs or ()))
        sys.exit(exit_code)

    if args.command == "run":
        try:
            config = config_from_args(args)
            if config.verbose and not args.dry_run:
                print_banner()
            exit_code = run_pipeline(config, dry_run=args.dry_run)
            sys.exit(exit_code)
        except MetaprepError as e:
            print(f"{Colors.red_bold('ERROR')}: {e}", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            print(f"\n{Colors.yellow_bold('Interrupted by user')}", file=sys.stderr)
            sys.exit(130)


if __name__ == "__main__":
    main()
