"""
Task descriptors for the six preprocessing stages.

A descriptor is declarative: which roles it reads, when it runs, which
external commands it issues and which files it leaves behind. Nothing in
this module touches the filesystem or spawns processes; the executor and
driver do that.

Stage numbering is fixed and doubles as the ordering key of the merged log:

    1  qc_raw          FastQC on the raw reads (side branch)
    2  dedup           clumpify.sh exact-duplicate removal (optional)
    3  trim            bbduk.sh adapter/quality trimming + artifact removal
    4  qc_trimmed      FastQC on the trimmed reads (side branch)
    5  decontaminate   bbwrap.sh mapping against a foreign genome
    6  merge           bbmerge.sh mate merging (reformat.sh for single-end)
"""

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from metaprep.config import RunConfig
from metaprep.metrics import MetricsRule, extract_blocks, extract_metrics, parse_fastqc_basic_statistics


# Roles
R1 = "R1"
R2 = "R2"
SINGLETON = "singleton"
MERGED = "merged"
CONTAMINATED = "contaminated"
REPORT = "report"

# Canonical order in which a stage receives read roles
READ_ROLES = (R1, R2, SINGLETON)

# Roles the router passes downstream; everything else stays with its stage
ROUTABLE_ROLES = (R1, R2, SINGLETON, MERGED)

# Per-end labels used for fan-out stages in paired mode
ROLE_LABELS = {R1: "_R1", R2: "_R2"}

RAW_SOURCE = "raw"


@dataclass(frozen=True)
class FileHandle:
    """A file on disk plus the logical role it plays in the pipeline."""

    path: Optional[Path]
    role: str

    @property
    def is_present(self) -> bool:
        return self.path is not None

    def __str__(self) -> str:
        return str(self.path) if self.path is not None else "<no file>"


# Explicit "no file" marker for roles that do not apply under the layout
NO_FILE = FileHandle(path=None, role="")


@dataclass(frozen=True)
class OutputSpec:
    """A declared output: lookup key, role, file name, and whether it is published."""

    key: str
    role: str
    filename: str
    publish: bool = False


Inputs = Dict[str, FileHandle]
Outputs = Dict[str, Path]


@dataclass(frozen=True)
class InputGroup:
    """The inputs of one executable unit of a stage.

    Fan-out stages get one group per read file, labelled ``_R1``/``_R2``;
    every other stage gets a single group with an empty label.
    """

    label: str
    inputs: Inputs = field(default_factory=dict)

    @property
    def files(self) -> List[FileHandle]:
        return present(self.inputs)


ToolResolver = Callable[[str], str]


def applicable_roles(config: RunConfig) -> Tuple[str, ...]:
    """Read roles that exist under the configured library layout."""
    if config.is_paired:
        return READ_ROLES
    return (R1,)


def present(inputs: Inputs) -> List[FileHandle]:
    """Input handles that are not the NO_FILE sentinel, in canonical order."""
    return [inputs[role] for role in READ_ROLES if role in inputs and inputs[role].is_present]


def fastqc_stem(path: Path) -> str:
    """Base name FastQC derives its report names from."""
    name = Path(path).name
    for ext in (".gz", ".bz2"):
        if name.endswith(ext):
            name = name[: -len(ext)]
            break
    for ext in (".fastq", ".fq", ".txt", ".sam", ".bam"):
        if name.endswith(ext):
            name = name[: -len(ext)]
            break
    return name


def tmp_path(path: Path) -> Path:
    """Sibling path used for a file's intermediate version (``x.fq.gz`` -> ``x_tmp.fq.gz``)."""
    path = Path(path)
    name = path.name
    if name.endswith(".fq.gz"):
        return path.with_name(name[: -len(".fq.gz")] + "_tmp.fq.gz")
    return path.with_name(name + "_tmp")


def _java_mem(config: RunConfig) -> str:
    return f"-Xmx{config.max_memory}"


def _qc_mode(config: RunConfig) -> bool:
    return config.runs_qc


@dataclass(frozen=True)
class TaskDescriptor:
    """Declarative description of one pipeline stage."""

    number: int
    name: str
    title: str
    input_roles: Tuple[str, ...]
    predicate: Callable[[RunConfig], bool]
    upstream: Callable[[RunConfig], Tuple[str, ...]]
    commands: Callable[[Inputs, Outputs, RunConfig, ToolResolver], List[List[str]]]
    outputs: Callable[[Inputs, RunConfig], List[OutputSpec]]
    metrics: Callable[[RunConfig], List[MetricsRule]]
    per_file: bool = False
    intermediate: bool = False  # FASTQ outputs are temp files published on request
    temporaries: Callable[[Inputs, RunConfig], List[str]] = lambda inputs, config: []
    metrics_source: Optional[Callable[[Inputs], str]] = None
    metrics_parser: Optional[Callable[[str, RunConfig], List[str]]] = None  # replaces the plain rule pass
    finalize: Optional[Callable[[Inputs, Outputs, RunConfig], None]] = None
    summarise: Optional[Callable[[List[str]], str]] = None
    tools: Callable[[RunConfig], Tuple[str, ...]] = lambda config: ()

    def is_active(self, config: RunConfig) -> bool:
        return bool(self.predicate(config))

    def predecessors(self, config: RunConfig) -> Tuple[str, ...]:
        return tuple(self.upstream(config))


@dataclass(frozen=True)
class CleanupTask:
    """A task run once every stage is terminal (publication, log merge)."""

    name: str
    title: str
    predicate: Callable[[RunConfig], bool]

    def is_active(self, config: RunConfig) -> bool:
        return bool(self.predicate(config))


# =============================================================================
# 1 / 4  FastQC
# =============================================================================

def _qc_outputs(inputs: Inputs, config: RunConfig) -> List[OutputSpec]:
    stem = fastqc_stem(present(inputs)[0].path)
    return [
        OutputSpec("html", REPORT, f"{stem}_fastqc.html", publish=True),
        OutputSpec("zip", REPORT, f"{stem}_fastqc.zip", publish=True),
    ]


def _qc_commands(inputs: Inputs, outputs: Outputs, config: RunConfig, tool: ToolResolver) -> List[List[str]]:
    reads = present(inputs)[0]
    return [[
        tool("fastqc"),
        "--extract",
        "-t", str(config.threads),
        "-f", "fastq",
        "-o", str(outputs["html"].parent),
        str(reads.path),
    ]]


def _qc_temporaries(inputs: Inputs, config: RunConfig) -> List[str]:
    # --extract leaves the unzipped report next to the zip
    return [f"{fastqc_stem(present(inputs)[0].path)}_fastqc"]


def _qc_metrics_source(inputs: Inputs) -> str:
    return f"{fastqc_stem(present(inputs)[0].path)}_fastqc/fastqc_data.txt"


def _qc_metrics(config: RunConfig) -> List[MetricsRule]:
    return [MetricsRule(">>Basic Statistics", ">>END_MODULE", include_end=False)]


def _qc_summary(lines: List[str]) -> str:
    stats = parse_fastqc_basic_statistics(lines)
    return (
        f"{stats['total_sequences']:,} sequences, "
        f"length {stats['sequence_length']}, {stats['gc_content']:g}% GC"
    )


QC_RAW = TaskDescriptor(
    number=1,
    name="qc_raw",
    title="Quality assessment of raw reads (FastQC)",
    input_roles=(R1, R2),
    predicate=_qc_mode,
    upstream=lambda config: (RAW_SOURCE,),
    commands=_qc_commands,
    outputs=_qc_outputs,
    metrics=_qc_metrics,
    per_file=True,
    tools=lambda config: ("fastqc",),
    temporaries=_qc_temporaries,
    metrics_source=_qc_metrics_source,
    summarise=_qc_summary,
)

QC_TRIMMED = TaskDescriptor(
    number=4,
    name="qc_trimmed",
    title="Quality assessment of trimmed reads (FastQC)",
    input_roles=(R1, R2),
    predicate=_qc_mode,
    upstream=lambda config: ("trim",),
    commands=_qc_commands,
    outputs=_qc_outputs,
    metrics=_qc_metrics,
    per_file=True,
    tools=lambda config: ("fastqc",),
    temporaries=_qc_temporaries,
    metrics_source=_qc_metrics_source,
    summarise=_qc_summary,
)


# =============================================================================
# 2  De-duplication (clumpify.sh)
# =============================================================================

def _dedup_outputs(inputs: Inputs, config: RunConfig) -> List[OutputSpec]:
    if config.is_paired:
        return [
            OutputSpec(R1, R1, f"{config.prefix}_dedupe_R1.fq.gz"),
            OutputSpec(R2, R2, f"{config.prefix}_dedupe_R2.fq.gz"),
        ]
    return [OutputSpec(R1, R1, f"{config.prefix}_dedupe.fq.gz")]


def _dedup_commands(inputs: Inputs, outputs: Outputs, config: RunConfig, tool: ToolResolver) -> List[List[str]]:
    cmd = [tool("clumpify.sh"), _java_mem(config)]
    if config.is_paired:
        cmd += [
            f"in1={inputs[R1].path}", f"in2={inputs[R2].path}",
            f"out1={outputs[R1]}", f"out2={outputs[R2]}",
        ]
    else:
        cmd += [f"in={inputs[R1].path}", f"out={outputs[R1]}"]
    cmd += [f"qin={config.qin}", "dedupe", "subs=0", f"threads={config.threads}"]
    return [cmd]


DEDUP = TaskDescriptor(
    number=2,
    name="dedup",
    title="De-duplication (clumpify.sh)",
    input_roles=(R1, R2),
    predicate=lambda config: _qc_mode(config) and config.dedup,
    upstream=lambda config: (RAW_SOURCE,),
    commands=_dedup_commands,
    outputs=_dedup_outputs,
    metrics=lambda config: [MetricsRule("Reads In:", "Duplicates Found:")],
    intermediate=True,
    tools=lambda config: ("clumpify.sh",),
)


# =============================================================================
# 3  Trimming (bbduk.sh, two passes)
# =============================================================================

def _trim_outputs(inputs: Inputs, config: RunConfig) -> List[OutputSpec]:
    if config.is_paired:
        return [
            OutputSpec(R1, R1, f"{config.prefix}_trimmed_R1.fq.gz"),
            OutputSpec(R2, R2, f"{config.prefix}_trimmed_R2.fq.gz"),
            OutputSpec(SINGLETON, SINGLETON, f"{config.prefix}_trimmed_singletons.fq.gz"),
        ]
    return [OutputSpec(R1, R1, f"{config.prefix}_trimmed.fq.gz")]


def _trim_commands(inputs: Inputs, outputs: Outputs, config: RunConfig, tool: ToolResolver) -> List[List[str]]:
    bbduk = tool("bbduk.sh")
    trim_opts = [
        f"ktrim={config.ktrim}",
        f"k={config.kcontaminants}",
        f"mink={config.mink}",
        f"hdist={config.hdist}",
        "qtrim=rl",
        f"trimq={config.phred}",
        f"minlength={config.minlength}",
        f"ref={config.adapters}",
        f"qin={config.qin}",
        f"threads={config.threads}",
    ]
    artifact_opts = [
        "k=31",
        f"ref={config.artifacts},{config.phix174ill}",
        "hdist=1",
        f"qin={config.qin}",
        f"threads={config.threads}",
        "ow",
    ]

    if not config.is_paired:
        tmp = tmp_path(outputs[R1])
        return [
            [bbduk, _java_mem(config), f"in={inputs[R1].path}", f"out={tmp}"] + trim_opts + ["ow"],
            [bbduk, _java_mem(config), f"in={tmp}", f"out={outputs[R1]}"] + artifact_opts,
        ]

    tmp_r1 = tmp_path(outputs[R1])
    tmp_r2 = tmp_path(outputs[R2])
    tmp_s = tmp_path(outputs[SINGLETON])
    return [
        [bbduk, _java_mem(config),
         f"in={inputs[R1].path}", f"in2={inputs[R2].path}",
         f"out={tmp_r1}", f"out2={tmp_r2}", f"outs={tmp_s}"] + trim_opts + ["tbo", "tpe", "ow"],
        [bbduk, _java_mem(config),
         f"in={tmp_r1}", f"in2={tmp_r2}", f"out={outputs[R1]}", f"out2={outputs[R2]}"] + artifact_opts,
        [bbduk, _java_mem(config), f"in={tmp_s}", f"out={outputs[SINGLETON]}"] + artifact_opts,
    ]


TRIM = TaskDescriptor(
    number=3,
    name="trim",
    title="Adapter/quality trimming and artifact removal (bbduk.sh)",
    input_roles=(R1, R2),
    predicate=_qc_mode,
    upstream=lambda config: ("dedup",) if config.dedup else (RAW_SOURCE,),
    commands=_trim_commands,
    outputs=_trim_outputs,
    metrics=lambda config: [MetricsRule("Input:", "Result:")],
    intermediate=True,
    tools=lambda config: ("bbduk.sh",),
    temporaries=lambda inputs, config: ["*_tmp.fq.gz"],
)


# =============================================================================
# 5  Decontamination (bbwrap.sh)
# =============================================================================

def _decontaminate_outputs(inputs: Inputs, config: RunConfig) -> List[OutputSpec]:
    p = config.prefix
    if config.is_paired:
        return [
            OutputSpec(R1, R1, f"{p}_clean_R1.fq.gz"),
            OutputSpec(R2, R2, f"{p}_clean_R2.fq.gz"),
            OutputSpec(SINGLETON, SINGLETON, f"{p}_clean_singletons.fq.gz"),
            OutputSpec("cont_R1", CONTAMINATED, f"{p}_cont_R1.fq.gz"),
            OutputSpec("cont_R2", CONTAMINATED, f"{p}_cont_R2.fq.gz"),
            OutputSpec("cont_singleton", CONTAMINATED, f"{p}_cont_singletons.fq.gz"),
        ]
    return [
        OutputSpec(R1, R1, f"{p}_clean.fq.gz"),
        OutputSpec("cont_R1", CONTAMINATED, f"{p}_cont.fq.gz"),
    ]


def _decontaminate_commands(inputs: Inputs, outputs: Outputs, config: RunConfig, tool: ToolResolver) -> List[List[str]]:
    cmd = [tool("bbwrap.sh"), _java_mem(config), "mapper=bbmap"]
    if config.is_paired:
        # Pairs and singletons are mapped as two input sets; the second set has no mate file
        cmd += [
            f"in={inputs[R1].path},{inputs[SINGLETON].path}",
            f"in2={inputs[R2].path},null",
            f"outu={outputs[R1]},{outputs[SINGLETON]}",
            f"outu2={outputs[R2]},null",
            f"outm={outputs['cont_R1']},{outputs['cont_singleton']}",
            f"outm2={outputs['cont_R2']},null",
        ]
    else:
        cmd += [
            f"in={inputs[R1].path}",
            f"outu={outputs[R1]}",
            f"outm={outputs['cont_R1']}",
        ]
    cmd += [
        f"minid={config.mind}",
        f"maxindel={config.maxindel}",
        f"bwr={config.bwr}",
        "bw=12",
        "minhits=2",
        "qtrim=rl",
        f"trimq={config.phred}",
        f"path={config.foreign_genome_ref}",
        f"qin={config.qin}",
        f"threads={config.threads}",
        "untrim",
        "quickmatch",
        "fast",
        "ow",
    ]
    return [cmd]


def _decontaminate_metrics(config: RunConfig) -> List[MetricsRule]:
    rules = [MetricsRule("Read 1 data:", "N Rate:")]
    # bbwrap only reports a mate block when mates were mapped
    if config.is_paired:
        rules.append(MetricsRule("Read 2 data:", "N Rate:"))
    return rules


# bbwrap maps its comma-separated inputs as separate sets, in this order
DECONTAMINATION_SETS = ("read pairs", "singletons")


def _decontaminate_metrics_parser(text: str, config: RunConfig) -> List[str]:
    """Mapping blocks in output order, each input set under its own heading."""
    rules = _decontaminate_metrics(config)
    if not config.is_paired:
        return extract_metrics(text, rules)
    lines = []
    sets = 0
    for block in extract_blocks(text, rules):
        if rules[0].start in block[0]:
            name = DECONTAMINATION_SETS[sets] if sets < len(DECONTAMINATION_SETS) else f"set {sets + 1}"
            lines.append(f"Input set: {name}")
            sets += 1
        lines.extend(block)
    return lines


DECONTAMINATE = TaskDescriptor(
    number=5,
    name="decontaminate",
    title="Decontamination against the foreign genome (bbwrap.sh)",
    input_roles=READ_ROLES,
    predicate=_qc_mode,
    upstream=lambda config: ("trim",),
    commands=_decontaminate_commands,
    outputs=_decontaminate_outputs,
    metrics=_decontaminate_metrics,
    metrics_parser=_decontaminate_metrics_parser,
    intermediate=True,
    tools=lambda config: ("bbwrap.sh",),
)


# =============================================================================
# 6  Mate merging (bbmerge.sh / reformat.sh)
# =============================================================================

def final_reads_name(config: RunConfig) -> str:
    return f"{config.prefix}_QCd.fq.gz"


def _merge_parts(outputs: Outputs) -> Tuple[Path, Path, Path]:
    final = outputs[MERGED]
    return (
        final.with_name(final.name.replace("_QCd.fq.gz", "_merged_tmp.fq.gz")),
        final.with_name(final.name.replace("_QCd.fq.gz", "_unmerged_R1_tmp.fq.gz")),
        final.with_name(final.name.replace("_QCd.fq.gz", "_unmerged_R2_tmp.fq.gz")),
    )


def _merge_outputs(inputs: Inputs, config: RunConfig) -> List[OutputSpec]:
    return [OutputSpec(MERGED, MERGED, final_reads_name(config), publish=True)]


def _merge_commands(inputs: Inputs, outputs: Outputs, config: RunConfig, tool: ToolResolver) -> List[List[str]]:
    if not config.is_paired:
        return [[
            tool("reformat.sh"), _java_mem(config),
            f"in={inputs[R1].path}", f"out={outputs[MERGED]}",
            f"qin={config.qin}", "ow",
        ]]
    merged, unmerged_r1, unmerged_r2 = _merge_parts(outputs)
    return [[
        tool("bbmerge.sh"), _java_mem(config),
        f"in1={inputs[R1].path}", f"in2={inputs[R2].path}",
        f"out={merged}", f"outu1={unmerged_r1}", f"outu2={unmerged_r2}",
        f"qin={config.qin}", f"threads={config.threads}", "ow",
    ]]


def concatenate_files(parts: Sequence[Path], dest: Path) -> None:
    """Byte-concatenate files; concatenated gzip members form a valid gzip stream."""
    with open(dest, "wb") as out:
        for part in parts:
            with open(part, "rb") as src:
                shutil.copyfileobj(src, out)


def _merge_finalize(inputs: Inputs, outputs: Outputs, config: RunConfig) -> None:
    if not config.is_paired:
        return
    parts = list(_merge_parts(outputs))
    if inputs[SINGLETON].is_present:
        parts.append(inputs[SINGLETON].path)
    concatenate_files(parts, outputs[MERGED])


def _merge_metrics(config: RunConfig) -> List[MetricsRule]:
    if config.is_paired:
        return [MetricsRule("Pairs:", "Avg Insert:")]
    return [MetricsRule("Input:", "Output:")]


MERGE = TaskDescriptor(
    number=6,
    name="merge",
    title="Mate merging and final read set",
    input_roles=READ_ROLES,
    predicate=lambda config: DECONTAMINATE.is_active(config),
    upstream=lambda config: ("decontaminate",),
    commands=_merge_commands,
    outputs=_merge_outputs,
    metrics=_merge_metrics,
    temporaries=lambda inputs, config: ["*_tmp.fq.gz"],
    finalize=_merge_finalize,
    tools=lambda config: ("bbmerge.sh",) if config.is_paired else ("reformat.sh",),
)


# =============================================================================
# Cleanup tasks
# =============================================================================

PUBLISH_TMP = CleanupTask(
    name="publish_tmp",
    title="Publish intermediate read files",
    predicate=lambda config: config.runs_qc and config.keep_qc_tmpfile,
)

MERGE_LOGS = CleanupTask(
    name="merge_logs",
    title="Merge stage logs",
    predicate=lambda config: True,
)


STAGES = (QC_RAW, DEDUP, TRIM, QC_TRIMMED, DECONTAMINATE, MERGE)
CLEANUP_TASKS = (PUBLISH_TMP, MERGE_LOGS)


def get_stage(name: str) -> TaskDescriptor:
    for stage in STAGES:
        if stage.name == name:
            return stage
    raise KeyError(name)
