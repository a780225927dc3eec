"""
File routing between stages.

The router decides which files a stage receives. Upstream outputs are
concatenated in emission order and matched to the stage's input roles in
canonical order (R1, R2, singleton). Roles that do not exist under the
library layout are bound to ``NO_FILE`` rather than left out, so a stage
built for paired-end data runs unchanged on single-end data.
"""

from pathlib import Path
from typing import Dict, List, Mapping, Sequence

from metaprep.config import RunConfig
from metaprep.exceptions import RoutingError
from metaprep.executor import StageResult
from metaprep.tasks import (
    NO_FILE,
    R1,
    R2,
    RAW_SOURCE,
    ROLE_LABELS,
    ROUTABLE_ROLES,
    FileHandle,
    InputGroup,
    TaskDescriptor,
    applicable_roles,
)


class FileRouter:
    """Resolves the input groups of a stage from upstream results."""

    def __init__(self, config: RunConfig):
        self.config = config

    def raw_outputs(self) -> List[FileHandle]:
        """The input reads, presented like the outputs of a stage."""
        handles = [FileHandle(Path(self.config.reads1), R1)]
        if self.config.is_paired:
            handles.append(FileHandle(Path(self.config.reads2), R2))
        return handles

    def upstream_outputs(
        self, stage: TaskDescriptor, results: Mapping[str, Sequence[StageResult]]
    ) -> List[FileHandle]:
        emitted = []
        for name in stage.predecessors(self.config):
            if name == RAW_SOURCE:
                emitted.extend(self.raw_outputs())
                continue
            if name not in results:
                raise RoutingError(f"Stage '{stage.name}' needs results of '{name}', which has not finished")
            for result in results[name]:
                emitted.extend(result.outputs)
        return [h for h in emitted if h.role in ROUTABLE_ROLES]

    def bind(self, stage: TaskDescriptor, emitted: Sequence[FileHandle]) -> Dict[str, FileHandle]:
        """Bind each input role to exactly one handle (or NO_FILE)."""
        allowed = applicable_roles(self.config)
        inputs = {}
        for role in stage.input_roles:
            matches = [h for h in emitted if h.role == role]
            if role not in allowed:
                if matches:
                    raise RoutingError(
                        f"Stage '{stage.name}' received role '{role}' from upstream, "
                        f"which does not exist for {self.config.library_layout}-end libraries"
                    )
                inputs[role] = NO_FILE
                continue
            if not matches:
                raise RoutingError(f"Stage '{stage.name}' is missing its '{role}' input")
            if len(matches) > 1:
                paths = ", ".join(str(h) for h in matches)
                raise RoutingError(f"Stage '{stage.name}' received several '{role}' inputs: {paths}")
            inputs[role] = matches[0]
        return inputs

    def resolve(
        self, stage: TaskDescriptor, results: Mapping[str, Sequence[StageResult]]
    ) -> List[InputGroup]:
        inputs = self.bind(stage, self.upstream_outputs(stage, results))
        if not stage.per_file:
            return [InputGroup(label="", inputs=inputs)]

        groups = []
        for role in stage.input_roles:
            handle = inputs[role]
            if not handle.is_present:
                continue
            label = ROLE_LABELS.get(role, "") if self.config.is_paired else ""
            groups.append(InputGroup(label=label, inputs={role: handle}))
        return groups
