#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stage and Pipeline definitions for the staged QIIME 2 runner.

Overview
--------
A Stage is one external-tool invocation with the files it reads and the files
it writes. A Pipeline is an ordered list of Stages sharing one working
directory; list order is execution order.

Notes
-----
- Relative paths are resolved against the working directory; absolute paths
  are treated as external inputs (raw reads, metadata, classifier).
- Stages are frozen once built; a run never alters the Pipeline.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple


# ----------------------------- errors ----------------------------- #

class PipelineError(RuntimeError):
    """Base class for every pipeline failure.

    Attributes
    ----------
    stage_name : str or None
        Stage that failed, if the failure belongs to a stage.
    exit_code : int
        Process exit code the command-line entry point reports.
    """

    exit_code = 1

    def __init__(self, message: str, *, stage_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage_name = stage_name


class ConfigError(PipelineError):
    """Configuration file is missing, malformed or inconsistent."""

    exit_code = 2


class ValidationError(PipelineError):
    """A Stage's declared inputs cannot be satisfied before execution."""

    exit_code = 3


class DependencyError(ValidationError):
    """A declared input has no earlier producer and is absent on disk."""

    def __init__(self, *, stage_name: str, missing_path: Path) -> None:
        super().__init__(
            f"Stage '{stage_name}' needs {missing_path}, which no earlier stage "
            "produces and which does not exist on disk.",
            stage_name=stage_name,
        )
        self.missing_path = Path(missing_path)


class ExecutionError(PipelineError):
    """The external command exited non-zero, was killed, or could not start."""

    exit_code = 4

    def __init__(self, message: str, *, stage_name: str,
                 exit_status: Optional[int] = None) -> None:
        super().__init__(message, stage_name=stage_name)
        self.exit_status = exit_status


class OutputMissingError(PipelineError):
    """The command exited 0 but a declared output file is absent."""

    exit_code = 5

    def __init__(self, *, stage_name: str, missing: Sequence[Path]) -> None:
        listed = ", ".join(str(p) for p in missing)
        super().__init__(
            f"Stage '{stage_name}' reported success but did not create: {listed}",
            stage_name=stage_name,
        )
        self.missing = tuple(Path(p) for p in missing)


class ResumeInconsistencyError(PipelineError):
    """Resume found an existing output that looks truncated or malformed."""

    exit_code = 6

    def __init__(self, *, stage_name: str, path: Path, problem: str) -> None:
        super().__init__(
            f"Cannot resume stage '{stage_name}': {path} {problem}. "
            "Delete it and rerun.",
            stage_name=stage_name,
        )
        self.path = Path(path)
        self.problem = problem


# ----------------------------- stage ----------------------------- #

def _as_paths(values: Iterable) -> frozenset:
    return frozenset(Path(v) for v in values)


@dataclass(frozen=True)
class Stage:
    """One external-tool invocation.

    Parameters
    ----------
    name : str
        Unique stage name, also used for the step log file.
    command : sequence of str
        Argument vector (no shell).
    declared_inputs : iterable of path-like
        Files the command reads.
    declared_outputs : iterable of path-like
        Files the command must leave behind; later stages may only depend on
        these.
    """

    name: str
    command: Tuple[str, ...]
    declared_inputs: frozenset = field(default_factory=frozenset)
    declared_outputs: frozenset = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Stage name must be a non-empty string.")
        if not self.command:
            raise ValueError(f"Stage '{self.name}' has an empty command.")
        object.__setattr__(self, "command", tuple(str(c) for c in self.command))
        object.__setattr__(self, "declared_inputs", _as_paths(self.declared_inputs))
        object.__setattr__(self, "declared_outputs", _as_paths(self.declared_outputs))

    @property
    def command_line(self) -> str:
        """Shell-quoted rendering of the command, for logs only."""
        return shlex.join(self.command)

    def resolved_outputs(self, workdir: Path) -> List[Path]:
        return sorted(Path(workdir) / p for p in self.declared_outputs)

    def missing_outputs(self, workdir: Path) -> List[Path]:
        """Return declared outputs that do not exist under ``workdir``."""
        return [p for p in self.resolved_outputs(workdir) if not p.exists()]


# ----------------------------- pipeline ----------------------------- #

class Pipeline:
    """Ordered, validated sequence of Stages sharing a working directory."""

    def __init__(self, stages: Iterable[Stage] = ()) -> None:
        self._stages: Tuple[Stage, ...] = tuple(stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __getitem__(self, index: int) -> Stage:
        return self._stages[index]

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def stage_names(self) -> List[str]:
        return [s.name for s in self._stages]

    def external_inputs(self) -> List[Path]:
        """Declared inputs that no stage in the pipeline produces."""
        produced: set = set()
        external: List[Path] = []
        for stage in self._stages:
            for path in sorted(stage.declared_inputs):
                if path not in produced and path not in external:
                    external.append(path)
            produced.update(stage.declared_outputs)
        return external

    def validate(self, workdir: Path = Path(".")) -> None:
        """
        Check that every declared input is satisfied before its stage runs.

        An input is satisfied when an earlier stage declares it as an output,
        or when it already exists on disk (relative paths are looked up under
        ``workdir``). Nothing is written.

        Parameters
        ----------
        workdir : pathlib.Path
            Working directory the pipeline will run in.

        Raises
        ------
        ValidationError
            On duplicate stage names.
        DependencyError
            For the first unsatisfied input, naming the stage and the path.
        """
        workdir = Path(workdir)
        seen_names: set = set()
        for stage in self._stages:
            if stage.name in seen_names:
                raise ValidationError(
                    f"Duplicate stage name '{stage.name}'.", stage_name=stage.name
                )
            seen_names.add(stage.name)

        produced: set = set()
        for stage in self._stages:
            for path in sorted(stage.declared_inputs):
                if path in produced:
                    continue
                if (workdir / path).exists():
                    continue
                raise DependencyError(stage_name=stage.name, missing_path=path)
            produced.update(stage.declared_outputs)
