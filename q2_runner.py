#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sequential, fail-fast executor for a ``Pipeline``.

Overview
--------
Stages run one at a time in declared order, each blocking until its external
process exits. The first failure (non-zero exit, missing declared output,
interruption, or a malformed output found on resume) halts the run and is
returned as ``PipelineResult.failure``; nothing is retried.

Design choices
--------------
- stdout and stderr of each stage are merged, tee'd to
  ``<workdir>/logs/NN_<stage>.log`` and kept on the ExecutionRecord.
- Resume skips a stage only when all of its declared outputs exist.
- Scratch variables (TMPDIR etc.) are passed to children, never set on
  ``os.environ``.
- Running two pipelines against one working directory is unsupported. A pid
  marker lets a second run notice the first and warn; it does not lock.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import zipfile
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import psutil

from q2_logging import LOGGER_NAME, log_memory_usage
from q2_reports import append_execution_record
from q2_stages import (
    ExecutionError,
    OutputMissingError,
    Pipeline,
    PipelineError,
    ResumeInconsistencyError,
    Stage,
    ValidationError,
)


RUN_MARKER = ".q2_pipeline.pid"
EXECUTION_LOG = Path("logs") / "execution_log.tsv"


class StageStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionRecord:
    """What happened to one stage during one run."""

    stage_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    exit_status: Optional[int] = None
    status: StageStatus = StageStatus.RUNNING
    captured_output: str = ""
    log_file: Optional[Path] = None  # unset when the stage did not execute

    @classmethod
    def begin(cls, stage_name: str) -> "ExecutionRecord":
        return cls(stage_name=stage_name, start_time=datetime.now())

    def finish(
        self,
        status: StageStatus,
        *,
        exit_status: Optional[int] = None,
        captured_output: str = "",
    ) -> "ExecutionRecord":
        return replace(
            self,
            end_time=datetime.now(),
            status=status,
            exit_status=exit_status,
            captured_output=captured_output,
        )

    @property
    def elapsed_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return max(0.0, (self.end_time - self.start_time).total_seconds())


@dataclass(frozen=True)
class PipelineFailure:
    stage_name: Optional[str]
    reason: str
    error: PipelineError

    @property
    def kind(self) -> str:
        return type(self.error).__name__


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one run: ordered stage records plus the failure, if any."""

    completed_stages: Tuple[ExecutionRecord, ...] = ()
    failure: Optional[PipelineFailure] = None
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def state(self) -> RunState:
        return RunState.COMPLETED if self.failure is None else RunState.FAILED

    @property
    def exit_code(self) -> int:
        return 0 if self.failure is None else self.failure.error.exit_code

    def record_for(self, stage_name: str) -> Optional[ExecutionRecord]:
        for record in self.completed_stages:
            if record.stage_name == stage_name:
                return record
        return None


# ----------------------------- helpers ----------------------------- #

def check_artifact(path: Path) -> Optional[str]:
    """
    Best-effort integrity check of an existing output.

    Returns
    -------
    str or None
        A short description of the problem, or None if the file looks fine.
    """
    path = Path(path)
    if path.is_dir():
        return None
    if path.stat().st_size == 0:
        return "is empty"
    suffix = path.suffix.lower()
    if suffix in (".qza", ".qzv") and not zipfile.is_zipfile(path):
        return "is not a valid QIIME 2 archive (truncated?)"
    if suffix == ".gz":
        with path.open("rb") as fh:
            if fh.read(2) != b"\x1f\x8b":
                return "is not gzip-compressed (truncated?)"
    return None


def detect_concurrent_run(workdir: Path) -> Optional[int]:
    """Return the PID of another live run using ``workdir``, if any."""
    marker = Path(workdir) / RUN_MARKER
    try:
        pid = int(marker.read_text(encoding="utf-8").strip())
    except (FileNotFoundError, ValueError):
        return None
    if pid == os.getpid():
        return None
    return pid if psutil.pid_exists(pid) else None


def _describe_returncode(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"signal {-returncode}"
        return f"terminated by {name}"
    return f"exited with status {returncode}"


# ----------------------------- runner ----------------------------- #

class Runner:
    """
    Execute a Pipeline strictly in sequence, recording every stage.

    Parameters
    ----------
    logger : logging.Logger, optional
        Defaults to the 'q2_pipeline' logger.
    env : mapping, optional
        Extra environment variables for every child process.
    tmp_dir : path-like, optional
        Scratch directory for children (TMPDIR, QIIMETMPDIR); defaults to
        ``<workdir>/tmp``.
    """

    def __init__(
        self,
        *,
        logger: Optional[logging.Logger] = None,
        env: Optional[Mapping[str, str]] = None,
        tmp_dir: Optional[Path] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.env: Dict[str, str] = dict(env or {})
        self.tmp_dir = Path(tmp_dir) if tmp_dir else None
        self.state = RunState.NOT_STARTED
        self.execution_log: List[ExecutionRecord] = []

    # -- public -------------------------------------------------------- #

    def run(
        self,
        pipeline: Pipeline,
        workdir: Path,
        resume: bool = False,
        dry_run: bool = False,
    ) -> PipelineResult:
        """
        Run (or, with ``dry_run``, only plan) every stage of ``pipeline``.

        Parameters
        ----------
        pipeline : Pipeline
            Stages to execute, in order.
        workdir : pathlib.Path
            Working directory; commands run with it as cwd.
        resume : bool
            Skip stages whose declared outputs all exist already.
        dry_run : bool
            Validate and log the plan without executing or writing anything.

        Returns
        -------
        PipelineResult
            Records for every stage reached, and the failure if one occurred.
        """
        workdir = Path(workdir).resolve()
        self.execution_log = []
        self.state = RunState.RUNNING

        try:
            pipeline.validate(workdir)
        except ValidationError as err:
            self.logger.error("Validation failed: %s", err)
            return self._finish(failure=self._failure(err), dry_run=dry_run)

        if dry_run:
            return self._plan(pipeline, workdir, resume=resume)

        workdir.mkdir(parents=True, exist_ok=True)
        other = detect_concurrent_run(workdir)
        if other is not None:
            self.logger.warning(
                "Another run (pid %s) appears to be using %s; concurrent runs on one "
                "working directory are not supported.", other, workdir,
            )
        marker = workdir / RUN_MARKER
        marker.write_text(str(os.getpid()), encoding="utf-8")

        try:
            for index, stage in enumerate(pipeline, start=1):
                record, error = self._run_stage(stage, workdir=workdir, index=index,
                                                resume=resume)
                self._append(record, workdir=workdir)
                if error is not None:
                    self.logger.error("Stage '%s' failed: %s", stage.name, error)
                    return self._finish(failure=self._failure(error))
            return self._finish()
        finally:
            if marker.exists() and marker.read_text(encoding="utf-8").strip() == str(os.getpid()):
                marker.unlink()

    # -- internals ----------------------------------------------------- #

    def _finish(self, *, failure: Optional[PipelineFailure] = None,
                dry_run: bool = False) -> PipelineResult:
        result = PipelineResult(
            completed_stages=tuple(self.execution_log),
            failure=failure,
            dry_run=dry_run,
        )
        self.state = result.state
        return result

    @staticmethod
    def _failure(error: PipelineError) -> PipelineFailure:
        return PipelineFailure(stage_name=error.stage_name, reason=str(error), error=error)

    def _append(self, record: ExecutionRecord, *, workdir: Path) -> None:
        self.execution_log.append(record)
        try:
            append_execution_record(report_path=workdir / EXECUTION_LOG, record=record)
        except OSError as exc:
            self.logger.warning("Could not write %s: %s", EXECUTION_LOG, exc)

    def _resume_check(self, stage: Stage, workdir: Path) -> Tuple[bool, Optional[PipelineError]]:
        """Decide whether resume may skip ``stage``: (skip, error)."""
        if not stage.declared_outputs or stage.missing_outputs(workdir):
            return False, None
        for path in stage.resolved_outputs(workdir):
            problem = check_artifact(path)
            if problem:
                return False, ResumeInconsistencyError(
                    stage_name=stage.name, path=path, problem=problem
                )
        return True, None

    def _plan(self, pipeline: Pipeline, workdir: Path, *, resume: bool) -> PipelineResult:
        for stage in pipeline:
            record = ExecutionRecord.begin(stage.name)
            if resume:
                skip, error = self._resume_check(stage, workdir)
                if error is not None:
                    self.execution_log.append(record.finish(StageStatus.FAILED))
                    return self._finish(failure=self._failure(error), dry_run=True)
                if skip:
                    self.logger.info("[dry-run] skip %s (outputs present)", stage.name)
                    self.execution_log.append(record.finish(StageStatus.SKIPPED))
                    continue
            self.logger.info("[dry-run] %s: %s", stage.name, stage.command_line)
            self.execution_log.append(record.finish(StageStatus.PLANNED))
        return self._finish(dry_run=True)

    def _child_env(self, workdir: Path) -> Dict[str, str]:
        tmp = self.tmp_dir or (workdir / "tmp")
        tmp.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        for key in ("TMPDIR", "TEMP", "TMP", "QIIMETMPDIR"):
            env[key] = str(tmp)
        env["XDG_CACHE_HOME"] = str(workdir / ".cache")
        env.update(self.env)
        return env

    def _run_stage(
        self, stage: Stage, *, workdir: Path, index: int, resume: bool
    ) -> Tuple[ExecutionRecord, Optional[PipelineError]]:
        record = ExecutionRecord.begin(stage.name)

        if resume:
            skip, error = self._resume_check(stage, workdir)
            if error is not None:
                return record.finish(StageStatus.FAILED), error
            if skip:
                self.logger.info("Skipping %s: all declared outputs present.", stage.name)
                return record.finish(StageStatus.SKIPPED), None

        log_file = workdir / "logs" / f"{index:02d}_{stage.name}.log"
        record = replace(record, log_file=log_file)
        self.logger.info("▶ %s", stage.command_line)
        self.logger.debug("Step log: %s", log_file)

        error: Optional[PipelineError] = None
        returncode: Optional[int] = None
        output = ""
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            # Tools such as cutadapt do not create missing output folders.
            for path in stage.resolved_outputs(workdir):
                path.parent.mkdir(parents=True, exist_ok=True)

            with log_file.open("ab") as lf:
                lf.write(("$ " + stage.command_line + "\n").encode("utf-8"))
                lf.flush()
                offset = lf.tell()
                try:
                    proc = subprocess.run(
                        list(stage.command),
                        cwd=workdir,
                        stdout=lf,
                        stderr=subprocess.STDOUT,
                        env=self._child_env(workdir),
                        check=False,
                    )
                    returncode = proc.returncode
                except OSError as exc:
                    error = ExecutionError(
                        f"Stage '{stage.name}' could not start {stage.command[0]!r}: {exc}",
                        stage_name=stage.name,
                    )
                except KeyboardInterrupt:
                    error = ExecutionError(
                        f"Stage '{stage.name}' was interrupted.", stage_name=stage.name
                    )

            with log_file.open("rb") as fh:
                fh.seek(offset)
                output = fh.read().decode("utf-8", errors="replace")
        except OSError as exc:
            if error is None:
                error = ExecutionError(
                    f"Stage '{stage.name}' could not prepare its step log or output "
                    f"folders: {exc}",
                    stage_name=stage.name,
                )

        log_memory_usage(self.logger, prefix=stage.name)

        if error is None and returncode != 0:
            error = ExecutionError(
                f"Stage '{stage.name}' {_describe_returncode(returncode)}. See log: {log_file}",
                stage_name=stage.name,
                exit_status=returncode,
            )
        if error is None:
            missing = stage.missing_outputs(workdir)
            if missing:
                error = OutputMissingError(stage_name=stage.name, missing=missing)

        status = StageStatus.SUCCEEDED if error is None else StageStatus.FAILED
        return record.finish(status, exit_status=returncode, captured_output=output), error
