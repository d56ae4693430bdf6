#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command-line entry point for the staged QIIME 2 amplicon pipeline.

Example
-------
q2-pipeline run \
  --config configs/JH102.yaml \
  --workdir results/JH102 \
  --resume

Exit codes
----------
0  success
2  configuration error (also argparse usage errors)
3  validation error (a declared input cannot be satisfied)
4  a stage's command failed, was interrupted, or could not start
5  a stage exited 0 but left a declared output missing
6  resume found a truncated or malformed existing output

Notes
-----
- Only one run per working directory at a time; a second run warns.
- Named arguments only.
"""

from __future__ import annotations

import argparse
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from q2_amplicon_pipeline import (
    build_amplicon_pipeline,
    check_metadata_samples,
    check_tools,
    read_barcode_names,
)
from q2_logging import log_memory_usage, log_section, setup_logging
from q2_params import load_config
from q2_reports import write_taxa_summary_tsv
from q2_runner import Runner, StageStatus
from q2_stages import ConfigError


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
        Parser with a single ``run`` sub-command.
    """
    p = argparse.ArgumentParser(
        prog="q2-pipeline",
        description="Staged QIIME 2 amplicon pipeline: demultiplex, denoise, classify, collapse.",
        allow_abbrev=False,
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run (or dry-run) the pipeline.", allow_abbrev=False)
    run.add_argument("--config", required=True, type=Path, help="YAML/JSON run configuration.")
    run.add_argument("--workdir", required=True, type=Path, help="Working directory for all outputs.")
    run.add_argument("--dry-run", action="store_true",
                     help="Validate and print the stage plan without executing anything.")
    run.add_argument("--resume", action="store_true",
                     help="Skip stages whose declared outputs already exist.")
    run.add_argument("--verbose", action="store_true", help="Show DEBUG messages on stderr.")
    return p


def _sigterm_to_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt(f"received signal {signum}")


def run_command(args: argparse.Namespace) -> int:
    """Execute the ``run`` sub-command and return the process exit code."""
    workdir = Path(args.workdir).expanduser().resolve()

    try:
        config = load_config(args.config)
    except ConfigError as err:
        sys.stderr.write(f"ERROR: {err}\n")
        return err.exit_code

    logger = setup_logging(out_dir=workdir, run_label=config.run_label,
                           verbose=args.verbose, to_file=not args.dry_run)
    start = time.time()
    logger.info("Start time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(start)))
    log_memory_usage(logger, prefix="START")

    try:
        samples = read_barcode_names(config.inputs.barcodes)
        logger.info("Samples (%d): %s", len(samples), ", ".join(samples))
        if config.inputs.metadata.exists():
            check_metadata_samples(metadata_tsv=config.inputs.metadata, samples=samples,
                                   logger=logger)
    except ConfigError as err:
        logger.error("%s", err)
        return err.exit_code

    for name, found in check_tools(config.tools).items():
        if found is None:
            logger.warning("Executable for %s not found on PATH: %s", name,
                           config.tools.executables()[name])
        else:
            logger.debug("%s=%s", name, found)

    pipeline = build_amplicon_pipeline(config, samples=samples)
    log_section(logger=logger, title=f"{'Dry run' if args.dry_run else 'Run'}: "
                                     f"{len(pipeline)} stages")

    runner = Runner(logger=logger,
                    tmp_dir=Path(config.tools.tmp_dir) if config.tools.tmp_dir else None)
    previous = signal.signal(signal.SIGTERM, _sigterm_to_interrupt)
    try:
        result = runner.run(pipeline, workdir, resume=args.resume, dry_run=args.dry_run)
    finally:
        signal.signal(signal.SIGTERM, previous)

    counts: dict = {}
    for record in result.completed_stages:
        counts[record.status.value] = counts.get(record.status.value, 0) + 1
    logger.info("Stage outcomes: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "none")

    if result.failure is not None:
        failure = result.failure
        logger.error("Pipeline FAILED at stage '%s' [%s]: %s",
                     failure.stage_name or "-", failure.kind, failure.reason)
        return result.exit_code

    if not args.dry_run:
        write_taxa_summary_tsv(workdir=workdir, levels=config.parameters.sorted_levels,
                               logger=logger)
        skipped = [r.stage_name for r in result.completed_stages
                   if r.status is StageStatus.SKIPPED]
        if skipped:
            logger.info("Resumed; skipped: %s", ", ".join(skipped))

    end = time.time()
    logger.info("End time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(end)))
    log_memory_usage(logger, prefix="END", extra_msg="Pipeline complete")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for ``q2-pipeline``."""
    args = build_arg_parser().parse_args(argv)
    if args.cmd == "run":
        return run_command(args)
    return 2


if __name__ == "__main__":
    sys.exit(main())
