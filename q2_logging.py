#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Logging helpers shared by the runner and the command-line entry point.

Two handlers are attached to the 'q2_pipeline' logger: a compact INFO stream
on stderr for people, and a DEBUG file under ``<workdir>/logs`` for later
inspection of batch runs on HPC/GPFS.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path

import psutil


LOGGER_NAME = "q2_pipeline"

# Wall-clock start for elapsed logging
_START_TIME = time.time()


def setup_logging(
    *, out_dir: Path, run_label: str, verbose: bool = False, to_file: bool = True
) -> logging.Logger:
    """
    Configure structured logging to both stderr (human) and a file (machine).

    Parameters
    ----------
    out_dir : pathlib.Path
        The run's working directory; the log goes to ``logs/run_debug.log``.
    run_label : str
        Identifier for the run; used in the opening banner.
    verbose : bool
        If True, stderr also shows DEBUG messages.
    to_file : bool
        If False, only the stderr handler is attached (dry runs write nothing).

    Returns
    -------
    logging.Logger
        Configured logger instance ('q2_pipeline').
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    # Avoid duplicate handlers if reinitialised
    logger.handlers.clear()
    logger.propagate = False

    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    logger.addHandler(stream_handler)

    if to_file:
        log_dir = Path(out_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(
            filename=log_dir / "run_debug.log", mode="a", encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )
        logger.addHandler(file_handler)

    logger.info("Run label: %s", run_label)
    logger.info("Working directory: %s", Path(out_dir).resolve())
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))
    return logger


def log_section(*, logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    logger: logging.Logger,
    prefix: str = "",
    extra_msg: str | None = None,
) -> None:
    """
    Log the current and peak resident set size, plus elapsed time.

    Child processes are included in the current figure, since the heavy
    lifting happens in QIIME 2 subprocesses rather than in this one.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance to emit the message.
    prefix : str
        Optional prefix (e.g. 'START', 'END', or a stage name).
    extra_msg : str | None
        Optional extra text appended to the message.
    """
    proc = psutil.Process(os.getpid())
    try:
        rss = proc.memory_info().rss
        for child in proc.children(recursive=True):
            try:
                rss += child.memory_info().rss
            except psutil.Error:
                continue
        cur_gb = rss / (1024 ** 3)
    except psutil.Error:
        cur_gb = None

    peak_gb = None
    try:
        import resource  # not available on Windows
        peak_kb = resource.getrusage(resource.RUSAGE_CHILDREN).ru_maxrss
        # Linux reports KB, macOS reports bytes
        if sys.platform.startswith("linux"):
            peak_gb = peak_kb / (1024 ** 2)
        else:
            peak_gb = peak_kb / (1024 ** 3)
    except ImportError:
        peak_gb = None

    elapsed_min = max(0.0, time.time() - _START_TIME) / 60.0

    parts = []
    if prefix:
        parts.append(prefix.strip())
    if cur_gb is not None:
        parts.append(f"RAM: {cur_gb:.2f} GB")
    if peak_gb is not None:
        parts.append(f"Peak child: {peak_gb:.2f} GB")
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)

    logger.info(" | ".join(parts))
