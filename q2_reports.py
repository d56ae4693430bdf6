#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tab-separated run reports.

- ``logs/execution_log.tsv``: one row per stage record, appended as the run
  progresses so a crashed run still leaves a trail.
- ``taxa_summary.tsv``: per collapsed level, feature counts and total frequency
  read back from the biom-converted TSV exports.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd


def write_report_row(*, report_path: Path, fields: Dict[str, str]) -> None:
    """Append a single row to a report TSV, creating the header if needed.

    Parameters
    ----------
    report_path : pathlib.Path
        Path to the report TSV.
    fields : dict
        Mapping from column name to value for this row.
    """
    report_path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not report_path.exists() or report_path.stat().st_size == 0
    with report_path.open("a", encoding="utf-8", newline="") as fh:
        w = csv.writer(fh, delimiter="\t", lineterminator="\n")
        if is_new:
            w.writerow(list(fields.keys()))
        w.writerow(["" if v is None else str(v) for v in fields.values()])


def append_execution_record(*, report_path: Path, record) -> None:
    """Append one ``ExecutionRecord`` to the execution log TSV."""
    end = record.end_time.isoformat(timespec="seconds") if record.end_time else ""
    write_report_row(
        report_path=report_path,
        fields={
            "stage": record.stage_name,
            "status": record.status.value if record.status else "",
            "exit_status": "" if record.exit_status is None else record.exit_status,
            "start_time": record.start_time.isoformat(timespec="seconds"),
            "end_time": end,
            "elapsed_s": f"{record.elapsed_seconds:.1f}",
            "log_file": record.log_file or "",
        },
    )


# ----------------------------- taxa summary ----------------------------- #

def read_biom_tsv(tsv_path: Path) -> pd.DataFrame:
    """
    Read a ``biom convert --to-tsv`` table.

    The converter writes a '# Constructed from biom file' comment first and
    the real header ('#OTU ID ...') on line 2; both layouts are accepted.
    """
    with tsv_path.open("r", encoding="utf-8") as fh:
        first = fh.readline()
        maybe_header = fh.readline()

    header_line_index = 0
    if first.startswith("# Constructed") and (
        maybe_header.startswith("#OTU ID") or maybe_header.startswith("#OTUID")
    ):
        header_line_index = 1
    return pd.read_csv(tsv_path, sep="\t", header=header_line_index, dtype=str, engine="python")


def collapsed_table_stats(tsv_path: Path) -> Dict[str, int]:
    """
    Return basic stats for a collapsed table TSV:
    - n_samples (columns after the feature ID)
    - n_features (rows)
    - n_nonzero_features (rows with any non-zero count)
    - total_frequency (sum of all counts)
    """
    df = read_biom_tsv(tsv_path)
    if df.shape[1] < 2:
        return {"n_samples": 0, "n_features": int(df.shape[0]),
                "n_nonzero_features": 0, "total_frequency": 0}

    numeric = df.iloc[:, 1:].apply(pd.to_numeric, errors="coerce").fillna(0)
    row_sums = numeric.sum(axis=1)
    return {
        "n_samples": int(numeric.shape[1]),
        "n_features": int(df.shape[0]),
        "n_nonzero_features": int((row_sums > 0).sum()),
        "total_frequency": int(round(float(numeric.values.sum()))),
    }


def write_taxa_summary_tsv(
    *,
    workdir: Path,
    levels: Iterable[int],
    out_path: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """
    Summarise every exported ``exports/table-L{level}.tsv`` into one TSV.

    Levels whose export is missing are skipped with an info message.

    Returns
    -------
    pathlib.Path
        The written summary path (default ``<workdir>/taxa_summary.tsv``).
    """
    workdir = Path(workdir)
    out_fp = Path(out_path) if out_path else workdir / "taxa_summary.tsv"
    rows: List[Dict[str, int]] = []
    for level in sorted(levels):
        tsv = workdir / "exports" / f"table-L{level}.tsv"
        if not tsv.exists():
            if logger:
                logger.info("No exported table for level %s; skipping in taxa summary.", level)
            continue
        rows.append({"level": level, **collapsed_table_stats(tsv)})

    cols = ["level", "n_samples", "n_features", "n_nonzero_features", "total_frequency"]
    out_fp.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=cols).to_csv(out_fp, sep="\t", index=False)
    if logger:
        logger.info("Wrote %s", out_fp)
    return out_fp
