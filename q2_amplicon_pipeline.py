#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stage wiring for the paired-end amplicon workflow.

Overview
--------
Raw paired FASTQ (one pooled run) → per-sample demultiplexed FASTQ (cutadapt,
inline barcodes) → QIIME 2 import → DADA2 denoise-paired → sklearn taxonomy
→ taxa filter → transpose/tabulate → per-level collapse → BIOM export → TSV.

File contract
-------------
All produced files are relative to the working directory:

  demux/<sample>_S1_L<lane>_R{1,2}_001.fastq.gz   Casava 1.8 naming
  demux.qza, demux.qzv
  table.qza, rep-seqs.qza, denoising-stats.qza, table.qzv
  taxonomy.qza
  table-filtered.qza, table-transposed.qza, taxonomy-table.qzv
  taxa-barplot.qzv
  collapsed/table-L<level>.qza
  exports/table-L<level>/feature-table.biom
  exports/table-L<level>.tsv

Notes
-----
- Sample IDs come from the barcode FASTA headers.
- The sample metadata TSV is a read-only side input.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from q2_params import PipelineConfig, ToolConfig
from q2_stages import ConfigError, Pipeline, Stage


_SAMPLE_ID_RE = re.compile(r"^[A-Za-z0-9.\-]+$")


class ArtifactPaths:
    """Relative names of every file the pipeline produces.

    Attributes
    ----------
    demux_dir : Path
        Per-sample demultiplexed FASTQ directory.
    demux_qza, demux_qzv : Path
        Imported reads and their summary.
    table, rep_seqs, denoise_stats, table_qzv : Path
        DADA2 outputs and the table summary.
    taxonomy : Path
        Classifier output.
    table_filtered, table_transposed, taxonomy_table_qzv, barplot_qzv : Path
        Filtered/transposed tables and their visualisations.
    """

    def __init__(self, *, lane: int = 1) -> None:
        self.lane = lane
        self.demux_dir = Path("demux")
        self.demux_qza = Path("demux.qza")
        self.demux_qzv = Path("demux.qzv")
        self.table = Path("table.qza")
        self.rep_seqs = Path("rep-seqs.qza")
        self.denoise_stats = Path("denoising-stats.qza")
        self.table_qzv = Path("table.qzv")
        self.taxonomy = Path("taxonomy.qza")
        self.table_filtered = Path("table-filtered.qza")
        self.table_transposed = Path("table-transposed.qza")
        self.taxonomy_table_qzv = Path("taxonomy-table.qzv")
        self.barplot_qzv = Path("taxa-barplot.qzv")
        self.collapsed_dir = Path("collapsed")
        self.exports_dir = Path("exports")

    def read_name(self, sample: str, read: int) -> str:
        return f"{sample}_S1_L{self.lane:03d}_R{read}_001.fastq.gz"

    def read_template(self, read: int) -> str:
        """cutadapt output template; ``{name}`` becomes the barcode name."""
        return str(self.demux_dir / self.read_name("{name}", read))

    def sample_reads(self, sample: str) -> List[Path]:
        return [self.demux_dir / self.read_name(sample, read) for read in (1, 2)]

    def collapsed(self, level: int) -> Path:
        return self.collapsed_dir / f"table-L{level}.qza"

    def export_dir(self, level: int) -> Path:
        return self.exports_dir / f"table-L{level}"

    def exported_biom(self, level: int) -> Path:
        return self.export_dir(level) / "feature-table.biom"

    def exported_tsv(self, level: int) -> Path:
        return self.exports_dir / f"table-L{level}.tsv"


# ------------------------ barcodes / metadata ------------------------ #

def read_barcode_names(barcodes_fasta: Path) -> List[str]:
    """
    Return sample names from the headers of a barcode FASTA, in file order.

    Raises
    ------
    ConfigError
        If the file is missing or empty, a name is duplicated, or a name is
        not safe for Casava-style file names ([A-Za-z0-9.-]).
    """
    barcodes_fasta = Path(barcodes_fasta)
    if not barcodes_fasta.exists():
        raise ConfigError(f"Barcode FASTA not found: {barcodes_fasta}")

    names: List[str] = []
    with barcodes_fasta.open("r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if not line.startswith(">"):
                continue
            name = line[1:].split()[0] if line[1:].strip() else ""
            if not _SAMPLE_ID_RE.match(name):
                raise ConfigError(
                    f"Barcode name {name!r} in {barcodes_fasta} must match [A-Za-z0-9.-]+ "
                    "(underscores break Casava file naming)."
                )
            if name in names:
                raise ConfigError(f"Duplicate barcode name {name!r} in {barcodes_fasta}")
            names.append(name)
    if not names:
        raise ConfigError(f"No barcode records found in {barcodes_fasta}")
    return names


def check_metadata_samples(
    *, metadata_tsv: Path, samples: List[str], logger: Optional[logging.Logger] = None
) -> List[str]:
    """
    Check that every demultiplexed sample has a metadata row.

    The first line is always the header, even when it starts with '#'
    (e.g. '#SampleID'). Later lines starting with '#' (including
    '#q2:types') are ignored. Extra metadata samples are allowed and returned
    so the caller can report them.

    Raises
    ------
    ConfigError
        If the metadata cannot be parsed, has no rows, or some samples are
        absent from it.
    """
    try:
        md = pd.read_csv(metadata_tsv, sep="\t", dtype=str)
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read metadata file {metadata_tsv}: {exc}") from exc
    ids = md.iloc[:, 0].dropna().astype(str).str.strip()
    meta_ids = {x for x in ids if x and not x.startswith("#")}
    if not meta_ids:
        raise ConfigError(f"Metadata file has no sample rows: {metadata_tsv}")

    missing = sorted(s for s in samples if s not in meta_ids)
    if missing:
        raise ConfigError(
            "Samples in the barcode file but not in the metadata: " + ", ".join(missing)
        )
    extra = sorted(meta_ids - set(samples))
    if extra and logger:
        logger.warning("Metadata samples without a barcode (ignored): %s", ", ".join(extra))
    return extra


def check_tools(tools: ToolConfig) -> Dict[str, Optional[str]]:
    """Resolve each required executable on PATH; None marks a missing one."""
    return {name: shutil.which(exe) for name, exe in tools.executables().items()}


# ----------------------------- wiring ----------------------------- #

def build_amplicon_pipeline(
    config: PipelineConfig, *, samples: Optional[List[str]] = None
) -> Pipeline:
    """
    Build the ordered stage list for ``config``.

    Parameters
    ----------
    config : PipelineConfig
        Inputs, parameters and tool locations.
    samples : list of str, optional
        Sample names; read from the barcode FASTA when omitted.

    Returns
    -------
    Pipeline
        Stages in execution order.
    """
    inputs = config.inputs
    params = config.parameters
    tool = config.tools.command
    paths = ArtifactPaths(lane=params.lane)
    if samples is None:
        samples = read_barcode_names(inputs.barcodes)

    demux_reads = [p for s in samples for p in paths.sample_reads(s)]
    jobs = params.threads if params.threads > 0 else -1

    stages: List[Stage] = [
        Stage(
            name="demultiplex",
            command=tool(
                "cutadapt",
                "-e", params.demux_error_rate,
                "--no-indels",
                "--discard-untrimmed",
                "-j", params.threads,
                "-g", f"^file:{inputs.barcodes}",
                "-o", paths.read_template(1),
                "-p", paths.read_template(2),
                inputs.forward_reads,
                inputs.reverse_reads,
            ),
            declared_inputs={inputs.forward_reads, inputs.reverse_reads, inputs.barcodes},
            declared_outputs=demux_reads,
        ),
        Stage(
            name="import",
            command=tool(
                "qiime", "tools", "import",
                "--type", "SampleData[PairedEndSequencesWithQuality]",
                "--input-path", paths.demux_dir,
                "--input-format", "CasavaOneEightSingleLanePerSampleDirFmt",
                "--output-path", paths.demux_qza,
            ),
            declared_inputs=demux_reads,
            declared_outputs={paths.demux_qza},
        ),
        Stage(
            name="demux_summary",
            command=tool(
                "qiime", "demux", "summarize",
                "--i-data", paths.demux_qza,
                "--o-visualization", paths.demux_qzv,
            ),
            declared_inputs={paths.demux_qza},
            declared_outputs={paths.demux_qzv},
        ),
        Stage(
            name="denoise",
            command=tool(
                "qiime", "dada2", "denoise-paired",
                "--i-demultiplexed-seqs", paths.demux_qza,
                "--p-trim-left-f", params.trim_left_forward,
                "--p-trim-left-r", params.trim_left_reverse,
                "--p-trunc-len-f", params.truncate_length_forward,
                "--p-trunc-len-r", params.truncate_length_reverse,
                "--p-max-ee-f", params.max_ee_forward,
                "--p-max-ee-r", params.max_ee_reverse,
                "--p-n-threads", params.threads,
                "--o-table", paths.table,
                "--o-representative-sequences", paths.rep_seqs,
                "--o-denoising-stats", paths.denoise_stats,
            ),
            declared_inputs={paths.demux_qza},
            declared_outputs={paths.table, paths.rep_seqs, paths.denoise_stats},
        ),
        Stage(
            name="table_summary",
            command=tool(
                "qiime", "feature-table", "summarize",
                "--i-table", paths.table,
                "--m-sample-metadata-file", inputs.metadata,
                "--o-visualization", paths.table_qzv,
            ),
            declared_inputs={paths.table, inputs.metadata},
            declared_outputs={paths.table_qzv},
        ),
        Stage(
            name="classify",
            command=tool(
                "qiime", "feature-classifier", "classify-sklearn",
                "--i-classifier", inputs.classifier,
                "--i-reads", paths.rep_seqs,
                "--p-confidence", params.confidence,
                "--p-n-jobs", jobs,
                "--o-classification", paths.taxonomy,
            ),
            declared_inputs={inputs.classifier, paths.rep_seqs},
            declared_outputs={paths.taxonomy},
        ),
        Stage(
            name="filter",
            command=tool(
                "qiime", "taxa", "filter-table",
                "--i-table", paths.table,
                "--i-taxonomy", paths.taxonomy,
                "--p-exclude", params.exclude_argument,
                "--o-filtered-table", paths.table_filtered,
            ),
            declared_inputs={paths.table, paths.taxonomy},
            declared_outputs={paths.table_filtered},
        ),
        Stage(
            name="transpose",
            command=tool(
                "qiime", "feature-table", "transpose",
                "--i-table", paths.table_filtered,
                "--o-transposed-feature-table", paths.table_transposed,
            ),
            declared_inputs={paths.table_filtered},
            declared_outputs={paths.table_transposed},
        ),
        Stage(
            name="tabulate",
            command=tool(
                "qiime", "metadata", "tabulate",
                "--m-input-file", paths.taxonomy,
                "--m-input-file", paths.table_transposed,
                "--o-visualization", paths.taxonomy_table_qzv,
            ),
            declared_inputs={paths.taxonomy, paths.table_transposed},
            declared_outputs={paths.taxonomy_table_qzv},
        ),
        Stage(
            name="barplot",
            command=tool(
                "qiime", "taxa", "barplot",
                "--i-table", paths.table_filtered,
                "--i-taxonomy", paths.taxonomy,
                "--m-metadata-file", inputs.metadata,
                "--o-visualization", paths.barplot_qzv,
            ),
            declared_inputs={paths.table_filtered, paths.taxonomy, inputs.metadata},
            declared_outputs={paths.barplot_qzv},
        ),
    ]

    for level in params.sorted_levels:
        stages.extend([
            Stage(
                name=f"collapse_L{level}",
                command=tool(
                    "qiime", "taxa", "collapse",
                    "--i-table", paths.table_filtered,
                    "--i-taxonomy", paths.taxonomy,
                    "--p-level", level,
                    "--o-collapsed-table", paths.collapsed(level),
                ),
                declared_inputs={paths.table_filtered, paths.taxonomy},
                declared_outputs={paths.collapsed(level)},
            ),
            Stage(
                name=f"export_L{level}",
                command=tool(
                    "qiime", "tools", "export",
                    "--input-path", paths.collapsed(level),
                    "--output-path", paths.export_dir(level),
                ),
                declared_inputs={paths.collapsed(level)},
                declared_outputs={paths.exported_biom(level)},
            ),
            Stage(
                name=f"convert_L{level}",
                command=tool(
                    "biom", "convert",
                    "-i", paths.exported_biom(level),
                    "-o", paths.exported_tsv(level),
                    "--to-tsv",
                ),
                declared_inputs={paths.exported_biom(level)},
                declared_outputs={paths.exported_tsv(level)},
            ),
        ])

    return Pipeline(stages)
