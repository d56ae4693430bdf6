#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Run configuration: parameter set, tool locations and input files.

Everything that changes between sequencing runs lives here, so the stage
wiring in ``q2_amplicon_pipeline`` never has to be edited per dataset.

Example (YAML)
--------------
run_label: JH102
inputs:
  forward_reads: raw/JH102_L001_R1_001.fastq.gz
  reverse_reads: raw/JH102_L001_R2_001.fastq.gz
  barcodes: metadata/barcodes.fasta
  metadata: metadata/metadata16S.tsv
  classifier: refs/silva-138-99-nb-classifier.qza
parameters:
  trim_left_forward: 17
  trim_left_reverse: 21
  truncate_length_forward: 270
  truncate_length_reverse: 220
tools:
  qiime: qiime
  conda_env: qiime2-amplicon-2024.5

Relative input paths are resolved against the directory holding the config.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from q2_stages import ConfigError


DEFAULT_TAXONOMIC_LEVELS = frozenset(range(2, 8))
DEFAULT_EXCLUDE_TAXA = frozenset({"mitochondria", "chloroplast"})

# Trim/truncation lengths are tied to one sequencing run, so they have no
# defaults and must be given explicitly.
_REQUIRED_PARAMETERS = (
    "trim_left_forward",
    "trim_left_reverse",
    "truncate_length_forward",
    "truncate_length_reverse",
)
_INPUT_KEYS = ("forward_reads", "reverse_reads", "barcodes", "metadata", "classifier")
_TAXON_RE = re.compile(r"^[^,]+$")


@dataclass(frozen=True)
class ParameterSet:
    """Tunable values referenced by stage commands."""

    trim_left_forward: int
    trim_left_reverse: int
    truncate_length_forward: int
    truncate_length_reverse: int
    taxonomic_levels: frozenset = DEFAULT_TAXONOMIC_LEVELS
    exclude_taxa: frozenset = DEFAULT_EXCLUDE_TAXA
    max_ee_forward: float = 2.0
    max_ee_reverse: float = 2.0
    threads: int = 1
    demux_error_rate: float = 0.0
    lane: int = 1
    confidence: float = 0.7

    def __post_init__(self) -> None:
        object.__setattr__(self, "taxonomic_levels", frozenset(self.taxonomic_levels))
        object.__setattr__(self, "exclude_taxa", frozenset(self.exclude_taxa))
        self.check()

    def check(self) -> None:
        """Raise ``ConfigError`` if any value is out of range."""
        for name in _REQUIRED_PARAMETERS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigError(f"parameters.{name} must be a non-negative integer, got {value!r}")
        if not self.taxonomic_levels:
            raise ConfigError("parameters.taxonomic_levels must list at least one level.")
        bad_levels = sorted(
            x for x in self.taxonomic_levels if not isinstance(x, int) or not 1 <= x <= 7
        )
        if bad_levels:
            raise ConfigError(f"Taxonomic levels must be integers 1-7, got {bad_levels}")
        if not self.exclude_taxa:
            raise ConfigError("parameters.exclude_taxa must name at least one taxon.")
        for taxon in self.exclude_taxa:
            if not isinstance(taxon, str) or not taxon.strip() or not _TAXON_RE.match(taxon):
                raise ConfigError(f"Invalid taxon in exclude_taxa: {taxon!r}")
        if self.threads < 0:
            raise ConfigError("parameters.threads must be >= 0 (0 = all cores).")
        if not 0.0 <= self.demux_error_rate < 1.0:
            raise ConfigError("parameters.demux_error_rate must be in [0, 1).")
        if not 1 <= self.lane <= 999:
            raise ConfigError("parameters.lane must be between 1 and 999.")
        if not 0.0 <= self.confidence <= 1.0 and self.confidence != -1:
            raise ConfigError("parameters.confidence must be in [0, 1] or -1 (disable).")

    @property
    def sorted_levels(self) -> List[int]:
        return sorted(self.taxonomic_levels)

    @property
    def exclude_argument(self) -> str:
        """Comma-joined taxa in a stable order, as ``--p-exclude`` expects."""
        return ",".join(sorted(t.strip() for t in self.exclude_taxa))


@dataclass(frozen=True)
class ToolConfig:
    """
    Explicit tool locations, replacing an ambient activated environment.

    Attributes
    ----------
    cutadapt, qiime, biom : str
        Executable names or absolute paths.
    conda_env : str or None
        If set, each command runs as ``<conda_executable> run -n <conda_env> ...``.
    conda_executable : str
        Conda (or mamba) front-end used with ``conda_env``.
    tmp_dir : str or None
        Scratch directory passed to children as TMPDIR; defaults to
        ``<workdir>/tmp``.
    """

    cutadapt: str = "cutadapt"
    qiime: str = "qiime"
    biom: str = "biom"
    conda_env: Optional[str] = None
    conda_executable: str = "conda"
    tmp_dir: Optional[str] = None

    def prefix(self) -> List[str]:
        if self.conda_env:
            return [self.conda_executable, "run", "-n", self.conda_env]
        return []

    def command(self, tool: str, *args: Any) -> List[str]:
        """Build an argument vector for ``tool`` ('cutadapt', 'qiime' or 'biom')."""
        exe = getattr(self, tool)
        return self.prefix() + [exe] + [str(a) for a in args]

    def executables(self) -> Dict[str, str]:
        """Executables that must be resolvable on PATH for a run."""
        if self.conda_env:
            return {"conda": self.conda_executable}
        return {"cutadapt": self.cutadapt, "qiime": self.qiime, "biom": self.biom}


@dataclass(frozen=True)
class InputFiles:
    """External inputs consumed by the pipeline (never produced by it)."""

    forward_reads: Path
    reverse_reads: Path
    barcodes: Path
    metadata: Path
    classifier: Path

    def as_dict(self) -> Dict[str, Path]:
        return {k: getattr(self, k) for k in _INPUT_KEYS}


@dataclass(frozen=True)
class PipelineConfig:
    run_label: str
    inputs: InputFiles
    parameters: ParameterSet
    tools: ToolConfig = field(default_factory=ToolConfig)


# ----------------------------- loading ----------------------------- #

def _read_mapping(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            if path.suffix.lower() == ".json":
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not parse config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a mapping at the top level.")
    return data


def _section(data: Dict[str, Any], name: str, *, required: bool = True) -> Dict[str, Any]:
    section = data.get(name)
    if section is None:
        if required:
            raise ConfigError(f"Config is missing the '{name}' section.")
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return section


def _parse_inputs(section: Dict[str, Any], *, base_dir: Path) -> InputFiles:
    missing = [k for k in _INPUT_KEYS if not section.get(k)]
    if missing:
        raise ConfigError("Config 'inputs' is missing: " + ", ".join(missing))
    unknown = sorted(set(section) - set(_INPUT_KEYS))
    if unknown:
        raise ConfigError("Unknown keys in 'inputs': " + ", ".join(unknown))

    def _abspath(value: Any) -> Path:
        p = Path(str(value)).expanduser()
        if not p.is_absolute():
            p = (base_dir / p).resolve()
        return p

    return InputFiles(**{k: _abspath(section[k]) for k in _INPUT_KEYS})


def _parse_parameters(section: Dict[str, Any]) -> ParameterSet:
    missing = [k for k in _REQUIRED_PARAMETERS if k not in section]
    if missing:
        raise ConfigError("Config 'parameters' is missing: " + ", ".join(missing))
    known = set(ParameterSet.__dataclass_fields__)
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigError("Unknown keys in 'parameters': " + ", ".join(unknown))

    values = dict(section)
    for key in ("taxonomic_levels", "exclude_taxa"):
        if key in values:
            raw = values[key]
            if isinstance(raw, str):
                raw = [x.strip() for x in raw.split(",") if x.strip()]
            if not isinstance(raw, (list, tuple, set)):
                raise ConfigError(f"parameters.{key} must be a list.")
            if key == "taxonomic_levels":
                try:
                    raw = [int(x) if isinstance(x, str) else x for x in raw]
                except ValueError as exc:
                    raise ConfigError(
                        f"parameters.taxonomic_levels must be integers 1-7: {exc}"
                    ) from exc
            values[key] = frozenset(raw)
    try:
        return ParameterSet(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid parameters: {exc}") from exc


def _parse_tools(section: Dict[str, Any]) -> ToolConfig:
    known = set(ToolConfig.__dataclass_fields__)
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigError("Unknown keys in 'tools': " + ", ".join(unknown))
    values = {k: (str(v) if v is not None else None) for k, v in section.items()}
    for key in ("cutadapt", "qiime", "biom", "conda_executable"):
        if key in values and not values[key]:
            raise ConfigError(f"tools.{key} must not be empty.")
    return ToolConfig(**values)


def load_config(path: Path) -> PipelineConfig:
    """
    Load a pipeline configuration from YAML (or JSON, by ``.json`` suffix).

    Parameters
    ----------
    path : pathlib.Path
        Config file location.

    Returns
    -------
    PipelineConfig
        Typed configuration with absolute input paths.

    Raises
    ------
    ConfigError
        If the file is missing, unparsable, or holds invalid values.
    """
    path = Path(path).expanduser().resolve()
    data = _read_mapping(path)

    run_label = str(data.get("run_label") or path.stem)
    inputs = _parse_inputs(_section(data, "inputs"), base_dir=path.parent)
    parameters = _parse_parameters(_section(data, "parameters"))
    tools = _parse_tools(_section(data, "tools", required=False))
    return PipelineConfig(run_label=run_label, inputs=inputs,
                          parameters=parameters, tools=tools)
