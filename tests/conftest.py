#!/usr/bin/env python3
"""
Shared pytest fixtures for the test suite.

Stages are driven by small ``python -c`` programs so no QIIME 2, cutadapt or
biom installation is needed:
- each call appends its stage name to ``calls.txt`` in the working directory
- listed outputs are written (``.qza``/``.qzv`` as real zip archives)
- the process exits with the requested status
"""
from __future__ import annotations

import gzip
import logging
import sys
import textwrap
import zipfile
from pathlib import Path

# Make the flat top-level modules importable without installation
_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import pytest

from q2_logging import LOGGER_NAME
from q2_stages import Stage


_FAKE_TOOL = textwrap.dedent(
    """
    import sys, zipfile
    from pathlib import Path
    name, code = sys.argv[1], int(sys.argv[2])
    with open("calls.txt", "a") as fh:
        fh.write(name + "\\n")
    print("running " + name)
    for out in sys.argv[3:]:
        p = Path(out)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.suffix in (".qza", ".qzv"):
            with zipfile.ZipFile(p, "w") as zf:
                zf.writestr("metadata.yaml", "uuid: test")
        else:
            p.write_text("data")
    sys.exit(code)
    """
)


def read_calls(workdir: Path) -> list:
    calls = Path(workdir) / "calls.txt"
    if not calls.exists():
        return []
    return calls.read_text().split()


@pytest.fixture
def make_stage():
    """Factory for stages backed by the fake tool above.

    ``writes`` defaults to ``outputs``; pass a subset to simulate a tool that
    exits 0 without producing everything it should.
    """
    def _make(name, inputs=(), outputs=(), exit_code=0, writes=None):
        writes = outputs if writes is None else writes
        command = [sys.executable, "-c", _FAKE_TOOL, name, str(exit_code), *map(str, writes)]
        return Stage(name=name, command=command, declared_inputs=inputs,
                     declared_outputs=outputs)
    return _make


@pytest.fixture
def workdir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def reset_pipeline_logger():
    """Undo handler changes made by setup_logging between tests."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True


# ============================================================
# CONFIG FIXTURES
# ============================================================

def _write_zip(path: Path) -> None:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("metadata.yaml", "uuid: classifier")


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """A project folder with raw reads, barcodes, metadata and classifier."""
    root = tmp_path / "project"
    (root / "raw").mkdir(parents=True)
    (root / "metadata").mkdir()
    (root / "refs").mkdir()

    for read in ("R1", "R2"):
        with gzip.open(root / "raw" / f"run_L001_{read}_001.fastq.gz", "wt") as fh:
            fh.write("@r1\nACGTACGT\n+\nIIIIIIII\n")

    (root / "metadata" / "barcodes.fasta").write_text(">S1\nACGTAC\n>S2\nTTGGCA\n")
    (root / "metadata" / "metadata.tsv").write_text(
        "sample-id\tTreatment\n#q2:types\tcategorical\nS1\tcontrol\nS2\tdrought\n"
    )
    _write_zip(root / "refs" / "classifier.qza")
    return root


CONFIG_YAML = """\
run_label: TEST01
inputs:
  forward_reads: raw/run_L001_R1_001.fastq.gz
  reverse_reads: raw/run_L001_R2_001.fastq.gz
  barcodes: metadata/barcodes.fasta
  metadata: metadata/metadata.tsv
  classifier: refs/classifier.qza
parameters:
  trim_left_forward: 17
  trim_left_reverse: 21
  truncate_length_forward: 270
  truncate_length_reverse: 220
"""


@pytest.fixture
def config_path(project_dir) -> Path:
    path = project_dir / "config.yaml"
    path.write_text(CONFIG_YAML)
    return path


# ============================================================
# FAKE EXTERNAL TOOLS
# ============================================================

# Stand-ins for cutadapt, qiime and biom: they write whatever their arguments
# name as outputs, so a full CLI run can complete without the real tools.
_FAKE_EXECUTABLE = textwrap.dedent(
    """
    import gzip, sys, zipfile
    from pathlib import Path

    TOOL = "@TOOL@"
    args = sys.argv[1:]

    def value(flag):
        return args[args.index(flag) + 1]

    def write_zip(path):
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("metadata.yaml", "uuid: fake")

    print(TOOL, *args)
    if TOOL == "cutadapt":
        fasta = value("-g").split("file:", 1)[1]
        names = [line[1:].split()[0] for line in open(fasta) if line.startswith(">")]
        for name in names:
            for flag in ("-o", "-p"):
                with gzip.open(value(flag).replace("{name}", name), "wt") as fh:
                    fh.write("@r1\\nACGT\\n+\\nIIII\\n")
    elif TOOL == "qiime":
        for i, arg in enumerate(args[:-1]):
            if arg.startswith("--o-"):
                write_zip(args[i + 1])
        if args[:2] == ["tools", "import"]:
            write_zip(value("--output-path"))
        elif args[:2] == ["tools", "export"]:
            out = Path(value("--output-path"))
            out.mkdir(parents=True, exist_ok=True)
            (out / "feature-table.biom").write_text("biom")
    elif TOOL == "biom":
        Path(value("-o")).write_text(
            "# Constructed from biom file\\n"
            "#OTU ID\\tS1\\tS2\\n"
            "k__Bacteria;p__Firmicutes\\t3.0\\t4.0\\n"
            "k__Bacteria;p__Proteobacteria\\t0.0\\t5.0\\n"
        )
    """
)


@pytest.fixture
def fake_tools(tmp_path) -> dict:
    """Executable fake cutadapt/qiime/biom scripts; maps tool name to path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    tools = {}
    for tool in ("cutadapt", "qiime", "biom"):
        path = bin_dir / tool
        path.write_text(f"#!{sys.executable}\n" + _FAKE_EXECUTABLE.replace("@TOOL@", tool))
        path.chmod(0o755)
        tools[tool] = path
    return tools
