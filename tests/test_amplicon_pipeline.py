#!/usr/bin/env python3
"""
Tests for q2_amplicon_pipeline.py

Tests cover:
- Stage order and the file contract between stages
- Parameters flowing into arguments without changing wiring
- Barcode and metadata checks
"""
from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from q2_amplicon_pipeline import (
    ArtifactPaths,
    build_amplicon_pipeline,
    check_metadata_samples,
    check_tools,
    read_barcode_names,
)
from q2_params import ToolConfig, load_config
from q2_stages import ConfigError


CORE_STAGES = [
    "demultiplex", "import", "demux_summary", "denoise", "table_summary", "classify",
    "filter", "transpose", "tabulate", "barplot",
]


def _arg(stage, flag):
    command = list(stage.command)
    return command[command.index(flag) + 1]


@pytest.fixture
def config(config_path):
    return load_config(config_path)


class TestBuild:
    """Tests for build_amplicon_pipeline."""

    def test_stage_order(self, config):
        pipeline = build_amplicon_pipeline(config)
        per_level = [f"{step}_L{level}" for level in range(2, 8)
                     for step in ("collapse", "export", "convert")]
        assert pipeline.stage_names == CORE_STAGES + per_level

    def test_validates_against_existing_inputs(self, config, tmp_path):
        pipeline = build_amplicon_pipeline(config)
        pipeline.validate(tmp_path / "work")

    def test_external_inputs_are_the_configured_files(self, config):
        pipeline = build_amplicon_pipeline(config)
        assert set(pipeline.external_inputs()) == set(config.inputs.as_dict().values())

    def test_demultiplex_outputs_follow_casava_naming(self, config):
        demux = build_amplicon_pipeline(config)[0]
        assert demux.declared_outputs == frozenset({
            Path("demux/S1_S1_L001_R1_001.fastq.gz"),
            Path("demux/S1_S1_L001_R2_001.fastq.gz"),
            Path("demux/S2_S1_L001_R1_001.fastq.gz"),
            Path("demux/S2_S1_L001_R2_001.fastq.gz"),
        })
        assert _arg(demux, "-o") == "demux/{name}_S1_L001_R1_001.fastq.gz"
        assert _arg(demux, "-g") == f"^file:{config.inputs.barcodes}"
        assert demux.command[0] == "cutadapt"

    def test_denoise_arguments(self, config):
        denoise = build_amplicon_pipeline(config)[3]
        assert denoise.command[:3] == ("qiime", "dada2", "denoise-paired")
        assert _arg(denoise, "--p-trim-left-f") == "17"
        assert _arg(denoise, "--p-trim-left-r") == "21"
        assert _arg(denoise, "--p-trunc-len-f") == "270"
        assert _arg(denoise, "--p-trunc-len-r") == "220"
        assert denoise.declared_outputs == frozenset(
            {Path("table.qza"), Path("rep-seqs.qza"), Path("denoising-stats.qza")}
        )

    def test_filter_excludes_configured_taxa(self, config):
        pipeline = build_amplicon_pipeline(config)
        filt = next(s for s in pipeline if s.name == "filter")
        assert _arg(filt, "--p-exclude") == "chloroplast,mitochondria"

    def test_metadata_is_side_input(self, config):
        pipeline = build_amplicon_pipeline(config)
        consumers = [s.name for s in pipeline if config.inputs.metadata in s.declared_inputs]
        assert consumers == ["table_summary", "barplot"]

    def test_level_chain(self, config):
        pipeline = build_amplicon_pipeline(config)
        by_name = {s.name: s for s in pipeline}
        assert _arg(by_name["collapse_L6"], "--p-level") == "6"
        assert by_name["export_L6"].declared_inputs == by_name["collapse_L6"].declared_outputs
        assert by_name["convert_L6"].declared_outputs == frozenset({Path("exports/table-L6.tsv")})
        assert by_name["convert_L6"].command[:2] == ("biom", "convert")

    def test_parameters_change_arguments_not_wiring(self, config):
        changed = dataclasses.replace(
            config,
            parameters=dataclasses.replace(config.parameters, truncate_length_forward=250,
                                           threads=8),
        )
        before = build_amplicon_pipeline(config)
        after = build_amplicon_pipeline(changed)
        assert before.stage_names == after.stage_names
        for old, new in zip(before, after):
            assert old.declared_inputs == new.declared_inputs
            assert old.declared_outputs == new.declared_outputs
        assert _arg(after[3], "--p-trunc-len-f") == "250"
        assert _arg(after[3], "--p-n-threads") == "8"

    def test_levels_subset(self, config):
        fewer = dataclasses.replace(
            config, parameters=dataclasses.replace(config.parameters, taxonomic_levels={7, 2})
        )
        names = build_amplicon_pipeline(fewer).stage_names
        assert names[len(CORE_STAGES):] == [
            "collapse_L2", "export_L2", "convert_L2", "collapse_L7", "export_L7", "convert_L7"
        ]

    def test_conda_environment_prefix(self, config):
        wrapped = dataclasses.replace(config, tools=ToolConfig(conda_env="q2"))
        for stage in build_amplicon_pipeline(wrapped):
            assert stage.command[:4] == ("conda", "run", "-n", "q2")

    def test_explicit_samples(self, config):
        demux = build_amplicon_pipeline(config, samples=["A1"])[0]
        assert len(demux.declared_outputs) == 2

    def test_lane_in_file_names(self, config):
        other_lane = dataclasses.replace(
            config, parameters=dataclasses.replace(config.parameters, lane=2)
        )
        demux = build_amplicon_pipeline(other_lane)[0]
        assert all("_L002_" in p.name for p in demux.declared_outputs)


class TestBarcodes:
    """Tests for read_barcode_names."""

    def test_reads_names_in_order(self, project_dir):
        assert read_barcode_names(project_dir / "metadata" / "barcodes.fasta") == ["S1", "S2"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            read_barcode_names(tmp_path / "barcodes.fasta")

    def test_underscore_rejected(self, tmp_path):
        path = tmp_path / "barcodes.fasta"
        path.write_text(">ES_P202\nACGT\n")
        with pytest.raises(ConfigError, match="ES_P202"):
            read_barcode_names(path)

    def test_duplicates_rejected(self, tmp_path):
        path = tmp_path / "barcodes.fasta"
        path.write_text(">A\nACGT\n>A\nTTTT\n")
        with pytest.raises(ConfigError, match="Duplicate"):
            read_barcode_names(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "barcodes.fasta"
        path.write_text("")
        with pytest.raises(ConfigError, match="No barcode"):
            read_barcode_names(path)


class TestMetadata:
    """Tests for check_metadata_samples."""

    def test_all_present(self, project_dir):
        extra = check_metadata_samples(
            metadata_tsv=project_dir / "metadata" / "metadata.tsv", samples=["S1", "S2"]
        )
        assert extra == []

    def test_extra_metadata_rows_allowed(self, project_dir):
        extra = check_metadata_samples(
            metadata_tsv=project_dir / "metadata" / "metadata.tsv", samples=["S1"]
        )
        assert extra == ["S2"]

    def test_missing_sample(self, project_dir):
        with pytest.raises(ConfigError, match="S3"):
            check_metadata_samples(
                metadata_tsv=project_dir / "metadata" / "metadata.tsv", samples=["S1", "S3"]
            )

    def test_hash_prefixed_header(self, tmp_path):
        metadata = tmp_path / "metadata.tsv"
        metadata.write_text("#SampleID\tTreatment\nS1\ta\nS2\tb\n")
        assert check_metadata_samples(metadata_tsv=metadata, samples=["S1", "S2"]) == []

    def test_hash_header_with_types_row(self, tmp_path):
        metadata = tmp_path / "metadata.tsv"
        metadata.write_text("#SampleID\tTreatment\n#q2:types\tcategorical\nS1\ta\n")
        assert check_metadata_samples(metadata_tsv=metadata, samples=["S1"]) == []

    def test_empty_file(self, tmp_path):
        metadata = tmp_path / "metadata.tsv"
        metadata.write_text("")
        with pytest.raises(ConfigError, match="Cannot read metadata"):
            check_metadata_samples(metadata_tsv=metadata, samples=["S1"])

    def test_header_only(self, tmp_path):
        metadata = tmp_path / "metadata.tsv"
        metadata.write_text("sample-id\tTreatment\n#q2:types\tcategorical\n")
        with pytest.raises(ConfigError, match="no sample rows"):
            check_metadata_samples(metadata_tsv=metadata, samples=["S1"])

    def test_malformed_file(self, tmp_path):
        metadata = tmp_path / "metadata.tsv"
        metadata.write_text('sample-id\tTreatment\n"S1\tunterminated\n')
        with pytest.raises(ConfigError, match="Cannot read metadata"):
            check_metadata_samples(metadata_tsv=metadata, samples=["S1"])


class TestHelpers:
    """Tests for ArtifactPaths and check_tools."""

    def test_artifact_paths(self):
        paths = ArtifactPaths(lane=3)
        assert paths.sample_reads("S9") == [
            Path("demux/S9_S1_L003_R1_001.fastq.gz"), Path("demux/S9_S1_L003_R2_001.fastq.gz")
        ]
        assert paths.exported_biom(4) == Path("exports/table-L4/feature-table.biom")

    def test_check_tools_reports_missing(self):
        found = check_tools(ToolConfig(cutadapt="definitely-not-a-real-tool-xyz"))
        assert found["cutadapt"] is None
