"""
End-to-end tests for the per-study pipeline.

Covers stage ordering and error attribution, the missing-value and
unmapped-probe scenarios, sample exclusion, output writing and concurrent
multi-study runs.
"""

import json

import numpy as np
import pandas as pd
import pytest

from arrayde.annotation.probe_mapping import UNMAPPED, TableLookup
from arrayde.exceptions import (
    IngestError,
    PipelineStageError,
    SchemaMismatchError,
    UnassignedSampleError,
    UnknownGroupError,
)
from arrayde.io.adapters import SingleChannelAdapter
from arrayde.io.metadata import DirectorySource, TableMetadataSource
from arrayde.pipeline import STAGES, PipelineConfig, StudyPipeline, StudyResult, run_studies
from arrayde.stats.differential import RESULT_COLUMNS

GROUPS = {"rules": [{"pattern": "tumour", "label": "case"}], "default": "control"}


def _metadata(table):
    n = table.shape[1] // 2
    return pd.DataFrame(
        {"title": [f"healthy donor {i}" for i in range(n)] + [f"tumour biopsy {i}" for i in range(n)]},
        index=table.columns,
    )


def _config(**overrides):
    params = dict(accession="GSE0001", platform="single", contrasts=["case-control"], groups=GROUPS)
    params.update(overrides)
    return PipelineConfig(**params)


class TestPipelineConfig:
    def test_platform_alias_normalized(self):
        assert _config(platform="affymetrix").platform == "single"

    def test_unknown_platform(self):
        with pytest.raises(ValueError, match="Unknown platform"):
            _config(platform="nanopore")

    def test_single_contrast_string(self):
        assert _config(contrasts="case-control").contrasts == ["case-control"]

    def test_from_sectioned_dict(self):
        config = PipelineConfig.from_dict({
            "accession": "GSE9",
            "platform": "illumina",
            "raw": "data/raw",
            "correction": {"background": "normexp", "offset": 16},
            "cleaning": {"filter_low_expression": False, "quantile": 0.1},
            "decision": {"p_value": 0.01, "lfc": 1.0},
            "groups": GROUPS,
            "contrasts": {"tumour_vs_normal": "case-control"},
        })
        assert config.platform == "bead"
        assert config.background == "normexp"
        assert config.offset == 16
        assert config.filter_low_expression is False
        assert config.low_expression_quantile == 0.1
        assert config.p_value == 0.01
        assert config.lfc == 1.0
        assert config.contrasts == ["tumour_vs_normal=case-control"]


class TestStudyPipeline:
    def test_planted_effects_called_up(self, linear_table):
        result = StudyPipeline(_config()).run(
            SingleChannelAdapter().from_table(linear_table), _metadata(linear_table)
        )
        assert isinstance(result, StudyResult)
        frame = result.differential.to_dataframe()
        assert list(frame.columns) == RESULT_COLUMNS

        planted = frame[frame["probe_id"].isin([f"{1000 + i}_at" for i in range(10)])]
        assert len(planted) > 0
        assert (planted["log2_fc"] > 1.0).all()
        assert (planted["decision"] == "up").all()
        assert result.design.groups == ["control", "case"]

    def test_history_covers_correction_and_cleaning(self, single_channel_raw, linear_table):
        result = StudyPipeline(_config()).run(single_channel_raw, _metadata(linear_table))
        names = [name for name, _ in result.matrix.history]
        assert names.index("QuantileNormalization") < names.index("MatrixCleaner")

    def test_feature_with_missing_value_absent(self, linear_table):
        table = linear_table.copy()
        table.iloc[50, 2] = np.nan
        result = StudyPipeline(_config(filter_low_expression=False)).run(
            SingleChannelAdapter().from_table(table), _metadata(table)
        )
        frame = result.differential.to_dataframe()
        assert "1050_at" not in set(frame["probe_id"])
        assert len(frame) == len(table) - 1
        assert result.cleaning.n_missing_dropped == 1

    def test_unmapped_probes_reported_with_marker(self, study_files, linear_table):
        lookup = TableLookup.from_file(study_files["annotation"])
        result = StudyPipeline(_config(filter_low_expression=False)).run(
            SingleChannelAdapter().from_table(linear_table), _metadata(linear_table), lookup
        )
        frame = result.differential.to_dataframe().set_index("probe_id")
        assert len(frame) == len(linear_table)
        for probe in study_files["unmapped"]:
            assert frame.loc[probe, "gene_symbol"] == UNMAPPED
            assert frame.loc[probe, "gene_id"] == UNMAPPED
        assert frame.loc["1000_at", "gene_symbol"] == "GENE0 /// GENE0B"
        assert sorted(result.annotation.unmapped) == sorted(study_files["unmapped"])

    def test_unknown_contrast_group_fails_in_design(self, single_channel_raw, linear_table):
        with pytest.raises(PipelineStageError) as exc:
            StudyPipeline(_config(contrasts=["case-treated"])).run(single_channel_raw, _metadata(linear_table))
        assert exc.value.stage == "design"
        assert isinstance(exc.value.__cause__, UnknownGroupError)
        assert exc.value.__cause__.study == "GSE0001"
        assert "stage 'design' failed" in str(exc.value)

    def test_unassigned_samples_fail_group_assignment(self, single_channel_raw, linear_table):
        groups = {"rules": [{"pattern": "tumour", "label": "case"}]}
        with pytest.raises(PipelineStageError) as exc:
            StudyPipeline(_config(groups=groups)).run(single_channel_raw, _metadata(linear_table))
        assert exc.value.stage == "group_assignment"
        assert isinstance(exc.value.__cause__, UnassignedSampleError)

    def test_platform_mismatch_fails_ingest(self, single_channel_raw, linear_table):
        with pytest.raises(PipelineStageError) as exc:
            StudyPipeline(_config(platform="two-channel")).run(single_channel_raw, _metadata(linear_table))
        assert exc.value.stage == "ingest"
        assert isinstance(exc.value.__cause__, SchemaMismatchError)

    def test_metadata_missing_samples_fails_ingest(self, single_channel_raw, linear_table):
        metadata = _metadata(linear_table).iloc[1:]
        with pytest.raises(PipelineStageError) as exc:
            StudyPipeline(_config()).run(single_channel_raw, metadata)
        assert exc.value.stage == "ingest"

    def test_excluded_samples_dropped(self, single_channel_raw, linear_table):
        groups = {
            "rules": [{"pattern": "donor 0", "label": "outlier"}, {"pattern": "tumour", "label": "case"}],
            "default": "control",
            "exclude": ["outlier"],
        }
        result = StudyPipeline(_config(groups=groups)).run(single_channel_raw, _metadata(linear_table))
        assert result.matrix.n_samples == linear_table.shape[1] - 1
        assert "GSM100" not in list(result.matrix.sample_ids)
        assert list(result.design.group_sizes()) == [2, 3]

    def test_non_estimable_contrast_recorded(self, single_channel_raw, linear_table):
        config = _config(contrasts=["case-control", "absent-control"], group_order=["control", "case", "absent"])
        result = StudyPipeline(config).run(single_channel_raw, _metadata(linear_table))
        assert result.differential.contrasts_tested == ["case-control"]
        assert "absent-control" in result.differential.failed

    def test_stage_order(self):
        assert STAGES[0] == "ingest"
        assert STAGES[-1] == "differential_expression"
        assert STAGES.index("cleaning") < STAGES.index("design")


class TestOutputs:
    def test_write_result_and_report(self, tmp_path, single_channel_raw, linear_table):
        result = StudyPipeline(_config()).run(single_channel_raw, _metadata(linear_table))
        output = tmp_path / "out" / "GSE0001.de.tsv"
        written = result.write(output, write_matrix=True)

        table = pd.read_csv(output, sep="\t")
        assert list(table.columns) == RESULT_COLUMNS
        assert len(table) == result.matrix.n_features

        report = json.loads(output.with_suffix(".report.json").read_text())
        assert report["accession"] == "GSE0001"
        assert report["groups"] == {"control": 3, "case": 3}
        assert report["summary"][0]["contrast"] == "case-control"
        assert len(written) == 4
        assert not list(output.parent.glob("*.tmp"))


class TestSources:
    def test_fetch_and_run_from_directory(self, study_files):
        config = _config()
        result = StudyPipeline(config).fetch_and_run(
            DirectorySource(study_files["raw"], "single"),
            TableMetadataSource(study_files["metadata"], sample_column="sample"),
        )
        assert result.matrix.n_samples == 6
        assert set(result.differential.to_dataframe()["gene_symbol"]) == {UNMAPPED}

    def test_run_studies_isolates_failures(self, study_files):
        configs = [_config(accession="GSE0001"), _config(accession="GSE0404")]
        outcomes = run_studies(
            configs,
            DirectorySource(study_files["raw"], "single"),
            TableMetadataSource(study_files["metadata"], sample_column="sample"),
            max_workers=2,
        )
        assert list(outcomes) == ["GSE0001", "GSE0404"]
        assert isinstance(outcomes["GSE0001"], StudyResult)
        failure = outcomes["GSE0404"]
        assert isinstance(failure, PipelineStageError)
        assert failure.stage == "ingest"
        assert isinstance(failure.__cause__, IngestError)

    def test_run_studies_rejects_duplicate_accessions(self, study_files):
        with pytest.raises(ValueError, match="unique"):
            run_studies([_config(), _config()], DirectorySource(study_files["raw"], "single"), None)
