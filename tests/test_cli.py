"""Tests for the arrayde command line interface."""

from argparse import Namespace

import pandas as pd
import pytest
import yaml

from arrayde.annotation.probe_mapping import UNMAPPED
from arrayde.cli import main
from arrayde.cli.config import load_config, merge_config_with_args, validate_config
from arrayde.stats.differential import RESULT_COLUMNS


def _run_args(study_files, output, *extra):
    return [
        "run",
        "--accession", study_files["accession"],
        "--platform", "single",
        "--raw", str(study_files["raw"]),
        "--metadata", str(study_files["metadata"]),
        "--group", "tumour=case",
        "--default-group", "control",
        "--output", str(output),
        *extra,
    ]


class TestRunCommand:
    def test_success(self, study_files, tmp_path, capsys):
        output = tmp_path / "results" / "GSE0001.de.tsv"
        code = main(_run_args(study_files, output, "--contrast", "case-control",
                              "--annotation", str(study_files["annotation"])))
        assert code == 0

        table = pd.read_csv(output, sep="\t", keep_default_na=False)
        assert list(table.columns) == RESULT_COLUMNS
        assert set(table["contrast"]) == {"case-control"}
        assert (table["gene_symbol"] != "").all()
        assert output.with_suffix(".report.json").exists()
        assert "case-control" in capsys.readouterr().out

    def test_unmapped_probes_kept(self, study_files, tmp_path):
        output = tmp_path / "de.tsv"
        code = main(_run_args(study_files, output, "--contrast", "case-control",
                              "--annotation", str(study_files["annotation"]),
                              "--no-low-expression-filter"))
        assert code == 0
        table = pd.read_csv(output, sep="\t", keep_default_na=False).set_index("probe_id")
        for probe in study_files["unmapped"]:
            assert table.loc[probe, "gene_symbol"] == UNMAPPED

    def test_unknown_group_reports_stage(self, study_files, tmp_path, capsys):
        output = tmp_path / "de.tsv"
        code = main(_run_args(study_files, output, "--contrast", "case-treated"))
        assert code == 1
        assert "stage 'design' failed" in capsys.readouterr().err
        assert not output.exists()

    def test_missing_raw_directory(self, study_files, tmp_path, capsys):
        args = _run_args(study_files, tmp_path / "de.tsv", "--contrast", "case-control")
        args[args.index("--raw") + 1] = str(tmp_path / "nowhere")
        assert main(args) == 1
        assert "stage 'ingest' failed" in capsys.readouterr().err

    def test_missing_required_arguments(self, capsys):
        assert main(["run", "--accession", "GSE1"]) == 2
        assert "required" in capsys.readouterr().err

    def test_missing_contrast(self, study_files, tmp_path):
        assert main(_run_args(study_files, tmp_path / "de.tsv")) == 2

    def test_bad_group_flag(self, study_files, tmp_path):
        args = _run_args(study_files, tmp_path / "de.tsv", "--contrast", "case-control")
        args[args.index("tumour=case")] = "tumour"
        assert main(args) == 2

    @pytest.mark.parametrize("flag, value", [("--p-value", "2"), ("--jobs", "0"), ("--lfc", "-1")])
    def test_invalid_values_rejected_by_parser(self, flag, value):
        with pytest.raises(SystemExit) as exc:
            main(["run", flag, value])
        assert exc.value.code == 2

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "arrayde" in capsys.readouterr().out


class TestConfigFile:
    def _write(self, path, study_files, output, **overrides):
        config = {
            "accession": study_files["accession"],
            "platform": "single",
            "raw": str(study_files["raw"]),
            "metadata": str(study_files["metadata"]),
            "output": str(output),
            "groups": {"rules": [{"pattern": "tumour", "label": "case"}], "default": "control"},
            "contrasts": {"tumour_vs_healthy": "case-control"},
            "decision": {"p_value": 0.01},
        }
        config.update(overrides)
        path.write_text(yaml.safe_dump(config))
        return path

    def test_run_from_config(self, study_files, tmp_path):
        output = tmp_path / "de.tsv"
        config = self._write(tmp_path / "study.yaml", study_files, output)
        assert main(["run", "--config", str(config)]) == 0
        table = pd.read_csv(output, sep="\t")
        assert set(table["contrast"]) == {"tumour_vs_healthy"}

    def test_cli_contrast_replaces_config(self, study_files, tmp_path):
        output = tmp_path / "de.tsv"
        config = self._write(tmp_path / "study.yaml", study_files, output)
        assert main(["run", "--config", str(config), "--contrast", "control-case"]) == 0
        assert set(pd.read_csv(output, sep="\t")["contrast"]) == {"control-case"}

    def test_invalid_config_value(self, study_files, tmp_path):
        config = self._write(tmp_path / "study.yaml", study_files, tmp_path / "de.tsv",
                             correction={"background": "rma"})
        assert main(["run", "--config", str(config)]) == 2

    def test_missing_config_file(self, tmp_path):
        assert main(["run", "--config", str(tmp_path / "absent.yaml")]) == 2

    def test_load_rejects_unknown_format(self, tmp_path):
        path = tmp_path / "study.toml"
        path.write_text("accession = 'x'")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config(path)

    def test_load_json(self, tmp_path):
        path = tmp_path / "study.json"
        path.write_text('{"accession": "GSE2", "decision": {"lfc": 1}}')
        assert load_config(path)["decision"]["lfc"] == 1

    @pytest.mark.parametrize(
        "config",
        [
            {"platform": "nanopore"},
            {"correction": {"normalization": "rma"}},
            {"cleaning": {"quantile": 1.5}},
            {"decision": {"p_value": 0}},
            {"decision": {"fdr_method": "holm"}},
            {"groups": {"rules": [{"label": "case"}]}},
            {"groups": {"exclude": {"other": True}}},
            {"groups": {"fields": ["title", 3]}},
            {"contrasts": "case-control"},
        ],
    )
    def test_validate_rejects(self, config):
        with pytest.raises(ValueError):
            validate_config(config)

    def test_validate_accepts_scalar_group_names(self):
        validate_config({"groups": {"fields": "title", "exclude": "other", "rules": []}})
        validate_config({"groups": {"fields": ["title", "source_name"], "exclude": ["other"]}})


class TestMergePrecedence:
    def _args(self, **values):
        defaults = dict(p_value=0.05, lfc=0.0, raw=None, contrasts=None, group=None,
                        default_group=None, group_field=None, exclude_group=None)
        defaults.update(values)
        return Namespace(**defaults)

    def test_explicit_cli_beats_config_beats_default(self):
        config = {"raw": "data/raw", "decision": {"p_value": 0.01, "lfc": 1.0}}
        merged = merge_config_with_args(config, self._args(lfc=0.5), ["run", "--lfc", "0.5"])
        assert merged.lfc == 0.5
        assert merged.p_value == 0.01
        assert str(merged.raw) == "data/raw"

    def test_default_kept_without_config_value(self):
        merged = merge_config_with_args({}, self._args(), [])
        assert merged.p_value == 0.05
        assert merged.groups == {}

    def test_group_flags_replace_config_rules(self):
        config = {"groups": {"rules": [{"pattern": "x", "label": "y"}], "default": "other"}}
        merged = merge_config_with_args(
            config, self._args(group=["re:normal|healthy=control"]), ["--group", "re:normal|healthy=control"]
        )
        assert merged.groups["rules"] == [{"pattern": "normal|healthy", "label": "control", "regex": True}]
        assert merged.groups["default"] == "other"
