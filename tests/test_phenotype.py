"""Tests for rule-table group assignment."""

import re

import pandas as pd
import pytest

from arrayde.exceptions import UnassignedSampleError
from arrayde.io.phenotype import GroupAssigner, GroupRule


@pytest.fixture
def metadata():
    return pd.DataFrame(
        {
            "title": [
                "Tumor subtype A, patient 1",
                "Tumour subtype B, patient 2",
                "normal adjacent tissue",
                "tumor subtype A next to normal tissue",
                "cell line",
            ],
            "source_name": ["biopsy", "biopsy", "healthy margin", "biopsy", "culture"],
        },
        index=["GSM1", "GSM2", "GSM3", "GSM4", "GSM5"],
    )


class TestGroupRule:
    def test_substring_case_insensitive(self):
        assert GroupRule("subtype a", "A").matches("Tumor SUBTYPE A")

    def test_case_sensitive(self):
        rule = GroupRule("Subtype", "A", case_sensitive=True)
        assert rule.matches("Subtype A")
        assert not rule.matches("subtype A")

    def test_regex(self):
        rule = GroupRule(r"tumou?r", "case", regex=True)
        assert rule.matches("Tumour biopsy")
        assert rule.matches("tumor biopsy")
        assert not rule.matches("normal")

    def test_invalid_regex_rejected_on_construction(self):
        with pytest.raises(re.error):
            GroupRule("(unclosed", "x", regex=True)

    def test_empty_label(self):
        with pytest.raises(ValueError):
            GroupRule("x", "")

    def test_from_dict(self):
        rule = GroupRule.from_dict({"pattern": "normal|healthy", "label": "control", "regex": True})
        assert rule.regex and rule.label == "control"
        with pytest.raises(ValueError, match="label"):
            GroupRule.from_dict({"pattern": "x"})


class TestGroupAssigner:
    def test_first_match_wins(self, metadata):
        assigner = GroupAssigner(
            [GroupRule("subtype A", "case_A"), GroupRule("normal", "control")],
            default="other",
        )
        labels = assigner.assign(metadata)
        # GSM4 matches both rules; the earlier one takes it
        assert labels["GSM4"] == "case_A"
        assert labels["GSM3"] == "control"

        reordered = GroupAssigner(
            [GroupRule("normal", "control"), GroupRule("subtype A", "case_A")],
            default="other",
        )
        assert reordered.assign(metadata)["GSM4"] == "control"

    def test_default_label(self, metadata):
        assigner = GroupAssigner([GroupRule("subtype", "case")], default="other")
        labels = assigner.assign(metadata)
        assert labels["GSM5"] == "other"
        assert labels["GSM3"] == "other"
        assert list(labels.index) == list(metadata.index)
        assert labels.name == "group"

    def test_unmatched_without_default(self, metadata):
        assigner = GroupAssigner([GroupRule("subtype", "case")])
        with pytest.raises(UnassignedSampleError) as exc:
            assigner.assign(metadata)
        assert exc.value.identifier == "GSM3"
        assert exc.value.details["unassigned"] == ["GSM3", "GSM5"]
        assert exc.value.stage == "group_assignment"

    def test_empty_rule_table(self, metadata):
        with pytest.raises(UnassignedSampleError, match="empty"):
            GroupAssigner([]).assign(metadata)

    def test_empty_rules_with_default(self, metadata):
        labels = GroupAssigner([], default="all").assign(metadata)
        assert set(labels) == {"all"}

    def test_fields_restrict_search(self, metadata):
        rules = [GroupRule("healthy", "control"), GroupRule("biopsy", "case")]
        by_source = GroupAssigner(rules, default="other", fields=["source_name"]).assign(metadata)
        assert by_source["GSM3"] == "control"
        by_title = GroupAssigner(rules, default="other", fields=["title"]).assign(metadata)
        assert by_title["GSM3"] == "other"
        assert by_title["GSM1"] == "other"

    def test_missing_field(self, metadata):
        assigner = GroupAssigner([GroupRule("x", "y")], fields=["characteristics"])
        with pytest.raises(UnassignedSampleError) as exc:
            assigner.assign(metadata)
        assert exc.value.identifier == "characteristics"

    def test_missing_text_is_blank(self):
        meta = pd.DataFrame({"title": ["normal", None]}, index=["S1", "S2"])
        labels = GroupAssigner([GroupRule("normal", "control")], default="other").assign(meta)
        assert list(labels) == ["control", "other"]

    def test_provenance(self, metadata):
        assigner = GroupAssigner(
            [GroupRule("subtype A", "case_A"), GroupRule(r"tumou?r", "case", regex=True)],
            default="other",
        )
        prov = assigner.provenance(metadata)
        assert list(prov.columns) == ["group", "source"]
        assert prov.loc["GSM1", "source"] == 0
        assert prov.loc["GSM2", "source"] == 1
        assert prov.loc["GSM5", "source"] == "default"

    def test_excluded_labels(self, metadata):
        assigner = GroupAssigner([GroupRule("subtype", "case")], default="other", exclude_labels=["other"])
        labels = assigner.assign(metadata)
        mask = assigner.included(labels)
        assert list(mask) == [True, True, False, True, False]

    def test_from_config(self, metadata):
        assigner = GroupAssigner.from_config({
            "field": "title",
            "default": "exclude",
            "exclude": ["exclude"],
            "rules": [
                {"pattern": "subtype A", "label": "case_A"},
                {"pattern": "normal|healthy", "label": "control", "regex": True},
            ],
        })
        assert assigner.fields == ["title"]
        labels = assigner.assign(metadata)
        assert list(labels) == ["case_A", "exclude", "control", "case_A", "exclude"]
        assert assigner.included(labels).sum() == 3

    def test_from_config_scalar_exclude(self):
        meta = pd.DataFrame({"title": ["x sample", "y sample"]}, index=["S1", "S2"])
        assigner = GroupAssigner.from_config({
            "rules": [{"pattern": "x", "label": "e"}],
            "default": "other",
            "exclude": "other",
        })
        assert assigner.exclude_labels == {"other"}
        labels = assigner.assign(meta)
        assert list(assigner.included(labels)) == [True, False]

    def test_from_config_scalar_fields(self, metadata):
        assigner = GroupAssigner.from_config({
            "fields": "source_name",
            "default": "other",
            "rules": [{"pattern": "healthy", "label": "control"}],
        })
        assert assigner.fields == ["source_name"]
        assert assigner.assign(metadata)["GSM3"] == "control"
