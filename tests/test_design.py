"""Tests for the group-means design matrix and contrast parsing."""

import numpy as np
import pandas as pd
import pytest

from arrayde.exceptions import RankDeficientDesignError, UnassignedSampleError, UnknownGroupError
from arrayde.stats.design_matrix import Contrast, build_group_design, parse_contrast


@pytest.fixture
def labels():
    return pd.Series(
        ["case_A", "control", "case_B", "control", "case_A", "case_B"],
        index=[f"GSM{i}" for i in range(6)],
        name="group",
    )


class TestBuildGroupDesign:
    def test_rows_sum_to_one(self, labels):
        design = build_group_design(labels)
        np.testing.assert_array_equal(design.values.sum(axis=1), np.ones(6))
        assert set(np.unique(design.values)) <= {0.0, 1.0}

    def test_columns_in_first_appearance_order(self, labels):
        design = build_group_design(labels)
        assert design.groups == ["case_A", "control", "case_B"]
        assert list(design.sample_ids) == list(labels.index)

    def test_no_intercept(self, labels):
        design = build_group_design(labels)
        assert design.values.shape == (6, 3)
        assert design.rank == 3
        assert design.df_residual == 3

    def test_explicit_group_order(self, labels):
        design = build_group_design(labels, groups=["control", "case_A", "case_B"])
        assert design.groups == ["control", "case_A", "case_B"]
        assert list(design.group_sizes()) == [2, 2, 2]

    def test_label_outside_groups(self, labels):
        with pytest.raises(UnknownGroupError) as exc:
            build_group_design(labels, groups=["control", "case_A"])
        assert exc.value.identifier == "case_B"

    def test_missing_label(self, labels):
        labels = labels.copy()
        labels.iloc[2] = None
        with pytest.raises(UnassignedSampleError) as exc:
            build_group_design(labels)
        assert exc.value.identifier == "GSM2"


class TestParseContrast:
    def test_simple_difference(self):
        contrast = parse_contrast("case-control")
        assert contrast.name == "case-control"
        assert dict(contrast.coefficients) == {"case": 1.0, "control": -1.0}

    def test_named(self):
        contrast = parse_contrast("A_vs_ctrl = case_A - control")
        assert contrast.name == "A_vs_ctrl"
        assert dict(contrast.coefficients) == {"case_A": 1.0, "control": -1.0}

    def test_average_of_groups(self):
        contrast = parse_contrast("(case_A+case_B)/2-control")
        assert dict(contrast.coefficients) == {"case_A": 0.5, "case_B": 0.5, "control": -1.0}

    def test_weighted(self):
        contrast = parse_contrast("2*case_A-case_B-control")
        assert dict(contrast.coefficients) == {"case_A": 2.0, "case_B": -1.0, "control": -1.0}

    def test_hyphenated_group_names(self):
        contrast = parse_contrast("case-subtype-A - control", groups=["control", "case-subtype-A"])
        assert dict(contrast.coefficients) == {"case-subtype-A": 1.0, "control": -1.0}

    def test_unknown_group(self):
        with pytest.raises(UnknownGroupError) as exc:
            parse_contrast("case-treated", groups=["case", "control"])
        assert exc.value.identifier == "treated"
        assert exc.value.stage == "design"

    def test_prefix_of_known_group_is_unknown(self):
        with pytest.raises(UnknownGroupError):
            parse_contrast("AB-control", groups=["A", "control"])

    @pytest.mark.parametrize(
        "expression",
        ["case", "case-control+1", "case*control", "case/control", "(case-control", "", "case-control)", "case-#"],
    )
    def test_malformed(self, expression):
        with pytest.raises(ValueError):
            parse_contrast(expression)

    def test_coefficients_must_sum_to_zero(self):
        with pytest.raises(ValueError, match="sum to zero"):
            Contrast("bad", {"case": 1.0, "control": -0.5})

    def test_contrast_vector(self):
        contrast = parse_contrast("case_B-control")
        np.testing.assert_array_equal(contrast.vector(["case_A", "control", "case_B"]), [0.0, -1.0, 1.0])


class TestGroupDesignContrasts:
    def test_contrast_matrix(self, labels):
        design = build_group_design(labels)
        cm = design.contrast_matrix(["case_A-control", "AB=(case_A+case_B)/2-control"])
        assert list(cm.index) == design.groups
        assert list(cm.columns) == ["case_A-control", "AB"]
        np.testing.assert_array_equal(cm["AB"].values, [0.5, -1.0, 0.5])

    def test_resolve_rejects_duplicate_names(self, labels):
        design = build_group_design(labels)
        with pytest.raises(ValueError, match="Duplicate"):
            design.resolve(["x=case_A-control", "x=case_B-control"])

    def test_resolve_unknown_group(self, labels):
        design = build_group_design(labels)
        with pytest.raises(UnknownGroupError):
            design.resolve(["case_A-control", "case_C-control"])

    def test_empty_group_not_estimable(self, labels):
        design = build_group_design(labels, groups=["control", "case_A", "case_B", "case_C"])
        assert design.rank == 3
        design.check_estimable(parse_contrast("case_A-control"))
        with pytest.raises(RankDeficientDesignError) as exc:
            design.check_estimable(parse_contrast("case_C-control"))
        assert "case_C" in str(exc.value)
        assert exc.value.identifier == "case_C-control"
