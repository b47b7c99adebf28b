"""Tests for ExpressionMatrix, QualityFlag, Transform and the exception context."""

import numpy as np
import pandas as pd
import pytest

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.core.quality import QualityFlag
from arrayde.core.transform import Transform, apply_all
from arrayde.exceptions import (
    ArrayDEError,
    DegenerateDataError,
    IngestError,
    PipelineStageError,
    SchemaMismatchError,
    UnknownGroupError,
)


class _AddOne(Transform):
    def __init__(self):
        super().__init__(name="AddOne", params={"amount": 1})

    def apply(self, matrix):
        return matrix.with_data(matrix.data + 1, add_flags=QualityFlag.NORMALIZED).with_step(self.name, self.params)


class TestExpressionMatrix:
    def test_from_array_flags_missing_values(self):
        m = ExpressionMatrix.from_array([[1.0, np.nan], [2.0, 3.0]], ["a", "b"], ["s1", "s2"])
        assert m.shape == (2, 2)
        assert m.quality_flags[0, 1] == QualityFlag.MISSING_ORIGINAL
        assert m.quality_flags[1, 0] == QualityFlag.ORIGINAL

    def test_duplicate_samples_rejected(self):
        with pytest.raises(SchemaMismatchError):
            ExpressionMatrix.from_array(np.zeros((2, 2)), ["a", "b"], ["s1", "s1"])

    def test_shape_mismatch_rejected(self):
        with pytest.raises(SchemaMismatchError):
            ExpressionMatrix(
                data=np.zeros((2, 2)),
                feature_ids=pd.Index(["a", "b", "c"]),
                sample_ids=pd.Index(["s1", "s2"]),
                sample_metadata=pd.DataFrame(index=pd.Index(["s1", "s2"])),
                quality_flags=np.zeros((2, 2), dtype=int),
            )

    def test_metadata_without_sample_rejected(self):
        meta = pd.DataFrame({"title": ["x"]}, index=["s1"])
        with pytest.raises(SchemaMismatchError):
            ExpressionMatrix.from_array(np.zeros((1, 2)), ["a"], ["s1", "s2"], sample_metadata=meta)

    def test_select_keeps_order_and_history(self):
        m = ExpressionMatrix.from_array(np.arange(12.0).reshape(3, 4), ["a", "b", "c"],
                                        ["s1", "s2", "s3", "s4"])
        m = m.with_step("Step", {"k": 1})
        sub = m.select_features(np.array([True, False, True])).select_samples(np.array([False, True, True, False]))
        assert list(sub.feature_ids) == ["a", "c"]
        assert list(sub.sample_ids) == ["s2", "s3"]
        np.testing.assert_array_equal(sub.data, [[1.0, 2.0], [9.0, 10.0]])
        assert sub.last_step("Step") == {"k": 1}

    def test_with_data_does_not_modify_input(self):
        m = ExpressionMatrix.from_array(np.ones((2, 2)), ["a", "b"], ["s1", "s2"])
        out = _AddOne().apply(m)
        np.testing.assert_array_equal(m.data, np.ones((2, 2)))
        np.testing.assert_array_equal(out.data, np.full((2, 2), 2.0))
        assert np.all(out.quality_flags & QualityFlag.NORMALIZED)

    def test_last_step_returns_most_recent(self):
        m = ExpressionMatrix.from_array(np.ones((1, 1)), ["a"], ["s1"])
        m = m.with_step("X", {"v": 1}).with_step("Y", {}).with_step("X", {"v": 2})
        assert m.last_step("X") == {"v": 2}
        assert m.last_step("Z") is None
        assert len(m.history) == 3

    def test_copy_is_independent(self):
        m = ExpressionMatrix.from_array(np.ones((2, 2)), ["a", "b"], ["s1", "s2"]).with_step("X", {})
        dup = m.copy()
        dup.data[0, 0] = 5.0
        assert m.data[0, 0] == 1.0
        assert dup.history == m.history

    def test_mask_length_checked(self):
        m = ExpressionMatrix.from_array(np.ones((2, 2)), ["a", "b"], ["s1", "s2"])
        with pytest.raises(ValueError, match="feature mask"):
            m.select_features(np.array([True]))

    def test_to_frame(self):
        m = ExpressionMatrix.from_array([[1.0, 2.0]], ["a"], ["s1", "s2"])
        frame = m.to_frame()
        assert frame.loc["a", "s2"] == 2.0


class TestTransform:
    def test_apply_all_chains(self):
        m = ExpressionMatrix.from_array(np.zeros((2, 2)), ["a", "b"], ["s1", "s2"])
        out = apply_all(m, [_AddOne(), _AddOne()])
        np.testing.assert_array_equal(out.data, np.full((2, 2), 2.0))
        assert [name for name, _ in out.history] == ["AddOne", "AddOne"]

    def test_repr_includes_params(self):
        assert "amount=1" in repr(_AddOne())


class TestExceptions:
    def test_context_in_message(self):
        err = IngestError("bad file", study="GSE1", stage="ingest", identifier="a.txt")
        text = str(err)
        assert "bad file" in text
        assert "GSE1" in text and "ingest" in text and "a.txt" in text

    def test_with_context_does_not_overwrite(self):
        err = UnknownGroupError("no such group", stage="design")
        err.with_context(study="GSE2", stage="other")
        assert err.study == "GSE2"
        assert err.stage == "design"

    def test_value_error_subclasses(self):
        assert issubclass(UnknownGroupError, ValueError)
        assert issubclass(DegenerateDataError, ValueError)
        assert issubclass(SchemaMismatchError, ArrayDEError)

    def test_pipeline_stage_error_names_stage(self):
        cause = DegenerateDataError("empty matrix")
        err = PipelineStageError("cleaning", cause, study="GSE3")
        assert "stage 'cleaning' failed" in str(err)
        assert err.stage == "cleaning"
        assert err.details["cause"] is cause
