"""
Tests for background correction, normalization and the platform-aware
SignalCorrector.
"""

import numpy as np
import pytest

from arrayde.core.quality import QualityFlag
from arrayde.exceptions import DegenerateDataError
from arrayde.io.adapters import SingleChannelAdapter, TwoChannelRaw
from arrayde.stats.background import (
    MIN_SIGNAL,
    estimate_normexp_parameters,
    normexp_correction,
    offset_correction,
)
from arrayde.stats.correction import SignalCorrector
from arrayde.stats.normalization import (
    cyclic_scale_normalization,
    log2_transform,
    loess_normalization,
    quantile_normalization,
)


class TestBackgroundCorrection:
    def test_offset_with_explicit_background(self):
        signal = np.array([[10.0], [5.0]])
        background = np.array([[4.0], [6.0]])
        result = offset_correction(signal, background, offset=0.5)
        np.testing.assert_allclose(result.data[:, 0], [6.0, 0.5])
        assert list(result.low_signal[:, 0]) == [False, True]

    def test_offset_floor_is_positive(self):
        signal = np.arange(1.0, 101.0).reshape(-1, 1)
        result = offset_correction(signal, offset=0.0)
        assert result.data.min() == MIN_SIGNAL
        assert result.low_signal.sum() >= 1
        assert np.all(result.data > 0)

    def test_offset_background_shape_mismatch(self):
        with pytest.raises(DegenerateDataError):
            offset_correction(np.ones((3, 2)), np.ones((2, 2)))

    def test_normexp_floor_and_monotone(self, bead_raw):
        result = normexp_correction(bead_raw.matrix.data, bead_raw.controls.data, offset=16.0)
        assert np.all(result.data >= 16.0)
        for j in range(result.data.shape[1]):
            order = np.argsort(bead_raw.matrix.data[:, j])
            assert np.all(np.diff(result.data[order, j]) >= -1e-9)

    def test_normexp_parameters_from_controls(self, bead_raw):
        params = estimate_normexp_parameters(bead_raw.matrix.data, bead_raw.controls.data)
        np.testing.assert_allclose(params.mu, bead_raw.controls.data.mean(axis=0))
        assert np.all(params.alpha > 0)

    def test_normexp_zero_control_variance(self):
        with pytest.raises(DegenerateDataError, match="zero variance"):
            estimate_normexp_parameters(np.ones((5, 1)) * 100, np.ones((3, 1)))

    def test_normexp_far_below_background_stays_finite(self, bead_raw):
        signal = bead_raw.matrix.data.copy()
        signal[:3] = 1.0
        result = normexp_correction(signal, bead_raw.controls.data, offset=16.0)
        assert np.all(np.isfinite(result.data))


class TestNormalization:
    def test_log2_rejects_non_positive(self):
        with pytest.raises(DegenerateDataError):
            log2_transform(np.array([[1.0, 0.0]]))

    def test_quantile_sorted_columns_equal_target(self):
        rng = np.random.default_rng(5)
        data = rng.normal(8.0, 2.0, size=(300, 5)) + np.arange(5)
        result = quantile_normalization(data)
        for j in range(data.shape[1]):
            np.testing.assert_array_equal(np.sort(result.data[:, j]), result.target)
        np.testing.assert_allclose(result.target, np.sort(data, axis=0).mean(axis=1))

    def test_quantile_ties_ordinal(self):
        data = np.array([[1.0, 3.0], [1.0, 2.0], [2.0, 1.0]])
        result = quantile_normalization(data, ties="ordinal")
        for j in range(2):
            np.testing.assert_array_equal(np.sort(result.data[:, j]), result.target)

    def test_quantile_ties_average(self):
        data = np.array([[1.0, 3.0], [1.0, 2.0], [2.0, 1.0]])
        result = quantile_normalization(data, ties="average")
        assert result.data[0, 0] == result.data[1, 0]

    def test_quantile_keeps_missing(self):
        data = np.array([[1.0, 2.0], [np.nan, 4.0], [3.0, 6.0], [4.0, 8.0]])
        result = quantile_normalization(data)
        assert np.isnan(result.data[1, 0])
        assert np.all(np.isfinite(result.data[:, 1]))

    def test_quantile_empty(self):
        with pytest.raises(DegenerateDataError):
            quantile_normalization(np.empty((0, 3)))

    def test_loess_removes_intensity_trend(self):
        rng = np.random.default_rng(2)
        a = rng.uniform(6.0, 14.0, size=(500, 2))
        m = 0.3 * (a - 10.0) + 1.0 + rng.normal(0.0, 0.05, size=a.shape)
        result = loess_normalization(m, a, span=0.3)
        for j in range(2):
            assert abs(np.corrcoef(a[:, j], result.data[:, j])[0, 1]) < 0.1
            assert abs(np.median(result.data[:, j])) < 0.05

    def test_loess_too_few_spots(self):
        with pytest.raises(DegenerateDataError):
            loess_normalization(np.ones((3, 1)), np.ones((3, 1)))

    def test_cyclic_scale_equalizes_mads(self):
        rng = np.random.default_rng(4)
        m = rng.normal(0.0, 1.0, size=(400, 3)) * np.array([1.0, 2.0, 4.0])

        def mad(x):
            return np.median(np.abs(x - np.median(x, axis=0)), axis=0)

        before = mad(m)
        result = cyclic_scale_normalization(m)
        after = mad(result.data)
        np.testing.assert_allclose(after, after.mean(), rtol=1e-4)
        # Pairwise rescaling preserves the geometric mean of the MADs
        np.testing.assert_allclose(np.prod(after), np.prod(before), rtol=1e-6)
        assert result.diagnostics['converged']

    def test_cyclic_scale_zero_spread(self):
        with pytest.raises(DegenerateDataError):
            cyclic_scale_normalization(np.zeros((10, 2)))


class TestSignalCorrector:
    def test_single_channel_defaults(self, single_channel_raw):
        matrix, report = SignalCorrector("single").correct(single_channel_raw)
        assert matrix.shape == single_channel_raw.matrix.shape
        assert report.background == "offset"
        assert report.normalization == "quantile"
        columns = np.sort(matrix.data, axis=0)
        for j in range(1, matrix.n_samples):
            np.testing.assert_array_equal(columns[:, j], columns[:, 0])
        assert np.all(matrix.quality_flags & QualityFlag.NORMALIZED)
        assert np.all(matrix.quality_flags & QualityFlag.BACKGROUND_CORRECTED)

    def test_log10_input_converted(self, linear_table):
        raw = SingleChannelAdapter(scale="log10").from_table(np.log10(linear_table))
        matrix, report = SignalCorrector("single", normalization="none").correct(raw)
        assert report.background == "none"
        np.testing.assert_allclose(matrix.data, np.log10(linear_table.values) / np.log10(2.0))
        np.testing.assert_allclose(matrix.data, np.log2(linear_table.values))
        assert np.all(matrix.quality_flags & QualityFlag.LOG10_CONVERTED)

    def test_log2_input_passes_through(self, linear_table):
        raw = SingleChannelAdapter(scale="log2").from_table(np.log2(linear_table))
        matrix, _ = SignalCorrector("single", normalization="none").correct(raw)
        np.testing.assert_allclose(matrix.data, np.log2(linear_table.values))

    def test_bead_defaults(self, bead_raw):
        matrix, report = SignalCorrector("bead").correct(bead_raw)
        assert report.background == "normexp"
        assert report.offset == 16.0
        assert set(report.normexp_parameters) == {"mu", "sigma", "alpha"}
        assert len(report.normexp_parameters["mu"]) == bead_raw.matrix.n_samples
        assert matrix.data.min() >= np.log2(16.0) - 1e-9
        assert np.all(np.isfinite(matrix.data))

    def test_normexp_without_controls(self, single_channel_raw):
        with pytest.raises(DegenerateDataError, match="negative-control"):
            SignalCorrector("single", background="normexp").correct(single_channel_raw)

    def test_two_channel_log_ratios(self, two_channel_raw):
        corrector = SignalCorrector("two-channel", background="none", normalization="none")
        matrix, report = corrector.correct(two_channel_raw)
        assert matrix.shape == (60, 4)
        np.testing.assert_allclose(matrix.data, 2.0, atol=1e-12)
        assert list(matrix.sample_metadata["test_sample"]) == ["tumour_1", "tumour_1", "normal_1", "normal_2"]
        assert list(matrix.sample_metadata["reference_channel"]) == ["Cy3", "Cy5", "Cy3", "Cy5"]

    def test_two_channel_loess_and_scale(self, two_channel_raw):
        rng = np.random.default_rng(9)
        noisy = TwoChannelRaw(
            red=two_channel_raw.red * rng.lognormal(0.0, 0.2, size=two_channel_raw.red.shape),
            green=two_channel_raw.green,
            red_background=None,
            green_background=None,
            probe_ids=two_channel_raw.probe_ids,
            array_ids=two_channel_raw.array_ids,
            targets=two_channel_raw.targets,
            reference=two_channel_raw.reference,
        )
        matrix, report = SignalCorrector("two-channel", background="none").correct(noisy)
        assert report.scale_factors is not None and len(report.scale_factors) == 4
        assert np.all(np.isfinite(matrix.data))

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"platform": "single", "normalization": "loess"},
            {"platform": "bead", "normalization": "loess+scale"},
            {"platform": "two-channel", "background": "normexp"},
            {"platform": "two-channel", "normalization": "quantile"},
            {"platform": "single", "background": "magic"},
            {"platform": "tiling"},
        ],
    )
    def test_invalid_combinations(self, kwargs):
        with pytest.raises(ValueError):
            SignalCorrector(**kwargs)

    def test_platform_mismatch(self, two_channel_raw, single_channel_raw):
        with pytest.raises(ValueError):
            SignalCorrector("single").correct(two_channel_raw)
        with pytest.raises(ValueError):
            SignalCorrector("two-channel").correct(single_channel_raw)

    def test_deterministic(self, single_channel_raw):
        first, _ = SignalCorrector("single").correct(single_channel_raw)
        second, _ = SignalCorrector("single").correct(single_channel_raw)
        np.testing.assert_array_equal(first.data, second.data)

    def test_history_records_steps(self, single_channel_raw):
        matrix, report = SignalCorrector("single").correct(single_channel_raw)
        names = [name for name, _ in matrix.history]
        assert names == ["OffsetBackgroundCorrection", "LogScaleConversion", "QuantileNormalization"]
        assert len(report.steps) == 3
        assert isinstance(report.to_dict()["steps"], list)
