"""
Signal correction: raw platform intensities -> normalized log2 matrix.

SignalCorrector chains background correction, log2 conversion and
normalization with per-platform defaults:

    platform        background            normalization
    single          offset (0.5th pct)    quantile
    bead            normexp (controls)    quantile
    two-channel     offset (bg channels)  loess within arrays + cyclic scale between arrays

Inputs reported on a log scale skip background correction by default; log10
values are converted with log2(x) = log10(x) / log10(2).

The single-channel steps are Transforms on ExpressionMatrix and can be used
on their own:

    >>> from arrayde.stats.correction import LogScaleConversion, QuantileNormalization
    >>> from arrayde.core.transform import apply_all
    >>> normalized = apply_all(matrix, [LogScaleConversion("linear"), QuantileNormalization()])

Output is a pure function of the raw container and the corrector's
parameters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.core.quality import QualityFlag
from arrayde.core.transform import Transform
from arrayde.exceptions import DegenerateDataError
from arrayde.io.adapters import Platform, RawIntensities, SignalScale, TwoChannelRaw
from arrayde.stats.background import normexp_correction, offset_correction
from arrayde.stats.normalization import (
    cyclic_scale_normalization,
    log10_to_log2,
    log2_transform,
    loess_normalization,
    ma_values,
    quantile_normalization,
)

logger = logging.getLogger(__name__)

__all__ = [
    'BackgroundMethod',
    'CorrectionReport',
    'OffsetBackgroundCorrection',
    'NormexpBackgroundCorrection',
    'LogScaleConversion',
    'QuantileNormalization',
    'SignalCorrector',
]


class BackgroundMethod(Enum):
    NONE = "none"
    OFFSET = "offset"
    NORMEXP = "normexp"


_SINGLE_CHANNEL_NORMALIZATIONS = {"quantile", "none"}
_TWO_CHANNEL_NORMALIZATIONS = {"loess+scale", "loess", "scale", "none"}

_DEFAULTS = {
    Platform.SINGLE_CHANNEL: (BackgroundMethod.OFFSET, "quantile", 0.0),
    Platform.BEAD: (BackgroundMethod.NORMEXP, "quantile", 16.0),
    Platform.TWO_CHANNEL: (BackgroundMethod.OFFSET, "loess+scale", 0.0),
}


@dataclass
class CorrectionReport:
    """What the corrector did to one study's raw data.

    Attributes:
        platform: Platform family
        background: Background method applied
        normalization: Normalization applied
        input_scale: Scale of the raw values
        offset: Floor used by background correction
        n_low_signal: Cells floored by background correction
        normexp_parameters: Per-sample mu/sigma/alpha (normexp only)
        scale_factors: Per-array factors (cyclic scale only)
        steps: Names of steps in application order
    """

    platform: str
    background: str
    normalization: str
    input_scale: str
    offset: float
    n_low_signal: int = 0
    normexp_parameters: Optional[dict] = None
    scale_factors: Optional[list[float]] = None
    steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            'platform': self.platform,
            'background': self.background,
            'normalization': self.normalization,
            'input_scale': self.input_scale,
            'offset': self.offset,
            'n_low_signal': self.n_low_signal,
            'normexp_parameters': self.normexp_parameters,
            'scale_factors': self.scale_factors,
            'steps': list(self.steps),
        }


def _background_flags(low_signal: np.ndarray) -> np.ndarray:
    return int(QualityFlag.BACKGROUND_CORRECTED) | np.where(low_signal, int(QualityFlag.LOW_SIGNAL), 0)


class OffsetBackgroundCorrection(Transform):
    """
    Subtract a per-sample low percentile (or an explicit background) and floor.

    Params:
        offset: Floor for corrected values
        percentile: Percentile subtracted when no background is supplied
    """

    def __init__(self, offset: float = 0.0, percentile: float = 0.5,
                 background: Optional[np.ndarray] = None):
        super().__init__(
            name="OffsetBackgroundCorrection",
            params={"offset": offset, "percentile": percentile,
                    "background": "explicit" if background is not None else "percentile"},
        )
        self.offset = offset
        self.percentile = percentile
        self.background = background

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        result = offset_correction(matrix.data, self.background, self.offset, self.percentile)
        flags = _background_flags(result.low_signal)
        return matrix.with_data(result.data, add_flags=flags).with_step(self.name, self.params)


class NormexpBackgroundCorrection(Transform):
    """
    normexp background correction with parameters from negative controls.

    Params:
        offset: Floor for corrected values
    """

    def __init__(self, controls: ExpressionMatrix, offset: float = 16.0):
        super().__init__(name="NormexpBackgroundCorrection", params={"offset": offset})
        self.controls = controls
        self.offset = offset
        self.parameters: Optional[dict] = None

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        errors = super().validate(matrix)
        if not self.controls.sample_ids.equals(matrix.sample_ids):
            errors.append("Control probes must cover the same samples in the same order")
        return errors

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        errors = self.validate(matrix)
        if errors:
            raise DegenerateDataError("; ".join(errors), stage='background_correction')
        result = normexp_correction(matrix.data, self.controls.data, self.offset)
        self.parameters = result.diagnostics['parameters']
        flags = _background_flags(result.low_signal)
        return matrix.with_data(result.data, add_flags=flags).with_step(self.name, self.params)


class LogScaleConversion(Transform):
    """
    Put values on the log2 scale.

    linear -> log2(x); log10 -> x / log10(2) (flagged LOG10_CONVERTED);
    log2 passes through.
    """

    def __init__(self, scale: SignalScale | str = SignalScale.LINEAR):
        scale = SignalScale(scale)
        super().__init__(name="LogScaleConversion", params={"scale": scale.value})
        self.scale = scale

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        if self.scale is SignalScale.LOG2:
            return matrix.with_step(self.name, self.params)
        if self.scale is SignalScale.LOG10:
            converted = matrix.with_data(log10_to_log2(matrix.data), add_flags=QualityFlag.LOG10_CONVERTED)
            return converted.with_step(self.name, self.params)
        return matrix.with_data(log2_transform(matrix.data)).with_step(self.name, self.params)


class QuantileNormalization(Transform):
    """Quantile normalization of log2 values (see ``quantile_normalization``)."""

    def __init__(self, ties: str = "ordinal"):
        super().__init__(name="QuantileNormalization", params={"ties": ties})
        self.ties = ties

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        errors = self.validate(matrix)
        if errors:
            raise DegenerateDataError("; ".join(errors), stage='normalization')
        result = quantile_normalization(matrix.data, ties=self.ties)
        return matrix.with_data(result.data, add_flags=QualityFlag.NORMALIZED).with_step(self.name, self.params)


def _to_linear(data: np.ndarray, scale: SignalScale) -> np.ndarray:
    if scale is SignalScale.LOG2:
        return np.power(2.0, data)
    if scale is SignalScale.LOG10:
        return np.power(10.0, data)
    return data


class SignalCorrector:
    """
    Platform-aware background correction and normalization.

    Args:
        platform: Platform family
        background: "none", "offset" or "normexp" (default per platform;
            "none" for log-scale inputs)
        normalization: "quantile"/"none" (single, bead) or
            "loess+scale"/"loess"/"scale"/"none" (two-channel)
        offset: Floor after background correction (default 16 for bead
            arrays, else 0)
        percentile: Percentile subtracted by offset correction without a
            background channel
        loess_span: Span of the within-array loess fit
        loess_iterations: Robustness iterations of the loess fit
        max_cycles: Maximum cycles of between-array scale normalization
        quantile_ties: Tie handling for quantile normalization

    Raises:
        ValueError: Unknown method, or a method not available for the platform
    """

    def __init__(
        self,
        platform: Platform | str,
        background: Optional[str] = None,
        normalization: Optional[str] = None,
        offset: Optional[float] = None,
        percentile: float = 0.5,
        loess_span: float = 0.3,
        loess_iterations: int = 4,
        max_cycles: int = 20,
        quantile_ties: str = "ordinal",
    ):
        self.platform = Platform.parse(platform)
        default_background, default_normalization, default_offset = _DEFAULTS[self.platform]

        self._background_given = background is not None
        self.background = BackgroundMethod(background) if background is not None else default_background
        self.normalization = normalization or default_normalization
        self.offset = float(offset) if offset is not None else default_offset
        self.percentile = percentile
        self.loess_span = loess_span
        self.loess_iterations = loess_iterations
        self.max_cycles = max_cycles
        self.quantile_ties = quantile_ties

        allowed = (
            _TWO_CHANNEL_NORMALIZATIONS if self.platform is Platform.TWO_CHANNEL
            else _SINGLE_CHANNEL_NORMALIZATIONS
        )
        if self.normalization not in allowed:
            raise ValueError(
                f"Normalization {self.normalization!r} is not available for "
                f"{self.platform.value} arrays; choose from {sorted(allowed)}"
            )
        if self.background is BackgroundMethod.NORMEXP and self.platform is Platform.TWO_CHANNEL:
            raise ValueError("normexp correction needs negative controls; use 'offset' for two-channel arrays")

    def __repr__(self) -> str:
        return (
            f"SignalCorrector(platform={self.platform.value}, background={self.background.value}, "
            f"normalization={self.normalization}, offset={self.offset:g})"
        )

    def correct(self, raw: RawIntensities | TwoChannelRaw) -> tuple[ExpressionMatrix, CorrectionReport]:
        """
        Correct and normalize one study's raw data.

        Returns:
            (log2 matrix of the same shape as the raw probes × samples, report)
        """
        if isinstance(raw, TwoChannelRaw):
            if self.platform is not Platform.TWO_CHANNEL:
                raise ValueError(f"{self.platform.value} corrector received two-channel data")
            return self._correct_two_channel(raw)
        if self.platform is Platform.TWO_CHANNEL:
            raise ValueError("two-channel corrector requires TwoChannelRaw input")
        return self._correct_single(raw)

    def _correct_single(self, raw: RawIntensities) -> tuple[ExpressionMatrix, CorrectionReport]:
        matrix = raw.matrix
        background = self.background
        if raw.scale is not SignalScale.LINEAR and not self._background_given:
            background = BackgroundMethod.NONE

        report = CorrectionReport(
            platform=self.platform.value,
            background=background.value,
            normalization=self.normalization,
            input_scale=raw.scale.value,
            offset=self.offset,
        )

        if background is BackgroundMethod.NONE:
            steps: list[Transform] = [LogScaleConversion(raw.scale)]
        else:
            if raw.scale is not SignalScale.LINEAR:
                matrix = matrix.with_data(_to_linear(matrix.data, raw.scale))
            if background is BackgroundMethod.NORMEXP:
                if raw.controls is None:
                    raise DegenerateDataError(
                        "normexp background correction requires negative-control probes",
                        stage='background_correction',
                    )
                controls = raw.controls
                if raw.scale is not SignalScale.LINEAR:
                    controls = controls.with_data(_to_linear(controls.data, raw.scale))
                bg_step: Transform = NormexpBackgroundCorrection(controls, self.offset)
            else:
                bg_step = OffsetBackgroundCorrection(self.offset, self.percentile)
            steps = [bg_step, LogScaleConversion(SignalScale.LINEAR)]

        if self.normalization == "quantile":
            steps.append(QuantileNormalization(self.quantile_ties))

        for step in steps:
            matrix = step.apply(matrix)
            report.steps.append(repr(step))
            if isinstance(step, NormexpBackgroundCorrection):
                report.normexp_parameters = step.parameters

        report.n_low_signal = int(np.sum((matrix.quality_flags & QualityFlag.LOW_SIGNAL) != 0))
        logger.info(
            f"Signal correction ({self.platform.value}): background={report.background}, "
            f"normalization={self.normalization}, {report.n_low_signal} low-signal values"
        )
        return matrix, report

    def _correct_two_channel(self, raw: TwoChannelRaw) -> tuple[ExpressionMatrix, CorrectionReport]:
        report = CorrectionReport(
            platform=self.platform.value,
            background=self.background.value,
            normalization=self.normalization,
            input_scale=SignalScale.LINEAR.value,
            offset=self.offset,
        )
        test, ref, test_bg, ref_bg = raw.channels()
        low = np.zeros(test.shape, dtype=bool)

        if self.background is BackgroundMethod.OFFSET:
            test_result = offset_correction(test, test_bg, self.offset, self.percentile)
            ref_result = offset_correction(ref, ref_bg, self.offset, self.percentile)
            test, ref = test_result.data, ref_result.data
            low = test_result.low_signal | ref_result.low_signal
            report.steps.append(f"offset({'background channels' if test_bg is not None else 'percentile'})")

        m_values, a_values = ma_values(test, ref)
        report.steps.append("log-ratio(test/reference)")

        if self.normalization in ("loess+scale", "loess"):
            m_values = loess_normalization(m_values, a_values, self.loess_span, self.loess_iterations).data
            report.steps.append(f"loess(span={self.loess_span})")
        if self.normalization in ("loess+scale", "scale"):
            scaled = cyclic_scale_normalization(m_values, max_cycles=self.max_cycles)
            m_values = scaled.data
            report.scale_factors = scaled.normalization_factors.tolist()
            report.steps.append("cyclic-scale")

        targets = raw.targets.loc[raw.array_ids].copy()
        targets['test_sample'] = raw.test_labels().values
        targets['reference_channel'] = np.where(raw.reference_is_green, 'Cy3', 'Cy5')
        matrix = ExpressionMatrix.from_array(m_values, raw.probe_ids, raw.array_ids, sample_metadata=targets)

        flags = np.zeros(matrix.shape, dtype=int)
        if self.background is not BackgroundMethod.NONE:
            flags |= int(QualityFlag.BACKGROUND_CORRECTED)
        flags[low] |= int(QualityFlag.LOW_SIGNAL)
        if self.normalization != "none":
            flags |= int(QualityFlag.NORMALIZED)
        matrix = matrix.with_data(matrix.data, add_flags=flags).with_step(
            "TwoChannelCorrection",
            {"background": self.background.value, "normalization": self.normalization,
             "offset": self.offset, "loess_span": self.loess_span},
        )

        report.n_low_signal = int(low.sum())
        logger.info(
            f"Signal correction (two-channel): {len(raw.array_ids)} arrays, "
            f"normalization={self.normalization}, {report.n_low_signal} low-signal spots"
        )
        return matrix, report

