"""
Background correction for linear-scale microarray intensities.

Two estimators are provided:

- normexp (normal + exponential convolution) using negative-control probes.
  Observed signal X = S + B with background B ~ N(mu, sigma^2) and true
  signal S ~ Exp(mean alpha). mu and sigma are estimated per sample from the
  negative controls; alpha from the excess of the mean signal over mu. The
  corrected value is the posterior mean E[S | X = x]:

      mu_sf = x - mu - sigma^2 / alpha
      E[S | x] = mu_sf + sigma^2 * phi(0; mu_sf, sigma) / (1 - Phi(0; mu_sf, sigma))

  The density ratio is evaluated in log space so very negative ``mu_sf``
  (signal far below background) does not produce 0/0.

- offset: subtract an explicit background measurement (two-channel
  background columns) or, without one, a low per-sample percentile.

Both floor the result at a small positive value so the log2 transform that
follows is always defined; floored cells are reported in ``low_signal``.

References:
    - Ritchie et al. (2007) Bioinformatics 23(20):2700-2707 (normexp)
    - Shi et al. (2010) Nucleic Acids Research 38(22):e204 (neqc, control probes)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from arrayde.exceptions import DegenerateDataError

logger = logging.getLogger(__name__)

__all__ = [
    'BackgroundResult',
    'NormexpParameters',
    'estimate_normexp_parameters',
    'normexp_signal',
    'normexp_correction',
    'offset_correction',
    'MIN_SIGNAL',
]

# Smallest corrected linear intensity (keeps log2 finite)
MIN_SIGNAL = 1e-2

_ALPHA_EPS = 1e-6


@dataclass(frozen=True)
class NormexpParameters:
    """Per-sample normexp parameters.

    Attributes:
        mu: Background mean per sample
        sigma: Background standard deviation per sample
        alpha: Mean of the exponential signal component per sample
    """

    mu: NDArray[np.float64]
    sigma: NDArray[np.float64]
    alpha: NDArray[np.float64]

    def to_dict(self) -> dict:
        return {
            'mu': self.mu.tolist(),
            'sigma': self.sigma.tolist(),
            'alpha': self.alpha.tolist(),
        }


@dataclass(frozen=True)
class BackgroundResult:
    """Result of background correction.

    Attributes:
        data: Corrected linear intensities (features × samples)
        low_signal: Cells floored at the minimum value
        method: "normexp", "offset" or "none"
        floor: Floor applied to corrected values
        diagnostics: Method-specific parameters
    """

    data: NDArray[np.float64]
    low_signal: NDArray[np.bool_]
    method: str
    floor: float
    diagnostics: dict = field(default_factory=dict)


def estimate_normexp_parameters(
    signal: NDArray[np.float64],
    controls: NDArray[np.float64],
) -> NormexpParameters:
    """
    Estimate normexp parameters from negative-control probes.

    Args:
        signal: Regular probe intensities (features × samples), linear scale
        controls: Negative-control intensities (controls × samples), same samples

    Raises:
        DegenerateDataError: Fewer than two finite control values for a
            sample, or zero control variance
    """
    if signal.shape[1] != controls.shape[1]:
        raise DegenerateDataError(
            f"Signal has {signal.shape[1]} samples but controls have {controls.shape[1]}",
            stage='background_correction',
        )

    n_finite = np.sum(np.isfinite(controls), axis=0)
    if np.any(n_finite < 2):
        bad = int(np.argmax(n_finite < 2))
        raise DegenerateDataError(
            "At least two finite negative-control values are required per sample",
            stage='background_correction',
            identifier=f"sample column {bad}",
        )

    mu = np.nanmean(controls, axis=0)
    sigma = np.nanstd(controls, axis=0, ddof=1)
    if np.any(sigma <= 0):
        bad = int(np.argmax(sigma <= 0))
        raise DegenerateDataError(
            "Negative controls have zero variance",
            stage='background_correction',
            identifier=f"sample column {bad}",
        )

    alpha = np.maximum(np.nanmean(signal, axis=0) - mu, _ALPHA_EPS)
    return NormexpParameters(mu=mu, sigma=sigma, alpha=alpha)


def normexp_signal(
    x: NDArray[np.float64],
    params: NormexpParameters,
) -> NDArray[np.float64]:
    """
    Posterior mean of the exponential signal given observed intensities.

    ``x`` is features × samples; parameters broadcast per column. NaN inputs
    stay NaN.
    """
    mu = params.mu[np.newaxis, :]
    sigma = params.sigma[np.newaxis, :]
    alpha = params.alpha[np.newaxis, :]

    mu_sf = x - mu - sigma ** 2 / alpha
    with np.errstate(invalid='ignore', over='ignore'):
        log_ratio = (
            scipy_stats.norm.logpdf(0.0, loc=mu_sf, scale=sigma)
            - scipy_stats.norm.logsf(0.0, loc=mu_sf, scale=sigma)
        )
        posterior = mu_sf + sigma ** 2 * np.exp(log_ratio)
    return posterior


def normexp_correction(
    signal: NDArray[np.float64],
    controls: NDArray[np.float64],
    offset: float = 16.0,
) -> BackgroundResult:
    """
    normexp background correction estimated from negative controls.

    Args:
        signal: Regular probe intensities (features × samples), linear scale
        controls: Negative-control intensities (controls × samples)
        offset: Floor for corrected values

    Returns:
        BackgroundResult with floored posterior means
    """
    params = estimate_normexp_parameters(signal, controls)
    corrected = normexp_signal(signal, params)

    floor = max(float(offset), MIN_SIGNAL)
    low = np.isfinite(corrected) & (corrected < floor)
    corrected = np.where(low, floor, corrected)

    logger.info(
        f"normexp: median background mu={np.median(params.mu):.2f}, "
        f"sigma={np.median(params.sigma):.2f}, alpha={np.median(params.alpha):.2f}; "
        f"{int(low.sum())} values floored at {floor:g}"
    )
    return BackgroundResult(
        data=corrected,
        low_signal=low,
        method="normexp",
        floor=floor,
        diagnostics={'parameters': params.to_dict()},
    )


def offset_correction(
    signal: NDArray[np.float64],
    background: Optional[NDArray[np.float64]] = None,
    offset: float = 0.0,
    percentile: float = 0.5,
) -> BackgroundResult:
    """
    Subtract a background estimate and floor the result.

    Args:
        signal: Foreground intensities (features × samples), linear scale
        background: Per-cell background (same shape). When None, each sample's
            ``percentile``-th percentile of finite signal is subtracted.
        offset: Floor for corrected values
        percentile: Percentile (0-100) used when no background is given

    Raises:
        DegenerateDataError: Background shape differs, or a sample has no
            finite values
    """
    if background is not None:
        if background.shape != signal.shape:
            raise DegenerateDataError(
                f"Background shape {background.shape} must match signal shape {signal.shape}",
                stage='background_correction',
            )
        estimate = background
        source = "background channel"
    else:
        finite_counts = np.sum(np.isfinite(signal), axis=0)
        if np.any(finite_counts == 0):
            raise DegenerateDataError(
                "Sample has no finite intensities",
                stage='background_correction',
                identifier=f"sample column {int(np.argmax(finite_counts == 0))}",
            )
        estimate = np.nanpercentile(signal, percentile, axis=0)[np.newaxis, :]
        source = f"{percentile:g}th percentile"

    corrected = signal - estimate
    floor = max(float(offset), MIN_SIGNAL)
    low = np.isfinite(corrected) & (corrected < floor)
    corrected = np.where(low, floor, corrected)

    logger.info(f"Offset background correction ({source}): {int(low.sum())} values floored at {floor:g}")
    return BackgroundResult(
        data=corrected,
        low_signal=low,
        method="offset",
        floor=floor,
        diagnostics={'source': source},
    )
