"""
Empirical Bayes variance moderation (limma-style).

Per-feature residual variances s²_g are treated as draws from a scaled
inverse chi-square prior shared by all features:

    1/σ²_g ~ (1 / (d₀ s₀²)) χ²_{d₀}
    s²_g | σ²_g ~ σ²_g χ²_{d_g} / d_g

The hyperparameters (d₀, s₀²) are estimated by matching the first two
moments of log(s²_g). The posterior (moderated) variance is the
df-weighted average of the feature's own variance and the prior:

    s̃²_g = (d₀ s₀² + d_g s²_g) / (d₀ + d_g)

Features with d_g = 0 contribute nothing to the estimate and their moderated
variance is the prior value alone.

References:
    Smyth (2004) "Linear models and empirical Bayes methods for assessing
    differential expression in microarray experiments". Statistical
    Applications in Genetics and Molecular Biology 3(1), Article 3.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray
from scipy.special import digamma, polygamma

logger = logging.getLogger(__name__)

__all__ = ['trigamma_inverse', 'fit_f_dist', 'squeeze_var']


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y by Newton's method.

    Starts from y = 0.5 + 1/x (1/trigamma(y) > y - 0.5 for all y > 0) and
    iterates on trigamma directly, halving y whenever a step would leave the
    positive axis.

    Args:
        x: Target trigamma value (must be positive)
        tol: Relative convergence tolerance
        max_iter: Maximum Newton iterations

    Returns:
        y such that trigamma(y) ≈ x; inf for x <= 0
    """
    if x <= 0:
        return np.inf
    # Asymptotes: trigamma(y) ~ 1/y² as y -> 0, ~ 1/y as y -> inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        slope = polygamma(2, y)
        if abs(slope) < 1e-15:
            break
        step = (tri - x) / slope
        y_next = y - step
        y = y / 2.0 if y_next <= 0 else y_next
        if abs(step) < tol * abs(y):
            break

    return float(max(y, 1e-10))


def _pooled_variance(s2: NDArray[np.float64], d: NDArray[np.float64]) -> float:
    return float(np.sum(d * s2) / np.sum(d))


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> tuple[float, float]:
    """
    Estimate prior degrees of freedom d₀ and prior variance s₀².

    Method of moments on the log variances:

        e_g = log(s²_g) - digamma(d_g/2) + log(d_g/2)
        var(e) - mean(trigamma(d_g/2)) = trigamma(d₀/2)
        s₀² = exp(mean(e) + digamma(d₀/2) - log(d₀/2))

    Only features with positive, finite variance and positive df are used.
    When fewer than three such features exist, or the observed spread is no
    larger than sampling noise alone explains, d₀ is infinite: all features
    share one variance, estimated by the df-weighted pooled variance
    sum(d_g s²_g) / sum(d_g) of the usable features.

    Args:
        sigma2: Residual variances (n_features,)
        df: Residual degrees of freedom, scalar or per feature

    Returns:
        (d0, s0_sq); s0_sq is NaN when no feature is usable
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    usable = (sigma2 > 0) & np.isfinite(sigma2) & (df_arr > 0) & np.isfinite(df_arr)
    s2 = sigma2[usable]
    d = df_arr[usable]

    if len(s2) == 0:
        return np.inf, np.nan
    if len(s2) < 3:
        return np.inf, _pooled_variance(s2, d)

    half = d / 2.0
    e = np.log(s2) - digamma(half) + np.log(half)
    e_mean = float(np.mean(e))
    e_var = float(np.var(e, ddof=1))

    excess = e_var - float(np.mean(polygamma(1, half)))
    if excess <= 0:
        return np.inf, _pooled_variance(s2, d)

    d0 = 2.0 * trigamma_inverse(excess)
    if d0 > 1e10:
        return np.inf, _pooled_variance(s2, d)

    s0_sq = float(np.exp(e_mean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    return float(d0), s0_sq


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    s0_sq: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Posterior (moderated) variances.

        s̃² = (d₀ s₀² + d s²) / (d₀ + d)

    Args:
        sigma2: Residual variances (n_features,); NaN where d = 0
        df: Residual df, scalar or per feature
        d0: Prior df (from fit_f_dist)
        s0_sq: Prior variance (from fit_f_dist)

    Returns:
        (s2_post, df_total) per feature. With infinite d₀ every feature
        takes the prior variance (the limit of the weighted average) and
        df_total is infinite. Features with d = 0 take the prior variance
        with df_total = d₀.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape).astype(np.float64)
    saturated = df_arr <= 0

    if np.isinf(d0):
        s2_post = np.full(sigma2.shape, s0_sq)
        df_total = np.full(sigma2.shape, np.inf)
    else:
        with np.errstate(invalid='ignore'):
            s2_post = (d0 * s0_sq + df_arr * np.where(saturated, 0.0, sigma2)) / (d0 + df_arr)
        df_total = d0 + df_arr

    s2_post[saturated] = s0_sq
    df_total[saturated] = d0
    return s2_post, df_total
