"""
Differential expression with moderated t-statistics.

Implements the limma workflow for microarray data:

1. Per-feature OLS fit of log2 expression on the group-means design
   (``lm_fit``), vectorized over ordered feature batches that can run on a
   thread pool
2. Contrast estimation (``contrasts_fit``): effect sizes c'β and their
   unscaled standard errors sqrt(c' (X'X)⁺ c)
3. Empirical Bayes variance moderation across all features (``ebayes``),
   a global step that needs every feature's residual variance
4. Moderated t-statistics on d_g + d₀ degrees of freedom
5. Benjamini-Hochberg adjustment within each contrast and up/down/ns calls

The statistical model per feature g:
    y_g = X β_g + ε_g,   ε_g ~ N(0, σ²_g I)

References:
    - Smyth (2004) Statistical Applications in Genetics and Molecular Biology 3(1)
    - Ritchie et al. (2015) limma: Nucleic Acids Research 43(7):e47
    - Benjamini & Hochberg (1995) JRSS-B 57(1):289-300
"""

from __future__ import annotations

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional, Sequence, TYPE_CHECKING

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from arrayde.annotation.probe_mapping import UNMAPPED, ProbeAnnotation
from arrayde.exceptions import RankDeficientDesignError, SchemaMismatchError
from arrayde.stats.design_matrix import Contrast, GroupDesign
from arrayde.stats.ebayes import fit_f_dist, squeeze_var

if TYPE_CHECKING:
    from arrayde.core.expression_matrix import ExpressionMatrix

logger = logging.getLogger(__name__)

__all__ = [
    'LinearFit',
    'ModeratedFit',
    'ContrastTable',
    'DifferentialResult',
    'RESULT_COLUMNS',
    'lm_fit',
    'contrasts_fit',
    'ebayes',
    'fdr_correction',
    'decide_tests',
    'run_differential_expression',
]

RESULT_COLUMNS = [
    'probe_id',
    'gene_symbol',
    'gene_id',
    'contrast',
    'log2_fc',
    'ave_expr',
    't',
    'p_value',
    'adj_p_value',
    'decision',
    'se',
    'df',
]

DEFAULT_BATCH_SIZE = 4096

_RSS_ROUNDOFF = (8 * np.finfo(np.float64).eps) ** 2


@dataclass(frozen=True)
class LinearFit:
    """Per-feature linear model fit.

    After ``contrasts_fit`` the coefficient axis holds contrasts instead of
    design columns.

    Attributes:
        coefficients: (n_features, n_coef) estimates; NaN where not estimable
        stdev_unscaled: (n_features, n_coef) sqrt of diagonal of (X'X)⁺
        cov_unscaled: (n_features, n_coef, n_coef) unscaled covariance
        sigma2: (n_features,) residual variance; NaN where df_residual = 0
        df_residual: (n_features,) residual degrees of freedom
        design: (n_samples, n_params) design matrix used for the fit
        coef_names: Names of the coefficient axis
        feature_ids: Row identifiers
        ave_expr: (n_features,) mean expression over observed samples
        rank: Rank of the full design
    """

    coefficients: NDArray[np.float64]
    stdev_unscaled: NDArray[np.float64]
    cov_unscaled: NDArray[np.float64]
    sigma2: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    design: NDArray[np.float64]
    coef_names: list[str]
    feature_ids: pd.Index
    ave_expr: NDArray[np.float64]
    rank: int

    @property
    def n_features(self) -> int:
        return self.coefficients.shape[0]

    @property
    def saturated(self) -> NDArray[np.bool_]:
        """Features with no residual degrees of freedom."""
        return self.df_residual <= 0


@dataclass(frozen=True)
class ModeratedFit:
    """LinearFit plus empirical Bayes moderation.

    Attributes:
        fit: The (contrast) fit that was moderated
        prior_df: Estimated prior degrees of freedom d₀ (inf = full pooling)
        prior_var: Estimated prior variance s₀²
        s2_post: (n_features,) moderated variances
        df_total: (n_features,) degrees of freedom of the moderated t
        t: (n_features, n_coef) moderated t-statistics
        p_value: (n_features, n_coef) two-sided p-values
    """

    fit: LinearFit
    prior_df: float
    prior_var: float
    s2_post: NDArray[np.float64]
    df_total: NDArray[np.float64]
    t: NDArray[np.float64]
    p_value: NDArray[np.float64]

    @property
    def se(self) -> NDArray[np.float64]:
        return self.fit.stdev_unscaled * np.sqrt(self.s2_post)[:, np.newaxis]


def _fit_complete(Y: NDArray[np.float64], X: NDArray[np.float64], pinv: NDArray[np.float64], rank: int):
    coef = Y @ pinv.T
    resid = Y - coef @ X.T
    rss = np.sum(resid ** 2, axis=1)
    # Exactly fitted rows (e.g. constant within every group) keep only pinv round-off
    rss[rss <= _RSS_ROUNDOFF * np.sum(Y ** 2, axis=1)] = 0.0
    df = float(X.shape[0] - rank)
    with np.errstate(invalid='ignore', divide='ignore'):
        sigma2 = rss / df if df > 0 else np.full(Y.shape[0], np.nan)
    return coef, sigma2, np.full(Y.shape[0], df)


def _fit_batch(Y: NDArray[np.float64], X: NDArray[np.float64], pinv: NDArray[np.float64],
               cov: NDArray[np.float64], rank: int):
    """Fit one ordered batch of features."""
    n_rows, n_params = Y.shape[0], X.shape[1]
    coefficients = np.empty((n_rows, n_params))
    cov_unscaled = np.empty((n_rows, n_params, n_params))
    sigma2 = np.empty(n_rows)
    df_residual = np.empty(n_rows)

    complete = ~np.isnan(Y).any(axis=1)
    if complete.any():
        coef, s2, df = _fit_complete(Y[complete], X, pinv, rank)
        coefficients[complete] = coef
        sigma2[complete] = s2
        df_residual[complete] = df
        cov_unscaled[complete] = cov

    # Incomplete rows are fit on their observed samples only
    for i in np.flatnonzero(~complete):
        observed = ~np.isnan(Y[i])
        Xo = X[observed]
        if observed.sum() == 0:
            coefficients[i] = np.nan
            cov_unscaled[i] = 0.0
            sigma2[i] = np.nan
            df_residual[i] = 0.0
            continue
        pinv_o = np.linalg.pinv(Xo)
        rank_o = int(np.linalg.matrix_rank(Xo))
        coef, s2, df = _fit_complete(Y[i:i + 1, observed], Xo, pinv_o, rank_o)
        coef = coef[0]
        # Parameters without any observed support are not estimable
        coef[~np.any(Xo != 0, axis=0)] = np.nan
        coefficients[i] = coef
        cov_unscaled[i] = pinv_o @ pinv_o.T
        sigma2[i] = s2[0]
        df_residual[i] = df[0]

    return coefficients, cov_unscaled, sigma2, df_residual


def lm_fit(
    Y: NDArray[np.float64],
    design: NDArray[np.float64] | GroupDesign,
    feature_ids: Optional[Sequence[str]] = None,
    n_jobs: int = 1,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> LinearFit:
    """
    Ordinary least squares fit of every feature on the design.

    Uses the Moore-Penrose pseudo-inverse, so rank-deficient designs still
    fit (their non-estimable contrasts are rejected by ``contrasts_fit``).
    Features are processed in ordered batches; with ``n_jobs > 1`` batches
    run on a thread pool and results are re-joined in original order.
    Features with missing values are fit on their observed samples.

    Args:
        Y: Expression matrix (n_features, n_samples), log2 scale
        design: Design matrix (n_samples, n_params) or GroupDesign
        feature_ids: Row identifiers (default: 0..n-1)
        n_jobs: Worker threads
        batch_size: Features per batch

    Raises:
        SchemaMismatchError: Sample count differs between Y and design
    """
    coef_names: list[str]
    if isinstance(design, GroupDesign):
        coef_names = design.groups
        X = design.values
    else:
        X = np.asarray(design, dtype=np.float64)
        coef_names = [f"x{i}" for i in range(X.shape[1])]

    Y = np.asarray(Y, dtype=np.float64)
    if Y.ndim != 2:
        raise ValueError(f"Expected 2D expression matrix, got {Y.ndim}D")
    if Y.shape[1] != X.shape[0]:
        raise SchemaMismatchError(
            f"Expression matrix has {Y.shape[1]} samples but design has {X.shape[0]} rows",
            stage='differential_expression',
        )
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    rank = int(np.linalg.matrix_rank(X))
    pinv = np.linalg.pinv(X)
    cov = pinv @ pinv.T

    starts = range(0, Y.shape[0], batch_size)
    batches = [Y[s:s + batch_size] for s in starts]

    if n_jobs > 1 and len(batches) > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            parts = list(executor.map(lambda b: _fit_batch(b, X, pinv, cov, rank), batches))
    else:
        parts = [_fit_batch(b, X, pinv, cov, rank) for b in batches]

    if parts:
        coefficients, cov_unscaled, sigma2, df_residual = (
            np.concatenate([p[k] for p in parts]) for k in range(4)
        )
    else:
        n_params = X.shape[1]
        coefficients = np.empty((0, n_params))
        cov_unscaled = np.empty((0, n_params, n_params))
        sigma2 = np.empty(0)
        df_residual = np.empty(0)

    with np.errstate(invalid='ignore'):
        stdev_unscaled = np.sqrt(np.einsum('gii->gi', cov_unscaled))
        ave_expr = np.nanmean(Y, axis=1) if Y.shape[0] else np.empty(0)

    if feature_ids is None:
        feature_ids = pd.RangeIndex(Y.shape[0]).astype(str)

    n_saturated = int(np.sum(df_residual <= 0))
    logger.info(
        f"Fitted {Y.shape[0]} features on {X.shape[0]} samples × {X.shape[1]} parameters "
        f"(rank {rank}, {len(batches)} batches, n_jobs={n_jobs})"
    )
    if n_saturated:
        logger.warning(f"{n_saturated} features have zero residual degrees of freedom")

    return LinearFit(
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        cov_unscaled=cov_unscaled,
        sigma2=sigma2,
        df_residual=df_residual,
        design=X,
        coef_names=coef_names,
        feature_ids=pd.Index(feature_ids),
        ave_expr=ave_expr,
        rank=rank,
    )


def _check_estimable(X: NDArray[np.float64], contrast_matrix: NDArray[np.float64], names: Sequence[str]) -> None:
    projector = np.linalg.pinv(X) @ X
    for k, name in enumerate(names):
        c = contrast_matrix[:, k]
        if not np.allclose(projector @ c, c, atol=1e-8):
            raise RankDeficientDesignError(
                f"Contrast {name!r} is not estimable: design rank {np.linalg.matrix_rank(X)} "
                f"for {X.shape[1]} parameters",
                stage='differential_expression',
                identifier=str(name),
            )


def contrasts_fit(fit: LinearFit, contrast_matrix: pd.DataFrame | NDArray[np.float64]) -> LinearFit:
    """
    Re-express a fit in terms of contrasts.

        estimate = C' β,   cov_unscaled = C' (X'X)⁺ C

    Args:
        fit: Output of ``lm_fit``
        contrast_matrix: (n_params, n_contrasts) coefficients, DataFrame
            columns giving contrast names

    Raises:
        RankDeficientDesignError: A contrast is not estimable from the design
        SchemaMismatchError: Contrast rows differ from the fit's parameters
    """
    if isinstance(contrast_matrix, pd.DataFrame):
        names = [str(c) for c in contrast_matrix.columns]
        C = contrast_matrix.to_numpy(dtype=np.float64)
    else:
        C = np.asarray(contrast_matrix, dtype=np.float64)
        names = [f"contrast{k + 1}" for k in range(C.shape[1])]

    if C.shape[0] != fit.coefficients.shape[1]:
        raise SchemaMismatchError(
            f"Contrast matrix has {C.shape[0]} rows for {fit.coefficients.shape[1]} coefficients",
            stage='differential_expression',
        )
    _check_estimable(fit.design, C, names)

    missing = np.isnan(fit.coefficients)
    # A contrast is unavailable for a feature when it puts weight on a
    # coefficient that feature could not estimate
    unavailable = (missing.astype(float) @ (C != 0).astype(float)) > 0

    estimates = np.where(missing, 0.0, fit.coefficients) @ C
    estimates[unavailable] = np.nan
    cov = np.einsum('pk,gpq,ql->gkl', C, fit.cov_unscaled, C)
    with np.errstate(invalid='ignore'):
        stdev = np.sqrt(np.einsum('gkk->gk', cov))
    stdev[unavailable] = np.nan

    return LinearFit(
        coefficients=estimates,
        stdev_unscaled=stdev,
        cov_unscaled=cov,
        sigma2=fit.sigma2,
        df_residual=fit.df_residual,
        design=fit.design,
        coef_names=names,
        feature_ids=fit.feature_ids,
        ave_expr=fit.ave_expr,
        rank=fit.rank,
    )


def ebayes(fit: LinearFit) -> ModeratedFit:
    """
    Empirical Bayes moderation of a (contrast) fit.

    Estimates the prior from all features' residual variances, then forms
    moderated t-statistics

        t_gk = estimate_gk / (stdev_unscaled_gk * sqrt(s̃²_g))

    referred to a t distribution on d_g + d₀ degrees of freedom (capped at
    the pooled residual df). Features with d_g = 0 use the prior variance
    alone; when no prior can be estimated their statistics are NaN.
    """
    d0, s0_sq = fit_f_dist(fit.sigma2, fit.df_residual)
    s2_post, df_total = squeeze_var(fit.sigma2, fit.df_residual, d0, s0_sq)

    df_pooled = float(np.sum(fit.df_residual[fit.df_residual > 0]))
    if df_pooled > 0:
        df_total = np.minimum(df_total, df_pooled)

    saturated = fit.saturated
    if saturated.any():
        message = (
            f"{int(saturated.sum())} features have zero residual degrees of freedom; "
            "their moderated statistics use the prior variance only"
        )
        warnings.warn(message)
        logger.warning(message)

    with np.errstate(invalid='ignore', divide='ignore'):
        t = fit.coefficients / (fit.stdev_unscaled * np.sqrt(s2_post)[:, np.newaxis])
        p_value = 2.0 * scipy_stats.t.sf(np.abs(t), df_total[:, np.newaxis])

    logger.info(f"Empirical Bayes prior: d0={d0:.3g}, s0^2={s0_sq:.4g}")
    return ModeratedFit(
        fit=fit,
        prior_df=d0,
        prior_var=s0_sq,
        s2_post=s2_post,
        df_total=df_total,
        t=t,
        p_value=p_value,
    )


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    Args:
        pvalues: Array of raw p-values (NaN entries are left NaN and not counted)
        method: Correction method:
            - "BH": Benjamini-Hochberg (controls FDR)
            - "BY": Benjamini-Yekutieli (controls FDR under dependence)
            - "bonferroni": Bonferroni (controls FWER)
        alpha: Significance threshold.

    Returns:
        Array of adjusted p-values.
    """
    from statsmodels.stats.multitest import multipletests

    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    method_map = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}
    if method not in method_map:
        raise ValueError(f"Unknown FDR method {method!r}; choose from {sorted(method_map)}")
    _, adj_pvals[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        alpha=alpha,
        method=method_map[method],
    )

    return adj_pvals


def decide_tests(
    adj_p: NDArray[np.float64],
    log2_fc: NDArray[np.float64],
    p_value: float = 0.05,
    lfc: float = 0.0,
) -> NDArray[np.object_]:
    """
    Classify each test as "up", "down" or "ns".

    Significant when adj_p <= p_value and |log2_fc| >= lfc; direction from
    the sign of the fold change. NaN statistics are "ns".
    """
    adj_p = np.asarray(adj_p, dtype=np.float64)
    log2_fc = np.asarray(log2_fc, dtype=np.float64)
    with np.errstate(invalid='ignore'):
        significant = (adj_p <= p_value) & (np.abs(log2_fc) >= lfc)
    decision = np.full(adj_p.shape, "ns", dtype=object)
    decision[significant & (log2_fc > 0)] = "up"
    decision[significant & (log2_fc < 0)] = "down"
    return decision


@dataclass(frozen=True)
class ContrastTable:
    """Results of one contrast, rows in feature order."""

    contrast: Contrast
    table: pd.DataFrame

    @property
    def n_up(self) -> int:
        return int((self.table['decision'] == 'up').sum())

    @property
    def n_down(self) -> int:
        return int((self.table['decision'] == 'down').sum())


@dataclass
class DifferentialResult:
    """Complete differential expression results.

    Attributes:
        tables: Per-contrast results, in request order
        failed: Contrast name -> reason, for contrasts that could not be computed
        prior_df: Empirical Bayes prior degrees of freedom
        prior_var: Empirical Bayes prior variance
        fdr_method: Multiple-testing method
        p_value: Adjusted p-value threshold for decisions
        lfc: Minimum absolute log2 fold change for decisions
    """

    tables: list[ContrastTable]
    failed: dict[str, str] = field(default_factory=dict)
    prior_df: float = np.inf
    prior_var: float = np.nan
    fdr_method: str = "BH"
    p_value: float = 0.05
    lfc: float = 0.0

    @property
    def contrasts_tested(self) -> list[str]:
        return [t.contrast.name for t in self.tables]

    def to_dataframe(self) -> pd.DataFrame:
        """One row per (feature, contrast) with the stable output columns."""
        if not self.tables:
            return pd.DataFrame(columns=RESULT_COLUMNS)
        df = pd.concat([t.table for t in self.tables], ignore_index=True)
        return df[RESULT_COLUMNS]

    def summary(self) -> pd.DataFrame:
        """Counts of up/down/ns calls per contrast."""
        rows = [
            {
                'contrast': t.contrast.name,
                'up': t.n_up,
                'down': t.n_down,
                'ns': len(t.table) - t.n_up - t.n_down,
            }
            for t in self.tables
        ]
        return pd.DataFrame(rows, columns=['contrast', 'up', 'down', 'ns'])


def run_differential_expression(
    matrix: ExpressionMatrix,
    design: GroupDesign,
    contrasts: Iterable[str | Contrast],
    annotation: Optional[ProbeAnnotation] = None,
    p_value: float = 0.05,
    lfc: float = 0.0,
    fdr_method: Literal["BH", "BY", "bonferroni"] = "BH",
    n_jobs: int = 1,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> DifferentialResult:
    """
    Fit, moderate, correct and classify every (feature, contrast).

    Contrasts are resolved against the design before any fitting, so an
    unknown group fails immediately. A contrast the design cannot estimate is
    recorded in ``failed`` and the remaining contrasts are still computed.

    Args:
        matrix: Cleaned log2 expression matrix; columns in design row order
        design: Group-means design
        contrasts: Contrast strings or Contrast objects
        annotation: Probe -> gene mapping for the gene columns (unmapped
            marker when None)
        p_value: Adjusted p-value threshold for decisions
        lfc: Minimum absolute log2 fold change for decisions
        fdr_method: "BH", "BY" or "bonferroni"
        n_jobs: Worker threads for the per-feature fit
        batch_size: Features per fit batch

    Raises:
        UnknownGroupError: A contrast references a group not in the design
        SchemaMismatchError: Matrix samples do not match design rows
    """
    resolved = design.resolve(contrasts)
    if not resolved:
        raise ValueError("At least one contrast is required")

    if not matrix.sample_ids.equals(design.sample_ids):
        raise SchemaMismatchError(
            "Expression matrix columns must match design rows in the same order",
            stage='differential_expression',
        )

    estimable: list[Contrast] = []
    failed: dict[str, str] = {}
    for contrast in resolved:
        try:
            design.check_estimable(contrast)
        except RankDeficientDesignError as e:
            logger.error(f"Skipping contrast {contrast.name!r}: {e}")
            failed[contrast.name] = str(e)
            continue
        estimable.append(contrast)

    if not estimable:
        return DifferentialResult(tables=[], failed=failed, fdr_method=fdr_method,
                                  p_value=p_value, lfc=lfc)

    fit = lm_fit(matrix.data, design, feature_ids=matrix.feature_ids,
                 n_jobs=n_jobs, batch_size=batch_size)
    cfit = contrasts_fit(fit, design.contrast_matrix(estimable))
    moderated = ebayes(cfit)

    if annotation is not None:
        genes = annotation.to_frame().reindex(matrix.feature_ids).fillna(UNMAPPED)
        symbols = genes['gene_symbol'].to_numpy()
        gene_ids = genes['gene_id'].to_numpy()
    else:
        symbols = np.full(matrix.n_features, UNMAPPED, dtype=object)
        gene_ids = symbols

    se = moderated.se
    tables = []
    for k, contrast in enumerate(estimable):
        log2_fc = cfit.coefficients[:, k]
        adj = fdr_correction(moderated.p_value[:, k], method=fdr_method)
        table = pd.DataFrame({
            'probe_id': matrix.feature_ids.to_numpy(),
            'gene_symbol': symbols,
            'gene_id': gene_ids,
            'contrast': contrast.name,
            'log2_fc': log2_fc,
            'ave_expr': cfit.ave_expr,
            't': moderated.t[:, k],
            'p_value': moderated.p_value[:, k],
            'adj_p_value': adj,
            'decision': decide_tests(adj, log2_fc, p_value=p_value, lfc=lfc),
            'se': se[:, k],
            'df': moderated.df_total,
        })
        result = ContrastTable(contrast=contrast, table=table)
        logger.info(
            f"Contrast {contrast.name!r}: {result.n_up} up, {result.n_down} down "
            f"(adj.P <= {p_value}, |log2FC| >= {lfc})"
        )
        tables.append(result)

    return DifferentialResult(
        tables=tables,
        failed=failed,
        prior_df=moderated.prior_df,
        prior_var=moderated.prior_var,
        fdr_method=fdr_method,
        p_value=p_value,
        lfc=lfc,
    )
