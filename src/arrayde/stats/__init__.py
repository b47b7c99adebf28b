"""
Statistical core: signal correction, normalization, linear models and
empirical-Bayes moderated tests.
"""

from .background import (
    NormexpParameters,
    BackgroundResult,
    estimate_normexp_parameters,
    normexp_correction,
    offset_correction,
)
from .normalization import (
    NormalizationResult,
    log2_transform,
    log10_to_log2,
    quantile_normalization,
    loess_normalization,
    cyclic_scale_normalization,
)
from .ebayes import trigamma_inverse, fit_f_dist, squeeze_var
from .design_matrix import (
    Contrast,
    GroupDesign,
    parse_contrast,
    build_group_design,
)
from .differential import (
    RESULT_COLUMNS,
    LinearFit,
    ModeratedFit,
    ContrastTable,
    DifferentialResult,
    lm_fit,
    contrasts_fit,
    ebayes,
    fdr_correction,
    decide_tests,
    run_differential_expression,
)
from .correction import SignalCorrector, CorrectionReport, BackgroundMethod

__all__ = [
    "NormexpParameters",
    "BackgroundResult",
    "estimate_normexp_parameters",
    "normexp_correction",
    "offset_correction",
    "NormalizationResult",
    "log2_transform",
    "log10_to_log2",
    "quantile_normalization",
    "loess_normalization",
    "cyclic_scale_normalization",
    "trigamma_inverse",
    "fit_f_dist",
    "squeeze_var",
    "Contrast",
    "GroupDesign",
    "parse_contrast",
    "build_group_design",
    "RESULT_COLUMNS",
    "LinearFit",
    "ModeratedFit",
    "ContrastTable",
    "DifferentialResult",
    "lm_fit",
    "contrasts_fit",
    "ebayes",
    "fdr_correction",
    "decide_tests",
    "run_differential_expression",
    "SignalCorrector",
    "CorrectionReport",
    "BackgroundMethod",
]
