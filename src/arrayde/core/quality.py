"""
Quality flag system for tracking per-value signal provenance.

Every value in an expression matrix carries a bitmask recording what the
pipeline did to it. This answers reviewer questions such as "how many
intensities were floored by background correction?" without keeping the
intermediate matrices around.

Biological Context:
    Microarray signal passes through several lossy steps:
    - Raw scans can contain missing spots (flagged or saturated features)
    - Background correction can push weak spots to the noise floor
    - Normalization rescales every value
    - Some submitters report log10 values that are converted to log2

Engineering Design:
    IntFlag enables efficient bitwise operations:
    - Multiple flags per value: BACKGROUND_CORRECTED | LOW_SIGNAL
    - Fast bitwise checks: flags & QualityFlag.LOW_SIGNAL
    - Memory efficient: single int per value

Examples:
    >>> import numpy as np
    >>> from arrayde.core.quality import QualityFlag
    >>>
    >>> flags = np.array([0, 2, 18, 4], dtype=int)
    >>> n_floored = np.sum(flags & QualityFlag.LOW_SIGNAL != 0)
"""

from __future__ import annotations

from enum import IntFlag

__all__ = ['QualityFlag']


class QualityFlag(IntFlag):
    """
    Bitwise flags for per-value quality tracking in expression matrices.

    Attributes:
        ORIGINAL: Untouched value as delivered by the raw source (0)
        MISSING_ORIGINAL: Missing (NaN) in the raw data (1)
        BACKGROUND_CORRECTED: Background correction was applied (2)
        NORMALIZED: Between/within-array normalization was applied (4)
        LOW_SIGNAL: Value was floored at the background-correction offset (8)
        LOG10_CONVERTED: Value was reported on log10 and converted to log2 (16)
    """

    ORIGINAL = 0
    """Untouched original value."""

    MISSING_ORIGINAL = 1
    """
    Missing in the raw data. Rows containing such values are dropped by the
    cleaner (no imputation).
    """

    BACKGROUND_CORRECTED = 2
    """Additive background removed (normexp or offset correction)."""

    NORMALIZED = 4
    """Quantile, loess or scale normalization applied."""

    LOW_SIGNAL = 8
    """
    Corrected signal fell to the positive floor. These spots carry little
    information beyond "not detected above background".
    """

    LOG10_CONVERTED = 16
    """Submitted on log10 scale, converted with log10(x) / log10(2)."""
