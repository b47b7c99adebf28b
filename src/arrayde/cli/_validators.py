"""argparse ``type=`` validators with readable bound errors.

``--p-value 2`` or ``--jobs 0`` fail at parse time (exit status 2) instead
of deep inside a stage.
"""

from __future__ import annotations

import argparse


def _positive_int(value: str) -> int:
    """argparse type for positive integers (> 0)."""
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _p_threshold(value: str) -> float:
    """argparse type for p-value thresholds in (0, 1]."""
    fvalue = float(value)
    if not (0 < fvalue <= 1):
        raise argparse.ArgumentTypeError(f"{value} is not a valid p-value threshold (must be in (0, 1])")
    return fvalue


def _fraction(value: str) -> float:
    """argparse type for quantiles and spans in [0, 1]."""
    fvalue = float(value)
    if not (0 <= fvalue <= 1):
        raise argparse.ArgumentTypeError(f"{value} must be in [0, 1]")
    return fvalue


def _non_negative_float(value: str) -> float:
    """argparse type for floats >= 0 (fold-change cutoffs, offsets)."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative number")
    return fvalue
