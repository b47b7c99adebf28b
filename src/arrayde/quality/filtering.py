"""
Row-level quality filtering for normalized expression matrices.

MatrixCleaner applies three row filters in a fixed order. Each step works
only on the rows the previous one kept:

1. Missing values: drop any row with a missing value in any sample (no
   imputation)
2. Duplicate identifiers: keep the first row for each feature identifier
3. Low expression: drop rows whose mean across samples is strictly below
   the first quartile of row means

Missing-value removal comes first so the quartile threshold is computed over
complete rows only. The threshold is recorded in the matrix history and
reused when a matrix is cleaned again, so cleaning a cleaned matrix drops
nothing.

Engineering Design:
    - Pure function (Transform): input matrix -> output matrix
    - Every count and the threshold are returned in a CleaningReport
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict

import numpy as np

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.core.transform import Transform
from arrayde.exceptions import DegenerateDataError

logger = logging.getLogger(__name__)

__all__ = ['MatrixCleaner', 'CleaningReport']


@dataclass(frozen=True)
class CleaningReport:
    """Counts from one cleaning pass."""
    n_input: int
    n_missing_dropped: int
    n_duplicates_dropped: int
    n_low_expression_dropped: int
    low_expression_threshold: float | None
    n_output: int

    @property
    def n_dropped(self) -> int:
        return self.n_input - self.n_output

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MatrixCleaner(Transform):
    """
    Remove incomplete, duplicated and low-expression rows.

    Params:
        filter_low_expression: Apply the low-expression step
        quantile: Quantile of row means used as the threshold (0.25 = first quartile)

    Examples:
        >>> cleaner = MatrixCleaner()
        >>> cleaned, report = cleaner.clean(matrix)
        >>> report.n_missing_dropped, report.low_expression_threshold
    """

    def __init__(self, filter_low_expression: bool = True, quantile: float = 0.25):
        if not 0.0 <= quantile <= 1.0:
            raise ValueError(f"quantile must be in [0, 1], got {quantile}")
        super().__init__(
            name="MatrixCleaner",
            params={
                "filter_low_expression": filter_low_expression,
                "quantile": quantile,
            },
        )
        self.filter_low_expression = filter_low_expression
        self.quantile = quantile

    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        cleaned, _ = self.clean(matrix)
        return cleaned

    def clean(self, matrix: ExpressionMatrix) -> tuple[ExpressionMatrix, CleaningReport]:
        """
        Run the three steps in order.

        Raises:
            DegenerateDataError: No rows remain for the low-expression
                threshold (the quartile of an empty set is undefined)
        """
        n_input = matrix.n_features

        # 1. Missing values
        complete = ~np.isnan(matrix.data).any(axis=1)
        n_missing = int(np.sum(~complete))
        matrix = matrix.select_features(complete)

        # 2. Duplicate identifiers (first occurrence wins)
        first = ~matrix.feature_ids.duplicated(keep='first')
        n_duplicates = int(np.sum(~first))
        matrix = matrix.select_features(first)

        # 3. Low expression
        threshold = None
        n_low = 0
        if self.filter_low_expression:
            if matrix.n_features == 0:
                raise DegenerateDataError(
                    "No complete rows remain; the low-expression threshold is undefined",
                    stage='cleaning',
                    details={'n_input': n_input, 'n_missing_dropped': n_missing},
                )
            row_means = matrix.data.mean(axis=1)
            previous = matrix.last_step(self.name)
            if (
                previous is not None
                and previous.get("low_expression_threshold") is not None
                and previous.get("quantile") == self.quantile
            ):
                threshold = previous["low_expression_threshold"]
            else:
                threshold = float(np.quantile(row_means, self.quantile))
            keep = row_means >= threshold
            n_low = int(np.sum(~keep))
            matrix = matrix.select_features(keep)

        matrix = matrix.with_step(self.name, {**self.params, "low_expression_threshold": threshold})

        report = CleaningReport(
            n_input=n_input,
            n_missing_dropped=n_missing,
            n_duplicates_dropped=n_duplicates,
            n_low_expression_dropped=n_low,
            low_expression_threshold=threshold,
            n_output=matrix.n_features,
        )
        logger.info(
            f"Cleaning: {n_input} rows -> {matrix.n_features} "
            f"(missing: {n_missing}, duplicates: {n_duplicates}, "
            f"low expression: {n_low}"
            + (f" below {threshold:.3f})" if threshold is not None else ")")
        )
        return matrix, report
