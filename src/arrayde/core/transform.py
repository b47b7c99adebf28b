"""
Transforms: named, parameterized steps from one ExpressionMatrix to another.

Background correction, log-scale conversion, normalization and cleaning are
all Transforms. A transform never mutates its input; it returns a new matrix
and records ``(name, params)`` in the matrix history, so the exact chain of
steps behind a result table can be reported.

Several studies run concurrently in one process, so transforms hold no
state beyond their parameters.

Examples:
    >>> import numpy as np
    >>> from arrayde.core.transform import Transform
    >>>
    >>> class Log2Transform(Transform):
    ...     def __init__(self):
    ...         super().__init__(name="Log2Transform", params={})
    ...
    ...     def apply(self, matrix):
    ...         return matrix.with_data(np.log2(matrix.data)).with_step(self.name, self.params)
    >>>
    >>> log_matrix = Log2Transform().apply(raw_matrix)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from arrayde.core.expression_matrix import ExpressionMatrix

__all__ = ['Transform', 'apply_all']


class Transform(ABC):
    """
    Base class for matrix transformations.

    Attributes:
        name: Step name recorded in the matrix history (e.g. "QuantileNormalization")
        params: Parameters of this step, recorded with the name
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params

    @abstractmethod
    def apply(self, matrix: ExpressionMatrix) -> ExpressionMatrix:
        """
        Return the transformed matrix; the input is left untouched.

        Raises:
            DegenerateDataError: The step has no defined result for this
                input (e.g. an empty matrix)
        """

    def validate(self, matrix: ExpressionMatrix) -> list[str]:
        """
        Precondition problems for ``matrix`` (empty list = ok).

        Subclasses extend the list returned by ``super().validate()``.
        """
        if matrix.data.size == 0:
            return ["Cannot process empty matrix"]
        return []

    def __repr__(self) -> str:
        """String like "QuantileNormalization(ties=average)"."""
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"


def apply_all(matrix: ExpressionMatrix, transforms: list[Transform]) -> ExpressionMatrix:
    """Apply transforms in order, returning the final matrix."""
    for transform in transforms:
        matrix = transform.apply(matrix)
    return matrix
