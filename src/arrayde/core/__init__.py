"""
Core data structures shared by every pipeline stage.

1. ExpressionMatrix: intensity matrix with sample metadata and quality tracking
2. QualityFlag: bitwise flags for per-value provenance
3. Transform: abstract base class for immutable matrix transformations
"""

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.core.quality import QualityFlag
from arrayde.core.transform import Transform, apply_all

__all__ = [
    'ExpressionMatrix',
    'QualityFlag',
    'Transform',
    'apply_all',
]
