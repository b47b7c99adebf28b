"""
arrayde - Microarray normalization-to-inference pipeline

Raw microarray intensities (single-channel, two-channel or bead arrays) are
background corrected, normalized, cleaned, assigned to experimental groups,
annotated with genes and tested for differential expression with
empirical-Bayes moderated linear models.
"""

__version__ = "0.1.0"

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.core.transform import Transform
from arrayde.core.quality import QualityFlag
from arrayde.exceptions import ArrayDEError

__all__ = [
    "ExpressionMatrix",
    "Transform",
    "QualityFlag",
    "ArrayDEError",
]
