"""Row-level quality filtering."""

from arrayde.quality.filtering import MatrixCleaner, CleaningReport

__all__ = ['MatrixCleaner', 'CleaningReport']
