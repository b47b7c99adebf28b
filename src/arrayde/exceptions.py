"""
Exception hierarchy for the microarray differential-expression pipeline.

Every error carries a ``details`` dict with the context needed to act on it
without reading the code: the study accession, the pipeline stage, and the
offending identifier (file, sample, group, contrast). ``str(err)`` renders
those fields after the message.

Taxonomy:
    IngestError               unreadable or malformed raw input
    SchemaMismatchError       sample/identifier mismatch between tables
    UnassignedSampleError     a sample matched no group rule
    UnknownGroupError         a contrast references an undefined group
    RankDeficientDesignError  design cannot resolve a requested contrast
    DegenerateDataError       a cleaning/normalization step cannot complete
    PipelineStageError        wraps any failure of one study's stage
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    'ArrayDEError',
    'IngestError',
    'SchemaMismatchError',
    'UnassignedSampleError',
    'UnknownGroupError',
    'RankDeficientDesignError',
    'DegenerateDataError',
    'PipelineStageError',
]

_CONTEXT_KEYS = ('study', 'stage', 'identifier')


class ArrayDEError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        study: Optional[str] = None,
        stage: Optional[str] = None,
        identifier: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = dict(details or {})
        for key, value in zip(_CONTEXT_KEYS, (study, stage, identifier)):
            if value is not None:
                self.details[key] = value
        super().__init__(message)

    @property
    def study(self) -> Optional[str]:
        return self.details.get('study')

    @property
    def stage(self) -> Optional[str]:
        return self.details.get('stage')

    @property
    def identifier(self) -> Optional[str]:
        return self.details.get('identifier')

    def with_context(self, **context: Any) -> 'ArrayDEError':
        """Fill in context fields that are not already set; returns self."""
        for key, value in context.items():
            if value is not None and key not in self.details:
                self.details[key] = value
        return self

    def __str__(self) -> str:
        context = [
            f"{key}={self.details[key]!r}" for key in _CONTEXT_KEYS if key in self.details
        ]
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class IngestError(ArrayDEError):
    """Raw input is missing, unreadable, or malformed."""


class SchemaMismatchError(ArrayDEError, ValueError):
    """Sample counts or identifiers disagree between intensity data and metadata."""


class UnassignedSampleError(ArrayDEError):
    """A sample received no group label (no rule matched and no default)."""


class UnknownGroupError(ArrayDEError, ValueError):
    """A contrast references a group that is not a design-matrix column."""


class RankDeficientDesignError(ArrayDEError, ValueError):
    """The design matrix cannot support the requested contrast."""


class DegenerateDataError(ArrayDEError, ValueError):
    """A filtering or normalization step has no well-defined result."""


class PipelineStageError(ArrayDEError):
    """
    A stage of one study's pipeline failed.

    The original exception is chained as ``__cause__`` and also kept in
    ``details['cause']``.
    """

    def __init__(self, stage: str, cause: BaseException, study: Optional[str] = None):
        detail_text = str(cause) or type(cause).__name__
        super().__init__(
            f"stage '{stage}' failed: {type(cause).__name__}: {detail_text}",
            study=study,
            stage=stage,
            identifier=getattr(cause, 'identifier', None),
            details={'cause': cause},
        )
