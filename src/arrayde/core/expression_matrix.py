"""
Core data structure for microarray expression matrices.

ExpressionMatrix unifies numerical data (intensities) with sample metadata and
per-value quality provenance (which values were floored by background
correction, which were converted from log10, etc.).

Layout:
    Every platform adapter converges on the same representation:
    - Rows = features (probes, probe sets, bead types)
    - Columns = samples (single-channel arrays) or arrays (two-channel log ratios)
    - Values = intensities, linear before correction and log2 afterwards

    Column order is fixed when the matrix is created and every stage keeps it;
    the design matrix is later built in the same sample order.

Conventions:
    - Immutable by convention: operations return new instances
    - NumPy arrays for data, pandas for identifiers and metadata
    - Constructor checks shape consistency and raises SchemaMismatchError

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from arrayde.core.expression_matrix import ExpressionMatrix
    >>>
    >>> matrix = ExpressionMatrix.from_array(
    ...     np.array([[7.1, 7.3], [9.8, 11.2]]),
    ...     feature_ids=["1007_s_at", "1053_at"],
    ...     sample_ids=["GSM1", "GSM2"],
    ... )
    >>> matrix.select_features(np.array([False, True])).feature_ids
    Index(['1053_at'], dtype='object')
"""

from __future__ import annotations

from typing import Iterable, Optional
import numpy as np
import pandas as pd

from arrayde.core.quality import QualityFlag
from arrayde.exceptions import SchemaMismatchError

__all__ = ['ExpressionMatrix']


class ExpressionMatrix:
    """
    Immutable container for expression matrix + sample metadata + quality flags.

    Attributes:
        data: Numerical matrix (features × samples), float64
        feature_ids: Row identifiers (probe identifiers)
        sample_ids: Column identifiers (sample or array identifiers)
        sample_metadata: Per-sample annotations, indexed by sample_ids
        quality_flags: Per-value QualityFlag bitmask (same shape as data)
        history: Processing steps applied so far, as (name, params) pairs

    Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - quality_flags.shape == data.shape
        - sample_metadata.index equals sample_ids
        - sample_ids are unique
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: pd.DataFrame,
        quality_flags: np.ndarray,
        history: tuple = (),
    ):
        """
        Initialize ExpressionMatrix with validation.

        Raises:
            TypeError: If argument types are wrong
            SchemaMismatchError: If shapes or indices are inconsistent
        """
        for arg_name, value, expected in (
            ('data', data, np.ndarray),
            ('feature_ids', feature_ids, pd.Index),
            ('sample_ids', sample_ids, pd.Index),
            ('sample_metadata', sample_metadata, pd.DataFrame),
            ('quality_flags', quality_flags, np.ndarray),
        ):
            if not isinstance(value, expected):
                raise TypeError(f"{arg_name} must be {expected.__name__}, got {type(value).__name__}")

        if data.ndim != 2:
            raise SchemaMismatchError(f"Expression values must be a 2D array, got shape {data.shape}")

        n_rows, n_cols = data.shape
        if len(feature_ids) != n_rows:
            raise SchemaMismatchError(f"{len(feature_ids)} feature ids for {n_rows} rows")
        if len(sample_ids) != n_cols:
            raise SchemaMismatchError(f"{len(sample_ids)} sample ids for {n_cols} columns")
        if quality_flags.shape != data.shape:
            raise SchemaMismatchError(
                f"Quality flags {quality_flags.shape} do not cover values {data.shape}"
            )
        if sample_ids.has_duplicates:
            raise SchemaMismatchError(
                "Duplicate sample identifier", identifier=str(sample_ids[sample_ids.duplicated()][0])
            )
        if not sample_metadata.index.equals(sample_ids):
            raise SchemaMismatchError(
                f"Sample metadata rows ({len(sample_metadata.index)}) are not aligned "
                f"with the {len(sample_ids)} matrix columns"
            )

        self._data = data
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._quality_flags = quality_flags
        self._history = tuple(history)

    @classmethod
    def from_array(
        cls,
        data: np.ndarray,
        feature_ids: Iterable[str],
        sample_ids: Iterable[str],
        sample_metadata: Optional[pd.DataFrame] = None,
    ) -> ExpressionMatrix:
        """
        Build a matrix from raw values, flagging NaN cells as MISSING_ORIGINAL.

        Args:
            data: 2D array-like of values (features × samples)
            feature_ids: Row identifiers
            sample_ids: Column identifiers
            sample_metadata: Optional metadata; reindexed to sample_ids when given
        """
        values = np.asarray(data, dtype=np.float64)
        sample_index = pd.Index([str(s) for s in sample_ids])
        if sample_metadata is None:
            metadata = pd.DataFrame(index=sample_index)
        else:
            metadata = sample_metadata.copy()
            metadata.index = metadata.index.astype(str)
            missing = sample_index.difference(metadata.index)
            if len(missing) > 0:
                raise SchemaMismatchError(
                    f"{len(missing)} samples have no metadata row",
                    identifier=str(missing[0]),
                )
            metadata = metadata.loc[sample_index]

        flags = np.full(values.shape, QualityFlag.ORIGINAL, dtype=int)
        flags[np.isnan(values)] |= QualityFlag.MISSING_ORIGINAL

        return cls(
            data=values,
            feature_ids=pd.Index([str(f) for f in feature_ids]),
            sample_ids=sample_index,
            sample_metadata=metadata,
            quality_flags=flags,
        )

    @property
    def data(self) -> np.ndarray:
        """Expression matrix (features × samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        """Row identifiers."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers."""
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Per-sample annotations."""
        return self._sample_metadata

    @property
    def quality_flags(self) -> np.ndarray:
        """Quality tracking matrix (same shape as data)."""
        return self._quality_flags

    @property
    def history(self) -> tuple:
        """(step name, params) records of the transforms applied so far."""
        return self._history

    def last_step(self, name: str) -> Optional[dict]:
        """Params of the most recent step called ``name``, or None."""
        for step, params in reversed(self._history):
            if step == name:
                return params
        return None

    def _replace(self, **changes) -> ExpressionMatrix:
        fields = {
            'data': self._data,
            'feature_ids': self._feature_ids,
            'sample_ids': self._sample_ids,
            'sample_metadata': self._sample_metadata,
            'quality_flags': self._quality_flags,
            'history': self._history,
        }
        fields.update(changes)
        return ExpressionMatrix(**fields)

    def with_step(self, name: str, params: dict) -> ExpressionMatrix:
        """Same matrix with one more history record."""
        return self._replace(history=self._history + ((name, dict(params)),))

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @staticmethod
    def _as_mask(mask: np.ndarray | pd.Series, size: int, axis: str) -> np.ndarray:
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != size:
            raise ValueError(f"{axis} mask has {len(mask)} entries for {size} {axis}s")
        return mask

    def select_samples(self, mask: np.ndarray | pd.Series) -> ExpressionMatrix:
        """
        Keep the samples (columns) where ``mask`` is True, in their current order.

        A Series mask is used positionally; its index is ignored.
        """
        mask = self._as_mask(mask, self.n_samples, 'sample')
        kept = self._sample_ids[mask]
        return self._replace(
            data=self._data[:, mask],
            sample_ids=kept,
            sample_metadata=self._sample_metadata.loc[kept],
            quality_flags=self._quality_flags[:, mask],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> ExpressionMatrix:
        """Keep the features (rows) where ``mask`` is True, in their current order."""
        mask = self._as_mask(mask, self.n_features, 'feature')
        return self._replace(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            quality_flags=self._quality_flags[mask, :],
        )

    def with_data(self, data: np.ndarray, add_flags: int | np.ndarray = 0) -> ExpressionMatrix:
        """
        New matrix with replaced values and the same identifiers.

        Args:
            data: Replacement values, same shape as this matrix
            add_flags: QualityFlag bits OR-ed into every cell (int) or
                per-cell (array of the same shape)
        """
        data = np.asarray(data, dtype=np.float64)
        if data.shape != self.shape:
            raise SchemaMismatchError(
                f"Replacement values {data.shape} do not match matrix {self.shape}"
            )
        return self._replace(data=data, quality_flags=self._quality_flags | add_flags)

    def with_metadata(self, sample_metadata: pd.DataFrame) -> ExpressionMatrix:
        """New matrix sharing data with a replacement metadata table."""
        return self._replace(sample_metadata=sample_metadata)

    def copy(self) -> ExpressionMatrix:
        """Deep copy of values, identifiers, metadata and flags."""
        return self._replace(
            data=self._data.copy(),
            feature_ids=self._feature_ids.copy(),
            sample_ids=self._sample_ids.copy(),
            sample_metadata=self._sample_metadata.copy(),
            quality_flags=self._quality_flags.copy(),
        )

    def to_frame(self) -> pd.DataFrame:
        """Values as a DataFrame (features × samples)."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def __repr__(self) -> str:
        header = f"ExpressionMatrix({self.n_features} features × {self.n_samples} samples"
        if self.n_features == 0 or self.n_samples == 0:
            return header + ")"
        steps = ", ".join(name for name, _ in self._history) or "raw"
        return (
            f"{header}; {steps})\n"
            f"  probes {self.feature_ids[0]} .. {self.feature_ids[-1]}\n"
            f"  samples {self.sample_ids[0]} .. {self.sample_ids[-1]}"
        )
