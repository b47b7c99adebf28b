"""
Platform adapters: raw scanner output -> canonical intensity containers.

Each platform family stores signal differently:

- Single-channel intensity arrays (e.g. Affymetrix-style probe-set summaries):
  one intensity per probe per sample
- Two-channel arrays (e.g. GenePix/Agilent two-color): red and green
  foreground (+ optional background) per spot, plus a targets table saying
  which channel holds the reference sample on each array
- Bead arrays (e.g. Illumina probe summaries): intensity per bead type, with
  negative-control bead types delivered in separate control files

Adapters converge on two containers. ``RawIntensities`` holds a
features × samples ExpressionMatrix (plus the negative-control block for
bead arrays). ``TwoChannelRaw`` keeps both channels so the signal corrector
can form log ratios after background correction.

Examples:
    >>> from arrayde.io.adapters import get_adapter
    >>>
    >>> adapter = get_adapter("bead")
    >>> raw = adapter.read(sorted(Path("GSE1234_raw").glob("*.txt")))
    >>> raw.matrix.shape, raw.controls.shape
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.exceptions import IngestError, SchemaMismatchError
from arrayde.io.loaders import (
    SampleRecord,
    combine_sample_tables,
    read_intensity_table,
    read_sample_file,
    sample_id_from_path,
)

logger = logging.getLogger(__name__)

__all__ = [
    'Platform',
    'SignalScale',
    'RawIntensities',
    'TwoChannelRaw',
    'RawIntensityAdapter',
    'SingleChannelAdapter',
    'TwoChannelAdapter',
    'BeadArrayAdapter',
    'classify_bead_files',
    'check_sample_alignment',
    'get_adapter',
]


class Platform(Enum):
    """Microarray platform families."""

    SINGLE_CHANNEL = "single"
    TWO_CHANNEL = "two-channel"
    BEAD = "bead"

    @classmethod
    def parse(cls, value: str | Platform) -> Platform:
        if isinstance(value, Platform):
            return value
        normalized = str(value).strip().lower().replace('_', '-')
        aliases = {
            'single-channel': cls.SINGLE_CHANNEL,
            'one-channel': cls.SINGLE_CHANNEL,
            'affymetrix': cls.SINGLE_CHANNEL,
            'two-color': cls.TWO_CHANNEL,
            'two-colour': cls.TWO_CHANNEL,
            'agilent': cls.TWO_CHANNEL,
            'illumina': cls.BEAD,
            'bead-array': cls.BEAD,
        }
        if normalized in aliases:
            return aliases[normalized]
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(
            f"Unknown platform {value!r}. Choose from: {', '.join(m.value for m in cls)}"
        )


class SignalScale(Enum):
    """Scale on which a raw source reports intensities."""

    LINEAR = "linear"
    LOG2 = "log2"
    LOG10 = "log10"


@dataclass(frozen=True)
class RawIntensities:
    """Single-channel or bead-array raw signal.

    Attributes:
        matrix: Probe × sample intensities (NaN = missing spot)
        controls: Negative-control probe × sample intensities, same samples
            in the same order (bead arrays); None when the platform has none
        scale: Scale of ``matrix`` values
        platform: Platform family the data came from
    """

    matrix: ExpressionMatrix
    controls: Optional[ExpressionMatrix] = None
    scale: SignalScale = SignalScale.LINEAR
    platform: Platform = Platform.SINGLE_CHANNEL

    def __post_init__(self):
        if self.controls is not None and not self.controls.sample_ids.equals(self.matrix.sample_ids):
            raise SchemaMismatchError(
                "Control probes and target probes must cover the same samples in the same order",
                stage='ingest',
            )

    @property
    def probe_ids(self) -> pd.Index:
        return self.matrix.feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self.matrix.sample_ids


@dataclass(frozen=True)
class TwoChannelRaw:
    """Two-channel raw signal with the targets table.

    Cy3 is the green channel and Cy5 the red channel. For each array the
    targets table names the sample hybridized in each channel; the channel
    whose entry equals ``reference`` is the reference, the other the test.

    Attributes:
        red: Red (Cy5) foreground, probes × arrays
        green: Green (Cy3) foreground, probes × arrays
        red_background: Red background or None
        green_background: Green background or None
        probe_ids: Spot/probe identifiers
        array_ids: Array identifiers (one per hybridization)
        targets: DataFrame indexed by array_ids with ``Cy3`` and ``Cy5`` columns
        reference: Label of the common reference sample
    """

    red: np.ndarray
    green: np.ndarray
    red_background: Optional[np.ndarray]
    green_background: Optional[np.ndarray]
    probe_ids: pd.Index
    array_ids: pd.Index
    targets: pd.DataFrame
    reference: str

    def __post_init__(self):
        expected = (len(self.probe_ids), len(self.array_ids))
        for name in ('red', 'green', 'red_background', 'green_background'):
            arr = getattr(self, name)
            if arr is not None and arr.shape != expected:
                raise SchemaMismatchError(
                    f"{name} channel shape {arr.shape} must be {expected}", stage='ingest'
                )
        if len(self.targets) != len(self.array_ids):
            raise SchemaMismatchError(
                f"Targets table has {len(self.targets)} rows for {len(self.array_ids)} arrays",
                stage='ingest',
            )
        missing = [a for a in self.array_ids if a not in self.targets.index]
        if missing:
            raise SchemaMismatchError(
                "Array has no row in targets table", stage='ingest', identifier=str(missing[0])
            )
        for col in ('Cy3', 'Cy5'):
            if col not in self.targets.columns:
                raise SchemaMismatchError(f"Targets table must have a {col!r} column", stage='ingest')
        self._reference_mask()

    @property
    def reference_is_green(self) -> np.ndarray:
        """Boolean per array: True when Cy3 (green) holds the reference."""
        return self._reference_mask()

    def _reference_mask(self) -> np.ndarray:
        targets = self.targets.loc[self.array_ids]
        cy3_ref = (targets['Cy3'].astype(str) == self.reference).values
        cy5_ref = (targets['Cy5'].astype(str) == self.reference).values
        bad = ~(cy3_ref ^ cy5_ref)
        if bad.any():
            array_id = self.array_ids[np.argmax(bad)]
            raise SchemaMismatchError(
                f"Exactly one channel must hold reference {self.reference!r}",
                stage='ingest',
                identifier=str(array_id),
            )
        return cy3_ref

    def test_labels(self) -> pd.Series:
        """Label of the test (non-reference) sample on each array."""
        targets = self.targets.loc[self.array_ids]
        labels = np.where(self.reference_is_green, targets['Cy5'].astype(str), targets['Cy3'].astype(str))
        return pd.Series(labels, index=self.array_ids, name='test_sample')

    def channels(self) -> tuple[np.ndarray, np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
        """(test, reference, test_background, reference_background), per array."""
        ref_green = self.reference_is_green[None, :]
        test = np.where(ref_green, self.red, self.green)
        ref = np.where(ref_green, self.green, self.red)
        if self.red_background is None or self.green_background is None:
            return test, ref, None, None
        test_bg = np.where(ref_green, self.red_background, self.green_background)
        ref_bg = np.where(ref_green, self.green_background, self.red_background)
        return test, ref, test_bg, ref_bg


def check_sample_alignment(sample_ids: pd.Index, metadata: pd.DataFrame, study: Optional[str] = None) -> None:
    """
    Verify that intensity samples and metadata rows describe the same samples.

    Raises:
        SchemaMismatchError: Different counts, or an intensity sample with no
            metadata row
    """
    if len(sample_ids) != len(metadata):
        raise SchemaMismatchError(
            f"Intensity data has {len(sample_ids)} samples but metadata has {len(metadata)} rows",
            study=study,
            stage='ingest',
        )
    meta_index = metadata.index.astype(str)
    missing = [s for s in sample_ids if s not in meta_index]
    if missing:
        raise SchemaMismatchError(
            f"{len(missing)} intensity samples have no metadata row",
            study=study,
            stage='ingest',
            identifier=str(missing[0]),
        )


class RawIntensityAdapter(ABC):
    """Reads one platform family's raw files into a canonical container."""

    platform: Platform

    @abstractmethod
    def read(self, paths: Sequence[Path], **kwargs):
        """Read raw per-sample (or per-array) files."""
        pass

    def _read_records(self, paths: Sequence[Path], value_column, probe_column) -> list[SampleRecord]:
        if len(paths) == 0:
            raise IngestError("No raw files supplied", stage='ingest')
        records = []
        for path in paths:
            try:
                records.append(read_sample_file(path, value_column, probe_column=probe_column))
            except IngestError as e:
                e.with_context(stage='ingest')
                raise
        return records


class SingleChannelAdapter(RawIntensityAdapter):
    """
    Single-channel intensity arrays.

    Per-sample files are folded into one matrix; a combined table can be
    given instead through ``from_table``.

    Args:
        value_column: Intensity column in per-sample files
        probe_column: Probe column (default: first column)
        scale: Scale of reported values
    """

    platform = Platform.SINGLE_CHANNEL

    def __init__(
        self,
        value_column: str = "VALUE",
        probe_column: Optional[str] = None,
        scale: SignalScale | str = SignalScale.LINEAR,
    ):
        self.value_column = value_column
        self.probe_column = probe_column
        self.scale = SignalScale(scale)

    def read(self, paths: Sequence[Path], **kwargs) -> RawIntensities:
        paths = [Path(p) for p in paths]
        if len(paths) == 1 and kwargs.get('combined', False):
            return self.from_table(read_intensity_table(paths[0], probe_column=self.probe_column))
        table = combine_sample_tables(self._read_records(paths, self.value_column, self.probe_column))
        return self.from_table(table)

    def from_table(self, table: pd.DataFrame) -> RawIntensities:
        """Wrap an in-memory probes × samples table."""
        if table.shape[1] == 0 or table.shape[0] == 0:
            raise IngestError("Intensity table is empty", stage='ingest')
        matrix = ExpressionMatrix.from_array(table.values, table.index, table.columns)
        logger.info(f"Single-channel raw data: {matrix.n_features} probes × {matrix.n_samples} samples")
        return RawIntensities(matrix=matrix, scale=self.scale, platform=self.platform)


def classify_bead_files(
    paths: Sequence[Path],
    control_pattern: str = r"control",
) -> tuple[list[Path], list[Path]]:
    """
    Split bead-array files into target (measured) and control files.

    A file is a control file when ``control_pattern`` (regex, case-insensitive)
    matches its name. Order within each group is preserved.

    Raises:
        IngestError: If either group is empty
    """
    pattern = re.compile(control_pattern, re.IGNORECASE)
    targets, controls = [], []
    for path in paths:
        path = Path(path)
        (controls if pattern.search(path.name) else targets).append(path)

    if not targets:
        raise IngestError("No bead-array target files found", stage='ingest')
    if not controls:
        raise IngestError(
            f"No bead-array control files matched pattern {control_pattern!r}; "
            "negative controls are required for background correction",
            stage='ingest',
        )
    return targets, controls


class BeadArrayAdapter(RawIntensityAdapter):
    """
    Bead arrays with separate negative-control files.

    Control files are paired with target files by sample identifier after
    stripping the control marker from the file name
    (``S1_control.txt`` -> ``S1``).

    Args:
        value_column: Probe-summary intensity column
        probe_column: Probe column (default: first column)
        control_pattern: Regex identifying control files
        scale: Scale of reported values
    """

    platform = Platform.BEAD

    def __init__(
        self,
        value_column: str = "AVG_Signal",
        probe_column: Optional[str] = None,
        control_pattern: str = r"control",
        scale: SignalScale | str = SignalScale.LINEAR,
    ):
        self.value_column = value_column
        self.probe_column = probe_column
        self.control_pattern = control_pattern
        self.scale = SignalScale(scale)

    def _control_sample_id(self, path: Path) -> str:
        stem = sample_id_from_path(path)
        stem = re.sub(self.control_pattern, '', stem, flags=re.IGNORECASE)
        return stem.strip('_-. ') or stem

    def read(self, paths: Sequence[Path], **kwargs) -> RawIntensities:
        target_paths, control_paths = classify_bead_files(paths, self.control_pattern)
        target_records = self._read_records(target_paths, self.value_column, self.probe_column)
        control_records = [
            SampleRecord(self._control_sample_id(r.source), r.values, r.source)
            for r in self._read_records(control_paths, self.value_column, self.probe_column)
        ]
        return self.from_tables(
            combine_sample_tables(target_records),
            combine_sample_tables(control_records),
        )

    def from_tables(self, targets: pd.DataFrame, controls: pd.DataFrame) -> RawIntensities:
        """
        Wrap in-memory target and control tables.

        Raises:
            SchemaMismatchError: Target and control tables cover different samples
        """
        if len(targets.columns) != len(controls.columns):
            raise SchemaMismatchError(
                f"{len(targets.columns)} target samples but {len(controls.columns)} control samples",
                stage='ingest',
            )
        missing = [c for c in targets.columns if c not in controls.columns]
        if missing:
            raise SchemaMismatchError(
                "Target sample has no negative-control data", stage='ingest', identifier=str(missing[0])
            )
        if controls.shape[0] == 0:
            raise IngestError("Control table has no probes", stage='ingest')

        controls = controls[list(targets.columns)]
        matrix = ExpressionMatrix.from_array(targets.values, targets.index, targets.columns)
        control_matrix = ExpressionMatrix.from_array(controls.values, controls.index, controls.columns)
        logger.info(
            f"Bead-array raw data: {matrix.n_features} probes + {control_matrix.n_features} "
            f"negative controls × {matrix.n_samples} samples"
        )
        return RawIntensities(
            matrix=matrix,
            controls=control_matrix,
            scale=self.scale,
            platform=self.platform,
        )


class TwoChannelAdapter(RawIntensityAdapter):
    """
    Two-channel arrays: one file per array with red/green columns.

    Args:
        red_column / green_column: Foreground columns
        red_background_column / green_background_column: Background columns
            (set to None when the scanner output has none)
        probe_column: Probe column (default: first column)
        reference: Label of the reference sample in the targets table
    """

    platform = Platform.TWO_CHANNEL

    def __init__(
        self,
        red_column: str = "R",
        green_column: str = "G",
        red_background_column: Optional[str] = "Rb",
        green_background_column: Optional[str] = "Gb",
        probe_column: Optional[str] = None,
        reference: str = "Ref",
    ):
        self.red_column = red_column
        self.green_column = green_column
        self.red_background_column = red_background_column
        self.green_background_column = green_background_column
        self.probe_column = probe_column
        self.reference = reference

    @property
    def _columns(self) -> list[str]:
        columns = [self.red_column, self.green_column]
        if self.red_background_column and self.green_background_column:
            columns += [self.red_background_column, self.green_background_column]
        return columns

    def read(self, paths: Sequence[Path], targets: Optional[pd.DataFrame] = None, **kwargs) -> TwoChannelRaw:
        """
        Read one file per array.

        Args:
            paths: Per-array files; array ids derive from file names
            targets: Targets table indexed by array id with Cy3/Cy5 columns

        Raises:
            SchemaMismatchError: Targets table does not match the arrays read
        """
        if targets is None:
            raise IngestError("Two-channel arrays require a targets table", stage='ingest')
        records = self._read_records([Path(p) for p in paths], self._columns, self.probe_column)
        table = combine_sample_tables(records)
        array_ids = [r.sample_id for r in records]

        def block(column: Optional[str]) -> Optional[np.ndarray]:
            if column is None:
                return None
            return table[[f"{a}:{column}" for a in array_ids]].values

        has_bg = self.red_background_column is not None and self.green_background_column is not None
        return self.from_arrays(
            red=block(self.red_column),
            green=block(self.green_column),
            red_background=block(self.red_background_column) if has_bg else None,
            green_background=block(self.green_background_column) if has_bg else None,
            probe_ids=table.index,
            array_ids=array_ids,
            targets=targets,
        )

    def from_arrays(
        self,
        red: np.ndarray,
        green: np.ndarray,
        probe_ids: Sequence[str],
        array_ids: Sequence[str],
        targets: pd.DataFrame,
        red_background: Optional[np.ndarray] = None,
        green_background: Optional[np.ndarray] = None,
    ) -> TwoChannelRaw:
        """Wrap in-memory channel arrays."""
        targets = targets.copy()
        targets.index = targets.index.astype(str)
        array_index = pd.Index([str(a) for a in array_ids])
        if len(targets) != len(array_index):
            raise SchemaMismatchError(
                f"Targets table has {len(targets)} rows for {len(array_index)} arrays",
                stage='ingest',
            )
        raw = TwoChannelRaw(
            red=np.asarray(red, dtype=np.float64),
            green=np.asarray(green, dtype=np.float64),
            red_background=None if red_background is None else np.asarray(red_background, dtype=np.float64),
            green_background=None if green_background is None else np.asarray(green_background, dtype=np.float64),
            probe_ids=pd.Index([str(p) for p in probe_ids]),
            array_ids=array_index,
            targets=targets,
            reference=self.reference,
        )
        logger.info(f"Two-channel raw data: {len(raw.probe_ids)} spots × {len(raw.array_ids)} arrays")
        return raw


def get_adapter(platform: Platform | str, **kwargs) -> RawIntensityAdapter:
    """Adapter for a platform family, configured with ``kwargs``."""
    platform = Platform.parse(platform)
    adapters = {
        Platform.SINGLE_CHANNEL: SingleChannelAdapter,
        Platform.TWO_CHANNEL: TwoChannelAdapter,
        Platform.BEAD: BeadArrayAdapter,
    }
    return adapters[platform](**kwargs)
