"""
Delimited-text loaders for raw intensity tables.

Vendor scanners and GEO supplementary archives deliver raw signal in one of
two shapes:

- One combined table: probe identifier column + one numeric column per sample
- One file per sample (or per array): probe identifier column + signal columns

Per-sample files are merged by an explicit ordered fold over parsed records
(``combine_sample_tables``). Each step returns a new table; probe order is
the order in which probes are first seen, so the merged table is a pure
function of the input file order.

Examples:
    >>> from pathlib import Path
    >>> from arrayde.io.loaders import read_sample_file, combine_sample_tables
    >>>
    >>> records = [read_sample_file(p, value_column="VALUE")
    ...            for p in sorted(Path("raw").glob("GSM*.txt"))]
    >>> table = combine_sample_tables(records)
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from functools import reduce
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from arrayde.exceptions import IngestError

logger = logging.getLogger(__name__)

__all__ = [
    'SampleRecord',
    'sniff_delimiter',
    'sample_id_from_path',
    'read_intensity_table',
    'read_sample_file',
    'combine_sample_tables',
]

_COMPRESSED_SUFFIXES = {'.gz', '.bz2', '.zip', '.xz'}
_TABLE_SUFFIXES = {'.txt', '.tsv', '.csv', '.tab'}
_MISSING_TOKENS = ['', 'na', 'nan', 'null', 'n/a']


@dataclass(frozen=True)
class SampleRecord:
    """One parsed per-sample file: signal values keyed by probe identifier.

    Attributes:
        sample_id: Sample (or array) identifier
        values: Table indexed by probe identifier; one column per signal
            (a single intensity column for single-channel files, several
            for two-channel files)
        source: File the record was read from
    """

    sample_id: str
    values: pd.DataFrame
    source: Optional[Path] = None


def sample_id_from_path(path: Path) -> str:
    """
    Derive a sample identifier from a file name.

    Strips compression and table suffixes: ``GSM123_sample.txt.gz`` becomes
    ``GSM123_sample``.
    """
    name = Path(path).name
    stem = Path(name)
    while stem.suffix.lower() in _COMPRESSED_SUFFIXES | _TABLE_SUFFIXES:
        stem = Path(stem.stem)
    return str(stem)


def sniff_delimiter(path: Path, sample_size: int = 8192) -> str:
    """
    Auto-detect delimiter from file content.

    Uses Python's csv.Sniffer with a first-line count fallback. Compressed
    files are assumed to be tab-delimited unless they carry ``.csv`` inside
    the name.

    Raises:
        IngestError: If the delimiter cannot be determined
    """
    path = Path(path)
    if path.suffix.lower() in _COMPRESSED_SUFFIXES:
        return ',' if '.csv' in path.name.lower() else '\t'

    try:
        with open(path, 'r', encoding='utf-8', errors='ignore') as f:
            sample = f.read(sample_size)
    except OSError as e:
        raise IngestError(f"Cannot read file: {e}", identifier=str(path)) from e

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters='\t,;|')
        return dialect.delimiter
    except csv.Error:
        pass

    first_line = sample.split('\n')[0]
    counts = {
        '\t': first_line.count('\t'),
        ',': first_line.count(','),
        ';': first_line.count(';'),
    }

    if max(counts.values()) == 0:
        raise IngestError(
            "Could not detect delimiter; expected tab, comma or semicolon separated values",
            identifier=str(path),
        )

    return max(counts, key=counts.get)


def _read_frame(path: Path, delimiter: Optional[str], comment: Optional[str]) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise IngestError("Raw file not found", identifier=str(path))
    if not path.is_file():
        raise IngestError("Path is not a file", identifier=str(path))

    sep = delimiter or sniff_delimiter(path)
    try:
        df = pd.read_csv(path, sep=sep, comment=comment, dtype=str)
    except pd.errors.EmptyDataError as e:
        raise IngestError("File is empty", identifier=str(path)) from e
    except (pd.errors.ParserError, UnicodeDecodeError, OSError) as e:
        raise IngestError(f"Failed to parse file: {e}", identifier=str(path)) from e

    if df.empty:
        raise IngestError("File contains no data rows", identifier=str(path))
    return df


def _to_numeric(frame: pd.DataFrame, path: Path) -> pd.DataFrame:
    """Coerce signal columns to float, reporting the first bad cell."""
    numeric = frame.apply(lambda c: pd.to_numeric(c.str.strip(), errors='coerce'))
    tokens = frame.fillna('').apply(lambda c: c.str.strip().str.lower())
    bad = numeric.isna() & ~tokens.isin(_MISSING_TOKENS)
    if bad.values.any():
        row, col = np.argwhere(bad.values)[0]
        raise IngestError(
            f"Non-numeric intensity {frame.iat[row, col]!r} in column {frame.columns[col]!r} "
            f"(probe {frame.index[row]!r})",
            identifier=str(path),
        )
    numeric = numeric.astype(np.float64)
    if np.isinf(numeric.values).any():
        raise IngestError("File contains infinite intensities", identifier=str(path))
    return numeric


def read_intensity_table(
    path: Path,
    probe_column: Optional[str] = None,
    value_columns: Optional[Sequence[str]] = None,
    delimiter: Optional[str] = None,
    comment: Optional[str] = '#',
) -> pd.DataFrame:
    """
    Read a combined intensity table (probes × samples).

    Args:
        path: Delimited text file (optionally compressed)
        probe_column: Column holding probe identifiers (default: first column)
        value_columns: Sample columns to keep (default: every other column)
        delimiter: Field separator (default: sniffed)
        comment: Comment prefix for scanner header lines

    Returns:
        DataFrame indexed by probe identifier (duplicates preserved, in file
        order), float64 values

    Raises:
        IngestError: Missing/unreadable file, missing columns, non-numeric data
    """
    path = Path(path)
    df = _read_frame(path, delimiter, comment)

    probe_column = probe_column or df.columns[0]
    if probe_column not in df.columns:
        raise IngestError(f"Probe column {probe_column!r} not found", identifier=str(path))

    if value_columns is None:
        value_columns = [c for c in df.columns if c != probe_column]
    else:
        missing = [c for c in value_columns if c not in df.columns]
        if missing:
            raise IngestError(f"Columns not found: {missing}", identifier=str(path))
    if len(value_columns) == 0:
        raise IngestError("File contains no sample columns", identifier=str(path))

    if df[probe_column].isna().any():
        raise IngestError("Probe column contains empty identifiers", identifier=str(path))

    table = df.set_index(probe_column)[list(value_columns)]
    table.index = table.index.astype(str).str.strip()
    table.index.name = 'probe_id'
    table.columns = [str(c) for c in table.columns]
    table = _to_numeric(table, path)

    logger.debug(f"Read {table.shape[0]} probes × {table.shape[1]} columns from {path}")
    return table


def read_sample_file(
    path: Path,
    value_column: str | Sequence[str],
    probe_column: Optional[str] = None,
    sample_id: Optional[str] = None,
    delimiter: Optional[str] = None,
    comment: Optional[str] = '#',
) -> SampleRecord:
    """
    Read one per-sample raw file.

    Args:
        path: Per-sample file
        value_column: Signal column name, or several names for two-channel
            files (e.g. ``["R", "G", "Rb", "Gb"]``)
        probe_column: Probe identifier column (default: first column)
        sample_id: Identifier for the record (default: derived from file name)

    Raises:
        IngestError: Unreadable file, missing columns, or duplicate probes
            (per-sample files cannot be aligned on ambiguous probe keys)
    """
    columns = [value_column] if isinstance(value_column, str) else list(value_column)
    table = read_intensity_table(
        path,
        probe_column=probe_column,
        value_columns=columns,
        delimiter=delimiter,
        comment=comment,
    )
    if table.index.has_duplicates:
        dup = table.index[table.index.duplicated()][0]
        raise IngestError(
            "Duplicate probe identifier in per-sample file",
            identifier=f"{path}:{dup}",
        )
    return SampleRecord(
        sample_id=sample_id or sample_id_from_path(path),
        values=table,
        source=Path(path),
    )


def _fold_record(combined: pd.DataFrame, record: SampleRecord) -> pd.DataFrame:
    """One fold step: outer-join a record onto the combined table."""
    new_columns = (
        [record.sample_id]
        if record.values.shape[1] == 1
        else [f"{record.sample_id}:{c}" for c in record.values.columns]
    )
    clash = [c for c in new_columns if c in combined.columns]
    if clash:
        raise IngestError(
            "Duplicate sample identifier across raw files",
            identifier=str(record.source or record.sample_id),
            details={'columns': clash},
        )

    index = combined.index.append(record.values.index.difference(combined.index, sort=False))
    block = record.values.reindex(index)
    block.columns = new_columns
    return pd.concat([combined.reindex(index), block], axis=1)


def combine_sample_tables(records: Sequence[SampleRecord]) -> pd.DataFrame:
    """
    Fold per-sample records into one probes × columns table.

    Columns follow record order. Rows follow first appearance of each probe.
    Probes absent from a file become NaN in that file's column(s); the matrix
    cleaner later drops such rows.

    Single-value records contribute one column named by sample_id;
    multi-value records contribute ``"{sample_id}:{column}"`` columns.

    Raises:
        IngestError: No records, or the same sample id appears twice
    """
    if len(records) == 0:
        raise IngestError("No raw sample files to combine")

    empty = pd.DataFrame(index=pd.Index([], name='probe_id', dtype=object))
    combined = reduce(_fold_record, records, empty)
    combined.index.name = 'probe_id'

    logger.info(
        f"Combined {len(records)} raw files into {combined.shape[0]} probes × "
        f"{combined.shape[1]} columns"
    )
    return combined
