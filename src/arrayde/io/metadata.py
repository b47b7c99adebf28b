"""
Sample metadata and raw-data sources.

Retrieval and caching of public series are handled outside this package; the
pipeline only needs two black-box capabilities keyed by study accession:

- MetadataSource: free-text per-sample fields (title, source name,
  characteristics), one row per sample
- RawIntensitySource: the platform's raw container for the study

The table- and directory-backed implementations here read what an upstream
downloader has already placed on disk.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping, Optional, Sequence

import pandas as pd

from arrayde.exceptions import IngestError
from arrayde.io.adapters import Platform, RawIntensities, TwoChannelRaw, get_adapter
from arrayde.io.loaders import sniff_delimiter

logger = logging.getLogger(__name__)

__all__ = [
    'MetadataSource',
    'TableMetadataSource',
    'RawIntensitySource',
    'DirectorySource',
    'read_table',
]


def read_table(path: Path, index_column: Optional[str] = None) -> pd.DataFrame:
    """
    Read a delimited metadata-style table (all values as text).

    Args:
        path: Table file
        index_column: Column to use as index (default: first column)

    Raises:
        IngestError: Missing or unreadable file, missing index column
    """
    path = Path(path)
    if not path.is_file():
        raise IngestError("Table file not found", identifier=str(path))
    try:
        df = pd.read_csv(path, sep=sniff_delimiter(path), dtype=str)
    except (pd.errors.EmptyDataError, pd.errors.ParserError, OSError) as e:
        raise IngestError(f"Failed to read table: {e}", identifier=str(path)) from e

    index_column = index_column or df.columns[0]
    if index_column not in df.columns:
        raise IngestError(f"Index column {index_column!r} not found", identifier=str(path))
    df = df.set_index(index_column)
    df.index = df.index.astype(str).str.strip()
    return df


class MetadataSource(ABC):
    """Black-box provider of per-sample free-text metadata."""

    @abstractmethod
    def fetch(self, accession: str) -> pd.DataFrame:
        """Metadata table for a study, indexed by sample identifier."""
        pass


class TableMetadataSource(MetadataSource):
    """
    Metadata read from delimited files.

    Args:
        paths: Mapping accession -> table path, or a single path used for any
            accession
        sample_column: Column holding sample identifiers (default: first)
    """

    def __init__(self, paths: Mapping[str, Path] | Path | str, sample_column: Optional[str] = None):
        self.paths = paths
        self.sample_column = sample_column

    def fetch(self, accession: str) -> pd.DataFrame:
        if isinstance(self.paths, Mapping):
            if accession not in self.paths:
                raise IngestError("No metadata table registered", study=accession, stage='metadata')
            path = Path(self.paths[accession])
        else:
            path = Path(self.paths)

        try:
            df = read_table(path, self.sample_column)
        except IngestError as e:
            e.with_context(study=accession, stage='metadata')
            raise
        if df.index.has_duplicates:
            raise IngestError(
                "Duplicate sample identifiers in metadata",
                study=accession,
                stage='metadata',
                identifier=str(df.index[df.index.duplicated()][0]),
            )
        logger.info(f"{accession}: metadata for {len(df)} samples ({len(df.columns)} fields)")
        return df


class RawIntensitySource(ABC):
    """Black-box provider of a study's raw intensity container."""

    @abstractmethod
    def fetch(self, accession: str) -> RawIntensities | TwoChannelRaw:
        pass


class DirectorySource(RawIntensitySource):
    """
    Raw files laid out as ``<root>/<accession>/<files>``.

    Args:
        root: Directory holding one sub-directory per accession (or the files
            themselves when ``flat`` is True)
        platform: Platform family of the files
        pattern: Glob selecting raw files inside the study directory
        flat: Files live directly in ``root``
        targets: Targets table (two-channel only), or a path to one
        adapter_options: Keyword arguments for the platform adapter
    """

    def __init__(
        self,
        root: Path,
        platform: Platform | str,
        pattern: str = "*",
        flat: bool = False,
        targets: pd.DataFrame | Path | None = None,
        adapter_options: Optional[Mapping] = None,
    ):
        self.root = Path(root)
        self.platform = Platform.parse(platform)
        self.pattern = pattern
        self.flat = flat
        self.targets = targets
        self.adapter_options = dict(adapter_options or {})

    def files(self, accession: str) -> Sequence[Path]:
        directory = self.root if self.flat else self.root / accession
        if not directory.is_dir():
            raise IngestError("Raw data directory not found", study=accession, stage='ingest',
                              identifier=str(directory))
        paths = sorted(p for p in directory.glob(self.pattern) if p.is_file())
        if not paths:
            raise IngestError(f"No raw files matching {self.pattern!r}", study=accession,
                              stage='ingest', identifier=str(directory))
        return paths

    def fetch(self, accession: str) -> RawIntensities | TwoChannelRaw:
        adapter = get_adapter(self.platform, **self.adapter_options)
        paths = self.files(accession)
        logger.info(f"{accession}: reading {len(paths)} {self.platform.value} raw files")
        try:
            if self.platform is Platform.TWO_CHANNEL:
                targets = self.targets
                if isinstance(targets, (str, Path)):
                    targets = read_table(Path(targets))
                return adapter.read(paths, targets=targets)
            return adapter.read(paths)
        except IngestError as e:
            e.with_context(study=accession)
            raise
