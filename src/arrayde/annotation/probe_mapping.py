"""
Probe -> gene annotation.

Microarray probes map to zero, one or several genes. Internally a probe's
mapping is an ordered tuple of unique GeneReference values (lookup order,
duplicates removed); it is only flattened into delimited text at the
serialization boundary (``ProbeAnnotation.to_frame``):

    probe_id      gene_symbol          gene_id
    1007_s_at     DDR1 /// MIR4640     780 /// 100616237
    1552256_a_at  SCARB1               949
    AFFX-BioB-5   ---                  ---

Every requested probe appears exactly once; probes without a match carry the
unmapped marker so joins on probe identifier never drop features.

Lookups:
    - TableLookup: platform annotation table (probe, symbol, gene id columns;
      multi-valued cells separated by "///")
    - MyGeneInfoLookup: mygene.info reporter query, batched over a thread
      pool with an on-disk JSON cache

Examples:
    >>> from arrayde.annotation.probe_mapping import ProbeAnnotator, TableLookup
    >>>
    >>> lookup = TableLookup.from_file(Path("GPL570.annot.txt"),
    ...                                symbol_column="Gene symbol",
    ...                                gene_id_column="Gene ID")
    >>> annotation = ProbeAnnotator(lookup, "GPL570").annotate(matrix.feature_ids)
    >>> annotation.to_frame().head()
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from arrayde.exceptions import IngestError

logger = logging.getLogger(__name__)

__all__ = [
    'SEPARATOR',
    'UNMAPPED',
    'GeneReference',
    'ProbeAnnotation',
    'ProbeGeneLookup',
    'TableLookup',
    'MyGeneInfoLookup',
    'ProbeAnnotator',
]

SEPARATOR = " /// "
UNMAPPED = "---"

_CELL_SPLIT = re.compile(r"\s*///\s*")


@dataclass(frozen=True)
class GeneReference:
    """One gene a probe maps to."""

    symbol: str
    gene_id: str

    def __str__(self) -> str:
        return f"{self.symbol} ({self.gene_id})"


def _unique(refs: Iterable[GeneReference]) -> tuple[GeneReference, ...]:
    return tuple(dict.fromkeys(refs))


@dataclass(frozen=True)
class ProbeAnnotation:
    """Probe -> ordered unique gene references, one entry per distinct probe.

    Attributes:
        mapping: probe_id -> tuple of GeneReference (empty = unmapped)
        annotation_set: Platform annotation set the lookup used
    """

    mapping: Mapping[str, tuple[GeneReference, ...]]
    annotation_set: Optional[str] = None

    def __len__(self) -> int:
        return len(self.mapping)

    def genes(self, probe_id: str) -> tuple[GeneReference, ...]:
        return self.mapping.get(probe_id, ())

    def gene_sets(self) -> dict[str, frozenset[GeneReference]]:
        """Order-insensitive view for comparisons."""
        return {probe: frozenset(refs) for probe, refs in self.mapping.items()}

    @property
    def unmapped(self) -> list[str]:
        return [probe for probe, refs in self.mapping.items() if not refs]

    def to_frame(self) -> pd.DataFrame:
        """
        Flatten to one row per probe (index ``probe_id``) with
        ``gene_symbol`` and ``gene_id`` joined by SEPARATOR.

        Entries line up by position: the k-th symbol belongs to the k-th
        gene id, so a symbol shared by two ids is written twice.
        """
        rows = []
        for probe, refs in self.mapping.items():
            if refs:
                refs = _unique(refs)
                symbols = SEPARATOR.join(r.symbol for r in refs)
                gene_ids = SEPARATOR.join(r.gene_id for r in refs)
            else:
                symbols = gene_ids = UNMAPPED
            rows.append((probe, symbols, gene_ids))
        frame = pd.DataFrame(rows, columns=['probe_id', 'gene_symbol', 'gene_id'])
        return frame.set_index('probe_id')


class ProbeGeneLookup(ABC):
    """Black-box probe -> gene mapping service."""

    @abstractmethod
    def lookup(
        self,
        probe_ids: Sequence[str],
        annotation_set: Optional[str] = None,
    ) -> Dict[str, List[GeneReference]]:
        """
        Map probe identifiers to genes.

        Returns:
            Dict probe_id -> list of GeneReference in lookup order. Probes
            without a match may be absent or map to an empty list.
        """
        pass


class TableLookup(ProbeGeneLookup):
    """
    Lookup backed by a platform annotation table.

    Cells holding several genes use "///" between entries (the GEO platform
    convention); symbol and gene id lists are paired by position. Cells that
    are empty or "---" mean no gene.

    Args:
        table: DataFrame indexed by probe identifier
        symbol_column: Column with gene symbols
        gene_id_column: Column with gene identifiers
    """

    def __init__(self, table: pd.DataFrame, symbol_column: str = "gene_symbol",
                 gene_id_column: str = "gene_id"):
        for column in (symbol_column, gene_id_column):
            if column not in table.columns:
                raise IngestError(f"Annotation column {column!r} not found", stage='annotation')
        self.symbol_column = symbol_column
        self.gene_id_column = gene_id_column
        self._index = self._build_index(table)

    @classmethod
    def from_file(cls, path: Path, probe_column: Optional[str] = None,
                  symbol_column: str = "gene_symbol", gene_id_column: str = "gene_id") -> TableLookup:
        """
        Read an annotation table (tab/comma separated, '#' comment lines allowed).

        Raises:
            IngestError: Unreadable file or missing columns
        """
        from arrayde.io.metadata import read_table

        try:
            table = read_table(Path(path), probe_column)
        except IngestError as e:
            e.with_context(stage='annotation')
            raise
        return cls(table, symbol_column, gene_id_column)

    def _build_index(self, table: pd.DataFrame) -> Dict[str, List[GeneReference]]:
        index: Dict[str, List[GeneReference]] = {}
        symbols = table[self.symbol_column].fillna('').astype(str)
        gene_ids = table[self.gene_id_column].fillna('').astype(str)
        for probe, symbol_cell, id_cell in zip(table.index.astype(str), symbols, gene_ids):
            refs = index.setdefault(probe, [])
            refs.extend(self._parse_cells(symbol_cell, id_cell))
        return index

    @staticmethod
    def _parse_cells(symbol_cell: str, id_cell: str) -> List[GeneReference]:
        symbols = [s for s in _CELL_SPLIT.split(symbol_cell.strip()) if s and s != UNMAPPED]
        ids = [g for g in _CELL_SPLIT.split(id_cell.strip()) if g and g != UNMAPPED]
        if not symbols and not ids:
            return []
        n = max(len(symbols), len(ids))
        symbols += [UNMAPPED] * (n - len(symbols))
        ids += [UNMAPPED] * (n - len(ids))
        return [GeneReference(s, g) for s, g in zip(symbols, ids)]

    def lookup(self, probe_ids: Sequence[str], annotation_set: Optional[str] = None) -> Dict[str, List[GeneReference]]:
        return {p: list(self._index[p]) for p in probe_ids if p in self._index}


class MyGeneInfoLookup(ProbeGeneLookup):
    """
    mygene.info reporter lookup with concurrent batch queries.

    Probe identifiers are queried against the ``reporter`` scope, which
    covers Affymetrix, Illumina and Agilent probe names. Results are cached
    as JSON under ``cache_dir`` keyed by a digest of the query.

    Args:
        cache_dir: Cache directory (default: ~/.cache/arrayde/probe_mapping)
        max_workers: Concurrent API requests
        batch_size: Probes per request
        species: Species filter passed to mygene
    """

    def __init__(self, cache_dir: Optional[Path] = None, max_workers: int = 4,
                 batch_size: int = 1000, species: str = "human"):
        self.cache_dir = cache_dir or Path.home() / '.cache/arrayde/probe_mapping'
        self.max_workers = max_workers
        self.batch_size = batch_size
        self.species = species
        self._lock = threading.Lock()

    def _query_batch(self, batch: List[str], batch_num: int, total_batches: int) -> Dict[str, List[GeneReference]]:
        import mygene

        # One client per thread
        mg = mygene.MyGeneInfo()
        logger.debug(f"Querying probe batch {batch_num + 1}/{total_batches} ({len(batch)} probes)")
        response = mg.querymany(
            batch,
            scopes='reporter',
            fields='symbol,entrezgene',
            species=self.species,
            returnall=True,
            verbose=False,
        )

        results: Dict[str, List[GeneReference]] = {}
        for hit in response['out']:
            probe = hit.get('query')
            if not probe or hit.get('notfound'):
                continue
            symbol = hit.get('symbol')
            gene_id = hit.get('entrezgene') or hit.get('_id')
            if symbol or gene_id:
                results.setdefault(str(probe), []).append(
                    GeneReference(str(symbol or UNMAPPED), str(gene_id or UNMAPPED))
                )
        return results

    def _cache_path(self, probe_ids: Sequence[str], annotation_set: Optional[str]) -> Path:
        digest = hashlib.sha256("\n".join(sorted(probe_ids)).encode()).hexdigest()[:16]
        return self.cache_dir / f"{annotation_set or 'reporter'}_{self.species}_{digest}.json"

    def lookup(self, probe_ids: Sequence[str], annotation_set: Optional[str] = None) -> Dict[str, List[GeneReference]]:
        probe_ids = list(probe_ids)
        cache_path = self._cache_path(probe_ids, annotation_set)
        if cache_path.exists():
            try:
                with open(cache_path, 'r') as f:
                    cached = json.load(f)
                return {p: [GeneReference(s, g) for s, g in refs] for p, refs in cached.items()}
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Corrupted cache file {cache_path}, ignoring: {e}")

        batches = [probe_ids[i:i + self.batch_size] for i in range(0, len(probe_ids), self.batch_size)]
        logger.info(f"Probe lookup: {len(probe_ids)} probes in {len(batches)} batches "
                    f"with {self.max_workers} workers")

        # Batches finish in any order; collect by index so lookup order is stable
        by_batch: Dict[int, Dict[str, List[GeneReference]]] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self._query_batch, batch, i, len(batches)): i
                for i, batch in enumerate(batches)
            }
            for future in as_completed(futures):
                by_batch[futures[future]] = future.result()

        results: Dict[str, List[GeneReference]] = {}
        for i in sorted(by_batch):
            results.update(by_batch[i])

        logger.info(f"Probe lookup complete: {len(results)}/{len(probe_ids)} probes mapped")

        from arrayde.utils.fileio import atomic_write_json

        with self._lock:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(
                cache_path,
                {p: [[r.symbol, r.gene_id] for r in refs] for p, refs in results.items()},
            )
        return results


class ProbeAnnotator:
    """
    Resolve probes to genes through a lookup, with retries.

    Args:
        lookup: Probe -> gene service
        annotation_set: Platform annotation set passed to the lookup
        retries: Additional attempts after a failed lookup
        retry_delay: Seconds between attempts (doubled each retry)
    """

    def __init__(self, lookup: ProbeGeneLookup, annotation_set: Optional[str] = None,
                 retries: int = 2, retry_delay: float = 1.0):
        self.lookup = lookup
        self.annotation_set = annotation_set
        self.retries = retries
        self.retry_delay = retry_delay

    def _lookup_with_retries(self, probes: List[str]) -> Dict[str, List[GeneReference]]:
        delay = self.retry_delay
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.lookup.lookup(probes, self.annotation_set)
            except (OSError, ConnectionError, TimeoutError, RuntimeError) as e:
                if attempt > self.retries:
                    raise IngestError(
                        f"Probe lookup failed after {attempt} attempts: {e}",
                        stage='annotation',
                        identifier=self.annotation_set,
                    ) from e
                logger.warning(f"Probe lookup attempt {attempt} failed ({e}); retrying in {delay:g}s")
                time.sleep(delay)
                delay *= 2

    def annotate(self, probe_ids: Iterable[str]) -> ProbeAnnotation:
        """
        One entry per distinct probe, in first-seen order.

        Raises:
            IngestError: The lookup kept failing
        """
        probes = list(dict.fromkeys(str(p) for p in probe_ids))
        found = self._lookup_with_retries(probes)

        mapping = {probe: _unique(found.get(probe, ())) for probe in probes}
        annotation = ProbeAnnotation(mapping=mapping, annotation_set=self.annotation_set)

        n_multi = sum(1 for refs in mapping.values() if len(refs) > 1)
        logger.info(
            f"Annotated {len(probes)} probes: {len(probes) - len(annotation.unmapped)} mapped "
            f"({n_multi} to several genes), {len(annotation.unmapped)} unmapped"
        )
        return annotation
