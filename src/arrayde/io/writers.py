"""
Result and matrix writers.

All outputs are tab-delimited text written atomically (temp file in the
destination directory, then ``os.replace``), so an interrupted or failed run
never leaves a truncated table where a previous good one stood.

Outputs:
    - write_result_table: differential expression results, one row per
      (probe, contrast) with the fixed leading columns
      probe_id, gene_symbol, gene_id, contrast, log2_fc, ave_expr, t,
      p_value, adj_p_value, decision
    - write_expression_matrix: normalized matrix as {path}.data.tsv plus
      optional {path}.flags.tsv holding the QualityFlag bitmask per value
    - write_run_report: JSON record of a run (stage reports, prior
      hyperparameters, failed contrasts)

Examples:
    >>> from arrayde.io.writers import write_result_table
    >>> write_result_table(result, Path("results/GSE1234.de.tsv"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import pandas as pd

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.exceptions import SchemaMismatchError
from arrayde.stats.differential import RESULT_COLUMNS, DifferentialResult
from arrayde.utils.fileio import atomic_write_frame, atomic_write_json

logger = logging.getLogger(__name__)

__all__ = ['write_result_table', 'write_expression_matrix', 'write_run_report']


def write_result_table(result: DifferentialResult | pd.DataFrame, path: Path) -> Path:
    """
    Write differential expression results as a tab-delimited table.

    Args:
        result: DifferentialResult, or an already flattened results frame
        path: Destination file

    Returns:
        The path written

    Raises:
        SchemaMismatchError: A frame is missing one of the result columns
    """
    frame = result.to_dataframe() if isinstance(result, DifferentialResult) else result
    missing = [c for c in RESULT_COLUMNS if c not in frame.columns]
    if missing:
        raise SchemaMismatchError(f"Result table is missing columns {missing}", stage='output')

    extra = [c for c in frame.columns if c not in RESULT_COLUMNS]
    path = Path(path)
    atomic_write_frame(path, frame[RESULT_COLUMNS + extra], sep="\t", index=False)
    logger.info(f"Wrote {len(frame)} result rows to {path}")
    return path


def write_expression_matrix(matrix: ExpressionMatrix, path: Path, write_quality_flags: bool = True) -> list[Path]:
    """
    Write a matrix as ``{path}.data.tsv`` and optionally ``{path}.flags.tsv``.

    Both files have feature identifiers in the first column (``probe_id``)
    and one column per sample.
    """
    if matrix.data.size == 0:
        raise ValueError("Cannot write empty matrix")

    path = Path(path)
    data_path = Path(f"{path}.data.tsv")
    frame = matrix.to_frame()
    frame.index.name = 'probe_id'
    atomic_write_frame(data_path, frame, sep="\t", index=True)
    written = [data_path]
    logger.info(f"Wrote {matrix.n_features} × {matrix.n_samples} matrix to {data_path}")

    if write_quality_flags:
        flags_path = Path(f"{path}.flags.tsv")
        flags = pd.DataFrame(matrix.quality_flags, index=frame.index, columns=matrix.sample_ids)
        atomic_write_frame(flags_path, flags, sep="\t", index=True)
        written.append(flags_path)
    return written


def write_run_report(report: Mapping[str, Any], path: Path) -> Path:
    """Write a run report as JSON (non-serializable values become strings)."""
    path = Path(path)
    atomic_write_json(path, dict(report))
    logger.debug(f"Wrote run report to {path}")
    return path
