"""
Pytest configuration and shared fixtures.

Synthetic microarray data generators used across the test suites: linear
single-channel intensities with a known group effect, bead-array targets
with negative controls, two-channel arrays with dye swaps, and on-disk raw
file layouts for the pipeline and CLI tests.
"""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.io.adapters import BeadArrayAdapter, SingleChannelAdapter, TwoChannelAdapter


def generate_log2_matrix(
    n_features: int = 200,
    n_per_group: int = 4,
    effect: float = 2.0,
    n_differential: int = 20,
    seed: int = 42,
) -> tuple[ExpressionMatrix, pd.Series]:
    """
    Log2 expression with a known case/control shift.

    The first ``n_differential`` features are up by ``effect`` in cases.

    Returns:
        (matrix, labels) with labels indexed by sample id, controls first
    """
    rng = np.random.default_rng(seed)
    n_samples = 2 * n_per_group
    baseline = rng.uniform(6.0, 12.0, size=(n_features, 1))
    data = baseline + rng.normal(0.0, 0.3, size=(n_features, n_samples))
    data[:n_differential, n_per_group:] += effect

    sample_ids = [f"S{i + 1}" for i in range(n_samples)]
    feature_ids = [f"probe_{i:04d}" for i in range(n_features)]
    labels = pd.Series(
        ["control"] * n_per_group + ["case"] * n_per_group,
        index=pd.Index(sample_ids),
        name="group",
    )
    return ExpressionMatrix.from_array(data, feature_ids, sample_ids), labels


def generate_linear_table(
    n_probes: int = 120,
    n_per_group: int = 3,
    effect: float = 4.0,
    n_differential: int = 10,
    seed: int = 7,
) -> pd.DataFrame:
    """Linear-scale probes × samples intensities (first half control, second half case)."""
    rng = np.random.default_rng(seed)
    n_samples = 2 * n_per_group
    base = rng.lognormal(mean=7.0, sigma=1.0, size=(n_probes, 1))
    noise = rng.lognormal(mean=0.0, sigma=0.1, size=(n_probes, n_samples))
    data = base * noise + 50.0
    data[:n_differential, n_per_group:] *= effect
    return pd.DataFrame(
        data,
        index=pd.Index([f"{1000 + i}_at" for i in range(n_probes)], name="probe_id"),
        columns=[f"GSM{100 + j}" for j in range(n_samples)],
    )


@pytest.fixture
def log2_matrix():
    """Small log2 matrix (200 × 8) with 20 up-regulated features."""
    return generate_log2_matrix()


@pytest.fixture
def linear_table():
    return generate_linear_table()


@pytest.fixture
def single_channel_raw(linear_table):
    return SingleChannelAdapter().from_table(linear_table)


@pytest.fixture
def bead_raw():
    """Bead-array raw data with 30 negative-control probes per sample."""
    rng = np.random.default_rng(3)
    n_probes, n_samples = 150, 4
    columns = [f"B{j + 1}" for j in range(n_samples)]
    background = rng.normal(80.0, 10.0, size=(n_probes, n_samples))
    signal = rng.exponential(400.0, size=(n_probes, 1)) * rng.lognormal(0.0, 0.05, size=(n_probes, n_samples))
    targets = pd.DataFrame(background + signal,
                           index=[f"ILMN_{i}" for i in range(n_probes)], columns=columns)
    controls = pd.DataFrame(rng.normal(80.0, 10.0, size=(30, n_samples)),
                            index=[f"NEG_{i}" for i in range(30)], columns=columns)
    return BeadArrayAdapter().from_tables(targets, controls)


@pytest.fixture
def two_channel_raw():
    """
    Four arrays, test/reference ratio 4 on every spot; arrays 2 and 4 are
    dye-swapped (reference in Cy5).
    """
    rng = np.random.default_rng(11)
    n_spots = 60
    ref = rng.lognormal(mean=8.0, sigma=0.8, size=(n_spots, 4))
    test = ref * 4.0
    swapped = np.array([False, True, False, True])
    red = np.where(swapped, ref, test)
    green = np.where(swapped, test, ref)
    targets = pd.DataFrame(
        {
            "Cy3": ["Ref", "tumour_1", "Ref", "normal_2"],
            "Cy5": ["tumour_1", "Ref", "normal_1", "Ref"],
        },
        index=["A1", "A2", "A3", "A4"],
    )
    return TwoChannelAdapter().from_arrays(
        red=red,
        green=green,
        probe_ids=[f"spot{i}" for i in range(n_spots)],
        array_ids=list(targets.index),
        targets=targets,
    )


def write_sample_files(directory: Path, table: pd.DataFrame, value_column: str = "VALUE") -> list[Path]:
    """One tab-delimited file per sample column (``ID_REF``, value column)."""
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for sample in table.columns:
        path = directory / f"{sample}.txt"
        frame = pd.DataFrame({"ID_REF": table.index, value_column: table[sample].values})
        frame.to_csv(path, sep="\t", index=False)
        paths.append(path)
    return paths


@pytest.fixture
def study_files(tmp_path, linear_table):
    """
    On-disk single-channel study: raw/<accession>/<GSM>.txt, a metadata
    table and a platform annotation table.
    """
    accession = "GSE0001"
    write_sample_files(tmp_path / "raw" / accession, linear_table)

    n = linear_table.shape[1] // 2
    metadata = pd.DataFrame(
        {
            "sample": linear_table.columns,
            "title": [f"healthy donor {i}" for i in range(n)] + [f"tumour biopsy {i}" for i in range(n)],
            "source_name": ["blood"] * (2 * n),
        }
    )
    metadata_path = tmp_path / "samples.tsv"
    metadata.to_csv(metadata_path, sep="\t", index=False)

    probes = list(linear_table.index)
    annotation = pd.DataFrame(
        {
            "ID": probes[:-5],
            "gene_symbol": [f"GENE{i}" for i in range(len(probes) - 5)],
            "gene_id": [str(5000 + i) for i in range(len(probes) - 5)],
        }
    )
    # One multi-gene probe
    annotation.loc[0, "gene_symbol"] = "GENE0 /// GENE0B"
    annotation.loc[0, "gene_id"] = "5000 /// 9000"
    annotation_path = tmp_path / "annotation.tsv"
    annotation.to_csv(annotation_path, sep="\t", index=False)

    return {
        "accession": accession,
        "raw": tmp_path / "raw",
        "metadata": metadata_path,
        "annotation": annotation_path,
        "unmapped": probes[-5:],
        "tmp_path": tmp_path,
    }
