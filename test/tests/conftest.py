"""Shared pytest fixtures for multiomics_ml tests."""

import numpy as np
import polars as pl
import pytest

from multiomics_ml.wrangle.alignment import SampleAligner
from multiomics_ml.wrangle.blocks import Block
from multiomics_ml.wrangle.labels import LabelVector

N_SAMPLES = 20
N_FEATURES = 30


def participant(i):
    """Participant-level (12 character) barcode."""
    return f"TCGA-AA-{i:04d}"


# Data fixtures - small synthetic datasets


@pytest.fixture
def class_values():
    """Two balanced classes."""
    return ["LumA"] * (N_SAMPLES // 2) + ["Basal"] * (N_SAMPLES // 2)


@pytest.fixture
def synthetic_blocks(class_values):
    """Two blocks whose first half of features is shifted by class.

    Rows carry full aliquot barcodes that differ between blocks beyond the
    participant prefix, as when blocks come from different assays.
    """
    rng = np.random.default_rng(0)
    shift = np.array([v == "Basal" for v in class_values], dtype=float)
    blocks = {}
    for name, suffix in (("mrna", "01A-11R-A277-07"), ("mirna", "01A-11R-A278-13")):
        data = rng.normal(size=(N_SAMPLES, N_FEATURES))
        data[:, : N_FEATURES // 2] += 3.0 * shift[:, None]
        blocks[name] = Block(
            accessions=[f"{participant(i)}-{suffix}" for i in range(N_SAMPLES)],
            feature_names=[f"{name}_{j}" for j in range(N_FEATURES)],
            data=data,
            name=name,
        )
    return blocks


@pytest.fixture
def labels(class_values):
    return LabelVector(
        [participant(i) for i in range(N_SAMPLES)], class_values, name="subtype"
    )


@pytest.fixture
def aligned_dataset(synthetic_blocks, labels):
    return SampleAligner().align(synthetic_blocks, labels)


# CSV file fixtures - write data to temporary files


@pytest.fixture
def block_csv(tmp_path, synthetic_blocks):
    path = tmp_path / "mrna.csv"
    synthetic_blocks["mrna"].save(path)
    return path


@pytest.fixture
def labels_csv(tmp_path, labels):
    path = tmp_path / "labels.csv"
    labels.collect().write_csv(path)
    return path


@pytest.fixture
def transposed_csv(tmp_path):
    """Feature-by-sample file as distributed for expression matrices."""
    path = tmp_path / "expression.tsv"
    pl.DataFrame(
        {
            "gene": ["BRCA1", "TP53", "ESR1"],
            "TCGA-AA-0001": [1.0, 2.0, 3.0],
            "TCGA-AA-0002": [4.0, 5.0, 6.0],
        }
    ).write_csv(path, separator="\t")
    return path
