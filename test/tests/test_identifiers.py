"""Tests for sample identifier prefixes."""

import pytest

from multiomics_ml.utils.identifiers import (
    BarcodeLevel,
    comparison_prefix,
    first_occurrence_index,
    resolve_prefix_length,
)


class TestBarcodeLevel:
    def test_values_and_names(self):
        assert int(BarcodeLevel.PARTICIPANT) == 12
        assert BarcodeLevel.SAMPLE.name == "sample"
        assert BarcodeLevel.from_name("Vial") is BarcodeLevel.VIAL

    def test_invalid_name(self):
        with pytest.raises(ValueError, match="Invalid barcode level"):
            BarcodeLevel.from_name("patient")

    def test_ordering(self):
        levels = list(BarcodeLevel.iter_from_participant())
        assert levels[0] is BarcodeLevel.PARTICIPANT
        assert levels[-1] is BarcodeLevel.ALIQUOT
        assert BarcodeLevel.PARTICIPANT.coarser is None
        assert BarcodeLevel.SAMPLE.finer is BarcodeLevel.VIAL

    def test_prefix(self):
        barcode = "TCGA-A1-A0SB-01A-11R-A144-07"
        assert BarcodeLevel.PARTICIPANT.prefix(barcode) == "TCGA-A1-A0SB"
        assert BarcodeLevel.SAMPLE.prefix(barcode) == "TCGA-A1-A0SB-01"


class TestComparisonPrefix:
    def test_truncates(self):
        assert comparison_prefix("TCGA-A1-A0SB-01A", 12) == "TCGA-A1-A0SB"

    def test_short_ids_are_kept_whole(self):
        assert comparison_prefix("S1", 12) == "S1"

    def test_normalises_mangled_names(self):
        assert comparison_prefix("tcga.a1.a0sb.01a", 12) == "TCGA-A1-A0SB"
        assert comparison_prefix("TCGA_A1_A0SB", 12) == "TCGA-A1-A0SB"

    def test_normalisation_can_be_disabled(self):
        assert comparison_prefix("tcga.a1.a0sb", 12, normalise=False) == "tcga.a1.a0sb"

    def test_is_idempotent(self):
        once = comparison_prefix("tcga.a1.a0sb.01a", 12)
        assert comparison_prefix(once, 12) == once

    def test_resolve_prefix_length(self):
        assert resolve_prefix_length("aliquot") == 28
        assert resolve_prefix_length(BarcodeLevel.SAMPLE) == 15
        with pytest.raises(ValueError):
            resolve_prefix_length(0)


def test_first_occurrence_index_collapses_duplicates():
    ids = [
        "TCGA-AA-0001-01A",
        "TCGA-AA-0002-01A",
        "TCGA-AA-0001-02A",
    ]
    index, collapsed = first_occurrence_index(ids, 12)

    assert index == {"TCGA-AA-0001": 0, "TCGA-AA-0002": 1}
    assert collapsed == [("TCGA-AA-0001", 0, 2)]
