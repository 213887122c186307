"""Tests for PerformanceReport aggregation and export."""

import json

import numpy as np
import polars as pl
import pytest

from multiomics_ml.core.config import DistanceMetric
from multiomics_ml.core.errors import Diagnostics, NumericWarning
from multiomics_ml.train.results import FoldOutcome, PerformanceReport

CENTROIDS = DistanceMetric.CENTROIDS_DIST
MAX = DistanceMetric.MAX_DIST


def _outcome(repeat, fold, test_idx, truth, predicted):
    truth = np.asarray(truth, dtype=object)
    return FoldOutcome(
        repeat=repeat,
        fold=fold,
        test_idx=np.asarray(test_idx),
        truth=truth,
        predictions={
            (1, CENTROIDS): np.asarray(predicted, dtype=object),
            (1, MAX): truth.copy(),
        },
    )


@pytest.fixture
def folds():
    """Two repeats of two folds over four samples (A, A, B, B)."""
    return [
        # repeat 0: fold 0 half wrong, fold 1 all right -> 0.25
        _outcome(0, 0, [0, 2], ["A", "B"], ["A", "A"]),
        _outcome(0, 1, [1, 3], ["A", "B"], ["A", "B"]),
        # repeat 1: both right -> 0.0
        _outcome(1, 0, [0, 3], ["A", "B"], ["A", "B"]),
        _outcome(1, 1, [1, 2], ["A", "B"], ["A", "B"]),
    ]


@pytest.fixture
def report(folds):
    return PerformanceReport.from_folds(
        folds, samples=["S1", "S2", "S3", "S4"], labels=["A", "A", "B", "B"]
    )


class TestFoldOutcome:
    def test_error_rates(self):
        outcome = _outcome(0, 0, [0, 1, 2], ["A", "A", "B"], ["A", "B", "B"])
        assert outcome.error_rate((1, CENTROIDS)) == pytest.approx(1 / 3)
        # class A: 1/2 wrong, class B: 0 wrong
        assert outcome.balanced_error_rate((1, CENTROIDS)) == pytest.approx(0.25)

    def test_balanced_error_ignores_absent_classes(self):
        outcome = _outcome(0, 0, [0, 1], ["A", "A"], ["A", "B"])
        assert outcome.balanced_error_rate((1, CENTROIDS)) == pytest.approx(0.5)


class TestAggregation:
    def test_mean_over_folds_then_repeats(self, report):
        record = report.get(1, "centroids_dist")
        assert record.repeat_error_rates == pytest.approx((0.25, 0.0))
        assert record.error_rate == pytest.approx(0.125)
        assert record.error_rate_std == pytest.approx(0.125)

    def test_class_error_rates(self, report):
        record = report.get(1, CENTROIDS)
        assert record.class_error_rates == pytest.approx({"A": 0.0, "B": 0.25})
        assert record.to_dict()["class_error_rates"]["B"] == pytest.approx(0.25)

    def test_perfect_rule(self, report):
        record = report[(1, MAX)]
        assert record.error_rate == 0.0
        assert record.error_rate_std == 0.0

    def test_order_independent(self, folds):
        shuffled = [folds[3], folds[0], folds[2], folds[1]]
        a = PerformanceReport.from_folds(folds, ["S1", "S2", "S3", "S4"], ["A", "A", "B", "B"])
        b = PerformanceReport.from_folds(shuffled, ["S1", "S2", "S3", "S4"], ["A", "A", "B", "B"])
        assert a.to_dataframe().equals(b.to_dataframe())

    def test_single_repeat_has_zero_spread(self, folds):
        report = PerformanceReport.from_folds(folds[:2], ["S1", "S2", "S3", "S4"], ["A", "A", "B", "B"])
        assert report.get(1, CENTROIDS).error_rate_std == 0.0

    def test_best_prefers_lowest_error(self, report):
        assert report.best("error_rate").distance is MAX

    def test_unknown_metric(self, report):
        with pytest.raises(ValueError):
            report.best("auc")

    def test_contains(self, report):
        assert (1, "max_dist") in report
        assert (2, "max_dist") not in report
        assert "max_dist" not in report
        assert len(report) == 2

    def test_requires_folds(self):
        with pytest.raises(ValueError):
            PerformanceReport.from_folds([], [], [])


class TestTables:
    def test_summary_frame(self, report):
        df = report.to_dataframe()
        assert df.height == 2
        assert df.columns[:2] == ["n_components", "distance"]
        assert df.get_column("distance").to_list() == ["max_dist", "centroids_dist"]

    def test_folds_frame(self, report):
        df = report.folds_frame()
        assert df.height == 8
        assert set(df.get_column("repeat").to_list()) == {0, 1}

    def test_predictions_frame(self, report):
        df = report.predictions_frame()
        # 2 repeats x 4 samples x 2 rules
        assert df.height == 16
        wrong = df.filter(pl.col("label") != pl.col("predicted"))
        assert wrong.height == 1
        assert wrong.get_column("sample").to_list() == ["S3"]

    def test_empty_stability(self, report):
        assert report.stability_frame().is_empty()


class TestExport:
    def test_export_files(self, folds, tmp_path):
        diagnostics = Diagnostics()
        with pytest.warns(NumericWarning):
            diagnostics.report(NumericWarning, "example")
        report = PerformanceReport.from_folds(
            folds,
            ["S1", "S2", "S3", "S4"],
            ["A", "A", "B", "B"],
            stability={"mrna": np.array([[1.0], [0.5]])},
            feature_names={"mrna": ["g1", "g2"]},
            diagnostics=diagnostics,
            settings={"n_folds": 2},
        )
        out = report.export(tmp_path, name="brca subtype")

        assert out.name == "brca_subtype"
        for name in (
            "results.ndjson",
            "results_summary.csv",
            "results_folds.csv",
            "predictions.csv",
            "stability.csv",
            "manifest.json",
        ):
            assert (out / name).exists()

        lines = (out / "results.ndjson").read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["distance"] == "max_dist"

        manifest = json.loads((out / "manifest.json").read_text())
        assert manifest["complete"] is True
        assert manifest["settings"] == {"n_folds": 2}
        assert manifest["components"]["diagnostics"][0]["kind"] == "NumericWarning"

        stability = pl.read_csv(out / "stability.csv")
        assert stability.get_column("frequency").to_list() == [1.0, 0.5]

    def test_to_json_and_csv(self, report, tmp_path):
        payload = json.loads(report.to_json(tmp_path / "report.json"))
        assert payload["n_folds_run"] == 4
        assert (tmp_path / "report.json").exists()

        report.to_csv(tmp_path / "nested" / "summary.csv")
        assert pl.read_csv(tmp_path / "nested" / "summary.csv").height == 2
