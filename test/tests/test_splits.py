"""Tests for repeated k-fold split management."""

import numpy as np
import polars as pl
import pytest

from multiomics_ml.core.errors import ClassAbsentInFoldWarning, FoldTooSmallError
from multiomics_ml.wrangle.splits import SplitManager, repeat_seeds


@pytest.fixture
def samples():
    return [f"S{i:02d}" for i in range(20)]


@pytest.fixture
def classes():
    return ["A"] * 12 + ["B"] * 8


class TestFoldCoverage:
    """Every sample lands in exactly one non-empty fold per repeat."""

    def test_partition(self, samples, classes):
        manager = SplitManager("subtype")
        manager.create_cv_folds(samples, classes, n_folds=4, n_repeats=3)

        assert sorted(manager.cv_schemes) == ["repeat_0", "repeat_1", "repeat_2"]
        for scheme in manager.cv_schemes.values():
            assert scheme.get_column("sample").to_list() == samples
            counts = scheme.group_by("fold").len()
            assert sorted(counts.get_column("fold").to_list()) == [0, 1, 2, 3]
            assert counts.get_column("len").min() > 0

    def test_iter_folds_covers_all_rows(self, samples, classes):
        manager = SplitManager("subtype")
        manager.create_cv_folds(samples, classes, n_folds=5)
        held_out = np.concatenate(manager.iter_folds("repeat_0"))
        assert sorted(held_out.tolist()) == list(range(20))

    def test_stratified_folds_contain_both_classes(self, samples, classes):
        manager = SplitManager("subtype")
        manager.create_cv_folds(samples, classes, n_folds=4)
        assert manager.stratified
        y = np.asarray(classes)
        for idx in manager.iter_folds("repeat_0"):
            assert set(y[idx]) == {"A", "B"}


class TestReproducibility:
    def test_same_seed_same_folds(self, samples, classes):
        first = SplitManager("subtype")
        second = SplitManager("subtype")
        first.create_cv_folds(samples, classes, n_folds=5, n_repeats=2, random_state=7)
        second.create_cv_folds(samples, classes, n_folds=5, n_repeats=2, random_state=7)
        for name in first.cv_schemes:
            assert first.cv_schemes[name].equals(second.cv_schemes[name])

    def test_repeats_differ(self, samples, classes):
        manager = SplitManager("subtype")
        manager.create_cv_folds(samples, classes, n_folds=5, n_repeats=2)
        assert not manager.cv_schemes["repeat_0"].equals(manager.cv_schemes["repeat_1"])

    def test_repeat_seeds(self):
        assert repeat_seeds(42, 3) == repeat_seeds(42, 3)
        assert len(set(repeat_seeds(42, 5))) == 5


class TestSplitPolicy:
    def test_small_class_falls_back_to_plain_kfold(self, samples):
        classes = ["A"] * 18 + ["B"] * 2
        manager = SplitManager("subtype")
        with pytest.warns(ClassAbsentInFoldWarning):
            manager.create_cv_folds(samples, classes, n_folds=5)
        assert not manager.stratified
        assert len(manager.diagnostics) == 1

    def test_unstratified_on_request(self, samples, classes):
        manager = SplitManager("subtype")
        manager.create_cv_folds(samples, classes, n_folds=5, stratify=False)
        assert not manager.stratified
        assert not manager.diagnostics

    def test_too_many_folds(self, samples, classes):
        with pytest.raises(FoldTooSmallError):
            SplitManager("subtype").create_cv_folds(samples, classes, n_folds=21)

    def test_too_few_folds(self, samples, classes):
        with pytest.raises(FoldTooSmallError):
            SplitManager("subtype").create_cv_folds(samples, classes, n_folds=1)

    def test_leave_one_out(self, samples, classes):
        manager = SplitManager("subtype")
        manager.create_cv_folds(samples, classes, n_folds=20, stratify=False)
        folds = manager.cv_schemes["repeat_0"].get_column("fold")
        assert folds.n_unique() == 20

    def test_fold_dtype(self, samples, classes):
        manager = SplitManager("subtype")
        manager.create_cv_folds(samples, classes)
        assert manager.cv_schemes["repeat_0"].schema["fold"] == pl.Int64
