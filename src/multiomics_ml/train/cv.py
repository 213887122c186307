"""Repeated k-fold cross-validation of the multi-block model."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Tuple

import numpy as np

from multiomics_ml.core.config import (
    CrossValidationConfig,
    DistanceMetric,
    ModelConfig,
)
from multiomics_ml.core.errors import ClassAbsentInFoldWarning, Diagnostics
from multiomics_ml.train.model import BlockPLSDA
from multiomics_ml.train.results import FoldOutcome, PerformanceReport
from multiomics_ml.wrangle.alignment import AlignedDataset
from multiomics_ml.wrangle.splits import SplitManager

logger = logging.getLogger(__name__)

FoldTask = Tuple[int, int, np.ndarray]
FoldResult = Tuple[FoldOutcome, Dict[str, np.ndarray], Diagnostics]


class CrossValidator:
    """Estimate out-of-sample classification error of `BlockPLSDA`.

    For every repeat the samples are partitioned into `n_folds` folds; each
    fold is held out once while a fresh model is trained on the remaining
    samples. Every (repeat, fold) pair is an independent task: it receives
    index arrays and builds its own copies of the training blocks, so tasks
    can run concurrently on `n_jobs` worker threads.

    Usage:
        cv = CrossValidator(dataset, ModelConfig(n_components=2, keep=50),
                            CrossValidationConfig(n_folds=5, n_repeats=10))
        report = cv.run()
    """

    def __init__(
        self,
        dataset: AlignedDataset,
        model_config: Optional[ModelConfig] = None,
        cv_config: Optional[CrossValidationConfig] = None,
    ) -> None:
        if not isinstance(dataset, AlignedDataset):
            raise TypeError(
                "dataset must be an AlignedDataset (see SampleAligner.align)"
            )
        self.dataset = dataset
        self.model_config = model_config or ModelConfig()
        self.cv_config = cv_config or CrossValidationConfig()
        self.splits = SplitManager(dataset.labels.name)
        self._stop = threading.Event()

    def stop(self) -> None:
        """Prevent folds that have not started yet from running.

        Folds already training finish normally; `run` then returns a report
        marked incomplete.
        """
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _tasks(self) -> List[FoldTask]:
        cfg = self.cv_config
        self.splits.create_cv_folds(
            self.dataset.samples,
            self.dataset.y,
            n_folds=cfg.n_folds,
            n_repeats=cfg.n_repeats,
            random_state=cfg.seed,
            stratify=cfg.stratify,
        )
        tasks: List[FoldTask] = []
        for repeat in range(cfg.n_repeats):
            for fold, test_idx in enumerate(
                self.splits.iter_folds(f"repeat_{repeat}")
            ):
                tasks.append((repeat, fold, test_idx))
        return tasks

    def _run_fold(
        self, repeat: int, fold: int, test_idx: np.ndarray
    ) -> Optional[FoldResult]:
        """Train on everything outside `test_idx` and score the held-out rows."""
        if self._stop.is_set():
            return None
        train_idx = np.setdiff1d(
            np.arange(self.dataset.n_samples), test_idx, assume_unique=True
        )
        truth = self.dataset.y[test_idx]
        present = set(truth)
        absent = tuple(c for c in self.dataset.classes if c not in present)

        trained_on = sorted(set(self.dataset.y[train_idx]))
        if len(trained_on) < 2:
            # nothing to discriminate: every held-out sample gets the one
            # class seen in training and the fold adds nothing to stability
            only = np.full(len(test_idx), trained_on[0], dtype=object)
            outcome = FoldOutcome(
                repeat=repeat,
                fold=fold,
                test_idx=np.asarray(test_idx),
                truth=truth,
                predictions={
                    (c, DistanceMetric(d)): only.copy()
                    for c in range(1, self.model_config.n_components + 1)
                    for d in self.cv_config.distances
                },
                absent_classes=absent,
                trained_classes=tuple(trained_on),
            )
            logger.debug(
                "repeat %d fold %d: single training class %r, model skipped",
                repeat,
                fold,
                trained_on[0],
            )
            return outcome, {}, Diagnostics()

        model = BlockPLSDA(self.model_config).fit(
            self.dataset.subset(train_idx)
        )
        held_out = {
            name: block.data[test_idx]
            for name, block in self.dataset.blocks.items()
        }
        predictions = model.predict_all(held_out, self.cv_config.distances)

        outcome = FoldOutcome(
            repeat=repeat,
            fold=fold,
            test_idx=np.asarray(test_idx),
            truth=truth,
            predictions=predictions,
            absent_classes=absent,
            converged=model.converged,
            trained_classes=tuple(model.classes),
        )
        selected = {
            name: loadings != 0 for name, loadings in model.loadings.items()
        }
        logger.debug(
            "repeat %d fold %d: trained on %d, tested on %d",
            repeat,
            fold,
            len(train_idx),
            len(test_idx),
        )
        return outcome, selected, model.diagnostics

    def _collect(self, tasks: List[FoldTask]) -> List[FoldResult]:
        results: List[FoldResult] = []
        n_jobs = self.cv_config.n_jobs
        if n_jobs == 1:
            for repeat, fold, test_idx in tasks:
                result = self._run_fold(repeat, fold, test_idx)
                if result is None:
                    break
                results.append(result)
            return results

        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            futures: Dict[Future, Tuple[int, int]] = {
                executor.submit(self._run_fold, r, f, idx): (r, f)
                for r, f, idx in tasks
            }
            for future in as_completed(futures):
                if self._stop.is_set():
                    for pending in futures:
                        pending.cancel()
                if future.cancelled():
                    continue
                result = future.result()
                if result is not None:
                    results.append(result)
        return results

    def run(self) -> PerformanceReport:
        """Run every repeat and fold and aggregate the held-out errors.

        Returns:
            PerformanceReport keyed by (n_components, distance)

        Raises:
            FoldTooSmallError: If the fold count cannot partition the samples
            RuntimeError: If `stop()` prevented every fold from running
        """
        self._stop.clear()
        cfg = self.cv_config
        tasks = self._tasks()
        logger.info(
            "Cross-validating %d fold fits (%d repeats x %d folds, n_jobs=%d)",
            len(tasks),
            cfg.n_repeats,
            cfg.n_folds,
            cfg.n_jobs,
        )
        results = self._collect(tasks)
        if not results:
            raise RuntimeError(
                "Cross-validation was stopped before any fold completed"
            )
        results.sort(key=lambda res: (res[0].repeat, res[0].fold))

        diagnostics = Diagnostics(self.splits.diagnostics)
        stability: Dict[str, np.ndarray] = {}
        n_fitted = 0
        for outcome, selected, fold_diagnostics in results:
            diagnostics.extend(fold_diagnostics)
            untrained = [
                c
                for c in self.dataset.classes
                if c not in outcome.trained_classes
            ]
            if untrained:
                detail = (
                    "; no model fitted, predicting the single training class"
                    if len(outcome.trained_classes) < 2
                    else ""
                )
                diagnostics.report(
                    ClassAbsentInFoldWarning,
                    f"Repeat {outcome.repeat} fold {outcome.fold}: classes "
                    f"{untrained} absent from the training samples{detail}",
                    logger=logger,
                    repeat=outcome.repeat,
                    fold=outcome.fold,
                )
            if selected:
                n_fitted += 1
            if outcome.absent_classes:
                diagnostics.report(
                    ClassAbsentInFoldWarning,
                    f"Repeat {outcome.repeat} fold {outcome.fold}: classes "
                    f"{list(outcome.absent_classes)} absent from the held-out "
                    "samples; excluded from that fold's per-class error",
                    logger=logger,
                    repeat=outcome.repeat,
                    fold=outcome.fold,
                )
            for name, mask in selected.items():
                if name in stability:
                    stability[name] = stability[name] + mask
                else:
                    stability[name] = mask.astype(float)
        stability = {
            name: counts / n_fitted for name, counts in stability.items()
        }

        complete = len(results) == len(tasks)
        if not complete:
            logger.warning(
                "Cross-validation stopped after %d of %d fold fits",
                len(results),
                len(tasks),
            )

        report = PerformanceReport.from_folds(
            [res[0] for res in results],
            samples=self.dataset.samples,
            labels=[str(v) for v in self.dataset.y],
            stability=stability,
            feature_names={
                name: block.feature_names
                for name, block in self.dataset.blocks.items()
            },
            diagnostics=diagnostics,
            complete=complete,
            settings={
                "n_folds": cfg.n_folds,
                "n_repeats": cfg.n_repeats,
                "seed": cfg.seed,
                "stratified": self.splits.stratified,
                "distances": [d.value for d in cfg.distances],
                "n_components": self.model_config.n_components,
                "keep": self.model_config.keep,
                "design": self.model_config.design,
            },
        )
        best = report.best()
        logger.info(
            "Best cross-validated model: %d component(s), %s (BER %.3f +/- %.3f)",
            best.n_components,
            best.distance.value,
            best.balanced_error_rate,
            best.balanced_error_rate_std,
        )
        return report
