"""Split management for repeated cross-validation."""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import polars as pl
from sklearn.model_selection import KFold, StratifiedKFold

from multiomics_ml.core.errors import (
    ClassAbsentInFoldWarning,
    Diagnostics,
    FoldTooSmallError,
)

logger = logging.getLogger(__name__)


def repeat_seeds(seed: Optional[int], n_repeats: int) -> List[int]:
    """Derive one independent 32-bit seed per repeat from a master seed."""
    sequence = np.random.SeedSequence(seed)
    return [
        int(child.generate_state(1)[0])
        for child in sequence.spawn(n_repeats)
    ]


class SplitManager:
    """Manages repeated k-fold assignments for a single label.

    Every repeat is an independent random partition of the samples into
    `n_folds` disjoint, non-empty folds, stored as a DataFrame with
    {sample, fold} columns under `cv_schemes["repeat_<r>"]`.

    Attributes:
        label: Name of the target variable
        cv_schemes: Dict mapping scheme names to CV DataFrames {sample, fold}
        stratified: Whether the stored schemes are stratified by class
        diagnostics: Conditions reported while building the schemes
    """

    def __init__(self, label: str):
        """Initialize SplitManager for a label.

        Args:
            label: Name of the target variable
        """
        self.label = label
        self.cv_schemes: Dict[str, pl.DataFrame] = {}
        self.stratified: bool = False
        self.diagnostics = Diagnostics()

    def create_cv_folds(
        self,
        samples: Sequence[str],
        classes: Sequence[str],
        n_folds: int = 5,
        n_repeats: int = 1,
        random_state: Optional[int] = 42,
        stratify: bool = True,
    ) -> None:
        """Create repeated k-fold cross-validation splits.

        Stratification by class is used when requested and every class has
        at least `n_folds` members; otherwise a shuffled plain KFold is used
        and the fallback is recorded in `diagnostics`.

        Args:
            samples: Sample IDs in dataset order
            classes: Class of every sample
            n_folds: Number of folds
            n_repeats: Number of independent re-partitions
            random_state: Master seed; equal seeds give equal schemes
            stratify: Prefer class-stratified folds

        Raises:
            FoldTooSmallError: If n_folds < 2 or exceeds the sample count
        """
        n_samples = len(samples)
        if len(classes) != n_samples:
            raise ValueError(
                f"samples ({n_samples}) and classes ({len(classes)}) must have equal length"
            )
        if n_folds < 2:
            raise FoldTooSmallError(f"n_folds must be >= 2, got {n_folds}")
        if n_folds > n_samples:
            raise FoldTooSmallError(
                f"Cannot split {n_samples} samples into {n_folds} folds"
            )

        y = np.asarray(classes, dtype=object)
        values, counts = np.unique(y.astype(str), return_counts=True)
        self.stratified = bool(stratify and counts.min() >= n_folds)
        if stratify and not self.stratified:
            small = {
                str(v): int(c)
                for v, c in zip(values, counts)
                if c < n_folds
            }
            self.diagnostics.report(
                ClassAbsentInFoldWarning,
                f"Classes {small} have fewer members than the {n_folds} "
                f"folds; using unstratified folds for label '{self.label}'",
                logger=logger,
                label=self.label,
            )

        self.cv_schemes = {}
        sample_col = pl.Series("sample", list(samples), dtype=pl.Utf8)
        for repeat, seed in enumerate(repeat_seeds(random_state, n_repeats)):
            folds = self.assign_folds(y, n_folds, seed, self.stratified)
            self.cv_schemes[f"repeat_{repeat}"] = pl.DataFrame(
                [sample_col, pl.Series("fold", folds, dtype=pl.Int64)]
            )
        logger.info(
            "Created %d repeat(s) of %d-fold %s CV for '%s'",
            n_repeats,
            n_folds,
            "stratified" if self.stratified else "shuffled",
            self.label,
        )

    @staticmethod
    def assign_folds(
        y: np.ndarray, n_folds: int, seed: int, stratified: bool
    ) -> np.ndarray:
        """Return the fold index of every sample for one repeat."""
        splitter = (
            StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed)
            if stratified
            else KFold(n_splits=n_folds, shuffle=True, random_state=seed)
        )
        folds = np.full(len(y), -1, dtype=np.int64)
        placeholder = np.zeros((len(y), 1))
        for fold, (_, test_idx) in enumerate(
            splitter.split(placeholder, y.astype(str))
        ):
            folds[test_idx] = fold
        return folds

    def iter_folds(self, scheme_name: str) -> List[np.ndarray]:
        """Held-out row positions of every fold of a scheme, by fold index."""
        folds = self.cv_schemes[scheme_name].get_column("fold").to_numpy()
        return [np.flatnonzero(folds == f) for f in np.unique(folds)]
