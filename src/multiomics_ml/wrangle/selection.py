"""Variance-based feature selection for omics blocks."""

import logging
from typing import Dict, Mapping, Optional, Union

import numpy as np

from multiomics_ml.core.config import SelectionConfig
from multiomics_ml.core.errors import Diagnostics, SmallBlockWarning
from multiomics_ml.wrangle.alignment import AlignedDataset
from multiomics_ml.wrangle.blocks import Block

logger = logging.getLogger(__name__)


def column_variances(data: np.ndarray) -> np.ndarray:
    """Unbiased (ddof=1) variance of every column, ignoring NaN entries.

    Columns with fewer than two observed values (including every column of
    a single-sample block) get variance 0.
    """
    values = np.asarray(data, dtype=float)
    observed = ~np.isnan(values)
    counts = observed.sum(axis=0)
    filled = np.where(observed, values, 0.0)
    means = filled.sum(axis=0) / np.maximum(counts, 1)
    sq_dev = np.where(observed, (values - means) ** 2, 0.0).sum(axis=0)
    return np.where(counts > 1, sq_dev / np.maximum(counts - 1, 1), 0.0)


def rank_by_variance(variances: np.ndarray) -> np.ndarray:
    """Column positions by descending variance, ties by original position."""
    return np.argsort(-np.asarray(variances), kind="stable")


class FeatureSelector:
    """Keep the K most variable columns of each block.

    Selection is a pure function of the block: the returned Block keeps the
    chosen columns in their original relative order. Asking for more columns
    than a block has returns every column and reports a SmallBlockWarning.
    """

    def __init__(self, config: Optional[SelectionConfig] = None):
        self.config = config or SelectionConfig()

    @staticmethod
    def variances(block: Block) -> Dict[str, float]:
        """Selection score of every feature of `block`."""
        return dict(
            zip(block.feature_names, column_variances(block.data).tolist())
        )

    def select(
        self,
        block: Block,
        n_features: Optional[int] = None,
        diagnostics: Optional[Diagnostics] = None,
    ) -> Block:
        """Return `block` restricted to its `n_features` most variable columns.

        Args:
            block: Block to reduce
            n_features: Feature budget (defaults to the configured budget for
                this block's name; None keeps every column)
            diagnostics: Collector for SmallBlockWarning (a fresh one is used
                when omitted)
        """
        if n_features is None:
            n_features = self.config.for_block(block.name)
        if n_features is None:
            return block
        if int(n_features) <= 0:
            raise ValueError(f"n_features must be positive, got {n_features}")
        n_features = int(n_features)
        if diagnostics is None:
            diagnostics = Diagnostics()

        if n_features >= block.n_features:
            if n_features > block.n_features:
                diagnostics.report(
                    SmallBlockWarning,
                    f"Block '{block.name}' has {block.n_features} features, "
                    f"fewer than the requested {n_features}; keeping all",
                    logger=logger,
                    block=block.name,
                    requested=n_features,
                    available=block.n_features,
                )
            return block

        ranked = rank_by_variance(column_variances(block.data))
        keep = np.sort(ranked[:n_features])
        logger.info(
            "Block '%s': selected %d of %d features by variance",
            block.name,
            n_features,
            block.n_features,
        )
        return block.select_features(keep.tolist())

    def select_dataset(
        self,
        dataset: AlignedDataset,
        n_features: Optional[Union[int, Mapping[str, int]]] = None,
    ) -> AlignedDataset:
        """Apply `select` to every block of an aligned dataset.

        Args:
            dataset: Aligned dataset
            n_features: Single budget or per-block mapping; defaults to the
                configured budgets

        Returns:
            New AlignedDataset carrying the input's diagnostics plus any
            SmallBlockWarning raised here
        """
        reduced = dataset.with_blocks(dataset.blocks)
        selected: Dict[str, Block] = {}
        for name, block in dataset.blocks.items():
            if isinstance(n_features, Mapping):
                budget = n_features.get(name)
                if budget is None:
                    selected[name] = block
                    continue
            else:
                budget = n_features
            selected[name] = self.select(
                block, budget, diagnostics=reduced.diagnostics
            )
        reduced.blocks = selected
        return reduced
