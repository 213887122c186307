"""Sample alignment across omics blocks and a label source."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from multiomics_ml.core.config import AlignmentConfig
from multiomics_ml.core.errors import (
    Diagnostics,
    DuplicateSampleWarning,
    MalformedBlockError,
    MissingAllLabelsError,
    NoCommonSamplesError,
)
from multiomics_ml.utils.identifiers import first_occurrence_index
from multiomics_ml.wrangle.blocks import Block
from multiomics_ml.wrangle.labels import LabelVector

logger = logging.getLogger(__name__)


@dataclass
class AlignedDataset:
    """Blocks and labels sharing one ordered sample list.

    Row i of every block and position i of `labels` refer to `samples[i]`.

    Attributes:
        samples: Canonical ordered sample IDs (comparison prefixes)
        blocks: Mapping of block name to Block, in insertion order
        labels: Aligned LabelVector without missing entries
        diagnostics: Recoverable conditions met while building the dataset
    """

    samples: List[str]
    blocks: Dict[str, Block]
    labels: LabelVector
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    def __post_init__(self) -> None:
        for name, block in self.blocks.items():
            if block.accessions != self.samples:
                raise MalformedBlockError(
                    "Block rows are not aligned to the dataset samples",
                    block=name,
                )
        if self.labels.samples != self.samples:
            raise ValueError("Labels are not aligned to the dataset samples")
        if self.labels.n_missing:
            raise ValueError("Aligned labels must not contain missing classes")

    @property
    def n_samples(self) -> int:
        return len(self.samples)

    @property
    def block_names(self) -> List[str]:
        return list(self.blocks)

    @property
    def classes(self) -> List[str]:
        return self.labels.classes

    @property
    def y(self) -> np.ndarray:
        """Class values as an object array aligned to `samples`."""
        return self.labels.to_array()

    def subset(self, positions: Sequence[int]) -> "AlignedDataset":
        """Return a new dataset restricted to `positions` (order kept)."""
        idx = [int(p) for p in positions]
        return AlignedDataset(
            samples=[self.samples[i] for i in idx],
            blocks={
                name: block.take_rows(idx)
                for name, block in self.blocks.items()
            },
            labels=self.labels.take(idx),
            diagnostics=Diagnostics(self.diagnostics),
        )

    def with_blocks(self, blocks: Mapping[str, Block]) -> "AlignedDataset":
        """Return a new dataset with the same samples and replaced blocks."""
        return AlignedDataset(
            samples=list(self.samples),
            blocks=dict(blocks),
            labels=self.labels,
            diagnostics=Diagnostics(self.diagnostics),
        )


class SampleAligner:
    """Reconcile sample identifiers across blocks and labels.

    Identifiers are compared on their fixed-length prefix (see
    `multiomics_ml.utils.identifiers.comparison_prefix`). The canonical order
    is the lexicographic order of the shared prefixes, so aligning the same
    inputs twice, or re-aligning an aligned dataset, is a no-op.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()

    def align(
        self,
        blocks: Union[Sequence[Block], Mapping[str, Block]],
        labels: LabelVector,
    ) -> AlignedDataset:
        """Build an AlignedDataset from raw blocks and labels.

        Args:
            blocks: Two or more Blocks (a sequence, or a mapping of name to
                Block)
            labels: Label source; missing classes are discarded first

        Returns:
            AlignedDataset whose samples are the sorted shared prefixes

        Raises:
            MissingAllLabelsError: If every label entry is missing
            NoCommonSamplesError: If no prefix is shared by all inputs
        """
        block_list = (
            list(blocks.values()) if isinstance(blocks, Mapping) else list(blocks)
        )
        if len(block_list) < 2:
            raise ValueError(
                f"At least two blocks are required, got {len(block_list)}"
            )
        names = [b.name for b in block_list]
        if len(set(names)) != len(names):
            raise ValueError(f"Block names must be unique, got {names}")

        length = self.config.prefix_length
        normalise = self.config.normalise_separators
        diagnostics = Diagnostics()

        # Row index per block, built once and reused for reordering
        indices: Dict[str, Dict[str, int]] = {}
        for block in block_list:
            index, collapsed = first_occurrence_index(
                block.accessions, length, normalise
            )
            for prefix, kept, dropped in collapsed:
                diagnostics.report(
                    DuplicateSampleWarning,
                    f"Block '{block.name}': '{block.accessions[dropped]}' "
                    f"collapses onto '{block.accessions[kept]}' (prefix "
                    f"'{prefix}'); keeping the first occurrence",
                    logger=logger,
                    block=block.name,
                    prefix=prefix,
                )
            indices[block.name] = index

        # configured sentinels count as missing on top of the vector's own
        labels = LabelVector(
            labels.samples,
            labels.values,
            name=labels.name,
            missing_values=self.config.missing_labels,
        )
        labelled = labels.dropna()
        if len(labelled) == 0:
            raise MissingAllLabelsError(
                f"All {len(labels)} entries of label '{labels.name}' are missing"
            )
        if labels.n_missing:
            logger.info(
                "Discarded %d samples with missing '%s'",
                labels.n_missing,
                labels.name,
            )

        label_index, collapsed = first_occurrence_index(
            labelled.samples, length, normalise
        )
        for prefix, kept, dropped in collapsed:
            kept_value = labelled.values[kept]
            dropped_value = labelled.values[dropped]
            detail = (
                f"conflicting classes '{kept_value}' and '{dropped_value}'"
                if kept_value != dropped_value
                else "duplicate entry"
            )
            diagnostics.report(
                DuplicateSampleWarning,
                f"Label '{labels.name}': {detail} for prefix '{prefix}'; "
                f"keeping '{kept_value}'",
                logger=logger,
                block=labels.name,
                prefix=prefix,
            )

        common = set(label_index)
        for block in block_list:
            common &= set(indices[block.name])
        if not common:
            sizes = ", ".join(
                f"{name}={len(idx)}" for name, idx in indices.items()
            )
            raise NoCommonSamplesError(
                f"No samples shared by all blocks and labels "
                f"(prefix length {length}; {sizes}, labels={len(label_index)})"
            )

        samples = sorted(common)
        aligned_blocks: Dict[str, Block] = {}
        for block in block_list:
            index = indices[block.name]
            aligned_blocks[block.name] = block.take_rows(
                [index[s] for s in samples], accessions=samples
            )
            logger.info(
                "Block '%s': kept %d of %d rows",
                block.name,
                len(samples),
                block.n_samples,
            )

        aligned_labels = labelled.take(
            [label_index[s] for s in samples], samples=samples
        )
        logger.info(
            "Aligned %d samples across %d blocks (%s)",
            len(samples),
            len(block_list),
            aligned_labels.class_counts(),
        )

        return AlignedDataset(
            samples=samples,
            blocks=aligned_blocks,
            labels=aligned_labels,
            diagnostics=diagnostics,
        )
