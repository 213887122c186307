"""Consolidated multi-omics data wrangling utilities."""

from .alignment import AlignedDataset, SampleAligner
from .blocks import Block
from .labels import LabelVector
from .selection import FeatureSelector
from .splits import SplitManager

__all__ = [
    "Block",
    "LabelVector",
    "AlignedDataset",
    "SampleAligner",
    "FeatureSelector",
    "SplitManager",
]
