"""Categorical sample labels."""

from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np
import polars as pl

DEFAULT_MISSING_LABELS = ("NA", "")


class LabelVector:
    """Ordered mapping from sample ID to a class string.

    Missing entries are kept as None so alignment can report and discard
    them explicitly; `classes` only lists observed, non-missing classes.
    """

    def __init__(
        self,
        samples: Sequence[str],
        values: Sequence[Any],
        name: str = "label",
        missing_values: Sequence[str] = DEFAULT_MISSING_LABELS,
    ):
        if len(samples) != len(values):
            raise ValueError(
                f"samples ({len(samples)}) and values ({len(values)}) must have equal length"
            )
        missing = set(missing_values)
        self.name = name
        self.samples: List[str] = [str(s) for s in samples]
        self.values: List[Optional[str]] = []
        for value in values:
            if value is None or (
                isinstance(value, float) and np.isnan(value)
            ):
                self.values.append(None)
                continue
            text = str(value).strip()
            self.values.append(None if text in missing else text)

    @classmethod
    def from_mapping(
        cls, mapping: Mapping[str, Any], name: str = "label", **kwargs: Any
    ) -> "LabelVector":
        return cls(list(mapping.keys()), list(mapping.values()), name, **kwargs)

    @classmethod
    def from_df(
        cls,
        df: pl.DataFrame,
        label_column: Optional[str] = None,
        sample_column: str = "sample",
        **kwargs: Any,
    ) -> "LabelVector":
        """Create from a DataFrame with a sample column and a class column.

        The class column defaults to the first column that is not
        `sample_column`.
        """
        if sample_column not in df.columns:
            raise ValueError(
                f"Sample column '{sample_column}' not found in DataFrame columns"
            )
        if label_column is None:
            label_column = next(
                (c for c in df.columns if c != sample_column), None
            )
            if label_column is None:
                raise ValueError("label DataFrame has no value column")
        if label_column not in df.columns:
            raise ValueError(
                f"Label column '{label_column}' not found in DataFrame columns"
            )
        return cls(
            df.get_column(sample_column).cast(pl.Utf8).to_list(),
            df.get_column(label_column).cast(pl.Utf8).to_list(),
            name=label_column,
            **kwargs,
        )

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        label_column: Optional[str] = None,
        sample_column: str = "sample",
        separator: str = ",",
        missing_values: Sequence[str] = DEFAULT_MISSING_LABELS,
    ) -> "LabelVector":
        """Load labels from a delimited file; every column is read as text."""
        df = pl.read_csv(path, separator=separator, infer_schema=False)
        return cls.from_df(
            df,
            label_column=label_column,
            sample_column=sample_column,
            missing_values=missing_values,
        )

    @property
    def classes(self) -> List[str]:
        """Sorted list of observed classes."""
        return sorted({v for v in self.values if v is not None})

    @property
    def n_missing(self) -> int:
        return sum(v is None for v in self.values)

    def dropna(self) -> "LabelVector":
        """Return a LabelVector without missing entries."""
        kept = [(s, v) for s, v in self.items() if v is not None]
        return LabelVector(
            [s for s, _ in kept], [v for _, v in kept], name=self.name
        )

    def take(
        self,
        positions: Sequence[int],
        samples: Optional[Sequence[str]] = None,
    ) -> "LabelVector":
        """Return a new LabelVector of `positions`, optionally relabelled."""
        values = [self.values[i] for i in positions]
        names = (
            list(samples)
            if samples is not None
            else [self.samples[i] for i in positions]
        )
        return LabelVector(names, values, name=self.name)

    def class_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {c: 0 for c in self.classes}
        for v in self.values:
            if v is not None:
                counts[v] += 1
        return counts

    def to_array(self) -> np.ndarray:
        """Class values as an object array (None for missing)."""
        return np.asarray(self.values, dtype=object)

    def items(self) -> Iterator[Tuple[str, Optional[str]]]:
        return iter(zip(self.samples, self.values))

    def collect(self) -> pl.DataFrame:
        return pl.DataFrame(
            {"sample": self.samples, self.name: self.values},
            schema={"sample": pl.Utf8, self.name: pl.Utf8},
        )

    def __len__(self) -> int:
        return len(self.samples)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LabelVector):
            return NotImplemented
        return self.samples == other.samples and self.values == other.values

    def __repr__(self) -> str:
        return (
            f"LabelVector(name={self.name!r}, n={len(self)}, "
            f"classes={self.classes})"
        )
