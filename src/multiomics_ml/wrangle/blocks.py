"""Omics block management: typed sample-by-feature matrices."""

import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Union

import numpy as np
import polars as pl

from multiomics_ml.core.errors import MalformedBlockError

logger = logging.getLogger(__name__)

# standardised error messages
ERR_BLOCK_NAME_UNDEFINED = "Block name must be defined"
ERR_NO_ACCESSION_COLUMN = (
    "No accession column found. Expected 'sample' or 'acc' column, or specify acc_column"
)

DEFAULT_MISSING_VALUES = ("NA", "")


def _first_bad_entry(values: np.ndarray) -> Optional[tuple[int, int]]:
    """Locate the first entry that is not a number (None counts as missing)."""
    for (row, col), value in np.ndenumerate(values):
        if value is None:
            continue
        if isinstance(value, (str, bytes)):
            return row, col
        try:
            float(value)
        except (TypeError, ValueError):
            return row, col
    return None


class Block:
    """One omics modality: rows are samples, columns are features.

    The numeric buffer is float64 and read-only; NaN is the only accepted
    missing marker. Every projection (`take_rows`, `select_features`,
    `filter_samples`) returns a new Block and leaves this one untouched.
    """

    def __init__(
        self,
        accessions: Sequence[str],
        feature_names: Sequence[str],
        data: Any,
        name: Optional[str],
    ):
        """Initialize Block.

        Args:
            accessions: Ordered sample IDs, one per row
            feature_names: Ordered feature names, one per column
            data: 2D array-like of numbers
            name: Name for the Block (e.g. "expression")

        Raises:
            MalformedBlockError: If the name is missing, dimensions don't
                match, or an entry is non-numeric or infinite
        """
        if name is None:
            raise MalformedBlockError(ERR_BLOCK_NAME_UNDEFINED)

        self.name = name
        self.accessions = [str(a) for a in accessions]
        self.feature_names = [str(f) for f in feature_names]

        raw = np.asarray(data)
        if raw.ndim != 2:
            raise MalformedBlockError(
                f"Block data must be 2D, got {raw.ndim}D", block=name
            )
        if raw.shape[0] != len(self.accessions):
            raise MalformedBlockError(
                f"Data rows ({raw.shape[0]}) must match accessions length ({len(self.accessions)})",
                block=name,
            )
        if raw.shape[1] != len(self.feature_names):
            raise MalformedBlockError(
                f"Data cols ({raw.shape[1]}) must match feature_names length ({len(self.feature_names)})",
                block=name,
            )
        seen: set = set()
        for fname in self.feature_names:
            if fname in seen:
                raise MalformedBlockError(
                    "Duplicate feature name", block=name, column=fname
                )
            seen.add(fname)

        if raw.dtype.kind in "OUS":
            bad = _first_bad_entry(raw)
            if bad is not None:
                row, col = bad
                raise MalformedBlockError(
                    f"Non-numeric entry {raw[row, col]!r}",
                    block=name,
                    row=self.accessions[row],
                    column=self.feature_names[col],
                )
            if raw.dtype.kind == "O":
                raw = np.where(np.equal(raw, None), np.nan, raw)
        values = raw.astype(np.float64)

        infinite = np.isinf(values)
        if infinite.any():
            row, col = np.argwhere(infinite)[0]
            raise MalformedBlockError(
                "Infinite entry (use NaN for missing values)",
                block=name,
                row=self.accessions[row],
                column=self.feature_names[col],
            )

        values = np.ascontiguousarray(values)
        values.setflags(write=False)
        self._data = values

        # Cache indices for O(1) lookups
        self._accession_idx = {
            acc: i for i, acc in enumerate(self.accessions)
        }
        self._feature_idx = {
            fname: i for i, fname in enumerate(self.feature_names)
        }

    @property
    def data(self) -> np.ndarray:
        """Read-only float64 matrix of shape (n_samples, n_features)."""
        return self._data

    @property
    def n_samples(self) -> int:
        return self._data.shape[0]

    @property
    def n_features(self) -> int:
        return self._data.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_samples, self.n_features)

    @property
    def has_missing(self) -> bool:
        return bool(np.isnan(self._data).any())

    def first_missing(self) -> Optional[tuple[str, str]]:
        """Return (sample, feature) of the first missing entry, if any."""
        missing = np.argwhere(np.isnan(self._data))
        if missing.size == 0:
            return None
        row, col = missing[0]
        return self.accessions[row], self.feature_names[col]

    def get_sample_accs(self) -> List[str]:
        """Get list of all sample/accession IDs."""
        return self.accessions.copy()

    def get_feature_names(self) -> List[str]:
        """Get list of all feature names."""
        return self.feature_names.copy()

    def take_rows(
        self,
        rows: Iterable[int],
        accessions: Optional[Sequence[str]] = None,
    ) -> "Block":
        """Return a new Block holding `rows` in the given order.

        Args:
            rows: Row positions to keep (order is preserved)
            accessions: Optional replacement row labels for the new Block
        """
        idx = np.asarray(list(rows), dtype=int)
        labels = (
            list(accessions)
            if accessions is not None
            else [self.accessions[i] for i in idx]
        )
        return Block(
            accessions=labels,
            feature_names=self.feature_names.copy(),
            data=self._data[idx, :],
            name=self.name,
        )

    def select_features(
        self, features: Union[Sequence[int], Sequence[str]]
    ) -> "Block":
        """Return a new Block restricted to `features` (positions or names)."""
        cols = []
        for f in features:
            if isinstance(f, str):
                if f not in self._feature_idx:
                    raise ValueError(
                        f"Feature '{f}' not found in block '{self.name}'"
                    )
                cols.append(self._feature_idx[f])
            else:
                cols.append(int(f))
        return Block(
            accessions=self.accessions.copy(),
            feature_names=[self.feature_names[c] for c in cols],
            data=self._data[:, cols],
            name=self.name,
        )

    def filter_samples(self, sample_ids: List[str]) -> "Block":
        """Filter to subset of samples, keeping this Block's row order.

        Args:
            sample_ids: List of sample IDs to keep

        Returns:
            New Block with filtered data
        """
        keep = set(sample_ids)
        rows = [i for i, acc in enumerate(self.accessions) if acc in keep]
        return self.take_rows(rows)

    def get_samples(self, sample_ids: List[str]) -> np.ndarray:
        """Get features for specific samples, in the requested order.

        Args:
            sample_ids: List of sample IDs to retrieve

        Returns:
            numpy array of shape (len(sample_ids), n_features)
        """
        missing = [s for s in sample_ids if s not in self._accession_idx]
        if missing:
            raise ValueError(f"Sample IDs {missing} not found in Block")
        rows = [self._accession_idx[s] for s in sample_ids]
        return self._data[rows, :]

    def get_features(self, feature_names: List[str]) -> np.ndarray:
        """Get features for specific feature names.

        Args:
            feature_names: List of feature names to retrieve

        Returns:
            numpy array of shape (n_samples, len(feature_names))
        """
        missing = set(feature_names) - set(self._feature_idx)
        if missing:
            raise ValueError(
                f"Feature names {missing} not found in Block"
            )
        cols = [self._feature_idx[f] for f in feature_names]
        return self._data[:, cols]

    def collect(self) -> pl.DataFrame:
        """Convert to a wide-form DataFrame with a leading `sample` column."""
        columns = {"sample": pl.Series(self.accessions, dtype=pl.Utf8)}
        for i, fname in enumerate(self.feature_names):
            columns[fname] = pl.Series(self._data[:, i], dtype=pl.Float64)
        return pl.DataFrame(columns)

    def to_df(self) -> pl.DataFrame:
        """Alias of `collect`."""
        return self.collect()

    def save(self, path: Union[Path, str]) -> None:
        """Save Block to disk as a .csv file (missing values written empty)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.collect().write_csv(path)

    @classmethod
    def from_df(
        cls,
        df: pl.DataFrame,
        name: str,
        **kwargs: Any,
    ) -> "Block":
        """Create Block from a wide-form DataFrame.

        Non-numeric columns are rejected with the offending row and column
        named; nulls become NaN.

        Args:
            df: Wide-form DataFrame with features as columns
            name: Name for the Block
            **kwargs: Additional arguments including acc_column

        Returns:
            Block instance
        """
        acc_column = kwargs.get("acc_column")

        # Auto-detect accession column
        if acc_column is None:
            if "sample" in df.columns:
                acc_column = "sample"
            elif "acc" in df.columns:
                acc_column = "acc"
            else:
                raise ValueError(ERR_NO_ACCESSION_COLUMN)

        if acc_column not in df.columns:
            raise ValueError(
                f"Specified acc_column '{acc_column}' not found in DataFrame columns"
            )

        accessions = df.get_column(acc_column).cast(pl.Utf8).to_list()
        feature_names = [col for col in df.columns if col != acc_column]
        features = df.select(feature_names)

        for col in feature_names:
            series = features.get_column(col)
            if series.dtype.is_numeric():
                continue
            cast = series.cast(pl.Float64, strict=False)
            bad = (cast.is_null() & series.is_not_null()).arg_true()
            if bad.len() > 0:
                row = bad[0]
                raise MalformedBlockError(
                    f"Non-numeric entry {series[row]!r}",
                    block=name,
                    row=accessions[row],
                    column=col,
                )

        values = (
            features.select(
                [pl.col(c).cast(pl.Float64) for c in feature_names]
            ).to_numpy()
            if feature_names
            else np.empty((len(accessions), 0))
        )
        return cls(
            accessions=accessions,
            feature_names=feature_names,
            data=values,
            name=name,
        )

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        name: Optional[str] = None,
        acc_column: Optional[str] = None,
        separator: str = ",",
        transpose: bool = False,
        missing_values: Sequence[str] = DEFAULT_MISSING_VALUES,
    ) -> "Block":
        """Load a Block from a delimited text file.

        Args:
            path: Path to the file
            name: Name for the Block (defaults to the file stem)
            acc_column: Identifier column (auto-detected when omitted; for
                transposed files the first column is used)
            separator: Field delimiter
            transpose: The file stores features as rows and samples as
                columns (common for expression/methylation matrices)
            missing_values: Strings read as missing (NaN)

        Returns:
            Loaded Block instance
        """
        path = Path(path)
        if name is None:
            name = path.stem

        df = pl.read_csv(
            path,
            separator=separator,
            null_values=list(missing_values),
            infer_schema_length=None,
        )
        logger.info(
            "Loaded block '%s' from %s with shape %s", name, path, df.shape
        )

        if not transpose:
            return cls.from_df(df, name=name, acc_column=acc_column)

        id_col = acc_column or df.columns[0]
        feature_names = df.get_column(id_col).cast(pl.Utf8).to_list()
        samples = [c for c in df.columns if c != id_col]
        block = cls.from_df(
            df.select(samples).with_columns(
                pl.Series("sample", feature_names)
            ),
            name=name,
            acc_column="sample",
        )
        return cls(
            accessions=samples,
            feature_names=block.accessions,
            data=block.data.T,
            name=name,
        )

    def __repr__(self) -> str:
        return (
            f"Block(name={self.name!r}, n_samples={self.n_samples}, "
            f"n_features={self.n_features})"
        )
