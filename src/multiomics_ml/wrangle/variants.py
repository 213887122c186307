"""Flatten somatic mutation (MAF) records into a compact variant table.

Usage:
    from multiomics_ml.wrangle.variants import flatten_mafs
    table = flatten_mafs(maf_paths, out="mutations.csv")

Every field is read as text so files with differently inferred column types
concatenate cleanly; files that cannot be parsed are skipped with a logged
warning.
"""

import gzip
import io
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import polars as pl

logger = logging.getLogger(__name__)

# MAF column -> exported column
VARIANT_COLUMNS: Dict[str, str] = {
    "Hugo_Symbol": "Gene",
    "Chromosome": "Chromosome",
    "Start_Position": "Position",
    "Reference_Allele": "Ref",
    "Tumor_Seq_Allele2": "Alt",
    "Variant_Classification": "Classification",
}


def read_maf(path: Union[str, Path]) -> Optional[pl.DataFrame]:
    """Read one tab-separated MAF file with every column as text.

    Returns None (and logs a warning) when the file cannot be read.
    """
    path = Path(path)
    try:
        if path.suffix == ".gz":
            with gzip.open(path, "rb") as fh:
                source: Union[Path, io.BytesIO] = io.BytesIO(fh.read())
        else:
            source = path
        return pl.read_csv(
            source,
            separator="\t",
            comment_prefix="#",
            infer_schema=False,
            quote_char=None,
        )
    except (OSError, pl.exceptions.PolarsError) as exc:
        logger.warning("Skipping unreadable MAF %s: %s", path, exc)
        return None


def flatten_mafs(
    paths: Iterable[Union[str, Path]],
    out: Optional[Union[str, Path]] = None,
    columns: Optional[Dict[str, str]] = None,
) -> pl.DataFrame:
    """Concatenate MAF files and project them onto the variant columns.

    Args:
        paths: MAF files (plain or gzipped)
        out: Optional CSV destination
        columns: Mapping of source column to exported name (defaults to
            `VARIANT_COLUMNS`)

    Returns:
        DataFrame with one row per variant record

    Raises:
        ValueError: If no file could be read or a required column is absent
    """
    mapping = columns or VARIANT_COLUMNS
    frames: List[pl.DataFrame] = []
    for path in paths:
        frame = read_maf(path)
        if frame is not None:
            frames.append(frame)
    if not frames:
        raise ValueError("No readable MAF files were provided")

    merged = pl.concat(frames, how="diagonal")
    missing = [c for c in mapping if c not in merged.columns]
    if missing:
        raise ValueError(f"MAF records lack required columns: {missing}")

    table = merged.select(
        [pl.col(src).alias(dst) for src, dst in mapping.items()]
    )
    logger.info(
        "Flattened %d variant records from %d file(s)",
        table.height,
        len(frames),
    )
    if out is not None:
        out = Path(out)
        out.parent.mkdir(parents=True, exist_ok=True)
        table.write_csv(out)
    return table
