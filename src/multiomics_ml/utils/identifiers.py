import re
from enum import IntEnum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

_SEPARATORS = re.compile(r"[._]")


class BarcodeLevel(IntEnum):
    """Standard comparison-prefix lengths of TCGA-style sample barcodes.

    The value is the number of leading characters compared, e.g.
    ``TCGA-A1-A0SB`` (participant) or ``TCGA-A1-A0SB-01A`` (vial).
    """

    PARTICIPANT = 12
    SAMPLE = 15
    VIAL = 16
    PORTION = 19
    ALIQUOT = 28

    @property
    def name(self) -> str:
        return super().name.lower()

    @property
    def finer(self) -> Optional["BarcodeLevel"]:
        """Get the next, more specific barcode level."""
        members = list(BarcodeLevel)
        idx = members.index(self)
        return members[idx + 1] if idx + 1 < len(members) else None

    @property
    def coarser(self) -> Optional["BarcodeLevel"]:
        """Get the next, broader barcode level."""
        members = list(BarcodeLevel)
        idx = members.index(self)
        return members[idx - 1] if idx > 0 else None

    @classmethod
    def from_name(cls, level: str) -> "BarcodeLevel":
        """Get enum member from level name."""
        try:
            return cls[level.upper()]  # type: ignore
        except KeyError:
            raise ValueError(f"Invalid barcode level: {level}")

    @classmethod
    def iter_from_participant(cls) -> Iterator["BarcodeLevel"]:
        """Yield levels from PARTICIPANT (broadest) to ALIQUOT."""
        level: Optional[BarcodeLevel] = cls.PARTICIPANT
        while level is not None:
            yield level
            level = level.finer

    def prefix(self, sample_id: str, normalise: bool = True) -> str:
        return comparison_prefix(sample_id, int(self), normalise)


PrefixLength = Union[int, BarcodeLevel, str]


def resolve_prefix_length(length: PrefixLength) -> int:
    """Accept an int, a BarcodeLevel or a level name."""
    if isinstance(length, str):
        return int(BarcodeLevel.from_name(length))
    value = int(length)
    if value <= 0:
        raise ValueError(f"Prefix length must be positive, got {value}")
    return value


def comparison_prefix(
    sample_id: str, length: PrefixLength, normalise: bool = True
) -> str:
    """Reduce a sample identifier to its fixed-length comparison prefix.

    When `normalise` is set, ``.`` and ``_`` separators (as produced by
    R-style column name mangling) are mapped to ``-`` first and the result
    is upper-cased, so ``tcga.a1.a0sb.01a`` and ``TCGA-A1-A0SB-01A`` compare
    equal. Identifiers shorter than `length` are kept whole.
    """
    text = str(sample_id).strip()
    if normalise:
        text = _SEPARATORS.sub("-", text).upper()
    return text[: resolve_prefix_length(length)]


def first_occurrence_index(
    sample_ids: Iterable[str], length: PrefixLength, normalise: bool = True
) -> Tuple[Dict[str, int], List[Tuple[str, int, int]]]:
    """Build an ordered prefix -> row index, keeping the first occurrence.

    Returns:
        The index and a list of ``(prefix, kept_row, dropped_row)`` tuples
        for every collapsed duplicate.
    """
    index: Dict[str, int] = {}
    collapsed: List[Tuple[str, int, int]] = []
    for row, sample_id in enumerate(sample_ids):
        key = comparison_prefix(sample_id, length, normalise)
        if key in index:
            collapsed.append((key, index[key], row))
            continue
        index[key] = row
    return index, collapsed
