"""Error and warning taxonomy shared by every processing step.

Fatal conditions raise a `MultiomicsError` subclass. Recoverable conditions
are reported through a `Diagnostics` collector: the condition is logged,
emitted as a `MultiomicsWarning` subclass via `warnings.warn`, and kept on
the result object so callers can inspect it after the run.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Type


class MultiomicsError(ValueError):
    """Base class for fatal integration errors."""


class MalformedBlockError(MultiomicsError):
    """A block contains non-numeric entries or mismatched dimensions."""

    def __init__(
        self,
        message: str,
        block: Optional[str] = None,
        row: Optional[str] = None,
        column: Optional[str] = None,
    ) -> None:
        location = []
        if block is not None:
            location.append(f"block '{block}'")
        if row is not None:
            location.append(f"row '{row}'")
        if column is not None:
            location.append(f"column '{column}'")
        if location:
            message = f"{message} ({', '.join(location)})"
        super().__init__(message)
        self.block = block
        self.row = row
        self.column = column


class NoCommonSamplesError(MultiomicsError):
    """No sample is shared by every block and the label vector."""


class MissingAllLabelsError(MultiomicsError):
    """Every candidate sample lacks a class label."""


class SingularBlockError(MultiomicsError):
    """A block has no usable (non-constant) feature."""

    def __init__(self, block: str) -> None:
        super().__init__(
            f"Block '{block}' has no non-constant features to model"
        )
        self.block = block


class InsufficientClassesError(MultiomicsError):
    """Fewer than two classes are available for discriminant modelling."""


class FoldTooSmallError(MultiomicsError):
    """The requested fold count cannot partition the samples."""


class MultiomicsWarning(UserWarning):
    """Base class for recoverable, reported conditions."""


class DuplicateSampleWarning(MultiomicsWarning):
    """Several rows collapsed to the same comparison prefix."""


class SmallBlockWarning(MultiomicsWarning):
    """A block has fewer features than requested."""


class NonConvergenceWarning(MultiomicsWarning):
    """The iterative fit reached its iteration cap."""


class DegenerateClassWarning(MultiomicsWarning):
    """A class has too few samples for a stable centroid."""


class ClassAbsentInFoldWarning(MultiomicsWarning):
    """A class is missing from a cross-validation fold."""


class NumericWarning(MultiomicsWarning):
    """A result contains non-finite values."""


@dataclass(frozen=True)
class Diagnostic:
    """One recorded recoverable condition."""

    category: Type[MultiomicsWarning]
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.category.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            **{k: str(v) for k, v in self.context.items()},
        }


class Diagnostics:
    """Ordered collection of `Diagnostic` records."""

    def __init__(self, records: Optional[Iterable[Diagnostic]] = None):
        self._records: List[Diagnostic] = list(records or [])

    def report(
        self,
        category: Type[MultiomicsWarning],
        message: str,
        logger: Optional[logging.Logger] = None,
        emit: bool = True,
        **context: Any,
    ) -> Diagnostic:
        """Record a condition, log it and (optionally) emit a warning."""
        record = Diagnostic(category, message, dict(context))
        self._records.append(record)
        (logger or logging.getLogger(__name__)).warning(
            "%s: %s", record.kind, message
        )
        if emit:
            warnings.warn(message, category, stacklevel=3)
        return record

    def extend(self, other: Iterable[Diagnostic]) -> None:
        self._records.extend(other)

    def of_kind(self, category: Type[MultiomicsWarning]) -> List[Diagnostic]:
        """Return the records of `category` (subclasses included)."""
        return [r for r in self._records if issubclass(r.category, category)]

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._records]

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)

    def __repr__(self) -> str:
        return f"Diagnostics({[r.kind for r in self._records]})"
