"""Configuration classes for multi-omics integration workflows.

This module provides the configuration classes passed explicitly into every
processing step (alignment, feature selection, modelling and
cross-validation), plus the YAML file loader behind `PipelineConfig.from_yaml`.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml  # type: ignore

from multiomics_ml.utils.identifiers import resolve_prefix_length


class DistanceMetric(Enum):
    """Enumeration of available class assignment rules in score space."""

    MAX_DIST = "max_dist"
    CENTROIDS_DIST = "centroids_dist"
    MAHALANOBIS_DIST = "mahalanobis_dist"


KeepSpec = Union[int, float, Mapping[str, Union[int, float]]]


def _coerce_distances(values: Any) -> Tuple[DistanceMetric, ...]:
    if isinstance(values, (str, DistanceMetric)):
        values = [values]
    distances = []
    for value in values:
        if isinstance(value, DistanceMetric):
            distances.append(value)
        elif isinstance(value, str):
            distances.append(DistanceMetric(value))
        else:
            raise ValueError(f"Invalid distance metric: {value}")
    if not distances:
        raise ValueError("At least one distance metric is required")
    return tuple(distances)


@dataclass
class AlignmentConfig:
    """Configuration for sample alignment across blocks and labels."""

    prefix_length: Union[int, str] = 12
    normalise_separators: bool = True
    missing_labels: Tuple[str, ...] = ("NA", "")

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.prefix_length = resolve_prefix_length(self.prefix_length)
        self.missing_labels = tuple(self.missing_labels)


@dataclass
class SelectionConfig:
    """Configuration for per-block variance feature selection.

    `n_features` is either a single count used for every block or a mapping
    from block name to count. Blocks missing from the mapping are kept whole.
    """

    n_features: Union[int, Dict[str, int]] = 5000

    def __post_init__(self) -> None:
        counts = (
            self.n_features.values()
            if isinstance(self.n_features, dict)
            else [self.n_features]
        )
        for count in counts:
            if int(count) <= 0:
                raise ValueError(
                    f"n_features must be positive, got {count}"
                )

    def for_block(self, name: str) -> Optional[int]:
        """Return the feature budget for `name` (None keeps all columns)."""
        if isinstance(self.n_features, dict):
            value = self.n_features.get(name)
            return None if value is None else int(value)
        return int(self.n_features)


@dataclass
class ModelConfig:
    """Configuration for the multi-block sparse discriminant model.

    `keep` is the number of non-zero loadings per block and component. An
    int is a count, a float in (0, 1] is a fraction of the block's features,
    and a mapping gives per-block values. None disables sparsity.
    """

    n_components: int = 2
    keep: Optional[KeepSpec] = None
    design: float = 0.1
    scale: bool = True
    tol: float = 1e-6
    max_iter: int = 500

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if int(self.n_components) < 1:
            raise ValueError(
                f"n_components must be >= 1, got {self.n_components}"
            )
        if not 0.0 <= float(self.design) <= 1.0:
            raise ValueError(
                f"design must lie in [0, 1], got {self.design}"
            )
        if float(self.tol) <= 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if int(self.max_iter) < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")
        self.n_components = int(self.n_components)
        self.max_iter = int(self.max_iter)

    def keep_for(self, name: str, n_features: int) -> int:
        """Resolve the number of non-zero loadings for a block."""
        spec: Any = self.keep
        if isinstance(spec, Mapping):
            spec = spec.get(name)
        if spec is None:
            return n_features
        if isinstance(spec, float):
            if not 0.0 < spec <= 1.0:
                raise ValueError(
                    f"Fractional keep for block '{name}' must lie in (0, 1], got {spec}"
                )
            return max(1, min(n_features, int(round(spec * n_features))))
        count = int(spec)
        if count < 1:
            raise ValueError(
                f"keep for block '{name}' must be >= 1, got {count}"
            )
        return min(count, n_features)


@dataclass
class CrossValidationConfig:
    """Configuration for repeated k-fold cross-validation."""

    n_folds: int = 5
    n_repeats: int = 10
    distances: Tuple[DistanceMetric, ...] = (
        DistanceMetric.MAX_DIST,
        DistanceMetric.CENTROIDS_DIST,
        DistanceMetric.MAHALANOBIS_DIST,
    )
    seed: int = 42
    n_jobs: int = 1
    stratify: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.distances = _coerce_distances(self.distances)
        if int(self.n_folds) < 2:
            raise ValueError(f"n_folds must be >= 2, got {self.n_folds}")
        if int(self.n_repeats) < 1:
            raise ValueError(
                f"n_repeats must be >= 1, got {self.n_repeats}"
            )
        if int(self.n_jobs) < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}")
        self.n_folds = int(self.n_folds)
        self.n_repeats = int(self.n_repeats)
        self.n_jobs = int(self.n_jobs)


@dataclass
class PipelineConfig:
    """Bundle of every step configuration used by `IntegrationPipeline`."""

    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    cross_validation: CrossValidationConfig = field(
        default_factory=CrossValidationConfig
    )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        """Build a PipelineConfig from nested plain dictionaries."""
        unknown = set(data) - {
            "alignment",
            "selection",
            "model",
            "cross_validation",
        }
        if unknown:
            raise ValueError(
                f"Unknown configuration sections: {sorted(unknown)}"
            )
        alignment = dict(data.get("alignment") or {})
        if "missing_labels" in alignment:
            alignment["missing_labels"] = tuple(alignment["missing_labels"])
        return cls(
            alignment=AlignmentConfig(**alignment),
            selection=SelectionConfig(**(data.get("selection") or {})),
            model=ModelConfig(**(data.get("model") or {})),
            cross_validation=CrossValidationConfig(
                **(data.get("cross_validation") or {})
            ),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Load a PipelineConfig from a YAML file."""
        return cls.from_dict(Config(path).to_dict())


class Config:
    """Raw contents of a YAML configuration file."""

    def __init__(self, config_path: Union[str, Path]):
        """Load configuration from a YAML file.

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}"
            )

        with open(self.config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(
                f"Configuration file {config_path} must hold a mapping"
            )
        self._data: Dict[str, Any] = data

    def to_dict(self) -> Dict[str, Any]:
        """Return a shallow copy of the loaded mapping."""
        return self._data.copy()
