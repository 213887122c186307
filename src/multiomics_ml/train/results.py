"""Cross-validated performance of a multi-block model.

Typical workflow:

    report = CrossValidator(dataset, model_config, cv_config).run()
    report.get(2, "centroids_dist").error_rate
    report.export("out/cv_results")

`export(...)` writes these artifacts side-by-side:
- `results.ndjson`: one JSON record per (n_components, distance)
- `results_summary.csv`: one row per (n_components, distance)
- `results_folds.csv`: one row per (repeat, fold, n_components, distance)
- `predictions.csv`: held-out prediction of every sample in every repeat
- `stability.csv`: selection frequency of every feature (when recorded)
- `manifest.json`: export metadata and file inventory
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from sklearn.metrics import accuracy_score, recall_score

from multiomics_ml.core.config import DistanceMetric
from multiomics_ml.core.errors import Diagnostics

Key = Tuple[int, DistanceMetric]


@dataclass(frozen=True)
class FoldOutcome:
    """Held-out predictions of one (repeat, fold) training cycle.

    `predictions` maps (n_components, distance) to the predicted class of
    every held-out sample, in the order of `test_idx`.
    `trained_classes` lists the classes the fold was trained on; a fold
    trained on a single class predicts that class for every sample.
    """

    repeat: int
    fold: int
    test_idx: np.ndarray
    truth: np.ndarray
    predictions: Dict[Key, np.ndarray]
    absent_classes: Tuple[str, ...] = ()
    converged: bool = True
    trained_classes: Tuple[str, ...] = ()

    def error_rate(self, key: Key) -> float:
        return 1.0 - float(accuracy_score(self.truth, self.predictions[key]))

    def balanced_error_rate(self, key: Key) -> float:
        """Mean per-class error over the classes present in this fold."""
        recall = recall_score(
            self.truth,
            self.predictions[key],
            labels=sorted(set(self.truth)),
            average="macro",
            zero_division=0,
        )
        return 1.0 - float(recall)

    def class_error_rates(self, key: Key) -> Dict[str, float]:
        """Error within each class present in this fold."""
        predicted = self.predictions[key]
        return {
            str(c): float(np.mean(predicted[self.truth == c] != c))
            for c in sorted(set(self.truth))
        }


@dataclass(frozen=True)
class PerformanceRecord:
    """Aggregated error of one partial model and distance rule.

    `repeat_error_rates[r]` is the mean over the folds of repeat r; the
    reported error is the mean over repeats and `error_rate_std` its
    population standard deviation (0 for a single repeat).
    """

    n_components: int
    distance: DistanceMetric
    error_rate: float
    error_rate_std: float
    balanced_error_rate: float
    balanced_error_rate_std: float
    repeat_error_rates: Tuple[float, ...]
    repeat_balanced_error_rates: Tuple[float, ...]
    class_error_rates: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_components": self.n_components,
            "distance": self.distance.value,
            "error_rate": self.error_rate,
            "error_rate_std": self.error_rate_std,
            "balanced_error_rate": self.balanced_error_rate,
            "balanced_error_rate_std": self.balanced_error_rate_std,
            "repeat_error_rates": list(self.repeat_error_rates),
            "repeat_balanced_error_rates": list(
                self.repeat_balanced_error_rates
            ),
            "class_error_rates": dict(self.class_error_rates),
        }


def _sanitize_segment(value: Optional[str], fallback: str) -> str:
    text = str(value) if value else fallback
    sanitized = re.sub(r"[^A-Za-z0-9_\-\.]+", "_", text)
    return sanitized.strip("_") or fallback


def _serialize_value(v: Any) -> Any:
    """Make values JSON/Polars-friendly."""
    if isinstance(v, Path):
        return str(v)
    if v is None or isinstance(v, (str, bool, int, float)):
        return v
    if isinstance(v, DistanceMetric):
        return v.value
    if isinstance(v, np.floating):
        return float(v)
    if isinstance(v, np.integer):
        return int(v)
    if isinstance(v, np.ndarray):
        return [_serialize_value(x) for x in v.tolist()]
    if isinstance(v, (list, tuple)):
        return [_serialize_value(x) for x in v]
    if isinstance(v, dict):
        return {str(k): _serialize_value(x) for k, x in v.items()}
    return str(v)


class PerformanceReport:
    """Mapping from (n_components, distance) to aggregated error statistics.

    Built from per-fold outcomes with an order-independent reduction: folds
    are sorted by (repeat, fold) before any averaging, so the report does not
    depend on the order in which worker threads finished.
    """

    def __init__(
        self,
        records: Dict[Key, PerformanceRecord],
        folds: Sequence[FoldOutcome],
        samples: Sequence[str],
        labels: Sequence[str],
        stability: Optional[Dict[str, np.ndarray]] = None,
        feature_names: Optional[Dict[str, List[str]]] = None,
        diagnostics: Optional[Diagnostics] = None,
        complete: bool = True,
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.records = dict(records)
        self.folds = sorted(folds, key=lambda f: (f.repeat, f.fold))
        self.samples = list(samples)
        self.labels = list(labels)
        self.stability = dict(stability or {})
        self.feature_names = dict(feature_names or {})
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.complete = complete
        self.settings = dict(settings or {})

    @classmethod
    def from_folds(
        cls,
        folds: Iterable[FoldOutcome],
        samples: Sequence[str],
        labels: Sequence[str],
        **kwargs: Any,
    ) -> "PerformanceReport":
        """Aggregate fold outcomes: fold mean per repeat, then across repeats."""
        ordered = sorted(folds, key=lambda f: (f.repeat, f.fold))
        if not ordered:
            raise ValueError("At least one fold outcome is required")
        keys = sorted(
            ordered[0].predictions,
            key=lambda k: (k[0], list(DistanceMetric).index(k[1])),
        )
        repeats = sorted({f.repeat for f in ordered})

        records: Dict[Key, PerformanceRecord] = {}
        for key in keys:
            err_by_repeat = []
            ber_by_repeat = []
            class_by_repeat: Dict[str, List[float]] = {}
            for r in repeats:
                in_repeat = [f for f in ordered if f.repeat == r]
                # a class only counts in the folds that held it out
                per_class: Dict[str, List[float]] = {}
                for f in in_repeat:
                    for c, err in f.class_error_rates(key).items():
                        per_class.setdefault(c, []).append(err)
                for c, errs in per_class.items():
                    class_by_repeat.setdefault(c, []).append(float(np.mean(errs)))
                err_by_repeat.append(
                    float(np.mean([f.error_rate(key) for f in in_repeat]))
                )
                ber_by_repeat.append(
                    float(
                        np.mean([f.balanced_error_rate(key) for f in in_repeat])
                    )
                )
            records[key] = PerformanceRecord(
                n_components=key[0],
                distance=key[1],
                error_rate=float(np.mean(err_by_repeat)),
                error_rate_std=float(np.std(err_by_repeat)),
                balanced_error_rate=float(np.mean(ber_by_repeat)),
                balanced_error_rate_std=float(np.std(ber_by_repeat)),
                repeat_error_rates=tuple(err_by_repeat),
                repeat_balanced_error_rates=tuple(ber_by_repeat),
                class_error_rates={
                    c: float(np.mean(v)) for c, v in sorted(class_by_repeat.items())
                },
            )
        return cls(records, ordered, samples, labels, **kwargs)

    # ----- access -----

    def get(
        self, n_components: int, distance: Union[str, DistanceMetric]
    ) -> PerformanceRecord:
        return self.records[(int(n_components), DistanceMetric(distance))]

    def __getitem__(self, key: Tuple[int, Union[str, DistanceMetric]]) -> PerformanceRecord:
        return self.get(*key)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        try:
            return (int(key[0]), DistanceMetric(key[1])) in self.records
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records.values())

    def best(self, metric: str = "balanced_error_rate") -> PerformanceRecord:
        """Lowest mean error; ties favour fewer components."""
        if metric not in ("error_rate", "balanced_error_rate"):
            raise ValueError(f"Unknown metric: {metric}")
        return min(self.records.values(), key=lambda r: getattr(r, metric))

    # ----- tables -----

    def to_dataframe(self) -> pl.DataFrame:
        """One row per (n_components, distance) with mean and std errors."""
        rows = [
            {
                k: v
                for k, v in rec.to_dict().items()
                if not k.startswith(("repeat_", "class_"))
            }
            for rec in self.records.values()
        ]
        return pl.DataFrame(
            rows,
            schema={
                "n_components": pl.Int64,
                "distance": pl.Utf8,
                "error_rate": pl.Float64,
                "error_rate_std": pl.Float64,
                "balanced_error_rate": pl.Float64,
                "balanced_error_rate_std": pl.Float64,
            },
        )

    def folds_frame(self) -> pl.DataFrame:
        rows = []
        for fold in self.folds:
            for key in self.records:
                rows.append(
                    {
                        "repeat": fold.repeat,
                        "fold": fold.fold,
                        "n_components": key[0],
                        "distance": key[1].value,
                        "n_test": int(len(fold.test_idx)),
                        "error_rate": fold.error_rate(key),
                        "balanced_error_rate": fold.balanced_error_rate(key),
                        "absent_classes": ";".join(fold.absent_classes),
                        "trained_classes": ";".join(fold.trained_classes),
                    }
                )
        return pl.DataFrame(
            rows,
            schema={
                "repeat": pl.Int64,
                "fold": pl.Int64,
                "n_components": pl.Int64,
                "distance": pl.Utf8,
                "n_test": pl.Int64,
                "error_rate": pl.Float64,
                "balanced_error_rate": pl.Float64,
                "absent_classes": pl.Utf8,
                "trained_classes": pl.Utf8,
            },
        )

    def predictions_frame(self) -> pl.DataFrame:
        """Long table of held-out predictions (one row per sample and model)."""
        rows = []
        for fold in self.folds:
            for key, predicted in fold.predictions.items():
                for i, pos in enumerate(fold.test_idx):
                    rows.append(
                        {
                            "repeat": fold.repeat,
                            "fold": fold.fold,
                            "sample": self.samples[int(pos)],
                            "label": self.labels[int(pos)],
                            "n_components": key[0],
                            "distance": key[1].value,
                            "predicted": str(predicted[i]),
                        }
                    )
        return pl.DataFrame(
            rows,
            schema={
                "repeat": pl.Int64,
                "fold": pl.Int64,
                "sample": pl.Utf8,
                "label": pl.Utf8,
                "n_components": pl.Int64,
                "distance": pl.Utf8,
                "predicted": pl.Utf8,
            },
        ).sort(["repeat", "n_components", "distance", "sample"])

    def stability_frame(self) -> pl.DataFrame:
        """Fraction of fold fits in which each feature had a non-zero loading."""
        frames = []
        for block, freq in self.stability.items():
            names = self.feature_names.get(block) or [
                f"feature_{i}" for i in range(freq.shape[0])
            ]
            for comp in range(freq.shape[1]):
                frames.append(
                    pl.DataFrame(
                        {
                            "block": [block] * len(names),
                            "feature": names,
                            "component": [comp + 1] * len(names),
                            "frequency": freq[:, comp].astype(float),
                        },
                        schema={
                            "block": pl.Utf8,
                            "feature": pl.Utf8,
                            "component": pl.Int64,
                            "frequency": pl.Float64,
                        },
                    )
                )
        if not frames:
            return pl.DataFrame(
                schema={
                    "block": pl.Utf8,
                    "feature": pl.Utf8,
                    "component": pl.Int64,
                    "frequency": pl.Float64,
                }
            )
        return pl.concat(frames)

    # ----- serialization -----

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complete": self.complete,
            "n_folds_run": len(self.folds),
            "settings": _serialize_value(self.settings),
            "results": [rec.to_dict() for rec in self.records.values()],
            "diagnostics": self.diagnostics.to_list(),
        }

    def to_json(
        self, path: Optional[Union[str, Path]] = None, indent: int = 2
    ) -> str:
        """Return a JSON string for this report and optionally write it."""
        j = json.dumps(self.to_dict(), indent=indent)
        if path:
            Path(path).write_text(j)
        return j

    def to_csv(self, path: Union[str, Path]) -> None:
        outp = Path(path)
        outp.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataframe().write_csv(outp)

    def export(
        self,
        path: Union[str, Path],
        name: Optional[str] = None,
        indent: int = 2,
    ) -> Path:
        """Export the report tables and a manifest under `path`.

        Args:
            path: Output directory (a file path exports next to that file)
            name: Optional sub-directory name, sanitised for the filesystem
            indent: JSON indentation for the manifest

        Returns:
            Directory the files were written to
        """
        out_dir = Path(path)
        if out_dir.exists() and out_dir.is_file():
            out_dir = out_dir.parent
        if name is not None:
            out_dir = out_dir / _sanitize_segment(name, "report")
        out_dir.mkdir(parents=True, exist_ok=True)

        with (out_dir / "results.ndjson").open("w", encoding="utf-8") as f:
            for rec in self.records.values():
                f.write(json.dumps(rec.to_dict()) + "\n")
        self.to_dataframe().write_csv(out_dir / "results_summary.csv")
        self.folds_frame().write_csv(out_dir / "results_folds.csv")
        self.predictions_frame().write_csv(out_dir / "predictions.csv")

        files = [
            "results.ndjson",
            "results_summary.csv",
            "results_folds.csv",
            "predictions.csv",
        ]
        if self.stability:
            self.stability_frame().write_csv(out_dir / "stability.csv")
            files.append("stability.csv")

        manifest = {
            "version": "1.0",
            "created": datetime.now().isoformat(),
            "complete": self.complete,
            "settings": _serialize_value(self.settings),
            "components": {
                "results": {
                    "files": files,
                    "n_results": len(self.records),
                    "n_folds": len(self.folds),
                },
                "diagnostics": self.diagnostics.to_list(),
            },
        }
        (out_dir / "manifest.json").write_text(
            json.dumps(manifest, indent=indent)
        )
        return out_dir

    def summary(self) -> Dict[str, Any]:
        """Compact dictionary of mean errors keyed by 'ncomp/distance'."""
        return {
            f"{rec.n_components}/{rec.distance.value}": {
                "error_rate": rec.error_rate,
                "error_rate_std": rec.error_rate_std,
                "balanced_error_rate": rec.balanced_error_rate,
            }
            for rec in self.records.values()
        }

    def __repr__(self) -> str:
        best = self.best() if self.records else None
        return (
            f"PerformanceReport(n_results={len(self.records)}, "
            f"n_folds={len(self.folds)}, best={best and (best.n_components, best.distance.value)})"
        )
