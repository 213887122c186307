"""Multi-block sparse PLS discriminant analysis.

`BlockPLSDA` learns, for every omics block, a few sparse linear components
whose scores covary with a one-hot encoding of the class label and with
each other. Components are fitted one at a time by an explicit alternating
loop (tolerance + hard iteration cap) and removed from the data by
deflation, so the scores of different components are orthogonal within a
block.

Usage:
    model = BlockPLSDA(ModelConfig(n_components=2, keep=50)).fit(dataset)
    predicted = model.predict(new_dataset, distance="centroids_dist")
    model.export_scores("out/scores")

Class assignment uses the consensus scores (mean of the block scores):
`max_dist` picks the largest least-squares prediction of the indicator
matrix, `centroids_dist` the nearest class centroid (Euclidean) and
`mahalanobis_dist` the nearest centroid under the pooled within-class
covariance. Ties go to the first class in sorted order.
"""

import gzip
import logging
import pickle
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from scipy.linalg import pinvh
from scipy.spatial.distance import cdist

from multiomics_ml.core.config import DistanceMetric, ModelConfig
from multiomics_ml.core.errors import (
    DegenerateClassWarning,
    Diagnostics,
    InsufficientClassesError,
    MalformedBlockError,
    NonConvergenceWarning,
    NumericWarning,
    SingularBlockError,
)
from multiomics_ml.train.results import _sanitize_segment
from multiomics_ml.wrangle.alignment import AlignedDataset
from multiomics_ml.wrangle.blocks import Block

logger = logging.getLogger(__name__)

BlockInput = Union[
    AlignedDataset, Mapping[str, Union[Block, np.ndarray]]
]

_TINY = 1e-12


def soft_threshold(z: np.ndarray, keep: int) -> np.ndarray:
    """Shrink `z` so that only its `keep` largest-magnitude entries survive.

    Survivors are the first `keep` entries of a stable descending rank of
    |z|. The threshold is the (keep+1)-th largest magnitude; every other
    entry becomes exactly zero and the survivors are shrunk towards zero by
    that amount. A survivor tied with the threshold keeps a tiny non-zero
    value of its own sign, so ties never shrink the support below `keep`.
    `keep >= len(z)` returns a copy of `z`.
    """
    z = np.asarray(z, dtype=float)
    if keep >= z.size:
        return z.copy()
    magnitude = np.abs(z)
    order = np.argsort(-magnitude, kind="stable")
    survivors = order[:keep]
    lam = magnitude[order[keep]]
    shrunk = magnitude[survivors] - lam
    shrunk = np.where(
        shrunk > 0, shrunk, magnitude[survivors] * np.finfo(float).eps
    )
    out = np.zeros_like(z)
    out[survivors] = np.sign(z[survivors]) * shrunk
    return out


def _normalise(v: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(v))
    if norm <= _TINY:
        return np.zeros_like(v)
    return v / norm


def _standardise(
    X: np.ndarray, scale: bool
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Centre (and scale) columns; constant columns map to exactly zero."""
    mean = X.mean(axis=0)
    if X.shape[0] > 1:
        sd = X.std(axis=0, ddof=1)
    else:
        sd = np.zeros(X.shape[1])
    usable = sd > _TINY * np.maximum(1.0, np.abs(mean))
    if scale:
        factor = np.where(usable, 1.0 / np.where(usable, sd, 1.0), 0.0)
    else:
        factor = usable.astype(float)
    return (X - mean) * factor, mean, factor


@dataclass(frozen=True)
class ComponentFit:
    """Convergence record of one fitted component."""

    component: int
    n_iter: int
    converged: bool
    delta: float


@dataclass
class FittedModel:
    """Immutable result of `BlockPLSDA.fit`.

    Arrays are indexed per block name. `loadings` (features x C) are the
    sparse weight vectors, `deflation` (features x C) the vectors used to
    deflate each block, `scores` (samples x C) the training scores.
    """

    config: ModelConfig
    samples: List[str]
    classes: List[str]
    y: np.ndarray
    feature_names: Dict[str, List[str]]
    loadings: Dict[str, np.ndarray]
    deflation: Dict[str, np.ndarray]
    scores: Dict[str, np.ndarray]
    means: Dict[str, np.ndarray]
    factors: Dict[str, np.ndarray]
    keep: Dict[str, int]
    explained_variance: Dict[str, np.ndarray]
    y_loadings: np.ndarray
    y_scores: np.ndarray
    convergence: List[ComponentFit]
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    _cache: Dict[Tuple[str, int], Any] = field(
        default_factory=dict, repr=False, compare=False
    )

    @property
    def n_components(self) -> int:
        return self.config.n_components

    @property
    def block_names(self) -> List[str]:
        return list(self.loadings)

    @property
    def converged(self) -> bool:
        return all(c.converged for c in self.convergence)

    @property
    def consensus_scores(self) -> np.ndarray:
        """Mean of the block training scores (samples x C)."""
        return self.consensus(self.scores)

    @staticmethod
    def consensus(block_scores: Mapping[str, np.ndarray]) -> np.ndarray:
        return np.mean(np.stack(list(block_scores.values())), axis=0)

    # ----- projection -----

    def _check_components(self, n_components: Optional[int]) -> int:
        if n_components is None:
            return self.n_components
        c = int(n_components)
        if not 1 <= c <= self.n_components:
            raise ValueError(
                f"n_components must lie in [1, {self.n_components}], got {c}"
            )
        return c

    def _coerce_blocks(self, blocks: BlockInput) -> Dict[str, np.ndarray]:
        if isinstance(blocks, AlignedDataset):
            blocks = blocks.blocks
        arrays: Dict[str, np.ndarray] = {}
        for name in self.block_names:
            if name not in blocks:
                raise ValueError(f"Block '{name}' is required for prediction")
            value = blocks[name]
            names = self.feature_names[name]
            if isinstance(value, Block):
                data = (
                    value.data
                    if value.feature_names == names
                    else value.get_features(names)
                )
            else:
                data = np.asarray(value, dtype=float)
                if data.ndim != 2 or data.shape[1] != len(names):
                    raise MalformedBlockError(
                        f"Expected a 2D array with {len(names)} columns, got shape {data.shape}",
                        block=name,
                    )
            bad = np.argwhere(~np.isfinite(data))
            if bad.size:
                row, col = bad[0]
                raise MalformedBlockError(
                    "Missing or non-finite value in prediction input",
                    block=name,
                    row=value.accessions[row]
                    if isinstance(value, Block)
                    else str(row),
                    column=names[col],
                )
            arrays[name] = data
        return arrays

    def transform(
        self, blocks: BlockInput, n_components: Optional[int] = None
    ) -> Dict[str, np.ndarray]:
        """Project new samples onto the first `n_components` components.

        The training centring/scaling and the deflation sequence are
        replayed on the new data, so transforming the training blocks
        reproduces `scores` exactly.
        """
        c = self._check_components(n_components)
        arrays = self._coerce_blocks(blocks)
        out: Dict[str, np.ndarray] = {}
        for name in self.block_names:
            X = (arrays[name] - self.means[name]) * self.factors[name]
            T = np.zeros((X.shape[0], c))
            for k in range(c):
                t = X @ self.loadings[name][:, k]
                T[:, k] = t
                X = X - np.outer(t, self.deflation[name][:, k])
            out[name] = T
        return out

    # ----- decision rules -----

    def _indicator(self) -> np.ndarray:
        return (
            self.y[:, None] == np.asarray(self.classes, dtype=object)[None, :]
        ).astype(float)

    def centroids(self, n_components: Optional[int] = None) -> np.ndarray:
        """Class centroids (classes x c) in consensus score space."""
        c = self._check_components(n_components)
        key = ("centroids", c)
        if key not in self._cache:
            T = self.consensus_scores[:, :c]
            self._cache[key] = np.vstack(
                [T[self.y == cls].mean(axis=0) for cls in self.classes]
            )
        return self._cache[key]

    def _precision(self, c: int) -> np.ndarray:
        key = ("precision", c)
        if key not in self._cache:
            T = self.consensus_scores[:, :c]
            centroids = self.centroids(c)
            within = np.zeros((c, c))
            for i, cls in enumerate(self.classes):
                diff = T[self.y == cls] - centroids[i]
                within += diff.T @ diff
            dof = max(len(self.y) - len(self.classes), 1)
            self._cache[key] = pinvh(within / dof)
        return self._cache[key]

    def _regression(self, c: int) -> Tuple[np.ndarray, np.ndarray]:
        key = ("regression", c)
        if key not in self._cache:
            T = self.consensus_scores[:, :c]
            Y = self._indicator()
            intercept = Y.mean(axis=0)
            coef = np.linalg.lstsq(T, Y - intercept, rcond=None)[0]
            self._cache[key] = (coef, intercept)
        return self._cache[key]

    def predict_scores(
        self,
        consensus: np.ndarray,
        n_components: Optional[int] = None,
        distance: Union[str, DistanceMetric] = DistanceMetric.CENTROIDS_DIST,
    ) -> np.ndarray:
        """Assign classes to consensus score rows."""
        c = self._check_components(n_components)
        distance = DistanceMetric(distance)
        T = np.asarray(consensus, dtype=float)[:, :c]

        if distance is DistanceMetric.MAX_DIST:
            coef, intercept = self._regression(c)
            idx = np.argmax(intercept + T @ coef, axis=1)
        elif distance is DistanceMetric.CENTROIDS_DIST:
            idx = np.argmin(
                cdist(T, self.centroids(c), "sqeuclidean"), axis=1
            )
        else:
            diff = T[:, None, :] - self.centroids(c)[None, :, :]
            dist = np.einsum(
                "nkc,cd,nkd->nk", diff, self._precision(c), diff
            )
            idx = np.argmin(np.maximum(dist, 0.0), axis=1)
        return np.asarray(self.classes, dtype=object)[idx]

    def predict(
        self,
        blocks: BlockInput,
        n_components: Optional[int] = None,
        distance: Union[str, DistanceMetric] = DistanceMetric.CENTROIDS_DIST,
    ) -> np.ndarray:
        """Predict the class of every new sample."""
        c = self._check_components(n_components)
        scores = self.transform(blocks, c)
        return self.predict_scores(self.consensus(scores), c, distance)

    def predict_all(
        self,
        blocks: BlockInput,
        distances: Sequence[Union[str, DistanceMetric]],
    ) -> Dict[Tuple[int, DistanceMetric], np.ndarray]:
        """Predictions of every partial model (1..C components) and rule."""
        consensus = self.consensus(self.transform(blocks))
        return {
            (c, DistanceMetric(d)): self.predict_scores(consensus, c, d)
            for c in range(1, self.n_components + 1)
            for d in distances
        }

    def score(
        self,
        dataset: AlignedDataset,
        n_components: Optional[int] = None,
        distance: Union[str, DistanceMetric] = DistanceMetric.CENTROIDS_DIST,
    ) -> float:
        """Classification accuracy on an aligned dataset."""
        predicted = self.predict(dataset, n_components, distance)
        return float(np.mean(predicted == dataset.y))

    # ----- tables and persistence -----

    def _component_columns(self) -> List[str]:
        return [f"comp_{k + 1}" for k in range(self.n_components)]

    def scores_frame(self, block: Optional[str] = None) -> pl.DataFrame:
        """Training scores of `block` (consensus when None) as a table."""
        values = (
            self.consensus_scores if block is None else self.scores[block]
        )
        frame = pl.DataFrame(
            values, schema=self._component_columns(), orient="row"
        )
        return frame.with_columns(
            pl.Series("sample", self.samples, dtype=pl.Utf8),
            pl.Series("label", [str(v) for v in self.y], dtype=pl.Utf8),
        ).select(["sample", "label"] + self._component_columns())

    def loadings_frame(self, block: str) -> pl.DataFrame:
        """Sparse loadings of `block` with one row per feature."""
        frame = pl.DataFrame(
            self.loadings[block],
            schema=self._component_columns(),
            orient="row",
        )
        return frame.with_columns(
            pl.Series("feature", self.feature_names[block], dtype=pl.Utf8)
        ).select(["feature"] + self._component_columns())

    def selected_features(self, block: str, component: int = 1) -> List[str]:
        """Features with a non-zero loading, by decreasing magnitude."""
        weights = self.loadings[block][:, component - 1]
        order = np.argsort(-np.abs(weights), kind="stable")
        return [
            self.feature_names[block][i] for i in order if weights[i] != 0
        ]

    def export_scores(self, out_dir: Union[str, Path]) -> List[Path]:
        """Write score and loading tables for an external visualiser."""
        out = Path(out_dir)
        out.mkdir(parents=True, exist_ok=True)
        written = []
        path = out / "scores_consensus.csv"
        self.scores_frame().write_csv(path)
        written.append(path)
        for name in self.block_names:
            segment = _sanitize_segment(name, "block")
            path = out / f"scores_{segment}.csv"
            self.scores_frame(name).write_csv(path)
            written.append(path)
            path = out / f"loadings_{segment}.csv"
            self.loadings_frame(name).write_csv(path)
            written.append(path)
        logger.info("Exported %d score/loading tables to %s", len(written), out)
        return written

    def save(self, path: Union[str, Path], compress: bool = False) -> None:
        outp = Path(path)
        outp.parent.mkdir(parents=True, exist_ok=True)
        if compress:
            with gzip.open(str(outp), "wb") as f:
                pickle.dump(self, f, protocol=pickle.HIGHEST_PROTOCOL)
        else:
            with outp.open("wb") as f:
                pickle.dump(self, f, protocol=pickle.HIGHEST_PROTOCOL)

    @staticmethod
    def load(path: Union[str, Path]) -> "FittedModel":
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(p)
        if str(p).endswith(".gz"):
            with gzip.open(str(p), "rb") as f:
                return pickle.load(f)
        with p.open("rb") as f:
            return pickle.load(f)


class BlockPLSDA:
    """Multi-block sparse PLS-DA estimator.

    Every block is linked to the class indicator matrix with weight 1 and
    to every other block with weight `config.design`. For each component
    the loop alternates between the indicator loading and the block
    loadings (updated in turn with the latest scores of the other blocks),
    soft-thresholding each block loading to its `keep` budget.
    """

    def __init__(self, config: Optional[ModelConfig] = None, **overrides: Any):
        if config is None:
            config = ModelConfig(**overrides)
        elif overrides:
            values = {**config.__dict__, **overrides}
            config = ModelConfig(**values)
        self.config = config

    def fit(self, dataset: AlignedDataset) -> FittedModel:
        """Fit the model on an aligned (and usually feature-selected) dataset.

        Raises:
            InsufficientClassesError: If fewer than two classes are present
            MalformedBlockError: If a block has missing values
            SingularBlockError: If a block has no non-constant feature
        """
        cfg = self.config
        diagnostics = Diagnostics()
        y = dataset.y
        classes = dataset.classes
        if len(classes) < 2:
            raise InsufficientClassesError(
                f"At least two classes are required, got {classes}"
            )
        for cls, count in dataset.labels.class_counts().items():
            if count < 2:
                diagnostics.report(
                    DegenerateClassWarning,
                    f"Class '{cls}' has {count} training sample(s); its "
                    "centroid is degenerate",
                    logger=logger,
                    label=cls,
                    count=count,
                )

        names: List[str] = []
        X: List[np.ndarray] = []
        means: Dict[str, np.ndarray] = {}
        factors: Dict[str, np.ndarray] = {}
        keep: Dict[str, int] = {}
        totals: Dict[str, float] = {}
        for name, block in dataset.blocks.items():
            if block.has_missing:
                row, column = block.first_missing()  # type: ignore[misc]
                raise MalformedBlockError(
                    "Missing value; impute or drop it before modelling",
                    block=name,
                    row=row,
                    column=column,
                )
            Xs, mean, factor = _standardise(block.data, cfg.scale)
            if block.n_features == 0 or not factor.any():
                raise SingularBlockError(name)
            names.append(name)
            X.append(Xs)
            means[name] = mean
            factors[name] = factor
            keep[name] = cfg.keep_for(name, block.n_features)
            totals[name] = float(np.sum(Xs**2))

        indicator = (
            y[:, None] == np.asarray(classes, dtype=object)[None, :]
        ).astype(float)
        Y, _, _ = _standardise(indicator, cfg.scale)
        y_norm = float(np.linalg.norm(Y))

        n, C = dataset.n_samples, cfg.n_components
        W = {nm: np.zeros((x.shape[1], C)) for nm, x in zip(names, X)}
        P = {nm: np.zeros((x.shape[1], C)) for nm, x in zip(names, X)}
        T = {nm: np.zeros((n, C)) for nm in names}
        explained = {nm: np.zeros(C) for nm in names}
        B = np.zeros((len(classes), C))
        U = np.zeros((n, C))
        convergence: List[ComponentFit] = []

        for comp in range(C):
            a, t, b, u, status = self._fit_component(
                X, Y, [keep[nm] for nm in names], comp + 1
            )
            convergence.append(status)
            if not status.converged:
                diagnostics.report(
                    NonConvergenceWarning,
                    f"Component {comp + 1} did not converge within "
                    f"{cfg.max_iter} iterations (last change {status.delta:.3g})",
                    logger=logger,
                    component=comp + 1,
                )

            for j, nm in enumerate(names):
                tt = float(t[j] @ t[j])
                if tt <= _TINY:
                    diagnostics.report(
                        NumericWarning,
                        f"Component {comp + 1} of block '{nm}' is degenerate "
                        "(no covariance left after deflation)",
                        logger=logger,
                        block=nm,
                        component=comp + 1,
                    )
                    p = np.zeros(X[j].shape[1])
                else:
                    p = X[j].T @ t[j] / tt
                W[nm][:, comp] = a[j]
                P[nm][:, comp] = p
                T[nm][:, comp] = t[j]
                if totals[nm] > 0:
                    explained[nm][comp] = tt * float(p @ p) / totals[nm]
                X[j] = X[j] - np.outer(t[j], p)

            # Regression mode: the indicator matrix is deflated on the
            # consensus score so later components still target the classes
            consensus = np.mean(t, axis=0)
            cc = float(consensus @ consensus)
            if cc > _TINY:
                Y = Y - np.outer(consensus, Y.T @ consensus / cc)
            if np.linalg.norm(Y) <= _TINY * y_norm:
                Y = np.zeros_like(Y)
            B[:, comp] = b
            U[:, comp] = u

        fitted = FittedModel(
            config=cfg,
            samples=list(dataset.samples),
            classes=list(classes),
            y=np.asarray(y, dtype=object),
            feature_names={
                nm: list(dataset.blocks[nm].feature_names) for nm in names
            },
            loadings=W,
            deflation=P,
            scores=T,
            means=means,
            factors=factors,
            keep=keep,
            explained_variance=explained,
            y_loadings=B,
            y_scores=U,
            convergence=convergence,
            diagnostics=diagnostics,
        )

        arrays = [*W.values(), *T.values(), B]
        if not all(np.isfinite(arr).all() for arr in arrays):
            diagnostics.report(
                NumericWarning,
                "Fitted loadings or scores contain non-finite values",
                logger=logger,
            )
        logger.info(
            "Fitted %d-component model on %d samples (%s); converged=%s",
            C,
            n,
            ", ".join(f"{nm}: keep {keep[nm]}" for nm in names),
            fitted.converged,
        )
        return fitted

    def _fit_component(
        self,
        X: List[np.ndarray],
        Y: np.ndarray,
        keeps: List[int],
        component: int,
    ) -> Tuple[
        List[np.ndarray], List[np.ndarray], np.ndarray, np.ndarray, ComponentFit
    ]:
        """Alternating updates for one component on the deflated data."""
        cfg = self.config
        J = len(X)

        # Initial loadings: leading left singular vector of X_j'Y, with signs
        # matched to the leading direction of the stacked cross-covariance.
        cross = [Xj.T @ Y for Xj in X]
        stacked = np.vstack(cross)
        if np.any(stacked):
            b0 = np.linalg.svd(stacked, full_matrices=False)[2][0]
        else:
            b0 = _normalise(np.ones(Y.shape[1]))
        u0 = Y @ b0
        a: List[np.ndarray] = []
        for Xj, zj, keep in zip(X, cross, keeps):
            if not np.any(zj):
                a.append(np.zeros(Xj.shape[1]))
                continue
            aj = _normalise(
                soft_threshold(
                    np.linalg.svd(zj, full_matrices=False)[0][:, 0], keep
                )
            )
            if float((Xj @ aj) @ u0) < 0:
                aj = -aj
            a.append(aj)
        t = [Xj @ aj for Xj, aj in zip(X, a)]

        converged = False
        delta = np.inf
        n_iter = 0
        for n_iter in range(1, cfg.max_iter + 1):
            b = _normalise(Y.T @ np.sum(t, axis=0))
            u = Y @ b
            delta = 0.0
            for j in range(J):
                others = sum(
                    (t[k] for k in range(J) if k != j), np.zeros_like(u)
                )
                z = X[j].T @ (u + cfg.design * others)
                a_new = _normalise(soft_threshold(z, keeps[j]))
                if a_new.size:
                    delta = max(delta, float(np.max(np.abs(a_new - a[j]))))
                a[j] = a_new
                t[j] = X[j] @ a_new
            logger.debug(
                "component %d iteration %d: delta=%.3g", component, n_iter, delta
            )
            if delta < cfg.tol:
                converged = True
                break

        b = _normalise(Y.T @ np.sum(t, axis=0))
        # Deterministic orientation: largest indicator loading is positive
        if b.size and b[np.argmax(np.abs(b))] < 0:
            b = -b
            a = [-aj for aj in a]
            t = [-tj for tj in t]
        u = Y @ b
        status = ComponentFit(component, n_iter, converged, float(delta))
        return a, t, b, u, status
