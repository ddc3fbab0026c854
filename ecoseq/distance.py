"""Pairwise dissimilarity matrices (beta diversity)."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Sequence, Union

import numpy as np
from scipy.spatial.distance import pdist, squareform

from .dataset import CommunityDataSet
from .errors import MalformedDatasetError, UnknownMeasureError

logger = logging.getLogger(__name__)

AXES = ("samples", "taxa")
DistanceFunction = Callable[[np.ndarray, np.ndarray], float]


@dataclass
class DissimilarityMatrix:
    """Symmetric, zero-diagonal dissimilarities over samples or taxa."""

    ids: list[str]
    matrix: np.ndarray  # shape (n, n)
    metric: str
    axis: str = "samples"

    def __post_init__(self) -> None:
        self.ids = [str(i) for i in self.ids]
        m = np.asarray(self.matrix, dtype=np.float64)
        n = len(self.ids)
        if m.shape != (n, n):
            raise MalformedDatasetError(
                "shape", f"distance matrix shape {m.shape} does not match {n} ids"
            )
        if len(set(self.ids)) != n:
            raise MalformedDatasetError("duplicate_id", "distance matrix ids are not unique")
        if not np.all(np.isfinite(m)):
            raise MalformedDatasetError("non_finite", "distance matrix contains NaN or infinite values")
        if np.any(m < 0):
            raise MalformedDatasetError("negative_value", "distance matrix contains negative values")
        if not np.allclose(m, m.T):
            raise MalformedDatasetError("asymmetric", "distance matrix is not symmetric")
        if np.any(np.diag(m) != 0):
            raise MalformedDatasetError("diagonal", "distance matrix diagonal is not zero")
        self.matrix = m

    @property
    def n(self) -> int:
        return len(self.ids)

    def index(self, entity: str) -> int:
        return self.ids.index(entity)

    def get(self, a: str, b: str) -> float:
        return float(self.matrix[self.index(a), self.index(b)])

    def condensed(self) -> np.ndarray:
        """Upper triangle in row order, as scipy's ``pdist`` returns it."""
        return squareform(self.matrix, checks=False)

    def subset(self, ids: Sequence[str]) -> DissimilarityMatrix:
        idx = [self.index(i) for i in ids]
        return DissimilarityMatrix(
            ids=list(ids),
            matrix=self.matrix[np.ix_(idx, idx)],
            metric=self.metric,
            axis=self.axis,
        )

    def to_rows(self) -> list[dict[str, float | str]]:
        return [
            {"id": a, **{b: float(self.matrix[i, j]) for j, b in enumerate(self.ids)}}
            for i, a in enumerate(self.ids)
        ]


# ---------------------------------------------------------------------------
# Vector metrics
# ---------------------------------------------------------------------------


def bray_curtis(x: np.ndarray, y: np.ndarray) -> float:
    """sum|x - y| / sum(x + y); 0 when both vectors are empty."""
    denom = float(np.sum(x + y))
    if denom == 0:
        return 0.0
    return float(np.sum(np.abs(x - y))) / denom


def jaccard(x: np.ndarray, y: np.ndarray) -> float:
    """1 - |A & B| / |A | B| on presence/absence; 0 when both are empty."""
    a = np.asarray(x) > 0
    b = np.asarray(y) > 0
    union = int(np.sum(a | b))
    if union == 0:
        return 0.0
    return 1.0 - int(np.sum(a & b)) / union


def euclidean(x: np.ndarray, y: np.ndarray) -> float:
    return float(np.sqrt(np.sum((np.asarray(x) - np.asarray(y)) ** 2)))


METRICS: dict[str, DistanceFunction] = {
    "bray": bray_curtis,
    "jaccard": jaccard,
    "euclidean": euclidean,
}
TREE_METRICS = ("unifrac", "wunifrac")
_ALIASES = {
    "braycurtis": "bray",
    "bray_curtis": "bray",
    "bray-curtis": "bray",
    "weighted_unifrac": "wunifrac",
    "unweighted_unifrac": "unifrac",
}


def resolve_metric(metric: str) -> str:
    key = str(metric).lower()
    key = _ALIASES.get(key, key)
    if key not in METRICS and key not in TREE_METRICS:
        raise UnknownMeasureError(
            f"unknown distance metric {metric!r}; available: "
            f"{sorted(METRICS) + list(TREE_METRICS)}"
        )
    return key


# ---------------------------------------------------------------------------
# Matrix construction
# ---------------------------------------------------------------------------


def _vectors(ds: CommunityDataSet, axis: str) -> tuple[list[str], np.ndarray]:
    if axis == "samples":
        return list(ds.sample_ids), np.asarray(ds.abundance.T)
    if axis == "taxa":
        return list(ds.taxon_ids), np.asarray(ds.abundance)
    raise ValueError(f"axis must be one of {AXES}, got {axis!r}")


def _pairwise_callable(
    vectors: np.ndarray, fn: DistanceFunction, n_jobs: int = 1
) -> np.ndarray:
    """Evaluate ``fn`` once per unordered pair; workers fill disjoint rows."""
    n = len(vectors)
    out = np.zeros((n, n))

    def fill_row(i: int) -> None:
        for j in range(i + 1, n):
            out[i, j] = fn(vectors[i], vectors[j])

    if n_jobs > 1 and n > 2:
        with ThreadPoolExecutor(max_workers=n_jobs) as pool:
            list(pool.map(fill_row, range(n)))
    else:
        for i in range(n):
            fill_row(i)
    upper = np.triu(out, k=1)
    return upper + upper.T


def pairwise_distance(
    ds: CommunityDataSet,
    metric: Union[str, DistanceFunction] = "bray",
    axis: str = "samples",
    n_jobs: int = 1,
) -> DissimilarityMatrix:
    """Compute a dissimilarity matrix between samples or taxa.

    Parameters
    ----------
    ds : CommunityDataSet
        Source dataset.
    metric : str or callable
        ``"bray"``, ``"jaccard"``, ``"euclidean"``, ``"unifrac"``,
        ``"wunifrac"``, or a function ``(x, y) -> float``.
    axis : str
        ``"samples"`` or ``"taxa"``. UniFrac is only defined over samples.
    n_jobs : int
        Worker threads for callable metrics.

    Returns
    -------
    DissimilarityMatrix
        Symmetric matrix with zero diagonal.
    """
    ids, vectors = _vectors(ds, axis)

    if callable(metric):
        name = getattr(metric, "__name__", "custom")
        mat = _pairwise_callable(vectors, metric, n_jobs=n_jobs)
    else:
        name = resolve_metric(metric)
        if name in TREE_METRICS:
            if axis != "samples":
                raise ValueError(f"{name} is only defined between samples")
            mat = unifrac(ds, weighted=(name == "wunifrac"))
        elif name == "bray":
            with np.errstate(divide="ignore", invalid="ignore"):
                condensed = pdist(vectors, metric="braycurtis")
            mat = squareform(np.nan_to_num(condensed, nan=0.0))
        elif name == "jaccard":
            with np.errstate(divide="ignore", invalid="ignore"):
                condensed = pdist(vectors > 0, metric="jaccard")
            mat = squareform(np.nan_to_num(condensed, nan=0.0))
        else:
            mat = squareform(pdist(vectors, metric="euclidean"))

    np.fill_diagonal(mat, 0.0)
    logger.debug("pairwise_distance: %s over %d %s", name, len(ids), axis)
    return DissimilarityMatrix(ids=ids, matrix=mat, metric=name, axis=axis)


# ---------------------------------------------------------------------------
# UniFrac
# ---------------------------------------------------------------------------


def _node_abundances(ds: CommunityDataSet) -> np.ndarray:
    """Abundance below every tree node, shape (n_nodes, n_samples)."""
    tree = ds.require_tree()
    counts = np.zeros((tree.n_nodes, ds.n_samples))
    for i, t in enumerate(ds.taxon_ids):
        counts[tree.tip_index(t)] = ds.abundance[i]
    parent = tree.parent
    for node in tree.postorder():
        if parent[node] >= 0:
            counts[parent[node]] += counts[node]
    return counts


def unifrac(ds: CommunityDataSet, weighted: bool = False) -> np.ndarray:
    """UniFrac distances between all samples.

    Unweighted: fraction of branch length leading to taxa in exactly one of
    the two samples. Weighted: abundance-weighted branch differences,
    normalised by the root-to-tip distances so values lie in [0, 1].

    Raises MissingTreeError without a tree and MalformedDatasetError if a
    taxon is not a tip of it.
    """
    tree = ds.require_tree()
    counts = _node_abundances(ds)
    lengths = np.array(tree.branch_length, dtype=np.float64)
    lengths[tree.root] = 0.0
    n = ds.n_samples
    out = np.zeros((n, n))

    if not weighted:
        present = counts > 0
        for i in range(n):
            for j in range(i + 1, n):
                union = float(lengths @ (present[:, i] | present[:, j]))
                if union == 0:
                    continue
                unique = float(lengths @ (present[:, i] ^ present[:, j]))
                out[i, j] = out[j, i] = unique / union
        return out

    totals = counts[tree.root]
    props = np.divide(counts, totals, out=np.zeros_like(counts), where=totals > 0)
    depth = tree.depths()
    tips = np.array([tree.tip_index(t) for t in ds.taxon_ids])
    for i in range(n):
        for j in range(i + 1, n):
            denom = float(depth[tips] @ (props[tips, i] + props[tips, j]))
            if denom == 0:
                continue
            num = float(lengths @ np.abs(props[:, i] - props[:, j]))
            out[i, j] = out[j, i] = num / denom
    return out
