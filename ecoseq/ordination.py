"""Ordination methods (NMDS, PCoA) over a dissimilarity matrix."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Union

import numpy as np
from scipy.spatial.distance import pdist, squareform
from sklearn.isotonic import IsotonicRegression

from .dataset import CommunityDataSet
from .distance import DissimilarityMatrix, pairwise_distance
from .errors import UnknownMeasureError

logger = logging.getLogger(__name__)


@dataclass
class OrdinationResult:
    """Ordination coordinates and diagnostics."""

    ids: list[str]
    coordinates: np.ndarray  # shape (n, n_axes)
    method: str
    stress: float | None = None  # NMDS only
    converged: bool = True
    explained_variance: np.ndarray | None = None  # per axis (PCoA only)
    warnings: list[str] = field(default_factory=list)
    n_iterations: int = 0

    @property
    def n_axes(self) -> int:
        return self.coordinates.shape[1]

    def to_rows(self) -> list[dict[str, float | str]]:
        return [
            {"id": e, **{f"Axis.{k + 1}": float(self.coordinates[i, k]) for k in range(self.n_axes)}}
            for i, e in enumerate(self.ids)
        ]


@dataclass
class NMDSConfig:
    """Configuration for non-metric multidimensional scaling.

    Attributes:
        max_iterations: Iteration cap per restart.
        n_restarts: Number of starting configurations; the first is the
            PCoA solution, the rest are random.
        tolerance: Stop a restart once stress improves by less than this.
        stress_threshold: Stress at or above this marks the result as not
            converged (a fit this poor is conventionally suspect).
        random_seed: Seed for the random starts.
    """

    max_iterations: int = 20
    n_restarts: int = 20
    tolerance: float = 1e-4
    stress_threshold: float = 0.2
    random_seed: int = 42


def pcoa(dm: DissimilarityMatrix, n_axes: int = 2) -> OrdinationResult:
    """Principal Coordinates Analysis via classical MDS.

    Double-centers the squared distance matrix, eigendecomposes,
    and returns top-k axes with explained variance.
    """
    d = dm.matrix
    n = d.shape[0]

    # Double-center the squared distance matrix
    d2 = d**2
    row_mean = d2.mean(axis=1, keepdims=True)
    col_mean = d2.mean(axis=0, keepdims=True)
    grand_mean = d2.mean()
    B = -0.5 * (d2 - row_mean - col_mean + grand_mean)

    eigenvalues, eigenvectors = np.linalg.eigh(B)

    # Sort descending
    idx = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[idx]
    eigenvectors = eigenvectors[:, idx]

    # Negative eigenvalues (non-Euclidean input) contribute no coordinates
    n_axes = max(min(n_axes, n - 1), 0)
    pos = eigenvalues[:n_axes].clip(min=0)
    coords = eigenvectors[:, :n_axes] * np.sqrt(pos)[np.newaxis, :]

    total_pos = eigenvalues[eigenvalues > 0].sum()
    if total_pos > 0:
        explained = pos / total_pos
    else:
        explained = np.zeros(n_axes)

    return OrdinationResult(
        ids=list(dm.ids),
        coordinates=coords,
        method="PCoA",
        explained_variance=explained,
    )


def _kruskal_stress(dist: np.ndarray, disparities: np.ndarray) -> float:
    denom = float(np.sum(dist**2))
    if denom == 0:
        return 0.0 if not np.any(disparities) else 1.0
    return float(np.sqrt(np.sum((dist - disparities) ** 2) / denom))


def _disparities(delta: np.ndarray, dist: np.ndarray) -> np.ndarray:
    """Monotone regression of fitted distances on the dissimilarity ranks."""
    iso = IsotonicRegression(increasing=True)
    return iso.fit_transform(delta, dist)


def _smacof_run(
    delta: np.ndarray,
    X: np.ndarray,
    config: NMDSConfig,
    should_stop: Callable[[], bool] | None,
) -> tuple[np.ndarray, float, int, bool]:
    """One NMDS run by majorization. Returns (X, stress, iterations, aborted)."""
    n = X.shape[0]
    n_pairs = len(delta)
    previous = np.inf
    aborted = False
    iterations = 0
    for iterations in range(1, config.max_iterations + 1):
        if should_stop is not None and should_stop():
            aborted = True
            break
        dist = pdist(X)
        dhat = _disparities(delta, dist)
        stress = _kruskal_stress(dist, dhat)
        if previous - stress < config.tolerance:
            break
        previous = stress

        # Guttman transform towards disparities of fixed norm
        norm = float(np.sum(dhat**2))
        if norm > 0:
            dhat = dhat * np.sqrt(n_pairs / norm)
        dist_sq = squareform(dist)
        ratio = np.divide(
            squareform(dhat), dist_sq, out=np.zeros_like(dist_sq), where=dist_sq > 0
        )
        B = -ratio
        B[np.diag_indices(n)] = ratio.sum(axis=1)
        X = B @ X / n

    dist = pdist(X)
    stress = _kruskal_stress(dist, _disparities(delta, dist))
    return X, stress, iterations, aborted


def _principal_axes(X: np.ndarray) -> np.ndarray:
    """Center and rotate so the first axis carries the most variance."""
    X = X - X.mean(axis=0)
    if X.shape[0] < 2:
        return X
    _, _, vt = np.linalg.svd(X, full_matrices=False)
    return X @ vt.T


def nmds(
    dm: DissimilarityMatrix,
    n_axes: int = 2,
    config: NMDSConfig | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> OrdinationResult:
    """Non-metric Multidimensional Scaling with random restarts.

    Each restart minimises Kruskal's stress-1 between the fitted Euclidean
    distances and a monotone regression of the input dissimilarities on
    them. Restart 0 starts from the PCoA solution and the others from
    uniform random configurations; the lowest-stress run is returned.

    Parameters
    ----------
    dm : DissimilarityMatrix
        Input dissimilarities.
    n_axes : int
        Dimensions of the fitted configuration.
    config : NMDSConfig, optional
        Iteration cap, restarts, tolerance and seed.
    should_stop : callable, optional
        Checked once per iteration; returning True ends the fit early and
        the result is flagged as not converged.

    Returns
    -------
    OrdinationResult
        ``converged`` is False (and a warning recorded) when the best stress
        reaches ``config.stress_threshold``. This is not an error.
    """
    cfg = config or NMDSConfig()
    n = dm.n
    if n < 3:
        result = pcoa(dm, n_axes)
        coords = np.zeros((n, n_axes))
        coords[:, :result.n_axes] = result.coordinates
        return OrdinationResult(
            ids=list(dm.ids), coordinates=coords, method="NMDS", stress=0.0,
        )

    delta = dm.condensed()
    rng = np.random.default_rng(cfg.random_seed)
    start = np.zeros((n, n_axes))
    init = pcoa(dm, n_axes).coordinates
    start[:, :init.shape[1]] = init
    if not np.any(start):
        start = rng.uniform(size=(n, n_axes))

    best: tuple[np.ndarray, float, int] | None = None
    aborted = False
    for restart in range(max(cfg.n_restarts, 1)):
        X0 = start if restart == 0 else rng.uniform(size=(n, n_axes))
        X, stress, iterations, aborted = _smacof_run(delta, X0, cfg, should_stop)
        logger.debug(
            "NMDS restart %d/%d: stress=%.4f after %d iterations",
            restart + 1, cfg.n_restarts, stress, iterations,
        )
        if best is None or stress < best[1]:
            best = (X, stress, iterations)
        if aborted:
            break

    X, stress, iterations = best
    warnings: list[str] = []
    converged = not aborted
    if aborted:
        warnings.append("NMDS stopped early by caller")
    if stress >= cfg.stress_threshold:
        converged = False
        warnings.append(
            f"NMDS stress {stress:.3f} >= {cfg.stress_threshold}; ordination may be unreliable"
        )
    for w in warnings:
        logger.warning(w)

    return OrdinationResult(
        ids=list(dm.ids),
        coordinates=_principal_axes(X),
        method="NMDS",
        stress=stress,
        converged=converged,
        warnings=warnings,
        n_iterations=iterations,
    )


METHODS = {"nmds": "NMDS", "pcoa": "PCoA", "mds": "PCoA"}


def ordinate(
    data: Union[DissimilarityMatrix, CommunityDataSet],
    method: str = "NMDS",
    n_axes: int = 2,
    distance: str = "bray",
    config: NMDSConfig | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> OrdinationResult:
    """Ordinate a dissimilarity matrix, or a dataset's samples via ``distance``."""
    key = METHODS.get(str(method).lower())
    if key is None:
        raise UnknownMeasureError(
            f"unknown ordination method {method!r}; available: {sorted(set(METHODS.values()))}"
        )
    if isinstance(data, CommunityDataSet):
        data = pairwise_distance(data, metric=distance)
    if key == "PCoA":
        return pcoa(data, n_axes)
    return nmds(data, n_axes, config=config, should_stop=should_stop)
