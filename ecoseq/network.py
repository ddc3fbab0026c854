"""Threshold graphs built from a dissimilarity matrix.

Two entities are joined when their dissimilarity is at or below a fixed
cutoff. Every entity of the matrix stays in the node set, so isolated
samples or taxa remain visible to downstream renderers.
"""

from __future__ import annotations

from dataclasses import dataclass

import networkx as nx
import numpy as np

from .dataset import CommunityDataSet
from .distance import DissimilarityMatrix, pairwise_distance


@dataclass(frozen=True)
class Graph:
    """Undirected threshold graph without self-loops."""

    node_ids: list[str]
    edges: list[tuple[str, str, float]]  # (node_i, node_j, distance), i before j
    max_distance: float

    @property
    def n_nodes(self) -> int:
        return len(self.node_ids)

    @property
    def n_edges(self) -> int:
        return len(self.edges)

    def adjacency(self) -> np.ndarray:
        """Symmetric 0/1 matrix in ``node_ids`` order."""
        pos = {n: i for i, n in enumerate(self.node_ids)}
        adj = np.zeros((self.n_nodes, self.n_nodes), dtype=np.float64)
        for a, b, _ in self.edges:
            adj[pos[a], pos[b]] = 1.0
            adj[pos[b], pos[a]] = 1.0
        return adj

    def degree(self) -> dict[str, int]:
        deg = {n: 0 for n in self.node_ids}
        for a, b, _ in self.edges:
            deg[a] += 1
            deg[b] += 1
        return deg

    def isolated(self) -> list[str]:
        return [n for n, d in self.degree().items() if d == 0]

    def to_networkx(self) -> nx.Graph:
        G = nx.Graph()
        G.add_nodes_from(self.node_ids)
        for a, b, d in self.edges:
            G.add_edge(a, b, distance=d)
        return G

    def components(self) -> list[list[str]]:
        """Connected components, largest first, members in node order."""
        order = {n: i for i, n in enumerate(self.node_ids)}
        comps = [
            sorted(c, key=order.__getitem__)
            for c in nx.connected_components(self.to_networkx())
        ]
        return sorted(comps, key=lambda c: (-len(c), order[c[0]]))

    def to_rows(self) -> list[dict[str, float | str]]:
        return [{"source": a, "target": b, "distance": d} for a, b, d in self.edges]


def build_threshold_graph(dm: DissimilarityMatrix, max_distance: float) -> Graph:
    """Build a graph with an edge wherever ``distance(i, j) <= max_distance``.

    Parameters
    ----------
    dm : DissimilarityMatrix
        Pairwise dissimilarities; its ids become the node set.
    max_distance : float
        Inclusive edge cutoff.

    Returns
    -------
    Graph
        Edges listed in upper-triangle row order of the matrix.
    """
    n = dm.n
    upper_i, upper_j = np.triu_indices(n, k=1)
    upper_vals = dm.matrix[upper_i, upper_j]
    edge_indices = np.flatnonzero(upper_vals <= max_distance)

    edges: list[tuple[str, str, float]] = [
        (dm.ids[upper_i[k]], dm.ids[upper_j[k]], float(upper_vals[k]))
        for k in edge_indices
    ]
    return Graph(node_ids=list(dm.ids), edges=edges, max_distance=float(max_distance))


def make_network(
    ds: CommunityDataSet,
    axis: str = "samples",
    metric: str = "jaccard",
    max_distance: float = 0.4,
) -> Graph:
    """Threshold graph of a dataset's samples or taxa under ``metric``."""
    dm = pairwise_distance(ds, metric=metric, axis=axis)
    return build_threshold_graph(dm, max_distance)
