"""CSV writers for the data products handed to plotting and reporting."""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from .dataset import CommunityDataSet
from .distance import DissimilarityMatrix
from .diversity import AlphaDiversityResult
from .network import Graph
from .ordination import OrdinationResult

logger = logging.getLogger(__name__)


def write_alpha_diversity(result: AlphaDiversityResult, path: str | Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["sample_id"] + result.measures)
        for i, sid in enumerate(result.sample_ids):
            w.writerow([sid] + [f"{result.values[i, k]:.6f}" for k in range(len(result.measures))])
    logger.info("Wrote alpha diversity for %d samples to %s", len(result.sample_ids), path)


def write_distance_matrix(result: DissimilarityMatrix, path: str | Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow([""] + result.ids)
        for i, eid in enumerate(result.ids):
            w.writerow([eid] + [f"{result.matrix[i, j]:.6f}" for j in range(result.n)])
    logger.info("Wrote %s distance matrix (%d %s) to %s", result.metric, result.n, result.axis, path)


def write_ordination(result: OrdinationResult, path: str | Path) -> None:
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        header = ["id"] + [f"Axis.{k + 1}" for k in range(result.n_axes)]
        w.writerow(header)
        for i, eid in enumerate(result.ids):
            w.writerow([eid] + [f"{result.coordinates[i, k]:.6f}" for k in range(result.n_axes)])
    if result.stress is not None:
        logger.info("%s stress=%.4f converged=%s", result.method, result.stress, result.converged)


def write_edge_list(graph: Graph, path: str | Path) -> None:
    """Edges as source,target,distance; isolated nodes get a row with empty target."""
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["source", "target", "distance"])
        for a, b, d in graph.edges:
            w.writerow([a, b, f"{d:.6f}"])
        for node in graph.isolated():
            w.writerow([node, "", ""])
    logger.info("Wrote graph with %d nodes, %d edges to %s", graph.n_nodes, graph.n_edges, path)


def write_dataset_summary(ds: CommunityDataSet, path: str | Path, axis: str = "samples") -> None:
    """Per-sample or per-taxon summary table (totals plus metadata or taxonomy)."""
    rows = ds.sample_summary() if axis == "samples" else ds.taxon_summary()
    fields: dict[str, None] = {}
    for row in rows:
        for k in row:
            fields.setdefault(k, None)
    with open(path, "w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=list(fields))
        w.writeheader()
        for row in rows:
            w.writerow({k: ("" if v is None else v) for k, v in row.items()})
