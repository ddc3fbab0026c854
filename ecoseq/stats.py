"""Permutation tests on sample dissimilarities."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy import stats as sp_stats

from .dataset import CommunityDataSet
from .distance import DissimilarityMatrix


@dataclass
class StatisticalTestResult:
    """Result from a statistical test."""

    test_name: str
    statistic: float
    p_value: float
    metadata: dict[str, object] = field(default_factory=dict)


def _group_labels(
    dm: DissimilarityMatrix, ds: CommunityDataSet, grouping_var: str
) -> np.ndarray:
    if dm.axis != "samples":
        raise ValueError("group tests need a sample-axis dissimilarity matrix")
    column = ds.variable(grouping_var)
    missing = [s for s in dm.ids if s not in column]
    if missing:
        raise KeyError(f"samples missing from dataset: {missing[:5]}")
    return np.array([str(column[s]) for s in dm.ids])


def permanova(
    dm: DissimilarityMatrix,
    ds: CommunityDataSet,
    grouping_var: str,
    n_permutations: int = 999,
    seed: int = 42,
) -> StatisticalTestResult:
    """PERMANOVA: partition distance matrix variance by group.

    F = (SS_between / (g-1)) / (SS_within / (n-g))
    Permutation test by shuffling group labels.
    """
    d2 = dm.matrix**2
    n = dm.n
    labels = _group_labels(dm, ds, grouping_var)
    unique_groups = np.unique(labels)
    g = len(unique_groups)

    # Total sum of squares (normalized by n)
    ss_total = float(np.triu(d2, k=1).sum()) / n

    def within(lab: np.ndarray) -> float:
        ss = 0.0
        for grp in unique_groups:
            idx = np.flatnonzero(lab == grp)
            if len(idx) > 0:
                ss += float(np.triu(d2[np.ix_(idx, idx)], k=1).sum()) / len(idx)
        return ss

    def compute_f(lab: np.ndarray) -> float:
        ss_within = within(lab)
        df_between = g - 1
        df_within = n - g
        if df_between == 0 or df_within == 0 or ss_within == 0:
            return 0.0
        return ((ss_total - ss_within) / df_between) / (ss_within / df_within)

    observed_f = compute_f(labels)

    rng = np.random.default_rng(seed)
    count = 0
    for _ in range(n_permutations):
        if compute_f(rng.permutation(labels)) >= observed_f:
            count += 1
    p_value = (count + 1) / (n_permutations + 1)

    # R² = SS_between / SS_total
    r_squared = (ss_total - within(labels)) / ss_total if ss_total > 0 else 0.0

    return StatisticalTestResult(
        test_name="PERMANOVA",
        statistic=observed_f,
        p_value=p_value,
        metadata={"R2": r_squared, "n_permutations": n_permutations, "variable": grouping_var},
    )


def anosim(
    dm: DissimilarityMatrix,
    ds: CommunityDataSet,
    grouping_var: str,
    n_permutations: int = 999,
    seed: int = 42,
) -> StatisticalTestResult:
    """ANOSIM: rank-based R statistic with permutation test."""
    n = dm.n
    labels = _group_labels(dm, ds, grouping_var)

    tri_i, tri_j = np.triu_indices(n, k=1)
    ranks = sp_stats.rankdata(dm.matrix[tri_i, tri_j])
    m = len(ranks)

    def compute_r(lab: np.ndarray) -> float:
        same = lab[tri_i] == lab[tri_j]
        if not same.any() or same.all():
            return 0.0
        r_b = ranks[~same].mean()
        r_w = ranks[same].mean()
        return float((r_b - r_w) / (m / 2))

    observed_r = compute_r(labels)

    rng = np.random.default_rng(seed)
    count = 0
    for _ in range(n_permutations):
        if compute_r(rng.permutation(labels)) >= observed_r:
            count += 1
    p_value = (count + 1) / (n_permutations + 1)

    return StatisticalTestResult(
        test_name="ANOSIM",
        statistic=observed_r,
        p_value=p_value,
        metadata={"n_permutations": n_permutations, "variable": grouping_var},
    )
