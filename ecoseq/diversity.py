"""Alpha diversity estimates per sample."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from .dataset import CommunityDataSet
from .errors import UnknownMeasureError


def richness(abundances: np.ndarray) -> int:
    """Number of taxa with abundance > 0."""
    return int(np.sum(abundances > 0))


def shannon_index(abundances: np.ndarray) -> float:
    """Shannon diversity H = -sum(pi * ln(pi)) for a single sample vector."""
    total = abundances.sum()
    if total == 0:
        return 0.0
    p = abundances / total
    p = p[p > 0]
    return -float(np.sum(p * np.log(p)))


def simpson_index(abundances: np.ndarray) -> float:
    """Simpson diversity D = 1 - sum(pi^2) for a single sample vector."""
    total = abundances.sum()
    if total == 0:
        return 0.0
    p = abundances / total
    return 1.0 - float(np.sum(p**2))


def inverse_simpson(abundances: np.ndarray) -> float:
    """Inverse Simpson 1 / sum(pi^2); 0 for an empty sample."""
    total = abundances.sum()
    if total == 0:
        return 0.0
    p = abundances / total
    return 1.0 / float(np.sum(p**2))


def pielou_evenness(abundances: np.ndarray) -> float:
    """Pielou's evenness J = H / ln(S)."""
    s = int(np.sum(abundances > 0))
    if s <= 1:
        return 0.0
    h = shannon_index(abundances)
    return h / np.log(s)


def chao1(abundances: np.ndarray) -> float:
    """Bias-corrected Chao1: S_obs + F1(F1 - 1) / (2(F2 + 1)).

    F1 and F2 count singletons and doubletons, so the estimate is only
    meaningful for raw integer counts.
    """
    counts = np.round(abundances)
    s_obs = float(np.sum(counts > 0))
    f1 = float(np.sum(counts == 1))
    f2 = float(np.sum(counts == 2))
    return s_obs + f1 * (f1 - 1.0) / (2.0 * (f2 + 1.0))


def ace(abundances: np.ndarray, rare_threshold: int = 10) -> float:
    """Abundance-based Coverage Estimator.

    Taxa with at most ``rare_threshold`` reads are "rare"; the estimate
    inflates the rare richness by the sample coverage of rare reads and a
    coefficient of variation term.
    """
    counts = np.round(abundances)
    counts = counts[counts > 0]
    if len(counts) == 0:
        return 0.0
    rare = counts[counts <= rare_threshold]
    s_abund = float(np.sum(counts > rare_threshold))
    s_rare = float(len(rare))
    n_rare = float(rare.sum())
    if s_rare == 0:
        return s_abund
    f1 = float(np.sum(rare == 1))
    if f1 == n_rare:
        # Coverage is zero when every rare read is a singleton.
        return s_abund + s_rare
    c_ace = 1.0 - f1 / n_rare
    i = np.arange(1, rare_threshold + 1)
    f_i = np.array([np.sum(rare == k) for k in i], dtype=float)
    gamma_sq = (s_rare / c_ace) * float(np.sum(i * (i - 1) * f_i)) / (n_rare * (n_rare - 1.0))
    gamma_sq = max(gamma_sq - 1.0, 0.0)
    return s_abund + s_rare / c_ace + (f1 / c_ace) * gamma_sq


MEASURES: dict[str, Callable[[np.ndarray], float]] = {
    "Observed": richness,
    "Chao1": chao1,
    "ACE": ace,
    "Shannon": shannon_index,
    "Simpson": simpson_index,
    "InvSimpson": inverse_simpson,
    "Evenness": pielou_evenness,
}

DEFAULT_MEASURES = ("Observed", "Chao1", "ACE", "Shannon", "Simpson", "InvSimpson")


def resolve_measure(name: str) -> str:
    """Canonical measure name; matching is case-insensitive."""
    lookup = {k.lower(): k for k in MEASURES}
    lookup["richness"] = "Observed"
    key = lookup.get(str(name).lower())
    if key is None:
        raise UnknownMeasureError(
            f"unknown diversity measure {name!r}; available: {list(MEASURES)}"
        )
    return key


@dataclass
class AlphaDiversityResult:
    """Alpha diversity table: one row per sample, one column per measure."""

    sample_ids: list[str]
    measures: list[str]
    values: np.ndarray  # shape (n_samples, n_measures)

    def column(self, measure: str) -> np.ndarray:
        return self.values[:, self.measures.index(resolve_measure(measure))]

    def get(self, sample_id: str, measure: str) -> float:
        return float(self.column(measure)[self.sample_ids.index(sample_id)])

    def to_rows(self) -> list[dict[str, float | str]]:
        return [
            {"sample_id": s, **{m: float(self.values[i, k]) for k, m in enumerate(self.measures)}}
            for i, s in enumerate(self.sample_ids)
        ]


def estimate_richness(
    ds: CommunityDataSet, measures: Sequence[str] | None = None
) -> AlphaDiversityResult:
    """Compute alpha diversity for every sample.

    Parameters
    ----------
    ds : CommunityDataSet
        Dataset whose abundance columns are the samples.
    measures : sequence of str, optional
        Measure names (case-insensitive) from :data:`MEASURES`. Defaults to
        :data:`DEFAULT_MEASURES`.

    Returns
    -------
    AlphaDiversityResult
        Samples with zero total abundance score 0 on every measure.
    """
    names = [resolve_measure(m) for m in (measures or DEFAULT_MEASURES)]
    values = np.zeros((ds.n_samples, len(names)))
    for j in range(ds.n_samples):
        col = np.asarray(ds.abundance[:, j])
        if col.sum() == 0:
            continue
        for k, name in enumerate(names):
            values[j, k] = MEASURES[name](col)
    return AlphaDiversityResult(
        sample_ids=list(ds.sample_ids),
        measures=names,
        values=values,
    )
