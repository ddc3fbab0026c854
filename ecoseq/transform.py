"""Selection and rescaling transforms over a CommunityDataSet.

Every function here returns a new, re-validated dataset. Selections that
would leave an empty axis raise :class:`EmptySelectionError` instead of
returning a degenerate dataset.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Collection, Union

import numpy as np

from .dataset import CommunityDataSet
from .errors import (
    EmptySelectionError,
    MalformedDatasetError,
    ZeroSumSampleError,
)

logger = logging.getLogger(__name__)

IdSelector = Union[Callable[[str], bool], Collection[str]]
RowFilter = Callable[[np.ndarray], bool]


def _mask(ids: tuple[str, ...], keep: IdSelector) -> np.ndarray:
    if callable(keep):
        return np.array([bool(keep(i)) for i in ids], dtype=bool)
    keep_set = set(keep)
    return np.array([i in keep_set for i in ids], dtype=bool)


# ---------------------------------------------------------------------------
# Pruning and subsetting
# ---------------------------------------------------------------------------


def prune_samples(ds: CommunityDataSet, keep: IdSelector) -> CommunityDataSet:
    """Keep samples selected by ``keep`` (predicate on sample ID, or an ID collection)."""
    mask = _mask(ds.sample_ids, keep)
    if not mask.any():
        raise EmptySelectionError("prune_samples: no samples selected")
    kept = [s for s, k in zip(ds.sample_ids, mask) if k]
    logger.info("prune_samples: %d -> %d samples", ds.n_samples, len(kept))
    if mask.all():
        return ds.replace()
    return ds.replace(
        sample_ids=tuple(kept),
        abundance=ds.abundance[:, mask],
        sample_data=ds.sample_data.restrict(kept),
    )


def prune_taxa(ds: CommunityDataSet, keep: IdSelector) -> CommunityDataSet:
    """Keep taxa selected by ``keep`` (predicate on taxon ID, or an ID collection).

    Taxonomy and tree are restricted to the surviving taxa.
    """
    mask = _mask(ds.taxon_ids, keep)
    if not mask.any():
        raise EmptySelectionError("prune_taxa: no taxa selected")
    logger.info("prune_taxa: %d -> %d taxa", ds.n_taxa, int(mask.sum()))
    if mask.all():
        return ds.replace()
    return ds.replace(
        taxon_ids=tuple(t for t, k in zip(ds.taxon_ids, mask) if k),
        abundance=ds.abundance[mask],
    )


def subset_samples(
    ds: CommunityDataSet, predicate: Callable[[dict], bool]
) -> CommunityDataSet:
    """Keep samples whose metadata record satisfies ``predicate``.

    Example::

        soil = subset_samples(ds, lambda rec: rec["SampleType"] == "Soil")
    """
    keep = [s for s in ds.sample_ids if predicate(ds.sample_record(s))]
    if not keep:
        raise EmptySelectionError("subset_samples: no sample record matched the predicate")
    return prune_samples(ds, keep)


def subset_taxa(
    ds: CommunityDataSet, predicate: Callable[[dict], bool]
) -> CommunityDataSet:
    """Keep taxa whose taxonomy record (rank -> assignment) satisfies ``predicate``.

    Taxa without a taxonomy entry are offered a record with every rank
    unassigned.
    """
    if ds.taxonomy is None:
        raise MalformedDatasetError("taxonomy_coverage", "subset_taxa needs a taxonomy table")
    blank = {r: "" for r in ds.taxonomy.ranks}
    keep = [
        t for t in ds.taxon_ids
        if predicate(ds.taxonomy.record(t) if t in ds.taxonomy else dict(blank))
    ]
    if not keep:
        raise EmptySelectionError("subset_taxa: no taxonomy record matched the predicate")
    return prune_taxa(ds, keep)


def filter_taxa(
    ds: CommunityDataSet, score_fn: RowFilter, keep: bool = True
) -> CommunityDataSet:
    """Apply ``score_fn`` to each taxon's abundance vector across samples.

    With ``keep=True`` the taxa for which ``score_fn`` is true are retained,
    otherwise those for which it is false.
    """
    flags = np.array([bool(score_fn(row.copy())) for row in ds.abundance], dtype=bool)
    if not keep:
        flags = ~flags
    selected = [t for t, f in zip(ds.taxon_ids, flags) if f]
    if not selected:
        raise EmptySelectionError("filter_taxa: no taxa passed the filter")
    return prune_taxa(ds, selected)


# ---------------------------------------------------------------------------
# Filter-function builders
# ---------------------------------------------------------------------------


def k_over_a(k: int, a: float) -> RowFilter:
    """True if at least ``k`` entries exceed ``a``."""
    return lambda x: int(np.sum(np.asarray(x) > a)) >= k


def p_over_a(p: float, a: float) -> RowFilter:
    """True if at least a fraction ``p`` of entries exceed ``a``."""
    def fn(x: np.ndarray) -> bool:
        x = np.asarray(x)
        return len(x) > 0 and float(np.sum(x > a)) / len(x) >= p
    return fn


def filterfun(*fns: RowFilter) -> RowFilter:
    """Conjunction of several row filters."""
    return lambda x: all(fn(x) for fn in fns)


def top_n(n: int) -> Callable[[np.ndarray], np.ndarray]:
    """Per-sample selector: the ``n`` most abundant taxa (ties at the cut included)."""
    def fn(x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if n <= 0 or len(x) == 0:
            return np.zeros(len(x), dtype=bool)
        cut = np.sort(x)[::-1][min(n, len(x)) - 1]
        return (x >= cut) & (x > 0)
    return fn


def top_p(p: float) -> Callable[[np.ndarray], np.ndarray]:
    """Per-sample selector: the most abundant fraction ``p`` of taxa."""
    def fn(x: np.ndarray) -> np.ndarray:
        return top_n(max(1, math.ceil(p * len(x))))(x)
    return fn


def top_f(f: float) -> Callable[[np.ndarray], np.ndarray]:
    """Per-sample selector: most abundant taxa that together reach fraction ``f`` of the total."""
    def fn(x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        out = np.zeros(len(x), dtype=bool)
        total = x.sum()
        if total == 0:
            return out
        order = np.argsort(-x, kind="stable")
        cumulative = np.cumsum(x[order]) / total
        n_keep = int(np.searchsorted(cumulative, f - 1e-12)) + 1
        out[order[:min(n_keep, len(x))]] = True
        return out
    return fn


def filterfun_sample(
    ds: CommunityDataSet, fn: Callable[[np.ndarray], np.ndarray]
) -> dict[str, list[str]]:
    """Apply a per-sample selector; returns sample_id -> selected taxon IDs."""
    result: dict[str, list[str]] = {}
    for j, s in enumerate(ds.sample_ids):
        flags = np.asarray(fn(ds.abundance[:, j].copy()), dtype=bool)
        if flags.shape != (ds.n_taxa,):
            raise ValueError(
                f"selector returned shape {flags.shape}, expected ({ds.n_taxa},)"
            )
        result[s] = [t for t, f in zip(ds.taxon_ids, flags) if f]
    return result


# ---------------------------------------------------------------------------
# Count transforms
# ---------------------------------------------------------------------------


def transform_sample_counts(
    ds: CommunityDataSet, fn: Callable[[np.ndarray], np.ndarray]
) -> CommunityDataSet:
    """Replace each sample's abundance vector with ``fn(vector)``.

    Raises
    ------
    ZeroSumSampleError
        ``fn`` produced NaN or infinite values for a sample whose counts sum
        to zero (typically a division by the column total).
    MalformedDatasetError
        ``fn`` returned the wrong length, or non-finite or negative values
        for a sample with non-zero counts.
    """
    sums = ds.sample_sums()
    columns = []
    bad_zero: list[str] = []
    for j, s in enumerate(ds.sample_ids):
        with np.errstate(divide="ignore", invalid="ignore"):
            col = np.asarray(fn(ds.abundance[:, j].copy()), dtype=np.float64)
        if col.shape != (ds.n_taxa,):
            raise MalformedDatasetError(
                "shape", f"transform returned shape {col.shape} for sample {s!r}, expected ({ds.n_taxa},)"
            )
        if not np.all(np.isfinite(col)):
            if sums[j] == 0:
                bad_zero.append(s)
            else:
                raise MalformedDatasetError(
                    "non_finite", f"transform produced non-finite values for sample {s!r}"
                )
        columns.append(col)
    if bad_zero:
        raise ZeroSumSampleError(bad_zero)
    return ds.replace(abundance=np.column_stack(columns))


def relative_abundance(ds: CommunityDataSet) -> CommunityDataSet:
    """Scale every sample to sum to 1. Zero-sum samples raise ZeroSumSampleError."""
    sums = ds.sample_sums()
    zero = [s for s, total in zip(ds.sample_ids, sums) if total == 0]
    if zero:
        raise ZeroSumSampleError(zero)
    return transform_sample_counts(ds, lambda x: x / x.sum())


@dataclass
class RarefyConfig:
    """Configuration for even-depth rarefaction.

    Attributes:
        sample_size: Reads per sample after subsampling. ``None`` uses the
            smallest non-zero sample total.
        random_seed: Seed for the subsampling generator.
        replace: Draw with replacement (multinomial). The default draws
            without replacement (multivariate hypergeometric).
        trim_taxa: Drop taxa that are absent from every sample afterwards.
    """

    sample_size: int | None = None
    random_seed: int = 711
    replace: bool = False
    trim_taxa: bool = True


def rarefy_even_depth(
    ds: CommunityDataSet, config: RarefyConfig | None = None
) -> CommunityDataSet:
    """Subsample every sample to the same total read count.

    Samples with fewer reads than the target depth are dropped with a
    warning. Counts must be whole numbers.
    """
    cfg = config or RarefyConfig()
    counts = ds.abundance
    if not np.allclose(counts, np.round(counts)):
        raise MalformedDatasetError("non_integer", "rarefaction needs integer counts")
    counts = np.round(counts).astype(np.int64)
    sums = counts.sum(axis=0)

    depth = cfg.sample_size
    if depth is None:
        nonzero = sums[sums > 0]
        if len(nonzero) == 0:
            raise EmptySelectionError("rarefy_even_depth: every sample is empty")
        depth = int(nonzero.min())
    if depth <= 0:
        raise ValueError(f"sample_size must be positive, got {depth}")

    keep = sums >= depth
    dropped = [s for s, k in zip(ds.sample_ids, keep) if not k]
    if dropped:
        logger.warning(
            "rarefy_even_depth: %d sample(s) have fewer than %d reads and were removed: %s",
            len(dropped), depth, ", ".join(dropped[:10]),
        )
    if not keep.any():
        raise EmptySelectionError(f"rarefy_even_depth: no sample has {depth} reads")

    rng = np.random.default_rng(cfg.random_seed)
    out = np.zeros((ds.n_taxa, int(keep.sum())), dtype=np.float64)
    for k, j in enumerate(np.flatnonzero(keep)):
        col = counts[:, j]
        if cfg.replace:
            out[:, k] = rng.multinomial(depth, col / col.sum())
        else:
            out[:, k] = rng.multivariate_hypergeometric(col, depth)

    kept_samples = [s for s, k in zip(ds.sample_ids, keep) if k]
    result = ds.replace(
        sample_ids=tuple(kept_samples),
        abundance=out,
        sample_data=ds.sample_data.restrict(kept_samples),
    )
    logger.info("rarefy_even_depth: %d samples at depth %d", result.n_samples, depth)
    if cfg.trim_taxa:
        present = result.taxon_sums() > 0
        if not present.all():
            logger.info("rarefy_even_depth: trimming %d absent taxa", int((~present).sum()))
            result = prune_taxa(
                result, [t for t, p in zip(result.taxon_ids, present) if p]
            )
    return result
