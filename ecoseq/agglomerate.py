"""Grouping and collapsing of samples and taxa.

Sample merges sum abundances per group and aggregate metadata explicitly;
taxon merges (merge_taxa, tip_glom, tax_glom) sum abundances into a single
archetype row and drop the other members from every table.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Sequence, Union

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from .dataset import CommunityDataSet, SampleMetadata, TaxonomyTable, is_numeric_value
from .errors import (
    EmptySelectionError,
    InvalidArchetypeError,
    MalformedDatasetError,
    UnknownVariableError,
)
from .transform import prune_taxa

logger = logging.getLogger(__name__)

AGGREGATIONS = ("majority", "first", "list")
Aggregation = Union[str, Callable[[list], Any]]


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------


def _aggregate(values: list, how: Aggregation, variable: str) -> Any:
    present = [v for v in values if v is not None]
    if callable(how):
        return how(list(values))
    if how == "first":
        return present[0] if present else None
    if how == "list":
        return tuple(values)
    if how == "majority":
        if not present:
            return None
        counts = Counter(present)
        best = max(counts.values())
        # Ties go to the value seen first.
        return next(v for v in present if counts[v] == best)
    raise MalformedDatasetError(
        "aggregation",
        f"unknown aggregation {how!r} for {variable!r}; choose from {AGGREGATIONS}",
    )


def merge_samples(
    ds: CommunityDataSet,
    group_key: str | Callable[[str], Any],
    aggregations: dict[str, Aggregation] | None = None,
    default_aggregation: Aggregation | None = None,
) -> CommunityDataSet:
    """Merge samples into groups, summing their abundances.

    Parameters
    ----------
    ds : CommunityDataSet
        Input dataset.
    group_key : str or callable
        Metadata variable name, or a function mapping sample ID to group.
        Groups become the new sample IDs (as strings), in order of first
        appearance.
    aggregations : dict, optional
        Per-variable strategy for non-numeric metadata: ``"majority"``,
        ``"first"``, ``"list"`` (a tuple of member values in sample order), or
        a callable receiving the member values.
        Numeric variables are summed unless given a strategy here.
    default_aggregation : str or callable, optional
        Strategy for non-numeric variables missing from ``aggregations``.
        Without it such variables raise ``MalformedDatasetError``.

    Returns
    -------
    CommunityDataSet
        One sample per group; taxonomy and tree are carried over.

    Raises
    ------
    UnknownVariableError
        ``group_key`` or a key of ``aggregations`` names no metadata variable.
    """
    aggregations = dict(aggregations or {})
    if isinstance(group_key, str):
        column = ds.variable(group_key)
        keys = [column[s] for s in ds.sample_ids]
        aggregations.setdefault(group_key, "first")
    else:
        keys = [group_key(s) for s in ds.sample_ids]

    groups: dict[str, list[int]] = {}
    for j, k in enumerate(keys):
        groups.setdefault(str(k), []).append(j)

    meta = ds.sample_data
    unknown = [v for v in aggregations if not meta.has_variable(v)]
    if unknown:
        raise UnknownVariableError(
            f"aggregation given for unknown sample variable(s) {unknown}; "
            f"available: {meta.variables}"
        )
    plan: dict[str, Aggregation] = {}
    for var in meta.variables:
        if var in aggregations:
            plan[var] = aggregations[var]
        elif meta.is_numeric(var):
            plan[var] = "sum"
        elif default_aggregation is not None:
            plan[var] = default_aggregation
        else:
            raise MalformedDatasetError(
                "aggregation",
                f"non-numeric variable {var!r} needs an aggregation strategy "
                f"({', '.join(AGGREGATIONS)})",
            )

    abundance = np.column_stack(
        [ds.abundance[:, idx].sum(axis=1) for idx in groups.values()]
    )
    records: dict[str, dict[str, Any]] = {}
    for g, idx in groups.items():
        members = [ds.sample_ids[j] for j in idx]
        rec: dict[str, Any] = {}
        for var, how in plan.items():
            values = [meta.records[s].get(var) for s in members]
            if how == "sum":
                numbers = [v for v in values if v is not None]
                if any(not is_numeric_value(v) for v in numbers):
                    raise MalformedDatasetError(
                        "aggregation", f"cannot sum non-numeric values of {var!r}"
                    )
                rec[var] = sum(numbers) if numbers else None
            else:
                rec[var] = _aggregate(values, how, var)
        records[g] = rec

    logger.info("merge_samples: %d -> %d samples", ds.n_samples, len(groups))
    return ds.replace(
        sample_ids=tuple(groups),
        abundance=abundance,
        sample_data=SampleMetadata(records=records),
    )


# ---------------------------------------------------------------------------
# Taxa
# ---------------------------------------------------------------------------


def _common_lineage(records: list[tuple[str, ...]], n_ranks: int) -> tuple[str, ...]:
    """Ranks shared by every record, down to the first disagreement."""
    out: list[str] = []
    for r in range(n_ranks):
        values = {rec[r] for rec in records}
        if len(values) != 1:
            break
        out.append(values.pop())
    return tuple(out) + ("",) * (n_ranks - len(out))


def _collapse(
    ds: CommunityDataSet,
    groups: Sequence[Sequence[str]],
    keepers: Sequence[str],
    labels: Sequence[str] | None = None,
) -> CommunityDataSet:
    """Sum each group into its keeper row, relabel it, and drop the other members."""
    if labels is None:
        labels = keepers
    rows = {t: ds.abundance[ds.taxon_index(t)] for t in ds.taxon_ids}
    removed: set[str] = set()
    relabel: dict[str, str] = {}
    merged_rows: dict[str, np.ndarray] = {}
    merged_tax: dict[str, tuple[str, ...]] = {}
    for members, keeper, label in zip(groups, keepers, labels):
        merged_rows[keeper] = np.sum([rows[m] for m in members], axis=0)
        removed.update(m for m in members if m != keeper)
        relabel[keeper] = label
        if ds.taxonomy is not None:
            recs = [ds.taxonomy.records[m] for m in members if m in ds.taxonomy]
            if recs:
                merged_tax[keeper] = _common_lineage(recs, len(ds.taxonomy.ranks))

    survivors = [t for t in ds.taxon_ids if t not in removed]
    abundance = np.vstack([merged_rows.get(t, rows[t]) for t in survivors])
    new_ids = tuple(relabel.get(t, t) for t in survivors)
    if len(set(new_ids)) != len(new_ids):
        raise MalformedDatasetError(
            "duplicate_id", "merged taxon label collides with an existing taxon"
        )

    taxonomy = None
    if ds.taxonomy is not None:
        records = {}
        for t in survivors:
            rec = merged_tax.get(t, ds.taxonomy.records.get(t))
            if rec is not None:
                records[relabel.get(t, t)] = rec
        taxonomy = TaxonomyTable(ranks=ds.taxonomy.ranks, records=records) if records else None

    tree = ds.tree
    if tree is not None:
        tips = [t for t in survivors if tree.has_tip(t)]
        if not tips:
            logger.warning("merge dropped every tree tip; result has no tree")
            tree = None
        else:
            if len(tips) != tree.n_tips:
                tree = tree.prune(tips)
            for old, new in relabel.items():
                if old != new and tree.has_tip(old):
                    tree = tree.rename_tip(old, new)

    return ds.replace(
        taxon_ids=new_ids,
        abundance=abundance,
        taxonomy=taxonomy,
        tree=tree,
    )


def merge_taxa(
    ds: CommunityDataSet,
    taxon_ids: Sequence[str],
    archetype: str | int = 0,
    strict: bool = True,
) -> CommunityDataSet:
    """Merge several taxa into one row keyed by the archetype.

    Parameters
    ----------
    ds : CommunityDataSet
        Input dataset.
    taxon_ids : sequence of str
        Taxa to merge. Member order follows the dataset's taxon order.
    archetype : str or int
        Surviving member, as a taxon ID or an index into the ordered members.
    strict : bool
        If True, an archetype that resolves to no member raises
        :class:`InvalidArchetypeError`. If False, the first member is kept
        and relabelled with the archetype's literal value.

    Returns
    -------
    CommunityDataSet
        Dataset in which the archetype row carries the summed abundances and
        the other members are gone from abundance, taxonomy and tree. The
        archetype's taxonomy keeps only the ranks all members agree on.
    """
    wanted = set(taxon_ids)
    unknown = sorted(t for t in wanted if not ds.has_taxon(t))
    if unknown:
        raise KeyError(f"unknown taxa: {unknown[:5]}")
    members = [t for t in ds.taxon_ids if t in wanted]
    if not members:
        raise EmptySelectionError("merge_taxa: no taxa given")

    label = None
    if isinstance(archetype, (int, np.integer)) and not isinstance(archetype, bool):
        keeper = members[archetype] if 0 <= archetype < len(members) else None
    else:
        keeper = archetype if archetype in wanted else None
    if keeper is None:
        if strict:
            raise InvalidArchetypeError(
                f"archetype {archetype!r} is neither a member nor a valid index "
                f"into {len(members)} members"
            )
        keeper = members[0]
        label = str(archetype)
        logger.warning(
            "merge_taxa: archetype %r is not a member; keeping %r relabelled as %r",
            archetype, keeper, label,
        )

    logger.info("merge_taxa: merging %d taxa into %r", len(members), label or keeper)
    return _collapse(ds, [members], [keeper], [label or keeper])


def _most_abundant(ds: CommunityDataSet, members: Sequence[str]) -> str:
    sums = [ds.taxon_sum(m) for m in members]
    return members[int(np.argmax(sums))]


def tip_glom(ds: CommunityDataSet, h: float = 0.2) -> CommunityDataSet:
    """Merge taxa whose tips lie closer than ``h`` on the tree.

    Single-linkage clustering of the cophenetic distances, cut so that
    pairs strictly closer than ``h`` share a cluster. Each cluster is
    merged into its most abundant member.
    """
    tree = ds.require_tree()
    if ds.n_taxa < 2 or h <= 0:
        return ds.replace()
    dist = tree.cophenetic(ds.taxon_ids)
    Z = linkage(squareform(dist, checks=False), method="single")
    labels = fcluster(Z, t=np.nextafter(h, -np.inf), criterion="distance")

    clusters: dict[int, list[str]] = {}
    for t, c in zip(ds.taxon_ids, labels):
        clusters.setdefault(int(c), []).append(t)
    groups = [m for m in clusters.values() if len(m) > 1]
    logger.info("tip_glom(h=%g): %d -> %d taxa", h, ds.n_taxa, len(clusters))
    if not groups:
        return ds.replace()
    keepers = [_most_abundant(ds, g) for g in groups]
    return _collapse(ds, groups, keepers)


def tax_glom(
    ds: CommunityDataSet, rank: str, keep_unassigned: bool = True
) -> CommunityDataSet:
    """Merge taxa sharing the same lineage down to ``rank``.

    Ranks finer than ``rank`` are unassigned in the result. Taxa unassigned
    at ``rank`` are dropped unless ``keep_unassigned`` is set, in which case
    they group by their coarser lineage.
    """
    taxonomy = ds.require_taxonomy()
    idx = taxonomy.rank_index(rank)

    groups: dict[tuple[str, ...], list[str]] = {}
    for t in ds.taxon_ids:
        rec = taxonomy.records[t]
        if not rec[idx] and not keep_unassigned:
            continue
        groups.setdefault(rec[: idx + 1], []).append(t)
    if not groups:
        raise EmptySelectionError(f"tax_glom: no taxa assigned at rank {rank!r}")

    work = ds
    if not keep_unassigned:
        kept = [t for members in groups.values() for t in members]
        if len(kept) != ds.n_taxa:
            work = prune_taxa(ds, kept)

    multi = [(k, m) for k, m in groups.items() if len(m) > 1]
    keepers = {k: _most_abundant(work, m) for k, m in groups.items()}
    if multi:
        work = _collapse(work, [m for _, m in multi], [keepers[k] for k, _ in multi])

    pad = ("",) * (len(taxonomy.ranks) - idx - 1)
    records = {keepers[k]: k + pad for k in groups}
    logger.info("tax_glom(%s): %d -> %d taxa", taxonomy.ranks[idx], ds.n_taxa, len(groups))
    return work.replace(taxonomy=TaxonomyTable(ranks=taxonomy.ranks, records=records))
