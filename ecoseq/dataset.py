"""The CommunityDataSet container and its linked tables."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from .errors import (
    MalformedDatasetError,
    MissingTreeError,
    UnknownRankError,
    UnknownVariableError,
)
from .tree import PhyloTree

DEFAULT_RANKS = ("Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species")

MetadataValue = Any  # float | int | str | bool, or a tuple of these


def freeze_value(value: object) -> object:
    """Immutable copy of a metadata cell: lists and sets become tuples."""
    if isinstance(value, (list, tuple)):
        return tuple(freeze_value(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted((freeze_value(v) for v in value), key=repr))
    if isinstance(value, dict):
        return MappingProxyType({k: freeze_value(v) for k, v in value.items()})
    return value


def is_numeric_value(value: object) -> bool:
    """True for int/float values (bool is categorical, not numeric)."""
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(
        value, (bool, np.bool_)
    )


@dataclass(frozen=True)
class TaxonomyTable:
    """Rank assignments keyed by taxon ID.

    Each record is a tuple aligned with ``ranks``; unassigned ranks hold
    the empty string. Short records are padded on construction and
    ``records`` is a read-only mapping.
    """

    ranks: tuple[str, ...] = DEFAULT_RANKS
    records: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ranks = tuple(str(r) for r in self.ranks)
        if len(set(ranks)) != len(ranks):
            raise MalformedDatasetError("duplicate_id", f"duplicate rank names in {ranks}")
        records: dict[str, tuple[str, ...]] = {}
        for taxon_id, values in self.records.items():
            values = tuple("" if v is None else str(v) for v in values)
            if len(values) > len(ranks):
                raise MalformedDatasetError(
                    "taxonomy",
                    f"taxon {taxon_id!r} has {len(values)} ranks, table defines {len(ranks)}",
                )
            records[str(taxon_id)] = values + ("",) * (len(ranks) - len(values))
        object.__setattr__(self, "ranks", ranks)
        object.__setattr__(self, "records", MappingProxyType(records))

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, taxon_id: object) -> bool:
        return taxon_id in self.records

    @property
    def taxon_ids(self) -> list[str]:
        return list(self.records)

    def rank_index(self, rank: str) -> int:
        """Column position of ``rank``; matching falls back to case-insensitive."""
        if rank in self.ranks:
            return self.ranks.index(rank)
        lowered = [r.lower() for r in self.ranks]
        if isinstance(rank, str) and rank.lower() in lowered:
            return lowered.index(rank.lower())
        raise UnknownRankError(f"unknown rank {rank!r}; available: {list(self.ranks)}")

    def rank(self, taxon_id: str, rank: str) -> str:
        return self.records[taxon_id][self.rank_index(rank)]

    def record(self, taxon_id: str) -> dict[str, str]:
        return dict(zip(self.ranks, self.records[taxon_id]))

    def restrict(self, taxon_ids: Iterable[str]) -> TaxonomyTable:
        """Records for ``taxon_ids`` (those present), in that order."""
        return TaxonomyTable(
            ranks=self.ranks,
            records={t: self.records[t] for t in taxon_ids if t in self.records},
        )


@dataclass(frozen=True)
class SampleMetadata:
    """Sample metadata keyed by sample ID.

    Values are heterogeneous: numbers, strings and booleans may share a
    table, and a record may lack a variable (read back as ``None``).
    Records are copied into read-only mappings on construction; list cells
    (e.g. from a ``"list"`` merge) are stored as tuples.
    """

    records: Mapping[str, Mapping[str, MetadataValue]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "records",
            MappingProxyType({
                str(s): MappingProxyType({k: freeze_value(v) for k, v in rec.items()})
                for s, rec in self.records.items()
            }),
        )

    @property
    def sample_ids(self) -> list[str]:
        return list(self.records.keys())

    @property
    def variables(self) -> list[str]:
        """Variable names in order of first appearance."""
        seen: dict[str, None] = {}
        for rec in self.records.values():
            for k in rec:
                seen.setdefault(k, None)
        return list(seen)

    def has_variable(self, name: str) -> bool:
        return any(name in rec for rec in self.records.values())

    def column(self, name: str) -> dict[str, MetadataValue]:
        """Map sample_id -> value of ``name``."""
        if not self.has_variable(name):
            raise UnknownVariableError(
                f"unknown sample variable {name!r}; available: {self.variables}"
            )
        return {s: rec.get(name) for s, rec in self.records.items()}

    def is_numeric(self, name: str) -> bool:
        """True if every non-missing value of ``name`` is an int or float."""
        values = [v for v in self.column(name).values() if v is not None]
        return bool(values) and all(is_numeric_value(v) for v in values)

    def get_groups(self, variable: str) -> dict[MetadataValue, list[str]]:
        """Group sample IDs by a metadata variable.

        Returns dict mapping group_value -> list of sample_ids.
        """
        groups: dict[MetadataValue, list[str]] = {}
        for sample_id, val in self.column(variable).items():
            groups.setdefault(val, []).append(sample_id)
        return groups

    def restrict(self, sample_ids: Iterable[str]) -> SampleMetadata:
        return SampleMetadata(records={s: self.records[s] for s in sample_ids})


@dataclass(frozen=True, eq=False)
class CommunityDataSet:
    """Abundance matrix linked to sample metadata, taxonomy and a tree.

    ``abundance`` has shape ``(n_taxa, n_samples)``. The container is a
    value: construction copies and validates every table, the abundance
    buffer is read-only, and every transform returns a new instance.

    Taxonomy records and tree tips for taxa outside the abundance table
    are dropped on construction; at least one must overlap.
    """

    taxon_ids: tuple[str, ...]
    sample_ids: tuple[str, ...]
    abundance: np.ndarray
    sample_data: SampleMetadata | None = None
    taxonomy: TaxonomyTable | None = None
    tree: PhyloTree | None = None
    _taxon_pos: dict[str, int] = field(init=False, repr=False)
    _sample_pos: dict[str, int] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        taxon_ids = tuple(str(t) for t in self.taxon_ids)
        sample_ids = tuple(str(s) for s in self.sample_ids)
        try:
            abundance = np.array(self.abundance, dtype=np.float64, copy=True)
        except (TypeError, ValueError) as exc:
            raise MalformedDatasetError("non_finite", f"abundance is not numeric: {exc}") from exc

        if abundance.ndim != 2:
            raise MalformedDatasetError(
                "shape", f"abundance must be 2-D, got {abundance.ndim}-D"
            )
        n_taxa, n_samples = abundance.shape
        if n_taxa != len(taxon_ids):
            raise MalformedDatasetError(
                "shape", f"Row count {n_taxa} != len(taxon_ids) {len(taxon_ids)}"
            )
        if n_samples != len(sample_ids):
            raise MalformedDatasetError(
                "shape", f"Col count {n_samples} != len(sample_ids) {len(sample_ids)}"
            )
        _check_unique(taxon_ids, "taxon")
        _check_unique(sample_ids, "sample")
        if not np.all(np.isfinite(abundance)):
            raise MalformedDatasetError("non_finite", "abundance contains NaN or infinite values")
        if np.any(abundance < 0):
            t, s = np.argwhere(abundance < 0)[0]
            raise MalformedDatasetError(
                "negative_value",
                f"negative abundance {abundance[t, s]} at ({taxon_ids[t]}, {sample_ids[s]})",
            )
        abundance.setflags(write=False)

        sample_data = self.sample_data
        if sample_data is None:
            sample_data = SampleMetadata(records={s: {} for s in sample_ids})
        meta_ids = set(sample_data.records)
        if meta_ids != set(sample_ids):
            orphans = sorted(meta_ids - set(sample_ids))
            gaps = sorted(set(sample_ids) - meta_ids)
            raise MalformedDatasetError(
                "metadata_mismatch",
                f"metadata samples do not match abundance samples "
                f"(orphans: {orphans[:5]}, missing: {gaps[:5]})",
            )
        sample_data = sample_data.restrict(sample_ids)

        taxonomy = self.taxonomy
        if taxonomy is not None:
            if not any(t in taxonomy for t in taxon_ids):
                raise MalformedDatasetError(
                    "taxonomy_coverage", "taxonomy shares no taxa with the abundance table"
                )
            taxonomy = taxonomy.restrict(taxon_ids)

        tree = self.tree
        if tree is not None:
            present = [t for t in taxon_ids if tree.has_tip(t)]
            if not present:
                raise MalformedDatasetError(
                    "tree_coverage", "tree shares no tips with the abundance table"
                )
            if len(present) != tree.n_tips:
                tree = tree.prune(present)

        object.__setattr__(self, "taxon_ids", taxon_ids)
        object.__setattr__(self, "sample_ids", sample_ids)
        object.__setattr__(self, "abundance", abundance)
        object.__setattr__(self, "sample_data", sample_data)
        object.__setattr__(self, "taxonomy", taxonomy)
        object.__setattr__(self, "tree", tree)
        object.__setattr__(self, "_taxon_pos", {t: i for i, t in enumerate(taxon_ids)})
        object.__setattr__(self, "_sample_pos", {s: i for i, s in enumerate(sample_ids)})

    # ------------------------------------------------------------------
    # Shape and lookups
    # ------------------------------------------------------------------

    @property
    def n_taxa(self) -> int:
        return len(self.taxon_ids)

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def taxon_index(self, taxon_id: str) -> int:
        try:
            return self._taxon_pos[taxon_id]
        except KeyError:
            raise KeyError(f"unknown taxon {taxon_id!r}") from None

    def sample_index(self, sample_id: str) -> int:
        try:
            return self._sample_pos[sample_id]
        except KeyError:
            raise KeyError(f"unknown sample {sample_id!r}") from None

    def has_taxon(self, taxon_id: str) -> bool:
        return taxon_id in self._taxon_pos

    def has_sample(self, sample_id: str) -> bool:
        return sample_id in self._sample_pos

    def abundance_of(self, taxon_id: str, sample_id: str) -> float:
        return float(self.abundance[self.taxon_index(taxon_id), self.sample_index(sample_id)])

    def sample_sum(self, sample_id: str) -> float:
        return float(self.abundance[:, self.sample_index(sample_id)].sum())

    def taxon_sum(self, taxon_id: str) -> float:
        return float(self.abundance[self.taxon_index(taxon_id)].sum())

    def sample_sums(self) -> np.ndarray:
        return self.abundance.sum(axis=0)

    def taxon_sums(self) -> np.ndarray:
        return self.abundance.sum(axis=1)

    def variable(self, name: str) -> dict[str, MetadataValue]:
        """Metadata column ``name`` as sample_id -> value."""
        return self.sample_data.column(name)

    def sample_record(self, sample_id: str) -> dict[str, MetadataValue]:
        self.sample_index(sample_id)
        return dict(self.sample_data.records[sample_id])

    def taxonomy_record(self, taxon_id: str) -> dict[str, str]:
        """Rank -> assignment for ``taxon_id``; empty if it has no taxonomy."""
        self.taxon_index(taxon_id)
        if self.taxonomy is None or taxon_id not in self.taxonomy:
            return {}
        return self.taxonomy.record(taxon_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def replace(self, **changes: Any) -> CommunityDataSet:
        """Copy with some fields changed; the copy is re-validated."""
        return dataclasses.replace(self, **changes)

    def validate(self) -> bool:
        """Re-run construction checks. Raises MalformedDatasetError on failure."""
        self.replace()
        return True

    def require_taxonomy(self) -> TaxonomyTable:
        """Taxonomy covering every taxon, or MalformedDatasetError."""
        if self.taxonomy is None:
            raise MalformedDatasetError("taxonomy_coverage", "dataset has no taxonomy table")
        missing = [t for t in self.taxon_ids if t not in self.taxonomy]
        if missing:
            raise MalformedDatasetError(
                "taxonomy_coverage",
                f"{len(missing)} taxa lack taxonomy: {missing[:5]}",
            )
        return self.taxonomy

    def require_tree(self) -> PhyloTree:
        """Tree covering every taxon; MissingTreeError if there is no tree."""
        if self.tree is None:
            raise MissingTreeError("operation requires a phylogenetic tree")
        missing = [t for t in self.taxon_ids if not self.tree.has_tip(t)]
        if missing:
            raise MalformedDatasetError(
                "tree_coverage", f"{len(missing)} taxa are not tips of the tree: {missing[:5]}"
            )
        return self.tree

    # ------------------------------------------------------------------
    # Summary tables
    # ------------------------------------------------------------------

    def sample_summary(self) -> list[dict[str, MetadataValue]]:
        """One row per sample: id, total reads, observed taxa, then metadata."""
        sums = self.sample_sums()
        observed = (self.abundance > 0).sum(axis=0)
        return [
            {
                "sample_id": s,
                "total": float(sums[j]),
                "observed": int(observed[j]),
                **self.sample_data.records[s],
            }
            for j, s in enumerate(self.sample_ids)
        ]

    def taxon_summary(self) -> list[dict[str, MetadataValue]]:
        """One row per taxon: id, total reads, prevalence, then taxonomy."""
        sums = self.taxon_sums()
        prevalence = (self.abundance > 0).sum(axis=1) / max(self.n_samples, 1)
        return [
            {
                "taxon_id": t,
                "total": float(sums[i]),
                "prevalence": float(prevalence[i]),
                **self.taxonomy_record(t),
            }
            for i, t in enumerate(self.taxon_ids)
        ]

    def melt(self) -> list[dict[str, MetadataValue]]:
        """Long-format rows, one per (taxon, sample), with metadata and taxonomy joined."""
        rows: list[dict[str, MetadataValue]] = []
        for i, t in enumerate(self.taxon_ids):
            tax = self.taxonomy_record(t)
            for j, s in enumerate(self.sample_ids):
                rows.append({
                    "taxon_id": t,
                    "sample_id": s,
                    "abundance": float(self.abundance[i, j]),
                    **self.sample_data.records[s],
                    **tax,
                })
        return rows

    def __repr__(self) -> str:
        parts = [f"{self.n_taxa} taxa", f"{self.n_samples} samples"]
        if self.sample_data.variables:
            parts.append(f"{len(self.sample_data.variables)} sample variables")
        if self.taxonomy is not None:
            parts.append(f"{len(self.taxonomy.ranks)} ranks")
        if self.tree is not None:
            parts.append(f"tree with {self.tree.n_tips} tips")
        return f"CommunityDataSet({', '.join(parts)})"


def _check_unique(ids: Sequence[str], kind: str) -> None:
    if len(set(ids)) == len(ids):
        return
    seen: set[str] = set()
    dups = []
    for i in ids:
        if i in seen:
            dups.append(i)
        seen.add(i)
    raise MalformedDatasetError("duplicate_id", f"duplicate {kind} ids: {dups[:5]}")


def build_dataset(
    abundance: np.ndarray | Sequence[Sequence[float]],
    taxon_ids: Sequence[str],
    sample_ids: Sequence[str],
    sample_data: dict[str, dict[str, MetadataValue]] | SampleMetadata | None = None,
    taxonomy: dict[str, Sequence[str]] | TaxonomyTable | None = None,
    ranks: Sequence[str] = DEFAULT_RANKS,
    tree: PhyloTree | None = None,
) -> CommunityDataSet:
    """Convenience constructor accepting plain dicts for the side tables."""
    if isinstance(sample_data, dict):
        sample_data = SampleMetadata(records=sample_data)
    if isinstance(taxonomy, dict):
        taxonomy = TaxonomyTable(
            ranks=tuple(ranks), records={k: tuple(v) for k, v in taxonomy.items()}
        )
    return CommunityDataSet(
        taxon_ids=tuple(taxon_ids),
        sample_ids=tuple(sample_ids),
        abundance=np.asarray(abundance, dtype=np.float64),
        sample_data=sample_data,
        taxonomy=taxonomy,
        tree=tree,
    )
