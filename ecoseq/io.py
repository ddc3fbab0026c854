"""Tab-separated importers producing a validated CommunityDataSet."""

from __future__ import annotations

import csv
from pathlib import Path

import numpy as np

from .dataset import DEFAULT_RANKS, CommunityDataSet, SampleMetadata, TaxonomyTable
from .errors import MalformedDatasetError
from .tree import PhyloTree

LINEAGE_COLUMNS = ("taxon", "taxonomy", "lineage")
_TRUE = {"true", "yes", "t"}
_FALSE = {"false", "no", "f"}


def coerce_value(raw: str) -> object:
    """Parse a metadata cell into bool, int, float, str, or None if blank."""
    text = raw.strip()
    if text == "" or text.upper() in {"NA", "NAN", "NULL"}:
        return None
    lowered = text.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def parse_lineage(text: str, n_ranks: int = len(DEFAULT_RANKS)) -> tuple[str, ...]:
    """Split a ``k__Bacteria; p__Firmicutes; ...`` string into rank values.

    Rank prefixes are stripped and empty assignments (``g__``) become
    unassigned.
    """
    parts = [p.strip() for p in text.split(";")][:n_ranks]
    values = []
    for p in parts:
        if len(p) >= 3 and p[1:3] == "__":
            p = p[3:]
        values.append(p)
    return tuple(values)


def load_abundance_table(path: str | Path) -> CommunityDataSet:
    """Load a tab-separated abundance table.

    First column = taxon ID, remaining columns = sample counts. The result
    has no metadata, taxonomy or tree.
    """
    path = Path(path)
    with open(path, newline="") as f:
        reader = csv.reader(f, delimiter="\t")
        header = next(reader)
        sample_ids = [s.strip() for s in header[1:]]
        taxon_ids: list[str] = []
        rows: list[list[float]] = []
        for lineno, row in enumerate(reader, start=2):
            if not row or not row[0].strip() or row[0].startswith("#"):
                continue
            if len(row) - 1 != len(sample_ids):
                raise MalformedDatasetError(
                    "shape", f"{path}:{lineno}: expected {len(sample_ids)} values, got {len(row) - 1}"
                )
            taxon_ids.append(row[0].strip())
            try:
                rows.append([float(x) for x in row[1:]])
            except ValueError as exc:
                raise MalformedDatasetError("non_finite", f"{path}:{lineno}: {exc}") from exc
    abundances = np.array(rows, dtype=np.float64).reshape(len(taxon_ids), len(sample_ids))
    return CommunityDataSet(
        taxon_ids=tuple(taxon_ids), sample_ids=tuple(sample_ids), abundance=abundances
    )


def load_taxonomy(path: str | Path) -> TaxonomyTable:
    """Load a tab-separated taxonomy table.

    Either one column per rank (header names become the ranks) or a single
    lineage column (``Taxon``/``taxonomy``) of semicolon-separated ranks.
    """
    path = Path(path)
    records: dict[str, tuple[str, ...]] = {}
    with open(path, newline="") as f:
        reader = csv.reader(f, delimiter="\t")
        header = [h.strip() for h in next(reader)]
        rank_columns = header[1:]
        lineage = len(rank_columns) >= 1 and rank_columns[0].lower() in LINEAGE_COLUMNS
        ranks = DEFAULT_RANKS if lineage else tuple(rank_columns)
        for row in reader:
            if not row or not row[0].strip():
                continue
            taxon_id = row[0].strip()
            if lineage:
                records[taxon_id] = parse_lineage(row[1] if len(row) > 1 else "", len(ranks))
            else:
                values = [v.strip() for v in row[1 : len(ranks) + 1]]
                records[taxon_id] = tuple("" if v.upper() == "NA" else v for v in values)
    return TaxonomyTable(ranks=ranks, records=records)


def load_metadata(path: str | Path) -> SampleMetadata:
    """Load a tab-separated sample metadata table.

    First column = sample ID, remaining columns = variables. Cells are
    coerced with :func:`coerce_value`.
    """
    path = Path(path)
    records: dict[str, dict[str, object]] = {}
    with open(path, newline="") as f:
        reader = csv.reader(f, delimiter="\t")
        header = [h.strip() for h in next(reader)]
        for row in reader:
            if not row or not row[0].strip():
                continue
            sample_id = row[0].strip()
            if sample_id in records:
                raise MalformedDatasetError("duplicate_id", f"duplicate sample {sample_id!r} in {path}")
            records[sample_id] = {
                k: coerce_value(v) for k, v in zip(header[1:], row[1:])
            }
    return SampleMetadata(records=records)


def load_tree(path: str | Path) -> PhyloTree:
    """Load a Newick tree file."""
    return PhyloTree.read_newick(Path(path))


def load_dataset(
    abundance: str | Path,
    metadata: str | Path | None = None,
    taxonomy: str | Path | None = None,
    tree: str | Path | None = None,
) -> CommunityDataSet:
    """Load and link all tables into one validated dataset."""
    ds = load_abundance_table(abundance)
    return ds.replace(
        sample_data=load_metadata(metadata) if metadata else None,
        taxonomy=load_taxonomy(taxonomy) if taxonomy else None,
        tree=load_tree(tree) if tree else None,
    )
