"""Synthetic data generation for ecoseq tests."""

from __future__ import annotations

from pathlib import Path

import numpy as np

from ecoseq.dataset import CommunityDataSet, SampleMetadata, TaxonomyTable
from ecoseq.tree import PhyloTree

RANKS = ("Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species")


def balanced_tree(names: list[str], branch_length: float = 0.1) -> PhyloTree:
    """Balanced binary tree over ``names`` with equal branch lengths."""
    parent: list[int] = []
    lengths: list[float] = []
    labels: list[str | None] = []

    def build(members: list[str], p: int) -> None:
        idx = len(parent)
        parent.append(p)
        lengths.append(0.0 if p == -1 else branch_length)
        if len(members) == 1:
            labels.append(members[0])
            return
        labels.append(None)
        mid = len(members) // 2
        build(members[:mid], idx)
        build(members[mid:], idx)

    build(list(names), -1)
    return PhyloTree(parent, lengths, labels)


def small_tree() -> PhyloTree:
    """((A:1,B:1):1,(C:2,D:2):0.5);

    Cophenetic distances: A-B 2, C-D 4, A-C 4.5.
    """
    return PhyloTree(
        parent=[-1, 0, 1, 1, 0, 4, 4],
        branch_length=[0.0, 1.0, 1.0, 1.0, 0.5, 2.0, 2.0],
        names=[None, None, "A", "B", None, "C", "D"],
    )


def small_dataset(with_tree: bool = True) -> CommunityDataSet:
    """Four taxa (A-D) over three samples with mixed-type metadata."""
    abundance = np.array([
        [10.0, 0.0, 4.0],
        [5.0, 0.0, 0.0],
        [0.0, 8.0, 3.0],
        [1.0, 2.0, 0.0],
    ])
    metadata = SampleMetadata(records={
        "S1": {"site": "north", "depth": 10, "ph": 6.5, "control": False},
        "S2": {"site": "south", "depth": 20, "ph": 7.0, "control": False},
        "S3": {"site": "north", "depth": 5, "ph": 5.5, "control": True},
    })
    taxonomy = TaxonomyTable(
        ranks=("Kingdom", "Phylum", "Class"),
        records={
            "A": ("Bacteria", "Firmicutes", "Bacilli"),
            "B": ("Bacteria", "Firmicutes", "Clostridia"),
            "C": ("Bacteria", "Proteobacteria", "Gammaproteobacteria"),
            "D": ("Bacteria", "Firmicutes", ""),
        },
    )
    return CommunityDataSet(
        taxon_ids=("A", "B", "C", "D"),
        sample_ids=("S1", "S2", "S3"),
        abundance=abundance,
        sample_data=metadata,
        taxonomy=taxonomy,
        tree=small_tree() if with_tree else None,
    )


def generate_synthetic_dataset(
    n_taxa: int = 20,
    n_samples: int = 12,
    n_groups: int = 3,
    seed: int = 42,
    with_tree: bool = True,
) -> CommunityDataSet:
    """Generate synthetic counts with planted group structure.

    Creates n_groups sample types with n_samples/n_groups samples each.
    The first third of taxa are specialists for group 0, the second third
    for group 1, and the rest are generalists.
    """
    rng = np.random.default_rng(seed)
    samples_per_group = n_samples // n_groups
    group_names = ["soil", "feces", "ocean"][:n_groups]

    taxon_ids = [f"OTU_{i:03d}" for i in range(n_taxa)]
    sample_ids = []
    records: dict[str, dict[str, object]] = {}
    for gi, g in enumerate(group_names):
        for rep in range(samples_per_group):
            sid = f"{g}_rep{rep + 1}"
            sample_ids.append(sid)
            records[sid] = {
                "SampleType": g,
                "replicate": rep + 1,
                "depth_m": float(rng.uniform(0, 50)),
                "is_human": g == "feces",
            }

    abundances = np.zeros((n_taxa, len(sample_ids)), dtype=np.float64)
    per_class = n_taxa // 3
    for i in range(n_taxa):
        if i < per_class:
            target = 0
        elif i < 2 * per_class:
            target = 1
        else:
            target = -1
        for gi in range(n_groups):
            start = gi * samples_per_group
            end = start + samples_per_group
            if target == gi:
                abundances[i, start:end] = rng.poisson(500, samples_per_group)
            elif target == -1:
                abundances[i, start:end] = rng.poisson(200, samples_per_group)
            else:
                abundances[i, start:end] = rng.poisson(10, samples_per_group)

    phyla = ["Proteobacteria", "Actinobacteria", "Firmicutes", "Bacteroidetes", "Acidobacteria"]
    taxonomy = {
        t: (
            "Bacteria",
            phyla[i % len(phyla)],
            f"Class_{i % 3}",
            f"Order_{i % 4}",
            f"Family_{i % 5}",
            f"Genus_{i % 7}",
            f"sp_{i:03d}",
        )
        for i, t in enumerate(taxon_ids)
    }
    return CommunityDataSet(
        taxon_ids=tuple(taxon_ids),
        sample_ids=tuple(sample_ids),
        abundance=abundances,
        sample_data=SampleMetadata(records=records),
        taxonomy=TaxonomyTable(ranks=RANKS, records=taxonomy),
        tree=balanced_tree(taxon_ids) if with_tree else None,
    )


def generate_edge_case_all_zeros(n_taxa: int = 5, n_samples: int = 3) -> CommunityDataSet:
    """Dataset with all-zero abundances."""
    return CommunityDataSet(
        taxon_ids=tuple(f"OTU_{i}" for i in range(n_taxa)),
        sample_ids=tuple(f"s_{i}" for i in range(n_samples)),
        abundance=np.zeros((n_taxa, n_samples)),
    )


def generate_edge_case_single_taxon() -> CommunityDataSet:
    """Single taxon, multiple samples."""
    return CommunityDataSet(
        taxon_ids=("OTU_0",),
        sample_ids=("s_0", "s_1", "s_2"),
        abundance=np.array([[100.0, 200.0, 300.0]]),
    )


def write_example_tables(directory) -> dict[str, Path]:
    """Write small_dataset() as abundance, metadata, taxonomy and tree files."""
    directory = Path(directory)
    ds = small_dataset()
    paths = {
        "abundance": directory / "abundance.tsv",
        "metadata": directory / "metadata.tsv",
        "taxonomy": directory / "taxonomy.tsv",
        "tree": directory / "tree.nwk",
    }
    lines = ["taxon\t" + "\t".join(ds.sample_ids)]
    for i, t in enumerate(ds.taxon_ids):
        lines.append(t + "\t" + "\t".join(f"{v:g}" for v in ds.abundance[i]))
    paths["abundance"].write_text("\n".join(lines) + "\n")

    variables = ds.sample_data.variables
    lines = ["sample\t" + "\t".join(variables)]
    for s in ds.sample_ids:
        rec = ds.sample_record(s)
        lines.append(s + "\t" + "\t".join(str(rec[v]) for v in variables))
    paths["metadata"].write_text("\n".join(lines) + "\n")

    lines = ["taxon\t" + "\t".join(ds.taxonomy.ranks)]
    for t in ds.taxon_ids:
        lines.append(t + "\t" + "\t".join(ds.taxonomy.records[t]))
    paths["taxonomy"].write_text("\n".join(lines) + "\n")

    paths["tree"].write_text(ds.tree.to_newick() + "\n")
    return paths
