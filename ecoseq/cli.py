"""Click CLI for ecoseq: community-sequencing statistics."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from ecoseq import __version__
from .io import load_dataset

logger = logging.getLogger("ecoseq")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _inputs(f):
    f = click.option("--tree", "-t", default=None, type=click.Path(exists=True), help="Newick tree (optional)")(f)
    f = click.option("--taxonomy", "-x", default=None, type=click.Path(exists=True), help="Taxonomy TSV (optional)")(f)
    f = click.option("--metadata", "-m", default=None, type=click.Path(exists=True), help="Sample metadata TSV")(f)
    f = click.option("--abundance", "-a", required=True, type=click.Path(exists=True), help="Abundance table TSV")(f)
    return f


def _output_dir(output: str) -> Path:
    out = Path(output)
    out.mkdir(parents=True, exist_ok=True)
    return out


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """ecoseq: linked community-sequencing data and ecological statistics."""
    _setup_logging(verbose)


@main.command()
@_inputs
@click.option("--measure", "measures", multiple=True, help="Diversity measure (repeatable); default all")
@click.option("--output", "-o", default="results", help="Output directory")
def richness(abundance: str, metadata: str | None, taxonomy: str | None, tree: str | None, measures: tuple[str, ...], output: str) -> None:
    """Compute alpha diversity per sample."""
    from .diversity import estimate_richness
    from .report import write_alpha_diversity

    ds = load_dataset(abundance, metadata, taxonomy, tree)
    out = _output_dir(output)
    result = estimate_richness(ds, measures or None)
    write_alpha_diversity(result, out / "alpha_diversity.csv")
    click.echo(f"Alpha diversity results written to {out}/")


@main.command()
@_inputs
@click.option("--metric", default="bray", show_default=True, help="bray, jaccard, euclidean, unifrac, wunifrac")
@click.option("--axis", type=click.Choice(["samples", "taxa"]), default="samples", show_default=True)
@click.option("--output", "-o", default="results", help="Output directory")
def distance(abundance: str, metadata: str | None, taxonomy: str | None, tree: str | None, metric: str, axis: str, output: str) -> None:
    """Compute a pairwise dissimilarity matrix."""
    from .distance import pairwise_distance
    from .report import write_distance_matrix

    ds = load_dataset(abundance, metadata, taxonomy, tree)
    out = _output_dir(output)
    dm = pairwise_distance(ds, metric=metric, axis=axis)
    write_distance_matrix(dm, out / f"distance_{dm.metric}_{axis}.csv")
    click.echo(f"Distance matrix written to {out}/")


@main.command()
@_inputs
@click.option("--metric", default="bray", show_default=True, help="Distance metric")
@click.option("--method", type=click.Choice(["NMDS", "PCoA"], case_sensitive=False), default="NMDS", show_default=True)
@click.option("--axes", "n_axes", default=2, show_default=True, help="Number of dimensions")
@click.option("--max-iterations", default=20, show_default=True, help="NMDS iteration cap per restart")
@click.option("--restarts", default=20, show_default=True, help="NMDS random restarts")
@click.option("--seed", default=42, show_default=True, help="Random seed")
@click.option("--output", "-o", default="results", help="Output directory")
def ordinate(abundance: str, metadata: str | None, taxonomy: str | None, tree: str | None, metric: str, method: str, n_axes: int, max_iterations: int, restarts: int, seed: int, output: str) -> None:
    """Run ordination (NMDS or PCoA) on sample dissimilarities."""
    from .distance import pairwise_distance
    from .ordination import NMDSConfig
    from .ordination import ordinate as run_ordinate
    from .report import write_ordination

    ds = load_dataset(abundance, metadata, taxonomy, tree)
    out = _output_dir(output)
    dm = pairwise_distance(ds, metric=metric)
    config = NMDSConfig(max_iterations=max_iterations, n_restarts=restarts, random_seed=seed)
    result = run_ordinate(dm, method=method, n_axes=n_axes, config=config)
    write_ordination(result, out / f"ordination_{result.method.lower()}.csv")
    for w in result.warnings:
        click.echo(f"Warning: {w}", err=True)
    click.echo(f"Ordination results written to {out}/")


@main.command()
@_inputs
@click.option("--metric", default="jaccard", show_default=True, help="Distance metric")
@click.option("--axis", type=click.Choice(["samples", "taxa"]), default="samples", show_default=True)
@click.option("--max-distance", default=0.4, show_default=True, type=float, help="Edge cutoff (inclusive)")
@click.option("--output", "-o", default="results", help="Output directory")
def network(abundance: str, metadata: str | None, taxonomy: str | None, tree: str | None, metric: str, axis: str, max_distance: float, output: str) -> None:
    """Build a threshold graph and write its edge list."""
    from .network import make_network
    from .report import write_edge_list

    ds = load_dataset(abundance, metadata, taxonomy, tree)
    out = _output_dir(output)
    graph = make_network(ds, axis=axis, metric=metric, max_distance=max_distance)
    write_edge_list(graph, out / "network_edges.csv")
    click.echo(f"Graph with {graph.n_nodes} nodes and {graph.n_edges} edges written to {out}/")


@main.command()
@_inputs
@click.option("--rank", default=None, help="Agglomerate taxa at this taxonomic rank")
@click.option("--height", default=None, type=float, help="Agglomerate tips closer than this on the tree")
@click.option("--output", "-o", default="results", help="Output directory")
def glom(abundance: str, metadata: str | None, taxonomy: str | None, tree: str | None, rank: str | None, height: float | None, output: str) -> None:
    """Agglomerate taxa by rank or tree distance and write a taxon summary."""
    from .agglomerate import tax_glom, tip_glom
    from .report import write_dataset_summary

    if (rank is None) == (height is None):
        raise click.UsageError("give exactly one of --rank or --height")
    ds = load_dataset(abundance, metadata, taxonomy, tree)
    out = _output_dir(output)
    result = tax_glom(ds, rank) if rank is not None else tip_glom(ds, height)
    write_dataset_summary(result, out / "glom_taxa.csv", axis="taxa")
    click.echo(f"{ds.n_taxa} -> {result.n_taxa} taxa; summary written to {out}/")
