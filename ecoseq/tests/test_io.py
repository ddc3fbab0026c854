"""Tests for ecoseq.io module."""

import pytest

from ecoseq.errors import MalformedDatasetError
from ecoseq.io import (
    coerce_value,
    load_abundance_table,
    load_dataset,
    load_metadata,
    load_taxonomy,
    parse_lineage,
)

ABUNDANCE = "#OTU ID\tS1\tS2\tS3\nA\t10\t0\t4\nB\t5\t0\t0\nC\t0\t8\t3\nD\t1\t2\t0\n"
METADATA = "sample\tsite\tdepth\tph\tcontrol\nS1\tnorth\t10\t6.5\tfalse\nS2\tsouth\t20\t7.0\tfalse\nS3\tnorth\t5\tNA\ttrue\n"
TAXONOMY = "taxon\tKingdom\tPhylum\tClass\nA\tBacteria\tFirmicutes\tBacilli\nB\tBacteria\tFirmicutes\tClostridia\nC\tBacteria\tProteobacteria\tNA\n"
LINEAGE = "Feature ID\tTaxon\nA\tk__Bacteria; p__Firmicutes; c__Bacilli\nC\tk__Bacteria; p__Proteobacteria; c__\n"
NEWICK = "((A:1,B:1):1,(C:2,D:2):0.5);\n"


@pytest.fixture
def files(tmp_path):
    paths = {}
    for name, text in [
        ("abundance.tsv", ABUNDANCE),
        ("metadata.tsv", METADATA),
        ("taxonomy.tsv", TAXONOMY),
        ("lineage.tsv", LINEAGE),
        ("tree.nwk", NEWICK),
    ]:
        p = tmp_path / name
        p.write_text(text)
        paths[name.split(".")[0]] = p
    return paths


class TestCoerce:
    @pytest.mark.parametrize(
        "raw, expected",
        [("3", 3), ("2.5", 2.5), ("TRUE", True), ("no", False), ("soil", "soil"), ("NA", None), ("", None)],
    )
    def test_values(self, raw, expected):
        assert coerce_value(raw) == expected
        assert type(coerce_value(raw)) is type(expected)

    def test_lineage(self):
        assert parse_lineage("k__Bacteria; p__Firmicutes; g__", 4) == ("Bacteria", "Firmicutes", "")


class TestLoaders:
    def test_abundance(self, files):
        ds = load_abundance_table(files["abundance"])
        assert ds.taxon_ids == ("A", "B", "C", "D")
        assert ds.sample_ids == ("S1", "S2", "S3")
        assert ds.abundance_of("C", "S2") == 8.0

    def test_ragged_row(self, tmp_path):
        p = tmp_path / "bad.tsv"
        p.write_text("id\tS1\tS2\nA\t1\n")
        with pytest.raises(MalformedDatasetError) as exc:
            load_abundance_table(p)
        assert exc.value.rule == "shape"

    def test_non_numeric_count(self, tmp_path):
        p = tmp_path / "bad.tsv"
        p.write_text("id\tS1\nA\tmany\n")
        with pytest.raises(MalformedDatasetError):
            load_abundance_table(p)

    def test_metadata_types(self, files):
        meta = load_metadata(files["metadata"])
        assert meta.records["S1"] == {"site": "north", "depth": 10, "ph": 6.5, "control": False}
        assert meta.records["S3"]["ph"] is None
        assert meta.is_numeric("ph")
        assert not meta.is_numeric("control")

    def test_duplicate_sample(self, tmp_path):
        p = tmp_path / "meta.tsv"
        p.write_text("sample\tx\nS1\t1\nS1\t2\n")
        with pytest.raises(MalformedDatasetError) as exc:
            load_metadata(p)
        assert exc.value.rule == "duplicate_id"

    def test_taxonomy_columns(self, files):
        tax = load_taxonomy(files["taxonomy"])
        assert tax.ranks == ("Kingdom", "Phylum", "Class")
        assert tax.rank("C", "Class") == ""

    def test_taxonomy_lineage(self, files):
        tax = load_taxonomy(files["lineage"])
        assert tax.ranks[0] == "Kingdom"
        assert len(tax.ranks) == 7
        assert tax.rank("A", "Class") == "Bacilli"
        assert tax.rank("C", "Class") == ""
        assert tax.rank("C", "Genus") == ""


class TestLoadDataset:
    def test_all_tables(self, files):
        ds = load_dataset(files["abundance"], files["metadata"], files["taxonomy"], files["tree"])
        assert ds.n_taxa == 4
        assert ds.tree.n_tips == 4
        assert ds.variable("site")["S2"] == "south"
        assert ds.taxonomy_record("D") == {}

    def test_abundance_only(self, files):
        ds = load_dataset(files["abundance"])
        assert ds.tree is None
        assert ds.taxonomy is None
        assert ds.sample_data.variables == []

    def test_metadata_mismatch(self, files, tmp_path):
        p = tmp_path / "meta.tsv"
        p.write_text("sample\tx\nS1\t1\nS2\t2\n")
        with pytest.raises(MalformedDatasetError) as exc:
            load_dataset(files["abundance"], metadata=p)
        assert exc.value.rule == "metadata_mismatch"
