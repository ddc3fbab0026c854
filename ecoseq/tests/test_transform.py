"""Tests for ecoseq.transform module."""

import numpy as np
import pytest

from ecoseq.agglomerate import merge_samples, merge_taxa, tax_glom, tip_glom
from ecoseq.errors import EmptySelectionError, MalformedDatasetError, ZeroSumSampleError
from ecoseq.transform import (
    RarefyConfig,
    filter_taxa,
    filterfun,
    filterfun_sample,
    k_over_a,
    p_over_a,
    prune_samples,
    prune_taxa,
    rarefy_even_depth,
    relative_abundance,
    subset_samples,
    subset_taxa,
    top_f,
    top_n,
    top_p,
    transform_sample_counts,
)
from ecoseq.tests.fixtures import (
    generate_edge_case_all_zeros,
    generate_synthetic_dataset,
    small_dataset,
)


class TestPrune:
    def test_prune_taxa_by_ids(self):
        ds = small_dataset()
        out = prune_taxa(ds, ["A", "C"])
        assert out.taxon_ids == ("A", "C")
        assert sorted(out.tree.tip_names) == ["A", "C"]
        assert sorted(out.taxonomy.taxon_ids) == ["A", "C"]
        np.testing.assert_array_equal(out.abundance[1], [0, 8, 3])

    def test_prune_taxa_by_predicate(self):
        out = prune_taxa(small_dataset(), lambda t: t != "B")
        assert out.taxon_ids == ("A", "C", "D")

    def test_prune_keeps_order_of_dataset(self):
        out = prune_taxa(small_dataset(), ["D", "A"])
        assert out.taxon_ids == ("A", "D")

    def test_prune_everything_raises(self):
        with pytest.raises(EmptySelectionError):
            prune_taxa(small_dataset(), [])
        with pytest.raises(ValueError):
            prune_samples(small_dataset(), lambda s: False)

    def test_prune_samples_restricts_metadata(self):
        out = prune_samples(small_dataset(), ["S2", "S3"])
        assert out.sample_ids == ("S2", "S3")
        assert out.sample_data.sample_ids == ["S2", "S3"]
        assert out.abundance.shape == (4, 2)

    def test_input_unchanged(self):
        ds = small_dataset()
        before = ds.abundance.copy()
        prune_taxa(ds, ["A"])
        prune_samples(ds, ["S1"])
        np.testing.assert_array_equal(ds.abundance, before)
        assert ds.n_taxa == 4


class TestSubset:
    def test_subset_samples(self):
        out = subset_samples(small_dataset(), lambda rec: rec["site"] == "north")
        assert out.sample_ids == ("S1", "S3")

    def test_subset_samples_on_bool(self):
        out = subset_samples(small_dataset(), lambda rec: rec["control"])
        assert out.sample_ids == ("S3",)

    def test_subset_samples_no_match(self):
        with pytest.raises(EmptySelectionError):
            subset_samples(small_dataset(), lambda rec: rec["depth"] > 100)

    def test_subset_taxa(self):
        out = subset_taxa(small_dataset(), lambda r: r["Phylum"] == "Firmicutes")
        assert out.taxon_ids == ("A", "B", "D")
        assert out.tree.n_tips == 3

    def test_subset_taxa_blank_rank(self):
        out = subset_taxa(small_dataset(), lambda r: r["Class"] == "")
        assert out.taxon_ids == ("D",)

    def test_subset_taxa_needs_taxonomy(self):
        ds = small_dataset().replace(taxonomy=None)
        with pytest.raises(MalformedDatasetError):
            subset_taxa(ds, lambda r: True)


class TestFilters:
    def test_k_over_a(self):
        out = filter_taxa(small_dataset(), k_over_a(2, 0))
        assert out.taxon_ids == ("A", "C", "D")

    def test_p_over_a(self):
        out = filter_taxa(small_dataset(), p_over_a(0.5, 3))
        assert out.taxon_ids == ("A",)

    def test_filterfun_conjunction(self):
        fn = filterfun(k_over_a(2, 0), lambda x: x.sum() > 5)
        out = filter_taxa(small_dataset(), fn)
        assert out.taxon_ids == ("A", "C")

    def test_filter_taxa_drop(self):
        out = filter_taxa(small_dataset(), lambda x: x.sum() > 10, keep=False)
        assert out.taxon_ids == ("B", "D")

    def test_filter_none_pass(self):
        with pytest.raises(EmptySelectionError):
            filter_taxa(small_dataset(), lambda x: False)

    def test_top_n_per_sample(self):
        picked = filterfun_sample(small_dataset(), top_n(1))
        assert picked == {"S1": ["A"], "S2": ["C"], "S3": ["A"]}

    def test_top_n_ignores_zeros(self):
        picked = filterfun_sample(small_dataset(), top_n(3))
        assert picked["S3"] == ["A", "C"]

    def test_top_p(self):
        picked = filterfun_sample(small_dataset(), top_p(0.5))
        assert picked["S1"] == ["A", "B"]

    def test_top_f(self):
        picked = filterfun_sample(small_dataset(), top_f(0.9))
        assert picked["S1"] == ["A", "B"]
        assert picked["S2"] == ["C", "D"]

    def test_selector_wrong_shape(self):
        with pytest.raises(ValueError):
            filterfun_sample(small_dataset(), lambda x: np.ones(2, dtype=bool))


class TestTransformCounts:
    def test_relative_abundance(self):
        out = relative_abundance(small_dataset())
        np.testing.assert_allclose(out.sample_sums(), [1.0, 1.0, 1.0])
        assert out.abundance_of("A", "S1") == pytest.approx(10 / 16)
        assert out.tree is not None

    def test_zero_sum_sample_raises(self):
        ds = generate_edge_case_all_zeros()
        with pytest.raises(ZeroSumSampleError) as exc:
            transform_sample_counts(ds, lambda x: x / x.sum())
        assert exc.value.sample_ids == ["s_0", "s_1", "s_2"]
        with pytest.raises(ZeroDivisionError):
            relative_abundance(ds)

    def test_negative_output_rejected(self):
        with pytest.raises(MalformedDatasetError) as exc:
            transform_sample_counts(small_dataset(), lambda x: -x)
        assert exc.value.rule == "negative_value"

    def test_wrong_length_rejected(self):
        with pytest.raises(MalformedDatasetError):
            transform_sample_counts(small_dataset(), lambda x: x[:2])

    def test_log_transform(self):
        out = transform_sample_counts(small_dataset(), np.log1p)
        assert out.abundance_of("A", "S1") == pytest.approx(np.log(11))


class TestRarefy:
    def test_default_draws_without_replacement(self):
        assert RarefyConfig().replace is False
        ds = generate_synthetic_dataset()
        out = rarefy_even_depth(ds, RarefyConfig(trim_taxa=False))
        assert np.all(out.abundance <= ds.abundance)

    def test_default_depth_is_min_sum(self):
        out = rarefy_even_depth(small_dataset(), RarefyConfig(trim_taxa=False))
        np.testing.assert_array_equal(out.sample_sums(), [7, 7, 7])
        assert out.n_taxa == 4

    def test_drops_shallow_samples(self):
        out = rarefy_even_depth(small_dataset(), RarefyConfig(sample_size=10))
        assert out.sample_ids == ("S1", "S2")
        np.testing.assert_array_equal(out.sample_sums(), [10, 10])

    def test_without_replacement_at_full_depth(self):
        out = rarefy_even_depth(
            small_dataset(), RarefyConfig(replace=False, trim_taxa=False)
        )
        np.testing.assert_array_equal(out.abundance[:, 2], [4, 0, 3, 0])

    def test_without_replacement_bounded_by_counts(self):
        ds = generate_synthetic_dataset()
        out = rarefy_even_depth(ds, RarefyConfig(replace=False, trim_taxa=False))
        assert np.all(out.abundance <= ds.abundance)

    def test_seed_is_deterministic(self):
        ds = generate_synthetic_dataset()
        a = rarefy_even_depth(ds, RarefyConfig(random_seed=3))
        b = rarefy_even_depth(ds, RarefyConfig(random_seed=3))
        np.testing.assert_array_equal(a.abundance, b.abundance)

    def test_non_integer_counts_rejected(self):
        ds = relative_abundance(small_dataset())
        with pytest.raises(MalformedDatasetError):
            rarefy_even_depth(ds)

    def test_depth_above_every_sample(self):
        with pytest.raises(EmptySelectionError):
            rarefy_even_depth(small_dataset(), RarefyConfig(sample_size=1000))


@pytest.mark.parametrize("seed", range(5))
class TestDatasetProperties:
    def test_derived_datasets_validate(self, seed):
        ds = generate_synthetic_dataset(seed=seed)
        rng = np.random.default_rng(seed)
        taxa = [t for t in ds.taxon_ids if rng.random() < 0.5] or [ds.taxon_ids[0]]
        derived = [
            prune_taxa(ds, taxa),
            prune_samples(ds, list(ds.sample_ids[: 1 + seed])),
            filter_taxa(ds, k_over_a(2, 50)),
            relative_abundance(ds),
            rarefy_even_depth(ds, RarefyConfig(random_seed=seed)),
            merge_taxa(ds, list(ds.taxon_ids[:3])),
            tax_glom(ds, "Phylum"),
            tip_glom(ds, 0.25),
            merge_samples(ds, "SampleType", default_aggregation="first"),
        ]
        for out in derived:
            assert out.validate()

    def test_prune_samples_is_monotone(self, seed):
        ds = generate_synthetic_dataset(seed=seed)
        rng = np.random.default_rng(seed)
        mask = rng.random(ds.n_samples) < 0.6
        mask[seed % ds.n_samples] = True
        keep = [s for s, k in zip(ds.sample_ids, mask) if k]
        out = prune_samples(ds, keep)
        assert out.n_samples <= ds.n_samples
        assert (out.n_samples == ds.n_samples) == bool(mask.all())

        everything = prune_samples(ds, lambda s: True)
        assert everything.n_samples == ds.n_samples

    def test_merge_taxa_conserves_sums(self, seed):
        ds = generate_synthetic_dataset(seed=seed)
        rng = np.random.default_rng(seed)
        size = int(rng.integers(2, 6))
        members = [str(t) for t in rng.choice(ds.taxon_ids, size=size, replace=False)]
        expected = sum(ds.taxon_sum(t) for t in members)
        out = merge_taxa(ds, members, archetype=members[0])
        assert out.n_taxa == ds.n_taxa - size + 1
        assert out.taxon_sum(members[0]) == pytest.approx(expected)
        np.testing.assert_allclose(out.sample_sums(), ds.sample_sums())
