"""Tests for ecoseq.tree module."""

import numpy as np
import pytest

from ecoseq.errors import MalformedDatasetError
from ecoseq.tree import PhyloTree
from ecoseq.tests.fixtures import balanced_tree, small_tree


class TestStructure:
    def test_tips(self):
        tree = small_tree()
        assert tree.tip_names == ["A", "B", "C", "D"]
        assert tree.n_tips == 4
        assert tree.n_nodes == 7

    def test_postorder_children_first(self):
        tree = small_tree()
        order = tree.postorder()
        seen = set()
        for node in order:
            for c in tree.children(node):
                assert c in seen
            seen.add(node)
        assert order[-1] == tree.root

    def test_depths(self):
        depth = small_tree().depths()
        np.testing.assert_allclose(depth, [0.0, 1.0, 2.0, 2.0, 0.5, 2.5, 2.5])

    def test_two_roots_rejected(self):
        with pytest.raises(MalformedDatasetError):
            PhyloTree(parent=[-1, -1], branch_length=[0, 0], names=["a", "b"])

    def test_negative_length_rejected(self):
        with pytest.raises(MalformedDatasetError):
            PhyloTree(parent=[-1, 0, 0], branch_length=[0, -1, 1], names=[None, "a", "b"])

    def test_duplicate_tip_rejected(self):
        with pytest.raises(MalformedDatasetError):
            PhyloTree(parent=[-1, 0, 0], branch_length=[0, 1, 1], names=[None, "a", "a"])

    def test_unnamed_tip_rejected(self):
        with pytest.raises(MalformedDatasetError):
            PhyloTree(parent=[-1, 0, 0], branch_length=[0, 1, 1], names=[None, "a", None])

    def test_cycle_rejected(self):
        with pytest.raises(MalformedDatasetError):
            PhyloTree(parent=[-1, 2, 1], branch_length=[0, 1, 1], names=["r", "a", "b"])


class TestCophenetic:
    def test_small_tree(self):
        d = small_tree().cophenetic(["A", "B", "C", "D"])
        assert d[0, 1] == pytest.approx(2.0)
        assert d[2, 3] == pytest.approx(4.0)
        assert d[0, 2] == pytest.approx(4.5)
        assert d[1, 3] == pytest.approx(4.5)
        np.testing.assert_array_equal(d, d.T)
        np.testing.assert_array_equal(np.diag(d), np.zeros(4))

    def test_order_follows_names(self):
        d = small_tree().cophenetic(["C", "A"])
        assert d.shape == (2, 2)
        assert d[0, 1] == pytest.approx(4.5)

    def test_unknown_tip(self):
        with pytest.raises(KeyError):
            small_tree().cophenetic(["A", "Z"])

    def test_balanced_tree_equal_depths(self):
        names = [f"t{i}" for i in range(8)]
        d = balanced_tree(names, branch_length=1.0).cophenetic()
        assert d[0, 1] == pytest.approx(2.0)
        assert d[0, 7] == pytest.approx(6.0)


class TestPrune:
    def test_prune_collapses_unary_nodes(self):
        pruned = small_tree().prune(["A", "C", "D"])
        assert sorted(pruned.tip_names) == ["A", "C", "D"]
        assert pruned.n_nodes == 5
        d = pruned.cophenetic(["A", "C", "D"])
        assert d[0, 1] == pytest.approx(4.5)
        assert d[1, 2] == pytest.approx(4.0)

    def test_prune_to_one_side(self):
        pruned = small_tree().prune(["C", "D"])
        assert pruned.n_nodes == 3
        assert pruned.cophenetic()[0, 1] == pytest.approx(4.0)

    def test_prune_everything_fails(self):
        with pytest.raises(MalformedDatasetError):
            small_tree().prune(["Z"])

    def test_rename_tip(self):
        renamed = small_tree().rename_tip("A", "A2")
        assert renamed.has_tip("A2")
        assert not renamed.has_tip("A")

    def test_rename_collision(self):
        with pytest.raises(MalformedDatasetError):
            small_tree().rename_tip("A", "B")


class TestNewick:
    def test_read_newick_string(self):
        tree = PhyloTree.read_newick("((A:1,B:1):1,(C:2,D:2):0.5);")
        assert sorted(tree.tip_names) == ["A", "B", "C", "D"]
        assert tree.cophenetic(["A", "C"])[0, 1] == pytest.approx(4.5)

    def test_underscores_preserved(self):
        tree = PhyloTree.read_newick("(OTU_1:1,OTU_2:1);")
        assert sorted(tree.tip_names) == ["OTU_1", "OTU_2"]

    def test_round_trip(self, tmp_path):
        p = tmp_path / "tree.nwk"
        p.write_text(small_tree().to_newick())
        tree = PhyloTree.read_newick(p)
        np.testing.assert_allclose(
            tree.cophenetic(["A", "B", "C", "D"]),
            small_tree().cophenetic(["A", "B", "C", "D"]),
        )
