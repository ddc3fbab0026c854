"""Phylogenetic tree stored as an arena of indexed nodes.

Nodes live in parallel arrays (parent index, branch length, name) instead of
linked objects, so traversals are simple index loops and a tree can be
copied or serialised without walking pointers. Newick input goes through
scikit-bio and is converted to the arena right away.
"""

from __future__ import annotations

import io
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np

from .errors import MalformedDatasetError


class PhyloTree:
    """Rooted phylogenetic tree with non-negative branch lengths.

    Args:
        parent: Parent index per node, ``-1`` for the root.
        branch_length: Length of the edge above each node. The root's
            length is kept but never used in distance calculations.
        names: Node labels. Every tip must carry a unique name.
    """

    def __init__(
        self,
        parent: Sequence[int],
        branch_length: Sequence[float],
        names: Sequence[str | None],
    ):
        parent_arr = np.asarray(parent, dtype=np.int64)
        length_arr = np.asarray(branch_length, dtype=np.float64)
        n = len(parent_arr)
        if n == 0:
            raise MalformedDatasetError("tree", "tree has no nodes")
        if len(length_arr) != n or len(names) != n:
            raise MalformedDatasetError(
                "tree",
                f"parent ({n}), branch_length ({len(length_arr)}) and "
                f"names ({len(names)}) differ in length",
            )
        if not np.all(np.isfinite(length_arr)) or np.any(length_arr < 0):
            raise MalformedDatasetError(
                "tree", "branch lengths must be finite and non-negative"
            )
        roots = np.flatnonzero(parent_arr == -1)
        if len(roots) != 1:
            raise MalformedDatasetError(
                "tree", f"expected exactly one root, found {len(roots)}"
            )
        if np.any((parent_arr < -1) | (parent_arr >= n)):
            raise MalformedDatasetError("tree", "parent index out of range")

        children: list[list[int]] = [[] for _ in range(n)]
        for i, p in enumerate(parent_arr):
            if p >= 0:
                children[p].append(i)

        self._parent = parent_arr
        self._length = length_arr
        self._names = list(names)
        self._children = children
        self._root = int(roots[0])
        self._parent.setflags(write=False)
        self._length.setflags(write=False)

        order = self._preorder()
        if len(order) != n:
            raise MalformedDatasetError("tree", "tree contains a cycle or detached nodes")
        self._order = order

        tip_index: dict[str, int] = {}
        for i in order:
            if children[i]:
                continue
            name = self._names[i]
            if not name:
                raise MalformedDatasetError("tree", f"tip node {i} has no name")
            if name in tip_index:
                raise MalformedDatasetError("duplicate_id", f"duplicate tip name {name!r}")
            tip_index[name] = i
        self._tip_index = tip_index

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @property
    def n_nodes(self) -> int:
        return len(self._parent)

    @property
    def root(self) -> int:
        return self._root

    @property
    def parent(self) -> np.ndarray:
        return self._parent

    @property
    def branch_length(self) -> np.ndarray:
        return self._length

    @property
    def names(self) -> list[str | None]:
        return list(self._names)

    def children(self, node: int) -> list[int]:
        return list(self._children[node])

    def is_tip(self, node: int) -> bool:
        return not self._children[node]

    @property
    def tip_names(self) -> list[str]:
        """Tip names in preorder (left-to-right) order."""
        return list(self._tip_index)

    @property
    def n_tips(self) -> int:
        return len(self._tip_index)

    def tip_index(self, name: str) -> int:
        return self._tip_index[name]

    def has_tip(self, name: str) -> bool:
        return name in self._tip_index

    def _preorder(self) -> list[int]:
        order: list[int] = []
        seen = np.zeros(len(self._parent), dtype=bool)
        stack = [self._root]
        while stack:
            node = stack.pop()
            if seen[node]:
                break
            seen[node] = True
            order.append(node)
            stack.extend(reversed(self._children[node]))
        return order

    def preorder(self) -> list[int]:
        return list(self._order)

    def postorder(self) -> list[int]:
        """Node indices with every child before its parent."""
        return self._order[::-1]

    # ------------------------------------------------------------------
    # Distances
    # ------------------------------------------------------------------

    def depths(self) -> np.ndarray:
        """Path length from the root to every node."""
        depth = np.zeros(self.n_nodes)
        for node in self._order:
            p = self._parent[node]
            if p >= 0:
                depth[node] = depth[p] + self._length[node]
        return depth

    def cophenetic(self, names: Sequence[str] | None = None) -> np.ndarray:
        """Pairwise tree-path distances between tips.

        Each internal node contributes the distances between tips that sit
        under different children, so every pair is visited once at its
        lowest common ancestor.

        Parameters
        ----------
        names : sequence of str, optional
            Tips to include, in output order. Defaults to all tips.

        Returns
        -------
        np.ndarray
            Symmetric matrix of shape ``(len(names), len(names))``.
        """
        if names is None:
            names = self.tip_names
        missing = [n for n in names if n not in self._tip_index]
        if missing:
            raise KeyError(f"tips not in tree: {missing[:5]}")
        pos = {self._tip_index[n]: k for k, n in enumerate(names)}
        depth = self.depths()
        out = np.zeros((len(names), len(names)))

        below: dict[int, list[int]] = {}
        for node in self.postorder():
            kids = self._children[node]
            if not kids:
                below[node] = [node] if node in pos else []
                continue
            groups = [below.pop(c) for c in kids]
            for a in range(len(groups)):
                for b in range(a + 1, len(groups)):
                    for ti in groups[a]:
                        for tj in groups[b]:
                            d = depth[ti] + depth[tj] - 2.0 * depth[node]
                            out[pos[ti], pos[tj]] = d
                            out[pos[tj], pos[ti]] = d
            below[node] = [t for g in groups for t in g]
        return out

    def total_length(self) -> float:
        """Sum of all branch lengths below the root."""
        return float(self._length.sum() - self._length[self._root])

    # ------------------------------------------------------------------
    # Derived trees
    # ------------------------------------------------------------------

    def prune(self, keep: Iterable[str]) -> PhyloTree:
        """Return the subtree spanning ``keep`` tips.

        Internal nodes left with a single child are collapsed and their
        branch lengths added to the child's, so path lengths between the
        kept tips are unchanged.
        """
        keep_set = set(keep) & set(self._tip_index)
        if not keep_set:
            raise MalformedDatasetError("tree_coverage", "pruning would remove every tip")

        retained = np.zeros(self.n_nodes, dtype=bool)
        for node in self.postorder():
            if self._children[node]:
                retained[node] = any(retained[c] for c in self._children[node])
            else:
                retained[node] = self._names[node] in keep_set

        # Walk down from the root, skipping unary chains.
        new_parent: list[int] = []
        new_length: list[float] = []
        new_names: list[str | None] = []

        def kept_children(node: int) -> list[int]:
            return [c for c in self._children[node] if retained[c]]

        root = self._root
        while len(kept_children(root)) == 1:
            root = kept_children(root)[0]

        stack: list[tuple[int, int, float]] = [(root, -1, 0.0)]
        while stack:
            node, new_p, extra = stack.pop()
            kids = kept_children(node)
            if len(kids) == 1:
                stack.append((kids[0], new_p, extra + self._length[kids[0]]))
                continue
            idx = len(new_parent)
            new_parent.append(new_p)
            new_length.append(0.0 if new_p == -1 else extra)
            new_names.append(self._names[node])
            for c in reversed(kids):
                stack.append((c, idx, self._length[c]))
        return PhyloTree(new_parent, new_length, new_names)

    def rename_tip(self, old: str, new: str) -> PhyloTree:
        if new != old and new in self._tip_index:
            raise MalformedDatasetError("duplicate_id", f"tip {new!r} already exists")
        names = list(self._names)
        names[self._tip_index[old]] = new
        return PhyloTree(self._parent, self._length, names)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @classmethod
    def from_skbio(cls, tree) -> PhyloTree:
        """Build an arena tree from a ``skbio.TreeNode``. Missing lengths become 0."""
        parent: list[int] = []
        lengths: list[float] = []
        names: list[str | None] = []
        index: dict[int, int] = {}
        for node in tree.preorder(include_self=True):
            index[id(node)] = len(parent)
            parent.append(-1 if node.parent is None or node is tree else index[id(node.parent)])
            lengths.append(float(node.length) if node.length is not None else 0.0)
            names.append(node.name)
        return cls(parent, lengths, names)

    @classmethod
    def read_newick(cls, source: str | Path) -> PhyloTree:
        """Read a Newick tree from a file path or a Newick string."""
        from skbio import TreeNode

        text = str(source)
        if text.lstrip().startswith("("):
            tree = TreeNode.read(io.StringIO(text), format="newick", convert_underscores=False)
        else:
            tree = TreeNode.read(
                str(Path(source)), format="newick", convert_underscores=False
            )
        return cls.from_skbio(tree)

    def to_newick(self) -> str:
        parts: dict[int, str] = {}
        for node in self.postorder():
            label = self._names[node] or ""
            if self._children[node]:
                label = "(" + ",".join(parts.pop(c) for c in self._children[node]) + ")" + label
            if node != self._root:
                label += f":{self._length[node]:g}"
            parts[node] = label
        return parts[self._root] + ";"

    def __repr__(self) -> str:
        return f"PhyloTree(n_nodes={self.n_nodes}, n_tips={self.n_tips})"
