"""
_tree.py
========
A rooted phylogenetic tree represented as a set of parallel numpy arrays
indexed by node.

Public API
----------
  Tree(parent, branch_length, names=None, child_order=None)
      Constructor.  Validates the topology and runs the naming pass.

  Tree.from_newick(newick_string)
      Parse a NEWICK string (multifurcations allowed).

  .children(u)           ordered child indices of u
  .is_leaf(u)
  .resolve(u)            node index from index or taxon name
  .assign_names(names)   re-run the naming pass
  .to_newick()

Node identity
-------------
A node's index is its identity for the lifetime of the tree: offset tables,
branch pairs and the serialized ``id`` field all use it.  Nodes are never
removed individually.  Each non-root node also stands for the branch above it,
so ``branch_length[u]`` is the length of that branch.

Arrays (read-only after construction)
-------------------------------------
parent         : int32  [n_nodes]     Parent index; -1 for the root.
branch_length  : float64[n_nodes]     Length of the branch above; 0 for root.
child_offsets  : int64  [n_nodes+1]   CSR offsets into child_indices.
child_indices  : int32  [n_nodes-1]   Children of every node, grouped by parent.
depth          : int32  [n_nodes]     Edge count from the root.
ids            : int32  [n_nodes]     Serialized node id (equal to the index).
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from grandconv._exceptions import StructuralError
from grandconv._utils import format_newick

logger = logging.getLogger(__name__)

NO_PARENT = -1
ROOT_NAME = "Root"
INTERNAL_NAME = "Internal"


class Tree:
    """
    A rooted tree with arbitrary out-degree, addressed by node index.

    Parameters
    ----------
    parent : sequence of int
        ``parent[u]`` is the index of u's parent, or -1 for the root.
    branch_length : sequence of float
        Length of the branch above each node.  Must be non-negative.  The
        root's value is ignored and stored as 0.
    names : sequence or mapping, optional
        Taxon labels for the leaves, indexed by node index.  Entries for
        internal nodes are ignored.
    child_order : sequence of int, optional
        Sort key placing each node among its siblings (lower first).  Siblings
        default to ascending index order.  ``from_newick`` passes each
        node's position inside its parenthesised group.

    Attributes
    ----------
    n_nodes  : int
    n_leaves : int
    root     : int        Index of the unique parentless node.
    max_depth : int
    names    : list[str]  Display name per node after the naming pass.
    leaves   : int32 array of leaf indices, ascending.

    Raises
    ------
    StructuralError
        Zero or several roots, a parent index out of range, a self-parent,
        a cycle, or a negative / non-finite branch length.
    """

    # ================================================================== #
    # Construction                                                         #
    # ================================================================== #

    def __init__(self, parent, branch_length, names=None, child_order=None) -> None:
        parent = np.asarray(parent, dtype=np.int64).ravel()
        branch_length = np.asarray(branch_length, dtype=np.float64).ravel()

        n_nodes = int(parent.shape[0])
        if n_nodes == 0:
            raise StructuralError("A tree needs at least one node.")
        if branch_length.shape[0] != n_nodes:
            raise StructuralError(
                f"Got {branch_length.shape[0]} branch lengths for {n_nodes} nodes."
            )

        if child_order is not None:
            child_order = np.asarray(child_order, dtype=np.int64).ravel()
            if child_order.shape[0] != n_nodes:
                raise StructuralError(
                    f"Got {child_order.shape[0]} child_order keys for {n_nodes} nodes."
                )

        root = Tree._find_root(parent)
        Tree._check_parents(parent, root)

        if not np.all(np.isfinite(branch_length)):
            bad = int(np.flatnonzero(~np.isfinite(branch_length))[0])
            raise StructuralError(f"Branch length of node {bad} is not finite.")
        lengths = branch_length.copy()
        lengths[root] = 0.0
        if np.any(lengths < 0):
            bad = int(np.flatnonzero(lengths < 0)[0])
            raise StructuralError(
                f"Branch length of node {bad} is negative ({branch_length[bad]})."
            )

        self.parent = parent.astype(np.int32)
        self.branch_length = lengths
        self.root: int = root
        self.n_nodes: int = n_nodes

        self._build_children(child_order)
        self.depth = Tree._resolve_depths(self.parent, self.child_offsets, self.child_indices, root)

        self.n_leaves: int = int(self.leaves.shape[0])
        self.max_depth: int = int(np.max(self.depth))

        self.ids = np.arange(n_nodes, dtype=np.int32)
        self.names: List[str] = [""] * n_nodes
        self._name_index: Optional[Dict[str, int]] = None
        self.assign_names(names)

        for arr in (
            self.parent,
            self.branch_length,
            self.child_offsets,
            self.child_indices,
            self.depth,
            self.ids,
            self.leaves,
        ):
            arr.flags.writeable = False

    @classmethod
    def from_newick(cls, newick_string: str) -> "Tree":
        """
        Build a tree from a NEWICK string.

        Node-index conventions:
          Leaves   : 0 … n_leaves-1       (left to right in the string)
          Internal : n_leaves … n_nodes-2 (post-order)
          Root     : n_nodes-1

        Internal-node labels (support values) are discarded; missing branch
        lengths are read as 0.

        Raises
        ------
        StructuralError
            Unbalanced parentheses, an empty group, or an unparseable length.
        """
        s = format_newick(newick_string)
        n_chars = len(s) - 1  # drop ';'

        # ---- Pass 1: count nodes ------------------------------------ #
        # Leaves = commas + 1 only holds at the top level; count leaf tokens
        # instead so multifurcations and unary nodes are sized correctly.
        n_open = 0
        n_leaves = 0
        expect_token = True
        for k in range(n_chars):
            c = s[k]
            if c == "(":
                n_open += 1
                expect_token = True
            elif c == "," or c == ")":
                expect_token = c == ","
            elif c in " \t\r\n":
                continue
            elif expect_token:
                # Named leaf, or an unnamed one that starts at ':'.
                n_leaves += 1
                expect_token = False

        n_nodes = n_leaves + n_open
        if n_leaves == 0:
            raise StructuralError(f"No taxa found in NEWICK string {newick_string!r}.")

        parent = np.full(n_nodes, NO_PARENT, dtype=np.int64)
        length = np.zeros(n_nodes, dtype=np.float64)
        names = [""] * n_nodes
        rank = np.zeros(n_nodes, dtype=np.int64)

        # ---- Pass 2: iterative stack-based parse -------------------- #
        # Each open group keeps the list of its finished children.
        groups: List[List[int]] = []
        top_level: List[int] = []
        leaf_id = 0
        internal_id = n_leaves

        i = 0
        while i < n_chars:
            c = s[i]

            if c in " \t\r\n" or c == ",":
                i += 1
                continue

            if c == "(":
                groups.append([])
                i += 1
                continue

            if c == ")":
                if not groups:
                    raise StructuralError(f"Unbalanced ')' at position {i}.")
                children = groups.pop()
                if not children:
                    raise StructuralError(f"Empty group ending at position {i}.")
                node_id = internal_id
                internal_id += 1
                for k, ch in enumerate(children):
                    parent[ch] = node_id
                    rank[ch] = k
                i += 1
                # Optional internal label (support value) is skipped.
                while i < n_chars and s[i] not in ":,()":
                    i += 1
                i, length[node_id] = Tree._read_length(s, i, n_chars)
                (groups[-1] if groups else top_level).append(node_id)
                continue

            # Leaf
            j = i
            while j < n_chars and s[j] not in ":,() \t\r\n":
                j += 1
            node_id = leaf_id
            leaf_id += 1
            names[node_id] = s[i:j]
            i = j
            while i < n_chars and s[i] in " \t":
                i += 1
            i, length[node_id] = Tree._read_length(s, i, n_chars)
            (groups[-1] if groups else top_level).append(node_id)

        if groups:
            raise StructuralError(f"Unbalanced '(' in NEWICK string {newick_string!r}.")
        if len(top_level) != 1:
            raise StructuralError(
                f"NEWICK string has {len(top_level)} top-level nodes; expected one root."
            )

        return cls(parent, length, names, child_order=rank)

    @staticmethod
    def _read_length(s: str, i: int, n_chars: int):
        """Read an optional ``:length`` suffix starting at *i*."""
        while i < n_chars and s[i] in " \t":
            i += 1
        if i >= n_chars or s[i] != ":":
            return i, 0.0
        i += 1
        while i < n_chars and s[i] in " \t":
            i += 1
        j = i
        while j < n_chars and s[j] not in ",() \t\r\n":
            j += 1
        try:
            value = float(s[i:j])
        except ValueError:
            raise StructuralError(f"Invalid branch length {s[i:j]!r} at position {i}.") from None
        return j, value

    # ================================================================== #
    # Public methods                                                       #
    # ================================================================== #

    def children(self, u) -> List[int]:
        """Ordered child indices of node *u* (empty for a leaf)."""
        u = self.resolve(u)
        lo = int(self.child_offsets[u])
        hi = int(self.child_offsets[u + 1])
        return [int(c) for c in self.child_indices[lo:hi]]

    def n_children(self, u: int) -> int:
        return int(self.child_offsets[u + 1] - self.child_offsets[u])

    def is_leaf(self, u) -> bool:
        u = self.resolve(u)
        return self.child_offsets[u + 1] == self.child_offsets[u]

    def is_root(self, u) -> bool:
        return self.resolve(u) == self.root

    def assign_names(self, names=None) -> None:
        """
        Naming pass: leaves take their supplied taxon name, internal nodes
        are named ``"Internal"`` and the root ``"Root"``.  Every node's id is
        its own index and the root's branch length is zero.

        Parameters
        ----------
        names : sequence or mapping, optional
            Leaf labels indexed by node index.  Leaves without a label keep
            their current name.
        """
        lookup = Tree._name_lookup(names)
        for u in range(self.n_nodes):
            if u == self.root and self.n_nodes > 1:
                self.names[u] = ROOT_NAME
            elif self.child_offsets[u + 1] > self.child_offsets[u]:
                self.names[u] = INTERNAL_NAME
            elif lookup is not None and u in lookup:
                self.names[u] = str(lookup[u])
        self._name_index = None
        if self.branch_length[self.root] != 0.0:
            writeable = self.branch_length.flags.writeable
            self.branch_length.flags.writeable = True
            self.branch_length[self.root] = 0.0
            self.branch_length.flags.writeable = writeable

    def resolve(self, node) -> int:
        """
        Return the node index for *node* (an index or a leaf name).

        Raises
        ------
        KeyError    if a name is unknown.
        IndexError  if an index is out of range.
        """
        if isinstance(node, (int, np.integer)):
            node = int(node)
            if node < 0 or node >= self.n_nodes:
                raise IndexError(f"Node index {node} out of range [0, {self.n_nodes}).")
            return node
        if self._name_index is None:
            self._build_name_index()
        if node not in self._name_index:
            raise KeyError(f"No leaf named '{node}' in tree.")
        return self._name_index[node]

    def to_newick(self, lengths: bool = True) -> str:
        """Render the tree as NEWICK (leaf names only, iterative)."""
        out: List[str] = []
        # (node, phase): phase 0 = enter, phase k>0 = after child k-1
        stack = [(self.root, 0)]
        while stack:
            u, phase = stack.pop()
            kids = self.children(u)
            if not kids:
                out.append(self.names[u])
                if lengths and u != self.root:
                    out.append(f":{self.branch_length[u]:g}")
                continue
            if phase == 0:
                out.append("(")
            elif phase < len(kids):
                out.append(",")
            if phase < len(kids):
                stack.append((u, phase + 1))
                stack.append((kids[phase], 0))
            else:
                out.append(")")
                if lengths and u != self.root:
                    out.append(f":{self.branch_length[u]:g}")
        return "".join(out) + ";"

    def __len__(self) -> int:
        return self.n_nodes

    def __repr__(self) -> str:
        return (
            f"Tree(n_nodes={self.n_nodes}, n_leaves={self.n_leaves}, "
            f"root={self.root}, max_depth={self.max_depth})"
        )

    # ================================================================== #
    # Private methods                                                      #
    # ================================================================== #

    def _build_children(self, child_order=None) -> None:
        """
        **Private.**  Pack children into CSR arrays.  Siblings are ordered by
        *child_order* when given (ties by index), otherwise by index.
        """
        n = self.n_nodes
        counts = np.zeros(n, dtype=np.int64)
        non_root = np.flatnonzero(self.parent != NO_PARENT)
        np.add.at(counts, self.parent[non_root], 1)

        offsets = np.zeros(n + 1, dtype=np.int64)
        np.cumsum(counts, out=offsets[1:])

        if child_order is None:
            # Stable sort by parent keeps siblings in ascending index order.
            order = non_root[np.argsort(self.parent[non_root], kind="stable")]
        else:
            # lexsort: last key is primary; non_root is ascending so ties keep index order.
            order = non_root[
                np.lexsort((child_order[non_root], self.parent[non_root]))
            ]

        self.child_offsets = offsets
        self.child_indices = order.astype(np.int32)
        self.leaves = np.flatnonzero(counts == 0).astype(np.int32)

    def _build_name_index(self) -> None:
        """
        **Private.**  Map each leaf name to its index.

        Raises
        ------
        ValueError   if two leaves share a name.
        """
        idx = {}
        for u in self.leaves:
            u = int(u)
            name = self.names[u]
            if name == "":
                continue
            if name in idx:
                raise ValueError(
                    f"Duplicate leaf name '{name}' at indices {idx[name]} and {u}."
                )
            idx[name] = u
        self._name_index = idx

    @staticmethod
    def _name_lookup(names) -> Optional[Mapping[int, str]]:
        if names is None:
            return None
        if isinstance(names, Mapping):
            return {int(k): v for k, v in names.items()}
        return {k: v for k, v in enumerate(names) if v is not None}

    @staticmethod
    def _find_root(parent: np.ndarray) -> int:
        roots = np.flatnonzero(parent == NO_PARENT)
        if roots.shape[0] == 0:
            raise StructuralError("No root: every node has a parent.")
        if roots.shape[0] > 1:
            shown = ", ".join(str(r) for r in roots[:5])
            raise StructuralError(
                f"{roots.shape[0]} nodes have no parent ({shown}); expected exactly one root."
            )
        return int(roots[0])

    @staticmethod
    def _check_parents(parent: np.ndarray, root: int) -> None:
        n = parent.shape[0]
        bad = np.flatnonzero((parent < NO_PARENT) | (parent >= n))
        if bad.shape[0]:
            u = int(bad[0])
            raise StructuralError(f"Node {u} has out-of-range parent {parent[u]}.")
        selfp = np.flatnonzero(parent == np.arange(n))
        if selfp.shape[0]:
            raise StructuralError(f"Node {int(selfp[0])} is its own parent (cycle).")

    @staticmethod
    def _resolve_depths(parent, child_offsets, child_indices, root: int) -> np.ndarray:
        """
        **Private static.**  Breadth-first depth assignment from the root.

        Any node left unvisited cannot reach the root by following parent
        links, so it sits on a cycle (or hangs below one).
        """
        n = parent.shape[0]
        depth = np.full(n, -1, dtype=np.int32)
        depth[root] = 0
        queue = [root]
        head = 0
        while head < len(queue):
            u = queue[head]
            head += 1
            for k in range(child_offsets[u], child_offsets[u + 1]):
                c = int(child_indices[k])
                depth[c] = depth[u] + 1
                queue.append(c)

        unvisited = np.flatnonzero(depth < 0)
        if unvisited.shape[0]:
            u = int(unvisited[0])
            # Walk up from u until a node repeats to report the cycle.
            seen = []
            v = u
            while v not in seen:
                seen.append(v)
                v = int(parent[v])
            cycle = seen[seen.index(v):]
            raise StructuralError(
                f"Cycle detected while resolving ancestry of node {u}: "
                f"{' -> '.join(str(x) for x in cycle + [v])}."
            )
        return depth
