"""
_data.py
========
Value types exchanged between the tree model, the accelerator and the
regression estimator.

  BranchPair         (i, j, selected): two node indices, i != j.
  PosteriorBuffer    flat float64 buffer of per-node blocks + offset table.
  ConvergenceResult  per-pair divergent/convergent scores (read-only arrays)
                     and the per-site breakdown of selected pairs.
  RegressionResult   (slope, intercept).

Memory layout
-------------
A PosteriorBuffer follows the same CSR idea as the packed tree arrays: one
contiguous buffer, one offset per node.  Node ``k``'s block starts at
``offsets[k]`` and spans ``block_sizes[k]`` values.  For the convergence
kernel a block is ``n_sites`` row-major ``n_states x n_states`` matrices, so
the full block size is ``n_sites * n_states**2``.  Nodes without data (the
root, typically) may have block size 0.
"""

from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from grandconv._exceptions import PosteriorBufferError


class BranchPair(NamedTuple):
    """
    An unordered pair of node indices, each standing for the branch above
    that node, plus a flag requesting the per-site breakdown.
    """

    i: int
    j: int
    selected: bool = False

    @classmethod
    def make(cls, i, j, selected: bool = False) -> "BranchPair":
        """Build a pair from integer-like indices, rejecting ``i == j``."""
        i = int(i)
        j = int(j)
        if i == j:
            raise ValueError(f"Branch pair must reference two distinct nodes, got ({i}, {j}).")
        if i < 0 or j < 0:
            raise ValueError(f"Branch pair indices must be non-negative, got ({i}, {j}).")
        return cls(i, j, bool(selected))


def as_branch_pairs(pairs: Iterable) -> List[BranchPair]:
    """
    Normalise *pairs* to a list of ``BranchPair``.

    Each element may be a ``BranchPair``, a 2-tuple ``(i, j)`` (not selected)
    or a 3-tuple ``(i, j, selected)``.
    """
    out = []
    for p in pairs:
        if isinstance(p, BranchPair):
            out.append(BranchPair.make(p.i, p.j, p.selected))
        elif len(p) == 2:
            out.append(BranchPair.make(p[0], p[1]))
        elif len(p) == 3:
            out.append(BranchPair.make(p[0], p[1], p[2]))
        else:
            raise ValueError(f"Cannot interpret {p!r} as a branch pair.")
    return out


def pack_branch_pairs(pairs: Sequence[BranchPair]) -> np.ndarray:
    """Return the int32 ``(n_pairs, 3)`` triple table handed to kernels."""
    table = np.zeros((len(pairs), 3), dtype=np.int32)
    for k, p in enumerate(pairs):
        table[k, 0] = p.i
        table[k, 1] = p.j
        table[k, 2] = 1 if p.selected else 0
    return table


class PosteriorBuffer:
    """
    Flat per-node posterior substitution probability blocks.

    Parameters
    ----------
    buffer : array-like of float
        All node blocks concatenated.  Copied to contiguous float64.
    offsets : array-like of int
        Start of each node's block.  Length ``n_nodes`` or ``n_nodes + 1``
        (a trailing sentinel is accepted and ignored).
    n_sites : int
        Number of alignment sites per block.
    n_states : int
        State-space size (20 for amino acids).
    n_nodes : int, optional
        Node count.  Defaults to ``len(offsets)``.
    block_sizes : array-like of int, optional
        Per-node block length.  Defaults to ``n_sites * n_states**2`` for
        every node.

    Raises
    ------
    PosteriorBufferError
        If offsets decrease, a block runs past the end of the buffer, or two
        non-empty blocks overlap.
    """

    def __init__(
        self,
        buffer,
        offsets,
        n_sites: int,
        n_states: int,
        n_nodes: Optional[int] = None,
        block_sizes=None,
    ) -> None:
        buffer = np.array(buffer, dtype=np.float64).ravel()
        offsets = np.asarray(offsets, dtype=np.int64).ravel()

        n_sites = int(n_sites)
        n_states = int(n_states)
        if n_sites < 1:
            raise PosteriorBufferError(f"n_sites must be >= 1, got {n_sites}.")
        if n_states < 2:
            raise PosteriorBufferError(f"n_states must be >= 2, got {n_states}.")

        if n_nodes is None:
            n_nodes = offsets.shape[0]
        n_nodes = int(n_nodes)
        if offsets.shape[0] not in (n_nodes, n_nodes + 1):
            raise PosteriorBufferError(
                f"Offset table has {offsets.shape[0]} entries for {n_nodes} nodes."
            )
        offsets = offsets[:n_nodes].copy()

        full = n_sites * n_states * n_states
        if block_sizes is None:
            block_sizes = np.full(n_nodes, full, dtype=np.int64)
        else:
            block_sizes = np.asarray(block_sizes, dtype=np.int64).ravel()
            if block_sizes.shape[0] != n_nodes:
                raise PosteriorBufferError(
                    f"block_sizes has {block_sizes.shape[0]} entries for {n_nodes} nodes."
                )

        PosteriorBuffer._validate(buffer.shape[0], offsets, block_sizes)

        self.buffer = buffer
        self.offsets = offsets
        self.block_sizes = block_sizes
        self.n_nodes = n_nodes
        self.n_sites = n_sites
        self.n_states = n_states
        self.block_size = full

        self.buffer.flags.writeable = False
        self.offsets.flags.writeable = False
        self.block_sizes.flags.writeable = False

    @staticmethod
    def _validate(buffer_len: int, offsets: np.ndarray, block_sizes: np.ndarray) -> None:
        if offsets.shape[0] == 0:
            return
        if np.any(offsets < 0):
            k = int(np.argmax(offsets < 0))
            raise PosteriorBufferError(f"Negative offset {offsets[k]} for node {k}.")
        if np.any(block_sizes < 0):
            k = int(np.argmax(block_sizes < 0))
            raise PosteriorBufferError(f"Negative block size for node {k}.")

        steps = np.diff(offsets)
        if np.any(steps < 0):
            k = int(np.argmax(steps < 0))
            raise PosteriorBufferError(
                f"Offsets are not monotonically non-decreasing: "
                f"offsets[{k}]={offsets[k]} > offsets[{k + 1}]={offsets[k + 1]}."
            )

        ends = offsets + block_sizes
        if np.any(ends > buffer_len):
            k = int(np.argmax(ends > buffer_len))
            raise PosteriorBufferError(
                f"Block of node {k} ends at {ends[k]}, past buffer length {buffer_len}."
            )

        # Monotone offsets: overlap can only happen with the next non-empty block.
        nonempty = np.flatnonzero(block_sizes > 0)
        if nonempty.shape[0] > 1:
            a = nonempty[:-1]
            b = nonempty[1:]
            clash = ends[a] > offsets[b]
            if np.any(clash):
                k = int(np.argmax(clash))
                raise PosteriorBufferError(
                    f"Blocks of nodes {a[k]} and {b[k]} overlap "
                    f"({offsets[a[k]]}+{block_sizes[a[k]]} > {offsets[b[k]]})."
                )

    @classmethod
    def from_blocks(cls, blocks, n_sites: int, n_states: int) -> "PosteriorBuffer":
        """
        Pack per-node arrays into a single buffer.

        Parameters
        ----------
        blocks : sequence or dict
            ``blocks[k]`` is node ``k``'s data with ``n_sites * n_states**2``
            values (any shape), or ``None`` for a node without data.  A dict
            maps node index to block; missing indices count as ``None`` and
            the node count is ``max(key) + 1``.
        """
        if isinstance(blocks, dict):
            n_nodes = (max(blocks) + 1) if blocks else 0
            items = [blocks.get(k) for k in range(n_nodes)]
        else:
            items = list(blocks)
            n_nodes = len(items)

        offsets = np.zeros(n_nodes, dtype=np.int64)
        sizes = np.zeros(n_nodes, dtype=np.int64)
        parts = []
        pos = 0
        for k, block in enumerate(items):
            offsets[k] = pos
            if block is None:
                continue
            flat = np.asarray(block, dtype=np.float64).ravel()
            parts.append(flat)
            sizes[k] = flat.shape[0]
            pos += flat.shape[0]

        buffer = np.concatenate(parts) if parts else np.zeros(0, dtype=np.float64)
        return cls(buffer, offsets, n_sites, n_states, n_nodes=n_nodes, block_sizes=sizes)

    def block(self, node: int) -> np.ndarray:
        """Return node's block viewed as ``(n_sites, n_states, n_states)``."""
        node = int(node)
        if self.block_sizes[node] != self.block_size:
            raise PosteriorBufferError(f"Node {node} has no full posterior block.")
        start = int(self.offsets[node])
        flat = self.buffer[start:start + self.block_size]
        return flat.reshape(self.n_sites, self.n_states, self.n_states)

    def check_pairs(self, pairs: Sequence[BranchPair]) -> None:
        """
        Verify that every node referenced by *pairs* exists and carries a full
        block, so that kernels never read outside the buffer.
        """
        for p in pairs:
            for node in (p.i, p.j):
                if node >= self.n_nodes:
                    raise PosteriorBufferError(
                        f"Branch pair ({p.i}, {p.j}) references node {node}; "
                        f"buffer holds {self.n_nodes} nodes."
                    )
                if self.block_sizes[node] != self.block_size:
                    raise PosteriorBufferError(
                        f"Branch pair ({p.i}, {p.j}) references node {node} whose block "
                        f"holds {self.block_sizes[node]} values (expected {self.block_size})."
                    )

    @property
    def nbytes(self) -> int:
        return int(self.buffer.nbytes + self.offsets.nbytes)

    def __repr__(self) -> str:
        return (
            f"PosteriorBuffer(n_nodes={self.n_nodes}, n_sites={self.n_sites}, "
            f"n_states={self.n_states}, length={self.buffer.shape[0]})"
        )


class ConvergenceResult:
    """
    Output of one accelerator invocation.  Immutable after construction.

    Attributes
    ----------
    pairs : tuple[BranchPair, ...]
        Input pairs, in input order.
    divergent : float64[n_pairs]
        Divergent score per pair (sum over sites).
    convergent : float64[n_pairs]
        Convergent score per pair (sum over sites).
    site_breakdown : dict[int, float64[n_sites, 2]]
        Keyed by position in ``pairs``; present only for selected pairs.
        Columns are (convergent, divergent).
    """

    def __init__(
        self,
        pairs: Sequence[BranchPair],
        divergent: np.ndarray,
        convergent: np.ndarray,
        site_breakdown: Optional[Dict[int, np.ndarray]] = None,
        n_sites: int = 0,
    ) -> None:
        divergent = np.array(divergent, dtype=np.float64)
        convergent = np.array(convergent, dtype=np.float64)
        if divergent.shape != (len(pairs),) or convergent.shape != (len(pairs),):
            raise ValueError(
                f"Expected {len(pairs)} scores, got divergent{divergent.shape} "
                f"and convergent{convergent.shape}."
            )
        divergent.flags.writeable = False
        convergent.flags.writeable = False

        breakdown = {}
        for k, arr in (site_breakdown or {}).items():
            arr = np.array(arr, dtype=np.float64)
            arr.flags.writeable = False
            breakdown[int(k)] = arr

        self.pairs: Tuple[BranchPair, ...] = tuple(pairs)
        self.divergent = divergent
        self.convergent = convergent
        self.site_breakdown = breakdown
        self.n_sites = int(n_sites)

    @classmethod
    def from_site_scores(
        cls,
        pairs: Sequence[BranchPair],
        convergent_sites: np.ndarray,
        divergent_sites: np.ndarray,
    ) -> "ConvergenceResult":
        """
        Reduce per-(pair, site) kernel output to per-pair scores, keeping the
        per-site columns of selected pairs only.
        """
        n_sites = convergent_sites.shape[1] if convergent_sites.ndim == 2 else 0
        breakdown = {
            k: np.stack((convergent_sites[k], divergent_sites[k]), axis=1)
            for k, p in enumerate(pairs)
            if p.selected
        }
        return cls(
            pairs,
            divergent_sites.sum(axis=1),
            convergent_sites.sum(axis=1),
            breakdown,
            n_sites=n_sites,
        )

    @property
    def n_pairs(self) -> int:
        return len(self.pairs)

    @property
    def selected_indices(self) -> List[int]:
        return sorted(self.site_breakdown)

    def __len__(self) -> int:
        return len(self.pairs)

    def __repr__(self) -> str:
        return (
            f"ConvergenceResult(n_pairs={self.n_pairs}, n_sites={self.n_sites}, "
            f"n_selected={len(self.site_breakdown)})"
        )


class RegressionResult(NamedTuple):
    """Trend line ``convergent = slope * divergent + intercept``."""

    slope: float
    intercept: float
    n_slopes: int = 0

    def predict(self, x):
        return self.slope * np.asarray(x, dtype=np.float64) + self.intercept
