"""
_analysis.py
============
End-to-end convergence analysis.

    tree + posterior + branch pairs
        -> accelerator (per-pair convergent / divergent scores)
        -> robust regression (trend line)
        -> result document (tree, scatter points, site-specific breakdown)

Public API
----------
  all_branch_pairs(tree, selected=())
  ConvergenceAnalysis(tree, posterior, branch_pairs=None, selected=(), ...)
      .run(backend='best', fallback=True) -> AnalysisResult
  AnalysisResult.to_document() / .to_json()
  run_analysis(tree, posterior, ...)   one-call convenience wrapper
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from grandconv._accelerator import AcceleratorContext, accelerator
from grandconv._backend import DeviceInfo
from grandconv._data import (
    BranchPair,
    ConvergenceResult,
    PosteriorBuffer,
    RegressionResult,
    as_branch_pairs,
)
from grandconv._exceptions import PosteriorBufferError
from grandconv._regression import robust_regression
from grandconv._serializer import log_tree, tree_to_document
from grandconv._tree import Tree
from grandconv._utils import branch_pair_id, branch_pair_label, branch_pair_name

logger = logging.getLogger(__name__)


def _pair_key(tree: Tree, pair) -> frozenset:
    if len(pair) < 2:
        raise ValueError(f"Cannot interpret {pair!r} as a branch pair.")
    return frozenset((tree.resolve(pair[0]), tree.resolve(pair[1])))


def _selected_keys(tree: Tree, selected: Iterable) -> set:
    wanted = {_pair_key(tree, p) for p in selected}
    for key in wanted:
        if len(key) != 2 or tree.root in key:
            raise ValueError(
                f"Selected pair {sorted(key)} is not a pair of two non-root branches."
            )
    return wanted


def all_branch_pairs(tree: Tree, selected: Iterable = ()) -> List[BranchPair]:
    """
    Every unordered pair of non-root nodes, i.e. every pair of branches.

    Pairs are ordered by ``(i, j)`` with ``i < j``.

    Parameters
    ----------
    tree : Tree
    selected : iterable of (node, node)
        Pairs to flag for the per-site breakdown.  Nodes may be indices or
        leaf names; order within a pair does not matter.

    Raises
    ------
    ValueError
        If a selected pair involves the root or names the same node twice.
    """
    wanted = _selected_keys(tree, selected)
    branches = [u for u in range(tree.n_nodes) if u != tree.root]
    pairs = []
    for a, i in enumerate(branches):
        for j in branches[a + 1:]:
            pairs.append(BranchPair(i, j, frozenset((i, j)) in wanted))
    return pairs


class AnalysisResult:
    """
    Everything the reporting layer consumes.

    Attributes
    ----------
    tree : Tree
    convergence : ConvergenceResult
    regression : RegressionResult
    backend : str
        Name of the backend that produced the scores.
    device : DeviceInfo
    post_num_sub, site_class : ndarray or None
        Optional per-site series passed through to the document.
    """

    def __init__(
        self,
        tree: Tree,
        convergence: ConvergenceResult,
        regression: RegressionResult,
        backend: str,
        device: DeviceInfo,
        post_num_sub: Optional[np.ndarray] = None,
        site_class: Optional[np.ndarray] = None,
    ) -> None:
        self.tree = tree
        self.convergence = convergence
        self.regression = regression
        self.backend = backend
        self.device = device
        self.post_num_sub = post_num_sub
        self.site_class = site_class

    @property
    def selected_pairs(self) -> List[BranchPair]:
        return [self.convergence.pairs[k] for k in self.convergence.selected_indices]

    def site_specific(self) -> Dict[str, List[List[float]]]:
        """
        ``BP_ixj`` -> ``[[site, convergent, divergent], ...]`` for every
        selected pair, keeping only sites where either value is non-zero.
        """
        out = {}
        for k in self.convergence.selected_indices:
            pair = self.convergence.pairs[k]
            rows = self.convergence.site_breakdown[k]
            keep = np.flatnonzero((rows[:, 0] != 0) | (rows[:, 1] != 0))
            out[branch_pair_id(pair.i, pair.j)] = [
                [int(h), float(rows[h, 0]), float(rows[h, 1])] for h in keep
            ]
        return out

    def to_document(self) -> Dict[str, Any]:
        """Plain, JSON-serializable dict of the whole result."""
        conv = self.convergence
        selected = self.selected_pairs
        doc = {
            "tree": tree_to_document(self.tree),
            "regressionSlope": float(self.regression.slope),
            "regressionIntercept": float(self.regression.intercept),
            "xPoints": [float(v) for v in conv.divergent],
            "yPoints": [float(v) for v in conv.convergent],
            "labels": [branch_pair_label(self.tree, p.i, p.j) for p in conv.pairs],
            "numOfSelectedBranchPairs": len(selected),
            "numOfSites": conv.n_sites,
            "siteSpecific": self.site_specific(),
            "siteSpecificBranchPairsIDs": [branch_pair_id(p.i, p.j) for p in selected],
            "siteSpecificBranchPairsName": [branch_pair_name(p.i, p.j) for p in selected],
            "backend": self.backend,
            "device": {"name": self.device.name, "totalMemory": int(self.device.total_memory)},
        }
        if self.post_num_sub is not None:
            doc["xPostNumSub"] = [float(v) for v in self.post_num_sub]
        if self.site_class is not None:
            doc["ySiteClass"] = [int(v) for v in self.site_class]
        return doc

    def to_json(self, indent: Optional[int] = None) -> str:
        """JSON rendering of ``to_document`` with sorted keys."""
        if indent is None:
            return json.dumps(self.to_document(), sort_keys=True, separators=(",", ":"))
        return json.dumps(self.to_document(), sort_keys=True, indent=indent)

    def __repr__(self) -> str:
        return (
            f"AnalysisResult(n_pairs={self.convergence.n_pairs}, "
            f"slope={self.regression.slope:.6g}, "
            f"intercept={self.regression.intercept:.6g}, backend={self.backend!r})"
        )


class ConvergenceAnalysis:
    """
    Convergence analysis over one tree and one posterior buffer.

    Parameters
    ----------
    tree : Tree
    posterior : PosteriorBuffer
        Must hold one entry per tree node (``posterior.n_nodes == tree.n_nodes``).
    branch_pairs : iterable, optional
        Pairs to score.  Defaults to ``all_branch_pairs(tree)``.
    selected : iterable of (node, node), optional
        Pairs to flag for the per-site breakdown.
    post_num_sub : array-like of float, optional
        Posterior number of substitutions per site, passed through to the
        document as ``xPostNumSub``.
    site_class : array-like of int, optional
        Site class per site, passed through as ``ySiteClass``.

    Raises
    ------
    PosteriorBufferError
        If the buffer's node count disagrees with the tree, or a per-site
        series has the wrong length.
    ValueError
        If a branch pair references a node outside the tree, or a selected
        pair is not a pair of two non-root branches among those scored.
    """

    def __init__(
        self,
        tree: Tree,
        posterior: PosteriorBuffer,
        branch_pairs: Optional[Iterable] = None,
        selected: Iterable = (),
        post_num_sub=None,
        site_class=None,
    ) -> None:
        if posterior.n_nodes != tree.n_nodes:
            raise PosteriorBufferError(
                f"Posterior buffer holds {posterior.n_nodes} nodes, "
                f"tree has {tree.n_nodes}."
            )

        selected = list(selected)
        if branch_pairs is None:
            pairs = all_branch_pairs(tree, selected)
        else:
            wanted = _selected_keys(tree, selected)
            pairs = []
            for p in as_branch_pairs(branch_pairs):
                for node in (p.i, p.j):
                    if node >= tree.n_nodes:
                        raise ValueError(
                            f"Branch pair ({p.i}, {p.j}) references node {node}; "
                            f"tree has {tree.n_nodes} nodes."
                        )
                flag = p.selected or frozenset((p.i, p.j)) in wanted
                pairs.append(BranchPair(p.i, p.j, flag))
            unmatched = wanted - {frozenset((p.i, p.j)) for p in pairs}
            if unmatched:
                raise ValueError(
                    f"Selected pairs {sorted(sorted(k) for k in unmatched)} are not "
                    "among the branch pairs to score."
                )

        self.tree = tree
        self.posterior = posterior
        self.pairs: List[BranchPair] = pairs
        self.post_num_sub = self._site_series(post_num_sub, np.float64, "post_num_sub")
        self.site_class = self._site_series(site_class, np.int64, "site_class")

    def _site_series(self, values, dtype, label: str) -> Optional[np.ndarray]:
        if values is None:
            return None
        arr = np.asarray(values, dtype=dtype).ravel()
        if arr.shape[0] != self.posterior.n_sites:
            raise PosteriorBufferError(
                f"{label} has {arr.shape[0]} entries for {self.posterior.n_sites} sites."
            )
        return arr

    def run(
        self,
        backend="best",
        fallback: bool = True,
        context: Optional[AcceleratorContext] = None,
    ) -> AnalysisResult:
        """
        Score every branch pair, fit the trend line and bundle the result.

        Parameters
        ----------
        backend : str, Backend or None, default 'best'
        fallback : bool, default True
            See ``accelerator``.
        context : AcceleratorContext, optional

        Raises
        ------
        NoBackendAvailableError
            If no backend could be initialised.
        AcceleratorComputeError
            If the kernel fails.
        DegenerateInputError
            If the scores do not support a trend line.
        """
        log_tree(self.tree)
        logger.info(
            f"Convergence analysis: {self.tree.n_nodes} nodes, {len(self.pairs)} branch pairs, "
            f"{self.posterior.n_sites} sites"
        )

        with accelerator(backend, fallback=fallback, context=context) as session:
            convergence = session.compute(self.posterior, self.pairs)
            backend_name = session.backend_name
            device = session.device

        regression = robust_regression(convergence.divergent, convergence.convergent)
        return AnalysisResult(
            self.tree,
            convergence,
            regression,
            backend_name,
            device,
            post_num_sub=self.post_num_sub,
            site_class=self.site_class,
        )


def run_analysis(
    tree: Tree,
    posterior: PosteriorBuffer,
    branch_pairs: Optional[Iterable] = None,
    selected: Sequence = (),
    backend="best",
    **kwargs,
) -> AnalysisResult:
    """
    Build a ConvergenceAnalysis and run it.

    Examples
    --------
    >>> tree = Tree.from_newick('((A:1,B:1):1,(C:1,D:1):1);')   # doctest: +SKIP
    >>> result = run_analysis(tree, posterior, selected=[('A', 'C')])  # doctest: +SKIP
    >>> result.to_json()                                          # doctest: +SKIP
    """
    fallback = kwargs.pop("fallback", True)
    analysis = ConvergenceAnalysis(tree, posterior, branch_pairs, selected, **kwargs)
    return analysis.run(backend=backend, fallback=fallback)
