"""
test_cpu_kernels.py
===================
Tests for CPU kernels (_cpu_kernels.py).

Hand-worked two-state site
--------------------------
    P1 = [[0.5, 0.2],      P2 = [[0.1, 0.4],
          [0.3, 0.0]]            [0.1, 0.4]]

    cK = [P2[1,0], P2[0,1]] = [0.1, 0.4]     D = 0.5     dK = [0.4, 0.1]

    convergent = cK[1]*P1[0,1] + cK[0]*P1[1,0] = 0.4*0.2 + 0.1*0.3 = 0.11
    divergent  = dK[1]*P1[0,1] + dK[0]*P1[1,0] = 0.1*0.2 + 0.4*0.3 = 0.14
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
import pytest

from grandconv._cpu_kernels import (
    _collect_slopes_njit,
    _convergence_njit,
    _count_slopes_njit,
    _site_convergence_nb,
)
from grandconv._data import BranchPair, PosteriorBuffer, pack_branch_pairs

from reference_kernel import reference_site_scores

P1 = np.array([[0.5, 0.2], [0.3, 0.0]])
P2 = np.array([[0.1, 0.4], [0.1, 0.4]])


def run_kernel(posterior, pairs):
    table = pack_branch_pairs(pairs)
    conv = np.zeros((len(pairs), posterior.n_sites))
    div = np.zeros((len(pairs), posterior.n_sites))
    _convergence_njit(
        posterior.buffer,
        posterior.offsets,
        table,
        len(pairs),
        posterior.n_sites,
        posterior.n_states,
        conv,
        div,
    )
    return conv, div


class TestSiteConvergence:
    def test_hand_worked_site(self):
        flat = np.concatenate([P1.ravel(), P2.ravel()])
        c, d = _site_convergence_nb(flat, 0, 4, 2, np.empty(2), np.empty(2))
        assert c == pytest.approx(0.11)
        assert d == pytest.approx(0.14)

    def test_three_states_different_targets_are_divergent(self):
        a = np.array([[0.0, 0.3, 0.0], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
        b = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0], [0.2, 0.0, 0.0]])
        flat = np.concatenate([a.ravel(), b.ravel()])
        # a: 0->1 ; b: 2->0.  cK(b) = [0.2, 0, 0], D = 0.2, dK = [0, 0.2, 0.2]
        c_ab, d_ab = _site_convergence_nb(flat, 0, 9, 3, np.empty(3), np.empty(3))
        assert c_ab == pytest.approx(0.0)
        assert d_ab == pytest.approx(0.3 * 0.2)
        # cK(a) = [0, 0.3, 0], dK = [0.3, 0, 0.3]
        c_ba, d_ba = _site_convergence_nb(flat, 9, 0, 3, np.empty(3), np.empty(3))
        assert c_ba == pytest.approx(0.0)
        assert d_ba == pytest.approx(0.2 * 0.3)

    def test_diagonal_ignored(self):
        a = np.array([[9.0, 0.2], [0.3, 9.0]])
        b = np.array([[7.0, 0.4], [0.1, 7.0]])
        flat = np.concatenate([a.ravel(), b.ravel()])
        c, d = _site_convergence_nb(flat, 0, 4, 2, np.empty(2), np.empty(2))
        assert c == pytest.approx(0.11)
        assert d == pytest.approx(0.14)

    def test_scratch_overwritten(self):
        flat = np.concatenate([P1.ravel(), P2.ravel()])
        dirty = np.full(2, 123.0)
        c, _ = _site_convergence_nb(flat, 0, 4, 2, dirty, np.full(2, -5.0))
        assert c == pytest.approx(0.11)


class TestConvergenceKernel:
    def test_two_sites_two_nodes(self):
        blocks = [np.stack([P1, P1]), np.stack([P2, 2 * P2]), None]
        buf = PosteriorBuffer.from_blocks(blocks, n_sites=2, n_states=2)
        conv, div = run_kernel(buf, [BranchPair(0, 1)])
        np.testing.assert_allclose(conv, [[0.11, 0.22]])
        np.testing.assert_allclose(div, [[0.14, 0.28]])

    @pytest.mark.parametrize("n_states", [2, 4, 20])
    def test_matches_reference(self, n_states):
        rng = np.random.default_rng(n_states)
        n_nodes, n_sites = 6, 5
        blocks = [rng.random((n_sites, n_states, n_states)) for _ in range(n_nodes)]
        buf = PosteriorBuffer.from_blocks(blocks, n_sites, n_states)
        pairs = [BranchPair(i, j) for i in range(n_nodes) for j in range(n_nodes) if i != j]
        conv, div = run_kernel(buf, pairs)
        ref_conv, ref_div = reference_site_scores(buf, pairs)
        np.testing.assert_allclose(conv, ref_conv, rtol=1e-12)
        np.testing.assert_allclose(div, ref_div, rtol=1e-12)

    def test_zero_posterior_gives_zero(self):
        buf = PosteriorBuffer(np.zeros(3 * 4 * 9), np.arange(4) * 27, n_sites=3, n_states=3)
        conv, div = run_kernel(buf, [BranchPair(0, 3), BranchPair(2, 1)])
        assert np.all(conv == 0.0)
        assert np.all(div == 0.0)

    def test_offsets_with_gaps(self):
        # node 1 block starts after 5 unused values
        a = np.stack([P1])
        b = np.stack([P2])
        buffer = np.concatenate([a.ravel(), np.full(5, np.nan), b.ravel()])
        buf = PosteriorBuffer(buffer, [0, 9], n_sites=1, n_states=2)
        conv, div = run_kernel(buf, [BranchPair(0, 1)])
        np.testing.assert_allclose(conv, [[0.11]])
        np.testing.assert_allclose(div, [[0.14]])


class TestSlopePasses:
    def test_count_and_collect_agree(self):
        rng = np.random.default_rng(3)
        x = rng.random(50)
        y = rng.random(50)
        n = _count_slopes_njit(x, y)
        out = np.empty(n)
        assert _collect_slopes_njit(x, y, out) == n
        assert n == 50 * 49 // 2

    def test_filter(self):
        x = np.array([0.0, 0.0, 1.0, 2.0])
        y = np.array([0.0, 5.0, 2.0, 4.0])
        n = _count_slopes_njit(x, y)
        out = np.empty(n)
        _collect_slopes_njit(x, y, out)
        np.testing.assert_allclose(out, [2.0, 2.0, -3.0, -0.5, 2.0])

    def test_collect_never_overruns(self):
        x = np.array([0.0, 1.0, 3.0])
        y = np.array([0.0, 2.0, 3.0])
        out = np.empty(1)
        assert _collect_slopes_njit(x, y, out) == 3
        assert out[0] == 2.0

    def test_empty_input(self):
        x = np.zeros(0)
        assert _count_slopes_njit(x, x) == 0
