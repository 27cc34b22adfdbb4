"""
_cpu_kernels.py
===============
CPU kernels compiled with Numba.

This module contains ONLY numba-compiled code and does not import other
project modules, so that importing it never triggers package-level side
effects.  cache=True persists compiled binaries to disk.

Exported Functions
------------------
_site_convergence_nb : njit function
    Convergent/divergent probability of one branch pair at one site.

_convergence_njit : njit(parallel=True) function
    Per-(pair, site) scores for every branch pair; prange over pairs.

_count_slopes_njit : njit function
    Pass 1 of the robust regression: count surviving pairwise slopes.

_collect_slopes_njit : njit function
    Pass 2: write the surviving slopes into a pre-sized buffer.

Posterior layout
----------------
``posterior`` is the flat float64 buffer of a PosteriorBuffer.  Node k's
data starts at ``offsets[k]`` and holds ``n_sites`` row-major
``n_states x n_states`` matrices, one per site:

    P[site, j, m] = posterior[offsets[k] + site * n_states**2 + j * n_states + m]
"""

import math

import numpy as np
from numba import njit, prange


# ======================================================================== #
# Convergence kernel                                                        #
# ======================================================================== #


@njit(cache=True)
def _site_convergence_nb(posterior, base1, base2, n_states, sum_c, sum_d):
    """
    Score one site of one branch pair.

    Parameters
    ----------
    posterior : float64[:]
        Flat posterior buffer.
    base1, base2 : int
        Start of the site's matrix for the first / second node.
    n_states : int
        Matrix dimension.
    sum_c, sum_d : float64[n_states]
        Scratch space, overwritten.

    Returns
    -------
    (float, float)
        (convergent, divergent).

    Notes
    -----
    With P1, P2 the two matrices:

        sum_c[m] = sum_{j != m} P2[j, m]     change *into* m on branch 2
        total    = sum_{j != m} P2[j, m]     any change on branch 2
        sum_d[m] = total - sum_c[m]          change into anything but m

        convergent = sum_j sum_{m != j} P1[j, m] * sum_c[m]
        divergent  = sum_j sum_{m != j} P1[j, m] * sum_d[m]
    """
    for m in range(n_states):
        sum_c[m] = 0.0

    total = 0.0
    for j in range(n_states):
        row = base2 + j * n_states
        diag = posterior[row + j]
        row_sum = 0.0
        for m in range(n_states):
            v = posterior[row + m]
            sum_c[m] += v
            row_sum += v
        total += row_sum - diag
        sum_c[j] -= diag

    for m in range(n_states):
        sum_d[m] = total - sum_c[m]

    prob_c = 0.0
    prob_d = 0.0
    for j in range(n_states):
        row = base1 + j * n_states
        diag = posterior[row + j]
        for m in range(n_states):
            v = posterior[row + m]
            prob_c += sum_c[m] * v
            prob_d += sum_d[m] * v
        prob_c -= sum_c[j] * diag
        prob_d -= sum_d[j] * diag

    return prob_c, prob_d


@njit(parallel=True, cache=True)
def _convergence_njit(
        posterior,
        offsets,
        node_pairs,
        n_pairs,
        n_sites,
        n_states,
        convergent_out,
        divergent_out):
    """
    Numba-compiled convergence kernel.

    The outer loop over pairs runs in parallel via prange.  Each thread owns
    its output rows, so no atomics are needed.

    Parameters
    ----------
    posterior : float64[buffer_len]
        Flat posterior buffer.
    offsets : int64[n_nodes]
        Start of each node's block.
    node_pairs : int32[n_pairs, 3]
        (node_a, node_b, selected) triples.
    n_pairs, n_sites, n_states : int
    convergent_out, divergent_out : float64[n_pairs, n_sites]
        Output arrays, fully overwritten.
    """
    n2 = n_states * n_states
    for pi in prange(n_pairs):
        sum_c = np.empty(n_states, dtype=np.float64)
        sum_d = np.empty(n_states, dtype=np.float64)
        o1 = offsets[node_pairs[pi, 0]]
        o2 = offsets[node_pairs[pi, 1]]
        for s in range(n_sites):
            c, d = _site_convergence_nb(
                posterior, o1 + s * n2, o2 + s * n2, n_states, sum_c, sum_d
            )
            convergent_out[pi, s] = c
            divergent_out[pi, s] = d


# ======================================================================== #
# Robust regression: pairwise slopes                                        #
# ======================================================================== #
# Both passes apply the same filter.  A pair is dropped when xdelta == 0
# (coincident points or a vertical step), when the slope is not finite, or
# when it is exactly -1 or exactly 0.


@njit(cache=True)
def _count_slopes_njit(x, y):
    """
    Count pairwise slopes that survive the filter.

    Parameters
    ----------
    x, y : float64[m]

    Returns
    -------
    int64
    """
    m = x.shape[0]
    count = 0
    for p in range(m):
        for q in range(p + 1, m):
            xdelta = x[p] - x[q]
            if xdelta == 0.0:
                continue
            slope = (y[p] - y[q]) / xdelta
            if not math.isfinite(slope):
                continue
            if slope == -1.0 or slope == 0.0:
                continue
            count += 1
    return count


@njit(cache=True)
def _collect_slopes_njit(x, y, out):
    """
    Write surviving pairwise slopes into *out* in (p, q) order.

    Parameters
    ----------
    x, y : float64[m]
    out : float64[count]
        Sized from ``_count_slopes_njit``.

    Returns
    -------
    int64
        Number of slopes written; equals ``out.shape[0]`` when the inputs are
        unchanged between the passes.
    """
    m = x.shape[0]
    cap = out.shape[0]
    k = 0
    for p in range(m):
        for q in range(p + 1, m):
            xdelta = x[p] - x[q]
            if xdelta == 0.0:
                continue
            slope = (y[p] - y[q]) / xdelta
            if not math.isfinite(slope):
                continue
            if slope == -1.0 or slope == 0.0:
                continue
            if k < cap:
                out[k] = slope
            k += 1
    return k
