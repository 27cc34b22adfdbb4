"""
_cuda_kernels.py
================
CUDA convergence kernel using Numba CUDA.

This module contains ONLY numba.cuda code and does not import other project
modules.  The kernel is defined only when ``numba.cuda`` imports; the grid
helper is always available.

Exported Functions
------------------
_site_convergence_cuda : cuda.jit device function
    Convergent/divergent probability of one branch pair at one site.

_convergence_cuda : cuda.jit kernel
    2-D grid: x = branch pair, y = site.  One thread per (pair, site).

_compute_cuda_grid : function
    Helper to compute CUDA grid dimensions.

Notes
-----
- Per-thread scratch uses ``cuda.local.array(MAX_STATES)``; local arrays need
  a compile-time size, so the state space is capped at MAX_STATES (64 covers
  amino acids and the 61 sense codons).
- Every thread writes exactly one cell of each output array: no atomics.
- Computation is float64 throughout, matching the CPU kernel.
"""

import numpy as np

MAX_STATES = 64

try:
    from numba import cuda
    _CUDA_AVAILABLE = True
except ImportError:
    _CUDA_AVAILABLE = False


if _CUDA_AVAILABLE:
    # ======================================================================== #
    # CUDA Kernels                                                              #
    # ======================================================================== #

    @cuda.jit(device=True)
    def _site_convergence_cuda(posterior, base1, base2, n_states, sum_c, sum_d):
        """
        Device function, inlined into the kernel.  Same arithmetic as
        ``_cpu_kernels._site_convergence_nb``.
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

    @cuda.jit
    def _convergence_cuda(
            posterior,
            offsets,
            node_pairs,
            n_pairs,
            n_sites,
            n_states,
            convergent_out,
            divergent_out):
        """
        CUDA convergence kernel.

        Parameters
        ----------
        posterior : float64[buffer_len] on device
        offsets : int64[n_nodes] on device
        node_pairs : int32[n_pairs, 3] on device
        n_pairs, n_sites, n_states : int
        convergent_out, divergent_out : float64[n_pairs, n_sites] on device
        """
        pi, s = cuda.grid(2)
        if pi >= n_pairs or s >= n_sites:
            return

        sum_c = cuda.local.array(MAX_STATES, np.float64)
        sum_d = cuda.local.array(MAX_STATES, np.float64)

        n2 = n_states * n_states
        base1 = offsets[node_pairs[pi, 0]] + s * n2
        base2 = offsets[node_pairs[pi, 1]] + s * n2

        c, d = _site_convergence_cuda(posterior, base1, base2, n_states, sum_c, sum_d)
        convergent_out[pi, s] = c
        divergent_out[pi, s] = d


def _compute_cuda_grid(n_pairs, n_sites, threads_per_block=(16, 16)):
    """
    Compute CUDA grid dimensions for the 2D (pair, site) thread space.

    Parameters
    ----------
    n_pairs : int
        Number of branch pairs.
    n_sites : int
        Number of alignment sites.
    threads_per_block : tuple[int, int], default (16, 16)
        Block dimensions (x, y).

    Returns
    -------
    blocks_per_grid : tuple[int, int]
    threads_per_block : tuple[int, int]
        Echoed back.

    Examples
    --------
    >>> _compute_cuda_grid(1000, 50)
    ((63, 4), (16, 16))
    """
    tpb_x, tpb_y = threads_per_block
    blocks_x = max(1, (n_pairs + tpb_x - 1) // tpb_x)
    blocks_y = max(1, (n_sites + tpb_y - 1) // tpb_y)
    return (blocks_x, blocks_y), threads_per_block
