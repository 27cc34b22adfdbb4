"""
_logging.py
===========
Logging functions for grandconv.

All functions in this module have NO side effects except logging. They take
computed data as parameters and format/emit log messages, which keeps the
computational modules free of presentation code and lets tests silence or
capture diagnostics in one place.
"""

import logging
import os
import platform
from typing import List, Sequence, Tuple

import numpy as np
import psutil

logger = logging.getLogger(__name__)


# ============================================================================ #
# System and Backend Logging (called at import of the accelerator module)
# ============================================================================ #


def log_system_status(numba_available: bool) -> None:
    """
    Log host capabilities and compiler-stack versions at INFO level.

    Parameters
    ----------
    numba_available : bool
        Whether numba imported successfully.
    """
    cpu_count = os.cpu_count() or 1
    logger.info(
        f"System: {platform.machine()} ({platform.system()}), "
        f"{cpu_count} CPU cores, Python {platform.python_version()}"
    )

    mem = psutil.virtual_memory()
    logger.info(
        f"Memory: {mem.total / (1024**3):.1f} GB total, "
        f"{mem.available / (1024**3):.1f} GB available"
    )

    if not numba_available:
        logger.info("Numba not importable: no convergence backend can be compiled")
        return

    import numba

    logger.info(f"Numba {numba.__version__} loaded successfully")

    try:
        import llvmlite

        logger.info(f"LLVM backend: llvmlite {llvmlite.__version__}")
    except (ImportError, AttributeError):
        pass  # version is informational only

    try:
        logger.info(
            f"Numba threading: {numba.threading_layer()} layer, "
            f"{numba.get_num_threads()} threads active"
        )
    except ValueError:
        # threading_layer() raises until a parallel kernel has run
        logger.info(f"Numba threading: {numba.get_num_threads()} threads configured")


def install_numba_warning_filter(numba_available: bool) -> None:
    """
    Route NumbaPerformanceWarning through our logger at WARNING level so it
    appears in the same stream as other grandconv diagnostics.  Other warning
    categories keep their original display.
    """
    import warnings

    if not numba_available:
        return

    try:
        from numba.core.errors import NumbaPerformanceWarning
    except ImportError:
        return  # category not present in this numba version

    original_showwarning = warnings.showwarning

    def showwarning(message, category, filename, lineno, file=None, line=None):
        if issubclass(category, NumbaPerformanceWarning):
            logger.warning(f"Numba performance issue: {message}")
            logger.warning(f"  at {filename}:{lineno}")
            return
        original_showwarning(message, category, filename, lineno, file, line)

    warnings.showwarning = showwarning


def log_backend_availability(backends_available: List[str]) -> None:
    """
    Log which accelerator backends report availability, in preference order.
    """
    if not backends_available:
        logger.info("Available backends: none (convergence computation disabled)")
        return

    logger.info(f"Available backends: {', '.join(backends_available)}")
    if "cuda" in backends_available:
        logger.info("  cuda: GPU acceleration via numba.cuda")
    if "cpu-parallel" in backends_available:
        logger.info("  cpu-parallel: LLVM-compiled parallel code (numba.njit + prange)")
    logger.info(f"Default backend='best' will use: {backends_available[0]}")


def log_device(backend_name: str, device_name: str, total_memory: int) -> None:
    """Log the descriptor returned by a backend's init."""
    logger.info(
        f"Initialised {backend_name} backend: {device_name}, "
        f"{total_memory / (1024**3):.2f} GB addressable"
    )


# ============================================================================ #
# Kernel Invocation Logging
# ============================================================================ #


def log_transfer(direction: str, arrays: Sequence[Tuple[str, np.ndarray]]) -> int:
    """
    Log a host/device transfer.

    Parameters
    ----------
    direction : str
        ``'H→D'`` or ``'D→H'``.
    arrays : sequence of (name, ndarray)

    Returns
    -------
    int
        Total bytes transferred.
    """
    total = sum(arr.nbytes for _, arr in arrays)
    if direction == "H→D":
        logger.info("  Transferring data to GPU device:")
    else:
        logger.info("  Transferring results from GPU device:")
    for name, arr in arrays:
        logger.info(f"    - {name}: {arr.shape} {arr.dtype}, {arr.nbytes / 1024:.1f} KB")
    logger.info(f"    Total {direction} transfer: {total / (1024**2):.2f} MB")
    return total


def log_kernel_launch(
    blocks_per_grid: Tuple[int, int],
    threads_per_block: Tuple[int, int],
    active_threads: int,
) -> None:
    """Log CUDA launch geometry and thread utilisation."""
    total_threads = (
        blocks_per_grid[0]
        * threads_per_block[0]
        * blocks_per_grid[1]
        * threads_per_block[1]
    )
    logger.info("  Launching CUDA kernel:")
    logger.info(
        f"    Grid: {blocks_per_grid[0]}×{blocks_per_grid[1]} blocks, "
        f"{threads_per_block[0]}×{threads_per_block[1]} threads/block"
    )
    logger.info(
        f"    Total threads: {total_threads:,} "
        f"(active: {active_threads:,}, idle: {total_threads - active_threads:,})"
    )


def log_convergence_request(
    backend_name: str, n_pairs: int, n_selected: int, n_sites: int, n_states: int
) -> None:
    logger.info(
        "compute_convergence(backend=%r): %d branch pairs (%d selected), "
        "%d sites, %d states",
        backend_name,
        n_pairs,
        n_selected,
        n_sites,
        n_states,
    )


# ============================================================================ #
# Regression Logging
# ============================================================================ #


def log_regression(n_points: int, n_slopes: int, slope: float, intercept: float) -> None:
    """Log the outcome of a robust regression."""
    n_candidates = n_points * (n_points - 1) // 2
    logger.info(
        "Robust regression: %d points, %d of %d pairwise slopes retained; "
        "slope=%.6f intercept=%.6f",
        n_points,
        n_slopes,
        n_candidates,
        slope,
        intercept,
    )
    if n_slopes < 3 and n_candidates >= 3:
        logger.warning(
            "Only %d pairwise slope(s) survived filtering; the trend line is "
            "poorly constrained.",
            n_slopes,
        )
