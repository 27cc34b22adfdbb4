"""
conftest.py
===========
Session-level pytest configuration.

Custom marks
------------
cuda
    Tests that launch the CUDA kernel.  They skip themselves when no GPU is
    present; the mark lets a GPU runner select them with ``-m cuda``.

Warning filters
---------------
NumbaPerformanceWarning messages are filtered out during tests.  Warnings
about GPU under-utilization are expected with small test data and are not
informative for correctness testing.
"""

import warnings


def pytest_configure(config):
    """
    Configure pytest before test collection begins.

    This runs before any test module is imported, which matters for warnings
    emitted while numba compiles kernels at import.
    """
    config.addinivalue_line(
        "markers",
        "cuda: test launches the CUDA convergence kernel (skipped without a GPU)",
    )

    try:
        from numba.core.errors import NumbaPerformanceWarning

        warnings.filterwarnings("ignore", category=NumbaPerformanceWarning)
    except ImportError:
        pass


def pytest_unconfigure(config):
    """Restore default warning behavior."""
    warnings.resetwarnings()
