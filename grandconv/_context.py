"""
_context.py
===========
State-restoring context managers.

  suppress_logger(name, level)   raise one logger's threshold
  quiet(level)                   raise the threshold of the whole package
  suppress_warnings(category)    ignore a warning category
  use_backend(name)              force what backend='best' resolves to
  silent_benchmark(name)         all three of the above at once

Every manager puts the previous state back on exit, including when the
block raises.
"""

import logging
import warnings
from contextlib import ExitStack, contextmanager
from typing import Optional, Type

PACKAGE_LOGGER = "grandconv"

# Name forced by use_backend(); None when no override is active.
_backend_override = None


# ============================================================================ #
# Logging
# ============================================================================ #


@contextmanager
def suppress_logger(logger_name: str, level: int = logging.CRITICAL):
    """
    Set *logger_name*'s level to *level* for the duration of the block.

    Parameters
    ----------
    logger_name : str
        Dotted logger name, e.g. ``'grandconv._accelerator'``.
    level : int, default logging.CRITICAL

    Examples
    --------
    >>> with suppress_logger('grandconv._regression'):
    ...     line = robust_regression(x, y)
    """
    target = logging.getLogger(logger_name)
    saved = target.level
    target.setLevel(level)
    try:
        yield target
    finally:
        target.setLevel(saved)


@contextmanager
def quiet(level: int = logging.CRITICAL):
    """
    Silence grandconv's own diagnostics below *level*.

    Module loggers are children of ``'grandconv'`` and carry no level of
    their own, so only the package logger is touched.

    Examples
    --------
    >>> with quiet():
    ...     result = ConvergenceAnalysis(tree, posterior).run()

    >>> with quiet(logging.WARNING):   # fallbacks are still reported
    ...     result = ConvergenceAnalysis(tree, posterior).run()
    """
    with suppress_logger(PACKAGE_LOGGER, level):
        yield


# ============================================================================ #
# Warnings
# ============================================================================ #


@contextmanager
def suppress_warnings(category: Optional[Type[Warning]] = None):
    """
    Ignore warnings of *category* (all warnings when None) inside the block.

    Examples
    --------
    >>> from numba.core.errors import NumbaPerformanceWarning
    >>> with suppress_warnings(NumbaPerformanceWarning):
    ...     result = session.compute(posterior, pairs)
    """
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=category or Warning)
        yield


# ============================================================================ #
# Backend override
# ============================================================================ #


@contextmanager
def use_backend(backend: str):
    """
    Make ``backend='best'`` resolve to *backend* inside the block.

    Explicitly named backends are unaffected.  The override is module-level
    state shared by all threads; threads that need different backends
    should pass ``backend=`` to ``accelerator`` or ``run`` instead.

    Parameters
    ----------
    backend : str
        An available backend name, or ``'best'`` (no forcing).

    Raises
    ------
    ValueError
        If *backend* does not report availability on entry.
    """
    global _backend_override

    from grandconv._backend import get_available_backends

    if backend != "best":
        available = get_available_backends()
        if backend not in available:
            raise ValueError(
                f"Backend '{backend}' not available. "
                f"Available backends: {', '.join(available) or 'none'}"
            )

    saved = _backend_override
    _backend_override = backend
    try:
        yield
    finally:
        _backend_override = saved


def get_backend_override() -> Optional[str]:
    """
    The name forced by the innermost active ``use_backend``, or None.

    >>> with use_backend('cpu-parallel'):
    ...     print(get_backend_override())
    cpu-parallel
    """
    return _backend_override


@contextmanager
def silent_benchmark(backend: str = "best"):
    """
    Force *backend* with logging and warnings silenced, for timing runs.

    Examples
    --------
    >>> for name in ['cuda', 'cpu-parallel']:
    ...     try:
    ...         with silent_benchmark(name):
    ...             start = time.perf_counter()
    ...             run_analysis(tree, posterior)
    ...             print(f"{name}: {time.perf_counter() - start:.3f}s")
    ...     except ValueError:
    ...         print(f"{name}: not available")
    """
    with ExitStack() as stack:
        stack.enter_context(quiet())
        stack.enter_context(use_backend(backend))
        stack.enter_context(suppress_warnings())
        yield
