"""
_backend.py
===========
Backend detection, backend implementations and the runtime registry.

A backend is an object with four methods:

    probe()                          -> bool, never raises for absence
    init()                           -> DeviceInfo, or AcceleratorInitError
    compute(posterior, pair_table)   -> (convergent, divergent) per site
    cleanup()                        -> None, idempotent

Two are registered at import: ``cuda`` (numba.cuda) and ``cpu-parallel``
(numba.njit with prange), in that preference order.  Selection is a runtime
loop over the registry; more backends may be registered with
``register_backend``.

The detection functions have NO side effects.  Backends log their own
device and transfer details through ``_logging``.
"""

import logging
import os
import platform
from typing import List, NamedTuple, Optional, Tuple

import numpy as np

from grandconv._exceptions import (
    AcceleratorComputeError,
    AcceleratorInitError,
    NoBackendAvailableError,
)
from grandconv._logging import log_kernel_launch, log_transfer

logger = logging.getLogger(__name__)


# ============================================================================ #
# Backend Detection (No Side Effects)
# ============================================================================ #


def check_numba_available() -> bool:
    """
    Check if numba is available for CPU parallelization.

    Returns
    -------
    bool
        True if numba can be imported, False otherwise.
    """
    try:
        import numba  # noqa: F401

        return True
    except ImportError:
        return False


def check_cuda_available() -> Tuple[bool, bool]:
    """
    Check if CUDA GPU acceleration is available.

    Returns
    -------
    tuple[bool, bool]
        (numba_available, cuda_available)
    """
    try:
        from numba import cuda

        return (True, cuda.is_available())
    except ImportError:
        return (False, False)
    except Exception:
        # numba available but the driver query failed
        return (True, False)


# ============================================================================ #
# Backend Interface
# ============================================================================ #


class DeviceInfo(NamedTuple):
    """Descriptor returned by ``init``."""

    name: str
    total_memory: int


class Backend:
    """
    Base class for accelerator backends.

    Subclasses set ``name`` and override the four lifecycle methods.
    ``compute`` receives a validated PosteriorBuffer and the int32
    ``(n_pairs, 3)`` pair table and returns two float64
    ``(n_pairs, n_sites)`` arrays: convergent and divergent per site.
    """

    name: str = ""

    def probe(self) -> bool:
        return False

    def init(self) -> DeviceInfo:
        raise AcceleratorInitError(f"Backend {self.name!r} cannot be initialised.", self.name)

    def compute(self, posterior, pair_table: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError

    def cleanup(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


# ============================================================================ #
# CPU-parallel backend (numba.njit + prange)
# ============================================================================ #


class CpuParallelBackend(Backend):
    """
    LLVM-compiled parallel kernel.  The outer loop over branch pairs runs on
    numba's thread pool; the first call JIT-compiles (or loads from the
    on-disk cache).
    """

    name = "cpu-parallel"

    def __init__(self) -> None:
        self._first_call = True

    def probe(self) -> bool:
        return check_numba_available()

    def init(self) -> DeviceInfo:
        import psutil

        try:
            import numba

            threads = numba.get_num_threads()
        except ImportError as err:
            raise AcceleratorInitError("numba is not importable.", self.name) from err

        cpu = platform.processor() or platform.machine()
        name = f"{cpu} ({os.cpu_count() or 1} cores, {threads} numba threads)"
        return DeviceInfo(name, int(psutil.virtual_memory().total))

    def compute(self, posterior, pair_table):
        from grandconv._cpu_kernels import _convergence_njit

        n_pairs = pair_table.shape[0]
        convergent = np.zeros((n_pairs, posterior.n_sites), dtype=np.float64)
        divergent = np.zeros((n_pairs, posterior.n_sites), dtype=np.float64)

        if self._first_call:
            logger.info("  Compiling cpu-parallel convergence kernel (cached for future calls)")
            self._first_call = False

        _convergence_njit(
            posterior.buffer,
            posterior.offsets,
            pair_table,
            n_pairs,
            posterior.n_sites,
            posterior.n_states,
            convergent,
            divergent,
        )
        return convergent, divergent


# ============================================================================ #
# CUDA backend (numba.cuda)
# ============================================================================ #


class CudaBackend(Backend):
    """
    One GPU thread per (branch pair, site).  The posterior buffer, offsets
    and pair table are copied to the device for each call; results are
    copied back after synchronisation.
    """

    name = "cuda"

    def __init__(self, device_id: int = 0) -> None:
        self.device_id = device_id
        self._first_call = True
        self._active = False

    def probe(self) -> bool:
        _, cuda_available = check_cuda_available()
        return cuda_available

    def init(self) -> DeviceInfo:
        try:
            from numba import cuda

            cuda.select_device(self.device_id)
            device = cuda.get_current_device()
            name = device.name
            if isinstance(name, bytes):
                name = name.decode()
            _, total = cuda.current_context().get_memory_info()
        except Exception as err:
            raise AcceleratorInitError(
                f"Could not initialise CUDA device {self.device_id}: {err}", self.name
            ) from err
        self._active = True
        return DeviceInfo(str(name), int(total))

    def compute(self, posterior, pair_table):
        from numba import cuda

        from grandconv._cuda_kernels import MAX_STATES, _compute_cuda_grid, _convergence_cuda

        if posterior.n_states > MAX_STATES:
            raise AcceleratorComputeError(
                f"CUDA kernel supports at most {MAX_STATES} states, "
                f"got {posterior.n_states}.",
                self.name,
            )

        n_pairs = pair_table.shape[0]
        n_sites = posterior.n_sites
        convergent = np.zeros((n_pairs, n_sites), dtype=np.float64)
        divergent = np.zeros((n_pairs, n_sites), dtype=np.float64)

        if self._first_call:
            logger.info("  Compiling cuda convergence kernel (cached for future calls)")
            self._first_call = False

        log_transfer(
            "H→D",
            [
                ("posterior", posterior.buffer),
                ("offsets", posterior.offsets),
                ("node_pairs", pair_table),
                ("convergent_out (zeros)", convergent),
                ("divergent_out (zeros)", divergent),
            ],
        )
        d_posterior = cuda.to_device(posterior.buffer)
        d_offsets = cuda.to_device(posterior.offsets)
        d_pairs = cuda.to_device(pair_table)
        d_convergent = cuda.to_device(convergent)
        d_divergent = cuda.to_device(divergent)

        blocks_per_grid, threads_per_block = _compute_cuda_grid(n_pairs, n_sites)
        log_kernel_launch(blocks_per_grid, threads_per_block, n_pairs * n_sites)

        _convergence_cuda[blocks_per_grid, threads_per_block](
            d_posterior,
            d_offsets,
            d_pairs,
            n_pairs,
            n_sites,
            posterior.n_states,
            d_convergent,
            d_divergent,
        )
        cuda.synchronize()

        convergent = d_convergent.copy_to_host()
        divergent = d_divergent.copy_to_host()
        log_transfer(
            "D→H",
            [("convergent_out", convergent), ("divergent_out", divergent)],
        )
        return convergent, divergent

    def cleanup(self) -> None:
        if not self._active:
            return
        from numba import cuda

        self._active = False
        cuda.close()


# ============================================================================ #
# Registry
# ============================================================================ #

# (priority, backend); kept sorted, highest priority first.  Ties keep
# registration order.
_registry: List[Tuple[int, Backend]] = []


def register_backend(backend: Backend, priority: Optional[int] = None) -> None:
    """
    Add *backend* to the registry, replacing any backend of the same name.

    Parameters
    ----------
    backend : Backend
    priority : int, optional
        Higher is preferred.  Defaults to just below the lowest registered
        priority, i.e. last in preference order.
    """
    if not backend.name:
        raise ValueError("Backend must define a non-empty name.")
    if backend.name == "best":
        raise ValueError("'best' is reserved for automatic selection.")

    unregister_backend(backend.name)
    if priority is None:
        priority = (min(p for p, _ in _registry) - 1) if _registry else 0

    position = len(_registry)
    for k, (p, _) in enumerate(_registry):
        if priority > p:
            position = k
            break
    _registry.insert(position, (int(priority), backend))


def unregister_backend(name: str) -> Optional[Backend]:
    """Remove and return the backend called *name*, or None."""
    for k, (_, b) in enumerate(_registry):
        if b.name == name:
            del _registry[k]
            return b
    return None


def registered_backends() -> List[Backend]:
    """All registered backends in preference order, available or not."""
    return [b for _, b in _registry]


def get_backend(name: str) -> Backend:
    """
    Return the registered backend called *name*.

    Raises
    ------
    ValueError
        If no backend of that name is registered.
    """
    for _, b in _registry:
        if b.name == name:
            return b
    known = ", ".join(b.name for _, b in _registry) or "none"
    raise ValueError(f"Unknown backend '{name}'. Registered backends: {known}")


def _probe_one(backend: Backend) -> bool:
    try:
        return bool(backend.probe())
    except Exception as err:
        # Absence is an ordinary outcome; a failing probe counts as absent.
        logger.warning(f"Probe of backend {backend.name!r} failed: {err}")
        return False


def available_backends() -> List[Backend]:
    """Registered backends that report availability, best first."""
    return [b for b in registered_backends() if _probe_one(b)]


def first_available() -> Optional[Backend]:
    """The most preferred available backend, or None.  Never raises."""
    for b in registered_backends():
        if _probe_one(b):
            return b
    return None


def get_available_backends() -> List[str]:
    """
    Get list of available execution backends.

    Returns
    -------
    list[str]
        Names in preference order, best first.  May be empty.

    Examples
    --------
    >>> get_available_backends()
    ['cpu-parallel']  # numba installed, no GPU

    >>> get_available_backends()
    ['cuda', 'cpu-parallel']  # Full stack
    """
    return [b.name for b in available_backends()]


def get_best_backend() -> Optional[str]:
    """
    Name of the most optimized available backend, or None when nothing
    is available.
    """
    best = first_available()
    return best.name if best is not None else None


def resolve_backend(backend: str = "best") -> Backend:
    """
    Resolve a backend name to a registered, available backend.

    A ``use_backend`` override takes the place of ``'best'``.

    Parameters
    ----------
    backend : str
        ``'best'`` or a registered backend name.

    Returns
    -------
    Backend

    Raises
    ------
    NoBackendAvailableError
        If ``'best'`` is requested and no backend is available.
    ValueError
        If the named backend is unknown or unavailable.
    """
    if backend == "best":
        from grandconv._context import get_backend_override

        override = get_backend_override()
        if override is not None:
            backend = override

    if backend == "best":
        best = first_available()
        if best is None:
            raise NoBackendAvailableError("No accelerator backend available.")
        return best

    chosen = get_backend(backend)
    if not _probe_one(chosen):
        available = get_available_backends()
        raise ValueError(
            f"Backend '{backend}' not available. "
            f"Available backends: {', '.join(available) or 'none'}"
        )
    return chosen


# ============================================================================ #
# Module-Level State Query (Read-Only)
# ============================================================================ #


def get_backend_info() -> dict:
    """
    Get comprehensive backend information.

    Returns
    -------
    dict
        Keys ``numba_available``, ``cuda_available``, ``registered``,
        ``backends`` (available, best first) and ``best_backend`` (or None).

    Examples
    --------
    >>> info = get_backend_info()
    >>> info['backends']
    ['cuda', 'cpu-parallel']
    """
    numba_available = check_numba_available()
    _, cuda_available = check_cuda_available()
    backends = get_available_backends()

    return {
        "numba_available": numba_available,
        "cuda_available": cuda_available,
        "registered": [b.name for b in registered_backends()],
        "backends": backends,
        "best_backend": backends[0] if backends else None,
    }


register_backend(CudaBackend(), priority=200)
register_backend(CpuParallelBackend(), priority=100)
