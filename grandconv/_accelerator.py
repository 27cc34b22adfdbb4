"""
_accelerator.py
===============
Process-wide accelerator context.

Lifecycle::

    UNPROBED -> PROBED -> INITIALIZED -> (COMPUTING -> INITIALIZED)* -> CLEANED

At most one backend is initialised at a time.  Every public method takes
the context lock, so concurrent callers are serialised; a compute call is
blocking and returns either a complete ConvergenceResult or raises.

The ``None`` backend stands for "nothing available": ``init(None)`` and
``cleanup(None)`` are no-ops returning / leaving the neutral descriptor,
and ``compute_convergence(None, ...)`` raises NoBackendAvailableError before
looking at its arguments.

Most callers want the scoped form::

    with accelerator() as session:
        result = session.compute(posterior, pairs)

which initialises the best available backend (falling back down the
preference list on AcceleratorInitError) and always cleans up on exit.
"""

import enum
import logging
import threading
from contextlib import contextmanager
from typing import Iterable, List, Optional, Union

import numpy as np

from grandconv._backend import (
    Backend,
    DeviceInfo,
    available_backends,
    check_numba_available,
    first_available,
    get_available_backends,
    get_backend,
    resolve_backend,
)
from grandconv._context import get_backend_override
from grandconv._data import (
    ConvergenceResult,
    PosteriorBuffer,
    as_branch_pairs,
    pack_branch_pairs,
)
from grandconv._exceptions import (
    AcceleratorComputeError,
    AcceleratorError,
    AcceleratorInitError,
    NoBackendAvailableError,
)
from grandconv._logging import (
    install_numba_warning_filter,
    log_backend_availability,
    log_convergence_request,
    log_device,
    log_system_status,
)

logger = logging.getLogger(__name__)

BackendSpec = Union[Backend, str, None]

NONE_DEVICE = DeviceInfo("None", 0)


class AcceleratorState(enum.Enum):
    UNPROBED = "unprobed"
    PROBED = "probed"
    INITIALIZED = "initialized"
    COMPUTING = "computing"
    CLEANED = "cleaned"


def _as_backend(backend: BackendSpec) -> Optional[Backend]:
    if backend is None or isinstance(backend, Backend):
        return backend
    return get_backend(backend)


class AcceleratorContext:
    """
    Holds the active backend and its device descriptor.

    A module-level instance backs the functional API (``probe``, ``init``,
    ``compute_convergence``, ``cleanup``); separate instances are useful in
    tests.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.state = AcceleratorState.UNPROBED
        self.active: Optional[Backend] = None
        self.device: DeviceInfo = NONE_DEVICE

    def probe(self) -> Optional[Backend]:
        """
        Return the most preferred available backend, or None.

        Absence is not an error; this method does not raise for it.
        """
        with self._lock:
            found = first_available()
            if self.state in (AcceleratorState.UNPROBED, AcceleratorState.CLEANED):
                self.state = AcceleratorState.PROBED
            logger.debug(
                "probe() -> %s", found.name if found is not None else "None"
            )
            return found

    def init(self, backend: BackendSpec) -> DeviceInfo:
        """
        Acquire *backend*'s context and return its device descriptor.

        Re-initialising the active backend returns the cached descriptor.
        Initialising a different backend cleans up the active one first.

        Raises
        ------
        AcceleratorInitError
            If the backend cannot be brought up.
        """
        backend = _as_backend(backend)
        if backend is None:
            return NONE_DEVICE

        with self._lock:
            if self.active is backend:
                return self.device
            if self.active is not None:
                logger.warning(
                    f"Initialising backend {backend.name!r} while {self.active.name!r} "
                    f"is active; cleaning up {self.active.name!r} first"
                )
                self._release()

            try:
                device = backend.init()
            except AcceleratorInitError:
                raise
            except Exception as err:
                raise AcceleratorInitError(
                    f"Backend {backend.name!r} failed to initialise: {err}", backend.name
                ) from err

            self.active = backend
            self.device = device
            self.state = AcceleratorState.INITIALIZED
            log_device(backend.name, device.name, device.total_memory)
            return device

    def compute_convergence(
        self,
        backend: BackendSpec,
        posterior: PosteriorBuffer,
        branch_pairs: Iterable,
    ) -> ConvergenceResult:
        """
        Score every branch pair on *backend*.

        Parameters
        ----------
        backend : Backend, str or None
            Must be the initialised backend.
        posterior : PosteriorBuffer
            Validated buffer and offset table.
        branch_pairs : iterable
            BranchPair objects or ``(i, j[, selected])`` tuples.

        Returns
        -------
        ConvergenceResult
            One entry per pair in input order; per-site breakdown for the
            selected pairs.

        Raises
        ------
        NoBackendAvailableError
            If *backend* is None.
        AcceleratorComputeError
            If *backend* is not initialised, the kernel fails, or the kernel
            output has the wrong shape.
        PosteriorBufferError
            If a pair references a node without a full block.
        """
        if backend is None:
            raise NoBackendAvailableError(
                "No accelerator backend available; convergence cannot be computed."
            )
        backend = _as_backend(backend)

        with self._lock:
            if self.active is not backend:
                raise AcceleratorComputeError(
                    f"Backend {backend.name!r} is not initialised; call init() first.",
                    backend.name,
                )
            if not isinstance(posterior, PosteriorBuffer):
                raise TypeError(
                    f"posterior must be a PosteriorBuffer, got {type(posterior).__name__}"
                )

            pairs = as_branch_pairs(branch_pairs)
            posterior.check_pairs(pairs)
            n_pairs = len(pairs)
            log_convergence_request(
                backend.name,
                n_pairs,
                sum(1 for p in pairs if p.selected),
                posterior.n_sites,
                posterior.n_states,
            )

            if n_pairs == 0:
                empty = np.zeros(0, dtype=np.float64)
                return ConvergenceResult((), empty, empty, {}, n_sites=posterior.n_sites)

            table = pack_branch_pairs(pairs)
            self.state = AcceleratorState.COMPUTING
            try:
                convergent, divergent = backend.compute(posterior, table)
            except AcceleratorError:
                raise
            except Exception as err:
                raise AcceleratorComputeError(
                    f"Backend {backend.name!r} failed during computation: {err}",
                    backend.name,
                ) from err
            finally:
                self.state = AcceleratorState.INITIALIZED

            expected = (n_pairs, posterior.n_sites)
            convergent = np.asarray(convergent, dtype=np.float64)
            divergent = np.asarray(divergent, dtype=np.float64)
            if convergent.shape != expected or divergent.shape != expected:
                raise AcceleratorComputeError(
                    f"Backend {backend.name!r} returned arrays of shape "
                    f"{convergent.shape} and {divergent.shape}, expected {expected}.",
                    backend.name,
                )
            return ConvergenceResult.from_site_scores(pairs, convergent, divergent)

    def cleanup(self, backend: BackendSpec) -> None:
        """
        Release *backend*'s context.

        A no-op for None, for a backend that is not the active one, and on
        repeated calls.
        """
        backend = _as_backend(backend)
        if backend is None:
            return
        with self._lock:
            if self.active is not backend:
                return
            self._release()

    def _release(self) -> None:
        backend = self.active
        try:
            backend.cleanup()
        finally:
            self.active = None
            self.device = NONE_DEVICE
            self.state = AcceleratorState.CLEANED
            logger.info(f"Released {backend.name} backend")

    def __repr__(self) -> str:
        name = self.active.name if self.active is not None else None
        return f"AcceleratorContext(state={self.state.value}, active={name!r})"


# ============================================================================ #
# Module-level context and functional API
# ============================================================================ #

_ACCELERATOR = AcceleratorContext()


def get_accelerator() -> AcceleratorContext:
    """The process-wide accelerator context."""
    return _ACCELERATOR


def probe() -> Optional[Backend]:
    return _ACCELERATOR.probe()


def init(backend: BackendSpec) -> DeviceInfo:
    return _ACCELERATOR.init(backend)


def compute_convergence(
    backend: BackendSpec, posterior: PosteriorBuffer, branch_pairs: Iterable
) -> ConvergenceResult:
    return _ACCELERATOR.compute_convergence(backend, posterior, branch_pairs)


def cleanup(backend: BackendSpec) -> None:
    _ACCELERATOR.cleanup(backend)


# ============================================================================ #
# Scoped session
# ============================================================================ #


class AcceleratorSession:
    """Handle yielded by ``accelerator()``; bound to one backend."""

    def __init__(self, context: AcceleratorContext, backend: Optional[Backend], device: DeviceInfo):
        self.context = context
        self.backend = backend
        self.device = device

    @property
    def backend_name(self) -> str:
        return self.backend.name if self.backend is not None else "None"

    def compute(self, posterior: PosteriorBuffer, branch_pairs: Iterable) -> ConvergenceResult:
        return self.context.compute_convergence(self.backend, posterior, branch_pairs)

    def __repr__(self) -> str:
        return f"AcceleratorSession(backend={self.backend_name!r}, device={self.device.name!r})"


def _candidates(backend: BackendSpec, fallback: bool) -> List[Backend]:
    if isinstance(backend, Backend):
        chosen = [backend]
    else:
        if backend == "best":
            override = get_backend_override()
            if override is None or override == "best":
                return available_backends()
            backend = override
        try:
            chosen = [resolve_backend(backend)]
        except ValueError as e:
            if not fallback:
                raise
            # Backend not available, fall back to best available
            logger.warning(str(e))
            chosen = []

    if fallback:
        chosen += [b for b in available_backends() if b not in chosen]
    return chosen


@contextmanager
def accelerator(
    backend: BackendSpec = "best",
    fallback: bool = True,
    context: Optional[AcceleratorContext] = None,
):
    """
    Initialise a backend for the duration of a ``with`` block.

    Parameters
    ----------
    backend : str, Backend or None, default 'best'
        ``'best'`` tries available backends in preference order.  A name or
        Backend is tried first.  None yields a session on the None backend.
    fallback : bool, default True
        On AcceleratorInitError move on to the next available backend, and
        finally to the None backend.  With False the error propagates.
    context : AcceleratorContext, optional
        Defaults to the process-wide context.

    Notes
    -----
    Sessions nest.  A session that finds its backend already initialised
    reuses it and leaves the cleanup to the scope that initialised it; with
    ``backend='best'`` an already-active backend is preferred.

    Yields
    ------
    AcceleratorSession

    Examples
    --------
    >>> with accelerator() as session:
    ...     result = session.compute(posterior, pairs)
    """
    ctx = context if context is not None else _ACCELERATOR
    chosen: Optional[Backend] = None
    device = NONE_DEVICE
    # A backend already active on entry belongs to an enclosing scope.
    acquired = False

    if backend is not None:
        candidates = _candidates(backend, fallback)
        active = ctx.active
        if (
            backend == "best"
            and get_backend_override() in (None, "best")
            and active is not None
            and active in candidates
        ):
            # Reuse the enclosing session's backend instead of replacing it.
            candidates.remove(active)
            candidates.insert(0, active)
        for k, candidate in enumerate(candidates):
            already_active = ctx.active is candidate
            try:
                device = ctx.init(candidate)
            except AcceleratorInitError as err:
                if not fallback:
                    raise
                nxt = candidates[k + 1].name if k + 1 < len(candidates) else "None"
                logger.warning(f"{err}; falling back to {nxt}")
                continue
            chosen = candidate
            acquired = not already_active
            break

    if chosen is None:
        logger.warning("No accelerator backend initialised; computation is unavailable")

    try:
        yield AcceleratorSession(ctx, chosen, device)
    finally:
        if acquired:
            ctx.cleanup(chosen)


# Log system info and backend availability on module import
_NUMBA_AVAILABLE = check_numba_available()
log_system_status(_NUMBA_AVAILABLE)
log_backend_availability(get_available_backends())
install_numba_warning_filter(_NUMBA_AVAILABLE)
