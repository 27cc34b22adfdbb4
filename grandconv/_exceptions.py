"""
_exceptions.py
==============
Exception hierarchy for grandconv.

Every error raised deliberately by the package derives from
``GrandConvError``.  Input-validation errors additionally derive from
``ValueError`` and accelerator failures from ``RuntimeError`` so that callers
catching the builtin categories keep working.

  GrandConvError
  ├── StructuralError          malformed tree topology / NEWICK   (fatal)
  ├── DegenerateInputError     regression input with no usable slopes
  ├── PosteriorBufferError     offset table / buffer invariant violated
  └── AcceleratorError
      ├── AcceleratorInitError     backend unreachable or out of resources
      ├── AcceleratorComputeError  kernel-reported failure (not retried)
      └── NoBackendAvailableError  computation requested on the None backend
"""


class GrandConvError(Exception):
    """Base class for all grandconv errors."""


class StructuralError(GrandConvError, ValueError):
    """The tree topology violates a structural invariant."""


class DegenerateInputError(GrandConvError, ValueError):
    """Regression input cannot produce a defined trend line."""


class PosteriorBufferError(GrandConvError, ValueError):
    """A posterior buffer or its offset table is malformed."""


class AcceleratorError(GrandConvError, RuntimeError):
    """Base class for accelerator lifecycle and computation failures."""

    def __init__(self, message: str, backend: str = None) -> None:
        super().__init__(message)
        self.backend = backend


class AcceleratorInitError(AcceleratorError):
    """The backend context could not be acquired."""


class AcceleratorComputeError(AcceleratorError):
    """The backend failed while computing; no partial result exists."""


class NoBackendAvailableError(AcceleratorError):
    """No accelerator backend is available for the requested computation."""
