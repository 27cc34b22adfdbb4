"""
grandconv
=========

Convergent and divergent molecular evolution between the branches of a
phylogenetic tree.

For every pair of branches the posterior substitution probabilities of the
two branches are combined into a convergent score (both branches change into
the same state) and a divergent score (they change into different states).
The scoring kernel runs on an accelerator backend; a robust median-of-slopes
trend line is then fitted through the (divergent, convergent) cloud.

Main Classes
------------
Tree : Rooted tree addressed by node index, with NEWICK parsing
PosteriorBuffer : Flat per-node posterior blocks plus offset table
ConvergenceAnalysis : Tree + posterior -> scores -> trend line -> document

Accelerator
-----------
probe, init, compute_convergence, cleanup : process-wide lifecycle
accelerator : scoped session with fallback and guaranteed cleanup
register_backend : add a backend to the selection registry

Context Managers
----------------
quiet : Suppress logging during operations
suppress_logger : Suppress specific logger
suppress_warnings : Suppress specific warnings
use_backend : Force specific computational backend
silent_benchmark : Combine quiet + backend selection + warning suppression

Examples
--------
>>> from grandconv import Tree, PosteriorBuffer, run_analysis
>>> tree = Tree.from_newick('((A:1,B:1):1,(C:1,D:1):1);')
>>> posterior = PosteriorBuffer.from_blocks(blocks, n_sites=100, n_states=20)
>>> result = run_analysis(tree, posterior, selected=[('A', 'C')])
>>> document = result.to_document()

>>> from grandconv import accelerator
>>> with accelerator('cpu-parallel') as session:
...     scores = session.compute(posterior, [(0, 2), (1, 3, True)])
"""

__version__ = "0.1.0"

# Main classes
from ._tree import Tree
from ._data import (
    BranchPair,
    PosteriorBuffer,
    ConvergenceResult,
    RegressionResult,
)
from ._analysis import (
    AnalysisResult,
    ConvergenceAnalysis,
    all_branch_pairs,
    run_analysis,
)

# Core algorithms
from ._regression import robust_regression
from ._serializer import tree_to_document, tree_to_json, format_tree

# Accelerator lifecycle
from ._accelerator import (
    AcceleratorContext,
    AcceleratorSession,
    AcceleratorState,
    NONE_DEVICE,
    accelerator,
    cleanup,
    compute_convergence,
    get_accelerator,
    init,
    probe,
)

# Context managers (user-facing utilities)
from ._context import (
    suppress_logger,
    quiet,
    suppress_warnings,
    use_backend,
    silent_benchmark,
)

# Utilities
from ._utils import (
    format_newick,
    branch_pair_id,
    branch_pair_label,
    branch_pair_name,
)

# Backend information and registry
from ._backend import (
    Backend,
    CpuParallelBackend,
    CudaBackend,
    DeviceInfo,
    check_cuda_available,
    check_numba_available,
    get_available_backends,
    get_backend,
    get_backend_info,
    register_backend,
    registered_backends,
    unregister_backend,
)

# Errors
from ._exceptions import (
    GrandConvError,
    StructuralError,
    DegenerateInputError,
    PosteriorBufferError,
    AcceleratorError,
    AcceleratorInitError,
    AcceleratorComputeError,
    NoBackendAvailableError,
)

# Public API
__all__ = [
    # Main classes
    "Tree",
    "BranchPair",
    "PosteriorBuffer",
    "ConvergenceResult",
    "RegressionResult",
    "AnalysisResult",
    "ConvergenceAnalysis",
    "all_branch_pairs",
    "run_analysis",
    # Core algorithms
    "robust_regression",
    "tree_to_document",
    "tree_to_json",
    "format_tree",
    # Accelerator lifecycle
    "AcceleratorContext",
    "AcceleratorSession",
    "AcceleratorState",
    "NONE_DEVICE",
    "accelerator",
    "cleanup",
    "compute_convergence",
    "get_accelerator",
    "init",
    "probe",
    # Context managers
    "suppress_logger",
    "quiet",
    "suppress_warnings",
    "use_backend",
    "silent_benchmark",
    # Utilities
    "format_newick",
    "branch_pair_id",
    "branch_pair_label",
    "branch_pair_name",
    # Backends
    "Backend",
    "CpuParallelBackend",
    "CudaBackend",
    "DeviceInfo",
    "check_cuda_available",
    "check_numba_available",
    "get_available_backends",
    "get_backend",
    "get_backend_info",
    "register_backend",
    "registered_backends",
    "unregister_backend",
    # Errors
    "GrandConvError",
    "StructuralError",
    "DegenerateInputError",
    "PosteriorBufferError",
    "AcceleratorError",
    "AcceleratorInitError",
    "AcceleratorComputeError",
    "NoBackendAvailableError",
    # Version info
    "__version__",
]
