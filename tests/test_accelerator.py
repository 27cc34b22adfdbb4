"""
tests/test_accelerator.py
=========================
Accelerator lifecycle: probe / init / compute_convergence / cleanup, the
None backend, the scoped session and fallback.

Every test builds its own AcceleratorContext and runs against fake backends
in an isolated registry, so no GPU is needed and the process-wide context is
left alone.
"""

import logging
import os
import sys
import threading

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from grandconv._accelerator import (
    NONE_DEVICE,
    AcceleratorContext,
    AcceleratorState,
    accelerator,
)
from grandconv._backend import CpuParallelBackend
from grandconv._context import use_backend
from grandconv._data import BranchPair, ConvergenceResult, PosteriorBuffer
from grandconv._exceptions import (
    AcceleratorComputeError,
    AcceleratorInitError,
    NoBackendAvailableError,
    PosteriorBufferError,
)

from posterior_helpers import ReferenceBackend, isolated_registry, random_blocks
from reference_kernel import reference_site_scores


@pytest.fixture
def posterior():
    blocks = random_blocks(n_nodes=5, root=4, n_sites=3, n_states=4, seed=5)
    return PosteriorBuffer.from_blocks(blocks, n_sites=3, n_states=4)


@pytest.fixture
def pairs():
    return [BranchPair(0, 1), BranchPair(2, 3, True), BranchPair(1, 3), BranchPair(0, 2, True)]


@pytest.fixture
def ctx():
    return AcceleratorContext()


# ======================================================================== #
# probe                                                                     #
# ======================================================================== #


class TestProbe:
    def test_returns_first_available(self, ctx):
        on = ReferenceBackend("on")
        with isolated_registry(ReferenceBackend("off", available=False), on):
            assert ctx.probe() is on
        assert ctx.state is AcceleratorState.PROBED

    def test_absence_is_not_an_error(self, ctx):
        with isolated_registry(ReferenceBackend("off", available=False)):
            assert ctx.probe() is None
        assert ctx.state is AcceleratorState.PROBED

    def test_probe_does_not_initialise(self, ctx):
        on = ReferenceBackend("on")
        with isolated_registry(on):
            ctx.probe()
        assert on.init_calls == 0
        assert ctx.active is None


# ======================================================================== #
# init                                                                      #
# ======================================================================== #


class TestInit:
    def test_returns_device(self, ctx):
        b = ReferenceBackend("b")
        info = ctx.init(b)
        assert info.name == "b device"
        assert info.total_memory == 1 << 30
        assert ctx.state is AcceleratorState.INITIALIZED
        assert ctx.active is b

    def test_by_name(self, ctx):
        b = ReferenceBackend("b")
        with isolated_registry(b):
            ctx.init("b")
        assert ctx.active is b

    def test_reinit_same_backend_is_cached(self, ctx):
        b = ReferenceBackend("b")
        first = ctx.init(b)
        second = ctx.init(b)
        assert first == second
        assert b.init_calls == 1

    def test_switching_backend_cleans_up_previous(self, ctx, caplog):
        a = ReferenceBackend("a")
        b = ReferenceBackend("b")
        ctx.init(a)
        with caplog.at_level(logging.WARNING, logger="grandconv"):
            ctx.init(b)
        assert a.cleanup_calls == 1
        assert ctx.active is b
        assert any("cleaning up 'a'" in r.getMessage() for r in caplog.records)

    def test_init_error_propagates(self, ctx):
        b = ReferenceBackend("b", fail_init=True)
        with pytest.raises(AcceleratorInitError, match="simulated device loss"):
            ctx.init(b)
        assert ctx.active is None

    def test_foreign_exception_wrapped(self, ctx):
        cause = MemoryError("device out of memory")
        b = ReferenceBackend("b", init_exception=cause)
        with pytest.raises(AcceleratorInitError) as excinfo:
            ctx.init(b)
        assert excinfo.value.__cause__ is cause
        assert excinfo.value.backend == "b"

    def test_none_is_neutral(self, ctx):
        assert ctx.init(None) == NONE_DEVICE
        assert NONE_DEVICE.name == "None"
        assert NONE_DEVICE.total_memory == 0
        assert ctx.active is None

    def test_unknown_name(self, ctx):
        with isolated_registry():
            with pytest.raises(ValueError):
                ctx.init("nope")


# ======================================================================== #
# compute_convergence                                                        #
# ======================================================================== #


class TestCompute:
    def test_matches_reference(self, ctx, posterior, pairs):
        b = ReferenceBackend("b")
        ctx.init(b)
        result = ctx.compute_convergence(b, posterior, pairs)
        ref_conv, ref_div = reference_site_scores(posterior, pairs)
        assert isinstance(result, ConvergenceResult)
        assert result.pairs == tuple(pairs)
        np.testing.assert_allclose(result.convergent, ref_conv.sum(axis=1))
        np.testing.assert_allclose(result.divergent, ref_div.sum(axis=1))

    def test_breakdown_only_for_selected(self, ctx, posterior, pairs):
        b = ReferenceBackend("b")
        ctx.init(b)
        result = ctx.compute_convergence(b, posterior, pairs)
        assert result.selected_indices == [1, 3]
        assert result.site_breakdown[1].shape == (3, 2)
        ref_conv, ref_div = reference_site_scores(posterior, pairs)
        np.testing.assert_allclose(result.site_breakdown[3][:, 0], ref_conv[3])
        np.testing.assert_allclose(result.site_breakdown[3][:, 1], ref_div[3])

    def test_tuples_accepted(self, ctx, posterior):
        b = ReferenceBackend("b")
        ctx.init(b)
        result = ctx.compute_convergence(b, posterior, [(0, 1), (2, 3, True)])
        assert result.pairs == (BranchPair(0, 1, False), BranchPair(2, 3, True))

    def test_none_backend_fails_before_touching_arguments(self, ctx):
        with pytest.raises(NoBackendAvailableError):
            ctx.compute_convergence(None, None, None)

    def test_uninitialised_backend(self, ctx, posterior, pairs):
        b = ReferenceBackend("b")
        with pytest.raises(AcceleratorComputeError, match="not initialised"):
            ctx.compute_convergence(b, posterior, pairs)
        assert b.compute_calls == 0

    def test_other_backend_than_active(self, ctx, posterior, pairs):
        a = ReferenceBackend("a")
        b = ReferenceBackend("b")
        ctx.init(a)
        with pytest.raises(AcceleratorComputeError):
            ctx.compute_convergence(b, posterior, pairs)
        assert a.compute_calls == 0 and b.compute_calls == 0

    def test_kernel_failure_wrapped(self, ctx, posterior, pairs):
        b = ReferenceBackend("b", fail_compute=True)
        ctx.init(b)
        with pytest.raises(AcceleratorComputeError) as excinfo:
            ctx.compute_convergence(b, posterior, pairs)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert ctx.state is AcceleratorState.INITIALIZED

    def test_no_partial_result_on_bad_shape(self, ctx, posterior, pairs):
        b = ReferenceBackend("b", bad_shape=True)
        ctx.init(b)
        with pytest.raises(AcceleratorComputeError, match="expected"):
            ctx.compute_convergence(b, posterior, pairs)

    def test_pair_without_block_rejected_before_kernel(self, ctx, posterior):
        b = ReferenceBackend("b")
        ctx.init(b)
        with pytest.raises(PosteriorBufferError):
            ctx.compute_convergence(b, posterior, [BranchPair(0, 4)])
        assert b.compute_calls == 0

    def test_pair_out_of_range_rejected(self, ctx, posterior):
        b = ReferenceBackend("b")
        ctx.init(b)
        with pytest.raises(PosteriorBufferError):
            ctx.compute_convergence(b, posterior, [BranchPair(0, 9)])

    def test_posterior_type_checked(self, ctx):
        b = ReferenceBackend("b")
        ctx.init(b)
        with pytest.raises(TypeError):
            ctx.compute_convergence(b, np.zeros(10), [(0, 1)])

    def test_empty_pairs(self, ctx, posterior):
        b = ReferenceBackend("b")
        ctx.init(b)
        result = ctx.compute_convergence(b, posterior, [])
        assert len(result) == 0
        assert b.compute_calls == 0

    def test_concurrent_callers_serialised(self, ctx, posterior, pairs):
        b = ReferenceBackend("b")
        ctx.init(b)
        results = []
        errors = []

        def worker():
            try:
                results.append(ctx.compute_convergence(b, posterior, pairs))
            except Exception as err:  # reported below
                errors.append(err)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(results) == 8
        for r in results[1:]:
            np.testing.assert_array_equal(r.convergent, results[0].convergent)

    def test_cpu_parallel_backend(self, ctx, posterior, pairs):
        b = CpuParallelBackend()
        ctx.init(b)
        try:
            result = ctx.compute_convergence(b, posterior, pairs)
        finally:
            ctx.cleanup(b)
        ref_conv, ref_div = reference_site_scores(posterior, pairs)
        np.testing.assert_allclose(result.convergent, ref_conv.sum(axis=1), rtol=1e-12)
        np.testing.assert_allclose(result.divergent, ref_div.sum(axis=1), rtol=1e-12)


# ======================================================================== #
# cleanup                                                                   #
# ======================================================================== #


class TestCleanup:
    def test_releases_backend(self, ctx):
        b = ReferenceBackend("b")
        ctx.init(b)
        ctx.cleanup(b)
        assert b.cleanup_calls == 1
        assert ctx.active is None
        assert ctx.device == NONE_DEVICE
        assert ctx.state is AcceleratorState.CLEANED

    def test_twice_is_noop(self, ctx):
        b = ReferenceBackend("b")
        ctx.init(b)
        ctx.cleanup(b)
        ctx.cleanup(b)
        assert b.cleanup_calls == 1

    def test_without_init_is_noop(self, ctx):
        b = ReferenceBackend("b")
        ctx.cleanup(b)
        assert b.cleanup_calls == 0
        assert ctx.state is AcceleratorState.UNPROBED

    def test_none_is_noop(self, ctx):
        b = ReferenceBackend("b")
        ctx.init(b)
        ctx.cleanup(None)
        assert ctx.active is b

    def test_compute_after_cleanup_fails(self, ctx, posterior, pairs):
        b = ReferenceBackend("b")
        ctx.init(b)
        ctx.cleanup(b)
        with pytest.raises(AcceleratorComputeError):
            ctx.compute_convergence(b, posterior, pairs)

    def test_reinit_after_cleanup(self, ctx):
        b = ReferenceBackend("b")
        ctx.init(b)
        ctx.cleanup(b)
        ctx.init(b)
        assert b.init_calls == 2
        assert ctx.state is AcceleratorState.INITIALIZED


# ======================================================================== #
# Scoped session                                                            #
# ======================================================================== #


class TestAcceleratorSession:
    def test_best_backend_used_and_released(self, ctx, posterior, pairs):
        a = ReferenceBackend("a")
        with isolated_registry(a):
            with accelerator(context=ctx) as session:
                assert session.backend is a
                assert session.backend_name == "a"
                result = session.compute(posterior, pairs)
        assert len(result) == len(pairs)
        assert a.cleanup_calls == 1
        assert ctx.active is None

    def test_falls_back_on_init_error(self, ctx, caplog):
        broken = ReferenceBackend("broken", fail_init=True)
        good = ReferenceBackend("good")
        with isolated_registry(broken, good):
            with caplog.at_level(logging.WARNING, logger="grandconv"):
                with accelerator(context=ctx) as session:
                    assert session.backend is good
        assert any("falling back to good" in r.getMessage() for r in caplog.records)

    def test_all_fail_yields_none_session(self, ctx, posterior, pairs):
        broken = ReferenceBackend("broken", fail_init=True)
        with isolated_registry(broken):
            with accelerator(context=ctx) as session:
                assert session.backend is None
                assert session.backend_name == "None"
                assert session.device == NONE_DEVICE
                with pytest.raises(NoBackendAvailableError):
                    session.compute(posterior, pairs)

    def test_nothing_available_yields_none_session(self, ctx):
        with isolated_registry(ReferenceBackend("off", available=False)):
            with accelerator(context=ctx) as session:
                assert session.backend is None

    def test_no_fallback_raises(self, ctx):
        broken = ReferenceBackend("broken", fail_init=True)
        good = ReferenceBackend("good")
        with isolated_registry(broken, good):
            with pytest.raises(AcceleratorInitError):
                with accelerator(context=ctx, fallback=False):
                    pass
        assert good.init_calls == 0

    def test_named_backend_preferred(self, ctx):
        a = ReferenceBackend("a")
        b = ReferenceBackend("b")
        with isolated_registry(a, b):
            with accelerator("b", context=ctx) as session:
                assert session.backend is b

    def test_unavailable_name_without_fallback(self, ctx):
        with isolated_registry(ReferenceBackend("a"), ReferenceBackend("off", available=False)):
            with pytest.raises(ValueError):
                with accelerator("off", fallback=False, context=ctx):
                    pass

    def test_unavailable_name_falls_back(self, ctx):
        a = ReferenceBackend("a")
        with isolated_registry(a, ReferenceBackend("off", available=False)):
            with accelerator("off", context=ctx) as session:
                assert session.backend is a

    def test_explicit_none(self, ctx):
        a = ReferenceBackend("a")
        with isolated_registry(a):
            with accelerator(None, context=ctx) as session:
                assert session.backend is None
        assert a.init_calls == 0

    def test_use_backend_override(self, ctx):
        a = ReferenceBackend("a")
        b = ReferenceBackend("b")
        with isolated_registry(a, b):
            with use_backend("b"):
                with accelerator(context=ctx) as session:
                    assert session.backend is b

    def test_cleanup_on_exception(self, ctx):
        a = ReferenceBackend("a")
        with isolated_registry(a):
            with pytest.raises(KeyError):
                with accelerator(context=ctx):
                    raise KeyError("boom")
        assert a.cleanup_calls == 1
        assert ctx.active is None


class TestNestedSessions:
    def test_inner_session_leaves_outer_backend_active(self, ctx, posterior, pairs):
        b = ReferenceBackend("b")
        with isolated_registry(b):
            with accelerator("b", context=ctx) as outer:
                with accelerator("b", context=ctx) as inner:
                    inner.compute(posterior, pairs)
                assert ctx.active is b
                result = outer.compute(posterior, pairs)
            assert len(result) == len(pairs)
        assert b.init_calls == 1
        assert b.cleanup_calls == 1
        assert ctx.active is None

    def test_best_reuses_enclosing_backend(self, ctx, posterior, pairs):
        a = ReferenceBackend("a")
        b = ReferenceBackend("b")
        with isolated_registry(a, b):
            with accelerator("b", context=ctx) as outer:
                with accelerator(context=ctx) as inner:
                    assert inner.backend is b
                outer.compute(posterior, pairs)
        assert a.init_calls == 0
        assert b.cleanup_calls == 1

    def test_analysis_inside_session(self, ctx):
        from grandconv._analysis import ConvergenceAnalysis
        from grandconv._tree import Tree

        tree = Tree([2, 2, 4, 4, -1], [1.0] * 5)
        # proportional blocks: every (divergent, convergent) point lies on y = x / 3
        blocks = [np.ones((2, 4, 4)) * s for s in (1.0, 2.0, 3.0, 5.0)] + [None]
        posterior = PosteriorBuffer.from_blocks(blocks, n_sites=2, n_states=4)
        b = ReferenceBackend("b")
        with isolated_registry(b):
            with accelerator("b", context=ctx) as session:
                result = ConvergenceAnalysis(tree, posterior).run(context=ctx)
                session.compute(posterior, [(0, 1)])
        assert result.backend == "b"
        assert result.regression.slope == pytest.approx(1.0 / 3.0)
        assert b.init_calls == 1
        assert b.cleanup_calls == 1
