"""
tests/test_kernel_agreement.py
==============================

Cross-validation between the numpy reference kernels ('python' backend)
and the numba kernels ('cpu-parallel' backend).

Validation layers
-----------------
1. Kernel agreement  (TestKernelAgreement)
   Every kernel is run on the same random arrays with both implementations
   and the outputs must be allclose.  State arrays include ambiguous codes
   (>= state_count and negative) so the all-ones path is covered.

2. Likelihood agreement  (TestLikelihoodAgreement)
   A TreeLikelihood built on each backend must give the same total and
   per-pattern log-likelihoods, before and after an incremental update and
   with rescaling forced on.

3. Backend selection  (TestBackendSelection)
   Unknown backends are rejected and a use_backend() override wins over
   the constructor argument.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from phylocache._backend import get_available_backends, resolve_backend
from phylocache._context import use_backend
from phylocache._kernels import PARALLEL_KERNELS, PYTHON_KERNELS, get_kernels
from phylocache._likelihood import TreeLikelihood
from phylocache._patterns import SitePatterns
from phylocache._sitemodel import SiteModel
from phylocache._substitution import JukesCantor
from phylocache._treemodel import TreeModel

needs_parallel = pytest.mark.skipif(
    "cpu-parallel" not in get_available_backends(),
    reason="numba parallel backend not available",
)

N_CATS, N_PATTERNS, N_STATES = 3, 37, 4


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


def random_matrices(rng):
    m = rng.random((N_CATS, N_STATES, N_STATES))
    return m / m.sum(axis=2, keepdims=True)


# ======================================================================== #
# Kernel agreement                                                          #
# ======================================================================== #


@needs_parallel
class TestKernelAgreement:
    @pytest.mark.parametrize("first", [True, False])
    def test_accumulate_partials(self, rng, first):
        child = rng.random((N_CATS, N_PATTERNS, N_STATES))
        mats = random_matrices(rng)
        start = rng.random((N_CATS, N_PATTERNS, N_STATES))
        acc_np, acc_nb = start.copy(), start.copy()
        PYTHON_KERNELS.accumulate_partials(child, mats, acc_np, first)
        PARALLEL_KERNELS.accumulate_partials(child, mats, acc_nb, first)
        assert np.allclose(acc_np, acc_nb, rtol=1e-12)

    @pytest.mark.parametrize("first", [True, False])
    def test_accumulate_states(self, rng, first):
        states = rng.integers(0, N_STATES + 1, N_PATTERNS).astype(np.int32)
        states[0] = N_STATES
        states[1] = -1
        mats = random_matrices(rng)
        start = rng.random((N_CATS, N_PATTERNS, N_STATES))
        acc_np, acc_nb = start.copy(), start.copy()
        PYTHON_KERNELS.accumulate_states(states, mats, acc_np, first)
        PARALLEL_KERNELS.accumulate_states(states, mats, acc_nb, first)
        assert np.allclose(acc_np, acc_nb, rtol=1e-12)
        # ambiguous codes contribute a factor of one
        expected = np.ones((N_CATS, N_STATES)) if first else start[:, 0, :]
        assert np.allclose(acc_np[:, 0, :], expected)

    def test_states_match_one_hot_partials(self, rng):
        states = rng.integers(0, N_STATES, N_PATTERNS).astype(np.int32)
        one_hot = np.zeros((N_CATS, N_PATTERNS, N_STATES))
        one_hot[:, np.arange(N_PATTERNS), states] = 1.0
        mats = random_matrices(rng)
        a = np.empty((N_CATS, N_PATTERNS, N_STATES))
        b = np.empty((N_CATS, N_PATTERNS, N_STATES))
        PARALLEL_KERNELS.accumulate_states(states, mats, a, True)
        PARALLEL_KERNELS.accumulate_partials(one_hot, mats, b, True)
        assert np.allclose(a, b)

    def test_scale_partials(self, rng):
        partials = rng.random((N_CATS, N_PATTERNS, N_STATES)) * 1e-200
        partials[:, 5, :] = 0.0
        p_np, p_nb = partials.copy(), partials.copy()
        s_np = np.empty(N_PATTERNS)
        s_nb = np.empty(N_PATTERNS)
        PYTHON_KERNELS.scale_partials(p_np, s_np)
        PARALLEL_KERNELS.scale_partials(p_nb, s_nb)
        assert np.allclose(p_np, p_nb)
        assert np.allclose(s_np, s_nb)
        assert s_np[5] == 0.0
        assert np.allclose(p_np.max(axis=(0, 2))[np.arange(N_PATTERNS) != 5], 1.0)

    def test_root_log_likelihoods(self, rng):
        partials = rng.random((N_CATS, N_PATTERNS, N_STATES))
        proportions = np.array([0.2, 0.3, 0.5])
        freqs = np.array([0.1, 0.2, 0.3, 0.4])
        cum_scale = rng.normal(size=N_PATTERNS)
        out_np = np.empty(N_PATTERNS)
        out_nb = np.empty(N_PATTERNS)
        PYTHON_KERNELS.root_log_likelihoods(partials, proportions, freqs, cum_scale, out_np)
        PARALLEL_KERNELS.root_log_likelihoods(partials, proportions, freqs, cum_scale, out_nb)
        assert np.allclose(out_np, out_nb, rtol=1e-12)

        k = 7
        direct = sum(
            proportions[c] * np.dot(freqs, partials[c, k]) for c in range(N_CATS)
        )
        assert out_np[k] == pytest.approx(np.log(direct) + cum_scale[k])


# ======================================================================== #
# Likelihood agreement                                                      #
# ======================================================================== #


NEWICK = "(((A:0.1,B:0.2):0.3,C:0.4):0.2,(D:0.3,E:0.1):0.5);"


def random_patterns(seed, n_sites=60):
    rng = np.random.default_rng(seed)
    seqs = {t: "".join(rng.choice(list("ACGT-"), n_sites)) for t in "ABCDE"}
    return SitePatterns.from_strings(seqs, "ACGT")


def build(backend, force_rescaling=False):
    tm = TreeModel.from_newick(NEWICK)
    site = SiteModel(JukesCantor(), gamma_shape=0.7, category_count=4)
    lik = TreeLikelihood(
        random_patterns(11), tm, site, force_rescaling=force_rescaling, backend=backend
    )
    return tm, lik


@needs_parallel
class TestLikelihoodAgreement:
    @pytest.mark.parametrize("force_rescaling", [False, True])
    def test_same_log_likelihood(self, force_rescaling):
        _, ref = build("python", force_rescaling)
        _, par = build("cpu-parallel", force_rescaling)
        assert ref.core.backend == "python"
        assert par.core.backend == "cpu-parallel"
        assert par.get_log_likelihood() == pytest.approx(ref.get_log_likelihood(), rel=1e-12)
        assert np.allclose(
            par.get_pattern_log_likelihoods(), ref.get_pattern_log_likelihoods()
        )

    def test_same_after_update(self):
        tm_ref, ref = build("python")
        tm_par, par = build("cpu-parallel")
        ref.get_log_likelihood()
        par.get_log_likelihood()
        for tm in (tm_ref, tm_par):
            tm.reattach(2, 7, 0.5)
        assert par.get_log_likelihood() == pytest.approx(ref.get_log_likelihood(), rel=1e-12)
        assert par.recompute_count == ref.recompute_count

    def test_rescaling_does_not_change_result(self):
        _, plain = build("cpu-parallel")
        _, scaled = build("cpu-parallel", force_rescaling=True)
        assert scaled.get_log_likelihood() == pytest.approx(plain.get_log_likelihood(), rel=1e-10)


# ======================================================================== #
# Backend selection                                                         #
# ======================================================================== #


class TestBackendSelection:
    def test_unknown_kernel_set(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            get_kernels("cuda")

    def test_kernel_sets(self):
        assert get_kernels("python") is PYTHON_KERNELS
        assert get_kernels("cpu-parallel") is PARALLEL_KERNELS

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="not available"):
            resolve_backend("nope")

    def test_best(self):
        assert resolve_backend("best") == get_available_backends()[-1]

    def test_override_wins(self):
        with use_backend("python"):
            assert resolve_backend("best") == "python"
            assert resolve_backend("cpu-parallel") == "python"
            _, lik = build("cpu-parallel")
        assert lik.core.backend == "python"
