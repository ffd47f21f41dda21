"""
_kernels.py
===========
Partial-likelihood kernels in two implementations with identical
signatures:

  *_np  numpy reference implementation ('python' backend)
  *_nb  numba ``njit(parallel=True, cache=True)`` with ``prange`` over site
        patterns ('cpu-parallel' backend)

Patterns are independent of each other, so every parallel thread owns a
disjoint slice of the output and results do not depend on the thread
count.

This module does not import other project modules.

Array conventions
-----------------
partials    float64[categories, patterns, states]
matrices    float64[categories, states, states]   row = parent state
states      int32[patterns]                       codes >= states are ambiguous
log_scale   float64[patterns]

Exported Functions
------------------
accumulate_partials(child_partials, matrices, acc, first)
    acc[c,k,i] (=|*=) sum_j matrices[c,i,j] * child_partials[c,k,j]
accumulate_states(states, matrices, acc, first)
    Same with a one-hot (or all-ones, if ambiguous) child.
scale_partials(partials, log_scale)
    Divide each pattern by its maximum entry, store log of the factor.
root_log_likelihoods(partials, proportions, frequencies, cum_scale, out)
    out[k] = log(sum_c p_c sum_i f_i partials[c,k,i]) + cum_scale[k]
"""

from collections import namedtuple

import numpy as np
from numba import njit, prange


KernelSet = namedtuple(
    "KernelSet",
    ["accumulate_partials", "accumulate_states", "scale_partials", "root_log_likelihoods"],
)


# ======================================================================== #
# numpy reference kernels                                                  #
# ======================================================================== #


def _accumulate_partials_np(child_partials, matrices, acc, first):
    contrib = np.matmul(child_partials, np.transpose(matrices, (0, 2, 1)))
    if first:
        acc[...] = contrib
    else:
        acc *= contrib


def _accumulate_states_np(states, matrices, acc, first):
    n_states = acc.shape[2]
    valid = (states >= 0) & (states < n_states)
    idx = np.where(valid, states, 0)
    contrib = np.transpose(matrices[:, :, idx], (0, 2, 1)).copy()
    contrib[:, ~valid, :] = 1.0
    if first:
        acc[...] = contrib
    else:
        acc *= contrib


def _scale_partials_np(partials, log_scale):
    mx = partials.max(axis=(0, 2))
    pos = mx > 0.0
    safe = np.where(pos, mx, 1.0)
    partials /= safe[np.newaxis, :, np.newaxis]
    log_scale[:] = np.where(pos, np.log(safe), 0.0)


def _root_log_likelihoods_np(partials, proportions, frequencies, cum_scale, out):
    site = np.einsum("c,cki,i->k", proportions, partials, frequencies)
    with np.errstate(divide="ignore"):
        out[:] = np.log(site) + cum_scale


# ======================================================================== #
# numba kernels                                                            #
# ======================================================================== #


@njit(parallel=True, cache=True)
def _accumulate_partials_nb(child_partials, matrices, acc, first):
    """
    Propagate one child's partials up its branch and fold them into *acc*.

    The outer loop over patterns runs in parallel via prange; each thread
    owns ``acc[:, k, :]``.
    """
    n_cats = acc.shape[0]
    n_patterns = acc.shape[1]
    n_states = acc.shape[2]
    for k in prange(n_patterns):
        for c in range(n_cats):
            for i in range(n_states):
                s = 0.0
                for j in range(n_states):
                    s += matrices[c, i, j] * child_partials[c, k, j]
                if first:
                    acc[c, k, i] = s
                else:
                    acc[c, k, i] *= s


@njit(parallel=True, cache=True)
def _accumulate_states_nb(states, matrices, acc, first):
    """Tip variant of ``_accumulate_partials_nb`` reading state codes."""
    n_cats = acc.shape[0]
    n_patterns = acc.shape[1]
    n_states = acc.shape[2]
    for k in prange(n_patterns):
        s_k = states[k]
        observed = s_k >= 0 and s_k < n_states
        for c in range(n_cats):
            for i in range(n_states):
                v = matrices[c, i, s_k] if observed else 1.0
                if first:
                    acc[c, k, i] = v
                else:
                    acc[c, k, i] *= v


@njit(parallel=True, cache=True)
def _scale_partials_nb(partials, log_scale):
    n_cats = partials.shape[0]
    n_patterns = partials.shape[1]
    n_states = partials.shape[2]
    for k in prange(n_patterns):
        mx = 0.0
        for c in range(n_cats):
            for i in range(n_states):
                if partials[c, k, i] > mx:
                    mx = partials[c, k, i]
        if mx > 0.0:
            for c in range(n_cats):
                for i in range(n_states):
                    partials[c, k, i] /= mx
            log_scale[k] = np.log(mx)
        else:
            log_scale[k] = 0.0


@njit(parallel=True, cache=True)
def _root_log_likelihoods_nb(partials, proportions, frequencies, cum_scale, out):
    n_cats = partials.shape[0]
    n_patterns = partials.shape[1]
    n_states = partials.shape[2]
    for k in prange(n_patterns):
        total = 0.0
        for c in range(n_cats):
            s = 0.0
            for i in range(n_states):
                s += frequencies[i] * partials[c, k, i]
            total += proportions[c] * s
        out[k] = np.log(total) + cum_scale[k]


PYTHON_KERNELS = KernelSet(
    _accumulate_partials_np,
    _accumulate_states_np,
    _scale_partials_np,
    _root_log_likelihoods_np,
)

PARALLEL_KERNELS = KernelSet(
    _accumulate_partials_nb,
    _accumulate_states_nb,
    _scale_partials_nb,
    _root_log_likelihoods_nb,
)


def get_kernels(backend: str) -> KernelSet:
    """
    Kernel set for a resolved backend name.

    Raises
    ------
    ValueError   for an unknown backend.
    """
    if backend == "python":
        return PYTHON_KERNELS
    if backend == "cpu-parallel":
        return PARALLEL_KERNELS
    raise ValueError(f"Unknown backend '{backend}'")
