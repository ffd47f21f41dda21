"""
_core.py
========
Double-buffered storage for partial likelihoods, transition matrices and
log scale factors, plus the calls into the kernel backend.

Buffers
-------
partials       float64[2, nodes, categories, patterns, states]
matrices       float64[2, nodes, categories, states, states]
scale_factors  float64[2, nodes, patterns]

Every node owns two slots of each array.  ``current_*[node]`` selects the
live slot and ``stored_*[node]`` the slot captured by ``store_state()``.
Writing to a node flips it to the other slot only while the live slot is
still the stored one, so the snapshot survives any number of evaluations
between store and restore.  Scale factors follow the partials' slot.
"""

import logging

import numpy as np

from phylocache._backend import get_available_backends, resolve_backend
from phylocache._kernels import get_kernels
from phylocache._logging import (
    install_numba_warning_filter,
    log_backend_availability,
    log_optimization_status,
    log_storage_growth,
)
from phylocache._model import StateGuard

logger = logging.getLogger(__name__)

# Log system info and backend availability on module import
log_optimization_status()
log_backend_availability(get_available_backends())
install_numba_warning_filter()


class LikelihoodCore:
    """
    Partials, matrices and scale factors for one tree and one block of
    site patterns.

    Parameters
    ----------
    node_capacity : int
        Node slots to allocate; grown on demand by ``grow_node_storage``.
    pattern_count : int
    category_count : int
        Rate categories of the site model.
    state_count : int
    backend : str, default 'best'
        Kernel backend, see ``resolve_backend``.
    name : str, default 'core'
        Identifier used in diagnostics.

    Attributes
    ----------
    use_scaling : bool
        Latched on by ``set_use_scaling(True)``; never switches back.
    """

    def __init__(
        self,
        node_capacity: int,
        pattern_count: int,
        category_count: int,
        state_count: int,
        backend: str = "best",
        name: str = "core",
    ):
        self.name = name
        self.node_capacity = int(node_capacity)
        self.pattern_count = int(pattern_count)
        self.category_count = int(category_count)
        self.state_count = int(state_count)
        self.backend = resolve_backend(backend)
        self.kernels = get_kernels(self.backend)
        self.use_scaling = False

        n, c, k, s = self.node_capacity, self.category_count, self.pattern_count, self.state_count
        self.partials = np.zeros((2, n, c, k, s), dtype=np.float64)
        self.matrices = np.zeros((2, n, c, s, s), dtype=np.float64)
        self.scale_factors = np.zeros((2, n, k), dtype=np.float64)
        self.tip_states = np.zeros((n, k), dtype=np.int32)
        self.has_states = np.zeros(n, dtype=np.bool_)

        self.current_partials = np.zeros(n, dtype=np.int8)
        self.stored_partials = np.zeros(n, dtype=np.int8)
        self.current_matrices = np.zeros(n, dtype=np.int8)
        self.stored_matrices = np.zeros(n, dtype=np.int8)
        self._guard = StateGuard(name)

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #

    @property
    def memory_bytes(self) -> int:
        return int(
            self.partials.nbytes
            + self.matrices.nbytes
            + self.scale_factors.nbytes
            + self.tip_states.nbytes
        )

    def grow_node_storage(self, min_capacity: int) -> None:
        """Double capacity until it holds *min_capacity* node slots."""
        old = self.node_capacity
        new = old
        while new < min_capacity:
            new *= 2
        if new == old:
            return

        def grown(arr, axis):
            shape = list(arr.shape)
            shape[axis] = new
            out = np.zeros(shape, dtype=arr.dtype)
            index = [slice(None)] * arr.ndim
            index[axis] = slice(0, old)
            out[tuple(index)] = arr
            return out

        self.partials = grown(self.partials, 1)
        self.matrices = grown(self.matrices, 1)
        self.scale_factors = grown(self.scale_factors, 1)
        self.tip_states = grown(self.tip_states, 0)
        self.has_states = grown(self.has_states, 0)
        self.current_partials = grown(self.current_partials, 0)
        self.stored_partials = grown(self.stored_partials, 0)
        self.current_matrices = grown(self.current_matrices, 0)
        self.stored_matrices = grown(self.stored_matrices, 0)
        self.node_capacity = new
        log_storage_growth(self.name, old, new)

    def set_use_scaling(self, use_scaling: bool) -> None:
        if use_scaling and not self.use_scaling:
            logger.debug("'%s': partials rescaling switched on", self.name)
        self.use_scaling = self.use_scaling or bool(use_scaling)

    # ------------------------------------------------------------------ #
    # Tips
    # ------------------------------------------------------------------ #

    def set_tip_states(self, node: int, states) -> None:
        """Store integer state codes for a tip; ambiguous codes are >= state_count."""
        self.tip_states[node] = states
        self.has_states[node] = True

    def set_tip_partials(self, node: int, partials) -> None:
        """Store ``(patterns, states)`` tip partials, shared by all categories."""
        self.partials[:, node] = np.asarray(partials, dtype=np.float64)[np.newaxis, np.newaxis]
        self.scale_factors[:, node] = 0.0
        self.has_states[node] = False

    # ------------------------------------------------------------------ #
    # Updates
    # ------------------------------------------------------------------ #

    def matrices_for_update(self, node: int) -> np.ndarray:
        """
        Flip *node* to a writable matrix slot and return it,
        shape ``(categories, states, states)``.
        """
        if self.current_matrices[node] == self.stored_matrices[node]:
            self.current_matrices[node] = 1 - self.current_matrices[node]
        return self.matrices[self.current_matrices[node], node]

    def get_matrices(self, node: int) -> np.ndarray:
        return self.matrices[self.current_matrices[node], node]

    def get_partials(self, node: int) -> np.ndarray:
        return self.partials[self.current_partials[node], node]

    def update_partials(self, node: int, children) -> None:
        """
        Combine the children's partials through their current matrices into
        a fresh slot for *node*, then rescale if scaling is on.
        """
        if self.current_partials[node] == self.stored_partials[node]:
            self.current_partials[node] = 1 - self.current_partials[node]
        slot = self.current_partials[node]
        acc = self.partials[slot, node]
        k = self.kernels
        for i, child in enumerate(children):
            mats = self.matrices[self.current_matrices[child], child]
            if self.has_states[child]:
                k.accumulate_states(self.tip_states[child], mats, acc, i == 0)
            else:
                k.accumulate_partials(
                    self.partials[self.current_partials[child], child], mats, acc, i == 0
                )
        if self.use_scaling:
            k.scale_partials(acc, self.scale_factors[slot, node])
        else:
            self.scale_factors[slot, node] = 0.0

    def root_log_likelihoods(self, root: int, internal_nodes, proportions,
                             frequencies, out: np.ndarray = None) -> np.ndarray:
        """
        Per-pattern log-likelihoods at *root*, adding back the log scale
        factors of *internal_nodes* (every internal node under the root).
        """
        if out is None:
            out = np.empty(self.pattern_count, dtype=np.float64)
        cum_scale = np.zeros(self.pattern_count, dtype=np.float64)
        if self.use_scaling:
            for node in internal_nodes:
                cum_scale += self.scale_factors[self.current_partials[node], node]
        self.kernels.root_log_likelihoods(
            self.partials[self.current_partials[root], root],
            np.ascontiguousarray(proportions, dtype=np.float64),
            np.ascontiguousarray(frequencies, dtype=np.float64),
            cum_scale,
            out,
        )
        return out

    # ------------------------------------------------------------------ #
    # State protocol
    # ------------------------------------------------------------------ #

    def store_state(self) -> None:
        self._guard.store()
        self.stored_partials[:] = self.current_partials
        self.stored_matrices[:] = self.current_matrices

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self.current_partials[:] = self.stored_partials
        self.current_matrices[:] = self.stored_matrices

    def accept_state(self) -> None:
        self._guard.release("accept_state")
