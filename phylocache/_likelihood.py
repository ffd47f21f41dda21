"""
_likelihood.py
==============
Incremental Felsenstein pruning over a ``TreeModel``.

The likelihood listens to the tree, the site model and the branch rate
model.  Each event only sets dirty flags; the work happens on the next
``get_log_likelihood()`` call, which recomputes the dirty nodes and their
ancestors in one post-order pass.

Dirty rules
-----------
  tree HEIGHT at n        partials of n and parent(n); matrices of n and
                          children(n)
  tree TOPOLOGY at n      partials of n; matrices of children(n)
  tree VALUE at n         matrix of n; partials of parent(n)
  tree ALL                everything
  site model (any)        everything
  branch rates VALUE n    matrix of n (every matrix when n == -1)

A node is recomputed when its own partials are dirty, when a child's matrix
is dirty, or when a child was recomputed.  Flags are cleared only after an
evaluation succeeds.
"""

import logging
from typing import List, Set

import numpy as np

from phylocache._core import LikelihoodCore
from phylocache._errors import MissingTaxonError, NegativeBranchLengthError, RescalingError
from phylocache._logging import (
    log_likelihood_construction,
    log_memory_footprint,
    log_rescaling_enabled,
)
from phylocache._model import ChangeEmitter, ChangeKind, LogColumn, StateGuard
from phylocache._traversal import postorder

logger = logging.getLogger(__name__)


def tip_partials_from_states(states, state_count: int) -> np.ndarray:
    """
    One-hot ``(patterns, states)`` partials; codes outside ``0 .. state_count-1``
    give a row of ones.

    Examples
    --------
    >>> tip_partials_from_states([0, 2], 2)
    array([[1., 0.],
           [1., 1.]])
    """
    states = np.asarray(states)
    out = np.zeros((states.shape[0], state_count), dtype=np.float64)
    observed = (states >= 0) & (states < state_count)
    out[~observed] = 1.0
    out[np.nonzero(observed)[0], states[observed]] = 1.0
    return out


class TreeLikelihood:
    """
    Log-likelihood of site patterns on a tree, recomputed incrementally.

    Parameters
    ----------
    patterns : SitePatterns
    tree_model : TreeModel
    site_model : SiteModel
    branch_rate_model : BranchRateModel, optional
        Supplies ``get_branch_rate(tree, node)``.  Without one the per-node
        rates stored on the tree model are used.
    use_ambiguities : bool, default False
        Store tips as partials instead of state codes.
    allow_missing_taxa : bool, default False
        Give tips whose taxon is absent from *patterns* all-ones partials
        instead of raising.
    force_rescaling : bool, default False
        Rescale partials from the first evaluation on.
    max_rescale_attempts : int, default 1
        Full recomputations with rescaling before a ``-inf`` result is fatal.
    backend : str, default 'best'
        Kernel backend for the core.
    name : str, optional
        Identifier for diagnostics and log columns.

    Raises
    ------
    MissingTaxonError
        A tip taxon is absent from *patterns* and *allow_missing_taxa* is
        False.
    ValueError
        The patterns and the site model disagree on the state count.

    Examples
    --------
    >>> tree = TreeModel.from_newick('((A:1,B:1):1,C:2);')
    >>> patterns = SitePatterns.from_strings({'A': 'AC', 'B': 'AC', 'C': 'AG'}, 'ACGT')
    >>> lik = TreeLikelihood(patterns, tree, SiteModel(JukesCantor()))
    >>> lik.get_log_likelihood()  # doctest: +SKIP
    -9.53...
    """

    def __init__(
        self,
        patterns,
        tree_model,
        site_model,
        branch_rate_model=None,
        use_ambiguities: bool = False,
        allow_missing_taxa: bool = False,
        force_rescaling: bool = False,
        max_rescale_attempts: int = 1,
        backend: str = "best",
        name: str = None,
    ):
        if patterns.state_count != site_model.state_count:
            raise ValueError(
                f"Patterns '{patterns.name}' have {patterns.state_count} states but "
                f"the site model has {site_model.state_count}."
            )
        self.name = name or f"treeLikelihood.{patterns.name}"
        self.patterns = patterns
        self.tree_model = tree_model
        self.site_model = site_model
        self.branch_rate_model = branch_rate_model
        self.use_ambiguities = use_ambiguities
        self.allow_missing_taxa = allow_missing_taxa
        self.max_rescale_attempts = int(max_rescale_attempts)

        self.core = LikelihoodCore(
            tree_model.capacity,
            patterns.pattern_count,
            site_model.category_count,
            site_model.state_count,
            backend=backend,
            name=self.name,
        )
        if force_rescaling:
            self.core.set_use_scaling(True)
        self._set_tips()

        capacity = tree_model.capacity
        self.partials_dirty = np.ones(capacity, dtype=np.bool_)
        self.matrix_dirty = np.ones(capacity, dtype=np.bool_)
        self.pattern_log_likelihoods = np.zeros(patterns.pattern_count, dtype=np.float64)
        self.log_likelihood = None
        self.likelihood_known = False
        self.recompute_count = 0
        self._stored = None
        self._guard = StateGuard(self.name)
        self.changes = ChangeEmitter()

        tree_model.add_listener(self)
        site_model.add_listener(self)
        if branch_rate_model is not None and hasattr(branch_rate_model, "add_listener"):
            branch_rate_model.add_listener(self)

        log_likelihood_construction(
            self.name,
            self.core.backend,
            tree_model.node_count,
            patterns.pattern_count,
            site_model.category_count,
            site_model.state_count,
            use_ambiguities,
        )
        log_memory_footprint(self.name, self.core.memory_bytes)

    def _set_tips(self) -> None:
        tree = self.tree_model
        patterns = self.patterns
        missing = []
        for node in tree.external_nodes():
            taxon = tree.get_node_taxon(node)
            row = patterns.taxon_index(taxon) if taxon is not None else -1
            if row < 0:
                if not self.allow_missing_taxa:
                    raise MissingTaxonError(taxon, tree.name, patterns.name)
                missing.append(taxon)
                self.core.set_tip_partials(
                    node, np.ones((patterns.pattern_count, patterns.state_count))
                )
            elif self.use_ambiguities:
                self.core.set_tip_partials(
                    node,
                    tip_partials_from_states(
                        patterns.get_pattern_states(row), patterns.state_count
                    ),
                )
            else:
                self.core.set_tip_states(node, patterns.get_pattern_states(row))
        if missing:
            logger.warning(
                "'%s': %d taxa of tree '%s' are missing from patterns '%s' and "
                "are treated as fully ambiguous: %s",
                self.name, len(missing), tree.name, patterns.name, ", ".join(map(str, missing)),
            )

    # ------------------------------------------------------------------ #
    # Change handling
    # ------------------------------------------------------------------ #

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def _ensure_capacity(self) -> None:
        capacity = self.tree_model.capacity
        if capacity <= self.partials_dirty.shape[0]:
            return
        self.core.grow_node_storage(capacity)
        for attr in ("partials_dirty", "matrix_dirty"):
            old = getattr(self, attr)
            grown = np.ones(capacity, dtype=np.bool_)
            grown[: old.shape[0]] = old
            setattr(self, attr, grown)

    def on_changed(self, source, index: int, kind: ChangeKind) -> None:
        if source is self.tree_model:
            self._ensure_capacity()
            tree = self.tree_model
            if kind is ChangeKind.ALL or index < 0:
                self.make_dirty()
                return
            if kind is ChangeKind.HEIGHT:
                self.partials_dirty[index] = True
                parent = tree.get_parent(index)
                if parent != -1:
                    self.partials_dirty[parent] = True
                self.matrix_dirty[index] = True
                for child in tree.children[index]:
                    self.matrix_dirty[child] = True
            elif kind is ChangeKind.TOPOLOGY:
                self.partials_dirty[index] = True
                for child in tree.children[index]:
                    self.matrix_dirty[child] = True
            elif kind is ChangeKind.VALUE:
                self._mark_branch(index)
        elif source is self.branch_rate_model:
            if index < 0:
                self.matrix_dirty[:] = True
            else:
                self._mark_branch(index)
        else:
            # site model or anything it forwards
            self.make_dirty()
            return
        self.likelihood_known = False
        self.changes.emit(self, -1, ChangeKind.VALUE)

    def _mark_branch(self, node: int) -> None:
        self.matrix_dirty[node] = True
        parent = self.tree_model.get_parent(node)
        if parent != -1:
            self.partials_dirty[parent] = True

    def make_dirty(self) -> None:
        """Force a full recomputation on the next evaluation."""
        self.partials_dirty[:] = True
        self.matrix_dirty[:] = True
        self.likelihood_known = False
        self.changes.emit(self, -1, ChangeKind.VALUE)

    def pending_nodes(self) -> Set[int]:
        """Internal nodes the next evaluation will recompute."""
        tree = self.tree_model
        pending = set()
        for node in postorder(tree):
            children = tree.children[node]
            if not children:
                continue
            if (
                self.partials_dirty[node]
                or any(self.matrix_dirty[c] or c in pending for c in children)
            ):
                pending.add(node)
        return pending

    @property
    def dirty_count(self) -> int:
        return len(self.pending_nodes())

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #

    def _branch_rate(self, node: int) -> float:
        if self.branch_rate_model is None:
            return self.tree_model.get_node_rate(node)
        return self.branch_rate_model.get_branch_rate(self.tree_model, node)

    def _update_matrices(self, node: int) -> None:
        length = self.tree_model.get_branch_length(node)
        if length < 0.0:
            raise NegativeBranchLengthError(node, length, self.name)
        branch_time = length * self._branch_rate(node)
        if branch_time < 0.0:
            raise NegativeBranchLengthError(node, branch_time, self.name)
        out = self.core.matrices_for_update(node)
        s = self.site_model.state_count
        for category in range(self.site_model.category_count):
            out[category] = self.site_model.get_transition_probabilities(
                category, branch_time
            ).reshape(s, s)

    def _traverse(self) -> float:
        tree = self.tree_model
        order = postorder(tree)
        updated = {}
        internal = []
        count = 0
        for node in order:
            children = tree.children[node]
            if not children:
                updated[node] = False
                continue
            internal.append(node)
            changed = bool(self.partials_dirty[node])
            for child in children:
                if self.matrix_dirty[child]:
                    self._update_matrices(child)
                    changed = True
                elif updated[child]:
                    changed = True
            if changed:
                self.core.update_partials(node, children)
                count += 1
            updated[node] = changed

        self.recompute_count = count
        self.core.root_log_likelihoods(
            tree.get_root(),
            internal,
            self.site_model.get_category_proportions(),
            self.site_model.frequencies,
            self.pattern_log_likelihoods,
        )
        return float(np.dot(self.patterns.weights, self.pattern_log_likelihoods))

    def _calculate(self) -> float:
        attempts = 0
        while True:
            log_l = self._traverse()
            if log_l != -np.inf:
                break
            self.partials_dirty[:] = True
            self.matrix_dirty[:] = True
            if attempts >= self.max_rescale_attempts:
                raise RescalingError(
                    f"'{self.name}': log-likelihood is -inf after {attempts} "
                    f"rescaled recomputation(s)."
                )
            attempts += 1
            self.core.set_use_scaling(True)
            log_rescaling_enabled(self.name, attempts)
        self.partials_dirty[:] = False
        self.matrix_dirty[:] = False
        return log_l

    def get_log_likelihood(self) -> float:
        """
        Total pattern-weighted log-likelihood.

        Cached until the next change event; a cached call sets
        ``recompute_count`` to 0.

        Raises
        ------
        NegativeBranchLengthError
            A branch has negative length (or rate x time) at evaluation.
        RescalingError
            The result is still ``-inf`` after rescaling.
        """
        if self.likelihood_known:
            self.recompute_count = 0
            return self.log_likelihood
        self.log_likelihood = self._calculate()
        self.likelihood_known = True
        return self.log_likelihood

    def get_pattern_log_likelihoods(self) -> np.ndarray:
        self.get_log_likelihood()
        return self.pattern_log_likelihoods.copy()

    # ------------------------------------------------------------------ #
    # State protocol
    # ------------------------------------------------------------------ #

    def store_state(self) -> None:
        self._guard.store()
        self.core.store_state()
        self._stored = (
            self.log_likelihood,
            self.likelihood_known,
            self.partials_dirty.copy(),
            self.matrix_dirty.copy(),
            self.pattern_log_likelihoods.copy(),
        )

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self.core.restore_state()
        log_l, known, partials_dirty, matrix_dirty, pattern_lls = self._stored
        self.log_likelihood = log_l
        self.likelihood_known = known
        n = partials_dirty.shape[0]
        self.partials_dirty[:] = True
        self.matrix_dirty[:] = True
        self.partials_dirty[:n] = partials_dirty
        self.matrix_dirty[:n] = matrix_dirty
        self.pattern_log_likelihoods[:] = pattern_lls
        self._stored = None

    def accept_state(self) -> None:
        self._guard.release("accept_state")
        self.core.accept_state()
        self._stored = None

    def columns(self) -> List[LogColumn]:
        return [LogColumn(self.name, self.get_log_likelihood)]
