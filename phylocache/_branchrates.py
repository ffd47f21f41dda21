"""
_branchrates.py
===============
Per-branch rate multipliers (clock models) consumed by the likelihood as
``get_branch_rate(tree, node)``: expected substitutions per unit time on
the branch above *node*.

StrictClock
    One rate for every branch.
DiscretizedBranchRates
    Uncorrelated relaxed clock: each branch picks one of ``node_count``
    equiprobable rate categories of a continuous distribution.
"""

import logging
from typing import List, Protocol, runtime_checkable

import numpy as np
from scipy import stats

from phylocache._model import ChangeEmitter, ChangeKind, LogColumn, StateGuard
from phylocache._newick import TraitIntent, TreeTrait
from phylocache._parameter import Parameter

logger = logging.getLogger(__name__)


@runtime_checkable
class BranchRateModel(Protocol):
    def get_branch_rate(self, tree, node: int) -> float:
        ...


class StrictClock:
    """
    A single clock rate shared by all branches.

    A rate change fires ``VALUE`` with index -1 (every branch).
    """

    def __init__(self, rate=1.0, name: str = "strictClock"):
        self.name = name
        if not isinstance(rate, Parameter):
            rate = Parameter(f"{name}.rate", float(rate), lower=0.0)
        self.rate_parameter = rate
        self._guard = StateGuard(name)
        self.changes = ChangeEmitter()
        rate.add_listener(self)

    def get_branch_rate(self, tree, node: int) -> float:
        return self.rate_parameter.get_value()

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def on_changed(self, source, index: int, kind: ChangeKind) -> None:
        self.changes.emit(self, -1, ChangeKind.VALUE)

    def store_state(self) -> None:
        self._guard.store()

    def restore_state(self) -> None:
        self._guard.release("restore_state")

    def accept_state(self) -> None:
        self._guard.release("accept_state")

    def tree_traits(self) -> List[TreeTrait]:
        return [TreeTrait("rate", TraitIntent.BRANCH, self._trait_value)]

    def _trait_value(self, tree, node: int):
        return None if tree.is_root(node) else self.get_branch_rate(tree, node)

    def columns(self) -> List[LogColumn]:
        return self.rate_parameter.columns()


class DiscretizedBranchRates:
    """
    Uncorrelated relaxed clock with discretised branch rates.

    The distribution is cut into ``node_count`` equiprobable categories,
    each represented by the quantile at its mid-point.  One category index
    per non-root branch lives in *category_parameter*, which skips the
    root's slot: node ids below the root map to the same index, node ids
    above it map to index - 1.  When the root moves, indices between the old
    and new root ids are shuffled so every other branch keeps its category.

    Parameters
    ----------
    tree_model : TreeModel
        Node count is fixed for the lifetime of this model.
    category_parameter : Parameter
        ``node_count - 1`` category indices; initialised to ``0, 1, ...``.
    distribution : frozen scipy.stats distribution, optional
        Default: lognormal with mean 1 and log-scale standard deviation 1.
    name : str, default 'branchRates'

    Raises
    ------
    ValueError
        If the category parameter has the wrong dimension, or when the rate
        of the root is requested.
    """

    def __init__(self, tree_model, category_parameter: Parameter, distribution=None,
                 name: str = "branchRates"):
        node_count = tree_model.node_count
        if category_parameter.dimension != node_count - 1:
            raise ValueError(
                f"'{name}': the rate category parameter must have dimension "
                f"node_count - 1 = {node_count - 1}, got "
                f"{category_parameter.dimension}."
            )
        if distribution is None:
            distribution = stats.lognorm(s=1.0, scale=np.exp(-0.5))
        self.name = name
        self.tree_model = tree_model
        self.category_parameter = category_parameter
        self.distribution = distribution
        self.category_count = node_count

        for i in range(category_parameter.dimension):
            category_parameter.set_value_quietly(i, i)

        self.rates = self._setup_rates()
        self.root_node = tree_model.get_root()
        self._stored_root_node = self.root_node
        self._guard = StateGuard(name)
        self.changes = ChangeEmitter()

        tree_model.add_listener(self)
        category_parameter.add_listener(self)

        logger.info(
            "Using discretized relaxed clock '%s': %d rate categories",
            name, self.category_count,
        )

    def _setup_rates(self) -> np.ndarray:
        step = 1.0 / self.category_count
        z = step / 2.0 + step * np.arange(self.category_count)
        return np.asarray(self.distribution.ppf(z), dtype=np.float64)

    # ------------------------------------------------------------------ #
    # Index mapping
    # ------------------------------------------------------------------ #

    def node_from_category_index(self, index: int) -> int:
        return index + 1 if index >= self.root_node else index

    def category_index_from_node(self, node: int) -> int:
        return node - 1 if node > self.root_node else node

    def get_branch_rate(self, tree, node: int) -> float:
        if tree.is_root(node):
            raise ValueError(f"'{self.name}': the root node doesn't have a rate")
        if node == self.root_node:
            raise ValueError(
                f"'{self.name}': node {node} is recorded as the root but the "
                f"tree's root is {tree.get_root()}."
            )
        category = int(round(self.category_parameter.get_value(
            self.category_index_from_node(node))))
        return float(self.rates[category])

    def _shuffle_indices(self) -> None:
        new_root = self.tree_model.get_root()
        old_root = self.root_node
        param = self.category_parameter
        last = param.dimension - 1

        if old_root > new_root:
            moved = param.get_value(new_root)
            end = min(last, old_root)
            for i in range(new_root, end):
                param.set_value_quietly(i, param.get_value(i + 1))
            param.set_value_quietly(end, moved)
        elif old_root < new_root:
            end = min(last, new_root)
            moved = param.get_value(end)
            for i in range(end, old_root, -1):
                param.set_value_quietly(i, param.get_value(i - 1))
            param.set_value_quietly(old_root, moved)
        self.root_node = new_root

    # ------------------------------------------------------------------ #
    # Events and state
    # ------------------------------------------------------------------ #

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def on_changed(self, source, index: int, kind: ChangeKind) -> None:
        if source is self.tree_model:
            if self.tree_model.get_root() != self.root_node:
                self._shuffle_indices()
                self.changes.emit(self, -1, ChangeKind.VALUE)
        elif source is self.category_parameter:
            node = -1 if index < 0 else self.node_from_category_index(index)
            self.changes.emit(self, node, ChangeKind.VALUE)

    def store_state(self) -> None:
        self._guard.store()
        self._stored_root_node = self.root_node

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self.rates = self._setup_rates()
        self.root_node = self._stored_root_node

    def accept_state(self) -> None:
        self._guard.release("accept_state")

    def tree_traits(self) -> List[TreeTrait]:
        return [TreeTrait("rate", TraitIntent.BRANCH, self._trait_value)]

    def _trait_value(self, tree, node: int):
        return None if tree.is_root(node) else self.get_branch_rate(tree, node)

    def columns(self) -> List[LogColumn]:
        tree = self.tree_model
        return [
            LogColumn(f"{self.name}.rate{node}",
                      lambda node=node: self.get_branch_rate(tree, node))
            for node in range(tree.node_count)
            if node != tree.get_root()
        ]
