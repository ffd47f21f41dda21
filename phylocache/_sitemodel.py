"""
_sitemodel.py
=============
Per-site rate heterogeneity: discretised gamma rate categories with an
optional invariant-sites category, over a substitution model.
"""

import logging
from typing import List

import numpy as np
from scipy import stats

from phylocache._model import ChangeEmitter, ChangeKind, LogColumn, StateGuard
from phylocache._parameter import Parameter

logger = logging.getLogger(__name__)


def _as_parameter(value, name: str, lower: float, upper: float):
    if value is None or isinstance(value, Parameter):
        return value
    return Parameter(name, float(value), lower=lower, upper=upper)


def discretized_gamma_rates(shape: float, category_count: int) -> np.ndarray:
    """
    Gamma(shape, 1/shape) rates at the quantiles ``(2i + 1) / (2n)``,
    rescaled to mean one.

    Examples
    --------
    >>> r = discretized_gamma_rates(0.5, 4)
    >>> float(np.mean(r))
    1.0
    """
    n = int(category_count)
    q = (2.0 * np.arange(n) + 1.0) / (2.0 * n)
    rates = stats.gamma.ppf(q, a=shape, scale=1.0 / shape)
    return rates * (n / rates.sum())


class SiteModel:
    """
    Rate categories and their proportions for one data partition.

    Parameters
    ----------
    substitution_model : SubstitutionModel
    gamma_shape : float or Parameter, optional
        Shape (alpha) of the gamma distribution; required when
        *category_count* > 1.
    category_count : int, default 1
        Number of gamma categories.
    proportion_invariant : float or Parameter, optional
        Weight of an extra zero-rate category.  The remaining categories
        are scaled by ``1 / (1 - p_inv)`` so the mean rate stays one.
    mu : float or Parameter, optional
        Overall relative rate multiplying every category.
    name : str, default 'siteModel'

    Notes
    -----
    Any change to its parameters or substitution model fires ``ALL``: every
    transition matrix downstream depends on the category rates.
    """

    def __init__(
        self,
        substitution_model,
        gamma_shape=None,
        category_count: int = 1,
        proportion_invariant=None,
        mu=None,
        name: str = "siteModel",
    ):
        if category_count < 1:
            raise ValueError(f"'{name}': category_count must be >= 1")
        if category_count > 1 and gamma_shape is None:
            raise ValueError(
                f"'{name}': {category_count} gamma categories need a shape parameter"
            )
        self.name = name
        self.substitution_model = substitution_model
        self.gamma_shape = _as_parameter(gamma_shape, f"{name}.alpha", 0.0, np.inf)
        self.gamma_category_count = int(category_count)
        self.proportion_invariant = _as_parameter(
            proportion_invariant, f"{name}.pInv", 0.0, 1.0
        )
        self.mu = _as_parameter(mu, f"{name}.mu", 0.0, np.inf)

        self._rates = None
        self._proportions = None
        self._guard = StateGuard(name)
        self.changes = ChangeEmitter()

        for dep in (substitution_model, self.gamma_shape, self.proportion_invariant, self.mu):
            if dep is not None and hasattr(dep, "add_listener"):
                dep.add_listener(self)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    @property
    def state_count(self) -> int:
        return self.substitution_model.state_count

    @property
    def frequencies(self) -> np.ndarray:
        return self.substitution_model.frequencies

    @property
    def category_count(self) -> int:
        return self.gamma_category_count + (1 if self.proportion_invariant is not None else 0)

    def _compute(self) -> None:
        if self._rates is not None:
            return
        n = self.gamma_category_count
        if self.gamma_shape is not None and n > 1:
            gamma = discretized_gamma_rates(self.gamma_shape.get_value(), n)
        else:
            gamma = np.ones(n)
        proportions = np.full(n, 1.0 / n)

        if self.proportion_invariant is not None:
            p_inv = self.proportion_invariant.get_value()
            gamma = gamma / (1.0 - p_inv) if p_inv < 1.0 else gamma * 0.0
            rates = np.concatenate(([0.0], gamma))
            proportions = np.concatenate(([p_inv], proportions * (1.0 - p_inv)))
        else:
            rates = gamma

        if self.mu is not None:
            rates = rates * self.mu.get_value()
        self._rates = rates
        self._proportions = proportions

    def get_category_rates(self) -> np.ndarray:
        self._compute()
        return self._rates.copy()

    def get_category_proportions(self) -> np.ndarray:
        self._compute()
        return self._proportions.copy()

    def get_rate_for_category(self, category: int) -> float:
        self._compute()
        return float(self._rates[category])

    def get_transition_probabilities(self, category: int, branch_length: float,
                                     out: np.ndarray = None) -> np.ndarray:
        """Transition matrix for *category* over *branch_length* time x rate."""
        return self.substitution_model.get_transition_probabilities(
            branch_length * self.get_rate_for_category(category), out
        )

    # ------------------------------------------------------------------ #
    # Events and state
    # ------------------------------------------------------------------ #

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def on_changed(self, source, index: int, kind: ChangeKind) -> None:
        self._rates = None
        self._proportions = None
        self.changes.emit(self, -1, ChangeKind.ALL)

    def store_state(self) -> None:
        self._guard.store()

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self._rates = None
        self._proportions = None

    def accept_state(self) -> None:
        self._guard.release("accept_state")

    def columns(self) -> List[LogColumn]:
        cols = []
        for p in (self.gamma_shape, self.proportion_invariant, self.mu):
            if p is not None:
                cols.extend(p.columns())
        return cols
