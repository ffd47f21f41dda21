"""
_substitution.py
================
Minimal substitution models that feed transition-probability matrices to
the likelihood core.

Every model provides

  state_count                                  int
  frequencies                                  float64[state_count]
  get_transition_probabilities(length, out)    flattened row-major matrix

where *length* is expected substitutions (time x rate x category rate).
Rows of the returned matrix sum to one.
"""

import logging
from typing import Protocol, runtime_checkable

import numpy as np
from scipy.linalg import expm

from phylocache._model import ChangeEmitter, ChangeKind, StateGuard
from phylocache._parameter import Parameter

logger = logging.getLogger(__name__)


@runtime_checkable
class SubstitutionModel(Protocol):
    state_count: int

    @property
    def frequencies(self) -> np.ndarray:
        ...

    def get_transition_probabilities(self, branch_length: float, out: np.ndarray = None) -> np.ndarray:
        ...


class JukesCantor:
    """
    Equal-rates model on *state_count* states, normalised to one expected
    substitution per unit branch length.

    ``P(same) = 1/k + (k-1)/k * exp(-k t / (k-1))``
    ``P(diff) = (1 - P(same)) / (k-1)``

    Examples
    --------
    >>> jc = JukesCantor(2)
    >>> jc.get_transition_probabilities(0.0)
    array([1., 0., 0., 1.])
    """

    def __init__(self, state_count: int = 4, name: str = "jc"):
        if state_count < 2:
            raise ValueError("JukesCantor needs at least two states")
        self.name = name
        self.state_count = int(state_count)
        self._frequencies = np.full(self.state_count, 1.0 / self.state_count)
        self._guard = StateGuard(name)
        self.changes = ChangeEmitter()

    @property
    def frequencies(self) -> np.ndarray:
        return self._frequencies

    def get_transition_probabilities(self, branch_length: float, out: np.ndarray = None) -> np.ndarray:
        k = self.state_count
        if out is None:
            out = np.empty(k * k, dtype=np.float64)
        e = np.exp(-k * branch_length / (k - 1.0))
        p_same = 1.0 / k + (k - 1.0) / k * e
        p_diff = (1.0 - p_same) / (k - 1.0)
        out[:] = p_diff
        out[:: k + 1] = p_same
        return out

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def store_state(self) -> None:
        self._guard.store()

    def restore_state(self) -> None:
        self._guard.release("restore_state")

    def accept_state(self) -> None:
        self._guard.release("accept_state")


class ReversibleModel:
    """
    General time-reversible model built from exchangeabilities and
    equilibrium frequencies.

    ``Q[i, j] = r_ij * pi_j`` for ``i != j``, rows sum to zero, scaled so
    that ``-sum(pi_i * Q[i, i]) == 1``.  Transition matrices are
    ``scipy.linalg.expm(Q * t)``.

    Parameters
    ----------
    rate_parameter : Parameter
        ``k (k-1) / 2`` exchangeabilities for the upper triangle in
        row-major order.
    frequency_parameter : Parameter
        ``k`` equilibrium frequencies (normalised on use).

    Notes
    -----
    The generator is cached and rebuilt lazily after either parameter
    changes or is restored.  A parameter change fires ``ALL``.
    """

    def __init__(self, rate_parameter: Parameter, frequency_parameter: Parameter,
                 name: str = "gtr"):
        k = frequency_parameter.dimension
        if rate_parameter.dimension != k * (k - 1) // 2:
            raise ValueError(
                f"'{name}': {k} states need {k * (k - 1) // 2} "
                f"exchangeabilities, got {rate_parameter.dimension}."
            )
        self.name = name
        self.state_count = k
        self.rate_parameter = rate_parameter
        self.frequency_parameter = frequency_parameter
        self._q = None
        self._freqs = None
        self._guard = StateGuard(name)
        self.changes = ChangeEmitter()
        rate_parameter.add_listener(self)
        frequency_parameter.add_listener(self)

    @property
    def frequencies(self) -> np.ndarray:
        if self._freqs is None:
            f = self.frequency_parameter.values
            self._freqs = f / f.sum()
        return self._freqs

    def generator(self) -> np.ndarray:
        """The normalised rate matrix ``Q``."""
        if self._q is None:
            k = self.state_count
            pi = self.frequencies
            rates = self.rate_parameter.values
            q = np.zeros((k, k), dtype=np.float64)
            r = 0
            for i in range(k):
                for j in range(i + 1, k):
                    q[i, j] = rates[r] * pi[j]
                    q[j, i] = rates[r] * pi[i]
                    r += 1
            np.fill_diagonal(q, -q.sum(axis=1))
            q /= -np.dot(np.diag(q), pi)
            self._q = q
        return self._q

    def get_transition_probabilities(self, branch_length: float, out: np.ndarray = None) -> np.ndarray:
        k = self.state_count
        if out is None:
            out = np.empty(k * k, dtype=np.float64)
        p = expm(self.generator() * branch_length)
        # expm can leave tiny negative entries for long branches
        np.clip(p, 0.0, None, out=p)
        out[:] = p.ravel()
        return out

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def on_changed(self, source, index: int, kind: ChangeKind) -> None:
        self._q = None
        self._freqs = None
        self.changes.emit(self, -1, ChangeKind.ALL)

    def store_state(self) -> None:
        self._guard.store()

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self._q = None
        self._freqs = None

    def accept_state(self) -> None:
        self._guard.release("accept_state")
