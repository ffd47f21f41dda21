"""
_parameter.py
=============
Named, bounded vectors of doubles with change events and one-level
store/restore.

Parameter
    A free value vector, optionally viewed as a row-major matrix.

MatrixProductParameter
    ``left @ right`` as a derived, read-only parameter.  Any attempt to set
    it raises ``ReadOnlyParameterError`` naming the object and operation.
"""

import logging
import math
from typing import List, Sequence, Tuple

import numpy as np

from phylocache._errors import ReadOnlyParameterError
from phylocache._model import ChangeEmitter, ChangeKind, LogColumn, StateGuard

logger = logging.getLogger(__name__)


class Parameter:
    """
    A named, ordered sequence of doubles with bounds.

    Parameters
    ----------
    name : str
        Identifier used in log columns and diagnostics.
    values : float or sequence of float
        Initial values.  A scalar gives a one-dimensional parameter.
    lower, upper : float
        Inclusive bounds shared by every entry.
    shape : tuple of int, optional
        ``(rows, cols)`` to view the values as a row-major matrix.

    Notes
    -----
    Setters fire a ``VALUE`` event: ``set_value`` with the changed index,
    ``set_values`` with index -1.  ``set_value_quietly`` fires nothing and
    is intended for operators that fire one event after a batch of edits.
    """

    def __init__(
        self,
        name: str,
        values,
        lower: float = -math.inf,
        upper: float = math.inf,
        shape: Tuple[int, int] = None,
    ):
        self.name = name
        self._values = np.atleast_1d(np.asarray(values, dtype=np.float64)).ravel().copy()
        self.lower = float(lower)
        self.upper = float(upper)
        if shape is not None:
            rows, cols = shape
            if rows * cols != self._values.shape[0]:
                raise ValueError(
                    f"Parameter '{name}': shape {shape} does not match "
                    f"{self._values.shape[0]} values."
                )
            self.shape = (int(rows), int(cols))
        else:
            self.shape = (self._values.shape[0], 1)
        self._stored_values = None
        self._guard = StateGuard(name)
        self.changes = ChangeEmitter()

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    @property
    def dimension(self) -> int:
        return int(self._values.shape[0])

    @property
    def values(self) -> np.ndarray:
        """A copy of the value vector."""
        return self._values.copy()

    def get_value(self, i: int = 0) -> float:
        return float(self._values[i])

    def get_value_2d(self, row: int, col: int) -> float:
        return float(self._values[row * self.shape[1] + col])

    def as_matrix(self) -> np.ndarray:
        return self._values.reshape(self.shape).copy()

    @property
    def row_dimension(self) -> int:
        return self.shape[0]

    @property
    def column_dimension(self) -> int:
        return self.shape[1]

    def is_within_bounds(self) -> bool:
        return bool(np.all((self._values >= self.lower) & (self._values <= self.upper)))

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def set_value(self, i: int, value: float) -> None:
        self._values[i] = value
        self.changes.emit(self, i, ChangeKind.VALUE)

    def set_value_quietly(self, i: int, value: float) -> None:
        self._values[i] = value

    def set_values(self, values: Sequence[float]) -> None:
        values = np.asarray(values, dtype=np.float64).ravel()
        if values.shape[0] != self.dimension:
            raise ValueError(
                f"Parameter '{self.name}' has dimension {self.dimension}; "
                f"got {values.shape[0]} values."
            )
        self._values[:] = values
        self.changes.emit(self, -1, ChangeKind.VALUE)

    def fire_changed(self, index: int = -1) -> None:
        """Emit a ``VALUE`` event after quiet edits."""
        self.changes.emit(self, index, ChangeKind.VALUE)

    # ------------------------------------------------------------------ #
    # State protocol
    # ------------------------------------------------------------------ #

    def store_state(self) -> None:
        self._guard.store()
        self._stored_values = self._values.copy()

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self._values, self._stored_values = self._stored_values, None

    def accept_state(self) -> None:
        self._guard.release("accept_state")
        self._stored_values = None

    def columns(self) -> List[LogColumn]:
        if self.dimension == 1:
            return [LogColumn(self.name, lambda: self.get_value(0))]
        return [
            LogColumn(f"{self.name}{i + 1}", lambda i=i: self.get_value(i))
            for i in range(self.dimension)
        ]

    def __repr__(self) -> str:
        return f"Parameter({self.name!r}, {self._values.tolist()!r})"


class MatrixProductParameter:
    """
    The matrix product ``left @ right`` exposed through the parameter read
    interface.

    The product is cached and recomputed after any operand change or
    restore.  Operand events are forwarded with index -1.

    Parameters
    ----------
    name : str
    left : Parameter
        ``(n, k)`` matrix parameter.
    right : Parameter
        ``(k, m)`` matrix parameter.

    Raises
    ------
    ValueError
        If the inner dimensions disagree.
    """

    def __init__(self, name: str, left: Parameter, right: Parameter):
        if left.shape[1] != right.shape[0]:
            raise ValueError(
                f"Cannot multiply {left.shape} '{left.name}' by "
                f"{right.shape} '{right.name}'."
            )
        self.name = name
        self.left = left
        self.right = right
        self.shape = (left.shape[0], right.shape[1])
        self._product = None
        self._guard = StateGuard(name)
        self.changes = ChangeEmitter()
        left.add_listener(self)
        right.add_listener(self)

    def _read_only(self, operation: str):
        raise ReadOnlyParameterError(self.name, operation)

    def _compute(self) -> np.ndarray:
        if self._product is None:
            self._product = (self.left.as_matrix() @ self.right.as_matrix()).ravel()
        return self._product

    @property
    def dimension(self) -> int:
        return self.shape[0] * self.shape[1]

    @property
    def values(self) -> np.ndarray:
        return self._compute().copy()

    @property
    def row_dimension(self) -> int:
        return self.shape[0]

    @property
    def column_dimension(self) -> int:
        return self.shape[1]

    def get_value(self, i: int = 0) -> float:
        return float(self._compute()[i])

    def get_value_2d(self, row: int, col: int) -> float:
        return float(self._compute()[row * self.shape[1] + col])

    def as_matrix(self) -> np.ndarray:
        return self._compute().reshape(self.shape).copy()

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def on_changed(self, source, index: int, kind: ChangeKind) -> None:
        self._product = None
        self.changes.emit(self, -1, kind)

    # setters: deterministic function, never assignable

    def set_value(self, i: int, value: float) -> None:
        self._read_only("set_value()")

    def set_value_quietly(self, i: int, value: float) -> None:
        self._read_only("set_value_quietly()")

    def set_values(self, values) -> None:
        self._read_only("set_values()")

    def add_dimension(self, index: int, value: float) -> None:
        self._read_only("add_dimension()")

    def remove_dimension(self, index: int) -> float:
        self._read_only("remove_dimension()")

    def store_state(self) -> None:
        self._guard.store()

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self._product = None

    def accept_state(self) -> None:
        self._guard.release("accept_state")

    def columns(self) -> List[LogColumn]:
        return [
            LogColumn(f"{self.name}{i + 1}", lambda i=i: self.get_value(i))
            for i in range(self.dimension)
        ]
