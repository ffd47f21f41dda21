"""
tests/test_parameter.py
=======================
Tests for Parameter and the read-only MatrixProductParameter.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from phylocache._errors import ReadOnlyParameterError, StateError
from phylocache._model import ChangeKind
from phylocache._parameter import MatrixProductParameter, Parameter


class Recorder:
    """Collects every change event it receives."""

    def __init__(self):
        self.events = []

    def on_changed(self, source, index, kind):
        self.events.append((source, index, kind))


# ======================================================================== #
# Parameter                                                                 #
# ======================================================================== #


class TestParameterValues:
    def test_scalar(self):
        p = Parameter("kappa", 2.0)
        assert p.dimension == 1
        assert p.get_value() == 2.0
        assert p.shape == (1, 1)

    def test_vector(self):
        p = Parameter("freqs", [0.1, 0.2, 0.3, 0.4])
        assert p.dimension == 4
        assert list(p.values) == [0.1, 0.2, 0.3, 0.4]

    def test_values_is_a_copy(self):
        p = Parameter("x", [1.0, 2.0])
        v = p.values
        v[0] = 99.0
        assert p.get_value(0) == 1.0

    def test_matrix_view(self):
        p = Parameter("m", [1, 2, 3, 4, 5, 6], shape=(2, 3))
        assert p.row_dimension == 2
        assert p.column_dimension == 3
        assert p.get_value_2d(1, 0) == 4.0
        assert np.array_equal(p.as_matrix(), [[1, 2, 3], [4, 5, 6]])

    def test_bad_shape(self):
        with pytest.raises(ValueError, match="does not match"):
            Parameter("m", [1, 2, 3], shape=(2, 2))

    def test_bounds(self):
        p = Parameter("rate", 0.5, lower=0.0, upper=1.0)
        assert p.is_within_bounds()
        p.set_value(0, 1.5)
        assert not p.is_within_bounds()


class TestParameterEvents:
    def test_set_value_event(self):
        p = Parameter("x", [1.0, 2.0, 3.0])
        rec = Recorder()
        p.add_listener(rec)
        p.set_value(1, 5.0)
        assert rec.events == [(p, 1, ChangeKind.VALUE)]

    def test_set_values_event(self):
        p = Parameter("x", [1.0, 2.0])
        rec = Recorder()
        p.add_listener(rec)
        p.set_values([3.0, 4.0])
        assert rec.events == [(p, -1, ChangeKind.VALUE)]
        assert list(p.values) == [3.0, 4.0]

    def test_set_values_wrong_dimension(self):
        p = Parameter("x", [1.0, 2.0])
        with pytest.raises(ValueError, match="dimension"):
            p.set_values([1.0])

    def test_quiet_then_fire(self):
        p = Parameter("x", [1.0, 2.0])
        rec = Recorder()
        p.add_listener(rec)
        p.set_value_quietly(0, 7.0)
        p.set_value_quietly(1, 8.0)
        assert rec.events == []
        p.fire_changed()
        assert rec.events == [(p, -1, ChangeKind.VALUE)]

    def test_listener_added_once(self):
        p = Parameter("x", 1.0)
        rec = Recorder()
        p.add_listener(rec)
        p.add_listener(rec)
        p.set_value(0, 2.0)
        assert len(rec.events) == 1


class TestParameterState:
    def test_restore(self):
        p = Parameter("x", [1.0, 2.0])
        p.store_state()
        p.set_values([5.0, 6.0])
        p.restore_state()
        assert list(p.values) == [1.0, 2.0]

    def test_accept(self):
        p = Parameter("x", [1.0, 2.0])
        p.store_state()
        p.set_value(0, 5.0)
        p.accept_state()
        assert p.get_value(0) == 5.0

    def test_restore_fires_nothing(self):
        p = Parameter("x", 1.0)
        rec = Recorder()
        p.store_state()
        p.set_value(0, 2.0)
        p.add_listener(rec)
        p.restore_state()
        assert rec.events == []

    def test_double_store(self):
        p = Parameter("x", 1.0)
        p.store_state()
        with pytest.raises(StateError, match="store_state"):
            p.store_state()

    def test_restore_without_store(self):
        p = Parameter("x", 1.0)
        with pytest.raises(StateError, match="restore_state"):
            p.restore_state()

    def test_columns(self):
        assert [c.name for c in Parameter("alpha", 0.5).columns()] == ["alpha"]
        cols = Parameter("pi", [0.3, 0.7]).columns()
        assert [c.name for c in cols] == ["pi1", "pi2"]
        assert cols[1].value() == 0.7


# ======================================================================== #
# MatrixProductParameter                                                    #
# ======================================================================== #


@pytest.fixture
def product():
    left = Parameter("L", [1, 2, 3, 4], shape=(2, 2))
    right = Parameter("R", [1, 1], shape=(2, 1))
    return MatrixProductParameter("prod", left, right)


class TestMatrixProduct:
    def test_values(self, product):
        assert product.shape == (2, 1)
        assert product.dimension == 2
        assert list(product.values) == [3.0, 7.0]
        assert product.get_value_2d(1, 0) == 7.0

    def test_inner_dimension_mismatch(self):
        left = Parameter("L", [1, 2, 3], shape=(1, 3))
        right = Parameter("R", [1, 2], shape=(2, 1))
        with pytest.raises(ValueError, match="Cannot multiply"):
            MatrixProductParameter("bad", left, right)

    def test_operand_change_recomputes_and_forwards(self, product):
        rec = Recorder()
        product.add_listener(rec)
        product.left.set_value(0, 10.0)
        assert list(product.values) == [12.0, 7.0]
        assert rec.events == [(product, -1, ChangeKind.VALUE)]

    @pytest.mark.parametrize(
        "call",
        [
            lambda p: p.set_value(0, 1.0),
            lambda p: p.set_value_quietly(0, 1.0),
            lambda p: p.set_values([1.0, 2.0]),
            lambda p: p.add_dimension(0, 1.0),
            lambda p: p.remove_dimension(0),
        ],
    )
    def test_setters_are_read_only(self, product, call):
        with pytest.raises(ReadOnlyParameterError):
            call(product)

    def test_read_only_message(self, product):
        with pytest.raises(ReadOnlyParameterError) as info:
            product.set_value(0, 1.0)
        assert str(info.value) == (
            "Object prod is a deterministic function. Calling set_value() is not allowed"
        )
        assert isinstance(info.value, TypeError)

    def test_restore_drops_cache(self, product):
        product.store_state()
        product.left.store_state()
        product.left.set_value(0, 10.0)
        assert product.get_value(0) == 12.0
        product.left.restore_state()
        product.restore_state()
        assert product.get_value(0) == 3.0

    def test_columns(self, product):
        assert [c.name for c in product.columns()] == ["prod1", "prod2"]
