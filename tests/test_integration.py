"""
tests/test_integration.py
=========================
Tests for the midpoint Riemann rule, the [0, inf) change of variables and
the rescaling integrand.

Overflow case
-------------
  numerator(x) = 1,  base(x) = 1e200 * (1 + x),  exponent = 5,  x in [0, 1]

  integral = 1e-1000 * (1 - 2**-4) / 4 = 1e-1000 * 0.234375

  base**5 overflows a double, so the scale must grow to about 1e139
  before a pass completes.
"""

import math
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from phylocache._errors import IntegrationOverflowError
from phylocache._integration import (
    InfiniteRangeTransform,
    RescalingIntegrand,
    RiemannApproximation,
    UnivariateFunction,
)


class TestRiemann:
    def test_square(self):
        f = UnivariateFunction(lambda x: x * x, 0.0, 1.0)
        assert RiemannApproximation(1000).integrate(f) == pytest.approx(1.0 / 3.0, rel=1e-6)

    def test_midpoint_exact_for_linear(self):
        f = UnivariateFunction(lambda x: 3.0 * x + 1.0, 0.0, 2.0)
        assert RiemannApproximation(1).integrate(f) == pytest.approx(8.0)

    def test_explicit_bounds(self):
        f = UnivariateFunction(math.cos)
        result = RiemannApproximation(2000).integrate(f, 0.0, math.pi / 2)
        assert result == pytest.approx(1.0, rel=1e-6)

    def test_needs_a_step(self):
        with pytest.raises(ValueError):
            RiemannApproximation(0)

    def test_infinite_bound_rejected(self):
        f = UnivariateFunction(lambda x: math.exp(-x))
        with pytest.raises(ValueError, match="InfiniteRangeTransform"):
            RiemannApproximation().integrate(f)


class TestInfiniteRange:
    def test_exponential(self):
        f = InfiniteRangeTransform(UnivariateFunction(lambda x: math.exp(-x)))
        assert f.lower_bound == 0.0
        assert f.upper_bound == 1.0
        assert RiemannApproximation(10000).integrate(f) == pytest.approx(1.0, rel=1e-6)

    def test_gamma_mean(self):
        # integral of x * exp(-x) over [0, inf) is 1
        f = InfiniteRangeTransform(UnivariateFunction(lambda x: x * math.exp(-x)))
        assert RiemannApproximation(10000).integrate(f) == pytest.approx(1.0, rel=1e-5)

    def test_lower_bound_must_be_zero(self):
        with pytest.raises(ValueError, match="lower bound of 0"):
            InfiniteRangeTransform(UnivariateFunction(lambda x: 1.0, 1.0))


class TestRescalingIntegrand:
    def test_no_overflow(self):
        g = RescalingIntegrand(lambda x: 1.0, lambda x: 1.0 + x, 2.0, upper_bound=1.0)
        assert g.log_integral(RiemannApproximation(1000)) == pytest.approx(
            math.log(0.5), abs=1e-6
        )
        assert g.scale == 1.0

    def test_overflow_rescales(self):
        g = RescalingIntegrand(lambda x: 1.0, lambda x: 1e200 * (1.0 + x), 5.0, upper_bound=1.0)
        value = g.log_integral(RiemannApproximation(1000))
        expected = -1000.0 * math.log(10.0) + math.log(0.234375)
        assert value == pytest.approx(expected, abs=1e-4)
        assert g.scale > 1.0
        assert not g.needs_rescaling

    def test_overflow_flag_short_circuits(self):
        g = RescalingIntegrand(lambda x: 1.0, lambda x: 1e200, 5.0, upper_bound=1.0)
        assert g.evaluate(0.5) == 0.0
        assert g.needs_rescaling
        g.scale = 1e150
        assert g.evaluate(0.5) == 0.0
        g.reset_rescaling()
        assert g.evaluate(0.5) == pytest.approx(1e-250)

    def test_max_rescales(self):
        g = RescalingIntegrand(lambda x: 1.0, lambda x: 1e200 * (1.0 + x), 5.0, upper_bound=1.0)
        with pytest.raises(IntegrationOverflowError):
            g.evaluate_integral(RiemannApproximation(100), max_rescales=10)

    def test_infinite_range(self):
        g = RescalingIntegrand(lambda x: math.exp(-x), lambda x: 1.0, 1.0)
        assert g.log_integral(RiemannApproximation(10000)) == pytest.approx(0.0, abs=1e-4)

    def test_infinite_range_needs_zero_start(self):
        g = RescalingIntegrand(lambda x: math.exp(-x), lambda x: 1.0, 1.0, lower_bound=1.0)
        with pytest.raises(ValueError, match="start at 0"):
            g.evaluate_integral(RiemannApproximation(10))
