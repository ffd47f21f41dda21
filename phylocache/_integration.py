"""
_integration.py
===============
Fixed-step quadrature for univariate integrands, with a change of variables
for ``[0, inf)`` and automatic rescaling of integrands whose denominator
overflows.

    integrand = numerator(x) / (base(x) / scale) ** exponent

When the denominator overflows the integrand raises its needs-rescaling
flag, the integral restarts with ``scale *= 10``, and the true integral is
recovered as ``result / scale ** exponent`` (in log space by
``log_integral``).
"""

import logging
import math
from typing import Callable, Protocol, runtime_checkable

import numpy as np

from phylocache._errors import IntegrationOverflowError

logger = logging.getLogger(__name__)

SCALE_GROWTH = 10.0


@runtime_checkable
class IntegrableUnivariateFunction(Protocol):
    lower_bound: float
    upper_bound: float

    def evaluate(self, x: float) -> float:
        ...


class RiemannApproximation:
    """
    Composite midpoint rule with a fixed number of steps.

    Parameters
    ----------
    steps : int, default 50

    Examples
    --------
    >>> f = UnivariateFunction(lambda x: x * x, 0.0, 1.0)
    >>> round(RiemannApproximation(1000).integrate(f), 6)
    0.333333
    """

    def __init__(self, steps: int = 50):
        if steps < 1:
            raise ValueError("RiemannApproximation needs at least one step")
        self.steps = int(steps)

    def integrate(self, function, lower: float = None, upper: float = None) -> float:
        """
        Integrate *function* over ``[lower, upper]`` (its own bounds by default).

        Raises
        ------
        ValueError
            If a bound is infinite; wrap the function in
            ``InfiniteRangeTransform`` first.
        """
        a = function.lower_bound if lower is None else lower
        b = function.upper_bound if upper is None else upper
        if math.isinf(a) or math.isinf(b):
            raise ValueError(
                f"Cannot integrate over [{a}, {b}] with a fixed step; "
                f"use InfiniteRangeTransform for an infinite upper bound."
            )
        h = (b - a) / self.steps
        total = 0.0
        for i in range(self.steps):
            total += function.evaluate(a + (i + 0.5) * h)
        return total * h


class UnivariateFunction:
    """Adapter giving a plain callable the integrable interface."""

    def __init__(self, f: Callable[[float], float], lower_bound: float = 0.0,
                 upper_bound: float = math.inf):
        self.f = f
        self.lower_bound = lower_bound
        self.upper_bound = upper_bound

    def evaluate(self, x: float) -> float:
        return self.f(x)


class InfiniteRangeTransform:
    """
    ``[0, inf)`` integrand mapped onto ``(0, 1]`` by ``x = 1/t - 1``.

    ``integral_0^inf f(x) dx == integral_0^1 f(1/t - 1) / t**2 dt``
    """

    lower_bound = 0.0
    upper_bound = 1.0

    def __init__(self, function):
        if function.lower_bound != 0.0:
            raise ValueError(
                f"InfiniteRangeTransform expects a lower bound of 0, got "
                f"{function.lower_bound}"
            )
        self.function = function

    def evaluate(self, t: float) -> float:
        return self.function.evaluate(1.0 / t - 1.0) / (t * t)


class RescalingIntegrand:
    """
    ``numerator(x) / (base(x) / scale) ** exponent`` with overflow detection.

    Parameters
    ----------
    numerator, base : callable
        Functions of one float.
    exponent : float
    lower_bound, upper_bound : float
        Integration range; an infinite upper bound is integrated through
        ``InfiniteRangeTransform``.

    Attributes
    ----------
    scale : float
        Current scale factor, starting at 1.
    needs_rescaling : bool
        Set when an evaluation overflowed; later evaluations return 0 until
        ``reset_rescaling()``.

    Examples
    --------
    >>> g = RescalingIntegrand(lambda x: 1.0, lambda x: 1e200 * (1.0 + x), 5.0,
    ...                        upper_bound=1.0)
    >>> g.log_integral(RiemannApproximation(100))  # doctest: +SKIP
    -2304.03...
    """

    def __init__(self, numerator: Callable[[float], float], base: Callable[[float], float],
                 exponent: float, lower_bound: float = 0.0, upper_bound: float = math.inf):
        self.numerator = numerator
        self.base = base
        self.exponent = float(exponent)
        self.lower_bound = lower_bound
        self.upper_bound = upper_bound
        self.scale = 1.0
        self.needs_rescaling = False

    def reset_rescaling(self) -> None:
        self.needs_rescaling = False

    def evaluate(self, x: float) -> float:
        if self.needs_rescaling:
            return 0.0
        with np.errstate(over="ignore"):
            denominator = np.power(np.float64(self.base(x)) / self.scale, self.exponent)
        if np.isinf(denominator):
            self.needs_rescaling = True
            return 0.0
        return float(self.numerator(x) / denominator)

    def evaluate_integral(self, integrator: RiemannApproximation, lower: float = None,
                          upper: float = None, max_rescales: int = 1000) -> float:
        """
        Integral of the scaled integrand, growing ``scale`` by 10 and
        restarting until a pass completes without overflow.

        Raises
        ------
        IntegrationOverflowError
            After *max_rescales* restarts.
        """
        a = self.lower_bound if lower is None else lower
        b = self.upper_bound if upper is None else upper
        if math.isinf(b):
            if a != 0.0:
                raise ValueError(f"An infinite range must start at 0, got {a}")
            target, a, b = InfiniteRangeTransform(self), 0.0, 1.0
        else:
            target = self

        for attempt in range(max_rescales + 1):
            self.reset_rescaling()
            result = integrator.integrate(target, a, b)
            if not self.needs_rescaling:
                if attempt:
                    logger.debug(
                        "Integral converged after %d rescales (scale=%g)", attempt, self.scale
                    )
                return result
            self.scale *= SCALE_GROWTH
        raise IntegrationOverflowError(
            f"Integrand still overflows after {max_rescales} rescales "
            f"(scale={self.scale:g})."
        )

    def log_integral(self, integrator: RiemannApproximation, lower: float = None,
                     upper: float = None, max_rescales: int = 1000) -> float:
        """Log of the unscaled integral: ``log(result) - exponent * log(scale)``."""
        result = self.evaluate_integral(integrator, lower, upper, max_rescales)
        with np.errstate(divide="ignore"):
            return float(np.log(result)) - self.exponent * math.log(self.scale)
