"""Cubic-spline approximation of a Strategy's rates against height.

Small individuals are numerous and their exact rates need a quadrature
per evaluation. A RateSpline samples the exact model over
[height_0, height_max] in one light environment and answers later
lookups by interpolation. Knots are refined where the interpolant
disagrees with the exact model at interval midpoints, so the knot at
height_max (and every other knot) reproduces the exact rates.

Rates depend on the light environment, so a spline is only valid for
the environment it was sampled in. :meth:`RateSpline.update_environment`
resamples in place; every individual holding the spline then follows.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from scipy.interpolate import CubicSpline

from treesim.config import Control
from treesim.environment import Environment, FixedEnvironment
from treesim.physiology import rates_at
from treesim.strategy import Strategy

logger = logging.getLogger(__name__)


def _sample(strategy: Strategy, control: Control, environment: Environment,
            unconverged_level: int = logging.WARNING):
    """Knot heights and exact rates, refined at midpoints."""
    h_min = strategy.height_0
    h_max = control.plant_spline_height_max
    if h_max is None:
        h_max = strategy.hmat / 2.0
    if not h_max > h_min:
        raise ValueError(
            f"Spline height_max ({h_max:.4g}) must exceed seed height "
            f"({h_min:.4g})"
        )

    def exact(hs):
        return np.array([rates_at(h, strategy, environment) for h in hs])

    heights = np.linspace(h_min, h_max, control.plant_spline_n_points)
    values = exact(heights)

    for round_ in range(control.plant_spline_max_refinements):
        spline = CubicSpline(heights, values, axis=0)
        mids = 0.5 * (heights[:-1] + heights[1:])
        mid_exact = exact(mids)
        err = np.abs(spline(mids) - mid_exact)
        allowed = control.plant_spline_tol * (1.0 + np.abs(mid_exact))
        bad = np.any(err > allowed, axis=1)
        if not bad.any():
            break
        heights = np.concatenate([heights, mids[bad]])
        values = np.concatenate([values, mid_exact[bad]])
        order = np.argsort(heights)
        heights, values = heights[order], values[order]
        logger.debug("spline refinement %d: %d new knots (%d total)",
                     round_ + 1, int(bad.sum()), len(heights))
    else:
        if control.plant_spline_max_refinements > 0:
            logger.log(
                unconverged_level,
                "Rate spline for hmat=%g stopped after %d refinements "
                "with %d knots", strategy.hmat,
                control.plant_spline_max_refinements, len(heights))
    return heights, values


class RateSpline:
    """Interpolant of [height growth, mortality, fecundity] rates.

    Use :meth:`build` rather than calling the constructor directly.

    Attributes:
        heights: Knot heights, increasing.
        values: Exact rates at the knots, shape (n_knots, 3).
        environment: Environment the rates were sampled in.
    """

    def __init__(self, strategy: Strategy, control: Control,
                 environment: Environment, heights, values):
        self.strategy = strategy
        self.control = control
        self._set(environment, heights, values)

    def _set(self, environment: Environment, heights, values) -> None:
        self.environment = environment
        self.heights = np.asarray(heights, dtype=np.float64)
        self.values = np.asarray(values, dtype=np.float64)
        self._spline = CubicSpline(self.heights, self.values, axis=0)

    @classmethod
    def build(cls, strategy: Strategy, control: Optional[Control] = None,
              environment: Optional[Environment] = None) -> 'RateSpline':
        """Sample the exact model and fit the spline.

        Args:
            strategy: Strategy whose exact rates are approximated.
            control: Spline options; defaults to ``strategy.control``.
            environment: Light environment to sample in; open sky if None.

        Raises:
            ValueError: If height_max does not exceed the seed height.
        """
        control = control if control is not None else strategy.control
        environment = environment if environment is not None else FixedEnvironment(1.0)
        heights, values = _sample(strategy, control, environment)
        return cls(strategy, control, environment, heights, values)

    @property
    def height_min(self) -> float:
        return float(self.heights[0])

    @property
    def height_max(self) -> float:
        return float(self.heights[-1])

    def rates(self, height: float) -> np.ndarray:
        """Interpolated rates at height (must be <= height_max)."""
        return self._spline(height)

    def refit(self, environment: Environment) -> 'RateSpline':
        """Build a new spline for the same strategy in another environment."""
        return RateSpline.build(self.strategy, self.control, environment)

    def update_environment(self, environment: Environment) -> None:
        """Resample this spline in place for a new environment.

        A failure leaves the spline as it was.
        """
        # Runs on every canopy rebuild; unconverged refits log at DEBUG
        heights, values = _sample(self.strategy, self.control, environment,
                                  unconverged_level=logging.DEBUG)
        self._set(environment, heights, values)

    def copy(self) -> 'RateSpline':
        """Independent spline with the same knots and environment."""
        return RateSpline(self.strategy, self.control, self.environment,
                          self.heights.copy(), self.values.copy())

    def __len__(self) -> int:
        return len(self.heights)

    def __repr__(self) -> str:
        return (f"RateSpline(n_knots={len(self.heights)}, "
                f"height=[{self.height_min:.4g}, {self.height_max:.4g}])")
