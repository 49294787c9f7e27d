"""Individual plants.

One Individual class serves both evaluation modes. The source of its
rates is injected at construction:

  - ExactRates: physiology computed from the Strategy at every call.
  - SplineRates: RateSpline lookup at or below the spline's height_max,
    exact computation above it. The spline is resampled whenever it is
    asked for rates in an environment other than the one it was built in,
    so both paths see the same light and agree at height_max.

ODE state (3 values, in order): height, integrated mortality hazard,
integrated seed output.
"""

from __future__ import annotations

import dataclasses
from typing import Optional

import numpy as np

from treesim.environment import Environment
from treesim.ode import OdeTarget
from treesim.physiology import PlantVars, compute_vars_phys, compute_vars_size
from treesim.rate_spline import RateSpline
from treesim.strategy import Strategy


# ═══════════════════════════════════════════════════════════════════════
# RATE EVALUATORS
# ═══════════════════════════════════════════════════════════════════════

class ExactRates:
    """Rates from first principles."""
    is_approximate = False

    def compute(self, individual: 'Individual', environment: Environment) -> None:
        compute_vars_phys(individual.vars, individual.strategy, environment)

    def __repr__(self) -> str:
        return "ExactRates()"


class SplineRates:
    """Rates from a RateSpline, falling back to exact above height_max."""
    is_approximate = True

    def __init__(self, spline: RateSpline):
        self.spline = spline

    def compute(self, individual: 'Individual', environment: Environment) -> None:
        vars = individual.vars
        if vars.height > self.spline.height_max:
            compute_vars_phys(vars, individual.strategy, environment)
            return
        if self.spline.environment is not environment:
            self.spline.update_environment(environment)
        vars.clear_phys()
        growth, mortality, fecundity = self.spline.rates(vars.height)
        vars.height_growth_rate = float(growth)
        vars.mortality_rate = float(mortality)
        vars.fecundity_rate = float(fecundity)

    def __repr__(self) -> str:
        return f"SplineRates({self.spline!r})"


# ═══════════════════════════════════════════════════════════════════════
# INDIVIDUAL
# ═══════════════════════════════════════════════════════════════════════

class Individual(OdeTarget):
    """A single plant.

    Args:
        strategy: Shared Strategy (not copied).
        rates: Rate evaluator; ExactRates() if None.
        height: Initial height; the strategy's seed height if None.
    """

    ODE_SIZE = 3

    def __init__(self, strategy: Strategy, rates=None,
                 height: Optional[float] = None):
        self.strategy = strategy
        self.rate_evaluator = rates if rates is not None else ExactRates()
        self.vars = PlantVars()
        self.mortality = 0.0
        self.fecundity = 0.0
        self.environment: Optional[Environment] = None
        self.height = strategy.height_0 if height is None else height

    @classmethod
    def exact(cls, strategy: Strategy, height: Optional[float] = None) -> 'Individual':
        return cls(strategy, ExactRates(), height)

    @classmethod
    def approximate(cls, strategy: Strategy, spline: RateSpline,
                    height: Optional[float] = None) -> 'Individual':
        return cls(strategy, SplineRates(spline), height)

    @property
    def is_approximate(self) -> bool:
        return self.rate_evaluator.is_approximate

    @property
    def height(self) -> float:
        return self.vars.height

    @height.setter
    def height(self, value: float) -> None:
        if not value >= 0:
            raise ValueError(f"height must be non-negative, got {value}")
        compute_vars_size(self.vars, value, self.strategy)

    @property
    def leaf_area(self) -> float:
        return self.vars.area_leaf

    def compute_vars_phys(self, environment: Environment) -> None:
        """Recompute rates at the current height in the given environment."""
        self.environment = environment
        self.rate_evaluator.compute(self, environment)

    # ── ODE protocol ─────────────────────────────────────────────────

    def ode_size(self) -> int:
        return self.ODE_SIZE

    def ode_values(self, y, offset=0):
        y[offset] = self.height
        y[offset + 1] = self.mortality
        y[offset + 2] = self.fecundity
        return offset + 3

    def ode_values_set(self, y, offset=0):
        self.height = y[offset]
        self.mortality = y[offset + 1]
        self.fecundity = y[offset + 2]
        return offset + 3

    def ode_rates(self, dydt, offset=0):
        dydt[offset] = self.vars.height_growth_rate
        dydt[offset + 1] = self.vars.mortality_rate
        dydt[offset + 2] = self.vars.fecundity_rate
        return offset + 3

    def compute_rates(self, time, values):
        """Set the state and return rates in the last environment seen.

        Species and Patch recompute physiology for their members; this
        lets a lone Individual be driven by OdeSolver directly.

        Raises:
            RuntimeError: If compute_vars_phys() has never been called.
        """
        if self.environment is None:
            raise RuntimeError(
                "Individual has no environment; call compute_vars_phys first")
        self.write_values(values)
        self.compute_vars_phys(self.environment)
        dydt = np.empty(self.ODE_SIZE, dtype=np.float64)
        self.ode_rates(dydt, 0)
        return dydt

    # ── Demography ───────────────────────────────────────────────────

    def offspring(self) -> int:
        """Remove and return the whole seeds accumulated so far."""
        n = int(self.fecundity)
        self.fecundity -= n
        return n

    def died(self, rng: np.random.Generator) -> bool:
        """Draw death from the accumulated hazard, then reset the hazard.

        Dies with probability 1 − exp(−mortality).
        """
        dead = rng.random() > np.exp(-self.mortality)
        self.mortality = 0.0
        return bool(dead)

    def copy(self) -> 'Individual':
        """Copy sharing the Strategy and rate evaluator."""
        other = Individual(self.strategy, self.rate_evaluator, self.height)
        other.mortality = self.mortality
        other.fecundity = self.fecundity
        other.vars = dataclasses.replace(self.vars)
        other.environment = self.environment
        return other

    def __repr__(self) -> str:
        kind = "approximate" if self.is_approximate else "exact"
        return (f"Individual({kind}, height={self.height:.4g}, "
                f"mortality={self.mortality:.4g}, fecundity={self.fecundity:.4g})")
