"""Metacommunity: patches sharing one set of strategies and one clock.

A full step has two phases, always in this order:

  1. Deterministic: one adaptive ODE step over the concatenated state of
     every patch; age advances by the accepted step size.
  2. Stochastic: deaths in every patch, then the community-wide seed
     output of each species is partitioned across patches.

Random draws come from one Generator shared by every patch and are
consumed in patch → species → individual order, so a run is reproducible
from its seed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from treesim.config import Control
from treesim.errors import IndexOutOfRangeError, ShapeMismatchError
from treesim.ode import OdeSolver, OdeTarget
from treesim.patch import Patch
from treesim.rate_spline import RateSpline
from treesim.rng import create_rng
from treesim.strategy import Strategy

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# PARAMETERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Parameters:
    """Configuration shared by every patch of a metacommunity.

    The ``control`` options are pushed into each strategy on construction
    (and by :meth:`add_strategy`) so that all strategies integrate with
    the same tolerances.
    """
    strategies: List[Strategy] = field(default_factory=list)
    n_patches: int = 1
    c_ext: float = 0.5
    patch_area: float = 1.0
    approximate: bool = False
    control: Control = field(default_factory=Control)
    _splines: Dict[int, RateSpline] = field(default_factory=dict, init=False,
                                            repr=False, compare=False)

    def __post_init__(self):
        if self.n_patches < 1:
            raise ValueError(f"n_patches must be >= 1, got {self.n_patches}")
        if self.patch_area <= 0:
            raise ValueError("patch_area must be positive")
        for strategy in self.strategies:
            strategy.set_control(self.control)

    @property
    def n_species(self) -> int:
        return len(self.strategies)

    def add_strategy(self, strategy: Strategy) -> None:
        strategy.set_control(self.control)
        self.strategies.append(strategy)

    def rate_spline(self, index: int) -> RateSpline:
        """Open-sky spline for strategy ``index``, built on first request.

        Patches take copies of it and refit them to their own canopy.
        """
        if not 0 <= index < len(self.strategies):
            raise IndexOutOfRangeError(index, len(self.strategies), "species")
        if index not in self._splines:
            logger.debug("building rate spline for species %d", index)
            self._splines[index] = RateSpline.build(self.strategies[index],
                                                    self.control)
        return self._splines[index]


# ═══════════════════════════════════════════════════════════════════════
# METACOMMUNITY
# ═══════════════════════════════════════════════════════════════════════

class Metacommunity(OdeTarget):
    """Ordered patches, one ODE solver and the simulation clock.

    Args:
        parameters: Strategies, patch count and numerical control.
        rng: Shared random source; a fresh seed-0 Generator if None.
    """

    def __init__(self, parameters: Parameters,
                 rng: Optional[np.random.Generator] = None):
        self.parameters = parameters
        self._rng = rng if rng is not None else create_rng(0)
        self.patches: List[Patch] = [Patch(parameters, self._rng)
                                     for _ in range(parameters.n_patches)]
        self.solver = OdeSolver(self, parameters.control)
        self.age = 0.0

    @property
    def rng(self) -> np.random.Generator:
        return self._rng

    @rng.setter
    def rng(self, rng: np.random.Generator) -> None:
        self._rng = rng
        for patch in self.patches:
            patch.rng = rng

    def size(self) -> int:
        return len(self.patches)

    @property
    def n_species(self) -> int:
        return self.parameters.n_species

    def at(self, index: int) -> Patch:
        if not 0 <= index < len(self.patches):
            raise IndexOutOfRangeError(index, len(self.patches), "patch")
        return self.patches[index]

    # ── Stepping ─────────────────────────────────────────────────────

    def step(self) -> None:
        """One deterministic step followed by the stochastic phase."""
        self.step_deterministic()
        self.step_stochastic()

    def step_deterministic(self) -> None:
        """Advance every individual by one adaptive ODE step."""
        self.solver.set_state(self.read_values(), self.age)
        self.solver.step()
        logger.debug("deterministic step: age %.6g -> %.6g (%d states)",
                     self.age, self.solver.time, len(self.solver.values))
        self.age = self.solver.time

    def step_stochastic(self) -> None:
        """Apply deaths, then disperse the seeds produced."""
        dead = self.deaths()
        seeds = self.births()
        self.add_seeds(seeds)
        logger.debug("stochastic step at age %.6g: deaths=%s seeds=%s",
                     self.age, dead.tolist(), seeds.tolist())

    # ── Demography ───────────────────────────────────────────────────

    def births(self) -> np.ndarray:
        """Community-wide whole seeds per species, collected from patches."""
        total = np.zeros(self.n_species, dtype=np.int64)
        for patch in self.patches:
            total += patch.births()
        return total

    def deaths(self) -> np.ndarray:
        """Death draws in every patch; returns deaths per species."""
        total = np.zeros(self.n_species, dtype=np.int64)
        for patch in self.patches:
            total += patch.deaths()
        return total

    def add_seeds(self, seeds) -> None:
        """Partition per-species seed totals across patches.

        Patch i receives Binomial(remaining, 1 / (n_patches − i)) seeds of
        each species, so the last patch takes whatever is left and the
        totals are conserved exactly.

        Raises:
            ShapeMismatchError: If len(seeds) differs from the species count.
            ValueError: If any count is negative.
        """
        remaining = np.array(seeds, dtype=np.int64)
        if remaining.shape != (self.n_species,):
            raise ShapeMismatchError(
                f"Expected {self.n_species} seed totals, got shape {remaining.shape}"
            )
        if np.any(remaining < 0):
            raise ValueError(f"Seed counts must be non-negative, got {remaining.tolist()}")
        n = len(self.patches)
        for i, patch in enumerate(self.patches):
            p = 1.0 / (n - i)
            counts = np.array([self.rng.binomial(r, p) for r in remaining],
                              dtype=np.int64)
            remaining -= counts
            patch.add_seeds(counts)

    def add_seedlings(self, counts) -> None:
        """Add counts[species, patch] seedlings directly.

        Raises:
            ShapeMismatchError: If counts is not (n_species, n_patches).
            ValueError: If any count is negative.
        """
        counts = np.asarray(counts)
        expected = (self.n_species, len(self.patches))
        if counts.shape != expected:
            raise ShapeMismatchError(
                f"Expected seedling table of shape {expected}, got {counts.shape}"
            )
        if np.any(counts < 0):
            raise ValueError("Seedling counts must be non-negative")
        for j, patch in enumerate(self.patches):
            patch.add_seeds(counts[:, j])

    def n_individuals(self) -> np.ndarray:
        """Individual counts, shape (n_species, n_patches)."""
        if not self.patches:
            return np.zeros((self.n_species, 0), dtype=np.int64)
        return np.column_stack([p.n_individuals_by_species() for p in self.patches])

    def r_clear(self) -> None:
        """Back to age 0 with empty patches and a fresh solver state."""
        self.age = 0.0
        for patch in self.patches:
            patch.clear()
        self.solver.reset()

    # ── ODE protocol ─────────────────────────────────────────────────

    def ode_size(self) -> int:
        return sum(p.ode_size() for p in self.patches)

    def ode_values(self, y, offset=0):
        for patch in self.patches:
            offset = patch.ode_values(y, offset)
        return offset

    def ode_values_set(self, y, offset=0):
        for patch in self.patches:
            offset = patch.ode_values_set(y, offset)
        return offset

    def ode_rates(self, dydt, offset=0):
        for patch in self.patches:
            offset = patch.ode_rates(dydt, offset)
        return offset

    def derivs(self, time: float, y) -> np.ndarray:
        """Rates at state y (the state is left set to y)."""
        return self.compute_rates(time, y)

    def __repr__(self) -> str:
        return (f"Metacommunity(n_patches={len(self.patches)}, "
                f"n_species={self.n_species}, age={self.age:.4g})")
