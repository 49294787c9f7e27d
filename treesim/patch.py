"""Patches and their per-species sub-populations.

A Patch holds one Species per strategy, in strategy order, and every
Species holds its individuals in insertion order. That order is the ODE
concatenation order and the order random draws are consumed in:

    patch state = [species 0: ind 0, ind 1, ...][species 1: ...] ...

The light environment is shared by all individuals of a patch and is
rebuilt from their crowns every time new state values are written. In
approximate mode every Species holds its own RateSpline, resampled in
that environment when its individuals next compute their rates.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

import numpy as np

from treesim.environment import CanopyEnvironment, Environment
from treesim.errors import IndexOutOfRangeError, ShapeMismatchError
from treesim.individual import Individual
from treesim.ode import OdeTarget
from treesim.rate_spline import RateSpline
from treesim.strategy import Strategy

if TYPE_CHECKING:
    from treesim.metacommunity import Parameters

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# SPECIES
# ═══════════════════════════════════════════════════════════════════════

class Species(OdeTarget):
    """Individuals of one strategy within one patch.

    Args:
        strategy: Shared Strategy for every individual.
        rate_spline: If given, new individuals are approximate.
    """

    def __init__(self, strategy: Strategy, rate_spline: Optional[RateSpline] = None):
        self.strategy = strategy
        self.rate_spline = rate_spline
        self.individuals: List[Individual] = []

    def size(self) -> int:
        return len(self.individuals)

    def __len__(self) -> int:
        return len(self.individuals)

    def new_individual(self) -> Individual:
        if self.rate_spline is not None:
            return Individual.approximate(self.strategy, self.rate_spline)
        return Individual.exact(self.strategy)

    def add_seeds(self, n: int) -> None:
        """Append n individuals at the seed height."""
        for _ in range(n):
            self.individuals.append(self.new_individual())

    def births(self) -> int:
        return sum(ind.offspring() for ind in self.individuals)

    def deaths(self, rng: np.random.Generator) -> int:
        """Remove the individuals that die; survivors keep their order."""
        survivors = [ind for ind in self.individuals if not ind.died(rng)]
        n_dead = len(self.individuals) - len(survivors)
        self.individuals = survivors
        return n_dead

    def clear(self) -> None:
        self.individuals = []

    def heights(self) -> np.ndarray:
        return np.array([ind.height for ind in self.individuals], dtype=np.float64)

    def leaf_areas(self) -> np.ndarray:
        return np.array([ind.leaf_area for ind in self.individuals], dtype=np.float64)

    def compute_vars_phys(self, environment: Environment) -> None:
        for ind in self.individuals:
            ind.compute_vars_phys(environment)

    # ODE protocol
    def ode_size(self) -> int:
        return Individual.ODE_SIZE * len(self.individuals)

    def ode_values(self, y, offset=0):
        for ind in self.individuals:
            offset = ind.ode_values(y, offset)
        return offset

    def ode_values_set(self, y, offset=0):
        for ind in self.individuals:
            offset = ind.ode_values_set(y, offset)
        return offset

    def ode_rates(self, dydt, offset=0):
        for ind in self.individuals:
            offset = ind.ode_rates(dydt, offset)
        return offset

    def __repr__(self) -> str:
        return f"Species(n={len(self.individuals)}, hmat={self.strategy.hmat:g})"


# ═══════════════════════════════════════════════════════════════════════
# PATCH
# ═══════════════════════════════════════════════════════════════════════

class Patch(OdeTarget):
    """One spatial replicate of the metacommunity.

    Args:
        parameters: Shared metacommunity Parameters.
        rng: Random source for death draws; shared with the other patches.
    """

    def __init__(self, parameters: Parameters,
                 rng: Optional[np.random.Generator] = None):
        self.parameters = parameters
        self.rng = rng
        self.species: List[Species] = []
        for i, strategy in enumerate(parameters.strategies):
            # Each patch refits its own splines to its own canopy
            spline = parameters.rate_spline(i).copy() if parameters.approximate else None
            self.species.append(Species(strategy, spline))
        self.environment: Environment = CanopyEnvironment([], [], [],
                                                          parameters.c_ext,
                                                          parameters.patch_area)

    @property
    def n_species(self) -> int:
        return len(self.species)

    def at(self, species_index: int) -> Species:
        if not 0 <= species_index < len(self.species):
            raise IndexOutOfRangeError(species_index, len(self.species), "species")
        return self.species[species_index]

    def n_individuals(self) -> int:
        return sum(sp.size() for sp in self.species)

    def n_individuals_by_species(self) -> np.ndarray:
        return np.array([sp.size() for sp in self.species], dtype=np.int64)

    # ── Demography ───────────────────────────────────────────────────

    def births(self) -> np.ndarray:
        """Whole seeds produced since the last call, per species."""
        return np.array([sp.births() for sp in self.species], dtype=np.int64)

    def deaths(self) -> np.ndarray:
        """Apply death draws to every individual; return deaths per species."""
        if self.rng is None:
            raise RuntimeError("Patch has no random source; set patch.rng first")
        return np.array([sp.deaths(self.rng) for sp in self.species], dtype=np.int64)

    def add_seeds(self, counts) -> None:
        """Add counts[i] seedlings of species i.

        Raises:
            ShapeMismatchError: If len(counts) differs from the species count.
            ValueError: If any count is negative.
        """
        counts = np.asarray(counts)
        if counts.shape != (len(self.species),):
            raise ShapeMismatchError(
                f"Expected {len(self.species)} seed counts, got shape {counts.shape}"
            )
        if np.any(counts < 0):
            raise ValueError(f"Seed counts must be non-negative, got {counts.tolist()}")
        for sp, n in zip(self.species, counts):
            sp.add_seeds(int(n))

    def clear(self) -> None:
        for sp in self.species:
            sp.clear()
        self.compute_light_environment()

    # ── Environment ──────────────────────────────────────────────────

    def compute_light_environment(self) -> None:
        """Rebuild the canopy from the current crowns."""
        heights, leaf_areas, etas = [], [], []
        for sp in self.species:
            heights.append(sp.heights())
            leaf_areas.append(sp.leaf_areas())
            etas.append(np.full(sp.size(), sp.strategy.eta))
        self.environment = CanopyEnvironment.from_individuals(
            np.concatenate(heights) if heights else [],
            np.concatenate(leaf_areas) if leaf_areas else [],
            np.concatenate(etas) if etas else [],
            c_ext=self.parameters.c_ext,
            patch_area=self.parameters.patch_area,
        )

    def compute_vars_phys(self) -> None:
        for sp in self.species:
            sp.compute_vars_phys(self.environment)

    # ── ODE protocol ─────────────────────────────────────────────────

    def ode_size(self) -> int:
        return sum(sp.ode_size() for sp in self.species)

    def ode_values(self, y, offset=0):
        for sp in self.species:
            offset = sp.ode_values(y, offset)
        return offset

    def ode_values_set(self, y, offset=0):
        for sp in self.species:
            offset = sp.ode_values_set(y, offset)
        self.compute_light_environment()
        self.compute_vars_phys()
        return offset

    def ode_rates(self, dydt, offset=0):
        for sp in self.species:
            offset = sp.ode_rates(dydt, offset)
        return offset

    def __repr__(self) -> str:
        return f"Patch(species={self.n_individuals_by_species().tolist()})"
