"""Configuration-driven simulation runs.

Builds Parameters and a Metacommunity from a SimulationConfig, seeds the
initial seedlings and steps until ``t_max`` (or ``max_steps``), recording
the age and species × patch counts after every full step.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from treesim.config import SimulationConfig, default_config
from treesim.metacommunity import Metacommunity, Parameters
from treesim.rng import create_rng, spawn_rngs
from treesim.strategy import Strategy

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

def build_parameters(config: SimulationConfig) -> Parameters:
    """Strategies (defaults + per-species overrides) and patch settings.

    Raises:
        UnknownParameterError: If a strategy override names an unknown trait.
        ParameterValueError: If a strategy override is out of domain.
    """
    strategies = []
    for overrides in config.strategies:
        strategy = Strategy(control=config.control)
        if overrides:
            strategy.set_many(overrides)
        strategies.append(strategy)
    mc = config.metacommunity
    return Parameters(
        strategies=strategies,
        n_patches=mc.n_patches,
        c_ext=mc.c_ext,
        patch_area=mc.patch_area,
        approximate=config.simulation.approximate,
        control=config.control,
    )


def build_metacommunity(config: SimulationConfig,
                        rng: Optional[np.random.Generator] = None) -> Metacommunity:
    """Metacommunity with ``initial_seedlings`` per species per patch."""
    if rng is None:
        rng = create_rng(config.simulation.seed)
    parameters = build_parameters(config)
    metacommunity = Metacommunity(parameters, rng)
    n0 = config.simulation.initial_seedlings
    if n0 > 0:
        metacommunity.add_seedlings(
            np.full((parameters.n_species, parameters.n_patches), n0, dtype=np.int64)
        )
    return metacommunity


# ═══════════════════════════════════════════════════════════════════════
# RUNS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResult:
    """Results of one run.

    Row 0 of every timeseries is the initial state; row k is the state
    after the k-th full step.
    """
    n_steps: int = 0
    ages: Optional[np.ndarray] = None              # (n_steps + 1,)
    n_individuals: Optional[np.ndarray] = None     # (n_steps + 1, n_species, n_patches)
    seed_output: Optional[np.ndarray] = None       # (n_steps, n_species)
    deaths: Optional[np.ndarray] = None            # (n_steps, n_species)
    # Summary
    final_age: float = 0.0
    reached_t_max: bool = False
    elapsed_seconds: float = 0.0

    @property
    def total_individuals(self) -> Optional[np.ndarray]:
        """Community size after each step, shape (n_steps + 1,)."""
        if self.n_individuals is None:
            return None
        return self.n_individuals.sum(axis=(1, 2))


def run_simulation(config: Optional[SimulationConfig] = None,
                   rng: Optional[np.random.Generator] = None,
                   progress_callback=None) -> SimulationResult:
    """Step a freshly built metacommunity until simulation.t_max.

    Args:
        config: SimulationConfig; uses default if None.
        rng: Random source; created from simulation.seed if None.
        progress_callback: Optional callable(age, t_max) after each step.

    Returns:
        SimulationResult with per-step ages and counts.

    Raises:
        StepFailureError: If the ODE stepper cannot make progress.
    """
    if config is None:
        config = default_config()
    sim = config.simulation
    t0 = time.perf_counter()

    metacommunity = build_metacommunity(config, rng)
    logger.info("Starting run: %d species, %d patches, t_max=%g, seed=%d",
                metacommunity.n_species, metacommunity.size(), sim.t_max, sim.seed)

    ages = [metacommunity.age]
    counts = [metacommunity.n_individuals()]
    seed_output, deaths = [], []
    n_steps = 0
    while metacommunity.age < sim.t_max and n_steps < sim.max_steps:
        metacommunity.step_deterministic()
        dead = metacommunity.deaths()
        seeds = metacommunity.births()
        metacommunity.add_seeds(seeds)
        n_steps += 1

        ages.append(metacommunity.age)
        counts.append(metacommunity.n_individuals())
        seed_output.append(seeds)
        deaths.append(dead)
        if progress_callback is not None:
            progress_callback(metacommunity.age, sim.t_max)

    reached = metacommunity.age >= sim.t_max
    if not reached:
        logger.warning("Stopped at max_steps=%d before t_max (age %.4g of %g)",
                       sim.max_steps, metacommunity.age, sim.t_max)

    n_species = metacommunity.n_species
    result = SimulationResult(
        n_steps=n_steps,
        ages=np.array(ages),
        n_individuals=np.array(counts, dtype=np.int64),
        seed_output=(np.array(seed_output, dtype=np.int64) if seed_output
                     else np.zeros((0, n_species), dtype=np.int64)),
        deaths=(np.array(deaths, dtype=np.int64) if deaths
                else np.zeros((0, n_species), dtype=np.int64)),
        final_age=metacommunity.age,
        reached_t_max=reached,
        elapsed_seconds=time.perf_counter() - t0,
    )
    logger.info("Finished run: %d steps to age %.4g, %d individuals (%.2fs)",
                n_steps, result.final_age, int(result.total_individuals[-1]),
                result.elapsed_seconds)
    return result


def run_replicates(config: Optional[SimulationConfig] = None,
                   n_replicates: int = 1) -> List[SimulationResult]:
    """Independent runs with streams spawned from simulation.seed."""
    if config is None:
        config = default_config()
    if n_replicates < 1:
        raise ValueError(f"n_replicates must be >= 1, got {n_replicates}")
    rngs = spawn_rngs(config.simulation.seed, n_replicates)
    results = []
    for i, rng in enumerate(rngs):
        logger.info("Replicate %d/%d", i + 1, n_replicates)
        results.append(run_simulation(config, rng))
    return results
