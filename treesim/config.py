"""Configuration system for treesim.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → run overrides

Sections map 1:1 to YAML top-level keys. ``strategies`` is a top-level
list with one mapping of trait overrides per species; the traits
themselves are validated when they are applied to a Strategy.

The ``Control`` section carries the numerical options consumed by the
ODE stepper, the assimilation quadrature and the rate splines.
"""

from __future__ import annotations

import dataclasses
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Control:
    """Numerical control options.

    ODE options apply to the metacommunity's adaptive stepper, the
    ``plant_assimilation_*`` options to each Strategy's quadrature and the
    ``plant_spline_*`` options to rate splines used by approximate
    individuals.
    """
    # Adaptive ODE stepper
    ode_tol_abs: float = 1e-6
    ode_tol_rel: float = 1e-6
    ode_step_size_initial: float = 1e-6
    ode_step_size_min: float = 1e-10
    ode_step_size_max: float = 10.0
    ode_max_retries: int = 50

    # Assimilation quadrature
    plant_assimilation_adaptive: bool = True
    plant_assimilation_tol: float = 1e-6        # absolute
    plant_assimilation_tol_rel: float = 1e-6
    plant_assimilation_iterations: int = 1000   # max subdivisions

    # Rate spline
    plant_spline_n_points: int = 33
    plant_spline_height_max: Optional[float] = None   # None → hmat / 2
    plant_spline_tol: float = 1e-4
    plant_spline_max_refinements: int = 8


@dataclass
class SimulationSection:
    """Top-level run control."""
    seed: int = 42
    t_max: float = 10.0            # simulated years
    max_steps: int = 100000        # hard cap on full steps per run
    initial_seedlings: int = 1     # per species per patch at t = 0
    approximate: bool = False      # spline-backed individuals


@dataclass
class MetacommunitySection:
    """Patch structure and light competition."""
    n_patches: int = 1
    c_ext: float = 0.5             # light extinction coefficient
    patch_area: float = 1.0        # m²


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    metacommunity: MetacommunitySection = field(default_factory=MetacommunitySection)
    control: Control = field(default_factory=Control)
    strategies: List[Dict[str, float]] = field(default_factory=lambda: [{}])


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    section_map = {
        'simulation': SimulationSection,
        'metacommunity': MetacommunitySection,
        'control': Control,
    }
    for key, cls in section_map.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()

    strategies = data.get('strategies')
    if strategies is None:
        strategies = [{}]
    if not isinstance(strategies, list):
        raise ValueError(
            f"strategies must be a list of trait mappings, got {type(strategies).__name__}"
        )
    sections['strategies'] = [dict(s or {}) for s in strategies]

    return SimulationConfig(**sections)


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Checks:
      - Run limits and seed are sensible
      - At least one patch and one species
      - Tolerances and step-size bounds are positive and ordered
      - Spline settings are usable
    """
    sim = config.simulation
    if sim.seed < 0:
        raise ValueError("simulation.seed must be non-negative")
    if sim.t_max < 0:
        raise ValueError(f"simulation.t_max must be >= 0, got {sim.t_max}")
    if sim.max_steps < 1:
        raise ValueError(f"simulation.max_steps must be >= 1, got {sim.max_steps}")
    if sim.initial_seedlings < 0:
        raise ValueError(
            f"simulation.initial_seedlings must be >= 0, got {sim.initial_seedlings}"
        )

    mc = config.metacommunity
    if mc.n_patches < 1:
        raise ValueError(f"metacommunity.n_patches must be >= 1, got {mc.n_patches}")
    if mc.c_ext < 0:
        raise ValueError(f"metacommunity.c_ext must be >= 0, got {mc.c_ext}")
    if mc.patch_area <= 0:
        raise ValueError("metacommunity.patch_area must be positive")

    if len(config.strategies) < 1:
        raise ValueError("at least one strategy is required")
    for i, overrides in enumerate(config.strategies):
        if not isinstance(overrides, dict):
            raise ValueError(f"strategies[{i}] must be a mapping of trait overrides")

    validate_control(config.control)

    if sim.initial_seedlings == 0:
        warnings.warn(
            "simulation.initial_seedlings is 0: the metacommunity starts empty "
            "and will stay empty unless seeds are added explicitly.",
            UserWarning,
            stacklevel=2,
        )


def validate_control(control: Control) -> None:
    """Validate numerical control options. Raises ValueError on failure."""
    c = control
    for name in ('ode_tol_abs', 'ode_tol_rel', 'plant_assimilation_tol',
                 'plant_assimilation_tol_rel', 'plant_spline_tol'):
        if getattr(c, name) < 0:
            raise ValueError(f"control.{name} must be >= 0")
    if c.ode_tol_abs == 0 and c.ode_tol_rel == 0:
        raise ValueError("control.ode_tol_abs and ode_tol_rel cannot both be 0")
    if not (0 < c.ode_step_size_min <= c.ode_step_size_initial <= c.ode_step_size_max):
        raise ValueError(
            "control step sizes must satisfy 0 < ode_step_size_min <= "
            f"ode_step_size_initial <= ode_step_size_max, got "
            f"{c.ode_step_size_min}, {c.ode_step_size_initial}, {c.ode_step_size_max}"
        )
    if c.ode_max_retries < 1:
        raise ValueError("control.ode_max_retries must be >= 1")
    if c.plant_assimilation_iterations < 1:
        raise ValueError("control.plant_assimilation_iterations must be >= 1")
    if c.plant_spline_n_points < 4:
        raise ValueError(
            f"control.plant_spline_n_points must be >= 4, got {c.plant_spline_n_points}"
        )
    if c.plant_spline_height_max is not None and c.plant_spline_height_max <= 0:
        raise ValueError("control.plant_spline_height_max must be positive")
    if c.plant_spline_max_refinements < 0:
        raise ValueError("control.plant_spline_max_refinements must be >= 0")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        overrides: Optional dict of run-specific overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
