"""Plant physiology: allometry and production.

Size is indexed by height. Everything an individual needs is derived
from its height plus its Strategy's traits:

  leaf area      a_l = (h / a1)^(1/B1)
  leaf mass      m_l = lma · a_l
  sapwood mass   m_s = rho · eta_c · h · a_l / theta
  bark mass      m_b = b · m_s
  root mass      m_r = a3 · a_l

Production follows the carbon balance

  net = Y · c_bio · (A − R) − T

with gross assimilation A integrated over the crown's leaf-area profile,
maintenance respiration R and tissue turnover T. Per-leaf photosynthesis
saturates in canopy openness; its asymptote and half-saturation point
rise with leaf nitrogen (see photosynthesis_constants). A fraction of positive
net production goes to seeds (logistic in h/hmat); the rest becomes new
leaf (and the sapwood, bark and root that go with it), which sets the
height growth rate. Mortality hazard falls with wood density and with
production per unit leaf area.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Tuple

import numpy as np
from scipy.integrate import trapezoid
from scipy.optimize import brentq, curve_fit

from treesim.errors import ParameterValueError

if TYPE_CHECKING:
    from treesim.environment import Environment
    from treesim.strategy import Strategy

_SEED_BRACKET_DOUBLINGS = 60

# Leaf light response, used to fit annual photosynthesis against openness
_N_AREA_REF = 1.87e-3                                   # kg N / m² leaf
_AMAX_REF = 5120.738 * _N_AREA_REF * 24 * 3600 / 1e6    # mol CO2 / m² / day
_CURVATURE = 0.5
_QUANTUM_YIELD = 0.04                                   # mol CO2 / mol photons
_K_I = 0.5                                              # light extinction in leaf
_PAR_FULL_SUN = 2000e-6 * 24 * 3600                     # mol photons / m² / day
_OPENNESS_GRID = np.linspace(0.0, 1.0, 51)
# Half a year of decimal days; the solar path is symmetric about midsummer
_DAYS = np.linspace(0.0, 365.0 / 2.0, 10000)


# ═══════════════════════════════════════════════════════════════════════
# INTERNAL VARIABLES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PlantVars:
    """Size and physiological variables of one individual.

    Size variables are recomputed whenever height is set. Physiological
    variables are filled in by compute_vars_phys(); on the spline path
    only the three ODE rates are set and the rest stay NaN.
    """
    height: float = float('nan')
    area_leaf: float = float('nan')
    mass_leaf: float = float('nan')
    mass_sapwood: float = float('nan')
    mass_bark: float = float('nan')
    mass_root: float = float('nan')

    assimilation: float = float('nan')
    respiration: float = float('nan')
    turnover: float = float('nan')
    net_production: float = float('nan')
    reproduction_fraction: float = float('nan')
    leaf_fraction: float = float('nan')
    mass_leaf_growth_rate: float = float('nan')

    height_growth_rate: float = float('nan')
    mortality_rate: float = float('nan')
    fecundity_rate: float = float('nan')

    @property
    def mass_live(self) -> float:
        return self.mass_leaf + self.mass_sapwood + self.mass_bark + self.mass_root

    def rates(self) -> np.ndarray:
        """ODE rates in state order: height, mortality, fecundity."""
        return np.array([self.height_growth_rate, self.mortality_rate,
                         self.fecundity_rate])

    def clear_phys(self) -> None:
        for name in ('assimilation', 'respiration', 'turnover', 'net_production',
                     'reproduction_fraction', 'leaf_fraction',
                     'mass_leaf_growth_rate'):
            setattr(self, name, float('nan'))


# ═══════════════════════════════════════════════════════════════════════
# ALLOMETRY
# ═══════════════════════════════════════════════════════════════════════

def leaf_area(height, strategy: Strategy):
    """Leaf area (m²) of a plant of the given height."""
    return (height / strategy.a1) ** (1.0 / strategy.B1)


def mass_live(height: float, strategy: Strategy) -> float:
    """Total live mass (kg): leaf + sapwood + bark + root."""
    vars = PlantVars()
    compute_vars_size(vars, height, strategy)
    return vars.mass_live


def compute_vars_size(vars: PlantVars, height: float, strategy: Strategy) -> None:
    """Fill the size variables of vars for the given height."""
    s = strategy
    a_l = leaf_area(height, s)
    vars.height = height
    vars.area_leaf = a_l
    vars.mass_leaf = s.lma * a_l
    vars.mass_sapwood = s.rho * s.eta_c * height * a_l / s.theta
    vars.mass_bark = s.b * vars.mass_sapwood
    vars.mass_root = s.a3 * a_l


def height_seed(strategy: Strategy) -> float:
    """Height at which a seedling's live mass equals the seed mass.

    Raises:
        ParameterValueError: If live mass does not cross the seed mass
            within the search bracket.
    """
    def excess(h: float) -> float:
        return mass_live(h, strategy) - strategy.s

    lower = 1e-10
    upper = max(strategy.hmat, strategy.a1)
    for _ in range(_SEED_BRACKET_DOUBLINGS):
        if not excess(upper) < 0:
            break
        upper *= 2.0
    f_lower, f_upper = excess(lower), excess(upper)
    if not (np.isfinite(f_lower) and np.isfinite(f_upper)
            and f_lower <= 0.0 <= f_upper):
        raise ParameterValueError(
            f"No seed height: live mass does not reach seed mass s={strategy.s:g} "
            f"between heights {lower:g} and {upper:g}"
        )
    return brentq(excess, lower, upper, xtol=1e-12, rtol=1e-12)


# ═══════════════════════════════════════════════════════════════════════
# CROWN PROFILE
# ═══════════════════════════════════════════════════════════════════════

def leaf_area_above(z, height: float, eta: float):
    """Fraction of a crown's leaf area above height z: (1 − (z/h)^η)²."""
    z = np.asarray(z, dtype=np.float64)
    x = np.clip(z / height, 0.0, 1.0)
    return (1.0 - x ** eta) ** 2


def leaf_area_density(z, height: float, eta: float):
    """Leaf-area density q(z, h) = −dQ/dz; integrates to 1 over [0, h]."""
    z = np.asarray(z, dtype=np.float64)
    x = np.clip(z / height, 0.0, 1.0)
    return 2.0 * eta * (1.0 - x ** eta) * x ** (eta - 1.0) / height


# ═══════════════════════════════════════════════════════════════════════
# LEAF NITROGEN AND PHOTOSYNTHETIC CAPACITY
# ═══════════════════════════════════════════════════════════════════════

def solar_sin_elevation(day, latitude: float):
    """Sine of the sun's elevation at a decimal day of the year.

    Negative values mean the sun is below the horizon.
    """
    lat = np.deg2rad(latitude)
    declination = np.deg2rad(-23.45 * np.cos(2.0 * np.pi * (day + 10.0) / 365.0))
    hour_angle = 2.0 * np.pi * np.mod(day, 1.0) - np.pi
    return (np.sin(lat) * np.sin(declination)
            + np.cos(lat) * np.cos(declination) * np.cos(hour_angle))


def leaf_light_response(par, amax: float):
    """Non-rectangular hyperbola: assimilation (mol CO2/m²/day) at absorbed PAR."""
    x = _QUANTUM_YIELD * par + amax
    return (x - np.sqrt(x * x - 4.0 * _CURVATURE * _QUANTUM_YIELD * par * amax)
            ) / (2.0 * _CURVATURE)


def _saturating(openness, p1, p2):
    return p1 * openness / (p2 + openness)


@lru_cache(maxsize=256)
def photosynthesis_constants(n_area: float, latitude: float = 0.0) -> Tuple[float, float]:
    """Fit annual leaf photosynthesis against canopy openness.

    Maximum assimilation scales linearly with leaf nitrogen. The light
    response is integrated over a year of solar angles at ``latitude``
    for each openness on a grid, and the curve is fitted to
    ``p1 E / (p2 + E)``.

    Returns:
        (p1, p2): asymptote (mol CO2/m²/yr) and half-saturating openness.

    Raises:
        ParameterValueError: If the fit does not converge.
    """
    amax = _AMAX_REF * n_area / _N_AREA_REF
    if amax == 0.0:
        return 0.0, 0.0
    sin_beta = solar_sin_elevation(_DAYS, abs(latitude))
    par = _PAR_FULL_SUN * np.clip(sin_beta, 0.0, None)
    absorbed = _K_I * np.outer(_OPENNESS_GRID, par)
    annual = 2.0 * trapezoid(leaf_light_response(absorbed, amax), _DAYS, axis=1)
    if np.all(np.diff(annual) < 1e-8):
        # Flat response: nothing to fit
        return float(annual[-1]), 0.0
    try:
        (p1, p2), _ = curve_fit(_saturating, _OPENNESS_GRID, annual, p0=(100.0, 0.2))
    except RuntimeError as exc:
        raise ParameterValueError(
            f"Photosynthesis fit failed for n_area={n_area:g}: {exc}") from exc
    return float(p1), float(p2)


# ═══════════════════════════════════════════════════════════════════════
# PRODUCTION
# ═══════════════════════════════════════════════════════════════════════

def assimilation_leaf(openness, strategy: Strategy):
    """Gross photosynthesis per leaf area at canopy openness E."""
    if strategy.a_p1 == 0.0:
        return np.zeros_like(np.asarray(openness, dtype=np.float64))
    return strategy.a_p1 * openness / (openness + strategy.a_p2)


def assimilation(vars: PlantVars, strategy: Strategy,
                 environment: Environment) -> float:
    """Gross annual CO2 assimilation (mol/yr) of the whole crown."""
    h = vars.height
    if strategy.assimilation_fn is not None:
        return vars.area_leaf * float(strategy.assimilation_fn(h))

    def integrand(z):
        return (assimilation_leaf(environment.canopy_openness(z), strategy)
                * leaf_area_density(z, h, strategy.eta))

    return vars.area_leaf * strategy.integrator.integrate(integrand, 0.0, h)


def respiration(vars: PlantVars, strategy: Strategy) -> float:
    """Maintenance respiration (mol/yr)."""
    s = strategy
    return (s.c_Rl * s.n_area * vars.area_leaf
            + s.c_Rs * vars.mass_sapwood / s.rho
            + s.c_Rb * vars.mass_bark / s.rho
            + s.c_Rr * vars.mass_root)


def turnover(vars: PlantVars, strategy: Strategy) -> float:
    """Tissue turnover (kg/yr)."""
    s = strategy
    return (vars.mass_leaf * s.k_l
            + vars.mass_sapwood * s.k_s
            + vars.mass_bark * s.k_b
            + vars.mass_root * s.k_r)


def reproduction_fraction(height: float, strategy: Strategy) -> float:
    """Fraction of net production allocated to seeds."""
    s = strategy
    arg = s.c_r2 * (1.0 - height / s.hmat)
    # exp overflows above ~709
    if arg > 700.0:
        return 0.0
    return s.c_r1 / (1.0 + np.exp(arg))


def leaf_fraction(vars: PlantVars, strategy: Strategy) -> float:
    """Fraction of vegetative growth that is leaf mass."""
    s = strategy
    dmass_sapwood = (s.rho * s.eta_c * s.a1 * (1.0 + s.B1)
                     * vars.area_leaf ** s.B1 / (s.theta * s.lma))
    dmass_bark = s.b * dmass_sapwood
    dmass_root = s.a3 / s.lma
    return 1.0 / (1.0 + dmass_sapwood + dmass_bark + dmass_root)


def height_growth_rate(vars: PlantVars, strategy: Strategy) -> float:
    """dh/dt from leaf mass growth via dh/da_l · da_l/dm_l."""
    s = strategy
    dheight_darea = s.a1 * s.B1 * vars.area_leaf ** (s.B1 - 1.0)
    darea_dmass = 1.0 / s.lma
    return dheight_darea * darea_dmass * vars.mass_leaf_growth_rate


def mortality_rate(vars: PlantVars, strategy: Strategy) -> float:
    """Instantaneous mortality hazard (1/yr)."""
    s = strategy
    production_per_area = vars.net_production / vars.area_leaf
    return (s.c_d0 * np.exp(-s.c_d1 * s.rho)
            + s.c_d2 * np.exp(-s.c_d3 * production_per_area))


def compute_vars_phys(vars: PlantVars, strategy: Strategy,
                      environment: Environment) -> None:
    """Fill the physiological variables and ODE rates of vars.

    Size variables must already be current for vars.height.
    """
    s = strategy
    vars.assimilation = assimilation(vars, s, environment)
    vars.respiration = respiration(vars, s)
    vars.turnover = turnover(vars, s)
    vars.net_production = (s.Y * s.c_bio * (vars.assimilation - vars.respiration)
                           - vars.turnover)

    if vars.net_production > 0:
        vars.reproduction_fraction = reproduction_fraction(vars.height, s)
        vars.fecundity_rate = (vars.net_production * vars.reproduction_fraction
                               / (s.c_acc * s.s))
        vars.leaf_fraction = leaf_fraction(vars, s)
        vars.mass_leaf_growth_rate = (vars.leaf_fraction * vars.net_production
                                      * (1.0 - vars.reproduction_fraction))
        vars.height_growth_rate = height_growth_rate(vars, s)
    else:
        vars.reproduction_fraction = 0.0
        vars.fecundity_rate = 0.0
        vars.leaf_fraction = 0.0
        vars.mass_leaf_growth_rate = 0.0
        vars.height_growth_rate = 0.0

    vars.mortality_rate = mortality_rate(vars, s)


def rates_at(height: float, strategy: Strategy,
             environment: Environment) -> np.ndarray:
    """Exact ODE rates [dh/dt, mortality, fecundity] at a given height."""
    vars = PlantVars()
    compute_vars_size(vars, height, strategy)
    compute_vars_phys(vars, strategy, environment)
    return vars.rates()
