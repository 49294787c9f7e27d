"""Plant functional type: traits, derived constants and integrator.

A Strategy is shared by reference among all the individuals of one
species. Traits are read and written by name through the parameter
interface (``get_all`` / ``set_many``); writing through ``set_many``
validates the new values and then recomputes the derived constants.
Assigning an attribute directly skips both.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from treesim.config import Control
from treesim.errors import ParameterValueError
from treesim.lookup import ParameterLookup, parameter
from treesim.physiology import height_seed, photosynthesis_constants
from treesim.quadrature import QAG

# Traits that must be strictly positive for the allometry to be defined
_POSITIVE = ('lma', 'rho', 'hmat', 's', 'theta', 'a1', 'B1', 'c_acc', 'eta',
             'lma_0', 'rho_0', 'n_area_0')
_NON_NEGATIVE = ('n_area',)


@dataclass
class Strategy(ParameterLookup):
    """Trait values of one plant functional type.

    Example:
        >>> s = Strategy(hmat=10.0)
        >>> s.set_many({'lma': 0.1})
        >>> round(s.k_l, 3)   # recomputed from the new lma
        1.467
    """
    # Core traits
    lma: float = parameter(0.1978791)       # leaf mass per area (kg/m²)
    rho: float = parameter(608.0)           # wood density (kg/m³)
    hmat: float = parameter(16.5958691)     # height at maturation (m)
    s: float = parameter(3.8e-5)            # seed mass (kg)
    n_area: float = parameter(1.87e-3)      # leaf nitrogen per area (kg/m²)

    # Reference values for trait-dependent turnover and photosynthesis
    lma_0: float = parameter(0.1978791)
    rho_0: float = parameter(608.0)
    n_area_0: float = parameter(1.87e-3)
    latitude: float = parameter(0.0)        # degrees; sets the annual light regime

    # Canopy shape and allometry
    eta: float = parameter(12.0)
    theta: float = parameter(4669.0)        # leaf area per sapwood area
    a1: float = parameter(5.44)
    B1: float = parameter(0.306)
    a3: float = parameter(0.07)             # root mass per leaf area
    b: float = parameter(0.17)              # bark per sapwood mass

    # Production
    c_Rs: float = parameter(4012.0)
    c_Rb: float = parameter(8024.0)
    c_Rr: float = parameter(217.0)
    c_Rl: float = parameter(2.1e4)
    Y: float = parameter(0.7)
    c_bio: float = parameter(12e-3 / 0.49)
    k_l0: float = parameter(0.4565855)
    B4: float = parameter(1.71)
    k_s0: float = parameter(0.2)
    B5: float = parameter(0.0)
    k_b: float = parameter(0.2)
    k_r: float = parameter(1.0)
    c_p1: float = parameter(150.36)         # photosynthesis asymptote at n_area_0
    c_p2: float = parameter(0.19)           # half-saturating openness at n_area_0

    # Reproduction
    c_acc: float = parameter(3.0)
    c_r1: float = parameter(1.0)
    c_r2: float = parameter(50.0)

    # Mortality
    c_d0: float = parameter(0.01)
    c_d1: float = parameter(0.0)
    c_d2: float = parameter(5.5)
    c_d3: float = parameter(20.0)

    control: Control = field(default_factory=Control, compare=False, repr=False)
    assimilation_fn: Optional[Callable[[float], float]] = field(
        default=None, compare=False, repr=False)

    # Derived
    eta_c: float = field(init=False, default=float('nan'))
    k_l: float = field(init=False, default=float('nan'))
    k_s: float = field(init=False, default=float('nan'))
    a_p1: float = field(init=False, default=float('nan'))
    a_p2: float = field(init=False, default=float('nan'))
    height_0: float = field(init=False, default=float('nan'))
    integrator: QAG = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        self.integrator = QAG.from_control(self.control)
        self.compute_constants()

    def compute_constants(self) -> None:
        """Recompute every derived constant from the current traits.

        ``a_p1``/``a_p2`` scale ``c_p1``/``c_p2`` by how the fitted annual
        photosynthesis curve at ``n_area`` compares with the one at
        ``n_area_0``, so they equal ``c_p1``/``c_p2`` at the reference.

        Raises:
            ParameterValueError: If no seed height exists for these traits
                or the photosynthesis fit fails.
        """
        self.eta_c = 1.0 - 2.0 / (1.0 + self.eta) + 1.0 / (1.0 + 2.0 * self.eta)
        self.k_l = self.k_l0 * (self.lma / self.lma_0) ** (-self.B4)
        self.k_s = self.k_s0 * (self.rho / self.rho_0) ** (-self.B5)
        p1, p2 = photosynthesis_constants(self.n_area, self.latitude)
        p1_ref, p2_ref = photosynthesis_constants(self.n_area_0, self.latitude)
        self.a_p1 = self.c_p1 * p1 / p1_ref
        self.a_p2 = self.c_p2 * p2 / p2_ref
        self.height_0 = height_seed(self)

    def set_control(self, control: Control) -> None:
        """Replace the control options and rebuild the integrator."""
        self.control = control
        self.integrator = QAG.from_control(control)

    # ── Parameter hooks ──────────────────────────────────────────────

    def validate_parameters(self, values: Mapping[str, float]) -> None:
        bad = []
        for name, value in values.items():
            if not math.isfinite(value):
                bad.append(f"{name}={value} (must be finite)")
            elif name == 'latitude' and not abs(value) <= 90.0:
                bad.append(f"{name}={value} (must be within [-90, 90])")
            elif name in _POSITIVE and not value > 0:
                bad.append(f"{name}={value} (must be > 0)")
            elif name in _NON_NEGATIVE and not value >= 0:
                bad.append(f"{name}={value} (must be >= 0)")
        if bad:
            raise ParameterValueError("Invalid trait values: " + ", ".join(bad))

    def set_parameters_post_hook(self) -> None:
        self.compute_constants()

    def copy(self) -> 'Strategy':
        """Independent copy with its own control and integrator."""
        traits = self.get_all()
        return Strategy(control=dataclasses.replace(self.control),
                        assimilation_fn=self.assimilation_fn, **traits)
