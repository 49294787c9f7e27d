"""Adaptive Gauss–Kronrod quadrature.

Narrow integrator for the physiological rate integrals: one function of
height integrated over [0, h] many times per ODE step. The 7-point Gauss
rule is embedded in the 15-point Kronrod rule, so each interval costs 15
function evaluations and yields both an estimate (Kronrod) and an error
bound (|Kronrod − Gauss|).

Functions passed to :meth:`QAG.integrate` must be vectorised: they are
called with a numpy array of abscissae and must return an array of the
same shape.
"""

from __future__ import annotations

import heapq
import logging
from typing import Callable, List, Tuple

import numpy as np

from treesim.errors import IntegrationError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# GAUSS–KRONROD 7/15 RULE
# ═══════════════════════════════════════════════════════════════════════

# Kronrod abscissae on [0, 1] (symmetric; last is the centre)
_XGK = np.array([
    0.991455371120812639206854697526329,
    0.949107912342758524526189684047851,
    0.864864423359769072789712788640926,
    0.741531185599394439863864773280788,
    0.586087235467691130294144845693013,
    0.405845151377397166906606412076961,
    0.207784955007898467600689403773245,
    0.000000000000000000000000000000000,
])

_WGK = np.array([
    0.022935322010529224963732008058970,
    0.063092092629978553290700663189204,
    0.104790010322250183839876322541518,
    0.140653259715525918745189590510238,
    0.169004726639267902826583426598550,
    0.190350578064785409913256402421014,
    0.204432940075298892414161999234649,
    0.209482141084727828012999174891714,
])

# Gauss weights for abscissae _XGK[1], _XGK[3], _XGK[5], _XGK[7]
_WG = np.array([
    0.129484966168869693270611432679082,
    0.279705391489276667901467771423780,
    0.381830050505118944950369775488975,
    0.417959183673469387755102040816327,
])

# Full 15-point layout on [-1, 1]
_NODES = np.concatenate([-_XGK[:-1], _XGK[::-1]])
_KRONROD_WEIGHTS = np.concatenate([_WGK[:-1], _WGK[::-1]])
_GAUSS_WEIGHTS = np.zeros(15)
_GAUSS_WEIGHTS[[1, 3, 5]] = _WG[:3]
_GAUSS_WEIGHTS[7] = _WG[3]
_GAUSS_WEIGHTS[[9, 11, 13]] = _WG[2::-1]


def gauss_kronrod_15(f: Callable[[np.ndarray], np.ndarray],
                     a: float, b: float) -> Tuple[float, float]:
    """Apply the 7/15 rule once on [a, b].

    Returns:
        (Kronrod estimate, |Kronrod − Gauss| error estimate).
    """
    centre = 0.5 * (a + b)
    half = 0.5 * (b - a)
    fx = np.asarray(f(centre + half * _NODES), dtype=np.float64)
    kronrod = half * float(np.dot(_KRONROD_WEIGHTS, fx))
    gauss = half * float(np.dot(_GAUSS_WEIGHTS, fx))
    return kronrod, abs(kronrod - gauss)


# ═══════════════════════════════════════════════════════════════════════
# ADAPTIVE INTEGRATOR
# ═══════════════════════════════════════════════════════════════════════

class QAG:
    """Globally adaptive Gauss–Kronrod integrator.

    The interval with the largest error estimate is bisected until the
    summed error estimate meets ``max(abs_tol, rel_tol × |integral|)``.

    Args:
        abs_tol: Absolute error tolerance.
        rel_tol: Relative error tolerance.
        max_subdivisions: Largest number of intervals allowed. Reaching it
            without meeting tolerance raises IntegrationError.
        adaptive: When False, a single rule application is returned with
            no error check.
    """

    def __init__(self, abs_tol: float = 1e-6, rel_tol: float = 1e-6,
                 max_subdivisions: int = 1000, adaptive: bool = True):
        if max_subdivisions < 1:
            raise ValueError("max_subdivisions must be >= 1")
        self.abs_tol = abs_tol
        self.rel_tol = rel_tol
        self.max_subdivisions = max_subdivisions
        self.adaptive = adaptive
        self.last_area = float('nan')
        self.last_error = float('nan')
        self.last_n_intervals = 0

    @classmethod
    def from_control(cls, control) -> 'QAG':
        """Build an integrator from a Control's assimilation options."""
        return cls(
            abs_tol=control.plant_assimilation_tol,
            rel_tol=control.plant_assimilation_tol_rel,
            max_subdivisions=control.plant_assimilation_iterations,
            adaptive=control.plant_assimilation_adaptive,
        )

    def __repr__(self) -> str:
        return (f"QAG(abs_tol={self.abs_tol}, rel_tol={self.rel_tol}, "
                f"max_subdivisions={self.max_subdivisions}, adaptive={self.adaptive})")

    def integrate(self, f: Callable[[np.ndarray], np.ndarray],
                  a: float, b: float) -> float:
        """Integrate f over [a, b].

        Raises:
            IntegrationError: If the subdivision budget is exhausted
                before the error estimate meets tolerance, or the
                integrand is not finite.
        """
        if a == b:
            self._record(0.0, 0.0, 0)
            return 0.0

        area, error = gauss_kronrod_15(f, a, b)
        if not self.adaptive:
            self._record(area, error, 1)
            return area

        # Max-heap on error: entries are (-error, a, b, area)
        intervals: List[Tuple[float, float, float, float]] = [(-error, a, b, area)]
        while True:
            if not (np.isfinite(area) and np.isfinite(error)):
                self._record(area, error, len(intervals))
                raise IntegrationError(
                    f"Non-finite integrand on [{a}, {b}]: area={area}, error={error}"
                )
            if error <= max(self.abs_tol, self.rel_tol * abs(area)):
                self._record(area, error, len(intervals))
                return area
            if len(intervals) >= self.max_subdivisions:
                self._record(area, error, len(intervals))
                raise IntegrationError(
                    f"Integration on [{a}, {b}] failed to converge within "
                    f"{self.max_subdivisions} subdivisions "
                    f"(error estimate {error:.3g})"
                )

            neg_err, lo, hi, piece = heapq.heappop(intervals)
            mid = 0.5 * (lo + hi)
            left_area, left_err = gauss_kronrod_15(f, lo, mid)
            right_area, right_err = gauss_kronrod_15(f, mid, hi)
            heapq.heappush(intervals, (-left_err, lo, mid, left_area))
            heapq.heappush(intervals, (-right_err, mid, hi, right_area))
            area += left_area + right_area - piece
            error += left_err + right_err + neg_err

    def _record(self, area: float, error: float, n_intervals: int) -> None:
        self.last_area = area
        self.last_error = error
        self.last_n_intervals = n_intervals
