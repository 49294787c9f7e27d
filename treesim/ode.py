"""Adaptive ODE stepping for simulation targets.

Core classes:
  - OdeTarget: base class for anything that can be integrated. Subclasses
    implement a flat-buffer protocol (``ode_size``, ``ode_values``,
    ``ode_values_set``, ``ode_rates``), each buffer method taking the
    offset to start at and returning the offset after its last element.
    Aggregates (species, patch, metacommunity) concatenate their members
    by threading the offset through them in order.
  - OdeSolver: Cash–Karp embedded Runge–Kutta 4(5) stepper with
    per-component absolute/relative error control.
  - OdeTrajectory: times and states recorded by ``advance_save``.
  - Lorenz: three-variable reference system for exercising the stepper.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from treesim.config import Control
from treesim.errors import StepFailureError, TreeSimError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# ODE TARGET CONTRACT
# ═══════════════════════════════════════════════════════════════════════

class OdeTarget:
    """Base class for objects driven by :class:`OdeSolver`."""

    def ode_size(self) -> int:
        raise NotImplementedError

    def ode_values(self, y: np.ndarray, offset: int = 0) -> int:
        """Write current state into y[offset:]; return the next offset."""
        raise NotImplementedError

    def ode_values_set(self, y: np.ndarray, offset: int = 0) -> int:
        """Read state from y[offset:]; return the next offset."""
        raise NotImplementedError

    def ode_rates(self, dydt: np.ndarray, offset: int = 0) -> int:
        """Write current derivatives into dydt[offset:]; return the next offset."""
        raise NotImplementedError

    # ── Whole-vector contract used by the solver ─────────────────────

    def state_size(self) -> int:
        return self.ode_size()

    def read_values(self) -> np.ndarray:
        y = np.empty(self.ode_size(), dtype=np.float64)
        end = self.ode_values(y, 0)
        assert end == len(y), f"ode_values wrote {end} of {len(y)} values"
        return y

    def write_values(self, values) -> None:
        y = np.asarray(values, dtype=np.float64)
        if len(y) != self.ode_size():
            raise ValueError(
                f"Expected {self.ode_size()} values, got {len(y)}"
            )
        self.ode_values_set(y, 0)

    def compute_rates(self, time: float, values) -> np.ndarray:
        """Set the state to ``values`` and return the derivatives there."""
        self.write_values(values)
        dydt = np.empty(self.ode_size(), dtype=np.float64)
        self.ode_rates(dydt, 0)
        return dydt


@dataclass
class OdeTrajectory:
    """States recorded by OdeSolver.advance_save()."""
    times: np.ndarray     # (n_steps + 1,)
    values: np.ndarray    # (n_steps + 1, state_size)

    def __len__(self) -> int:
        return len(self.times)


# ═══════════════════════════════════════════════════════════════════════
# CASH–KARP TABLEAU
# ═══════════════════════════════════════════════════════════════════════

_C = (0.0, 1.0 / 5.0, 3.0 / 10.0, 3.0 / 5.0, 1.0, 7.0 / 8.0)
_A = (
    (),
    (1.0 / 5.0,),
    (3.0 / 40.0, 9.0 / 40.0),
    (3.0 / 10.0, -9.0 / 10.0, 6.0 / 5.0),
    (-11.0 / 54.0, 5.0 / 2.0, -70.0 / 27.0, 35.0 / 27.0),
    (1631.0 / 55296.0, 175.0 / 512.0, 575.0 / 13824.0,
     44275.0 / 110592.0, 253.0 / 4096.0),
)
_B5 = np.array([37.0 / 378.0, 0.0, 250.0 / 621.0, 125.0 / 594.0,
                0.0, 512.0 / 1771.0])
_B4 = np.array([2825.0 / 27648.0, 0.0, 18575.0 / 48384.0,
                13525.0 / 55296.0, 277.0 / 14336.0, 1.0 / 4.0])
_E = _B5 - _B4

_SAFETY = 0.9
_SHRINK_MIN = 0.1
_GROW_MAX = 5.0


# ═══════════════════════════════════════════════════════════════════════
# SOLVER
# ═══════════════════════════════════════════════════════════════════════

class OdeSolver:
    """Adaptive stepper bound to one OdeTarget.

    The solver owns the current time, the current state vector and the
    proposed size of the next step. The target is updated after every
    accepted step; failed or rejected steps leave it as it was.

    Args:
        target: Object implementing the OdeTarget contract.
        control: Tolerances and step-size limits.
    """

    def __init__(self, target: OdeTarget, control: Optional[Control] = None):
        self.target = target
        self.control = control if control is not None else Control()
        self.reset()

    def reset(self) -> None:
        """Return to t = 0 with an empty state and the initial step size."""
        self.time = 0.0
        self.values = np.zeros(0, dtype=np.float64)
        self.step_size = self.control.ode_step_size_initial

    def set_state(self, values, time: float) -> None:
        """Replace the state vector and time (state size may change)."""
        self.values = np.array(values, dtype=np.float64)
        self.time = float(time)

    # ── Internals ────────────────────────────────────────────────────

    def _attempt(self, h: float, dydt: np.ndarray):
        """One Cash–Karp step of size h from the current state.

        Returns:
            (new values, error ratio); ratio <= 1 means acceptable.
        """
        t, y = self.time, self.values
        k = [dydt]
        for i in range(1, 6):
            yi = y + h * sum(a * kj for a, kj in zip(_A[i], k))
            k.append(self.target.compute_rates(t + _C[i] * h, yi))
        y_new = y + h * sum(b * ki for b, ki in zip(_B5, k) if b != 0.0)
        err = h * sum(e * ki for e, ki in zip(_E, k))
        scale = self.control.ode_tol_abs + self.control.ode_tol_rel * np.abs(y)
        if len(y) == 0:
            return y_new, 0.0
        ratio = float(np.max(np.abs(err) / scale))
        if not np.isfinite(ratio) or not np.all(np.isfinite(y_new)):
            ratio = np.inf
        return y_new, ratio

    def _accept(self, y_new: np.ndarray, h: float) -> None:
        try:
            self.target.write_values(y_new)
        except TreeSimError:
            self._restore()
            raise
        self.values = y_new
        self.time += h

    def _restore(self) -> None:
        self.target.write_values(self.values)

    def _attempt_or_restore(self, h: float, dydt: Optional[np.ndarray] = None):
        """_attempt(), putting the target back if computing rates fails.

        Stage evaluations leave intermediate values in the target, so an
        error from the target's rates must not escape with those in place.
        """
        try:
            if dydt is None:
                dydt = self.target.compute_rates(self.time, self.values)
            return dydt, self._attempt(h, dydt)
        except TreeSimError:
            self._restore()
            raise

    def _step(self, h_limit: Optional[float] = None) -> float:
        """Adaptive step no longer than h_limit. Returns the step taken."""
        ctrl = self.control
        h = self.step_size
        capped = h_limit is not None and h >= h_limit
        if capped:
            h = h_limit
        dydt = None

        for _ in range(ctrl.ode_max_retries + 1):
            dydt, (y_new, ratio) = self._attempt_or_restore(h, dydt)
            if ratio <= 1.0:
                self._accept(y_new, h)
                if ratio < (_GROW_MAX / _SAFETY) ** -5.0:
                    grown = h * _GROW_MAX
                else:
                    grown = _SAFETY * h * ratio ** -0.2
                # A capped step never shrinks the proposed step size
                if not capped or grown > self.step_size:
                    self.step_size = min(grown, ctrl.ode_step_size_max)
                return h
            shrink = _SAFETY * ratio ** -0.25 if np.isfinite(ratio) else _SHRINK_MIN
            h *= max(shrink, _SHRINK_MIN)
            capped = False
            if h < ctrl.ode_step_size_min:
                self._restore()
                raise StepFailureError(
                    f"Step size {h:.3g} fell below minimum "
                    f"{ctrl.ode_step_size_min:.3g} at t={self.time:.6g}"
                )

        self._restore()
        raise StepFailureError(
            f"No acceptable step after {ctrl.ode_max_retries} retries at "
            f"t={self.time:.6g} (last step size {h:.3g})"
        )

    # ── Public stepping API ──────────────────────────────────────────

    def step(self) -> None:
        """Advance by one adaptively chosen step.

        Raises:
            StepFailureError: If no acceptable step is found within the
                retry budget or above the minimum step size.
            TreeSimError: Raised while computing the target's rates (for
                example IntegrationError). The target is restored first.
        """
        self._step()

    def try_step(self, dt: float) -> bool:
        """Attempt one step of exactly dt; return whether it was accepted."""
        _, (y_new, ratio) = self._attempt_or_restore(dt)
        if ratio <= 1.0:
            self._accept(y_new, dt)
            return True
        self._restore()
        return False

    def do_step(self, dt: float) -> None:
        """Take one step of exactly dt with no error control."""
        _, (y_new, _) = self._attempt_or_restore(dt)
        self._accept(y_new, dt)

    def advance(self, t: float, dt: Optional[float] = None) -> None:
        """Step until time t, using steps no larger than dt if given.

        Raises:
            ValueError: If t is earlier than the current time.
            StepFailureError: Propagated from a failing step.
        """
        self._advance(t, dt, None)

    def advance_save(self, t: float, dt: Optional[float] = None) -> OdeTrajectory:
        """As advance(), recording the state after every accepted step."""
        times = [self.time]
        states = [self.values.copy()]
        self._advance(t, dt, (times, states))
        return OdeTrajectory(times=np.array(times), values=np.array(states))

    def _advance(self, t: float, dt: Optional[float], record) -> None:
        if t < self.time:
            raise ValueError(f"Cannot advance backwards from {self.time} to {t}")
        if dt is not None and dt <= 0:
            raise ValueError(f"dt must be positive, got {dt}")
        n_steps = 0
        while self.time < t:
            remaining = t - self.time
            limit = remaining if dt is None else min(dt, remaining)
            h = self._step(limit)
            if h == remaining:
                self.time = float(t)
            n_steps += 1
            if record is not None:
                record[0].append(self.time)
                record[1].append(self.values.copy())
        logger.debug("advanced to t=%g in %d steps", self.time, n_steps)


# ═══════════════════════════════════════════════════════════════════════
# REFERENCE SYSTEM
# ═══════════════════════════════════════════════════════════════════════

class Lorenz(OdeTarget):
    """The Lorenz system, used to check the stepper on a stiff-ish target."""

    def __init__(self, sigma: float = 10.0, R: float = 28.0, b: float = 8.0 / 3.0):
        self.sigma = sigma
        self.R = R
        self.b = b
        self.y = np.zeros(3)

    @property
    def pars(self) -> np.ndarray:
        return np.array([self.sigma, self.R, self.b])

    def ode_size(self) -> int:
        return 3

    def ode_values(self, y, offset=0):
        y[offset:offset + 3] = self.y
        return offset + 3

    def ode_values_set(self, y, offset=0):
        self.y = np.array(y[offset:offset + 3], dtype=np.float64)
        return offset + 3

    def ode_rates(self, dydt, offset=0):
        y0, y1, y2 = self.y
        dydt[offset] = self.sigma * (y1 - y0)
        dydt[offset + 1] = self.R * y0 - y1 - y0 * y2
        dydt[offset + 2] = -self.b * y2 + y0 * y1
        return offset + 3
