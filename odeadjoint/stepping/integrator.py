"""Callback-aware integration on top of scipy's step objects."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence
import numpy as np
import scipy.integrate
from numpy.typing import NDArray
from scipy.integrate import OdeSolution

from odeadjoint.core.exceptions import (
    AdjointInvariantError,
    IntegrationError,
    SensitivityConfigurationError,
)
from odeadjoint.core.problem import SolverOptions
from odeadjoint.stepping.callbacks import CallbackSet, IterativeCallback

logger = logging.getLogger(__name__)


def solver_class(method: str) -> type:
    """scipy OdeSolver subclass by name ("DOP853", "RK45", "Radau", ...)."""
    cls = getattr(scipy.integrate, method, None)
    if not (isinstance(cls, type) and issubclass(cls, scipy.integrate.OdeSolver)):
        raise SensitivityConfigurationError(f"Unknown scipy ODE solver: {method!r}")
    return cls


@dataclass
class IntegratorResult:
    """Final time and state plus the dense output of the whole run."""

    t: float
    u: NDArray
    sol: Optional[OdeSolution]   # None when no step was taken
    nsteps: int
    nsegments: int


class Integrator:
    """
    Integrates ``rhs(t, u)`` from ``t0`` to ``t_bound`` in segments.

    Every stop (the next iterative callback time, a tstop, or ``t_bound``)
    becomes the ``t_bound`` of a fresh scipy step object, so no step ever
    crosses a scheduled time. At a stop the due iterative callbacks fire in
    registration order; discrete callback conditions are checked after every
    accepted step. Callbacks mutate ``integrator.u`` in place and call
    ``u_modified(True)`` so the next segment starts from a fresh step-size
    estimate.

    Integration may run backward (``t_bound < t0``).

    Example:
        integrator = Integrator(rhs, 1.0, z0, 0.0, options, callback=cb)
        result = integrator.solve()
    """

    def __init__(
        self,
        rhs: Callable,
        t0: float,
        y0: NDArray,
        t_bound: float,
        options: SolverOptions,
        callback=None,
        tstops: Sequence[float] = (),
    ):
        """
        Args:
            rhs: Right-hand side ``rhs(t, u)``; must return a new array
            t0: Initial time
            y0: Initial state (copied)
            t_bound: Final time
            options: Solver method and tolerances
            callback: Callback, CallbackSet, or None
            tstops: Additional times the integrator must stop at
        """
        self.rhs = rhs
        self.t = float(t0)
        self.u = np.array(y0, dtype=float)
        self.t_bound = float(t_bound)
        self.direction = 1.0 if self.t_bound >= self.t else -1.0
        self.options = options
        self.callbacks = CallbackSet(callback)
        self.solver_cls = solver_class(options.method)

        d = self.direction
        self.tstops = sorted(
            (float(s) for s in tstops if d * (s - self.t) > 0 and d * (self.t_bound - s) > 0),
            key=lambda s: d * s,
        )

        self._modified = False
        self._step_size: Optional[float] = None
        self._scheduled: dict[int, Optional[float]] = {}

        self.nsteps = 0
        self.nsegments = 0
        self._ts = [self.t]
        self._interpolants: list = []

    def u_modified(self, flag: bool = True) -> None:
        """Mark the state as changed outside the step object."""
        self._modified = bool(flag)

    def solve(self) -> IntegratorResult:
        """Run to ``t_bound``, firing callbacks; then finalize them."""
        self._initialize()

        while True:
            stop = self._next_stop()
            if stop != self.t:
                self._integrate_to(stop)
                if self.t != stop:
                    # Interrupted by a discrete callback
                    continue
            self._fire_due()
            if self.t == self.t_bound:
                break

        for cb in self.callbacks:
            if cb.finalize is not None:
                cb.finalize(self)

        sol = OdeSolution(self._ts, self._interpolants) if self._interpolants else None
        return IntegratorResult(
            t=self.t,
            u=self.u,
            sol=sol,
            nsteps=self.nsteps,
            nsegments=self.nsegments,
        )

    def _initialize(self) -> None:
        for cb in self.callbacks.iterative:
            if cb.initial_affect:
                logger.debug("Initial affect at t=%.6g", self.t)
                cb.affect(self)
        for cb in self.callbacks.iterative:
            self._schedule(cb)

    def _schedule(self, cb: IterativeCallback, fired_at: Optional[float] = None) -> None:
        s = cb.time_choice(self)
        if s is not None:
            s = float(s)
            d = self.direction
            if d * (s - self.t) < 0:
                raise AdjointInvariantError(
                    f"Callback scheduled at t={s:.17g}, behind the integrator at t={self.t:.17g}"
                )
            if fired_at is not None and s == fired_at:
                raise AdjointInvariantError(
                    f"Callback rescheduled at t={s:.17g}, where it just fired"
                )
            if d * (s - self.t_bound) > 0:
                logger.debug("Callback time t=%.6g lies beyond t_bound, ignored", s)
                s = None
        self._scheduled[id(cb)] = s

    def _next_stop(self) -> float:
        d = self.direction
        candidates = [s for s in self._scheduled.values() if s is not None]
        if self.tstops:
            candidates.append(self.tstops[0])
        candidates.append(self.t_bound)
        return min(candidates, key=lambda s: d * s)

    def _fire_due(self) -> None:
        while self.tstops and self.tstops[0] == self.t:
            self.tstops.pop(0)
        for cb in self.callbacks.iterative:
            if self._scheduled.get(id(cb)) == self.t:
                logger.debug("Iterative callback fires at t=%.6g", self.t)
                cb.affect(self)
                self._schedule(cb, fired_at=self.t)

    def _make_solver(self, stop: float):
        span = abs(stop - self.t)
        first_step = None
        if not self._modified and self._step_size is not None:
            first_step = min(self._step_size, span)
        self._modified = False

        opts = self.options
        return self.solver_cls(
            self.rhs,
            self.t,
            self.u.copy(),
            stop,
            rtol=opts.rtol,
            atol=opts.atol,
            max_step=opts.max_step,
            first_step=first_step,
        )

    def _integrate_to(self, stop: float) -> None:
        solver = self._make_solver(stop)
        self.nsegments += 1
        logger.debug("Segment %d: t=%.6g -> %.6g", self.nsegments, self.t, stop)

        while solver.status == "running":
            message = solver.step()
            if solver.status == "failed":
                raise IntegrationError(message, t=solver.t)

            self.nsteps += 1
            self._ts.append(solver.t)
            self._interpolants.append(solver.dense_output())
            if solver.status == "running":
                # The last step of a segment is truncated at the stop
                self._step_size = abs(solver.t - solver.t_old)

            self.t = solver.t
            self.u[...] = solver.y
            if self._apply_discrete():
                return

    def _apply_discrete(self) -> bool:
        fired = False
        for cb in self.callbacks.discrete:
            if cb.condition(self.u, self.t, self):
                logger.debug("Discrete callback fires at t=%.6g", self.t)
                cb.affect(self)
                fired = True
        return fired
