"""Discrete adjoint corrections injected at the sample times."""

import logging
from typing import Callable, Optional
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.exceptions import AdjointInvariantError, DimensionMismatchError
from odeadjoint.stepping.callbacks import CallbackSet, IterativeCallback

logger = logging.getLogger(__name__)


class DiscreteAdjointSchedule:
    """
    Countdown over the sample times of a discrete objective.

    ``cur_time`` starts at ``len(t)`` and drops by one per correction, so the
    samples are visited in strictly decreasing time order. The countdown, not
    a comparison against the integrator time, decides which sample is due.
    """

    def __init__(self, t: NDArray):
        self.t = np.asarray(t, dtype=float)
        self.cur_time = len(self.t)

    def next_time(self, integrator=None) -> Optional[float]:
        """Time of the next correction, or None once every sample is consumed."""
        if self.cur_time > 0:
            return float(self.t[self.cur_time - 1])
        return None

    def current_index(self) -> int:
        """Chronological index of the sample being corrected."""
        if self.cur_time <= 0:
            raise AdjointInvariantError(
                "Discrete adjoint correction fired after all samples were consumed"
            )
        return self.cur_time - 1

    def consume(self) -> None:
        if self.cur_time <= 0:
            raise AdjointInvariantError("Discrete adjoint countdown underflow")
        self.cur_time -= 1

    def finish(self, integrator=None) -> None:
        """The backward pass must end with every sample consumed."""
        if self.cur_time != 0:
            raise AdjointInvariantError(
                f"Backward pass ended with {self.cur_time} of {len(self.t)} "
                f"samples unconsumed; first pending t={self.t[self.cur_time - 1]:.17g}"
            )


class DiscreteAdjointCallback(IterativeCallback):
    """
    Adds ∂g/∂u of the due sample into the adjoint state.

    For a quadrature adjoint the correction is added into the whole state;
    otherwise only the leading n entries (λ) change and the parameter
    accumulator is left untouched.
    """

    def __init__(self, sensefun, dg: Callable, lam: NDArray, t: NDArray, init_cb: bool):
        self.schedule = DiscreteAdjointSchedule(t)
        self.sensefun = sensefun
        self.dg = dg
        self.lam = lam
        self.quad = sensefun.quad
        self.n = sensefun.n
        super().__init__(
            self.schedule.next_time,
            self.correct,
            initial_affect=init_cb,
            finalize=self.schedule.finish,
        )

    def correct(self, integrator) -> None:
        schedule = self.schedule
        i = schedule.current_index()
        ti = float(schedule.t[i])
        sensefun = self.sensefun

        y = sensefun.forward_state(ti)
        grad = np.asarray(self.dg(y.reshape(sensefun.shape), sensefun.params, ti, i))
        if grad.size != self.n:
            raise DimensionMismatchError("observation gradient", (self.n,), grad.shape)

        lam = self.lam if self.quad else self.lam[:self.n]
        lam[:] = grad.ravel()
        if self.quad:
            integrator.u += lam
        else:
            integrator.u[:self.n] += lam

        integrator.u_modified(True)
        schedule.consume()
        logger.debug("Adjoint correction for sample %d at t=%.6g", i, ti)


def generate_callbacks(sensefun, g, lam, t, callback, init_cb: bool):
    """
    Compose the discrete adjoint correction with the caller's callback.

    Args:
        sensefun: Adjoint sensitivity function (discrete flag, forward state)
        g: Observation gradient ``g(u, p, t, i) -> ∂g/∂u``
        lam: Correction buffer of the cache
        t: Sample times in chronological order
        callback: Caller's callback, passed through unchanged in continuous mode
        init_cb: Also correct before the first backward step (last sample at T)

    Returns:
        CallbackSet(correction, callback), or ``callback`` when not discrete
    """
    if not sensefun.discrete:
        return callback
    correction = DiscreteAdjointCallback(sensefun, g, lam, t, init_cb)
    return CallbackSet(correction, callback)
