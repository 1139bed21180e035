"""Forward state solve."""

import logging
from typing import Callable, Optional, Sequence, Union
import numpy as np
from numpy.typing import NDArray
from scipy.integrate import solve_ivp

from odeadjoint.core.exceptions import IntegrationError, SensitivityConfigurationError
from odeadjoint.core.problem import ODEProblem, SolverOptions
from odeadjoint.stepping.integrator import solver_class
from odeadjoint.stepping.solution import ODESolution

logger = logging.getLogger(__name__)

SaveAt = Union[float, Sequence[float], NDArray, None]


def sample_times(tspan: tuple[float, float], saveat: SaveAt) -> Optional[NDArray]:
    """
    Resolve ``saveat`` to an increasing array of times inside tspan.

    A float step h gives t0, t0 + h, t0 + 2h, ... and always ends exactly at
    t1. An array is validated and returned as float64.
    """
    if saveat is None:
        return None
    t0, t1 = tspan

    if np.ndim(saveat) == 0:
        h = float(saveat)
        if not h > 0:
            raise SensitivityConfigurationError(f"saveat step must be positive, got {h}")
        k = int(np.floor((t1 - t0) / h + 1e-9))
        ts = t0 + h * np.arange(k + 1)
        if abs(ts[-1] - t1) <= 1e-9 * max(1.0, abs(t1)):
            ts[-1] = t1
        else:
            ts = np.append(ts, t1)
        return ts

    ts = np.array(saveat, dtype=float).ravel()
    if ts.size == 0:
        raise SensitivityConfigurationError("saveat must not be empty")
    if np.any(np.diff(ts) <= 0):
        raise SensitivityConfigurationError("saveat times must be strictly increasing")
    if ts[0] < t0 or ts[-1] > t1:
        raise SensitivityConfigurationError(
            f"saveat times must lie inside tspan {tspan}, got [{ts[0]}, {ts[-1]}]"
        )
    return ts


def forward_rhs(problem: ODEProblem) -> Callable:
    """scipy-style ``rhs(t, y)`` on the flat state; returns a new array per call."""
    field = problem.vector_field()
    p = problem.flat_params()

    def rhs(t, y):
        return np.array(field(y, p, t), dtype=float)

    return rhs


def integrate_segment(
    problem: ODEProblem,
    t_start: float,
    t_end: float,
    y0: NDArray,
    options: SolverOptions,
    dense: bool = True,
    t_eval: Optional[NDArray] = None,
):
    """
    Integrate the flat state from t_start to t_end with solve_ivp.

    Returns:
        scipy OdeResult
    """
    res = solve_ivp(
        forward_rhs(problem),
        (t_start, t_end),
        np.asarray(y0, dtype=float).ravel(),
        method=solver_class(options.method),
        t_eval=t_eval,
        dense_output=dense,
        rtol=options.rtol,
        atol=options.atol,
        max_step=options.max_step,
    )
    if res.status < 0:
        raise IntegrationError(res.message, t=float(res.t[-1]) if res.t.size else None)
    return res


def solve(
    problem: ODEProblem,
    solver: Optional[SolverOptions] = None,
    saveat: SaveAt = None,
    dense: bool = True,
) -> ODESolution:
    """
    Forward solve of the problem.

    Args:
        problem: Problem specification
        solver: Solver options; defaults to the problem's, then SolverOptions()
        saveat: Step or times to save at; None saves every accepted step
        dense: Keep the dense interpolant

    Returns:
        ODESolution with states shaped (k, *u0.shape)
    """
    options = solver or problem.solver or SolverOptions()
    ts = sample_times(problem.tspan, saveat)
    t0, t1 = problem.tspan

    res = integrate_segment(problem, t0, t1, problem.u0, options, dense=dense, t_eval=ts)
    logger.debug(
        "Forward solve with %s: %d evaluations, %d saved states",
        options.method, res.nfev, res.t.size,
    )
    u = res.y.T.reshape((res.t.size,) + problem.u0.shape)
    return ODESolution(res.t, u, res.sol if dense else None, problem, options)
