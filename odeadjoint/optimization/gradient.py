"""Gradient entry point."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional
import numpy as np
from numpy.typing import NDArray
from scipy.integrate import quad_vec

from odeadjoint.core.algorithms import (
    InterpolatingAdjoint,
    SensitivityAlgorithm,
    SensitivityKind,
)
from odeadjoint.core.exceptions import SensitivityConfigurationError
from odeadjoint.core.problem import ODEProblem, SolverOptions
from odeadjoint.core.requirements import validate_field_form
from odeadjoint.differentiation import build_observation_gradient
from odeadjoint.stepping.adjoint import adjoint_sensitivities
from odeadjoint.stepping.forward import SaveAt, sample_times, solve
from odeadjoint.stepping.sensitivity import forward_sensitivities
from odeadjoint.stepping.solution import ODESolution
from odeadjoint.stepping.through_solver import through_solver_gradient

logger = logging.getLogger(__name__)


@dataclass
class GradientResult:
    """Objective value and its gradient."""

    du0: NDArray    # shaped like u0
    dp: Any         # shaped like p, or a list of groups
    loss: float

    def flat(self) -> NDArray:
        """[du0; dp] as one flat vector."""
        dp = self.dp if isinstance(self.dp, (list, tuple)) else [self.dp]
        return np.concatenate([np.ravel(self.du0)] + [np.ravel(d) for d in dp])


def discrete_loss(sol: ODESolution, g: Callable, ts: NDArray) -> float:
    """Σ_i g(u(t_i), p, t_i, i)."""
    problem = sol.problem
    params = problem.layout.unflatten(problem.flat_params())
    return float(sum(
        float(g(sol(ti), params, float(ti), i)) for i, ti in enumerate(ts)
    ))


def continuous_loss(sol: ODESolution, g: Callable) -> float:
    """∫ g(u(t), p, t) dt over tspan."""
    problem = sol.problem
    params = problem.layout.unflatten(problem.flat_params())
    t0, t1 = problem.tspan
    value, _ = quad_vec(
        lambda t: float(g(sol(t), params, t)), t0, t1,
        epsabs=sol.options.atol, epsrel=sol.options.rtol,
    )
    return float(value)


def compute_gradient(
    problem: ODEProblem,
    g: Callable,
    sensealg: Optional[SensitivityAlgorithm] = None,
    dg: Optional[Callable] = None,
    *,
    ts: SaveAt = None,
    solver: Optional[SolverOptions] = None,
    callback=None,
) -> GradientResult:
    """
    Gradient of an ODE objective w.r.t. the initial state and the parameters.

    With ``ts`` the objective is Σ_i g(u(t_i), p, t_i, i) over the sample
    times; without it, the running cost ∫ g(u(t), p, t) dt. The algorithm
    and solver default to the ones stored on the problem, then to
    InterpolatingAdjoint() and SolverOptions().

    Args:
        problem: ODE problem
        g: Observation function
        sensealg: Sensitivity algorithm
        dg: Explicit ∂g/∂u (skips differentiating g)
        ts: Sample times, or a sampling step
        solver: Solver options for the forward (and backward) solve
        callback: Extra callback for the backward integration (adjoint
            algorithms only)

    Returns:
        GradientResult(du0, dp, loss)

    Raises:
        SensitivityConfigurationError: incompatible algorithm, field, objective
            or callback
    """
    sensealg = sensealg or problem.sensealg or InterpolatingAdjoint()
    options = solver or problem.solver or SolverOptions()
    validate_field_form(sensealg, problem.form)
    if callback is not None and sensealg.kind is not SensitivityKind.ADJOINT:
        raise SensitivityConfigurationError(
            f"{sensealg.name} has no backward integration to attach a callback to"
        )

    times = sample_times(problem.tspan, ts)
    discrete = times is not None
    logger.debug(
        "compute_gradient: %s with %s, %s objective",
        sensealg.name, options.method, "discrete" if discrete else "continuous",
    )

    if sensealg.kind is SensitivityKind.THROUGH_SOLVER:
        du0, dp, loss = through_solver_gradient(problem, g, sensealg, times, options)
        return GradientResult(du0=du0, dp=dp, loss=loss)

    if sensealg.kind is SensitivityKind.FORWARD:
        if not discrete:
            raise SensitivityConfigurationError(
                f"{sensealg.name} supports sampled objectives only; pass ts"
            )
        if dg is None:
            dg = build_observation_gradient(g, sensealg, problem)
        du0, dp, states = forward_sensitivities(problem, sensealg, dg, times, options)
        params = problem.layout.unflatten(problem.flat_params())
        loss = float(sum(
            float(g(states[i], params, float(ti), i)) for i, ti in enumerate(times)
        ))
        return GradientResult(du0=du0, dp=dp, loss=loss)

    sol = solve(problem, options, saveat=times)
    du0, dp = adjoint_sensitivities(
        sol, sensealg, g=g, t=times, dg=dg, callback=callback
    )
    loss = discrete_loss(sol, g, times) if discrete else continuous_loss(sol, g)
    return GradientResult(du0=du0, dp=dp, loss=loss)
