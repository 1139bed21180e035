"""Forward sensitivity equations."""

import logging
from typing import Callable
import numpy as np
from numpy.typing import NDArray
from scipy.integrate import solve_ivp

from odeadjoint.core.algorithms import SensitivityAlgorithm
from odeadjoint.core.exceptions import IntegrationError, SensitivityConfigurationError
from odeadjoint.core.problem import ODEProblem, SolverOptions
from odeadjoint.core.requirements import (
    TRACED_STRATEGIES,
    JacobianStrategy,
    select_strategy,
    validate_field_form,
)
from odeadjoint.differentiation import build_param_jacobian, build_state_jacobian
from odeadjoint.stepping.integrator import solver_class
from odeadjoint.utils.arena import ScratchArena

logger = logging.getLogger(__name__)


def forward_sensitivities(
    problem: ODEProblem,
    sensealg: SensitivityAlgorithm,
    dg: Callable,
    ts: NDArray,
    options: SolverOptions,
) -> tuple[NDArray, object, NDArray]:
    """
    Gradient of Σ_i g(u(t_i), p, t_i, i) through the forward sensitivities.

    Integrates the augmented state [u; S] with S = ∂u/∂[u0, p] of shape
    (n, n + np):
        dS/dt = J S,   dS[:, n:] += ∂f/∂p
    starting from S(t0) = [I | 0]. J and ∂f/∂p are evaluated in place into
    the buffers of a ScratchArena, so the field must be in-place.

    Args:
        problem: Problem with an in-place field
        sensealg: ForwardSensitivity
        dg: Observation gradient dg(u, p, t, i)
        ts: Sample times (chronological)
        options: Solver options

    Returns:
        (du0, dp, states): gradients and the sampled states (k, *u0.shape)
    """
    form = problem.form
    validate_field_form(sensealg, form)

    n, m = problem.state_dim, problem.num_params
    jac_strategy = select_strategy(sensealg, form, problem.has_jac, n, n)
    if m == 0:
        paramjac_strategy = JacobianStrategy.NONE
    else:
        paramjac_strategy = select_strategy(sensealg, form, problem.has_paramjac, m, n)
    traced = {jac_strategy, paramjac_strategy} & TRACED_STRATEGIES
    if traced:
        raise SensitivityConfigurationError(
            f"{sensealg.name} fills Jacobians in place; "
            f"{', '.join(sorted(s.name for s in traced))} cannot trace an in-place field"
        )

    arena = ScratchArena({"J": (n, n), "pJ": (n, m), "y": (n,)})
    field = problem.vector_field()
    p = problem.flat_params()
    t0, t1 = problem.tspan
    y = arena["y"]
    y[:] = problem.u0.ravel()

    jac, _ = build_state_jacobian(
        jac_strategy, sensealg, problem, field, y, p, t0, arena["J"]
    )
    paramjac, _ = build_param_jacobian(
        paramjac_strategy, sensealg, problem, field, y, p, t0, arena["pJ"]
    )
    width = n + m

    def rhs(t, z):
        dz = np.empty_like(z)
        u = z[:n]
        S = z[n:].reshape(n, width)
        field.evaluate_into(dz[:n], u, p, t)
        dS = dz[n:].reshape(n, width)
        np.dot(jac(u, p, t), S, out=dS)
        if paramjac is not None:
            dS[:, n:] += paramjac(u, p, t)
        return dz

    S0 = np.zeros((n, width))
    S0[:, :n] = np.eye(n)
    z0 = np.concatenate([problem.u0.ravel(), S0.ravel()])

    res = solve_ivp(
        rhs, (t0, t1), z0,
        method=solver_class(options.method),
        t_eval=ts,
        rtol=options.rtol,
        atol=options.atol,
        max_step=options.max_step,
    )
    if res.status < 0:
        raise IntegrationError(res.message, t=float(res.t[-1]) if res.t.size else None)
    logger.debug("Forward sensitivities: %d evaluations of the augmented system", res.nfev)

    params = problem.layout.unflatten(p)
    grad = np.zeros(width)
    states = np.empty((len(ts),) + problem.u0.shape)
    for i, ti in enumerate(ts):
        z = res.y[:, i]
        states[i] = z[:n].reshape(problem.u0.shape)
        gi = np.asarray(dg(states[i], params, float(ti), i)).ravel()
        grad += z[n:].reshape(n, width).T @ gi

    du0 = grad[:n].reshape(problem.u0.shape)
    dp = problem.layout.unflatten(grad[n:].copy())
    return du0, dp, states
