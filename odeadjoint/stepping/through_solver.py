"""Differentiation through every step of the integrator (diffrax)."""

import logging
from typing import Callable
import diffrax
import jax
import jax.numpy as jnp
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.algorithms import (
    ForwardDiffSensitivity,
    ReverseDiffAdjoint,
    SensitivityAlgorithm,
)
from odeadjoint.core.exceptions import SensitivityConfigurationError
from odeadjoint.core.problem import ODEProblem, SolverOptions
from odeadjoint.core.requirements import validate_field_form
from odeadjoint.differentiation import require_traceable

logger = logging.getLogger(__name__)


def _diffrax_solver(name: str):
    cls = getattr(diffrax, name, None)
    if not (isinstance(cls, type) and issubclass(cls, diffrax.AbstractSolver)):
        raise SensitivityConfigurationError(f"Unknown diffrax solver: {name!r}")
    return cls()


def through_solver_gradient(
    problem: ODEProblem,
    g: Callable,
    sensealg: SensitivityAlgorithm,
    ts: NDArray,
    options: SolverOptions,
) -> tuple[NDArray, object, float]:
    """
    Gradient of Σ_i g(u(t_i), p, t_i, i) by AD through diffrax.diffeqsolve.

    ReverseDiffAdjoint takes jax.value_and_grad through a
    RecursiveCheckpointAdjoint solve; ForwardDiffSensitivity takes
    jax.jacfwd through a ForwardMode solve. The explicit dependence of g on
    p is held constant, as in the backward adjoints.

    Args:
        problem: Problem with an out-of-place, jax-traceable field
        g: Discrete observation g(u, p, t, i)
        sensealg: ReverseDiffAdjoint or ForwardDiffSensitivity
        ts: Sample times (chronological)
        options: Tolerances for the PID step-size controller

    Returns:
        (du0, dp, loss)
    """
    validate_field_form(sensealg, problem.form)
    if ts is None:
        raise SensitivityConfigurationError(
            f"{sensealg.name} differentiates a sampled objective; pass sample times"
        )
    if isinstance(sensealg, ReverseDiffAdjoint):
        adjoint = diffrax.RecursiveCheckpointAdjoint()
    elif isinstance(sensealg, ForwardDiffSensitivity):
        adjoint = diffrax.ForwardMode()
    else:
        raise SensitivityConfigurationError(
            f"{sensealg.name} does not differentiate through the solver"
        )

    field = problem.vector_field()
    layout = problem.layout
    shape = problem.u0.shape
    n = problem.state_dim
    t0, t1 = problem.tspan
    ts = np.asarray(ts, dtype=float)

    y0, p0 = problem.u0.ravel(), problem.flat_params()
    hint = "through-solver algorithms need f and g written with jax.numpy"
    require_traceable(field, (y0, p0, float(t0)), "vector field", sensealg, hint)
    require_traceable(
        lambda x, c: g(x.reshape(shape), layout.unflatten(c), float(t1), 0),
        (y0, p0), "observation g", sensealg, hint,
    )

    term = diffrax.ODETerm(lambda t, y, args: field(y, args, t))
    solver = _diffrax_solver(sensealg.solver)
    controller = diffrax.PIDController(rtol=options.rtol, atol=options.atol)
    saveat = diffrax.SaveAt(ts=jnp.asarray(ts))

    def loss(x):
        u0, p = x[:n], x[n:]
        sol = diffrax.diffeqsolve(
            term, solver, t0, t1, None, u0,
            args=p,
            saveat=saveat,
            stepsize_controller=controller,
            adjoint=adjoint,
            max_steps=sensealg.max_steps,
        )
        params = layout.unflatten(jax.lax.stop_gradient(p))
        total = 0.0
        for i, ti in enumerate(ts):
            total = total + g(sol.ys[i].reshape(shape), params, float(ti), i)
        return total

    x = jnp.concatenate([jnp.asarray(y0), jnp.asarray(p0)])
    if isinstance(sensealg, ReverseDiffAdjoint):
        value, grad = jax.value_and_grad(loss)(x)
    else:
        value = loss(x)
        grad = jax.jacfwd(loss)(x)

    grad = np.asarray(grad, dtype=float)
    logger.debug("%s through %s: loss=%.6g", sensealg.name, sensealg.solver, float(value))
    du0 = grad[:n].reshape(shape)
    dp = layout.unflatten(grad[n:].copy())
    return du0, dp, float(value)
