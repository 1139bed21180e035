"""Derivative workspace factory and dispatch logic."""

import logging
from typing import Callable, Optional
from numpy.typing import NDArray

from odeadjoint.core.algorithms import SensitivityAlgorithm
from odeadjoint.core.exceptions import SensitivityConfigurationError
from odeadjoint.core.problem import ODEProblem, VectorField
from odeadjoint.core.requirements import (
    TRACED_STRATEGIES,
    JacobianStrategy,
    select_gradient_strategy,
)
from odeadjoint.differentiation.autodiff import JaxGradient, JaxJacobian, JaxVJP, traces
from odeadjoint.differentiation.evaluators import JacobianEvaluator, ObservationGradient
from odeadjoint.differentiation.finite_difference import (
    FiniteDifferenceGradient,
    FiniteDifferenceJacobian,
)
from odeadjoint.differentiation.protocols import GradientConfig, JacobianConfig
from odeadjoint.differentiation.wrappers import (
    ParamJacobianWrapper,
    UGradientWrapper,
    UJacobianWrapper,
)

logger = logging.getLogger(__name__)

AUTODIFF_HINT = (
    "write it with jax.numpy, supply an analytic jac/paramjac, "
    "or select autojacvec=False, autodiff=False"
)


def require_traceable(
    fn: Callable,
    args: tuple,
    what: str,
    sensealg: SensitivityAlgorithm,
    hint: str = AUTODIFF_HINT,
) -> None:
    """
    Trace fn(*args) abstractly and reject it before any integration step.

    Raises:
        SensitivityConfigurationError: fn converts a traced value to numpy
            or branches on it
    """
    if not traces(fn, *args):
        raise SensitivityConfigurationError(
            f"{sensealg.name} differentiates the {what} with jax, but it cannot "
            f"be traced (numpy conversion or Python control flow on a traced "
            f"value); {hint}"
        )


def _dense_config(
    strategy: JacobianStrategy,
    sensealg: SensitivityAlgorithm,
    wrapper,
    x: NDArray,
    n_out: int,
) -> Optional[JacobianConfig]:
    if strategy is JacobianStrategy.DENSE_DIRECT:
        return FiniteDifferenceJacobian(wrapper, x, n_out, step=sensealg.fd_step)
    if strategy in (JacobianStrategy.FORWARD_MODE, JacobianStrategy.REVERSE_MODE):
        return JaxJacobian(wrapper, strategy)
    # AUTO_JVP and NONE carry no dense workspace
    return None


def build_jac_config(
    strategy: JacobianStrategy,
    sensealg: SensitivityAlgorithm,
    uf: UJacobianWrapper,
    u: NDArray,
) -> Optional[JacobianConfig]:
    """
    Workspace for ∂f/∂u.

    Args:
        strategy: Selected strategy for the state Jacobian
        sensealg: Sensitivity algorithm (finite-difference step)
        uf: Wrapper closing over t and p
        u: Representative state, fixes the input size

    Returns:
        Jacobian workspace, or None for AUTO_JVP / NONE
    """
    config = _dense_config(strategy, sensealg, uf, u, uf.field.size)
    logger.debug("State Jacobian workspace: %s", type(config).__name__)
    return config


def build_param_jac_config(
    strategy: JacobianStrategy,
    sensealg: SensitivityAlgorithm,
    pf: ParamJacobianWrapper,
    u: NDArray,
    p: NDArray,
) -> Optional[JacobianConfig]:
    """Workspace for ∂f/∂p; pf closes over t and u."""
    config = _dense_config(strategy, sensealg, pf, p, u.size)
    logger.debug("Parameter Jacobian workspace: %s", type(config).__name__)
    return config


def build_grad_config(
    strategy: JacobianStrategy,
    sensealg: SensitivityAlgorithm,
    pg: UGradientWrapper,
    u: NDArray,
    static_index: bool = False,
) -> Optional[GradientConfig]:
    """Workspace for ∂g/∂u of a scalar observation."""
    if strategy is JacobianStrategy.DENSE_DIRECT:
        return FiniteDifferenceGradient(pg, u, step=sensealg.fd_step)
    if strategy in (JacobianStrategy.FORWARD_MODE, JacobianStrategy.REVERSE_MODE):
        return JaxGradient(pg, strategy, static_index=static_index)
    return None


def build_vjp_config(field: VectorField) -> JaxVJP:
    """Lazy VJP/JVP evaluator for the automatic-JVP path."""
    return JaxVJP(field)


def build_state_jacobian(
    strategy: JacobianStrategy,
    sensealg: SensitivityAlgorithm,
    problem: ODEProblem,
    field: VectorField,
    u: NDArray,
    p: NDArray,
    t: float,
    buffer: Optional[NDArray],
) -> tuple[Optional[JacobianEvaluator], Optional[JacobianConfig]]:
    """
    Strategy provider entry point for ∂f/∂u.

    Args:
        strategy: Selected strategy
        sensealg: Sensitivity algorithm
        problem: Problem (analytic jac, field form)
        field: Flat view of f
        u: Evaluation point the workspace is built against
        p: Flat parameters
        t: Time the wrapper is initially fixed at
        buffer: Dense (n, n) output buffer, or None

    Returns:
        (evaluator, config); both None on the automatic-JVP path
    """
    if strategy is JacobianStrategy.AUTO_JVP:
        return None, None
    if strategy is JacobianStrategy.NONE:
        evaluator = JacobianEvaluator(strategy, problem, "u", buffer, analytic=problem.jac)
        evaluator.check(u, p, t)
        return evaluator, None

    uf = UJacobianWrapper(field, t, p)
    config = build_jac_config(strategy, sensealg, uf, u)
    evaluator = JacobianEvaluator(strategy, problem, "u", buffer, wrapper=uf, config=config)
    return evaluator, config


def build_param_jacobian(
    strategy: JacobianStrategy,
    sensealg: SensitivityAlgorithm,
    problem: ODEProblem,
    field: VectorField,
    u: NDArray,
    p: NDArray,
    t: float,
    buffer: Optional[NDArray],
) -> tuple[Optional[JacobianEvaluator], Optional[JacobianConfig]]:
    """Strategy provider entry point for ∂f/∂p; ``u`` is held by reference."""
    if strategy is JacobianStrategy.AUTO_JVP or problem.num_params == 0:
        return None, None
    if strategy is JacobianStrategy.NONE:
        if not problem.has_paramjac:
            return None, None
        evaluator = JacobianEvaluator(strategy, problem, "p", buffer, analytic=problem.paramjac)
        evaluator.check(u, p, t)
        return evaluator, None

    pf = ParamJacobianWrapper(field, t, u)
    config = build_param_jac_config(strategy, sensealg, pf, u, p)
    evaluator = JacobianEvaluator(strategy, problem, "p", buffer, wrapper=pf, config=config)
    return evaluator, config


def build_observation_gradient(
    g: Callable,
    sensealg: SensitivityAlgorithm,
    problem: ODEProblem,
) -> ObservationGradient:
    """
    Differentiate a discrete observation g(u, p, t, i) w.r.t. u.

    The sample index is traced like the state, so jax compiles the gradient
    once. An observation that only traces with a concrete index gets it as a
    static argument instead, compiled once per sample.

    Raises:
        SensitivityConfigurationError: g is differentiated with jax but does
            not trace even with a concrete index
    """
    strategy = select_gradient_strategy(sensealg, problem.form, problem.state_dim)
    u0 = problem.u0.ravel()
    p = problem.flat_params()
    t1 = float(problem.tspan[1])
    pg = UGradientWrapper(g, t1, p, problem.u0.shape, problem.layout, index=0)

    static_index = False
    if strategy in TRACED_STRATEGIES and not traces(pg.pure, u0, p, t1, 0):
        require_traceable(
            lambda x, c, t: pg.pure(x, c, t, 0), (u0, p, t1), "observation g", sensealg
        )
        static_index = True

    config = build_grad_config(strategy, sensealg, pg, u0, static_index=static_index)
    logger.debug(
        "Observation gradient by %s%s",
        strategy.name, " (static sample index)" if static_index else "",
    )
    return ObservationGradient(pg, config)
