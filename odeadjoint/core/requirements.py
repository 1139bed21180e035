"""Derivative requirements deduction."""

import logging
from dataclasses import dataclass
from enum import Enum, auto

from odeadjoint.core.algorithms import ADMode, SensitivityAlgorithm
from odeadjoint.core.exceptions import (
    OutOfPlaceUnsupportedError,
    SensitivityConfigurationError,
)
from odeadjoint.core.problem import FieldForm, ODEProblem

logger = logging.getLogger(__name__)


class JacobianStrategy(Enum):
    """How a Jacobian (or its products) is evaluated during the backward pass."""
    DENSE_DIRECT = auto()  # central finite differences into a dense buffer
    FORWARD_MODE = auto()  # jax.jacfwd into a dense buffer
    REVERSE_MODE = auto()  # jax.jacrev / jax.grad into a dense buffer
    AUTO_JVP = auto()      # lazy jax.vjp products, no buffer
    NONE = auto()          # analytic derivative supplied, or not needed


# Strategies that trace the function with jax
TRACED_STRATEGIES = frozenset({
    JacobianStrategy.FORWARD_MODE,
    JacobianStrategy.REVERSE_MODE,
    JacobianStrategy.AUTO_JVP,
})

# Strategies that fill a dense Jacobian buffer
DENSE_STRATEGIES = frozenset({
    JacobianStrategy.DENSE_DIRECT,
    JacobianStrategy.FORWARD_MODE,
    JacobianStrategy.REVERSE_MODE,
})


def resolve_autojacvec(sensealg: SensitivityAlgorithm, form: FieldForm) -> bool:
    """Unset autojacvec means: lazy VJPs for out-of-place fields only."""
    if sensealg.autojacvec is None:
        return form is FieldForm.OUT_OF_PLACE
    return sensealg.autojacvec


def resolve_autodiff(sensealg: SensitivityAlgorithm, form: FieldForm) -> bool:
    """Unset autodiff means: jax for out-of-place fields, finite differences otherwise."""
    if sensealg.autodiff is None:
        return form is FieldForm.OUT_OF_PLACE
    return sensealg.autodiff


def select_strategy(
    sensealg: SensitivityAlgorithm,
    form: FieldForm,
    analytic: bool,
    n_in: int,
    n_out: int,
) -> JacobianStrategy:
    """
    Pure selection of the strategy for an (n_out, n_in) Jacobian.

    Args:
        sensealg: Sensitivity algorithm configuration
        form: Calling convention of the vector field
        analytic: Whether an analytic Jacobian is supplied
        n_in: Number of differentiated inputs
        n_out: Number of outputs

    Returns:
        The strategy tag, fixed for the lifetime of one cache
    """
    if analytic:
        return JacobianStrategy.NONE
    if resolve_autojacvec(sensealg, form):
        return JacobianStrategy.AUTO_JVP
    if not resolve_autodiff(sensealg, form):
        return JacobianStrategy.DENSE_DIRECT
    return _dense_ad_strategy(sensealg.ad_mode, n_in, n_out)


def select_gradient_strategy(
    sensealg: SensitivityAlgorithm,
    form: FieldForm,
    n_in: int,
) -> JacobianStrategy:
    """Strategy for the gradient of a scalar observation w.r.t. the state."""
    if not resolve_autodiff(sensealg, form):
        return JacobianStrategy.DENSE_DIRECT
    return _dense_ad_strategy(sensealg.ad_mode, n_in, 1)


def _dense_ad_strategy(mode: ADMode, n_in: int, n_out: int) -> JacobianStrategy:
    if mode is ADMode.FORWARD:
        return JacobianStrategy.FORWARD_MODE
    if mode is ADMode.REVERSE:
        return JacobianStrategy.REVERSE_MODE
    if n_in <= n_out:
        return JacobianStrategy.FORWARD_MODE
    return JacobianStrategy.REVERSE_MODE


@dataclass(frozen=True)
class CacheRequirements:
    """What the adjoint differentiation cache must build for one problem."""

    jac_strategy: JacobianStrategy
    paramjac_strategy: JacobianStrategy
    grad_strategy: JacobianStrategy
    autojacvec: bool

    # Buffers
    state_jacobian_buffer: bool   # J, (n, n)
    param_jacobian_buffer: bool   # pJ, (n, np)

    # Quadrature integrand λᵀ ∂f/∂p through jax.vjp
    param_vjp: bool


def needs_buffer(strategy: JacobianStrategy, form: FieldForm) -> bool:
    """
    Whether a Jacobian evaluated with ``strategy`` needs a dense output buffer.

    Dense workspaces fill one, and so does an analytic in-place derivative.
    An analytic out-of-place derivative returns its own array.
    """
    if strategy in DENSE_STRATEGIES:
        return True
    return strategy is JacobianStrategy.NONE and form is FieldForm.IN_PLACE


def deduce_requirements(
    sensealg: SensitivityAlgorithm,
    problem: ODEProblem,
    discrete: bool,
    has_dg: bool,
    quad: bool = False,
) -> CacheRequirements:
    """Dispatch logic for the adjoint differentiation cache."""
    form = problem.form
    n, m = problem.state_dim, problem.num_params
    jacvec = resolve_autojacvec(sensealg, form)

    jac_strategy = select_strategy(sensealg, form, problem.has_jac, n, n)

    if quad or m == 0:
        paramjac_strategy = JacobianStrategy.NONE
    else:
        paramjac_strategy = select_strategy(
            sensealg, form, problem.has_paramjac, m, n
        )

    if discrete or has_dg:
        grad_strategy = JacobianStrategy.NONE
    else:
        grad_strategy = select_gradient_strategy(sensealg, form, n)

    # Quadrature never materializes pJ, except as the output buffer of an
    # analytic in-place paramjac.
    if quad:
        param_buffer = (
            m > 0 and problem.has_paramjac and form is FieldForm.IN_PLACE
        )
    else:
        param_buffer = m > 0 and needs_buffer(paramjac_strategy, form)

    requirements = CacheRequirements(
        jac_strategy=jac_strategy,
        paramjac_strategy=paramjac_strategy,
        grad_strategy=grad_strategy,
        autojacvec=jacvec,
        state_jacobian_buffer=needs_buffer(jac_strategy, form),
        param_jacobian_buffer=param_buffer,
        param_vjp=quad and m > 0 and not problem.has_paramjac,
    )
    validate_requirements(sensealg, problem, requirements)
    logger.debug(
        "%s on %s field: jac=%s paramjac=%s grad=%s",
        sensealg.name, form.name, jac_strategy.name,
        paramjac_strategy.name, grad_strategy.name,
    )
    return requirements


def validate_field_form(sensealg: SensitivityAlgorithm, form: FieldForm) -> None:
    """Reject algorithm/field-form pairs that cannot work, before any step."""
    if sensealg.requires_inplace and form is FieldForm.OUT_OF_PLACE:
        raise OutOfPlaceUnsupportedError(sensealg.name)
    if sensealg.requires_traceable and form is FieldForm.IN_PLACE:
        raise SensitivityConfigurationError(
            f"{sensealg.name} differentiates through the integrator with jax "
            f"and needs an out-of-place field f(u, p, t)"
        )


def validate_requirements(
    sensealg: SensitivityAlgorithm,
    problem: ODEProblem,
    requirements: CacheRequirements,
) -> None:
    """Configuration errors are raised here, never mid-integration."""
    form = problem.form
    validate_field_form(sensealg, form)

    if form is not FieldForm.IN_PLACE:
        return

    traced = [
        name for name, strategy in (
            ("state Jacobian", requirements.jac_strategy),
            ("parameter Jacobian", requirements.paramjac_strategy),
        )
        if strategy in TRACED_STRATEGIES
    ]
    if traced:
        raise SensitivityConfigurationError(
            f"{sensealg.name}: the {' and '.join(traced)} would be traced with "
            f"jax, which cannot follow an in-place field; use autodiff=False "
            f"and autojacvec=False, or supply analytic jac/paramjac"
        )
    if requirements.param_vjp:
        raise SensitivityConfigurationError(
            f"{sensealg.name} integrates λᵀ ∂f/∂p with jax.vjp; an in-place "
            f"field needs an analytic paramjac"
        )
