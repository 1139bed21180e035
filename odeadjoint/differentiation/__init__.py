"""Jacobian strategy provider: wrappers, workspaces and their factory."""

from odeadjoint.differentiation.protocols import (
    DifferentiableWrapper,
    GradientConfig,
    JacobianConfig,
)
from odeadjoint.differentiation.wrappers import (
    ParamJacobianWrapper,
    UGradientWrapper,
    UJacobianWrapper,
)
from odeadjoint.differentiation.finite_difference import (
    FiniteDifferenceGradient,
    FiniteDifferenceJacobian,
)
from odeadjoint.differentiation.autodiff import JaxGradient, JaxJacobian, JaxVJP, traces
from odeadjoint.differentiation.evaluators import JacobianEvaluator, ObservationGradient
from odeadjoint.differentiation.factory import (
    build_grad_config,
    build_jac_config,
    build_observation_gradient,
    build_param_jac_config,
    build_param_jacobian,
    build_state_jacobian,
    build_vjp_config,
    require_traceable,
)

__all__ = [
    "DifferentiableWrapper",
    "GradientConfig",
    "JacobianConfig",
    "ParamJacobianWrapper",
    "UGradientWrapper",
    "UJacobianWrapper",
    "FiniteDifferenceGradient",
    "FiniteDifferenceJacobian",
    "JaxGradient",
    "JaxJacobian",
    "JaxVJP",
    "JacobianEvaluator",
    "ObservationGradient",
    "build_observation_gradient",
    "build_grad_config",
    "build_jac_config",
    "build_param_jac_config",
    "build_param_jacobian",
    "build_state_jacobian",
    "build_vjp_config",
    "require_traceable",
    "traces",
]
