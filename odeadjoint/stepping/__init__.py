"""Forward solves, the callback-aware integrator and the sensitivity drivers."""

from odeadjoint.stepping.callbacks import CallbackSet, DiscreteCallback, IterativeCallback
from odeadjoint.stepping.solution import ODESolution
from odeadjoint.stepping.integrator import Integrator, IntegratorResult
from odeadjoint.stepping.forward import sample_times, solve
from odeadjoint.stepping.adjoint import (
    AdjointSensitivityFunction,
    CheckpointedStateSource,
    InterpolatedStateSource,
    adjoint_sensitivities,
)
from odeadjoint.stepping.sensitivity import forward_sensitivities
from odeadjoint.stepping.through_solver import through_solver_gradient

__all__ = [
    "CallbackSet",
    "DiscreteCallback",
    "IterativeCallback",
    "ODESolution",
    "Integrator",
    "IntegratorResult",
    "sample_times",
    "solve",
    "AdjointSensitivityFunction",
    "CheckpointedStateSource",
    "InterpolatedStateSource",
    "adjoint_sensitivities",
    "forward_sensitivities",
    "through_solver_gradient",
]
