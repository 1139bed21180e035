"""Core abstractions for adjoint sensitivity analysis."""

from odeadjoint.core.algorithms import (
    ADMode,
    SensitivityKind,
    SensitivityAlgorithm,
    AdjointAlgorithm,
    InterpolatingAdjoint,
    QuadratureAdjoint,
    ForwardSensitivity,
    ForwardDiffSensitivity,
    ReverseDiffAdjoint,
)
from odeadjoint.core.exceptions import (
    SensitivityError,
    SensitivityConfigurationError,
    OutOfPlaceUnsupportedError,
    DimensionMismatchError,
    IntegrationError,
    AdjointInvariantError,
)
from odeadjoint.core.observation import sum_of_states, sum_of_states_gradient
from odeadjoint.core.problem import (
    FieldForm,
    ODEProblem,
    ParameterLayout,
    SolverOptions,
    VectorField,
)
from odeadjoint.core.requirements import (
    CacheRequirements,
    JacobianStrategy,
    deduce_requirements,
    select_strategy,
)

__all__ = [
    "ADMode",
    "SensitivityKind",
    "SensitivityAlgorithm",
    "AdjointAlgorithm",
    "InterpolatingAdjoint",
    "QuadratureAdjoint",
    "ForwardSensitivity",
    "ForwardDiffSensitivity",
    "ReverseDiffAdjoint",
    "SensitivityError",
    "SensitivityConfigurationError",
    "OutOfPlaceUnsupportedError",
    "DimensionMismatchError",
    "IntegrationError",
    "AdjointInvariantError",
    "FieldForm",
    "ODEProblem",
    "ParameterLayout",
    "SolverOptions",
    "VectorField",
    "CacheRequirements",
    "JacobianStrategy",
    "deduce_requirements",
    "select_strategy",
    "sum_of_states",
    "sum_of_states_gradient",
]
