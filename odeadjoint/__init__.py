"""
odeadjoint: adjoint sensitivity analysis for ODE initial value problems.

Gradients of scalar objectives of an ODE solution with respect to the
initial state and the parameters, by:
- Interpolating and quadrature adjoints integrated backward in time
- Forward sensitivity equations
- Forward- and reverse-mode AD through the integrator
"""

import jax

# Adjoint accuracy needs float64 throughout
jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"

from odeadjoint.core import (
    ADMode,
    ODEProblem,
    SolverOptions,
    InterpolatingAdjoint,
    QuadratureAdjoint,
    ForwardSensitivity,
    ForwardDiffSensitivity,
    ReverseDiffAdjoint,
)
from odeadjoint.stepping import adjoint_sensitivities, solve
from odeadjoint.optimization import (
    AdjointOptimizer,
    GradientResult,
    compute_gradient,
)

__all__ = [
    "ADMode",
    "ODEProblem",
    "SolverOptions",
    "InterpolatingAdjoint",
    "QuadratureAdjoint",
    "ForwardSensitivity",
    "ForwardDiffSensitivity",
    "ReverseDiffAdjoint",
    "adjoint_sensitivities",
    "solve",
    "AdjointOptimizer",
    "GradientResult",
    "compute_gradient",
]
