"""Gradient entry point and optimization interface for external optimizers."""

from odeadjoint.optimization.gradient import (
    GradientResult,
    compute_gradient,
    continuous_loss,
    discrete_loss,
)
from odeadjoint.optimization.interface import AdjointOptimizer

__all__ = [
    "GradientResult",
    "compute_gradient",
    "continuous_loss",
    "discrete_loss",
    "AdjointOptimizer",
]
