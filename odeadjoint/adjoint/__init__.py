"""Adjoint differentiation cache and discrete adjoint callbacks."""

from odeadjoint.adjoint.cache import AdjointDiffCache, adjointdiffcache
from odeadjoint.adjoint.callbacks import (
    DiscreteAdjointCallback,
    DiscreteAdjointSchedule,
    generate_callbacks,
)

__all__ = [
    "AdjointDiffCache",
    "adjointdiffcache",
    "DiscreteAdjointCallback",
    "DiscreteAdjointSchedule",
    "generate_callbacks",
]
