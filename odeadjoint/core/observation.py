"""Observation (loss) function protocols."""

from typing import Protocol, Any
from numpy.typing import NDArray


class DiscreteObservation(Protocol):
    """Per-sample loss term; the objective is Σ_i g(u(t_i), p, t_i, i)."""

    def __call__(self, u: NDArray, p: Any, t: float, i: int) -> float:
        """
        Evaluate the loss contribution of sample i.

        Args:
            u: State at t_i, shaped like u0
            p: Parameters (flat array or list of groups)
            t: Sample time t_i
            i: Sample index (chronological)

        Returns:
            Scalar loss term
        """
        ...


class DiscreteObservationGradient(Protocol):
    """Explicit ∂g/∂u for a discrete observation."""

    def __call__(self, u: NDArray, p: Any, t: float, i: int) -> NDArray:
        """Gradient w.r.t. u, shaped like u."""
        ...


class ContinuousObservation(Protocol):
    """Running loss; the objective is ∫ g(u(t), p, t) dt over tspan."""

    def __call__(self, u: NDArray, p: Any, t: float) -> float:
        ...


class ContinuousObservationGradient(Protocol):
    """Explicit ∂g/∂u for a continuous observation."""

    def __call__(self, u: NDArray, p: Any, t: float) -> NDArray:
        ...


def sum_of_states(u, p, t, i):
    """Discrete observation summing every entry of the sampled state."""
    return u.sum()


def sum_of_states_gradient(u, p, t, i):
    """Analytic gradient of ``sum_of_states``."""
    return u * 0.0 + 1.0
