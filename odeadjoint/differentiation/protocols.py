"""Derivative evaluator protocols."""

from typing import Any, Protocol
from numpy.typing import NDArray


class DifferentiableWrapper(Protocol):
    """
    A function of one flat argument with the rest held as mutable constants.

    ``t`` and ``constant`` are updated by the caller before each evaluation;
    ``pure`` takes them explicitly so a compiled derivative never retraces.
    """

    t: float

    @property
    def constant(self) -> Any:
        ...

    def pure(self, x: Any, constant: Any, t: float, *extra: Any) -> Any:
        """Traceable evaluation, f(x; constant, t)."""
        ...

    def evaluate_into(self, out: NDArray, x: NDArray) -> None:
        """Evaluate at x with the current constants, writing into out."""
        ...


class JacobianConfig(Protocol):
    """Workspace that fills a preallocated dense Jacobian."""

    def jacobian(self, out: NDArray, x: NDArray) -> None:
        """
        Write ∂F/∂x at x into out.

        Args:
            out: Buffer of shape (n_out, n_in), overwritten in full
            x: Flat evaluation point (n_in,)
        """
        ...


class GradientConfig(Protocol):
    """Workspace that fills a preallocated gradient of a scalar function."""

    def gradient(self, out: NDArray, x: NDArray) -> None:
        """Write ∂g/∂x at x into out, shape (n_in,)."""
        ...
