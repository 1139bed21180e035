"""Single-argument views of the vector field and the observation."""

from typing import Any, Callable, Optional
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.problem import ParameterLayout, VectorField


class UJacobianWrapper:
    """x ↦ f(x, p, t), for ∂f/∂u."""

    def __init__(self, field: VectorField, t: float, p: NDArray):
        self.field = field
        self.t = t
        self.p = p

    @property
    def constant(self) -> NDArray:
        return self.p

    def pure(self, x, p, t):
        return self.field(x, p, t)

    def evaluate_into(self, out: NDArray, x: NDArray) -> None:
        self.field.evaluate_into(out, x, self.p, self.t)

    def __call__(self, x):
        return self.field(x, self.p, self.t)


class ParamJacobianWrapper:
    """x ↦ f(u, x, t), for ∂f/∂p."""

    def __init__(self, field: VectorField, t: float, u: NDArray):
        self.field = field
        self.t = t
        self.u = u

    @property
    def constant(self) -> NDArray:
        return self.u

    def pure(self, x, u, t):
        return self.field(u, x, t)

    def evaluate_into(self, out: NDArray, x: NDArray) -> None:
        self.field.evaluate_into(out, self.u, x, self.t)

    def __call__(self, x):
        return self.field(self.u, x, self.t)


class UGradientWrapper:
    """
    x ↦ g(x, p, t) for a continuous observation, or g(x, p, t, i) when
    ``index`` is set (discrete observation at sample i).
    """

    def __init__(
        self,
        g: Callable,
        t: float,
        p: NDArray,
        shape: tuple[int, ...],
        layout: ParameterLayout,
        index: Optional[int] = None,
    ):
        self.g = g
        self.t = t
        self.p = p
        self.shape = shape
        self.layout = layout
        self.index = index

    @property
    def constant(self) -> NDArray:
        return self.p

    @property
    def extra(self) -> tuple[Any, ...]:
        return () if self.index is None else (self.index,)

    def pure(self, x, p, t, *extra):
        return self.g(x.reshape(self.shape), self.layout.unflatten(p), t, *extra)

    def evaluate(self, x: NDArray) -> float:
        return float(np.asarray(self.pure(x, self.p, self.t, *self.extra)))
