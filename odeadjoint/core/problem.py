"""Problem specification."""

import inspect
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Callable, Optional, Sequence, Union
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.algorithms import SensitivityAlgorithm
from odeadjoint.core.exceptions import SensitivityConfigurationError

Parameters = Union[NDArray, Sequence[NDArray]]


class FieldForm(Enum):
    """Calling convention of the vector field."""
    OUT_OF_PLACE = auto()  # du = f(u, p, t)
    IN_PLACE = auto()      # f(du, u, p, t) writes into du


def detect_field_form(f: Callable) -> FieldForm:
    """Classify f by its number of positional parameters (3 or 4)."""
    try:
        sig = inspect.signature(f)
    except (TypeError, ValueError):
        raise SensitivityConfigurationError(
            "Cannot inspect the vector field signature; pass inplace=True/False"
        ) from None

    positional = [
        prm for prm in sig.parameters.values()
        if prm.kind in (prm.POSITIONAL_ONLY, prm.POSITIONAL_OR_KEYWORD)
        and prm.default is prm.empty
    ]
    if len(positional) == 4:
        return FieldForm.IN_PLACE
    if len(positional) == 3:
        return FieldForm.OUT_OF_PLACE
    raise SensitivityConfigurationError(
        f"Vector field must take (u, p, t) or (du, u, p, t); "
        f"got {len(positional)} positional parameters"
    )


class ParameterLayout:
    """
    Maps flat or grouped parameters onto one flat vector.

    Grouped parameters (a list or tuple of arrays) are concatenated in order;
    the parameter count is the sum of the group sizes. ``unflatten`` only
    slices and reshapes, so it works for numpy arrays and jax tracers alike.
    """

    def __init__(self, p: Optional[Parameters]):
        if p is None:
            self.grouped = False
            self.shapes: list[tuple[int, ...]] = [(0,)]
        elif isinstance(p, (list, tuple)) and any(np.ndim(g) > 0 for g in p):
            self.grouped = True
            self.shapes = [np.shape(g) for g in p]
        else:
            self.grouped = False
            self.shapes = [np.shape(p)]

        self.sizes = [int(np.prod(s, dtype=int)) for s in self.shapes]
        self.offsets = np.concatenate([[0], np.cumsum(self.sizes)]).astype(int)

    @property
    def num_params(self) -> int:
        return int(self.offsets[-1])

    def flatten(self, p: Optional[Parameters]) -> NDArray:
        if p is None:
            return np.zeros(0)
        if self.grouped:
            return np.concatenate(
                [np.ravel(np.asarray(g, dtype=float)) for g in p]
            )
        return np.ravel(np.asarray(p, dtype=float)).copy()

    def unflatten(self, flat: Any) -> Any:
        if not self.grouped:
            return flat.reshape(self.shapes[0])
        return [
            flat[self.offsets[k]:self.offsets[k + 1]].reshape(shape)
            for k, shape in enumerate(self.shapes)
        ]


class VectorField:
    """
    Flat-vector view of a problem's f.

    ``__call__`` returns a new array and traces under jax when f is an
    out-of-place field written with jax.numpy. ``evaluate_into`` writes into
    a caller-owned contiguous buffer.
    """

    def __init__(
        self,
        f: Callable,
        shape: tuple[int, ...],
        layout: ParameterLayout,
        form: FieldForm,
    ):
        self.f = f
        self.shape = shape
        self.size = int(np.prod(shape, dtype=int))
        self.layout = layout
        self.form = form

    def __call__(self, u, p, t):
        if self.form is FieldForm.IN_PLACE:
            du = np.empty(self.size)
            self.evaluate_into(du, u, p, t)
            return du
        du = self.f(u.reshape(self.shape), self.layout.unflatten(p), t)
        return du.reshape(-1)

    def evaluate_into(self, du: NDArray, u, p, t) -> None:
        if self.form is FieldForm.IN_PLACE:
            self.f(
                du.reshape(self.shape),
                np.asarray(u).reshape(self.shape),
                self.layout.unflatten(np.asarray(p)),
                t,
            )
        else:
            du[...] = np.asarray(self(u, p, t))


@dataclass(frozen=True)
class SolverOptions:
    """Options forwarded to the scipy integrator."""

    method: str = "DOP853"
    rtol: float = 1e-6
    atol: float = 1e-8
    max_step: float = np.inf


@dataclass(frozen=True)
class ODEProblem:
    """
    First-order initial value problem du/dt = f(u, p, t).

    The core only borrows the problem; it is never mutated. ``jac`` and
    ``paramjac`` are optional analytic derivatives with the same calling
    convention as ``f``: ``jac(u, p, t) -> (n, n)`` or ``jac(J, u, p, t)``,
    where n is the flattened state size.
    """

    f: Callable
    u0: NDArray
    tspan: tuple[float, float]
    p: Optional[Parameters] = None
    jac: Optional[Callable] = None
    paramjac: Optional[Callable] = None
    inplace: Optional[bool] = None
    solver: Optional[SolverOptions] = None
    sensealg: Optional[SensitivityAlgorithm] = None
    layout: ParameterLayout = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "u0", np.array(self.u0, dtype=float))
        t0, t1 = (float(t) for t in self.tspan)
        if not t1 > t0:
            raise SensitivityConfigurationError(
                f"tspan must be increasing, got {self.tspan}"
            )
        object.__setattr__(self, "tspan", (t0, t1))
        object.__setattr__(self, "layout", ParameterLayout(self.p))

    @property
    def form(self) -> FieldForm:
        if self.inplace is None:
            return detect_field_form(self.f)
        return FieldForm.IN_PLACE if self.inplace else FieldForm.OUT_OF_PLACE

    @property
    def state_dim(self) -> int:
        return int(self.u0.size)

    @property
    def num_params(self) -> int:
        return self.layout.num_params

    @property
    def has_jac(self) -> bool:
        return self.jac is not None

    @property
    def has_paramjac(self) -> bool:
        return self.paramjac is not None

    def flat_params(self) -> NDArray:
        return self.layout.flatten(self.p)

    def vector_field(self) -> VectorField:
        return VectorField(self.f, self.u0.shape, self.layout, self.form)

    def remake(self, **changes) -> "ODEProblem":
        """Copy of the problem with some fields replaced."""
        return replace(self, **changes)
