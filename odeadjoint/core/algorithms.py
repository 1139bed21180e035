"""Sensitivity algorithm selectors."""

from dataclasses import dataclass
from enum import Enum, auto
from typing import ClassVar, Optional


class ADMode(Enum):
    """Flavor of automatic differentiation used for dense Jacobians."""
    FORWARD = auto()   # jax.jacfwd, one JVP per input
    REVERSE = auto()   # jax.jacrev, one VJP per output
    AUTO = auto()      # forward when n_in <= n_out, reverse otherwise


class SensitivityKind(Enum):
    """How an algorithm obtains the gradient."""
    ADJOINT = auto()          # backward integration with the adjoint cache
    FORWARD = auto()          # forward sensitivity equations
    THROUGH_SOLVER = auto()   # AD through every step of the integrator


@dataclass(frozen=True)
class SensitivityAlgorithm:
    """
    Common configuration of all sensitivity algorithms.

    ``autodiff`` and ``autojacvec`` left as None are resolved against the
    vector field: out-of-place fields are differentiated with jax, in-place
    fields with finite differences.
    """

    autodiff: Optional[bool] = None
    autojacvec: Optional[bool] = None
    ad_mode: ADMode = ADMode.AUTO
    fd_step: Optional[float] = None

    kind: ClassVar[SensitivityKind] = SensitivityKind.ADJOINT
    quad: ClassVar[bool] = False
    requires_inplace: ClassVar[bool] = False
    requires_traceable: ClassVar[bool] = False

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class AdjointAlgorithm(SensitivityAlgorithm):
    """Continuous adjoint integrated backward in time."""

    abstol: Optional[float] = None
    reltol: Optional[float] = None


@dataclass(frozen=True)
class InterpolatingAdjoint(AdjointAlgorithm):
    """
    Adjoint with forward states taken from the stored forward solution.

    The backward state is ``[λ; μ]``: the state co-state followed by the
    parameter accumulator. With ``checkpointing`` the forward states are
    recomputed between the saved points of the forward solution instead of
    read from its dense interpolant.
    """

    checkpointing: bool = False


@dataclass(frozen=True)
class QuadratureAdjoint(AdjointAlgorithm):
    """
    Adjoint integrating only λ; dp is obtained by quadrature of λᵀ ∂f/∂p.
    """

    quad: ClassVar[bool] = True


@dataclass(frozen=True)
class ForwardSensitivity(SensitivityAlgorithm):
    """Forward sensitivity equations dS/dt = J S + ∂f/∂p, evaluated in place."""

    kind: ClassVar[SensitivityKind] = SensitivityKind.FORWARD
    requires_inplace: ClassVar[bool] = True


@dataclass(frozen=True)
class ForwardDiffSensitivity(SensitivityAlgorithm):
    """Forward-mode AD through the integrator (diffrax ForwardMode)."""

    solver: str = "Dopri8"
    max_steps: int = 4096

    kind: ClassVar[SensitivityKind] = SensitivityKind.THROUGH_SOLVER
    requires_traceable: ClassVar[bool] = True


@dataclass(frozen=True)
class ReverseDiffAdjoint(SensitivityAlgorithm):
    """
    Discrete reverse-mode adjoint: reverse-mode AD through every solver step
    (diffrax RecursiveCheckpointAdjoint).
    """

    solver: str = "Dopri8"
    max_steps: int = 4096

    kind: ClassVar[SensitivityKind] = SensitivityKind.THROUGH_SOLVER
    requires_traceable: ClassVar[bool] = True
