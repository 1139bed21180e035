"""Exception hierarchy for sensitivity computations."""

from typing import Optional


class SensitivityError(Exception):
    """Base class for all errors raised by odeadjoint."""


class SensitivityConfigurationError(SensitivityError, ValueError):
    """Incompatible combination of sensitivity algorithm and vector field."""


class OutOfPlaceUnsupportedError(SensitivityConfigurationError):
    """The algorithm mutates derivative buffers but the field is out-of-place."""

    def __init__(self, algorithm: str):
        super().__init__(
            f"{algorithm} evaluates the vector field in place and requires a "
            f"field of the form f(du, u, p, t); got an out-of-place f(u, p, t)"
        )
        self.algorithm = algorithm


class DimensionMismatchError(SensitivityError, ValueError):
    """Buffer sizes do not agree with the problem dimensions."""

    def __init__(self, what: str, expected, got):
        super().__init__(f"{what}: expected shape {expected}, got {got}")
        self.what = what
        self.expected = expected
        self.got = got


class IntegrationError(SensitivityError, RuntimeError):
    """The external integrator failed to advance the solution."""

    def __init__(self, message: str, t: Optional[float] = None):
        where = "" if t is None else f" at t={t:.6g}"
        super().__init__(f"Integration failed{where}: {message}")
        self.t = t


class AdjointInvariantError(SensitivityError, AssertionError):
    """
    Internal invariant of the backward pass was violated.

    Raised when the discrete-adjoint countdown underflows, when samples are
    left unconsumed, or when a scheduled stop lies behind the integrator.
    These indicate misaligned sample times, never a recoverable condition.
    """
