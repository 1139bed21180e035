"""Forward solution storage."""

from typing import Optional
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.exceptions import SensitivityConfigurationError
from odeadjoint.core.problem import ODEProblem, SolverOptions


class ODESolution:
    """
    Saved states of a forward solve plus its dense interpolant.

    The arrays are read-only: the backward pass borrows the solution and the
    caller may keep using it (e.g. to evaluate the loss) afterwards.
    """

    def __init__(
        self,
        t: NDArray,
        u: NDArray,
        interpolant,
        problem: ODEProblem,
        options: SolverOptions,
    ):
        """
        Args:
            t: Saved times (k,), increasing
            u: Saved states (k, *u0.shape)
            interpolant: scipy OdeSolution over the flat state, or None
            problem: Problem that was solved
            options: Solver options that were used
        """
        self.t = np.array(t, dtype=float)
        self.u = np.array(u, dtype=float)
        self.t.flags.writeable = False
        self.u.flags.writeable = False
        self.interpolant = interpolant
        self.problem = problem
        self.options = options

    def __len__(self) -> int:
        return len(self.t)

    def __getitem__(self, k) -> NDArray:
        return self.u[k]

    @property
    def final_state(self) -> NDArray:
        return self.u[-1]

    def __call__(self, t: float) -> NDArray:
        """State at t, shaped like u0."""
        return self.state_at(t).reshape(self.problem.u0.shape)

    def state_at(self, t: float, out: Optional[NDArray] = None) -> NDArray:
        """
        Flat state at t, written into ``out`` when given.

        A saved time returns the saved state exactly; any other time is
        interpolated.
        """
        if out is None:
            out = np.empty(self.problem.state_dim)

        k = int(np.searchsorted(self.t, t))
        if k < len(self.t) and self.t[k] == t:
            out[:] = self.u[k].ravel()
            return out

        if self.interpolant is None:
            raise SensitivityConfigurationError(
                f"t={t:.6g} is not a saved time and the solution has no dense output"
            )
        out[:] = self.interpolant(t)
        return out
