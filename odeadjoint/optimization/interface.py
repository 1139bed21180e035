"""Optimization interface for external optimizers."""

from typing import Callable, Optional, Tuple
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.algorithms import SensitivityAlgorithm
from odeadjoint.core.problem import ODEProblem, SolverOptions
from odeadjoint.optimization.gradient import GradientResult, compute_gradient
from odeadjoint.stepping.forward import SaveAt


class AdjointOptimizer:
    """
    Provides J(x), ∇J(x) to an outer optimizer.

    x is the flat vector [u0; p], or p alone with ``optimize_u0=False``.
    """

    def __init__(
        self,
        problem: ODEProblem,
        g: Callable,
        sensealg: Optional[SensitivityAlgorithm] = None,
        dg: Optional[Callable] = None,
        ts: SaveAt = None,
        solver: Optional[SolverOptions] = None,
        optimize_u0: bool = True,
    ):
        """
        Args:
            problem: Problem whose u0/p are the starting point
            g: Observation function
            sensealg: Sensitivity algorithm (defaults as in compute_gradient)
            dg: Explicit observation gradient
            ts: Sample times or step; None for a running cost
            solver: Solver options
            optimize_u0: Include u0 in the optimization variables
        """
        self.problem = problem
        self.g = g
        self.sensealg = sensealg
        self.dg = dg
        self.ts = ts
        self.solver = solver
        self.optimize_u0 = optimize_u0

        self.n = problem.state_dim
        self.num_params = problem.num_params

        # Cached result (invalidated when x changes)
        self._result: Optional[GradientResult] = None
        self._x_hash: Optional[int] = None

    @property
    def size(self) -> int:
        return self.n + self.num_params if self.optimize_u0 else self.num_params

    def initial_point(self) -> NDArray:
        """Flat x of the problem as given."""
        p = self.problem.flat_params()
        if self.optimize_u0:
            return np.concatenate([self.problem.u0.ravel(), p])
        return p

    def remake(self, x: NDArray) -> ODEProblem:
        """Problem with u0 and p taken from x."""
        x = np.asarray(x, dtype=float)
        layout = self.problem.layout
        if self.optimize_u0:
            u0 = x[:self.n].reshape(self.problem.u0.shape)
            p_flat = x[self.n:]
        else:
            u0 = self.problem.u0
            p_flat = x
        p = layout.unflatten(p_flat.copy()) if self.num_params else self.problem.p
        return self.problem.remake(u0=u0, p=p)

    def objective_value(self, x: NDArray) -> float:
        """
        J(x) - runs forward and backward solve if needed.

        Args:
            x: Flat optimization variables

        Returns:
            Objective value
        """
        return self._ensure(x).loss

    def gradient(self, x: NDArray) -> NDArray:
        """
        ∇J(x) - runs forward and backward solve if needed.

        Args:
            x: Flat optimization variables

        Returns:
            Flat gradient, same layout as x
        """
        flat = self._ensure(x).flat()
        return flat if self.optimize_u0 else flat[self.n:]

    def scipy_interface(self) -> Tuple[Callable, Callable]:
        """
        Returns (fun, jac) for scipy.optimize.minimize.

        Returns:
            fun: Objective function taking flat array
            jac: Gradient function taking flat array
        """
        def fun(x: NDArray) -> float:
            return self.objective_value(x)

        def jac(x: NDArray) -> NDArray:
            return self.gradient(x)

        return fun, jac

    def _ensure(self, x: NDArray) -> GradientResult:
        """Recompute if not cached or x changed."""
        x = np.ascontiguousarray(x, dtype=float)
        x_hash = hash(x.tobytes())
        if self._result is None or self._x_hash != x_hash:
            self._result = compute_gradient(
                self.remake(x),
                self.g,
                self.sensealg,
                self.dg,
                ts=self.ts,
                solver=self.solver,
            )
            self._x_hash = x_hash
        return self._result
