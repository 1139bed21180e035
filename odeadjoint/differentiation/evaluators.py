"""Dense Jacobian evaluators returned by the strategy provider."""

from typing import Callable, Optional
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.exceptions import DimensionMismatchError
from odeadjoint.core.problem import FieldForm, ODEProblem
from odeadjoint.core.requirements import JacobianStrategy
from odeadjoint.differentiation.protocols import GradientConfig, JacobianConfig
from odeadjoint.differentiation.wrappers import UGradientWrapper


class JacobianEvaluator:
    """
    Evaluates ∂f/∂u or ∂f/∂p at (u, p, t) into a fixed buffer.

    With an analytic derivative the evaluator delegates to it (in place for
    in-place problems); otherwise it updates the wrapper's constants and
    lets the workspace fill the buffer. Returns the buffer, or the analytic
    result when no buffer was allocated.
    """

    def __init__(
        self,
        strategy: JacobianStrategy,
        problem: ODEProblem,
        wrt: str,
        buffer: Optional[NDArray],
        wrapper=None,
        config: Optional[JacobianConfig] = None,
        analytic: Optional[Callable] = None,
    ):
        if wrt not in ("u", "p"):
            raise ValueError(f"wrt must be 'u' or 'p', got {wrt!r}")
        self.strategy = strategy
        self.problem = problem
        self.wrt = wrt
        self.buffer = buffer
        self.wrapper = wrapper
        self.config = config
        self.analytic = analytic
        self.form = problem.form

        n = problem.state_dim
        self.shape = (n, n) if wrt == "u" else (n, problem.num_params)

    def __call__(self, u: NDArray, p: NDArray, t: float) -> NDArray:
        if self.analytic is not None:
            return self._analytic(u, p, t)

        w = self.wrapper
        w.t = t
        if self.wrt == "u":
            w.p = p
            self.config.jacobian(self.buffer, u)
        else:
            w.u = u
            self.config.jacobian(self.buffer, p)
        return self.buffer

    def _analytic(self, u: NDArray, p: NDArray, t: float) -> NDArray:
        prob = self.problem
        us = u.reshape(prob.u0.shape)
        ps = prob.layout.unflatten(p)

        if self.form is FieldForm.IN_PLACE:
            self.analytic(self.buffer, us, ps, t)
            return self.buffer

        result = np.asarray(self.analytic(us, ps, t), dtype=float)
        if self.buffer is None:
            return result.reshape(self.shape)
        self.buffer[...] = result.reshape(self.shape)
        return self.buffer

    def check(self, u: NDArray, p: NDArray, t: float) -> None:
        """Evaluate an out-of-place analytic derivative once to check its shape."""
        if self.analytic is None or self.form is FieldForm.IN_PLACE:
            return
        us = u.reshape(self.problem.u0.shape)
        ps = self.problem.layout.unflatten(p)
        got = np.shape(self.analytic(us, ps, t))
        if int(np.prod(got, dtype=int)) != self.shape[0] * self.shape[1]:
            name = "jac" if self.wrt == "u" else "paramjac"
            raise DimensionMismatchError(f"analytic {name}", self.shape, got)


class ObservationGradient:
    """
    ∂g/∂u of a discrete observation g(u, p, t, i), evaluated with the
    selected gradient strategy.

    Called like an explicit ``dg``: ``(u, p, t, i)`` with u shaped like u0 and
    structured parameters. The returned array is the internal buffer.
    """

    def __init__(self, wrapper: UGradientWrapper, config: GradientConfig):
        self.wrapper = wrapper
        self.config = config
        self.out = np.empty(int(np.prod(wrapper.shape, dtype=int)))

    def __call__(self, u: NDArray, p, t: float, i: int) -> NDArray:
        w = self.wrapper
        w.t = t
        w.p = w.layout.flatten(p)
        w.index = i
        self.config.gradient(self.out, np.ravel(u))
        return self.out.reshape(w.shape)
