"""Central finite differences into preallocated buffers."""

from typing import Optional
import numpy as np
from numpy.typing import NDArray

from odeadjoint.differentiation.wrappers import UGradientWrapper

# Optimal relative step for central differences
DEFAULT_STEP = float(np.cbrt(np.finfo(float).eps))


def _step(xj: float, rel: float) -> tuple[float, float, float]:
    h = rel * max(1.0, abs(xj))
    up, down = xj + h, xj - h
    return up, down, up - down


class FiniteDifferenceJacobian:
    """
    Dense Jacobian by central differences.

    The perturbed point and both function values live in buffers allocated
    here; ``jacobian`` only writes into them and into the caller's output.
    Works with in-place and out-of-place fields alike.
    """

    def __init__(self, wrapper, x: NDArray, n_out: int, step: Optional[float] = None):
        """
        Args:
            wrapper: UJacobianWrapper or ParamJacobianWrapper
            x: Representative evaluation point, fixes n_in
            n_out: Number of outputs
            step: Relative step (defaults to cbrt(eps))
        """
        self.wrapper = wrapper
        self.step = DEFAULT_STEP if step is None else step
        self.x1 = np.array(x, dtype=float).ravel()
        self.f_plus = np.empty(n_out)
        self.f_minus = np.empty(n_out)

    def jacobian(self, out: NDArray, x: NDArray) -> None:
        x1 = self.x1
        x1[:] = x
        for j in range(x1.size):
            xj = x1[j]
            up, down, dx = _step(xj, self.step)

            x1[j] = up
            self.wrapper.evaluate_into(self.f_plus, x1)
            x1[j] = down
            self.wrapper.evaluate_into(self.f_minus, x1)
            x1[j] = xj

            col = out[:, j]
            np.subtract(self.f_plus, self.f_minus, out=col)
            col /= dx


class FiniteDifferenceGradient:
    """Gradient of a scalar observation by central differences."""

    def __init__(self, wrapper: UGradientWrapper, x: NDArray, step: Optional[float] = None):
        self.wrapper = wrapper
        self.step = DEFAULT_STEP if step is None else step
        self.x1 = np.array(x, dtype=float).ravel()

    def gradient(self, out: NDArray, x: NDArray) -> None:
        x1 = self.x1
        x1[:] = x
        for j in range(x1.size):
            xj = x1[j]
            up, down, dx = _step(xj, self.step)

            x1[j] = up
            g_plus = self.wrapper.evaluate(x1)
            x1[j] = down
            g_minus = self.wrapper.evaluate(x1)
            x1[j] = xj

            out[j] = (g_plus - g_minus) / dx
