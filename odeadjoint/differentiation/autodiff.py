"""jax-backed derivative workspaces, each compiled once per cache."""

from typing import Callable, Optional
import jax
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.problem import VectorField
from odeadjoint.core.requirements import JacobianStrategy
from odeadjoint.differentiation.wrappers import UGradientWrapper


TRACING_ERRORS = (
    jax.errors.TracerArrayConversionError,
    jax.errors.ConcretizationTypeError,
    jax.errors.TracerIntegerConversionError,
    jax.errors.TracerBoolConversionError,
)


def traces(fn: Callable, *args) -> bool:
    """True when jax can trace fn(*args) abstractly, without evaluating it."""
    try:
        jax.eval_shape(fn, *args)
    except TRACING_ERRORS:
        return False
    return True


class JaxJacobian:
    """Dense Jacobian through jax.jacfwd (forward mode) or jax.jacrev (reverse mode)."""

    def __init__(self, wrapper, strategy: JacobianStrategy):
        if strategy is JacobianStrategy.FORWARD_MODE:
            transform = jax.jacfwd
        elif strategy is JacobianStrategy.REVERSE_MODE:
            transform = jax.jacrev
        else:
            raise ValueError(f"Not a dense AD strategy: {strategy}")

        self.wrapper = wrapper
        self.strategy = strategy
        self._jac = jax.jit(transform(wrapper.pure, argnums=0))

    def jacobian(self, out: NDArray, x: NDArray) -> None:
        w = self.wrapper
        out[...] = np.asarray(self._jac(x, w.constant, float(w.t)))


class JaxGradient:
    """
    Gradient of a scalar observation.

    A discrete observation's sample index is traced along with the state, so
    one compilation serves every sample. Observations that need a concrete
    index (numpy indexing into data, Python branching) are built with
    ``static_index=True`` and compiled once per distinct sample.
    """

    def __init__(
        self,
        wrapper: UGradientWrapper,
        strategy: JacobianStrategy,
        static_index: bool = False,
    ):
        transform = jax.grad if strategy is JacobianStrategy.REVERSE_MODE else jax.jacfwd

        if wrapper.index is None:
            def fn(x, c, t):
                return wrapper.pure(x, c, t)
            self._grad = jax.jit(transform(fn, argnums=0))
        else:
            def fn(x, c, t, i):
                return wrapper.pure(x, c, t, i)
            static = (3,) if static_index else ()
            self._grad = jax.jit(transform(fn, argnums=0), static_argnums=static)

        self.wrapper = wrapper
        self.strategy = strategy
        self.static_index = static_index

    def gradient(self, out: NDArray, x: NDArray) -> None:
        w = self.wrapper
        out[...] = np.asarray(self._grad(x, w.constant, float(w.t), *w.extra))


class JaxVJP:
    """
    Lazy derivative products for the automatic-JVP path.

    No Jacobian is formed: ``vjp`` pulls λ back through f(u, p, t) with a
    single jax.vjp for both u and p, ``jvp`` pushes a tangent forward.
    """

    def __init__(self, field: VectorField):
        def pullback(u, p, t, lam):
            _, vjp_fn = jax.vjp(lambda u_, p_: field(u_, p_, t), u, p)
            return vjp_fn(lam)

        def pushforward(u, p, t, v):
            return jax.jvp(lambda u_: field(u_, p, t), (u,), (v,))[1]

        self.field = field
        self._both = jax.jit(pullback)
        self._state = jax.jit(lambda u, p, t, lam: pullback(u, p, t, lam)[0])
        self._param = jax.jit(lambda u, p, t, lam: pullback(u, p, t, lam)[1])
        self._jvp = jax.jit(pushforward)

    def vjp(
        self,
        out_u: Optional[NDArray],
        out_p: Optional[NDArray],
        lam: NDArray,
        u: NDArray,
        p: NDArray,
        t: float,
    ) -> None:
        """Write λᵀ ∂f/∂u into out_u and λᵀ ∂f/∂p into out_p (either may be None)."""
        t = float(t)
        if out_u is not None and out_p is not None:
            vu, vp = self._both(u, p, t, lam)
            out_u[...] = np.asarray(vu)
            out_p[...] = np.asarray(vp)
        elif out_u is not None:
            out_u[...] = np.asarray(self._state(u, p, t, lam))
        elif out_p is not None:
            out_p[...] = np.asarray(self._param(u, p, t, lam))

    def param_vjp(self, lam: NDArray, u: NDArray, p: NDArray, t: float) -> NDArray:
        return np.asarray(self._param(u, p, float(t), lam))

    def jvp(self, v: NDArray, u: NDArray, p: NDArray, t: float) -> NDArray:
        return np.asarray(self._jvp(u, p, float(t), v))
