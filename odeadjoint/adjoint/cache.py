"""Per-problem differentiation cache for the backward pass."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional
import numpy as np
from numpy.typing import NDArray

from odeadjoint.core.algorithms import SensitivityAlgorithm
from odeadjoint.core.exceptions import (
    DimensionMismatchError,
    SensitivityConfigurationError,
)
from odeadjoint.core.problem import ODEProblem, VectorField
from odeadjoint.core.requirements import (
    TRACED_STRATEGIES,
    CacheRequirements,
    JacobianStrategy,
    deduce_requirements,
)
from odeadjoint.differentiation import (
    GradientConfig,
    JacobianConfig,
    JacobianEvaluator,
    JaxVJP,
    ParamJacobianWrapper,
    UGradientWrapper,
    UJacobianWrapper,
    build_grad_config,
    build_param_jacobian,
    build_state_jacobian,
    build_vjp_config,
    require_traceable,
)
from odeadjoint.utils.arena import ScratchArena

logger = logging.getLogger(__name__)


@dataclass
class AdjointDiffCache:
    """
    Everything the backward step needs, allocated once.

    All numpy buffers (J, pJ, dg_val, f_cache and the forward-state scratch
    y) are views into one ScratchArena. None marks a buffer or workspace
    the selected strategies do not need.
    """

    problem: ODEProblem
    field: VectorField
    requirements: CacheRequirements
    arena: ScratchArena

    # Wrappers
    uf: Optional[UJacobianWrapper]
    pf: Optional[ParamJacobianWrapper]
    pg: Optional[UGradientWrapper]

    # Buffers
    J: Optional[NDArray]        # (n, n)
    pJ: Optional[NDArray]       # (n, np)
    dg_val: NDArray             # (n,)
    f_cache: NDArray            # (n,) f at the final forward state

    # Workspaces
    jac_config: Optional[JacobianConfig]
    paramjac_config: Optional[JacobianConfig]
    g_grad_config: Optional[GradientConfig]
    vjp_config: Optional[JaxVJP]

    jac: Optional[JacobianEvaluator]
    paramjac: Optional[JacobianEvaluator]
    dg: Optional[Callable]

    @property
    def n(self) -> int:
        return self.problem.state_dim

    @property
    def num_params(self) -> int:
        return self.problem.num_params

    def vecjacobian(
        self,
        dlam: NDArray,
        dmu: Optional[NDArray],
        lam: NDArray,
        u: NDArray,
        p: NDArray,
        t: float,
    ) -> None:
        """
        Write -λᵀ ∂f/∂u into dlam and, when dmu is given, -λᵀ ∂f/∂p into dmu.

        Args:
            dlam: Output (n,)
            dmu: Output (np,), or None to skip the parameter product
            lam: Co-state λ (n,)
            u: Forward state at t (n,)
            p: Flat parameters (np,)
            t: Time
        """
        req = self.requirements
        want_p = dmu is not None and dmu.size > 0
        joint = False

        if req.jac_strategy is JacobianStrategy.AUTO_JVP:
            joint = want_p and req.paramjac_strategy is JacobianStrategy.AUTO_JVP
            self.vjp_config.vjp(dlam, dmu if joint else None, lam, u, p, t)
        else:
            np.dot(lam, self.jac(u, p, t), out=dlam)

        if want_p and not joint:
            if req.paramjac_strategy is JacobianStrategy.AUTO_JVP:
                self.vjp_config.vjp(None, dmu, lam, u, p, t)
            else:
                np.dot(lam, self.paramjac(u, p, t), out=dmu)

        np.negative(dlam, out=dlam)
        if want_p:
            np.negative(dmu, out=dmu)

    def paramvjp(self, lam: NDArray, u: NDArray, p: NDArray, t: float) -> NDArray:
        """λᵀ ∂f/∂p for quadrature; the Jacobian is formed only when analytic."""
        if self.num_params == 0:
            return np.zeros(0)
        if self.paramjac is not None:
            return lam @ self.paramjac(u, p, t)
        return self.vjp_config.param_vjp(lam, u, p, t)

    def observation_gradient(self, u: NDArray, p: NDArray, t: float) -> NDArray:
        """∂g/∂u of a continuous observation, written into dg_val."""
        if self.dg is not None:
            prob = self.problem
            grad = np.asarray(self.dg(u.reshape(prob.u0.shape), prob.layout.unflatten(p), t))
            if grad.size != self.n:
                raise DimensionMismatchError("observation gradient", (self.n,), grad.shape)
            self.dg_val[:] = grad.ravel()
        else:
            pg = self.pg
            pg.t = t
            pg.p = p
            self.g_grad_config.gradient(self.dg_val, u)
        return self.dg_val


def adjointdiffcache(
    g: Optional[Callable],
    sensealg: SensitivityAlgorithm,
    discrete: bool,
    sol,
    dg: Optional[Callable],
    quad: bool = False,
) -> tuple[AdjointDiffCache, NDArray]:
    """
    Build the differentiation cache for one backward integration.

    Args:
        g: Observation function; needed in continuous mode without ``dg``
        sensealg: Adjoint algorithm
        discrete: Sampled objective (corrections via callbacks) or running cost
        sol: Forward ODESolution
        dg: Explicit ∂g/∂u, bypasses AD of ``g``
        quad: Quadrature adjoint; no dense parameter Jacobian is built

    Returns:
        (cache, y) where y is a copy of the final forward state, stored in
        the cache's arena

    Raises:
        SensitivityConfigurationError: f or g is differentiated with jax but
            cannot be traced
    """
    problem = sol.problem
    n, m = problem.state_dim, problem.num_params
    u0 = problem.u0

    if sol.u.shape[1:] != u0.shape or len(sol.u) != len(sol.t):
        raise DimensionMismatchError(
            "forward solution", (len(sol.t),) + u0.shape, sol.u.shape
        )
    if not discrete and g is None and dg is None:
        raise SensitivityConfigurationError(
            "A continuous adjoint needs the observation g or its gradient dg"
        )

    requirements = deduce_requirements(sensealg, problem, discrete, dg is not None, quad)

    layout = {"dg_val": (n,), "f_cache": (n,), "y": (n,)}
    if requirements.state_jacobian_buffer:
        layout["J"] = (n, n)
    if requirements.param_jacobian_buffer:
        layout["pJ"] = (n, m)
    arena = ScratchArena(layout)

    y = arena["y"]
    y[:] = sol.u[-1].ravel()
    field = problem.vector_field()
    p = problem.flat_params()
    t1 = problem.tspan[1]

    f_value = np.asarray(field(y, p, t1))
    if f_value.size != n:
        raise DimensionMismatchError("vector field output", (n,), f_value.shape)
    f_cache = arena["f_cache"]
    f_cache[:] = f_value.ravel()

    if (
        requirements.jac_strategy in TRACED_STRATEGIES
        or requirements.paramjac_strategy in TRACED_STRATEGIES
        or requirements.param_vjp
    ):
        require_traceable(field, (y, p, t1), "vector field", sensealg)

    pg = None
    if requirements.grad_strategy is not JacobianStrategy.NONE:
        pg = UGradientWrapper(g, t1, p, u0.shape, problem.layout)
        if requirements.grad_strategy in TRACED_STRATEGIES:
            require_traceable(pg.pure, (y, p, t1), "observation g", sensealg)

    jac, jac_config = build_state_jacobian(
        requirements.jac_strategy, sensealg, problem, field, y, p, t1, arena.get("J")
    )
    paramjac, paramjac_config = build_param_jacobian(
        requirements.paramjac_strategy, sensealg, problem, field, y, p, t1, arena.get("pJ")
    )

    uses_vjp = (
        JacobianStrategy.AUTO_JVP in (requirements.jac_strategy, requirements.paramjac_strategy)
        or requirements.param_vjp
    )
    vjp_config = build_vjp_config(field) if uses_vjp else None

    g_grad_config = None
    if pg is not None:
        g_grad_config = build_grad_config(requirements.grad_strategy, sensealg, pg, y)

    cache = AdjointDiffCache(
        problem=problem,
        field=field,
        requirements=requirements,
        arena=arena,
        uf=getattr(jac, "wrapper", None),
        pf=getattr(paramjac, "wrapper", None),
        pg=pg,
        J=arena.get("J"),
        pJ=arena.get("pJ"),
        dg_val=arena["dg_val"],
        f_cache=f_cache,
        jac_config=jac_config,
        paramjac_config=paramjac_config,
        g_grad_config=g_grad_config,
        vjp_config=vjp_config,
        jac=jac,
        paramjac=paramjac,
        dg=dg,
    )
    logger.debug(
        "Adjoint cache for %s: %d bytes of scratch, discrete=%s quad=%s",
        sensealg.name, arena.nbytes, discrete, quad,
    )
    return cache, y
