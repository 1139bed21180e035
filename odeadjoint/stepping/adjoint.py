"""Backward adjoint integration."""

import logging
from dataclasses import replace
from typing import Callable, Optional
import numpy as np
from numpy.typing import NDArray
from scipy.integrate import quad_vec

from odeadjoint.adjoint.cache import AdjointDiffCache, adjointdiffcache
from odeadjoint.adjoint.callbacks import generate_callbacks
from odeadjoint.core.algorithms import AdjointAlgorithm
from odeadjoint.core.exceptions import SensitivityConfigurationError
from odeadjoint.core.problem import SolverOptions
from odeadjoint.differentiation import build_observation_gradient
from odeadjoint.stepping.forward import integrate_segment, sample_times
from odeadjoint.stepping.integrator import Integrator
from odeadjoint.stepping.solution import ODESolution

logger = logging.getLogger(__name__)


class InterpolatedStateSource:
    """Forward states read from the dense output of the forward solution."""

    def __init__(self, sol: ODESolution):
        self.sol = sol
        self.checkpoints: tuple[float, ...] = ()

    def __call__(self, t: float, out: NDArray) -> NDArray:
        return self.sol.state_at(t, out)


class CheckpointedStateSource:
    """
    Forward states recomputed between checkpoints.

    The checkpoints are t0, the saved times of the forward solution and t1.
    An interval is re-solved from its exact starting state the first time a
    state inside it is requested; only the current interval is kept. The
    checkpoints are passed to the backward integrator as tstops so no
    backward step straddles two intervals.
    """

    def __init__(self, sol: ODESolution, options: SolverOptions):
        problem = sol.problem
        t0, t1 = problem.tspan
        self.sol = sol
        self.options = options
        self.checkpoints = tuple(np.unique(np.concatenate([[t0], sol.t, [t1]])))
        self.recomputations = 0
        self._interval: Optional[tuple[float, float]] = None
        self._dense = None

    def _start_state(self, t: float) -> NDArray:
        problem = self.sol.problem
        if t == problem.tspan[0]:
            return problem.u0.ravel()
        return self.sol.state_at(t)

    def _load(self, t: float) -> None:
        cps = self.checkpoints
        k = int(np.searchsorted(cps, t, side="right")) - 1
        k = min(max(k, 0), len(cps) - 2)
        a, b = cps[k], cps[k + 1]

        res = integrate_segment(
            self.sol.problem, a, b, self._start_state(a), self.options, dense=True
        )
        self._interval = (a, b)
        self._dense = res.sol
        self.recomputations += 1
        logger.debug("Recomputed forward interval [%.6g, %.6g]", a, b)

    def __call__(self, t: float, out: NDArray) -> NDArray:
        iv = self._interval
        if iv is None or not (iv[0] <= t <= iv[1]):
            self._load(t)
        out[:] = self._dense(t)
        return out


class AdjointSensitivityFunction:
    """
    Right-hand side of the backward system.

    State ``[λ; μ]`` for interpolating adjoints, ``λ`` for quadrature:
        dλ/dt = -λᵀ ∂f/∂u  (- ∂g/∂u for a continuous objective)
        dμ/dt = -λᵀ ∂f/∂p
    """

    def __init__(self, cache: AdjointDiffCache, y: NDArray, source, discrete: bool, quad: bool):
        problem = cache.problem
        self.cache = cache
        self.y = y
        self.source = source
        self.discrete = discrete
        self.quad = quad
        self.n = problem.state_dim
        self.shape = problem.u0.shape
        self.p = problem.flat_params()
        self.params = problem.layout.unflatten(self.p)

    def forward_state(self, t: float) -> NDArray:
        """Refresh the scratch y with the forward state at t."""
        return self.source(t, self.y)

    def __call__(self, t: float, z: NDArray) -> NDArray:
        n = self.n
        y = self.forward_state(t)
        dz = np.empty_like(z)
        dmu = None if self.quad else dz[n:]
        self.cache.vecjacobian(dz[:n], dmu, z[:n], y, self.p, t)
        if not self.discrete:
            dz[:n] -= self.cache.observation_gradient(y, self.p, t)
        return dz


def _adjoint_options(sol: ODESolution, sensealg: AdjointAlgorithm) -> SolverOptions:
    options = sol.options
    if sensealg.abstol is not None:
        options = replace(options, atol=sensealg.abstol)
    if sensealg.reltol is not None:
        options = replace(options, rtol=sensealg.reltol)
    return options


def _quadrature(
    sensefun: AdjointSensitivityFunction,
    backward,
    breakpoints: NDArray,
    options: SolverOptions,
) -> NDArray:
    """dp = ∫ λᵀ ∂f/∂p dt, one quad_vec call per interval between breakpoints."""
    cache = sensefun.cache
    n = sensefun.n

    def integrand(t):
        lam = backward(t)[:n]
        y = sensefun.forward_state(t)
        return cache.paramvjp(lam, y, sensefun.p, t)

    total = np.zeros(cache.num_params)
    # Latest interval first, following the backward sweep
    for a, b in reversed(list(zip(breakpoints[:-1], breakpoints[1:]))):
        value, _ = quad_vec(integrand, a, b, epsabs=options.atol, epsrel=options.rtol)
        total += value
    return total


def adjoint_sensitivities(
    sol: ODESolution,
    sensealg: AdjointAlgorithm,
    g: Optional[Callable] = None,
    t: Optional[NDArray] = None,
    dg: Optional[Callable] = None,
    callback=None,
) -> tuple[NDArray, object]:
    """
    Gradient of an objective w.r.t. u0 and p by backward integration.

    With ``t`` the objective is discrete, Σ_i g(u(t_i), p, t_i, i), and
    ``dg(u, p, t, i)`` is its gradient w.r.t. u; without ``t`` it is the
    running cost ∫ g(u, p, t) dt with ``dg(u, p, t)``. A missing ``dg`` is
    obtained by differentiating ``g``.

    Args:
        sol: Forward solution
        sensealg: InterpolatingAdjoint or QuadratureAdjoint
        g: Observation function
        t: Sample times (chronological), or a saveat step
        dg: Explicit observation gradient
        callback: Extra callback for the backward integration

    Returns:
        (du0, dp): du0 shaped like u0, dp shaped (or grouped) like p
    """
    if not isinstance(sensealg, AdjointAlgorithm):
        raise SensitivityConfigurationError(
            f"{sensealg.name} is not a backward adjoint algorithm"
        )
    problem = sol.problem
    t0, t1 = problem.tspan
    n, m = problem.state_dim, problem.num_params
    discrete = t is not None
    quad = sensealg.quad

    ts = sample_times(problem.tspan, t) if discrete else None
    if discrete and dg is None:
        if g is None:
            raise SensitivityConfigurationError(
                "A discrete adjoint needs the observation g or its gradient dg"
            )
        dg = build_observation_gradient(g, sensealg, problem)

    cache, y = adjointdiffcache(
        None if discrete else g, sensealg, discrete, sol, None if discrete else dg, quad=quad
    )
    options = _adjoint_options(sol, sensealg)

    if getattr(sensealg, "checkpointing", False):
        source = CheckpointedStateSource(sol, options)
    else:
        source = InterpolatedStateSource(sol)

    sensefun = AdjointSensitivityFunction(cache, y, source, discrete, quad)
    cb = generate_callbacks(
        sensefun, dg, cache.dg_val, ts, callback,
        init_cb=bool(discrete and ts[-1] == t1),
    )

    z0 = np.zeros(n if quad else n + m)
    integrator = Integrator(sensefun, t1, z0, t0, options, callback=cb, tstops=source.checkpoints)
    result = integrator.solve()
    logger.debug(
        "Backward pass with %s: %d steps in %d segments",
        sensealg.name, result.nsteps, result.nsegments,
    )

    du0 = result.u[:n].reshape(problem.u0.shape).copy()
    if quad and m == 0:
        dp_flat = np.zeros(0)
    elif quad:
        breakpoints = np.unique(np.concatenate([[t0, t1], ts if discrete else []]))
        dp_flat = _quadrature(sensefun, result.sol, breakpoints, options)
    else:
        dp_flat = result.u[n:].copy()

    if isinstance(source, CheckpointedStateSource):
        logger.debug("Checkpointing recomputed %d intervals", source.recomputations)
    return du0, problem.layout.unflatten(dp_flat)
