"""Tests for the adjoint differentiation cache."""

import numpy as np
import pytest

from odeadjoint.adjoint.cache import adjointdiffcache
from odeadjoint.core.algorithms import ADMode, InterpolatingAdjoint, QuadratureAdjoint
from odeadjoint.core.exceptions import DimensionMismatchError, SensitivityConfigurationError
from odeadjoint.core.problem import ODEProblem, SolverOptions
from odeadjoint.core.requirements import JacobianStrategy
from odeadjoint.differentiation import FiniteDifferenceJacobian, JaxVJP
from odeadjoint.stepping.forward import solve
from odeadjoint.stepping.solution import ODESolution


A = np.array([[-0.5, 1.0], [-1.0, -0.2]])


def linear_oop(u, p, t):
    return p.reshape(2, 2) @ u


def linear_inplace(du, u, p, t):
    du[:] = p.reshape(2, 2) @ u


def forward(f=linear_oop, **kwargs):
    problem = ODEProblem(f, np.array([1.0, 0.5]), (0.0, 1.0), A.ravel(), **kwargs)
    return solve(problem, SolverOptions(rtol=1e-10, atol=1e-10), saveat=0.25)


def expected_products(lam, u):
    # f = P u, so λᵀ ∂f/∂P_ij = λ_i u_j
    return -lam @ A, -np.outer(lam, u).ravel()


def test_final_state_is_a_copy():
    sol = forward()
    cache, y = adjointdiffcache(None, InterpolatingAdjoint(), True, sol, None)

    assert np.array_equal(y, sol.u[-1])
    assert not np.shares_memory(y, sol.u)
    assert np.shares_memory(y, cache.arena.block)

    y[:] = 0.0
    assert not np.allclose(sol.u[-1], 0.0)


def test_oop_cache_uses_lazy_vjps():
    sol = forward()
    cache, _ = adjointdiffcache(None, InterpolatingAdjoint(), True, sol, None)

    assert cache.J is None
    assert cache.pJ is None
    assert cache.jac_config is None
    assert isinstance(cache.vjp_config, JaxVJP)
    assert cache.pg is None
    assert np.allclose(cache.f_cache, A @ sol.u[-1])


def test_inplace_cache_allocates_dense_buffers():
    sol = forward(linear_inplace)
    cache, _ = adjointdiffcache(None, InterpolatingAdjoint(), True, sol, None)

    assert cache.J.shape == (2, 2)
    assert cache.pJ.shape == (2, 4)
    assert isinstance(cache.jac_config, FiniteDifferenceJacobian)
    assert isinstance(cache.paramjac_config, FiniteDifferenceJacobian)
    assert cache.vjp_config is None
    for buf in (cache.J, cache.pJ, cache.dg_val, cache.f_cache):
        assert np.shares_memory(buf, cache.arena.block)


@pytest.mark.parametrize("f,sensealg", [
    (linear_oop, InterpolatingAdjoint()),
    (linear_oop, InterpolatingAdjoint(autojacvec=False)),
    (linear_oop, InterpolatingAdjoint(autojacvec=False, autodiff=False)),
    (linear_inplace, InterpolatingAdjoint()),
])
def test_vecjacobian(f, sensealg):
    sol = forward(f)
    cache, y = adjointdiffcache(None, sensealg, True, sol, None)
    lam = np.array([0.7, -0.3])
    p = sol.problem.flat_params()

    dlam = np.zeros(2)
    dmu = np.zeros(4)
    cache.vecjacobian(dlam, dmu, lam, y, p, 0.5)

    exp_lam, exp_mu = expected_products(lam, y)
    assert np.allclose(dlam, exp_lam, rtol=1e-8, atol=1e-10)
    assert np.allclose(dmu, exp_mu, rtol=1e-8, atol=1e-10)


def test_buffers_are_reused_across_evaluations():
    sol = forward(linear_inplace)
    cache, y = adjointdiffcache(None, InterpolatingAdjoint(), True, sol, None)
    J = cache.J
    p = sol.problem.flat_params()

    for t in (0.9, 0.5, 0.1):
        cache.vecjacobian(np.zeros(2), np.zeros(4), np.ones(2), y, p, t)
    assert cache.J is J
    assert np.allclose(J, A, atol=1e-8)


def test_quadrature_cache_has_no_param_jacobian():
    sol = forward()
    cache, y = adjointdiffcache(None, QuadratureAdjoint(autojacvec=False), True, sol, None, quad=True)

    assert cache.requirements.paramjac_strategy is JacobianStrategy.NONE
    assert cache.pJ is None
    assert cache.paramjac is None
    assert cache.J is not None

    lam = np.array([0.7, -0.3])
    p = sol.problem.flat_params()
    assert np.allclose(cache.paramvjp(lam, y, p, 0.5), np.outer(lam, y).ravel())


def test_continuous_cache_differentiates_g():
    sol = forward()
    cache, y = adjointdiffcache(lambda u, p, t: (u ** 2).sum(), InterpolatingAdjoint(), False, sol, None)

    assert cache.pg is not None
    p = sol.problem.flat_params()
    assert np.allclose(cache.observation_gradient(y, p, 0.3), 2 * y)
    assert cache.observation_gradient(y, p, 0.3) is cache.dg_val


def test_continuous_cache_explicit_dg():
    sol = forward()
    cache, y = adjointdiffcache(None, InterpolatingAdjoint(), False, sol, lambda u, p, t: 3 * u)

    assert cache.pg is None
    assert cache.g_grad_config is None
    assert np.allclose(cache.observation_gradient(y, sol.problem.flat_params(), 0.3), 3 * y)


def test_continuous_cache_needs_g_or_dg():
    with pytest.raises(SensitivityConfigurationError):
        adjointdiffcache(None, InterpolatingAdjoint(), False, forward(), None)


def test_forward_solution_shape_mismatch():
    problem = ODEProblem(linear_oop, np.array([1.0, 0.5]), (0.0, 1.0), A.ravel())
    bad = ODESolution([0.0, 1.0], np.zeros((2, 3)), None, problem, SolverOptions())

    with pytest.raises(DimensionMismatchError):
        adjointdiffcache(None, InterpolatingAdjoint(), True, bad, None)


def test_field_output_size_checked():
    problem = ODEProblem(lambda u, p, t: np.zeros(3), np.array([1.0, 0.5]), (0.0, 1.0), A.ravel())
    sol = ODESolution([0.0, 1.0], np.ones((2, 2)), None, problem, SolverOptions())

    with pytest.raises(DimensionMismatchError):
        adjointdiffcache(None, InterpolatingAdjoint(), True, sol, None)


def test_analytic_jacobian_shape_checked():
    sol = forward(jac=lambda u, p, t: np.eye(3))

    with pytest.raises(DimensionMismatchError):
        adjointdiffcache(None, InterpolatingAdjoint(), True, sol, None)


def test_analytic_out_of_place_jacobians_allocate_no_buffers():
    sol = forward(
        jac=lambda u, p, t: p.reshape(2, 2),
        paramjac=lambda u, p, t: np.kron(np.eye(2), u),
    )
    cache, y = adjointdiffcache(None, InterpolatingAdjoint(), True, sol, None)

    assert cache.J is None
    assert cache.pJ is None
    assert "J" not in cache.arena
    assert cache.vjp_config is None

    lam = np.array([0.7, -0.3])
    dlam = np.zeros(2)
    dmu = np.zeros(4)
    cache.vecjacobian(dlam, dmu, lam, y, sol.problem.flat_params(), 0.5)

    exp_lam, exp_mu = expected_products(lam, y)
    assert np.allclose(dlam, exp_lam)
    assert np.allclose(dmu, exp_mu)


def linear_numpy(u, p, t):
    return np.asarray(p).reshape(2, 2) @ np.asarray(u)


@pytest.mark.parametrize("sensealg", [
    InterpolatingAdjoint(),
    InterpolatingAdjoint(autojacvec=False),
    InterpolatingAdjoint(autojacvec=False, ad_mode=ADMode.FORWARD),
])
def test_untraceable_field_rejected_at_build(sensealg):
    sol = forward(linear_numpy)

    with pytest.raises(SensitivityConfigurationError, match="cannot be traced"):
        adjointdiffcache(None, sensealg, True, sol, None)


def test_untraceable_field_with_finite_differences():
    sol = forward(linear_numpy)
    cache, y = adjointdiffcache(
        None, InterpolatingAdjoint(autojacvec=False, autodiff=False), True, sol, None
    )
    lam = np.array([0.7, -0.3])
    dlam = np.zeros(2)
    dmu = np.zeros(4)
    cache.vecjacobian(dlam, dmu, lam, y, sol.problem.flat_params(), 0.5)

    exp_lam, exp_mu = expected_products(lam, y)
    assert np.allclose(dlam, exp_lam, rtol=1e-6, atol=1e-8)
    assert np.allclose(dmu, exp_mu, rtol=1e-6, atol=1e-8)


def test_untraceable_field_quadrature_needs_paramjac():
    alg = QuadratureAdjoint(autojacvec=False, autodiff=False)

    with pytest.raises(SensitivityConfigurationError, match="vector field"):
        adjointdiffcache(None, alg, True, forward(linear_numpy), None, quad=True)

    sol = forward(linear_numpy, paramjac=lambda u, p, t: np.kron(np.eye(2), u))
    cache, y = adjointdiffcache(None, alg, True, sol, None, quad=True)
    lam = np.array([0.7, -0.3])
    assert cache.vjp_config is None
    assert np.allclose(cache.paramvjp(lam, y, sol.problem.flat_params(), 0.5), np.outer(lam, y).ravel())


def test_untraceable_continuous_observation_rejected():
    def running(u, p, t):
        return float(np.asarray(u).sum())

    with pytest.raises(SensitivityConfigurationError, match="observation g"):
        adjointdiffcache(running, InterpolatingAdjoint(), False, forward(), None)
