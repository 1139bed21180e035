import numpy as np
from scipy.optimize import minimize

import odeadjoint.optimization.interface as interface
from odeadjoint import AdjointOptimizer, ODEProblem, SolverOptions
from odeadjoint.core import sum_of_states


TIGHT = SolverOptions(rtol=1e-10, atol=1e-12)


def growth(u, p, t):
    return u * p


def _problem():
    return ODEProblem(growth, [2.0], (0.0, 1.0), [3.0])


def test_optimizer_caches_gradient_per_point(monkeypatch):
    calls = []
    original = interface.compute_gradient

    def counting(problem, *args, **kwargs):
        calls.append(problem)
        return original(problem, *args, **kwargs)

    monkeypatch.setattr(interface, "compute_gradient", counting)

    opt = AdjointOptimizer(_problem(), sum_of_states, ts=0.5, solver=TIGHT)
    x = opt.initial_point()

    value = opt.objective_value(x)
    grad = opt.gradient(x)
    assert len(calls) == 1

    opt.gradient(x.copy())
    assert len(calls) == 1

    opt.objective_value(x + 0.1)
    assert len(calls) == 2

    expected = 2.0 * (1.0 + np.exp(1.5) + np.exp(3.0))
    assert np.isclose(value, expected, rtol=1e-8)
    assert grad.shape == (2,)


def test_initial_point_and_remake():
    p = [np.array([0.5]), np.array([0.1, 0.2])]
    problem = ODEProblem(lambda u, p, t: p[0] * u + p[1], [[1.0, 2.0]], (0.0, 1.0), p)
    opt = AdjointOptimizer(problem, sum_of_states, ts=0.5)

    assert opt.size == 5
    assert np.allclose(opt.initial_point(), [1.0, 2.0, 0.5, 0.1, 0.2])

    remade = opt.remake(np.arange(5.0))
    assert remade.u0.shape == (1, 2)
    assert np.allclose(remade.u0, [[0.0, 1.0]])
    assert np.allclose(remade.p[0], [2.0])
    assert np.allclose(remade.p[1], [3.0, 4.0])
    assert np.allclose(problem.u0, [[1.0, 2.0]])


def test_parameters_only():
    opt = AdjointOptimizer(_problem(), sum_of_states, ts=0.5, solver=TIGHT, optimize_u0=False)

    assert opt.size == 1
    assert np.allclose(opt.initial_point(), [3.0])

    grad = opt.gradient(np.array([3.0]))
    ts = np.array([0.0, 0.5, 1.0])
    assert np.allclose(grad, (2.0 * ts * np.exp(3.0 * ts)).sum(), rtol=1e-6)


def test_gradient_matches_finite_differences():
    opt = AdjointOptimizer(_problem(), sum_of_states, ts=0.25, solver=TIGHT)
    fun, jac = opt.scipy_interface()
    x = opt.initial_point()

    h = 1e-4
    fd = np.array([
        (fun(x + h * e) - fun(x - h * e)) / (2 * h) for e in np.eye(x.size)
    ])
    assert np.allclose(jac(x), fd, rtol=1e-5)


def test_scipy_minimize_fits_decay_rate():
    """Recover p = -0.7 from samples of u(t) = e^{p t}."""
    ts = np.linspace(0.0, 2.0, 9)
    target = np.exp(-0.7 * ts)

    def misfit(u, p, t, i):
        return (u[0] - target[i]) ** 2

    problem = ODEProblem(growth, [1.0], (0.0, 2.0), [-0.2])
    opt = AdjointOptimizer(problem, misfit, ts=ts, solver=TIGHT, optimize_u0=False)
    fun, jac = opt.scipy_interface()

    res = minimize(fun, opt.initial_point(), jac=jac, method="BFGS", options={"gtol": 1e-7})

    assert res.success
    assert np.allclose(res.x, [-0.7], atol=1e-5)
