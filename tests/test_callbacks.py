"""Tests for the discrete adjoint countdown and callback generation."""

import numpy as np
import pytest

from odeadjoint.adjoint.callbacks import (
    DiscreteAdjointCallback,
    DiscreteAdjointSchedule,
    generate_callbacks,
)
from odeadjoint.core.algorithms import InterpolatingAdjoint, QuadratureAdjoint
from odeadjoint.core.exceptions import AdjointInvariantError
from odeadjoint.core.problem import ODEProblem, SolverOptions
from odeadjoint.stepping.adjoint import adjoint_sensitivities
from odeadjoint.stepping.callbacks import CallbackSet, IterativeCallback
from odeadjoint.stepping.forward import solve
from odeadjoint.stepping.integrator import Integrator


class ConstantSensitivity:
    """Minimal sensitivity function: zero backward dynamics, constant forward state."""

    def __init__(self, n=1, m=1, quad=False, discrete=True):
        self.n = n
        self.m = m
        self.quad = quad
        self.discrete = discrete
        self.shape = (n,)
        self.params = np.zeros(m)
        self.y = np.zeros(n)
        self.refreshed = []

    def forward_state(self, t):
        self.refreshed.append(t)
        self.y[:] = 1.0
        return self.y

    def __call__(self, t, z):
        return np.zeros_like(z)


class RecordingGradient:
    def __init__(self, value=1.0):
        self.value = value
        self.calls = []

    def __call__(self, u, p, t, i):
        self.calls.append((t, i))
        return np.full(u.shape, self.value)


def run_backward(sensefun, dg, ts, t0=0.0, t1=1.0, init_cb=None, callback=None):
    size = sensefun.n if sensefun.quad else sensefun.n + sensefun.m
    lam = np.zeros(sensefun.n)
    if init_cb is None:
        init_cb = ts[-1] == t1
    cb = generate_callbacks(sensefun, dg, lam, np.asarray(ts), callback, init_cb)
    integrator = Integrator(sensefun, t1, np.zeros(size), t0, SolverOptions(), callback=cb)
    return integrator.solve()


def test_schedule_counts_down():
    schedule = DiscreteAdjointSchedule([0.1, 0.5, 1.0])

    assert schedule.cur_time == 3
    seen = []
    while schedule.next_time() is not None:
        seen.append((schedule.next_time(), schedule.current_index()))
        schedule.consume()

    assert seen == [(1.0, 2), (0.5, 1), (0.1, 0)]
    assert schedule.cur_time == 0
    schedule.finish()


def test_schedule_underflow_is_fatal():
    schedule = DiscreteAdjointSchedule([0.5])
    schedule.consume()

    with pytest.raises(AdjointInvariantError):
        schedule.consume()
    with pytest.raises(AdjointInvariantError):
        schedule.current_index()


def test_schedule_unconsumed_samples_are_fatal():
    schedule = DiscreteAdjointSchedule([0.2, 0.4])
    schedule.consume()

    with pytest.raises(AdjointInvariantError):
        schedule.finish()


def test_continuous_mode_passes_callback_through():
    sensefun = ConstantSensitivity(discrete=False)
    user_cb = IterativeCallback(lambda integrator: None, lambda integrator: None)

    assert generate_callbacks(sensefun, None, np.zeros(1), None, user_cb, False) is user_cb
    assert generate_callbacks(sensefun, None, np.zeros(1), None, None, False) is None


def test_composed_set_orders_correction_first():
    sensefun = ConstantSensitivity()
    user_cb = IterativeCallback(lambda integrator: None, lambda integrator: None)

    cb = generate_callbacks(sensefun, RecordingGradient(), np.zeros(1), np.array([0.5]), user_cb, False)

    assert isinstance(cb, CallbackSet)
    assert isinstance(cb.callbacks[0], DiscreteAdjointCallback)
    assert cb.callbacks[1] is user_cb


def test_fires_once_per_sample_in_decreasing_order():
    sensefun = ConstantSensitivity()
    dg = RecordingGradient()
    ts = [0.0, 0.25, 0.5, 0.75]

    result = run_backward(sensefun, dg, ts)

    assert dg.calls == [(0.75, 3), (0.5, 2), (0.25, 1), (0.0, 0)]
    assert sensefun.refreshed == [0.75, 0.5, 0.25, 0.0]
    # λ accumulates one unit per sample, the parameter tail is untouched
    assert np.allclose(result.u, [4.0, 0.0])


def test_initial_affect_when_last_sample_is_final_time():
    sensefun = ConstantSensitivity()
    dg = RecordingGradient()

    result = run_backward(sensefun, dg, [0.5, 1.0])

    assert dg.calls == [(1.0, 1), (0.5, 0)]
    assert np.allclose(result.u, [2.0, 0.0])


def test_quadrature_adds_into_whole_state():
    sensefun = ConstantSensitivity(n=2, m=3, quad=True)
    dg = RecordingGradient(value=2.0)

    result = run_backward(sensefun, dg, [0.3, 0.6])

    assert result.u.shape == (2,)
    assert np.allclose(result.u, [4.0, 4.0])


def test_user_callback_fires_after_correction():
    sensefun = ConstantSensitivity()
    order = []

    def dg(u, p, t, i):
        order.append(("correction", t))
        return np.ones(u.shape)

    fired = []

    def choose(integrator):
        return None if fired else 0.5

    def affect(integrator):
        fired.append(integrator.t)
        order.append(("user", integrator.t))

    user_cb = IterativeCallback(choose, affect)
    run_backward(sensefun, dg, [0.5], callback=user_cb)

    assert order == [("correction", 0.5), ("user", 0.5)]


def test_sample_outside_the_backward_span_is_never_consumed():
    sensefun = ConstantSensitivity()

    with pytest.raises(AdjointInvariantError):
        run_backward(sensefun, RecordingGradient(), [-0.5, 0.5])


def test_full_backward_pass_fires_for_every_saved_sample():
    """Countdown reaches zero exactly at the end of a real adjoint pass."""
    problem = ODEProblem(lambda u, p, t: u * p, [2.0], (0.0, 1.0), [3.0])
    opts = SolverOptions(rtol=1e-10, atol=1e-10)
    sol = solve(problem, opts, saveat=0.1)
    dg = RecordingGradient()

    for sensealg in (InterpolatingAdjoint(), QuadratureAdjoint()):
        dg.calls.clear()
        adjoint_sensitivities(sol, sensealg, t=sol.t, dg=dg)

        times = [t for t, _ in dg.calls]
        indices = [i for _, i in dg.calls]
        assert len(dg.calls) == len(sol.t)
        assert indices == list(range(len(sol.t) - 1, -1, -1))
        assert np.all(np.diff(times) < 0)
        assert times == list(sol.t[::-1])
