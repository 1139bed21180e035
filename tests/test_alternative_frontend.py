"""Algorithm / field-form compatibility, checked before any integration step."""

import numpy as np
import pytest

from odeadjoint import (
    ForwardDiffSensitivity,
    ForwardSensitivity,
    InterpolatingAdjoint,
    ODEProblem,
    QuadratureAdjoint,
    ReverseDiffAdjoint,
    SolverOptions,
    compute_gradient,
)
from odeadjoint.core import (
    OutOfPlaceUnsupportedError,
    SensitivityConfigurationError,
    sum_of_states,
)


TIGHT = SolverOptions(rtol=1e-12, atol=1e-12)


class CountingField:
    """du/dt = u·p, counting every evaluation."""

    def __init__(self):
        self.calls = 0

    def __call__(self, u, p, t):
        self.calls += 1
        return u * p


class CountingInplaceField:
    def __init__(self):
        self.calls = 0

    def __call__(self, du, u, p, t):
        self.calls += 1
        du[:] = u * p


def paramjac_inplace(pJ, u, p, t):
    pJ[:, 0] = u


def expected():
    ts = np.linspace(0.0, 1.0, 11)
    return np.exp(3.0 * ts).sum(), (2.0 * ts * np.exp(3.0 * ts)).sum()


def test_forward_sensitivity_rejects_out_of_place_before_stepping():
    f = CountingField()
    problem = ODEProblem(f, [2.0], (0.0, 1.0), [3.0])

    with pytest.raises(OutOfPlaceUnsupportedError) as excinfo:
        compute_gradient(problem, sum_of_states, ForwardSensitivity(), ts=0.1)

    assert f.calls == 0
    assert excinfo.value.algorithm == "ForwardSensitivity"
    assert isinstance(excinfo.value, SensitivityConfigurationError)


@pytest.mark.parametrize("sensealg", [
    InterpolatingAdjoint(),
    QuadratureAdjoint(),
    ForwardSensitivity(),
])
def test_inplace_field_supported(sensealg):
    f = CountingInplaceField()
    problem = ODEProblem(f, [2.0], (0.0, 1.0), [3.0], paramjac=paramjac_inplace)
    du0, dp = expected()

    result = compute_gradient(problem, sum_of_states, sensealg, ts=0.1, solver=TIGHT)

    assert f.calls > 0
    assert np.allclose(result.flat(), [du0, dp], rtol=1e-6)


@pytest.mark.parametrize("sensealg", [ReverseDiffAdjoint(), ForwardDiffSensitivity()])
def test_through_solver_rejects_inplace_field(sensealg):
    f = CountingInplaceField()
    problem = ODEProblem(f, [2.0], (0.0, 1.0), [3.0])

    with pytest.raises(SensitivityConfigurationError):
        compute_gradient(problem, sum_of_states, sensealg, ts=0.1)
    assert f.calls == 0


def test_traced_strategy_rejects_inplace_field():
    f = CountingInplaceField()
    problem = ODEProblem(f, [2.0], (0.0, 1.0), [3.0])

    with pytest.raises(SensitivityConfigurationError):
        compute_gradient(problem, sum_of_states, InterpolatingAdjoint(autojacvec=True), ts=0.1)


def test_quadrature_inplace_needs_analytic_paramjac():
    problem = ODEProblem(CountingInplaceField(), [2.0], (0.0, 1.0), [3.0])

    with pytest.raises(SensitivityConfigurationError):
        compute_gradient(problem, sum_of_states, QuadratureAdjoint(), ts=0.1)


def test_explicit_form_overrides_signature_detection():
    def field(*args):
        u, p, t = args
        return u * p

    with pytest.raises(SensitivityConfigurationError):
        ODEProblem(field, [2.0], (0.0, 1.0), [3.0]).form

    problem = ODEProblem(field, [2.0], (0.0, 1.0), [3.0], inplace=False)
    du0, dp = expected()

    result = compute_gradient(problem, sum_of_states, ts=0.1, solver=TIGHT)

    assert np.allclose(result.flat(), [du0, dp], rtol=1e-6)


@pytest.mark.parametrize("sensealg", [ReverseDiffAdjoint(), ForwardDiffSensitivity()])
def test_through_solver_rejects_untraceable_functions(sensealg):
    def numpy_field(u, p, t):
        return np.asarray(u) * np.asarray(p)

    def numpy_observation(u, p, t, i):
        return float(np.asarray(u).sum())

    with pytest.raises(SensitivityConfigurationError, match="vector field"):
        compute_gradient(ODEProblem(numpy_field, [2.0], (0.0, 1.0), [3.0]), sum_of_states, sensealg, ts=0.1)

    problem = ODEProblem(CountingField(), [2.0], (0.0, 1.0), [3.0])
    with pytest.raises(SensitivityConfigurationError, match="observation g"):
        compute_gradient(problem, numpy_observation, sensealg, ts=0.1)
