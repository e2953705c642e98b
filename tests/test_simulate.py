import numpy as np
import pytest

from ssem.kalman import kalman_filter
from ssem.model_spec import ModelSpec
from ssem.simulate import forecast, simulate

from conftest import ar1_spec


def test_shapes_and_seed(factor_model):
    x, y = simulate(factor_model, T=25, seed=3)
    assert x.shape == (1, 25)
    assert y.shape == (2, 25)
    x2, y2 = simulate(factor_model, T=25, seed=3)
    assert np.array_equal(y, y2)
    _, y3 = simulate(factor_model, T=25, seed=4)
    assert not np.array_equal(y, y3)


def test_deterministic_model():
    model = ModelSpec(Z=[[2.0]], R=[[0.0]], B=[[0.5]], Q=[[0.0]], x0=[[8.0]], V0=[[0.0]])
    x, y = simulate(model, T=4, seed=0)
    assert np.allclose(x[0], [4.0, 2.0, 1.0, 0.5])
    assert np.allclose(y[0], 2 * x[0])


def test_sample_moments_match_model():
    x, y = simulate(ar1_spec(B=0.5, Q=1.0, R=0.5), T=20000, seed=12)
    # Stationary variance Q / (1 - B^2)
    assert abs(np.var(x) - 1.0 / 0.75) < 0.1
    assert abs(np.var(y - x) - 0.5) < 0.05


def test_time_varying_length_must_match():
    model = ModelSpec(Z=[[np.ones(5)]], R=[[1.0]], B=[[0.5]], Q=[[1.0]], x0=[[0.0]], V0=[[1.0]])
    with pytest.raises(ValueError):
        simulate(model, T=6)


def test_forecast():
    model = ar1_spec(B=0.8, Q=1.0, R=0.5)
    _, y = simulate(model, T=50, seed=5)
    filt = kalman_filter(y, model)
    out = forecast(model, filt, steps=3)

    x_T = filt.x_filt[0, -1]
    assert np.allclose(out["x"][0], [0.8 * x_T, 0.64 * x_T, 0.512 * x_T])
    V = filt.V_filt[0, 0, -1]
    for h in range(3):
        V = 0.64 * V + 1.0
        assert np.isclose(out["V"][0, 0, h], V)
        assert np.isclose(out["y_se"][0, h], np.sqrt(V + 0.5))
    assert np.allclose(out["y"], out["x"])
    with pytest.raises(ValueError):
        forecast(model, filt, steps=0)
