import numpy as np
import pandas as pd
import pytest

from ssem.errors import ConfigurationError, NumericalError
from ssem.kalman import as_observations, kalman_filter, kalman_smoother, miss_data, run_kf
from ssem.linalg import is_psd
from ssem.model_spec import ModelSpec

from conftest import ar1_spec


def random_walk(q=0.01, r=0.1, x0=1.0, V0=1.0):
    return ModelSpec(Z=[[1.0]], R=[[r]], B=[[1.0]], Q=[[q]], x0=[[x0]], V0=[[V0]])


def test_five_point_scenario():
    y = np.array([[1.0, 1.2, 0.9, 1.1, 1.0]])
    filt = kalman_filter(y, random_walk())

    V = filt.V_filt[0, 0, :]
    assert np.all(np.diff(V) <= 1e-12)
    assert abs(filt.x_filt[0, -1] - 1.0) < 0.1
    assert np.isfinite(filt.loglik)


def test_scalar_random_walk_matches_closed_form():
    q, r = 0.5, 2.0
    rng = np.random.default_rng(3)
    y = np.cumsum(rng.normal(size=50))[None, :]
    filt = kalman_filter(y, random_walk(q=q, r=r, x0=0.0, V0=1.0))

    # Exponentially weighted recursion with a time-varying gain
    x, P, loglik = 0.0, 1.0, 0.0
    for t in range(y.shape[1]):
        P_pred = P + q
        S = P_pred + r
        K = P_pred / S
        e = y[0, t] - x
        loglik += -0.5 * (np.log(2 * np.pi) + np.log(S) + e ** 2 / S)
        x = x + K * e
        P = (1 - K) * P_pred
        assert np.isclose(filt.x_filt[0, t + 1], x)
        assert np.isclose(filt.V_filt[0, 0, t + 1], P)
    assert np.isclose(filt.loglik, loglik)


def test_fully_missing_step_keeps_prior(factor_model, factor_data):
    filt = kalman_filter(factor_data, factor_model)
    t = 80
    assert np.allclose(filt.x_filt[:, t + 1], filt.x_pred[:, t])
    assert np.allclose(filt.V_filt[:, :, t + 1], filt.V_pred[:, :, t])
    assert np.all(np.isnan(filt.innov[:, t]))


def test_partially_missing_matches_reduced_model():
    model = ModelSpec(
        Z=[[1.0], [2.0]], R=[[0.5, 0.2], [0.2, 0.7]], B=[[0.9]], Q=[[1.0]], x0=[[0.3]], V0=[[2.0]]
    )
    reduced = ModelSpec(Z=[[1.0]], R=[[0.5]], B=[[0.9]], Q=[[1.0]], x0=[[0.3]], V0=[[2.0]])
    full = kalman_filter(np.array([[1.5], [np.nan]]), model)
    single = kalman_filter(np.array([[1.5]]), reduced)
    assert np.allclose(full.x_filt, single.x_filt)
    assert np.allclose(full.V_filt, single.V_filt)
    assert np.isclose(full.loglik, single.loglik)


def test_boundary_identity(factor_model, factor_data):
    filt, smooth = run_kf(factor_data, factor_model)
    assert np.allclose(smooth.x_smooth[:, -1], filt.x_filt[:, -1])
    assert np.allclose(smooth.V_smooth[:, :, -1], filt.V_filt[:, :, -1])


def test_covariances_psd_and_smoothed_below_filtered(factor_model, factor_data):
    filt, smooth = run_kf(factor_data, factor_model)
    for t in range(filt.T + 1):
        assert is_psd(filt.V_filt[:, :, t])
        assert is_psd(smooth.V_smooth[:, :, t])
        assert is_psd(filt.V_filt[:, :, t] - smooth.V_smooth[:, :, t])


def test_lag_one_covariance_at_boundary():
    model = ModelSpec(
        Z=[[1.0, 0.0], [0.5, 1.0]],
        R=np.diag([0.3, 0.2]),
        B=[[0.6, 0.1], [0.0, 0.5]],
        Q=np.eye(2),
        x0=[0.0, 0.0],
        V0=np.eye(2),
    )
    y = np.random.default_rng(11).normal(size=(2, 30))
    filt, smooth = run_kf(y, model)
    T = filt.T
    B = model.get("B")
    J = filt.V_filt[:, :, T - 1] @ B.T @ np.linalg.inv(filt.V_pred[:, :, T - 1])
    assert np.allclose(smooth.VV_smooth[:, :, T - 1], smooth.V_smooth[:, :, T] @ J.T)


def test_time_varying_Z_regression():
    T = 200
    rng = np.random.default_rng(5)
    c = rng.normal(size=T)
    y = (2.0 * c + rng.normal(scale=0.5, size=T))[None, :]
    model = ModelSpec(Z=[[c]], R=[[0.25]], B=[[1.0]], Q=[[0.0]], x0=[[0.0]], V0=[[100.0]])
    filt, smooth = run_kf(y, model)

    beta_ols = np.sum(c * y[0]) / np.sum(c * c)
    assert np.allclose(smooth.x_smooth[0], smooth.x_smooth[0, -1])
    assert abs(smooth.x_smooth[0, -1] - beta_ols) < 0.01


def test_dimension_mismatch():
    with pytest.raises(ConfigurationError):
        kalman_filter(np.zeros((2, 10)), ar1_spec())


def test_singular_innovation_covariance():
    model = ModelSpec(Z=[[0.0]], R=[[0.0]], B=[[0.5]], Q=[[1.0]], x0=[[0.0]], V0=[[1.0]])
    with pytest.raises(NumericalError) as excinfo:
        kalman_filter(np.ones((1, 5)), model)
    assert excinfo.value.where == "S_t"
    assert excinfo.value.t == 1


def test_smoother_rejects_singular_prediction():
    model = ModelSpec(Z=[[1.0]], R=[[1.0]], B=[[0.0]], Q=[[0.0]], x0=[[0.0]], V0=[[1.0]])
    filt = kalman_filter(np.ones((1, 5)), model)
    with pytest.raises(NumericalError):
        kalman_smoother(filt, model)


def test_as_observations_and_miss_data():
    frame = pd.DataFrame({"a": [1.0, np.nan, 3.0], "b": [4.0, 5.0, 6.0]})
    y = as_observations(frame)
    assert y.shape == (2, 3)
    assert as_observations(np.arange(4.0)).shape == (1, 4)
    with pytest.raises(ConfigurationError):
        as_observations(np.empty((1, 0)))

    y_obs, Z_obs, R_obs, ix = miss_data(y[:, 1], np.array([[1.0], [2.0]]), np.diag([1.0, 2.0]))
    assert y_obs.tolist() == [5.0]
    assert Z_obs.tolist() == [[2.0]]
    assert R_obs.tolist() == [[2.0]]
    assert ix.tolist() == [False, True]
