import numpy as np
import pytest

from ssem.model_spec import ModelSpec
from ssem.simulate import simulate


def ar1_spec(B=0.8, Q=1.0, R=0.5, x0=0.0, V0=1.0):
    """Scalar AR(1) state observed with noise, all entries fixed."""
    return ModelSpec(Z=[[1.0]], R=[[R]], B=[[B]], Q=[[Q]], x0=[[x0]], V0=[[V0]])


@pytest.fixture
def ar1_data():
    _, y = simulate(ar1_spec(), T=2000, seed=1)
    return y


@pytest.fixture
def factor_model():
    """Two series loading on one AR(1) factor, with a full R."""
    return ModelSpec(
        Z=[[1.0], [0.5]],
        R=[[0.3, 0.1], [0.1, 0.4]],
        B=[[0.7]],
        Q=[[1.0]],
        x0=[[0.0]],
        V0=[[1.0]],
    )


@pytest.fixture
def factor_data(factor_model):
    _, y = simulate(factor_model, T=150, seed=7)
    y[0, 10:15] = np.nan
    y[1, 40] = np.nan
    y[:, 80] = np.nan
    return y


@pytest.fixture
def tvp_data():
    """Regression y_t = c_t beta_t + v_t with a random-walk coefficient (r=0.3, q=0.05)."""
    T = 500
    c = np.random.default_rng(3).uniform(0.5, 1.5, T)
    truth = ModelSpec(Z=[[c]], R=[[0.3]], B=[[1.0]], Q=[[0.05]], x0=[[0.0]], V0=[[10.0]])
    _, y = simulate(truth, T=T, seed=11)
    return c, y
