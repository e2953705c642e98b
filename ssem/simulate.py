import numpy as np

from ssem.linalg import symmetrize


def _draw(rng, cov, size):
    """Zero-mean normal draws, exact zeros for a zero covariance."""
    if not np.any(cov):
        return np.zeros((size, cov.shape[0]))
    return rng.multivariate_normal(np.zeros(cov.shape[0]), cov, size=size, method="eigh")


def simulate(model, T, seed=None):
    """
    Draw states and observations from a state-space model.

    Args:
        model (ModelSpec): model at its current parameter values.
        T (int): number of periods. Must match the length of a time-varying Z.
        seed (int or numpy.random.Generator, optional)

    Returns:
        tuple: x (m-by-T states x_1..x_T) and y (k-by-T observations).
    """
    if model.time_varying and model.T != T:
        raise ValueError(f"Time-varying Z has length {model.T}, cannot simulate T={T}")
    rng = np.random.default_rng(seed)
    B, Q, R = model.get("B"), model.get("Q"), model.get("R")

    x0 = model.get("x0")[:, 0] + _draw(rng, model.get("V0"), 1)[0]
    w = _draw(rng, Q, T)
    v = _draw(rng, R, T)

    x = np.zeros((model.m, T))
    y = np.zeros((model.k, T))
    previous = x0
    for t in range(T):
        x[:, t] = B @ previous + w[t]
        y[:, t] = model.get("Z", t) @ x[:, t] + v[t]
        previous = x[:, t]
    return x, y


def forecast(model, filter_output, steps, Z_future=None):
    """
    h-step-ahead forecasts from the last filtered state.

    x_T+h|T = B^h x_T|T, V_T+h|T = B V_T+h-1|T B' + Q and
    y_T+h|T = Z x_T+h|T with covariance Z V_T+h|T Z' + R.

    For a time-varying Z the last Z_t is used unless `Z_future`
    (k-by-m-by-steps) is given.

    Returns:
        dict with keys x (m-by-steps), V (m-by-m-by-steps),
        y (k-by-steps) and y_se (k-by-steps).
    """
    if steps < 1:
        raise ValueError("steps must be positive")
    B, Q, R = model.get("B"), model.get("Q"), model.get("R")
    if Z_future is None:
        Z = model.get("Z", filter_output.T - 1) if model.time_varying else model.get("Z")
        Z_future = np.repeat(Z[:, :, None], steps, axis=2)
    elif Z_future.shape != (model.k, model.m, steps):
        raise ValueError(f"Z_future must have shape {(model.k, model.m, steps)}")

    x_fc = np.zeros((model.m, steps))
    V_fc = np.zeros((model.m, model.m, steps))
    y_fc = np.zeros((model.k, steps))
    y_se = np.zeros((model.k, steps))

    x = filter_output.x_filt[:, -1]
    V = filter_output.V_filt[:, :, -1]
    for h in range(steps):
        x = B @ x
        V = symmetrize(B @ V @ B.T + Q)
        Z = Z_future[:, :, h]
        x_fc[:, h] = x
        V_fc[:, :, h] = V
        y_fc[:, h] = Z @ x
        y_se[:, h] = np.sqrt(np.clip(np.diag(Z @ V @ Z.T + R), 0.0, None))

    return {"x": x_fc, "V": V_fc, "y": y_fc, "y_se": y_se}
