import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ssem.errors import ConfigurationError
from ssem.linalg import COND_TOL, checked_inv, logdet, symmetrize

logger = logging.getLogger(__name__)

LOG_2PI = np.log(2.0 * np.pi)


@dataclass
class FilterOutput:
    """
    Output of one Kalman filter pass.

    Throughout, 'm' is the number of states, 'k' the number of observed
    series and 'T' the number of time periods.

    x_pred:    m-by-T, x_pred[:, t-1] = x_t|t-1
    V_pred:    m-by-m-by-T, V_pred[:, :, t-1] = V_t|t-1
    x_filt:    m-by-(T+1), x_filt[:, t] = x_t|t (column 0 holds x0)
    V_filt:    m-by-m-by-(T+1), V_filt[:, :, t] = V_t|t (column 0 holds V0)
    innov:     k-by-T innovations, NaN where y is missing
    innov_cov: k-by-k-by-T innovation covariances, NaN where y is missing
    KZ_last:   m-by-m, K_T Z_T over the observed rows of y_T (zeros if none)
    loglik:    log-likelihood
    """

    x_pred: np.ndarray
    V_pred: np.ndarray
    x_filt: np.ndarray
    V_filt: np.ndarray
    innov: np.ndarray
    innov_cov: np.ndarray
    KZ_last: np.ndarray
    loglik: float

    @property
    def T(self):
        return self.x_pred.shape[1]


@dataclass
class SmootherOutput:
    """
    Output of one fixed-interval smoothing pass.

    x_smooth:  m-by-(T+1), x_smooth[:, t] = x_t|T (column 0 is x_0|T)
    V_smooth:  m-by-m-by-(T+1), V_smooth[:, :, t] = V_t|T
    VV_smooth: m-by-m-by-T, VV_smooth[:, :, t-1] = Cov(x_t, x_t-1 | Y)
    loglik:    log-likelihood of the filter pass the smoother ran on
    """

    x_smooth: np.ndarray
    V_smooth: np.ndarray
    VV_smooth: np.ndarray
    loglik: float


def as_observations(y):
    """
    Return the observation series as a k-by-T float array (a copy).

    A 1-D array is a single series; a DataFrame has time in rows and series
    in columns, as data panels usually come.
    """
    if isinstance(y, pd.Series):
        y = y.to_numpy(dtype=float)[None, :]
    elif isinstance(y, pd.DataFrame):
        y = y.to_numpy(dtype=float).T
    y = np.array(y, dtype=float, copy=True)
    if y.ndim == 1:
        y = y[None, :]
    if y.ndim != 2:
        raise ConfigurationError(f"Observations must be k-by-T, got shape {y.shape}")
    if y.shape[1] == 0:
        raise ConfigurationError("Observation series is empty")
    return y


def miss_data(y, Z, R):
    """
    Eliminates the rows in y and matrices Z, R that correspond to missing
    data (NaN) in y.

    Returns
    -------
    y : observed entries of y_t
    Z : observation matrix restricted to observed rows
    R : observation noise covariance restricted to observed rows/columns
    ix : boolean mask of observed rows
    """
    # Returns True for nonmissing series
    ix = ~np.isnan(y)
    return y[ix], Z[ix, :], R[np.ix_(ix, ix)], ix


def _check_dimensions(y, model):
    k, T = y.shape
    if k != model.k:
        raise ConfigurationError(f"Model has k={model.k} series but y has {k} rows")
    if model.time_varying and model.T != T:
        raise ConfigurationError(f"Time-varying Z has length {model.T} but y has T={T}")


def kalman_filter(y, model, cond_tol=COND_TOL):
    """
    Applies the Kalman filter.

    Model:
      y_t = Z_t x_t + v_t for v_t ~ N(0, R)
      x_t = B x_{t-1} + w_t for w_t ~ N(0, Q)

    Missing entries of y_t are dropped from y_t, Z_t and R before the
    update; a fully missing y_t skips the update and contributes nothing
    to the log-likelihood. The filtered covariance uses the Joseph form.

    Parameters
    ----------
    y : array_like
        k-by-T observations, NaN for missing values.
    model : ModelSpec
    cond_tol : float
        Largest condition number accepted for the innovation covariance.

    Returns
    -------
    FilterOutput

    Raises
    ------
    NumericalError
        If an innovation covariance S_t is singular or ill-conditioned.
    """
    y = as_observations(y)
    _check_dimensions(y, model)
    k, T = y.shape
    m = model.m

    B, Q, R = model.get("B"), model.get("Q"), model.get("R")
    Z = None if model.time_varying else model.get("Z")

    x_pred = np.full((m, T), np.nan)
    V_pred = np.full((m, m, T), np.nan)
    x_filt = np.full((m, T + 1), np.nan)
    V_filt = np.full((m, m, T + 1), np.nan)
    innov = np.full((k, T), np.nan)
    innov_cov = np.full((k, k, T), np.nan)

    # x_0|0 and V_0|0 are the initial conditions of the model
    xu = model.get("x0")[:, 0]
    Vu = model.get("V0")
    x_filt[:, 0] = xu
    V_filt[:, :, 0] = Vu

    I = np.eye(m)
    KZ = np.zeros((m, m))
    loglik = 0.0

    for t in range(T):
        Z_t = model.get("Z", t) if Z is None else Z

        # Prior: x_t|t-1 = B x_t-1|t-1, V_t|t-1 = B V_t-1|t-1 B' + Q
        x = B @ xu
        V = symmetrize(B @ Vu @ B.T + Q)

        y_t, Z_o, R_o, ix = miss_data(y[:, t], Z_t, R)

        if y_t.size == 0:
            # No data: the posterior is the prior
            xu, Vu = x, V
            KZ = np.zeros((m, m))
        else:
            VZ = V @ Z_o.T
            S = symmetrize(Z_o @ VZ + R_o)
            iS = checked_inv(S, where="S_t", t=t + 1, tol=cond_tol)

            K = VZ @ iS
            e = y_t - Z_o @ x

            xu = x + K @ e
            IKZ = I - K @ Z_o
            Vu = symmetrize(IKZ @ V @ IKZ.T + K @ R_o @ K.T)
            KZ = K @ Z_o

            loglik -= 0.5 * (y_t.size * LOG_2PI + logdet(S, where="S_t", t=t + 1) + e @ iS @ e)

            idx = np.flatnonzero(ix)
            innov[idx, t] = e
            innov_cov[:, :, t][np.ix_(idx, idx)] = S

        x_pred[:, t] = x
        V_pred[:, :, t] = V
        x_filt[:, t + 1] = xu
        V_filt[:, :, t + 1] = Vu

    n_missing = int(np.sum(np.all(np.isnan(y), axis=0)))
    if n_missing:
        logger.debug("%d of %d time steps have no observations", n_missing, T)

    return FilterOutput(
        x_pred=x_pred,
        V_pred=V_pred,
        x_filt=x_filt,
        V_filt=V_filt,
        innov=innov,
        innov_cov=innov_cov,
        KZ_last=KZ,
        loglik=float(loglik),
    )


def kalman_smoother(filt, model, cond_tol=COND_TOL):
    """
    Applies the Rauch-Tung-Striebel fixed-interval smoother to the output
    of `kalman_filter`.

    Backward over t = T-1, ..., 0:
      J_t = V_t|t B' V_t+1|t^-1
      x_t|T = x_t|t + J_t (x_t+1|T - x_t+1|t)
      V_t|T = V_t|t + J_t (V_t+1|T - V_t+1|t) J_t'
      Cov(x_t+1, x_t | Y) = V_t+1|T J_t'

    The lag-one covariance of the final period is computed from the last
    Kalman gain, (I - K_T Z_T) B V_T-1|T-1.

    Raises
    ------
    NumericalError
        If a predicted covariance V_t+1|t is singular or ill-conditioned.
    """
    B = model.get("B")
    m, T = filt.x_pred.shape

    x_smooth = np.zeros((m, T + 1))
    V_smooth = np.zeros((m, m, T + 1))
    VV_smooth = np.zeros((m, m, T))

    # Fill the final period with the filter's posterior values
    x_smooth[:, T] = filt.x_filt[:, T]
    V_smooth[:, :, T] = filt.V_filt[:, :, T]
    VV_smooth[:, :, T - 1] = (np.eye(m) - filt.KZ_last) @ B @ filt.V_filt[:, :, T - 1]

    # Loop through time reverse-chronologically
    for t in range(T - 1, -1, -1):
        Vu = filt.V_filt[:, :, t]
        Vm = filt.V_pred[:, :, t]

        J = Vu @ B.T @ checked_inv(Vm, where="V_t+1|t", t=t + 1, tol=cond_tol)

        x_smooth[:, t] = filt.x_filt[:, t] + J @ (x_smooth[:, t + 1] - filt.x_pred[:, t])
        V_smooth[:, :, t] = symmetrize(Vu + J @ (V_smooth[:, :, t + 1] - Vm) @ J.T)

        if t < T - 1:
            VV_smooth[:, :, t] = V_smooth[:, :, t + 1] @ J.T

    return SmootherOutput(
        x_smooth=x_smooth,
        V_smooth=V_smooth,
        VV_smooth=VV_smooth,
        loglik=filt.loglik,
    )


def run_kf(y, model, cond_tol=COND_TOL):
    """
    Applies the Kalman filter and fixed-interval smoother.

    Returns
    -------
    (FilterOutput, SmootherOutput)
    """
    filt = kalman_filter(y, model, cond_tol=cond_tol)
    smooth = kalman_smoother(filt, model, cond_tol=cond_tol)
    return filt, smooth
