"""
EM estimation of linear-Gaussian state-space models.

Each iteration runs the Kalman filter and smoother under the current
parameters (E-step) and re-estimates the free parameters in closed form
(M-step), following Shumway & Stoffer (1982) for the unconstrained updates
and Holmes (2012) for fixed, shared and linearly constrained entries.

References
----------
Shumway, R. H. and Stoffer, D. S. (1982), "An approach to time series
smoothing and forecasting using the EM algorithm", Journal of Time Series
Analysis 3(4).

Holmes, E. E. (2012), "Derivation of the EM algorithm for constrained and
unconstrained multivariate autoregressive state-space (MARSS) models".

Banbura, M. and Modugno, M. (2010), "Maximum likelihood estimation of
factor models on data sets with arbitrary pattern of missing data".
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
import pandas as pd

from ssem.errors import ConvergenceWarning, NumericalError
from ssem.init_cond import init_cond
from ssem.kalman import FilterOutput, SmootherOutput, as_observations, run_kf
from ssem.linalg import COND_TOL, checked_inv, safe_inv, symmetrize, unvec, vec
from ssem.model_spec import ModelSpec

logger = logging.getLogger(__name__)

CONVERGED = "converged"
MAXITER = "maxiter"
DIVERGED = "diverged"


@dataclass
class EMOptions:
    """
    Convergence options.

    max_iter:      iteration cap
    threshold:     relative log-likelihood change that counts as converged
    noise:         log-likelihood decrease tolerated as numerical imprecision
    min_iter:      iterations run before convergence is checked
    cond_tol:      largest condition number accepted when inverting
    verbose_every: log progress every this many iterations (0 disables)
    init:          fill parameters without an initial value from the data
    """

    max_iter: int = 5000
    threshold: float = 1e-4
    noise: float = 1e-3
    min_iter: int = 3
    cond_tol: float = COND_TOL
    verbose_every: int = 10
    init: bool = True


@dataclass
class ConvergenceTrace:
    """Append-only record of (iteration, log-likelihood) pairs."""

    records: List[Tuple[int, float]] = field(default_factory=list)

    def append(self, iteration, loglik):
        if self.records and iteration <= self.records[-1][0]:
            raise ValueError("Iterations must be appended in increasing order")
        self.records.append((int(iteration), float(loglik)))

    @property
    def logliks(self):
        return np.array([loglik for _, loglik in self.records])

    def to_frame(self):
        return pd.DataFrame(self.records, columns=["iteration", "loglik"])

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(self.records)


@dataclass
class EMResult:
    """
    Result of an EM run.

    model:      final ModelSpec (the last estimates with a valid likelihood)
    filter:     Kalman filter output under `model`
    smoother:   smoother output under `model`
    trace:      ConvergenceTrace of the run
    status:     "converged", "maxiter" or "diverged"
    iterations: number of EM iterations performed
    loglik:     log-likelihood of `model`
    y:          k-by-T observations the model was fitted to
    """

    model: ModelSpec
    filter: FilterOutput
    smoother: SmootherOutput
    trace: ConvergenceTrace
    status: str
    iterations: int
    loglik: float
    y: np.ndarray

    @property
    def converged(self):
        return self.status == CONVERGED


@dataclass
class SufficientStats:
    """
    Expected sufficient statistics from one smoothing pass.

    P:     m-by-m-by-T, E[x_t x_t' | Y] for t = 1..T
    S11:   sum over t = 1..T of E[x_t x_t' | Y]
    S00:   sum over t = 1..T of E[x_t-1 x_t-1' | Y]
    S10:   sum over t = 1..T of E[x_t x_t-1' | Y]
    Eyx:   k-by-m-by-T, E[y_t x_t' | Y]
    Eyy:   k-by-k-by-T, E[y_t y_t' | Y]
    x0, V0: smoothed mean and covariance of x_0
    """

    P: np.ndarray
    S11: np.ndarray
    S00: np.ndarray
    S10: np.ndarray
    Eyx: np.ndarray
    Eyy: np.ndarray
    x0: np.ndarray
    V0: np.ndarray

    @property
    def T(self):
        return self.P.shape[2]


def _expected_y(y_t, Z_t, R, x, P):
    """
    E[y_t], E[y_t y_t'] and E[y_t x_t'] given all the data.

    Missing rows are replaced by their conditional distribution given the
    observed rows and the state, which is exact for any R (diagonal or not):
      y_m = G x + h + eta, G = Z_m - K Z_o, h = K y_o, K = R_mo R_oo^-1
    """
    ix = ~np.isnan(y_t)
    if ix.all():
        return y_t, np.outer(y_t, y_t), np.outer(y_t, x)

    k, m = Z_t.shape
    o, mi = np.flatnonzero(ix), np.flatnonzero(~ix)
    y_o = y_t[o]

    if o.size:
        K = R[np.ix_(mi, o)] @ safe_inv(R[np.ix_(o, o)])
    else:
        K = np.zeros((mi.size, 0))
    G = Z_t[mi] - K @ Z_t[o]
    h = K @ y_o
    R_cond = R[np.ix_(mi, mi)] - K @ R[np.ix_(o, mi)]

    Ey = np.empty(k)
    Ey[o] = y_o
    Ey[mi] = G @ x + h

    Eyx = np.empty((k, m))
    Eyx[o] = np.outer(y_o, x)
    Eyx[mi] = G @ P + np.outer(h, x)

    Gx = G @ x
    Eyy = np.empty((k, k))
    Eyy[np.ix_(o, o)] = np.outer(y_o, y_o)
    Eyy[np.ix_(mi, o)] = np.outer(Ey[mi], y_o)
    Eyy[np.ix_(o, mi)] = np.outer(y_o, Ey[mi])
    Eyy[np.ix_(mi, mi)] = G @ P @ G.T + np.outer(Gx, h) + np.outer(h, Gx) + np.outer(h, h) + R_cond

    return Ey, Eyy, Eyx


def sufficient_stats(y, model, smooth):
    """Expected sufficient statistics for the M-step."""
    k, T = y.shape
    xs, Vs, VVs = smooth.x_smooth, smooth.V_smooth, smooth.VV_smooth

    # E[x_t x_t' | Y] for t = 0..T
    P_all = Vs + np.einsum("it,jt->ijt", xs, xs)
    cross = VVs + np.einsum("it,jt->ijt", xs[:, 1:], xs[:, :-1])

    R = model.get("R")
    Z = None if model.time_varying else model.get("Z")

    Eyx = np.empty((k, model.m, T))
    Eyy = np.empty((k, k, T))
    for t in range(T):
        Z_t = model.get("Z", t) if Z is None else Z
        _, Eyy[:, :, t], Eyx[:, :, t] = _expected_y(y[:, t], Z_t, R, xs[:, t + 1], P_all[:, :, t + 1])

    return SufficientStats(
        P=P_all[:, :, 1:],
        S11=P_all[:, :, 1:].sum(axis=2),
        S00=P_all[:, :, :-1].sum(axis=2),
        S10=cross.sum(axis=2),
        Eyx=Eyx,
        Eyy=Eyy,
        x0=xs[:, 0].copy(),
        V0=Vs[:, :, 0].copy(),
    )


def _solve_constrained(model, matrix, H, rhs, cond_tol):
    """
    Solve the normal equations H p = rhs for the parameters of `matrix`,
    imposing the linear constraints A p = q by restricted least squares:
      p_c = p - H^-1 A' (A H^-1 A')^-1 (A p - q)
    """
    iH = checked_inv(H, where=f"{matrix} normal equations", tol=cond_tol)
    p = iH @ rhs

    constraints = model.constraints(matrix)
    if constraints is not None:
        A, q = constraints
        p = p - iH @ A.T @ safe_inv(A @ iH @ A.T) @ (A @ p - q)
    return p


def _project_variance(model, matrix, S):
    """
    Constrained update of a variance matrix: p = (D'D)^-1 D' vec(S).

    Every parameter takes the average of the unconstrained estimates at
    the positions that share it; fixed positions are left as they are.
    """
    _, D = model.design(matrix)
    if D.shape[1] == 0:
        return
    counts = D.sum(axis=0)
    p = (D.T @ vec(symmetrize(S))) / counts
    model.set_vector(matrix, p)


def _observation_residual_moment(model, stats):
    """Sum over t of E[(y_t - Z_t x_t)(y_t - Z_t x_t)' | Y]."""
    Eyy = stats.Eyy.sum(axis=2)
    if model.time_varying:
        Z = model.get("Z")
        ZEx = np.einsum("ijt,ljt->ilt", stats.Eyx, Z).sum(axis=2)
        ZPZ = np.einsum("ijt,jlt,klt->ikt", Z, stats.P, Z).sum(axis=2)
        return Eyy - ZEx - ZEx.T + ZPZ
    Z = model.get("Z")
    Eyx = stats.Eyx.sum(axis=2)
    return Eyy - Eyx @ Z.T - Z @ Eyx.T + Z @ stats.S11 @ Z.T


def update_Z(model, stats, cond_tol=COND_TOL):
    """
    Z given R: sum_t D'(P_t kron W) D p = sum_t D' vec(W (E[y_t x_t'] - Z^f_t P_t))
    with W = R^-1.
    """
    if not model.param_names("Z"):
        return
    k, m = model.k, model.m
    W = safe_inv(model.get("R"))

    if model.time_varying:
        _, D = model.design("Z", 0)
        fixed_term = np.einsum("ijt,jlt->il", model.fixed_part("Z"), stats.P)
    else:
        f, D = model.design("Z")
        fixed_term = unvec(f, (k, m)) @ stats.S11

    H = D.T @ np.kron(stats.S11, W) @ D
    rhs = D.T @ vec(W @ (stats.Eyx.sum(axis=2) - fixed_term))
    model.set_vector("Z", _solve_constrained(model, "Z", H, rhs, cond_tol))


def update_R(model, stats):
    """R given Z: average squared smoothed residual, projected onto the structure of R."""
    if not model.param_names("R"):
        return
    S = _observation_residual_moment(model, stats) / stats.T
    _project_variance(model, "R", S)


def update_B(model, stats, cond_tol=COND_TOL):
    """
    B given Q: D'(S00 kron W) D p = D' vec(W (S10 - B^f S00)) with W = Q^-1.
    For an unconstrained B this is B = S10 S00^-1.
    """
    if not model.param_names("B"):
        return
    m = model.m
    W = safe_inv(model.get("Q"))
    f, D = model.design("B")
    H = D.T @ np.kron(stats.S00, W) @ D
    rhs = D.T @ vec(W @ (stats.S10 - unvec(f, (m, m)) @ stats.S00))
    model.set_vector("B", _solve_constrained(model, "B", H, rhs, cond_tol))


def update_Q(model, stats):
    if not model.param_names("Q"):
        return
    B = model.get("B")
    S = (stats.S11 - B @ stats.S10.T - stats.S10 @ B.T + B @ stats.S00 @ B.T) / stats.T
    _project_variance(model, "Q", S)


def update_x0(model, stats, cond_tol=COND_TOL):
    if not model.param_names("x0"):
        return
    W = safe_inv(model.get("V0"))
    f, D = model.design("x0")
    H = D.T @ W @ D
    rhs = D.T @ W @ (stats.x0 - f)
    model.set_vector("x0", _solve_constrained(model, "x0", H, rhs, cond_tol))


def update_V0(model, stats):
    if not model.param_names("V0"):
        return
    d = stats.x0 - model.get("x0")[:, 0]
    _project_variance(model, "V0", stats.V0 + np.outer(d, d))


def em_step(y, model, cond_tol=COND_TOL):
    """
    Applies one EM iteration, updating `model` in place.

    (1) E-step: the Kalman filter and smoother give the expected
        sufficient statistics under the current parameters.
    (2) M-step: conditional maximisation of the expected log-likelihood,
        Z then R, B then Q, x0 then V0, all from the same E-step.

    Note that the returned log-likelihood is that of the parameters
    *before* the update.

    Returns
    -------
    (loglik, FilterOutput, SmootherOutput)
    """
    filt, smooth = run_kf(y, model, cond_tol=cond_tol)
    stats = sufficient_stats(y, model, smooth)

    # Observation equation
    update_Z(model, stats, cond_tol)
    update_R(model, stats)

    # Transition equation
    update_B(model, stats, cond_tol)
    update_Q(model, stats)

    # Initial conditions
    update_x0(model, stats, cond_tol)
    update_V0(model, stats)

    return filt.loglik, filt, smooth


def em_converged(loglik, previous_loglik, threshold=1e-4, noise=1e-3, check_decreased=True):
    """
    Checks whether EM has converged. Convergence occurs if the slope of the
    log-likelihood function falls below 'threshold' (i.e.
    |f(t) - f(t-1)| / avg < threshold) where avg = (|f(t)| + |f(t-1)|)/2
    and f(t) is log lik at iteration t.

    This stopping criterion is from Numerical Recipes in C (pg. 423).

    Returns
    -------
    converged : bool
    decrease : bool
        True if the log-likelihood decreased by more than `noise`.
    """
    converged = False
    decrease = False

    if check_decreased and loglik - previous_loglik < -noise:
        logger.warning("Likelihood decreased from %.4f to %.4f", previous_loglik, loglik)
        decrease = True

    delta_loglik = abs(loglik - previous_loglik)
    avg_loglik = (abs(loglik) + abs(previous_loglik) + np.finfo(float).eps) / 2

    # Nothing to compare against on the first iteration
    if not np.isfinite(avg_loglik):
        return converged, decrease

    if delta_loglik / avg_loglik < threshold:
        converged = True

    return converged, decrease


def fit(y, model, options=None):
    """
    Estimates the free parameters of `model` by EM.

    Parameters
    ----------
    y : array_like
        k-by-T observations with NaN for missing values (a DataFrame is
        read with time in rows).
    model : ModelSpec
        Initial specification; it is copied, never modified.
    options : EMOptions, optional

    Returns
    -------
    EMResult

    Raises
    ------
    NumericalError
        If a filter or smoother pass fails; `iteration` and `t` tell where.
    """
    options = options or EMOptions()
    y = as_observations(y)
    model = model.copy()

    if options.init and model.uninitialized:
        model = init_cond(y, model)

    logger.info(
        "Estimating the state-space model: k=%d, m=%d, T=%d, %d free parameters",
        model.k,
        model.m,
        y.shape[1],
        len(model.params),
    )

    trace = ConvergenceTrace()
    previous_model = model
    previous_loglik = -np.inf
    status = MAXITER
    iteration = 0

    while iteration < options.max_iter:
        iteration += 1
        candidate = model.copy()
        try:
            loglik, _, _ = em_step(y, candidate, options.cond_tol)
        except NumericalError as e:
            e.iteration = iteration
            raise

        trace.append(iteration, loglik)

        converged, decrease = em_converged(
            loglik, previous_loglik, options.threshold, options.noise
        )
        if decrease:
            # The last update lowered the likelihood: keep the estimates before it
            status = DIVERGED
            model = previous_model
            break

        if options.verbose_every and iteration % options.verbose_every == 0:
            logger.info("Now running the %dth iteration of max %d", iteration, options.max_iter)
            logger.info("  Loglik: %.6f", loglik)

        if converged and iteration > options.min_iter:
            status = CONVERGED
            model = candidate
            break

        previous_model = model
        previous_loglik = loglik
        model = candidate

    if status == CONVERGED:
        logger.info("Successful: Convergence at %d iterations", iteration)
    elif status == MAXITER:
        message = f"EM stopped because maximum iterations ({options.max_iter}) reached"
        logger.warning(message)
        warnings.warn(message, ConvergenceWarning, stacklevel=2)
    else:
        message = (
            f"EM stopped at iteration {iteration}: log-likelihood decreased from "
            f"{previous_loglik:.6f} to {loglik:.6f}"
        )
        warnings.warn(message, ConvergenceWarning, stacklevel=2)

    # Final run of the Kalman filter and smoother
    try:
        filt, smooth = run_kf(y, model, cond_tol=options.cond_tol)
    except NumericalError as e:
        e.iteration = iteration
        raise

    return EMResult(
        model=model,
        filter=filt,
        smoother=smooth,
        trace=trace,
        status=status,
        iterations=iteration,
        loglik=filt.loglik,
        y=y,
    )
