"""
Read-only views of a fitted model: states, fitted values, residuals,
parameter standard errors, information criteria and residual checks.
"""

import logging

import numpy as np
import pandas as pd
from scipy.linalg import null_space
from scipy.stats import norm, shapiro
from statsmodels.graphics.gofplots import ProbPlot

from ssem.errors import NumericalError
from ssem.kalman import kalman_filter
from ssem.linalg import COND_TOL, checked_inv
from ssem.model_spec import MEAN_MATRICES

logger = logging.getLogger(__name__)


def _time_index(T, time):
    if time is None:
        return np.arange(1, T + 1)
    time = pd.Index(time)
    if len(time) != T:
        raise ValueError(f"time has length {len(time)}, expected {T}")
    return time


def states(result, filtered=False, time=None):
    """
    Smoothed (or filtered) state estimates as a tidy DataFrame.

    Columns: state, t, estimate, se, where se = sqrt(diag V_t|T).
    `time` replaces the default 1..T labels.
    """
    if filtered:
        x, V = result.filter.x_filt[:, 1:], result.filter.V_filt[:, :, 1:]
    else:
        x, V = result.smoother.x_smooth[:, 1:], result.smoother.V_smooth[:, :, 1:]
    m, T = x.shape
    t = _time_index(T, time)

    variances = np.clip(np.einsum("iit->it", V), 0.0, None)
    frames = [
        pd.DataFrame(
            {"state": f"X{i + 1}", "t": t, "estimate": x[i], "se": np.sqrt(variances[i])}
        )
        for i in range(m)
    ]
    return pd.concat(frames, ignore_index=True)


def fitted(result):
    """Fitted values Z_t x_t|T as a k-by-T array."""
    model = result.model
    xs = result.smoother.x_smooth[:, 1:]
    if model.time_varying:
        return np.einsum("ijt,jt->it", model.get("Z"), xs)
    return model.get("Z") @ xs


def residuals(result):
    """Smoothed residuals y - Z_t x_t|T, NaN where y is missing."""
    return result.y - fitted(result)


def innovations(result):
    """One-step innovations standardized by the square root of diag S_t."""
    innov = result.filter.innov
    variances = np.einsum("iit->it", result.filter.innov_cov)
    with np.errstate(invalid="ignore", divide="ignore"):
        return innov / np.sqrt(variances)


def _constraint_basis(model):
    """Basis N of the directions that keep all linear constraints satisfied."""
    names = model.param_names()
    rows = []
    for matrix in MEAN_MATRICES:
        constraints = model.constraints(matrix)
        if constraints is None:
            continue
        A, _ = constraints
        cols = [names.index(name) for name in model.param_names(matrix)]
        block = np.zeros((A.shape[0], len(names)))
        block[:, cols] = A
        rows.append(block)
    if not rows:
        return np.eye(len(names))
    return null_space(np.vstack(rows))


def _loglik_at(result, names, p, cond_tol):
    model = result.model.copy()
    model.update(dict(zip(names, p)))
    return kalman_filter(result.y, model, cond_tol=cond_tol).loglik


def hessian(result, step=1e-4, cond_tol=COND_TOL):
    """
    Central-difference Hessian of the log-likelihood in the constraint null space.

    Returns
    -------
    (H, N) with H the Hessian over theta and N the basis, p = p_hat + N theta.
    """
    names = result.model.param_names()
    p_hat = result.model.param_vector()
    N = _constraint_basis(result.model)
    h = step * np.maximum(np.abs(N).T @ np.abs(p_hat), 1e-2)

    def f(theta):
        return _loglik_at(result, names, p_hat + N @ theta, cond_tol)

    n = N.shape[1]
    H = np.zeros((n, n))
    for i in range(n):
        for j in range(i, n):
            ei = np.zeros(n)
            ej = np.zeros(n)
            ei[i] = h[i]
            ej[j] = h[j]
            H[i, j] = (f(ei + ej) - f(ei - ej) - f(-ei + ej) + f(-ei - ej)) / (4 * h[i] * h[j])
            H[j, i] = H[i, j]
    return H, N


def param_table(result, se=True, alpha=0.05, step=1e-4):
    """
    Parameter estimates with standard errors from the observed information
    matrix and (1 - alpha) Wald confidence intervals.

    Standard errors are NaN when the Hessian cannot be evaluated or is not
    negative definite; a warning is logged in that case.
    """
    model = result.model
    names = model.param_names()
    table = pd.DataFrame(
        {
            "parameter": names,
            "matrix": [model.owner(name) for name in names],
            "estimate": model.param_vector(),
        }
    )
    if not se or not names:
        return table

    std_err = np.full(len(names), np.nan)
    try:
        H, N = hessian(result, step=step)
        cov = N @ checked_inv(-H, where="observed information") @ N.T
        diag = np.diag(cov)
        if np.any(diag <= 0):
            logger.warning("Observed information is not positive definite; some standard errors are NaN")
        std_err = np.sqrt(np.where(diag > 0, diag, np.nan))
    except NumericalError as e:
        logger.warning("Standard errors not available: %s", e)

    z = norm.ppf(1 - alpha / 2)
    table["se"] = std_err
    table["lower"] = table["estimate"] - z * std_err
    table["upper"] = table["estimate"] + z * std_err
    return table


def information_criteria(result):
    """Log-likelihood, number of estimated parameters, AIC, AICc and BIC."""
    loglik = result.loglik
    K = result.model.n_params
    n = int(np.sum(~np.isnan(result.y)))

    aic = -2 * loglik + 2 * K
    if n - K - 1 > 0:
        aicc = aic + 2 * K * (K + 1) / (n - K - 1)
    else:
        aicc = np.inf
    bic = -2 * loglik + K * np.log(n)
    return {"loglik": loglik, "n_params": K, "n_obs": n, "AIC": aic, "AICc": aicc, "BIC": bic}


def compare_models(results, names=None):
    """Rank fitted models by AICc (lowest first)."""
    if names is None:
        names = [f"model {i + 1}" for i in range(len(results))]
    table = pd.DataFrame(
        [information_criteria(result) for result in results], index=pd.Index(names, name="model")
    )
    table = table.sort_values("AICc")
    table["delta_AICc"] = table["AICc"] - table["AICc"].iloc[0]
    return table


def normality_test(resid, alpha=0.05):
    """
    Shapiro-Wilk test on each series (row) of `resid`, ignoring NaN.

    Returns a DataFrame with the sample length, test statistic, p-value
    and a comment per series.
    """
    resid = np.atleast_2d(np.asarray(resid, dtype=float))
    records = []
    for i, series in enumerate(resid):
        sample = series[~np.isnan(series)]
        if sample.size < 3:
            records.append((i + 1, sample.size, np.nan, np.nan, "Too few observations"))
            continue
        stat, p = shapiro(sample)
        if p > alpha:
            msg = "Sample looks Gaussian (fail to reject H0)"
        else:
            msg = "Sample does not look Gaussian (reject H0)"
        records.append((i + 1, sample.size, stat, p, msg))
    return pd.DataFrame(records, columns=["series", "n", "statistic", "p_value", "comment"])


def qq_points(resid):
    """
    Normal QQ plot coordinates of a residual series, ignoring NaN.

    Returns a DataFrame with the theoretical and sample quantiles and the
    standardized reference line (mean + std * theoretical).
    """
    sample = np.asarray(resid, dtype=float).ravel()
    sample = sample[~np.isnan(sample)]
    pp = ProbPlot(sample)
    theoretical = pp.theoretical_quantiles
    return pd.DataFrame(
        {
            "theoretical": theoretical,
            "sample": pp.sample_quantiles,
            "line": sample.mean() + sample.std() * theoretical,
        }
    )
