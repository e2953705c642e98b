import logging

import numpy as np
from scipy.sparse.linalg import eigsh

from ssem.linalg import safe_inv
from ssem.model_spec import VARIANCE_MATRICES
from ssem.rem_nans import rem_nans_spline

logger = logging.getLogger(__name__)

VARIANCE_FLOOR = 1e-8


def _principal_components(X, r):
    """Loadings of the first r principal components of a balanced T-by-n panel."""
    T, n = X.shape
    cov = X.T @ X / T
    if r < n:
        # eigsh only computes r < n eigenpairs
        values, vectors = eigsh(cov, k=r, which="LM")
        vectors = vectors[:, np.argsort(values)[::-1]]
    else:
        values, vectors = np.linalg.eigh(cov)
        vectors = vectors[:, ::-1]

    # Flip sign for cleaner output. Gives equivalent results without this section
    signs = np.sign(vectors.sum(axis=0))
    signs[signs == 0] = 1.0
    return vectors * signs


def _stationary_covariance(B, Q):
    """Solve V = B V B' + Q; None if B is not stable."""
    if np.max(np.abs(np.linalg.eigvals(B))) >= 1:
        return None
    m = B.shape[0]
    V = np.linalg.solve(np.eye(m * m) - np.kron(B, B), Q.ravel()).reshape(m, m)
    return 0.5 * (V + V.T)


def _state_estimates(y, model):
    """
    Rough state estimates (T-by-m) and the observation data they go with.

    With free loadings and at least as many series as states the states are
    principal components of the balanced panel; otherwise they are least
    squares projections of the data on the current Z_t. The last element
    tells whether those projections reproduce the data exactly (Z_t of
    rank k in every period), in which case the residuals say nothing
    about R.
    """
    m = model.m
    if model.param_names("Z") and not model.time_varying and m <= model.k:
        X, _ = rem_nans_spline(y.T, method=2)
        if X.shape[0] < 3:
            return X, np.empty((X.shape[0], m)), None, False
        F = X @ _principal_components(X, m)
        return X, F, None, False

    X, _ = rem_nans_spline(y.T, method=1)
    T = X.shape[0]
    Z = model.get("Z")
    Z_t = Z if Z.ndim == 3 else np.repeat(Z[:, :, None], T, axis=2)
    F = np.vstack([np.linalg.pinv(Z_t[:, :, t]) @ X[t] for t in range(T)])
    exact = bool(np.all(np.linalg.matrix_rank(np.moveaxis(Z_t, 2, 0)) >= model.k))
    return X, F, Z_t, exact


def init_cond(y, model):
    """
    Calculates initial values for parameters declared without one.

    The panel is balanced with `rem_nans_spline`, rough states are extracted
    (principal components, or projections on Z), and Z, B are estimated by
    OLS, R, Q by residual covariances, x0 by the first state and V0 by the
    stationary covariance of the state VAR. R is left alone when the
    projections on Z reproduce the data, and variance estimates that are
    numerically zero keep their defaults. Each parameter then takes the
    average of the estimates at the positions that reference it. Declared
    initial values and fixed entries are left untouched.

    Args:
        y (ndarray): k-by-T observations, NaN for missing values.
        model (ModelSpec): specification; a copy is returned.

    Returns:
        ModelSpec
    """
    model = model.copy()
    pending = set(model.uninitialized)
    if not pending:
        return model

    X, F, Z_t, exact = _state_estimates(y, model)
    if F.shape[0] < 3:
        logger.warning("Too few observations for data-driven initial values; using defaults")
        return model

    estimates = {}

    # Observation equation
    if Z_t is None:
        Z_hat = (X.T @ F) @ safe_inv(F.T @ F)
        E = X - F @ Z_hat.T
        estimates["Z"] = Z_hat
    else:
        E = X - np.einsum("ijt,tj->ti", Z_t, F)
    if not exact:
        estimates["R"] = np.atleast_2d(np.cov(E, rowvar=False))

    # Transition equation: VAR(1) on the states
    F0, F1 = F[:-1], F[1:]
    B_hat = (F1.T @ F0) @ safe_inv(F0.T @ F0)
    U = F1 - F0 @ B_hat.T
    Q_hat = np.atleast_2d(np.cov(U, rowvar=False))
    estimates["B"] = B_hat
    estimates["Q"] = Q_hat

    # Initial conditions
    estimates["x0"] = F[0].reshape(-1, 1)
    V0_hat = _stationary_covariance(B_hat, Q_hat)
    estimates["V0"] = V0_hat if V0_hat is not None else np.atleast_2d(np.cov(F, rowvar=False))

    # Variances below these floors are numerically zero and keep their defaults
    floors = {
        "R": VARIANCE_FLOOR * np.nanvar(X),
        "Q": VARIANCE_FLOOR * np.var(F),
        "V0": VARIANCE_FLOOR * np.var(F),
    }

    values = {}
    for name in pending:
        matrix = model.owner(name)
        if matrix not in estimates:
            continue
        mask = model.names(matrix) == name
        value = float(np.mean(estimates[matrix][mask]))
        if not np.isfinite(value):
            continue
        on_diagonal = matrix in VARIANCE_MATRICES and np.any(np.diag(mask))
        if on_diagonal and value <= floors[matrix]:
            continue
        values[name] = value

    logger.debug("Initial values from the data: %s", values)
    model.update(values, check_constraints=False)
    model.project_onto_constraints()
    return model
