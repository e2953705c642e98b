import numpy as np

from ssem.errors import NumericalError


# Default ceiling for the condition number of matrices that must be inverted
COND_TOL = 1e12


def safe_inv(matrix):
    """
    Inverse of a matrix, falling back to the pseudo-inverse when the matrix
    is singular or the inversion produces NaNs.

    Used for weighting matrices in the M-step, where a singular noise
    covariance (e.g. deterministic states) is legitimate.
    """
    try:
        inv_matrix = np.linalg.inv(matrix)
        if np.isnan(inv_matrix).any():
            raise np.linalg.LinAlgError("Matrix inversion resulted in NaNs.")
        return inv_matrix
    except np.linalg.LinAlgError:
        return np.linalg.pinv(matrix)


def checked_inv(matrix, where=None, t=None, tol=COND_TOL):
    """
    Inverse of a matrix that is required to be invertible.

    Raises
    ------
    NumericalError
        If the condition number of `matrix` exceeds `tol` or the inverse is
        not finite.
    """
    matrix = np.atleast_2d(matrix)
    if not np.all(np.isfinite(matrix)):
        raise NumericalError("Matrix contains non-finite values", where=where, t=t)

    cond = np.linalg.cond(matrix)
    if not np.isfinite(cond) or cond > tol:
        raise NumericalError(
            "Matrix is singular or ill-conditioned", where=where, t=t, condition=cond
        )

    inv_matrix = np.linalg.inv(matrix)
    if not np.all(np.isfinite(inv_matrix)):
        raise NumericalError(
            "Matrix inversion resulted in non-finite values",
            where=where,
            t=t,
            condition=cond,
        )
    return inv_matrix


def symmetrize(matrix):
    # Trick to make symmetric
    return 0.5 * (matrix + matrix.T)


def is_psd(matrix, eps=1e-10):
    """True if all eigenvalues of the symmetric part are >= -eps."""
    eigenvalues = np.linalg.eigvalsh(symmetrize(np.atleast_2d(matrix)))
    return bool(np.all(eigenvalues >= -eps))


def logdet(matrix, where=None, t=None):
    """Log-determinant of a positive definite matrix."""
    try:
        L = np.linalg.cholesky(matrix)
        return 2.0 * np.sum(np.log(np.diag(L)))
    except np.linalg.LinAlgError:
        sign, value = np.linalg.slogdet(matrix)
        if sign <= 0:
            raise NumericalError("Matrix is not positive definite", where=where, t=t)
        return value


def vec(matrix):
    """Stack the columns of a matrix into a vector (column-major)."""
    return np.asarray(matrix).reshape(-1, order="F")


def unvec(vector, shape):
    return np.asarray(vector).reshape(shape, order="F")
