import numpy as np
from scipy.interpolate import splev, splrep
from scipy.signal import lfilter


def moving_average(x, k):
    """Apply a moving average filter with a window size of 2*k+1."""
    numerator = np.ones(2 * k + 1) / (2 * k + 1)
    return lfilter(numerator, [1], x)


def _leading_trailing(rem):
    """Mask of the leading and trailing runs of True in `rem`."""
    T = rem.shape[0]
    nan_lead = np.cumsum(rem) == np.arange(1, T + 1)
    nan_end = (np.cumsum(rem[::-1]) == np.arange(1, T + 1))[::-1]
    return nan_lead | nan_end


def _fill_series(x, k, interpolate=True):
    """Interpolate inside the observed span, then fill what is left with a moving average."""
    isnanx = np.isnan(x)
    observed = np.flatnonzero(~isnanx)
    if observed.size == 0:
        x[:] = 0.0
        return x

    if interpolate:
        t1, t2 = observed[0], observed[-1]
        inside = np.arange(t1, t2 + 1)
        if observed.size > 3:
            # Cubic spline without NaN entries in beginning and end
            tck = splrep(observed, x[observed], s=0)
            x[t1 : t2 + 1] = splev(inside, tck)
        else:
            x[t1 : t2 + 1] = np.interp(inside, observed, x[observed])
        isnanx = np.isnan(x)

    x[isnanx] = np.nanmedian(x)  # Replace NaNs with the median

    # Apply filter
    x_ma = moving_average(np.concatenate(([x[0]] * k, x, [x[-1]] * k)), k)
    x_ma = x_ma[2 * k :]
    x[isnanx] = x_ma[isnanx]
    return x


def rem_nans_spline(X, method=2, k=3):
    """
    Treats NaNs in a T-by-n data panel so that it can be used where
    missing values are not accepted (initial values of EM).

    Args:
        X (ndarray): data of shape (T, n), time in rows. Not modified.
        method (int):
            - 1: Replaces all the missing values (median, then a centred
                 moving average of length 2k+1).
            - 2: Removes leading and closing rows that are mostly missing
                 (more than 80% NaN), then replaces the missing values using
                 a cubic spline inside each series' observed span and the
                 moving average outside it.
            - 3: Only removes leading and closing rows that are all NaN.
        k (int): half-width of the moving average.

    Returns:
        tuple:
            - X (ndarray): The processed data.
            - indNaN (ndarray): Boolean mask of the missing values in the
              returned rows.
    """
    X = np.array(X, dtype=float, copy=True)
    T, N = X.shape
    indNaN = np.isnan(X)

    if method == 1:
        for i in range(N):
            X[:, i] = _fill_series(X[:, i], k, interpolate=False)

    elif method == 2:
        # Marks rows with more than 80% NaN
        nanLE = _leading_trailing(np.sum(indNaN, axis=1) > N * 0.8)
        X = X[~nanLE, :]
        indNaN = np.isnan(X)
        for i in range(N):
            X[:, i] = _fill_series(X[:, i], k)

    elif method == 3:
        nanLE = _leading_trailing(np.sum(indNaN, axis=1) == N)
        X = X[~nanLE, :]
        indNaN = np.isnan(X)

    else:
        raise ValueError(f"Unknown method {method}; expected 1, 2 or 3")

    return X, indNaN
