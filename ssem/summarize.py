import numpy as np
import pandas as pd

from ssem.diagnostics import information_criteria, normality_test, param_table, residuals
from ssem.kalman import as_observations


def summarize(y, time=None, names=None):
    """
    Summarize and display the detail table for data entering the model.

    Args:
        y: k-by-T observations (NaN for missing), or a DataFrame with time
           in rows.
        time: optional labels of the T periods.
        names: optional series names.
    """
    if isinstance(y, pd.DataFrame):
        names = names if names is not None else [str(col) for col in y.columns]
        time = time if time is not None else y.index
    y = as_observations(y)
    k, T = y.shape
    names = names if names is not None else [f"Y{i + 1}" for i in range(k)]
    time = pd.Index(time) if time is not None else pd.RangeIndex(1, T + 1)

    print('\n')
    print('Table 1: Data Summary \n')
    print(f'k = {k:4d} data series')
    print(f'T = {T:4d} observations from {time[0]} to {time[-1]}')

    print(f'{"Data Series":30s} | {"Observations":17s} {"Mean":>10s} {"Std. Dev.":>10s} {"Min":>10s} {"Max":>10s}')
    print('-' * 95)

    for i in range(k):
        # time indexes for which there are observed values for series i
        t_obs = ~np.isnan(y[i])

        data_series = names[i]
        if len(data_series) > 30:
            data_series = f'{data_series[:27]}...'

        num_obs = int(np.sum(t_obs))
        if num_obs == 0:
            print(f'{data_series:30s} | {num_obs:17d} {"":>10s} {"":>10s} {"":>10s} {"":>10s}')
            continue

        observed = np.flatnonzero(t_obs)
        date_range = f'{time[observed[0]]}-{time[observed[-1]]}'
        series = y[i, t_obs]
        print(
            f'{data_series:30s} | {num_obs:17d} {np.mean(series):10.3f} {np.std(series):10.3f} '
            f'{np.min(series):10.3f} {np.max(series):10.3f}'
        )
        print(f'{"":30s} | {date_range:17s}')

    print('\n')


def summarize_fit(result, se=True):
    """
    Display the estimation report of an EM run: convergence, information
    criteria, parameter estimates and residual normality tests.

    Returns:
        DataFrame: the parameter table that was printed.
    """
    criteria = information_criteria(result)

    print('\n')
    print('Table 2: Estimation Summary \n')
    print(f'Status: {result.status} after {result.iterations} iterations')
    print(f'Log-likelihood: {criteria["loglik"]:.4f}')
    print(f'Estimated parameters: {criteria["n_params"]}, observations: {criteria["n_obs"]}')
    print(f'AIC: {criteria["AIC"]:.4f}  AICc: {criteria["AICc"]:.4f}  BIC: {criteria["BIC"]:.4f}')

    table = param_table(result, se=se)
    print('\n')
    print('Table 3: Parameter Estimates \n')
    with pd.option_context('display.float_format', '{:.4f}'.format):
        print(table.to_string(index=False))

    print('\n')
    print('Table 4: Residual Normality (Shapiro-Wilk) \n')
    print(normality_test(residuals(result)).to_string(index=False))
    print('\n')
    return table
