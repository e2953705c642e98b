"""Linear-Gaussian state-space models: Kalman filtering, smoothing and EM estimation."""

from ssem.diagnostics import (
    compare_models,
    fitted,
    hessian,
    information_criteria,
    innovations,
    normality_test,
    param_table,
    qq_points,
    residuals,
    states,
)
from ssem.em import EMOptions, EMResult, em_converged, em_step, fit
from ssem.errors import ConfigurationError, ConvergenceWarning, NumericalError, SSEMError
from ssem.init_cond import init_cond
from ssem.kalman import kalman_filter, kalman_smoother, run_kf
from ssem.load_spec import load_spec, spec_from_frame
from ssem.model_spec import Fixed, Free, ModelSpec, Shared
from ssem.plots import plot_fitted, plot_states, qqplotly
from ssem.rem_nans import rem_nans_spline
from ssem.simulate import forecast, simulate
from ssem.summarize import summarize, summarize_fit

__version__ = "0.1.0"
