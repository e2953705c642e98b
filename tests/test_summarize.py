import warnings

import numpy as np
import pandas as pd

from ssem.em import EMOptions, fit
from ssem.errors import ConvergenceWarning
from ssem.model_spec import Free, ModelSpec
from ssem.summarize import summarize, summarize_fit


def test_data_summary(capsys):
    frame = pd.DataFrame(
        {"industrial production": [1.0, np.nan, 3.0, 4.0], "empty": [np.nan] * 4},
        index=pd.date_range("2020-01-01", periods=4, freq="MS").strftime("%Y-%m"),
    )
    summarize(frame)
    out = capsys.readouterr().out
    assert "Table 1: Data Summary" in out
    assert "k =    2 data series" in out
    assert "industrial production" in out
    assert "2020-01-2020-04" in out


def test_estimation_summary(capsys, ar1_data):
    model = ModelSpec(
        Z=[[1.0]], R=[[Free("r", 1.0)]], B=[[Free("b", 0.5)]], Q=[[1.0]], x0=[[0.0]], V0=[[1.0]]
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        result = fit(ar1_data[:, :200], model, EMOptions(max_iter=30))
    table = summarize_fit(result)
    out = capsys.readouterr().out
    assert "Table 3: Parameter Estimates" in out
    assert "Table 4: Residual Normality" in out
    assert table["parameter"].tolist() == ["r", "b"]
