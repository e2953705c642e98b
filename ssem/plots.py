import numpy as np
import pandas as pd
import plotly.graph_objects as go
from scipy.stats import norm

from ssem.diagnostics import fitted, qq_points, states


def _style_axes(fig, tickfont_size=14):
    fig.update_xaxes(
        mirror=True,
        ticks="outside",
        showline=True,
        linecolor="black",
        gridcolor="lightgrey",
        tickfont_size=tickfont_size,
    )
    fig.update_yaxes(
        mirror=True,
        ticks="outside",
        showline=True,
        linecolor="black",
        gridcolor="lightgrey",
        tickfont_size=tickfont_size,
    )


def plot_states(result, state=1, time=None, level=0.95, filtered=False, title="", show=False):
    """
    Plot one estimated state with a confidence band.

    `state` is 1-based. The band is estimate +/- z * se with z the normal
    quantile for `level`.
    """
    df = states(result, filtered=filtered, time=time)
    df = df[df["state"] == f"X{state}"]
    if df.empty:
        raise ValueError(f"Model has no state {state}")
    z = norm.ppf(0.5 + level / 2)
    upper = df["estimate"] + z * df["se"]
    lower = df["estimate"] - z * df["se"]

    body = [
        go.Scatter(
            name=f"Estimate + {z:.2f} Standard Deviations",
            x=df["t"],
            y=upper,
            mode="lines",
            marker=dict(color="#BDC1D6"),
            line=dict(width=0),
            showlegend=False,
        ),
        go.Scatter(
            name=f"Estimate - {z:.2f} Standard Deviations",
            x=df["t"],
            y=lower,
            marker=dict(color="#BDC1D6"),
            line=dict(width=0),
            mode="lines",
            fillcolor="#BDC1D6",
            fill="tonexty",
            showlegend=False,
        ),
        go.Scatter(
            name="Filtered state" if filtered else "Smoothed state",
            x=df["t"],
            y=df["estimate"],
            mode="lines",
            line=dict(color="#841E62", width=1.5),
        ),
    ]

    fig = go.Figure(body)
    fig.update_layout(
        autosize=False,
        width=900,
        height=650,
        plot_bgcolor="white",
        yaxis_title=f"X{state}",
        title=title,
        hovermode="x",
    )
    _style_axes(fig)

    if show:
        fig.show()
    return fig


def plot_fitted(result, series=1, time=None, title="", mode="markers", show=False):
    """Fitted values Z_t x_t|T against the observations of one (1-based) series."""
    y_fit = fitted(result)[series - 1]
    y_actual = result.y[series - 1]
    dt = pd.Index(time) if time is not None else np.arange(1, len(y_actual) + 1)

    body = [
        go.Scatter(
            name="Fitted",
            x=dt,
            y=y_fit,
            mode="lines",
            line=dict(color="#841E62", width=1.5),
            opacity=0.85,
        ),
        go.Scatter(
            name="Actual",
            x=dt,
            y=y_actual,
            mode=mode,
            marker={"size": 6, "symbol": "diamond"},
            line=dict(color="#000000", width=1.5),
            opacity=0.85,
        ),
    ]

    fig = go.Figure(body)
    fig.update_layout(
        autosize=False,
        width=900,
        height=650,
        plot_bgcolor="white",
        yaxis_title=f"Y{series}",
        title=title,
        hovermode="x",
        legend=dict(bgcolor="rgba(0, 0, 0, 0)", orientation="h"),
    )
    _style_axes(fig)

    if show:
        fig.show()
    return fig


def qqplotly(resid, show=False):
    """Normal quantile-quantile plot of a residual series."""
    qq = qq_points(resid)
    fig = go.Figure()

    fig.add_trace({
        'type': 'scatter',
        'x': qq["theoretical"],
        'y': qq["sample"],
        'mode': 'markers',
        'marker': {
            'color': 'black',
            'size': 10
        }
    })

    fig.add_trace({
        'type': 'scatter',
        'x': qq["theoretical"],
        'y': qq["line"],
        'mode': 'lines',
        'line': {
            'color': 'lightslategray'
        }
    })

    fig['layout'].update({
        'title': 'Quantile-Quantile Plot',
        'xaxis': {
            'title': 'Theoretical Quantities',
            'gridcolor': 'lightgrey'
        },
        'yaxis': {
            'title': 'Residual Quantities',
            'gridcolor': 'lightgray'
        },
        'showlegend': False,
        'width': 800,
        'height': 700,
        'plot_bgcolor': 'white',
        'font': {
            'size': 20,
            'color': 'black'
        }
    })

    if show:
        fig.show()
    return fig
