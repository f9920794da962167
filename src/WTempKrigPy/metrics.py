# src/WTempKrigPy/metrics.py
# SPDX-License-Identifier: MIT
"""
Skill scores for modelled water temperature.

- :func:`kge` — Kling–Gupta efficiency.
- :func:`nse` — Nash–Sutcliffe efficiency.
- :func:`regression_metrics` — MAE, RMSE, R², KGE and NSE in one dict.
- :func:`monthly_scores` — the same metrics on monthly mean temperatures.

R² is the squared Pearson correlation between observed and modelled values,
not ``sklearn.metrics.r2_score``; NSE already plays that role. Undefined
scores (too few points, constant observations) are ``numpy.nan``.
"""

from __future__ import annotations

from typing import Dict, Iterable, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error


__all__ = [
    "kge",
    "nse",
    "regression_metrics",
    "monthly_scores",
]


_METRIC_KEYS = ("MAE", "RMSE", "R2", "KGE", "NSE")


def _nan_metrics() -> Dict[str, float]:
    return {k: np.nan for k in _METRIC_KEYS}


def _as_arrays(y_true: Iterable[float], y_pred: Iterable[float]) -> Tuple[np.ndarray, np.ndarray]:
    """Float arrays of identical shape, else ``ValueError``."""
    yt = np.asarray(y_true, dtype=float)
    yp = np.asarray(y_pred, dtype=float)
    if yt.shape != yp.shape:
        raise ValueError(f"Shapes of y_true {yt.shape} and y_pred {yp.shape} do not match.")
    return yt, yp


def kge(y_true: Iterable[float], y_pred: Iterable[float]) -> float:
    """Kling–Gupta efficiency ``1 - sqrt((r-1)^2 + (alpha-1)^2 + (beta-1)^2)``.

    ``alpha`` is the ratio of standard deviations and ``beta`` the ratio of
    means (modelled over observed). Note that ``beta`` is unstable for
    temperatures in °C averaging near zero; use MAE/RMSE for ice-covered
    periods.

    Returns ``nan`` for fewer than two points, constant series, a zero
    observed mean or an undefined correlation.
    """
    yt, yp = _as_arrays(y_true, y_pred)
    if yt.size < 2:
        return np.nan

    mu_t, mu_p = float(np.mean(yt)), float(np.mean(yp))
    sd_t, sd_p = float(np.std(yt, ddof=1)), float(np.std(yp, ddof=1))
    if sd_t == 0.0 or sd_p == 0.0 or mu_t == 0.0:
        return np.nan

    r = float(np.corrcoef(yt, yp)[0, 1])
    if not np.isfinite(r):
        return np.nan
    return float(1.0 - np.sqrt((r - 1.0) ** 2 + (sd_p / sd_t - 1.0) ** 2 + (mu_p / mu_t - 1.0) ** 2))


def nse(y_true: Iterable[float], y_pred: Iterable[float]) -> float:
    """Nash–Sutcliffe efficiency, ``1 - SSE / SS_obs``; ``nan`` if undefined."""
    yt, yp = _as_arrays(y_true, y_pred)
    if yt.size < 2:
        return np.nan
    denom = float(np.sum((yt - np.mean(yt)) ** 2))
    if denom == 0.0:
        return np.nan
    return float(1.0 - np.sum((yt - yp) ** 2) / denom)


def regression_metrics(y_true: Iterable[float], y_pred: Iterable[float]) -> Dict[str, float]:
    """MAE, RMSE, R² (squared Pearson r), KGE and NSE.

    Pairs where either value is missing are ignored. An empty selection
    yields all-``nan`` scores.
    """
    yt, yp = _as_arrays(y_true, y_pred)
    ok = np.isfinite(yt) & np.isfinite(yp)
    yt, yp = yt[ok], yp[ok]
    if yt.size == 0:
        return _nan_metrics()

    out = {
        "MAE": float(mean_absolute_error(yt, yp)),
        "RMSE": float(np.sqrt(mean_squared_error(yt, yp))),
        "R2": np.nan,
        "KGE": kge(yt, yp),
        "NSE": nse(yt, yp),
    }
    if yt.size >= 2 and np.std(yt) > 0 and np.std(yp) > 0:
        r = float(np.corrcoef(yt, yp)[0, 1])
        out["R2"] = r ** 2 if np.isfinite(r) else np.nan
    return out


def monthly_scores(
    df: pd.DataFrame,
    *,
    date_col: str = "date",
    y_col: str = "temperature",
    yhat_col: str = "temp.mod",
) -> Tuple[Dict[str, float], pd.DataFrame]:
    """Metrics on monthly mean temperatures.

    Returns
    -------
    metrics : dict
        :func:`regression_metrics` of the monthly means.
    monthly : DataFrame
        Monthly means of *y_col* and *yhat_col* (months with both present).
    """
    sub = df[[date_col, y_col, yhat_col]].copy()
    sub[date_col] = pd.to_datetime(sub[date_col], errors="coerce")
    sub = sub.dropna()
    if sub.empty:
        return _nan_metrics(), sub

    monthly = sub.set_index(date_col).sort_index().resample("MS").mean().dropna()
    if monthly.empty:
        return _nan_metrics(), monthly
    return regression_metrics(monthly[y_col].to_numpy(), monthly[yhat_col].to_numpy()), monthly
