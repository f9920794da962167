# src/WTempKrigPy/loso.py
# SPDX-License-Identifier: MIT
"""
Leave-one-station-out (LOSO) evaluation of the composed model.

For every selected station the full model (:func:`~WTempKrigPy.schema.full_schema`)
is refitted without it, and its observed days are predicted from the
kriged surfaces alone. This measures exactly what the model is for:
temperature at sites with no ground truth.

A station whose removal makes the refit impossible (e.g. too few stations
left for kriging) gets ``NaN`` scores and the error message in the summary
rather than aborting the run. Configuration errors are not caught.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from .data import prepare_observations
from .metrics import monthly_scores, regression_metrics
from .schema import ComposerConfig, FitterConfigError, ModelComposer


__all__ = ["loso_evaluate"]


def _suffixed(metrics: Dict[str, float], suffix: str) -> Dict[str, float]:
    return {f"{k}_{suffix}": v for k, v in metrics.items()}


def loso_evaluate(
    data: pd.DataFrame,
    config: Optional[ComposerConfig] = None,
    *,
    station_ids: Optional[Iterable[str]] = None,
    show_progress: bool = True,
    **overrides,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """LOSO scores of the full model.

    Parameters
    ----------
    data :
        Training table, as for :func:`~WTempKrigPy.schema.full_schema`.
    config, **overrides :
        Composer settings. ``return_raw_bundle`` is ignored.
    station_ids :
        Stations to hold out in turn (default: all).
    show_progress :
        Progress bar over held-out stations.

    Returns
    -------
    summary : DataFrame
        One row per held-out station: ``station``, ``n_rows``,
        ``n_predicted``, ``seconds``, daily scores (``MAE_d`` … ``NSE_d``),
        monthly-mean scores (``MAE_m`` … ``NSE_m``), coordinates and
        ``error`` (empty when the refit succeeded).
    predictions : DataFrame
        Held-out rows with ``temp.doy``, ``temp.anom`` and ``temp.mod``.
    """
    base = config if config is not None else ComposerConfig()
    if overrides:
        base = replace(base, **overrides)
    cfg = replace(base, return_raw_bundle=False, show_progress=False)

    obs = prepare_observations(
        data,
        id_col=cfg.id_col,
        lon_col=cfg.lon_col,
        lat_col=cfg.lat_col,
        date_col=cfg.date_col,
        day_col=cfg.day_col,
        temp_col=cfg.temp_col,
    )
    all_ids = sorted(obs[cfg.id_col].unique())
    if station_ids is None:
        targets = all_ids
    else:
        wanted = {str(s) for s in station_ids}
        targets = [s for s in all_ids if s in wanted]

    rows: List[Dict] = []
    parts: List[pd.DataFrame] = []
    iterator = tqdm(targets, desc="LOSO", unit="st") if show_progress else targets

    for sid in iterator:
        t0 = time.time()
        is_target = obs[cfg.id_col] == sid
        test_df = obs.loc[is_target]
        row: Dict = {
            "station": sid,
            "n_rows": int(len(test_df)),
            "n_predicted": 0,
            cfg.lon_col: float(test_df[cfg.lon_col].median()),
            cfg.lat_col: float(test_df[cfg.lat_col].median()),
            "error": "",
        }

        try:
            predictor = ModelComposer(cfg).fit(obs.loc[~is_target])
        except FitterConfigError:
            raise
        except ValueError as exc:
            row.update(_suffixed(regression_metrics([], []), "d"))
            row.update(_suffixed(regression_metrics([], []), "m"))
            row["error"] = str(exc)
            row["seconds"] = time.time() - t0
            rows.append(row)
            if show_progress:
                tqdm.write(f"Station {sid}: refit failed ({exc})")
            continue

        pred = predictor(test_df)
        y = pred[cfg.temp_col].to_numpy(dtype=float)
        yhat = pred["temp.mod"].to_numpy(dtype=float)
        row["n_predicted"] = int(np.isfinite(yhat).sum())
        row.update(_suffixed(regression_metrics(y, yhat), "d"))
        if cfg.date_col in pred.columns:
            monthly, _ = monthly_scores(
                pred, date_col=cfg.date_col, y_col=cfg.temp_col, yhat_col="temp.mod"
            )
        else:
            monthly = regression_metrics([], [])
        row.update(_suffixed(monthly, "m"))
        row["seconds"] = time.time() - t0
        rows.append(row)
        parts.append(pred)

    summary = pd.DataFrame(rows)
    predictions = pd.concat(parts, ignore_index=True) if parts else pd.DataFrame()
    return summary, predictions
