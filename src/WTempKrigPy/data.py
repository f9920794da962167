# src/WTempKrigPy/data.py
# SPDX-License-Identifier: MIT
"""
Tabular input helpers for WTempKrigPy.

Every fitting and prediction entry point receives plain long-format
:class:`pandas.DataFrame` tables (one row per station and day). This module
normalises them:

- :func:`ensure_datetime`: timezone-naive datetime column.
- :func:`add_day_of_year`: integer-valued day-of-year derived from the date
  when the caller did not supply one.
- :func:`prepare_observations`: both of the above plus required-column checks.
- :func:`station_table`: one row per station with its coordinates and the
  site-level fixed effects used by kriging.
- :func:`duplicate_locations`: groups of stations sharing coordinates.
"""

from __future__ import annotations

import warnings
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
from pandas.api.types import DatetimeTZDtype


__all__ = [
    "ensure_datetime",
    "add_day_of_year",
    "require_columns",
    "prepare_observations",
    "station_table",
    "duplicate_locations",
]


def require_columns(df: pd.DataFrame, cols: Iterable[str], *, what: str = "Input") -> None:
    """Raise ``ValueError`` listing every column of *cols* missing from *df*."""
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{what} is missing required columns: {missing}")


def ensure_datetime(df: pd.DataFrame, date_col: str) -> pd.DataFrame:
    """Return a copy with *date_col* coerced to timezone-naive datetimes.

    Unparseable values become ``NaT``; rows are kept so that callers decide
    whether a missing date is fatal (training) or not (prediction).
    """
    out = df.copy()
    out[date_col] = pd.to_datetime(out[date_col], errors="coerce")
    if isinstance(out[date_col].dtype, DatetimeTZDtype):
        out[date_col] = out[date_col].dt.tz_localize(None)
    return out


def add_day_of_year(
    df: pd.DataFrame,
    *,
    date_col: str = "date",
    day_col: str = "day",
) -> pd.DataFrame:
    """Fill *day_col* (1-366) from *date_col* wherever it is missing.

    An explicit day-of-year supplied by the caller always wins over the one
    derived from the date; rows where the two disagree are counted in a
    ``RuntimeWarning``. The resulting column is float so that rows with
    neither a date nor a day stay ``NaN``.
    """
    out = df.copy()
    if day_col in out.columns:
        day = pd.to_numeric(out[day_col], errors="coerce").astype(float)
    else:
        day = pd.Series(np.nan, index=out.index, dtype=float)

    if date_col in out.columns:
        out = ensure_datetime(out, date_col)
        derived = out[date_col].dt.dayofyear.astype(float)
        clash = day.notna() & derived.notna() & (day != derived)
        if clash.any():
            warnings.warn(
                f"{int(clash.sum())} rows have a '{day_col}' that differs from the "
                f"day-of-year of '{date_col}'; the explicit '{day_col}' is used.",
                RuntimeWarning,
                stacklevel=2,
            )
        day = day.fillna(derived)
    elif day.isna().all():
        raise ValueError(
            f"Neither a '{day_col}' nor a '{date_col}' column is available "
            "to place rows in the seasonal cycle."
        )

    out[day_col] = day
    return out


def prepare_observations(
    data: pd.DataFrame,
    *,
    id_col: Optional[str] = "id",
    lon_col: str = "lon",
    lat_col: str = "lat",
    date_col: str = "date",
    day_col: str = "day",
    temp_col: Optional[str] = "temperature",
    extra_cols: Sequence[str] = (),
) -> pd.DataFrame:
    """Validate and normalise an observation table.

    Parameters
    ----------
    data :
        Long-format table, one row per station and day.
    id_col, lon_col, lat_col, date_col, day_col, temp_col :
        Column names. Pass ``temp_col=None`` for prediction-only rows and
        ``id_col=None`` when rows do not belong to named stations.
    extra_cols :
        Further columns that must be present (covariates, fixed effects).

    Returns
    -------
    DataFrame
        Copy with a float day-of-year column, station ids as strings and
        coordinates coerced to float. When *temp_col* is given, rows without
        a temperature or a day-of-year are dropped.
    """
    if data is None or len(data) == 0:
        raise ValueError("Observation table is empty.")

    required = [lon_col, lat_col] + list(extra_cols)
    if id_col is not None:
        required.insert(0, id_col)
    if temp_col is not None:
        required.append(temp_col)
    require_columns(data, required, what="Observation table")

    out = add_day_of_year(data, date_col=date_col, day_col=day_col)
    if id_col is not None:
        out[id_col] = out[id_col].astype(str)
    for c in (lon_col, lat_col):
        out[c] = pd.to_numeric(out[c], errors="coerce").astype(float)

    if temp_col is not None:
        out[temp_col] = pd.to_numeric(out[temp_col], errors="coerce").astype(float)
        out = out.dropna(subset=[day_col, temp_col])
        if out.empty:
            raise ValueError("No rows with both a temperature and a day-of-year.")
    return out


def station_table(
    obs: pd.DataFrame,
    *,
    id_col: str = "id",
    lon_col: str = "lon",
    lat_col: str = "lat",
    fixed_effect_cols: Sequence[str] = (),
) -> pd.DataFrame:
    """One row per station: median coordinates and mean fixed effects.

    The result is indexed by station id and always uses the column names
    ``lon`` and ``lat`` followed by *fixed_effect_cols*, which is the layout
    expected by :class:`~WTempKrigPy.kriging.CoefficientKriger`.
    """
    fe = list(fixed_effect_cols)
    grouped = obs.groupby(id_col, sort=True)
    table = pd.DataFrame(
        {
            "lon": grouped[lon_col].median(),
            "lat": grouped[lat_col].median(),
        }
    )
    for c in fe:
        table[c] = grouped[c].mean()
    table.index = table.index.astype(str)
    table.index.name = id_col
    return table


def duplicate_locations(
    stations: pd.DataFrame,
    *,
    lon_col: str = "lon",
    lat_col: str = "lat",
) -> List[List[str]]:
    """Groups of station ids (index of *stations*) sharing identical coordinates.

    Kriging cannot separate two stations observed at the same point, so any
    group returned here has to be merged or thinned by the caller before
    fitting.
    """
    coords = stations[[lon_col, lat_col]]
    dup = coords.duplicated(keep=False)
    if not dup.any():
        return []
    groups = (
        coords[dup]
        .assign(_id=coords[dup].index.astype(str))
        .groupby([lon_col, lat_col], sort=True)["_id"]
        .apply(lambda s: sorted(s.tolist()))
    )
    return [list(g) for g in groups]
