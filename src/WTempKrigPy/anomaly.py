# src/WTempKrigPy/anomaly.py
# SPDX-License-Identifier: MIT
"""
Per-station regression of temperature anomalies on daily covariates.

Once the seasonal climatology is removed, what is left of the water
temperature is explained by a linear model on remote-sensing covariates::

    residual ~ InterceptMax + LST * lst + Humidity * humidity
               + LSTMax * lst_max + HumidityMax * humidity_max

The coefficient names and the columns they multiply are configurable through
:class:`LinearAnomalyFitter`; only rows where the residual and every covariate
are observed on the same day take part in the fit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression

from .seasonal import StationFitError


__all__ = [
    "DEFAULT_COVARIATES",
    "AnomalyFitter",
    "LinearAnomalyFitter",
]


# coefficient name -> covariate column
DEFAULT_COVARIATES: Tuple[Tuple[str, str], ...] = (
    ("LST", "lst"),
    ("Humidity", "humidity"),
    ("LSTMax", "lst_max"),
    ("HumidityMax", "humidity_max"),
)


class AnomalyFitter(Protocol):
    """Interface of a per-station anomaly model."""

    @property
    def coefficient_names(self) -> Tuple[str, ...]:
        ...

    @property
    def required_columns(self) -> Tuple[str, ...]:
        ...

    def fit(self, residual: Iterable[float], covariates: pd.DataFrame) -> Dict[str, float]:
        ...

    def evaluate(self, coefs: Mapping[str, object], covariates: pd.DataFrame) -> np.ndarray:
        ...


@dataclass(frozen=True)
class LinearAnomalyFitter:
    """Ordinary least squares of the seasonal residual on daily covariates.

    Parameters
    ----------
    covariates :
        Pairs ``(coefficient name, column)`` or an equivalent mapping.
        Defaults to :data:`DEFAULT_COVARIATES`.
    intercept_name :
        Name given to the regression intercept.
    min_rows :
        Minimum number of days with the residual and all covariates present.
        Defaults to the number of regression terms plus two.
    """

    covariates: Union[Tuple[Tuple[str, str], ...], Mapping[str, str]] = DEFAULT_COVARIATES
    intercept_name: str = "InterceptMax"
    min_rows: Optional[int] = None

    def __post_init__(self) -> None:
        pairs = tuple(
            (str(k), str(v))
            for k, v in (
                self.covariates.items()
                if isinstance(self.covariates, Mapping)
                else self.covariates
            )
        )
        if not pairs:
            raise ValueError("At least one anomaly covariate is required.")
        names = [self.intercept_name] + [k for k, _ in pairs]
        if len(set(names)) != len(names):
            raise ValueError(f"Anomaly coefficient names must be unique: {names}")
        object.__setattr__(self, "covariates", pairs)

    @property
    def coefficient_names(self) -> Tuple[str, ...]:
        return (self.intercept_name,) + tuple(k for k, _ in self.covariates)

    @property
    def required_columns(self) -> Tuple[str, ...]:
        return tuple(v for _, v in self.covariates)

    def fit(self, residual: Iterable[float], covariates: pd.DataFrame) -> Dict[str, float]:
        """Fit the anomaly model for one station.

        Parameters
        ----------
        residual :
            Observed minus seasonal temperature, aligned with *covariates*.
        covariates :
            Table holding at least :attr:`required_columns`.

        Raises
        ------
        StationFitError
            Missing covariate columns, too few complete days, or collinear
            covariates.
        """
        cols = list(self.required_columns)
        missing = [c for c in cols if c not in covariates.columns]
        if missing:
            raise StationFitError(f"missing covariate columns {missing}")

        r = np.asarray(residual, dtype=float).ravel()
        X = covariates[cols].apply(pd.to_numeric, errors="coerce").to_numpy(dtype=float)
        if r.shape[0] != X.shape[0]:
            raise ValueError(
                f"residual ({r.shape[0]} rows) and covariates ({X.shape[0]} rows) differ in length."
            )

        ok = np.isfinite(r) & np.isfinite(X).all(axis=1)
        n_terms = len(cols) + 1
        need = self.min_rows if self.min_rows is not None else n_terms + 2
        n_ok = int(ok.sum())
        if n_ok < need:
            raise StationFitError(
                f"only {n_ok} days with temperature and all covariates (need >= {need})"
            )

        r, X = r[ok], X[ok]
        rank = np.linalg.matrix_rank(np.column_stack([np.ones(n_ok), X]))
        if rank < n_terms:
            raise StationFitError(
                f"covariate design is rank deficient (rank {rank} < {n_terms})"
            )

        reg = LinearRegression().fit(X, r)
        out = {self.intercept_name: float(reg.intercept_)}
        for (name, _), beta in zip(self.covariates, reg.coef_):
            out[name] = float(beta)
        return out

    def evaluate(self, coefs: Mapping[str, object], covariates: pd.DataFrame) -> np.ndarray:
        """Anomaly for each row of *covariates*.

        A row lacking any required covariate (missing value or absent column)
        evaluates to ``NaN``.
        """
        n = len(covariates)
        total = np.broadcast_to(
            np.asarray(coefs[self.intercept_name], dtype=float), (n,)
        ).copy()
        for name, col in self.covariates:
            if col in covariates.columns:
                x = pd.to_numeric(covariates[col], errors="coerce").to_numpy(dtype=float)
            else:
                x = np.full(n, np.nan)
            total = total + np.asarray(coefs[name], dtype=float) * x
        return total

    def describe(self) -> List[str]:
        """Human-readable terms, e.g. ``['InterceptMax', 'LST*lst', ...]``."""
        return [self.intercept_name] + [f"{k}*{v}" for k, v in self.covariates]
