# src/WTempKrigPy/kriging.py
# =============================================================================
# MIT License
#
# (c) 2025 The WTempKrigPy authors.
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN
# THE SOFTWARE.
# =============================================================================
"""
Kriging of one station-level coefficient into a continuous surface.

Each per-station coefficient (seasonal or anomaly) is treated as a noisy
observation of a spatial field::

    value(s) = x(s) beta + S(s) + eps

    x(s)               = [1, lon, lat, fixed effects...]   (standardised)
    Cov(S(s), S(s'))   = partial_sill * exp(-d(s, s') / range_km)
    Var(eps)           = nugget

where ``d`` is the great-circle distance in kilometres. The covariance
hyperparameters are estimated by restricted (default) or plain maximum
likelihood, with ``beta`` and the overall variance profiled out in closed
form; the remaining two parameters, ``range_km`` and the nugget share
``tau = nugget / (partial_sill + nugget)``, are optimised numerically with
:func:`scipy.optimize.minimize` from several starting points.

Prediction is the universal-kriging (best linear unbiased) predictor. It
targets the smooth field ``x beta + S``, so it interpolates training values
exactly when the nugget is zero and shrinks them toward the fixed-effect mean
otherwise.

Runtime dependencies
--------------------
- numpy
- pandas
- scipy
"""

from __future__ import annotations

import itertools
import warnings
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.optimize import minimize

from .data import duplicate_locations


__all__ = [
    "EARTH_RADIUS_KM",
    "DegenerateDesignError",
    "KrigingSurface",
    "CoefficientKriger",
    "haversine_km",
]


EARTH_RADIUS_KM = 6371.0088

# reserved columns of a coefficient vector
_LON, _LAT, _VALUE = "lon", "lat", "value"

# objective value for hyperparameters whose covariance cannot be factorised
_PENALTY = 1e12


class DegenerateDesignError(ValueError):
    """The stations of one coefficient cannot support a kriging fit.

    Attributes
    ----------
    coefficient :
        Name of the coefficient being kriged.
    station_ids :
        Stations involved (for duplicate coordinates: every station sharing
        a location with another one).
    """

    def __init__(
        self,
        message: str,
        *,
        coefficient: Optional[str] = None,
        station_ids: Sequence[str] = (),
    ) -> None:
        self.coefficient = coefficient
        self.station_ids = tuple(str(s) for s in station_ids)
        text = f"[{coefficient}] {message}" if coefficient else message
        if self.station_ids:
            text += f" (stations: {', '.join(self.station_ids)})"
        super().__init__(text)


def haversine_km(lon1, lat1, lon2, lat2) -> np.ndarray:
    """Great-circle distance matrix (km) between two sets of points in degrees."""
    lon1 = np.radians(np.asarray(lon1, dtype=float)).reshape(-1, 1)
    lat1 = np.radians(np.asarray(lat1, dtype=float)).reshape(-1, 1)
    lon2 = np.radians(np.asarray(lon2, dtype=float)).reshape(1, -1)
    lat2 = np.radians(np.asarray(lat2, dtype=float)).reshape(1, -1)
    a = (
        np.sin((lat2 - lat1) / 2.0) ** 2
        + np.cos(lat1) * np.cos(lat2) * np.sin((lon2 - lon1) / 2.0) ** 2
    )
    return 2.0 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


# ---------------------------------------------------------------------
# Fitted surface
# ---------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class KrigingSurface:
    """Fitted kriging model of one coefficient.

    Matrices are stored on the correlation scale (``V = (1 - tau) R + tau I``);
    multiply by :attr:`total_variance` for covariances.

    Attributes
    ----------
    name :
        Coefficient name.
    range_km, partial_sill, nugget :
        Exponential covariance hyperparameters.
    fixed_effects :
        Fixed-effect columns kept in the design, in order, after the
        intercept (``"lon"``/``"lat"`` refer to the coordinates).
    x_center, x_scale :
        Standardisation applied to the fixed-effect columns.
    beta :
        Generalised least-squares weights (intercept first).
    station_ids, lon, lat, values :
        Training stations.
    design_matrix :
        Standardised training design ``X`` (intercept column included).
    weights :
        ``V^-1 (y - X beta)``.
    chol :
        Lower Cholesky factor of ``V``.
    xtvx_inv :
        ``(X' V^-1 X)^-1``.
    loglik :
        Maximised (restricted) log-likelihood, ``NaN`` for degenerate fits.
    method :
        ``"reml"`` or ``"ml"``.
    """

    name: str
    range_km: float
    partial_sill: float
    nugget: float
    fixed_effects: Tuple[str, ...]
    x_center: np.ndarray
    x_scale: np.ndarray
    beta: np.ndarray
    station_ids: Tuple[str, ...]
    lon: np.ndarray
    lat: np.ndarray
    values: np.ndarray
    design_matrix: np.ndarray
    weights: np.ndarray
    chol: np.ndarray
    xtvx_inv: np.ndarray
    loglik: float
    method: str = "reml"

    def __post_init__(self) -> None:
        for arr in (
            self.x_center,
            self.x_scale,
            self.beta,
            self.lon,
            self.lat,
            self.values,
            self.design_matrix,
            self.weights,
            self.chol,
            self.xtvx_inv,
        ):
            arr.setflags(write=False)

    @property
    def total_variance(self) -> float:
        return float(self.partial_sill + self.nugget)

    @property
    def nugget_ratio(self) -> float:
        total = self.total_variance
        return float(self.nugget / total) if total > 0 else 0.0

    @property
    def n_stations(self) -> int:
        return int(self.values.size)

    @property
    def covariate_names(self) -> Tuple[str, ...]:
        """Fixed effects that must be supplied at prediction time."""
        return tuple(c for c in self.fixed_effects if c not in (_LON, _LAT))

    def design(self, lon, lat, covariates=None) -> np.ndarray:
        """Standardised design rows for query points.

        *covariates* may be a DataFrame, a mapping of arrays or scalars, or
        ``None``; absent covariates yield ``NaN`` rows.
        """
        lon = np.atleast_1d(np.asarray(lon, dtype=float))
        lat = np.atleast_1d(np.asarray(lat, dtype=float))
        m = lon.size
        cols = [np.ones(m)]
        for j, name in enumerate(self.fixed_effects):
            if name == _LON:
                v = lon
            elif name == _LAT:
                v = lat
            elif covariates is not None and name in covariates:
                v = np.broadcast_to(np.asarray(covariates[name], dtype=float), (m,))
            else:
                v = np.full(m, np.nan)
            cols.append((v - self.x_center[j]) / self.x_scale[j])
        return np.column_stack(cols)

    def predict(
        self,
        lon,
        lat,
        covariates: Optional[Union[pd.DataFrame, Mapping[str, object]]] = None,
        *,
        drop_fixed_effects: bool = False,
        return_std: bool = False,
    ):
        """Kriging prediction at query points.

        Parameters
        ----------
        lon, lat :
            Query coordinates (degrees). Duplicated points are fine.
        covariates :
            Values of :attr:`covariate_names` at the query points.
        drop_fixed_effects :
            Return only the spatially correlated component
            ``c0' V^-1 (y - X beta)``, without ``x0 beta``.
        return_std :
            Also return the kriging standard error of the full predictor.

        Returns
        -------
        ndarray or (ndarray, ndarray)
            ``NaN`` where a coordinate or covariate is missing.
        """
        lon = np.atleast_1d(np.asarray(lon, dtype=float))
        lat = np.atleast_1d(np.asarray(lat, dtype=float))
        if lon.shape != lat.shape:
            raise ValueError("lon and lat must have the same shape.")

        X0 = self.design(lon, lat, covariates)
        ok = np.isfinite(lon) & np.isfinite(lat) & np.isfinite(X0).all(axis=1)
        pred = np.full(lon.size, np.nan)
        std = np.full(lon.size, np.nan)

        if ok.any():
            tau = self.nugget_ratio
            k = (1.0 - tau) * np.exp(
                -haversine_km(lon[ok], lat[ok], self.lon, self.lat) / self.range_km
            )
            spatial = k @ self.weights
            pred[ok] = spatial if drop_fixed_effects else X0[ok] @ self.beta + spatial

            if return_std:
                vik = cho_solve((self.chol, True), k.T)
                u = X0[ok].T - self.design_matrix.T @ vik
                var = (
                    (1.0 - tau)
                    - np.sum(k.T * vik, axis=0)
                    + np.sum(u * (self.xtvx_inv @ u), axis=0)
                )
                std[ok] = np.sqrt(np.clip(var, 0.0, None) * self.total_variance)

        if return_std:
            return pred, std
        return pred

    def summary(self) -> dict:
        """JSON-friendly hyperparameters and fixed-effect weights."""
        return {
            "name": self.name,
            "method": self.method,
            "n_stations": self.n_stations,
            "range_km": float(self.range_km),
            "partial_sill": float(self.partial_sill),
            "nugget": float(self.nugget),
            "fixed_effects": ["(Intercept)"] + list(self.fixed_effects),
            "beta": [float(b) for b in self.beta],
            "loglik": float(self.loglik),
        }


# ---------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CoefficientKriger:
    """Fits :class:`KrigingSurface` objects.

    Parameters
    ----------
    method :
        ``"reml"`` (restricted maximum likelihood) or ``"ml"``.
    range_km :
        Fix the correlation range instead of estimating it.
    nugget_ratio :
        Fix ``nugget / (partial_sill + nugget)`` in ``[0, 1]`` instead of
        estimating it. ``0`` gives an exact interpolator.
    spatial_trend :
        Include longitude and latitude as fixed effects.
    min_stations :
        Fewer stations than this is a degenerate design.
    min_residual_dof :
        Fixed effects are dropped (last first) until at least this many
        residual degrees of freedom remain. The intercept is always kept.
    jitter :
        Added to the diagonal of the correlation matrix.
    """

    method: str = "reml"
    range_km: Optional[float] = None
    nugget_ratio: Optional[float] = None
    spatial_trend: bool = True
    min_stations: int = 3
    min_residual_dof: int = 2
    jitter: float = 1e-10

    def __post_init__(self) -> None:
        if self.method not in ("reml", "ml"):
            raise ValueError("method must be 'reml' or 'ml'.")
        if self.range_km is not None and not self.range_km > 0:
            raise ValueError("range_km must be positive.")
        if self.nugget_ratio is not None and not 0.0 <= self.nugget_ratio <= 1.0:
            raise ValueError("nugget_ratio must lie in [0, 1].")

    # -----------------------------------------------------------------
    # public API
    # -----------------------------------------------------------------

    def fit(self, vector: pd.DataFrame, name: str = "value") -> KrigingSurface:
        """Fit a surface to one coefficient vector.

        Parameters
        ----------
        vector :
            Indexed by station id, with columns ``lon``, ``lat``, ``value``
            and any fixed-effect covariates.
        name :
            Coefficient name, used in errors and stored on the surface.

        Raises
        ------
        DegenerateDesignError
            Too few stations, stations sharing coordinates, or a covariance
            matrix that cannot be factorised.
        ValueError
            Missing columns or missing fixed-effect values.
        """
        missing = [c for c in (_LON, _LAT, _VALUE) if c not in vector.columns]
        if missing:
            raise ValueError(f"Coefficient vector '{name}' is missing columns {missing}.")

        df = vector.dropna(subset=[_VALUE])
        ids = [str(i) for i in df.index]
        if len(df) < self.min_stations:
            raise DegenerateDesignError(
                f"{len(df)} stations available, at least {self.min_stations} needed",
                coefficient=name,
                station_ids=ids,
            )

        dups = duplicate_locations(df, lon_col=_LON, lat_col=_LAT)
        if dups:
            raise DegenerateDesignError(
                "stations share identical coordinates; deduplicate them before fitting",
                coefficient=name,
                station_ids=[s for group in dups for s in group],
            )

        cov_cols = [c for c in df.columns if c not in (_LON, _LAT, _VALUE)]
        if cov_cols and df[cov_cols].isna().any().any():
            bad = df.index[df[cov_cols].isna().any(axis=1)]
            raise ValueError(
                f"Coefficient vector '{name}' has missing fixed effects at stations "
                f"{[str(b) for b in bad]}."
            )

        lon = df[_LON].to_numpy(dtype=float)
        lat = df[_LAT].to_numpy(dtype=float)
        y = df[_VALUE].to_numpy(dtype=float)
        fixed, X, center, scale = self._design(df, cov_cols, name)
        D = haversine_km(lon, lat, lon, lat)

        common = dict(
            name=name,
            fixed_effects=tuple(fixed),
            x_center=center,
            x_scale=scale,
            station_ids=tuple(ids),
            lon=lon,
            lat=lat,
            values=y,
            design_matrix=X,
            method=self.method,
        )

        beta_ols, *_ = np.linalg.lstsq(X, y, rcond=None)
        resid = y - X @ beta_ols
        if np.ptp(resid) <= 1e-10 * max(1.0, float(np.max(np.abs(y)))):
            return self._deterministic(X, beta_ols, D, common)

        log_range, tau = self._optimise(D, X, y, name, ids)
        try:
            nll, beta, sigma2, chol, weights, xtvx_inv = self._profile(
                D, X, y, log_range, tau
            )
        except (LinAlgError, FloatingPointError, ValueError) as exc:
            raise DegenerateDesignError(
                f"covariance matrix is singular at the estimated parameters ({exc})",
                coefficient=name,
                station_ids=ids,
            ) from exc

        n, p = X.shape
        dof = n - p if self.method == "reml" else n
        return KrigingSurface(
            range_km=float(np.exp(log_range)),
            partial_sill=float(sigma2 * (1.0 - tau)),
            nugget=float(sigma2 * tau),
            beta=beta,
            weights=weights,
            chol=chol,
            xtvx_inv=xtvx_inv,
            loglik=float(-nll - 0.5 * dof * (1.0 + np.log(2.0 * np.pi))),
            **common,
        )

    def predict(
        self,
        surface: KrigingSurface,
        lon,
        lat,
        covariates=None,
        *,
        drop_fixed_effects: bool = False,
        return_std: bool = False,
    ):
        """Same as :meth:`KrigingSurface.predict`."""
        return surface.predict(
            lon,
            lat,
            covariates,
            drop_fixed_effects=drop_fixed_effects,
            return_std=return_std,
        )

    # -----------------------------------------------------------------
    # helpers
    # -----------------------------------------------------------------

    def _design(
        self, df: pd.DataFrame, cov_cols: List[str], name: str
    ) -> Tuple[List[str], np.ndarray, np.ndarray, np.ndarray]:
        candidates = ([_LON, _LAT] if self.spatial_trend else []) + list(cov_cols)
        n = len(df)

        kept, cols, centers, scales = [], [], [], []
        for c in candidates:
            v = df[c].to_numpy(dtype=float)
            sd = float(np.std(v))
            if sd <= 1e-12 * max(1.0, float(np.max(np.abs(v)))):
                continue
            kept.append(c)
            cols.append((v - v.mean()) / sd)
            centers.append(float(v.mean()))
            scales.append(sd)

        def matrix(k: int) -> np.ndarray:
            return np.column_stack([np.ones(n)] + cols[:k])

        k = len(kept)
        while k > 0:
            X = matrix(k)
            if n - X.shape[1] >= self.min_residual_dof and np.linalg.matrix_rank(X) == X.shape[1]:
                break
            k -= 1

        dropped = [c for c in candidates if c not in kept[:k]]
        if dropped:
            warnings.warn(
                f"{name}: fixed effects {dropped} dropped "
                f"(constant, collinear or too few stations: n={n})",
                RuntimeWarning,
                stacklevel=3,
            )
        return kept[:k], matrix(k), np.asarray(centers[:k]), np.asarray(scales[:k])

    def _range_bounds(self, D: np.ndarray) -> Tuple[float, float]:
        d = D[np.triu_indices_from(D, k=1)]
        d = d[d > 0]
        return max(float(d.min()) / 10.0, 1e-3), float(d.max()) * 10.0

    def _profile(self, D, X, y, log_range, tau):
        """Profiled negative (restricted) log-likelihood and GLS pieces."""
        n, p = X.shape
        V = (1.0 - tau) * np.exp(-D / np.exp(log_range))
        V[np.diag_indices(n)] += tau + self.jitter
        factor = cho_factor(V, lower=True)

        vi_x = cho_solve(factor, X)
        xtvx = X.T @ vi_x
        xtvx_inv = np.linalg.inv(xtvx)
        beta = xtvx_inv @ (vi_x.T @ y)
        r = y - X @ beta
        weights = cho_solve(factor, r)

        dof = n - p if self.method == "reml" else n
        sigma2 = float(r @ weights) / dof
        if not np.isfinite(sigma2) or sigma2 <= 0.0:
            raise FloatingPointError("non-positive profiled variance")

        logdet_v = 2.0 * float(np.sum(np.log(np.diag(factor[0]))))
        nll = 0.5 * (dof * np.log(sigma2) + logdet_v)
        if self.method == "reml":
            sign, logdet_x = np.linalg.slogdet(xtvx)
            if sign <= 0:
                raise FloatingPointError("X' V^-1 X is not positive definite")
            nll += 0.5 * logdet_x

        chol = np.tril(factor[0])
        return float(nll), beta, sigma2, chol, weights, xtvx_inv

    def _optimise(self, D, X, y, name: str, ids: Sequence[str]) -> Tuple[float, float]:
        lo, hi = self._range_bounds(D)
        fixed_lr = None if self.range_km is None else float(np.log(self.range_km))
        fixed_tau = self.nugget_ratio

        if fixed_lr is not None and fixed_tau is not None:
            return fixed_lr, float(fixed_tau)

        def unpack(theta):
            it = iter(theta)
            lr = fixed_lr if fixed_lr is not None else next(it)
            tau = fixed_tau if fixed_tau is not None else next(it)
            return float(lr), float(tau)

        def objective(theta):
            try:
                return self._profile(D, X, y, *unpack(theta))[0]
            except (LinAlgError, FloatingPointError, ValueError):
                return _PENALTY

        d_med = float(np.median(D[np.triu_indices_from(D, k=1)]))
        grids, bounds = [], []
        if fixed_lr is None:
            grids.append([np.log(np.clip(d_med * f, lo, hi)) for f in (0.2, 1.0, 3.0)])
            bounds.append((np.log(lo), np.log(hi)))
        if fixed_tau is None:
            grids.append([0.1, 0.5])
            bounds.append((0.0, 1.0))

        best = None
        for x0 in itertools.product(*grids):
            with np.errstate(all="ignore"):
                res = minimize(objective, np.asarray(x0), method="L-BFGS-B", bounds=bounds)
            if np.isfinite(res.fun) and res.fun < _PENALTY and (best is None or res.fun < best.fun):
                best = res

        if best is None:
            raise DegenerateDesignError(
                "covariance matrix is singular for every candidate range/nugget",
                coefficient=name,
                station_ids=ids,
            )
        if not best.success:
            warnings.warn(
                f"{name}: likelihood optimisation did not converge ({best.message})",
                RuntimeWarning,
                stacklevel=3,
            )
        return unpack(best.x)

    def _deterministic(self, X, beta, D, common) -> KrigingSurface:
        # the fixed effects explain the values exactly: no spatial variance left
        n = X.shape[0]
        if self.range_km is not None:
            range_km = float(self.range_km)
        else:
            range_km = float(np.median(D[np.triu_indices_from(D, k=1)]))
        return KrigingSurface(
            range_km=range_km,
            partial_sill=0.0,
            nugget=0.0,
            beta=np.asarray(beta, dtype=float),
            weights=np.zeros(n),
            chol=np.eye(n),
            xtvx_inv=np.linalg.inv(X.T @ X),
            loglik=float("nan"),
            **common,
        )
