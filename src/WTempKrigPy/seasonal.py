# src/WTempKrigPy/seasonal.py
# SPDX-License-Identifier: MIT
"""
Day-of-year climatology of water temperature at a single station.

The seasonal cycle is described by five named coefficients::

    temp.doy(day) = Intercept
                    - Amplitude    * cos(psi)
                    + AutumnWinter * cos(2 psi)
                    + SpringSummer * sin(2 psi)

    theta(day) = 2 pi day / 365.25
    psi        = theta(day) - theta(WinterDay)

``Amplitude`` (>= 0) and ``WinterDay`` describe the annual harmonic, whose
minimum falls on ``WinterDay``. The two second-harmonic terms, expressed in
the frame anchored at ``WinterDay``, let the warming and cooling limbs of the
cycle differ in shape. With both set to zero the curve is a plain cosine.

Fitting is closed-form: ordinary least squares on the linear harmonic basis
``[1, cos theta, sin theta, cos 2 theta, sin 2 theta]`` followed by a change
of parameters, so the named form reproduces the least-squares fit exactly.

Any other seasonal model can be plugged into the composer as long as it
follows :class:`SeasonalFitter`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Dict, Iterable, Mapping, Protocol, Tuple

import numpy as np
from sklearn.linear_model import LinearRegression


__all__ = [
    "DAYS_PER_YEAR",
    "SEASONAL_COEFFICIENTS",
    "StationFitError",
    "SeasonalFitter",
    "HarmonicSeasonalFitter",
    "day_angle",
    "recenter_circular",
]


DAYS_PER_YEAR = 365.25

SEASONAL_COEFFICIENTS: Tuple[str, ...] = (
    "Intercept",
    "Amplitude",
    "AutumnWinter",
    "SpringSummer",
    "WinterDay",
)


class StationFitError(ValueError):
    """A single station cannot support the requested fit.

    Raised by the per-station fitters (too few days, rank-deficient design,
    missing covariates). The composer records it and carries on with the
    remaining stations.
    """


class SeasonalFitter(Protocol):
    """Interface of a per-station seasonal model."""

    coefficient_names: Tuple[str, ...]

    def fit(self, day: Iterable[float], temperature: Iterable[float]) -> Dict[str, float]:
        ...

    def evaluate(self, coefs: Mapping[str, object], day: Iterable[float]) -> np.ndarray:
        ...


def day_angle(day) -> np.ndarray:
    """Angular position ``2 pi day / 365.25`` of a day-of-year."""
    return 2.0 * np.pi * np.asarray(day, dtype=float) / DAYS_PER_YEAR


def recenter_circular(values, period: float = DAYS_PER_YEAR) -> np.ndarray:
    """Wrap periodic values into one window centred on their circular mean.

    Used before kriging a phase coefficient across stations: values that are
    close on the circle (e.g. 222.6 and -132.6 days) come out numerically
    close (222.6 and 232.6). ``NaN`` entries stay ``NaN`` and are ignored
    when locating the centre.
    """
    v = np.asarray(values, dtype=float)
    ok = np.isfinite(v)
    if not ok.any():
        return v.copy()
    angle = 2.0 * np.pi * v[ok] / period
    center = float(np.arctan2(np.mean(np.sin(angle)), np.mean(np.cos(angle))))
    lo = center * period / (2.0 * np.pi) - period / 2.0
    return np.where(ok, lo + np.mod(v - lo, period), np.nan)


def _harmonic_basis(day: np.ndarray) -> np.ndarray:
    theta = day_angle(day)
    return np.column_stack(
        [np.cos(theta), np.sin(theta), np.cos(2.0 * theta), np.sin(2.0 * theta)]
    )


@dataclass(frozen=True)
class HarmonicSeasonalFitter:
    """Two-harmonic day-of-year climatology (see module docstring).

    Parameters
    ----------
    min_days :
        Minimum number of distinct days-of-year with a valid temperature.
        Lower values are accepted, but fewer than five distinct days always
        fail the rank check on the five-column basis.
    winter_center :
        ``WinterDay`` is reported inside the one-year window centred on this
        day so that stations whose minimum straddles 1 January krige as
        neighbouring values (e.g. -5 and 3 rather than 360 and 3). Across
        stations the composer re-centres it again on the circular mean of
        all fitted values (:func:`recenter_circular`), so minima near the
        window edge do not split.
    """

    min_days: int = 5
    winter_center: float = 45.0

    coefficient_names: ClassVar[Tuple[str, ...]] = SEASONAL_COEFFICIENTS
    # coefficients that are phases: name -> period in days
    circular_coefficients: ClassVar[Dict[str, float]] = {"WinterDay": DAYS_PER_YEAR}

    def fit(self, day: Iterable[float], temperature: Iterable[float]) -> Dict[str, float]:
        """Fit the climatology for one station.

        Raises
        ------
        StationFitError
            Too few distinct days, or a rank-deficient harmonic design.
        """
        d = np.asarray(day, dtype=float).ravel()
        t = np.asarray(temperature, dtype=float).ravel()
        if d.shape != t.shape:
            raise ValueError(
                f"day {d.shape} and temperature {t.shape} must have the same length."
            )

        ok = np.isfinite(d) & np.isfinite(t)
        d, t = d[ok], t[ok]
        n_days = int(np.unique(d).size)
        if n_days < self.min_days:
            raise StationFitError(
                f"only {n_days} distinct days with temperature (need >= {self.min_days})"
            )

        X = _harmonic_basis(d)
        rank = np.linalg.matrix_rank(np.column_stack([np.ones(d.size), X]))
        if rank < X.shape[1] + 1:
            raise StationFitError(
                f"harmonic design is rank deficient (rank {rank} < {X.shape[1] + 1})"
            )

        reg = LinearRegression().fit(X, t)
        a1, b1, a2, b2 = (float(v) for v in reg.coef_)
        return self._named(float(reg.intercept_), a1, b1, a2, b2)

    def _named(self, c0: float, a1: float, b1: float, a2: float, b2: float) -> Dict[str, float]:
        # a1 cos + b1 sin = -A cos(theta - theta_w), minimum at theta_w
        amplitude = float(np.hypot(a1, b1))
        theta_w = float(np.arctan2(b1, a1)) + np.pi

        # rotate the second harmonic into the WinterDay frame
        c2, s2 = np.cos(2.0 * theta_w), np.sin(2.0 * theta_w)
        autumn_winter = a2 * c2 + b2 * s2
        spring_summer = -a2 * s2 + b2 * c2

        winter_day = theta_w * DAYS_PER_YEAR / (2.0 * np.pi)
        lo = self.winter_center - DAYS_PER_YEAR / 2.0
        winter_day = lo + np.mod(winter_day - lo, DAYS_PER_YEAR)

        return {
            "Intercept": c0,
            "Amplitude": amplitude,
            "AutumnWinter": float(autumn_winter),
            "SpringSummer": float(spring_summer),
            "WinterDay": float(winter_day),
        }

    def evaluate(self, coefs: Mapping[str, object], day: Iterable[float]) -> np.ndarray:
        """Seasonal temperature for each day.

        ``coefs`` values may be scalars (one station) or arrays aligned with
        *day* (kriged coefficients per prediction row). Missing coefficients
        propagate as ``NaN``.
        """
        d = np.asarray(day, dtype=float)
        c = {k: np.asarray(coefs[k], dtype=float) for k in self.coefficient_names}
        psi = day_angle(d) - day_angle(c["WinterDay"])
        return (
            c["Intercept"]
            - c["Amplitude"] * np.cos(psi)
            + c["AutumnWinter"] * np.cos(2.0 * psi)
            + c["SpringSummer"] * np.sin(2.0 * psi)
        )
