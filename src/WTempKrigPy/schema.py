# src/WTempKrigPy/schema.py
# SPDX-License-Identifier: MIT
"""
Full two-stage water temperature model: fitting, bundling and prediction.

:func:`full_schema` (or :class:`ModelComposer`) chains the pieces:

1. per station, a seasonal climatology (:mod:`WTempKrigPy.seasonal`) and an
   anomaly regression on the seasonal residuals (:mod:`WTempKrigPy.anomaly`);
2. per coefficient, an independent kriging surface
   (:mod:`WTempKrigPy.kriging`) across stations;
3. an immutable :class:`ModelBundle` holding every surface.

Depending on ``return_raw_bundle`` the bundle itself is returned, or a
:class:`Predictor` bound to it. The predictor adds three columns to new
rows::

    temp.doy   seasonal temperature from kriged seasonal coefficients
    temp.anom  anomaly from kriged anomaly coefficients and daily covariates
    temp.mod   temp.doy + temp.anom

Bundles can be persisted with :func:`save_bundle` (joblib artifact plus a
JSON metadata sidecar) and restored with :func:`load_bundle`.

Runtime dependencies
--------------------
- numpy
- pandas
- scikit-learn
- scipy
- joblib
- tqdm
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, replace
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, dump, load
from tqdm.auto import tqdm

from .anomaly import AnomalyFitter, LinearAnomalyFitter
from .data import add_day_of_year, prepare_observations, require_columns, station_table
from .kriging import CoefficientKriger, KrigingSurface
from .seasonal import (
    HarmonicSeasonalFitter,
    SeasonalFitter,
    StationFitError,
    recenter_circular,
)


__all__ = [
    "FitterConfigError",
    "ComposerConfig",
    "ModelBundle",
    "Predictor",
    "ModelComposer",
    "full_schema",
    "BundleMeta",
    "save_bundle",
    "load_bundle",
]


_RESERVED = ("lon", "lat", "value")


class FitterConfigError(ValueError):
    """The seasonal/anomaly fitters do not agree with their declared names."""


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ComposerConfig:
    """Settings of :class:`ModelComposer`.

    Attributes
    ----------
    seasonal_fitter, anomaly_fitter :
        Per-station fitting strategies.
    kriger :
        Kriging settings shared by every coefficient surface.
    fixed_effect_cols :
        Site-level covariates (e.g. land-cover fractions) used as kriging
        fixed effects in addition to longitude and latitude. Their
        per-station mean is used at fit time; prediction rows must carry
        them as well.
    return_raw_bundle :
        Return the :class:`ModelBundle` instead of a :class:`Predictor`.
    n_jobs :
        joblib workers for per-station fits and per-coefficient kriging.
    show_progress :
        Progress bar over stations and a notice for every skipped station.
    id_col, lon_col, lat_col, date_col, day_col, temp_col :
        Column names of the training table.
    """

    seasonal_fitter: SeasonalFitter = field(default_factory=HarmonicSeasonalFitter)
    anomaly_fitter: AnomalyFitter = field(default_factory=LinearAnomalyFitter)
    kriger: CoefficientKriger = field(default_factory=CoefficientKriger)
    fixed_effect_cols: Tuple[str, ...] = ()
    return_raw_bundle: bool = False
    n_jobs: int = 1
    show_progress: bool = False
    id_col: str = "id"
    lon_col: str = "lon"
    lat_col: str = "lat"
    date_col: str = "date"
    day_col: str = "day"
    temp_col: str = "temperature"

    def __post_init__(self) -> None:
        fe = (self.fixed_effect_cols,) if isinstance(self.fixed_effect_cols, str) else self.fixed_effect_cols
        fe = tuple(fe)
        clash = [c for c in fe if c in _RESERVED]
        if clash:
            raise ValueError(f"Fixed-effect columns may not be named {clash}.")
        object.__setattr__(self, "fixed_effect_cols", fe)


def _validate_fitters(
    seasonal: SeasonalFitter, anomaly: AnomalyFitter
) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    s_names = tuple(seasonal.coefficient_names)
    a_names = tuple(anomaly.coefficient_names)
    for label, names in (("seasonal", s_names), ("anomaly", a_names)):
        if not names:
            raise FitterConfigError(f"The {label} fitter declares no coefficients.")
        if len(set(names)) != len(names):
            raise FitterConfigError(f"The {label} fitter declares duplicated names: {names}")
    overlap = sorted(set(s_names) & set(a_names))
    if overlap:
        raise FitterConfigError(
            f"Seasonal and anomaly coefficient names overlap: {overlap}"
        )
    return s_names, a_names


def _check_names(label: str, sid: str, got: Mapping[str, float], declared: Tuple[str, ...]) -> None:
    if set(got) != set(declared):
        raise FitterConfigError(
            f"The {label} fitter returned {sorted(got)} for station {sid}; "
            f"declared {sorted(declared)}."
        )


# ---------------------------------------------------------------------
# Bundle and predictor
# ---------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class ModelBundle:
    """Every fitted coefficient surface plus what is needed to use them.

    ``entries`` is ordered by coefficient name, whatever order the kriging
    fits completed in. The bundle is never modified after construction and
    can be shared freely between threads and processes.

    Attributes
    ----------
    entries :
        ``(name, KrigingSurface)`` pairs.
    seasonal_fitter, anomaly_fitter :
        The strategies whose formulas the surfaces feed.
    fixed_effect_cols :
        Site-level covariates required at prediction time.
    station_coefficients :
        Per-station coefficients (before kriging) with coordinates.
    skipped :
        ``[station, stage, reason]`` for every station left out of a stage.
    lon_col, lat_col, date_col, day_col :
        Column names expected in prediction rows.
    """

    entries: Tuple[Tuple[str, KrigingSurface], ...]
    seasonal_fitter: SeasonalFitter
    anomaly_fitter: AnomalyFitter
    fixed_effect_cols: Tuple[str, ...] = ()
    station_coefficients: pd.DataFrame = field(default_factory=pd.DataFrame)
    skipped: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=["station", "stage", "reason"])
    )
    lon_col: str = "lon"
    lat_col: str = "lat"
    date_col: str = "date"
    day_col: str = "day"

    @property
    def surfaces(self) -> Mapping[str, KrigingSurface]:
        return MappingProxyType(dict(self.entries))

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.entries)

    @property
    def seasonal_names(self) -> Tuple[str, ...]:
        return tuple(self.seasonal_fitter.coefficient_names)

    @property
    def anomaly_names(self) -> Tuple[str, ...]:
        return tuple(self.anomaly_fitter.coefficient_names)

    def __getitem__(self, name: str) -> KrigingSurface:
        return self.surfaces[name]

    def __len__(self) -> int:
        return len(self.entries)

    def predictor(self) -> "Predictor":
        return Predictor(self)


class Predictor:
    """Evaluate the composed model of a :class:`ModelBundle` on new rows.

    Calling the predictor is side-effect free and deterministic; rows need
    coordinates, a day-of-year (or a date), the bundle's fixed-effect
    columns and the anomaly covariates. Anything missing turns the affected
    outputs into ``NaN``.
    """

    def __init__(self, bundle: ModelBundle) -> None:
        self._bundle = bundle

    @property
    def bundle(self) -> ModelBundle:
        return self._bundle

    def __repr__(self) -> str:
        return f"Predictor(coefficients={list(self._bundle.names)})"

    def coefficients(self, rows: pd.DataFrame) -> pd.DataFrame:
        """Kriged value of every coefficient at each row's location.

        Each distinct (lon, lat, fixed effects) combination is kriged once.
        """
        b = self._bundle
        require_columns(rows, [b.lon_col, b.lat_col], what="Prediction table")
        if len(rows) == 0:
            return pd.DataFrame(columns=list(b.names), index=rows.index, dtype=float)

        key_cols = [b.lon_col, b.lat_col] + list(b.fixed_effect_cols)
        keys = np.column_stack(
            [
                pd.to_numeric(rows[c], errors="coerce").to_numpy(dtype=float)
                if c in rows.columns
                else np.full(len(rows), np.nan)
                for c in key_cols
            ]
        )
        uniq, inverse = np.unique(keys, axis=0, return_inverse=True)
        inverse = np.asarray(inverse).reshape(-1)
        covariates = {c: uniq[:, 2 + j] for j, c in enumerate(b.fixed_effect_cols)}

        out = {}
        for name, surface in b.entries:
            vals = surface.predict(uniq[:, 0], uniq[:, 1], covariates)
            out[name] = vals[inverse]
        return pd.DataFrame(out, index=rows.index)

    def __call__(self, rows: pd.DataFrame) -> pd.DataFrame:
        """Return a copy of *rows* with ``temp.doy``, ``temp.anom`` and ``temp.mod``."""
        b = self._bundle
        out = add_day_of_year(rows, date_col=b.date_col, day_col=b.day_col)
        coefs = self.coefficients(out)

        day = out[b.day_col].to_numpy(dtype=float)
        doy = b.seasonal_fitter.evaluate(
            {n: coefs[n].to_numpy() for n in b.seasonal_names}, day
        )
        anom = b.anomaly_fitter.evaluate(
            {n: coefs[n].to_numpy() for n in b.anomaly_names}, out
        )
        doy = np.asarray(doy, dtype=float)
        anom = np.asarray(anom, dtype=float)

        out["temp.doy"] = doy
        out["temp.anom"] = anom
        out["temp.mod"] = doy + anom
        return out

    def spatial_residual(self, name: str, lon, lat, covariates=None) -> np.ndarray:
        """Spatially correlated part of one surface, without its fixed effects."""
        return self._bundle[name].predict(lon, lat, covariates, drop_fixed_effects=True)


# ---------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------


def _fit_station(
    sid: str,
    day: np.ndarray,
    temperature: np.ndarray,
    covariates: pd.DataFrame,
    seasonal: SeasonalFitter,
    anomaly: AnomalyFitter,
) -> Dict[str, object]:
    """Seasonal then anomaly fit for one station; never raises StationFitError."""
    out: Dict[str, object] = {"station": sid, "seasonal": None, "anomaly": None, "skipped": []}
    try:
        s_coefs = seasonal.fit(day, temperature)
    except StationFitError as exc:
        out["skipped"] = [("seasonal", str(exc)), ("anomaly", "no seasonal fit")]
        return out
    _check_names("seasonal", sid, s_coefs, tuple(seasonal.coefficient_names))
    out["seasonal"] = s_coefs

    residual = temperature - np.asarray(seasonal.evaluate(s_coefs, day), dtype=float)
    try:
        a_coefs = anomaly.fit(residual, covariates)
    except StationFitError as exc:
        out["skipped"].append(("anomaly", str(exc)))
        return out
    _check_names("anomaly", sid, a_coefs, tuple(anomaly.coefficient_names))
    out["anomaly"] = a_coefs
    return out


def _coefficient_vector(stations: pd.DataFrame, values: pd.Series) -> pd.DataFrame:
    values = values.dropna()
    vec = stations.loc[stations.index.intersection(values.index)].copy()
    vec["value"] = values.loc[vec.index].to_numpy(dtype=float)
    return vec


class ModelComposer:
    """Build the two-stage model from a training table.

    Parameters
    ----------
    config :
        :class:`ComposerConfig`; defaults when omitted.
    **overrides :
        Individual :class:`ComposerConfig` fields, applied on top of
        *config*.

    Examples
    --------
    >>> predictor = ModelComposer(fixed_effect_cols=("forest",)).fit(train)
    >>> out = predictor(new_rows)
    """

    def __init__(self, config: Optional[ComposerConfig] = None, **overrides) -> None:
        base = config if config is not None else ComposerConfig()
        self.config = replace(base, **overrides) if overrides else base

    def fit(self, data: pd.DataFrame) -> Union[ModelBundle, Predictor]:
        """Fit every stage and return a bundle or a predictor.

        Raises
        ------
        FitterConfigError
            Fitters declare overlapping names or return undeclared ones.
        DegenerateDesignError
            A coefficient cannot be kriged (e.g. stations sharing
            coordinates); carries the coefficient name and station ids.
        ValueError
            Missing columns, or no station survives a stage.
        """
        cfg = self.config
        seasonal, anomaly = cfg.seasonal_fitter, cfg.anomaly_fitter
        s_names, a_names = _validate_fitters(seasonal, anomaly)
        cov_cols = list(getattr(anomaly, "required_columns", ()))

        obs = prepare_observations(
            data,
            id_col=cfg.id_col,
            lon_col=cfg.lon_col,
            lat_col=cfg.lat_col,
            date_col=cfg.date_col,
            day_col=cfg.day_col,
            temp_col=cfg.temp_col,
            extra_cols=list(cfg.fixed_effect_cols) + cov_cols,
        )
        stations = station_table(
            obs,
            id_col=cfg.id_col,
            lon_col=cfg.lon_col,
            lat_col=cfg.lat_col,
            fixed_effect_cols=cfg.fixed_effect_cols,
        )

        # 1) per-station seasonal + anomaly fits
        groups = list(obs.groupby(cfg.id_col, sort=True))
        iterator = tqdm(
            groups, desc="Fitting stations", unit="st", disable=not cfg.show_progress
        )
        results = Parallel(n_jobs=cfg.n_jobs)(
            delayed(_fit_station)(
                str(sid),
                g[cfg.day_col].to_numpy(dtype=float),
                g[cfg.temp_col].to_numpy(dtype=float),
                (g[cov_cols] if cov_cols else g).reset_index(drop=True),
                seasonal,
                anomaly,
            )
            for sid, g in iterator
        )

        skipped: List[Tuple[str, str, str]] = []
        for res in results:
            for stage, reason in res["skipped"]:
                skipped.append((res["station"], stage, reason))

        seasonal_tab = pd.DataFrame.from_dict(
            {r["station"]: r["seasonal"] for r in results if r["seasonal"] is not None},
            orient="index",
            columns=list(s_names),
        )
        anomaly_tab = pd.DataFrame.from_dict(
            {r["station"]: r["anomaly"] for r in results if r["anomaly"] is not None},
            orient="index",
            columns=list(a_names),
        )
        if seasonal_tab.empty:
            raise ValueError("No station could be fitted by the seasonal fitter.")
        if anomaly_tab.empty:
            raise ValueError("No station could be fitted by the anomaly fitter.")

        # phase coefficients share one window so neighbours krige as neighbours
        for name, period in getattr(seasonal, "circular_coefficients", {}).items():
            if name in seasonal_tab.columns:
                seasonal_tab[name] = recenter_circular(seasonal_tab[name], period)

        # 2) stations without usable location / fixed effects cannot be kriged
        usable = stations.dropna()
        for sid in sorted(set(seasonal_tab.index) - set(usable.index)):
            skipped.append((sid, "kriging", "missing coordinates or fixed effects"))

        skipped_df = pd.DataFrame(skipped, columns=["station", "stage", "reason"])
        if cfg.show_progress:
            for sid, stage, reason in skipped:
                tqdm.write(f"Station {sid}: {stage} skipped ({reason})")

        # 3) one independent kriging fit per coefficient
        jobs = [(n, _coefficient_vector(usable, seasonal_tab[n])) for n in s_names]
        jobs += [(n, _coefficient_vector(usable, anomaly_tab[n])) for n in a_names]
        surfaces = Parallel(n_jobs=cfg.n_jobs)(
            delayed(cfg.kriger.fit)(vec, name=name) for name, vec in jobs
        )

        # 4) deterministic assembly
        entries = tuple(
            sorted(zip((n for n, _ in jobs), surfaces), key=lambda kv: kv[0])
        )
        coefs = stations.join(seasonal_tab, how="inner").join(anomaly_tab, how="left")
        bundle = ModelBundle(
            entries=entries,
            seasonal_fitter=seasonal,
            anomaly_fitter=anomaly,
            fixed_effect_cols=cfg.fixed_effect_cols,
            station_coefficients=coefs,
            skipped=skipped_df,
            lon_col=cfg.lon_col,
            lat_col=cfg.lat_col,
            date_col=cfg.date_col,
            day_col=cfg.day_col,
        )
        return bundle if cfg.return_raw_bundle else Predictor(bundle)


def full_schema(
    data: pd.DataFrame,
    config: Optional[ComposerConfig] = None,
    **overrides,
) -> Union[ModelBundle, Predictor]:
    """Fit the full model in one call; see :class:`ModelComposer`.

    Examples
    --------
    >>> bundle = full_schema(train, return_raw_bundle=True)
    >>> sorted(bundle.names)[:2]
    ['Amplitude', 'AutumnWinter']
    """
    return ModelComposer(config, **overrides).fit(data)


# ---------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------


def _save_json(obj: dict, path: str) -> None:
    """Persist a dictionary as a UTF-8 JSON file with indentation."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)


def _default_meta_path(model_path: str) -> str:
    return os.path.splitext(str(model_path))[0] + ".meta.json"


@dataclass(frozen=True)
class BundleMeta:
    """Human-readable description persisted next to a bundle artifact.

    Attributes
    ----------
    package_version :
        WTempKrigPy version that wrote the artifact.
    seasonal_coefficients, anomaly_coefficients :
        Coefficient names of each stage.
    fixed_effect_cols :
        Site-level covariates required at prediction time.
    n_stations :
        Stations contributing to each surface.
    n_skipped :
        Number of (station, stage) skips during fitting.
    surfaces :
        :meth:`KrigingSurface.summary` of every surface.
    anomaly_terms :
        Readable anomaly formula terms (e.g. ``"LST*lst"``) when the anomaly
        fitter can describe itself, else its coefficient names.
    """

    package_version: str
    seasonal_coefficients: List[str]
    anomaly_coefficients: List[str]
    fixed_effect_cols: List[str]
    n_stations: Dict[str, int]
    n_skipped: int
    surfaces: List[dict]
    anomaly_terms: List[str] = field(default_factory=list)

    @classmethod
    def from_bundle(cls, bundle: ModelBundle) -> "BundleMeta":
        from . import __version__

        describe = getattr(bundle.anomaly_fitter, "describe", None)
        terms = list(describe()) if callable(describe) else list(bundle.anomaly_names)
        return cls(
            package_version=__version__,
            seasonal_coefficients=list(bundle.seasonal_names),
            anomaly_coefficients=list(bundle.anomaly_names),
            fixed_effect_cols=list(bundle.fixed_effect_cols),
            n_stations={name: s.n_stations for name, s in bundle.entries},
            n_skipped=int(len(bundle.skipped)),
            surfaces=[s.summary() for _, s in bundle.entries],
            anomaly_terms=terms,
        )

    @staticmethod
    def load(path: str) -> "BundleMeta":
        """Load metadata from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            d = json.load(f)
        return BundleMeta(**d)

    def save(self, path: str) -> None:
        """Save metadata to a JSON file."""
        _save_json(asdict(self), path)


def save_bundle(
    bundle: Union[ModelBundle, Predictor],
    model_path: str = "models/wtemp_bundle.joblib",
    meta_path: Optional[str] = None,
) -> BundleMeta:
    """Persist a bundle (or a predictor's bundle) with joblib plus JSON metadata.

    Parameters
    ----------
    bundle :
        Fitted :class:`ModelBundle` or :class:`Predictor`.
    model_path :
        Output path of the joblib artifact.
    meta_path :
        JSON sidecar path; defaults to ``<model_path stem>.meta.json``.
    """
    if isinstance(bundle, Predictor):
        bundle = bundle.bundle
    os.makedirs(os.path.dirname(str(model_path)) or ".", exist_ok=True)
    dump(bundle, model_path)
    meta = BundleMeta.from_bundle(bundle)
    meta.save(meta_path or _default_meta_path(model_path))
    return meta


def load_bundle(model_path: str = "models/wtemp_bundle.joblib") -> ModelBundle:
    """Load a bundle written by :func:`save_bundle`."""
    bundle = load(model_path)
    if not isinstance(bundle, ModelBundle):
        raise TypeError(
            f"{model_path} does not contain a ModelBundle (got {type(bundle).__name__})."
        )
    return bundle
