"""
WTempKrigPy
===========

Daily water-body temperature from satellite covariates and sparse gauges.

The model has two stages:

1. Per-station decomposition
   -------------------------
   Each monitored station's temperature series is split into a day-of-year
   climatology (five harmonic coefficients) and an anomaly explained by
   daily remote-sensing covariates (land-surface temperature, humidity).

   Main entry points
   -----------------
   - :class:`HarmonicSeasonalFitter`
   - :class:`LinearAnomalyFitter`

2. Spatial interpolation of the coefficients
   -----------------------------------------
   Every per-station coefficient is kriged independently (Gaussian process
   with longitude, latitude and land-cover fixed effects), so temperature
   can be predicted anywhere.

   Main entry points
   -----------------
   - :class:`CoefficientKriger`
   - :func:`full_schema` / :class:`ModelComposer`
   - :class:`Predictor`
   - :func:`save_bundle` / :func:`load_bundle`
   - :func:`loso_evaluate`

Example
-------
    >>> from WTempKrigPy import full_schema, save_bundle, load_bundle
    >>> predictor = full_schema(train, fixed_effect_cols=("forest", "urban"))
    >>> out = predictor(new_rows)          # adds temp.doy, temp.anom, temp.mod
    >>> save_bundle(predictor, "models/wtemp.joblib")
    >>> bundle = load_bundle("models/wtemp.joblib")
"""

from __future__ import annotations

# Public version (update in sync with pyproject.toml)
__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Per-station fitters
# ---------------------------------------------------------------------------

from .seasonal import (
    SEASONAL_COEFFICIENTS,
    HarmonicSeasonalFitter,
    SeasonalFitter,
    StationFitError,
)
from .anomaly import (
    DEFAULT_COVARIATES,
    AnomalyFitter,
    LinearAnomalyFitter,
)

# ---------------------------------------------------------------------------
# Kriging, composition and prediction
# ---------------------------------------------------------------------------

from .kriging import (
    CoefficientKriger,
    DegenerateDesignError,
    KrigingSurface,
)
from .schema import (
    BundleMeta,
    ComposerConfig,
    FitterConfigError,
    ModelBundle,
    ModelComposer,
    Predictor,
    full_schema,
    load_bundle,
    save_bundle,
)

# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

from .metrics import kge, nse, regression_metrics
from .loso import loso_evaluate

__all__ = [
    "__version__",
    # per-station fitters
    "SEASONAL_COEFFICIENTS",
    "HarmonicSeasonalFitter",
    "SeasonalFitter",
    "StationFitError",
    "DEFAULT_COVARIATES",
    "AnomalyFitter",
    "LinearAnomalyFitter",
    # kriging + composition
    "CoefficientKriger",
    "DegenerateDesignError",
    "KrigingSurface",
    "BundleMeta",
    "ComposerConfig",
    "FitterConfigError",
    "ModelBundle",
    "ModelComposer",
    "Predictor",
    "full_schema",
    "load_bundle",
    "save_bundle",
    # evaluation
    "kge",
    "nse",
    "regression_metrics",
    "loso_evaluate",
]
