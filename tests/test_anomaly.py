# tests/test_anomaly.py
import numpy as np
import pandas as pd
import pytest

from WTempKrigPy.anomaly import DEFAULT_COVARIATES, LinearAnomalyFitter
from WTempKrigPy.seasonal import StationFitError


TRUE = {"InterceptMax": 0.3, "LST": 0.7, "Humidity": -0.2, "LSTMax": 0.1, "HumidityMax": 0.05}


@pytest.fixture
def covariates() -> pd.DataFrame:
    rng = np.random.default_rng(3)
    n = 200
    return pd.DataFrame(
        {
            "lst": rng.normal(15, 5, n),
            "humidity": rng.uniform(20, 90, n),
            "lst_max": rng.normal(25, 6, n),
            "humidity_max": rng.uniform(40, 100, n),
        }
    )


def _residual(cov: pd.DataFrame, noise: float = 0.0, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    r = TRUE["InterceptMax"] + sum(TRUE[name] * cov[col] for name, col in DEFAULT_COVARIATES)
    return r.to_numpy() + noise * rng.normal(size=len(cov))


# ---------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------


@pytest.mark.parametrize("noise", [0.0, 1e-6])
def test_recovers_linear_coefficients(covariates, noise):
    fitter = LinearAnomalyFitter()
    coefs = fitter.fit(_residual(covariates, noise), covariates)

    assert set(coefs) == set(fitter.coefficient_names)
    for name, value in TRUE.items():
        assert coefs[name] == pytest.approx(value, abs=1e-4)


def test_uses_only_complete_days(covariates):
    """Rows missing any covariate or the residual are left out, not zeroed."""
    resid = _residual(covariates)
    cov = covariates.copy()
    cov.loc[::5, "humidity"] = np.nan
    resid[1::9] = np.nan

    coefs = LinearAnomalyFitter().fit(resid, cov)
    assert coefs["LST"] == pytest.approx(TRUE["LST"], abs=1e-8)
    assert coefs["Humidity"] == pytest.approx(TRUE["Humidity"], abs=1e-8)


def test_custom_covariate_mapping(covariates):
    fitter = LinearAnomalyFitter(covariates={"LST": "lst"}, intercept_name="Offset")
    resid = 1.5 + 0.5 * covariates["lst"].to_numpy()

    coefs = fitter.fit(resid, covariates)

    assert fitter.coefficient_names == ("Offset", "LST")
    assert fitter.required_columns == ("lst",)
    assert coefs["Offset"] == pytest.approx(1.5)
    assert coefs["LST"] == pytest.approx(0.5)


def test_duplicate_names_rejected():
    with pytest.raises(ValueError):
        LinearAnomalyFitter(covariates={"LST": "lst"}, intercept_name="LST")


# ---------------------------------------------------------------------
# Per-station failures
# ---------------------------------------------------------------------


def test_too_few_concurrent_days(covariates):
    cov = covariates.copy()
    cov.loc[5:, "lst"] = np.nan
    with pytest.raises(StationFitError, match="days"):
        LinearAnomalyFitter().fit(_residual(covariates), cov)


def test_missing_covariate_column(covariates):
    with pytest.raises(StationFitError, match="missing"):
        LinearAnomalyFitter().fit(_residual(covariates), covariates.drop(columns="lst_max"))


def test_collinear_covariates(covariates):
    cov = covariates.copy()
    cov["lst_max"] = 2.0 * cov["lst"]
    with pytest.raises(StationFitError, match="rank"):
        LinearAnomalyFitter().fit(_residual(covariates), cov)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------


def test_evaluate_propagates_missing_covariates():
    fitter = LinearAnomalyFitter()
    rows = pd.DataFrame(
        {
            "lst": [10.0, np.nan],
            "humidity": [50.0, 50.0],
            "lst_max": [20.0, 20.0],
            "humidity_max": [70.0, 70.0],
        }
    )
    out = fitter.evaluate(TRUE, rows)

    expected = 0.3 + 0.7 * 10 - 0.2 * 50 + 0.1 * 20 + 0.05 * 70
    assert out[0] == pytest.approx(expected)
    assert np.isnan(out[1])


def test_evaluate_absent_column_is_missing_not_zero():
    fitter = LinearAnomalyFitter()
    rows = pd.DataFrame({"lst": [10.0], "humidity": [50.0], "lst_max": [20.0]})
    assert np.isnan(fitter.evaluate(TRUE, rows)).all()


def test_describe_lists_terms_in_order():
    fitter = LinearAnomalyFitter(covariates={"LST": "lst", "Wind": "wind"}, intercept_name="Offset")
    assert fitter.describe() == ["Offset", "LST*lst", "Wind*wind"]
