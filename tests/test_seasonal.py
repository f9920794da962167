# tests/test_seasonal.py
import numpy as np
import pytest

from WTempKrigPy.seasonal import (
    DAYS_PER_YEAR,
    SEASONAL_COEFFICIENTS,
    HarmonicSeasonalFitter,
    StationFitError,
    day_angle,
    recenter_circular,
)


def _named_curve(day, intercept, amplitude, winter_day, autumn_winter=0.0, spring_summer=0.0):
    psi = day_angle(day) - day_angle(winter_day)
    return (
        intercept
        - amplitude * np.cos(psi)
        + autumn_winter * np.cos(2 * psi)
        + spring_summer * np.sin(2 * psi)
    )


# ---------------------------------------------------------------------
# Recovery of known coefficients
# ---------------------------------------------------------------------


@pytest.mark.parametrize("noise", [0.0, 1e-4])
def test_recovers_named_coefficients(noise):
    """A curve generated from the named form is recovered as noise -> 0."""
    rng = np.random.default_rng(1)
    day = np.arange(1, 366, dtype=float)
    temp = _named_curve(day, 12.0, 8.0, 40.0, 0.5, -0.8) + noise * rng.normal(size=day.size)

    coefs = HarmonicSeasonalFitter().fit(day, temp)

    assert set(coefs) == set(SEASONAL_COEFFICIENTS)
    assert coefs["Intercept"] == pytest.approx(12.0, abs=1e-3)
    assert coefs["Amplitude"] == pytest.approx(8.0, abs=1e-3)
    assert coefs["WinterDay"] == pytest.approx(40.0, abs=1e-2)
    assert coefs["AutumnWinter"] == pytest.approx(0.5, abs=1e-3)
    assert coefs["SpringSummer"] == pytest.approx(-0.8, abs=1e-3)


def test_plain_cosine_has_no_asymmetry():
    """With no second harmonic the asymmetry terms vanish."""
    day = np.arange(1, 366, dtype=float)
    temp = 10 + 15 * np.cos(day_angle(day) - day_angle(30.0))

    coefs = HarmonicSeasonalFitter().fit(day, temp)

    assert coefs["Amplitude"] == pytest.approx(15.0, abs=1e-8)
    assert coefs["AutumnWinter"] == pytest.approx(0.0, abs=1e-8)
    assert coefs["SpringSummer"] == pytest.approx(0.0, abs=1e-8)
    # minimum half a year after the day-30 peak
    assert coefs["WinterDay"] == pytest.approx(30.0 + DAYS_PER_YEAR / 2, abs=1e-6)


def test_evaluate_reproduces_least_squares_fit():
    """The named form evaluates to the fitted curve on the training days."""
    rng = np.random.default_rng(2)
    day = np.sort(rng.choice(np.arange(1, 366), size=120, replace=False)).astype(float)
    temp = _named_curve(day, 5.0, 9.0, 20.0, 1.0, 0.3) + rng.normal(0, 0.5, day.size)

    fitter = HarmonicSeasonalFitter()
    coefs = fitter.fit(day, temp)
    fitted = fitter.evaluate(coefs, day)

    # residuals of an OLS fit with intercept are centred and orthogonal to the basis
    resid = temp - fitted
    assert resid.mean() == pytest.approx(0.0, abs=1e-9)
    assert np.dot(resid, np.cos(day_angle(day))) == pytest.approx(0.0, abs=1e-7)
    assert np.dot(resid, np.sin(2 * day_angle(day))) == pytest.approx(0.0, abs=1e-7)


def test_winter_day_window_keeps_january_minima_together():
    """Minima on either side of 1 January are reported as neighbouring values."""
    day = np.arange(1, 366, dtype=float)
    fitter = HarmonicSeasonalFitter()

    early = fitter.fit(day, _named_curve(day, 8.0, 6.0, 3.0))["WinterDay"]
    late = fitter.fit(day, _named_curve(day, 8.0, 6.0, 360.0))["WinterDay"]

    assert early == pytest.approx(3.0, abs=1e-6)
    assert late == pytest.approx(360.0 - DAYS_PER_YEAR, abs=1e-6)


def test_evaluate_vectorised_and_nan_propagation():
    fitter = HarmonicSeasonalFitter()
    coefs = {
        "Intercept": np.array([10.0, np.nan]),
        "Amplitude": np.array([5.0, 5.0]),
        "AutumnWinter": np.array([0.0, 0.0]),
        "SpringSummer": np.array([0.0, 0.0]),
        "WinterDay": np.array([30.0, 30.0]),
    }
    out = fitter.evaluate(coefs, np.array([30.0, 30.0]))
    assert out[0] == pytest.approx(5.0)
    assert np.isnan(out[1])


# ---------------------------------------------------------------------
# Per-station failures
# ---------------------------------------------------------------------


def test_too_few_days_raises_station_error():
    day = np.array([1.0, 50.0, 100.0, 150.0])
    with pytest.raises(StationFitError):
        HarmonicSeasonalFitter().fit(day, np.ones(4))


def test_rank_deficient_design_raises_station_error():
    """Repeated observations of three days cannot identify five terms."""
    day = np.array([10.0, 10.0, 100.0, 100.0, 200.0, 200.0])
    temp = np.array([1.0, 1.1, 5.0, 5.2, 9.0, 8.9])
    with pytest.raises(StationFitError, match="rank"):
        HarmonicSeasonalFitter(min_days=1).fit(day, temp)


def test_missing_values_are_ignored():
    day = np.arange(1, 366, dtype=float)
    temp = 10 + 15 * np.cos(day_angle(day) - day_angle(30.0))
    temp[::7] = np.nan

    coefs = HarmonicSeasonalFitter().fit(day, temp)
    assert coefs["Intercept"] == pytest.approx(10.0, abs=1e-8)


def test_length_mismatch_is_a_value_error():
    with pytest.raises(ValueError):
        HarmonicSeasonalFitter().fit(np.arange(10), np.arange(9))


# ---------------------------------------------------------------------
# Phase alignment across stations
# ---------------------------------------------------------------------


def test_recenter_circular_joins_values_split_by_the_window_edge():
    """Minima 10 days apart stay 10 days apart after re-centring."""
    out = recenter_circular([222.625, -132.625, 222.625, np.nan])
    np.testing.assert_allclose(out[:3], [222.625, 232.625, 222.625])
    assert np.isnan(out[3])


def test_recenter_circular_around_new_year():
    out = recenter_circular([3.0, 360.0])
    np.testing.assert_allclose(out, [3.0, 360.0 - DAYS_PER_YEAR])


def test_recentred_winter_day_gives_the_same_curve():
    """Shifting WinterDay by a whole year leaves the seasonal curve unchanged."""
    fitter = HarmonicSeasonalFitter()
    coefs = {"Intercept": 9.0, "Amplitude": 7.0, "AutumnWinter": 0.4, "SpringSummer": -0.3}
    day = np.arange(1, 366, dtype=float)
    a = fitter.evaluate(dict(coefs, WinterDay=-132.625), day)
    b = fitter.evaluate(dict(coefs, WinterDay=-132.625 + DAYS_PER_YEAR), day)
    np.testing.assert_allclose(a, b, atol=1e-9)
