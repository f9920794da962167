# tests/test_data.py
import warnings

import numpy as np
import pandas as pd
import pytest

from WTempKrigPy.data import (
    add_day_of_year,
    duplicate_locations,
    ensure_datetime,
    prepare_observations,
    station_table,
)


@pytest.fixture
def raw() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "id": [101, 101, 202, 202, 202],
            "lon": ["-99.1", "-99.1", "-98.0", "-98.0", "-98.0"],
            "lat": [19.4, 19.4, 20.1, 20.1, 20.1],
            "date": ["2021-01-01", "2021-02-01", "2021-03-01", "bad-date", "2021-12-31"],
            "temperature": [12.0, 13.5, np.nan, 14.0, 11.0],
            "forest": [0.2, 0.4, 0.6, 0.6, 0.6],
        }
    )


def test_ensure_datetime_drops_timezone_and_keeps_bad_rows():
    df = pd.DataFrame({"date": ["2020-06-01T12:00:00+02:00", "nope"]})
    out = ensure_datetime(df, "date")
    assert out["date"].dt.tz is None
    assert pd.isna(out["date"].iloc[1])
    assert len(out) == 2


def test_add_day_of_year_prefers_explicit_day():
    """A day that contradicts the date is kept, but not silently."""
    df = pd.DataFrame({"date": ["2021-02-01", "2021-02-01"], "day": [np.nan, 7]})
    with pytest.warns(RuntimeWarning, match="1 rows"):
        out = add_day_of_year(df)
    assert out["day"].tolist() == [32.0, 7.0]


def test_add_day_of_year_consistent_inputs_do_not_warn():
    df = pd.DataFrame({"date": ["2021-02-01", "2021-03-01"], "day": [32, np.nan]})
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        out = add_day_of_year(df)
    assert out["day"].tolist() == [32.0, 60.0]


def test_add_day_of_year_without_date_or_day():
    with pytest.raises(ValueError, match="day"):
        add_day_of_year(pd.DataFrame({"x": [1.0]}))


def test_prepare_observations_normalises(raw):
    out = prepare_observations(raw, extra_cols=["forest"])

    # missing temperature and unparseable date (no day) are dropped
    assert len(out) == 3
    assert out["id"].tolist() == ["101", "101", "202"]
    assert out["lon"].dtype == float
    assert out["day"].tolist() == [1.0, 32.0, 365.0]


def test_prepare_observations_missing_column(raw):
    with pytest.raises(ValueError, match="forest2"):
        prepare_observations(raw, extra_cols=["forest2"])


def test_prepare_observations_empty():
    with pytest.raises(ValueError):
        prepare_observations(pd.DataFrame(columns=["id", "lon", "lat", "temperature"]))


def test_station_table_layout(raw):
    obs = prepare_observations(raw, extra_cols=["forest"])
    table = station_table(obs, fixed_effect_cols=["forest"])

    assert list(table.columns) == ["lon", "lat", "forest"]
    assert list(table.index) == ["101", "202"]
    assert table.loc["101", "forest"] == pytest.approx(0.3)
    assert table.loc["202", "lon"] == pytest.approx(-98.0)


def test_duplicate_locations_groups_ids():
    stations = pd.DataFrame(
        {"lon": [1.0, 2.0, 1.0, 3.0, 2.0, 4.0], "lat": [5.0, 6.0, 5.0, 7.0, 6.0, 8.0]},
        index=["c", "b", "a", "d", "e", "f"],
    )
    assert duplicate_locations(stations) == [["a", "c"], ["b", "e"]]
    assert duplicate_locations(stations.iloc[[0, 1, 3]]) == []
