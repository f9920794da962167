import numpy as np
import pandas as pd
import pytest


DAYS_PER_YEAR = 365.25

# well separated sites (hundreds of km apart)
STATION_COORDS = {
    "A": (-100.0, 45.0),
    "B": (-98.5, 46.2),
    "C": (-97.0, 44.1),
    "D": (-95.2, 45.8),
    "E": (-93.8, 43.9),
}


def seasonal_truth(day, intercept=10.0, amplitude=15.0, peak_day=30.0):
    """10 + 15 cos(theta(day) - theta(30)): warmest on day 30."""
    theta = 2.0 * np.pi * np.asarray(day, dtype=float) / DAYS_PER_YEAR
    theta_peak = 2.0 * np.pi * peak_day / DAYS_PER_YEAR
    return intercept + amplitude * np.cos(theta - theta_peak)


def make_synthetic(
    coords=None,
    *,
    n_days=365,
    lst_coef=0.5,
    noise=0.0,
    seed=0,
    forest=None,
    peak_day=30.0,
):
    """Daily rows for each station: seasonal cosine + lst_coef * lst (+ noise).

    *peak_day* is the warmest day, shared or given per station as a mapping.

    Columns: id, lon, lat, date, temperature, lst, humidity, lst_max,
    humidity_max and, when *forest* maps station -> fraction, forest.
    """
    coords = coords or STATION_COORDS
    peak = peak_day if isinstance(peak_day, dict) else {sid: peak_day for sid in coords}
    rng = np.random.default_rng(seed)
    dates = pd.date_range("2019-01-01", periods=n_days, freq="D")
    day = dates.dayofyear.to_numpy()
    frames = []
    for sid, (lon, lat) in coords.items():
        lst = rng.normal(0.0, 2.0, n_days)
        frame = pd.DataFrame(
            {
                "id": sid,
                "lon": lon,
                "lat": lat,
                "date": dates,
                "lst": lst,
                "humidity": rng.normal(0.0, 1.0, n_days),
                "lst_max": rng.normal(0.0, 2.0, n_days),
                "humidity_max": rng.normal(0.0, 1.0, n_days),
            }
        )
        frame["temperature"] = (
            seasonal_truth(day, peak_day=peak[sid]) + lst_coef * lst + noise * rng.normal(size=n_days)
        )
        if forest is not None:
            frame["forest"] = forest[sid]
        frames.append(frame)
    return pd.DataFrame(pd.concat(frames, ignore_index=True))


@pytest.fixture
def synthetic_data() -> pd.DataFrame:
    """Five stations, one year of daily data."""
    return make_synthetic()


@pytest.fixture
def three_station_data() -> pd.DataFrame:
    """Three stations at distinct coordinates, one year of daily data."""
    coords = {k: STATION_COORDS[k] for k in ("A", "B", "C")}
    return make_synthetic(coords)
