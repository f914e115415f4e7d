# covid_ude/data/covid.py
"""
Per-location Covid-19 case counts.

Expected CSV layout (one file per location, `<data_root>/<loc>.csv`):

    date,confirmed_total,deaths_total,population
    2021-07-01,1200,12,97338583
    ...

Only `date`, `confirmed_total` and `deaths_total` are required per row; `population`
may be given on the first row only.
"""
from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import numpy as np

from covid_ude.data.timeseries import TimeseriesDataset


DEFAULT_DATA_ROOT = "datasets"
DATA_COLS = ("deaths_total", "confirmed_total")
LABELS = ["deaths", "total confirmed"]


@dataclass
class LocationData:
    location: str
    dates: np.ndarray             # (T,) datetime64[D]
    confirmed_total: np.ndarray   # (T,)
    deaths_total: np.ndarray      # (T,)
    population: float


def get_location_files(root: str | Path):
    return sorted(Path(root).glob("*.csv"))

def get_location_names(root: str | Path) -> List[str]:
    return [p.stem for p in get_location_files(root)]

def load_location(loc: str, root: str | Path = DEFAULT_DATA_ROOT) -> LocationData:
    path = Path(root) / f"{loc}.csv"
    if not path.exists():
        avail = ", ".join(get_location_names(root))
        raise FileNotFoundError(
            f"{path} not found.\n"
            f"data_root = {root}\n"
            f"Available locations here: [{avail}]"
        )

    dates, confirmed, deaths = [], [], []
    population = None
    with open(path, "r", newline="") as f:
        for row in csv.DictReader(f):
            dates.append(np.datetime64(row["date"], "D"))
            confirmed.append(float(row["confirmed_total"]))
            deaths.append(float(row["deaths_total"]))
            if population is None and row.get("population"):
                population = float(row["population"])
    if population is None:
        raise ValueError(f"{path}: no population value found")

    order = np.argsort(np.asarray(dates))
    return LocationData(
        location=loc,
        dates=np.asarray(dates)[order],
        confirmed_total=np.asarray(confirmed)[order],
        deaths_total=np.asarray(deaths)[order],
        population=population,
    )


# ---------------------------
# Preprocessing
# ---------------------------
def moving_average(xs: np.ndarray, n: int = 7) -> np.ndarray:
    """Trailing mean over the last `n` values (fewer at the start of the series)."""
    xs = np.asarray(xs, dtype=float)
    csum = np.concatenate([[0.0], np.cumsum(xs)])
    idx = np.arange(1, len(xs) + 1)
    lo = np.maximum(idx - n, 0)
    return (csum[idx] - csum[lo]) / (idx - lo)

def outbreak_start(data: LocationData, min_confirmed: float = 500.0, min_deaths: float = 5.0) -> int:
    """Index of the first day with enough confirmed cases and deaths."""
    ok = (data.confirmed_total >= min_confirmed) & (data.deaths_total >= min_deaths)
    hits = np.flatnonzero(ok)
    if hits.size == 0:
        raise ValueError(
            f"{data.location}: never reaches {min_confirmed} confirmed and {min_deaths} deaths"
        )
    return int(hits[0])

def train_test_split(values: np.ndarray, start: int, train_range: int, forecast_range: int
                     ) -> Tuple[TimeseriesDataset, TimeseriesDataset]:
    """
    values: (n_vars, T). Training covers `train_range` days from `start`, testing the
    `forecast_range` days right after. Times are days since `start` for both.
    """
    stop = start + train_range + forecast_range
    if stop > values.shape[1]:
        raise ValueError(
            f"need {train_range + forecast_range} days from index {start}, "
            f"only {values.shape[1] - start} available"
        )
    t_train = np.arange(train_range, dtype=float)
    t_test = np.arange(train_range, train_range + forecast_range, dtype=float)
    train = TimeseriesDataset(values[:, start:start + train_range], (0.0, t_train[-1]), t_train)
    test = TimeseriesDataset(values[:, start + train_range:stop], (0.0, t_test[-1]), t_test)
    return train, test


def seird_initial_state(population: float, deaths0: float, confirmed0: float) -> np.ndarray:
    """Initial [S, E, I, R, D, C, N] guessed from the first observed totals."""
    I0 = (confirmed0 - deaths0) // 2
    R0 = confirmed0 - I0 - deaths0
    N0 = population - deaths0
    E0 = 2 * I0
    S0 = population - confirmed0 - E0
    return np.array([S0, E0, I0, R0, deaths0, confirmed0, N0], dtype=float)


def experiment_covid19_data(loc: str, train_range: int, forecast_range: int, *,
                            root: str | Path = DEFAULT_DATA_ROOT, ma7: bool = True):
    """
    Returns (train_dataset, test_dataset, u0) with observed variables
    [deaths_total, confirmed_total] (state indices 4 and 5 of the SEIRD model).
    """
    data = load_location(loc, root)
    start = outbreak_start(data)
    values = np.stack([data.deaths_total, data.confirmed_total], axis=0)
    if ma7:
        values = np.stack([moving_average(v, 7) for v in values], axis=0)
    train, test = train_test_split(values, start, train_range, forecast_range)
    u0 = seird_initial_state(data.population, train.data[0, 0], train.data[1, 0])
    return train, test, u0
