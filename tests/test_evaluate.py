# tests/test_evaluate.py
import csv
import math
from types import SimpleNamespace

import numpy as np
import pytest

from conftest import FixedPredictor, LevelPredictor
from covid_ude.data.timeseries import TimeseriesDataset
from covid_ude.experiments.evaluate import (
    EvalConfig, evaluate_model, experiment_eval, forecasts_errors, time_steps_errors,
)
from covid_ude.train.callback import save_losses, save_params


def _test_ds():
    ts = np.arange(10, 14, dtype=float)
    return TimeseriesDataset(np.array([[1.0, 2.0, 3.0, 4.0], [10.0, 10.0, 10.0, 10.0]]), (0.0, 13.0), ts)

def _train_ds():
    ts = np.arange(10, dtype=float)
    return TimeseriesDataset(np.ones((2, 10)), (0.0, 9.0), ts)

CFG = EvalConfig(metrics=["mae", "rmse"], forecast_ranges=[2, 4], labels=["deaths", "total confirmed"])


def test_table_is_keyed_by_horizon_then_metric():
    pred = np.array([[1.0, 2.0, 3.0, 8.0], [10.0, 11.0, 10.0, 10.0]])
    rows = forecasts_errors(CFG, pred, _test_ds())
    assert [(r["horizon"], r["metric"]) for r in rows] == [(2, "mae"), (2, "rmse"), (4, "mae"), (4, "rmse")]
    assert rows[0]["deaths"] == 0.0
    assert rows[0]["total confirmed"] == pytest.approx(0.5)
    assert rows[2]["deaths"] == pytest.approx(1.0)
    assert rows[3]["deaths"] == pytest.approx(2.0)

def test_horizon_longer_than_test_data():
    with pytest.raises(ValueError):
        forecasts_errors(EvalConfig(["mae"], [5], ["a", "b"]), np.zeros((2, 4)), _test_ds())

def test_time_steps_errors_are_absolute():
    errs = time_steps_errors(["deaths", "total confirmed"], np.zeros((2, 4)), _test_ds())
    np.testing.assert_array_equal(errs["deaths"], [1.0, 2.0, 3.0, 4.0])

def test_failed_forecast_is_infinitely_wrong():
    ev = evaluate_model(CFG, FixedPredictor(np.ones((2, 14)), ok=False), np.zeros(1), _train_ds(), _test_ds())
    assert not ev.ok
    assert all(math.isinf(r["deaths"]) for r in ev.errors)

def test_failed_fit_keeps_a_valid_forecast():
    class ForecastOnly(LevelPredictor):
        # the train span (0, 9) fails, the longer forecast span solves
        def __call__(self, params, tspan, saveat):
            traj = super().__call__(params, tspan, saveat)
            return traj._replace(ok=tspan[1] > 9.0)

    ev = evaluate_model(CFG, ForecastOnly(), np.array([1.0, 0.0]), _train_ds(), _test_ds())
    assert not ev.fit_ok
    assert ev.ok
    assert np.isfinite(ev.pred).all()
    assert ev.errors[0]["deaths"] == pytest.approx(0.5)

def test_experiment_eval_renders_every_artifact(tmp_path):
    setup = SimpleNamespace(
        predictor=LevelPredictor(),
        p0=np.zeros(2),
        train_dataset=_train_ds(),
        test_dataset=_test_ds(),
        effective_reproduction_number=lambda params: (np.arange(14.0), np.full(14, 1.2)),
    )
    save_losses(tmp_path / "u.adam.losses.npz", [3.0, 2.0], [np.nan, np.nan], [1.0, 1.0])
    save_params(tmp_path / "u.adam.params.eqx", np.array([1.0, 0.0]))
    save_params(tmp_path / "other.adam.params.eqx", np.array([1.0, 0.0]))

    evals = experiment_eval("u", setup, CFG, tmp_path)
    assert list(evals) == ["u.adam"]
    for name in ("u.adam.losses.png", "u.adam.forecasts.png", "u.adam.errors.csv",
                 "u.adam.time_steps_errors.csv", "u.adam.R_effective.png"):
        assert (tmp_path / name).exists(), name
    assert not (tmp_path / "other.adam.errors.csv").exists()

    with open(tmp_path / "u.adam.errors.csv") as f:
        rows = list(csv.reader(f))
    assert rows[0] == ["horizon", "metric", "deaths", "total confirmed"]
    assert len(rows) == 1 + 4
