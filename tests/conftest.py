# tests/conftest.py
from __future__ import annotations
from types import SimpleNamespace
import threading

import numpy as np
import jax.numpy as jnp
import pytest

# enables float64 before any model gets built
from covid_ude.train.predictor import Trajectory
from covid_ude.data.timeseries import TimeseriesDataset
from covid_ude.train.optimizers import check_cancelled
from covid_ude.utils.metrics import mae


class FixedPredictor:
    """Always returns the same trajectory, whatever the parameters."""
    def __init__(self, ys, ok=True):
        self.ys = jnp.asarray(ys, dtype=float)
        self.ok = ok
        self.calls = []

    def __call__(self, params, tspan, saveat):
        self.calls.append((tuple(tspan), np.asarray(saveat).copy()))
        n = len(saveat)
        return Trajectory(self.ys[:, :n], jnp.asarray(self.ok))


class LevelPredictor:
    """Every observed variable sits at params[0] for all times."""
    def __init__(self, nvars=2, ok=True, location=None):
        self.nvars = nvars
        self.ok = ok
        self.location = location

    def __call__(self, params, tspan, saveat):
        ys = jnp.ones((self.nvars, len(saveat))) * jnp.asarray(params)[0]
        return Trajectory(ys, jnp.asarray(self.ok))


def stepping_minimize(step=-0.1, sleep=0.0):
    """Fake optimizer: moves params[0] by `step` each iteration."""
    import time

    def minimize(objective, params0, config, max_iterations, callback, cancel=None):
        p = np.array(params0, dtype=float)
        for _ in range(max_iterations):
            check_cancelled(cancel)
            if sleep:
                time.sleep(sleep)
            if callback(p, float(objective(p))):
                break
            p = p.copy()
            p[0] += step
        return p
    return minimize


def make_dataset(nvars=2, nsteps=8, value=1.0, t0=0.0):
    ts = np.arange(nsteps, dtype=float) + t0
    return TimeseriesDataset(np.full((nvars, nsteps), value), (t0, ts[-1]), ts)


def fake_setup_factory(train_steps=8, test_steps=4, ok=True, train_value=1.0, test_value=1.0, p0=(2.0, 0.0)):
    def model_setup(location, hyperparams):
        train = make_dataset(nsteps=train_steps, value=train_value)
        t = np.arange(train_steps, train_steps + test_steps, dtype=float)
        test_data = np.array(np.broadcast_to(test_value, (2, test_steps)), dtype=float)
        test = TimeseriesDataset(test_data, (0.0, t[-1]), t)
        return SimpleNamespace(
            location=location,
            predictor=LevelPredictor(ok=ok, location=location),
            p0=np.array(p0, dtype=float),
            train_dataset=train,
            test_dataset=test,
            labels=["deaths", "total confirmed"],
            metric=mae,
            regularized=False,
        )
    return model_setup


class RecordingEvaluate:
    """Stands in for the renderer; tracks how many run at once."""
    def __init__(self, hold=0.0):
        self.hold = hold
        self.locations = []
        self._active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, uuid, setup, eval_config, snapshots_dir, recorder=None):
        import time
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        time.sleep(self.hold)
        with self._lock:
            self._active -= 1
            self.locations.append(setup.location)


@pytest.fixture
def dataset():
    return make_dataset()
