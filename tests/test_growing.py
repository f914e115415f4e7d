# tests/test_growing.py
import threading

import numpy as np
import pytest

from conftest import LevelPredictor, make_dataset
from covid_ude.train.callback import load_params
from covid_ude.train.growing import growing_fit, growing_windows, window_maxiters
from covid_ude.train.optimizers import OptimizerConfig, TrainingCancelled
from covid_ude.train.session import TrainingStage
from covid_ude.utils.metrics import mae


STAGES = [TrainingStage("adam", OptimizerConfig(), 1), TrainingStage("lbfgs", OptimizerConfig(kind="lbfgs"), 1)]


def test_windows_always_end_on_full_horizon():
    assert growing_windows(4, 4, 12) == [4, 8, 12]
    assert growing_windows(4, 4, 10) == [4, 8, 10]
    assert growing_windows(10, 3, 10) == [10]

@pytest.mark.parametrize("args", [(0, 1, 5), (3, 0, 5), (6, 1, 5)])
def test_bad_windows(args):
    with pytest.raises(ValueError):
        growing_windows(*args)

def test_maxiters_grow_with_the_window():
    assert [window_maxiters(w, 4, 4, 100, 50) for w in (4, 8, 12)] == [100, 150, 200]
    assert window_maxiters(10, 4, 4, 100, 50) == 175


class SpyMinimize:
    """Records what each optimizer run saw, then lowers params[0] by one per iteration."""
    def __init__(self):
        self.runs = []

    def __call__(self, objective, params0, config, max_iterations, callback, cancel=None):
        self.runs.append(dict(
            window=len(objective.dataset),
            last_t=float(objective.dataset.tsteps[-1]),
            start=np.array(params0, copy=True),
            maxiters=max_iterations,
            kind=config.kind,
        ))
        p = np.array(params0, dtype=float)
        for _ in range(max_iterations):
            p = p.copy()
            p[0] -= 1.0
            callback(p, float(objective(p)))
        return p


class FrameRecorder:
    def __init__(self):
        self.frames = []

    def record(self, params, title=""):
        self.frames.append((np.array(params, copy=True), title))


def test_each_window_restricts_data_and_starts_from_previous(tmp_path):
    ds = make_dataset(nsteps=10, value=-100.0)   # further down is always better
    spy = SpyMinimize()
    rec = FrameRecorder()
    out = growing_fit(
        "loc", mae, LevelPredictor(), ds, np.zeros(2), STAGES, tmp_path,
        window_initial=4, window_growth=4, maxiters_initial=2, maxiters_growth=2,
        recorder=rec, minimize=spy,
    )

    assert out.windows == [4, 8, 10]
    assert [r["window"] for r in spy.runs] == [4, 4, 8, 8, 10, 10]
    assert [r["last_t"] for r in spy.runs] == [3.0, 3.0, 7.0, 7.0, 9.0, 9.0]
    assert [r["maxiters"] for r in spy.runs] == [2, 2, 4, 4, 5, 5]
    assert [r["kind"] for r in spy.runs[:2]] == ["adam", "lbfgs"]

    # every run starts where the previous one left off
    for prev, cur in zip(spy.runs, spy.runs[1:]):
        assert cur["start"][0] < prev["start"][0]
    np.testing.assert_array_equal(spy.runs[2]["start"], [-4.0, 0.0])
    np.testing.assert_array_equal(out.parameters, [-22.0, 0.0])

    assert len(rec.frames) == 3
    np.testing.assert_array_equal(rec.frames[-1][0], out.parameters)
    assert len(out.train_losses) == 2 * (2 + 4 + 5)
    np.testing.assert_array_equal(load_params(tmp_path / "loc.growing.params.eqx", np.zeros(2)), out.parameters)
    assert (tmp_path / "windows" / "loc.w8.adam.params.eqx").exists()

def test_cancelled_before_next_window(tmp_path):
    cancel = threading.Event()
    spy = SpyMinimize()

    class CancelAfterFirst(FrameRecorder):
        def record(self, params, title=""):
            super().record(params, title)
            cancel.set()

    with pytest.raises(TrainingCancelled):
        growing_fit(
            "loc", mae, LevelPredictor(), make_dataset(nsteps=10), np.zeros(2), STAGES, tmp_path,
            window_initial=4, window_growth=4, maxiters_initial=1, maxiters_growth=1,
            recorder=CancelAfterFirst(), cancel=cancel, minimize=spy,
        )
    assert {r["window"] for r in spy.runs} == {4}
