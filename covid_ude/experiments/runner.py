# covid_ude/experiments/runner.py
from __future__ import annotations

import dataclasses
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import numpy as np

from covid_ude.experiments.evaluate import EvalConfig, experiment_eval
from covid_ude.train import optimizers
from covid_ude.train.growing import growing_fit
from covid_ude.train.loss import Loss
from covid_ude.train.optimizers import TrainingCancelled, check_cancelled
from covid_ude.train.session import TrainingStage, train_model
from covid_ude.utils.log import log
from covid_ude.utils.metrics import mae, rmse
from covid_ude.utils.plotting import ForecastRecorder


@dataclass
class ExperimentLocks:
    results: threading.Lock = field(default_factory=threading.Lock)   # held only while appending
    render: threading.Lock = field(default_factory=threading.Lock)    # held for a whole evaluation


@dataclass(frozen=True)
class ExperimentResult:
    location: str
    final_parameters: np.ndarray
    final_loss: float


@dataclass
class GrowingConfig:
    window_initial: int = 4
    window_growth: int = 4
    maxiters_initial: int = 100
    maxiters_growth: int = 50
    record_frames: bool = True


def _jsonable(x):
    if dataclasses.is_dataclass(x):
        return dataclasses.asdict(x)
    return x


class ExperimentRunner:
    """
    Train and evaluate one model per location, either one location after another
    or on a thread pool with one task per location.

    Parallel tasks share nothing but `locks` and the `cancel` event: appends to the
    results list go through `locks.results`, evaluation/rendering through
    `locks.render`, and cancelling one task asks the others to stop at their next
    optimizer iteration.
    """

    def __init__(
        self,
        model_name: str,
        model_setup: Callable,
        savedir: Path,
        *,
        fit: str = "sessions",                 # sessions | growing
        multithreading: bool = False,
        max_workers: Optional[int] = None,
        metrics: Sequence[str] = ("mae", "mape", "rmse", "rmsle"),
        forecast_horizons: Sequence[int] = (7, 14, 21, 28),
        batchsize: Optional[int] = None,
        best_by: str = "train",
        growing: Optional[GrowingConfig] = None,
        losses_save_interval: int = 1,
        params_save_interval: int = 1,
        show_progress: bool = False,
        locks: Optional[ExperimentLocks] = None,
        cancel: Optional[threading.Event] = None,
        minimize: Callable = optimizers.minimize,
        evaluate: Callable = experiment_eval,
    ):
        if fit not in ("sessions", "growing"):
            raise ValueError(f"fit must be 'sessions' or 'growing', got '{fit}'")
        self.model_name = model_name
        self.model_setup = model_setup
        self.savedir = Path(savedir)
        self.fit = fit
        self.multithreading = multithreading
        self.max_workers = max_workers
        self.metrics = tuple(metrics)
        self.forecast_horizons = tuple(forecast_horizons)
        self.batchsize = batchsize
        self.best_by = best_by
        self.growing = growing or GrowingConfig()
        self.losses_save_interval = losses_save_interval
        self.params_save_interval = params_save_interval
        self.show_progress = show_progress
        self.locks = locks or ExperimentLocks()
        self.cancel = cancel or threading.Event()
        self.minimize = minimize
        self.evaluate = evaluate

    # ------------------------ one location ------------------------
    def run_location(self, location: str, hyperparams, stages: Sequence[TrainingStage],
                     results: List[ExperimentResult]) -> ExperimentResult:
        check_cancelled(self.cancel)
        timestamp = time.strftime("%Y%m%d%H%M%S")
        uuid = f"{timestamp}.{self.model_name}.{location}"
        snapshots_dir = self.savedir / location
        snapshots_dir.mkdir(parents=True, exist_ok=True)
        meta = dict(
            uuid=uuid,
            location=location,
            fit=self.fit,
            best_by=self.best_by,
            batchsize=self.batchsize,
            hyperparams=_jsonable(hyperparams),
            stages=[dataclasses.asdict(s) for s in stages],
            growing=dataclasses.asdict(self.growing) if self.fit == "growing" else None,
        )
        with open(snapshots_dir / f"{uuid}.hyperparams.json", "w") as f:
            json.dump(meta, f, indent=2)

        log(f"{uuid}: setting up", enabled=self.show_progress)
        setup = self.model_setup(location, hyperparams)
        # eval on the whole train span in one batch; test data is only ever reported
        eval_loss = Loss(setup.metric, setup.predictor, setup.train_dataset, regularized=setup.regularized)
        test_loss = Loss(mae if self.fit == "growing" else rmse, setup.predictor, setup.test_dataset)

        recorder = None
        if self.fit == "growing":
            g = self.growing
            if g.record_frames:
                recorder = ForecastRecorder(setup.predictor, setup.train_dataset,
                                            setup.test_dataset, setup.labels)
            out = growing_fit(
                uuid, setup.metric, setup.predictor, setup.train_dataset,
                np.array(setup.p0, copy=True), stages, snapshots_dir,
                window_initial=g.window_initial, window_growth=g.window_growth,
                maxiters_initial=g.maxiters_initial, maxiters_growth=g.maxiters_growth,
                batchsize=self.batchsize, regularized=setup.regularized,
                eval_loss=eval_loss, test_loss=test_loss, best_by=self.best_by,
                recorder=recorder,
                losses_save_interval=self.losses_save_interval,
                params_save_interval=self.params_save_interval,
                show_progress=self.show_progress, cancel=self.cancel, minimize=self.minimize,
            )
        else:
            train_loss = Loss(setup.metric, setup.predictor, setup.train_dataset,
                              self.batchsize, regularized=setup.regularized)
            out = train_model(
                uuid, train_loss, eval_loss, test_loss,
                np.array(setup.p0, copy=True), stages, snapshots_dir,
                best_by=self.best_by,
                losses_save_interval=self.losses_save_interval,
                params_save_interval=self.params_save_interval,
                show_progress=self.show_progress, cancel=self.cancel, minimize=self.minimize,
            )

        final_loss = out.eval_losses[-1] if out.eval_losses else out.best_loss
        result = ExperimentResult(location, np.array(out.parameters, copy=True), float(final_loss))
        with self.locks.results:
            results.append(result)

        eval_config = EvalConfig(self.metrics, self.forecast_horizons, setup.labels)
        with self.locks.render:
            log(f"{uuid}: evaluating", enabled=self.show_progress)
            self.evaluate(uuid, setup, eval_config, snapshots_dir, recorder=recorder)
        log(f"{uuid}: done | final loss={final_loss:.6g}", enabled=self.show_progress)
        return result

    # ------------------------ all locations ------------------------
    def run_all(self, locations: Sequence[str], hyperparams, stages: Sequence[TrainingStage]
                ) -> List[ExperimentResult]:
        # a runner can be reused after a cancelled run
        self.cancel.clear()
        results: List[ExperimentResult] = []
        if self.multithreading:
            self._run_parallel(locations, hyperparams, stages, results)
        else:
            self._run_sequential(locations, hyperparams, stages, results)
        return results

    def _run_sequential(self, locations, hyperparams, stages, results):
        first_error = None
        for loc in locations:
            try:
                self.run_location(loc, hyperparams, stages, results)
            except (TrainingCancelled, KeyboardInterrupt):
                self.cancel.set()
                raise
            except Exception as e:
                log(f"{self.model_name}.{loc} failed: {type(e).__name__}: {e}")
                first_error = first_error or e
        if first_error is not None:
            raise first_error

    def _run_parallel(self, locations, hyperparams, stages, results):
        first_error = None
        cancelled = None
        ex = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=self.model_name)
        futures = {ex.submit(self.run_location, loc, hyperparams, stages, results): loc
                   for loc in locations}
        try:
            for fut in as_completed(futures):
                if fut.cancelled():
                    continue
                exc = fut.exception()
                if exc is None:
                    continue
                if isinstance(exc, (TrainingCancelled, KeyboardInterrupt)):
                    # siblings stop at their next iteration, queued ones never start
                    self.cancel.set()
                    for f in futures:
                        f.cancel()
                    cancelled = cancelled or exc
                else:
                    log(f"{self.model_name}.{futures[fut]} failed: {type(exc).__name__}: {exc}")
                    first_error = first_error or exc
        except KeyboardInterrupt:
            self.cancel.set()
            ex.shutdown(wait=True, cancel_futures=True)
            raise
        ex.shutdown(wait=True)
        if cancelled is not None:
            raise cancelled
        if first_error is not None:
            raise first_error
