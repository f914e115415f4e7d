# covid_ude/experiments/evaluate.py
from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence

import numpy as np
import jax.numpy as jnp

from covid_ude.data.timeseries import TimeseriesDataset
from covid_ude.train.callback import load_losses, load_params
from covid_ude.train.session import lookup_saved_params
from covid_ude.utils.log import log
from covid_ude.utils.metrics import get_metric
from covid_ude.utils.plotting import (
    plot_effective_reproduction_number, plot_forecasts, plot_losses,
)


@dataclass
class EvalConfig:
    metrics: Sequence[str] = ("mae", "mape", "rmse", "rmsle")
    forecast_ranges: Sequence[int] = (7, 14, 21, 28)
    labels: Sequence[str] = field(default_factory=list)


@dataclass
class Evaluation:
    ok: bool                        # forecast usable; the error tables depend on it
    fit_ok: bool
    fit: np.ndarray                 # (n_vars, n_train)
    pred: np.ndarray                # (n_vars, n_test)
    errors: List[dict]              # rows: horizon, metric, <label>...
    time_steps_errors: Dict[str, np.ndarray]


# ---------------------------
# Tables
# ---------------------------
def forecasts_errors(config: EvalConfig, pred, test_dataset: TimeseriesDataset) -> List[dict]:
    """
    One row per (horizon, metric), one column per label, each entry the metric over
    the first `horizon` test steps of that variable.
    """
    pred = np.asarray(pred, dtype=float)
    rows = []
    for h in config.forecast_ranges:
        if h > len(test_dataset):
            raise ValueError(f"horizon {h} exceeds the {len(test_dataset)} test steps")
        for name in config.metrics:
            metric = get_metric(name)
            row = {"horizon": int(h), "metric": name}
            for i, label in enumerate(config.labels):
                row[label] = float(metric(jnp.asarray(pred[i, :h]), jnp.asarray(test_dataset.data[i, :h])))
            rows.append(row)
    return rows

def time_steps_errors(labels: Sequence[str], pred, test_dataset: TimeseriesDataset) -> Dict[str, np.ndarray]:
    """Absolute error at every test step, per label."""
    err = np.abs(np.asarray(pred, dtype=float) - test_dataset.data)
    return {label: err[i] for i, label in enumerate(labels)}

def write_rows_csv(rows: List[dict], path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    header = list(rows[0].keys()) if rows else []
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(header)
        for r in rows:
            w.writerow([r[k] for k in header])

def write_time_steps_csv(errors: Dict[str, np.ndarray], tsteps, path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    labels = list(errors)
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["t"] + labels)
        for k, t in enumerate(tsteps):
            w.writerow([float(t)] + [float(errors[l][k]) for l in labels])


# ---------------------------
# Evaluation
# ---------------------------
def evaluate_model(config: EvalConfig, predictor, params,
                   train_dataset: TimeseriesDataset, test_dataset: TimeseriesDataset) -> Evaluation:
    fit = predictor(params, train_dataset.tspan, train_dataset.tsteps)
    pred = predictor(params, test_dataset.tspan, test_dataset.tsteps)
    fit_ok = bool(fit.ok)
    ok = bool(pred.ok) and pred.ys.shape == test_dataset.data.shape
    fit_ys = np.asarray(fit.ys, dtype=float)
    pred_ys = np.asarray(pred.ys, dtype=float)
    if not ok:
        # a failed forecast is infinitely wrong at every horizon
        pred_ys = np.full(test_dataset.data.shape, np.inf)
    return Evaluation(
        ok=ok,
        fit_ok=fit_ok,
        fit=fit_ys,
        pred=pred_ys,
        errors=forecasts_errors(config, pred_ys, test_dataset),
        time_steps_errors=time_steps_errors(config.labels, pred_ys, test_dataset),
    )


def experiment_eval(uuid: str, setup, eval_config: EvalConfig, snapshots_dir: Path,
                    recorder=None, show_progress: bool = False) -> Dict[str, Evaluation]:
    """
    Render reports for every artifact persisted under `snapshots_dir` for `uuid`:
    loss plots for loss histories; forecasts plot, error tables and Re plot for
    parameters. Not safe to run concurrently (matplotlib).
    """
    snapshots_dir = Path(snapshots_dir)
    saved = lookup_saved_params(snapshots_dir, uuid)
    for fpath in saved["losses"]:
        plot_losses(load_losses(fpath), fpath.with_suffix(".png"), title=fpath.stem)

    evaluations = {}
    template = np.zeros(len(setup.p0))
    train, test = setup.train_dataset, setup.test_dataset
    for fpath in saved["params"]:
        name = fpath.name[: -len(".params.eqx")]
        params = load_params(fpath, template)
        ev = evaluate_model(eval_config, setup.predictor, params, train, test)
        evaluations[name] = ev
        log(f"{name}: fit {'ok' if ev.fit_ok else 'FAILED'}, "
            f"forecast {'ok' if ev.ok else 'FAILED'}", enabled=show_progress)

        plot_forecasts(train, test, ev.fit, ev.pred, eval_config.labels,
                       snapshots_dir / f"{name}.forecasts.png", title=name)
        write_rows_csv(ev.errors, snapshots_dir / f"{name}.errors.csv")
        write_time_steps_csv(ev.time_steps_errors, test.tsteps, snapshots_dir / f"{name}.time_steps_errors.csv")

        re = setup.effective_reproduction_number(params)
        if re is not None:
            ts, values = re
            plot_effective_reproduction_number(ts, values, float(train.tsteps[-1]),
                                               snapshots_dir / f"{name}.R_effective.png", title=name)

    if recorder is not None:
        recorder.save(snapshots_dir / f"{uuid}.growing.gif")
    return evaluations
