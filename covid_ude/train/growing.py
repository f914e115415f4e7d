# covid_ude/train/growing.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import numpy as np

from covid_ude.data.timeseries import TimeseriesDataset
from covid_ude.train import optimizers
from covid_ude.train.callback import save_losses, save_params
from covid_ude.train.loss import Loss
from covid_ude.train.optimizers import check_cancelled
from covid_ude.train.session import TrainingStage, train_model
from covid_ude.utils.log import log


def growing_windows(w0: int, dw: int, W: int) -> List[int]:
    """w0, w0+dw, w0+2dw, ... up to W; W is always the last window."""
    if w0 < 1 or dw < 1 or w0 > W:
        raise ValueError(f"need 1 <= w0 <= W and dw >= 1, got w0={w0} dw={dw} W={W}")
    ws = list(range(w0, W + 1, dw))
    if ws[-1] != W:
        ws.append(W)
    return ws

def window_maxiters(w: int, w0: int, dw: int, base: int, growth: int) -> int:
    # proportional to how far the window grew past w0
    return int(base + round(growth * (w - w0) / dw))


@dataclass
class GrowingFitResult:
    parameters: np.ndarray
    best_loss: float
    windows: List[int] = field(default_factory=list)
    train_losses: List[float] = field(default_factory=list)
    eval_losses: List[float] = field(default_factory=list)
    test_losses: List[float] = field(default_factory=list)


def growing_fit(
    uuid: str,
    metric: Callable,
    predictor,
    train_dataset: TimeseriesDataset,
    p0,
    stages: Sequence[TrainingStage],
    snapshots_dir: Path,
    *,
    window_initial: int,
    window_growth: int,
    maxiters_initial: int,
    maxiters_growth: int,
    batchsize: int | None = None,
    regularized: bool = False,
    eval_loss: Optional[Callable] = None,
    test_loss: Optional[Callable] = None,
    best_by: str = "train",
    recorder=None,
    losses_save_interval: int = 1,
    params_save_interval: int = 1,
    show_progress: bool = False,
    cancel: Optional[threading.Event] = None,
    minimize: Callable = optimizers.minimize,
) -> GrowingFitResult:
    """
    Fit on a prefix of the training data and grow it window by window until it
    covers the whole series. Each window starts from the previous window's
    parameters and gets a larger iteration budget.
    """
    snapshots_dir = Path(snapshots_dir)
    windows = growing_windows(window_initial, window_growth, len(train_dataset))
    result = GrowingFitResult(parameters=np.array(p0, dtype=float, copy=True),
                              best_loss=float("inf"))

    for i, w in enumerate(windows, start=1):
        check_cancelled(cancel)
        maxiters = window_maxiters(w, window_initial, window_growth, maxiters_initial, maxiters_growth)
        log(f"{uuid} >>> window {i}/{len(windows)} | steps={w} | maxiters={maxiters}",
            enabled=show_progress)

        view = train_dataset.window(w)
        loss = Loss(metric, predictor, view, batchsize, regularized=regularized)
        window_stages = [replace(s, max_iterations=maxiters) for s in stages]
        session = train_model(
            f"{uuid}.w{w}",
            loss,
            eval_loss,
            test_loss,
            result.parameters,
            window_stages,
            snapshots_dir / "windows",
            best_by=best_by,
            losses_save_interval=losses_save_interval,
            params_save_interval=params_save_interval,
            show_progress=show_progress,
            cancel=cancel,
            minimize=minimize,
        )

        result.parameters = session.parameters
        result.best_loss = session.best_loss
        result.windows.append(w)
        result.train_losses.extend(session.train_losses)
        result.eval_losses.extend(session.eval_losses)
        result.test_losses.extend(session.test_losses)

        if recorder is not None:
            recorder.record(result.parameters, title=f"{uuid} | window {w}/{len(train_dataset)}")

    losses_fpath = snapshots_dir / f"{uuid}.growing.losses.npz"
    params_fpath = snapshots_dir / f"{uuid}.growing.params.eqx"
    save_losses(losses_fpath, result.train_losses, result.eval_losses, result.test_losses)
    save_params(params_fpath, result.parameters)
    return result
