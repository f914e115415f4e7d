# covid_ude/train/session.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from covid_ude.train import optimizers
from covid_ude.train.callback import CallbackConfig, CallbackState, CheckpointCallback
from covid_ude.train.optimizers import OptimizerConfig, TrainingCancelled
from covid_ude.utils.log import log


@dataclass(frozen=True)
class TrainingStage:
    name: str
    optimizer: OptimizerConfig
    max_iterations: int

    @classmethod
    def from_dict(cls, d: dict) -> "TrainingStage":
        d = dict(d)
        opt = OptimizerConfig.from_dict(d.pop("optimizer", {}))
        return cls(name=str(d.pop("name")), optimizer=opt, max_iterations=int(d.pop("max_iterations")))


@dataclass
class SessionResult:
    parameters: np.ndarray                      # last stage's best parameters
    best_loss: float
    minimizers: List[np.ndarray] = field(default_factory=list)   # per stage
    train_losses: List[float] = field(default_factory=list)
    eval_losses: List[float] = field(default_factory=list)
    test_losses: List[float] = field(default_factory=list)


def stage_paths(snapshots_dir: Path, uuid: str, stage_name: str):
    base = Path(snapshots_dir) / f"{uuid}.{stage_name}"
    return base.with_name(base.name + ".losses.npz"), base.with_name(base.name + ".params.eqx")

def lookup_saved_params(snapshots_dir: Path, uuid: str | None = None) -> Dict[str, List[Path]]:
    """Persisted artifacts under `snapshots_dir`, grouped by kind ("losses" / "params")."""
    pattern = f"{uuid}.*" if uuid else "*"
    root = Path(snapshots_dir)
    return {
        "losses": sorted(root.glob(pattern + ".losses.npz")),
        "params": sorted(root.glob(pattern + ".params.eqx")),
    }


def train_model(
    uuid: str,
    train_loss: Callable,
    eval_loss: Optional[Callable],
    test_loss: Optional[Callable],
    p0,
    stages: Sequence[TrainingStage],
    snapshots_dir: Path,
    *,
    best_by: str = "train",
    best_loss: float = float("inf"),
    losses_save_interval: int = 1,
    params_save_interval: int = 1,
    show_progress: bool = False,
    progress_interval: int = 100,
    cancel: Optional[threading.Event] = None,
    minimize: Callable = optimizers.minimize,
) -> SessionResult:
    """
    Run `stages` one after another, each starting from the best parameters of the
    previous one. A failing stage is logged and skipped; cancellation aborts the
    whole sequence.
    """
    snapshots_dir = Path(snapshots_dir)
    snapshots_dir.mkdir(parents=True, exist_ok=True)

    params = np.array(p0, dtype=float, copy=True)
    result = SessionResult(parameters=params, best_loss=float(best_loss))

    for stage in stages:
        losses_fpath, params_fpath = stage_paths(snapshots_dir, uuid, stage.name)
        state = CallbackState.seeded(params, result.best_loss)
        callback = CheckpointCallback(state, CallbackConfig(
            eval_loss=eval_loss,
            test_loss=test_loss,
            losses_save_fpath=losses_fpath,
            losses_save_interval=losses_save_interval,
            params_save_fpath=params_fpath,
            params_save_interval=params_save_interval,
            best_by=best_by,
            show_progress=show_progress,
            progress_interval=progress_interval,
            progress_prefix=f"{uuid}.{stage.name} | ",
        ))

        log(f"{uuid}: stage '{stage.name}' ({stage.optimizer.kind}, {stage.max_iterations} iters)",
            enabled=show_progress)
        failed = False
        try:
            minimize(train_loss, np.array(params, copy=True), stage.optimizer,
                     stage.max_iterations, callback, cancel)
        except (TrainingCancelled, KeyboardInterrupt):
            callback.flush()
            raise
        except Exception as e:
            log(f"{uuid}: stage '{stage.name}' failed, keeping previous parameters: "
                f"{type(e).__name__}: {e}")
            failed = True

        callback.flush()
        result.train_losses.extend(state.train_losses)
        result.eval_losses.extend(state.eval_losses)
        result.test_losses.extend(state.test_losses)
        if not failed:
            params = np.array(state.best_parameters, copy=True)
            result.best_loss = state.best_loss
        result.minimizers.append(np.array(params, copy=True))
        result.parameters = params

    return result
