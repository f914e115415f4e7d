# covid_ude/train/callback.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import equinox as eqx

from covid_ude.utils.log import log


BEST_BY = ("train", "eval")


# ---------------------------
# Persistence
# ---------------------------
def save_losses(path: Path, train, eval_, test):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        train=np.asarray(train, dtype=float),
        eval=np.asarray(eval_, dtype=float),
        test=np.asarray(test, dtype=float),
    )

def load_losses(path: Path) -> dict:
    with np.load(Path(path)) as f:
        return {k: f[k] for k in ("train", "eval", "test")}

def save_params(path: Path, params: np.ndarray):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    eqx.tree_serialise_leaves(str(path), np.asarray(params, dtype=float))

def load_params(path: Path, like) -> np.ndarray:
    """`like` is anything with the saved vector's shape, e.g. np.zeros(n)."""
    template = np.zeros(np.shape(like), dtype=float)
    return np.asarray(eqx.tree_deserialise_leaves(str(path), template))


# ---------------------------
# State + config
# ---------------------------
@dataclass
class CallbackState:
    best_parameters: np.ndarray
    best_loss: float = float("inf")
    iterations: int = 0
    train_losses: List[float] = field(default_factory=list)
    eval_losses: List[float] = field(default_factory=list)
    test_losses: List[float] = field(default_factory=list)

    @classmethod
    def seeded(cls, params, best_loss: float = float("inf")) -> "CallbackState":
        return cls(best_parameters=np.array(params, dtype=float, copy=True), best_loss=float(best_loss))


@dataclass
class CallbackConfig:
    eval_loss: Optional[Callable] = None
    test_loss: Optional[Callable] = None
    losses_save_fpath: Optional[Path] = None
    losses_save_interval: int = 1
    params_save_fpath: Optional[Path] = None
    params_save_interval: int = 1
    best_by: str = "train"           # "train" | "eval"
    show_progress: bool = False
    progress_interval: int = 100
    progress_prefix: str = ""


class CheckpointCallback:
    """
    Per-iteration hook handed to the optimizer. Tracks the best parameters seen so far
    (by train loss or by eval loss, fixed at construction), records loss histories and
    persists both every few iterations. Never asks the optimizer to stop.
    """

    def __init__(self, state: CallbackState, config: CallbackConfig):
        if config.best_by not in BEST_BY:
            raise ValueError(f"best_by must be one of {BEST_BY}, got '{config.best_by}'")
        if config.best_by == "eval" and config.eval_loss is None:
            raise ValueError("best_by='eval' needs an eval_loss")
        if config.losses_save_interval < 1 or config.params_save_interval < 1:
            raise ValueError("save intervals must be >= 1")
        self.state = state
        self.config = config

    def __call__(self, params, train_loss) -> bool:
        st, cfg = self.state, self.config
        params = np.array(params, dtype=float, copy=True)
        if params.shape != st.best_parameters.shape:
            raise ValueError(
                f"parameter shape {params.shape} does not match {st.best_parameters.shape}"
            )

        train_loss = float(train_loss)
        eval_loss = float(cfg.eval_loss(params)) if cfg.eval_loss is not None else float("nan")
        test_loss = float(cfg.test_loss(params)) if cfg.test_loss is not None else float("nan")

        score = eval_loss if cfg.best_by == "eval" else train_loss
        if score < st.best_loss:
            st.best_loss = score
            st.best_parameters = params

        st.iterations += 1

        if st.iterations % cfg.losses_save_interval == 0:
            st.train_losses.append(train_loss)
            st.eval_losses.append(eval_loss)
            st.test_losses.append(test_loss)
            self._save_losses()

        if st.iterations % cfg.params_save_interval == 0:
            self._save_params()

        if cfg.show_progress and st.iterations % cfg.progress_interval == 0:
            log(f"{cfg.progress_prefix}iter {st.iterations} | train={train_loss:.6g} "
                f"eval={eval_loss:.6g} test={test_loss:.6g} | best={st.best_loss:.6g}")

        return False

    def _save_losses(self):
        if self.config.losses_save_fpath is not None:
            st = self.state
            save_losses(self.config.losses_save_fpath, st.train_losses, st.eval_losses, st.test_losses)

    def _save_params(self):
        if self.config.params_save_fpath is not None:
            save_params(self.config.params_save_fpath, self.state.best_parameters)

    def flush(self):
        """Persist history and best parameters now, regardless of the intervals."""
        self._save_losses()
        self._save_params()
