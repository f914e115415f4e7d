# covid_ude/utils/plotting.py
from __future__ import annotations
from pathlib import Path
from typing import List, Sequence

import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib import animation

# pyplot is not thread-safe: callers hold the runner's render lock


def plot_losses(losses: dict, savepath: Path, title: str = ""):
    fig, ax = plt.subplots(figsize=(6.0, 3.3))
    for name in ("train", "eval", "test"):
        hist = np.asarray(losses.get(name, []), dtype=float)
        if hist.size and np.isfinite(hist).any():
            ax.plot(hist, lw=1.8, label=name)
    ax.set_yscale("log")
    ax.set_xlabel("iteration"); ax.set_ylabel("loss")
    ax.grid(True, alpha=0.3); ax.legend()
    if title: ax.set_title(title)
    savepath.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout(); fig.savefig(savepath, dpi=200); plt.close(fig)


def _draw_forecasts(axs, train, test, fit, pred, labels: Sequence[str]):
    for i, (ax, label) in enumerate(zip(axs, labels)):
        ax.cla()
        ax.scatter(train.tsteps, train.data[i], s=8, c="gray", label="train data")
        ax.scatter(test.tsteps, test.data[i], s=8, c="k", label="test data")
        ax.plot(train.tsteps, fit[i], lw=2, c="#1f77b4", label="fit")
        ax.plot(test.tsteps, pred[i], lw=2, c="crimson", label="forecast")
        ax.axvline(train.tsteps[-1], c="gray", ls="--", lw=1)
        ax.set_title(label); ax.set_xlabel("day")
        ax.grid(True, alpha=0.3)
    axs[0].legend(fontsize=8)

def plot_forecasts(train, test, fit, pred, labels: Sequence[str], savepath: Path, title: str = ""):
    fig, axs = plt.subplots(1, len(labels), figsize=(5.0 * len(labels), 4.0), squeeze=False)
    _draw_forecasts(axs[0], train, test, np.asarray(fit), np.asarray(pred), labels)
    if title: fig.suptitle(title)
    savepath.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout(); fig.savefig(savepath, dpi=200); plt.close(fig)


def plot_effective_reproduction_number(tsteps, re, split_t: float, savepath: Path, title: str = ""):
    fig, ax = plt.subplots(figsize=(6.0, 3.3))
    ax.plot(tsteps, re, lw=2, c="#1f77b4")
    ax.axhline(1.0, c="k", lw=1, alpha=0.5)
    ax.axvline(split_t, c="gray", ls="--", lw=1)
    ax.set_xlabel("day"); ax.set_ylabel(r"$\mathcal{R}_e$")
    ax.grid(True, alpha=0.3)
    if title: ax.set_title(title)
    savepath.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout(); fig.savefig(savepath, dpi=200); plt.close(fig)


class ForecastRecorder:
    """Collects fit/forecast frames during a growing fit and renders them as a GIF."""

    def __init__(self, predictor, train_dataset, test_dataset, labels: Sequence[str]):
        self.predictor = predictor
        self.train = train_dataset
        self.test = test_dataset
        self.labels = list(labels)
        self.frames: List[tuple] = []

    def record(self, params, title: str = ""):
        fit = self.predictor(params, self.train.tspan, self.train.tsteps)
        pred = self.predictor(params, self.test.tspan, self.test.tsteps)
        self.frames.append((np.asarray(fit.ys), np.asarray(pred.ys), title))

    def save(self, savepath: Path, fps: int = 2):
        if not self.frames:
            return
        fig, axs = plt.subplots(1, len(self.labels), figsize=(5.0 * len(self.labels), 4.0), squeeze=False)

        def animate(k):
            fit, pred, title = self.frames[k]
            _draw_forecasts(axs[0], self.train, self.test, fit, pred, self.labels)
            fig.suptitle(title)
            return list(axs[0])

        anim = animation.FuncAnimation(fig, animate, frames=len(self.frames), blit=False)
        savepath.parent.mkdir(parents=True, exist_ok=True)
        anim.save(str(savepath), writer="pillow", fps=fps)
        plt.close(fig)
