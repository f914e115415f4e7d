# covid_ude/data/timeseries.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple

import numpy as np


def _readonly(a) -> np.ndarray:
    a = np.asarray(a, dtype=float)
    if a.flags.writeable:
        # owned copy; read-only slices of another dataset stay views
        a = a.copy()
        a.flags.writeable = False
    return a


@dataclass(frozen=True)
class TimeseriesDataset:
    """
    Observations of a dynamical system.

      data   : (n_vars, n_steps) observed values, one column per time step
      tspan  : (t0, t1), t0 is where the model's initial state is given
      tsteps : (n_steps,) observation times

    Arrays are read-only once constructed; `window` and `batches` return views.
    """
    data: np.ndarray
    tspan: Tuple[float, float]
    tsteps: np.ndarray

    def __post_init__(self):
        data = _readonly(self.data)
        tsteps = _readonly(self.tsteps).reshape(-1)
        if data.ndim != 2:
            raise ValueError(f"data must be 2-D (vars x steps), got shape {data.shape}")
        if data.shape[1] != tsteps.shape[0]:
            raise ValueError(
                f"data has {data.shape[1]} time steps but tsteps has {tsteps.shape[0]}"
            )
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "tsteps", tsteps)
        object.__setattr__(self, "tspan", (float(self.tspan[0]), float(self.tspan[1])))

    def __len__(self) -> int:
        return int(self.tsteps.shape[0])

    @property
    def nvars(self) -> int:
        return int(self.data.shape[0])

    def window(self, w: int) -> "TimeseriesDataset":
        """First `w` time steps, with the same start time."""
        if not 1 <= w <= len(self):
            raise ValueError(f"window size must be in [1, {len(self)}], got {w}")
        return self._slice(0, w)

    def batches(self, batchsize: int | None = None) -> Iterator["TimeseriesDataset"]:
        """Consecutive batches of `batchsize` steps; the last one may be shorter."""
        n = len(self)
        bs = n if batchsize is None else int(batchsize)
        if bs < 1:
            raise ValueError(f"batchsize must be >= 1, got {batchsize}")
        for s in range(0, n, bs):
            yield self._slice(s, min(s + bs, n))

    def _slice(self, start: int, stop: int) -> "TimeseriesDataset":
        # an IVP always starts from the known initial state at t0
        return TimeseriesDataset(
            self.data[:, start:stop],
            (self.tspan[0], float(self.tsteps[stop - 1])),
            self.tsteps[start:stop],
        )
