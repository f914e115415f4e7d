# covid_ude/train/loss.py
from __future__ import annotations

from typing import Callable, List

import jax.numpy as jnp

from covid_ude.data.timeseries import TimeseriesDataset


class Loss:
    """
    Scalar loss of a parameter vector against a dataset, evaluated on batches of
    consecutive time steps. Each call consumes the next batch; the cursor wraps
    around after the last one. Returns +inf when the prediction failed or its shape
    does not match the batch.

      metric(yhat, y)                    regularized=False
      metric(yhat, y, params, tsteps)    regularized=True
    """

    def __init__(self, metric: Callable, predictor, dataset: TimeseriesDataset,
                 batchsize: int | None = None, *, regularized: bool = False):
        self.metric = metric
        self.predictor = predictor
        self.dataset = dataset
        self.batchsize = batchsize
        self.regularized = regularized
        self._batches: List[TimeseriesDataset] = list(dataset.batches(batchsize))
        self._idx = 0

    @property
    def nbatches(self) -> int:
        return len(self._batches)

    @property
    def position(self) -> int:
        return self._idx % len(self._batches)

    def reset(self, position: int = 0):
        self._idx = int(position)

    def next_batch(self) -> TimeseriesDataset:
        batch = self._batches[self._idx % len(self._batches)]
        self._idx += 1
        return batch

    def __call__(self, params):
        batch = self.next_batch()
        pred = self.predictor(params, batch.tspan, batch.tsteps)
        if pred.ys.shape != batch.data.shape or not bool(pred.ok):
            return jnp.asarray(jnp.inf)
        y = jnp.asarray(batch.data)
        if self.regularized:
            return self.metric(pred.ys, y, params, jnp.asarray(batch.tsteps))
        return self.metric(pred.ys, y)
