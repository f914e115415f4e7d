# covid_ude/experiments/setup.py
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Callable, List, Tuple

import numpy as np

from covid_ude.data.covid import LABELS, experiment_covid19_data
from covid_ude.data.timeseries import TimeseriesDataset
from covid_ude.models.seird import SEIRDBaseline, effective_reproduction_number
from covid_ude.train.predictor import Predictor
from covid_ude.utils.metrics import get_metric, scaled_sse, time_weighted_log_loss, trajectory_loss
from covid_ude.utils.seed import location_key


# observed states of [S, E, I, R, D, C, N]
SEIRD_OBSERVED = (4, 5)


@dataclass
class SEIRDHyperparams:
    zeta: float = 0.01                   # time weight exp(zeta * t) of the log loss
    gamma0: float = 1 / 3
    lambda0: float = 1 / 14
    alpha0: float = 0.025
    gamma_bounds: Tuple[float, float] = (1 / 5, 1 / 2)
    lambda_bounds: Tuple[float, float] = (1 / 21, 1 / 7)
    alpha_bounds: Tuple[float, float] = (0.0, 0.06)
    train_range: int = 32                # days
    forecast_range: int = 28             # days
    ma7: bool = True
    loss: str = "time_weighted_log"      # time_weighted_log | scaled_sse | trajectory | <metric name>
    seed: int = 0
    data_root: str = "datasets"

    @classmethod
    def from_dict(cls, d: dict) -> "SEIRDHyperparams":
        names = {f.name for f in fields(cls)}
        kw = {k: v for k, v in d.items() if k in names}
        for k in ("gamma_bounds", "lambda_bounds", "alpha_bounds"):
            if k in kw:
                kw[k] = tuple(float(b) for b in kw[k])
        return cls(**kw)


@dataclass
class ExperimentSetup:
    location: str
    model: SEIRDBaseline
    predictor: Predictor
    p0: np.ndarray
    train_dataset: TimeseriesDataset
    test_dataset: TimeseriesDataset
    labels: List[str]
    metric: Callable
    regularized: bool = False

    def effective_reproduction_number(self, params):
        """(tsteps, Re) over train + test, or None when the solve fails."""
        ts = np.concatenate([self.train_dataset.tsteps, self.test_dataset.tsteps])
        tspan = (self.train_dataset.tspan[0], self.test_dataset.tspan[1])
        traj = self.predictor.states(params, tspan, ts)
        if not bool(traj.ok):
            return None
        return ts, effective_reproduction_number(self.model, traj.ys, params)


def make_lossfn(hp: SEIRDHyperparams, train_dataset: TimeseriesDataset):
    """Returns (metric, regularized)."""
    if hp.loss == "time_weighted_log":
        return time_weighted_log_loss(hp.zeta), True
    if hp.loss == "scaled_sse":
        return scaled_sse(train_dataset.data.min(axis=1), train_dataset.data.max(axis=1)), False
    if hp.loss == "trajectory":
        return trajectory_loss(1.0, 1.0), False
    return get_metric(hp.loss), False


def setup_baseline(loc: str, hp: SEIRDHyperparams) -> ExperimentSetup:
    train, test, u0 = experiment_covid19_data(
        loc, hp.train_range, hp.forecast_range, root=hp.data_root, ma7=hp.ma7,
    )
    model = SEIRDBaseline(hp.gamma_bounds, hp.lambda_bounds, hp.alpha_bounds,
                          key=location_key(hp.seed, loc))
    predictor = Predictor(model, u0, SEIRD_OBSERVED)
    metric, regularized = make_lossfn(hp, train)
    return ExperimentSetup(
        location=loc,
        model=model,
        predictor=predictor,
        p0=model.initial_params(hp.gamma0, hp.lambda0, hp.alpha0),
        train_dataset=train,
        test_dataset=test,
        labels=list(LABELS),
        metric=metric,
        regularized=regularized,
    )
