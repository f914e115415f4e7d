# covid_ude/train/optimizers.py
from __future__ import annotations

import threading
from dataclasses import dataclass, fields
from typing import Callable, Optional

import numpy as np
import jax
import jax.numpy as jnp
import optax
from scipy import optimize


KINDS = ("adam", "bfgs", "lbfgs")
_SCIPY_METHODS = {"bfgs": "BFGS", "lbfgs": "L-BFGS-B"}


class TrainingCancelled(Exception):
    """Raised at an iteration boundary once the shared cancel event is set."""


@dataclass(frozen=True)
class OptimizerConfig:
    kind: str = "adam"           # adam | bfgs | lbfgs
    learning_rate: float = 1e-2  # adam only
    decay_rate: float = 1.0      # lr *= decay_rate every decay_steps (adam)
    decay_steps: int = 100
    lr_limit: float = 0.0        # lr floor when decaying
    weight_decay: float = 0.0
    gtol: float = 1e-8           # gradient tolerance (bfgs / lbfgs)

    def __post_init__(self):
        if self.kind not in KINDS:
            raise ValueError(f"Unknown optimizer '{self.kind}'. Available: {list(KINDS)}")

    @classmethod
    def from_dict(cls, d: dict) -> "OptimizerConfig":
        names = {f.name for f in fields(cls)}
        unknown = set(d) - names
        if unknown:
            raise ValueError(f"Unknown optimizer options: {sorted(unknown)}")
        return cls(**d)


def check_cancelled(cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise TrainingCancelled("training cancelled")


def make_optax(config: OptimizerConfig) -> optax.GradientTransformation:
    end_value = config.lr_limit if (config.decay_rate < 1.0 and config.lr_limit > 0) else None
    schedule = optax.exponential_decay(
        init_value=config.learning_rate,
        transition_steps=max(1, int(config.decay_steps)),
        decay_rate=config.decay_rate,
        staircase=True,
        end_value=end_value,
    )
    return optax.chain(
        optax.add_decayed_weights(config.weight_decay),
        optax.adam(learning_rate=schedule),
    )


# ---------------------------
# Loops
# ---------------------------
def _minimize_optax(objective, params0, config, max_iterations, callback, cancel):
    optim = make_optax(config)
    value_and_grad = jax.value_and_grad(objective)
    params = jnp.asarray(params0, dtype=float)
    opt_state = optim.init(params)

    for _ in range(max_iterations):
        check_cancelled(cancel)
        loss, grads = value_and_grad(params)
        if callback(params, loss):
            break
        # a diverged solve has no usable gradient
        grads = jnp.where(jnp.isfinite(grads), grads, 0.0)
        updates, opt_state = optim.update(grads, opt_state, params)
        params = optax.apply_updates(params, updates)
    return np.asarray(params)


def _minimize_scipy(objective, params0, config, max_iterations, callback, cancel):
    value_and_grad = jax.value_and_grad(objective)

    def fun(x):
        v, g = value_and_grad(jnp.asarray(x, dtype=float))
        return float(v), np.asarray(g, dtype=float)

    def on_iteration(intermediate_result):
        check_cancelled(cancel)
        if callback(intermediate_result.x, intermediate_result.fun):
            raise StopIteration

    check_cancelled(cancel)
    res = optimize.minimize(
        fun,
        np.asarray(params0, dtype=float),
        jac=True,
        method=_SCIPY_METHODS[config.kind],
        callback=on_iteration,
        options=dict(maxiter=int(max_iterations), gtol=config.gtol),
    )
    return np.asarray(res.x)


def minimize(objective: Callable, params0, config: OptimizerConfig, max_iterations: int,
             callback: Callable, cancel: Optional[threading.Event] = None) -> np.ndarray:
    """
    Minimize `objective(params) -> scalar` from `params0`. `callback(params, loss)` is
    called once per completed iteration, in order; returning True stops the run.
    Raises TrainingCancelled when `cancel` is set at an iteration boundary.
    """
    if config.kind == "adam":
        return _minimize_optax(objective, params0, config, max_iterations, callback, cancel)
    return _minimize_scipy(objective, params0, config, max_iterations, callback, cancel)
