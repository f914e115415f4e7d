# covid_ude/utils/metrics.py
"""
Error metrics and experiment losses.

Every function takes `(yhat, y)` arrays shaped [variable x time] and returns a scalar.
They are written with jax.numpy so the same functions work as training losses
(differentiable) and as evaluation metrics.
"""
from __future__ import annotations

import jax
import jax.numpy as jnp


# ---------------------------
# Metrics
# ---------------------------
def mae(yhat, y):
    return jnp.mean(jnp.abs(yhat - y))

def mape(yhat, y):
    """Mean absolute percentage error (in percent). +inf when any ground-truth value is 0."""
    zero = jnp.any(y == 0)
    ysafe = jnp.where(y == 0, 1.0, y)
    return jnp.where(zero, jnp.inf, 100.0 * jnp.mean(jnp.abs((yhat - y) / ysafe)))

def rmse(yhat, y):
    return jnp.sqrt(jnp.mean((yhat - y) ** 2))

def rmsle(yhat, y):
    """Root mean squared log error on log(x + 1). +inf when any value is negative."""
    negative = jnp.any(yhat < 0) | jnp.any(y < 0)
    a = jnp.log1p(jnp.maximum(yhat, 0.0))
    b = jnp.log1p(jnp.maximum(y, 0.0))
    return jnp.where(negative, jnp.inf, jnp.sqrt(jnp.mean((a - b) ** 2)))

def sse(yhat, y):
    return jnp.sum((yhat - y) ** 2)


METRICS = {"mae": mae, "mape": mape, "rmse": rmse, "rmsle": rmsle, "sse": sse}

def get_metric(name: str):
    try:
        return METRICS[name]
    except KeyError:
        raise ValueError(f"Unknown metric '{name}'. Available: {sorted(METRICS)}") from None


# ---------------------------
# Experiment losses
# ---------------------------
def scaled_sse(vmin, vmax):
    """Squared errors with each variable divided by its range (vmax - vmin)."""
    scale = jnp.asarray(vmax, dtype=float) - jnp.asarray(vmin, dtype=float)
    scale = jnp.where(scale == 0, 1.0, scale)[:, None]

    def lossfn(yhat, y):
        return jnp.sum(((yhat - y) / scale) ** 2)
    return lossfn

def normed_ld(a, b):
    na, nb = jnp.linalg.norm(a), jnp.linalg.norm(b)
    return jnp.abs(na - nb) / (na + nb)

def cosine_distance(a, b):
    sim = jnp.dot(a, b) / (jnp.linalg.norm(a) * jnp.linalg.norm(b))
    return (1.0 - sim) / 2.0

def trajectory_loss(w_length: float = 1.0, w_angle: float = 1.0):
    """
    Trajectory-based loss: per time step, the state vectors are compared by their
    normalized length difference and their cosine distance.
    Ref: Vortmeyer-Kley, Nieters & Pipa, Sci Rep 11, 20394 (2021).
    """
    per_step = jax.vmap(
        lambda a, b: w_length * normed_ld(a, b) + w_angle * cosine_distance(a, b),
        in_axes=(1, 1),
    )

    def lossfn(yhat, y):
        return jnp.sum(per_step(y, yhat))
    return lossfn

def time_weighted_log_loss(zeta: float):
    """
    Squared log errors weighted by exp(zeta * t). Takes the regularized signature
    `(yhat, y, params, tsteps)` so the weights follow whatever batch is evaluated.
    """
    def lossfn(yhat, y, params, tsteps):
        weights = jnp.exp(jnp.asarray(tsteps, dtype=float) * zeta)[None, :]
        err = jnp.log1p(jnp.maximum(yhat, 0.0)) - jnp.log1p(jnp.maximum(y, 0.0))
        return jnp.sum(err ** 2 * weights)
    return lossfn
