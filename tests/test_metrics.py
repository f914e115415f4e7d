# tests/test_metrics.py
import math

import numpy as np
import jax
import jax.numpy as jnp
import pytest

from covid_ude.utils.metrics import (
    get_metric, mae, mape, rmse, rmsle, scaled_sse, sse, time_weighted_log_loss, trajectory_loss,
)


def test_mae_exact_and_one_off():
    y = jnp.array([[10.0, 10.0, 10.0, 10.0]])
    assert float(mae(y, y)) == 0.0
    assert float(mae(jnp.array([[10.0, 10.0, 11.0, 10.0]]), y)) == pytest.approx(0.25)

def test_mape_in_percent():
    y = jnp.array([[10.0, 20.0]])
    yhat = jnp.array([[11.0, 18.0]])
    assert float(mape(yhat, y)) == pytest.approx(10.0)

def test_mape_zero_ground_truth_is_inf():
    assert math.isinf(float(mape(jnp.array([[1.0, 2.0]]), jnp.array([[0.0, 2.0]]))))

def test_rmse():
    assert float(rmse(jnp.array([3.0, 0.0]), jnp.array([0.0, 4.0]))) == pytest.approx(math.sqrt(12.5))

def test_rmsle_shifts_by_one_at_zero():
    y = jnp.zeros(3)
    assert float(rmsle(y, y)) == 0.0
    assert float(rmsle(jnp.array([math.e - 1.0]), jnp.array([0.0]))) == pytest.approx(1.0)

def test_rmsle_negative_input_is_inf():
    assert math.isinf(float(rmsle(jnp.array([-1.0, 2.0]), jnp.array([1.0, 2.0]))))
    assert math.isinf(float(rmsle(jnp.array([1.0, 2.0]), jnp.array([1.0, -2.0]))))

def test_sse_and_lookup():
    assert float(sse(jnp.array([1.0, 2.0]), jnp.array([0.0, 0.0]))) == 5.0
    assert get_metric("mae") is mae
    with pytest.raises(ValueError):
        get_metric("nope")

def test_scaled_sse_divides_by_range():
    lossfn = scaled_sse(np.array([0.0, 0.0]), np.array([2.0, 10.0]))
    yhat = jnp.array([[2.0], [10.0]])
    y = jnp.zeros((2, 1))
    assert float(lossfn(yhat, y)) == pytest.approx(2.0)

def test_trajectory_loss_zero_on_match_and_scale_sensitive():
    lossfn = trajectory_loss(1.0, 1.0)
    y = jnp.array([[1.0, 2.0, 3.0], [2.0, 1.0, 0.5]])
    assert float(lossfn(y, y)) == pytest.approx(0.0, abs=1e-12)
    assert float(lossfn(2 * y, y)) > 0.0

def test_time_weighted_log_loss_weights_late_steps():
    lossfn = time_weighted_log_loss(0.5)
    y = jnp.zeros((1, 2))
    early = jnp.array([[1.0, 0.0]])
    late = jnp.array([[0.0, 1.0]])
    ts = jnp.array([0.0, 2.0])
    assert float(lossfn(late, y, None, ts)) > float(lossfn(early, y, None, ts))

def test_metrics_are_differentiable():
    y = jnp.array([1.0, 2.0, 3.0])
    for fn in (mae, mape, rmse, rmsle, sse):
        g = jax.grad(lambda a: fn(a, y))(y + 0.5)
        assert np.all(np.isfinite(np.asarray(g)))
