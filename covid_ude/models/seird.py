# covid_ude/models/seird.py
from __future__ import annotations

from typing import Callable, Tuple

import numpy as np
import jax
import jax.numpy as jnp
import jax.nn as jnn
import equinox as eqx
from jax.flatten_util import ravel_pytree


# ---------------------------
# Box constraints
# ---------------------------
def boxconst(x, bounds):
    """Map an unconstrained value into (lo, hi)."""
    lo, hi = bounds
    return lo + (hi - lo) * jnn.sigmoid(x)

def boxconst_inv(y, bounds):
    lo, hi = bounds
    z = (y - lo) / (hi - lo)
    return np.log(z / (1.0 - z))


# ---------------------------
# Dynamics
# ---------------------------
def seird(u, beta, gamma, lam, alpha):
    """SEIRD right-hand side on the state [S, E, I, R, D, C, N]."""
    S, E, I, _, _, _, N = u
    infection = beta * S * I / N
    return jnp.stack([
        -infection,
        infection - gamma * E,
        gamma * E - lam * I,
        (1 - alpha) * lam * I,
        alpha * lam * I,
        gamma * E,
        -alpha * lam * I,
    ])


class SEIRDBaseline(eqx.Module):
    """
    SEIRD model whose contact rate beta(t) is produced by a small MLP looking at the
    susceptible and infective fractions. Trainable parameters live in one flat vector

        p = [gamma~, lambda~, alpha~, theta...]

    where the first three are unconstrained and boxed into their bounds, and theta are
    the network weights.
    """
    beta_ann: eqx.nn.MLP
    unravel: Callable = eqx.field(static=True)
    n_ann: int = eqx.field(static=True)
    gamma_bounds: Tuple[float, float] = eqx.field(static=True)
    lambda_bounds: Tuple[float, float] = eqx.field(static=True)
    alpha_bounds: Tuple[float, float] = eqx.field(static=True)

    def __init__(self, gamma_bounds, lambda_bounds, alpha_bounds, *, key, width: int = 8, depth: int = 2):
        self.beta_ann = eqx.nn.MLP(
            in_size=2,
            out_size=1,
            width_size=width,
            depth=depth,
            activation=jnn.relu,
            final_activation=jnn.softplus,
            key=key,
        )
        flat, self.unravel = ravel_pytree(eqx.filter(self.beta_ann, eqx.is_array))
        self.n_ann = int(flat.shape[0])
        self.gamma_bounds = tuple(float(b) for b in gamma_bounds)
        self.lambda_bounds = tuple(float(b) for b in lambda_bounds)
        self.alpha_bounds = tuple(float(b) for b in alpha_bounds)

    @property
    def nparams(self) -> int:
        return 3 + self.n_ann

    def beta(self, u, p):
        S, I, N = u[0], u[2], u[6]
        mlp = eqx.combine(self.unravel(p[3:3 + self.n_ann]), self.beta_ann)
        return mlp(jnp.stack([S / N, I / N]))[0]

    def rates(self, p):
        gamma = boxconst(p[0], self.gamma_bounds)
        lam = boxconst(p[1], self.lambda_bounds)
        alpha = boxconst(p[2], self.alpha_bounds)
        return gamma, lam, alpha

    def __call__(self, t, u, p):
        gamma, lam, alpha = self.rates(p)
        return seird(u, self.beta(u, p), gamma, lam, alpha)

    def initial_params(self, gamma0: float, lambda0: float, alpha0: float) -> np.ndarray:
        theta, _ = ravel_pytree(eqx.filter(self.beta_ann, eqx.is_array))
        head = [
            boxconst_inv(gamma0, self.gamma_bounds),
            boxconst_inv(lambda0, self.lambda_bounds),
            boxconst_inv(alpha0, self.alpha_bounds),
        ]
        return np.concatenate([np.asarray(head, dtype=float), np.asarray(theta, dtype=float)])


def effective_reproduction_number(model: SEIRDBaseline, states, params) -> np.ndarray:
    """Re(t) = beta(t) / gamma along a state trajectory of shape (7, T)."""
    p = jnp.asarray(params)
    gamma, _, _ = model.rates(p)
    betas = jax.vmap(lambda u: model.beta(u, p), in_axes=1)(jnp.asarray(states))
    return np.asarray(betas / gamma)
