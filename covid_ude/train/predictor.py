# covid_ude/train/predictor.py
from __future__ import annotations

from typing import NamedTuple, Sequence

import jax
import jax.numpy as jnp
import diffrax

jax.config.update("jax_enable_x64", True)


class Trajectory(NamedTuple):
    ys: jnp.ndarray   # (len(save_idxs), len(saveat))
    ok: jnp.ndarray   # scalar bool, False when the solver failed or blew up


class Predictor:
    """
    Integrates `model(t, u, params)` from a fixed initial state and returns the
    observed components at the requested times. The solver and its tolerances are
    fixed at construction; failures are reported through `Trajectory.ok`.
    """

    def __init__(self, model, u0, save_idxs: Sequence[int], *,
                 solver=None, abstol: float = 1e-5, reltol: float = 1e-5,
                 max_steps: int = 4096):
        self.model = model
        self.u0 = jnp.asarray(u0, dtype=float)
        self.save_idxs = jnp.asarray(list(save_idxs), dtype=int)
        self.solver = diffrax.Tsit5() if solver is None else solver
        self.controller = diffrax.PIDController(rtol=reltol, atol=abstol)
        self.max_steps = max_steps
        self.term = diffrax.ODETerm(model)

    def _solve(self, params, tspan, saveat):
        return diffrax.diffeqsolve(
            self.term,
            self.solver,
            t0=tspan[0],
            t1=tspan[1],
            dt0=None,
            y0=self.u0,
            args=params,
            stepsize_controller=self.controller,
            saveat=diffrax.SaveAt(ts=saveat),
            max_steps=self.max_steps,
            throw=False,
        )

    def states(self, params, tspan, saveat) -> Trajectory:
        """Full state trajectory, shape (n_states, len(saveat))."""
        ts = jnp.asarray(saveat, dtype=float)
        t0, t1 = float(tspan[0]), float(tspan[1])
        if t1 <= t0:
            # nothing to integrate, every save point sits on the initial state
            return Trajectory(jnp.tile(self.u0[:, None], (1, ts.shape[0])), jnp.asarray(True))
        sol = self._solve(jnp.asarray(params), (t0, t1), ts)
        ys = sol.ys.T
        ok = (sol.result == diffrax.RESULTS.successful) & jnp.all(jnp.isfinite(ys))
        return Trajectory(ys, ok)

    def __call__(self, params, tspan, saveat) -> Trajectory:
        traj = self.states(params, tspan, saveat)
        return Trajectory(traj.ys[self.save_idxs, :], traj.ok)
