# rode_convergence/solvers.py
"""
Fixed-step solvers for pathwise random ODEs dx/dt = f(t, x, y) driven by a
sampled noise path y.

Shapes
    scalar unknown: xt has shape (N,),     f(t, x, y) -> dx
    vector unknown: xt has shape (N, nx),  f(dx, t, x, y) writes dx in place
    scalar noise:   yt has shape (N,),     y is a float
    vector noise:   yt has shape (N, ny),  y is the row yt[n]

The step is dt = (tf - t0) / (N - 1), N being the number of rows of xt, and
xt and yt must have the same number of rows.

Methods
    RandomEuler   x[n] = x[n-1] + dt f(t[n-1], x[n-1], y[n-1])
    RandomHeun    trapezoidal predictor-corrector
    CustomMethod  wraps a user solver, e.g. an exact solution used as target
"""

from __future__ import annotations
from typing import Callable, Optional

import numpy as np

from .errors import DimensionMismatchError
from .utils import time_step


def _check_paths(xt, x0, yt) -> int:
    if not isinstance(xt, np.ndarray) or xt.ndim not in (1, 2):
        raise DimensionMismatchError(f"xt must be a 1-D or 2-D array; got shape {np.shape(xt)}")
    if not isinstance(yt, np.ndarray) or yt.ndim not in (1, 2):
        raise DimensionMismatchError(f"yt must be a 1-D or 2-D array; got shape {np.shape(yt)}")
    if xt.shape[0] != yt.shape[0]:
        raise DimensionMismatchError(
            f"xt and yt must have the same number of rows; got {xt.shape[0]} and {yt.shape[0]}"
        )
    if xt.shape[0] < 2:
        raise DimensionMismatchError("paths need at least 2 points")
    if xt.ndim == 2 and np.shape(x0) != (xt.shape[1],):
        raise DimensionMismatchError(
            f"x0 must have one entry per column of xt; got {np.shape(x0)} for {xt.shape[1]} columns"
        )
    if xt.ndim == 1 and np.ndim(x0) != 0:
        raise DimensionMismatchError(f"x0 must be a scalar for a 1-D xt; got shape {np.shape(x0)}")
    return xt.shape[0]


def _noise_rows(yt):
    """
    Scalar noise as a Python list, vector noise unchanged.

    The step loops index one noise value per step, and Python floats are much
    faster to index than numpy scalars. The price is one O(N) list copy per
    solve, which is small next to the N calls to f.
    """
    return yt.tolist() if yt.ndim == 1 else yt


class RODEMethod:
    """Base class of the solvers accepted by ConvergenceSuite."""

    def solve(self, xt: np.ndarray, t0: float, tf: float, x0, f: Callable, yt: np.ndarray) -> None:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}()"


class RandomEuler(RODEMethod):
    """Explicit Euler method, first order."""

    def solve(self, xt, t0, tf, x0, f, yt):
        n = _check_paths(xt, x0, yt)
        dt = time_step(t0, tf, n)
        ys = _noise_rows(yt)

        if xt.ndim == 1:
            x = float(x0)
            out = [x]
            for k in range(n - 1):
                x = x + dt * f(t0 + k * dt, x, ys[k])
                out.append(x)
            xt[:] = out
            return

        xt[0] = x0
        for k in range(1, n):
            # row k doubles as the dx cache
            dx = xt[k]
            f(dx, t0 + (k - 1) * dt, xt[k - 1], ys[k - 1])
            dx *= dt
            dx += xt[k - 1]


class RandomHeun(RODEMethod):
    """
    Heun (explicit trapezoidal) method:

        k1 = f(t[n-1], x[n-1], y[n-1])
        k2 = f(t[n], x[n-1] + dt k1, y[n])
        x[n] = x[n-1] + dt (k1 + k2) / 2
    """

    def __init__(self):
        self._cache = {}

    def _work(self, nx):
        if nx not in self._cache:
            self._cache[nx] = (np.empty(nx), np.empty(nx), np.empty(nx))
        return self._cache[nx]

    def solve(self, xt, t0, tf, x0, f, yt):
        n = _check_paths(xt, x0, yt)
        dt = time_step(t0, tf, n)
        ys = _noise_rows(yt)

        if xt.ndim == 1:
            x = float(x0)
            out = [x]
            for k in range(n - 1):
                t = t0 + k * dt
                k1 = f(t, x, ys[k])
                k2 = f(t + dt, x + dt * k1, ys[k + 1])
                x = x + 0.5 * dt * (k1 + k2)
                out.append(x)
            xt[:] = out
            return

        k1, k2, xp = self._work(xt.shape[1])
        xt[0] = x0
        for k in range(1, n):
            t = t0 + (k - 1) * dt
            prev = xt[k - 1]
            f(k1, t, prev, ys[k - 1])
            np.multiply(k1, dt, out=xp)
            xp += prev
            f(k2, t + dt, xp, ys[k])
            cur = xt[k]
            np.add(k1, k2, out=cur)
            cur *= 0.5 * dt
            cur += prev


class CustomMethod(RODEMethod):
    """
    Wrap a user solver so it can serve as target or as method under test.

    The solver is called as ``solver(xt, t0, tf, x0, f, yt, rng)`` when an rng is
    given, and as ``solver(xt, t0, tf, x0, f, yt)`` otherwise. It must fill xt in
    place. Shapes are checked before the call.
    """

    def __init__(self, solver: Callable, rng: Optional[np.random.Generator] = None):
        if not callable(solver):
            raise ValueError("solver must be callable")
        self.solver = solver
        self.rng = rng

    def solve(self, xt, t0, tf, x0, f, yt):
        _check_paths(xt, x0, yt)
        if self.rng is None:
            self.solver(xt, t0, tf, x0, f, yt)
        else:
            self.solver(xt, t0, tf, x0, f, yt, self.rng)

    def __repr__(self):
        name = getattr(self.solver, "__name__", type(self.solver).__name__)
        return f"CustomMethod({name})"


def solve_path(xt, t0, tf, x0, f, yt, method: Optional[RODEMethod] = None) -> None:
    """Fill xt in place with `method` (RandomEuler by default)."""
    if method is None:
        method = RandomEuler()
    method.solve(xt, t0, tf, x0, f, yt)


__all__ = [
    "RODEMethod",
    "RandomEuler",
    "RandomHeun",
    "CustomMethod",
    "solve_path",
]
