# rode_convergence/processes.py
"""
Pathwise samplers for the noise term Y_t of a random ODE

    dX_t/dt = f(t, X_t, Y_t).

Every process fills a caller-owned buffer with one realization on N uniformly
spaced points of [t0, tf] via ``sample(rng, yt)``:
    - UnivariateProcess:   yt has shape (N,)
    - MultivariateProcess: yt has shape (N, dim)
The step is dt = (tf - t0) / (N - 1). Buffers may be strided views (a column of
a larger table, every k-th row, ...) and are overwritten in place.

Catalogue:
    WienerProcess                 exact Gaussian increments
    OrnsteinUhlenbeckProcess      exact AR(1) transition, not an Euler step
    GeometricBrownianMotionProcess  exact log-normal transition
    CompoundPoissonProcess        per-step Poisson counts or exponential gaps
    PoissonStepProcess            level redrawn at Poisson event times
    ExponentialHawkesProcess      self-exciting intensity, exact event times
    TransportProcess              deterministic kernel of latent velocities
    ProductProcess                column-wise stack of any of the above

Fractional Brownian motion lives in ``rode_convergence.fbm``.

Notes:
    - The random source is always an explicit numpy Generator; nothing here
      touches global random state.
    - Laws (jump sizes, step levels, velocities) are frozen scipy.stats
      distributions and are sampled with ``rvs(..., random_state=rng)``.
"""

from __future__ import annotations
import math
from typing import Callable, Optional

import numpy as np
from scipy.signal import lfilter

from .errors import DimensionMismatchError
from .utils import (
    _as_float,
    _check_interval,
    _check_nonnegative,
    _check_positive,
    _check_sampler,
    time_grid,
    time_step,
)


# ------------------------ base classes ------------------------

class AbstractProcess:
    """Common interface of all noise processes."""

    dim = 1

    def __init__(self, t0, tf):
        self.t0, self.tf = _check_interval(t0, tf)

    def sample(self, rng: np.random.Generator, yt: np.ndarray) -> None:
        raise NotImplementedError

    def time_grid(self, n: int) -> np.ndarray:
        return time_grid(self.t0, self.tf, n)

    def empty(self, n: int) -> np.ndarray:
        raise NotImplementedError

    def draw(self, n: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        """Allocate a buffer of n points, sample one path into it and return it."""
        if rng is None:
            rng = np.random.default_rng()
        yt = self.empty(n)
        self.sample(rng, yt)
        return yt

    def __repr__(self):
        return f"{type(self).__name__}(t0={self.t0}, tf={self.tf})"


class UnivariateProcess(AbstractProcess):
    """Scalar-valued process; paths are 1-D arrays."""

    def empty(self, n: int) -> np.ndarray:
        return np.empty(int(n), dtype=float)

    def _check_buffer(self, yt) -> int:
        if not isinstance(yt, np.ndarray) or yt.ndim != 1:
            raise DimensionMismatchError(
                f"{type(self).__name__} samples into a 1-D array; got shape {np.shape(yt)}"
            )
        n = yt.shape[0]
        if n < 2:
            raise DimensionMismatchError("path buffers need at least 2 points")
        return n


class MultivariateProcess(AbstractProcess):
    """Vector-valued process; paths are (N, dim) arrays, one row per time."""

    def empty(self, n: int) -> np.ndarray:
        return np.empty((int(n), self.dim), dtype=float)

    def _check_buffer(self, yt) -> int:
        if not isinstance(yt, np.ndarray) or yt.ndim != 2 or yt.shape[1] != self.dim:
            raise DimensionMismatchError(
                f"{type(self).__name__} samples into an (N, {self.dim}) array; got shape {np.shape(yt)}"
            )
        n = yt.shape[0]
        if n < 2:
            raise DimensionMismatchError("path buffers need at least 2 points")
        return n


# ------------------------ Gaussian diffusions ------------------------

class WienerProcess(UnivariateProcess):
    """Standard Brownian motion started at y0."""

    def __init__(self, t0, tf, y0=0.0):
        super().__init__(t0, tf)
        self.y0 = _as_float(y0)

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        dt = time_step(self.t0, self.tf, n)
        yt[0] = self.y0
        np.cumsum(math.sqrt(dt) * rng.standard_normal(n - 1), out=yt[1:])
        yt[1:] += self.y0


class OrnsteinUhlenbeckProcess(UnivariateProcess):
    """
    dY_t = -nu Y_t dt + sigma dW_t, Y_t0 = y0, sampled with the exact transition

        Y[n] = Y[n-1] * exp(-nu dt) + sigma * sqrt((1 - exp(-2 nu dt)) / (2 nu)) * Z.

    Mean y0 exp(-nu t), variance sigma^2 / (2 nu) * (1 - exp(-2 nu t)).
    """

    def __init__(self, t0, tf, y0, nu, sigma):
        super().__init__(t0, tf)
        self.y0 = _as_float(y0)
        self.nu = _check_positive("nu", nu)
        self.sigma = _check_nonnegative("sigma", sigma)

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        dt = time_step(self.t0, self.tf, n)
        a = math.exp(-self.nu * dt)
        b = self.sigma * math.sqrt(-math.expm1(-2.0 * self.nu * dt) / (2.0 * self.nu))
        z = rng.standard_normal(n - 1)
        yt[0] = self.y0
        # y[k] = a y[k-1] + b z[k], seeded with y0 through the filter state
        yt[1:], _ = lfilter([b], [1.0, -a], z, zi=[a * self.y0])


class GeometricBrownianMotionProcess(UnivariateProcess):
    """
    dY_t = mu Y_t dt + sigma Y_t dW_t, Y_t0 = y0, sampled with the exact update

        Y[n] = Y[n-1] * exp((mu - sigma^2/2) dt + sigma sqrt(dt) Z).
    """

    def __init__(self, t0, tf, y0, mu, sigma):
        super().__init__(t0, tf)
        self.y0 = _as_float(y0)
        self.mu = _as_float(mu)
        self.sigma = _check_nonnegative("sigma", sigma)

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        dt = time_step(self.t0, self.tf, n)
        drift = (self.mu - 0.5 * self.sigma * self.sigma) * dt
        vol = self.sigma * math.sqrt(dt)
        yt[0] = self.y0
        np.cumsum(drift + vol * rng.standard_normal(n - 1), out=yt[1:])
        np.exp(yt[1:], out=yt[1:])
        yt[1:] *= self.y0


# ------------------------ jump processes ------------------------

class CompoundPoissonProcess(UnivariateProcess):
    """
    Y_t = sum_{i <= N_t} J_i with N_t a rate-`rate` Poisson counter and J_i i.i.d.
    draws of `jump_law`. Y_t0 = 0.

    method="counts": per step, draw N ~ Poisson(rate dt) and add N jumps.
    method="gaps":   build exact event times from exponential inter-arrival
                     gaps; each event lands on the first grid point at or after it.

    Mean rate t E[J], variance rate t E[J^2], for both methods.
    """

    def __init__(self, t0, tf, rate, jump_law, method="counts"):
        super().__init__(t0, tf)
        self.rate = _check_positive("rate", rate)
        self.jump_law = _check_sampler("jump_law", jump_law)
        method = str(method).lower()
        if method not in ("counts", "gaps"):
            raise ValueError("method must be 'counts' or 'gaps'")
        self.method = method

    def _jumps(self, rng, size):
        if size == 0:
            return np.empty(0, dtype=float)
        return np.atleast_1d(np.asarray(self.jump_law.rvs(size=size, random_state=rng), dtype=float))

    def _increments_counts(self, rng, n, dt):
        counts = rng.poisson(self.rate * dt, size=n - 1)
        jumps = self._jumps(rng, int(counts.sum()))
        steps = np.repeat(np.arange(n - 1), counts)
        return np.bincount(steps, weights=jumps, minlength=n - 1)

    def _increments_gaps(self, rng, n):
        span = self.tf - self.t0
        times = _poisson_arrivals(rng, self.rate, span)
        jumps = self._jumps(rng, times.size)
        # index of the first grid point at or after each event, in 1..n-1
        idx = np.searchsorted(time_grid(0.0, span, n), times, side="left")
        return np.bincount(idx, weights=jumps, minlength=n)[1:]

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        dt = time_step(self.t0, self.tf, n)
        if self.method == "counts":
            incr = self._increments_counts(rng, n, dt)
        else:
            incr = self._increments_gaps(rng, n)
        yt[0] = 0.0
        np.cumsum(incr, out=yt[1:])


def _poisson_arrivals(rng, rate, span):
    """Event times in (0, span] of a homogeneous Poisson process."""
    expected = rate * span
    chunk = int(expected + 4.0 * math.sqrt(expected)) + 8
    out = []
    last = 0.0
    while True:
        t = last + np.cumsum(rng.exponential(1.0 / rate, size=chunk))
        if t[-1] > span:
            out.append(t[t <= span])
            break
        out.append(t)
        last = t[-1]
    return np.concatenate(out)


class PoissonStepProcess(UnivariateProcess):
    """
    Piecewise-constant renewal process: the level starts as a draw of `step_law`
    and is redrawn from `step_law` on every step in which at least one event of
    a rate-`rate` Poisson process fires. The marginal law at any time is `step_law`.
    """

    def __init__(self, t0, tf, rate, step_law):
        super().__init__(t0, tf)
        self.rate = _check_positive("rate", rate)
        self.step_law = _check_sampler("step_law", step_law)

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        dt = time_step(self.t0, self.tf, n)
        p_fire = -math.expm1(-self.rate * dt)
        fires = rng.random(n - 1) < p_fire
        levels = np.atleast_1d(
            np.asarray(self.step_law.rvs(size=int(fires.sum()) + 1, random_state=rng), dtype=float)
        )
        yt[0] = levels[0]
        yt[1:] = levels[np.cumsum(fires)]


class ExponentialHawkesProcess(UnivariateProcess):
    """
    Intensity of a self-exciting point process with exponential decay:

        lambda_t = a + (lambda0 - a) e^{-delta t} + sum_{T_i < t} J_i e^{-delta (t - T_i)}

    with jump sizes J_i drawn from `jump_law` at each event T_i. The path
    returned is lambda_t itself, sampled on the grid.

    Event times are drawn exactly by inversion, following Dassios & Zhao (2013):
    after an event with post-jump intensity lam, the next inter-arrival time is
    min(S1, S2) where
        S2 = -log(U2) / a                          (baseline clock)
        D  = 1 + delta log(U1) / (lam - a)
        S1 = -log(D) / delta if D > 0 else inf     (decaying self-excited clock)

    Requires a > 0, delta > 0 and lambda0 >= a.

    Reference
    ---------
    Dassios, Zhao, "Exact simulation of Hawkes process with exponentially
    decaying intensity," Electron. Commun. Probab. 18 (2013).
    """

    def __init__(self, t0, tf, lambda0, a, delta, jump_law):
        super().__init__(t0, tf)
        self.a = _check_positive("a", a)
        self.delta = _check_positive("delta", delta)
        self.lambda0 = _as_float(lambda0)
        if self.lambda0 < self.a:
            raise ValueError("lambda0 must be >= a")
        self.jump_law = _check_sampler("jump_law", jump_law)

    def _next_gap(self, rng, excess):
        u1 = 1.0 - rng.random()
        u2 = 1.0 - rng.random()
        s1 = math.inf
        if excess > 0.0:
            d = 1.0 + self.delta * math.log(u1) / excess
            if d > 0.0:
                s1 = -math.log(d) / self.delta
        s2 = -math.log(u2) / self.a
        return min(s1, s2)

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        grid = time_grid(0.0, self.tf - self.t0, n)
        a, delta = self.a, self.delta

        yt[0] = self.lambda0
        excess = self.lambda0 - a
        t_last = 0.0
        i = 1
        while i < n:
            t_next = t_last + self._next_gap(rng, excess)
            j = int(np.searchsorted(grid, t_next, side="left"))
            if j > i:
                yt[i:j] = a + excess * np.exp(-delta * (grid[i:j] - t_last))
                i = j
            if i >= n:
                break
            jump = float(self.jump_law.rvs(random_state=rng))
            excess = excess * math.exp(-delta * (t_next - t_last)) + jump
            t_last = t_next

    def mean_intensity(self, t):
        """
        E[lambda_t], from m' = delta (a - m) + k m with k = E[J]. Only the first
        moment is provided.
        """
        s = np.asarray(t, dtype=float) - self.t0
        k = float(self.jump_law.mean())
        rate = self.delta - k
        if abs(rate) < 1e-12:
            return self.lambda0 + self.delta * self.a * s
        m_inf = self.a * self.delta / rate
        return m_inf + (self.lambda0 - m_inf) * np.exp(-rate * s)


# ------------------------ transport ------------------------

class TransportProcess(UnivariateProcess):
    """
    Y_t = g(t, r) where r = (r_1, ..., r_n) are i.i.d. draws of `law`, drawn once
    per path. The kernel g reduces over r, e.g.

        g = lambda t, r: np.mean(np.sin(r * t))

    so that each path is a smooth deterministic function of its latent velocities.
    """

    def __init__(self, t0, tf, g: Callable, law, n: int):
        super().__init__(t0, tf)
        if not callable(g):
            raise ValueError("g must be callable as g(t, r)")
        self.g = g
        self.law = _check_sampler("law", law)
        self.n = int(n)
        if self.n < 1:
            raise ValueError("n must be >= 1")

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        r = np.atleast_1d(np.asarray(self.law.rvs(size=self.n, random_state=rng), dtype=float))
        for i, t in enumerate(self.time_grid(n)):
            yt[i] = self.g(t, r)


# ------------------------ products ------------------------

class ProductProcess(MultivariateProcess):
    """
    Column-wise stack of independent component processes.

    Column blocks are laid out in declaration order: a scalar component takes
    one column, a vector component takes `dim` columns. Components sample one
    after the other from the same generator, so a fixed seed and a fixed order
    reproduce the same table.
    """

    def __init__(self, *components):
        if len(components) == 1 and isinstance(components[0], (list, tuple)):
            components = tuple(components[0])
        if not components:
            raise ValueError("ProductProcess needs at least one component")
        for c in components:
            if not isinstance(c, (UnivariateProcess, MultivariateProcess)):
                raise ValueError(f"components must be processes; got {type(c).__name__}")
        spans = {(c.t0, c.tf) for c in components}
        if len(spans) != 1:
            raise ValueError(f"components must share one time span; got {sorted(spans)}")
        (t0, tf), = spans
        super().__init__(t0, tf)
        self.components = tuple(components)

        blocks = []
        start = 0
        for c in self.components:
            if isinstance(c, UnivariateProcess):
                blocks.append((c, start, None))
                start += 1
            else:
                blocks.append((c, start, start + c.dim))
                start += c.dim
        self._blocks = tuple(blocks)
        self.dim = start

    def sample(self, rng, yt):
        self._check_buffer(yt)
        for c, j, k in self._blocks:
            if k is None:
                c.sample(rng, yt[:, j])
            else:
                c.sample(rng, yt[:, j:k])

    def __len__(self):
        return len(self.components)

    def __repr__(self):
        inner = ", ".join(repr(c) for c in self.components)
        return f"ProductProcess({inner})"


__all__ = [
    "AbstractProcess",
    "UnivariateProcess",
    "MultivariateProcess",
    "WienerProcess",
    "OrnsteinUhlenbeckProcess",
    "GeometricBrownianMotionProcess",
    "CompoundPoissonProcess",
    "PoissonStepProcess",
    "ExponentialHawkesProcess",
    "TransportProcess",
    "ProductProcess",
]
