# rode_convergence/convergence.py
"""
Monte Carlo estimate of the strong order of convergence of a fixed-step RODE
solver.

For each of m samples an initial condition x0 and a fine noise path on ntgt
points are drawn, a target solution is computed on the fine mesh, and the
method under test is run on every coarse mesh N in ns using the noise
restricted to that mesh (every k-th fine point, k = ntgt // N). The pathwise
errors |X_N(t_j) - X_target(t_j k)| are averaged over the samples; the strong
error at step dt = (tf - t0)/(N - 1) is the maximum over the mesh and the order
p comes from the least-squares fit

    log(error) = log(C) + p log(dt).

Notes:
    - A single numpy Generator drives everything, consumed in a fixed order
      (x0, noise, target, then each coarse solve in ns order).
    - Caches live on the suite and are reused for every sample.
    - `solve_parallel` splits the samples in batches with SeedSequence child
      seeds; results depend on base_seed and batch_size, not on n_workers.
"""

from __future__ import annotations
import copy
import dataclasses
import math
import time
import warnings
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import numpy as np
from scipy import stats

from .errors import ConfigurationError
from .fbm import FractionalBrownianMotionProcess
from .processes import AbstractProcess, MultivariateProcess, ProductProcess, UnivariateProcess
from .solvers import CustomMethod, RODEMethod
from .utils import (
    _child_seeds,
    _split_batches,
    draw_scalar,
    draw_vector,
    is_multivariate_law,
    is_univariate_law,
    law_dimension,
    law_name,
)


# ------------------------ suite ------------------------

def _fixed_sizes(noise):
    # fBm samplers are bound to one grid size
    if isinstance(noise, FractionalBrownianMotionProcess):
        yield noise.n
    elif isinstance(noise, ProductProcess):
        for c in noise.components:
            yield from _fixed_sizes(c)


def _as_count(name, n) -> int:
    if isinstance(n, bool):
        raise ConfigurationError(f"{name} must be an integer; got {n!r}")
    try:
        v = float(n)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer; got {n!r}") from exc
    if not (math.isfinite(v) and v.is_integer()):
        raise ConfigurationError(f"{name} must be an integer; got {n!r}")
    return int(n) if isinstance(n, (int, np.integer)) else int(v)


@dataclass(eq=False)
class ConvergenceSuite:
    """
    Everything needed to estimate the order of `method` on dx/dt = f(t, x, y).

    Parameters
    ----------
    t0, tf : float
        Time span, t0 < tf.
    x0law :
        Initial condition law: a frozen univariate continuous scipy.stats law
        (scalar unknown), a frozen multivariate law (vector unknown), or a
        number / 1-D array for a point mass.
    f : callable
        f(t, x, y) -> dx for a scalar unknown, f(dx, t, x, y) for a vector one.
    noise : AbstractProcess
        Univariate or multivariate noise process.
    target, method : RODEMethod
        Solver for the reference solution on the fine mesh and solver under test.
    ntgt : int
        Number of points of the fine mesh.
    ns : sequence of int
        Coarse mesh sizes; each must divide ntgt.
    m : int
        Number of Monte Carlo samples.
    """

    t0: float
    tf: float
    x0law: Any
    f: Callable
    noise: AbstractProcess
    target: RODEMethod
    method: RODEMethod
    ntgt: int
    ns: Sequence[int]
    m: int
    yt: np.ndarray = field(init=False, repr=False)
    xt: np.ndarray = field(init=False, repr=False)
    xnt: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        try:
            self.t0 = float(self.t0)
            self.tf = float(self.tf)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("t0 and tf must be numbers") from exc
        if not (math.isfinite(self.t0) and math.isfinite(self.tf) and self.t0 < self.tf):
            raise ConfigurationError(f"t0 must be smaller than tf; got t0={self.t0}, tf={self.tf}")

        self.ntgt = _as_count("ntgt", self.ntgt)
        if self.ntgt <= 0:
            raise ConfigurationError(f"ntgt must be positive; got {self.ntgt}")
        ns = tuple(_as_count("ns", n) for n in np.atleast_1d(np.asarray(self.ns, dtype=object)))
        if not ns:
            raise ConfigurationError("ns must contain at least one mesh size")
        for n in ns:
            if n < 2:
                raise ConfigurationError(f"mesh sizes must be at least 2; got {n}")
            if self.ntgt % n != 0:
                raise ConfigurationError(
                    f"ntgt={self.ntgt} is not a multiple of n={n}; every mesh size must divide ntgt"
                )
        self.ns = ns

        self.m = _as_count("m", self.m)
        if self.m < 1:
            raise ConfigurationError(f"m must be at least 1; got {self.m}")

        if not callable(self.f):
            raise ConfigurationError("f must be callable")
        for name in ("target", "method"):
            if not isinstance(getattr(self, name), RODEMethod):
                raise ConfigurationError(f"{name} must be a RODEMethod; got {type(getattr(self, name)).__name__}")
        # the same built-in scheme on the fine mesh reproduces the target exactly
        if (self.ntgt in ns and type(self.target) is type(self.method)
                and not isinstance(self.method, CustomMethod)):
            raise ConfigurationError(
                f"n={self.ntgt} equals ntgt and target and method are both {type(self.method).__name__}; "
                "that resolution has zero error and no order can be fitted"
            )

        if not isinstance(self.noise, (UnivariateProcess, MultivariateProcess)):
            raise ConfigurationError(
                f"noise must be a univariate or multivariate process; got {type(self.noise).__name__}"
            )
        if (self.noise.t0, self.noise.tf) != (self.t0, self.tf):
            raise ConfigurationError(
                f"noise lives on [{self.noise.t0}, {self.noise.tf}] but the suite on [{self.t0}, {self.tf}]"
            )
        for n_fixed in _fixed_sizes(self.noise):
            if n_fixed != self.ntgt:
                raise ConfigurationError(
                    f"noise is bound to {n_fixed} grid points but ntgt={self.ntgt}"
                )

        if is_univariate_law(self.x0law):
            self.xdim = None
        elif is_multivariate_law(self.x0law):
            self.xdim = law_dimension(self.x0law)
        else:
            raise ConfigurationError(
                f"x0law must be a univariate or multivariate law; got {type(self.x0law).__name__}"
            )

        self.yt = self.noise.empty(self.ntgt)
        if self.xdim is None:
            self.xt = np.empty(self.ntgt)
            self.xnt = np.empty(max(ns))
            self._x0 = None
        else:
            self.xt = np.empty((self.ntgt, self.xdim))
            self.xnt = np.empty((max(ns), self.xdim))
            self._x0 = np.empty(self.xdim)

    def draw_x0(self, rng: np.random.Generator):
        if self.xdim is None:
            return draw_scalar(rng, self.x0law)
        return draw_vector(rng, self.x0law, self._x0)

    def copy(self) -> "ConvergenceSuite":
        """Same configuration with fresh caches and private solver state."""
        return dataclasses.replace(
            self,
            target=copy.deepcopy(self.target),
            method=copy.deepcopy(self.method),
        )

    def describe(self) -> dict:
        return dict(
            t0=self.t0,
            tf=self.tf,
            x0law=law_name(self.x0law),
            noise=repr(self.noise),
            target=repr(self.target),
            method=repr(self.method),
            ntgt=self.ntgt,
            ns=list(self.ns),
            m=self.m,
        )


@dataclass
class ConvergenceResult:
    suite: ConvergenceSuite
    deltas: np.ndarray
    trajerrors: np.ndarray
    errors: np.ndarray
    lc: float
    p: float
    eps: float

    def to_dict(self) -> dict:
        """JSON-ready copy (arrays become lists, the suite a short description)."""
        return dict(
            suite=self.suite.describe(),
            deltas=np.asarray(self.deltas, dtype=float).tolist(),
            trajerrors=np.asarray(self.trajerrors, dtype=float).tolist(),
            errors=np.asarray(self.errors, dtype=float).tolist(),
            lc=float(self.lc),
            p=float(self.p),
            eps=float(self.eps),
        )


# ------------------------ estimator ------------------------

def fit_order(deltas, errors):
    """
    Least-squares fit of log(errors) = lc + p log(deltas).

    Returns
    -------
    lc, p, eps : float
        Intercept, order and half-width of the 95% confidence interval of p
        (Student t with len - 2 degrees of freedom; nan for fewer than 3 points).
    """
    deltas = np.asarray(deltas, dtype=float)
    errors = np.asarray(errors, dtype=float)
    if deltas.shape != errors.shape or deltas.ndim != 1:
        raise ValueError("deltas and errors must be 1-D arrays of the same length")
    if deltas.size < 2:
        raise ValueError("at least two resolutions are needed to fit an order")
    if np.any(deltas <= 0.0) or np.any(errors <= 0.0):
        raise ValueError("deltas and errors must be positive")

    x = np.log(deltas)
    y = np.log(errors)
    k = x.size
    if k < 3:
        p, lc = np.polyfit(x, y, 1)
        return float(lc), float(p), float("nan")

    (p, lc), cov = np.polyfit(x, y, 1, cov="unscaled")
    resid = y - (lc + p * x)
    s = math.sqrt(float(resid @ resid) / (k - 2))
    eps = stats.t.ppf(0.975, k - 2) * s * math.sqrt(cov[0, 0])
    return float(lc), float(p), float(eps)


class _ProgressMonitor:
    def __init__(self, tag: str = "convergence", print_every: int = 100, verbose: bool = True):
        self.tag = tag
        self.print_every = max(1, int(print_every))
        self.verbose = bool(verbose)
        self.t0 = None
        self.t_last = None

    def start(self, m):
        self.t0 = time.time()
        self.t_last = self.t0
        if self.verbose:
            print(f"[{self.tag} start] m={m}")

    def step(self, i, m):
        if self.verbose and (i % self.print_every == 0 or i == m):
            now = time.time()
            dt = now - self.t_last
            self.t_last = now
            print(f"[{self.tag}] sample={i}/{m}  {dt:.2f}s")

    def done(self, p, eps):
        if self.verbose:
            total = time.time() - (self.t0 or time.time())
            eps_str = "nan" if not np.isfinite(eps) else f"{eps:.4f}"
            print(f"[{self.tag} done] p={p:.4f}  eps={eps_str}  {total:.2f}s")


def _accumulate_trajerrors(rng, suite: ConvergenceSuite, m: int, monitor=None) -> np.ndarray:
    """Sum (not mean) of the pathwise errors over m samples."""
    ns = suite.ns
    ntgt = suite.ntgt
    trajerrors = np.zeros((max(ns), len(ns)))
    yt, xt, xnt = suite.yt, suite.xt, suite.xnt
    vector = suite.xdim is not None

    for it in range(1, m + 1):
        x0 = suite.draw_x0(rng)
        suite.noise.sample(rng, yt)
        suite.target.solve(xt, suite.t0, suite.tf, x0, suite.f, yt)

        for i, n in enumerate(ns):
            k = ntgt // n
            suite.method.solve(xnt[:n], suite.t0, suite.tf, x0, suite.f, yt[0:k * (n - 1) + 1:k])
            diff = np.abs(xnt[1:n] - xt[k:k * (n - 1) + 1:k])
            if vector:
                diff = diff.sum(axis=1)
            trajerrors[1:n, i] += diff

        if monitor is not None:
            monitor.step(it, m)
    return trajerrors


def _result(suite, trajerrors):
    deltas = (suite.tf - suite.t0) / (np.asarray(suite.ns, dtype=float) - 1.0)
    errors = trajerrors.max(axis=0)
    # resolutions with zero error carry no slope information
    keep = errors > 0.0
    if keep.sum() >= 2:
        lc, p, eps = fit_order(deltas[keep], errors[keep])
    else:
        warnings.warn(
            f"only {int(keep.sum())} resolution(s) with positive error; order not fitted",
            RuntimeWarning,
            stacklevel=3,
        )
        lc = p = eps = float("nan")
    return ConvergenceResult(suite=suite, deltas=deltas, trajerrors=trajerrors,
                             errors=errors, lc=lc, p=p, eps=eps)


def solve(rng: np.random.Generator, suite: ConvergenceSuite, verbose: bool = False,
          print_every: int = 100) -> ConvergenceResult:
    """
    Run the Monte Carlo loop of `suite` with `rng` and fit the order.

    Parameters
    ----------
    rng : np.random.Generator
        Sole random source of the run.
    suite : ConvergenceSuite
        Configuration and caches; the caches are overwritten.
    verbose : bool
        Print progress every `print_every` samples and a closing summary.

    Returns
    -------
    ConvergenceResult
    """
    mon = _ProgressMonitor(print_every=print_every, verbose=verbose)
    mon.start(suite.m)
    trajerrors = _accumulate_trajerrors(rng, suite, suite.m, monitor=mon)
    trajerrors /= suite.m
    result = _result(suite, trajerrors)
    mon.done(result.p, result.eps)
    return result


# ---------- parallel ----------

def _worker(args):
    # module level so the process backend can pickle it
    suite, m_i, seed = args
    rng = np.random.default_rng(seed)
    local = suite.copy()
    for name in ("target", "method"):
        solver = getattr(local, name)
        if isinstance(solver, CustomMethod) and solver.rng is not None:
            solver.rng = rng
    return _accumulate_trajerrors(rng, local, m_i)


def solve_parallel(suite: ConvergenceSuite, base_seed: int = 12345, n_workers: int = 4,
                   batch_size: Optional[int] = None, parallel_backend: str = "thread",
                   verbose: bool = False) -> ConvergenceResult:
    """
    Batched version of `solve`.

    The m samples are split in batches of `batch_size` (default: m spread over
    n_workers), each with its own SeedSequence child seed and its own copy of
    the suite. A CustomMethod holding an rng gets the batch generator, as it
    would share the run generator in `solve`. The "process" backend needs
    picklable f, laws and solvers.
    """
    m = suite.m
    if batch_size is None:
        batch_size = int(math.ceil(m / max(1, int(n_workers))))
    sizes = _split_batches(m, batch_size)
    seeds = _child_seeds(base_seed, len(sizes))
    tasks = [(suite, n_i, s) for n_i, s in zip(sizes, seeds)]

    mon = _ProgressMonitor(tag="convergence parallel", verbose=verbose)
    mon.start(m)
    Executor = ThreadPoolExecutor if str(parallel_backend).lower().startswith("thread") else ProcessPoolExecutor
    with Executor(max_workers=int(n_workers)) as ex:
        outs = list(ex.map(_worker, tasks))

    trajerrors = np.sum(outs, axis=0) / m
    result = _result(suite, trajerrors)
    mon.done(result.p, result.eps)
    return result


__all__ = [
    "ConvergenceSuite",
    "ConvergenceResult",
    "fit_order",
    "solve",
    "solve_parallel",
]


if __name__ == "__main__":
    from .processes import WienerProcess
    from .solvers import RandomEuler, RandomHeun

    rng = np.random.default_rng(123)
    t0, tf = 0.0, 1.0
    suite = ConvergenceSuite(
        t0, tf, stats.norm(), lambda t, x, y: y * x, WienerProcess(t0, tf, 0.0),
        RandomHeun(), RandomEuler(), ntgt=2**12, ns=[2**4, 2**5, 2**6, 2**7], m=200,
    )
    res = solve(rng, suite, verbose=True, print_every=50)
    print(f"Euler strong order: p={res.p:.3f} +- {res.eps:.3f}")
