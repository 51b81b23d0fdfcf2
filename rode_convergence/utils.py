# rode_convergence/utils.py
"""
Small helpers shared by the samplers, solvers and the convergence suite:
input guards, uniform time grids, SciPy law inspection and seed splitting.
"""

from __future__ import annotations
import math
from numbers import Real

import numpy as np
from numpy.random import SeedSequence
from scipy import stats
from scipy.stats._multivariate import multi_rv_frozen


# ------------------------ guards ------------------------

def _as_float(x) -> float:
    x = float(x)
    if not math.isfinite(x):
        raise ValueError("Inputs must be finite numbers")
    return x


def _check_interval(t0, tf):
    t0 = _as_float(t0)
    tf = _as_float(tf)
    if not t0 < tf:
        raise ValueError(f"t0 must be smaller than tf; got t0={t0}, tf={tf}")
    return t0, tf


def _check_positive(name: str, x) -> float:
    x = _as_float(x)
    if x <= 0.0:
        raise ValueError(f"{name} must be positive; got {x}")
    return x


def _check_nonnegative(name: str, x) -> float:
    x = _as_float(x)
    if x < 0.0:
        raise ValueError(f"{name} must be non-negative; got {x}")
    return x


def _check_sampler(name: str, law):
    if not callable(getattr(law, "rvs", None)):
        raise ValueError(f"{name} must be a frozen scipy.stats distribution (with an rvs method)")
    return law


# ------------------------ time grids ------------------------

def time_step(t0: float, tf: float, n: int) -> float:
    """Uniform step of an n-point mesh on [t0, tf]."""
    return (tf - t0) / (n - 1)


def time_grid(t0: float, tf: float, n: int) -> np.ndarray:
    """n uniformly spaced points on [t0, tf], both ends included."""
    return np.linspace(t0, tf, int(n))


# ------------------------ laws ------------------------

def is_univariate_law(law) -> bool:
    """
    Frozen univariate continuous law, e.g. ``scipy.stats.norm()``, or a real
    number standing for a point mass.
    """
    if isinstance(law, Real) and not isinstance(law, bool):
        return True
    return isinstance(getattr(law, "dist", None), stats.rv_continuous)


def is_multivariate_law(law) -> bool:
    """
    Frozen multivariate law, e.g. ``scipy.stats.multivariate_normal(...)``, or a
    1-D array standing for a point mass.
    """
    if isinstance(law, multi_rv_frozen):
        return True
    if isinstance(law, (list, tuple, np.ndarray)):
        a = np.asarray(law)
        return a.ndim == 1 and a.size > 0 and np.issubdtype(a.dtype, np.number)
    return False


def law_dimension(law) -> int:
    """Number of components of a draw of a multivariate law."""
    if isinstance(law, multi_rv_frozen):
        # probe with a private generator so that no caller stream is consumed
        probe = law.rvs(random_state=np.random.default_rng(0))
        return int(np.atleast_1d(probe).size)
    return int(np.asarray(law).size)


def draw_scalar(rng: np.random.Generator, law) -> float:
    if isinstance(law, Real):
        return float(law)
    return float(law.rvs(random_state=rng))


def draw_vector(rng: np.random.Generator, law, out: np.ndarray) -> np.ndarray:
    """Draw one sample of a multivariate law into ``out`` (any 1-D view)."""
    if isinstance(law, multi_rv_frozen):
        out[:] = np.ravel(law.rvs(random_state=rng))
    else:
        out[:] = np.asarray(law, dtype=float)
    return out


def law_name(law) -> str:
    """Short human-readable name of a law, for table captions."""
    if isinstance(law, Real):
        return f"Dirac({float(law):g})"
    if isinstance(law, (list, tuple, np.ndarray)):
        return "Dirac(" + ", ".join(f"{float(v):g}" for v in np.ravel(law)) + ")"
    dist = getattr(law, "dist", None)
    if dist is not None:
        return getattr(dist, "name", type(dist).__name__)
    return type(law).__name__.replace("_frozen", "")


# ---------- parallel utilities ----------

def _split_batches(n, batch_size):
    n = int(n); batch_size = int(max(1, batch_size))
    sizes = []
    done = 0
    while done < n:
        take = min(batch_size, n - done)
        sizes.append(take)
        done += take
    return sizes


def _child_seeds(base_seed, n_children):
    ss = SeedSequence(int(base_seed))
    kids = ss.spawn(int(n_children))
    return [int(k.generate_state(1)[0]) for k in kids]


__all__ = [
    "time_step",
    "time_grid",
    "is_univariate_law",
    "is_multivariate_law",
    "law_dimension",
    "draw_scalar",
    "draw_vector",
    "law_name",
]
