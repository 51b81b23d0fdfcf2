# rode_convergence/fbm.py
"""
Fractional Brownian motion on a fixed uniform grid.

The path is built from fractional Gaussian noise (fGn), the stationary
increments of fBm, with unit-step autocovariance

    gamma(k) = 0.5 * (|k+1|^{2H} - 2|k|^{2H} + |k-1|^{2H}),

scaled by dt^H and summed. Generators:
    fgn_daviesharte(...)        circulant embedding + FFT, O(M log M)
    fgn_daviesharte_naive(...)  same synthesis with an explicit DFT matrix, O(M^2);
                                agrees with the FFT version on the same draws
    fgn_cholesky(...)           Cholesky factor of the Toeplitz covariance, O(N^3)
                                setup; statistically indistinguishable, for validation

Notes:
    - The embedding size is the next power of two >= 2N - 1 for an N-point grid.
    - Eigenvalues of the circulant are nonnegative in exact arithmetic; rounding
      may push a few slightly below zero. Those are clipped, anything larger is
      a configuration error.

Reference
---------
Davies, Harte, "Tests for Hurst effect," Biometrika 74 (1987).
Dieker, "Simulation of fractional Brownian motion," MSc thesis, Twente (2004).
"""

from __future__ import annotations
import math
import warnings
from typing import Optional

import numpy as np
from scipy.linalg import cholesky, toeplitz

from .errors import ConfigurationError, DimensionMismatchError
from .processes import UnivariateProcess
from .utils import _as_float, time_step

# relative size of a negative eigenvalue that is still treated as rounding noise
EIGEN_RTOL = 1e-8
# below this (relative) nothing is reported
EIGEN_FLOOR = 1e-12


def _validate_hurst(H) -> float:
    H = _as_float(H)
    if not (0.0 < H < 1.0):
        raise ValueError("H must be in (0, 1)")
    return H


def fgn_autocovariance(k, H: float) -> np.ndarray:
    """Autocovariance of unit-step fGn at integer lags k."""
    k = np.abs(np.asarray(k, dtype=float))
    h2 = 2.0 * H
    return 0.5 * (np.power(k + 1.0, h2) - 2.0 * np.power(k, h2) + np.power(np.abs(k - 1.0), h2))


def embedding_size(n_points: int) -> int:
    """Next power of two >= 2 n_points - 1."""
    return 1 << int(math.ceil(math.log2(max(2 * int(n_points) - 1, 2))))


def _circulant_row(n_points: int, H: float) -> np.ndarray:
    M = embedding_size(n_points)
    L = M // 2
    g = fgn_autocovariance(np.arange(L + 1), H)
    return np.concatenate([g, g[-2:0:-1]])


def circulant_eigenvalues(n_points: int, H: float) -> np.ndarray:
    """Raw (unclipped) eigenvalues of the circulant embedding of fGn."""
    H = _validate_hurst(H)
    return np.fft.fft(_circulant_row(n_points, H)).real


def clip_eigenvalues(lam: np.ndarray, rtol: float = EIGEN_RTOL, floor: float = EIGEN_FLOOR) -> np.ndarray:
    """
    Clip negative eigenvalues caused by rounding.

    Negatives of relative size below `floor` are zeroed silently, up to `rtol`
    they are zeroed with a RuntimeWarning, beyond that the embedding is
    rejected with ConfigurationError.
    """
    lam = np.asarray(lam, dtype=float)
    scale = float(np.max(lam))
    if not scale > 0.0:
        raise ConfigurationError("circulant embedding has no positive eigenvalue")
    worst = -float(np.min(lam))
    if worst <= 0.0:
        return lam
    if worst > rtol * scale:
        raise ConfigurationError(
            f"circulant embedding is not nonnegative definite: eigenvalue {-worst:.3e} "
            f"(max {scale:.3e}); increase the embedding size or change H"
        )
    if worst > floor * scale:
        warnings.warn(
            f"clipping negative circulant eigenvalues down to {-worst:.3e}",
            RuntimeWarning,
            stacklevel=2,
        )
    return np.maximum(lam, 0.0)


def _spectral_weights(rng: np.random.Generator, lam: np.ndarray) -> np.ndarray:
    """Hermitian Gaussian vector with E|w_k|^2 = lam_k / M."""
    M = lam.size
    L = M // 2
    z = rng.standard_normal(M)
    w = np.empty(M, dtype=np.complex128)
    w[0] = math.sqrt(lam[0] / M) * z[0]
    w[L] = math.sqrt(lam[L] / M) * z[1]
    w[1:L] = np.sqrt(lam[1:L] / (2.0 * M)) * (z[2:L + 1] + 1j * z[L + 1:])
    w[L + 1:] = np.conj(w[1:L][::-1])
    return w


def fgn_daviesharte(
    rng: np.random.Generator,
    n_inc: int,
    H: float,
    eigenvalues: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Unit-step fractional Gaussian noise of length n_inc via Davies-Harte.

    Parameters
    ----------
    rng : np.random.Generator
        Random source; exactly M standard normals are consumed.
    n_inc : int
        Number of increments (grid points minus one).
    H : float
        Hurst exponent in (0, 1).
    eigenvalues : np.ndarray or None
        Clipped circulant eigenvalues for an (n_inc + 1)-point grid. Computed
        when None.

    Returns
    -------
    fgn : np.ndarray, shape (n_inc,)
        Zero-mean Gaussian sequence with autocovariance gamma(k).
    """
    n_inc = int(n_inc)
    if n_inc < 1:
        raise ValueError("n_inc must be >= 1")
    if eigenvalues is None:
        eigenvalues = clip_eigenvalues(circulant_eigenvalues(n_inc + 1, H))
    M = eigenvalues.size
    w = _spectral_weights(rng, eigenvalues)
    return (np.fft.ifft(w).real * M)[:n_inc]


def fgn_daviesharte_naive(rng: np.random.Generator, n_inc: int, H: float) -> np.ndarray:
    """
    Davies-Harte with explicit O(M^2) discrete Fourier sums instead of FFTs.
    Consumes the same draws as `fgn_daviesharte`, so both agree to rounding
    when fed generators in the same state.
    """
    n_inc = int(n_inc)
    if n_inc < 1:
        raise ValueError("n_inc must be >= 1")
    H = _validate_hurst(H)
    c = _circulant_row(n_inc + 1, H)
    M = c.size
    k = np.arange(M)
    lam = (np.exp(-2j * math.pi * np.outer(k, k) / M) @ c).real
    lam = clip_eigenvalues(lam)
    w = _spectral_weights(rng, lam)
    j = np.arange(n_inc)
    return (np.exp(2j * math.pi * np.outer(j, k) / M) @ w).real


def fgn_cholesky(
    rng: np.random.Generator,
    n_inc: int,
    H: float,
    factor: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Unit-step fGn as L z with L the lower Cholesky factor of the Toeplitz
    covariance [gamma(|i-j|)]. Exact in law; meant for small n_inc.
    """
    n_inc = int(n_inc)
    if n_inc < 1:
        raise ValueError("n_inc must be >= 1")
    if factor is None:
        factor = fgn_cholesky_factor(n_inc, H)
    return factor @ rng.standard_normal(n_inc)


def fgn_cholesky_factor(n_inc: int, H: float) -> np.ndarray:
    H = _validate_hurst(H)
    cov = toeplitz(fgn_autocovariance(np.arange(int(n_inc)), H))
    return cholesky(cov, lower=True)


class FractionalBrownianMotionProcess(UnivariateProcess):
    """
    fBm with Hurst exponent H started at y0: mean y0, Var(Y_t) = (t - t0)^{2H}.

    The grid size n is fixed at construction because the embedding (or the
    Cholesky factor) is precomputed for it; sampling a buffer of any other
    length raises DimensionMismatchError.

    Parameters
    ----------
    t0, tf : float
        Time span.
    y0 : float
        Initial value.
    H : float
        Hurst exponent in (0, 1).
    n : int
        Number of grid points of every sampled path.
    method : str
        "daviesharte" (default) or "cholesky".
    """

    def __init__(self, t0, tf, y0, H, n, method="daviesharte"):
        super().__init__(t0, tf)
        self.y0 = _as_float(y0)
        self.H = _validate_hurst(H)
        self.n = int(n)
        if self.n < 2:
            raise ValueError("n must be >= 2")
        method = str(method).lower().replace("-", "").replace("_", "")
        if method not in ("daviesharte", "cholesky"):
            raise ValueError("method must be 'daviesharte' or 'cholesky'")
        self.method = method

        self._eigenvalues = None
        self._factor = None
        if method == "daviesharte":
            self._eigenvalues = clip_eigenvalues(circulant_eigenvalues(self.n, self.H))
        else:
            self._factor = fgn_cholesky_factor(self.n - 1, self.H)

    def fgn(self, rng: np.random.Generator) -> np.ndarray:
        """One draw of unit-step fGn of length n - 1."""
        if self.method == "daviesharte":
            return fgn_daviesharte(rng, self.n - 1, self.H, eigenvalues=self._eigenvalues)
        return fgn_cholesky(rng, self.n - 1, self.H, factor=self._factor)

    def sample(self, rng, yt):
        n = self._check_buffer(yt)
        if n != self.n:
            raise DimensionMismatchError(
                f"this fBm sampler was built for {self.n} points; got a buffer of {n}"
            )
        dt = time_step(self.t0, self.tf, n)
        x = self.fgn(rng)
        yt[0] = self.y0
        np.cumsum(x * dt**self.H, out=yt[1:])
        yt[1:] += self.y0


__all__ = [
    "fgn_autocovariance",
    "embedding_size",
    "circulant_eigenvalues",
    "clip_eigenvalues",
    "fgn_daviesharte",
    "fgn_daviesharte_naive",
    "fgn_cholesky",
    "fgn_cholesky_factor",
    "FractionalBrownianMotionProcess",
]
