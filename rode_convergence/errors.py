# rode_convergence/errors.py
"""
Exception types raised by the samplers, solvers and the convergence suite.

Both derive from ValueError so that callers guarding with ``except ValueError``
keep working.
"""


class ConfigurationError(ValueError):
    """Invalid suite or sampler construction (mesh sizes, laws, embeddings)."""


class DimensionMismatchError(ValueError):
    """Path buffers whose shapes do not fit together."""


__all__ = ["ConfigurationError", "DimensionMismatchError"]
