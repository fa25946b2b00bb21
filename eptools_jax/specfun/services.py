# eptools_jax/specfun/services.py
from __future__ import annotations

from dataclasses import dataclass

import jax.nn as jnn
import jax.numpy as jnp
import jax.scipy.special as jsp

_LOG_2PI = 1.8378770664093453


@dataclass(frozen=True)
class SpecfunServices:
    """
    Special functions needed by the potentials.

    Thin adapter over `jax.scipy.special`: potentials receive an instance at
    construction instead of importing the functions directly, so a different
    backend (or an instrumented one) can be swapped in per model.

    All methods are pure and broadcast over array inputs.
    """

    def ndtr(self, x):
        return jsp.ndtr(x)

    def log_ndtr(self, x):
        return jsp.log_ndtr(x)

    def erf(self, x):
        return jsp.erf(x)

    def erfc(self, x):
        return jsp.erfc(x)

    def log_normal_pdf(self, x, mean=0.0, var=1.0):
        """log N(x | mean, var)."""
        return -0.5 * (_LOG_2PI + jnp.log(var) + (x - mean) ** 2 / var)

    def inv_mills(self, x):
        """
        pdf(x) / cdf(x) for the standard normal.

        Evaluated as exp(log pdf - log cdf), which stays finite far into the
        left tail where both terms underflow.
        """
        return jnp.exp(self.log_normal_pdf(x) - jsp.log_ndtr(x))

    def log_gamma(self, x):
        return jsp.gammaln(x)

    def log_factorial(self, n):
        return jsp.gammaln(jnp.asarray(n, dtype=jnp.float64) + 1.0)

    def logsumexp(self, a, axis=None, b=None):
        return jsp.logsumexp(a, axis=axis, b=b)

    def softplus(self, x):
        """log(1 + exp(x))."""
        return jnn.softplus(x)


DEFAULT_SPECFUN = SpecfunServices()
