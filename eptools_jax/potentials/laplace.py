# eptools_jax/potentials/laplace.py
from __future__ import annotations

import math

import jax.numpy as jnp

from .base import require
from .quadrature import QuadraturePotential


class EPPotLaplace(QuadraturePotential):
    """
    Laplace (double exponential) potential:
        t(x) = (tau / 2) exp(-tau |x - y|)

    Used as a sparsity prior (y = 0) or a robust likelihood. The kink at y is
    passed to the quadrature as a breakpoint.
    """

    kind = "laplace"
    log_concave = True

    def __init__(self, y=0.0, tau=1.0, services=None):
        super().__init__(services)
        self.y = float(y)
        self.tau = float(tau)
        require(math.isfinite(self.y), f"Laplace location must be finite, got {y}.")
        require(self.tau > 0.0 and math.isfinite(self.tau), f"tau must be positive, got {tau}.")

    def log_density(self, x):
        return math.log(0.5 * self.tau) - self.tau * jnp.abs(jnp.asarray(x) - self.y)

    def breakpoints(self):
        return (self.y,)

    def params(self):
        return {"y": self.y, "tau": self.tau}
