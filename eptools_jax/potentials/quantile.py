# eptools_jax/potentials/quantile.py
from __future__ import annotations

import math

import jax.numpy as jnp

from .base import require
from .quadrature import QuadraturePotential


class EPPotQuantileRegress(QuadraturePotential):
    """
    Quantile regression likelihood (asymmetric Laplace):
        t(x) = q (1 - q) / scale * exp(-rho_q((y - x) / scale))
        rho_q(u) = u (q - 1{u < 0})

    Its mode is the q-quantile fit; q = 0.5 is a (rescaled) Laplace.
    """

    kind = "quantile"
    log_concave = True

    def __init__(self, y, quantile=0.5, scale=1.0, services=None):
        super().__init__(services)
        self.y = float(y)
        self.quantile = float(quantile)
        self.scale = float(scale)
        require(math.isfinite(self.y), f"Observation must be finite, got {y}.")
        require(0.0 < self.quantile < 1.0, f"quantile must lie in (0, 1), got {quantile}.")
        require(self.scale > 0.0 and math.isfinite(self.scale), f"scale must be positive, got {scale}.")

    def log_density(self, x):
        q = self.quantile
        u = (self.y - jnp.asarray(x)) / self.scale
        rho = u * (q - jnp.where(u < 0.0, 1.0, 0.0))
        return math.log(q * (1.0 - q) / self.scale) - rho

    def breakpoints(self):
        return (self.y,)

    def params(self):
        return {"y": self.y, "quantile": self.quantile, "scale": self.scale}
