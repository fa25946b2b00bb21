# eptools_jax/potentials/probit.py
from __future__ import annotations

import math

import jax.numpy as jnp

from ..core import MomentResult
from .base import ScalarPotential, require


class EPPotProbit(ScalarPotential):
    """
    Probit potential for binary labels:
        t(x) = Phi(label * (x + offset) / noise),   label in {-1, +1}

    noise = 0 is the degenerate step 1{label * (x + offset) > 0}; the closed
    form stays valid because the cavity variance is positive.

    With s = sqrt(noise^2 + v), z = label * (m + offset) / s and
    lam = pdf(z) / cdf(z):
        log_z   = log Phi(z)
        dlog_z  = label * lam / s
        d2log_z = -lam * (z + lam) / s^2
    """

    kind = "probit"
    log_concave = True

    def __init__(self, label, offset=0.0, noise=1.0, services=None):
        super().__init__(services)
        require(label in (-1, 1), f"Probit label must be -1 or +1, got {label}.")
        self.label = int(label)
        self.offset = float(offset)
        self.noise = float(noise)
        require(math.isfinite(self.offset), f"offset must be finite, got {offset}.")
        require(self.noise >= 0.0 and math.isfinite(self.noise), f"noise must be >= 0, got {noise}.")

    def _moments(self, m, v):
        sf = self.specfun
        s2 = self.noise ** 2 + v
        s = math.sqrt(s2)
        z = self.label * (m + self.offset) / s
        log_z = float(sf.log_ndtr(z))
        lam = float(sf.inv_mills(z))
        return MomentResult(log_z, self.label * lam / s, -lam * (z + lam) / s2)

    def log_density(self, x):
        u = self.label * (jnp.asarray(x) + self.offset)
        if self.noise == 0.0:
            return jnp.where(u > 0.0, 0.0, -jnp.inf)
        return self.specfun.log_ndtr(u / self.noise)

    def breakpoints(self):
        return (-self.offset,) if self.noise == 0.0 else ()

    def params(self):
        return {"label": self.label, "offset": self.offset, "noise": self.noise}
