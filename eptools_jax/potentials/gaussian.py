# eptools_jax/potentials/gaussian.py
from __future__ import annotations

import math

from ..core import MomentResult
from .base import ScalarPotential, require


class EPPotGaussian(ScalarPotential):
    """
    Gaussian potential:
        t(x) = N(y | x, noise_var)

    Closed form: log_z = log N(y | m, v + noise_var).
    """

    kind = "gaussian"
    log_concave = True

    def __init__(self, y, noise_var=1.0, services=None):
        super().__init__(services)
        self.y = float(y)
        self.noise_var = float(noise_var)
        require(math.isfinite(self.y), f"Gaussian observation must be finite, got {y}.")
        require(self.noise_var > 0.0, f"noise_var must be positive, got {noise_var}.")

    def _moments(self, m, v):
        s = v + self.noise_var
        log_z = float(self.specfun.log_normal_pdf(self.y, m, s))
        return MomentResult(log_z, (self.y - m) / s, -1.0 / s)

    def log_density(self, x):
        return self.specfun.log_normal_pdf(self.y, x, self.noise_var)

    def params(self):
        return {"y": self.y, "noise_var": self.noise_var}
