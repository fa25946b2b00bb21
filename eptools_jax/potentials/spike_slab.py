# eptools_jax/potentials/spike_slab.py
from __future__ import annotations

import math

from .base import require
from .quadrature import QuadraturePotential


class EPPotSpikeSlab(QuadraturePotential):
    """
    Spike-and-slab prior:
        t(x) = (1 - p) delta_0(x) + p N(x | 0, slab_var)

    The slab is integrated numerically; the spike is a point mass, which no
    quadrature rule can resolve, so it enters as an exact atom at 0.
    """

    kind = "spike_slab"

    def __init__(self, slab_prob, slab_var=1.0, services=None):
        super().__init__(services)
        self.slab_prob = float(slab_prob)
        self.slab_var = float(slab_var)
        require(0.0 < self.slab_prob <= 1.0, f"slab_prob must lie in (0, 1], got {slab_prob}.")
        require(self.slab_var > 0.0 and math.isfinite(self.slab_var),
                f"slab_var must be positive, got {slab_var}.")
        self.log_concave = self.slab_prob == 1.0

    def log_density(self, x):
        return math.log(self.slab_prob) + self.specfun.log_normal_pdf(x, 0.0, self.slab_var)

    def atoms(self):
        if self.slab_prob == 1.0:
            return ()
        return ((0.0, math.log1p(-self.slab_prob)),)

    def params(self):
        return {"slab_prob": self.slab_prob, "slab_var": self.slab_var}
