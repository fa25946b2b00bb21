# eptools_jax/potentials/mixture.py
from __future__ import annotations

import jax.numpy as jnp
import numpy as np

from .base import require
from .quadrature import QuadraturePotential

_SPAN = 8.0


class EPPotGaussMixture(QuadraturePotential):
    """
    Gaussian mixture potential:
        t(x) = sum_k w_k N(x | mu_k, var_k)

    Weights must be positive; they are used as given (t need not be
    normalised). Generally not log-concave, so site precisions may come out
    negative.
    """

    kind = "gauss_mixture"

    def __init__(self, weights, means, variances, services=None):
        super().__init__(services)
        w = np.asarray(weights, dtype=np.float64).reshape(-1)
        mu = np.asarray(means, dtype=np.float64).reshape(-1)
        var = np.asarray(variances, dtype=np.float64).reshape(-1)
        require(w.size > 0, "Mixture needs at least one component.")
        require(w.shape == mu.shape == var.shape,
                f"weights/means/variances shapes differ: {w.shape}, {mu.shape}, {var.shape}.")
        require(bool(np.all(w > 0.0)), "Mixture weights must be positive.")
        require(bool(np.all(np.isfinite(mu))), "Mixture means must be finite.")
        require(bool(np.all((var > 0.0) & np.isfinite(var))), "Mixture variances must be positive.")
        self.weights = jnp.asarray(w)
        self.means = jnp.asarray(mu)
        self.variances = jnp.asarray(var)
        self._log_w = jnp.log(self.weights)

    def log_density(self, x):
        x = jnp.asarray(x)[..., None]
        comp = self._log_w + self.specfun.log_normal_pdf(x, self.means, self.variances)
        return self.specfun.logsumexp(comp, axis=-1)

    def breakpoints(self):
        # each component is resolved inside [mu - 8 sd, mu + 8 sd]
        mu = np.asarray(self.means)
        sd = np.sqrt(np.asarray(self.variances))
        pts = np.concatenate([mu - _SPAN * sd, mu, mu + _SPAN * sd])
        return tuple(float(p) for p in np.unique(pts))

    def params(self):
        return {
            "weights": np.asarray(self.weights).tolist(),
            "means": np.asarray(self.means).tolist(),
            "variances": np.asarray(self.variances).tolist(),
        }
