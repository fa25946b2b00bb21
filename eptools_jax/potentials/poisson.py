# eptools_jax/potentials/poisson.py
"""
Poisson count potentials
    t(x) = Poisson(y | rate(x)) = rate(x)^y exp(-rate(x)) / y!

- EPPotPoissonExpRate:       rate = exp(x)
- EPPotPoissonLogisticRate:  rate = log(1 + exp(x))
- EPPotPoissonLinearRate:    rate = x on x > 0 (closed form)

The nonlinear links have no closed-form tilted moments and a tilted density
whose peak can sit many cavity standard deviations away from the cavity
mean (large counts). They centre the quadrature on the tilted mode, found by
the injected proximal solver, and scale it by the curvature there. A failed
solve raises NumericalError: integrating around a wrong centre would corrupt
the moments without any visible symptom.
"""
from __future__ import annotations

import math
from functools import partial

import jax
import jax.nn as jnn
import jax.numpy as jnp
from jax import lax

from ..core import MomentResult
from ..errors import NumericalError
from ..solvers import proximal_objective
from .base import ScalarPotential, require
from .quadrature import QuadraturePotential

_TINY = 1e-300


def _check_count(y) -> int:
    try:
        ok = float(y) == int(y) and int(y) >= 0
    except (TypeError, ValueError, OverflowError):
        ok = False
    require(ok, f"Poisson count must be a non-negative integer, got {y}.")
    return int(y)


# -----------------------------------------------------------------------------
# Observation terms  -log t(x) + log y!   (module level: compiled once)
# -----------------------------------------------------------------------------

def _exp_rate_term(x, y):
    return jnp.exp(x) - y * x


def _logistic_rate_term(x, y):
    rate = jnn.softplus(x)
    return rate - y * jnp.log(jnp.maximum(rate, _TINY))


_exp_rate_objective = proximal_objective(_exp_rate_term)
_logistic_rate_objective = proximal_objective(_logistic_rate_term)


class EPPotPoissonCommon(QuadraturePotential):
    """
    Shared part of the Poisson potentials with a nonlinear rate link.

    Subclasses set `_term` (negative log-likelihood up to log y!) and the
    matching proximal `_objective`.
    """

    log_concave = True
    _term = None
    _objective = None

    def __init__(self, y, services=None, prox_tol=None, prox_max_iter=None):
        super().__init__(services)
        self.y = _check_count(y)
        self.prox_tol = prox_tol
        self.prox_max_iter = prox_max_iter
        self._log_y_factorial = float(self.specfun.log_factorial(self.y))

    def log_density(self, x):
        return -self._term(jnp.asarray(x), float(self.y)) - self._log_y_factorial

    def integration_frame(self, m, v):
        res = self.services.proximal.solve(
            self._objective,
            m,
            args=(1.0 / v, m, float(self.y)),
            tol=self.prox_tol,
            max_iter=self.prox_max_iter,
        )
        h = res.curvature
        if not (math.isfinite(h) and h > 0.0):
            raise NumericalError(f"{type(self).__name__}: non-positive curvature {h} at the tilted mode.")
        return res.argmin, 1.0 / math.sqrt(h), res.n_iter

    def params(self):
        return {"y": self.y, "prox_tol": self.prox_tol, "prox_max_iter": self.prox_max_iter}


class EPPotPoissonExpRate(EPPotPoissonCommon):
    kind = "poisson_exp"
    _term = staticmethod(_exp_rate_term)
    _objective = staticmethod(_exp_rate_objective)


class EPPotPoissonLogisticRate(EPPotPoissonCommon):
    kind = "poisson_logistic"
    _term = staticmethod(_logistic_rate_term)
    _objective = staticmethod(_logistic_rate_objective)


# -----------------------------------------------------------------------------
# Linear rate: closed form
# -----------------------------------------------------------------------------

def _linear_rate_log_z(m, v, y, specfun):
    """
    log ∫_0^inf N(x | m, v) x^y exp(-x) / y! dx.

    exp(-x) N(x | m, v) = exp(-m + v/2) N(x | m - v, v), so the integral is a
    truncated moment of N(mu, v), mu = m - v. Ratios r_k = E[X^k 1{X>0}] / P(X>0)
    obey r_0 = 1, r_1 = mu + sd * lam(mu/sd),
    r_k = mu r_{k-1} + (k-1) v r_{k-2}.
    """
    mu = m - v
    sd = jnp.sqrt(v)
    a = mu / sd
    r1 = mu + sd * specfun.inv_mills(a)

    def body(k, carry):
        r_km1, r_km2 = carry
        return mu * r_km1 + (k - 1) * v * r_km2, r_km1

    r_y, _ = lax.fori_loop(2, y + 1, body, (r1, jnp.ones_like(r1)))
    r_y = jnp.where(y == 0, 1.0, r_y)
    return -m + 0.5 * v + specfun.log_ndtr(a) + jnp.log(r_y) - specfun.log_factorial(y)


# dynamic trip count -> while_loop, which only forward mode differentiates
_linear_rate_d1 = jax.jacfwd(_linear_rate_log_z, argnums=0)
_linear_rate_d2 = jax.jacfwd(_linear_rate_d1, argnums=0)


@partial(jax.jit, static_argnums=3)
def _linear_rate_moments(m, v, y, specfun):
    return (
        _linear_rate_log_z(m, v, y, specfun),
        _linear_rate_d1(m, v, y, specfun),
        _linear_rate_d2(m, v, y, specfun),
    )


class EPPotPoissonLinearRate(ScalarPotential):
    """
    Poisson count with identity rate link, rate = x > 0.

    The normaliser has a closed form through truncated-normal moments; its
    derivatives in the cavity mean come from forward-mode autodiff.
    Accuracy degrades when the cavity puts almost no mass on x > 0
    ((m - v) / sqrt(v) << -10).
    """

    kind = "poisson_linear"
    log_concave = True

    def __init__(self, y, services=None):
        super().__init__(services)
        self.y = _check_count(y)

    def _moments(self, m, v):
        log_z, d1, d2 = _linear_rate_moments(
            jnp.asarray(m, dtype=jnp.float64),
            jnp.asarray(v, dtype=jnp.float64),
            jnp.asarray(self.y),
            self.specfun,
        )
        return MomentResult(float(log_z), float(d1), float(d2))

    def log_density(self, x):
        x = jnp.asarray(x)
        safe = jnp.where(x > 0.0, x, 1.0)
        val = self.y * jnp.log(safe) - safe - self.specfun.log_factorial(self.y)
        return jnp.where(x > 0.0, val, -jnp.inf)

    def breakpoints(self):
        return (0.0,)

    def params(self):
        return {"y": self.y}
