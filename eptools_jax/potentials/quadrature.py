# eptools_jax/potentials/quadrature.py
"""
Quadrature-based potentials.

The tilted density p(x) ∝ t(x) N(x | m, v) is integrated in a standardised
frame x = c + s z, where (c, s) come from `integration_frame` (cavity
mean/sd by default, the tilted mode/curvature for potentials with a proximal
sub-solve). One vector integrand

    [w(z), z w(z), z^2 w(z)],   w(z) = s exp(log t(x) + log N(x | m, v) - offset)

is integrated on a single adaptive partition, so the three moment orders are
estimated on the same nodes and stay mutually consistent. Point masses
(`atoms`) are added exactly. Then

    log_z   = offset + log I0
    dlog_z  = (E[x] - m) / v
    d2log_z = (Var[x] - v) / v^2
"""
from __future__ import annotations

import math

import jax.numpy as jnp

from ..core import MomentResult, MomentStats
from ..errors import NumericalError
from ..solvers import proximal_objective
from .base import ScalarPotential, require

# exp() underflows in float64 below this
_LOG_UNDERFLOW = -745.0

_OFFSET_GRID = jnp.linspace(-8.0, 8.0, 33)


class QuadraturePotential(ScalarPotential):
    """
    Base class for potentials evaluated by numerical integration.

    Subclasses provide `log_density(x)` (vectorised) and optionally
    `breakpoints()`, `atoms()` and `integration_frame(m, v)`.
    """

    def integration_frame(self, m: float, v: float):
        """Return (center, scale, proximal_iterations) of the integration frame."""
        return m, math.sqrt(v), 0

    def _log_tilted(self, x, m, v):
        sf = self.specfun
        log_gauss = sf.log_normal_pdf(x, m, v)
        peak = -0.5 * math.log(2.0 * math.pi * v)
        out = log_gauss + self.log_density(x)
        # far outside the cavity the Gaussian factor is exactly zero
        return jnp.where(log_gauss - peak < _LOG_UNDERFLOW, -jnp.inf, out)

    def _integrate(self, integrand, breakpoints):
        quad = self.services.quadrature
        res = quad.integrate(integrand, -math.inf, math.inf, breakpoints=breakpoints)
        calls, evals = 1, res.n_evaluations
        if not res.converged:
            relaxed = quad.cfg.tol * quad.cfg.retry_relax
            res = quad.integrate(
                integrand, -math.inf, math.inf, tolerance=relaxed, breakpoints=breakpoints
            )
            calls += 1
            evals += res.n_evaluations
            if not res.converged:
                raise NumericalError(
                    f"{type(self).__name__}: quadrature did not converge "
                    f"(error={res.error:.3e}, tol={relaxed:.1e}, intervals={res.n_intervals})."
                )
        return res, calls, evals

    def _moments(self, m, v):
        c, s, prox_iters = self.integration_frame(m, v)
        atoms = tuple(self.atoms())

        grid = c + s * _OFFSET_GRID
        log_vals = [jnp.max(self._log_tilted(grid, m, v))]
        bps = tuple(self.breakpoints())
        if bps:
            log_vals.append(jnp.max(self._log_tilted(jnp.asarray(bps), m, v)))
        for loc, log_mass in atoms:
            log_vals.append(log_mass + self.specfun.log_normal_pdf(loc, m, v))
        offset = float(jnp.max(jnp.asarray(log_vals)))
        if not math.isfinite(offset):
            raise NumericalError(
                f"{type(self).__name__}: tilted density vanishes around "
                f"the cavity (mean={m}, var={v})."
            )

        def integrand(z):
            x = c + s * z
            w = jnp.exp(self._log_tilted(x, m, v) - offset) * s
            return jnp.stack([w, w * z, w * z * z])

        res, calls, evals = self._integrate(integrand, [(b - c) / s for b in bps])
        i0, i1, i2 = (float(e) for e in res.estimate)
        for loc, log_mass in atoms:
            za = (loc - c) / s
            w = math.exp(float(log_mass + self.specfun.log_normal_pdf(loc, m, v)) - offset)
            i0 += w
            i1 += w * za
            i2 += w * za * za

        if not i0 > 0.0:
            raise NumericalError(f"{type(self).__name__}: non-positive normaliser {i0}.")
        mean_z = i1 / i0
        var_z = i2 / i0 - mean_z * mean_z
        mean_x = c + s * mean_z
        var_x = s * s * var_z

        stats = MomentStats(quad_calls=calls, quad_evaluations=evals, prox_iterations=prox_iters)
        return MomentResult(
            offset + math.log(i0),
            (mean_x - m) / v,
            (var_x - v) / (v * v),
            stats,
        )


class EPPotQuadrature(QuadraturePotential):
    """
    Generic wrapper: evaluates any potential with a pointwise `log_density`
    by quadrature, whatever moments implementation the wrapped one has.
    Useful to cross-check closed forms and for user potentials that only
    define a density.
    """

    kind = "quadrature"

    def __init__(self, potential: ScalarPotential, services=None):
        super().__init__(potential.services if services is None else services)
        self.potential = potential
        self.log_concave = potential.log_concave

    def log_density(self, x):
        return self.potential.log_density(x)

    def breakpoints(self):
        return self.potential.breakpoints()

    def atoms(self):
        return self.potential.atoms()

    def params(self):
        return {"potential": self.potential}


def _start_point(m: float, v: float, domain):
    if domain is None:
        return m
    lo, hi = domain
    if lo < m < hi:
        return m
    sd = math.sqrt(v)
    if math.isfinite(lo) and math.isfinite(hi):
        return 0.5 * (lo + hi)
    if math.isfinite(lo):
        return lo + sd
    return hi - sd


class EPPotQuadLaplaceApprox(ScalarPotential):
    """
    Laplace approximation of the tilted distribution.

    The mode x* of t(x) N(x | m, v) is found by the proximal solver and the
    tilted distribution is replaced by N(x*, 1/h), h the curvature of
    -log(t(x) N(x | m, v)) at x*:
        log_z   = log t(x*) + log N(x* | m, v) + 0.5 log(2 pi / h)
        dlog_z  = (x* - m) / v
        d2log_z = (1/h - v) / v^2
    Cheap (no quadrature) and exact for Gaussian t; biased for skewed t.
    """

    kind = "laplace_approx"

    def __init__(self, potential: ScalarPotential, services=None, domain=None,
                 prox_tol=None, prox_max_iter=None):
        super().__init__(potential.services if services is None else services)
        self.potential = potential
        self.domain = domain
        self.prox_tol = prox_tol
        self.prox_max_iter = prox_max_iter

        def neg_log_density(x):
            return -potential.log_density(x)

        # built once per instance so the solver compiles derivatives once
        self._objective = proximal_objective(neg_log_density)

    def _moments(self, m, v):
        res = self.services.proximal.solve(
            self._objective,
            _start_point(m, v, self.domain),
            args=(1.0 / v, m),
            tol=self.prox_tol,
            max_iter=self.prox_max_iter,
            domain=self.domain,
        )
        h = res.curvature
        if not (math.isfinite(h) and h > 0.0):
            raise NumericalError(f"Laplace approximation: non-positive curvature {h} at the mode.")
        x = res.argmin
        log_t = float(self.potential.log_density(jnp.asarray(x)))
        log_z = (
            log_t
            + float(self.specfun.log_normal_pdf(x, m, v))
            + 0.5 * math.log(2.0 * math.pi / h)
        )
        return MomentResult(
            log_z,
            (x - m) / v,
            (1.0 / h - v) / (v * v),
            MomentStats(prox_iterations=res.n_iter),
        )

    def params(self):
        return {"potential": self.potential, "domain": self.domain}


def wrap_quadrature(services=None, potential=None, base=None, **base_params):
    """Factory for 'quadrature': wrap a potential instance or build one by tag."""
    from .base import make_potential

    if potential is None:
        require(base is not None, "quadrature wrapper needs `potential` or `base`.")
        potential = make_potential(base, services=services, **base_params)
    return EPPotQuadrature(potential, services=services)


def wrap_laplace_approx(services=None, potential=None, base=None, domain=None,
                        prox_tol=None, prox_max_iter=None, **base_params):
    """Factory for 'laplace_approx'."""
    from .base import make_potential

    if potential is None:
        require(base is not None, "laplace_approx wrapper needs `potential` or `base`.")
        potential = make_potential(base, services=services, **base_params)
    return EPPotQuadLaplaceApprox(
        potential, services=services, domain=domain,
        prox_tol=prox_tol, prox_max_iter=prox_max_iter,
    )
