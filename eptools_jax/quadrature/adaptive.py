# eptools_jax/quadrature/adaptive.py
"""
Adaptive Gauss–Kronrod integration on a (possibly infinite) interval.

The partition is refined in rounds: every interval whose error estimate
exceeds its width-proportional share of the global tolerance is bisected, and
all new intervals of a round are evaluated in one batched call of the
integrand. Vector-valued integrands (k components) share a single partition;
the per-interval error is the maximum over components, so every component is
converged on the same nodes.

Infinite bounds are mapped to a finite interval before subdivision:
    (-inf, inf):  x = t / (1 - t^2),      t in (-1, 1)
    [a, inf):     x = a + t / (1 - t),    t in [0, 1)
    (-inf, b]:    x = b - t / (1 - t),    t in [0, 1)
The K15 rule never evaluates interval endpoints, so the singular Jacobian at
|t| = 1 is never touched.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Literal, Sequence, Tuple

import jax.numpy as jnp

from .kronrod import gauss_kronrod_15

logger = logging.getLogger(__name__)

Integrand = Callable[[jnp.ndarray], jnp.ndarray]


@dataclass(frozen=True)
class QuadratureCFG:
    """Configuration for the quadrature services."""
    tol: float = 1e-10              # relative tolerance on the estimate
    epsabs: float = 1e-14           # absolute floor of the tolerance
    max_subdivisions: int = 400     # interval budget
    backend: Literal["standard", "compatibility"] = "standard"
    retry_relax: float = 100.0      # tolerance factor for the single retry done by potentials
    debug: bool = False

    def __post_init__(self):
        if not self.tol > 0.0:
            raise ValueError(f"tol must be positive, got {self.tol}.")
        if self.epsabs < 0.0:
            raise ValueError(f"epsabs must be non-negative, got {self.epsabs}.")
        if self.max_subdivisions < 1:
            raise ValueError(f"max_subdivisions must be >= 1, got {self.max_subdivisions}.")
        if self.backend not in ("standard", "compatibility"):
            raise ValueError(f"Unknown quadrature backend: {self.backend}")
        if not self.retry_relax >= 1.0:
            raise ValueError(f"retry_relax must be >= 1, got {self.retry_relax}.")


@dataclass(frozen=True)
class QuadResult:
    """Outcome of one integration."""
    estimate: jnp.ndarray   # shape () or (k,)
    error: float
    converged: bool
    n_intervals: int
    n_evaluations: int


# -----------------------------------------------------------------------------
# Interval transforms
# -----------------------------------------------------------------------------

def _map_to_finite(
    integrand: Integrand,
    lower: float,
    upper: float,
    breakpoints: Sequence[float],
) -> Tuple[Integrand, float, float, list]:
    pts = sorted({float(p) for p in breakpoints if lower < p < upper and math.isfinite(p)})

    if math.isfinite(lower) and math.isfinite(upper):
        return integrand, lower, upper, pts

    if math.isinf(lower) and math.isinf(upper):
        def g(t):
            x = t / (1.0 - t * t)
            jac = (1.0 + t * t) / (1.0 - t * t) ** 2
            return integrand(x) * jac

        tp = [2.0 * p / (1.0 + math.sqrt(1.0 + 4.0 * p * p)) for p in pts]
        return g, -1.0, 1.0, tp

    if math.isfinite(lower):
        a = lower

        def g(t):
            x = a + t / (1.0 - t)
            return integrand(x) / (1.0 - t) ** 2

        tp = [(p - a) / (1.0 + p - a) for p in pts]
        return g, 0.0, 1.0, tp

    b = upper

    def g(t):
        x = b - t / (1.0 - t)
        return integrand(x) / (1.0 - t) ** 2

    # orientation flips; t increases as x decreases
    tp = sorted((b - p) / (1.0 + b - p) for p in pts)
    return g, 0.0, 1.0, tp


# -----------------------------------------------------------------------------
# Services
# -----------------------------------------------------------------------------

class QuadratureServices:
    """
    Adaptive G7/K15 quadrature ("standard" backend).

    Stateless apart from its configuration; safe to share between potentials
    and threads.
    """

    backend = "standard"

    def __init__(self, cfg: QuadratureCFG = QuadratureCFG()):
        self.cfg = cfg

    def integrate(
        self,
        integrand: Integrand,
        lower: float,
        upper: float,
        tolerance: float | None = None,
        max_subdivisions: int | None = None,
        breakpoints: Sequence[float] = (),
    ) -> QuadResult:
        """
        Integrate `integrand` over [lower, upper].

        Parameters
        ----------
        integrand : callable
            Vectorised: nodes (n,) -> values (n,) or (k, n).
        lower, upper : float
            Bounds, may be +-inf.
        tolerance : float, optional
            Relative tolerance (defaults to cfg.tol).
        max_subdivisions : int, optional
            Interval budget (defaults to cfg.max_subdivisions).
        breakpoints : sequence of float
            Points where the integrand is not smooth; used as initial
            interval edges.

        Returns
        -------
        QuadResult
            `converged` is False when the budget ran out before the error
            estimate met the tolerance; the estimate is still returned.
        """
        tol = self.cfg.tol if tolerance is None else float(tolerance)
        budget = self.cfg.max_subdivisions if max_subdivisions is None else int(max_subdivisions)
        lower = float(lower)
        upper = float(upper)

        sign = 1.0
        if lower > upper:
            lower, upper = upper, lower
            sign = -1.0
        if lower == upper:
            probe = jnp.asarray(integrand(jnp.zeros((1,))))
            zero = jnp.zeros(probe.shape[:-1]) if probe.ndim > 1 else jnp.asarray(0.0)
            return QuadResult(zero, 0.0, True, 0, 1)

        g, a, b, pts = _map_to_finite(integrand, lower, upper, breakpoints)

        edges = [a] + pts + [b]
        lo = jnp.asarray(edges[:-1], dtype=jnp.float64)
        hi = jnp.asarray(edges[1:], dtype=jnp.float64)
        est, err = gauss_kronrod_15(g, lo, hi)
        n_eval = 15 * int(lo.shape[0])
        total_width = b - a

        converged = False
        while True:
            total = jnp.sum(est, axis=1)
            total_err = float(jnp.sum(err))
            scale = float(jnp.max(jnp.abs(total)))
            target = max(self.cfg.epsabs, tol * scale)
            if not math.isfinite(total_err) or not math.isfinite(scale):
                break
            if total_err <= target:
                converged = True
                break

            n_int = int(lo.shape[0])
            room = budget - n_int
            if room <= 0:
                break

            share = target * (hi - lo) / total_width
            idx = jnp.nonzero(err > share)[0]
            if idx.shape[0] == 0:
                idx = jnp.argmax(err)[None]
            if idx.shape[0] > room:
                idx = idx[jnp.argsort(-err[idx])[:room]]

            mid = 0.5 * (lo[idx] + hi[idx])
            if bool(jnp.any((mid <= lo[idx]) | (mid >= hi[idx]))):
                # intervals cannot be split any further in floating point
                break
            new_lo = jnp.concatenate([lo[idx], mid])
            new_hi = jnp.concatenate([mid, hi[idx]])
            new_est, new_err = gauss_kronrod_15(g, new_lo, new_hi)
            n_eval += 15 * int(new_lo.shape[0])

            keep = jnp.ones((n_int,), dtype=bool).at[idx].set(False)
            lo = jnp.concatenate([lo[keep], new_lo])
            hi = jnp.concatenate([hi[keep], new_hi])
            est = jnp.concatenate([est[:, keep], new_est], axis=1)
            err = jnp.concatenate([err[keep], new_err])

        total = sign * jnp.sum(est, axis=1)
        if total.shape[0] == 1:
            total = total[0]
        result = QuadResult(
            estimate=total,
            error=float(jnp.sum(err)),
            converged=converged,
            n_intervals=int(lo.shape[0]),
            n_evaluations=n_eval,
        )
        if self.cfg.debug:
            logger.debug(
                "quadrature [%s, %s]: error=%.3e converged=%s intervals=%d evals=%d",
                lower, upper, result.error, result.converged,
                result.n_intervals, result.n_evaluations,
            )
        return result


def make_quadrature(cfg: QuadratureCFG = QuadratureCFG()):
    """Select the quadrature backend named by `cfg.backend`."""
    if cfg.backend == "standard":
        return QuadratureServices(cfg)
    from .quadpack import QuadPackServices
    return QuadPackServices(cfg)
