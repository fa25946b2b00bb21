# eptools_jax/quadrature/quadpack.py
"""
Compatibility backend on top of QUADPACK (`scipy.integrate.quad`).

Differences to the standard backend:
- each component of a vector integrand is integrated in its own adaptive
  pass (partitions are not shared between moment orders);
- breakpoints split the range into separate `quad` calls, since `quad` does
  not accept `points` on infinite ranges.

Slower than the batched standard backend (scalar callbacks), but useful to
cross-check results against a reference implementation.
"""
from __future__ import annotations

import logging
import math
from typing import Sequence

import jax.numpy as jnp
import numpy as np
from scipy.integrate import quad

from .adaptive import Integrand, QuadratureCFG, QuadResult

logger = logging.getLogger(__name__)

# QUADPACK refuses relative tolerances below max(50 * eps, 5e-29).
_MIN_EPSREL = 50.0 * np.finfo(np.float64).eps


def _probe_point(lower: float, upper: float) -> float:
    if math.isfinite(lower) and math.isfinite(upper):
        return 0.5 * (lower + upper)
    if math.isfinite(lower):
        return lower + 1.0
    if math.isfinite(upper):
        return upper - 1.0
    return 0.0


class QuadPackServices:
    """QUADPACK-backed quadrature ("compatibility" backend)."""

    backend = "compatibility"

    def __init__(self, cfg: QuadratureCFG = QuadratureCFG(backend="compatibility")):
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
        tol = max(self.cfg.tol if tolerance is None else float(tolerance), _MIN_EPSREL)
        limit = self.cfg.max_subdivisions if max_subdivisions is None else int(max_subdivisions)
        lower = float(lower)
        upper = float(upper)

        sign = 1.0
        if lower > upper:
            lower, upper = upper, lower
            sign = -1.0

        probe = np.asarray(integrand(jnp.asarray([_probe_point(lower, upper)])))
        k = 1 if probe.ndim == 1 else probe.shape[0]
        if lower == upper:
            zero = jnp.zeros((k,)) if probe.ndim > 1 else jnp.asarray(0.0)
            return QuadResult(zero, 0.0, True, 0, 1)

        pts = sorted({float(p) for p in breakpoints if lower < p < upper})
        edges = [lower] + pts + [upper]

        estimates = np.zeros((k,))
        error = 0.0
        converged = True
        n_intervals = 0
        n_eval = 1
        for comp in range(k):
            def f(x, comp=comp):
                v = np.asarray(integrand(jnp.asarray([x])))
                return float(v[0]) if v.ndim == 1 else float(v[comp, 0])

            for a, b in zip(edges[:-1], edges[1:]):
                out = quad(f, a, b, epsabs=self.cfg.epsabs, epsrel=tol, limit=limit, full_output=1)
                value, abserr, info = out[0], out[1], out[2]
                if len(out) > 3:
                    converged = False
                    logger.debug("QUADPACK on [%s, %s]: %s", a, b, out[3])
                estimates[comp] += value
                error = max(error, abserr)
                n_intervals += int(info.get("last", 1))
                n_eval += int(info.get("neval", 0))

        estimate = sign * jnp.asarray(estimates)
        if k == 1 and probe.ndim == 1:
            estimate = estimate[0]
        result = QuadResult(
            estimate=estimate,
            error=float(error),
            converged=converged,
            n_intervals=n_intervals,
            n_evaluations=n_eval,
        )
        if self.cfg.debug:
            logger.debug(
                "quadpack [%s, %s]: error=%.3e converged=%s intervals=%d evals=%d",
                lower, upper, result.error, result.converged,
                result.n_intervals, result.n_evaluations,
            )
        return result
