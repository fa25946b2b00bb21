# eptools_jax/core/types.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator, NamedTuple

from jax import Array


@dataclass(frozen=True)
class MomentStats:
    """Work counters of a single moment evaluation (diagnostics only)."""
    quad_calls: int = 0
    quad_evaluations: int = 0
    prox_iterations: int = 0

    def __add__(self, other: "MomentStats") -> "MomentStats":
        return MomentStats(
            quad_calls=self.quad_calls + other.quad_calls,
            quad_evaluations=self.quad_evaluations + other.quad_evaluations,
            prox_iterations=self.prox_iterations + other.prox_iterations,
        )


@dataclass(frozen=True)
class MomentResult:
    """
    EP moment-matching primitives for one cavity:
        log_z   = log E_{N(x | m, v)}[t(x)]
        dlog_z  = d log_z / d m
        d2log_z = d^2 log_z / d m^2

    Unpacks as the triple (log_z, dlog_z, d2log_z); `stats` travels along for
    diagnostics.
    """
    log_z: float
    dlog_z: float
    d2log_z: float
    stats: MomentStats = field(default_factory=MomentStats)

    def __iter__(self) -> Iterator[float]:
        return iter((self.log_z, self.dlog_z, self.d2log_z))

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in self)


class CavityParams(NamedTuple):
    mean: float
    var: float


class SiteFactor(NamedTuple):
    """Gaussian site factor in natural parameters."""
    tau: float   # precision contribution
    nu: float    # precision-adjusted mean contribution
