# eptools_jax/ep/model.py
"""
Model setup: ordered site specifications -> (potential manager, representation).

All validation happens here, before any sweep: unknown potential kinds
(KeyError), invalid potential parameters (DomainError), bad coupling indices
(SiteIndexError) and a non positive definite prior (NonPositiveDefiniteError).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np

from ..core import EPServices
from ..errors import DomainError, SiteIndexError
from ..managers import PotentialManager, build_manager
from .driver import EPDriverCFG, FactorizedEPDriver
from .representation import FactorizedEPRepresentation


@dataclass(frozen=True)
class SiteSpec:
    """
    One site of the model.

    kind:      potential type tag (see eptools_jax.potentials.available())
    params:    potential-specific parameters (observation, scale, ...)
    coupling:  variable index (int) or weight vector (n,) such that the site
               acts on s = coupling . x
    """
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)
    coupling: Union[int, Sequence[float]] = 0


@dataclass
class EPModel:
    manager: PotentialManager
    representation: FactorizedEPRepresentation

    def driver(self, cfg: EPDriverCFG = EPDriverCFG()) -> FactorizedEPDriver:
        return FactorizedEPDriver(self.manager, self.representation, cfg)


def _coupling_rows(sites: Sequence[SiteSpec], n: int) -> np.ndarray:
    rows = np.zeros((len(sites), n))
    for k, site in enumerate(sites):
        c = site.coupling
        if np.ndim(c) == 0:
            try:
                j = int(c)
            except (TypeError, ValueError) as e:
                raise DomainError(f"Site {k}: coupling must be an index or a vector, got {c!r}.") from e
            if j != c or not 0 <= j < n:
                raise SiteIndexError(f"Site {k}: coupling index {c} out of range [0, {n}).")
            rows[k, j] = 1.0
        else:
            vec = np.asarray(c, dtype=np.float64).reshape(-1)
            if vec.shape[0] != n:
                raise DomainError(f"Site {k}: coupling vector must have length {n}, got {vec.shape[0]}.")
            if not np.all(np.isfinite(vec)) or not np.any(vec != 0.0):
                raise DomainError(f"Site {k}: coupling vector must be finite and non-zero.")
            rows[k] = vec
    return rows


def build_model(
    prior_mean,
    prior_cov,
    sites: Sequence[SiteSpec],
    services: Optional[EPServices] = None,
) -> EPModel:
    """
    Build the potential manager and the initial representation (all site
    factors zero, joint belief = prior).
    """
    sites = list(sites)
    n = int(np.asarray(prior_mean).reshape(-1).shape[0])
    coupling = _coupling_rows(sites, n)
    manager = build_manager(sites, services=services)
    representation = FactorizedEPRepresentation(prior_mean, prior_cov, coupling)
    return EPModel(manager=manager, representation=representation)
