# eptools_jax/__init__.py
"""
Expectation propagation with pluggable scalar site potentials.

Layout:
  - specfun:     special-function services called by potentials
  - quadrature:  adaptive 1D integration (standard and QUADPACK compatibility)
  - solvers:     proximal (Newton / L-BFGS) mode finding
  - potentials:  scalar site potentials and their named factory
  - managers:    site -> potential containers
  - ep:          factorised representation, driver and model setup
"""
import jax

# Moment estimates are checked at ~1e-6 relative accuracy; float32 is not enough.
jax.config.update("jax_enable_x64", True)

from .errors import (  # noqa: E402
    EPError,
    DomainError,
    NumericalError,
    NonPositiveDefiniteError,
    SiteIndexError,
)
from .core import EPServices, MomentResult, MomentStats, CavityParams  # noqa: E402
from .potentials import make_potential  # noqa: E402
from .ep import (  # noqa: E402
    EPDriverCFG,
    EPRun,
    EPStatus,
    FactorizedEPDriver,
    FactorizedEPRepresentation,
    SiteSpec,
    build_model,
)

__version__ = "0.1.0"

__all__ = [
    "EPError",
    "DomainError",
    "NumericalError",
    "NonPositiveDefiniteError",
    "SiteIndexError",
    "EPServices",
    "MomentResult",
    "MomentStats",
    "CavityParams",
    "make_potential",
    "EPDriverCFG",
    "EPRun",
    "EPStatus",
    "FactorizedEPDriver",
    "FactorizedEPRepresentation",
    "SiteSpec",
    "build_model",
]
