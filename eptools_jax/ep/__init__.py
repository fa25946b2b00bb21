# eptools_jax/ep/__init__.py
"""
Factorised expectation propagation.

- representation:  global Gaussian belief + per-site factors
- driver:          sweep scheduling, damping, convergence
- model:           site specifications -> manager + representation
"""
from .representation import FactorizedEPRepresentation, AppliedDelta
from .driver import (
    EPDriverCFG,
    EPRun,
    EPState,
    EPStatus,
    FactorizedEPDriver,
    MaximumPiValues,
    SweepStats,
    project_moments,
)
from .model import SiteSpec, EPModel, build_model

__all__ = [
    "FactorizedEPRepresentation",
    "AppliedDelta",
    "EPDriverCFG",
    "EPRun",
    "EPState",
    "EPStatus",
    "FactorizedEPDriver",
    "MaximumPiValues",
    "SweepStats",
    "project_moments",
    "SiteSpec",
    "EPModel",
    "build_model",
]
