# eptools_jax/core/__init__.py
from .types import Array, MomentResult, MomentStats, CavityParams, SiteFactor
from .services import EPServices, DEFAULT_SERVICES

__all__ = [
    "Array",
    "MomentResult",
    "MomentStats",
    "CavityParams",
    "SiteFactor",
    "EPServices",
    "DEFAULT_SERVICES",
]
