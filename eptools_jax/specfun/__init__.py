# eptools_jax/specfun/__init__.py
from .services import SpecfunServices, DEFAULT_SPECFUN

__all__ = ["SpecfunServices", "DEFAULT_SPECFUN"]
