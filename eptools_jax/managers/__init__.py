# eptools_jax/managers/__init__.py
from .base import PotentialManager, BatchMoments
from .default import DefaultPotManager
from .container import ContainerPotManager
from .factory import build_manager

__all__ = [
    "PotentialManager",
    "BatchMoments",
    "DefaultPotManager",
    "ContainerPotManager",
    "build_manager",
]
