# eptools_jax/solvers/__init__.py
from .proximal import (
    ProximalCFG,
    ProxResult,
    ProximalNewton,
    ProximalLBFGS,
    proximal_objective,
)

__all__ = [
    "ProximalCFG",
    "ProxResult",
    "ProximalNewton",
    "ProximalLBFGS",
    "proximal_objective",
]
