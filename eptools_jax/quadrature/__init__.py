# eptools_jax/quadrature/__init__.py
from .adaptive import QuadratureCFG, QuadResult, QuadratureServices, make_quadrature
from .kronrod import gauss_kronrod_15
from .quadpack import QuadPackServices

__all__ = [
    "QuadratureCFG",
    "QuadResult",
    "QuadratureServices",
    "QuadPackServices",
    "make_quadrature",
    "gauss_kronrod_15",
]
