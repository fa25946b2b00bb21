# eptools_jax/potentials/__init__.py

from .base import (
    register,
    get,
    available,
    make_potential,
    check_cavity,
    ScalarPotential,
)
from .gaussian import EPPotGaussian
from .probit import EPPotProbit
from .laplace import EPPotLaplace
from .quantile import EPPotQuantileRegress
from .spike_slab import EPPotSpikeSlab
from .mixture import EPPotGaussMixture
from .poisson import (
    EPPotPoissonCommon,
    EPPotPoissonExpRate,
    EPPotPoissonLogisticRate,
    EPPotPoissonLinearRate,
)
from .quadrature import (
    QuadraturePotential,
    EPPotQuadrature,
    EPPotQuadLaplaceApprox,
    wrap_quadrature,
    wrap_laplace_approx,
)

# --------------------------------------------------
# Registry
# --------------------------------------------------
register("gaussian", EPPotGaussian)
register("probit", EPPotProbit)
register("poisson_linear", EPPotPoissonLinearRate)
register("laplace", EPPotLaplace)
register("quantile", EPPotQuantileRegress)
register("spike_slab", EPPotSpikeSlab)
register("gauss_mixture", EPPotGaussMixture)
register("poisson_exp", EPPotPoissonExpRate)
register("poisson_logistic", EPPotPoissonLogisticRate)
register("quadrature", wrap_quadrature)
register("laplace_approx", wrap_laplace_approx)

__all__ = [
    "register",
    "get",
    "available",
    "make_potential",
    "check_cavity",
    "ScalarPotential",
    "QuadraturePotential",
    "EPPotGaussian",
    "EPPotProbit",
    "EPPotLaplace",
    "EPPotQuantileRegress",
    "EPPotSpikeSlab",
    "EPPotGaussMixture",
    "EPPotPoissonCommon",
    "EPPotPoissonExpRate",
    "EPPotPoissonLogisticRate",
    "EPPotPoissonLinearRate",
    "EPPotQuadrature",
    "EPPotQuadLaplaceApprox",
]
