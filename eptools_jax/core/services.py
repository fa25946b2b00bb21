# eptools_jax/core/services.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from ..quadrature import QuadratureCFG, QuadratureServices, make_quadrature
from ..solvers import ProximalCFG, ProximalLBFGS, ProximalNewton
from ..specfun import DEFAULT_SPECFUN, SpecfunServices


@dataclass(frozen=True)
class EPServices:
    """
    Numerical services handed to potentials at construction.

    specfun:     special functions
    quadrature:  QuadratureServices or QuadPackServices
    proximal:    ProximalNewton or ProximalLBFGS

    All three are stateless, so one bundle can be shared by every site
    (and by threads evaluating independent sites).
    """
    specfun: SpecfunServices = DEFAULT_SPECFUN
    quadrature: Any = field(default_factory=QuadratureServices)
    proximal: Any = field(default_factory=ProximalNewton)

    @classmethod
    def from_cfg(
        cls,
        quadrature: QuadratureCFG = QuadratureCFG(),
        proximal: ProximalCFG = ProximalCFG(),
        solver: Literal["newton", "lbfgs"] = "newton",
    ) -> "EPServices":
        if solver == "newton":
            prox = ProximalNewton(proximal)
        elif solver == "lbfgs":
            prox = ProximalLBFGS(proximal)
        else:
            raise ValueError(f"Unknown proximal solver: {solver}")
        return cls(specfun=DEFAULT_SPECFUN, quadrature=make_quadrature(quadrature), proximal=prox)


DEFAULT_SERVICES = EPServices()
