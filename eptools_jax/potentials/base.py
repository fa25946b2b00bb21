# eptools_jax/potentials/base.py
from __future__ import annotations

import abc
import math
from typing import Any, Callable, Dict, Tuple

from ..core import DEFAULT_SERVICES, EPServices, MomentResult
from ..errors import DomainError, NumericalError

_POTENTIAL_REGISTRY: Dict[str, Callable[..., "ScalarPotential"]] = {}


def register(name, factory):
    """
    Register a potential class or factory under a string key.

    The factory is called as factory(services=..., **params).
    """
    if name in _POTENTIAL_REGISTRY:
        raise KeyError(f"Potential '{name}' already registered.")
    _POTENTIAL_REGISTRY[name] = factory


def get(name):
    """
    Retrieve a potential factory by name.
    """
    try:
        return _POTENTIAL_REGISTRY[name]
    except KeyError:
        raise KeyError(
            f"Unknown potential '{name}'. "
            f"Available: {list(_POTENTIAL_REGISTRY.keys())}"
        )


def available():
    return sorted(_POTENTIAL_REGISTRY)


def make_potential(kind: str, services: EPServices | None = None, **params) -> "ScalarPotential":
    """Build a potential from its type tag and parameters."""
    return get(kind)(services=services, **params)


def check_cavity(cmean, cvar) -> Tuple[float, float]:
    """Validate cavity parameters; DomainError unless the mean is finite and the variance positive."""
    m = float(cmean)
    v = float(cvar)
    if not math.isfinite(m):
        raise DomainError(f"Cavity mean must be finite, got {cmean}.")
    if not (math.isfinite(v) and v > 0.0):
        raise DomainError(f"Cavity variance must be finite and positive, got {cvar}.")
    return m, v


def require(condition: bool, message: str) -> None:
    """Parameter validation for potential constructors."""
    if not condition:
        raise DomainError(message)


class ScalarPotential(abc.ABC):
    """
    Scalar site potential t(x).

    Contract
    --------
    moments(cmean, cvar) -> MomentResult(log_z, dlog_z, d2log_z)
        log_z = log ∫ t(x) N(x | cmean, cvar) dx and its first two
        derivatives with respect to cmean.

    - Pure: no state is mutated; work counters ride along in
      `MomentResult.stats`.
    - DomainError for cvar <= 0 (or non-finite inputs).
    - NumericalError for a non-finite result or a failed sub-solve.

    Subclasses implement `_moments` on validated inputs and, where the
    potential has a pointwise density, `log_density` (vectorised over x),
    which makes them usable with the generic quadrature wrapper.
    """

    kind: str = "abstract"
    log_concave: bool = False

    def __init__(self, services: EPServices | None = None):
        self.services = DEFAULT_SERVICES if services is None else services

    @property
    def specfun(self):
        return self.services.specfun

    def moments(self, cmean, cvar) -> MomentResult:
        m, v = check_cavity(cmean, cvar)
        result = self._moments(m, v)
        if not result.is_finite():
            raise NumericalError(
                f"{type(self).__name__}: non-finite moments "
                f"{tuple(result)} for cavity (mean={m}, var={v})."
            )
        return result

    @abc.abstractmethod
    def _moments(self, m: float, v: float) -> MomentResult:
        ...

    def log_density(self, x):
        raise NotImplementedError(f"{type(self).__name__} has no pointwise log density.")

    def breakpoints(self) -> tuple:
        """Points where t(x) is not smooth."""
        return ()

    def atoms(self) -> tuple:
        """Point masses of t as (location, log_mass) pairs."""
        return ()

    def params(self) -> Dict[str, Any]:
        return {}

    def __repr__(self):
        body = ", ".join(f"{k}={v!r}" for k, v in self.params().items())
        return f"{type(self).__name__}({body})"
