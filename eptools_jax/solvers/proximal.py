# eptools_jax/solvers/proximal.py
"""
Proximal mode finding for scalar objectives.

Potentials whose tilted density has no closed-form peak need
    argmin_x  observation_term(x) + 0.5 * precision * (x - center)^2
before they can place their quadrature. Two solvers share one contract:

- ProximalNewton:  second-order, derivatives by JAX autodiff (jitted once per
                   objective function and cached);
- ProximalLBFGS:   first-order, optax L-BFGS with zoom line search.

Both raise NumericalError when the gradient tolerance is not reached within
`max_iter`, unless `raise_on_failure=False`.
"""
from __future__ import annotations

import functools
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import jax
import jax.numpy as jnp
import optax

from ..errors import DomainError, NumericalError


@dataclass(frozen=True)
class ProximalCFG:
    """Configuration for the proximal solvers."""
    tol: float = 1e-9               # gradient-norm tolerance
    max_iter: int = 50
    max_backtracks: int = 40
    armijo: float = 1e-4
    boundary_fraction: float = 0.99  # fraction-to-boundary rule inside a domain

    def __post_init__(self):
        if not self.tol > 0.0:
            raise ValueError(f"tol must be positive, got {self.tol}.")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}.")
        if not 0.0 < self.boundary_fraction < 1.0:
            raise ValueError("boundary_fraction must lie in (0, 1).")


@dataclass(frozen=True)
class ProxResult:
    argmin: float
    converged: bool
    n_iter: int
    grad_norm: float
    curvature: float   # second derivative of the objective at argmin
    value: float


def proximal_objective(observation_term: Callable) -> Callable:
    """
    Build objective(x, precision, center, *args) =
        observation_term(x, *args) + 0.5 * precision * (x - center)^2.

    Create objectives once (module level): the solvers cache compiled
    derivatives per objective function object.
    """
    def objective(x, precision, center, *args):
        return observation_term(x, *args) + 0.5 * precision * (x - center) ** 2

    objective.__name__ = f"proximal_{getattr(observation_term, '__name__', 'objective')}"
    return objective


@functools.lru_cache(maxsize=None)
def _value_grad_hess(objective: Callable):
    grad = jax.grad(objective)
    hess = jax.grad(grad)

    @jax.jit
    def vgh(x, *args):
        return objective(x, *args), grad(x, *args), hess(x, *args)

    return vgh


@functools.lru_cache(maxsize=None)
def _value(objective: Callable):
    return jax.jit(objective)


def _check_start(x0: float, domain: Optional[Tuple[float, float]]) -> float:
    x = float(x0)
    if not math.isfinite(x):
        raise DomainError(f"Initial guess must be finite, got {x0}.")
    if domain is not None:
        lo, hi = domain
        if not lo < x < hi:
            raise DomainError(f"Initial guess {x} outside the open domain ({lo}, {hi}).")
    return x


class ProximalNewton:
    """Damped Newton iteration for a scalar, locally strongly convex objective."""

    def __init__(self, cfg: ProximalCFG = ProximalCFG()):
        self.cfg = cfg

    def solve(
        self,
        objective: Callable,
        x0: float,
        args: tuple = (),
        tol: float | None = None,
        max_iter: int | None = None,
        domain: Optional[Tuple[float, float]] = None,
        raise_on_failure: bool = True,
    ) -> ProxResult:
        """
        Minimise `objective(x, *args)` starting from `x0`.

        Steps:
        - Newton step -g/h when h > 0, else a gradient step -g;
        - inside `domain`, the step is cut back to a fixed fraction of the
          distance to the boundary;
        - Armijo backtracking whenever the step does not decrease the
          objective sufficiently.
        """
        cfg = self.cfg
        tol = cfg.tol if tol is None else float(tol)
        max_iter = cfg.max_iter if max_iter is None else int(max_iter)
        x = _check_start(x0, domain)
        args = tuple(jnp.asarray(a, dtype=jnp.float64) for a in args)

        vgh = _value_grad_hess(objective)
        value = _value(objective)
        f, g, h = (float(v) for v in vgh(jnp.asarray(x), *args))
        if not (math.isfinite(f) and math.isfinite(g)):
            raise NumericalError(f"Objective not finite at initial guess x0={x}.")

        n_iter = 0
        while abs(g) > tol and n_iter < max_iter:
            n_iter += 1
            step = -g / h if (h > 0.0 and math.isfinite(h)) else -g

            if domain is not None:
                lo, hi = domain
                if x + step <= lo:
                    step = cfg.boundary_fraction * (lo - x)
                elif x + step >= hi:
                    step = cfg.boundary_fraction * (hi - x)

            t = 1.0
            for _ in range(cfg.max_backtracks):
                x_new = x + t * step
                f_new = float(value(jnp.asarray(x_new), *args))
                if math.isfinite(f_new) and f_new <= f + cfg.armijo * t * g * step:
                    break
                t *= 0.5
            else:
                raise NumericalError(
                    f"Proximal Newton line search failed at x={x} (g={g:.3e})."
                )

            x = x_new
            f, g, h = (float(v) for v in vgh(jnp.asarray(x), *args))

        converged = abs(g) <= tol
        if not converged and raise_on_failure:
            raise NumericalError(
                f"Proximal Newton did not converge in {max_iter} iterations "
                f"(|g|={abs(g):.3e} > tol={tol:.1e})."
            )
        return ProxResult(
            argmin=x, converged=converged, n_iter=n_iter,
            grad_norm=abs(g), curvature=h, value=f,
        )


class ProximalLBFGS:
    """First-order alternative using optax L-BFGS (no Hessian evaluations during the solve)."""

    def __init__(self, cfg: ProximalCFG = ProximalCFG(), memory_size: int = 5):
        self.cfg = cfg
        self.memory_size = memory_size

    def solve(
        self,
        objective: Callable,
        x0: float,
        args: tuple = (),
        tol: float | None = None,
        max_iter: int | None = None,
        domain: Optional[Tuple[float, float]] = None,
        raise_on_failure: bool = True,
    ) -> ProxResult:
        cfg = self.cfg
        tol = cfg.tol if tol is None else float(tol)
        max_iter = cfg.max_iter if max_iter is None else int(max_iter)
        x = _check_start(x0, domain)
        args = tuple(jnp.asarray(a, dtype=jnp.float64) for a in args)

        def fun(params):
            return objective(params[0], *args)

        opt = optax.lbfgs(memory_size=self.memory_size)
        value_and_grad = optax.value_and_grad_from_state(fun)
        plain_value_and_grad = jax.value_and_grad(fun)
        params = jnp.asarray([x], dtype=jnp.float64)
        state = opt.init(params)

        n_iter = 0
        value, grad = value_and_grad(params, state=state)
        while float(jnp.abs(grad[0])) > tol and n_iter < max_iter:
            n_iter += 1
            updates, state = opt.update(
                grad, state, params, value=value, grad=grad, value_fn=fun
            )
            params = optax.apply_updates(params, updates)
            projected = False
            if domain is not None:
                lo, hi = domain
                # project back inside the open domain
                span = cfg.boundary_fraction
                p = float(params[0])
                if p <= lo:
                    params = jnp.asarray([x + span * (lo - x)])
                    projected = True
                elif p >= hi:
                    params = jnp.asarray([x + span * (hi - x)])
                    projected = True
            x = float(params[0])
            if projected:
                # the state caches value and gradient at the unprojected point
                value, grad = plain_value_and_grad(params)
            else:
                value, grad = value_and_grad(params, state=state)
            if not math.isfinite(float(value)):
                raise NumericalError(f"L-BFGS produced a non-finite objective at x={x}.")

        f, g, h = (float(v) for v in _value_grad_hess(objective)(jnp.asarray(x), *args))
        converged = abs(g) <= tol
        if not converged and raise_on_failure:
            raise NumericalError(
                f"Proximal L-BFGS did not converge in {max_iter} iterations "
                f"(|g|={abs(g):.3e} > tol={tol:.1e})."
            )
        return ProxResult(
            argmin=x, converged=converged, n_iter=n_iter,
            grad_norm=abs(g), curvature=h, value=f,
        )
