import math

import jax.numpy as jnp
import numpy as np
import pytest

from eptools_jax.errors import DomainError, NumericalError
from eptools_jax.solvers import ProximalCFG, ProximalLBFGS, ProximalNewton, proximal_objective


def _poisson_exp(x, y):
    return jnp.exp(x) - y * x


objective = proximal_objective(_poisson_exp)


def _check_stationary(res, precision, center, y):
    # exp(x) - y + precision (x - center) = 0 at the minimiser
    g = math.exp(res.argmin) - y + precision * (res.argmin - center)
    assert abs(g) < 1e-7
    np.testing.assert_allclose(res.curvature, math.exp(res.argmin) + precision, rtol=1e-8)


def test_newton_finds_tilted_mode():
    res = ProximalNewton().solve(objective, 0.0, args=(1.0, 0.0, 20.0))
    assert res.converged
    assert res.n_iter > 0
    _check_stationary(res, 1.0, 0.0, 20.0)


def test_lbfgs_matches_newton():
    args = (0.5, 1.0, 7.0)
    newton = ProximalNewton().solve(objective, 1.0, args=args)
    lbfgs = ProximalLBFGS(ProximalCFG(tol=1e-8, max_iter=200)).solve(objective, 1.0, args=args)
    assert lbfgs.converged
    np.testing.assert_allclose(lbfgs.argmin, newton.argmin, atol=1e-6)


def test_iteration_budget_raises():
    with pytest.raises(NumericalError):
        ProximalNewton().solve(objective, 0.0, args=(1.0, 0.0, 500.0), max_iter=1)

    res = ProximalNewton().solve(
        objective, 0.0, args=(1.0, 0.0, 500.0), max_iter=1, raise_on_failure=False
    )
    assert not res.converged
    assert res.n_iter == 1


def test_domain_start_and_boundary():
    log_barrier = proximal_objective(lambda x: -3.0 * jnp.log(x))
    res = ProximalNewton().solve(log_barrier, 0.5, args=(1.0, -4.0), domain=(0.0, math.inf))
    assert res.converged and res.argmin > 0.0
    # x - (-4) - 3 / x = 0
    np.testing.assert_allclose(res.argmin, (-4.0 + math.sqrt(16.0 + 12.0)) / 2.0, rtol=1e-8)

    with pytest.raises(DomainError):
        ProximalNewton().solve(log_barrier, -1.0, args=(1.0, 0.0), domain=(0.0, math.inf))


@pytest.mark.parametrize("x0", [0.5, 3.0])
def test_lbfgs_respects_domain(x0):
    log_barrier = proximal_objective(lambda x: -3.0 * jnp.log(x))
    solver = ProximalLBFGS(ProximalCFG(tol=1e-9, max_iter=200))
    res = solver.solve(log_barrier, x0, args=(1.0, -4.0), domain=(0.0, math.inf))
    assert res.converged and res.argmin > 0.0
    np.testing.assert_allclose(res.argmin, (-4.0 + math.sqrt(16.0 + 12.0)) / 2.0, rtol=1e-6)
