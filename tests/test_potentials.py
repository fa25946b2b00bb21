import math

import numpy as np
import pytest
import scipy.integrate as si
import scipy.stats as st

from eptools_jax import DomainError, EPServices, NumericalError, make_potential
from eptools_jax.potentials import (
    EPPotGaussian,
    EPPotPoissonLinearRate,
    EPPotProbit,
    EPPotQuadLaplaceApprox,
    EPPotQuadrature,
)
from eptools_jax.quadrature import QuadratureCFG


def _mixture_reference(weights, means, variances, m, v):
    """log Z and its m-derivatives for t(x) = sum_k w_k N(x | mu_k, s_k)."""
    w = np.asarray(weights, dtype=float)
    mu = np.asarray(means, dtype=float)
    s = np.asarray(variances, dtype=float) + v
    n = w * st.norm.pdf(mu, loc=m, scale=np.sqrt(s))
    r = (mu - m) / s
    z = n.sum()
    z1 = (n * r).sum()
    z2 = (n * (r * r - 1.0 / s)).sum()
    return math.log(z), z1 / z, z2 / z - (z1 / z) ** 2


def _scipy_moments(log_t, m, v, points=(), lim=40.0):
    """log Z, dlog Z, d2log Z by direct scipy integration of the tilted density."""
    sd = math.sqrt(v)
    lo, hi = m - lim * sd, m + lim * sd
    pts = [p for p in points if lo < p < hi]

    def integral(k):
        f = lambda x: x ** k * math.exp(log_t(x)) * st.norm.pdf(x, loc=m, scale=sd)
        return si.quad(f, lo, hi, points=pts or None, epsabs=0.0, epsrel=1e-12, limit=200)[0]

    i0, i1, i2 = integral(0), integral(1), integral(2)
    mean = i1 / i0
    var = i2 / i0 - mean * mean
    return math.log(i0), (mean - m) / v, (var - v) / v ** 2


CAVITIES = [(0.0, 1.0), (1.3, 0.4), (-2.5, 3.0)]


@pytest.mark.parametrize("m,v", CAVITIES)
def test_gaussian_closed_form_matches_quadrature(m, v):
    pot = EPPotGaussian(y=1.2, noise_var=0.7)
    closed = pot.moments(m, v)
    quad = EPPotQuadrature(pot).moments(m, v)
    np.testing.assert_allclose(tuple(quad), tuple(closed), rtol=1e-6, atol=1e-8)
    np.testing.assert_allclose(closed.d2log_z, -1.0 / (v + 0.7))


@pytest.mark.parametrize("m,v", CAVITIES)
def test_probit_step_matches_quadrature(m, v):
    pot = EPPotProbit(label=-1, offset=0.4, noise=0.0)
    closed = pot.moments(m, v)
    quad = EPPotQuadrature(pot).moments(m, v)
    np.testing.assert_allclose(tuple(quad), tuple(closed), rtol=1e-6, atol=1e-8)


def test_probit_with_noise_matches_quadrature():
    pot = EPPotProbit(label=1, offset=-0.2, noise=0.5)
    closed = pot.moments(0.7, 1.1)
    quad = EPPotQuadrature(pot).moments(0.7, 1.1)
    np.testing.assert_allclose(tuple(quad), tuple(closed), rtol=1e-6, atol=1e-8)


def test_probit_is_finite_and_monotone_on_a_grid():
    pot = EPPotProbit(label=1, noise=0.0)
    for m in np.linspace(-40.0, 40.0, 41):
        for v in (1e-4, 1.0, 100.0):
            assert pot.moments(m, v).is_finite()

    for m in np.linspace(-10.0, 10.0, 21):
        for v in (1e-2, 1.0, 100.0):
            log_z, d1, d2 = pot.moments(m, v)
            assert d1 >= 0.0
            assert d2 <= 0.0
            # tilted variance stays positive
            assert 1.0 + v * d2 > 0.0
    assert pot.moments(0.0, 1.0).dlog_z > 0.0


@pytest.mark.parametrize(
    "kind,params",
    [
        ("gaussian", {"y": 0.0}),
        ("probit", {"label": 1}),
        ("poisson_linear", {"y": 2}),
        ("laplace", {"y": 0.0, "tau": 2.0}),
        ("quantile", {"y": 1.0, "quantile": 0.3}),
        ("spike_slab", {"slab_prob": 0.2}),
        ("gauss_mixture", {"weights": [0.5, 0.5], "means": [-1.0, 1.0], "variances": [0.2, 0.2]}),
        ("poisson_exp", {"y": 3}),
        ("poisson_logistic", {"y": 3}),
    ],
)
def test_invalid_cavity_is_a_domain_error(kind, params):
    pot = make_potential(kind, **params)
    for m, v in [(0.0, 0.0), (0.0, -1.0), (math.nan, 1.0), (0.0, math.inf)]:
        with pytest.raises(DomainError):
            pot.moments(m, v)


def test_invalid_parameters_are_domain_errors():
    with pytest.raises(DomainError):
        make_potential("probit", label=0)
    with pytest.raises(DomainError):
        make_potential("gaussian", y=0.0, noise_var=0.0)
    with pytest.raises(DomainError):
        make_potential("poisson_exp", y=2.5)
    with pytest.raises(DomainError):
        make_potential("spike_slab", slab_prob=0.0)
    with pytest.raises(DomainError):
        make_potential("gauss_mixture", weights=[1.0], means=[0.0, 1.0], variances=[1.0])


@pytest.mark.parametrize("m,v", CAVITIES)
def test_laplace_matches_direct_integration(m, v):
    pot = make_potential("laplace", y=0.5, tau=2.0)
    # tau / 2 = 1
    ref = _scipy_moments(lambda x: -2.0 * abs(x - 0.5), m, v, points=(0.5,))
    np.testing.assert_allclose(tuple(pot.moments(m, v)), ref, rtol=1e-6, atol=1e-8)


def test_quantile_matches_direct_integration():
    q, y = 0.25, 1.0
    pot = make_potential("quantile", y=y, quantile=q)

    def log_t(x):
        u = y - x
        return math.log(q * (1 - q)) - u * (q - (1.0 if u < 0 else 0.0))

    ref = _scipy_moments(log_t, 0.2, 1.5, points=(y,))
    np.testing.assert_allclose(tuple(pot.moments(0.2, 1.5)), ref, rtol=1e-6, atol=1e-8)


@pytest.mark.parametrize("m,v", CAVITIES)
def test_gauss_mixture_closed_form(m, v):
    params = {"weights": [0.3, 0.7], "means": [-1.0, 2.0], "variances": [0.5, 1.5]}
    pot = make_potential("gauss_mixture", **params)
    ref = _mixture_reference(params["weights"], params["means"], params["variances"], m, v)
    np.testing.assert_allclose(tuple(pot.moments(m, v)), ref, rtol=1e-6, atol=1e-8)


@pytest.mark.parametrize("m,v", [(0.0, 1.0), (1.0, 4.0)])
def test_gauss_mixture_narrow_component_is_not_missed(m, v):
    params = {"weights": [0.5, 0.5], "means": [0.0, 2.3], "variances": [1.0, 1e-6]}
    pot = make_potential("gauss_mixture", **params)
    assert 2.3 in pot.breakpoints()
    ref = _mixture_reference(params["weights"], params["means"], params["variances"], m, v)
    np.testing.assert_allclose(tuple(pot.moments(m, v)), ref, rtol=1e-6, atol=1e-8)


@pytest.mark.parametrize("m,v", CAVITIES)
def test_spike_slab_atom_is_exact(m, v):
    p, s = 0.3, 2.0
    pot = make_potential("spike_slab", slab_prob=p, slab_var=s)
    # the spike is a zero-variance mixture component
    ref = _mixture_reference([1 - p, p], [0.0, 0.0], [0.0, s], m, v)
    np.testing.assert_allclose(tuple(pot.moments(m, v)), ref, rtol=1e-6, atol=1e-8)


@pytest.mark.parametrize("m,v", [(1.5, 0.8), (-0.5, 2.0), (4.0, 1.0)])
def test_poisson_linear_closed_form_matches_quadrature(m, v):
    pot = EPPotPoissonLinearRate(y=3)
    closed = pot.moments(m, v)
    quad = EPPotQuadrature(pot).moments(m, v)
    np.testing.assert_allclose(tuple(quad), tuple(closed), rtol=1e-6, atol=1e-8)


def test_poisson_exp_matches_direct_integration():
    y, m, v = 4, 0.5, 1.0
    pot = make_potential("poisson_exp", y=y)
    res = pot.moments(m, v)
    ref = _scipy_moments(lambda x: st.poisson.logpmf(y, math.exp(x)), m, v)
    np.testing.assert_allclose(tuple(res), ref, rtol=1e-6, atol=1e-8)
    assert res.stats.prox_iterations > 0
    assert res.stats.quad_calls >= 1


def test_poisson_logistic_matches_direct_integration():
    y, m, v = 6, 1.0, 2.0
    pot = make_potential("poisson_logistic", y=y)
    ref = _scipy_moments(lambda x: st.poisson.logpmf(y, math.log1p(math.exp(x))), m, v)
    np.testing.assert_allclose(tuple(pot.moments(m, v)), ref, rtol=1e-6, atol=1e-8)


def test_poisson_large_count_far_from_cavity():
    # tilted mode sits many cavity standard deviations away
    std = make_potential("poisson_exp", y=200).moments(0.0, 1.0)
    services = EPServices.from_cfg(quadrature=QuadratureCFG(backend="compatibility"))
    compat = make_potential("poisson_exp", y=200, services=services).moments(0.0, 1.0)
    assert std.is_finite()
    np.testing.assert_allclose(tuple(compat), tuple(std), rtol=1e-6)


def test_poisson_exp_failed_solve_is_numerical_error():
    pot = make_potential("poisson_exp", y=50, prox_max_iter=1)
    with pytest.raises(NumericalError):
        pot.moments(0.0, 1.0)


def test_lbfgs_services_give_same_moments():
    services = EPServices.from_cfg(solver="lbfgs")
    a = make_potential("poisson_exp", y=5, services=services).moments(0.2, 0.5)
    b = make_potential("poisson_exp", y=5).moments(0.2, 0.5)
    np.testing.assert_allclose(tuple(a), tuple(b), rtol=1e-6)


def test_laplace_approx_is_exact_for_gaussian():
    pot = EPPotGaussian(y=-0.4, noise_var=0.3)
    approx = make_potential("laplace_approx", potential=pot)
    assert isinstance(approx, EPPotQuadLaplaceApprox)
    np.testing.assert_allclose(tuple(approx.moments(0.6, 1.7)), tuple(pot.moments(0.6, 1.7)), rtol=1e-7)


def test_quadrature_wrapper_by_tag():
    pot = make_potential("quadrature", base="gaussian", y=1.0, noise_var=2.0)
    assert isinstance(pot, EPPotQuadrature)
    ref = EPPotGaussian(y=1.0, noise_var=2.0).moments(0.0, 1.0)
    np.testing.assert_allclose(tuple(pot.moments(0.0, 1.0)), tuple(ref), rtol=1e-6)
