def test_imports():
    import eptools_jax

    from eptools_jax import EPServices, MomentResult, build_model, SiteSpec
    from eptools_jax.ep import FactorizedEPDriver, FactorizedEPRepresentation, EPDriverCFG
    from eptools_jax.managers import DefaultPotManager, ContainerPotManager
    from eptools_jax.quadrature import QuadratureServices, QuadPackServices
    from eptools_jax.solvers import ProximalNewton, ProximalLBFGS

    # potentials
    from eptools_jax.potentials import get as get_potential, available
    get_potential("gaussian")
    get_potential("probit")
    get_potential("poisson_exp")
    assert "spike_slab" in available()


def test_x64_enabled():
    import jax.numpy as jnp
    import eptools_jax  # noqa: F401

    assert jnp.zeros(1).dtype == jnp.float64


def test_unknown_potential_lists_available():
    import pytest
    from eptools_jax import make_potential

    with pytest.raises(KeyError, match="Available"):
        make_potential("cauchy")
