import numpy as np
import pytest

from eptools_jax import (
    DomainError,
    EPDriverCFG,
    EPStatus,
    NonPositiveDefiniteError,
    SiteIndexError,
    SiteSpec,
    build_model,
)
from eptools_jax.ep import (
    FactorizedEPDriver,
    FactorizedEPRepresentation,
    MaximumPiValues,
    project_moments,
)
from eptools_jax.managers import DefaultPotManager
from eptools_jax.potentials import ScalarPotential
from eptools_jax.core import MomentResult


def _gaussian_model():
    return build_model([0.0], [1.0], [SiteSpec("gaussian", {"y": 2.0, "noise_var": 0.5}, 0)])


def _regression_model(n=3, seed=0):
    rng = np.random.RandomState(seed)
    B = rng.randn(5, n)
    noise = np.full(5, 0.3)
    y = B @ rng.randn(n) + np.sqrt(noise) * rng.randn(5)
    sites = [SiteSpec("gaussian", {"y": y[k], "noise_var": noise[k]}, B[k]) for k in range(5)]
    S0 = np.eye(n) * 2.0
    Lam = np.linalg.inv(S0) + B.T @ np.diag(1.0 / noise) @ B
    Sigma = np.linalg.inv(Lam)
    exact = (Sigma @ (B.T @ (y / noise)), np.diag(Sigma))
    return build_model(np.zeros(n), S0, sites), exact


def test_gaussian_site_is_exact_after_one_sweep():
    model = _gaussian_model()
    driver = model.driver()
    stats = driver.sweep()
    assert stats.n_updated == 1 and stats.n_skipped == 0
    mean, var = model.representation.joint_marginals()
    np.testing.assert_allclose(float(mean[0]), 4.0 / 3.0, rtol=1e-12)
    np.testing.assert_allclose(float(var[0]), 1.0 / 3.0, rtol=1e-12)
    tau, nu = model.representation.site_params()
    np.testing.assert_allclose(float(tau[0]), 2.0)
    np.testing.assert_allclose(float(nu[0]), 4.0)


def test_converged_state_is_a_fixed_point():
    model = _gaussian_model()
    run = model.driver(EPDriverCFG(tol=1e-10)).run()
    assert run.status is EPStatus.CONVERGED and run.converged
    # the second sweep only confirms
    assert run.n_sweeps == 2
    before = np.asarray(model.representation.mean)
    again = model.driver().sweep()
    assert again.max_change < 1e-12
    np.testing.assert_allclose(np.asarray(model.representation.mean), before, atol=1e-12)


def test_damping_moves_part_of_the_way():
    model = _gaussian_model()
    model.driver(EPDriverCFG(damping=0.5)).sweep()
    mean, var = model.representation.joint_marginals()
    # site (tau, nu) = 0.5 * (2, 4): precision 2, mean 1
    np.testing.assert_allclose(float(mean[0]), 1.0, rtol=1e-12)
    np.testing.assert_allclose(float(var[0]), 0.5, rtol=1e-12)

    run = model.driver(EPDriverCFG(damping=0.5, tol=1e-9, max_sweeps=100)).run()
    assert run.converged
    np.testing.assert_allclose(float(run.mean[0]), 4.0 / 3.0, rtol=1e-8)


@pytest.mark.parametrize("order", ["fixed", "random", "priority"])
def test_gaussian_regression_is_exact_in_any_order(order):
    model, (mean, var) = _regression_model()
    run = model.driver(EPDriverCFG(sweep_order=order, tol=1e-10)).run()
    assert run.converged
    np.testing.assert_allclose(np.asarray(run.mean), mean, atol=1e-8)
    np.testing.assert_allclose(np.asarray(run.var), var, atol=1e-8)


def test_random_order_is_reproducible():
    runs = []
    for _ in range(2):
        model, _ = _regression_model(seed=1)
        driver = model.driver(EPDriverCFG(sweep_order="random", seed=7))
        driver.sweep()
        runs.append(np.asarray(model.representation.mean))
    np.testing.assert_array_equal(runs[0], runs[1])


def test_parallel_mode():
    model, (mean, var) = _regression_model(seed=2)
    cfg = EPDriverCFG(parallel=True, damping=0.5, tol=1e-10, max_sweeps=200)
    run = model.driver(cfg).run()
    assert run.converged
    np.testing.assert_allclose(np.asarray(run.mean), mean, atol=1e-7)
    np.testing.assert_allclose(np.asarray(run.var), var, atol=1e-7)


def test_parallel_without_damping_warns():
    with pytest.warns(UserWarning, match="oscillates"):
        EPDriverCFG(parallel=True)


def test_failing_site_is_skipped_and_sweep_completes():
    sites = [
        SiteSpec("gaussian", {"y": 1.0}, 0),
        SiteSpec("poisson_exp", {"y": 50, "prox_max_iter": 1}, 1),
        SiteSpec("probit", {"label": 1}, 0),
    ]
    model = build_model([0.0, 0.0], [1.0, 1.0], sites)
    driver = model.driver()
    stats = driver.sweep()
    assert stats.n_updated == 2
    assert stats.n_skipped == 1
    assert set(stats.failures) == {1}
    assert model.representation.site_factor(1).tau == 0.0

    run = model.driver(EPDriverCFG(tol=1e-8)).run()
    assert run.converged
    assert run.failed_sites == [1]


def test_site_failing_every_sweep_marks_run_failed():
    sites = [SiteSpec("poisson_exp", {"y": 50, "prox_max_iter": 1}, 0)]
    model = build_model([0.0], [1.0], sites)
    run = model.driver(EPDriverCFG(max_sweeps=3)).run()
    assert run.status is EPStatus.FAILED
    assert run.n_sweeps == 3
    assert run.failed_sites == [0]


def test_poisson_classification_converges():
    counts = [0, 3, 12, 1]
    sites = [SiteSpec("poisson_exp", {"y": c}, k) for k, c in enumerate(counts)]
    model = build_model(np.zeros(4), np.eye(4) + 0.5, sites)
    run = model.driver(EPDriverCFG(tol=1e-8)).run()
    assert run.converged
    assert np.all(np.isfinite(np.asarray(run.mean)))
    assert np.all(np.asarray(run.var) > 0.0)
    # larger counts pull the latent rate up
    assert np.argmax(np.asarray(run.mean)) == 2
    assert model.representation.min_precision_eigenvalue() > 0.0


def test_probit_classification_matches_labels():
    X = np.linspace(-2.0, 2.0, 8)
    labels = np.where(X > 0.0, 1, -1)
    K = np.exp(-0.5 * (X[:, None] - X[None, :]) ** 2) + 0.05 * np.eye(8)
    sites = [SiteSpec("probit", {"label": int(l), "noise": 0.0}, k) for k, l in enumerate(labels)]
    model = build_model(np.zeros(8), K, sites)
    run = model.driver(EPDriverCFG(tol=1e-8, max_sweeps=100)).run()
    assert run.converged
    assert np.all(np.sign(np.asarray(run.mean)) == labels)
    assert np.all(np.asarray(run.site_tau) >= 0.0)


def test_stop_check_interrupts_between_sites():
    model, _ = _regression_model()
    calls = []

    def stop():
        calls.append(1)
        return len(calls) > 2

    run = model.driver().run(stop_check=stop)
    assert run.stopped
    assert run.status is EPStatus.EXHAUSTED
    assert run.n_sweeps == 1
    assert run.sweeps[0].n_updated == 2


def test_stop_check_interrupts_parallel_sweeps():
    model, _ = _regression_model()
    calls = []

    def stop():
        calls.append(1)
        return len(calls) > 1

    cfg = EPDriverCFG(parallel=True, damping=0.5, max_sweeps=20)
    run = model.driver(cfg).run(stop_check=stop)
    assert len(calls) == 2
    assert run.stopped
    assert run.status is EPStatus.EXHAUSTED
    assert run.n_sweeps == 2
    assert run.sweeps[0].n_updated == 5
    assert run.sweeps[1].n_updated == 0


def test_max_pi_clamp_keeps_site_mean():
    tau, nu, clamped = MaximumPiValues(1.0).clamp(4.0, 2.0)
    assert clamped
    assert tau == 1.0 and nu == 0.5
    assert MaximumPiValues(10.0).clamp(4.0, 2.0) == (4.0, 2.0, False)


def test_project_moments():
    # Gaussian site N(y | x, s) gives back tau = 1 / s, nu = y / s
    m, v, y, s = 0.3, 2.0, 1.5, 0.5
    mom = MomentResult(0.0, (y - m) / (v + s), -1.0 / (v + s))
    tau, nu = project_moments(mom, m, v)
    np.testing.assert_allclose((tau, nu), (1.0 / s, y / s))


def test_cfg_from_dict():
    cfg = EPDriverCFG.from_dict({"dampingFactor": 0.7, "maxSweeps": 10, "sweepOrder": "random", "tol": 1e-4})
    assert cfg.damping == 0.7 and cfg.max_sweeps == 10 and cfg.sweep_order == "random"
    assert EPDriverCFG.from_dict({"max_pi": 5.0}).max_pi == MaximumPiValues(5.0)
    with pytest.raises(ValueError):
        EPDriverCFG.from_dict({"learningRate": 0.1})
    with pytest.raises(ValueError):
        EPDriverCFG(damping=0.0)


def test_model_validation_happens_before_any_sweep():
    with pytest.raises(KeyError):
        build_model([0.0], [1.0], [SiteSpec("student_t", {}, 0)])
    with pytest.raises(DomainError):
        build_model([0.0], [1.0], [SiteSpec("probit", {"label": 2}, 0)])
    with pytest.raises(SiteIndexError):
        build_model([0.0], [1.0], [SiteSpec("gaussian", {"y": 0.0}, 1)])
    with pytest.raises(DomainError):
        build_model([0.0, 0.0], [1.0, 1.0], [SiteSpec("gaussian", {"y": 0.0}, [1.0])])
    with pytest.raises(NonPositiveDefiniteError):
        build_model([0.0], [-1.0], [SiteSpec("gaussian", {"y": 0.0}, 0)])


class _FixedPrecisionSite(ScalarPotential):
    """Moments whose projection is always the site precision `target`."""

    kind = "fixed_precision"

    def __init__(self, target):
        super().__init__()
        self.target = target

    def _moments(self, m, v):
        return MomentResult(0.0, 0.0, -self.target / (1.0 + v * self.target))


@pytest.mark.filterwarnings("ignore::UserWarning")
def test_smaller_damping_never_rejects_more():
    rejected = []
    for damping in (1.0, 0.5, 0.25):
        # two sites on one variable, each asking for precision -6 against prior precision 10
        rep = FactorizedEPRepresentation([0.0], [0.1], coupling=[0, 0])
        mgr = DefaultPotManager([_FixedPrecisionSite(-6.0), _FixedPrecisionSite(-6.0)])
        stats = FactorizedEPDriver(mgr, rep, EPDriverCFG(parallel=True, damping=damping)).sweep()
        assert stats.n_updated == 2
        assert rep.min_precision_eigenvalue() > 0.0
        rejected.append(stats.n_rejected)
    assert rejected[0] > 0
    assert rejected == sorted(rejected, reverse=True)
