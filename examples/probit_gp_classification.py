"""
GP binary classification with expectation propagation using eptools_jax.

A squared-exponential GP prior over latent values f(x) and one probit site
per observed label. EP approximates the posterior by a Gaussian; the
predictive class probability at a test point x* is

    p(y* = +1) = Phi(E[f*] / sqrt(1 + Var[f*]))

The second part swaps in Poisson count sites on the same GP prior.
"""

import logging

import jax
import jax.numpy as jnp
import matplotlib.pyplot as plt
import numpy as np

from eptools_jax import EPDriverCFG, SiteSpec, build_model
from eptools_jax.specfun import DEFAULT_SPECFUN

jax.config.update("jax_enable_x64", True)


def rbf(X1, X2, lengthscale=0.6, variance=2.0):
    d = X1[:, None] - X2[None, :]
    return variance * jnp.exp(-0.5 * (d / lengthscale) ** 2)


def predict(run, K, K_star, k_starstar):
    """Latent predictive mean/variance from the EP site factors."""
    tau = np.asarray(run.site_tau)
    nu = np.asarray(run.site_nu)
    # posterior over f(X): Lambda = K^{-1} + diag(tau), eta = nu
    A = np.asarray(K) * tau[None, :] + np.eye(len(tau))
    alpha = np.linalg.solve(A, np.asarray(K) @ nu)
    mean = np.asarray(K_star) @ (nu - tau * alpha)
    W = np.linalg.solve(A, np.asarray(K_star).T) * tau[:, None]
    var = np.asarray(k_starstar) - np.sum(np.asarray(K_star) * W.T, axis=1)
    return mean, var


def demo():
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    print("=" * 70)
    print("EP GP classification using eptools_jax")
    print("=" * 70)

    key = jax.random.PRNGKey(0)
    N = 40
    X = jnp.sort(jax.random.uniform(key, (N,), minval=-3.0, maxval=3.0))
    f_true = jnp.sin(2.0 * X)
    labels = np.where(np.asarray(f_true) > 0.0, 1, -1)
    # flip a few labels
    labels[[5, 22]] *= -1

    K = rbf(X, X) + 1e-6 * jnp.eye(N)
    sites = [SiteSpec("probit", {"label": int(l)}, k) for k, l in enumerate(labels)]
    model = build_model(jnp.zeros(N), K, sites)
    run = model.driver(EPDriverCFG(sweep_order="fixed", damping=0.8, tol=1e-6)).run()
    print(f"\nstatus={run.status.value}  sweeps={run.n_sweeps}  max_change={run.max_change:.2e}")

    X_star = jnp.linspace(-3.5, 3.5, 200)
    mean, var = predict(run, K, rbf(X_star, X), jnp.diag(rbf(X_star, X_star)))
    prob = np.asarray(DEFAULT_SPECFUN.ndtr(mean / np.sqrt(1.0 + var)))

    # Poisson counts on the same inputs
    counts = jax.random.poisson(jax.random.PRNGKey(1), jnp.exp(1.0 + f_true))
    count_sites = [SiteSpec("poisson_exp", {"y": int(c)}, k) for k, c in enumerate(counts)]
    count_model = build_model(jnp.ones(N), K, count_sites)
    count_run = count_model.driver(EPDriverCFG(tol=1e-6)).run()
    print(f"counts: status={count_run.status.value}  sweeps={count_run.n_sweeps}")

    fig, (ax0, ax1) = plt.subplots(1, 2, figsize=(11, 4))
    ax0.plot(X_star, prob, label="p(y=+1)")
    ax0.scatter(X, (labels + 1) / 2, c=labels, cmap="coolwarm", s=15)
    ax0.set_title("Probit EP")
    ax0.legend()

    sd = np.sqrt(np.asarray(count_run.var))
    ax1.plot(X, np.asarray(count_run.mean), label="E[f]")
    ax1.fill_between(np.asarray(X), np.asarray(count_run.mean) - 2 * sd,
                     np.asarray(count_run.mean) + 2 * sd, alpha=0.3)
    ax1.scatter(X, np.log(np.asarray(counts) + 0.5), s=10, label="log(y + 0.5)")
    ax1.set_title("Poisson EP (exp link)")
    ax1.legend()
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    demo()
