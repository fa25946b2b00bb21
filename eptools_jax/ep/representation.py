# eptools_jax/ep/representation.py
"""
Factorised EP representation.

Model:
    prior       x ~ N(mu0, Sigma0),           x in R^n
    site i      acts on s_i = b_i^T x,        b_i = B[i], i = 0 .. m-1
    site factor exp(-0.5 tau_i s_i^2 + nu_i s_i)

Joint belief (natural parameters):
    Lambda = Sigma0^{-1} + B^T diag(tau) B
    eta    = Sigma0^{-1} mu0 + B^T nu

The covariance form (Sigma, mu) is maintained incrementally: changing one
site by (dtau, dnu) is a rank-one update

    Sigma' = Sigma - dtau / (1 + dtau rho) (Sigma b)(Sigma b)^T
    mu'    = mu + (dnu - dtau h) / (1 + dtau rho) Sigma b

with h = b^T mu, rho = b^T Sigma b. Lambda' stays positive definite iff
1 + dtau rho > 0, which is what `update_site` checks. `refresh` recomputes the
covariance form from the natural parameters to stop drift.
"""
from __future__ import annotations

import math
from typing import NamedTuple, Sequence

import jax.numpy as jnp
import jax.scipy as jsp
import numpy as np

from ..core import CavityParams, SiteFactor
from ..errors import (
    DomainError,
    NonPositiveDefiniteError,
    NumericalError,
    SiteIndexError,
    check_site_index,
)


class AppliedDelta(NamedTuple):
    dtau: float
    dnu: float


def _cholesky(A: jnp.ndarray, what: str) -> jnp.ndarray:
    L = jnp.linalg.cholesky(A)
    if not bool(jnp.all(jnp.isfinite(L))):
        raise NonPositiveDefiniteError(f"{what} is not positive definite.")
    return L


class FactorizedEPRepresentation:
    """
    Global Gaussian belief plus the per-site factors (tau_i, nu_i).

    Parameters
    ----------
    prior_mean : array (n,)
    prior_cov : array (n, n) or (n,)
        Full covariance, or its diagonal.
    coupling : None, int array (m,) or array (m, n)
        None: one site per variable (B = I).
        Index vector: site i acts on x[coupling[i]].
        Matrix: site i acts on B[i] @ x.
    pd_eps : float
        Smallest admissible 1 + dtau * rho for a rank-one update.
    """

    def __init__(self, prior_mean, prior_cov, coupling=None, pd_eps: float = 1e-10):
        mu0 = jnp.asarray(prior_mean, dtype=jnp.float64).reshape(-1)
        n = int(mu0.shape[0])
        if n == 0:
            raise DomainError("Prior must have at least one variable.")
        if not bool(jnp.all(jnp.isfinite(mu0))):
            raise DomainError("Prior mean must be finite.")

        S0 = jnp.asarray(prior_cov, dtype=jnp.float64)
        if S0.ndim == 1:
            S0 = jnp.diag(S0)
        if S0.shape != (n, n):
            raise DomainError(f"Prior covariance must have shape ({n}, {n}), got {S0.shape}.")
        if not bool(jnp.all(jnp.isfinite(S0))):
            raise DomainError("Prior covariance must be finite.")
        S0 = 0.5 * (S0 + S0.T)

        L0 = _cholesky(S0, "Prior covariance")
        eye = jnp.eye(n, dtype=jnp.float64)
        self._prior_precision = jsp.linalg.cho_solve((L0, True), eye)
        self._prior_eta = jsp.linalg.cho_solve((L0, True), mu0)

        self.B = self._coupling_matrix(coupling, n)
        m = int(self.B.shape[0])

        self.pd_eps = float(pd_eps)
        self.prior_mean = mu0
        self.prior_cov = S0
        self._tau = jnp.zeros((m,), dtype=jnp.float64)
        self._nu = jnp.zeros((m,), dtype=jnp.float64)
        self._Sigma = S0
        self._mu = mu0

    @staticmethod
    def _coupling_matrix(coupling, n: int) -> jnp.ndarray:
        if coupling is None:
            return jnp.eye(n, dtype=jnp.float64)
        c = np.asarray(coupling)
        if c.ndim == 1:
            if c.size and not np.issubdtype(c.dtype, np.integer):
                raise DomainError("A 1-D coupling must hold integer variable indices.")
            if np.any((c < 0) | (c >= n)):
                raise SiteIndexError(f"Coupling indices must lie in [0, {n}).")
            return jnp.asarray(np.eye(n)[c], dtype=jnp.float64)
        if c.ndim == 2:
            if c.shape[1] != n:
                raise DomainError(f"Coupling matrix must have {n} columns, got {c.shape[1]}.")
            B = jnp.asarray(c, dtype=jnp.float64)
            if not bool(jnp.all(jnp.isfinite(B))):
                raise DomainError("Coupling matrix must be finite.")
            zero = np.nonzero(~np.any(c != 0.0, axis=1))[0]
            if zero.size:
                raise DomainError(f"Coupling rows must be non-zero, got zero rows {zero.tolist()}.")
            return B
        raise DomainError(f"Coupling must be None, 1-D or 2-D, got ndim={c.ndim}.")

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def num_sites(self) -> int:
        return int(self.B.shape[0])

    @property
    def num_vars(self) -> int:
        return int(self.B.shape[1])

    @property
    def mean(self) -> jnp.ndarray:
        return self._mu

    @property
    def covariance(self) -> jnp.ndarray:
        return self._Sigma

    @property
    def precision(self) -> jnp.ndarray:
        """Joint precision from the natural parameters (prior + sites)."""
        return self._prior_precision + (self.B.T * self._tau) @ self.B

    @property
    def eta(self) -> jnp.ndarray:
        return self._prior_eta + self.B.T @ self._nu

    def site_params(self):
        """(tau, nu) arrays of all sites."""
        return self._tau, self._nu

    def site_factor(self, index) -> SiteFactor:
        i = check_site_index(index, self.num_sites)
        return SiteFactor(float(self._tau[i]), float(self._nu[i]))

    def joint_marginals(self):
        """Marginal means and variances of the joint belief over x."""
        return self._mu, jnp.diag(self._Sigma)

    def site_marginals(self):
        """Marginal means and variances of s_i = b_i^T x for all sites."""
        B = self.B
        return B @ self._mu, jnp.einsum("ij,jk,ik->i", B, self._Sigma, B)

    def _marginal(self, i: int):
        b = self.B[i]
        Sb = self._Sigma @ b
        return Sb, float(b @ self._mu), float(b @ Sb)

    def cavity_params(self, index) -> CavityParams:
        """
        Joint belief on s_i with site i's factor removed.

        Raises NumericalError if the cavity is improper (precision <= 0),
        which can happen after negative site precisions.
        """
        i = check_site_index(index, self.num_sites)
        _, h, rho = self._marginal(i)
        kappa = 1.0 / rho - float(self._tau[i])
        if not (math.isfinite(kappa) and kappa > 0.0):
            raise NumericalError(f"Cavity of site {i} is improper (precision {kappa}).")
        var = 1.0 / kappa
        return CavityParams(var * (h / rho - float(self._nu[i])), var)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_site(self, index, new_tau, new_nu) -> AppliedDelta:
        """
        Replace site i's factor by (new_tau, new_nu).

        Raises NonPositiveDefiniteError, leaving the state untouched, if the
        joint precision would stop being positive definite.
        """
        i = check_site_index(index, self.num_sites)
        new_tau = float(new_tau)
        new_nu = float(new_nu)
        if not (math.isfinite(new_tau) and math.isfinite(new_nu)):
            raise NumericalError(f"Non-finite site parameters ({new_tau}, {new_nu}) for site {i}.")

        dtau = new_tau - float(self._tau[i])
        dnu = new_nu - float(self._nu[i])
        Sb, h, rho = self._marginal(i)
        denom = 1.0 + dtau * rho
        if not denom > self.pd_eps:
            raise NonPositiveDefiniteError(
                f"Site {i} update dtau={dtau:.4g} would make the joint precision "
                f"non-positive definite (1 + dtau*rho = {denom:.3g})."
            )

        self._Sigma = self._Sigma - (dtau / denom) * jnp.outer(Sb, Sb)
        self._mu = self._mu + ((dnu - dtau * h) / denom) * Sb
        self._tau = self._tau.at[i].set(new_tau)
        self._nu = self._nu.at[i].set(new_nu)
        return AppliedDelta(dtau, dnu)

    def update_sites(self, indices: Sequence[int], new_taus, new_nus):
        """
        Replace several site factors at once (parallel EP).

        All-or-nothing: the covariance form is recomputed from the natural
        parameters; on NonPositiveDefiniteError nothing changes.
        Returns the applied (dtau, dnu) arrays.
        """
        idx = [check_site_index(i, self.num_sites) for i in indices]
        if len(set(idx)) != len(idx):
            raise ValueError("update_sites got duplicate site indices.")
        taus = jnp.asarray(new_taus, dtype=jnp.float64).reshape(-1)
        nus = jnp.asarray(new_nus, dtype=jnp.float64).reshape(-1)
        if taus.shape[0] != len(idx) or nus.shape[0] != len(idx):
            raise ValueError("new_taus / new_nus must align with indices.")
        if not bool(jnp.all(jnp.isfinite(taus)) and jnp.all(jnp.isfinite(nus))):
            raise NumericalError("Non-finite site parameters in simultaneous update.")

        old_tau, old_nu = self._tau, self._nu
        ii = jnp.asarray(idx, dtype=jnp.int32)
        self._tau = old_tau.at[ii].set(taus)
        self._nu = old_nu.at[ii].set(nus)
        try:
            self.refresh()
        except NonPositiveDefiniteError:
            self._tau, self._nu = old_tau, old_nu
            raise
        return taus - old_tau[ii], nus - old_nu[ii]

    def refresh(self) -> None:
        """Recompute (Sigma, mu) from the natural parameters."""
        n = self.num_vars
        L = _cholesky(self.precision, "Joint precision")
        Sigma = jsp.linalg.cho_solve((L, True), jnp.eye(n, dtype=jnp.float64))
        self._Sigma = 0.5 * (Sigma + Sigma.T)
        self._mu = jsp.linalg.cho_solve((L, True), self.eta)

    # ------------------------------------------------------------------
    # Invariant checks
    # ------------------------------------------------------------------

    def consistency_error(self) -> float:
        """Max abs deviation of the covariance form from prior + sites."""
        Lam = self.precision
        Sigma = jnp.linalg.inv(Lam)
        mu = Sigma @ self.eta
        return float(max(jnp.max(jnp.abs(Sigma - self._Sigma)), jnp.max(jnp.abs(mu - self._mu))))

    def min_precision_eigenvalue(self) -> float:
        return float(jnp.min(jnp.linalg.eigvalsh(self.precision)))

    def __repr__(self):
        return f"FactorizedEPRepresentation(num_vars={self.num_vars}, num_sites={self.num_sites})"
