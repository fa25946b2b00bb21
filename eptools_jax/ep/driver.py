# eptools_jax/ep/driver.py
"""
Factorised EP driver.

One sweep visits every site once:

    SELECTING_SITE -> COMPUTING_CAVITY -> MOMENT_MATCHING -> PROJECTING -> UPDATING

and, once all sites are visited, CHECKING_CONVERGENCE decides between the next
sweep, CONVERGED and EXHAUSTED.

Local failures never abort a sweep:
- DomainError / NumericalError while computing the cavity, the moments or
  the projection: the site is skipped for this sweep (logged, counted);
- NonPositiveDefiniteError from the representation: the step is retried with
  a smaller damping factor, up to `max_retries` times, then skipped.

Parallel mode computes all cavities from the sweep-start state, evaluates
the moments in one batch and applies all updates at once.
"""
from __future__ import annotations

import enum
import logging
import math
import warnings
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from ..core import MomentResult, MomentStats
from ..errors import DomainError, NonPositiveDefiniteError, NumericalError
from ..managers import PotentialManager
from .representation import FactorizedEPRepresentation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaximumPiValues:
    """
    Upper bound on site precisions ("pi" values).

    A site whose moment-matched precision exceeds `max_pi` is shrunk to
    `max_pi` with its mean nu / tau kept, so a nearly deterministic site cannot
    make the joint covariance numerically singular.
    """
    max_pi: float = 1e10

    def __post_init__(self):
        if not self.max_pi > 0.0:
            raise ValueError(f"max_pi must be positive, got {self.max_pi}.")

    def clamp(self, tau: float, nu: float) -> Tuple[float, float, bool]:
        if tau <= self.max_pi:
            return tau, nu, False
        scale = self.max_pi / tau
        return self.max_pi, nu * scale, True


# External option names -> EPDriverCFG fields
_CAMEL_KEYS = {
    "sweepOrder": "sweep_order",
    "dampingFactor": "damping",
    "convergenceTolerance": "tol",
    "maxSweeps": "max_sweeps",
    "maxRetryOnRejectedUpdate": "max_retries",
    "parallelMode": "parallel",
}


@dataclass(frozen=True)
class EPDriverCFG:
    """Configuration for the factorised EP driver."""
    sweep_order: Literal["fixed", "random", "priority"] = "fixed"
    damping: float = 1.0            # learning-rate factor in (0, 1]
    tol: float = 1e-6               # max change of joint marginals per sweep
    max_sweeps: int = 50
    max_retries: int = 5            # damping retries after a rejected update
    retry_shrink: float = 0.5       # damping factor multiplier per retry
    parallel: bool = False
    refresh_every: int = 1          # sweeps between covariance refreshes (0 = never)
    seed: int = 0                   # for sweep_order="random"
    max_pi: MaximumPiValues = MaximumPiValues()
    batch_workers: Optional[int] = None  # thread pool size for parallel-mode moments

    def __post_init__(self):
        if self.sweep_order not in ("fixed", "random", "priority"):
            raise ValueError(f"Unknown sweep order: {self.sweep_order}")
        if not 0.0 < self.damping <= 1.0:
            raise ValueError(f"damping must lie in (0, 1], got {self.damping}.")
        if not self.tol > 0.0:
            raise ValueError(f"tol must be positive, got {self.tol}.")
        if self.max_sweeps < 1:
            raise ValueError(f"max_sweeps must be >= 1, got {self.max_sweeps}.")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}.")
        if not 0.0 < self.retry_shrink < 1.0:
            raise ValueError(f"retry_shrink must lie in (0, 1), got {self.retry_shrink}.")
        if self.refresh_every < 0:
            raise ValueError(f"refresh_every must be >= 0, got {self.refresh_every}.")
        if self.parallel and self.damping == 1.0:
            warnings.warn(
                "Parallel EP without damping often oscillates; consider damping < 1.",
                stacklevel=3,
            )

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "EPDriverCFG":
        """Build from a mapping with snake_case field names or the external camelCase keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in options.items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown EP driver option: {key}")
            if name == "max_pi" and not isinstance(value, MaximumPiValues):
                value = MaximumPiValues(float(value))
            kwargs[name] = value
        return cls(**kwargs)


class EPState(enum.Enum):
    IDLE = "idle"
    SELECTING_SITE = "selecting_site"
    COMPUTING_CAVITY = "computing_cavity"
    MOMENT_MATCHING = "moment_matching"
    PROJECTING = "projecting"
    UPDATING = "updating"
    CHECKING_CONVERGENCE = "checking_convergence"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


class EPStatus(enum.Enum):
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"       # exhausted with a site that failed on every sweep


@dataclass
class SweepStats:
    """Counters of one sweep."""
    sweep: int
    n_updated: int = 0
    n_skipped: int = 0
    n_damped: int = 0          # updates accepted only after shrinking the step
    n_rejected: int = 0        # NonPositiveDefiniteError events
    n_clamped: int = 0         # site precisions capped by max_pi
    max_change: float = math.inf
    quad_calls: int = 0
    quad_evaluations: int = 0
    prox_iterations: int = 0
    failures: Dict[int, str] = field(default_factory=dict)

    def add_stats(self, stats: MomentStats) -> None:
        self.quad_calls += stats.quad_calls
        self.quad_evaluations += stats.quad_evaluations
        self.prox_iterations += stats.prox_iterations


@dataclass
class EPRun:
    """EP run results."""
    status: EPStatus
    n_sweeps: int
    max_change: float              # achieved change of the last sweep
    mean: jnp.ndarray              # joint marginal means, shape [n]
    var: jnp.ndarray               # joint marginal variances, shape [n]
    site_tau: jnp.ndarray          # shape [m]
    site_nu: jnp.ndarray           # shape [m]
    sweeps: List[SweepStats]
    failed_sites: List[int]        # sites that failed on every sweep
    stopped: bool = False          # ended by the caller's stop check

    @property
    def converged(self) -> bool:
        return self.status is EPStatus.CONVERGED

    @property
    def n_rejected(self) -> int:
        return sum(s.n_rejected for s in self.sweeps)


def project_moments(moments: MomentResult, cmean: float, cvar: float) -> Tuple[float, float]:
    """
    Moment-matched site factor from the tilted moments.

        tau = -d2 / (1 + v d2)
        nu  = (d1 - m d2) / (1 + v d2)

    1 + v d2 is the ratio of tilted to cavity variance; it must be positive.
    """
    _, d1, d2 = moments
    denom = 1.0 + cvar * d2
    if not denom > 0.0:
        raise NumericalError(f"Tilted variance is not positive (1 + v*d2 = {denom:.3g}).")
    tau = -d2 / denom
    nu = (d1 - cmean * d2) / denom
    if not (math.isfinite(tau) and math.isfinite(nu)):
        raise NumericalError(f"Non-finite site factor ({tau}, {nu}).")
    return tau, nu


class FactorizedEPDriver:
    """
    Runs EP sweeps over the sites of `manager` against `representation`.

    The representation is mutated in place; concurrent drivers on the same
    representation are not supported.
    """

    def __init__(
        self,
        manager: PotentialManager,
        representation: FactorizedEPRepresentation,
        cfg: EPDriverCFG = EPDriverCFG(),
    ):
        if manager.num_sites != representation.num_sites:
            raise ValueError(
                f"Manager has {manager.num_sites} sites, representation has {representation.num_sites}."
            )
        self.manager = manager
        self.rep = representation
        self.cfg = cfg
        self.state = EPState.IDLE
        self._key = jax.random.PRNGKey(cfg.seed)
        self._last_step = np.zeros(manager.num_sites)
        self._n_sweeps = 0
        self._stopped = False

    # ------------------------------------------------------------------
    # Site selection
    # ------------------------------------------------------------------

    def _sweep_order(self) -> List[int]:
        m = self.manager.num_sites
        order = self.cfg.sweep_order
        if order == "random":
            self._key, sub = jax.random.split(self._key)
            return [int(i) for i in jax.random.permutation(sub, m)]
        if order == "priority" and self._n_sweeps > 0:
            # largest previous update first; stable for ties
            return [int(i) for i in np.argsort(-self._last_step, kind="stable")]
        return list(range(m))

    # ------------------------------------------------------------------
    # Sequential update of one site
    # ------------------------------------------------------------------

    def _update_one(self, i: int, stats: SweepStats) -> None:
        self.state = EPState.COMPUTING_CAVITY
        try:
            cav = self.rep.cavity_params(i)
            self.state = EPState.MOMENT_MATCHING
            mom = self.manager.moments(i, cav.mean, cav.var)
            stats.add_stats(mom.stats)
            self.state = EPState.PROJECTING
            tau, nu = project_moments(mom, cav.mean, cav.var)
        except (DomainError, NumericalError) as e:
            stats.n_skipped += 1
            stats.failures[i] = str(e)
            logger.info("sweep %d: skipping site %d: %s", stats.sweep, i, e)
            return

        tau, nu, clamped = self.cfg.max_pi.clamp(tau, nu)
        stats.n_clamped += int(clamped)

        self.state = EPState.UPDATING
        old = self.rep.site_factor(i)
        eta = self.cfg.damping
        for attempt in range(self.cfg.max_retries + 1):
            step_tau = old.tau + eta * (tau - old.tau)
            step_nu = old.nu + eta * (nu - old.nu)
            try:
                delta = self.rep.update_site(i, step_tau, step_nu)
            except NonPositiveDefiniteError as e:
                stats.n_rejected += 1
                logger.debug("sweep %d: site %d rejected at damping %.3g: %s", stats.sweep, i, eta, e)
                eta *= self.cfg.retry_shrink
                continue
            stats.n_updated += 1
            stats.n_damped += int(attempt > 0)
            self._last_step[i] = abs(delta.dtau) + abs(delta.dnu)
            return

        stats.n_skipped += 1
        stats.failures[i] = "update rejected after damping retries"
        logger.info(
            "sweep %d: skipping site %d: update rejected after %d retries",
            stats.sweep, i, self.cfg.max_retries,
        )

    def _sequential_sweep(self, stats: SweepStats, stop_check) -> bool:
        for i in self._sweep_order():
            if stop_check is not None and stop_check():
                return True
            self.state = EPState.SELECTING_SITE
            self._update_one(i, stats)
        return False

    # ------------------------------------------------------------------
    # Parallel sweep
    # ------------------------------------------------------------------

    def _parallel_sweep(self, stats: SweepStats) -> None:
        self.state = EPState.COMPUTING_CAVITY
        idx, cm, cv = [], [], []
        for i in range(self.manager.num_sites):
            try:
                cav = self.rep.cavity_params(i)
            except NumericalError as e:
                stats.n_skipped += 1
                stats.failures[i] = str(e)
                logger.info("sweep %d: skipping site %d: %s", stats.sweep, i, e)
                continue
            idx.append(i)
            cm.append(cav.mean)
            cv.append(cav.var)
        if not idx:
            return

        self.state = EPState.MOMENT_MATCHING
        batch = self.manager.moments_batch(cm, cv, indices=idx, max_workers=self.cfg.batch_workers)
        stats.add_stats(batch.stats)

        self.state = EPState.PROJECTING
        upd, new_tau, new_nu = [], [], []
        tau_all, nu_all = self.rep.site_params()
        for k, i in enumerate(idx):
            if i in batch.failures:
                stats.n_skipped += 1
                stats.failures[i] = str(batch.failures[i])
                logger.info("sweep %d: skipping site %d: %s", stats.sweep, i, batch.failures[i])
                continue
            mom = MomentResult(float(batch.log_z[k]), float(batch.dlog_z[k]), float(batch.d2log_z[k]))
            try:
                tau, nu = project_moments(mom, cm[k], cv[k])
            except NumericalError as e:
                stats.n_skipped += 1
                stats.failures[i] = str(e)
                logger.info("sweep %d: skipping site %d: %s", stats.sweep, i, e)
                continue
            tau, nu, clamped = self.cfg.max_pi.clamp(tau, nu)
            stats.n_clamped += int(clamped)
            upd.append(i)
            new_tau.append(tau)
            new_nu.append(nu)
        if not upd:
            return

        self.state = EPState.UPDATING
        old_tau = np.asarray(tau_all)[upd]
        old_nu = np.asarray(nu_all)[upd]
        new_tau = np.asarray(new_tau)
        new_nu = np.asarray(new_nu)
        eta = self.cfg.damping
        for attempt in range(self.cfg.max_retries + 1):
            try:
                dtau, dnu = self.rep.update_sites(
                    upd,
                    old_tau + eta * (new_tau - old_tau),
                    old_nu + eta * (new_nu - old_nu),
                )
            except NonPositiveDefiniteError as e:
                stats.n_rejected += len(upd)
                logger.debug("sweep %d: parallel update rejected at damping %.3g: %s", stats.sweep, eta, e)
                eta *= self.cfg.retry_shrink
                continue
            stats.n_updated += len(upd)
            stats.n_damped += len(upd) if attempt > 0 else 0
            self._last_step[upd] = np.abs(np.asarray(dtau)) + np.abs(np.asarray(dnu))
            return

        stats.n_skipped += len(upd)
        for i in upd:
            stats.failures[i] = "update rejected after damping retries"
        logger.info("sweep %d: parallel update rejected after %d retries", stats.sweep, self.cfg.max_retries)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sweep(self, stop_check: Optional[Callable[[], bool]] = None) -> SweepStats:
        """
        Run one sweep and return its counters.

        `max_change` is the largest absolute change of a joint marginal mean
        or variance between the start and the end of the sweep.
        """
        self._n_sweeps += 1
        stats = SweepStats(sweep=self._n_sweeps)
        mean0, var0 = self.rep.joint_marginals()

        stopped = False
        if self.cfg.parallel:
            # the batch is atomic, so the check runs once before it
            if stop_check is not None and stop_check():
                stopped = True
            else:
                self._parallel_sweep(stats)
        else:
            stopped = self._sequential_sweep(stats, stop_check)

        if not self.cfg.parallel and self.cfg.refresh_every and self._n_sweeps % self.cfg.refresh_every == 0:
            self.rep.refresh()

        self.state = EPState.CHECKING_CONVERGENCE
        mean1, var1 = self.rep.joint_marginals()
        stats.max_change = float(max(jnp.max(jnp.abs(mean1 - mean0)), jnp.max(jnp.abs(var1 - var0))))
        logger.debug(
            "sweep %d: updated=%d skipped=%d damped=%d rejected=%d max_change=%.3e",
            stats.sweep, stats.n_updated, stats.n_skipped, stats.n_damped,
            stats.n_rejected, stats.max_change,
        )
        self._stopped = stopped
        return stats

    def run(self, stop_check: Optional[Callable[[], bool]] = None) -> EPRun:
        """
        Sweep until the joint marginals change by at most `cfg.tol`, the sweep
        budget is spent, or `stop_check()` returns True (checked between
        sites, or before each batch in parallel mode).
        """
        cfg = self.cfg
        sweeps: List[SweepStats] = []
        fail_counts = np.zeros(self.manager.num_sites, dtype=np.int64)
        status = EPStatus.EXHAUSTED
        stopped = False

        for _ in range(cfg.max_sweeps):
            stats = self.sweep(stop_check)
            sweeps.append(stats)
            for i in stats.failures:
                fail_counts[i] += 1
            if self._stopped:
                stopped = True
                break
            # a sweep that only skipped sites proves nothing
            if stats.max_change <= cfg.tol and (stats.n_updated > 0 or not stats.failures):
                status = EPStatus.CONVERGED
                break

        failed_sites = [int(i) for i in np.nonzero(fail_counts == len(sweeps))[0]] if sweeps else []
        if status is EPStatus.CONVERGED:
            self.state = EPState.CONVERGED
        else:
            self.state = EPState.EXHAUSTED
            if failed_sites and not stopped and len(sweeps) == cfg.max_sweeps:
                status = EPStatus.FAILED

        mean, var = self.rep.joint_marginals()
        tau, nu = self.rep.site_params()
        run = EPRun(
            status=status,
            n_sweeps=len(sweeps),
            max_change=sweeps[-1].max_change if sweeps else math.inf,
            mean=mean,
            var=var,
            site_tau=tau,
            site_nu=nu,
            sweeps=sweeps,
            failed_sites=failed_sites,
            stopped=stopped,
        )
        logger.info(
            "EP finished: status=%s sweeps=%d max_change=%.3e failed_sites=%s",
            run.status.value, run.n_sweeps, run.max_change, run.failed_sites,
        )
        return run
