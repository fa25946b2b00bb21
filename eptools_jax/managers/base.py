# eptools_jax/managers/base.py
from __future__ import annotations

import abc
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np

from ..core import MomentStats
from ..errors import DomainError, NumericalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchMoments:
    """
    Moments of many sites evaluated in one call.

    Arrays are aligned with `indices`; entries of failed sites are NaN and
    the exception is kept in `failures`.
    """
    indices: np.ndarray
    log_z: np.ndarray
    dlog_z: np.ndarray
    d2log_z: np.ndarray
    failures: Dict[int, Exception] = field(default_factory=dict)
    stats: MomentStats = field(default_factory=MomentStats)

    @property
    def ok(self) -> np.ndarray:
        return np.array([int(i) not in self.failures for i in self.indices], dtype=bool)


class PotentialManager(abc.ABC):
    """
    Indexed collection mapping each site to its potential.

    Design principles
    -----------------
    - Sites are numbered 0 .. num_sites - 1; any other index is a
      SiteIndexError.
    - The manager owns its potential instances; potentials are immutable,
      so lookups never copy.
    - Evaluation failures of single sites (DomainError / NumericalError) are
      reported per site by `moments_batch`, never raised for the batch.
    """

    @property
    @abc.abstractmethod
    def num_sites(self) -> int:
        ...

    @abc.abstractmethod
    def potential(self, index):
        """Return the potential of site `index`."""
        ...

    def __len__(self) -> int:
        return self.num_sites

    def moments(self, index, cmean, cvar):
        return self.potential(index).moments(cmean, cvar)

    def moments_batch(
        self,
        cmeans: Sequence[float],
        cvars: Sequence[float],
        indices: Optional[Sequence[int]] = None,
        max_workers: Optional[int] = None,
    ) -> BatchMoments:
        """
        Evaluate moments of many sites.

        Args:
            cmeans, cvars: Cavity parameters aligned with `indices`.
            indices: Sites to evaluate (default: all sites in order).
            max_workers: If > 1, evaluate in a thread pool. Potentials are
                pure, so sites do not interact.

        Returns:
            BatchMoments
        """
        if indices is None:
            indices = range(self.num_sites)
        indices = np.asarray(list(indices), dtype=np.int64)
        cmeans = np.asarray(cmeans, dtype=np.float64).reshape(-1)
        cvars = np.asarray(cvars, dtype=np.float64).reshape(-1)
        if not (cmeans.shape == cvars.shape == indices.shape):
            raise ValueError(
                f"cmeans, cvars and indices must align: {cmeans.shape}, {cvars.shape}, {indices.shape}."
            )
        # resolve every index up front so bad indices fail the whole call
        pots = [self.potential(int(i)) for i in indices]

        def one(k):
            try:
                return pots[k].moments(cmeans[k], cvars[k]), None
            except (DomainError, NumericalError) as e:
                return None, e

        if max_workers is not None and max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                outcomes = list(pool.map(one, range(len(pots))))
        else:
            outcomes = [one(k) for k in range(len(pots))]

        n = len(pots)
        log_z = np.full(n, np.nan)
        dlog_z = np.full(n, np.nan)
        d2log_z = np.full(n, np.nan)
        failures: Dict[int, Exception] = {}
        stats = MomentStats()
        for k, (res, err) in enumerate(outcomes):
            if err is not None:
                failures[int(indices[k])] = err
                logger.debug("site %d: moment evaluation failed: %s", int(indices[k]), err)
                continue
            log_z[k], dlog_z[k], d2log_z[k] = res
            stats = stats + res.stats
        return BatchMoments(indices, log_z, dlog_z, d2log_z, failures, stats)
