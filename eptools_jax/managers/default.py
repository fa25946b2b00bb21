# eptools_jax/managers/default.py
from __future__ import annotations

from typing import Sequence

from ..errors import check_site_index
from ..potentials import ScalarPotential
from .base import PotentialManager


class DefaultPotManager(PotentialManager):
    """Flat list of potentials, site i -> potentials[i]."""

    def __init__(self, potentials: Sequence[ScalarPotential]):
        potentials = list(potentials)
        for k, pot in enumerate(potentials):
            if not isinstance(pot, ScalarPotential):
                raise TypeError(f"Entry {k} is not a ScalarPotential: {pot!r}")
        self._potentials = potentials

    @property
    def num_sites(self) -> int:
        return len(self._potentials)

    def potential(self, index):
        return self._potentials[check_site_index(index, self.num_sites)]

    def kinds(self):
        return [p.kind for p in self._potentials]

    def __repr__(self):
        return f"DefaultPotManager(num_sites={self.num_sites})"
