# eptools_jax/managers/container.py
from __future__ import annotations

import bisect
import itertools
from typing import Sequence, Tuple

from ..errors import check_site_index
from .base import PotentialManager


class ContainerPotManager(PotentialManager):
    """
    Composite of several managers behind one index space.

    Child k owns the contiguous site range
        [offsets[k], offsets[k] + children[k].num_sites)
    in the order the children are given. Lookups dispatch by range; no
    behaviour is inherited from the children.
    """

    def __init__(self, children: Sequence[PotentialManager]):
        children = list(children)
        if not children:
            raise ValueError("ContainerPotManager needs at least one child manager.")
        for k, child in enumerate(children):
            if not isinstance(child, PotentialManager):
                raise TypeError(f"Child {k} is not a PotentialManager: {child!r}")
        self.children = children
        sizes = [c.num_sites for c in children]
        self._ends = list(itertools.accumulate(sizes))
        self.offsets = [0] + self._ends[:-1]

    @property
    def num_sites(self) -> int:
        return self._ends[-1]

    def locate(self, index) -> Tuple[int, int]:
        """Map a global site index to (child, local index)."""
        i = check_site_index(index, self.num_sites)
        k = bisect.bisect_right(self._ends, i)
        return k, i - self.offsets[k]

    def potential(self, index):
        k, local = self.locate(index)
        return self.children[k].potential(local)

    def __repr__(self):
        return f"ContainerPotManager(children={len(self.children)}, num_sites={self.num_sites})"
