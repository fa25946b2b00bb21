# eptools_jax/managers/factory.py
from __future__ import annotations

import itertools
from typing import Any, Iterable, Mapping, Tuple

from ..core import EPServices
from ..potentials import ScalarPotential, make_potential
from .base import PotentialManager
from .container import ContainerPotManager
from .default import DefaultPotManager


def _kind_and_params(site) -> Tuple[str, Mapping[str, Any]]:
    if isinstance(site, ScalarPotential):
        return site.kind, {}
    if isinstance(site, tuple):
        kind, params = site
        return kind, params
    return site.kind, site.params


def _build(site, services) -> ScalarPotential:
    if isinstance(site, ScalarPotential):
        return site
    kind, params = _kind_and_params(site)
    return make_potential(kind, services=services, **dict(params))


def build_manager(site_specs: Iterable, services: EPServices | None = None) -> PotentialManager:
    """
    Build the manager for an ordered list of sites.

    Each entry is a SiteSpec-like object (`.kind`, `.params`), a
    `(kind, params)` tuple, or a ready ScalarPotential. Consecutive sites of
    the same kind share one DefaultPotManager block; several blocks are
    composed in a ContainerPotManager.
    """
    specs = list(site_specs)
    blocks = []
    for _, group in itertools.groupby(specs, key=lambda s: _kind_and_params(s)[0]):
        blocks.append(DefaultPotManager([_build(s, services) for s in group]))
    if len(blocks) == 0:
        return DefaultPotManager([])
    if len(blocks) == 1:
        return blocks[0]
    return ContainerPotManager(blocks)
