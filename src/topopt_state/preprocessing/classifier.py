"""
Domain classifier: element regions and node aggregation.

Every element of the design mesh ends up in exactly one of four classes:

- design : optimizable material
- fixed  : passive, next to the fixture boundary condition
- load   : passive, next to the load application
- solid  : passive, forced solid

Per-file indicators may overlap; the final class is the first matching kind
in the precedence order (``fixed > load > solid > design`` by default).
Elements matching nothing fall back to the design domain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.config import DEFAULT_PRECEDENCE, REGION_KINDS, GeometryConfig
from ..core.errors import AllocationError, ConfigurationError, GeometryError
from ..core.mesh import MeshPair
from .geometry import as_surface

logger = logging.getLogger(__name__)


@dataclass
class RegionInputs:
    """Geometry sources per region kind (STL paths or TriangleSurface objects)."""
    design: List = field(default_factory=list)
    fixed: List = field(default_factory=list)
    load: List = field(default_factory=list)
    solid: List = field(default_factory=list)

    @classmethod
    def from_config(cls, geometry: GeometryConfig, base_dir: str | Path | None = None) -> "RegionInputs":
        """Resolve the configured file names relative to ``base_dir``."""
        def resolve(name):
            p = Path(name)
            return p if p.is_absolute() or base_dir is None else Path(base_dir) / p
        return cls(**{kind: [resolve(f) for f in geometry.files(kind)] for kind in REGION_KINDS})

    def sources(self, kind: str) -> List:
        return list(getattr(self, kind))


@dataclass
class RegionClassification:
    """Final element classes and node-level aggregation for one rank.

    Attributes
    ----------
    design, solid, fixed, load : np.ndarray, shape (nloc,)
        Mutually exclusive 0/1 element indicators.
    raw : dict of str -> np.ndarray of bool
        Per-kind geometry matches before precedence resolution (may overlap).
    node_density : np.ndarray, shape (n_nodes_local,)
        Element density averaged onto the owned nodes.
    node_counts : np.ndarray, shape (n_nodes_local,)
        Number of elements (over all ranks) incident to each owned node.
    precedence : tuple of str
        Order used to resolve overlapping matches.
    """
    design: np.ndarray
    solid: np.ndarray
    fixed: np.ndarray
    load: np.ndarray
    raw: Dict[str, np.ndarray] = field(default_factory=dict)
    node_density: np.ndarray = field(default_factory=lambda: np.zeros(0))
    node_counts: np.ndarray = field(default_factory=lambda: np.zeros(0))
    precedence: Tuple[str, ...] = DEFAULT_PRECEDENCE

    @property
    def nloc(self) -> int:
        return len(self.design)

    def indicator(self, kind: str) -> np.ndarray:
        if kind not in REGION_KINDS:
            raise KeyError(kind)
        return getattr(self, kind)

    @property
    def passive(self) -> np.ndarray:
        """Boolean mask of non-optimizable elements."""
        return self.design < 0.5

    def labels(self) -> np.ndarray:
        """Region name of every local element."""
        out = np.full(self.nloc, "design", dtype=object)
        for kind in ("solid", "fixed", "load"):
            out[self.indicator(kind) > 0.5] = kind
        return out

    def counts(self, comm=None) -> Dict[str, int]:
        """Global element count per class."""
        local = {kind: int(np.count_nonzero(self.indicator(kind) > 0.5)) for kind in REGION_KINDS}
        if comm is None:
            return local
        return {kind: int(comm.allreduce(v, op="sum")) for kind, v in local.items()}

    def n_passive(self, comm=None) -> int:
        c = self.counts(comm)
        return c["solid"] + c["fixed"] + c["load"]

    @classmethod
    def from_indicators(
        cls,
        mesh: MeshPair,
        comm=None,
        precedence: Sequence[str] = DEFAULT_PRECEDENCE,
        element_density: Optional[np.ndarray] = None,
        **indicators: np.ndarray,
    ) -> "RegionClassification":
        """Resolve per-kind boolean indicators (any subset of the four kinds)."""
        unknown = set(indicators) - set(REGION_KINDS)
        if unknown:
            raise ConfigurationError(f"Unknown region kind(s): {sorted(unknown)}")
        raw = {}
        for kind in REGION_KINDS:
            ind = indicators.get(kind)
            ind = np.zeros(mesh.nloc, dtype=bool) if ind is None else np.asarray(ind, dtype=bool)
            if ind.shape != (mesh.nloc,):
                raise AllocationError(
                    f"{kind} indicator has shape {ind.shape}, mesh has {mesh.nloc} local elements"
                )
            raw[kind] = ind
        return _resolve(mesh, raw, tuple(precedence), comm, element_density)


def _check_precedence(precedence: Sequence[str]) -> Tuple[str, ...]:
    if sorted(precedence) != sorted(REGION_KINDS):
        raise ConfigurationError(f"precedence must order exactly {REGION_KINDS}, got {list(precedence)}")
    return tuple(precedence)


def _resolve(mesh, raw, precedence, comm, element_density) -> RegionClassification:
    precedence = _check_precedence(precedence)
    label = np.full(mesh.nloc, -1, dtype=np.int64)
    for idx, kind in enumerate(precedence):
        label[raw[kind] & (label < 0)] = idx
    label[label < 0] = precedence.index("design")

    fields_ = {kind: (label == precedence.index(kind)).astype(float) for kind in REGION_KINDS}
    density = 1.0 - fields_["design"] if element_density is None else element_density
    node_density, node_counts = aggregate_to_nodes(mesh, density, comm)
    return RegionClassification(
        raw=raw, node_density=node_density, node_counts=node_counts, precedence=precedence, **fields_
    )


def _owned_positions(owned: np.ndarray, idx: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Position of each natural index in ``owned`` (sorted) and the hit mask."""
    pos = np.searchsorted(owned, idx)
    hit = pos < len(owned)
    hit[hit] = owned[pos[hit]] == idx[hit]
    return pos, hit


def aggregate_to_nodes(mesh: MeshPair, element_field: np.ndarray,
                       comm=None) -> Tuple[np.ndarray, np.ndarray]:
    """Average an element field onto the owned nodes.

    Each element adds its value to its 8 corner nodes; each node is divided by
    the number of incident elements. A rank's elements reach its own nodes
    and the first node layer of its upper neighbours; only the partial sums
    for those neighbour nodes are exchanged, so nodes on partition boundaries
    are exact without any global-length array.

    Returns
    -------
    node_density, node_counts : np.ndarray, shape (n_nodes_local,)
    """
    element_field = np.asarray(element_field, dtype=float)
    if element_field.shape != (mesh.nloc,):
        raise AllocationError(
            f"element field has shape {element_field.shape}, mesh has {mesh.nloc} local elements"
        )
    touched, inc = mesh.incidence()
    sums = np.asarray(inc.T @ element_field).ravel()
    counts = np.asarray(inc.sum(axis=0)).ravel()

    owned = mesh.nodes.natural_indices()
    own_sums = np.zeros(len(owned))
    own_counts = np.zeros(len(owned))
    pos, mine = _owned_positions(owned, touched)
    own_sums[pos[mine]] = sums[mine]
    own_counts[pos[mine]] = counts[mine]

    if comm is not None and comm.size > 1:
        outgoing = (touched[~mine], sums[~mine], counts[~mine])
        for rank, (idx, s, c) in enumerate(comm.allgather(outgoing)):
            if rank == comm.rank or len(idx) == 0:
                continue
            pos, hit = _owned_positions(owned, np.asarray(idx))
            np.add.at(own_sums, pos[hit], np.asarray(s)[hit])
            np.add.at(own_counts, pos[hit], np.asarray(c)[hit])

    density = np.divide(own_sums, own_counts, out=np.zeros_like(own_counts), where=own_counts > 0)
    return density, own_counts


class DomainClassifier:
    """Classify the elements of a mesh against region geometry.

    Parameters
    ----------
    mesh : MeshPair
        Co-partitioned mesh; only locally owned elements are tested.
    comm : Communicator, optional
        Used for global match counts and node aggregation.
    precedence : sequence of str
        Resolution order for overlapping matches.
    """

    def __init__(self, mesh: MeshPair, comm=None, precedence: Sequence[str] = DEFAULT_PRECEDENCE) -> None:
        self.mesh = mesh
        self.comm = comm
        self.precedence = _check_precedence(precedence)
        self.errors: List[GeometryError] = []

    def classify(self, inputs: RegionInputs, element_density: Optional[np.ndarray] = None) -> RegionClassification:
        centers = self.mesh.element_centers()
        raw = {kind: self._match(kind, inputs.sources(kind), centers) for kind in REGION_KINDS}
        result = _resolve(self.mesh, raw, self.precedence, self.comm, element_density)

        counts = result.counts(self.comm)
        if self.mesh.rank == 0:
            logger.info(
                "Classified %d elements: design=%d, fixed=%d, load=%d, solid=%d",
                self.mesh.n, counts["design"], counts["fixed"], counts["load"], counts["solid"],
            )
        return result

    def _match(self, kind: str, sources: List, centers: np.ndarray) -> np.ndarray:
        matched = np.zeros(len(centers), dtype=bool)
        for source in sources:
            try:
                surface = as_surface(source)
            except GeometryError as err:
                err.region = kind
                self._record(err)
                continue
            hit = surface.contains(centers)
            n_hit = int(np.count_nonzero(hit))
            if self.comm is not None:
                n_hit = int(self.comm.allreduce(n_hit, op="sum"))
            if n_hit == 0:
                self._record(GeometryError(
                    f"{kind} region {surface.name} matches no element", region=kind, source=surface.name
                ))
                continue
            logger.debug("%s region %s: %d elements", kind, surface.name, n_hit)
            matched |= hit
        return matched

    def _record(self, err: GeometryError) -> None:
        self.errors.append(err)
        logger.warning("%s; treating it as empty", err)


def classify_elements(
    mesh: MeshPair,
    inputs: RegionInputs,
    precedence: Sequence[str] = DEFAULT_PRECEDENCE,
    comm=None,
    element_density: Optional[np.ndarray] = None,
) -> RegionClassification:
    """Convenience wrapper around DomainClassifier.classify."""
    return DomainClassifier(mesh, comm, precedence).classify(inputs, element_density)
