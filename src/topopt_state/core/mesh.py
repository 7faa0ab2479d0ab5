"""
Mesh coordinator: two co-partitioned structured grids.

The physics lives on a node grid (``resolution + 1`` nodes per axis) and the
design lives on an element grid (``resolution`` elements per axis). Both grids
are split over the same processor grid with the same starting indices, the
last rank along an axis additionally owning the closing node layer. This way
every element's corner nodes are owned by the element's rank or by its
upper neighbours, and the element/node ownership never disagrees.

Local fields are stored in x-fastest order within the owned box, and global
("natural") indices follow ``i + Nx * (j + Ny * k)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import product
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse

from .config import MeshConfig
from .errors import AllocationError, ConfigurationError

logger = logging.getLogger(__name__)

Triple = Tuple[int, int, int]

# Hex8 corner offsets (standard ordering).
HEX8_CORNERS = np.array([
    [0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0],
    [0, 0, 1], [1, 0, 1], [1, 1, 1], [0, 1, 1],
], dtype=np.int64)


@dataclass(frozen=True)
class StructuredGrid:
    """One rank's view of a distributed structured grid."""
    shape: Triple          # global entity counts per axis
    starts: Triple         # first owned index per axis
    stops: Triple          # one past the last owned index per axis
    proc_grid: Triple      # (px, py, pz)
    proc_coords: Triple    # position of this rank in the processor grid

    @property
    def local_shape(self) -> Triple:
        return tuple(b - a for a, b in zip(self.starts, self.stops))

    @property
    def local_size(self) -> int:
        return int(np.prod(self.local_shape))

    @property
    def global_size(self) -> int:
        return int(np.prod(self.shape))

    def local_ijk(self) -> np.ndarray:
        """Global (i, j, k) of every owned entity, x-fastest, shape (nloc, 3)."""
        axes = [np.arange(a, b, dtype=np.int64) for a, b in zip(self.starts, self.stops)]
        ii, jj, kk = np.meshgrid(*axes, indexing="ij")
        return np.stack([ii.ravel(order="F"), jj.ravel(order="F"), kk.ravel(order="F")], axis=1)

    def natural_index(self, ijk: np.ndarray) -> np.ndarray:
        nx, ny, _ = self.shape
        ijk = np.asarray(ijk, dtype=np.int64)
        return ijk[..., 0] + nx * (ijk[..., 1] + ny * ijk[..., 2])

    def natural_indices(self) -> np.ndarray:
        return self.natural_index(self.local_ijk())


@dataclass(frozen=True)
class MeshPair:
    """Node grid (physics) and element grid (design) sharing one partitioning."""
    nodes: StructuredGrid
    elements: StructuredGrid
    extent: Tuple[float, float, float, float, float, float]
    spacing: Tuple[float, float, float]
    nlvls: int
    rank: int = 0
    size: int = 1

    @property
    def nloc(self) -> int:
        """Number of locally owned elements (length of every design field)."""
        return self.elements.local_size

    @property
    def n(self) -> int:
        """Total number of elements / design variables."""
        return self.elements.global_size

    @property
    def origin(self) -> np.ndarray:
        return np.array(self.extent[0::2], dtype=float)

    def element_centers(self) -> np.ndarray:
        return self.origin + (self.elements.local_ijk() + 0.5) * np.asarray(self.spacing)

    def node_coordinates(self) -> np.ndarray:
        return self.origin + self.nodes.local_ijk() * np.asarray(self.spacing)

    def element_node_indices(self) -> np.ndarray:
        """Global natural node indices of the 8 corners of each local element."""
        ijk = self.elements.local_ijk()
        corners = ijk[:, None, :] + HEX8_CORNERS[None, :, :]
        return self.nodes.natural_index(corners)

    def incidence(self) -> Tuple[np.ndarray, sparse.csr_matrix]:
        """Nodes touched by the local elements and the incidence between them.

        Returns the sorted natural indices of every corner node of a local
        element and a (nloc, n_touched) matrix with ones at the corners.
        Only the local box plus one node layer is covered, never the global
        node grid.
        """
        conn = self.element_node_indices()
        touched, cols = np.unique(conn, return_inverse=True)
        rows = np.repeat(np.arange(self.nloc, dtype=np.int64), conn.shape[1])
        data = np.ones(conn.size, dtype=float)
        inc = sparse.csr_matrix((data, (rows, cols.ravel())), shape=(self.nloc, len(touched)))
        return touched, inc


def coarsening_block(count: int, nlvls: int) -> int:
    """Element block every rank range must be a multiple of (1 on flat axes)."""
    return 1 if count == 1 else 2 ** (nlvls - 1)


def ownership_ranges(n_elements: int, n_parts: int, block: int = 1) -> List[Tuple[int, int]]:
    """Split ``n_elements`` into ``n_parts`` contiguous ranges of whole blocks."""
    if n_elements % block:
        raise ConfigurationError(f"{n_elements} elements are not divisible into blocks of {block}")
    n_blocks = n_elements // block
    if n_blocks < n_parts:
        raise ConfigurationError(
            f"cannot split {n_elements} elements ({n_blocks} blocks of {block}) over {n_parts} ranks"
        )
    base, extra = divmod(n_blocks, n_parts)
    ranges, start = [], 0
    for p in range(n_parts):
        count = (base + (1 if p < extra else 0)) * block
        ranges.append((start, start + count))
        start += count
    return ranges


def decompose(resolution: Sequence[int], size: int, nlvls: int = 1) -> Triple:
    """Pick the processor grid (px, py, pz) with px*py*pz == size.

    Among splits where every rank owns at least one coarse block per axis,
    the one with the smallest inter-rank interface area wins.
    """
    nx, ny, nz = (int(v) for v in resolution)
    blocks = [n // coarsening_block(n, nlvls) for n in (nx, ny, nz)]
    best, best_key = None, None
    for px, py in product(range(1, size + 1), repeat=2):
        if size % (px * py):
            continue
        pz = size // (px * py)
        if px > blocks[0] or py > blocks[1] or pz > blocks[2]:
            continue
        area = (px - 1) * ny * nz + (py - 1) * nx * nz + (pz - 1) * nx * ny
        key = (area, -px, -py)
        if best_key is None or key < best_key:
            best, best_key = (px, py, pz), key
    if best is None:
        raise ConfigurationError(
            f"no decomposition of {size} ranks fits resolution {tuple(resolution)} with {nlvls} multigrid levels"
        )
    return best


def validate_resolution(resolution: Sequence[int], nlvls: int) -> None:
    if len(resolution) != 3:
        raise ConfigurationError(f"resolution needs 3 axis counts, got {len(resolution)}")
    if nlvls < 1:
        raise ConfigurationError(f"multigrid levels must be >= 1, got {nlvls}")
    for axis, count in zip("xyz", resolution):
        if count <= 0:
            raise ConfigurationError(f"element count along {axis} must be > 0, got {count}")
        block = coarsening_block(count, nlvls)
        if count % block:
            raise ConfigurationError(
                f"element count along {axis} ({count}) is not divisible by 2^(nlvls-1) = {block}"
            )


def build_mesh_pair(config: MeshConfig, rank: int = 0, size: int = 1) -> MeshPair:
    """Rank ``rank``'s view of the mesh pair for a world of ``size`` ranks."""
    resolution = tuple(int(v) for v in config.resolution)
    nlvls = int(config.nlvls)
    validate_resolution(resolution, nlvls)
    extent = tuple(float(v) for v in config.extent)
    if len(extent) != 6:
        raise ConfigurationError(f"extent needs 6 values, got {len(extent)}")
    lengths = [extent[2 * a + 1] - extent[2 * a] for a in range(3)]
    if min(lengths) <= 0.0:
        raise ConfigurationError(f"domain extent must be positive along every axis, got {extent}")
    if not 0 <= rank < size:
        raise ConfigurationError(f"rank {rank} outside world of size {size}")

    proc_grid = decompose(resolution, size, nlvls)
    px, py, _ = proc_grid
    coords = (rank % px, (rank // px) % py, rank // (px * py))

    e_starts, e_stops, n_stops = [], [], []
    for axis in range(3):
        ranges = ownership_ranges(resolution[axis], proc_grid[axis], coarsening_block(resolution[axis], nlvls))
        start, stop = ranges[coords[axis]]
        last = coords[axis] == proc_grid[axis] - 1
        e_starts.append(start)
        e_stops.append(stop)
        n_stops.append(stop + 1 if last else stop)

    elements = StructuredGrid(resolution, tuple(e_starts), tuple(e_stops), proc_grid, coords)
    nodes = StructuredGrid(
        tuple(r + 1 for r in resolution), tuple(e_starts), tuple(n_stops), proc_grid, coords
    )
    spacing = tuple(lengths[a] / resolution[a] for a in range(3))
    return MeshPair(nodes, elements, extent, spacing, nlvls, rank, size)


def assert_copartitioned(pair: MeshPair, comm=None) -> None:
    """Raise AllocationError unless node and element grids share rank ownership."""
    el, nd = pair.elements, pair.nodes
    if el.proc_grid != nd.proc_grid or el.proc_coords != nd.proc_coords:
        raise AllocationError(
            f"rank {pair.rank}: processor grids differ (elements {el.proc_grid}@{el.proc_coords}, "
            f"nodes {nd.proc_grid}@{nd.proc_coords})"
        )
    for axis in range(3):
        if nd.shape[axis] != el.shape[axis] + 1:
            raise AllocationError(f"node grid is not the element grid plus one along axis {axis}")
        if nd.starts[axis] != el.starts[axis]:
            raise AllocationError(
                f"rank {pair.rank}: node/element ownership starts differ along axis {axis} "
                f"({nd.starts[axis]} vs {el.starts[axis]})"
            )
        last = el.proc_coords[axis] == el.proc_grid[axis] - 1
        expected = el.stops[axis] + (1 if last else 0)
        if nd.stops[axis] != expected:
            raise AllocationError(
                f"rank {pair.rank}: node range along axis {axis} ends at {nd.stops[axis]}, expected {expected}"
            )
    if comm is not None:
        n_el = comm.allreduce(el.local_size, op="sum")
        n_nd = comm.allreduce(nd.local_size, op="sum")
        if n_el != el.global_size or n_nd != nd.global_size:
            raise AllocationError(
                f"owned entities do not tile the grids: {n_el}/{el.global_size} elements, "
                f"{n_nd}/{nd.global_size} nodes"
            )


def setup_mesh(config: MeshConfig, comm=None) -> MeshPair:
    """Create the co-partitioned node/element grids for this rank (collective)."""
    rank = comm.rank if comm is not None else 0
    size = comm.size if comm is not None else 1
    pair = build_mesh_pair(config, rank, size)
    assert_copartitioned(pair, comm)
    if rank == 0:
        logger.info(
            "Mesh: %s elements (%d total), %d multigrid levels, h=(%.4g, %.4g, %.4g), processor grid %s",
            "x".join(str(v) for v in pair.elements.shape), pair.n, pair.nlvls,
            *pair.spacing, pair.elements.proc_grid,
        )
    return pair


def partition_world(config: MeshConfig, size: int) -> List[MeshPair]:
    """Mesh pair of every rank of a world of ``size`` ranks (no communication)."""
    return [build_mesh_pair(config, rank, size) for rank in range(size)]


def owner_of_element(pairs: List[MeshPair], ijk: Sequence[int]) -> Optional[int]:
    """Rank owning element ``ijk`` among ``pairs`` (None if nobody does)."""
    for pair in pairs:
        el = pair.elements
        if all(el.starts[a] <= ijk[a] < el.stops[a] for a in range(3)):
            return pair.rank
    return None
