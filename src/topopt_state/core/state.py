"""
Optimization state container.

Owns every element-indexed and constraint-indexed field of one run:

    min_x fx
    s.t.  gx_j <= 0,            j = 1..m
          xmin_i <= x_i <= xmax_i, i = 1..n

with filtering and a volume constraint. All fields are allocated once from
the mesh's local element count and never reallocated; the FEM solver, the
filter and the MMA optimizer read the arrays and hand results back through
the ``write_*`` methods, which check sizes against the mesh.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from .config import ProblemConfig
from .errors import AllocationError
from .mesh import MeshPair

logger = logging.getLogger(__name__)


@dataclass
class OptimizationState:
    """Mutable state of one optimization run (local part of every field).

    Attributes
    ----------
    x : raw design variables
    xTilde : filtered field
    xPhys : physical density seen by the solver (projected xTilde, or xTilde)
    xold : design of the previous accepted iteration
    xmin, xmax : per-element bounds for the next optimizer call
    dfdx : objective sensitivities
    dgdx : one sensitivity field per constraint
    gx : constraint values
    fx, fscale : objective value and its scaling
    E, nu, Emin, Emax : material handed to the FEM solver
    load_vectors : one ``[fx, fy, fz]`` row per load region, shape (k, 3)
    load_nodes : mask of owned nodes touched by a load element
    n_load_nodes : global number of loaded nodes
    """
    x: np.ndarray
    xTilde: np.ndarray
    xPhys: np.ndarray
    xold: np.ndarray
    xmin: np.ndarray
    xmax: np.ndarray
    dfdx: np.ndarray
    dgdx: List[np.ndarray]
    gx: np.ndarray
    fx: float = 0.0
    fscale: float = 1.0
    # scalar optimization parameters
    penal: float = 3.0
    rmin: float = 0.0
    beta: float = 1.0
    beta_final: float = 1.0
    eta: float = 0.5
    movlim: float = 0.2
    Xmin: float = 0.0
    Xmax: float = 1.0
    volfrac: float = 0.5
    iteration: int = 0
    n: int = 0
    # material and loading for the solver
    E: float = 1.0
    nu: float = 0.3
    Emin: float = 1.0e-9
    Emax: float = 1.0
    load_vectors: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    load_nodes: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=bool))
    n_load_nodes: int = 0

    @property
    def nloc(self) -> int:
        return len(self.x)

    @property
    def m(self) -> int:
        return len(self.gx)


class StateContainer:
    """Allocates and guards the OptimizationState of one run.

    Use :meth:`allocate`; the constructor expects already consistent parts.
    """

    def __init__(self, mesh: MeshPair, classification, config: ProblemConfig,
                 state: OptimizationState, comm=None) -> None:
        self.mesh = mesh
        self.classification = classification
        self.config = config
        self.state = state
        self.comm = comm
        self.projection = config.projection
        self._pin_lo, self._pin_hi, self._pinned = self._pins()

    # ------------------------------------------------------------------ setup
    @classmethod
    def allocate(cls, mesh: MeshPair, classification, config: ProblemConfig, comm=None) -> "StateContainer":
        """Allocate all fields for ``mesh`` and set the initial design.

        ``x`` starts at ``volfrac`` in the design domain, 1 in solid-passive
        elements and 0 elsewhere; bounds start at ``[Xmin, Xmax]`` and passive
        elements are then pinned according to the region policies.
        """
        nloc, to = mesh.nloc, config.to
        for kind in ("design", "solid", "fixed", "load"):
            arr = classification.indicator(kind)
            if len(arr) != nloc:
                raise AllocationError(
                    f"{kind} indicator has {len(arr)} entries, mesh has {nloc} local elements"
                )

        design = classification.design > 0.5
        solid = classification.solid > 0.5
        x = np.zeros(nloc)
        x[design] = to.volfrac
        x[solid] = 1.0

        m = int(to.m)
        mat = config.material
        load_vectors = np.asarray(config.geometry.load_vectors, dtype=float).reshape(-1, 3)
        load_nodes = _touched_nodes(mesh, classification.load, comm)
        n_load = int(np.count_nonzero(load_nodes))
        if comm is not None:
            n_load = int(comm.allreduce(n_load, op="sum"))
        state = OptimizationState(
            x=x,
            xTilde=x.copy(),
            xPhys=x.copy(),
            xold=x.copy(),
            xmin=np.full(nloc, float(to.Xmin)),
            xmax=np.full(nloc, float(to.Xmax)),
            dfdx=np.zeros(nloc),
            dgdx=[np.zeros(nloc) for _ in range(m)],
            gx=np.zeros(m),
            fscale=float(to.fscale),
            penal=float(to.penal),
            rmin=float(to.rmin),
            beta=float(to.beta),
            beta_final=float(to.beta_final),
            eta=float(to.eta),
            movlim=float(to.movlim),
            Xmin=float(to.Xmin),
            Xmax=float(to.Xmax),
            volfrac=float(to.volfrac),
            n=mesh.n,
            E=float(mat.E),
            nu=float(mat.nu),
            Emin=float(mat.Emin),
            Emax=float(mat.Emax),
            load_vectors=load_vectors,
            load_nodes=load_nodes,
            n_load_nodes=n_load,
        )
        container = cls(mesh, classification, config, state, comm)
        container._apply_pins(initial=True)
        if mesh.rank == 0:
            logger.info(
                "Allocated state: n=%d, m=%d, volfrac=%.3f, filter=%s", mesh.n, m, to.volfrac, to.filter
            )
        return container

    def _pins(self):
        """Pinned value per passive element (lo == hi) and the pin mask."""
        c, geo = self.classification, self.config.geometry
        nloc = self.mesh.nloc
        lo = np.zeros(nloc)
        pinned = np.zeros(nloc, dtype=bool)

        solid = c.solid > 0.5
        lo[solid] = 1.0
        pinned |= solid
        for kind, policy in (("fixed", geo.fixed_policy), ("load", geo.load_policy)):
            mask = c.indicator(kind) > 0.5
            if policy == "solid":
                lo[mask] = 1.0
                pinned |= mask
            elif policy == "void":
                lo[mask] = 0.0
                pinned |= mask
        return lo, lo.copy(), pinned

    def _apply_pins(self, initial: bool = False) -> None:
        s, p = self.state, self._pinned
        s.xmin[p] = self._pin_lo[p]
        s.xmax[p] = self._pin_hi[p]
        if initial:
            free_passive = self.classification.passive & ~p
            s.x[free_passive] = s.volfrac
            s.x[p] = self._pin_lo[p]
            s.xTilde[:] = s.x
            s.xPhys[:] = s.x
            s.xold[:] = s.x

    @property
    def pinned(self) -> np.ndarray:
        """Mask of elements whose bounds collapse to a single value."""
        return self._pinned.copy()

    # ------------------------------------------------------------------ bounds
    def update_bounds(self, xold: Optional[np.ndarray] = None, movlim: Optional[float] = None) -> None:
        """Move-limit bounds: max(Xmin, xold-movlim) <= x <= min(Xmax, xold+movlim).

        Passive elements keep their pinned bounds. Calling this twice with the
        same arguments gives the same result as calling it once.
        """
        s = self.state
        xold = s.xold if xold is None else self._checked("xold", xold)
        movlim = s.movlim if movlim is None else float(movlim)
        np.maximum(s.Xmin, xold - movlim, out=s.xmin)
        np.minimum(s.Xmax, xold + movlim, out=s.xmax)
        self._apply_pins()

    # ------------------------------------------------------------------ write-back
    def write_design(self, x: np.ndarray) -> None:
        """Store the design proposed by the optimizer (pinned values enforced)."""
        x = self._checked("x", x)
        self.state.x[:] = x
        self.state.x[self._pinned] = self._pin_lo[self._pinned]

    def write_filtered(self, xTilde: np.ndarray, xPhys: Optional[np.ndarray] = None) -> None:
        """Store the filter output; without projection xPhys equals xTilde."""
        s = self.state
        s.xTilde[:] = self._checked("xTilde", xTilde)
        if xPhys is None or not self.projection:
            s.xPhys[:] = s.xTilde
        else:
            s.xPhys[:] = self._checked("xPhys", xPhys)

    def write_response(self, fx: float, dfdx: np.ndarray, gx: Sequence[float],
                       dgdx: Sequence[np.ndarray]) -> None:
        """Store objective, constraints and their sensitivities from the solver."""
        s = self.state
        gx = np.asarray(gx, dtype=float).ravel()
        if gx.shape != (s.m,):
            raise AllocationError(f"gx has {gx.size} entries, expected m={s.m}")
        s.fx = float(fx)
        s.gx[:] = gx
        self.write_sensitivities(dfdx, dgdx)

    def write_sensitivities(self, dfdx: np.ndarray, dgdx: Sequence[np.ndarray]) -> None:
        s = self.state
        if len(dgdx) != s.m:
            raise AllocationError(f"dgdx has {len(dgdx)} fields, expected m={s.m}")
        s.dfdx[:] = self._checked("dfdx", dfdx)
        for j, g in enumerate(dgdx):
            s.dgdx[j][:] = self._checked(f"dgdx[{j}]", g)

    def accept_iterate(self) -> float:
        """Global max |x - xold|; then xold <- x."""
        s = self.state
        local = float(np.max(np.abs(s.x - s.xold))) if s.nloc else 0.0
        change = self._reduce(local, "max")
        s.xold[:] = s.x
        return change

    def restore_design(self, x: np.ndarray, iteration: int, beta: Optional[float] = None) -> None:
        """Install a design read from a checkpoint (also becomes xold).

        ``beta`` restores the projection sharpness reached before the
        checkpoint; None keeps the configured starting value.
        """
        s = self.state
        s.x[:] = self._checked("x", x)
        s.xold[:] = s.x
        s.xTilde[:] = s.x
        s.xPhys[:] = s.x
        s.iteration = int(iteration)
        if beta is not None and beta > 0.0:
            s.beta = float(beta)

    # ------------------------------------------------------------------ helpers
    def continue_projection(self, change: float, threshold: float = 0.01) -> bool:
        """Double beta (up to beta_final) once the design has settled."""
        s = self.state
        if not self.projection or s.beta >= s.beta_final or change >= threshold:
            return False
        s.beta = min(2.0 * s.beta, s.beta_final)
        if self.mesh.rank == 0:
            logger.info("Projection sharpness increased to beta=%.4g", s.beta)
        return True

    def volume_fraction(self) -> float:
        """Global mean of xPhys."""
        total = self._reduce(float(np.sum(self.state.xPhys)), "sum")
        return total / self.mesh.n

    def refresh_node_density(self) -> np.ndarray:
        """Re-aggregate xPhys onto the owned nodes of the classification."""
        from ..preprocessing.classifier import aggregate_to_nodes

        density, counts = aggregate_to_nodes(self.mesh, self.state.xPhys, self.comm)
        self.classification.node_density = density
        self.classification.node_counts = counts
        return density

    def _checked(self, name: str, arr) -> np.ndarray:
        arr = np.asarray(arr, dtype=float)
        if arr.shape != (self.mesh.nloc,):
            raise AllocationError(
                f"{name} has shape {arr.shape}, mesh has {self.mesh.nloc} local elements"
            )
        return arr

    def _reduce(self, value: float, op: str) -> float:
        return float(self.comm.allreduce(value, op=op)) if self.comm is not None else value


def _touched_nodes(mesh: MeshPair, indicator: np.ndarray, comm=None) -> np.ndarray:
    """Owned nodes that are a corner of at least one flagged element."""
    from ..preprocessing.classifier import aggregate_to_nodes

    density, _ = aggregate_to_nodes(mesh, (np.asarray(indicator) > 0.5).astype(float), comm)
    return density > 0.0
