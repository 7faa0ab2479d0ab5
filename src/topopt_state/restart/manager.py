"""
Restart manager: dual-slot design checkpoints plus MMA history.

Files in ``restart.directory``::

    restart_density_1.dat   design slot 0  (x)
    restart_density_2.dat   design slot 1  (x)
    restart_mma.dat         xo1, xo2, U, L of the MMA optimizer

A checkpoint writes the design slot that was *not* used last, then replaces
the MMA-state file atomically. A crash while writing a slot therefore leaves
the other slot and the matching MMA state intact, and a crash between the two
writes leaves a newer slot whose iteration no longer matches the MMA file;
on restore the newest slot whose iteration equals the MMA-state iteration is
used.

Lifecycle::

    FRESH --(no restart / nothing on disk)--------------------> RUNNING
    FRESH --> RESTORING --(consistent checkpoint set)----------> RUNNING
    RUNNING --> CHECKPOINTING --(all ranks written)------------> RUNNING
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..core.config import RestartConfig
from ..core.errors import AllocationError, CheckpointCorrupt, RestartError
from ..core.mesh import MeshPair
from ..optimization.interfaces import MMAFactory, MMAOptimizer, MMAState
from .checkpoint_io import CheckpointFile

logger = logging.getLogger(__name__)

DENSITY_SLOTS = ("restart_density_1.dat", "restart_density_2.dat")
MMA_FILE = "restart_mma.dat"
MMA_VECTORS = 4


class RestartPhase(Enum):
    FRESH = "fresh"
    RESTORING = "restoring"
    RUNNING = "running"
    CHECKPOINTING = "checkpointing"


@dataclass
class RestorePlan:
    """Decision taken on rank 0 and broadcast to every rank."""
    action: str                 # "fresh", "restore" or "error"
    slot: Optional[int] = None
    iteration: int = 0
    reason: str = ""


class RestartManager:
    """Persists and restores design + optimizer history (collective).

    Parameters
    ----------
    config : RestartConfig
    mesh : MeshPair
        Provides the global field length and the world size.
    comm : Communicator, optional
    backend : CheckpointFile, optional
        File backend (existence checks, validated reads and writes).
    """

    def __init__(self, config: RestartConfig, mesh: MeshPair, comm=None,
                 backend: Optional[CheckpointFile] = None) -> None:
        self.config = config
        self.mesh = mesh
        self.comm = comm
        self.backend = backend or CheckpointFile()
        self.directory = Path(config.directory)
        self.phase = RestartPhase.FRESH
        self.active_slot: Optional[int] = None

    # ------------------------------------------------------------------ paths
    def slot_path(self, slot: int) -> Path:
        return self.directory / DENSITY_SLOTS[slot]

    @property
    def mma_path(self) -> Path:
        return self.directory / MMA_FILE

    @property
    def next_slot(self) -> int:
        """Slot the next checkpoint goes to (never the one last read/written)."""
        return 0 if self.active_slot is None else 1 - self.active_slot

    @property
    def _rank(self) -> int:
        return self.comm.rank if self.comm is not None else 0

    @property
    def _size(self) -> int:
        return self.comm.size if self.comm is not None else 1

    # ------------------------------------------------------------------ startup
    def initialize(self, container, mma_factory: MMAFactory) -> Tuple[MMAOptimizer, int]:
        """Build the MMA optimizer, from checkpoint history when available.

        Returns the optimizer and the iteration to resume from (0 when fresh).

        Raises
        ------
        RestartError
            The checkpoint set is incomplete or inconsistent and
            ``on_incomplete`` is ``"abort"``.
        """
        if self.phase is not RestartPhase.FRESH:
            raise RestartError(f"initialize() called in phase {self.phase.value}")
        s = container.state

        if not self.config.enabled:
            return self._start_fresh(container, mma_factory, "restart not requested")

        plan = None
        if self._rank == 0:
            try:
                plan = self._plan()
            except OSError as err:
                plan = RestorePlan("error", reason=f"cannot read checkpoint directory {self.directory}: {err}")
        plan = self._bcast(plan)

        if plan.action == "fresh":
            return self._start_fresh(container, mma_factory, plan.reason)
        if plan.action == "error":
            return self._incomplete(container, mma_factory, plan.reason)

        self.phase = RestartPhase.RESTORING
        x_global = mma_global = beta = error = None
        if self._rank == 0:
            try:
                header, (x_global,) = self.backend.read(self.slot_path(plan.slot), self.mesh.n, 1, self._size)
                _, mma_global = self.backend.read(self.mma_path, self.mesh.n, MMA_VECTORS, self._size)
                beta = header.beta
            except (CheckpointCorrupt, OSError) as err:
                error = f"checkpoint changed while restoring: {err}"
        error = self._bcast(error)
        if error is not None:
            self.phase = RestartPhase.FRESH
            return self._incomplete(container, mma_factory, error)
        beta = self._bcast(beta)
        x = self._scatter(x_global)
        xo1, xo2, U, L = (self._scatter(v) for v in (mma_global or [None] * MMA_VECTORS))

        container.restore_design(x, plan.iteration, beta)
        history = MMAState(xo1=xo1, xo2=xo2, U=U, L=L, iteration=plan.iteration)
        mma = mma_factory(self.mesh.n, s.m, s.x, history)
        self.active_slot = plan.slot
        self.phase = RestartPhase.RUNNING
        if self._rank == 0:
            logger.info(
                "Restored iteration %d from %s and %s", plan.iteration, self.slot_path(plan.slot).name, MMA_FILE
            )
        return mma, plan.iteration

    def _incomplete(self, container, mma_factory: MMAFactory, reason: str) -> Tuple[MMAOptimizer, int]:
        if self.config.on_incomplete == "fresh":
            logger.warning("Restart not possible (%s); starting from the initial design", reason)
            return self._start_fresh(container, mma_factory, reason)
        raise RestartError(f"Restart not possible: {reason}")

    def _start_fresh(self, container, mma_factory: MMAFactory, reason: str) -> Tuple[MMAOptimizer, int]:
        s = container.state
        s.iteration = 0
        mma = mma_factory(self.mesh.n, s.m, s.x, None)
        self.active_slot = None
        self.phase = RestartPhase.RUNNING
        if self._rank == 0:
            logger.info("Fresh start (%s)", reason)
        return mma, 0

    def _plan(self) -> RestorePlan:
        """Inspect the checkpoint set (rank 0 only)."""
        n, size = self.mesh.n, self._size
        slot_present = [self.backend.exists(self.slot_path(i)) for i in range(2)]
        mma_present = self.backend.exists(self.mma_path)
        if not any(slot_present) and not mma_present:
            return RestorePlan("fresh", reason=f"no checkpoint files in {self.directory}")

        slots: Dict[int, int] = {}
        problems: List[str] = []
        for i, present in enumerate(slot_present):
            if not present:
                continue
            try:
                header, _ = self.backend.read(self.slot_path(i), n, 1, size)
                slots[i] = header.iteration
            except CheckpointCorrupt as err:
                problems.append(str(err))
                logger.warning("Ignoring design slot: %s", err)

        mma_iteration = None
        if mma_present:
            try:
                header, _ = self.backend.read(self.mma_path, n, MMA_VECTORS, size)
                mma_iteration = header.iteration
            except CheckpointCorrupt as err:
                problems.append(str(err))
                logger.warning("MMA state unusable: %s", err)

        if mma_iteration is None:
            what = "missing" if not mma_present else "corrupt"
            return RestorePlan("error", reason=f"MMA state file {what} ({'; '.join(problems) or self.mma_path})")
        if not slots:
            detail = "; ".join(problems) if problems else "no design checkpoint found"
            return RestorePlan("error", reason=f"design checkpoint missing or corrupt ({detail})")

        matching = [i for i, it in slots.items() if it == mma_iteration]
        if not matching:
            return RestorePlan(
                "error",
                reason=f"no design slot matches MMA iteration {mma_iteration} (slots: {slots})",
            )
        slot = max(matching, key=lambda i: self.slot_path(i).stat().st_mtime_ns)
        return RestorePlan("restore", slot=slot, iteration=mma_iteration)

    # ------------------------------------------------------------------ running
    def should_checkpoint(self, iteration: int) -> bool:
        return bool(self.config.checkpoint) and iteration % int(self.config.interval) == 0

    def checkpoint(self, container, mma: MMAOptimizer, iteration: int) -> int:
        """Write the inactive design slot and the MMA state (collective).

        Returns the slot written. The active slot flips only after every rank
        has passed the write.
        """
        if self.phase is not RestartPhase.RUNNING:
            raise RestartError(f"checkpoint() called in phase {self.phase.value}")
        self.phase = RestartPhase.CHECKPOINTING
        slot = self.next_slot
        nloc = self.mesh.nloc

        history = mma.get_state()
        vectors = [np.asarray(v, dtype=float) for v in history.vectors()]
        bad = [f"{name} {v.shape}" for name, v in zip(("xo1", "xo2", "U", "L"), vectors) if v.shape != (nloc,)]
        n_bad = self.comm.allreduce(len(bad), op="max") if self.comm is not None else len(bad)
        if n_bad:
            self.phase = RestartPhase.RUNNING
            detail = ", ".join(bad) if bad else "on another rank"
            raise AllocationError(f"MMA history has the wrong shape ({detail}), expected ({nloc},)")

        beta = float(container.state.beta)
        x_global = self._gather(container.state.x)
        mma_global = [self._gather(v) for v in vectors]

        error = None
        if self._rank == 0:
            try:
                self.backend.write(self.slot_path(slot), iteration, [x_global], self._size, beta=beta)
                self.backend.write(self.mma_path, iteration, mma_global, self._size, atomic=True, beta=beta)
            except Exception as exc:
                error = f"writing checkpoint for iteration {iteration} failed: {exc}"
                logger.error(error)
        error = self._bcast(error)
        if error is not None:
            self.phase = RestartPhase.RUNNING
            raise RestartError(error)

        self.active_slot = slot
        self.phase = RestartPhase.RUNNING
        if self._rank == 0:
            logger.debug("Checkpoint iteration %d -> %s", iteration, self.slot_path(slot).name)
        return slot

    # ------------------------------------------------------------------ comm helpers
    def _bcast(self, obj):
        return self.comm.bcast(obj, root=0) if self.comm is not None else obj

    def _gather(self, local: np.ndarray) -> Optional[np.ndarray]:
        if self.comm is None:
            return np.array(local, dtype=float)
        pieces = self.comm.gather(np.array(local, dtype=float), root=0)
        return np.concatenate(pieces) if self.comm.rank == 0 else None

    def _scatter(self, global_vec: Optional[np.ndarray]) -> np.ndarray:
        if self.comm is None:
            return np.array(global_vec, dtype=float)
        counts = self.comm.allgather(self.mesh.nloc)
        pieces = None
        if self.comm.rank == 0:
            pieces = np.split(np.asarray(global_vec, dtype=float), np.cumsum(counts)[:-1])
        return np.array(self.comm.scatter(pieces, root=0), dtype=float)


def inspect_checkpoints(directory: str | Path, backend: Optional[CheckpointFile] = None) -> List[dict]:
    """Status of every checkpoint file in ``directory`` (no communication)."""
    backend = backend or CheckpointFile()
    directory = Path(directory)
    rows = []
    for name in (*DENSITY_SLOTS, MMA_FILE):
        path = directory / name
        row = {"file": name, "status": "missing", "iteration": None, "length": None, "nranks": None,
               "beta": None, "reason": ""}
        if backend.exists(path):
            try:
                header, _ = backend.read(path)
                row.update(status="valid", iteration=header.iteration, length=header.length,
                           nranks=header.nranks, beta=header.beta)
            except CheckpointCorrupt as err:
                row.update(status="corrupt", reason=err.reason)
        rows.append(row)
    return rows
