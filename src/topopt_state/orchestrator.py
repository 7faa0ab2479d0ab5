"""High-level orchestrator for one topology-optimization run.

This module provides the TopOptOrchestrator class which wires the mesh,
the domain classifier, the state container and the restart manager together
and hands them to the optimization loop.

Workflow
--------
1. set_up()              : mesh pair -> element classification -> state allocation
2. run()                 : restart initialization + optimization loop
3. export_node_density() : node-averaged physical density for reporting

The FEM solver, the density filter and the MMA optimizer are supplied by the
caller (see ``optimization.interfaces``).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from .core.comm import Communicator, get_communicator
from .core.config import ProblemConfig
from .core.errors import TopOptError
from .core.mesh import MeshPair, setup_mesh
from .core.state import StateContainer
from .optimization.interfaces import DensityFilter, FEMSolver, MMAFactory
from .optimization.topology_driver import TopOptDriver
from .preprocessing.classifier import DomainClassifier, RegionClassification, RegionInputs
from .restart.manager import RestartManager
from .utils.io_utils import save_csv, save_json

logger = logging.getLogger(__name__)


class TopOptOrchestrator:
    """High-level pipeline:
        set_up() -> mesh, classification, state container
        run()    -> history of the optimization loop
    Keeps all configs in one ProblemConfig instance.

    Parameters
    ----------
    config : ProblemConfig
        Validated configuration.
    comm : Communicator, optional
        Defaults to the backend named in ``config.run.backend``.
    base_dir : path, optional
        Folder that relative geometry file names are resolved against.
    """

    def __init__(self, config: ProblemConfig, comm: Optional[Communicator] = None,
                 base_dir: str | Path | None = None) -> None:
        self.config = config.validate()
        self.comm = comm if comm is not None else get_communicator(config.run.backend)
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.output_dir = Path(config.run.output_dir)
        self.mesh: Optional[MeshPair] = None
        self.classification: Optional[RegionClassification] = None
        self.container: Optional[StateContainer] = None
        self.restart: Optional[RestartManager] = None
        self.driver: Optional[TopOptDriver] = None
        self.geometry_errors = []

    @property
    def is_root(self) -> bool:
        return self.comm.rank == 0

    def set_up(self) -> "TopOptOrchestrator":
        """Build the mesh pair, classify the elements and allocate the state (collective)."""
        cfg = self.config
        self.mesh = setup_mesh(cfg.mesh, self.comm)

        classifier = DomainClassifier(self.mesh, self.comm, cfg.geometry.precedence)
        inputs = RegionInputs.from_config(cfg.geometry, self.base_dir)
        self.classification = classifier.classify(inputs)
        self.geometry_errors = list(classifier.errors)

        self.container = StateContainer.allocate(self.mesh, self.classification, cfg, self.comm)
        self.restart = RestartManager(cfg.restart, self.mesh, self.comm)
        return self

    def run(self, solver: FEMSolver, density_filter: DensityFilter, mma_factory: MMAFactory) -> pd.DataFrame:
        """Run the optimization loop and save history and summary on rank 0."""
        if self.container is None:
            self.set_up()
        self.driver = TopOptDriver(
            self.container, self.restart, solver, density_filter, mma_factory, self.comm
        )
        history = self.driver.run()
        self.container.refresh_node_density()

        summary = self.summary()
        if self.is_root:
            save_csv(history, self.output_dir / "history.csv")
            save_json(summary, self.output_dir / "summary.json")
            logger.info("Results written to %s", self.output_dir)
        return history

    def summary(self) -> Dict[str, Any]:
        """Key figures of the run (collective: counts are global)."""
        if self.container is None:
            raise TopOptError("set_up() has not been called")
        s = self.container.state
        out: Dict[str, Any] = {
            "n_elements": self.mesh.n,
            "resolution": list(self.mesh.elements.shape),
            "ranks": self.comm.size,
            "processor_grid": list(self.mesh.elements.proc_grid),
            "regions": self.classification.counts(self.comm),
            "geometry_errors": [str(e) for e in self.geometry_errors],
            "iteration": int(s.iteration),
            "fx": float(s.fx),
            "gx": [float(g) for g in s.gx],
            "volume": self.container.volume_fraction(),
            "beta": float(s.beta),
        }
        if self.driver is not None:
            out["stop_reason"] = self.driver.stop_reason
        if self.restart is not None and self.restart.active_slot is not None:
            out["restart_slot"] = self.restart.slot_path(self.restart.active_slot).name
        return out

    def export_node_density(self, path: str | Path) -> Optional[pd.DataFrame]:
        """Gather node coordinates and density to rank 0 and save them as CSV.

        Returns the frame on rank 0 and None elsewhere.
        """
        if self.classification is None:
            raise TopOptError("set_up() has not been called")
        local = np.column_stack([
            self.mesh.nodes.natural_indices().astype(float),
            self.mesh.node_coordinates(),
            self.classification.node_density,
        ])
        pieces = self.comm.gather(local, root=0)
        if not self.is_root:
            return None
        table = np.concatenate(pieces)
        table = table[np.argsort(table[:, 0], kind="stable")]
        df = pd.DataFrame(table[:, 1:], columns=["x", "y", "z", "density"])
        df.index = table[:, 0].astype(np.int64)
        df.index.name = "node"
        save_csv(df, path)
        logger.info("Node density written to %s", path)
        return df
