"""Topology optimization loop driver.

This module provides the TopOptDriver class which runs the design iterations
on top of the StateContainer and hands the fields to the external FEM solver,
density filter and MMA optimizer.

Iteration
---------
1. filter x -> xTilde / xPhys              (DensityFilter.apply)
2. solve, get fx, dfdx, gx, dgdx            (FEMSolver.solve)
3. chain sensitivities back to x            (DensityFilter.chain)
4. scale objective by fscale, move-limit bounds
5. propose new x                            (MMAOptimizer.update)
6. accept iterate, measure change, refilter
7. projection continuation (refilter again when beta grows)
8. checkpoint (complete on every rank before the counter advances)

Stop requests are observed only at the iteration boundary.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

import numpy as np
import pandas as pd

from ..core.state import StateContainer
from .interfaces import DensityFilter, FEMSolver, MMAFactory

if TYPE_CHECKING:
    from ..restart.manager import RestartManager

logger = logging.getLogger(__name__)


class TopOptDriver:
    """Runs the optimization loop for one StateContainer.

    Parameters
    ----------
    container : StateContainer
    restart : RestartManager
        Builds the optimizer (fresh or from checkpoint) and writes checkpoints.
    solver : FEMSolver
    density_filter : DensityFilter
    mma_factory : MMAFactory
    comm : Communicator, optional
    """

    def __init__(self, container: StateContainer, restart: "RestartManager", solver: FEMSolver,
                 density_filter: DensityFilter, mma_factory: MMAFactory, comm=None) -> None:
        self.container = container
        self.restart = restart
        self.solver = solver
        self.filter = density_filter
        self.mma_factory = mma_factory
        self.comm = comm
        self.to = container.config.to
        self.history: List[Dict[str, float]] = []
        self.stop_reason: Optional[str] = None
        self._stop_requested = False

    def request_stop(self) -> None:
        """Ask the loop to stop after the current iteration."""
        self._stop_requested = True

    def _stop_agreed(self) -> bool:
        flag = 1 if self._stop_requested else 0
        if self.comm is not None:
            flag = self.comm.allreduce(flag, op="max")
        return bool(flag)

    def _log(self, msg, *args) -> None:
        if self.container.mesh.rank == 0:
            logger.info(msg, *args)

    def _filter(self) -> None:
        xTilde, xPhys = self.filter.apply(self.container.state)
        self.container.write_filtered(xTilde, xPhys)

    def run(self) -> pd.DataFrame:
        """Iterate until max_iter, convergence or a stop request."""
        c, s = self.container, self.container.state
        mma, itr = self.restart.initialize(c, self.mma_factory)
        self._filter()

        change = 1.0
        self.stop_reason = None
        while True:
            if itr >= int(self.to.max_iter):
                self.stop_reason = "max_iter"
                break
            if change < float(self.to.change_tol):
                self.stop_reason = "converged"
                break
            if self._stop_agreed():
                self.stop_reason = "stop requested"
                break

            fx, dfdx, gx, dgdx = self.solver.solve(s)
            c.write_response(fx, dfdx, gx, dgdx)
            dfdx, dgdx = self.filter.chain(s)
            c.write_sensitivities(np.asarray(dfdx) * s.fscale, dgdx)
            s.fx = s.fx * s.fscale

            c.update_bounds()
            c.write_design(mma.update(s))
            change = c.accept_iterate()
            self._filter()
            measured = change
            if c.continue_projection(change):
                self._filter()
                # sharper projection changes xPhys; keep iterating
                change = 1.0

            done = itr + 1
            if self.restart.should_checkpoint(done):
                self.restart.checkpoint(c, mma, done)
            itr = s.iteration = done

            vol = c.volume_fraction()
            self.history.append({
                "iteration": itr,
                "fx": s.fx,
                **{f"g{j}": float(g) for j, g in enumerate(s.gx)},
                "volume": vol,
                "change": measured,
                "beta": s.beta,
            })
            self._log(
                "It.: %d, obj.: %.6e, g[0]: %.4e, vol.: %.4f, ch.: %.4e", itr, s.fx, s.gx[0], vol, measured
            )

        self._log("Stopped after %d iterations (%s)", itr, self.stop_reason)
        return self.history_frame()

    def history_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.history).set_index("iteration") if self.history else pd.DataFrame()
