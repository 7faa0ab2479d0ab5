"""Narrow interfaces to the external collaborators of the optimization loop.

The FEM solver, the density filter and the MMA optimizer are black boxes.
They get read access to state fields and return their results; only the
StateContainer writes into the state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from ..core.state import OptimizationState


@dataclass
class MMAState:
    """Internal history of an MMA optimizer (local part of each vector).

    Attributes
    ----------
    xo1, xo2 : np.ndarray
        Design one and two iterations back.
    U, L : np.ndarray
        Upper and lower moving asymptotes.
    iteration : int
        Outer iteration the history belongs to.
    """
    xo1: np.ndarray
    xo2: np.ndarray
    U: np.ndarray
    L: np.ndarray
    iteration: int = 0

    def vectors(self) -> List[np.ndarray]:
        return [self.xo1, self.xo2, self.U, self.L]


class FEMSolver(Protocol):
    """Assembles and solves the state problem for the current xPhys."""

    def solve(self, state: OptimizationState) -> Tuple[float, np.ndarray, Sequence[float], Sequence[np.ndarray]]:
        """Return ``(fx, dfdx, gx, dgdx)`` with sensitivities w.r.t. xPhys."""
        ...


class DensityFilter(Protocol):
    """Maps x to xTilde/xPhys and chains sensitivities back to x."""

    def apply(self, state: OptimizationState) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Return ``(xTilde, xPhys)``; xPhys may be None without projection."""
        ...

    def chain(self, state: OptimizationState) -> Tuple[np.ndarray, Sequence[np.ndarray]]:
        """Return ``(dfdx, dgdx)`` with respect to x (uses beta/eta if projecting)."""
        ...


class MMAOptimizer(Protocol):
    """Method of Moving Asymptotes."""

    def update(self, state: OptimizationState) -> np.ndarray:
        """Propose the next design from x, xmin, xmax, fx, dfdx, gx, dgdx."""
        ...

    def get_state(self) -> MMAState:
        """Current asymptotes and previous iterates."""
        ...


# mma_factory(n_global, m, x_local, restored_state_or_None) -> MMAOptimizer
MMAFactory = Callable[[int, int, np.ndarray, Optional[MMAState]], MMAOptimizer]
