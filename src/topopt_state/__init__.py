"""
topopt-state - State and restart management for parallel topology optimization
===============================================================================

Owns the design/filtered/physical density fields, the constraint bookkeeping
and the crash-safe checkpoint/restart of a PDE-constrained topology
optimization loop on co-partitioned structured grids. The FEM solver, the
density filter and the MMA optimizer are plugged in through the protocols of
``topopt_state.optimization.interfaces``.
"""

__version__ = "1.0.0"

from .core import ProblemConfig, load_config
from .orchestrator import TopOptOrchestrator

__all__ = ["ProblemConfig", "load_config", "TopOptOrchestrator", "__version__"]
