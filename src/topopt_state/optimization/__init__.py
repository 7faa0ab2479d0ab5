"""Optimization loop and the interfaces of its external collaborators."""

from .interfaces import DensityFilter, FEMSolver, MMAFactory, MMAOptimizer, MMAState
from .topology_driver import TopOptDriver

__all__ = [
    "DensityFilter",
    "FEMSolver",
    "MMAFactory",
    "MMAOptimizer",
    "MMAState",
    "TopOptDriver",
]
