"""Core building blocks: configuration, errors, communicators, mesh and state."""

from .comm import Communicator, MPICommunicator, SerialCommunicator, get_communicator
from .config import (
    GeometryConfig,
    MaterialConfig,
    MeshConfig,
    ProblemConfig,
    RestartConfig,
    RunConfig,
    TOConfig,
    load_config,
)
from .errors import (
    AllocationError,
    CheckpointCorrupt,
    ConfigurationError,
    GeometryError,
    RestartError,
    TopOptError,
)
from .mesh import MeshPair, StructuredGrid, build_mesh_pair, partition_world, setup_mesh
from .state import OptimizationState, StateContainer

__all__ = [
    "Communicator",
    "MPICommunicator",
    "SerialCommunicator",
    "get_communicator",
    "GeometryConfig",
    "MaterialConfig",
    "MeshConfig",
    "ProblemConfig",
    "RestartConfig",
    "RunConfig",
    "TOConfig",
    "load_config",
    "AllocationError",
    "CheckpointCorrupt",
    "ConfigurationError",
    "GeometryError",
    "RestartError",
    "TopOptError",
    "MeshPair",
    "StructuredGrid",
    "build_mesh_pair",
    "partition_world",
    "setup_mesh",
    "OptimizationState",
    "StateContainer",
]
