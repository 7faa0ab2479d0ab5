"""Checkpoint files and the restart manager."""

from .checkpoint_io import CheckpointFile, CheckpointHeader
from .manager import RestartManager, RestartPhase, inspect_checkpoints

__all__ = [
    "CheckpointFile",
    "CheckpointHeader",
    "RestartManager",
    "RestartPhase",
    "inspect_checkpoints",
]
