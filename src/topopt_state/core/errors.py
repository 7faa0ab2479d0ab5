"""Exception taxonomy for topology-optimization state management.

Propagation policy
------------------
- ConfigurationError : invalid mesh/multigrid/option values. Fatal, raised
  before any field is allocated.
- GeometryError      : missing or empty region input. Recovered by the domain
  classifier (logged, region treated as empty).
- RestartError       : corrupt or inconsistent checkpoint set. Surfaced to the
  caller, who decides between abort and fresh start.
- AllocationError    : field length does not match the mesh, or the two grids
  are not co-partitioned. Fatal.
"""

from __future__ import annotations


class TopOptError(Exception):
    """Base class for all errors raised by topopt_state."""


class ConfigurationError(TopOptError, ValueError):
    """Invalid configuration (mesh resolution, multigrid depth, options)."""


class GeometryError(TopOptError):
    """Region geometry input is missing, unreadable or matches no element."""

    def __init__(self, message: str, region: str | None = None, source: str | None = None) -> None:
        super().__init__(message)
        self.region = region
        self.source = source


class RestartError(TopOptError):
    """Checkpoint artifacts cannot be used to rebuild the optimizer state."""


class CheckpointCorrupt(RestartError):
    """A single checkpoint file failed validation."""

    def __init__(self, path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class AllocationError(TopOptError):
    """Field size or partitioning does not match the mesh."""
