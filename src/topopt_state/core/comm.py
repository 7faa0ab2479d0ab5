"""
Communicators for collective, rank-parallel execution.

Every operation on a distributed field is a collective call: all ranks must
enter it. Two backends are provided:

- SerialCommunicator : a world of one rank (no MPI needed).
- MPICommunicator    : thin wrapper around an ``mpi4py`` communicator.

The backend is chosen explicitly (``run.backend`` in the configuration).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

import numpy as np

from .errors import ConfigurationError

_OPS = ("sum", "max", "min")


class Communicator(ABC):
    """Collective operations needed by the state layer."""

    @property
    @abstractmethod
    def rank(self) -> int: ...

    @property
    @abstractmethod
    def size(self) -> int: ...

    @property
    def is_root(self) -> bool:
        return self.rank == 0

    @abstractmethod
    def barrier(self) -> None: ...

    @abstractmethod
    def allreduce(self, value, op: str = "sum"):
        """Reduce a scalar or a numpy array over all ranks."""

    @abstractmethod
    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]: ...

    @abstractmethod
    def allgather(self, obj: Any) -> List[Any]: ...

    @abstractmethod
    def scatter(self, objs: Optional[List[Any]], root: int = 0) -> Any: ...

    @abstractmethod
    def bcast(self, obj: Any, root: int = 0) -> Any: ...


class SerialCommunicator(Communicator):
    """World of a single rank."""

    @property
    def rank(self) -> int:
        return 0

    @property
    def size(self) -> int:
        return 1

    def barrier(self) -> None:
        return None

    def allreduce(self, value, op: str = "sum"):
        _check_op(op)
        if isinstance(value, np.ndarray):
            return value.copy()
        return value

    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]:
        return [obj]

    def allgather(self, obj: Any) -> List[Any]:
        return [obj]

    def scatter(self, objs: Optional[List[Any]], root: int = 0) -> Any:
        if objs is None or len(objs) != 1:
            raise ValueError("scatter on a single rank needs exactly one item")
        return objs[0]

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return obj


class MPICommunicator(Communicator):
    """Collectives backed by mpi4py."""

    def __init__(self, comm=None) -> None:
        from mpi4py import MPI

        self._MPI = MPI
        self._comm = comm if comm is not None else MPI.COMM_WORLD
        self._ops = {"sum": MPI.SUM, "max": MPI.MAX, "min": MPI.MIN}

    @property
    def rank(self) -> int:
        return self._comm.Get_rank()

    @property
    def size(self) -> int:
        return self._comm.Get_size()

    def barrier(self) -> None:
        self._comm.Barrier()

    def allreduce(self, value, op: str = "sum"):
        _check_op(op)
        if isinstance(value, np.ndarray):
            send = np.ascontiguousarray(value)
            recv = np.empty_like(send)
            self._comm.Allreduce(send, recv, op=self._ops[op])
            return recv
        return self._comm.allreduce(value, op=self._ops[op])

    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]:
        return self._comm.gather(obj, root=root)

    def allgather(self, obj: Any) -> List[Any]:
        return self._comm.allgather(obj)

    def scatter(self, objs: Optional[List[Any]], root: int = 0) -> Any:
        return self._comm.scatter(objs, root=root)

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return self._comm.bcast(obj, root=root)


def get_communicator(backend: str = "serial") -> Communicator:
    """Return the communicator for ``run.backend``."""
    if backend == "serial":
        return SerialCommunicator()
    if backend == "mpi":
        return MPICommunicator()
    raise ConfigurationError(f"Unknown parallel backend {backend!r}")


def _check_op(op: str) -> None:
    if op not in _OPS:
        raise ValueError(f"Unsupported reduction {op!r}; expected one of {_OPS}")
