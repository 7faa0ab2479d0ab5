"""
Checkpoint file backend.

A checkpoint file is a fixed binary header followed by a raw dump of one or
more distributed vectors, each stored in partition order (rank 0's entries,
then rank 1's, ...) as little-endian float64:

    magic     8 bytes  b"TOPOCKPT"
    version   uint32
    nvectors  uint32   number of stacked vectors
    iteration int64
    length    int64    global length of each vector
    nranks    int32    world size that wrote the file
    crc32     uint32   CRC32 of the payload
    beta      float64  projection sharpness at write time

A file is valid only if its size equals header + payload and the CRC
matches, so a write interrupted half-way is always detected.
"""

from __future__ import annotations

import os
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..core.errors import CheckpointCorrupt

MAGIC = b"TOPOCKPT"
VERSION = 2
HEADER_DTYPE = np.dtype([
    ("magic", "S8"),
    ("version", "<u4"),
    ("nvectors", "<u4"),
    ("iteration", "<i8"),
    ("length", "<i8"),
    ("nranks", "<i4"),
    ("crc32", "<u4"),
    ("beta", "<f8"),
])
PAYLOAD_DTYPE = np.dtype("<f8")


@dataclass(frozen=True)
class CheckpointHeader:
    version: int
    nvectors: int
    iteration: int
    length: int
    nranks: int
    crc32: int
    beta: float = 0.0

    @property
    def payload_bytes(self) -> int:
        return self.nvectors * self.length * PAYLOAD_DTYPE.itemsize

    @property
    def file_bytes(self) -> int:
        return HEADER_DTYPE.itemsize + self.payload_bytes


class CheckpointFile:
    """Reads, writes and validates checkpoint files."""

    @staticmethod
    def exists(path: str | Path) -> bool:
        return Path(path).is_file()

    def write(self, path: str | Path, iteration: int, vectors: Sequence[np.ndarray],
              nranks: int = 1, atomic: bool = False, beta: float = 0.0) -> CheckpointHeader:
        """Write ``vectors`` (equal global lengths) with a validating header.

        With ``atomic=True`` the data goes to a temporary file that replaces
        ``path`` only once it is complete.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        arrays = [np.ascontiguousarray(v, dtype=PAYLOAD_DTYPE).ravel() for v in vectors]
        if not arrays:
            raise ValueError("checkpoint needs at least one vector")
        length = arrays[0].size
        if any(a.size != length for a in arrays):
            raise ValueError(f"vectors differ in length: {[a.size for a in arrays]}")
        payload = b"".join(a.tobytes() for a in arrays)

        header = np.zeros((), dtype=HEADER_DTYPE)
        header["magic"] = MAGIC
        header["version"] = VERSION
        header["nvectors"] = len(arrays)
        header["iteration"] = int(iteration)
        header["length"] = length
        header["nranks"] = int(nranks)
        header["crc32"] = zlib.crc32(payload) & 0xFFFFFFFF
        header["beta"] = float(beta)

        target = path.with_suffix(path.suffix + ".tmp") if atomic else path
        with target.open("wb") as handle:
            handle.write(header.tobytes())
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        if atomic:
            target.replace(path)
        return _to_header(header)

    def read_header(self, path: str | Path) -> CheckpointHeader:
        path = Path(path)
        if not path.is_file():
            raise CheckpointCorrupt(path, "file does not exist")
        size = path.stat().st_size
        if size < HEADER_DTYPE.itemsize:
            raise CheckpointCorrupt(path, f"truncated header ({size} bytes)")
        with path.open("rb") as handle:
            raw = np.frombuffer(handle.read(HEADER_DTYPE.itemsize), dtype=HEADER_DTYPE)[0]
        if bytes(raw["magic"]) != MAGIC:
            raise CheckpointCorrupt(path, "bad magic")
        header = _to_header(raw)
        if header.version != VERSION:
            raise CheckpointCorrupt(path, f"unsupported format version {header.version}")
        if header.length < 0 or header.nvectors < 1:
            raise CheckpointCorrupt(path, "invalid header fields")
        if size != header.file_bytes:
            raise CheckpointCorrupt(path, f"size {size} bytes, header expects {header.file_bytes}")
        return header

    def read(self, path: str | Path, expected_length: Optional[int] = None,
             nvectors: Optional[int] = None, nranks: Optional[int] = None
             ) -> Tuple[CheckpointHeader, List[np.ndarray]]:
        """Validate and load a checkpoint; raises CheckpointCorrupt."""
        path = Path(path)
        header = self.read_header(path)
        if nvectors is not None and header.nvectors != nvectors:
            raise CheckpointCorrupt(path, f"holds {header.nvectors} vectors, expected {nvectors}")
        if expected_length is not None and header.length != expected_length:
            raise CheckpointCorrupt(path, f"field length {header.length}, expected {expected_length}")
        if nranks is not None and header.nranks != nranks:
            raise CheckpointCorrupt(path, f"written by {header.nranks} ranks, running on {nranks}")
        with path.open("rb") as handle:
            handle.seek(HEADER_DTYPE.itemsize)
            payload = handle.read(header.payload_bytes)
        if (zlib.crc32(payload) & 0xFFFFFFFF) != header.crc32:
            raise CheckpointCorrupt(path, "checksum mismatch")
        data = np.frombuffer(payload, dtype=PAYLOAD_DTYPE).astype(float)
        return header, [v.copy() for v in np.split(data, header.nvectors)]


def _to_header(raw) -> CheckpointHeader:
    return CheckpointHeader(
        version=int(raw["version"]),
        nvectors=int(raw["nvectors"]),
        iteration=int(raw["iteration"]),
        length=int(raw["length"]),
        nranks=int(raw["nranks"]),
        crc32=int(raw["crc32"]),
        beta=float(raw["beta"]),
    )
