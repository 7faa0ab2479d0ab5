import numpy as np
import pytest

from topopt_state.core.errors import CheckpointCorrupt
from topopt_state.restart.checkpoint_io import HEADER_DTYPE, CheckpointFile


def test_write_then_read_is_bit_identical(tmp_path):
    rng = np.random.default_rng(0)
    vectors = [rng.random(37), rng.random(37) * 1e-12, -rng.random(37)]
    io = CheckpointFile()
    written = io.write(tmp_path / "a.dat", 12, vectors, nranks=3, beta=24.0)
    header, loaded = io.read(tmp_path / "a.dat", expected_length=37, nvectors=3, nranks=3)
    assert header == written
    assert header.iteration == 12
    assert header.beta == 24.0
    for a, b in zip(vectors, loaded):
        np.testing.assert_array_equal(a, b)
    assert (tmp_path / "a.dat").stat().st_size == HEADER_DTYPE.itemsize + 3 * 37 * 8


def test_atomic_write_leaves_no_temporary(tmp_path):
    io = CheckpointFile()
    io.write(tmp_path / "mma.dat", 1, [np.zeros(4)], atomic=True)
    io.write(tmp_path / "mma.dat", 2, [np.ones(4)], atomic=True)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["mma.dat"]
    assert io.read_header(tmp_path / "mma.dat").iteration == 2


def test_truncated_file_is_detected(tmp_path):
    path = tmp_path / "slot.dat"
    CheckpointFile().write(path, 3, [np.arange(100, dtype=float)])
    data = path.read_bytes()
    path.write_bytes(data[: len(data) - 40])
    with pytest.raises(CheckpointCorrupt, match="size"):
        CheckpointFile().read(path)
    path.write_bytes(data[:10])
    with pytest.raises(CheckpointCorrupt, match="truncated header"):
        CheckpointFile().read(path)


def test_flipped_payload_byte_fails_checksum(tmp_path):
    path = tmp_path / "slot.dat"
    CheckpointFile().write(path, 3, [np.arange(10, dtype=float)])
    data = bytearray(path.read_bytes())
    data[-3] ^= 0xFF
    path.write_bytes(bytes(data))
    with pytest.raises(CheckpointCorrupt, match="checksum"):
        CheckpointFile().read(path)


def test_bad_magic_and_mismatches(tmp_path):
    path = tmp_path / "slot.dat"
    io = CheckpointFile()
    io.write(path, 3, [np.zeros(8)], nranks=2)
    with pytest.raises(CheckpointCorrupt, match="field length"):
        io.read(path, expected_length=9)
    with pytest.raises(CheckpointCorrupt, match="vectors"):
        io.read(path, nvectors=4)
    with pytest.raises(CheckpointCorrupt, match="ranks"):
        io.read(path, nranks=1)
    path.write_bytes(b"NOTACKPT" + path.read_bytes()[8:])
    with pytest.raises(CheckpointCorrupt, match="magic"):
        io.read(path)


def test_missing_file(tmp_path):
    assert not CheckpointFile.exists(tmp_path / "nothing.dat")
    with pytest.raises(CheckpointCorrupt, match="does not exist"):
        CheckpointFile().read(tmp_path / "nothing.dat")


def test_vectors_of_different_length_are_rejected(tmp_path):
    with pytest.raises(ValueError):
        CheckpointFile().write(tmp_path / "x.dat", 0, [np.zeros(3), np.zeros(4)])
