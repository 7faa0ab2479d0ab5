import logging

import numpy as np
import pytest

from fakes import run_ranks, step_factory
from topopt_state.core.comm import SerialCommunicator
from topopt_state.core.errors import AllocationError, CheckpointCorrupt, RestartError
from topopt_state.core.mesh import build_mesh_pair
from topopt_state.core.state import StateContainer
from topopt_state.optimization.interfaces import MMAState
from topopt_state.preprocessing.classifier import RegionClassification
from topopt_state.restart.checkpoint_io import CheckpointFile
from topopt_state.restart.manager import RestartManager, RestartPhase, inspect_checkpoints


def _setup(config, enabled=False, on_incomplete="abort", comm=None, backend=None):
    config.restart.enabled = enabled
    config.restart.on_incomplete = on_incomplete
    mesh = build_mesh_pair(config.mesh, comm.rank, comm.size) if comm is not None else build_mesh_pair(config.mesh)
    classification = RegionClassification.from_indicators(mesh)
    container = StateContainer.allocate(mesh, classification, config, comm)
    return container, RestartManager(config.restart, mesh, comm, backend)


def _advance(container, mma, iterations=1):
    for _ in range(iterations):
        container.state.dfdx[:] = 1.0
        container.update_bounds()
        container.write_design(mma.update(container.state))
        container.accept_iterate()


def test_fresh_start_when_restart_disabled(small_config):
    container, manager = _setup(small_config)
    mma, itr = manager.initialize(container, step_factory())
    assert itr == 0
    assert manager.phase is RestartPhase.RUNNING
    assert manager.next_slot == 0
    with pytest.raises(RestartError):
        manager.initialize(container, step_factory())


def test_fresh_start_when_nothing_on_disk(small_config):
    container, manager = _setup(small_config, enabled=True)
    _, itr = manager.initialize(container, step_factory())
    assert itr == 0


def test_checkpoint_round_trip_is_bit_identical(small_config):
    container, manager = _setup(small_config)
    mma, _ = manager.initialize(container, step_factory())
    _advance(container, mma, 3)
    container.state.beta = 5.0
    manager.checkpoint(container, mma, 3)
    before_x = container.state.x.copy()
    before = mma.get_state()

    restored, manager2 = _setup(small_config, enabled=True)
    mma2, itr = manager2.initialize(restored, step_factory())
    after = mma2.get_state()
    assert itr == 3
    assert restored.state.iteration == 3
    assert restored.state.beta == 5.0
    np.testing.assert_array_equal(restored.state.x, before_x)
    np.testing.assert_array_equal(restored.state.xold, before_x)
    for a, b in zip(before.vectors(), after.vectors()):
        np.testing.assert_array_equal(a, b)
    assert after.iteration == 3
    # the slot just read is not overwritten by the next checkpoint
    assert manager2.next_slot == 1


def test_checkpoints_rotate_between_slots(small_config):
    container, manager = _setup(small_config)
    mma, _ = manager.initialize(container, step_factory())
    slots = [manager.checkpoint(container, mma, i) for i in (1, 2, 3)]
    assert slots == [0, 1, 0]
    io = CheckpointFile()
    assert io.read_header(manager.slot_path(0)).iteration == 3
    assert io.read_header(manager.slot_path(1)).iteration == 2
    assert io.read_header(manager.mma_path).iteration == 3


def test_torn_slot_write_falls_back_to_other_slot(small_config):
    container, manager = _setup(small_config)
    mma, _ = manager.initialize(container, step_factory())
    _advance(container, mma)
    manager.checkpoint(container, mma, 1)
    x1 = container.state.x.copy()
    # crash while writing slot 2 for iteration 2: partial file, MMA file untouched
    _advance(container, mma)
    CheckpointFile().write(manager.slot_path(1), 2, [container.state.x])
    data = manager.slot_path(1).read_bytes()
    manager.slot_path(1).write_bytes(data[: len(data) // 2])

    restored, manager2 = _setup(small_config, enabled=True)
    _, itr = manager2.initialize(restored, step_factory())
    assert itr == 1
    np.testing.assert_array_equal(restored.state.x, x1)
    statuses = {row["file"]: row["status"] for row in inspect_checkpoints(manager.directory)}
    assert statuses == {
        "restart_density_1.dat": "valid",
        "restart_density_2.dat": "corrupt",
        "restart_mma.dat": "valid",
    }


def test_crash_between_slot_and_mma_write(small_config):
    container, manager = _setup(small_config)
    mma, _ = manager.initialize(container, step_factory())
    _advance(container, mma)
    manager.checkpoint(container, mma, 1)
    x1 = container.state.x.copy()
    # slot for iteration 2 completed, MMA file still at iteration 1
    _advance(container, mma)
    CheckpointFile().write(manager.slot_path(1), 2, [container.state.x])

    restored, manager2 = _setup(small_config, enabled=True)
    _, itr = manager2.initialize(restored, step_factory())
    assert itr == 1
    np.testing.assert_array_equal(restored.state.x, x1)
    assert manager2.active_slot == 0


def test_only_mma_file_raises_restart_error(small_config):
    container, manager = _setup(small_config, enabled=True)
    n = container.mesh.n
    CheckpointFile().write(manager.mma_path, 4, [np.zeros(n)] * 4)
    with pytest.raises(RestartError, match="design checkpoint"):
        manager.initialize(container, step_factory())


def test_only_mma_file_with_fresh_fallback(small_config, caplog):
    container, manager = _setup(small_config, enabled=True, on_incomplete="fresh")
    n = container.mesh.n
    CheckpointFile().write(manager.mma_path, 4, [np.zeros(n)] * 4)
    with caplog.at_level(logging.WARNING, logger="topopt_state"):
        _, itr = manager.initialize(container, step_factory())
    assert itr == 0
    assert "starting from the initial design" in caplog.text
    np.testing.assert_array_equal(container.state.x, np.full(container.mesh.nloc, 0.5))


def test_only_design_slot_raises_restart_error(small_config):
    container, manager = _setup(small_config, enabled=True)
    CheckpointFile().write(manager.slot_path(0), 4, [container.state.x])
    with pytest.raises(RestartError, match="MMA state file missing"):
        manager.initialize(container, step_factory())


def test_different_rank_count_is_rejected(small_config):
    container, manager = _setup(small_config, enabled=True)
    n = container.mesh.n
    io = CheckpointFile()
    io.write(manager.slot_path(0), 2, [np.zeros(n)], nranks=2)
    io.write(manager.mma_path, 2, [np.zeros(n)] * 4, nranks=2)
    with pytest.raises(RestartError, match="2 ranks"):
        manager.initialize(container, step_factory())


def test_serial_communicator_round_trip(small_config):
    comm = SerialCommunicator()
    container, manager = _setup(small_config, comm=comm)
    mma, _ = manager.initialize(container, step_factory())
    _advance(container, mma, 2)
    manager.checkpoint(container, mma, 2)
    restored, manager2 = _setup(small_config, enabled=True, comm=comm)
    _, itr = manager2.initialize(restored, step_factory())
    assert itr == 2
    np.testing.assert_array_equal(restored.state.x, container.state.x)


def test_checkpoint_interval(small_config):
    small_config.restart.interval = 3
    _, manager = _setup(small_config)
    assert [i for i in range(1, 10) if manager.should_checkpoint(i)] == [3, 6, 9]
    small_config.restart.checkpoint = False
    assert not manager.should_checkpoint(3)


def test_wrong_mma_vector_length_raises_allocation_error(small_config):
    container, manager = _setup(small_config)
    manager.initialize(container, step_factory())

    class Broken:
        def get_state(self):
            v = np.zeros(3)
            return MMAState(v, v, v, v, 0)

    with pytest.raises(AllocationError, match="xo1"):
        manager.checkpoint(container, Broken(), 1)
    assert manager.phase is RestartPhase.RUNNING


def test_inspect_empty_directory(tmp_path):
    rows = inspect_checkpoints(tmp_path)
    assert [row["status"] for row in rows] == ["missing"] * 3


class _FailingAfter(CheckpointFile):
    """Reads succeed ``ok`` times, then the files appear corrupt."""

    def __init__(self, ok):
        super().__init__()
        self.ok = ok

    def read(self, path, *args, **kwargs):
        if self.ok == 0:
            raise CheckpointCorrupt(path, "file replaced while reading")
        self.ok -= 1
        return super().read(path, *args, **kwargs)


def _write_checkpoint(config):
    container, manager = _setup(config)
    mma, _ = manager.initialize(container, step_factory())
    _advance(container, mma, 2)
    manager.checkpoint(container, mma, 2)


def test_read_failure_while_restoring_raises_restart_error(small_config):
    _write_checkpoint(small_config)
    # two reads to plan the restore, the third one fails
    container, manager = _setup(small_config, enabled=True, backend=_FailingAfter(2))
    with pytest.raises(RestartError, match="while restoring"):
        manager.initialize(container, step_factory())


def test_read_failure_while_restoring_with_fresh_fallback(small_config):
    _write_checkpoint(small_config)
    container, manager = _setup(small_config, enabled=True, on_incomplete="fresh", backend=_FailingAfter(2))
    _, itr = manager.initialize(container, step_factory())
    assert itr == 0
    assert manager.phase is RestartPhase.RUNNING
    np.testing.assert_array_equal(container.state.x, np.full(16, 0.5))


def test_two_rank_checkpoint_round_trip(small_config):
    small_config.restart.on_incomplete = "abort"

    def write(comm):
        container, manager = _setup(small_config, comm=comm)
        mma, _ = manager.initialize(container, step_factory())
        _advance(container, mma, 2)
        container.state.beta = 3.0
        manager.checkpoint(container, mma, 2)
        return container.state.x.copy(), mma.get_state()

    def restore(comm):
        container, manager = _setup(small_config, enabled=True, comm=comm)
        mma, itr = manager.initialize(container, step_factory())
        return itr, container.state.x.copy(), container.state.beta, mma.get_state()

    written = run_ranks(2, write)
    header = CheckpointFile().read_header(small_config.restart.directory + "/restart_mma.dat")
    assert header.nranks == 2
    for (x, before), (itr, x2, beta, after) in zip(written, run_ranks(2, restore)):
        assert itr == 2 and beta == 3.0
        np.testing.assert_array_equal(x2, x)
        for a, b in zip(before.vectors(), after.vectors()):
            np.testing.assert_array_equal(a, b)


def test_shape_error_on_one_rank_fails_on_all(small_config):
    class Broken:
        def get_state(self):
            v = np.zeros(3)
            return MMAState(v, v, v, v, 0)

    def rank_main(comm):
        container, manager = _setup(small_config, comm=comm)
        mma, _ = manager.initialize(container, step_factory())
        try:
            manager.checkpoint(container, Broken() if comm.rank == 1 else mma, 1)
        except AllocationError as err:
            return str(err)
        return None

    messages = run_ranks(2, rank_main)
    assert "another rank" in messages[0]
    assert "xo1" in messages[1]
