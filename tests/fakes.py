"""Deterministic stand-ins for the FEM solver, the density filter, MMA and a multi-rank world."""

import threading

import numpy as np

from topopt_state.core.comm import Communicator
from topopt_state.optimization.interfaces import MMAState


class VolumeSolver:
    """fx = sum(xPhys), one volume constraint."""

    def __init__(self, on_solve=None):
        self.calls = 0
        self.on_solve = on_solve

    def solve(self, state):
        self.calls += 1
        if self.on_solve is not None:
            self.on_solve(self.calls)
        n = state.n
        fx = float(np.sum(state.xPhys))
        dfdx = np.ones(state.nloc)
        gx = [float(np.sum(state.xPhys)) / n - state.volfrac]
        dgdx = [np.full(state.nloc, 1.0 / n)]
        return fx, dfdx, gx, dgdx


class IdentityFilter:
    def apply(self, state):
        return state.x.copy(), None

    def chain(self, state):
        return state.dfdx.copy(), [g.copy() for g in state.dgdx]


class StepMMA:
    """Moves every variable by ``-step * sign(dfdx)`` inside [xmin, xmax]."""

    def __init__(self, n, m, x, history=None, step=0.02):
        self.n, self.m, self.step = n, m, step
        if history is None:
            self.xo1 = x.copy()
            self.xo2 = x.copy()
            self.U = x + 1.0
            self.L = x - 1.0
            self.iteration = 0
        else:
            self.xo1, self.xo2 = history.xo1.copy(), history.xo2.copy()
            self.U, self.L = history.U.copy(), history.L.copy()
            self.iteration = history.iteration

    def update(self, state):
        xnew = np.clip(state.x - self.step * np.sign(state.dfdx), state.xmin, state.xmax)
        self.xo2, self.xo1 = self.xo1, state.x.copy()
        self.iteration += 1
        self.U = xnew + 0.5 / self.iteration
        self.L = xnew - 0.25 / self.iteration
        return xnew

    def get_state(self):
        return MMAState(self.xo1.copy(), self.xo2.copy(), self.U.copy(), self.L.copy(), self.iteration)


def step_factory(step=0.02):
    def factory(n, m, x, history):
        return StepMMA(n, m, x, history, step=step)
    return factory


class ProjectionFilter:
    """No smoothing, smooth Heaviside projection of x at the current beta."""

    def apply(self, state):
        x, b, eta = state.x, state.beta, state.eta
        xPhys = (np.tanh(b * eta) + np.tanh(b * (x - eta))) / (np.tanh(b * eta) + np.tanh(b * (1.0 - eta)))
        return x.copy(), xPhys

    def chain(self, state):
        return state.dfdx.copy(), [g.copy() for g in state.dgdx]


class ThreadWorld:
    """Shared rendezvous for ThreadComm ranks running as threads of one process."""

    def __init__(self, size, timeout=10.0):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=timeout)
        self.slots = [None] * size


class ThreadComm(Communicator):
    """Communicator whose ranks are threads; every collective is a real rendezvous."""

    def __init__(self, world, rank):
        self.world = world
        self._rank = rank

    @property
    def rank(self):
        return self._rank

    @property
    def size(self):
        return self.world.size

    def _exchange(self, obj):
        self.world.slots[self._rank] = obj
        self.world.barrier.wait()
        values = list(self.world.slots)
        self.world.barrier.wait()
        return values

    def barrier(self):
        self.world.barrier.wait()

    def allreduce(self, value, op="sum"):
        values = self._exchange(value)
        if isinstance(value, np.ndarray):
            return {"sum": np.sum, "max": np.max, "min": np.min}[op](np.stack(values), axis=0)
        return {"sum": sum, "max": max, "min": min}[op](values)

    def gather(self, obj, root=0):
        values = self._exchange(obj)
        return values if self._rank == root else None

    def allgather(self, obj):
        return self._exchange(obj)

    def scatter(self, objs, root=0):
        return self._exchange(objs)[root][self._rank]

    def bcast(self, obj, root=0):
        return self._exchange(obj)[root]


def run_ranks(size, fn):
    """Run ``fn(comm)`` on ``size`` thread ranks; returns the per-rank results."""
    world = ThreadWorld(size)
    results = [None] * size
    errors = []

    def target(rank):
        try:
            results[rank] = fn(ThreadComm(world, rank))
        except Exception as exc:
            errors.append(exc)
            world.barrier.abort()

    threads = [threading.Thread(target=target, args=(r,)) for r in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    real = [e for e in errors if not isinstance(e, threading.BrokenBarrierError)]
    if real or errors:
        raise (real or errors)[0]
    return results
