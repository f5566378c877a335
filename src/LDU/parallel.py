"""Global reductions over the ranks sharing a matrix.

Every reduction is collective: all ranks of ``comm`` must call it in the
same order. Single-rank communicators short-circuit the MPI call.
"""

from __future__ import annotations

import numpy as np
from mpi4py import MPI


def _allreduce(value, comm, op):
    if comm is None or comm.Get_size() == 1:
        return value
    return comm.allreduce(value, op=op)


def g_sum(value, comm):
    """Global sum of a local scalar (or of a small array, elementwise)."""
    return _allreduce(value, comm, MPI.SUM)


def g_max(value, comm):
    """Global maximum of a local scalar."""
    return _allreduce(value, comm, MPI.MAX)


def g_sum_mag(field: np.ndarray, comm) -> float:
    """Global sum of |field|."""
    return g_sum(float(np.sum(np.abs(field))), comm)


def g_sum_prod(a: np.ndarray, b: np.ndarray, comm) -> float:
    """Global inner product a·b."""
    return g_sum(float(np.dot(a, b)), comm)


def g_sum_sqr(field: np.ndarray, comm) -> float:
    """Global sum of squares."""
    return g_sum(float(np.dot(field, field)), comm)


def g_average(field: np.ndarray, comm) -> float:
    """Global mean over all cells of all ranks."""
    total, count = g_sum(np.array([np.sum(field), field.size], dtype=np.float64), comm)
    if count == 0:
        return 0.0
    return float(total / count)


def comm_rank(comm) -> int:
    return 0 if comm is None else comm.Get_rank()


def comm_size(comm) -> int:
    return 1 if comm is None else comm.Get_size()


def is_master(comm) -> bool:
    """True on the rank that reports (rank 0 of ``comm``)."""
    return comm_rank(comm) == 0
