"""Computational kernels for the LDU solvers.

This module contains the inner loops used by the matrix, preconditioners,
smoothers and the agglomeration. They are pure functions on numpy arrays
with no class dependencies, so each one is also compiled with numba.

The sweeps (incomplete factorisation, Gauss-Seidel, pair agglomeration)
have a true sequential dependency between rows and are written as explicit
loops. Faces must be in upper-triangular order (sorted by lower address).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from numba import njit


def amul_numpy(out, x, diag, lower, upper, l, u):
    """out = A x for the internal faces (vectorised numpy)."""
    n = x.shape[0]
    np.multiply(diag, x, out=out)
    out += np.bincount(u, weights=lower * x[l], minlength=n)
    out += np.bincount(l, weights=upper * x[u], minlength=n)


def amul_loop(out, x, diag, lower, upper, l, u):
    """out = A x for the internal faces (explicit loops)."""
    for c in range(x.shape[0]):
        out[c] = diag[c] * x[c]
    for f in range(l.shape[0]):
        out[u[f]] += lower[f] * x[l[f]]
        out[l[f]] += upper[f] * x[u[f]]


def ilu_pivots(rD, l, u, lower, upper):
    """Incomplete LDU pivots, in place (not inverted).

    rD must hold the diagonal on entry. With ``lower is upper`` this is the
    incomplete Cholesky (DIC) factorisation.
    """
    for f in range(l.shape[0]):
        rD[u[f]] -= upper[f] * lower[f] / rD[l[f]]


def ilu_forward(wA, rD, l, u, lower):
    """Forward substitution; wA must hold rD*rA on entry."""
    for f in range(l.shape[0]):
        wA[u[f]] -= rD[u[f]] * lower[f] * wA[l[f]]


def ilu_backward(wA, rD, l, u, upper):
    """Backward substitution following :func:`ilu_forward`."""
    for f in range(l.shape[0] - 1, -1, -1):
        wA[l[f]] -= rD[l[f]] * upper[f] * wA[u[f]]


def gauss_seidel_forward(psi, b_prime, diag, lower, upper, u, owner_start):
    """One forward Gauss-Seidel sweep; b_prime is consumed."""
    for c in range(psi.shape[0]):
        psii = b_prime[c]
        for f in range(owner_start[c], owner_start[c + 1]):
            psii -= upper[f] * psi[u[f]]
        psii /= diag[c]
        for f in range(owner_start[c], owner_start[c + 1]):
            b_prime[u[f]] -= lower[f] * psii
        psi[c] = psii


def gauss_seidel_backward(psi, b_prime, diag, lower, upper, l, u, owner_start):
    """One backward Gauss-Seidel sweep; b_prime is consumed."""
    for f in range(l.shape[0]):
        b_prime[u[f]] -= lower[f] * psi[l[f]]
    for c in range(psi.shape[0] - 1, -1, -1):
        psii = b_prime[c]
        for f in range(owner_start[c], owner_start[c + 1]):
            psii -= upper[f] * psi[u[f]]
        psi[c] = psii / diag[c]


def pair_agglomerate(coarse, l, u, owner_start, losort, losort_start, weights, forward):
    """Pair each cell with its strongest unagglomerated neighbour.

    Cells with no free neighbour join the cluster of their strongest
    neighbour, or stay alone when they have no neighbours at all.

    Parameters
    ----------
    coarse : np.ndarray
        Output fine → coarse cell map (int64, overwritten)
    l, u : np.ndarray
        Face lower/upper addressing
    owner_start, losort, losort_start : np.ndarray
        Cell → face lookup tables of the addressing
    weights : np.ndarray
        Non-negative face weights
    forward : bool
        Visit cells in increasing (True) or decreasing order

    Returns
    -------
    int
        Number of coarse cells

    """
    n_cells = coarse.shape[0]
    for c in range(n_cells):
        coarse[c] = -1

    n_coarse = 0
    for k in range(n_cells):
        c = k if forward else n_cells - 1 - k
        if coarse[c] >= 0:
            continue

        # Strongest free neighbour
        match = -1
        max_weight = -1.0
        for f in range(owner_start[c], owner_start[c + 1]):
            nb = u[f]
            if coarse[nb] < 0 and weights[f] > max_weight:
                match = nb
                max_weight = weights[f]
        for i in range(losort_start[c], losort_start[c + 1]):
            f = losort[i]
            nb = l[f]
            if coarse[nb] < 0 and weights[f] > max_weight:
                match = nb
                max_weight = weights[f]

        if match >= 0:
            coarse[c] = n_coarse
            coarse[match] = n_coarse
            n_coarse += 1
            continue

        # Strongest neighbouring cluster
        cluster = -1
        max_weight = -1.0
        for f in range(owner_start[c], owner_start[c + 1]):
            if weights[f] > max_weight:
                cluster = coarse[u[f]]
                max_weight = weights[f]
        for i in range(losort_start[c], losort_start[c + 1]):
            f = losort[i]
            if weights[f] > max_weight:
                cluster = coarse[l[f]]
                max_weight = weights[f]

        if cluster >= 0:
            coarse[c] = cluster
        else:
            coarse[c] = n_coarse
            n_coarse += 1

    return n_coarse


# numba-compiled versions of the loop kernels
amul_numba = njit(amul_loop, cache=True)
ilu_pivots_numba = njit(ilu_pivots, cache=True)
ilu_forward_numba = njit(ilu_forward, cache=True)
ilu_backward_numba = njit(ilu_backward, cache=True)
gauss_seidel_forward_numba = njit(gauss_seidel_forward, cache=True)
gauss_seidel_backward_numba = njit(gauss_seidel_backward, cache=True)
pair_agglomerate_numba = njit(pair_agglomerate, cache=True)


@dataclass(frozen=True)
class KernelSet:
    """The kernels used by one matrix."""
    amul: Callable
    ilu_pivots: Callable
    ilu_forward: Callable
    ilu_backward: Callable
    gauss_seidel_forward: Callable
    gauss_seidel_backward: Callable
    pair_agglomerate: Callable


NUMPY_KERNELS = KernelSet(
    amul=amul_numpy,
    ilu_pivots=ilu_pivots,
    ilu_forward=ilu_forward,
    ilu_backward=ilu_backward,
    gauss_seidel_forward=gauss_seidel_forward,
    gauss_seidel_backward=gauss_seidel_backward,
    pair_agglomerate=pair_agglomerate,
)

NUMBA_KERNELS = KernelSet(
    amul=amul_numba,
    ilu_pivots=ilu_pivots_numba,
    ilu_forward=ilu_forward_numba,
    ilu_backward=ilu_backward_numba,
    gauss_seidel_forward=gauss_seidel_forward_numba,
    gauss_seidel_backward=gauss_seidel_backward_numba,
    pair_agglomerate=pair_agglomerate_numba,
)


def select_kernels(use_numba: bool) -> KernelSet:
    """Numba-compiled kernels, or the plain python/numpy ones."""
    return NUMBA_KERNELS if use_numba else NUMPY_KERNELS
