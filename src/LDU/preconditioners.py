"""Preconditioners acting on the local matrix partition.

The incomplete-factorisation preconditioners sweep the rows of this rank
in face order; coupled interfaces are ignored (see ``distributed`` for the
variants that precondition across them).
"""

from __future__ import annotations

import numpy as np

from .base import Preconditioner, safe_reciprocal
from .registry import PRECONDITIONERS


@PRECONDITIONERS.register("none")
class NoPreconditioner(Preconditioner):
    """Identity: wA = rA."""

    def precondition(self, wA, rA):
        wA[:] = rA


@PRECONDITIONERS.register("diagonal")
class DiagonalPreconditioner(Preconditioner):
    """Jacobi preconditioner: wA = rA / diag."""

    def __init__(self, matrix, controls):
        super().__init__(matrix, controls)
        self.rD = safe_reciprocal(matrix.diag)

    def precondition(self, wA, rA):
        np.multiply(self.rD, rA, out=wA)


@PRECONDITIONERS.register("DILU")
class DILUPreconditioner(Preconditioner):
    """Diagonal incomplete LU preconditioner.

    The factorisation keeps the sparsity of A: only the diagonal is
    modified, so the factors are ``(D* + L) D*^-1 (D* + U)`` with the
    reciprocal pivots ``rD = 1/D*`` stored.
    """

    def __init__(self, matrix, controls):
        super().__init__(matrix, controls)
        self.kernels = matrix.kernels
        self.rD = self.calc_reciprocal_d(matrix)

    @staticmethod
    def calc_pivots(matrix) -> np.ndarray:
        """Pivots of the incomplete factorisation (not inverted)."""
        rD = matrix.diag.copy()
        matrix.kernels.ilu_pivots(
            rD,
            matrix.addressing.lower_addr,
            matrix.addressing.upper_addr,
            matrix.lower(),
            matrix.upper(),
        )
        return rD

    @classmethod
    def calc_reciprocal_d(cls, matrix) -> np.ndarray:
        return safe_reciprocal(cls.calc_pivots(matrix))

    def precondition(self, wA, rA):
        m = self.matrix
        l, u = m.addressing.lower_addr, m.addressing.upper_addr
        np.multiply(self.rD, rA, out=wA)
        self.kernels.ilu_forward(wA, self.rD, l, u, m.lower())
        self.kernels.ilu_backward(wA, self.rD, l, u, m.upper())

    def precondition_t(self, wT, rT):
        m = self.matrix
        l, u = m.addressing.lower_addr, m.addressing.upper_addr
        np.multiply(self.rD, rT, out=wT)
        self.kernels.ilu_forward(wT, self.rD, l, u, m.upper())
        self.kernels.ilu_backward(wT, self.rD, l, u, m.lower())


@PRECONDITIONERS.register("DIC", asymmetric=False)
class DICPreconditioner(DILUPreconditioner):
    """Diagonal incomplete Cholesky preconditioner (symmetric matrices)."""

    def precondition_t(self, wT, rT):
        self.precondition(wT, rT)
