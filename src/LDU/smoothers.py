"""Smoothers for the smooth solver and the multigrid levels."""

from __future__ import annotations

import numpy as np

from .base import Smoother, safe_reciprocal
from .preconditioners import DICPreconditioner, DILUPreconditioner
from .registry import SMOOTHERS


@SMOOTHERS.register("GaussSeidel")
class GaussSeidelSmoother(Smoother):
    """Forward Gauss-Seidel.

    Coupled rows use the neighbour values of the current iterate,
    exchanged once per sweep.
    """

    def __init__(self, field_name, matrix, controls):
        super().__init__(field_name, matrix, controls)
        # Interface coefficients enter the source with the opposite sign
        self.negated_boundary_coeffs = [-bc for bc in matrix.boundary_coeffs_list]

    def _b_prime(self, psi, source):
        b_prime = source.copy()
        pending = self.matrix.init_interfaces(psi)
        self.matrix.update_interfaces(pending, b_prime, self.negated_boundary_coeffs)
        return b_prime

    def _forward(self, psi, source):
        m = self.matrix
        m.kernels.gauss_seidel_forward(
            psi, self._b_prime(psi, source), m.diag, m.lower(), m.upper(),
            m.addressing.upper_addr, m.addressing.owner_start,
        )

    def _backward(self, psi, source):
        m = self.matrix
        m.kernels.gauss_seidel_backward(
            psi, self._b_prime(psi, source), m.diag, m.lower(), m.upper(),
            m.addressing.lower_addr, m.addressing.upper_addr, m.addressing.owner_start,
        )

    def smooth(self, psi, source, n_sweeps):
        for _ in range(n_sweeps):
            self._forward(psi, source)


@SMOOTHERS.register("symGaussSeidel")
class SymGaussSeidelSmoother(GaussSeidelSmoother):
    """Symmetric Gauss-Seidel: a forward then a backward sweep."""

    def smooth(self, psi, source, n_sweeps):
        for _ in range(n_sweeps):
            self._forward(psi, source)
            self._backward(psi, source)


@SMOOTHERS.register("DILU")
class DILUSmoother(Smoother):
    """Residual correction with the DILU preconditioner: psi += M^-1 (b - A psi)."""

    preconditioner_type = DILUPreconditioner

    def __init__(self, field_name, matrix, controls):
        super().__init__(field_name, matrix, controls)
        self.preconditioner = self.preconditioner_type(matrix, controls)
        self._rA = np.empty(matrix.n_cells)
        self._wA = np.empty(matrix.n_cells)

    def smooth(self, psi, source, n_sweeps):
        for _ in range(n_sweeps):
            self.matrix.residual(psi, source, out=self._rA)
            self.preconditioner.precondition(self._wA, self._rA)
            psi += self._wA


@SMOOTHERS.register("DIC", asymmetric=False)
class DICSmoother(DILUSmoother):
    """Residual correction with the DIC preconditioner."""

    preconditioner_type = DICPreconditioner


@SMOOTHERS.register("DICGaussSeidel", asymmetric=False)
class DICGaussSeidelSmoother(Smoother):
    """A DIC sweep followed by a Gauss-Seidel sweep."""

    def __init__(self, field_name, matrix, controls):
        super().__init__(field_name, matrix, controls)
        self.dic = DICSmoother(field_name, matrix, controls)
        self.gauss_seidel = GaussSeidelSmoother(field_name, matrix, controls)

    def smooth(self, psi, source, n_sweeps):
        self.dic.smooth(psi, source, n_sweeps)
        self.gauss_seidel.smooth(psi, source, n_sweeps)


@SMOOTHERS.register("Jacobi")
class JacobiSmoother(Smoother):
    """Weighted (damped) Jacobi.

    The update is

        psi <- psi + omega * (b - A psi) / D

    omega = 1 is the standard Jacobi method, omega < 1 damps it.
    """

    def __init__(self, field_name, matrix, controls):
        super().__init__(field_name, matrix, controls)
        self.omega = controls.omega
        self.rD = safe_reciprocal(matrix.diag)
        self._rA = np.empty(matrix.n_cells)

    def smooth(self, psi, source, n_sweeps):
        for _ in range(n_sweeps):
            self.matrix.residual(psi, source, out=self._rA)
            psi += self.omega * self.rD * self._rA
