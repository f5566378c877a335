"""Base classes for solvers, preconditioners and smoothers.

Provides shared bookkeeping (controls, residual normalisation, convergence
and breakdown checks). Subclasses override ``_solve``, ``precondition`` or
``smooth`` to implement specific methods.
"""

from __future__ import annotations

import logging

import numpy as np

from .datastructures import SMALL, SolverControls, SolverPerformance
from .errors import NumericalCorruptionError
from .parallel import g_average, g_max, g_sum, g_sum_mag

log = logging.getLogger(__name__)


class LduSolver:
    """Base class for all LDU solvers.

    Parameters
    ----------
    field_name : str
        Name of the solved field (for reporting)
    matrix : LduMatrix
        Borrowed matrix; the solver never owns or copies it
    controls : SolverControls
        Solver controls, read once here

    """

    type_name = ""

    def __init__(self, field_name: str, matrix, controls: SolverControls):
        self.field_name = field_name
        self.matrix = matrix
        self.controls = controls
        self.comm = matrix.comm

    def solve(self, psi: np.ndarray, source: np.ndarray) -> SolverPerformance:
        """Solve in place with the interface internal coefficients on the diagonal."""
        with self.matrix.interface_diagonal():
            return self._solve(psi, source)

    def _solve(self, psi: np.ndarray, source: np.ndarray) -> SolverPerformance:
        """Solve in place. Subclasses must override this."""
        raise NotImplementedError("Subclass must implement _solve()")

    # ============================================================================
    # Shared helpers
    # ============================================================================

    def _new_performance(self) -> SolverPerformance:
        return SolverPerformance(solver_name=self.type_name, field_name=self.field_name)

    def norm_factor(self, psi: np.ndarray, source: np.ndarray, a_psi: np.ndarray) -> float:
        """Normalisation factor of the L1 residual norm.

        Makes the residual independent of the scaling of the system and of
        the solution level.
        """
        tmp = self.matrix.sum_a() * g_average(psi, self.comm)
        return g_sum(float(np.sum(np.abs(a_psi - tmp) + np.abs(source - tmp))), self.comm) + SMALL

    def normalised_residual(self, residual: np.ndarray, norm_factor: float) -> float:
        return g_sum_mag(residual, self.comm) / norm_factor

    def continue_iterating(self, performance: SolverPerformance) -> bool:
        """Loop condition shared by the iterative solvers."""
        c = self.controls
        converged = performance.check_convergence(c.tolerance, c.rel_tol)
        if performance.n_iterations < c.min_iter:
            return True
        if performance.n_iterations >= c.max_iter:
            return False
        return not converged

    def has_zero_diagonal(self) -> bool:
        """True if any rank holds a zero pivot on the diagonal."""
        local = bool(np.any(self.matrix.diag == 0.0)) if self.matrix.n_cells else False
        return bool(g_max(int(local), self.comm))

    def check_finite(self, field: np.ndarray, what: str):
        """Raise if an update produced non-finite values on any rank."""
        local = int(not np.all(np.isfinite(field)))
        if g_sum(local, self.comm):
            raise NumericalCorruptionError(
                f"{self.type_name}: {what} of {self.field_name} is no longer finite"
            )

    def _log_iteration(self, performance: SolverPerformance):
        log.debug(
            "%s: %s iteration %d residual %g",
            self.type_name,
            self.field_name,
            performance.n_iterations,
            performance.final_residual,
        )


class Preconditioner:
    """Base class for preconditioners.

    ``precondition(wA, rA)`` writes an approximate solution of ``M wA = rA``
    for the preconditioner's implicit matrix M into ``wA``.
    """

    type_name = ""

    def __init__(self, matrix, controls: SolverControls):
        self.matrix = matrix
        self.controls = controls

    def precondition(self, wA: np.ndarray, rA: np.ndarray):
        raise NotImplementedError("Subclass must implement precondition()")

    def precondition_t(self, wT: np.ndarray, rT: np.ndarray):
        """Transpose preconditioning; symmetric preconditioners reuse precondition."""
        self.precondition(wT, rT)


class Smoother:
    """Base class for smoothers: ``smooth(psi, source, n_sweeps)`` in place."""

    type_name = ""

    def __init__(self, field_name: str, matrix, controls: SolverControls):
        self.field_name = field_name
        self.matrix = matrix
        self.controls = controls

    def smooth(self, psi: np.ndarray, source: np.ndarray, n_sweeps: int):
        raise NotImplementedError("Subclass must implement smooth()")


def safe_reciprocal(values: np.ndarray) -> np.ndarray:
    """1/values, with zero where values are zero."""
    result = np.zeros_like(values)
    np.divide(1.0, values, out=result, where=values != 0.0)
    return result
