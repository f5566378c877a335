"""Krylov, smooth and diagonal solvers.

All solvers share the same contract:

- the residual is the normalised L1 norm (see ``LduSolver.norm_factor``);
- iteration stops once converged or after ``max_iter`` iterations, but
  never before ``min_iter`` iterations;
- a vanishing inner product or pivot flags ``singular`` and stops before
  the solution is touched; non-convergence is only reported.
"""

from __future__ import annotations

import numpy as np

from .base import LduSolver
from .datastructures import GREAT, SolverPerformance
from .parallel import g_sum_prod, g_sum_sqr
from .registry import PRECONDITIONERS, SMOOTHERS, SOLVERS


class _KrylovSolver(LduSolver):
    """Krylov solver with a run-time selected preconditioner."""

    def __init__(self, field_name, matrix, controls):
        super().__init__(field_name, matrix, controls)
        self.preconditioner = PRECONDITIONERS.create(
            controls.preconditioner,
            matrix,
            controls.preconditioner_controls(),
            symmetric=matrix.symmetric(),
        )

    def _start(self, psi, source):
        """Initial residual; returns (performance, rA, norm_factor, wA)."""
        performance = self._new_performance()
        wA = self.matrix.multiply(psi)
        rA = source - wA
        norm_factor = self.norm_factor(psi, source, wA)
        performance.initial_residual = self.normalised_residual(rA, norm_factor)
        performance.final_residual = performance.initial_residual
        performance.residual_history.append(performance.final_residual)
        return performance, rA, norm_factor, wA

    def _needs_iterating(self, performance) -> bool:
        c = self.controls
        converged = performance.check_convergence(c.tolerance, c.rel_tol)
        return c.min_iter > 0 or not converged

    def _update_residual(self, performance, rA, norm_factor):
        performance.final_residual = self.normalised_residual(rA, norm_factor)
        performance.residual_history.append(performance.final_residual)
        performance.n_iterations += 1
        self._log_iteration(performance)


@SOLVERS.register("PCG", asymmetric=False)
class PCG(_KrylovSolver):
    """Preconditioned conjugate gradient for symmetric matrices."""

    def _solve(self, psi, source) -> SolverPerformance:
        performance, rA, norm_factor, wA = self._start(psi, source)
        self.type_name = f"{self.preconditioner.type_name}PCG"
        performance.solver_name = self.type_name

        if not self._needs_iterating(performance):
            return performance
        if self.has_zero_diagonal():
            performance.singular = True
            return performance

        pA = np.zeros_like(psi)
        wArA = GREAT

        while True:
            wArA_old = wArA
            self.preconditioner.precondition(wA, rA)
            wArA = g_sum_prod(wA, rA, self.comm)

            if performance.n_iterations == 0:
                pA[:] = wA
            else:
                beta = wArA / wArA_old
                if performance.check_singularity(wArA_old) or not np.isfinite(beta):
                    performance.singular = True
                    break
                pA *= beta
                pA += wA

            self.matrix.multiply(pA, out=wA)
            wApA = g_sum_prod(wA, pA, self.comm)
            if performance.check_singularity(abs(wApA) / norm_factor) or not np.isfinite(wArA):
                performance.singular = True
                break

            alpha = wArA / wApA
            psi += alpha * pA
            rA -= alpha * wA
            self.check_finite(psi, "solution")

            self._update_residual(performance, rA, norm_factor)
            if not self.continue_iterating(performance):
                break

        return performance


@SOLVERS.register("PBiCG", symmetric=False)
class PBiCG(_KrylovSolver):
    """Preconditioned bi-conjugate gradient for asymmetric matrices.

    Carries a shadow residual and search direction for the transpose system.
    """

    def _solve(self, psi, source) -> SolverPerformance:
        performance, rA, norm_factor, wA = self._start(psi, source)
        self.type_name = f"{self.preconditioner.type_name}PBiCG"
        performance.solver_name = self.type_name

        if not self._needs_iterating(performance):
            return performance
        if self.has_zero_diagonal():
            performance.singular = True
            return performance

        pA = np.zeros_like(psi)
        pT = np.zeros_like(psi)
        wT = np.zeros_like(psi)
        rT = rA.copy()
        wArT = GREAT

        while True:
            wArT_old = wArT
            self.preconditioner.precondition(wA, rA)
            self.preconditioner.precondition_t(wT, rT)
            wArT = g_sum_prod(wA, rT, self.comm)

            if performance.n_iterations == 0:
                pA[:] = wA
                pT[:] = wT
            else:
                if performance.check_singularity(wArT_old):
                    break
                beta = wArT / wArT_old
                pA *= beta
                pA += wA
                pT *= beta
                pT += wT

            self.matrix.multiply(pA, out=wA)
            self.matrix.tmultiply(pT, out=wT)
            wApT = g_sum_prod(wA, pT, self.comm)
            if performance.check_singularity(abs(wApT) / norm_factor) or not np.isfinite(wArT):
                performance.singular = True
                break

            alpha = wArT / wApT
            psi += alpha * pA
            rA -= alpha * wA
            rT -= alpha * wT
            self.check_finite(psi, "solution")

            self._update_residual(performance, rA, norm_factor)
            if not self.continue_iterating(performance):
                break

        return performance


@SOLVERS.register("PBiCGStab")
class PBiCGStab(_KrylovSolver):
    """Preconditioned bi-conjugate gradient stabilised.

    Works for symmetric and asymmetric matrices and avoids the transpose
    product of PBiCG.
    """

    def _solve(self, psi, source) -> SolverPerformance:
        performance, rA, norm_factor, yA = self._start(psi, source)
        self.type_name = f"{self.preconditioner.type_name}PBiCGStab"
        performance.solver_name = self.type_name
        c = self.controls

        if not self._needs_iterating(performance):
            return performance
        if self.has_zero_diagonal():
            performance.singular = True
            return performance

        pA = np.zeros_like(psi)
        AyA = np.zeros_like(psi)
        zA = np.zeros_like(psi)
        tA = np.zeros_like(psi)
        rA0 = rA.copy()
        rA0rA = 0.0
        alpha = 0.0
        omega = 0.0

        while True:
            rA0rA_old = rA0rA
            rA0rA = g_sum_prod(rA0, rA, self.comm)
            if performance.check_singularity(rA0rA):
                break

            if performance.n_iterations == 0:
                pA[:] = rA
            else:
                if performance.check_singularity(omega):
                    break
                beta = (rA0rA / rA0rA_old) * (alpha / omega)
                pA -= omega * AyA
                pA *= beta
                pA += rA

            self.preconditioner.precondition(yA, pA)
            self.matrix.multiply(yA, out=AyA)
            rA0AyA = g_sum_prod(rA0, AyA, self.comm)
            if performance.check_singularity(abs(rA0AyA) / norm_factor):
                break
            alpha = rA0rA / rA0AyA

            # sA is stored in rA
            rA -= alpha * AyA
            s_residual = self.normalised_residual(rA, norm_factor)
            if performance.n_iterations + 1 >= c.min_iter and (
                s_residual <= c.tolerance
                or (c.rel_tol > 0 and s_residual <= c.rel_tol * performance.initial_residual)
            ):
                psi += alpha * yA
                self.check_finite(psi, "solution")
                performance.final_residual = s_residual
                performance.residual_history.append(s_residual)
                performance.n_iterations += 1
                performance.check_convergence(c.tolerance, c.rel_tol)
                return performance

            self.preconditioner.precondition(zA, rA)
            self.matrix.multiply(zA, out=tA)
            tAtA = g_sum_sqr(tA, self.comm)
            if performance.check_singularity(tAtA / norm_factor**2):
                # s is the best available residual; take the half step
                psi += alpha * yA
                self.check_finite(psi, "solution")
                performance.final_residual = s_residual
                performance.residual_history.append(s_residual)
                performance.n_iterations += 1
                break
            omega = g_sum_prod(tA, rA, self.comm) / tAtA

            psi += alpha * yA + omega * zA
            rA -= omega * tA
            self.check_finite(psi, "solution")

            self._update_residual(performance, rA, norm_factor)
            if not self.continue_iterating(performance):
                break

        return performance


@SOLVERS.register("smoothSolver")
class SmoothSolver(LduSolver):
    """Iterative solver applying a run-time selected smoother.

    Each iteration applies ``nSweeps`` sweeps and counts as ``nSweeps``
    iterations.
    """

    def __init__(self, field_name, matrix, controls):
        super().__init__(field_name, matrix, controls)
        self.n_sweeps = max(controls.n_sweeps, 1)
        self.smoother = SMOOTHERS.create(
            controls.smoother, field_name, matrix, controls, symmetric=matrix.symmetric()
        )

    def _solve(self, psi, source) -> SolverPerformance:
        performance = self._new_performance()
        self.type_name = f"smoothSolver({self.controls.smoother})"
        performance.solver_name = self.type_name
        c = self.controls

        a_psi = self.matrix.multiply(psi)
        norm_factor = self.norm_factor(psi, source, a_psi)
        performance.initial_residual = self.normalised_residual(source - a_psi, norm_factor)
        performance.final_residual = performance.initial_residual
        performance.residual_history.append(performance.final_residual)

        converged = performance.check_convergence(c.tolerance, c.rel_tol)
        if converged and c.min_iter == 0:
            return performance
        if self.has_zero_diagonal():
            performance.singular = True
            return performance

        while True:
            self.smoother.smooth(psi, source, self.n_sweeps)
            self.check_finite(psi, "solution")
            residual = self.matrix.residual(psi, source)
            performance.final_residual = self.normalised_residual(residual, norm_factor)
            performance.residual_history.append(performance.final_residual)
            performance.n_iterations += self.n_sweeps
            self._log_iteration(performance)
            if not self.continue_iterating(performance):
                break

        return performance


@SOLVERS.register("diagonal")
class DiagonalSolver(LduSolver):
    """Exact solve of a diagonal matrix: psi = source / diag."""

    def _solve(self, psi, source) -> SolverPerformance:
        performance = self._new_performance()
        if self.has_zero_diagonal():
            performance.singular = True
            return performance
        np.divide(source, self.matrix.diag, out=psi)
        performance.converged = True
        return performance
