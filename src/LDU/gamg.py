"""Geometric-agglomerated algebraic multigrid (GAMG) solver and preconditioner.

The hierarchy is built by agglomerating the rows of the finest matrix into
coarse cells level by level (see ``agglomeration``), optionally merging the
partitions of several ranks on coarse levels (see ``proc_agglomeration``).

Each iteration is a V-cycle:

1. restrict the finest residual to the first coarse level;
2. on every coarse level, optionally pre-smooth, restrict the remaining
   residual, recurse, prolong (optionally interpolating the injected
   correction) and scale the correction, post-smooth;
3. on the coarsest level, solve with a dense direct solver or an iterative
   solver;
4. add the scaled correction on the finest level and apply
   ``nFinestSweeps`` smoothing sweeps.

A hierarchy with a single level degrades to smoothing iterations.
"""

from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass

import numpy as np

from .agglomeration import CoarseLevel, agglomerate_cells, agglomerate_coefficients, face_weights
from .base import LduSolver, Preconditioner, safe_reciprocal
from .datastructures import VSMALL, SolverControls, SolverPerformance
from .matrix import LduMatrix
from .parallel import comm_size, g_sum, is_master
from .proc_agglomeration import ProcAgglomeration
from .registry import PRECONDITIONERS, PROC_AGGLOMERATORS, SMOOTHERS, SOLVERS

log = logging.getLogger(__name__)

MAX_LEVELS = 50

# Hierarchy topology per fine addressing
_HIERARCHY_CACHE: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


@dataclass
class GAMGHierarchy:
    """Topology of a multigrid hierarchy.

    ``levels[k]`` agglomerates the matrix of level k into level k+1;
    ``merges[k]`` is the processor agglomeration applied to level k+1, if
    any. ``n_levels`` is the depth seen by rank 0; ranks idle on the
    coarser levels hold fewer levels themselves.
    """
    levels: list[CoarseLevel]
    merges: list[ProcAgglomeration | None]
    n_levels: int

    def coarse_matrices(self, fine: LduMatrix) -> list[LduMatrix | None]:
        """Level matrices for new coefficients on the same topology."""
        matrices = [fine]
        for level, merge in zip(self.levels, self.merges):
            coarse = agglomerate_coefficients(matrices[-1], level)
            if merge is not None:
                coarse = merge.merge_matrix(coarse)
            matrices.append(coarse)
            if coarse is None:
                break
        return matrices


def build_hierarchy(fine: LduMatrix, controls: SolverControls):
    """Agglomerate ``fine`` down to the coarsest level.

    Collective over the communicator of ``fine``.

    Returns
    -------
    tuple
        (GAMGHierarchy, list of level matrices)

    """
    agglomerator = PROC_AGGLOMERATORS.create(controls.processor_agglomerator, controls)
    levels, merges, matrices = [], [], [fine]
    matrix = fine
    forward = True

    while matrix is not None and len(matrices) < MAX_LEVELS:
        n_fine = g_sum(matrix.n_cells, matrix.comm)
        if n_fine <= controls.n_cells_in_coarsest_level:
            break

        restrict, n_coarse = agglomerate_cells(
            matrix.addressing, face_weights(matrix), controls.merge_levels, matrix.kernels, forward
        )
        if g_sum(n_coarse, matrix.comm) > controls.max_coarse_ratio * n_fine:
            break

        level = CoarseLevel.build(matrix, restrict, n_coarse)
        coarse = agglomerate_coefficients(matrix, level)
        merge = None
        colour = agglomerator.level_colour(coarse)
        if colour is not None:
            merge = ProcAgglomeration.build(coarse, colour)
            coarse = merge.merge_matrix(coarse)

        levels.append(level)
        merges.append(merge)
        matrices.append(coarse)
        matrix = coarse
        forward = not forward

    if matrix is not None and levels and merges[-1] is None:
        colour = agglomerator.coarsest_colour(matrix)
        if colour is not None:
            merges[-1] = ProcAgglomeration.build(matrix, colour)
            matrices[-1] = merges[-1].merge_matrix(matrix)

    n_levels = len(matrices)
    if comm_size(fine.comm) > 1:
        n_levels = fine.comm.bcast(n_levels, root=0)

    if log.isEnabledFor(logging.DEBUG) and is_master(fine.comm):
        for k, m in enumerate(matrices):
            if m is not None:
                log.debug("GAMG level %d: %d rows, %d faces on rank 0", k, m.n_cells, m.addressing.n_faces)

    return GAMGHierarchy(levels, merges, n_levels), matrices


def _cache_key(controls: SolverControls):
    return (
        controls.merge_levels,
        controls.n_cells_in_coarsest_level,
        controls.max_coarse_ratio,
        controls.processor_agglomerator,
        controls.n_agglomerating_cells,
        controls.merge_factor,
    )


def get_hierarchy(fine: LduMatrix, controls: SolverControls):
    """Hierarchy of ``fine``, reusing the cached topology when allowed."""
    if not controls.cache_agglomeration:
        return build_hierarchy(fine, controls)

    cached = _HIERARCHY_CACHE.setdefault(fine.addressing, {})
    key = _cache_key(controls)
    hierarchy = cached.get(key)
    if hierarchy is not None:
        return hierarchy, hierarchy.coarse_matrices(fine)

    hierarchy, matrices = build_hierarchy(fine, controls)
    cached[key] = hierarchy
    return hierarchy, matrices


@SOLVERS.register("GAMG")
class GAMGSolver(LduSolver):
    """Algebraic multigrid solver with run-time selected smoother."""

    def __init__(self, field_name, matrix, controls):
        super().__init__(field_name, matrix, controls)
        self.hierarchy, self.matrices = get_hierarchy(matrix, controls)
        self.n_levels = self.hierarchy.n_levels
        self.coarsest_level = self.n_levels - 1

        self.smoothers = []
        self.rD = []
        for k, m in enumerate(self.matrices):
            if m is None or (k == self.coarsest_level and k > 0):
                self.smoothers.append(None)
                self.rD.append(None)
                continue
            self.smoothers.append(
                SMOOTHERS.create(controls.smoother, field_name, m, controls, symmetric=m.symmetric())
            )
            self.rD.append(safe_reciprocal(m.diag))

        self.coarsest_inverse = None
        self.coarsest_solver = None
        coarsest = self.matrices[-1]
        if self.n_levels > 1 and len(self.matrices) == self.n_levels and coarsest is not None:
            if controls.direct_solve_coarsest and comm_size(coarsest.comm) == 1:
                self.coarsest_inverse = np.linalg.pinv(coarsest.to_dense())
            else:
                coarsest_controls = controls.coarsest_controls(coarsest.symmetric())
                self.coarsest_solver = SOLVERS.create(
                    coarsest_controls.solver,
                    f"{field_name}Coarsest",
                    coarsest,
                    coarsest_controls,
                    symmetric=coarsest.symmetric(),
                )

    def _solve(self, psi, source) -> SolverPerformance:
        performance = self._new_performance()
        c = self.controls

        a_psi = self.matrix.multiply(psi)
        residual = source - a_psi
        norm_factor = self.norm_factor(psi, source, a_psi)
        performance.initial_residual = self.normalised_residual(residual, norm_factor)
        performance.final_residual = performance.initial_residual
        performance.residual_history.append(performance.final_residual)

        converged = performance.check_convergence(c.tolerance, c.rel_tol)
        if converged and c.min_iter == 0:
            return performance
        if self.has_zero_diagonal():
            performance.singular = True
            return performance

        while True:
            self.vcycle(psi, source, residual)
            self.check_finite(psi, "solution")
            self.matrix.residual(psi, source, out=residual)
            performance.final_residual = self.normalised_residual(residual, norm_factor)
            performance.residual_history.append(performance.final_residual)
            performance.n_iterations += 1
            self._log_iteration(performance)
            if not self.continue_iterating(performance):
                break

        return performance

    # ------------------------------------------------------------------
    # V-cycle
    # ------------------------------------------------------------------

    def vcycle(self, psi, source, residual):
        """One V-cycle on the finest level; ``residual`` is source - A psi."""
        if self.n_levels == 1:
            self.smoothers[0].smooth(psi, source, self.controls.n_finest_sweeps)
            return
        psi += self._coarse_correction(0, residual)
        self.smoothers[0].smooth(psi, source, self.controls.n_finest_sweeps)

    def _coarse_correction(self, k, residual):
        """Correction on level k from the levels below it."""
        coarse_source = self._restrict(k, residual)
        coarse_psi = None
        if coarse_source is not None:
            coarse_psi = self._level_solve(k + 1, coarse_source)
        correction = self._prolong(k, coarse_psi)

        # The level above the coarsest gets an accurate correction already
        if self.controls.scale_correction and (k == 0 or k + 1 < self.coarsest_level):
            self._scale(k, correction, residual)
        return correction

    def _level_solve(self, k, source):
        """Approximate solution of A_k psi = source from zero."""
        if k == self.coarsest_level:
            return self._solve_coarsest(source)

        c = self.controls
        matrix = self.matrices[k]
        psi = np.zeros_like(source)

        residual = source
        if c.n_pre_sweeps > 0:
            n_pre = min(c.n_pre_sweeps + c.pre_sweeps_level_multiplier * (k - 1), c.max_pre_sweeps)
            self.smoothers[k].smooth(psi, source, n_pre)
            residual = matrix.residual(psi, source)

        psi += self._coarse_correction(k, residual)

        n_post = min(c.n_post_sweeps + c.post_sweeps_level_multiplier * (k - 1), c.max_post_sweeps)
        if n_post > 0:
            self.smoothers[k].smooth(psi, source, n_post)
        return psi

    def _solve_coarsest(self, source):
        if self.coarsest_inverse is not None:
            return self.coarsest_inverse @ source
        psi = np.zeros_like(source)
        performance = self.coarsest_solver.solve(psi, source)
        log.debug(
            "GAMG coarsest: %s residual %g -> %g in %d iterations",
            performance.solver_name,
            performance.initial_residual,
            performance.final_residual,
            performance.n_iterations,
        )
        return psi

    def _restrict(self, k, residual):
        """Residual of level k summed into level k+1 (None on idle ranks)."""
        coarse = self.hierarchy.levels[k].restrict_field(residual)
        merge = self.hierarchy.merges[k]
        if merge is not None:
            coarse = merge.gather_field(coarse)
        return coarse

    def _prolong(self, k, coarse_psi):
        merge = self.hierarchy.merges[k]
        if merge is not None:
            coarse_psi = merge.scatter_field(coarse_psi)
        correction = self.hierarchy.levels[k].prolong_field(coarse_psi)
        if self.controls.interpolate_correction:
            self._interpolate(k, correction, coarse_psi)
        return correction

    def _interpolate(self, k, correction, coarse_psi):
        """Interpolate the injected correction from its neighbours.

        Each row takes the value that zeroes its row of ``A correction``
        given the injected neighbour values, then every agglomerate is shifted so that its diagonal-weighted mean is
        the coarse value again.
        """
        matrix = self.matrices[k]
        level = self.hierarchy.levels[k]
        off_diag = matrix.multiply(correction) - matrix.diag * correction
        correction[:] = -self.rD[k] * off_diag

        weights = level.restrict_field(matrix.diag)
        mean = level.restrict_field(matrix.diag * correction) * safe_reciprocal(weights)
        correction += level.prolong_field(coarse_psi - mean)

    def _scale(self, k, correction, residual):
        """Scale the correction by the steepest-descent factor and add a Jacobi step."""
        matrix = self.matrices[k]
        a_corr = matrix.multiply(correction)
        num, den = g_sum(
            np.array([np.dot(residual, correction), np.dot(a_corr, correction)]), matrix.comm
        )
        den = den + VSMALL if den >= 0 else den - VSMALL
        factor = num / den
        correction *= factor
        correction += self.rD[k] * (residual - factor * a_corr)


@PRECONDITIONERS.register("GAMG")
class GAMGPreconditioner(Preconditioner):
    """``nVcycles`` GAMG V-cycles from a zero initial guess."""

    def __init__(self, matrix, controls):
        super().__init__(matrix, controls)
        self.solver = GAMGSolver("preconditioner", matrix, controls)
        self._residual = np.empty(matrix.n_cells)

    def precondition(self, wA, rA):
        wA[:] = 0.0
        self._residual[:] = rA
        n_vcycles = max(self.controls.n_vcycles, 1)
        for cycle in range(n_vcycles):
            self.solver.vcycle(wA, rA, self._residual)
            if cycle + 1 < n_vcycles:
                self.matrix.residual(wA, rA, out=self._residual)
