"""Tests for the algebraic multigrid solver and preconditioner (single rank)."""

import numpy as np
import pytest

from LDU.gamg import GAMGSolver, get_hierarchy
from LDU.datastructures import SolverControls
from LDU.problems import convection_diffusion_1d, laplacian_1d, laplacian_2d
from LDU.registry import create, solve


def run(matrix, b, **controls):
    x = np.zeros_like(b)
    performance = solve(matrix, x, b, {"solver": "GAMG", **controls})
    return x, performance


@pytest.fixture
def laplacian16():
    return laplacian_2d(16)


class TestHierarchy:
    def test_level_sizes_strictly_decrease(self, laplacian16):
        solver = create("GAMG", laplacian16, {"cacheAgglomeration": False})
        sizes = [m.n_cells for m in solver.matrices]

        assert len(sizes) > 2
        assert all(coarse < fine for fine, coarse in zip(sizes, sizes[1:]))
        assert solver.n_levels == len(sizes)

    def test_coarsening_stops_at_coarsest_size(self, laplacian16):
        solver = create("GAMG", laplacian16, {"nCellsInCoarsestLevel": 20, "cacheAgglomeration": False})
        sizes = [m.n_cells for m in solver.matrices]

        assert all(n > 20 for n in sizes[:-1])
        assert sizes[-2] > 20

    def test_merge_levels_reduce_depth(self, laplacian16):
        one = create("GAMG", laplacian16, {"mergeLevels": 1, "cacheAgglomeration": False})
        two = create("GAMG", laplacian16, {"mergeLevels": 2, "cacheAgglomeration": False})

        assert two.n_levels < one.n_levels

    def test_small_matrix_has_single_level(self):
        solver = create("GAMG", laplacian_1d(8))

        assert solver.n_levels == 1

    def test_topology_cached_per_addressing(self, laplacian16):
        controls = SolverControls(solver="GAMG")
        first, _ = get_hierarchy(laplacian16, controls)
        second, _ = get_hierarchy(laplacian16, controls)
        uncached, _ = get_hierarchy(laplacian16, SolverControls(solver="GAMG", cache_agglomeration=False))

        assert first is second
        assert uncached is not first

    def test_cached_topology_gets_new_coefficients(self, laplacian16):
        controls = SolverControls(solver="GAMG")
        hierarchy, matrices = get_hierarchy(laplacian16, controls)
        added = hierarchy.levels[0].restrict_field(laplacian16.diag)
        laplacian16.diag *= 2.0
        _, rescaled = get_hierarchy(laplacian16, controls)

        assert np.allclose(rescaled[1].diag, matrices[1].diag + added)


class TestGAMGSolver:
    def test_converges_on_laplacian(self, laplacian16, rng):
        b = rng.standard_normal(laplacian16.n_cells)

        x, performance = run(laplacian16, b, tolerance=1e-10, maxIter=200)

        assert performance.converged
        assert performance.solver_name == "GAMG"
        assert np.allclose(x, np.linalg.solve(laplacian16.to_dense(), b), atol=1e-6)

    def test_fewer_iterations_than_smoothing_alone(self, laplacian16, rng):
        b = rng.standard_normal(laplacian16.n_cells)

        _, gamg = run(laplacian16, b, tolerance=1e-6)
        x = np.zeros_like(b)
        smooth = solve(laplacian16, x, b, {"solver": "smoothSolver", "tolerance": 1e-6, "nSweeps": 2})

        assert gamg.converged
        assert gamg.n_iterations * 2 < smooth.n_iterations

    @pytest.mark.parametrize(
        "controls",
        [
            {"smoother": "DIC"},
            {"smoother": "DICGaussSeidel"},
            {"smoother": "symGaussSeidel", "nPreSweeps": 2},
            {"scaleCorrection": False},
            {"interpolateCorrection": True},
            {"directSolveCoarsest": True},
            {"coarsestLevelCorr": {"solver": "PBiCGStab", "preconditioner": "diagonal"}},
            {"mergeLevels": 2},
        ],
    )
    def test_variants_converge(self, laplacian16, rng, controls):
        b = rng.standard_normal(laplacian16.n_cells)

        x, performance = run(laplacian16, b, tolerance=1e-8, maxIter=300, **controls)

        assert performance.converged
        assert np.allclose(x, np.linalg.solve(laplacian16.to_dense(), b), atol=1e-5)

    def test_interpolated_correction_keeps_agglomerate_means(self, laplacian16, rng):
        solver = create("GAMG", laplacian16, {"interpolateCorrection": True})
        level = solver.hierarchy.levels[0]
        coarse = rng.standard_normal(level.n_coarse)

        correction = solver._prolong(0, coarse)

        weights = level.restrict_field(laplacian16.diag)
        assert np.allclose(level.restrict_field(laplacian16.diag * correction) / weights, coarse)
        assert not np.allclose(correction, level.prolong_field(coarse))

    def test_injection_by_default(self, laplacian16, rng):
        solver = create("GAMG", laplacian16)
        level = solver.hierarchy.levels[0]
        coarse = rng.standard_normal(level.n_coarse)

        assert np.array_equal(solver._prolong(0, coarse), level.prolong_field(coarse))

    def test_direct_coarsest_uses_dense_inverse(self, laplacian16):
        solver = create("GAMG", laplacian16, {"directSolveCoarsest": True})

        assert solver.coarsest_inverse is not None
        assert solver.coarsest_solver is None

    def test_single_level_degrades_to_smoothing(self, rng):
        A = laplacian_1d(8)
        b = rng.standard_normal(8)

        x, performance = run(A, b, tolerance=1e-8, smoother="symGaussSeidel")

        assert performance.converged
        assert np.allclose(x, np.linalg.solve(A.to_dense(), b), atol=1e-6)

    def test_asymmetric(self, rng):
        A = convection_diffusion_1d(64, 1.0)
        b = rng.standard_normal(64)

        x, performance = run(A, b, tolerance=1e-10, maxIter=300)

        assert performance.converged
        assert isinstance(create("GAMG", A), GAMGSolver)
        assert create("GAMG", A).coarsest_solver.type_name.endswith("PBiCGStab")
        assert np.allclose(x, np.linalg.solve(A.to_dense(), b), atol=1e-6)


class TestGAMGPreconditioner:
    def test_pcg_with_gamg_preconditioner(self, laplacian16, rng):
        b = rng.standard_normal(laplacian16.n_cells)
        x = np.zeros_like(b)

        performance = solve(
            laplacian16,
            x,
            b,
            {"solver": "PCG", "tolerance": 1e-8, "preconditioner": {"preconditioner": "GAMG", "nVcycles": 2, "smoother": "DIC"}},
        )
        assert performance.converged
        assert performance.solver_name == "GAMGPCG"
        assert np.allclose(x, np.linalg.solve(laplacian16.to_dense(), b), atol=1e-5)

    def test_pbicgstab_with_gamg_preconditioner(self, rng):
        A = convection_diffusion_1d(64, 1.0)
        b = rng.standard_normal(64)
        x = np.zeros_like(b)

        performance = solve(A, x, b, {"solver": "PBiCGStab", "preconditioner": "GAMG", "tolerance": 1e-10})

        assert performance.converged
        assert np.allclose(x, np.linalg.solve(A.to_dense(), b), atol=1e-6)
