"""Tests for the Krylov, smooth and diagonal solvers.

Tests convergence and the shared iteration contract:
- 5 × 5 tridiagonal scenario and 2-D Laplacians against dense solutions
- Energy-norm monotonicity of PCG
- Zero source, minIter/maxIter, relTol
- Singular matrices and numerical corruption
"""

import numpy as np
import pytest

from LDU.errors import NumericalCorruptionError
from LDU.matrix import LduAddressing, LduMatrix
from LDU.problems import convection_diffusion_1d, laplacian_1d, laplacian_2d, tridiagonal
from LDU.registry import create, solve


def run(matrix, b, x0=None, **controls):
    x = np.zeros_like(b) if x0 is None else x0.copy()
    performance = solve(matrix, x, b, controls)
    return x, performance


class TestTridiagonalScenario:
    """A = tridiag(-1, 2, -1), b = [1, 0, 0, 0, 1] has solution ones."""

    def test_pcg_diagonal(self, tridiag5):
        b = np.array([1.0, 0.0, 0.0, 0.0, 1.0])

        x, performance = run(tridiag5, b, solver="PCG", preconditioner="diagonal", tolerance=1e-10)

        assert performance.converged
        assert not performance.singular
        assert performance.n_iterations <= 5
        assert performance.final_residual <= 1e-10
        assert np.allclose(x, 1.0)
        assert performance.solver_name == "diagonalPCG"

    @pytest.mark.parametrize("solver", ["PCG", "PBiCGStab"])
    @pytest.mark.parametrize("preconditioner", ["none", "diagonal", "DIC", "DILU"])
    def test_krylov_variants(self, tridiag5, solver, preconditioner):
        b = np.array([1.0, 0.0, 0.0, 0.0, 1.0])

        x, performance = run(tridiag5, b, solver=solver, preconditioner=preconditioner, tolerance=1e-12)

        assert performance.converged
        assert np.allclose(x, 1.0)


class TestConvergence:
    @pytest.mark.parametrize("preconditioner", ["none", "diagonal", "DIC"])
    def test_pcg_laplacian_2d(self, laplacian8, rng, preconditioner):
        b = rng.standard_normal(laplacian8.n_cells)

        x, performance = run(laplacian8, b, solver="PCG", preconditioner=preconditioner, tolerance=1e-12)

        assert performance.converged
        assert np.allclose(x, np.linalg.solve(laplacian8.to_dense(), b))
        assert len(performance.residual_history) == performance.n_iterations + 1

    def test_preconditioning_reduces_iterations(self, rng):
        A = laplacian_2d(16)
        b = rng.standard_normal(A.n_cells)

        _, plain = run(A, b, solver="PCG", tolerance=1e-8)
        _, dic = run(A, b, solver="PCG", preconditioner="DIC", tolerance=1e-8)

        assert dic.n_iterations < plain.n_iterations

    @pytest.mark.parametrize("solver", ["PBiCG", "PBiCGStab"])
    @pytest.mark.parametrize("preconditioner", ["none", "diagonal", "DILU"])
    def test_asymmetric(self, convection32, rng, solver, preconditioner):
        b = rng.standard_normal(convection32.n_cells)

        x, performance = run(
            convection32, b, solver=solver, preconditioner=preconditioner, tolerance=1e-10
        )

        assert performance.converged
        assert np.allclose(x, np.linalg.solve(convection32.to_dense(), b))

    def test_pbicgstab_symmetric(self, laplacian8, rng):
        b = rng.standard_normal(laplacian8.n_cells)

        x, performance = run(laplacian8, b, solver="PBiCGStab", preconditioner="DIC", tolerance=1e-12)

        assert performance.converged
        assert np.allclose(x, np.linalg.solve(laplacian8.to_dense(), b))

    @pytest.mark.parametrize("smoother", ["GaussSeidel", "symGaussSeidel", "DIC", "DICGaussSeidel"])
    def test_smooth_solver(self, smoother, rng):
        A = laplacian_1d(10)
        b = rng.standard_normal(10)

        x, performance = run(A, b, solver="smoothSolver", smoother=smoother, nSweeps=2, tolerance=1e-10)

        assert performance.converged
        assert performance.n_iterations % 2 == 0
        assert np.allclose(x, np.linalg.solve(A.to_dense(), b))

    def test_diagonal_solver(self):
        A = LduMatrix(LduAddressing(3, [], []), [1.0, 2.0, 4.0], [])
        b = np.array([1.0, 1.0, 1.0])

        x, performance = run(A, b, solver="diagonal")

        assert performance.converged
        assert np.allclose(x, [1.0, 0.5, 0.25])

    def test_numba_and_numpy_agree(self, rng):
        b = rng.standard_normal(36)

        x_numpy, _ = run(laplacian_2d(6, use_numba=False), b, preconditioner="DIC", tolerance=1e-10)
        x_numba, _ = run(laplacian_2d(6, use_numba=True), b, preconditioner="DIC", tolerance=1e-10)

        assert np.allclose(x_numpy, x_numba)


class TestIterationContract:
    def test_pcg_energy_norm_decreases(self, laplacian8, rng):
        b = rng.standard_normal(laplacian8.n_cells)
        dense = laplacian8.to_dense()
        x_exact = np.linalg.solve(dense, b)

        energies = []
        for k in range(1, 12):
            x, performance = run(laplacian8, b, preconditioner="diagonal", tolerance=0.0, maxIter=k)
            assert performance.n_iterations == k
            error = x_exact - x
            energies.append(error @ dense @ error)

        assert all(e1 <= e0 * (1 + 1e-12) for e0, e1 in zip(energies, energies[1:]))

    @pytest.mark.parametrize(
        "solver,build",
        [
            ("PCG", lambda: laplacian_2d(4)),
            ("PBiCG", lambda: convection_diffusion_1d(8)),
            ("PBiCGStab", lambda: convection_diffusion_1d(8)),
            ("smoothSolver", lambda: laplacian_2d(4)),
            ("GAMG", lambda: laplacian_2d(8)),
            ("diagonal", lambda: laplacian_2d(4)),
        ],
    )
    def test_zero_source_zero_guess(self, solver, build):
        A = build()
        b = np.zeros(A.n_cells)

        x, performance = run(A, b, solver=solver)

        assert performance.n_iterations == 0
        assert performance.converged
        assert np.array_equal(x, np.zeros(A.n_cells))

    def test_min_iter_enforced(self, laplacian8, rng):
        b = rng.standard_normal(laplacian8.n_cells)

        _, performance = run(laplacian8, b, tolerance=1.0, minIter=3)

        assert performance.n_iterations == 3
        assert performance.converged

    def test_max_iter_reports_non_convergence(self, laplacian8, rng):
        b = rng.standard_normal(laplacian8.n_cells)

        _, performance = run(laplacian8, b, tolerance=0.0, maxIter=4)

        assert performance.n_iterations == 4
        assert not performance.converged
        assert not performance.singular

    def test_rel_tol_stops_early(self, rng):
        A = laplacian_2d(12)
        b = rng.standard_normal(A.n_cells)

        _, performance = run(A, b, tolerance=0.0, relTol=0.1)

        assert performance.converged
        assert performance.final_residual <= 0.1 * performance.initial_residual
        assert performance.residual_history[-2] > 0.1 * performance.initial_residual

    def test_converged_initial_guess_returns_immediately(self, tridiag5):
        b = np.array([1.0, 0.0, 0.0, 0.0, 1.0])

        x, performance = run(tridiag5, b, x0=np.ones(5), solver="PCG")

        assert performance.n_iterations == 0
        assert performance.initial_residual == 0.0
        assert np.array_equal(x, np.ones(5))


class TestBreakdown:
    """An all-zero row makes the matrix singular."""

    @staticmethod
    def singular_matrix(asymmetric=False):
        lower = np.zeros(0) if asymmetric else None
        return LduMatrix(LduAddressing(3, [], []), [2.0, 0.0, 2.0], np.zeros(0), lower)

    @pytest.mark.parametrize("solver", ["PCG", "PBiCGStab", "smoothSolver", "GAMG", "diagonal"])
    def test_singular_flagged(self, solver):
        A = self.singular_matrix()

        x, performance = run(A, np.ones(3), solver=solver)

        assert performance.singular
        assert not performance.converged
        assert np.all(np.isfinite(x))

    def test_singular_flagged_pbicg(self):
        A = self.singular_matrix(asymmetric=True)

        x, performance = run(A, np.ones(3), solver="PBiCG")

        assert performance.singular
        assert np.all(np.isfinite(x))

    def test_corruption_raises(self, tridiag5):
        solver = create("PCG", tridiag5)

        with pytest.raises(NumericalCorruptionError, match="no longer finite"):
            solver.check_finite(np.array([1.0, np.nan]), "solution")

    def test_tridiagonal_without_faces_matches_diagonal(self):
        A = tridiagonal(1, diag=4.0)

        x, performance = run(A, np.array([2.0]), solver="PCG")

        assert performance.converged
        assert np.allclose(x, 0.5)
