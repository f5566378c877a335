"""Tests for the smoothers against dense reference sweeps."""

import numpy as np
import pytest

from LDU.datastructures import SolverControls
from LDU.problems import convection_diffusion_1d, laplacian_2d, tridiagonal
from LDU.registry import SMOOTHERS


def make(name, matrix, **controls):
    return SMOOTHERS.create(
        name, "x", matrix, SolverControls.from_dict(controls), symmetric=matrix.symmetric()
    )


def gauss_seidel_reference(dense, x, b, reverse=False):
    x = x.copy()
    order = range(len(x) - 1, -1, -1) if reverse else range(len(x))
    for i in order:
        x[i] = (b[i] - dense[i] @ x + dense[i, i] * x[i]) / dense[i, i]
    return x


class TestGaussSeidel:
    def test_forward_sweep(self, use_numba, rng):
        A = convection_diffusion_1d(8, 1.0, use_numba=use_numba)
        x = rng.standard_normal(8)
        b = rng.standard_normal(8)
        expected = gauss_seidel_reference(A.to_dense(), x, b)

        make("GaussSeidel", A).smooth(x, b, 1)

        assert np.allclose(x, expected)

    def test_symmetric_sweep(self, use_numba, rng):
        A = laplacian_2d(4, use_numba=use_numba)
        x = rng.standard_normal(16)
        b = rng.standard_normal(16)
        dense = A.to_dense()
        expected = gauss_seidel_reference(dense, gauss_seidel_reference(dense, x, b), b, reverse=True)

        make("symGaussSeidel", A).smooth(x, b, 1)

        assert np.allclose(x, expected)

    def test_source_is_not_modified(self, rng):
        A = laplacian_2d(4)
        b = rng.standard_normal(16)
        b_copy = b.copy()

        make("GaussSeidel", A).smooth(np.zeros(16), b, 3)

        assert np.array_equal(b, b_copy)


class TestOtherSmoothers:
    def test_jacobi_update(self, rng):
        A = tridiagonal(6, diag=3.0)
        x = rng.standard_normal(6)
        b = rng.standard_normal(6)
        expected = x + 0.5 * (b - A.to_dense() @ x) / 3.0

        make("Jacobi", A, omega=0.5).smooth(x, b, 1)

        assert np.allclose(x, expected)

    @pytest.mark.parametrize("name", ["DIC", "DILU"])
    def test_incomplete_factorisation_smoother_exact_for_tridiagonal(self, name, rng):
        A = tridiagonal(7)
        b = rng.standard_normal(7)
        x = np.zeros(7)

        make(name, A).smooth(x, b, 1)

        assert np.allclose(x, np.linalg.solve(A.to_dense(), b))

    @pytest.mark.parametrize(
        "name", ["GaussSeidel", "symGaussSeidel", "DIC", "DILU", "DICGaussSeidel", "Jacobi"]
    )
    def test_reduces_residual_symmetric(self, name, rng):
        A = laplacian_2d(6)
        b = rng.standard_normal(A.n_cells)
        x = np.zeros(A.n_cells)
        r0 = np.abs(A.residual(x, b)).sum()

        make(name, A).smooth(x, b, 10)

        assert np.abs(A.residual(x, b)).sum() < 0.5 * r0

    @pytest.mark.parametrize("name", ["GaussSeidel", "symGaussSeidel", "DILU"])
    def test_reduces_residual_asymmetric(self, name, rng):
        A = convection_diffusion_1d(16, 2.0)
        b = rng.standard_normal(A.n_cells)
        x = np.zeros(A.n_cells)
        r0 = np.abs(A.residual(x, b)).sum()

        make(name, A).smooth(x, b, 10)

        assert np.abs(A.residual(x, b)).sum() < 0.5 * r0
