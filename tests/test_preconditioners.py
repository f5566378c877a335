"""Tests for the single-rank preconditioners.

Incomplete factorisations of a tridiagonal matrix have no dropped fill-in,
so DIC/DILU must invert such matrices exactly.
"""

import numpy as np
import pytest

from LDU.datastructures import SolverControls
from LDU.errors import ConfigurationError
from LDU.problems import convection_diffusion_1d, laplacian_2d, tridiagonal
from LDU.registry import PRECONDITIONERS


def make(name, matrix, **controls):
    return PRECONDITIONERS.create(
        name, matrix, SolverControls.from_dict(controls), symmetric=matrix.symmetric()
    )


class TestSimplePreconditioners:
    def test_none_copies(self, rng):
        A = tridiagonal(6)
        rA = rng.standard_normal(6)
        wA = np.empty(6)

        make("none", A).precondition(wA, rA)

        assert np.array_equal(wA, rA)

    def test_diagonal_divides_by_diagonal(self, rng):
        A = tridiagonal(6, diag=4.0)
        rA = rng.standard_normal(6)
        wA = np.empty(6)

        make("diagonal", A).precondition(wA, rA)

        assert np.allclose(wA, rA / 4.0)


class TestIncompleteFactorisation:
    def test_dic_exact_for_tridiagonal(self, use_numba, rng):
        A = tridiagonal(10, use_numba=use_numba)
        x = rng.standard_normal(10)
        wA = np.empty(10)

        make("DIC", A).precondition(wA, A.multiply(x))

        assert np.allclose(wA, x)

    def test_dilu_exact_for_asymmetric_tridiagonal(self, use_numba, rng):
        A = convection_diffusion_1d(10, peclet=3.0, use_numba=use_numba)
        x = rng.standard_normal(10)
        wA = np.empty(10)

        make("DILU", A).precondition(wA, A.multiply(x))

        assert np.allclose(wA, x)

    def test_dilu_transpose_inverts_transpose(self, rng):
        A = convection_diffusion_1d(10, peclet=3.0)
        x = rng.standard_normal(10)
        wT = np.empty(10)

        make("DILU", A).precondition_t(wT, A.tmultiply(x))

        assert np.allclose(wT, x)

    def test_dic_is_positive_definite_on_laplacian(self, rng):
        A = laplacian_2d(6)
        preconditioner = make("DIC", A)
        wA = np.empty(A.n_cells)

        for _ in range(5):
            rA = rng.standard_normal(A.n_cells)
            preconditioner.precondition(wA, rA)
            assert wA @ rA > 0.0

    def test_dilu_equals_dic_for_symmetric_matrix(self, rng):
        A = laplacian_2d(5)
        rA = rng.standard_normal(A.n_cells)
        w_dic, w_dilu = np.empty(A.n_cells), np.empty(A.n_cells)

        make("DIC", A).precondition(w_dic, rA)
        make("DILU", A).precondition(w_dilu, rA)

        assert np.allclose(w_dic, w_dilu)

    def test_numba_and_numpy_kernels_agree(self, rng):
        rA = rng.standard_normal(36)
        w_numpy, w_numba = np.empty(36), np.empty(36)

        make("DIC", laplacian_2d(6, use_numba=False)).precondition(w_numpy, rA)
        make("DIC", laplacian_2d(6, use_numba=True)).precondition(w_numba, rA)

        assert np.allclose(w_numpy, w_numba)

    def test_dic_not_available_for_asymmetric_matrix(self):
        with pytest.raises(ConfigurationError, match="asymmetric preconditioner 'DIC'"):
            make("DIC", convection_diffusion_1d(5))
