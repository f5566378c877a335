"""Pytest configuration and fixtures for the LDU solver tests."""

import numpy as np
import pytest

from LDU.registry import load_builtins
from LDU.problems import convection_diffusion_1d, laplacian_2d, tridiagonal

# Fill the selection tables before any threaded test touches them
load_builtins()


@pytest.fixture(params=[False, True], ids=["numpy", "numba"])
def use_numba(request):
    """Run a test with both kernel sets."""
    return request.param


@pytest.fixture
def tridiag5():
    """5 × 5 tridiagonal matrix: 2 on the diagonal, -1 off it."""
    return tridiagonal(5)


@pytest.fixture
def laplacian8():
    """Five-point Laplacian on an 8 × 8 grid."""
    return laplacian_2d(8)


@pytest.fixture
def convection32():
    """Asymmetric upwinded convection-diffusion matrix, 32 rows."""
    return convection_diffusion_1d(32, peclet=2.0)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
