"""Distributed sparse linear-system solvers on LDU matrices."""

from .datastructures import SolverControls, SolverPerformance
from .errors import ConfigurationError, NumericalCorruptionError
from .interfaces import LduInterface, ProcessorInterface
from .matrix import LduAddressing, LduMatrix
from .base import LduSolver, Preconditioner, Smoother
from .registry import PRECONDITIONERS, PROC_AGGLOMERATORS, SMOOTHERS, SOLVERS, Registry, create, solve
from .kernels import select_kernels
from .problems import (
    convection_diffusion_1d,
    decompose,
    laplacian_1d,
    laplacian_2d,
    reconstruct_field,
    slice_partition,
    tridiagonal,
)

__all__ = [
    "SolverControls",
    "SolverPerformance",
    "ConfigurationError",
    "NumericalCorruptionError",
    "LduInterface",
    "ProcessorInterface",
    "LduAddressing",
    "LduMatrix",
    "LduSolver",
    "Preconditioner",
    "Smoother",
    "Registry",
    "SOLVERS",
    "PRECONDITIONERS",
    "SMOOTHERS",
    "PROC_AGGLOMERATORS",
    "create",
    "solve",
    "select_kernels",
    "tridiagonal",
    "laplacian_1d",
    "laplacian_2d",
    "convection_diffusion_1d",
    "slice_partition",
    "decompose",
    "reconstruct_field",
]
