"""Command-line interface utilities for solver experiments."""

from argparse import ArgumentParser
from typing import List


def create_parser(
    solvers: List[str],
    preconditioners: List[str],
    default_solver: str | None = None,
    description: str = "LDU linear solver",
) -> ArgumentParser:
    """Create argument parser for solver experiments.

    Parameters
    ----------
    solvers : List[str]
        Selectable solver names
    preconditioners : List[str]
        Selectable preconditioner names
    default_solver : str, optional
        Default solver (defaults to the first in the list)
    description : str
        Parser description

    Returns
    -------
    ArgumentParser
        Configured argument parser

    Examples
    --------
    >>> parser = create_parser(["PCG", "GAMG"], ["none", "DIC"])
    >>> options = parser.parse_args(["-N", "32", "--solver", "GAMG"])
    """
    if default_solver is None:
        default_solver = solvers[0]

    parser = ArgumentParser(description=description)

    # Problem size
    parser.add_argument(
        "-N",
        type=int,
        default=64,
        help="Number of cells along each of the 2 dimensions",
    )

    # Solver selection
    parser.add_argument(
        "--solver",
        choices=solvers,
        default=default_solver,
        help=f"The linear solver (default: {default_solver}).",
    )
    parser.add_argument(
        "--preconditioner",
        choices=preconditioners,
        default="none",
        help="Preconditioner of the Krylov solvers.",
    )
    parser.add_argument(
        "--smoother",
        default="GaussSeidel",
        help="Smoother of the smooth and GAMG solvers.",
    )

    # Iteration control
    parser.add_argument(
        "--max-iter",
        type=int,
        default=1000,
        help="Maximum number of iterations.",
    )
    parser.add_argument(
        "--tolerance",
        type=float,
        default=1e-8,
        help="Absolute tolerance of the normalised residual.",
    )
    parser.add_argument(
        "--rel-tol",
        type=float,
        default=0.0,
        help="Tolerance relative to the initial residual (0 disables).",
    )

    # Kernels
    parser.add_argument(
        "--no-numba",
        action="store_true",
        help="Use the numpy kernels instead of the numba-compiled ones.",
    )

    # Output file
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Output filename for the performance log (default: auto-generated)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every iteration.",
    )

    return parser
