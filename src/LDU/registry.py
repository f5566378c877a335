"""Run-time selection of solvers, preconditioners and smoothers by name.

Implementations register themselves with a decorator when their module is
imported:

```python
@SOLVERS.register("PCG", asymmetric=False)
class PCG(LduSolver):
    ...
```

The built-in modules are imported once, before the first lookup, so the
tables are complete before any ``create`` call and read-only afterwards.
Unknown names are configuration errors that list the valid names.
"""

from __future__ import annotations

import importlib
import logging
import time
from typing import Any, Callable

import numpy as np

from .datastructures import SolverControls, SolverPerformance
from .errors import ConfigurationError
from .parallel import is_master

log = logging.getLogger(__name__)

_BUILTIN_MODULES = (
    "LDU.preconditioners",
    "LDU.distributed",
    "LDU.smoothers",
    "LDU.solvers",
    "LDU.proc_agglomeration",
    "LDU.gamg",
)
_builtins_loaded = False


def load_builtins():
    """Import the built-in implementations (once)."""
    global _builtins_loaded
    if _builtins_loaded:
        return
    for module in _BUILTIN_MODULES:
        importlib.import_module(module)
    _builtins_loaded = True


class Registry:
    """Name → factory table for one kind of run-time selectable object.

    Parameters
    ----------
    kind : str
        What the table holds, used in error messages (e.g. "solver")

    """

    def __init__(self, kind: str):
        self.kind = kind
        self._entries: dict[str, tuple[Callable, bool, bool]] = {}

    def register(self, name: str, symmetric: bool = True, asymmetric: bool = True):
        """Class/function decorator adding a factory under ``name``."""

        def decorator(factory):
            self.add(name, factory, symmetric=symmetric, asymmetric=asymmetric)
            return factory

        return decorator

    def add(self, name: str, factory: Callable, symmetric: bool = True, asymmetric: bool = True):
        if name in self._entries and self._entries[name][0] is not factory:
            raise ConfigurationError(f"Duplicate {self.kind} '{name}'")
        self._entries[name] = (factory, symmetric, asymmetric)
        if isinstance(factory, type) and "type_name" not in vars(factory):
            factory.type_name = name

    def names(self, symmetric: bool | None = None) -> list[str]:
        """Registered names, optionally only those valid for a matrix type."""
        load_builtins()
        if symmetric is None:
            return sorted(self._entries)
        index = 1 if symmetric else 2
        return sorted(name for name, entry in self._entries.items() if entry[index])

    def lookup(self, name: str, symmetric: bool | None = None) -> Callable:
        """Factory registered under ``name``.

        Raises
        ------
        ConfigurationError
            If no factory of that name exists for the matrix type
        """
        valid = self.names(symmetric)
        if name not in valid:
            matrix_type = ""
            if symmetric is not None:
                matrix_type = " symmetric" if symmetric else " asymmetric"
            raise ConfigurationError(
                f"Unknown{matrix_type} {self.kind} '{name}'. "
                f"Valid {self.kind}s: {valid}"
            )
        return self._entries[name][0]

    def create(self, name: str, *args, symmetric: bool | None = None, **kwargs) -> Any:
        return self.lookup(name, symmetric)(*args, **kwargs)

    def __contains__(self, name: str) -> bool:
        load_builtins()
        return name in self._entries


SOLVERS = Registry("solver")
PRECONDITIONERS = Registry("preconditioner")
SMOOTHERS = Registry("smoother")
PROC_AGGLOMERATORS = Registry("processor agglomerator")


def create(name: str, matrix, controls=None, field_name: str = "x"):
    """Create the solver called ``name`` for ``matrix``.

    Preconditioners and smoothers are set up with the interface internal
    coefficients on the diagonal; ``solver.solve`` adds them again for the
    duration of each solve.
    """
    controls = SolverControls.coerce(controls)
    with matrix.interface_diagonal():
        return SOLVERS.create(name, field_name, matrix, controls, symmetric=matrix.symmetric())


def solve(matrix, x: np.ndarray, b: np.ndarray, controls=None, field_name: str = "x") -> SolverPerformance:
    """Solve ``matrix x = b`` in place with the configured solver.

    Parameters
    ----------
    matrix : LduMatrix
        The (borrowed) matrix partition of this rank
    x : np.ndarray
        Initial guess, overwritten with the solution; shape (n,) or
        (n, n_components) for a segregated vector solve
    b : np.ndarray
        Source, same shape as ``x``
    controls : SolverControls or mapping
        Solver controls; ``solver`` names the solver
    field_name : str
        Name used in the performance record and the log

    Returns
    -------
    SolverPerformance
        Residuals and convergence flags (per component for vector solves)

    """
    controls = SolverControls.coerce(controls)
    if x.shape != b.shape or x.shape[0] != matrix.n_cells:
        raise ValueError(
            f"Solution {x.shape} and source {b.shape} do not match a matrix of {matrix.n_cells} rows"
        )

    t_start = time.perf_counter()
    solver = create(controls.solver, matrix, controls, field_name)
    if x.ndim == 1:
        performance = solver.solve(x, b)
    else:
        performances = []
        for cmpt in range(x.shape[1]):
            psi = np.ascontiguousarray(x[:, cmpt])
            performances.append(solver.solve(psi, np.ascontiguousarray(b[:, cmpt])))
            x[:, cmpt] = psi
        performance = SolverPerformance.combine(performances)
    performance.wall_time = time.perf_counter() - t_start

    if is_master(matrix.comm):
        summary = performance if x.ndim == 1 else performance.max()
        log.info(
            "%s:  Solving for %s, Initial residual = %g, Final residual = %g, No Iterations %d",
            summary.solver_name,
            summary.field_name,
            summary.initial_residual,
            summary.final_residual,
            summary.n_iterations,
        )
    return performance
