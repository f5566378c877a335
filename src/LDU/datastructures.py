"""Data structures for solver controls and solver performance."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping

import numpy as np

from .errors import ConfigurationError

# Thresholds used by the convergence and singularity checks
GREAT = 1e20
SMALL = 1e-20
VSMALL = 1e-300


@dataclass(frozen=True)
class SolverControls:
    """Solver configuration (read once at solver construction)."""
    solver: str = "PCG"

    # Convergence
    tolerance: float = 1e-6
    rel_tol: float = 0.0
    min_iter: int = 0
    max_iter: int = 1000

    # Preconditioner and smoother selection
    preconditioner: str = "none"
    preconditioner_options: Mapping[str, Any] = field(default_factory=dict)
    smoother: str = "GaussSeidel"
    n_sweeps: int = 1
    omega: float = 0.75
    coupled: bool = True

    # Multigrid cycle
    n_pre_sweeps: int = 0
    pre_sweeps_level_multiplier: int = 1
    max_pre_sweeps: int = 4
    n_post_sweeps: int = 2
    post_sweeps_level_multiplier: int = 1
    max_post_sweeps: int = 4
    n_finest_sweeps: int = 2
    n_vcycles: int = 2
    scale_correction: bool = True
    interpolate_correction: bool = False
    direct_solve_coarsest: bool = False
    coarsest_level_corr: Mapping[str, Any] = field(default_factory=dict)

    # Multigrid agglomeration
    cache_agglomeration: bool = True
    n_cells_in_coarsest_level: int = 10
    merge_levels: int = 1
    max_coarse_ratio: float = 0.8
    processor_agglomerator: str = "none"
    n_agglomerating_cells: int = 50
    merge_factor: int = 2

    def __post_init__(self):
        if self.tolerance < 0 or self.rel_tol < 0:
            raise ConfigurationError(
                f"tolerance and relTol must be non-negative "
                f"(got {self.tolerance}, {self.rel_tol})"
            )
        if self.min_iter < 0 or self.max_iter < self.min_iter:
            raise ConfigurationError(
                f"Require 0 <= minIter <= maxIter (got {self.min_iter}, {self.max_iter})"
            )
        if self.merge_factor < 2:
            raise ConfigurationError(f"mergeFactor must be at least 2 (got {self.merge_factor})")
        if self.merge_levels < 1:
            raise ConfigurationError(f"mergeLevels must be at least 1 (got {self.merge_levels})")
        if not 0.0 < self.max_coarse_ratio < 1.0:
            raise ConfigurationError(
                f"maxCoarseRatio must lie in (0, 1) (got {self.max_coarse_ratio})"
            )

    @classmethod
    def from_dict(cls, entries: Mapping[str, Any], base: SolverControls | None = None) -> SolverControls:
        """Build controls from a flat key/value mapping.

        Keys may be given in dictionary style (``relTol``, ``maxIter``) or
        as attribute names (``rel_tol``, ``max_iter``). Values not given are
        taken from ``base`` (or the defaults).

        Raises
        ------
        ConfigurationError
            If a key is not recognised or a value has the wrong type
        """
        base = cls() if base is None else base
        updates = {}
        for key, value in entries.items():
            name = _KEY_ALIASES.get(key, key)
            if name not in _FIELD_TYPES:
                raise ConfigurationError(
                    f"Unknown solver control '{key}'. "
                    f"Valid controls: {sorted(_KEY_ALIASES)}"
                )
            if name == "preconditioner" and isinstance(value, Mapping):
                options = dict(value)
                if "preconditioner" not in options:
                    raise ConfigurationError(
                        "Preconditioner dictionary requires a 'preconditioner' entry"
                    )
                updates["preconditioner"] = _coerce("preconditioner", options.pop("preconditioner"))
                updates["preconditioner_options"] = options
                continue
            updates[name] = _coerce(name, value)
        return dataclasses.replace(base, **updates)

    @classmethod
    def coerce(cls, controls: SolverControls | Mapping[str, Any] | None) -> SolverControls:
        """Accept controls as a SolverControls instance, a mapping or None."""
        if controls is None:
            return cls()
        if isinstance(controls, SolverControls):
            return controls
        if isinstance(controls, Mapping):
            return cls.from_dict(controls)
        raise ConfigurationError(f"Cannot interpret {type(controls).__name__} as solver controls")

    def preconditioner_controls(self) -> SolverControls:
        """Controls for the preconditioner: the nested entries over these."""
        return SolverControls.from_dict(self.preconditioner_options, base=self)

    def coarsest_controls(self, symmetric: bool) -> SolverControls:
        """Controls for the solver of the coarsest multigrid level."""
        defaults = {
            "solver": "PCG" if symmetric else "PBiCGStab",
            "preconditioner": "DIC" if symmetric else "DILU",
            "minIter": 0,
            "maxIter": self.max_iter,
        }
        defaults.update(self.coarsest_level_corr)
        return SolverControls.from_dict(
            defaults, base=dataclasses.replace(self, preconditioner_options={}, coarsest_level_corr={})
        )


_FIELD_TYPES = {f.name: f.type for f in dataclasses.fields(SolverControls)}

_KEY_ALIASES = {
    "solver": "solver",
    "tolerance": "tolerance",
    "relTol": "rel_tol",
    "minIter": "min_iter",
    "maxIter": "max_iter",
    "preconditioner": "preconditioner",
    "smoother": "smoother",
    "nSweeps": "n_sweeps",
    "omega": "omega",
    "coupled": "coupled",
    "nPreSweeps": "n_pre_sweeps",
    "preSweepsLevelMultiplier": "pre_sweeps_level_multiplier",
    "maxPreSweeps": "max_pre_sweeps",
    "nPostSweeps": "n_post_sweeps",
    "postSweepsLevelMultiplier": "post_sweeps_level_multiplier",
    "maxPostSweeps": "max_post_sweeps",
    "nFinestSweeps": "n_finest_sweeps",
    "nVcycles": "n_vcycles",
    "scaleCorrection": "scale_correction",
    "interpolateCorrection": "interpolate_correction",
    "directSolveCoarsest": "direct_solve_coarsest",
    "coarsestLevelCorr": "coarsest_level_corr",
    "cacheAgglomeration": "cache_agglomeration",
    "nCellsInCoarsestLevel": "n_cells_in_coarsest_level",
    "mergeLevels": "merge_levels",
    "maxCoarseRatio": "max_coarse_ratio",
    "processorAgglomerator": "processor_agglomerator",
    "nAgglomeratingCells": "n_agglomerating_cells",
    "mergeFactor": "merge_factor",
}
_KEY_ALIASES.update({name: name for name in _FIELD_TYPES if name != "preconditioner_options"})


def _coerce(name: str, value: Any) -> Any:
    """Check a control value against the declared field type."""
    kind = _FIELD_TYPES[name]
    if kind == "bool":
        if isinstance(value, (bool, np.bool_)):
            return bool(value)
        if isinstance(value, str) and value.lower() in ("true", "yes", "on", "false", "no", "off"):
            return value.lower() in ("true", "yes", "on")
    elif kind == "int":
        if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
            return int(value)
    elif kind == "float":
        if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
            return float(value)
    elif kind == "str":
        if isinstance(value, str) and value:
            return value
    elif isinstance(value, Mapping):
        return dict(value)
    raise ConfigurationError(f"Invalid value {value!r} for solver control '{name}' (expected {kind})")


@dataclass
class SolverPerformance:
    """Performance record returned by every solve."""
    solver_name: str = ""
    field_name: str = ""
    initial_residual: float | np.ndarray = 0.0
    final_residual: float | np.ndarray = 0.0
    n_iterations: int | np.ndarray = 0
    converged: bool = False
    singular: bool = False
    residual_history: list[float] = field(default_factory=list)
    wall_time: float = 0.0

    def check_convergence(self, tolerance: float, rel_tol: float) -> bool:
        """Update and return the converged flag from the current residuals."""
        self.converged = bool(
            self.final_residual <= tolerance
            or (rel_tol > SMALL and self.final_residual <= rel_tol * self.initial_residual)
        )
        return self.converged

    def check_singularity(self, value: float) -> bool:
        """Flag a near-zero or non-finite quantity as a singular system."""
        self.singular = bool(not np.isfinite(value) or abs(value) < VSMALL)
        return self.singular

    @classmethod
    def combine(cls, performances: list[SolverPerformance]) -> SolverPerformance:
        """Merge per-component performances of a segregated vector solve."""
        first = performances[0]
        return cls(
            solver_name=first.solver_name,
            field_name=first.field_name,
            initial_residual=np.array([p.initial_residual for p in performances]),
            final_residual=np.array([p.final_residual for p in performances]),
            n_iterations=np.array([p.n_iterations for p in performances]),
            converged=all(p.converged for p in performances),
            singular=any(p.singular for p in performances),
            residual_history=[r for p in performances for r in p.residual_history],
            wall_time=sum(p.wall_time for p in performances),
        )

    def max(self) -> SolverPerformance:
        """Scalar summary: the worst component of a vector solve."""
        return dataclasses.replace(
            self,
            initial_residual=float(np.max(self.initial_residual)),
            final_residual=float(np.max(self.final_residual)),
            n_iterations=int(np.max(self.n_iterations)),
            residual_history=list(self.residual_history),
        )
