"""I/O utilities for solver performance logs."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Iterable, Literal

import numpy as np
import pandas as pd

from LDU.datastructures import SolverPerformance

log = logging.getLogger(__name__)


def performance_to_dataframe(performances: Iterable[SolverPerformance], **metadata) -> pd.DataFrame:
    """Tabulate solver performance records, one row per solve.

    Vector solves are summarised by their worst component. The residual
    history is kept as a list column.

    Parameters
    ----------
    performances : iterable of SolverPerformance
        Records returned by ``LDU.solve``
    **metadata
        Constant columns added to every row (e.g. ``N=64, n_ranks=4``)

    Returns
    -------
    pd.DataFrame
        One row per record

    Examples
    --------
    >>> df = performance_to_dataframe([perf], N=64, solver="PCG")

    """
    rows = []
    for performance in performances:
        if np.ndim(performance.initial_residual) > 0:
            performance = performance.max()
        row = dataclasses.asdict(performance)
        row["residual_history"] = [float(r) for r in row["residual_history"]]
        row.update(metadata)
        rows.append(row)
    return pd.DataFrame(rows)


def load_performance_data(
    data_dir: Path | str,
    filename_base: str,
    prefer: Literal["parquet", "pickle"] = "parquet",
) -> pd.DataFrame:
    """Load a performance log with fallback between parquet and pickle.

    Raises
    ------
    FileNotFoundError
        If neither parquet nor pickle file exists

    """
    data_dir = Path(data_dir)
    parquet_path = data_dir / f"{filename_base}.parquet"
    pickle_path = data_dir / f"{filename_base}.pkl"

    candidates = [(parquet_path, pd.read_parquet), (pickle_path, pd.read_pickle)]
    if prefer == "pickle":
        candidates.reverse()

    for path, loader in candidates:
        if path.exists():
            log.info("Loading performance data: %s", path)
            return loader(path)
    raise FileNotFoundError(
        f"No performance log at {data_dir / filename_base}.{{parquet,pkl}}. "
        f"Run the corresponding compute script first."
    )


def save_performance_data(
    df: pd.DataFrame,
    output_path: Path | str,
    format: Literal["parquet", "pickle"] = "parquet",
) -> Path:
    """Save a performance log to disk.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to save
    output_path : Path or str
        Output file path (should include extension)
    format : {'parquet', 'pickle'}
        Output format

    """
    output_path = Path(output_path)

    if format == "parquet":
        df.to_parquet(output_path, index=False)
    elif format == "pickle":
        df.to_pickle(output_path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    log.info("Saved %s data → %s %s", format, output_path, df.shape)
    return output_path


def ensure_output_dir(path: Path | str) -> Path:
    """Create a directory (and parents) if needed and return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_repo_root() -> Path:
    """Repository root, found by walking up to pyproject.toml."""
    current = Path(__file__).resolve().parent
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    return current.parent.parent


def get_data_dir(caller_file: Path | str, create: bool = True) -> Path:
    """Data directory mirroring the experiment's place under Experiments/.

    For ``Experiments/laplacian/compute_laplacian.py`` this is
    ``<repo>/data/laplacian``.

    Raises
    ------
    ValueError
        If the calling file is not in an Experiments/ subdirectory

    """
    parts = Path(caller_file).resolve().parts
    if "Experiments" not in parts:
        raise ValueError(f"File {caller_file} is not in an Experiments/ subdirectory")
    experiment_parts = parts[parts.index("Experiments") + 1 : -1]
    if not experiment_parts:
        raise ValueError(
            f"File {caller_file} is directly in Experiments/. "
            "Scripts should be in a subdirectory (e.g., Experiments/laplacian/)"
        )

    data_dir = get_repo_root() / "data" / Path(*experiment_parts)
    if create:
        data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir
