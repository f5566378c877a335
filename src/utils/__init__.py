"""Utility modules for experiment I/O and command-line parsing."""

from .io import (
    ensure_output_dir,
    get_data_dir,
    get_repo_root,
    load_performance_data,
    performance_to_dataframe,
    save_performance_data,
)
from .cli import create_parser

__all__ = [
    # I/O
    "ensure_output_dir",
    "get_data_dir",
    "get_repo_root",
    "load_performance_data",
    "performance_to_dataframe",
    "save_performance_data",
    # CLI
    "create_parser",
]
