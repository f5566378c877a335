"""Test matrices and domain decomposition.

This module provides model problems assembled directly in LDU form
(Laplacians with Dirichlet boundaries and an upwinded convection-diffusion
operator) and the helpers that split a global matrix into per-rank
partitions coupled by processor interfaces.
"""

from __future__ import annotations

import numpy as np
from mpi4py import MPI

from .interfaces import ProcessorInterface
from .matrix import LduAddressing, LduMatrix, upper_triangular_order


def _assemble(n_cells, lower_addr, upper_addr, diag, upper, lower=None, comm=None, use_numba=True):
    order = upper_triangular_order(lower_addr, upper_addr)
    addressing = LduAddressing(n_cells, lower_addr[order], upper_addr[order])
    upper = np.broadcast_to(upper, lower_addr.shape)[order]
    if lower is not None:
        lower = np.broadcast_to(lower, lower_addr.shape)[order]
    return LduMatrix(
        addressing,
        np.broadcast_to(diag, (n_cells,)).copy(),
        upper,
        lower,
        comm=MPI.COMM_SELF if comm is None else comm,
        use_numba=use_numba,
    )


def tridiagonal(n: int, diag: float = 2.0, off_diag: float = -1.0, use_numba: bool = True) -> LduMatrix:
    """Symmetric tridiagonal matrix with constant coefficients.

    Parameters
    ----------
    n : int
        Number of rows
    diag : float, default 2.0
        Diagonal coefficient
    off_diag : float, default -1.0
        Coefficient of both off-diagonals

    Examples
    --------
    >>> A = tridiagonal(5)
    >>> A.to_dense()[0, :2]
    array([ 2., -1.])

    """
    cells = np.arange(n - 1, dtype=np.int64)
    return _assemble(n, cells, cells + 1, diag, off_diag, use_numba=use_numba)


def laplacian_1d(n: int, use_numba: bool = True) -> LduMatrix:
    """Second-difference operator -u'' on n cells with zero Dirichlet ends."""
    return tridiagonal(n, 2.0, -1.0, use_numba=use_numba)


def laplacian_2d(nx: int, ny: int | None = None, use_numba: bool = True) -> LduMatrix:
    """Five-point Laplacian on an nx × ny grid with zero Dirichlet boundaries.

    Cells are numbered row by row, ``c = j * nx + i``.

    Parameters
    ----------
    nx : int
        Cells in x
    ny : int, optional
        Cells in y (default: nx)

    Returns
    -------
    LduMatrix
        Symmetric positive-definite matrix with diagonal 4 and -1 per
        neighbour

    """
    ny = nx if ny is None else ny
    cells = np.arange(nx * ny, dtype=np.int64).reshape(ny, nx)
    x_lower, x_upper = cells[:, :-1].ravel(), cells[:, 1:].ravel()
    y_lower, y_upper = cells[:-1, :].ravel(), cells[1:, :].ravel()
    lower_addr = np.concatenate([x_lower, y_lower])
    upper_addr = np.concatenate([x_upper, y_upper])
    return _assemble(nx * ny, lower_addr, upper_addr, 4.0, -1.0, use_numba=use_numba)


def convection_diffusion_1d(n: int, peclet: float = 1.0, use_numba: bool = True) -> LduMatrix:
    """Upwinded 1-D convection-diffusion operator (asymmetric).

    Row i reads ``-(1 + Pe) u[i-1] + (2 + Pe) u[i] - u[i+1]``, which is
    diagonally dominant for Pe >= 0.
    """
    cells = np.arange(n - 1, dtype=np.int64)
    return _assemble(
        n, cells, cells + 1, 2.0 + peclet, -1.0, lower=-(1.0 + peclet), use_numba=use_numba
    )


# ============================================================================
# Decomposition
# ============================================================================


def slice_partition(n_cells: int, size: int) -> np.ndarray:
    """Owner rank of each cell for contiguous slices of near-equal size.

    The first ``n_cells % size`` ranks get one extra cell.

    Examples
    --------
    >>> slice_partition(10, 4)
    array([0, 0, 0, 1, 1, 1, 2, 2, 3, 3])

    """
    base_size = n_cells // size
    remainder = n_cells % size
    counts = np.full(size, base_size, dtype=np.int64)
    counts[:remainder] += 1
    return np.repeat(np.arange(size, dtype=np.int64), counts)


def decompose(matrix: LduMatrix, cell_to_rank: np.ndarray, comm, use_numba: bool | None = None):
    """Partition of a global matrix held by this rank of ``comm``.

    Faces between cells of different ranks become processor interfaces,
    one per neighbouring rank, with faces in global face order on both
    sides. The boundary coefficient of an interface face is minus the
    matrix coefficient that couples the local row to the remote column.

    Parameters
    ----------
    matrix : LduMatrix
        The global matrix (identical on every rank)
    cell_to_rank : np.ndarray
        Owner rank of each global cell
    comm : MPI.Comm
        Communicator of the partitions

    Returns
    -------
    local_matrix : LduMatrix
        This rank's partition
    cells : np.ndarray
        Global index of each local row

    """
    rank = comm.Get_rank()
    cell_to_rank = np.asarray(cell_to_rank, dtype=np.int64)
    if cell_to_rank.shape != (matrix.n_cells,):
        raise ValueError(f"Need one owner rank per cell, got shape {cell_to_rank.shape}")

    cells = np.flatnonzero(cell_to_rank == rank)
    local_index = np.full(matrix.n_cells, -1, dtype=np.int64)
    local_index[cells] = np.arange(cells.size)

    l, u = matrix.addressing.lower_addr, matrix.addressing.upper_addr
    rank_l, rank_u = cell_to_rank[l], cell_to_rank[u]

    internal = (rank_l == rank) & (rank_u == rank)
    addressing = LduAddressing(cells.size, local_index[l[internal]], local_index[u[internal]])
    lower = None if matrix.symmetric() else matrix.lower()[internal]

    interfaces, boundary_coeffs = [], []
    mine_lower = (rank_l == rank) & (rank_u != rank)
    mine_upper = (rank_u == rank) & (rank_l != rank)
    neighbours = np.unique(np.concatenate([rank_u[mine_lower], rank_l[mine_upper]]))
    for neighb_rank in neighbours:
        faces = np.flatnonzero(
            (mine_lower & (rank_u == neighb_rank)) | (mine_upper & (rank_l == neighb_rank))
        )
        is_lower = rank_l[faces] == rank
        face_cells = local_index[np.where(is_lower, l[faces], u[faces])]
        coeffs = -np.where(is_lower, matrix.upper()[faces], matrix.lower()[faces])
        interfaces.append(ProcessorInterface(face_cells, int(neighb_rank), comm))
        boundary_coeffs.append(coeffs)

    local = LduMatrix(
        addressing,
        matrix.diag[cells],
        matrix.upper()[internal],
        lower,
        interfaces=interfaces,
        internal_coeffs=[np.zeros(iface.size) for iface in interfaces],
        boundary_coeffs=boundary_coeffs,
        comm=comm,
        use_numba=matrix.use_numba if use_numba is None else use_numba,
    )
    return local, cells


def reconstruct_field(local_field: np.ndarray, cells: np.ndarray, n_cells: int, comm) -> np.ndarray:
    """Assemble the global field from every rank's local part (collective)."""
    parts = comm.allgather((cells, np.ascontiguousarray(local_field)))
    field = np.zeros(n_cells, dtype=np.float64)
    for part_cells, values in parts:
        field[part_cells] = values
    return field
