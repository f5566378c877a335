"""Row-connectivity (LDU) sparse matrix and its addressing.

The matrix stores one diagonal coefficient per row (cell) and one upper and
one lower coefficient per internal connection (face). Face ``f`` connects
rows ``lower_addr[f] < upper_addr[f]``:

    A[l[f], u[f]] = upper[f]
    A[u[f], l[f]] = lower[f]

Rows coupled to other ranks are described by interfaces. For interface
``i`` the product gains, per interface face ``k``,

    (A x)[face_cells[k]] -= boundary_coeffs[i][k] * x_neighbour[k]

and ``internal_coeffs[i]`` are added into the diagonal for the duration of
a solve (see :meth:`LduMatrix.interface_diagonal`).
"""

from __future__ import annotations

import contextlib
from functools import cached_property
from typing import Sequence

import numpy as np
from mpi4py import MPI

from .interfaces import LduInterface
from .kernels import select_kernels
from .parallel import comm_size


def upper_triangular_order(lower_addr: np.ndarray, upper_addr: np.ndarray) -> np.ndarray:
    """Permutation that sorts faces by lower, then upper address."""
    return np.lexsort((upper_addr, lower_addr))


class LduAddressing:
    """Face connectivity of an LDU matrix.

    Parameters
    ----------
    n_cells : int
        Number of rows
    lower_addr : array_like
        Owner (lower) row of each face
    upper_addr : array_like
        Neighbour (upper) row of each face

    Raises
    ------
    ValueError
        If the addressing is inconsistent or not in upper-triangular order

    """

    def __init__(self, n_cells: int, lower_addr, upper_addr):
        self.n_cells = int(n_cells)
        self.lower_addr = np.ascontiguousarray(lower_addr, dtype=np.int64)
        self.upper_addr = np.ascontiguousarray(upper_addr, dtype=np.int64)
        self._check()

    def _check(self):
        l, u = self.lower_addr, self.upper_addr
        if l.ndim != 1 or l.shape != u.shape:
            raise ValueError(
                f"Lower and upper addressing differ in shape: {l.shape} vs {u.shape}"
            )
        if l.size == 0:
            return
        if l.min() < 0 or u.max() >= self.n_cells:
            raise ValueError(f"Face addressing out of range for {self.n_cells} cells")
        if np.any(l >= u):
            raise ValueError("Every face must satisfy lower address < upper address")
        order = upper_triangular_order(l, u)
        if np.any(order != np.arange(l.size)):
            raise ValueError("Faces are not in upper-triangular order")

    @property
    def size(self) -> int:
        return self.n_cells

    @property
    def n_faces(self) -> int:
        return self.lower_addr.shape[0]

    @cached_property
    def losort(self) -> np.ndarray:
        """Faces sorted by upper address."""
        return np.argsort(self.upper_addr, kind="stable").astype(np.int64)

    @cached_property
    def owner_start(self) -> np.ndarray:
        """First face owned by each cell (faces of cell c: owner_start[c]:owner_start[c+1])."""
        return self._start(self.lower_addr)

    @cached_property
    def losort_start(self) -> np.ndarray:
        """First losort entry of each cell."""
        return self._start(self.upper_addr)

    def _start(self, addr):
        counts = np.bincount(addr, minlength=self.n_cells)
        start = np.zeros(self.n_cells + 1, dtype=np.int64)
        np.cumsum(counts, out=start[1:])
        return start

    def __repr__(self):
        return f"LduAddressing(n_cells={self.n_cells}, n_faces={self.n_faces})"


class LduMatrix:
    """LDU sparse matrix partition held by one rank.

    Parameters
    ----------
    addressing : LduAddressing
        Face connectivity
    diag : array_like
        Diagonal coefficients, one per cell
    upper : array_like
        Upper coefficients, one per face
    lower : array_like, optional
        Lower coefficients; omitted for symmetric matrices
    interfaces : sequence of LduInterface, optional
        Coupled interfaces to other ranks
    internal_coeffs, boundary_coeffs : sequence of array_like, optional
        Per-interface coefficients, indexed by interface face
    comm : MPI.Comm, optional
        Communicator of the partitions (default: MPI.COMM_WORLD)
    use_numba : bool, default True
        Use the numba-compiled kernels

    """

    def __init__(
        self,
        addressing: LduAddressing,
        diag,
        upper,
        lower=None,
        interfaces: Sequence[LduInterface] = (),
        internal_coeffs: Sequence = (),
        boundary_coeffs: Sequence = (),
        comm=None,
        use_numba: bool = True,
    ):
        self.addressing = addressing
        self.diag = np.ascontiguousarray(diag, dtype=np.float64)
        self._upper = np.ascontiguousarray(upper, dtype=np.float64)
        self._lower = None if lower is None else np.ascontiguousarray(lower, dtype=np.float64)
        self.interfaces = list(interfaces)
        self.comm = MPI.COMM_WORLD if comm is None else comm
        self.use_numba = use_numba
        self.kernels = select_kernels(use_numba)

        n_iface = len(self.interfaces)
        self._internal_coeffs = [
            np.ascontiguousarray(c, dtype=np.float64) for c in internal_coeffs
        ] or [np.zeros(iface.size) for iface in self.interfaces]
        self._boundary_coeffs = [
            np.ascontiguousarray(c, dtype=np.float64) for c in boundary_coeffs
        ] or [np.zeros(iface.size) for iface in self.interfaces]
        self._check(n_iface)

    def _check(self, n_iface):
        if self.diag.shape != (self.addressing.n_cells,):
            raise ValueError(
                f"Diagonal has shape {self.diag.shape}, expected ({self.addressing.n_cells},)"
            )
        if self._upper.shape != (self.addressing.n_faces,):
            raise ValueError(
                f"Upper coefficients have shape {self._upper.shape}, "
                f"expected ({self.addressing.n_faces},)"
            )
        if self._lower is not None and self._lower.shape != self._upper.shape:
            raise ValueError("Lower and upper coefficients differ in length")
        if len(self._internal_coeffs) != n_iface or len(self._boundary_coeffs) != n_iface:
            raise ValueError("Need one internal and one boundary coefficient list per interface")
        for iface, ic, bc in zip(self.interfaces, self._internal_coeffs, self._boundary_coeffs):
            if ic.shape != (iface.size,) or bc.shape != (iface.size,):
                raise ValueError(f"Interface coefficients do not match {iface!r}")

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def n_cells(self) -> int:
        return self.addressing.n_cells

    def diagonal(self) -> np.ndarray:
        return self.diag

    def upper(self) -> np.ndarray:
        return self._upper

    def lower(self) -> np.ndarray:
        """Lower coefficients (the upper ones for a symmetric matrix)."""
        return self._upper if self._lower is None else self._lower

    def owner_addressing(self) -> np.ndarray:
        return self.addressing.lower_addr

    def neighbour_addressing(self) -> np.ndarray:
        return self.addressing.upper_addr

    def internal_coeffs(self, i: int) -> np.ndarray:
        return self._internal_coeffs[i]

    def boundary_coeffs(self, i: int) -> np.ndarray:
        return self._boundary_coeffs[i]

    def symmetric(self) -> bool:
        return self._lower is None

    def asymmetric(self) -> bool:
        return self._lower is not None

    def parallel(self) -> bool:
        """True when the matrix is split over more than one rank."""
        return comm_size(self.comm) > 1

    # ------------------------------------------------------------------
    # Interfaces
    # ------------------------------------------------------------------

    def init_interfaces(self, psi: np.ndarray, coeffs: Sequence[np.ndarray] | None = None):
        """Post the exchange of interface values of ``psi``.

        When ``coeffs`` is given each side sends ``coeffs[i] * psi[face_cells]``
        instead of the raw values.
        """
        pending = []
        for i, iface in enumerate(self.interfaces):
            values = psi[iface.face_cells]
            if coeffs is not None:
                values = coeffs[i] * values
            pending.append(iface.init_exchange(values))
        return pending

    def update_interfaces(self, pending, result: np.ndarray, coeffs: Sequence[np.ndarray] | None = None):
        """Complete an exchange: result[face_cells] -= coeffs * neighbour values."""
        for i, (iface, exchange) in enumerate(zip(self.interfaces, pending)):
            values = exchange.wait()
            if coeffs is not None:
                values = coeffs[i] * values
            np.subtract.at(result, iface.face_cells, values)

    @property
    def boundary_coeffs_list(self) -> list[np.ndarray]:
        return self._boundary_coeffs

    @property
    def internal_coeffs_list(self) -> list[np.ndarray]:
        return self._internal_coeffs

    @contextlib.contextmanager
    def interface_diagonal(self):
        """Add the interface internal coefficients to the diagonal temporarily."""
        saved = self.diag.copy()
        for iface, coeffs in zip(self.interfaces, self._internal_coeffs):
            np.add.at(self.diag, iface.face_cells, coeffs)
        try:
            yield self
        finally:
            self.diag[:] = saved

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def multiply(self, psi: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        """Matrix-vector product A psi including coupled interfaces.

        Interface exchanges are posted first and completed after the local
        product, so communication overlaps the interior computation.
        """
        if out is None:
            out = np.empty_like(psi)
        pending = self.init_interfaces(psi)
        self.kernels.amul(
            out, psi, self.diag, self.lower(), self._upper,
            self.addressing.lower_addr, self.addressing.upper_addr,
        )
        self.update_interfaces(pending, out, self._boundary_coeffs)
        return out

    def tmultiply(self, psi: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        """Transpose product A^T psi including coupled interfaces.

        The neighbour's coupling coefficient multiplies our value in its
        row, so each side sends its coefficient times its values.
        """
        if out is None:
            out = np.empty_like(psi)
        pending = self.init_interfaces(psi, self._boundary_coeffs)
        self.kernels.amul(
            out, psi, self.diag, self._upper, self.lower(),
            self.addressing.lower_addr, self.addressing.upper_addr,
        )
        self.update_interfaces(pending, out)
        return out

    def residual(self, psi: np.ndarray, source: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        """source - A psi."""
        out = self.multiply(psi, out)
        np.subtract(source, out, out=out)
        return out

    def sum_a(self) -> np.ndarray:
        """Row sums of A including the coupled coefficients."""
        l, u = self.addressing.lower_addr, self.addressing.upper_addr
        n = self.n_cells
        row_sum = self.diag.copy()
        row_sum += np.bincount(l, weights=self._upper, minlength=n)
        row_sum += np.bincount(u, weights=self.lower(), minlength=n)
        for iface, coeffs in zip(self.interfaces, self._boundary_coeffs):
            np.subtract.at(row_sum, iface.face_cells, coeffs)
        return row_sum

    def sum_mag_off_diag(self) -> np.ndarray:
        """Row sums of |off-diagonal| coefficients including interfaces."""
        l, u = self.addressing.lower_addr, self.addressing.upper_addr
        n = self.n_cells
        row_sum = np.bincount(l, weights=np.abs(self._upper), minlength=n)
        row_sum += np.bincount(u, weights=np.abs(self.lower()), minlength=n)
        for iface, coeffs in zip(self.interfaces, self._boundary_coeffs):
            np.add.at(row_sum, iface.face_cells, np.abs(coeffs))
        return row_sum

    def relax(self, psi: np.ndarray, source: np.ndarray, alpha: float) -> np.ndarray:
        """Implicit under-relaxation by ``alpha`` (0 < alpha <= 1).

        Divides the diagonal by alpha in place and returns the source with
        the matching explicit correction.
        """
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"Relaxation factor must lie in (0, 1], got {alpha}")
        d0 = self.diag.copy()
        self.diag /= alpha
        return source + (self.diag - d0) * psi

    def to_dense(self) -> np.ndarray:
        """Dense copy of the local partition (interfaces are ignored)."""
        dense = np.zeros((self.n_cells, self.n_cells))
        l, u = self.addressing.lower_addr, self.addressing.upper_addr
        dense[np.arange(self.n_cells), np.arange(self.n_cells)] = self.diag
        np.add.at(dense, (l, u), self._upper)
        np.add.at(dense, (u, l), self.lower())
        return dense

    def __repr__(self):
        kind = "symmetric" if self.symmetric() else "asymmetric"
        return (
            f"LduMatrix({kind}, n_cells={self.n_cells}, n_faces={self.addressing.n_faces}, "
            f"n_interfaces={len(self.interfaces)})"
        )
