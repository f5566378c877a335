"""Cell agglomeration for the algebraic multigrid.

A coarse level groups the rows (cells) of a finer matrix partition into
coarse cells by repeated pair agglomeration on face weights. The level
stores the topology only:

- ``restrict_addressing``: fine cell → coarse cell
- ``face_restrict``: fine face → coarse face, or ``-1 - c`` for a face
  interior to coarse cell ``c``
- ``face_flip``: fine faces whose coarse cells are in reversed order
- the coarse addressing and the coarse interfaces with their face maps

so that :func:`agglomerate_coefficients` can rebuild the coarse matrix for
new coefficients on the same addressing.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .interfaces import TAG_AGGLOMERATE, LduInterface
from .matrix import LduAddressing, LduMatrix


def face_weights(matrix: LduMatrix) -> np.ndarray:
    """Connection strength of each face: (|upper| + |lower|) / 2."""
    return 0.5 * (np.abs(matrix.upper()) + np.abs(matrix.lower()))


def coarse_addressing(addressing: LduAddressing, restrict: np.ndarray, n_coarse: int):
    """Coarse addressing for a cell agglomeration.

    Returns
    -------
    tuple
        (coarse addressing, face_restrict, face_flip)

    """
    cl = restrict[addressing.lower_addr]
    cu = restrict[addressing.upper_addr]
    interior = cl == cu
    boundary = ~interior

    lo = np.minimum(cl, cu)[boundary]
    hi = np.maximum(cl, cu)[boundary]
    unique_keys, inverse = np.unique(lo * n_coarse + hi, return_inverse=True)

    face_restrict = np.empty(addressing.n_faces, dtype=np.int64)
    face_restrict[boundary] = inverse.reshape(-1)
    face_restrict[interior] = -1 - cl[interior]

    coarse = LduAddressing(n_coarse, unique_keys // n_coarse, unique_keys % n_coarse)
    return coarse, face_restrict, cl > cu


def agglomerate_cells(addressing: LduAddressing, weights: np.ndarray, merge_levels: int, kernels, forward: bool = True):
    """Pair agglomeration applied ``merge_levels`` times.

    Each pass pairs the cells produced by the previous pass, so one call
    shrinks the row count by up to 2**merge_levels.

    Returns
    -------
    tuple
        (restrict_addressing, n_coarse)

    """
    restrict = np.arange(addressing.n_cells, dtype=np.int64)
    n_coarse = addressing.n_cells
    current, current_weights = addressing, weights

    for level in range(merge_levels):
        coarse = np.empty(current.n_cells, dtype=np.int64)
        n_coarse = int(kernels.pair_agglomerate(
            coarse,
            current.lower_addr,
            current.upper_addr,
            current.owner_start,
            current.losort,
            current.losort_start,
            np.ascontiguousarray(current_weights, dtype=np.float64),
            forward,
        ))
        restrict = coarse[restrict]

        if level + 1 < merge_levels:
            current, face_map, _ = coarse_addressing(current, coarse, n_coarse)
            keep = face_map >= 0
            current_weights = np.bincount(
                face_map[keep], weights=current_weights[keep], minlength=current.n_faces
            )

    return restrict, n_coarse


@dataclass
class CoarseLevel:
    """Topology of one cell agglomeration step."""
    restrict_addressing: np.ndarray
    n_coarse: int
    addressing: LduAddressing
    face_restrict: np.ndarray
    face_flip: np.ndarray
    interfaces: list[LduInterface] = field(default_factory=list)
    interface_face_restrict: list[np.ndarray] = field(default_factory=list)

    @classmethod
    def build(cls, matrix: LduMatrix, restrict: np.ndarray, n_coarse: int) -> CoarseLevel:
        """Coarse topology of ``matrix`` for a given cell agglomeration.

        Collective over the matrix interfaces: the coarse cell of every
        interface face is exchanged with the neighbour.
        """
        addressing, face_restrict, face_flip = coarse_addressing(
            matrix.addressing, restrict, n_coarse
        )

        pending = [
            iface.init_exchange(restrict[iface.face_cells], TAG_AGGLOMERATE)
            for iface in matrix.interfaces
        ]
        interfaces, interface_face_restrict = [], []
        for iface, exchange in zip(matrix.interfaces, pending):
            coarse_iface, iface_restrict = iface.agglomerate(restrict, exchange.wait())
            interfaces.append(coarse_iface)
            interface_face_restrict.append(iface_restrict)

        return cls(
            restrict_addressing=restrict,
            n_coarse=n_coarse,
            addressing=addressing,
            face_restrict=face_restrict,
            face_flip=face_flip,
            interfaces=interfaces,
            interface_face_restrict=interface_face_restrict,
        )

    def restrict_field(self, fine: np.ndarray) -> np.ndarray:
        """Sum a fine field into the coarse cells."""
        return np.bincount(self.restrict_addressing, weights=fine, minlength=self.n_coarse)

    def prolong_field(self, coarse: np.ndarray) -> np.ndarray:
        """Inject a coarse field into the fine cells."""
        return coarse[self.restrict_addressing]


def agglomerate_coefficients(fine: LduMatrix, level: CoarseLevel) -> LduMatrix:
    """Galerkin coarse matrix of ``fine`` for the agglomeration ``level``.

    The fine diagonal is expected to hold the interface internal
    coefficients already, so the coarse interfaces carry none.
    """
    n = level.n_coarse
    fr = level.face_restrict
    interior = fr < 0
    boundary = ~interior
    upper, lower = fine.upper(), fine.lower()

    diag = np.bincount(level.restrict_addressing, weights=fine.diag, minlength=n)
    diag += np.bincount(
        -1 - fr[interior], weights=upper[interior] + lower[interior], minlength=n
    )

    n_faces = level.addressing.n_faces
    flip = level.face_flip[boundary]
    fine_upper, fine_lower = upper[boundary], lower[boundary]
    coarse_upper = np.bincount(
        fr[boundary], weights=np.where(flip, fine_lower, fine_upper), minlength=n_faces
    )
    coarse_lower = None
    if fine.asymmetric():
        coarse_lower = np.bincount(
            fr[boundary], weights=np.where(flip, fine_upper, fine_lower), minlength=n_faces
        )

    boundary_coeffs = [
        np.bincount(iface_restrict, weights=bc, minlength=iface.size)
        for iface, iface_restrict, bc in zip(
            level.interfaces, level.interface_face_restrict, fine.boundary_coeffs_list
        )
    ]

    return LduMatrix(
        level.addressing,
        diag,
        coarse_upper,
        coarse_lower,
        interfaces=level.interfaces,
        internal_coeffs=[np.zeros(iface.size) for iface in level.interfaces],
        boundary_coeffs=boundary_coeffs,
        comm=fine.comm,
        use_numba=fine.use_numba,
    )
