"""Processor agglomeration for the algebraic multigrid.

Once the coarse levels hold only a few rows per rank, communication
dominates the cost of a V-cycle. A processor agglomerator then merges the
coarse matrices of groups of ranks onto the lowest rank of each group (the
group master). Coarser levels are built on the masters only; the other
ranks gather their restricted residual to the master and wait for the
scattered correction.

Each agglomerator assigns every rank a group colour. Colours must be
non-decreasing in rank, so the masters keep their relative order in the
agglomerated communicator.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np
from mpi4py import MPI

from .datastructures import SolverControls
from .interfaces import LduInterface, ProcessorInterface
from .matrix import LduAddressing, LduMatrix
from .parallel import comm_size, g_sum
from .registry import PROC_AGGLOMERATORS

log = logging.getLogger(__name__)


# ============================================================================
# Agglomerator selection
# ============================================================================


class ProcAgglomerator(ABC):
    """Abstract base class for processor agglomeration strategies.

    ``level_colour`` is asked after every new coarse level and
    ``coarsest_colour`` once the hierarchy is complete. Both are collective
    over the matrix communicator and return this rank's group colour, or
    None (on every rank) when no merge should happen.
    """

    type_name = ""

    def __init__(self, controls: SolverControls):
        self.controls = controls

    @abstractmethod
    def level_colour(self, matrix: LduMatrix) -> int | None:
        pass

    @abstractmethod
    def coarsest_colour(self, matrix: LduMatrix) -> int | None:
        pass


@PROC_AGGLOMERATORS.register("none")
class NoProcAgglomerator(ProcAgglomerator):
    """Never merge ranks."""

    def level_colour(self, matrix):
        return None

    def coarsest_colour(self, matrix):
        return None


@PROC_AGGLOMERATORS.register("eager")
class EagerProcAgglomerator(ProcAgglomerator):
    """Merge groups of ``mergeFactor`` consecutive ranks.

    Triggered whenever the mean number of rows per rank drops below
    ``nAgglomeratingCells``; repeated on coarser levels.
    """

    def level_colour(self, matrix):
        comm = matrix.comm
        size = comm_size(comm)
        if size == 1:
            return None
        mean_cells = g_sum(matrix.n_cells, comm) / size
        if mean_cells >= self.controls.n_agglomerating_cells:
            return None
        return comm.Get_rank() // self.controls.merge_factor

    def coarsest_colour(self, matrix):
        return None


@PROC_AGGLOMERATORS.register("masterCoarsest")
class MasterCoarsestProcAgglomerator(ProcAgglomerator):
    """Merge all ranks onto rank 0 at the coarsest level."""

    def level_colour(self, matrix):
        return None

    def coarsest_colour(self, matrix):
        return 0 if comm_size(matrix.comm) > 1 else None


# ============================================================================
# Merged topology
# ============================================================================


@dataclass
class _MergedInterface:
    """Pieces of member interfaces merged into one interface on the master."""
    neighb_rank: int
    # (member index, interface index) per piece, in face order
    pieces: list[tuple[int, int]] = field(default_factory=list)


@dataclass
class ProcAgglomeration:
    """Merge of one coarse level's partitions onto the group masters.

    Attributes
    ----------
    group_comm : MPI.Comm
        Communicator of the ranks merged together (master is rank 0)
    agglomerated_comm : MPI.Comm
        Communicator of the masters (MPI.COMM_NULL on the other ranks)
    cell_offsets : np.ndarray
        Start row of every member in the merged matrix (master only)

    """
    group_comm: object
    agglomerated_comm: object
    cell_offsets: np.ndarray | None = None
    member_face_cells: list[list[np.ndarray]] = field(default_factory=list)
    addressing: LduAddressing | None = None
    # Candidate face (members' faces, then faces from merged interfaces)
    # → merged face
    face_map: np.ndarray | None = None
    # (member index, interface index, partner member, partner interface)
    internal_pairs: list[tuple[int, int, int, int]] = field(default_factory=list)
    interfaces: list[LduInterface] = field(default_factory=list)
    merged_pieces: list[_MergedInterface] = field(default_factory=list)

    @property
    def master(self) -> bool:
        return self.group_comm.Get_rank() == 0

    @classmethod
    def build(cls, matrix: LduMatrix, colour: int) -> ProcAgglomeration:
        """Merged topology of ``matrix`` for this rank's group ``colour``.

        Collective over ``matrix.comm``.
        """
        comm = matrix.comm
        rank = comm.Get_rank()
        group_comm = comm.Split(colour, rank)
        is_master = group_comm.Get_rank() == 0
        agglomerated_comm = comm.Split(0 if is_master else MPI.UNDEFINED, rank)

        colours = comm.allgather(colour)
        masters = sorted({c: r for r, c in reversed(list(enumerate(colours)))}.items())
        master_index = {c: i for i, (c, _) in enumerate(masters)}

        local = {
            "rank": rank,
            "n_cells": matrix.n_cells,
            "lower": matrix.addressing.lower_addr,
            "upper": matrix.addressing.upper_addr,
            "interfaces": [(iface.face_cells, iface.neighb_rank) for iface in matrix.interfaces],
        }
        members = group_comm.gather(local, root=0)

        agglomeration = cls(group_comm=group_comm, agglomerated_comm=agglomerated_comm)
        if is_master:
            agglomeration._merge_topology(members, colours, master_index)
            log.debug(
                "Merged ranks %s onto rank %d: %d rows, %d faces, %d interfaces",
                [m["rank"] for m in members],
                rank,
                agglomeration.addressing.n_cells,
                agglomeration.addressing.n_faces,
                len(agglomeration.interfaces),
            )
        return agglomeration

    def _merge_topology(self, members, colours, master_index):
        offsets = np.zeros(len(members) + 1, dtype=np.int64)
        np.cumsum([m["n_cells"] for m in members], out=offsets[1:])
        self.cell_offsets = offsets
        self.member_face_cells = [[fc for fc, _ in m["interfaces"]] for m in members]
        member_of_rank = {m["rank"]: i for i, m in enumerate(members)}

        lower = [m["lower"] + offsets[i] for i, m in enumerate(members)]
        upper = [m["upper"] + offsets[i] for i, m in enumerate(members)]

        # Interfaces inside the group become internal faces. The i-th
        # interface from p to q pairs with the i-th one from q to p.
        seen = {}
        blocks = {}
        for p, member in enumerate(members):
            for i, (face_cells, neighb_rank) in enumerate(member["interfaces"]):
                q = member_of_rank.get(neighb_rank)
                if q is None:
                    key = (min(member["rank"], neighb_rank), max(member["rank"], neighb_rank))
                    group = master_index[colours[neighb_rank]]
                    blocks.setdefault(group, []).append((key, p, i))
                    continue
                if p > q:
                    continue
                count = seen.get((p, q), 0)
                seen[(p, q)] = count + 1
                j = [
                    k for k, (_, r) in enumerate(members[q]["interfaces"])
                    if r == member["rank"]
                ][count]
                self.internal_pairs.append((p, i, q, j))
                lower.append(face_cells + offsets[p])
                upper.append(members[q]["interfaces"][j][0] + offsets[q])

        lower = np.concatenate(lower) if lower else np.zeros(0, dtype=np.int64)
        upper = np.concatenate(upper) if upper else np.zeros(0, dtype=np.int64)
        n_cells = int(offsets[-1])
        unique_keys, inverse = np.unique(lower * max(n_cells, 1) + upper, return_inverse=True)
        self.face_map = inverse.reshape(-1)
        self.addressing = LduAddressing(
            n_cells, unique_keys // max(n_cells, 1), unique_keys % max(n_cells, 1)
        )

        # Remaining interfaces, merged per neighbouring group
        for group in sorted(blocks):
            pieces = sorted(blocks[group], key=lambda block: block[0])
            merged = _MergedInterface(neighb_rank=group, pieces=[(p, i) for _, p, i in pieces])
            face_cells = np.concatenate([
                members[p]["interfaces"][i][0] + offsets[p] for p, i in merged.pieces
            ])
            self.merged_pieces.append(merged)
            self.interfaces.append(
                ProcessorInterface(face_cells, group, self.agglomerated_comm)
            )

    # ------------------------------------------------------------------
    # Coefficients and fields
    # ------------------------------------------------------------------

    def merge_matrix(self, matrix: LduMatrix) -> LduMatrix | None:
        """Merged matrix on the group master, None on the other ranks.

        Collective over the group. Coefficients are gathered on every call;
        the topology is reused.
        """
        local = (
            matrix.diag,
            matrix.upper(),
            None if matrix.symmetric() else matrix.lower(),
            matrix.internal_coeffs_list,
            matrix.boundary_coeffs_list,
        )
        gathered = self.group_comm.gather(local, root=0)
        if not self.master:
            return None

        symmetric = all(g[2] is None for g in gathered)
        diag = np.concatenate([g[0] for g in gathered])
        upper = [g[1] for g in gathered]
        lower = [g[1] if g[2] is None else g[2] for g in gathered]

        for p, i, q, j in self.internal_pairs:
            # A[p-cell, q-cell] = -bc_p, A[q-cell, p-cell] = -bc_q
            upper.append(-gathered[p][4][i])
            lower.append(-gathered[q][4][j])
            np.add.at(diag, self._member_face_cells(p, i), gathered[p][3][i])
            np.add.at(diag, self._member_face_cells(q, j), gathered[q][3][j])

        n_faces = self.addressing.n_faces
        merged_upper = np.bincount(self.face_map, weights=_concat(upper), minlength=n_faces)
        merged_lower = None
        if not symmetric:
            merged_lower = np.bincount(self.face_map, weights=_concat(lower), minlength=n_faces)

        internal_coeffs, boundary_coeffs = [], []
        for merged in self.merged_pieces:
            internal_coeffs.append(_concat([gathered[p][3][i] for p, i in merged.pieces]))
            boundary_coeffs.append(_concat([gathered[p][4][i] for p, i in merged.pieces]))

        return LduMatrix(
            self.addressing,
            diag,
            merged_upper,
            merged_lower,
            interfaces=self.interfaces,
            internal_coeffs=internal_coeffs,
            boundary_coeffs=boundary_coeffs,
            comm=self.agglomerated_comm,
            use_numba=matrix.use_numba,
        )

    def _member_face_cells(self, p, i):
        return self.member_face_cells[p][i] + self.cell_offsets[p]

    def gather_field(self, field: np.ndarray) -> np.ndarray | None:
        """Concatenate the members' fields on the master (None elsewhere)."""
        parts = self.group_comm.gather(np.ascontiguousarray(field), root=0)
        if not self.master:
            return None
        return np.concatenate(parts)

    def scatter_field(self, field: np.ndarray | None) -> np.ndarray:
        """Split a merged field on the master back to the members."""
        parts = None
        if self.master:
            parts = [
                field[self.cell_offsets[p]:self.cell_offsets[p + 1]]
                for p in range(len(self.cell_offsets) - 1)
            ]
        return self.group_comm.scatter(parts, root=0)


def _concat(arrays):
    return np.concatenate(arrays) if arrays else np.zeros(0)
