"""Coupled interfaces between matrix partitions.

A coupled interface connects rows of this rank's matrix partition
(``face_cells``) to rows owned by another rank. Every matrix-vector product
and every coupled preconditioner/smoother sweep exchanges the values of the
interface rows with the neighbour.

Exchanges are split into an *init* step that posts non-blocking
``Irecv``/``Isend`` calls and a *wait* step that completes them, so that
the caller can do the local (interior) work in between:

```python
pending = interface.init_exchange(psi[interface.face_cells])
...  # interior work
neighbour_values = pending.wait()
```

Both sides of an interface hold the same number of faces in the same order,
so face ``k`` on one side is face ``k`` on the other.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

# Message tags (one message per kind per interface in flight at a time)
TAG_VALUES = 1
TAG_FORWARD = 2
TAG_BACKWARD = 3
TAG_AGGLOMERATE = 4


class PendingExchange:
    """Non-blocking exchange in flight; ``wait()`` returns received values."""

    def __init__(self, send_request, recv_request, send_buffer, recv_buffer):
        self._send_request = send_request
        self._recv_request = recv_request
        # Keep the send buffer alive until the send completes
        self._send_buffer = send_buffer
        self.recv_buffer = recv_buffer

    def wait(self) -> np.ndarray:
        self._recv_request.Wait()
        self._send_request.Wait()
        self._send_buffer = None
        return self.recv_buffer


class LduInterface(ABC):
    """Abstract base class for coupled matrix interfaces."""

    def __init__(self, face_cells: np.ndarray):
        self.face_cells = np.ascontiguousarray(face_cells, dtype=np.int64)

    @property
    def size(self) -> int:
        """Number of interface faces."""
        return self.face_cells.shape[0]

    @abstractmethod
    def init_exchange(self, values: np.ndarray, tag: int = TAG_VALUES) -> PendingExchange:
        """Post a non-blocking exchange of per-face values."""
        pass

    @abstractmethod
    def agglomerate(
        self, restrict_addressing: np.ndarray, neighbour_restrict: np.ndarray
    ) -> tuple[LduInterface, np.ndarray]:
        """Coarse interface and fine face → coarse face map for a cell agglomeration.

        ``neighbour_restrict`` holds the coarse cell of every interface face
        on the other side (exchanged by the caller).
        """
        pass

    def exchange(self, values: np.ndarray, tag: int = TAG_VALUES) -> np.ndarray:
        """Blocking exchange of per-face values."""
        return self.init_exchange(values, tag).wait()


class ProcessorInterface(LduInterface):
    """Interface to a matrix partition held by another MPI rank.

    Parameters
    ----------
    face_cells : np.ndarray
        Local row index of each interface face
    neighb_rank : int
        Rank (in ``comm``) that holds the other side
    comm : MPI.Comm
        Communicator of the matrix

    """

    def __init__(self, face_cells, neighb_rank: int, comm):
        super().__init__(face_cells)
        self.comm = comm
        self.my_rank = comm.Get_rank()
        self.neighb_rank = int(neighb_rank)
        if self.neighb_rank == self.my_rank:
            raise ValueError(f"Processor interface on rank {self.my_rank} coupled to itself")

    @property
    def owner(self) -> bool:
        """True on the lower-ranked side of the interface."""
        return self.my_rank < self.neighb_rank

    def isend(self, values: np.ndarray, tag: int):
        """Post a non-blocking send; returns (request, buffer)."""
        buffer = np.ascontiguousarray(values)
        return self.comm.Isend(buffer, dest=self.neighb_rank, tag=tag), buffer

    def irecv(self, buffer: np.ndarray, tag: int):
        """Post a non-blocking receive into ``buffer``."""
        return self.comm.Irecv(buffer, source=self.neighb_rank, tag=tag)

    def init_exchange(self, values: np.ndarray, tag: int = TAG_VALUES) -> PendingExchange:
        send_buffer = np.ascontiguousarray(values)
        recv_buffer = np.empty_like(send_buffer)
        recv_request = self.irecv(recv_buffer, tag)
        send_request, send_buffer = self.isend(send_buffer, tag)
        return PendingExchange(send_request, recv_request, send_buffer, recv_buffer)

    def agglomerate(self, restrict_addressing, neighbour_restrict) -> tuple[ProcessorInterface, np.ndarray]:
        """Agglomerate interface faces that connect the same two coarse cells.

        Coarse faces are the unique (lower-rank-side cell, higher-rank-side
        cell) pairs, sorted, so both sides derive the same face order.
        """
        my_coarse = restrict_addressing[self.face_cells].astype(np.int64)
        nbr_coarse = np.asarray(neighbour_restrict, dtype=np.int64)

        if self.owner:
            keys = (my_coarse << 32) | nbr_coarse
        else:
            keys = (nbr_coarse << 32) | my_coarse
        unique_keys, face_restrict = np.unique(keys, return_inverse=True)
        face_restrict = face_restrict.reshape(-1)

        if self.owner:
            coarse_cells = unique_keys >> 32
        else:
            coarse_cells = unique_keys & 0xFFFFFFFF
        coarse = ProcessorInterface(coarse_cells, self.neighb_rank, self.comm)
        return coarse, face_restrict

    def __repr__(self):
        return (
            f"ProcessorInterface(rank={self.my_rank}, neighb_rank={self.neighb_rank}, "
            f"size={self.size})"
        )
