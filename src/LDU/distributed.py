"""Incomplete-factorisation preconditioners across processor boundaries.

Ranks are ordered by rank number: rows coupled to a lower-ranked neighbour
behave as if they came after the neighbour's rows in the global ordering.
The factorisation is therefore pipelined in rank order:

- pivots and the forward sweep wait for the final values of the
  lower-ranked neighbours, then send their own to the higher-ranked ones
- the backward sweep waits for the higher-ranked neighbours and sends to
  the lower-ranked ones

Every call uses only values computed within that call, so the
preconditioner is a fixed linear operator. When each rank holds a
contiguous block of the global cells (``slice_partition``) the result is
the single-rank DIC/DILU result.
"""

from __future__ import annotations

import numpy as np

from .base import Preconditioner, safe_reciprocal
from .interfaces import TAG_BACKWARD, TAG_FORWARD
from .preconditioners import DILUPreconditioner
from .registry import PRECONDITIONERS


@PRECONDITIONERS.register("distributedDILU")
class DistributedDILUPreconditioner(DILUPreconditioner):
    """DILU preconditioner coupled over processor interfaces.

    Set ``coupled: false`` in the preconditioner controls to ignore the
    interfaces (the result is then the plain DILU one).
    """

    def __init__(self, matrix, controls):
        Preconditioner.__init__(self, matrix, controls)
        self.kernels = matrix.kernels
        self.coupled = controls.coupled

        ifaces = matrix.interfaces if self.coupled else []
        self.lower_interfaces = [i for i, iface in enumerate(ifaces) if not iface.owner]
        self.upper_interfaces = [i for i, iface in enumerate(ifaces) if iface.owner]
        self.neighbour_coeffs = self._exchange_coeffs()

        self.rD = self._calc_reciprocal_d()

    def _exchange_coeffs(self) -> list:
        """Coupling coefficients of the other side of each coupled interface."""
        m = self.matrix
        coupled = self.lower_interfaces + self.upper_interfaces
        pending = {i: m.interfaces[i].init_exchange(m.boundary_coeffs(i)) for i in coupled}
        return [pending[i].wait().copy() if i in pending else None for i in range(len(m.interfaces))]

    def _receive(self, interfaces, tag) -> dict:
        """Blocking receive of one value per face from each interface."""
        m = self.matrix
        received = {}
        requests = []
        for i in interfaces:
            received[i] = np.empty(m.interfaces[i].size)
            requests.append(m.interfaces[i].irecv(received[i], tag))
        for request in requests:
            request.Wait()
        return received

    def _send(self, interfaces, values, tag) -> list:
        m = self.matrix
        return [m.interfaces[i].isend(values[m.interfaces[i].face_cells], tag) for i in interfaces]

    def _calc_reciprocal_d(self) -> np.ndarray:
        m = self.matrix
        rD = m.diag.copy()

        # Final pivots of the lower-ranked neighbours
        nbr_pivots = self._receive(self.lower_interfaces, TAG_FORWARD)
        for i, pivots in nbr_pivots.items():
            np.subtract.at(
                rD,
                m.interfaces[i].face_cells,
                m.boundary_coeffs(i) * self.neighbour_coeffs[i] * safe_reciprocal(pivots),
            )

        m.kernels.ilu_pivots(
            rD, m.addressing.lower_addr, m.addressing.upper_addr, m.lower(), m.upper()
        )

        for request, _ in self._send(self.upper_interfaces, rD, TAG_FORWARD):
            request.Wait()
        return safe_reciprocal(rD)

    def _apply(self, wA, rA, lower, upper, interface_coeffs):
        m = self.matrix
        l, u = m.addressing.lower_addr, m.addressing.upper_addr
        np.multiply(self.rD, rA, out=wA)

        # Forward sweep after the lower-ranked neighbours
        for i, values in self._receive(self.lower_interfaces, TAG_FORWARD).items():
            fc = m.interfaces[i].face_cells
            np.add.at(wA, fc, self.rD[fc] * interface_coeffs[i] * values)
        self.kernels.ilu_forward(wA, self.rD, l, u, lower)
        sends = self._send(self.upper_interfaces, wA, TAG_FORWARD)

        # Backward sweep after the higher-ranked neighbours
        for i, values in self._receive(self.upper_interfaces, TAG_BACKWARD).items():
            fc = m.interfaces[i].face_cells
            np.add.at(wA, fc, self.rD[fc] * interface_coeffs[i] * values)
        self.kernels.ilu_backward(wA, self.rD, l, u, upper)
        sends += self._send(self.lower_interfaces, wA, TAG_BACKWARD)

        for request, _ in sends:
            request.Wait()

    def precondition(self, wA, rA):
        m = self.matrix
        self._apply(wA, rA, m.lower(), m.upper(), m.boundary_coeffs_list)

    def precondition_t(self, wT, rT):
        m = self.matrix
        self._apply(wT, rT, m.upper(), m.lower(), self.neighbour_coeffs)


@PRECONDITIONERS.register("distributedDIC", asymmetric=False)
class DistributedDICPreconditioner(DistributedDILUPreconditioner):
    """DIC preconditioner coupled over processor interfaces."""

    def precondition_t(self, wT, rT):
        self.precondition(wT, rT)
