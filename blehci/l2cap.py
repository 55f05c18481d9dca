"""L2CAP signalling channel: connection parameter negotiation."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

SIGNALING_CID = 0x0005

CONNECTION_PARAMETER_UPDATE_REQUEST = 0x12
CONNECTION_PARAMETER_UPDATE_RESPONSE = 0x13

ROLE_PERIPHERAL = 1

_HEADER = struct.Struct("<BBH")
_UPDATE_PARAMETERS = struct.Struct("<HHHH")
_UPDATE_REQUEST = struct.Struct("<BBHHHHH")
_UPDATE_RESPONSE = struct.Struct("<BBHH")
_RESULT = struct.Struct("<H")

_ACCEPTED = 0x0000
_REJECTED = 0x0001


class HciLink(Protocol):
    """The controller operations the signalling channel needs."""

    def send_acl_packet(self, handle: int, cid: int, data: bytes) -> object: ...

    def le_conn_update(
        self,
        handle: int,
        min_interval: int,
        max_interval: int,
        latency: int,
        supervision_timeout: int,
    ) -> object: ...


@dataclass(frozen=True)
class ConnectionInfo:
    """Parameters of a link as reported when it was established."""

    role: int
    interval: int
    latency: int
    supervision_timeout: int


class L2capSignaling:
    """Enforces preferred connection parameters on the LE signalling channel."""

    def __init__(self, hci: Optional[HciLink] = None) -> None:
        self.hci = hci
        self.min_interval = 0
        self.max_interval = 0
        self.supervision_timeout = 0
        self.connections: Dict[int, ConnectionInfo] = {}
        self.update_results: Dict[int, int] = {}

    def add_connection(
        self,
        handle,
        role,
        peer_bdaddr_type,
        peer_bdaddr,
        interval,
        latency,
        supervision_timeout,
        master_clock_accuracy,
    ) -> None:
        """Ask the central for preferred parameters when the new link breaks them."""
        self.connections[handle] = ConnectionInfo(
            role, interval, latency, supervision_timeout
        )

        if role != ROLE_PERIPHERAL:
            return

        update = False
        new_min = new_max = interval
        new_timeout = supervision_timeout

        if self.min_interval and self.max_interval:
            if interval < self.min_interval or interval > self.max_interval:
                new_min, new_max = self.min_interval, self.max_interval
                update = True

        if self.supervision_timeout and supervision_timeout != self.supervision_timeout:
            new_timeout = self.supervision_timeout
            update = True

        if update:
            request = _UPDATE_REQUEST.pack(
                CONNECTION_PARAMETER_UPDATE_REQUEST,
                0x01,
                _UPDATE_PARAMETERS.size,
                new_min,
                new_max,
                0x0000,
                new_timeout,
            )
            self._link().send_acl_packet(handle, SIGNALING_CID, request)

    def handle_data(self, connection_handle, data) -> None:
        """Process one signalling PDU; malformed PDUs are ignored."""
        data = bytes(data)
        if len(data) < _HEADER.size:
            return
        code, identifier, length = _HEADER.unpack_from(data)
        if len(data) != _HEADER.size + length:
            return
        body = data[_HEADER.size:]

        if code == CONNECTION_PARAMETER_UPDATE_REQUEST:
            self._connection_parameter_update_request(connection_handle, identifier, body)
        elif code == CONNECTION_PARAMETER_UPDATE_RESPONSE:
            self._connection_parameter_update_response(connection_handle, identifier, body)

    def remove_connection(self, handle, reason) -> None:
        """Forget everything recorded about a closed connection."""
        self.connections.pop(handle, None)
        self.update_results.pop(handle, None)

    def set_connection_interval(self, min_interval, max_interval) -> None:
        self.min_interval = min_interval
        self.max_interval = max_interval

    def set_supervision_timeout(self, supervision_timeout) -> None:
        self.supervision_timeout = supervision_timeout

    def _connection_parameter_update_request(
        self, handle: int, identifier: int, body: bytes
    ) -> None:
        if len(body) < _UPDATE_PARAMETERS.size:
            return
        min_interval, max_interval, latency, timeout = _UPDATE_PARAMETERS.unpack_from(body)

        result = _ACCEPTED
        if self.min_interval and self.max_interval:
            if min_interval < self.min_interval or max_interval > self.max_interval:
                result = _REJECTED
        if self.supervision_timeout and timeout != self.supervision_timeout:
            result = _REJECTED

        response = _UPDATE_RESPONSE.pack(
            CONNECTION_PARAMETER_UPDATE_RESPONSE, identifier, 2, result
        )
        link = self._link()
        link.send_acl_packet(handle, SIGNALING_CID, response)

        if result == _ACCEPTED:
            link.le_conn_update(handle, min_interval, max_interval, latency, timeout)

    def _connection_parameter_update_response(
        self, handle: int, identifier: int, body: bytes
    ) -> None:
        """Record the central's answer to a parameter update request."""
        if len(body) < _RESULT.size:
            return
        (result,) = _RESULT.unpack_from(body)
        self.update_results[handle] = result

    def _link(self) -> HciLink:
        if self.hci is None:
            raise RuntimeError("no HCI link attached to the signalling channel")
        return self.hci