"""Host side of the HCI link: commands, event dispatch and ACL data flow."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, TextIO

from .l2cap import SIGNALING_CID, L2capSignaling
from .packets import (
    ACL_FLAG_CONTINUATION,
    CommandComplete,
    CommandStatus,
    DisconnectionComplete,
    LeAdvertisingReport,
    LeConnectionComplete,
    NumberOfCompletedPackets,
    PacketAssembler,
    PacketType,
    build_acl_packet,
    build_command,
    format_packet,
    make_opcode,
    parse_acl_header,
    parse_event,
)
from .transport import Transport

ATT_CID = 0x0004

OGF_LINK_CTL = 0x01
OGF_HOST_CTL = 0x03
OGF_INFO_PARAM = 0x04
OGF_STATUS_PARAM = 0x05
OGF_LE_CTL = 0x08

OCF_DISCONNECT = 0x0006
OCF_SET_EVENT_MASK = 0x0001
OCF_RESET = 0x0003
OCF_READ_LOCAL_VERSION = 0x0001
OCF_READ_BD_ADDR = 0x0009
OCF_READ_RSSI = 0x0005
OCF_LE_READ_BUFFER_SIZE = 0x0002
OCF_LE_SET_RANDOM_ADDRESS = 0x0005
OCF_LE_SET_ADVERTISING_PARAMETERS = 0x0006
OCF_LE_SET_ADVERTISING_DATA = 0x0008
OCF_LE_SET_SCAN_RESPONSE_DATA = 0x0009
OCF_LE_SET_ADVERTISE_ENABLE = 0x000A
OCF_LE_SET_SCAN_PARAMETERS = 0x000B
OCF_LE_SET_SCAN_ENABLE = 0x000C
OCF_LE_CREATE_CONN = 0x000D
OCF_LE_CANCEL_CONN = 0x000E
OCF_LE_CONN_UPDATE = 0x0013

HCI_OE_USER_ENDED_CONNECTION = 0x13

RSSI_UNAVAILABLE = 127
MAX_ADVERTISING_DATA = 31
ACL_HEADER_OVERHEAD = 9

_NO_OPCODE = 0xFFFF
_ACL_HEADER_SIZE = 8

_LOCAL_VERSION = struct.Struct("<BHBHH")
_READ_RSSI = struct.Struct("<Hb")
_LE_BUFFER_SIZE = struct.Struct("<HB")
_ADV_PARAMETERS = struct.Struct("<HHBBB6sBB")
_SCAN_PARAMETERS = struct.Struct("<BHHBB")
_CREATE_CONN = struct.Struct("<HHBB6sBHHHHHH")
_CONN_UPDATE = struct.Struct("<HHHHHHH")
_DISCONNECT = struct.Struct("<HB")
_L2CAP_REJECT = struct.Struct("<BBHHHH")


class HciError(Exception):
    """A command failed or the controller did not answer in time."""

    def __init__(self, opcode: int, status: Optional[int]) -> None:
        self.opcode = opcode
        self.status = status
        if status is None:
            message = f"command 0x{opcode:04X} timed out"
        else:
            message = f"command 0x{opcode:04X} failed with status 0x{status:02X}"
        super().__init__(message)


@dataclass(frozen=True)
class LocalVersion:
    hci_version: int
    hci_revision: int
    lmp_version: int
    manufacturer: int
    lmp_subversion: int


@dataclass(frozen=True)
class LeBufferSize:
    packet_length: int
    max_packets: int


class AttLayer(Protocol):
    def handle_data(self, handle: int, data: bytes) -> object: ...

    def add_connection(self, handle, role, peer_bdaddr_type, peer_bdaddr, interval,
                       latency, supervision_timeout, master_clock_accuracy) -> object: ...

    def remove_connection(self, handle: int, reason: int) -> object: ...

    def set_max_mtu(self, mtu: int) -> object: ...


class GapLayer(Protocol):
    def handle_le_advertising_report(self, adv_type, peer_bdaddr_type, peer_bdaddr,
                                     eir_data, rssi) -> object: ...


class Hci:
    """Drives a Bluetooth controller over an HCI transport."""

    def __init__(
        self,
        transport: Transport,
        att: Optional[AttLayer] = None,
        l2cap: Optional[L2capSignaling] = None,
        gap: Optional[GapLayer] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        command_timeout: float = 1.0,
    ) -> None:
        self.transport = transport
        self.att = att
        self.l2cap = l2cap if l2cap is not None else L2capSignaling(self)
        self.gap = gap
        self.command_timeout = command_timeout
        self._clock = clock
        self._debug: Optional[TextIO] = None
        self._assembler = PacketAssembler()
        self._in_packet = False
        self._cmd_opcode = _NO_OPCODE
        self._cmd_status: Optional[int] = None
        self._cmd_response = b""
        self._max_pkt = 0
        self._pending_pkt = 0
        self._acl_buffer = bytearray()

    @property
    def pending_packets(self) -> int:
        """ACL packets sent and not yet reported complete by the controller."""
        return self._pending_pkt

    @property
    def max_packets(self) -> int:
        """ACL packets the controller can buffer, as read from the controller."""
        return self._max_pkt

    def begin(self) -> bool:
        self._assembler.reset()
        self._in_packet = False
        return self.transport.begin()

    def end(self) -> None:
        self.transport.end()

    def poll(self, timeout: float = 0) -> None:
        """Process every byte the transport has, waiting up to ``timeout`` first."""
        if timeout:
            self.transport.wait(timeout)

        while self.transport.available():
            byte = self.transport.read()
            if byte is None:
                break
            starts = byte in (PacketType.ACL_DATA, PacketType.EVENT)
            if not self._in_packet and not starts:
                if self._debug is not None:
                    self._debug.write(f"{byte:X}\n")
                continue
            packet = self._assembler.feed(byte)
            if packet is None:
                self._in_packet = True
                continue
            self._in_packet = False
            kind, body = packet
            if kind == PacketType.ACL_DATA:
                self._dump("HCI ACLDATA RX <- ", bytes([kind]) + body)
                self._handle_acl_data(body)
            else:
                self._dump("HCI EVENT RX <- ", bytes([kind]) + body)
                self._handle_event(body)

    def reset(self) -> None:
        self._send_command(make_opcode(OGF_HOST_CTL, OCF_RESET))

    def read_local_version(self) -> LocalVersion:
        response = self._send_command(make_opcode(OGF_INFO_PARAM, OCF_READ_LOCAL_VERSION))
        return LocalVersion(*self._unpack(_LOCAL_VERSION, response))

    def read_bd_addr(self) -> bytes:
        response = self._send_command(make_opcode(OGF_INFO_PARAM, OCF_READ_BD_ADDR))
        if len(response) < 6:
            raise ValueError("controller response too short")
        return bytes(response[:6])

    def read_rssi(self, handle: int) -> int:
        """RSSI of a connection, or 127 when it cannot be read."""
        try:
            response = self._send_command(
                make_opcode(OGF_STATUS_PARAM, OCF_READ_RSSI), struct.pack("<H", handle)
            )
            reported_handle, rssi = self._unpack(_READ_RSSI, response)
        except (HciError, ValueError):
            return RSSI_UNAVAILABLE
        return rssi if reported_handle == handle else RSSI_UNAVAILABLE

    def set_event_mask(self, event_mask: int) -> None:
        self._send_command(
            make_opcode(OGF_HOST_CTL, OCF_SET_EVENT_MASK), struct.pack("<Q", event_mask)
        )

    def read_le_buffer_size(self) -> LeBufferSize:
        response = self._send_command(make_opcode(OGF_LE_CTL, OCF_LE_READ_BUFFER_SIZE))
        pkt_len, max_pkt = self._unpack(_LE_BUFFER_SIZE, response)
        self._max_pkt = max_pkt
        if self.att is not None:
            self.att.set_max_mtu(pkt_len - ACL_HEADER_OVERHEAD)
        return LeBufferSize(pkt_len, max_pkt)

    def le_set_random_address(self, addr: bytes) -> None:
        self._send_command(
            make_opcode(OGF_LE_CTL, OCF_LE_SET_RANDOM_ADDRESS), _address(addr)
        )

    def le_set_advertising_parameters(self, min_interval, max_interval, adv_type,
                                      own_bdaddr_type, direct_bdaddr_type, direct_bdaddr,
                                      chan_map, filter_policy) -> None:
        params = _ADV_PARAMETERS.pack(
            min_interval, max_interval, adv_type, own_bdaddr_type,
            direct_bdaddr_type, _address(direct_bdaddr), chan_map, filter_policy,
        )
        self._send_command(make_opcode(OGF_LE_CTL, OCF_LE_SET_ADVERTISING_PARAMETERS), params)

    def le_set_advertising_data(self, data: bytes) -> None:
        self._send_command(
            make_opcode(OGF_LE_CTL, OCF_LE_SET_ADVERTISING_DATA), _advertising_block(data)
        )

    def le_set_scan_response_data(self, data: bytes) -> None:
        self._send_command(
            make_opcode(OGF_LE_CTL, OCF_LE_SET_SCAN_RESPONSE_DATA), _advertising_block(data)
        )

    def le_set_advertise_enable(self, enable: int) -> None:
        self._send_command(
            make_opcode(OGF_LE_CTL, OCF_LE_SET_ADVERTISE_ENABLE), bytes([int(enable)])
        )

    def le_set_scan_parameters(self, scan_type, interval, window, own_bdaddr_type,
                               filter_policy) -> None:
        params = _SCAN_PARAMETERS.pack(scan_type, interval, window, own_bdaddr_type, filter_policy)
        self._send_command(make_opcode(OGF_LE_CTL, OCF_LE_SET_SCAN_PARAMETERS), params)

    def le_set_scan_enable(self, enabled, duplicates) -> None:
        self._send_command(
            make_opcode(OGF_LE_CTL, OCF_LE_SET_SCAN_ENABLE),
            bytes([int(enabled), int(duplicates)]),
        )

    def le_create_conn(self, interval, window, initiator_filter, peer_bdaddr_type,
                       peer_bdaddr, own_bdaddr_type, min_interval, max_interval, latency,
                       supervision_timeout, min_ce_length, max_ce_length) -> None:
        params = _CREATE_CONN.pack(
            interval, window, initiator_filter, peer_bdaddr_type, _address(peer_bdaddr),
            own_bdaddr_type, min_interval, max_interval, latency, supervision_timeout,
            min_ce_length, max_ce_length,
        )
        self._send_command(make_opcode(OGF_LE_CTL, OCF_LE_CREATE_CONN), params)

    def le_conn_update(self, handle, min_interval, max_interval, latency,
                       supervision_timeout) -> None:
        params = _CONN_UPDATE.pack(
            handle, min_interval, max_interval, latency, supervision_timeout, 0x0004, 0x0006
        )
        self._send_command(make_opcode(OGF_LE_CTL, OCF_LE_CONN_UPDATE), params)

    def le_cancel_conn(self) -> None:
        self._send_command(make_opcode(OGF_LE_CTL, OCF_LE_CANCEL_CONN))

    def send_acl_packet(self, handle: int, cid: int, data: bytes) -> None:
        """Send one L2CAP PDU, waiting while the controller's buffers are full."""
        while self._pending_pkt >= self._max_pkt:
            self.poll()
        packet = build_acl_packet(handle, cid, data)
        self._dump("HCI ACLDATA TX -> ", packet)
        self._pending_pkt += 1
        self.transport.write(packet)

    def disconnect(self, handle: int) -> None:
        self._send_command(
            make_opcode(OGF_LINK_CTL, OCF_DISCONNECT),
            _DISCONNECT.pack(handle, HCI_OE_USER_ENDED_CONNECTION),
        )

    def debug(self, stream: TextIO) -> None:
        self._debug = stream

    def no_debug(self) -> None:
        self._debug = None

    def _send_command(self, opcode: int, parameters: bytes = b"") -> bytes:
        packet = build_command(opcode, parameters)
        self._dump("HCI COMMAND TX -> ", packet)
        self.transport.write(packet)

        self._cmd_opcode = _NO_OPCODE
        self._cmd_status = None
        self._cmd_response = b""

        deadline = self._clock() + self.command_timeout
        while self._cmd_opcode != opcode and self._clock() < deadline:
            self.poll()

        if self._cmd_opcode != opcode or self._cmd_status is None:
            raise HciError(opcode, None)
        if self._cmd_status != 0:
            raise HciError(opcode, self._cmd_status)
        return self._cmd_response

    @staticmethod
    def _unpack(layout: struct.Struct, response: bytes) -> tuple:
        if len(response) < layout.size:
            raise ValueError("controller response too short")
        return layout.unpack_from(response)

    def _handle_acl_data(self, body: bytes) -> None:
        try:
            header = parse_acl_header(body)
        except ValueError:
            return
        incoming_flags = header.flags

        if not header.complete:
            if incoming_flags != ACL_FLAG_CONTINUATION:
                self._acl_buffer = bytearray(body[:4 + header.dlen])
            else:
                if len(self._acl_buffer) < _ACL_HEADER_SIZE:
                    return
                self._acl_buffer.extend(body[4:4 + header.dlen])
                buffered_dlen = struct.unpack_from("<H", self._acl_buffer, 2)[0]
                struct.pack_into("<H", self._acl_buffer, 2, (buffered_dlen + header.dlen) & 0xFFFF)
                header = parse_acl_header(self._acl_buffer)

        if not header.complete:
            return

        source = self._acl_buffer if incoming_flags == ACL_FLAG_CONTINUATION else body
        payload = bytes(source[_ACL_HEADER_SIZE:_ACL_HEADER_SIZE + header.length])

        if header.cid == ATT_CID:
            if self.att is not None:
                self.att.handle_data(header.handle, payload)
        elif header.cid == SIGNALING_CID:
            self.l2cap.handle_data(header.handle, payload)
        else:
            reject = _L2CAP_REJECT.pack(0x01, 0x00, 0x0006, 0x0002, header.cid, 0x0000)
            self.send_acl_packet(header.handle, SIGNALING_CID, reject)

    def _handle_num_comp_pkts(self, num_pkts: int) -> None:
        if num_pkts and self._pending_pkt > num_pkts:
            self._pending_pkt -= num_pkts
        else:
            self._pending_pkt = 0

    def _handle_event(self, body: bytes) -> None:
        try:
            event = parse_event(body)
        except ValueError:
            return

        if isinstance(event, DisconnectionComplete):
            if self.att is not None:
                self.att.remove_connection(event.handle, event.reason)
            self.l2cap.remove_connection(event.handle, event.reason)
            try:
                self.le_set_advertise_enable(0x01)
            except HciError:
                pass
        elif isinstance(event, CommandComplete):
            self._cmd_opcode = event.opcode
            self._cmd_status = event.status
            self._cmd_response = event.response
        elif isinstance(event, CommandStatus):
            self._cmd_opcode = event.opcode
            self._cmd_status = event.status
            self._cmd_response = b""
        elif isinstance(event, NumberOfCompletedPackets):
            for _handle, count in event.entries:
                self._handle_num_comp_pkts(count)
        elif isinstance(event, LeConnectionComplete):
            if event.status == 0x00:
                args = (
                    event.handle, event.role, event.peer_bdaddr_type, event.peer_bdaddr,
                    event.interval, event.latency, event.supervision_timeout,
                    event.master_clock_accuracy,
                )
                if self.att is not None:
                    self.att.add_connection(*args)
                self.l2cap.add_connection(*args)
        elif isinstance(event, LeAdvertisingReport):
            if event.status == 0x01 and self.gap is not None:
                self.gap.handle_le_advertising_report(
                    event.type, event.peer_bdaddr_type, event.peer_bdaddr,
                    event.eir_data, event.rssi,
                )

    def _dump(self, prefix: str, data: bytes) -> None:
        if self._debug is None:
            return
        self._debug.write(format_packet(prefix, data) + "\n")
        flush = getattr(self._debug, "flush", None)
        if flush is not None:
            flush()


def _address(addr: bytes) -> bytes:
    value = bytes(addr)
    if len(value) != 6:
        raise ValueError("Bluetooth device address must be 6 bytes")
    return value


def _advertising_block(data: bytes) -> bytes:
    value = bytes(data)
    if len(value) > MAX_ADVERTISING_DATA:
        raise ValueError("advertising data longer than 31 bytes")
    return bytes([len(value)]) + value.ljust(MAX_ADVERTISING_DATA, b"\x00")