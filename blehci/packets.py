"""Wire formats of HCI packets: building commands and ACL data, framing and parsing."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple, Union

EVT_DISCONN_COMPLETE = 0x05
EVT_CMD_COMPLETE = 0x0E
EVT_CMD_STATUS = 0x0F
EVT_NUM_COMP_PKTS = 0x13
EVT_LE_META_EVENT = 0x3E

EVT_LE_CONN_COMPLETE = 0x01
EVT_LE_ADVERTISING_REPORT = 0x02

ACL_FLAG_CONTINUATION = 0x01

_COMMAND_HEADER = struct.Struct("<BHB")
_ACL_PACKET_HEADER = struct.Struct("<BHHHH")
_ACL_HEADER = struct.Struct("<HHHH")
_EVENT_HEADER = struct.Struct("<BB")
_CMD_COMPLETE = struct.Struct("<BHB")
_CMD_STATUS = struct.Struct("<BBH")
_DISCONN_COMPLETE = struct.Struct("<BHB")
_HANDLE_COUNT = struct.Struct("<HH")
_LE_CONN_COMPLETE = struct.Struct("<BHBB6sHHHB")
_LE_ADV_REPORT = struct.Struct("<BBB6sB")


class PacketType(IntEnum):
    """Indicator byte that opens every packet on the transport."""

    COMMAND = 0x01
    ACL_DATA = 0x02
    EVENT = 0x04


@dataclass(frozen=True)
class AclHeader:
    """Header of an incoming ACL data packet."""

    handle: int
    flags: int
    dlen: int
    length: int
    cid: int

    @property
    def complete(self) -> bool:
        """True when the L2CAP payload fits entirely in this packet."""
        return self.dlen - 4 == self.length


@dataclass(frozen=True)
class CommandComplete:
    ncmd: int
    opcode: int
    status: int
    response: bytes = b""


@dataclass(frozen=True)
class CommandStatus:
    status: int
    ncmd: int
    opcode: int


@dataclass(frozen=True)
class DisconnectionComplete:
    status: int
    handle: int
    reason: int


@dataclass(frozen=True)
class NumberOfCompletedPackets:
    entries: List[Tuple[int, int]] = field(default_factory=list)


@dataclass(frozen=True)
class LeConnectionComplete:
    status: int
    handle: int
    role: int
    peer_bdaddr_type: int
    peer_bdaddr: bytes
    interval: int
    latency: int
    supervision_timeout: int
    master_clock_accuracy: int


@dataclass(frozen=True)
class LeAdvertisingReport:
    status: int
    type: int
    peer_bdaddr_type: int
    peer_bdaddr: bytes
    eir_data: bytes
    rssi: int


Event = Union[
    CommandComplete,
    CommandStatus,
    DisconnectionComplete,
    NumberOfCompletedPackets,
    LeConnectionComplete,
    LeAdvertisingReport,
]


def make_opcode(ogf: int, ocf: int) -> int:
    """Combine an opcode group and command field into a 16-bit opcode."""
    return (ogf << 10 | ocf) & 0xFFFF


def build_command(opcode: int, parameters: bytes = b"") -> bytes:
    """Frame an HCI command packet."""
    params = bytes(parameters)
    if len(params) > 0xFF:
        raise ValueError("command parameters longer than 255 bytes")
    return _COMMAND_HEADER.pack(PacketType.COMMAND, opcode & 0xFFFF, len(params)) + params


def build_acl_packet(handle: int, cid: int, payload: bytes) -> bytes:
    """Frame an outgoing ACL data packet carrying one L2CAP PDU."""
    body = bytes(payload)
    plen = len(body)
    if plen > 0xFF:
        raise ValueError("ACL payload longer than 255 bytes")
    header = _ACL_PACKET_HEADER.pack(
        PacketType.ACL_DATA, handle & 0xFFFF, (plen + 4) & 0xFF, plen, cid & 0xFFFF
    )
    return header + body


def parse_acl_header(data: bytes) -> AclHeader:
    """Decode the header of an ACL packet given without its indicator byte."""
    try:
        raw_handle, dlen, length, cid = _ACL_HEADER.unpack_from(bytes(data))
    except struct.error as exc:
        raise ValueError("ACL packet too short") from exc
    return AclHeader(
        handle=raw_handle & 0x0FFF,
        flags=(raw_handle & 0xF000) >> 12,
        dlen=dlen,
        length=length,
        cid=cid,
    )


def parse_event(data: bytes) -> Optional[Event]:
    """Decode an event packet given without its indicator byte.

    Events the host does not handle yield None; truncated ones raise ValueError.
    """
    data = bytes(data)
    try:
        return _parse_event(data)
    except (struct.error, IndexError) as exc:
        raise ValueError("event packet too short") from exc


def _parse_event(data: bytes) -> Optional[Event]:
    evt, plen = _EVENT_HEADER.unpack_from(data)
    offset = _EVENT_HEADER.size

    if evt == EVT_DISCONN_COMPLETE:
        return DisconnectionComplete(*_DISCONN_COMPLETE.unpack_from(data, offset))

    if evt == EVT_CMD_COMPLETE:
        ncmd, opcode, status = _CMD_COMPLETE.unpack_from(data, offset)
        start = offset + _CMD_COMPLETE.size
        response = data[start:offset + plen] if plen > _CMD_COMPLETE.size else b""
        return CommandComplete(ncmd, opcode, status, response)

    if evt == EVT_CMD_STATUS:
        return CommandStatus(*_CMD_STATUS.unpack_from(data, offset))

    if evt == EVT_NUM_COMP_PKTS:
        count = data[offset]
        entries = [
            _HANDLE_COUNT.unpack_from(data, offset + 1 + n * _HANDLE_COUNT.size)
            for n in range(count)
        ]
        return NumberOfCompletedPackets(entries)

    if evt == EVT_LE_META_EVENT:
        subevent = data[offset]
        offset += 1
        if subevent == EVT_LE_CONN_COMPLETE:
            return LeConnectionComplete(*_LE_CONN_COMPLETE.unpack_from(data, offset))
        if subevent == EVT_LE_ADVERTISING_REPORT:
            status, adv_type, addr_type, addr, eir_len = _LE_ADV_REPORT.unpack_from(data, offset)
            start = offset + _LE_ADV_REPORT.size
            eir = data[start:start + eir_len]
            if len(eir) != eir_len:
                raise IndexError("advertising data truncated")
            rssi_byte = data[start + eir_len]
            rssi = rssi_byte - 0x100 if rssi_byte & 0x80 else rssi_byte
            return LeAdvertisingReport(status, adv_type, addr_type, addr, eir, rssi)

    return None


class PacketAssembler:
    """Collects transport bytes into whole ACL data and event packets."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def reset(self) -> None:
        """Drop any partly received packet."""
        self._buffer.clear()

    def feed(self, byte: int) -> Optional[Tuple[PacketType, bytes]]:
        """Add one byte; return the packet type and body once a packet is complete.

        Bytes that cannot start a known packet are discarded.
        """
        if not 0 <= byte <= 0xFF:
            raise ValueError("byte out of range")
        buf = self._buffer
        buf.append(byte)
        received = len(buf)

        if buf[0] == PacketType.ACL_DATA:
            if received > 5 and received >= 5 + (buf[3] | buf[4] << 8):
                return self._take(PacketType.ACL_DATA)
        elif buf[0] == PacketType.EVENT:
            if received > 3 and received >= 3 + buf[2]:
                return self._take(PacketType.EVENT)
        else:
            buf.clear()
        return None

    def _take(self, kind: PacketType) -> Tuple[PacketType, bytes]:
        body = bytes(self._buffer[1:])
        self._buffer.clear()
        return kind, body


def format_packet(prefix: str, data: bytes) -> str:
    """Render a packet as the prefix followed by uppercase hex bytes."""
    return prefix + bytes(data).hex().upper()