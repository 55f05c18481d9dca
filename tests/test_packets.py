import struct

import pytest

from blehci.packets import (
    AclHeader,
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


def feed_all(assembler, data):
    return [assembler.feed(b) for b in data]


def test_make_opcode_reset():
    assert make_opcode(0x03, 0x0003) == 0x0C03


def test_build_command_layout():
    opcode = make_opcode(0x08, 0x000A)
    params = bytes([0x01])
    packet = build_command(opcode, params)
    assert packet[0] == PacketType.COMMAND
    assert struct.unpack_from("<H", packet, 1)[0] == opcode
    assert packet[3] == len(params)
    assert packet[4:] == params


def test_build_command_without_parameters():
    packet = build_command(make_opcode(0x08, 0x000E))
    assert len(packet) == 4
    assert packet[3] == 0


def test_build_command_rejects_long_parameters():
    with pytest.raises(ValueError):
        build_command(0x0001, bytes(256))


def test_acl_packet_round_trip_through_assembler():
    payload = bytes([0x0A, 0x01, 0x00])
    packet = build_acl_packet(0x0040, 0x0004, payload)
    results = feed_all(PacketAssembler(), packet)
    assert all(r is None for r in results[:-1])
    kind, body = results[-1]
    assert kind == PacketType.ACL_DATA
    assert body == packet[1:]
    header = parse_acl_header(body)
    assert header.handle == 0x0040
    assert header.cid == 0x0004
    assert header.length == len(payload)
    assert header.dlen == len(payload) + 4
    assert header.complete
    assert body[8:] == payload


def test_acl_header_flags_split_from_handle():
    data = struct.pack("<HHHH", 0x2040, 10, 6, 4)
    header = parse_acl_header(data)
    assert header == AclHeader(handle=0x040, flags=2, dlen=10, length=6, cid=4)


def test_acl_header_fragment_is_incomplete():
    header = parse_acl_header(struct.pack("<HHHH", 0x0040, 8, 20, 4))
    assert not header.complete


def test_acl_header_too_short():
    with pytest.raises(ValueError):
        parse_acl_header(b"\x40\x00\x04")


def test_assembler_event_completion():
    packet = bytes([0x04, 0x0E, 0x04, 0x01, 0x03, 0x0C, 0x00])
    results = feed_all(PacketAssembler(), packet)
    assert all(r is None for r in results[:-1])
    assert results[-1] == (PacketType.EVENT, packet[1:])


def test_assembler_discards_unknown_byte():
    assembler = PacketAssembler()
    assert assembler.feed(0x7F) is None
    packet = bytes([0x04, 0x0F, 0x04, 0x00, 0x01, 0x03, 0x0C])
    results = feed_all(assembler, packet)
    assert results[-1] == (PacketType.EVENT, packet[1:])


def test_assembler_reset_drops_partial_packet():
    assembler = PacketAssembler()
    feed_all(assembler, bytes([0x04, 0x0E]))
    assembler.reset()
    packet = bytes([0x04, 0x0E, 0x04, 0x01, 0x03, 0x0C, 0x00])
    assert feed_all(assembler, packet)[-1] == (PacketType.EVENT, packet[1:])


def test_assembler_rejects_out_of_range_byte():
    with pytest.raises(ValueError):
        PacketAssembler().feed(256)


def test_parse_command_complete_with_response():
    opcode = make_opcode(0x04, 0x0009)
    response = bytes([0x11, 0x22, 0x33, 0x44, 0x55, 0x66])
    params = struct.pack("<BHB", 1, opcode, 0) + response
    event = parse_event(bytes([0x0E, len(params)]) + params)
    assert event == CommandComplete(ncmd=1, opcode=opcode, status=0, response=response)


def test_parse_command_status():
    opcode = make_opcode(0x08, 0x000D)
    params = struct.pack("<BBH", 0x0C, 1, opcode)
    event = parse_event(bytes([0x0F, len(params)]) + params)
    assert event == CommandStatus(status=0x0C, ncmd=1, opcode=opcode)


def test_parse_disconnection_complete():
    params = struct.pack("<BHB", 0, 0x0040, 0x13)
    event = parse_event(bytes([0x05, len(params)]) + params)
    assert event == DisconnectionComplete(status=0, handle=0x0040, reason=0x13)


def test_parse_number_of_completed_packets():
    params = bytes([2]) + struct.pack("<HHHH", 0x0040, 3, 0x0041, 1)
    event = parse_event(bytes([0x13, len(params)]) + params)
    assert isinstance(event, NumberOfCompletedPackets)
    assert event.entries == [(0x0040, 3), (0x0041, 1)]


def test_parse_le_connection_complete():
    addr = bytes([1, 2, 3, 4, 5, 6])
    params = bytes([0x01]) + struct.pack(
        "<BHBB6sHHHB", 0, 0x0040, 1, 0, addr, 24, 0, 400, 5
    )
    event = parse_event(bytes([0x3E, len(params)]) + params)
    assert event == LeConnectionComplete(
        status=0,
        handle=0x0040,
        role=1,
        peer_bdaddr_type=0,
        peer_bdaddr=addr,
        interval=24,
        latency=0,
        supervision_timeout=400,
        master_clock_accuracy=5,
    )


def test_parse_le_advertising_report_signed_rssi():
    addr = bytes([1, 2, 3, 4, 5, 6])
    eir = bytes([0x05, 0x09, ord("t"), ord("e"), ord("s"), ord("t")])
    params = bytes([0x02, 0x01, 0x03, 0x00]) + addr + bytes([len(eir)]) + eir + bytes([0xC4])
    event = parse_event(bytes([0x3E, len(params)]) + params)
    assert isinstance(event, LeAdvertisingReport)
    assert event.status == 0x01
    assert event.type == 0x03
    assert event.peer_bdaddr == addr
    assert event.eir_data == eir
    assert event.rssi == -60


def test_parse_unknown_event_is_none():
    assert parse_event(bytes([0x08, 0x01, 0x00])) is None


def test_parse_truncated_event_raises():
    with pytest.raises(ValueError):
        parse_event(bytes([0x0E, 0x04, 0x01]))


def test_format_packet():
    assert format_packet("HCI EVENT RX <- ", bytes([0x04, 0x0E, 0xAB])) == "HCI EVENT RX <- 040EAB"


def test_format_packet_pads_each_byte():
    data = bytes([0x00, 0x0F, 0x10])
    text = format_packet("> ", data)
    assert text.startswith("> ")
    assert len(text) == 2 + 2 * len(data)
    assert bytes.fromhex(text[2:]) == data