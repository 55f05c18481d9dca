import pytest

from blehci.l2cap import (
    CONNECTION_PARAMETER_UPDATE_REQUEST,
    CONNECTION_PARAMETER_UPDATE_RESPONSE,
    SIGNALING_CID,
    L2capSignaling,
)


class RecordingHci:
    def __init__(self):
        self.sent = []
        self.updates = []

    def send_acl_packet(self, handle, cid, data):
        self.sent.append((handle, cid, bytes(data)))
        return 0

    def le_conn_update(self, handle, min_interval, max_interval, latency, timeout):
        self.updates.append((handle, min_interval, max_interval, latency, timeout))
        return 0


PEER = bytes(6)


def make(min_interval=0, max_interval=0, timeout=0):
    hci = RecordingHci()
    signaling = L2capSignaling(hci)
    signaling.set_connection_interval(min_interval, max_interval)
    signaling.set_supervision_timeout(timeout)
    return hci, signaling


def update_request(identifier, min_i, max_i, latency, timeout):
    return (
        bytes([CONNECTION_PARAMETER_UPDATE_REQUEST, identifier, 8, 0])
        + min_i.to_bytes(2, "little")
        + max_i.to_bytes(2, "little")
        + latency.to_bytes(2, "little")
        + timeout.to_bytes(2, "little")
    )


def test_add_connection_as_central_is_ignored():
    hci, signaling = make(0x10, 0x20, 0xC8)
    signaling.add_connection(0x40, 0, 0, PEER, 0x30, 0, 0x64, 0)
    assert hci.sent == []


def test_add_connection_without_preferences_sends_nothing():
    hci, signaling = make()
    signaling.add_connection(0x40, 1, 0, PEER, 0x30, 0, 0x64, 0)
    assert hci.sent == []


def test_add_connection_within_preferences_sends_nothing():
    hci, signaling = make(0x10, 0x40, 0x64)
    signaling.add_connection(0x40, 1, 0, PEER, 0x30, 0, 0x64, 0)
    assert hci.sent == []


def test_add_connection_out_of_range_requests_update():
    hci, signaling = make(0x10, 0x20)
    signaling.add_connection(0x40, 1, 0, PEER, 0x30, 0, 0xC8, 0)
    assert len(hci.sent) == 1
    handle, cid, payload = hci.sent[0]
    assert handle == 0x40
    assert cid == SIGNALING_CID
    assert payload == bytes(
        [0x12, 0x01, 0x08, 0x00, 0x10, 0x00, 0x20, 0x00, 0x00, 0x00, 0xC8, 0x00]
    )


def test_add_connection_timeout_mismatch_keeps_interval():
    hci, signaling = make(timeout=0x64)
    signaling.add_connection(0x01, 1, 0, PEER, 0x30, 0, 0xC8, 0)
    payload = hci.sent[0][2]
    assert payload[0] == CONNECTION_PARAMETER_UPDATE_REQUEST
    assert int.from_bytes(payload[4:6], "little") == 0x30
    assert int.from_bytes(payload[6:8], "little") == 0x30
    assert int.from_bytes(payload[10:12], "little") == 0x64


def test_update_request_accepted():
    hci, signaling = make()
    signaling.handle_data(0x41, update_request(7, 0x18, 0x28, 0, 0x1F4))
    assert hci.sent == [
        (0x41, SIGNALING_CID, bytes([CONNECTION_PARAMETER_UPDATE_RESPONSE, 7, 2, 0, 0, 0]))
    ]
    assert hci.updates == [(0x41, 0x18, 0x28, 0, 0x1F4)]


def test_update_request_rejected_by_interval():
    hci, signaling = make(0x20, 0x30)
    signaling.handle_data(0x41, update_request(3, 0x18, 0x28, 0, 0x1F4))
    assert hci.sent == [
        (0x41, SIGNALING_CID, bytes([CONNECTION_PARAMETER_UPDATE_RESPONSE, 3, 2, 0, 1, 0]))
    ]
    assert hci.updates == []


def test_update_request_rejected_by_timeout():
    hci, signaling = make(timeout=0x64)
    signaling.handle_data(0x41, update_request(3, 0x18, 0x28, 0, 0x1F4))
    assert hci.sent[0][2][4] == 1
    assert hci.updates == []


def test_update_request_matching_preferences_accepted():
    hci, signaling = make(0x18, 0x28, 0x1F4)
    signaling.handle_data(0x02, update_request(9, 0x18, 0x28, 4, 0x1F4))
    assert hci.sent[0][2][4:] == b"\x00\x00"
    assert hci.updates == [(0x02, 0x18, 0x28, 4, 0x1F4)]


def test_short_pdu_ignored():
    hci, signaling = make()
    signaling.handle_data(0x01, b"\x12\x01\x08")
    assert hci.sent == [] and hci.updates == []


def test_length_mismatch_ignored():
    hci, signaling = make()
    signaling.handle_data(0x01, update_request(1, 0x18, 0x28, 0, 0x1F4)[:-1])
    assert hci.sent == [] and hci.updates == []


def test_truncated_update_parameters_ignored():
    hci, signaling = make()
    signaling.handle_data(
        0x01, bytes([CONNECTION_PARAMETER_UPDATE_REQUEST, 1, 4, 0, 1, 2, 3, 4])
    )
    assert hci.sent == []


def test_update_response_needs_no_action():
    hci, signaling = make()
    signaling.handle_data(
        0x01, bytes([CONNECTION_PARAMETER_UPDATE_RESPONSE, 1, 2, 0, 0, 0])
    )
    assert hci.sent == [] and hci.updates == []


def test_setters_store_preferences():
    _, signaling = make()
    signaling.set_connection_interval(6, 12)
    signaling.set_supervision_timeout(400)
    assert (signaling.min_interval, signaling.max_interval) == (6, 12)
    assert signaling.supervision_timeout == 400


def test_remove_connection_keeps_preferences():
    hci, signaling = make(0x10, 0x20, 0x64)
    signaling.remove_connection(0x40, 0x13)
    assert (signaling.min_interval, signaling.max_interval) == (0x10, 0x20)
    assert hci.sent == []


def test_missing_hci_raises():
    signaling = L2capSignaling()
    with pytest.raises(RuntimeError):
        signaling.handle_data(0x01, update_request(1, 0x18, 0x28, 0, 0x1F4))