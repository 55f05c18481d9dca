# blehci

The host side of a Bluetooth Low Energy Host Controller Interface (HCI), in
plain Python with no dependencies. It does the following:

- frames HCI commands and outgoing ACL data packets;
- collects bytes from a controller into whole ACL data and event packets;
- decodes the events a host acts on and turns command results into return
  values or exceptions;
- reassembles fragmented ACL data;
- answers L2CAP connection-parameter update requests on the signaling channel.

## Modules

### `blehci.transport`

`Transport` is the abstract byte-stream interface to a controller. It has
`begin`, `end`, `wait(timeout)`, `available`, `peek`, `read` and `write(data)`.
`peek` and `read` return `None` when nothing is waiting.

`UartTransport(uart, baudrate=912600, clock=time.monotonic)` runs the interface
over a serial-port-like object. That object needs the following members:

- the attributes `baudrate` and `is_open`;
- a readable `in_waiting` count;
- the methods `open()`, `close()`, `read(size)`, `write(data)` and `flush()`.

`begin` sets the baud rate and opens the port if it is not already open.
`write` flushes the port after every write. `wait(timeout)` busy-waits up to
`timeout` seconds for data.

### `blehci.packets`

- `PacketType` is the packet indicator byte: `COMMAND`, `ACL_DATA` or `EVENT`.
- `make_opcode(ogf, ocf)` combines a group and a command field into an opcode.
- `build_command(opcode, parameters)` frames a command packet.
- `build_acl_packet(handle, cid, payload)` frames an ACL packet.
- Both builders raise `ValueError` for payloads over 255 bytes.
- `parse_acl_header(data)` decodes an ACL header into an `AclHeader`. Its
  fields are `handle`, `flags`, `dlen`, `length` and `cid`, and it has a
  `complete` property.
- `parse_event(data)` decodes one of these events:
  - `CommandComplete`
  - `CommandStatus`
  - `DisconnectionComplete`
  - `NumberOfCompletedPackets`
  - `LeConnectionComplete`
  - `LeAdvertisingReport`

  It returns `None` for events it does not handle and raises `ValueError` for
  truncated ones.
- `PacketAssembler.feed(byte)` returns `(PacketType, body)` once a packet is
  complete. It discards bytes that cannot start a packet. `reset()` drops a
  partly received packet.
- `format_packet(prefix, data)` renders the prefix followed by uppercase hex.

### `blehci.l2cap`

`L2capSignaling(hci=None)` keeps the connection parameters you prefer. Set them
with `set_connection_interval(min_interval, max_interval)` and
`set_supervision_timeout(supervision_timeout)`. A value of 0 means no
preference.

- `add_connection(...)` records a new link. If this side is the peripheral
  (role 1) and the link breaks a preference, it sends a parameter update
  request.
- `handle_data(connection_handle, data)` handles a signaling PDU:
  - An update request gets an accept or reject reply. An accepted request is
    applied with `le_conn_update`.
  - An update response is stored in `update_results`.
  - Malformed PDUs are ignored.
- `remove_connection(handle, reason)` forgets a link.

### `blehci.hci`

`Hci` drives a controller through a `Transport`. Its signature is:

```python
Hci(transport, att=None, l2cap=None, gap=None, *, clock=time.monotonic, command_timeout=1.0)
```

Commands wait up to `command_timeout` seconds for the controller's answer.

- A nonzero status raises `HciError` with `opcode` and `status` set.
- No answer raises `HciError` with `status` set to `None`.

The commands are:

- `reset`
- `read_local_version`, which returns a `LocalVersion`
- `read_bd_addr`
- `read_rssi`, which returns 127 when the value cannot be read
- `set_event_mask`
- `read_le_buffer_size`, which returns a `LeBufferSize`
- `le_set_random_address`
- `le_set_advertising_parameters`
- `le_set_advertising_data` and `le_set_scan_response_data`, which take up to
  31 bytes
- `le_set_advertise_enable`
- `le_set_scan_parameters`
- `le_set_scan_enable`
- `le_create_conn`
- `le_conn_update`
- `le_cancel_conn`
- `disconnect`

`send_acl_packet(handle, cid, data)` sends one L2CAP PDU. While the
controller's buffers are full, it polls until the controller reports packets
as complete. The `pending_packets` and `max_packets` properties show that
state.

`poll(timeout=0)` processes every byte the transport has, after waiting up to
`timeout` seconds. Incoming packets are routed as follows:

| Incoming data | Where it goes |
|---|---|
| Signaling channel data | The `L2capSignaling` instance. A default one is created when none is given. |
| ATT channel data, connection events and disconnection events | The `att` object, through `handle_data`, `add_connection` and `remove_connection` |
| Data on any other channel | Rejected with an L2CAP command reject |
| Advertising reports | The `gap` object's `handle_le_advertising_report` |

`read_le_buffer_size` also passes the controller's packet length minus 9 to
`att.set_max_mtu`. After a disconnection, advertising is enabled again.

`debug(stream)` writes a hex dump of every packet sent and received to
`stream`. `no_debug()` stops it.

## Example

```python
from blehci.hci import Hci, HciError
from blehci.transport import UartTransport

hci = Hci(UartTransport(serial_port, 115200))
hci.begin()
try:
    hci.reset()
    version = hci.read_local_version()
    address = hci.read_bd_addr()
    hci.le_set_advertising_data(bytes([0x02, 0x01, 0x06]))
    hci.le_set_advertise_enable(1)
except HciError as error:
    print("controller refused:", error)

while True:
    hci.poll(0.1)
```

## What it does not do

This package has no ATT or GATT server and no GAP logic for scanning or
advertising. To handle ATT data or advertising reports, pass your own objects
as `att` and `gap`. Without them, that traffic is dropped. The package also
provides no command-line tool, and `UartTransport` is the only transport it
provides.

## Tests

```
pip install -e .[test]
pytest
```