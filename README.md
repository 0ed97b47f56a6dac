# tunoffload

Packet-level building blocks for TUN devices that exchange packets prefixed
with a virtio-net header:

- the one's-complement Internet checksum and the TCP pseudo-header sum,
- encoding and decoding of the virtio-net header,
- TCP receive coalescing: merging adjacent segments of one flow into a single
  large segment before it is written to a device,
- TCP segmentation: splitting one large segment read from a device into
  ordinary packets,
- an abstract `Device` interface and an in-memory, queue-backed device for
  testing code that talks to one.

It is pure Python with no runtime dependencies.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `tunoffload.checksum`

- `checksum_no_fold(data, initial)` – adds `data` to `initial` as big-endian
  16-bit words (an odd trailing byte counts as a high byte), without folding.
- `checksum(data, initial)` – the same sum folded to 16 bits. The result is
  not inverted; a header field stores `~checksum(...) & 0xFFFF`.
- `pseudo_header_checksum_no_fold(protocol, src_addr, dst_addr, total_len)` –
  the unfolded sum of a TCP/UDP pseudo-header.

### `tunoffload.device`

- `Device` – abstract base class with `file()`, `read(bufs, offset)`,
  `write(bufs, offset)`, `mtu()`, `name()`, `events()`, `close()` and
  `batch_size()`. `read` returns the size of each packet it placed in `bufs`;
  `events()` returns a `queue.Queue` on which `None` marks the end. A device
  is a context manager that closes itself on exit.
- `Event` – the flags `UP`, `DOWN` and `MTU_UPDATE`.
- `TooManySegmentsError` – raised when segmentation yields more packets than
  there are buffers; its `segments` attribute holds the count filled before
  the overflow.

### `tunoffload.virtio`

`VirtioNetHdr` is a dataclass with `flags`, `gso_type`, `hdr_len`,
`gso_size`, `csum_start` and `csum_offset`. `encode()` returns its 10-byte
wire form in host byte order; `VirtioNetHdr.decode(data)` parses one from the
start of `data` and raises `ValueError` if `data` is too short. The module
also defines `VIRTIO_NET_HDR_LEN` and the `VIRTIO_NET_HDR_F_*` and
`VIRTIO_NET_HDR_GSO_*` constants.

### `tunoffload.gro`

`handle_gro(bufs, offset, tcp4_table, tcp6_table)` takes a list of
`bytearray`s, each holding an IP packet after `offset` bytes of headroom, and
coalesces IPv4 TCP packets without IP options and IPv6 TCP packets without
extension headers. It returns the indices of the buffers still to be written;
each of those gets a virtio-net header written just before `offset`. Merged
packets are appended to (or, for an out-of-order earlier segment, prepended
to) another buffer in place, and two buffers may swap places in the list. It
raises `ValueError` when `offset` is shorter than a virtio-net header or lies
past the end of a buffer.

Segments are merged only when they belong to the same flow (addresses, ports
and acknowledgement number), follow one another in sequence, carry only ACK
(or ACK with PSH on the last segment), have equal TCP options and equal
TTL/hop limit, ToS/traffic class and DF bits, are not fragments, and have
valid TCP checksums. A merged packet's size is limited to 65535 bytes less
twice the headroom.

`TCPGROTable` holds per-flow state for one batch and can be reused after
`reset()`. The lower-level steps are available as `tcp_gro`,
`tcp_packets_can_coalesce`, `coalesce_tcp_packets`, `tcp_checksum_valid`,
`is_tcp4_no_ip_options` and `is_tcp6_no_eh`, with the `CanCoalesce` and
`CoalesceResult` enums.

### `tunoffload.tso`

- `tcp_tso(data, hdr, out_bufs, out_offset)` splits the TCP packet in `data`
  into segments of at most `hdr.gso_size` payload bytes, one per buffer,
  written at `out_offset`. Each segment gets a fresh sequence number, length
  and checksums (IPv4 IDs are incremented); FIN and PSH stay on the last
  segment only. It returns the size of every segment, and raises
  `TooManySegmentsError` if `out_bufs` runs out.
- `gso_none_checksum(data, csum_start, csum_offset)` completes a partial
  checksum in place.

### `tunoffload.virtio_read`

`handle_virtio_read(data, bufs, offset)` takes one read from a device – a
virtio-net header followed by a packet – and places the resulting packets at
`offset` in `bufs`, returning their sizes. An unsegmented packet is copied to
`bufs[0]`, with its checksum completed if the header asks for it; a TCPv4 or
TCPv6 segmentation request goes through `tcp_tso`. Malformed input raises
`ValueError`.

### `tunoffload.channel`

- `ChannelTUN` – a loopback device backed by two queues. `tun()` returns its
  `ChannelDevice`. Packets the device writes appear on `inbound`; packets put
  on `outbound` are returned by the device's `read`. The event queue starts
  with `Event.UP`. The device is named `loopbackTun1`, has MTU
  `DEFAULT_MTU` (1420) and a batch size of 1. After `close()`, `read` and
  `write` raise `OSError`; `write(bufs, -1)` closes the device and raises
  `EOFError`.
- `ping(dst, src)` – builds an IPv4 ICMP echo request between two IPv4
  addresses (given as strings or `ipaddress.IPv4Address`).

## Examples

Coalescing a batch of packets:

```python
from tunoffload.gro import TCPGROTable, handle_gro
from tunoffload.virtio import VIRTIO_NET_HDR_LEN

# Each buffer: VIRTIO_NET_HDR_LEN bytes of headroom, then one IP packet.
bufs = [bytearray(VIRTIO_NET_HDR_LEN) + packet for packet in packets]
for index in handle_gro(bufs, VIRTIO_NET_HDR_LEN, TCPGROTable(), TCPGROTable()):
    frame = bytes(bufs[index])  # virtio-net header followed by the packet
```

Using the in-memory device:

```python
from tunoffload.channel import ChannelTUN, ping

chan = ChannelTUN()
with chan.tun() as device:
    packet = ping("192.0.2.2", "192.0.2.1")

    chan.outbound.put(packet)
    buf = bytearray(device.mtu())
    sizes = device.read([buf], 0)          # [len(packet)]

    device.write([bytearray(packet)], 0)
    assert chan.inbound.get() == packet
```

## What this package does not do

It does not open, create or configure real TUN interfaces: there is no
`Device` implementation that talks to an operating system, no MTU or
interface-name handling through the kernel, and no watching for link
up/down events. It also has no command-line tool. It provides the packet
processing such an implementation needs, plus `ChannelTUN` for tests.