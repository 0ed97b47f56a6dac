"""An in-memory TUN device backed by queues, and a helper to build pings."""

from __future__ import annotations

import errno
import ipaddress
import queue
import struct
import threading
from typing import Sequence

from .checksum import checksum
from .device import Device, Event

DEFAULT_MTU = 1420

_POLL_INTERVAL = 0.05


def _inet_checksum(buf: bytes | bytearray, initial: int) -> int:
    """Return the inverted internet checksum of ``buf`` seeded with ``initial``."""
    return ~checksum(buf, initial) & 0xFFFF


def _gen_icmpv4(payload: bytes, dst: bytes, src: bytes) -> bytes:
    ipv4_size = 20
    icmpv4_size = 8
    header_size = ipv4_size + icmpv4_size
    pkt = bytearray(header_size + len(payload))

    icmp = bytearray(icmpv4_size)
    icmp[0] = 8  # echo request
    icmp[1] = 0
    icmp_csum = ~_inet_checksum(icmp, _inet_checksum(payload, 0)) & 0xFFFF
    struct.pack_into(">H", icmp, 2, icmp_csum)

    ip = bytearray(ipv4_size)
    ip[0] = (4 << 4) | (ipv4_size // 4)
    struct.pack_into(">H", ip, 2, len(pkt) & 0xFFFF)
    ip[8] = 65  # ttl
    ip[9] = 1  # ICMP
    ip[12:16] = src
    ip[16:20] = dst
    struct.pack_into(">H", ip, 10, ~_inet_checksum(ip, 0) & 0xFFFF)

    pkt[:ipv4_size] = ip
    pkt[ipv4_size:header_size] = icmp
    pkt[header_size:] = payload
    return bytes(pkt)


def ping(dst, src) -> bytes:
    """Build an IPv4 ICMP echo request from ``src`` to ``dst``."""
    dst_addr = ipaddress.IPv4Address(dst)
    src_addr = ipaddress.IPv4Address(src)
    local_port = 1337
    seq = 0
    payload = struct.pack(">HH", local_port, seq)
    return _gen_icmpv4(payload, dst_addr.packed, src_addr.packed)


class ChannelTUN:
    """A loopback TUN whose traffic is exchanged through two queues.

    Packets the device writes arrive on ``inbound``; packets put on
    ``outbound`` are returned by the device's reads.
    """

    def __init__(self) -> None:
        self.inbound: queue.Queue[bytes] = queue.Queue()
        self.outbound: queue.Queue[bytes] = queue.Queue()
        self._closed = threading.Event()
        self._events: queue.Queue[Event | None] = queue.Queue()
        self._events.put(Event.UP)
        self._device = ChannelDevice(self)

    def tun(self) -> "ChannelDevice":
        """Return the device side of the channel."""
        return self._device

    def _shutdown(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._events.put(None)


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


class ChannelDevice(Device):
    """The Device view of a ChannelTUN."""

    def __init__(self, channel: ChannelTUN) -> None:
        self._channel = channel

    def file(self) -> None:
        return None

    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Wait for an outbound packet and copy it into ``bufs[0]``."""
        channel = self._channel
        while True:
            if channel._closed.is_set():
                raise _closed_error()
            try:
                msg = channel.outbound.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            buf = bufs[0]
            n = max(0, min(len(msg), len(buf) - offset))
            buf[offset : offset + n] = msg[:n]
            return [n]

    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        """Deliver each packet to ``inbound``; an offset of -1 closes the device."""
        channel = self._channel
        if offset == -1:
            channel._shutdown()
            raise EOFError("channel closed")
        for data in bufs:
            if channel._closed.is_set():
                raise _closed_error()
            channel.inbound.put(bytes(data[offset:]))
        return len(bufs)

    def mtu(self) -> int:
        return DEFAULT_MTU

    def name(self) -> str:
        return "loopbackTun1"

    def events(self) -> "queue.Queue[Event | None]":
        return self._channel._events

    def close(self) -> None:
        self._channel._shutdown()

    def batch_size(self) -> int:
        return 1