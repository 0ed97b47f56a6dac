"""The virtio_net_hdr header that prefixes packets on offload-enabled TUNs."""

from __future__ import annotations

import struct
from dataclasses import dataclass

# Laid out as the kernel's struct virtio_net_hdr in host byte order.
_HDR_STRUCT = struct.Struct("=BBHHHH")

VIRTIO_NET_HDR_LEN = _HDR_STRUCT.size

VIRTIO_NET_HDR_F_NEEDS_CSUM = 0x01
VIRTIO_NET_HDR_GSO_NONE = 0x00
VIRTIO_NET_HDR_GSO_TCPV4 = 0x01
VIRTIO_NET_HDR_GSO_UDP = 0x03
VIRTIO_NET_HDR_GSO_TCPV6 = 0x04
VIRTIO_NET_HDR_GSO_ECN = 0x80


@dataclass
class VirtioNetHdr:
    """Offload metadata exchanged with the kernel alongside each packet."""

    flags: int = 0
    gso_type: int = 0
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    def encode(self) -> bytes:
        """Return the header's wire form."""
        return _HDR_STRUCT.pack(
            self.flags,
            self.gso_type,
            self.hdr_len,
            self.gso_size,
            self.csum_start,
            self.csum_offset,
        )

    @classmethod
    def decode(cls, data: bytes | bytearray | memoryview) -> "VirtioNetHdr":
        """Parse a header from the start of ``data``.

        Raises ValueError when ``data`` is shorter than a header.
        """
        if len(data) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        return cls(*_HDR_STRUCT.unpack_from(data, 0))