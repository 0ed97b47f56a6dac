"""Turning one read from an offload-enabled TUN into ordinary IP packets."""

from __future__ import annotations

from typing import MutableSequence

from .tso import gso_none_checksum, tcp_tso
from .virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_NONE,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

_EXPECTED_GSO_TYPE = {
    4: VIRTIO_NET_HDR_GSO_TCPV4,
    6: VIRTIO_NET_HDR_GSO_TCPV6,
}


def handle_virtio_read(
    data: bytes | bytearray | memoryview,
    bufs: MutableSequence[bytearray],
    offset: int,
) -> list[int]:
    """Split a virtio-prefixed read into packets placed at ``offset`` in ``bufs``.

    ``data`` starts with a virtio_net_hdr followed by the packet. A packet
    without segmentation is copied into ``bufs[0]``, with its checksum
    completed when the header asks for it; a TCP packet marked for
    segmentation is split across ``bufs``. Returns the size of each packet
    written, in buffer order.

    Raises ValueError for malformed input and TooManySegmentsError when
    ``bufs`` cannot hold every segment.
    """
    hdr = VirtioNetHdr.decode(data)
    packet = bytearray(data[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == VIRTIO_NET_HDR_GSO_NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            # CHECKSUM_PARTIAL: finish the checksum the kernel left for us.
            gso_none_checksum(packet, hdr.csum_start, hdr.csum_offset)
        room = max(0, len(bufs[0]) - offset)
        if len(packet) > room:
            raise ValueError(
                f"read len {len(packet)} overflows bufs element len {room}"
            )
        bufs[0][offset : offset + len(packet)] = packet
        return [len(packet)]

    if hdr.gso_type not in (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_TCPV6):
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")

    if not packet:
        raise ValueError("packet is too short")
    ip_version = packet[0] >> 4
    expected = _EXPECTED_GSO_TYPE.get(ip_version)
    if expected is None:
        raise ValueError(f"invalid ip header version: {ip_version}")
    if hdr.gso_type != expected:
        raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")

    if len(packet) <= hdr.csum_start + 12:
        raise ValueError("packet is too short")
    # The kernel's hdr_len may span the whole first packet on the forward
    # path, so derive it from the TCP header instead.
    tcph_len = (packet[hdr.csum_start + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        raise ValueError(f"tcp header len is invalid: {tcph_len}")
    hdr.hdr_len = hdr.csum_start + tcph_len

    if len(packet) < hdr.hdr_len:
        raise ValueError(
            f"length of packet ({len(packet)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(packet):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(packet)})"
        )

    return tcp_tso(packet, hdr, bufs, offset)