"""TCP segmentation offload: splitting one oversized TCP packet into segments."""

from __future__ import annotations

import struct
from typing import MutableSequence

from .checksum import checksum, pseudo_header_checksum_no_fold
from .device import TooManySegmentsError
from .gro import (
    IPPROTO_TCP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_FIN,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
)
from .virtio import VIRTIO_NET_HDR_GSO_TCPV4, VirtioNetHdr

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF


def _put(buf: bytearray, at: int, data: bytes | bytearray | memoryview) -> None:
    end = at + len(data)
    if end > len(buf):
        raise ValueError("output buffer too small")
    buf[at:end] = data


def tcp_tso(
    data: bytearray,
    hdr: VirtioNetHdr,
    out_bufs: MutableSequence[bytearray],
    out_offset: int,
) -> list[int]:
    """Split the TCP packet ``data`` described by ``hdr`` into ``out_bufs``.

    Each segment is written at ``out_offset`` of its buffer. The checksum
    fields of ``data`` are cleared in place. Returns the size of every
    segment written. Raises TooManySegmentsError when ``out_bufs`` runs out.
    """
    is_v4 = hdr.gso_type == VIRTIO_NET_HDR_GSO_TCPV4
    iph_len = hdr.csum_start
    if is_v4:
        data[10:12] = b"\0\0"
        src_offset, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    else:
        src_offset, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    tcp_csum_at = hdr.csum_start + hdr.csum_offset
    data[tcp_csum_at : tcp_csum_at + 2] = b"\0\0"
    (first_seq,) = struct.unpack_from(">I", data, hdr.csum_start + 4)
    src_addr = bytes(data[src_offset : src_offset + addr_len])
    dst_addr = bytes(data[src_offset + addr_len : src_offset + addr_len * 2])
    tcph_len = hdr.hdr_len - hdr.csum_start

    sizes: list[int] = []
    next_at = hdr.hdr_len
    index = 0
    while next_at < len(data):
        if index == len(out_bufs):
            raise TooManySegmentsError(index - 1)
        end = min(next_at + hdr.gso_size, len(data))
        seg_len = end - next_at
        total_len = hdr.hdr_len + seg_len
        sizes.append(total_len)
        out = out_bufs[index]
        base = out_offset

        _put(out, base, data[:iph_len])
        if is_v4:
            # IPv4: bump the ID, set the total length, redo the header checksum.
            if index > 0:
                (ip_id,) = struct.unpack_from(">H", out, base + 4)
                struct.pack_into(">H", out, base + 4, (ip_id + index) & _U16)
            struct.pack_into(">H", out, base + 2, total_len & _U16)
            ip_csum = ~checksum(out[base : base + iph_len], 0) & _U16
            struct.pack_into(">H", out, base + 10, ip_csum)
        else:
            struct.pack_into(">H", out, base + 4, (total_len - iph_len) & _U16)

        _put(out, base + hdr.csum_start, data[hdr.csum_start : hdr.hdr_len])
        seq = (first_seq + ((hdr.gso_size * index) & _U16)) & _U32
        struct.pack_into(">I", out, base + hdr.csum_start + 4, seq)
        if end != len(data):
            # FIN and PSH belong on the last segment only.
            flags_at = base + hdr.csum_start + TCP_FLAGS_OFFSET
            out[flags_at] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF

        _put(out, base + hdr.hdr_len, data[next_at:end])

        pseudo = pseudo_header_checksum_no_fold(
            IPPROTO_TCP, src_addr, dst_addr, (tcph_len + seg_len) & _U16
        )
        tcp_csum = ~checksum(out[base + hdr.csum_start : base + total_len], pseudo) & _U16
        struct.pack_into(">H", out, base + hdr.csum_start + hdr.csum_offset, tcp_csum)

        next_at += hdr.gso_size
        index += 1
    return sizes


def gso_none_checksum(data: bytearray, csum_start: int, csum_offset: int) -> None:
    """Complete a partial checksum in place.

    The value already stored at the checksum field, typically the
    pseudo-header sum, is folded into the sum from ``csum_start`` onwards.
    """
    csum_at = (csum_start + csum_offset) & _U16
    (initial,) = struct.unpack_from(">H", data, csum_at)
    data[csum_at : csum_at + 2] = b"\0\0"
    value = ~checksum(data[csum_start:], initial) & _U16
    struct.pack_into(">H", data, csum_at, value)