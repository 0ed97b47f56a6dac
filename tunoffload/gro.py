"""Generic receive offload: coalescing TCP segments before writing to a TUN."""

from __future__ import annotations

import dataclasses
import enum
import struct
from dataclasses import dataclass
from typing import MutableSequence

from .checksum import checksum, pseudo_header_checksum_no_fold
from .virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

IPPROTO_TCP = 6

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

IPV4_FLAG_MORE_FRAGMENTS = 0x20
IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8

MAX_UINT16 = 0xFFFF
# Every packet buffer is expected to be able to grow to this many bytes.
BUFFER_CAPACITY = 65535

_U32 = 0xFFFFFFFF
_U16 = 0xFFFF


@dataclass(frozen=True)
class FlowKey:
    """Identifies a TCP flow; differing ack values are kept as separate flows."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    rx_ack: int


def _flow_key(pkt: bytes, src_addr: int, dst_addr: int, tcph_offset: int) -> FlowKey:
    addr_size = dst_addr - src_addr
    src_port, dst_port = struct.unpack_from(">HH", pkt, tcph_offset)
    (rx_ack,) = struct.unpack_from(">I", pkt, tcph_offset + 8)
    return FlowKey(
        src_addr=bytes(pkt[src_addr:dst_addr]).ljust(16, b"\0"),
        dst_addr=bytes(pkt[dst_addr : dst_addr + addr_size]).ljust(16, b"\0"),
        src_port=src_port,
        dst_port=dst_port,
        rx_ack=rx_ack,
    )


@dataclass
class TCPGROItem:
    """Bookkeeping for one TCP packet while a batch of packets is evaluated."""

    key: FlowKey
    sent_seq: int
    bufs_index: int
    gso_size: int
    iph_len: int
    tcph_len: int
    psh_set: bool
    num_merged: int = 0


class TCPGROTable:
    """Flows and their coalescing candidates for one batch of packets."""

    def __init__(self) -> None:
        self._flows: dict[FlowKey, list[TCPGROItem]] = {}

    def __len__(self) -> int:
        return len(self._flows)

    def lookup_or_insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> list[TCPGROItem] | None:
        """Return the items of the packet's flow, or insert it and return None."""
        key = _flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self._flows.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> None:
        """Add an item for the packet to its flow."""
        key = _flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        (sent_seq,) = struct.unpack_from(">I", pkt, tcph_offset + 4)
        item = TCPGROItem(
            key=key,
            sent_seq=sent_seq,
            bufs_index=bufs_index & _U16,
            gso_size=max(0, len(pkt) - tcph_offset - tcph_len) & _U16,
            iph_len=tcph_offset & 0xFF,
            tcph_len=tcph_len & 0xFF,
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self._flows.setdefault(key, []).append(item)

    def update_at(self, item: TCPGROItem, index: int) -> None:
        """Replace the item at ``index`` in its flow."""
        self._flows[item.key][index] = item

    def delete_at(self, key: FlowKey, index: int) -> None:
        """Remove the item at ``index`` from the flow ``key``."""
        items = self._flows[key]
        self._flows[key] = items[:index] + items[index + 1 :]

    def reset(self) -> None:
        """Forget every flow."""
        self._flows.clear()


class CanCoalesce(enum.IntEnum):
    """Whether and where a packet may join an existing item."""

    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class CoalesceResult(enum.IntEnum):
    """Outcome of an attempt to coalesce two TCP packets."""

    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


def tcp_packets_can_coalesce(
    pkt: bytes,
    iph_len: int,
    tcph_len: int,
    seq: int,
    psh_set: bool,
    gso_size: int,
    item: TCPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
) -> CanCoalesce:
    """Decide whether ``pkt`` can be merged with the packet behind ``item``."""
    target = bufs[item.bufs_index][bufs_offset:]
    if tcph_len != item.tcph_len:
        return CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        options = pkt[iph_len + 20 : iph_len + tcph_len]
        if options != target[item.iph_len + 20 : iph_len + tcph_len]:
            return CanCoalesce.UNAVAILABLE
    if pkt[0] >> 4 == 6:
        if pkt[0] != target[0] or pkt[1] >> 4 != target[1] >> 4:
            return CanCoalesce.UNAVAILABLE
        if pkt[7] != target[7]:
            return CanCoalesce.UNAVAILABLE
    else:
        if pkt[1] != target[1]:
            return CanCoalesce.UNAVAILABLE
        if pkt[6] >> 5 != target[6] >> 5:
            return CanCoalesce.UNAVAILABLE
        if pkt[8] != target[8]:
            return CanCoalesce.UNAVAILABLE

    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & _U16
    if seq == (item.sent_seq + lhs_len) & _U32:
        if item.psh_set:
            # PSH may only sit on the final segment of a reassembled group.
            return CanCoalesce.UNAVAILABLE
        if max(0, len(target) - iph_len - tcph_len) % item.gso_size != 0:
            # A short segment was appended earlier; nothing may follow it.
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.APPEND
    if (seq + gso_size) & _U32 == item.sent_seq:
        if psh_set:
            return CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.PREPEND
    return CanCoalesce.UNAVAILABLE


def _addr_layout(is_v6: bool) -> tuple[int, int]:
    if is_v6:
        return IPV6_SRC_ADDR_OFFSET, 16
    return IPV4_SRC_ADDR_OFFSET, 4


def tcp_checksum_valid(pkt: bytes | bytearray, iph_len: int, is_v6: bool) -> bool:
    """Return whether the TCP checksum of the IP packet ``pkt`` verifies."""
    src_at, addr_size = _addr_layout(is_v6)
    tcp_total_len = (len(pkt) - iph_len) & _U16
    partial = pseudo_header_checksum_no_fold(
        IPPROTO_TCP,
        pkt[src_at : src_at + addr_size],
        pkt[src_at + addr_size : src_at + addr_size * 2],
        tcp_total_len,
    )
    return checksum(pkt[iph_len:], partial) == _U16


def coalesce_tcp_packets(
    mode: CanCoalesce,
    pkt: bytes,
    pkt_bufs_index: int,
    gso_size: int,
    seq: int,
    psh_set: bool,
    item: TCPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Merge ``pkt`` into the packet behind ``item``, updating ``item``.

    On a prepend the two entries of ``bufs`` are swapped, because the index
    held by ``item`` is the one already scheduled for writing.
    """
    headers_len = item.iph_len + item.tcph_len
    item_pkt = bufs[item.bufs_index][bufs_offset:]
    coalesced_len = len(item_pkt) + len(pkt) - headers_len

    # The packet view starts after the headroom, which is reserved again.
    if BUFFER_CAPACITY - bufs_offset - bufs_offset < coalesced_len:
        return CoalesceResult.INSUFFICIENT_CAP

    if mode == CanCoalesce.PREPEND:
        if psh_set:
            return CoalesceResult.PSH_ENDING
        if item.num_merged == 0 and not tcp_checksum_valid(item_pkt, item.iph_len, is_v6):
            return CoalesceResult.ITEM_INVALID_CSUM
        if not tcp_checksum_valid(pkt, item.iph_len, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        bufs[pkt_bufs_index].extend(item_pkt[headers_len:])
        bufs[item.bufs_index], bufs[pkt_bufs_index] = (
            bufs[pkt_bufs_index],
            bufs[item.bufs_index],
        )
    else:
        if item.num_merged == 0 and not tcp_checksum_valid(item_pkt, item.iph_len, is_v6):
            return CoalesceResult.ITEM_INVALID_CSUM
        if not tcp_checksum_valid(pkt, item.iph_len, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        if psh_set:
            item.psh_set = True
            bufs[item.bufs_index][bufs_offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        bufs[item.bufs_index].extend(pkt[headers_len:])

    if gso_size > item.gso_size:
        item.gso_size = gso_size

    head = bufs[item.bufs_index]
    hdr = VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        hdr_len=headers_len & _U16,
        gso_size=item.gso_size & _U16,
        csum_start=item.iph_len,
        csum_offset=16,
    )
    if is_v6:
        hdr.gso_type = VIRTIO_NET_HDR_GSO_TCPV6
        payload_len = (coalesced_len - item.iph_len) & _U16
        struct.pack_into(">H", head, bufs_offset + 4, payload_len)
    else:
        hdr.gso_type = VIRTIO_NET_HDR_GSO_TCPV4
        struct.pack_into(">H", head, bufs_offset + 10, 0)
        struct.pack_into(">H", head, bufs_offset + 2, coalesced_len & _U16)
        iph_csum = ~checksum(head[bufs_offset : bufs_offset + item.iph_len], 0) & _U16
        struct.pack_into(">H", head, bufs_offset + 10, iph_csum)
    head[bufs_offset - VIRTIO_NET_HDR_LEN : bufs_offset] = hdr.encode()

    # Store the pseudo-header sum; checksum offload completes the rest.
    addr_offset, addr_len = _addr_layout(is_v6)
    src_at = bufs_offset + addr_offset
    psum = pseudo_header_checksum_no_fold(
        IPPROTO_TCP,
        head[src_at : src_at + addr_len],
        head[src_at + addr_len : src_at + addr_len * 2],
        (coalesced_len - item.iph_len) & _U16,
    )
    struct.pack_into(
        ">H", head, bufs_offset + hdr.csum_start + hdr.csum_offset, checksum(b"", psum)
    )

    item.num_merged += 1
    return CoalesceResult.SUCCESS


def tcp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_index: int,
    table: TCPGROTable,
    is_v6: bool,
) -> bool:
    """Try to coalesce ``bufs[pkt_index]`` into a packet tracked by ``table``.

    Returns True when the packet was merged and must not be written itself.
    """
    pkt = bytes(bufs[pkt_index][offset:])
    if len(pkt) > MAX_UINT16:
        return False
    if is_v6:
        iph_len = 40
        (payload_len,) = struct.unpack_from(">H", pkt, 4)
        if payload_len != len(pkt) - iph_len:
            return False
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        (total_len,) = struct.unpack_from(">H", pkt, 2)
        if total_len != len(pkt):
            return False
    if len(pkt) < iph_len:
        return False
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        return False
    if len(pkt) < iph_len + tcph_len:
        return False
    if not is_v6:
        if pkt[6] & IPV4_FLAG_MORE_FRAGMENTS or (pkt[6] << 3) & 0xFF or pkt[7]:
            # Fragmented segments are not coalesced.
            return False
    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return False
        psh_set = True
    gso_size = (len(pkt) - tcph_len - iph_len) & _U16
    if gso_size < 1:
        return False
    (seq,) = struct.unpack_from(">I", pkt, iph_len + 4)
    src_addr_offset, addr_len = _addr_layout(is_v6)
    dst_addr_offset = src_addr_offset + addr_len
    items = table.lookup_or_insert(
        pkt, src_addr_offset, dst_addr_offset, iph_len, tcph_len, pkt_index
    )
    if items is None:
        return False
    # Newest first: in-order arrival usually matches the latest item, and
    # deleting while walking backwards leaves earlier indices intact.
    for index, stored in reversed(list(enumerate(items))):
        can = tcp_packets_can_coalesce(
            pkt, iph_len, tcph_len, seq, psh_set, gso_size, stored, bufs, offset
        )
        if can == CanCoalesce.UNAVAILABLE:
            continue
        item = dataclasses.replace(stored)
        result = coalesce_tcp_packets(
            can, pkt, pkt_index, gso_size, seq, psh_set, item, bufs, offset, is_v6
        )
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, index)
            return True
        if result == CoalesceResult.ITEM_INVALID_CSUM:
            table.delete_at(item.key, index)
        elif result == CoalesceResult.PKT_INVALID_CSUM:
            return False
    table.insert(pkt, src_addr_offset, dst_addr_offset, iph_len, tcph_len, pkt_index)
    return False


def is_tcp4_no_ip_options(b: bytes | bytearray) -> bool:
    """Return whether ``b`` is an IPv4 TCP packet without IP options."""
    return len(b) >= 40 and b[0] >> 4 == 4 and b[0] & 0x0F == 5 and b[9] == IPPROTO_TCP


def is_tcp6_no_eh(b: bytes | bytearray) -> bool:
    """Return whether ``b`` is an IPv6 TCP packet without extension headers."""
    return len(b) >= 60 and b[0] >> 4 == 6 and b[6] == IPPROTO_TCP


def handle_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    tcp4_table: TCPGROTable,
    tcp6_table: TCPGROTable,
) -> list[int]:
    """Coalesce the packets in ``bufs`` and return the indices left to write.

    Every packet left to write gets a virtio header in front of ``offset``.
    Raises ValueError when ``offset`` leaves no room for that header or lies
    past the end of a buffer.
    """
    to_write: list[int] = []
    for index in range(len(bufs)):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(bufs[index]) - 1:
            raise ValueError("invalid offset")
        packet = bufs[index][offset:]
        coalesced = False
        if is_tcp4_no_ip_options(packet):
            coalesced = tcp_gro(bufs, offset, index, tcp4_table, False)
        elif is_tcp6_no_eh(packet):
            coalesced = tcp_gro(bufs, offset, index, tcp6_table, True)
        if not coalesced:
            bufs[index][offset - VIRTIO_NET_HDR_LEN : offset] = VirtioNetHdr().encode()
            to_write.append(index)
    return to_write