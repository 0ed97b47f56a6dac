import struct

import pytest

from tunoffload.checksum import checksum, pseudo_header_checksum_no_fold
from tunoffload.device import TooManySegmentsError
from tunoffload.gro import TCP_FLAG_ACK, TCP_FLAG_PSH, tcp_checksum_valid
from tunoffload.tso import gso_none_checksum, tcp_tso
from tunoffload.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

OFFSET = VIRTIO_NET_HDR_LEN
SRC4 = bytes([192, 0, 2, 1])
DST4 = bytes([192, 0, 2, 2])
SRC6 = bytes([0x20, 0x01, 0x0D, 0xB8] + [0] * 11 + [1])
DST6 = bytes([0x20, 0x01, 0x0D, 0xB8] + [0] * 11 + [2])


def _payload(size):
    return bytes(i % 251 for i in range(size))


def _tcp(flags, seq, payload, src, dst):
    tcp = bytearray(struct.pack(">HHIIBBHHH", 1, 1, seq, 1, 0x50, flags, 3000, 0, 0))
    pseudo = pseudo_header_checksum_no_fold(6, src, dst, len(tcp) + len(payload))
    struct.pack_into(">H", tcp, 16, ~checksum(bytes(tcp) + payload, pseudo) & 0xFFFF)
    return bytes(tcp)


def tcp4_packet(flags, segment_size, seq, ip_id=0):
    payload = _payload(segment_size)
    ip = bytearray(20)
    ip[0] = 0x45
    struct.pack_into(">HH", ip, 2, 40 + segment_size, ip_id)
    ip[8] = 64
    ip[9] = 6
    ip[12:16] = SRC4
    ip[16:20] = DST4
    struct.pack_into(">H", ip, 10, ~checksum(ip, 0) & 0xFFFF)
    return bytearray(bytes(ip) + _tcp(flags, seq, payload, SRC4, DST4) + payload)


def tcp6_packet(flags, segment_size, seq):
    payload = _payload(segment_size)
    ip = bytearray(40)
    ip[0] = 0x60
    struct.pack_into(">H", ip, 4, 20 + segment_size)
    ip[6] = 6
    ip[7] = 64
    ip[8:24] = SRC6
    ip[24:40] = DST6
    return bytearray(bytes(ip) + _tcp(flags, seq, payload, SRC6, DST6) + payload)


def hdr4(gso_size=100):
    return VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        gso_type=VIRTIO_NET_HDR_GSO_TCPV4,
        gso_size=gso_size,
        hdr_len=40,
        csum_start=20,
        csum_offset=16,
    )


def hdr6(gso_size=100):
    return VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        gso_type=VIRTIO_NET_HDR_GSO_TCPV6,
        gso_size=gso_size,
        hdr_len=60,
        csum_start=40,
        csum_offset=16,
    )


def out_bufs(count=8):
    return [bytearray(65535) for _ in range(count)]


def segments(bufs, sizes):
    return [bytes(buf[OFFSET : OFFSET + size]) for buf, size in zip(bufs, sizes)]


def test_tcp4_sizes():
    out = out_bufs()
    sizes = tcp_tso(tcp4_packet(TCP_FLAG_ACK | TCP_FLAG_PSH, 200, 1), hdr4(), out, OFFSET)
    assert sizes == [140, 140]


def test_tcp6_sizes():
    out = out_bufs()
    sizes = tcp_tso(tcp6_packet(TCP_FLAG_ACK | TCP_FLAG_PSH, 200, 1), hdr6(), out, OFFSET)
    assert sizes == [160, 160]


def test_tcp4_segments_have_valid_checksums_and_lengths():
    out = out_bufs()
    sizes = tcp_tso(tcp4_packet(TCP_FLAG_ACK, 250, 1), hdr4(), out, OFFSET)
    for seg, size in zip(segments(out, sizes), sizes):
        assert checksum(seg[:20], 0) == 0xFFFF
        assert struct.unpack_from(">H", seg, 2)[0] == size
        assert tcp_checksum_valid(seg, 20, False)


def test_tcp6_segments_have_valid_checksums_and_lengths():
    out = out_bufs()
    sizes = tcp_tso(tcp6_packet(TCP_FLAG_ACK, 250, 1), hdr6(), out, OFFSET)
    for seg, size in zip(segments(out, sizes), sizes):
        assert struct.unpack_from(">H", seg, 4)[0] == size - 40
        assert tcp_checksum_valid(seg, 40, True)


def test_payload_round_trip_and_segment_bound():
    gso = 100
    size = 250
    out = out_bufs()
    sizes = tcp_tso(tcp4_packet(TCP_FLAG_ACK, size, 1), hdr4(gso), out, OFFSET)
    joined = b"".join(seg[40:] for seg in segments(out, sizes))
    assert joined == _payload(size)
    assert all(s - 40 <= gso for s in sizes)


def test_sequence_numbers_advance_by_gso_size():
    gso = 100
    seq = 1000
    out = out_bufs()
    sizes = tcp_tso(tcp4_packet(TCP_FLAG_ACK, 300, seq), hdr4(gso), out, OFFSET)
    seqs = [struct.unpack_from(">I", seg, 24)[0] for seg in segments(out, sizes)]
    assert seqs == [seq + i * gso for i in range(len(sizes))]


def test_psh_only_on_last_segment():
    out = out_bufs()
    sizes = tcp_tso(tcp4_packet(TCP_FLAG_ACK | TCP_FLAG_PSH, 300, 1), hdr4(), out, OFFSET)
    flags = [seg[20 + 13] for seg in segments(out, sizes)]
    assert flags[:-1] == [TCP_FLAG_ACK] * (len(flags) - 1)
    assert flags[-1] == TCP_FLAG_ACK | TCP_FLAG_PSH


def test_ipv4_id_increments():
    ip_id = 7
    out = out_bufs()
    sizes = tcp_tso(tcp4_packet(TCP_FLAG_ACK, 300, 1, ip_id=ip_id), hdr4(), out, OFFSET)
    ids = [struct.unpack_from(">H", seg, 4)[0] for seg in segments(out, sizes)]
    assert ids == [ip_id + i for i in range(len(sizes))]


def test_input_checksums_cleared():
    data = tcp4_packet(TCP_FLAG_ACK, 200, 1)
    tcp_tso(data, hdr4(), out_bufs(), OFFSET)
    assert data[10:12] == b"\0\0"
    assert data[36:38] == b"\0\0"


def test_too_many_segments():
    with pytest.raises(TooManySegmentsError):
        tcp_tso(tcp4_packet(TCP_FLAG_ACK, 200, 1), hdr4(), out_bufs(1), OFFSET)


def test_output_buffer_too_small():
    with pytest.raises(ValueError):
        tcp_tso(tcp4_packet(TCP_FLAG_ACK, 200, 1), hdr4(), [bytearray(60)], OFFSET)


@pytest.mark.parametrize("is_v6", [False, True])
def test_gso_none_checksum_completes_partial(is_v6):
    full = tcp6_packet(TCP_FLAG_ACK, 100, 1) if is_v6 else tcp4_packet(TCP_FLAG_ACK, 100, 1)
    iph_len = 40 if is_v6 else 20
    src, dst = (SRC6, DST6) if is_v6 else (SRC4, DST4)
    partial = bytearray(full)
    pseudo = pseudo_header_checksum_no_fold(6, src, dst, len(full) - iph_len)
    struct.pack_into(">H", partial, iph_len + 16, checksum(b"", pseudo))
    gso_none_checksum(partial, iph_len, 16)
    assert partial == full
    assert tcp_checksum_valid(partial, iph_len, is_v6)