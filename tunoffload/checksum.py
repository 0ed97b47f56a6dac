"""Internet checksum helpers (RFC 1071) used for IP and TCP headers."""

from __future__ import annotations

import struct

_U64_MASK = (1 << 64) - 1


def checksum_no_fold(data: bytes | bytearray | memoryview, initial: int) -> int:
    """Sum ``data`` as big-endian words onto ``initial`` without folding.

    The data is consumed in 32-bit words, then a trailing 16-bit word, then a
    trailing odd byte, which is treated as the high byte of a 16-bit word.
    """
    view = memoryview(data).cast("B")
    total = initial
    words32 = len(view) // 4 * 4
    total += sum(word for (word,) in struct.iter_unpack(">I", view[:words32]))
    rest = view[words32:]
    if len(rest) >= 2:
        (word,) = struct.unpack(">H", rest[:2])
        total += word
        rest = rest[2:]
    if len(rest) == 1:
        total += rest[0] << 8
    return total & _U64_MASK


def checksum(data: bytes | bytearray | memoryview, initial: int) -> int:
    """Return the 16-bit one's complement sum of ``data`` folded onto ``initial``.

    The value is not inverted; callers store ``~checksum(...) & 0xFFFF``.
    """
    total = checksum_no_fold(data, initial)
    for _ in range(4):
        total = (total >> 16) + (total & 0xFFFF)
    return total & 0xFFFF


def pseudo_header_checksum_no_fold(
    protocol: int,
    src_addr: bytes | bytearray | memoryview,
    dst_addr: bytes | bytearray | memoryview,
    total_len: int,
) -> int:
    """Return the unfolded sum of a TCP/UDP pseudo-header."""
    total = checksum_no_fold(src_addr, 0)
    total = checksum_no_fold(dst_addr, total)
    total = checksum_no_fold(bytes((0, protocol & 0xFF)), total)
    return checksum_no_fold((total_len & 0xFFFF).to_bytes(2, "big"), total)