"""Packet helpers for TUN devices: checksums, virtio-net headers, TCP GRO and TSO, and an in-memory device."""

__version__ = "0.1.0"

__all__ = ["channel", "checksum", "device", "gro", "tso", "virtio", "virtio_read"]