"""The TUN device interface and its shared events and errors."""

from __future__ import annotations

import enum
import queue
from abc import ABC, abstractmethod
from typing import IO, Sequence


class Event(enum.IntFlag):
    """Events a device reports on its event queue."""

    UP = 1
    DOWN = 2
    MTU_UPDATE = 4


class TooManySegmentsError(Exception):
    """Segmentation produced more packets than the supplied buffers can hold.

    This does not mean reading should stop. ``segments`` holds the number of
    buffers that were filled before the overflow.
    """

    def __init__(self, segments: int = 0) -> None:
        super().__init__("too many segments")
        self.segments = segments


class Device(ABC):
    """A TUN device that reads and writes whole IP packets."""

    @abstractmethod
    def file(self) -> IO[bytes] | None:
        """Return the file object behind the device, if any."""

    @abstractmethod
    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Read one or more packets into ``bufs`` starting at ``offset``.

        Returns the size of each packet read, in buffer order.
        """

    @abstractmethod
    def write(self, bufs: Sequence[bytearray], offset: int) -> int:
        """Write the packets found in ``bufs`` from ``offset`` onwards."""

    @abstractmethod
    def mtu(self) -> int:
        """Return the MTU of the device."""

    @abstractmethod
    def name(self) -> str:
        """Return the current name of the device."""

    @abstractmethod
    def events(self) -> "queue.Queue[Event | None]":
        """Return the queue of device events; ``None`` marks the end."""

    @abstractmethod
    def close(self) -> None:
        """Stop the device and end its event queue."""

    @abstractmethod
    def batch_size(self) -> int:
        """Return the preferred and maximum packets per read or write call."""

    def __enter__(self) -> "Device":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()