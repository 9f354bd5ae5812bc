"""Serial line context: timing calculations and read/drop statistics."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from typing import Any, Protocol

from .debug import debugf

# Longest pause, in seconds, the local host may freeze before partial packet
# data is treated as stale and a packet break is forced.
DEFAULT_CPU_HICCUP = 0.1

_NS_PER_SECOND = 1_000_000_000
_BITS_PER_CHAR = 11  # 8 data bits take 11 bits on the wire


def _check_baud(baud_rate: int) -> None:
    if baud_rate <= 0:
        raise ValueError(f"baud rate must be positive, got {baud_rate}")


def min_delay(baud_rate: int) -> float:
    """Minimum inter-packet gap in seconds: 3.5 characters, or 1.75 ms above 19200 baud."""
    _check_baud(baud_rate)
    if baud_rate <= 19200:
        ns = (_NS_PER_SECOND * _BITS_PER_CHAR * 7 + baud_rate * 2 - 1) // (baud_rate * 2)
    else:
        ns = 1_750_000
    return ns / _NS_PER_SECOND


def bytes_delay(baud_rate: int, n: int) -> float:
    """Seconds it takes to send ``n`` bytes at ``baud_rate``."""
    _check_baud(baud_rate)
    ns = (_NS_PER_SECOND * _BITS_PER_CHAR * n + baud_rate - 1) // baud_rate
    return ns / _NS_PER_SECOND


def packet_cutoff_duration(baud_rate: int, n: int, cpu_hiccup: float) -> float:
    """Seconds after which a pause forces a packet break, for ``n`` bytes read."""
    return bytes_delay(baud_rate, n) + cpu_hiccup


_COUNTERS = (
    "read_packets",
    "crc_errors",
    "remote_errors",
    "other_errors",
    "long_read_warnings",
    "format_warnings",
    "id_drops",
    "other_drops",
)


@dataclass
class Stats:
    """Counters of packets read and dropped on a connection."""

    read_packets: int = 0
    crc_errors: int = 0
    remote_errors: int = 0
    other_errors: int = 0
    long_read_warnings: int = 0
    format_warnings: int = 0
    id_drops: int = 0
    other_drops: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def add(self, counter: str, n: int = 1) -> None:
        """Increase ``counter`` by ``n`` under the stats lock."""
        if counter not in _COUNTERS:
            raise ValueError(f"unknown counter {counter!r}")
        with self._lock:
            setattr(self, counter, getattr(self, counter) + n)

    def reset(self) -> None:
        """Set every counter to zero."""
        with self._lock:
            for f in fields(self):
                if f.name in _COUNTERS:
                    setattr(self, f.name, 0)

    def total_drops(self) -> int:
        """Total number of read packets that were dropped or flagged."""
        with self._lock:
            return sum(getattr(self, name) for name in _COUNTERS if name != "read_packets")

    def __str__(self) -> str:
        with self._lock:
            return " ".join(
                str(getattr(self, name)) for name in _COUNTERS if name != "read_packets"
            )


@dataclass
class Option:
    """Tuning options for a SerialContext; zero ``cpu_hiccup`` means the default."""

    cpu_hiccup: float = 0.0
    return_short_packets: bool = False


class _Connection(Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> Any: ...

    def close(self) -> None: ...


class SerialContext:
    """A byte stream with a baud rate, used to frame RTU packets.

    ``conn`` is any file-like object with ``read``, ``write`` and ``close``.
    Reads must block until data arrives; an empty read is taken as the end of
    the connection and raises EOFError.
    """

    def __init__(self, conn: _Connection, baud_rate: int, option: Option | None = None) -> None:
        _check_baud(baud_rate)
        self.conn = conn
        self.baud_rate = baud_rate
        self.option = option if option is not None else Option()
        self.stats = Stats()

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes, returning as soon as some are available."""
        if size <= 0:
            return b""
        conn = self.conn
        if hasattr(conn, "in_waiting"):
            data = conn.read(1)
            if data:
                waiting = min(size - 1, conn.in_waiting)
                if waiting > 0:
                    data += conn.read(waiting)
        else:
            reader = getattr(conn, "read1", None) or conn.read
            data = reader(size)
        if not data:
            raise EOFError("connection closed")
        return bytes(data)

    def write(self, data: bytes) -> int:
        """Write ``data`` and return the number of bytes written."""
        debugf("SerialPort Write:%s\n", bytes(data).hex())
        written = self.conn.write(data)
        flush = getattr(self.conn, "flush", None)
        if flush is not None:
            flush()
        return len(data) if written is None else written

    def close(self) -> None:
        """Close the underlying connection."""
        self.conn.close()

    def min_delay(self) -> float:
        """Minimum inter-packet gap in seconds at this baud rate."""
        return min_delay(self.baud_rate)

    def bytes_delay(self, n: int) -> float:
        """Seconds needed to send ``n`` bytes at this baud rate."""
        return bytes_delay(self.baud_rate, n)

    def packet_cutoff_duration(self, n: int) -> float:
        """Seconds of silence that force a packet break after ``n`` bytes."""
        hiccup = self.option.cpu_hiccup or DEFAULT_CPU_HICCUP
        return packet_cutoff_duration(self.baud_rate, n, hiccup)

    def __enter__(self) -> "SerialContext":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def get_packet_cutoff_duration(context: Any, n: int) -> float:
    """Packet cutoff for ``context``, falling back to bytes delay plus the default hiccup."""
    method = getattr(context, "packet_cutoff_duration", None)
    if callable(method):
        return method(n)
    return context.bytes_delay(n) + DEFAULT_CPU_HICCUP