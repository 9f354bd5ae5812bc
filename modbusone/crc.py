"""Modbus RTU CRC-16 checksum."""

from __future__ import annotations


def _build_table() -> tuple[int, ...]:
    table = []
    for value in range(256):
        crc = value
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_TABLE = _build_table()


def _update(crc: int, data: bytes) -> int:
    for byte in data:
        crc = (crc >> 8) ^ _TABLE[(crc ^ byte) & 0xFF]
    return crc


class CRC:
    """Running Modbus CRC computation."""

    def __init__(self) -> None:
        self._value = 0xFFFF

    def reset(self) -> None:
        """Return to the initial state."""
        self._value = 0xFFFF

    def update(self, data: bytes) -> None:
        """Add ``data`` to the running checksum."""
        self._value = _update(self._value, data)

    def sum(self, data: bytes = b"") -> bytes:
        """Return ``data`` followed by the checksum of everything so far plus ``data``.

        The running state is not changed.
        """
        crc = _update(self._value, data)
        return bytes(data) + bytes((crc & 0xFF, crc >> 8))

    def sum16(self) -> int:
        """Return the checksum with its wire bytes read as a big-endian number."""
        return ((self._value & 0xFF) << 8) | (self._value >> 8)


def validate(data: bytes) -> bool:
    """Return True if ``data`` ends with a valid CRC."""
    if len(data) <= 2:
        return False
    crc = _update(0xFFFF, data[:-2])
    return data[-2] == crc & 0xFF and data[-1] == crc >> 8


def with_crc(data: bytes) -> bytes:
    """Return ``data`` with its CRC appended."""
    return CRC().sum(data)