"""Framing of RTU packets read from a serial line."""

from __future__ import annotations

import abc
import time
from typing import Any

from .crc import validate
from .debug import debugf
from .modbus import OVER_SIZE, PDU, SMALLEST_RTU_SIZE, FunctionCode, ModbusError
from .serial import get_packet_cutoff_duration


class PacketReader(abc.ABC):
    """A reader whose every read returns one whole RTU packet."""

    @abc.abstractmethod
    def read(self, size: int) -> bytes:
        """Read one packet of at most ``size`` bytes."""


class RTUPacketReader(PacketReader):
    """Assembles whole RTU packets from the chunks a serial context delivers.

    ``is_client`` tells which side of the conversation is reading, which
    decides how packet lengths are worked out from their headers.
    """

    def __init__(self, context: Any, is_client: bool = False) -> None:
        self.context = context
        self.is_client = is_client
        self._bidirectional = False
        self._last = b""
        self._last_read_at = 0.0

    @classmethod
    def bidirectional(cls, context: Any) -> "RTUPacketReader":
        """A reader for packets coming from either a server or a client."""
        reader = cls(context)
        reader._bidirectional = True
        return reader

    def _expected_size(self, header: bytes) -> int:
        if self._bidirectional:
            expected = get_rtu_bidirectional_size_from_header(header)
            debugf("RTUPacketReader new expected size %s %s", expected, header.hex())
        else:
            expected = get_rtu_size_from_header(header, self.is_client)
            debugf(
                "RTUPacketReader new expected size %s %s %s",
                expected,
                self.is_client,
                header.hex(),
            )
        return expected

    def read(self, size: int) -> bytes:
        """Read one packet of at most ``size`` bytes.

        A pause longer than the packet cutoff ends the packet early; data read
        beyond the end of a packet is kept for the next call.
        """
        stats = self.context.stats
        stats.add("read_packets")
        expected = SMALLEST_RTU_SIZE
        buf = bytearray()
        while len(buf) < expected:
            if self._last:
                buf += self._last[:size]
                self._last = b""
            else:
                chunk = self.context.read(size - len(buf))
                now = time.monotonic()
                if buf:
                    cutoff = get_packet_cutoff_duration(self.context, len(chunk))
                    elapsed = now - self._last_read_at
                    if elapsed > cutoff:
                        debugf(
                            "RTUPacketReader read took:%s > %s, reset packet", elapsed, cutoff
                        )
                        self._last = bytes(chunk)
                        self._last_read_at = now
                        stats.add("other_drops")
                        return bytes(buf)
                self._last_read_at = now
                debugf(
                    "RTUPacketReader read (%s+%s)/%s, expected %s",
                    len(buf),
                    len(chunk),
                    size,
                    expected,
                )
                buf += chunk
                if len(buf) >= size:
                    return bytes(buf)
            if len(buf) < expected:
                continue
            expected = self._expected_size(bytes(buf))
            if expected >= len(buf):
                time.sleep(self.context.bytes_delay(expected - len(buf)))

        if len(buf) > expected:
            if validate(buf[:expected]):
                stats.add("long_read_warnings")
                self._last = bytes(buf[expected:])
                debugf("long read warning %s / %s", expected, len(buf))
                return bytes(buf[:expected])
            if validate(buf):
                stats.add("format_warnings")
        return bytes(buf)


def get_pdu_size_from_header(header: bytes, is_client: bool) -> int:
    """Expected PDU size given its header, or the shortest possible if unknown.

    ``is_client`` is True when a client is reading the packet.
    """
    if len(header) < 2:
        return 2
    has_error, f = FunctionCode(header[0]).separate_error()
    if has_error or not f.valid():
        return 2
    if is_client == f.is_write_to_server():
        return 5  # function code, address and count, no data
    if is_client:
        return 2 + header[1]  # function code, byte count, data
    if f.is_single():
        return 5
    if len(header) < 6:
        return 6
    if OVER_SIZE.support:
        n = header[3] * 256 + header[4]
        if f.is_uint16():
            return 6 + n * 2
        return 6 + max(n - 1, 0) // 8 + 1
    return 6 + header[5]


def get_rtu_size_from_header(header: bytes, is_client: bool) -> int:
    """Expected RTU size given its header, or the shortest possible if unknown."""
    if len(header) < 3:
        return 3
    return get_pdu_size_from_header(header[1:], is_client) + 3


def get_rtu_bidirectional_size_from_header(header: bytes) -> int:
    """Expected RTU size for a packet from either direction, using the CRC to decide."""
    short = get_rtu_size_from_header(header, False)
    long = get_rtu_size_from_header(header, True)
    if short == long:
        return short
    short, long = min(short, long), max(short, long)
    if short > len(header):
        return short
    if long <= len(header) and validate(header[:long]):
        return long
    if validate(header[:short]):
        return short
    return long


def _is_request_reply(r: PDU, a: PDU) -> bool:
    fc = r.function_code()
    if fc != a.function_code():
        debugf("diff fc\n")
        return False
    if get_pdu_size_from_header(r, False) != len(r):
        debugf("r size not req %s\n", r.hex())
        return False
    if get_pdu_size_from_header(a, True) != len(a):
        debugf("a size not rep %s\n", a.hex())
        return False
    try:
        count = r.request_count()
    except ModbusError as err:
        debugf("GetRequestCount error %s\n", err)
        return False
    if fc in (1, 2):
        match = ((count + 7) // 8) & 0xFF == a[1]
    elif fc in (3, 4):
        match = (count * 2) & 0xFF == a[1]
    elif fc in (5, 6, 15, 16):
        match = r[:5] == a[:5]
    else:
        match = False
    if not match:
        debugf("header mismatch\n")
    return match


def is_request_reply(r: bytes, a: bytes) -> bool:
    """True if PDUs ``r`` and ``a`` form a request and reply pair."""
    match = _is_request_reply(PDU(r), PDU(a))
    debugf("IsRequestReply %s %s %s\n", bytes(r).hex(), bytes(a).hex(), match)
    return match