"""Conversion between PDU data bytes and coil or register values."""

from __future__ import annotations

import struct
from typing import Iterable, Sequence

from .debug import debugf
from .modbus import ExceptionCode, ExceptionCodeError, FunctionCode


def _illegal_value() -> ExceptionCodeError:
    return ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_VALUE)


def data_to_bools(data: bytes, count: int, fc: int) -> list[bool]:
    """Decode ``count`` booleans from PDU data for function code ``fc``."""
    if FunctionCode(fc) == FunctionCode.WRITE_SINGLE_COIL:
        if len(data) != 2:
            debugf("WriteSingleCoil need 2 bytes data\n")
            raise _illegal_value()
        if data[1] != 0:
            debugf("WriteSingleCoil unexpected %s %s\n", data[0], data[1])
            raise _illegal_value()
        if data[0] == 0:
            return [False]
        if data[0] == 0xFF:
            return [True]
        debugf("WriteSingleCoil unexpected %s %s", data[0], data[1])
        raise _illegal_value()

    if (count + 7) // 8 != len(data):
        debugf("unexpected size: bools %s, bytes %s", count, len(data))
        raise _illegal_value()
    return [bool((data[i // 8] >> (i % 8)) & 1) for i in range(count)]


def bools_to_data(values: Sequence[bool], fc: int) -> bytes:
    """Encode booleans as PDU data for function code ``fc``."""
    if FunctionCode(fc) == FunctionCode.WRITE_SINGLE_COIL:
        if len(values) != 1:
            raise ValueError(f"FcWriteSingleCoil can not write {len(values)} coils")
        return b"\xff\x00" if values[0] else b"\x00\x00"

    out = bytearray((len(values) + 7) // 8)
    for i, value in enumerate(values):
        if value:
            out[i // 8] |= 1 << (i % 8)
    return bytes(out)


def data_to_registers(data: bytes) -> list[int]:
    """Decode big-endian 16 bit registers from PDU data."""
    if len(data) < 2 or len(data) % 2:
        debugf("unexpected odd number of bytes %s", len(data))
        raise _illegal_value()
    return list(struct.unpack(f">{len(data) // 2}H", data))


def registers_to_data(values: Iterable[int]) -> bytes:
    """Encode 16 bit registers as big-endian PDU data."""
    values = list(values)
    try:
        return struct.pack(f">{len(values)}H", *values)
    except struct.error as exc:
        raise ValueError(f"register values must be in 0..65535: {exc}") from exc