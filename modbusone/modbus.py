"""Core Modbus types: function codes, exception codes, PDU and RTU frames."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Iterator, Optional

from .crc import validate, with_crc
from .debug import debugf

MAX_RTU_SIZE = 256
"""Largest possible RTU packet in bytes."""

MAX_PDU_SIZE = 253
"""Largest possible PDU packet in bytes."""

SMALLEST_RTU_SIZE = 4
"""Shortest possible RTU packet in bytes."""


class ModbusError(Exception):
    """Base class for errors raised by this package."""


class CrcError(ModbusError):
    """Data corruption detected by checking the CRC."""

    def __init__(self, message: str = "RTU data crc not valid") -> None:
        super().__init__(message)


class ServerTimeoutError(ModbusError, TimeoutError):
    """The server did not reply in time."""

    def __init__(self, message: str = "server timed out") -> None:
        super().__init__(message)


class FunctionCodeNotSupportedError(ModbusError):
    """A locally generated illegal-function error, not a remote exception code."""

    def __init__(self, message: str = "this FunctionCode is not supported") -> None:
        super().__init__(message)


class ExceptionCode(IntEnum):
    """Modbus exception codes; OK and INTERNAL are not on the wire."""

    OK = 0
    ILLEGAL_FUNCTION = 1
    ILLEGAL_DATA_ADDRESS = 2
    ILLEGAL_DATA_VALUE = 3
    SERVER_DEVICE_FAILURE = 4
    ACKNOWLEDGE = 5
    SERVER_DEVICE_BUSY = 6
    MEMORY_PARITY_ERROR = 8
    GATEWAY_PATH_UNAVAILABLE = 10
    GATEWAY_TARGET_DEVICE_FAILED_TO_RESPOND = 11
    INTERNAL = 255


class ExceptionCodeError(ModbusError):
    """An error that maps directly onto a Modbus exception code."""

    def __init__(self, code: int) -> None:
        try:
            self.code: int = ExceptionCode(code)
        except ValueError:
            self.code = int(code) & 0xFF
        super().__init__(f"ExceptionCode:0x{int(self.code):02X}")


@dataclass
class OverSizeSettings:
    """Server-side tolerance for oversized packets seen in the wild.

    When ``support`` is on, the declared byte count is ignored and packets up
    to ``max_rtu`` bytes are accepted.
    """

    support: bool = False
    max_rtu: int = MAX_RTU_SIZE


OVER_SIZE = OverSizeSettings()


def _chain(err: Optional[BaseException]) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def to_exception_code(err: Optional[BaseException]) -> ExceptionCode | int:
    """Map an error to the exception code to send back, following its cause chain.

    Exception-code errors keep their code, unsupported function codes become
    ILLEGAL_FUNCTION, and everything else SERVER_DEVICE_FAILURE.
    """
    if err is None:
        debugf("ToExceptionCode: unexpected covert nil error to ExceptionCode")
        return ExceptionCode.SERVER_DEVICE_FAILURE
    for e in _chain(err):
        if isinstance(e, ExceptionCodeError):
            return e.code
    for e in _chain(err):
        if isinstance(e, FunctionCodeNotSupportedError):
            return ExceptionCode.ILLEGAL_FUNCTION
    return ExceptionCode.SERVER_DEVICE_FAILURE


class FunctionCode(int):
    """A Modbus function code byte, possibly with the error flag set."""

    READ_COILS: ClassVar["FunctionCode"]
    READ_DISCRETE_INPUTS: ClassVar["FunctionCode"]
    READ_HOLDING_REGISTERS: ClassVar["FunctionCode"]
    READ_INPUT_REGISTERS: ClassVar["FunctionCode"]
    WRITE_SINGLE_COIL: ClassVar["FunctionCode"]
    WRITE_SINGLE_REGISTER: ClassVar["FunctionCode"]
    WRITE_MULTIPLE_COILS: ClassVar["FunctionCode"]
    WRITE_MULTIPLE_REGISTERS: ClassVar["FunctionCode"]

    def __new__(cls, value: int) -> "FunctionCode":
        value = int(value)
        if not 0 <= value <= 0xFF:
            raise ValueError(f"function code {value} does not fit in a byte")
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"FunctionCode({int(self)})"

    def __str__(self) -> str:
        return str(int(self))

    def valid(self) -> bool:
        """True for a supported function that is not an error response."""
        return 0 < self < 7 or 14 < self < 17

    def max_range(self) -> int:
        """Largest address in the Modbus protocol."""
        return 0xFFFF

    def max_per_packet(self) -> int:
        """Maximum number of values one packet of this function can carry."""
        if self in (1, 2):
            return 2000
        if self in (3, 4):
            return 125
        if self in (5, 6):
            return 1
        if self == 15:
            return 0x07B0
        if self == 16:
            return 0x007B
        return 0

    def max_per_packet_sized(self, size: int) -> int:
        """Maximum number of values for a PDU limited to ``size`` bytes.

        At least 1 (8 for bools) is returned if ``size`` is too small.
        """
        if size < 0:
            raise ValueError(f"packet size must not be negative, got {size}")
        s = min(size, MAX_PDU_SIZE)
        if s < 10:
            debugf("warning: PDU packet size is only %s", s)
        if self in (1, 2):
            if s < 4:
                return 8
            if s == MAX_PDU_SIZE:
                s -= 1  # one byte is not used even at max
            return (s - 2) * 8
        if self in (3, 4):
            if s < 6:
                return 1
            return (s - 2) // 2
        if self in (5, 6):
            return 1
        if self == 15:
            if s < 8:
                return 8
            if s == MAX_PDU_SIZE:
                s -= 1
            return (s - 6) * 8
        if self == 16:
            if s < 10:
                return 1
            return (s - 6) // 2
        return 0

    def make_request_header(self, address: int, quantity: int) -> "PDU":
        """Build a request PDU without data for ``quantity`` values at ``address``."""
        if quantity > self.max_per_packet():
            raise ModbusError(f"{self} can not pack {quantity} at once")
        if address + quantity > self.max_range():
            raise ModbusError(
                f"{address} + {quantity - 1} out of range {self.max_range()}"
            )
        header = bytes((int(self), (address >> 8) & 0xFF, address & 0xFF))
        if self.is_single():
            return PDU(header)
        header += bytes(((quantity >> 8) & 0xFF, quantity & 0xFF))
        if self == 15:
            return PDU(header + bytes(((quantity + 7) // 8 & 0xFF,)))
        if self == 16:
            return PDU(header + bytes((quantity * 2 & 0xFF,)))
        return PDU(header)

    def is_uint16(self) -> bool:
        """True if the function concerns 16 bit registers."""
        return self in (3, 4, 6, 16)

    def is_bool(self) -> bool:
        """True if the function concerns boolean values."""
        return self in (1, 2, 5, 15)

    def is_single(self) -> bool:
        """True if the function transmits exactly one value."""
        return self in (5, 6)

    def is_write_to_server(self) -> bool:
        """True if the function writes to the server."""
        return self in (5, 6, 15, 16, 22, 23)

    def is_read_to_server(self) -> bool:
        """True if the function reads from the server."""
        return self in (1, 2, 3, 4, 23)

    def separate_error(self) -> tuple[bool, "FunctionCode"]:
        """Return whether the error flag is set, and the code without it."""
        return self > 0x7F, FunctionCode(self & 0x7F)

    def with_error(self) -> "FunctionCode":
        """Return this code with the error flag set."""
        return FunctionCode((self + 0x80) & 0xFF)


FunctionCode.READ_COILS = FunctionCode(1)
FunctionCode.READ_DISCRETE_INPUTS = FunctionCode(2)
FunctionCode.READ_HOLDING_REGISTERS = FunctionCode(3)
FunctionCode.READ_INPUT_REGISTERS = FunctionCode(4)
FunctionCode.WRITE_SINGLE_COIL = FunctionCode(5)
FunctionCode.WRITE_SINGLE_REGISTER = FunctionCode(6)
FunctionCode.WRITE_MULTIPLE_COILS = FunctionCode(15)
FunctionCode.WRITE_MULTIPLE_REGISTERS = FunctionCode(16)


class PDU(bytes):
    """The Modbus Protocol Data Unit."""

    def __repr__(self) -> str:
        return f"PDU({self.hex()})"

    def validate_request(self) -> None:
        """Raise ExceptionCodeError if this request is malformed.

        Address and value errors are checked by ``request_values``.
        """
        if not self.function_code().valid():
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_FUNCTION)
        if len(self) < 3:
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_ADDRESS)

    def function_code(self) -> FunctionCode:
        """The function code, 0 for an empty PDU."""
        return FunctionCode(self[0]) if self else FunctionCode(0)

    def address(self) -> int:
        """The starting address."""
        if len(self) < 3:
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_ADDRESS)
        return (self[1] << 8) | self[2]

    def request_count(self) -> int:
        """The number of values requested."""
        if self.function_code().is_single():
            return 1
        if len(self) < 5:
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_VALUE)
        return (self[3] << 8) | self[4]

    def request_values(self) -> bytes:
        """The data bytes of a write request, after checking they fit the header."""
        f = self.function_code()
        if f == 0:
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_FUNCTION)
        if f.is_single():
            if len(self) != 5:
                debugf("fc %s got %s PDU bytes, expected 5", f, len(self))
                raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_VALUE)
            return bytes(self[3:])
        lb = len(self) - 6
        if lb < 1:
            debugf("fc %s got %s PDU bytes, expected > 6", f, len(self))
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_VALUE)
        if lb != self[5] and not OVER_SIZE.support:
            debugf("declared %s bytes of data, but got %s bytes", self[5], lb)
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_VALUE)
        count = self.request_count()
        if count + self.address() > f.max_range():
            debugf("address out of range")
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_ADDRESS)
        expected = count * 2 if f.is_uint16() else (count + 7) // 8
        if lb != expected:
            debugf("%s values do not fit in %s bytes", count, lb)
            raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_VALUE)
        return bytes(self[6:])

    def reply_values(self) -> bytes:
        """The data bytes of a read reply."""
        n = len(self) - 2
        if n < 1 or n != self[1]:
            raise ModbusError("length mismatch with bytes")
        return bytes(self[2:])

    def make_read_reply(self, data: bytes) -> "PDU":
        """The reply to this read request carrying ``data``."""
        return PDU(bytes((int(self.function_code()), len(data) & 0xFF)) + bytes(data))

    def make_write_request(self, data: bytes) -> "PDU":
        """This write request header followed by ``data``."""
        fc = self.function_code()
        if fc in (5, 6):
            return PDU(self[:3] + bytes(data))
        if fc in (15, 16):
            return PDU(self[:6] + bytes(data))
        debugf("MakeRequestData unsupported for %s\n", fc)
        raise FunctionCodeNotSupportedError(f"can not make write request for function code {fc}")

    def make_write_reply(self) -> "PDU":
        """The reply to this write request, assuming it succeeded."""
        return PDU(self[:5]) if len(self) > 5 else self


def exception_reply_packet(req: bytes, code: int) -> PDU:
    """The exception reply to ``req`` carrying ``code``."""
    fc = PDU(req).function_code()
    return PDU(bytes((fc | 0x80, int(code) & 0xFF)))


def match_pdu(ask: bytes, ans: bytes) -> bool:
    """True if ``ans`` has the function code of ``ask``, with or without the error flag."""
    return PDU(ask).function_code() == PDU(ans).function_code() % 128


class RTU(bytes):
    """The Modbus RTU Application Data Unit: slave id, PDU and CRC."""

    def __repr__(self) -> str:
        return f"RTU({self.hex()})"

    def is_multicast(self) -> bool:
        """True if addressed to the multicast slave id 0."""
        return len(self) > 0 and self[0] == 0

    def pdu(self) -> PDU:
        """The PDU inside, after checking length and CRC."""
        if len(self) < 4:
            raise ModbusError("RTU data too short to produce PDU")
        if not validate(self):
            raise CrcError()
        return self.fast_pdu()

    def fast_pdu(self) -> PDU:
        """The PDU inside, without any checks."""
        return PDU(self[1:-2])


def make_rtu(slave_id: int, pdu: bytes) -> RTU:
    """Frame ``pdu`` for ``slave_id`` with its CRC."""
    return RTU(with_crc(bytes((slave_id,)) + bytes(pdu)))