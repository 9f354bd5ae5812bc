"""Protocol handler interface and a callback-based implementation."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

from .data import bools_to_data, data_to_bools, data_to_registers, registers_to_data
from .modbus import PDU, FunctionCode, FunctionCodeNotSupportedError

ReadBools = Callable[[int, int], Sequence[bool]]
WriteBools = Callable[[int, list], None]
ReadRegisters = Callable[[int, int], Sequence[int]]
WriteRegisters = Callable[[int, list], None]
OnErrorCallback = Callable[[PDU, PDU], None]

_F = TypeVar("_F")

_COILS = (
    FunctionCode.READ_COILS,
    FunctionCode.WRITE_SINGLE_COIL,
    FunctionCode.WRITE_MULTIPLE_COILS,
)
_HOLDING = (
    FunctionCode.READ_HOLDING_REGISTERS,
    FunctionCode.WRITE_SINGLE_REGISTER,
    FunctionCode.WRITE_MULTIPLE_REGISTERS,
)


class ProtocolHandler(abc.ABC):
    """Handles PDUs as reads or writes from the local point of view."""

    @abc.abstractmethod
    def on_write(self, req: PDU, data: bytes) -> None:
        """Store ``data``: a write request on a server, or a read reply on a client."""

    @abc.abstractmethod
    def on_read(self, req: PDU) -> bytes:
        """Supply data: for a read reply on a server, or a write request on a client."""

    @abc.abstractmethod
    def on_error(self, req: PDU, err_rep: PDU) -> None:
        """Called on a client that receives a well formed exception reply."""


def _require(callback: Optional[_F]) -> _F:
    if callback is None:
        raise FunctionCodeNotSupportedError()
    return callback


@dataclass
class SimpleHandler(ProtocolHandler):
    """A ProtocolHandler built from callbacks; a missing callback means unsupported."""

    read_discrete_inputs: Optional[ReadBools] = None
    write_discrete_inputs: Optional[WriteBools] = None
    read_coils: Optional[ReadBools] = None
    write_coils: Optional[WriteBools] = None
    read_input_registers: Optional[ReadRegisters] = None
    write_input_registers: Optional[WriteRegisters] = None
    read_holding_registers: Optional[ReadRegisters] = None
    write_holding_registers: Optional[WriteRegisters] = None
    on_error_imp: Optional[OnErrorCallback] = None

    def on_read(self, req: bytes) -> bytes:
        """Read local values for ``req`` and encode them as PDU data."""
        req = PDU(req)
        fc = req.function_code()
        address = req.address()
        count = req.request_count()
        if fc == FunctionCode.READ_DISCRETE_INPUTS:
            values = _require(self.read_discrete_inputs)(address, count)
            return bools_to_data(values, fc)
        if fc in _COILS:
            values = _require(self.read_coils)(address, count)
            return bools_to_data(values, fc)
        if fc == FunctionCode.READ_INPUT_REGISTERS:
            return registers_to_data(_require(self.read_input_registers)(address, count))
        if fc in _HOLDING:
            return registers_to_data(_require(self.read_holding_registers)(address, count))
        raise FunctionCodeNotSupportedError()

    def on_write(self, req: bytes, data: bytes) -> None:
        """Decode PDU ``data`` for ``req`` and store the values locally."""
        req = PDU(req)
        fc = req.function_code()
        address = req.address()
        count = req.request_count()
        if fc == FunctionCode.READ_DISCRETE_INPUTS:
            callback = _require(self.write_discrete_inputs)
            callback(address, data_to_bools(data, count, fc))
            return
        if fc in _COILS:
            callback = _require(self.write_coils)
            callback(address, data_to_bools(data, count, fc))
            return
        if fc == FunctionCode.READ_INPUT_REGISTERS:
            callback = _require(self.write_input_registers)
            callback(address, data_to_registers(data))
            return
        if fc in _HOLDING:
            callback = _require(self.write_holding_registers)
            callback(address, data_to_registers(data))
            return
        raise FunctionCodeNotSupportedError()

    def on_error(self, req: bytes, err_rep: bytes) -> None:
        """Pass an exception reply to ``on_error_imp`` if it is set."""
        if self.on_error_imp is not None:
            self.on_error_imp(PDU(req), PDU(err_rep))