"""Interactive memory-backed Modbus RTU server or client on a serial port."""

from __future__ import annotations

import argparse
import sys
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import serial as pyserial

from .debug import set_debug_out
from .modbus import MAX_RTU_SIZE, PDU, FunctionCode
from .rtu_client import (
    RTUClient,
    TransactionsError,
    do_transactions,
    make_pdu_request_headers_sized,
)
from .rtu_server import RTUServer, to_slave_id
from .serial import SerialContext
from .simple_handler import SimpleHandler

MEMORY_SIZE = 0x10000

_PARITIES = {
    "N": pyserial.PARITY_NONE,
    "E": pyserial.PARITY_EVEN,
    "O": pyserial.PARITY_ODD,
}
_STOP_BITS = {1: pyserial.STOPBITS_ONE, 2: pyserial.STOPBITS_TWO}


@dataclass
class Memory:
    """Full address space of coils, discrete inputs and registers."""

    discretes: list = field(default_factory=lambda: [False] * MEMORY_SIZE)
    coils: list = field(default_factory=lambda: [False] * MEMORY_SIZE)
    input_registers: list = field(default_factory=lambda: [0] * MEMORY_SIZE)
    holding_registers: list = field(default_factory=lambda: [0] * MEMORY_SIZE)

    def fill_am3(self) -> None:
        """Fill memory with the "am3" pattern used as starting data."""
        size = len(self.discretes)
        self.discretes[:] = [i % 3 == 0 for i in range(size)]
        self.coils[:] = [i % 3 != 0 for i in range(len(self.coils))]
        self.input_registers[:] = [(i * 3) & 0xFFFF for i in range(len(self.input_registers))]
        self.holding_registers[:] = [
            (0xFFFF - i) & 0xFFFF for i in range(len(self.holding_registers))
        ]

    @staticmethod
    def _store(table: list, address: int, values: Sequence) -> None:
        for offset, value in enumerate(values):
            table[(address + offset) & 0xFFFF] = value

    def handler(self) -> SimpleHandler:
        """A handler that reads and writes this memory, logging each call."""

        def reader(name: str, table: list):
            def read(address: int, quantity: int) -> list:
                print(f"{name} from {address}, quantity {quantity}")
                return table[address : address + quantity]

            return read

        def writer(name: str, table: list):
            def write(address: int, values: list) -> None:
                print(f"{name} from {address}, quantity {len(values)}")
                self._store(table, address, values)

            return write

        def on_error(req: PDU, err_rep: PDU) -> None:
            print(f"error received: {bytes(err_rep).hex()} from req: {bytes(req).hex()}")

        return SimpleHandler(
            read_discrete_inputs=reader("ReadDiscreteInputs", self.discretes),
            write_discrete_inputs=writer("WriteDiscreteInputs", self.discretes),
            read_coils=reader("ReadCoils", self.coils),
            write_coils=writer("WriteCoils", self.coils),
            read_input_registers=reader("ReadInputRegisters", self.input_registers),
            write_input_registers=writer("WriteInputRegisters", self.input_registers),
            read_holding_registers=reader("ReadHoldingRegisters", self.holding_registers),
            write_holding_registers=writer("WriteHoldingRegisters", self.holding_registers),
            on_error_imp=on_error,
        )


def _parse_uint(text: str, bits: int, what: str) -> int:
    if not text.isascii() or not text.isdigit():
        raise ValueError(f"{what} {text} parse error: invalid syntax")
    value = int(text)
    if value >= 1 << bits:
        raise ValueError(f"{what} {text} parse error: value out of range")
    return value


def parse_request(tokens: Sequence[str]) -> tuple[FunctionCode, int, int]:
    """Parse "function code [address [quantity]]" tokens; quantity defaults to 1."""
    if not tokens:
        raise ValueError("function code required")
    fc = FunctionCode(_parse_uint(tokens[0], 7, "function code"))
    if not fc.valid():
        raise ValueError(f"function code {int(fc)} is not supported")
    address = 0
    quantity = 1
    if len(tokens) >= 2:
        address = _parse_uint(tokens[1], 16, "address")
    if len(tokens) >= 3:
        quantity = _parse_uint(tokens[2], 16, "quantity")
    return fc, address, quantity


def run_client(
    client, write_size_limit: int, read_size_limit: int, lines: Iterable[str]
) -> int:
    """Run one batch of transactions per input line; return the requests finished."""
    print('Send requests by function code, address, and quantity. such as "2 0 12" (base 10)')
    finished = 0
    for line in lines:
        tokens = line.strip(" \r\n").split()
        try:
            fc, address, quantity = parse_request(tokens)
        except ValueError as err:
            print(err)
            continue
        size_limit = write_size_limit if fc.is_write_to_server() else read_size_limit
        limit = fc.max_per_packet_sized(size_limit - 3)
        print("limit", limit)
        try:
            reqs = make_pdu_request_headers_sized(fc, address, quantity, limit)
        except (ValueError, Exception) as err:  # out of range requests are reported
            print(err)
            continue
        print("doing ", int(fc), address, quantity, "in", len(reqs), "requests")
        try:
            n = do_transactions(client, client.slave_id, reqs)
        except TransactionsError as err:
            finished += err.index
            print(err.error, "in request", err.index + 1, "/", len(reqs), reqs[err.index].hex())
            continue
        finished += n
        print("finished", n, "requests")
    return finished


class _PortStream:
    """Makes a serial port return whatever is available instead of filling reads."""

    def __init__(self, port) -> None:
        self.port = port

    def read(self, size: int) -> bytes:
        first = self.port.read(1)
        if not first:
            raise EOFError("serial port closed")
        waiting = min(size - 1, self.port.in_waiting)
        return first + (self.port.read(waiting) if waiting > 0 else b"")

    def write(self, data: bytes) -> int:
        return self.port.write(bytes(data))

    def close(self) -> None:
        self.port.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Memory-backed Modbus RTU device.")
    parser.add_argument(
        "-l", dest="address", default="",
        help="required device location, such as: /dev/ttyS0 in linux or com1 in windows",
    )
    parser.add_argument("-r", dest="baud_rate", type=int, default=19200, help="baud rate")
    parser.add_argument(
        "-p", dest="parity", default="E", help="parity: N - None, E - Even, O - Odd"
    )
    parser.add_argument("-s", dest="stop_bits", type=int, default=1, help="stop bits: 1 or 2")
    parser.add_argument(
        "-c", dest="is_client", action="store_true",
        help="client instead of server (default). The client is interactive.",
    )
    parser.add_argument(
        "-id", dest="slave_id", type=int, default=1,
        help="the slaveId of the server for serial communication, 0 for multicast only",
    )
    parser.add_argument(
        "-d", dest="fill_data", default="am3",
        help="data to start with, am3 starts memory with bools as address (mod 3) == 0, "
        "and registers as address * 3 (mod uint16)",
    )
    parser.add_argument(
        "-wsl", dest="write_size_limit", type=int, default=MAX_RTU_SIZE,
        help="client only, the max size in bytes of a write to server to send",
    )
    parser.add_argument(
        "-rsl", dest="read_size_limit", type=int, default=MAX_RTU_SIZE,
        help="client only, the max size in bytes of a read from server to request",
    )
    parser.add_argument("-v", dest="verbose", action="store_true", help="prints debugging information")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the device described by the command line; return the exit status."""
    args = _build_parser().parse_args(argv)
    if args.verbose:
        set_debug_out(sys.stdout)
    try:
        slave_id = to_slave_id(args.slave_id)
    except ValueError as err:
        print(f"set slaveID error: {err}", file=sys.stderr)
        return 1
    if args.is_client and (
        args.write_size_limit > MAX_RTU_SIZE or args.read_size_limit > MAX_RTU_SIZE
    ):
        print("write/read size limit is too big", file=sys.stderr)
        return 1
    parity = _PARITIES.get(args.parity[:1].upper(), pyserial.PARITY_NONE)
    stop_bits = _STOP_BITS.get(args.stop_bits, pyserial.STOPBITS_ONE)
    try:
        port = pyserial.Serial(
            args.address, args.baud_rate, parity=parity, stopbits=stop_bits, timeout=None
        )
    except (pyserial.SerialException, ValueError, OSError) as err:
        print(f"open serial error: {err}", file=sys.stderr)
        return 1

    com = SerialContext(_PortStream(port), args.baud_rate)
    memory = Memory()
    if args.fill_data == "am3":
        memory.fill_am3()
    if args.is_client:
        client = RTUClient(com, slave_id)
        threading.Thread(
            target=run_client,
            args=(client, args.write_size_limit, args.read_size_limit, sys.stdin),
            name="interactive-client",
            daemon=True,
        ).start()
        device = client
    else:
        device = RTUServer(com, slave_id)
    try:
        device.serve(memory.handler())
    except KeyboardInterrupt:
        print(com.stats)
        print("close serial port")
        com.close()
        return 0
    except Exception as err:  # serving only ends on an error
        print(f"serve error: {err}", file=sys.stderr)
        print(com.stats)
        return 1
    return 0