"""Modbus RTU client (master) over a serial context."""

from __future__ import annotations

import contextlib
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, NoReturn, Optional, Protocol

from .debug import debugf
from .modbus import (
    MAX_RTU_SIZE,
    PDU,
    RTU,
    CrcError,
    FunctionCode,
    ModbusError,
    ServerTimeoutError,
    make_rtu,
)
from .packet_reader import PacketReader, RTUPacketReader, is_request_reply
from .simple_handler import ProtocolHandler


class TransactionsError(ModbusError):
    """A transaction in a sequence failed; ``index`` is its position."""

    def __init__(self, index: int, error: BaseException) -> None:
        self.index = index
        self.error = error
        super().__init__(f"{error} in request {index}")


class TransactionStarter(Protocol):
    def start_transaction_to_server(self, slave_id: int, req: bytes) -> "Future[None]": ...


class _Kind(Enum):
    START = "start"
    READ = "read"
    ERROR = "error"


@dataclass
class _Action:
    kind: _Kind
    data: RTU = field(default_factory=lambda: RTU(b""))
    error: Optional[BaseException] = None
    future: Optional["Future[None]"] = None


def _settle(future: Optional["Future[None]"], error: Optional[BaseException] = None) -> None:
    if future is None or future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


class RTUClient:
    """Starts RTU transactions to servers and feeds the results to a handler.

    ``serve`` must be running for transactions to be carried out.
    """

    def __init__(self, com: Any, slave_id: int) -> None:
        self.com = com
        self.slave_id = slave_id
        self.server_processing_time = 1.0
        if isinstance(com, PacketReader):
            self._reader: PacketReader = com
        else:
            self._reader = RTUPacketReader(com, is_client=True)
        self._actions: "queue.Queue[_Action]" = queue.Queue()
        self._pending: deque[_Action] = deque()
        self._lock = threading.Lock()
        self._closed = False

    def transaction_timeout(self, req_len: int, ans_len: int) -> float:
        """Seconds to wait for a reply, given request and answer packet lengths."""
        return self.com.bytes_delay(req_len + ans_len) + self.server_processing_time

    def _read_loop(self) -> None:
        while True:
            try:
                data = self._reader.read(MAX_RTU_SIZE)
            except Exception as err:  # any read failure ends the client
                debugf("RTUClient read err:%s\n", err)
                self._actions.put(_Action(_Kind.ERROR, error=err))
                with contextlib.suppress(Exception):
                    self.close()
                return
            debugf("RTUClient read packet:%s\n", bytes(data).hex())
            self._actions.put(_Action(_Kind.READ, data=RTU(data)))

    def serve(self, handler: ProtocolHandler) -> NoReturn:
        """Carry out transactions until the connection fails, then close and raise."""
        reader = threading.Thread(target=self._read_loop, name="rtu-client-reader", daemon=True)
        reader.start()
        try:
            self._serve(handler)
        finally:
            self._shut_down()
            with contextlib.suppress(OSError):
                self.close()

    def _serve(self, handler: ProtocolHandler) -> NoReturn:
        while True:
            act = self._pending.popleft() if self._pending else self._actions.get()
            if act.kind is _Kind.ERROR:
                assert act.error is not None
                raise act.error
            if act.kind is _Kind.READ:
                self.com.stats.add("other_drops")
                debugf("RTUClient drop unexpected: %s", act.data.hex())
                continue
            self._transact(handler, act)

    def _transact(self, handler: ProtocolHandler, act: _Action) -> None:
        future = act.future
        data = act.data
        ap = data.fast_pdu()
        afc = ap.function_code()
        if afc.is_write_to_server():
            try:
                data = make_rtu(data[0], ap.make_write_request(handler.on_read(ap)))
            except Exception as err:  # handler failures belong to this transaction
                _settle(future, err)
                return
            ap = data.fast_pdu()
        time.sleep(self.com.min_delay())
        try:
            self.com.write(data)
        except Exception as err:
            _settle(future, err)
            raise
        if data[0] == 0:
            time.sleep(self.com.bytes_delay(len(data)))
            _settle(future)  # multicast has no reply
            return

        stats = self.com.stats
        deadline = time.monotonic() + self.transaction_timeout(len(data), MAX_RTU_SIZE)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _settle(future, ServerTimeoutError())
                return
            try:
                react = self._actions.get(timeout=remaining)
            except queue.Empty:
                continue
            if react.kind is _Kind.START:
                self._pending.append(react)
                continue
            if react.kind is _Kind.ERROR:
                assert react.error is not None
                _settle(future, react.error)
                raise react.error
            if not react.data or react.data[0] != data[0]:
                stats.add("id_drops")
                debugf("RTUClient unexpected slaveId:%s in %s\n", data[0], react.data.hex())
                continue
            try:
                rp = react.data.pdu()
            except CrcError as err:
                stats.add("crc_errors")
                _settle(future, err)
                return
            except ModbusError as err:
                stats.add("other_errors")
                _settle(future, err)
                return
            has_err, fc = rp.function_code().separate_error()
            if has_err and fc == afc:
                stats.add("other_errors")
                handler.on_error(ap, rp)
                _settle(future, ModbusError(f"server reply with exception:{rp.hex()}"))
                return
            if not is_request_reply(data.fast_pdu(), rp):
                stats.add("other_errors")
                _settle(future, ModbusError(f"unexpected reply:{rp.hex()}"))
                return
            if afc.is_read_to_server():
                try:
                    handler.on_write(ap, rp.reply_values())
                except Exception as err:  # handler failures belong to this transaction
                    stats.add("other_errors")
                    _settle(future, err)
                    return
            _settle(future)
            return

    def _shut_down(self) -> None:
        closed = ModbusError("client is closed")
        with self._lock:
            self._closed = True
            while self._pending:
                _settle(self._pending.popleft().future, closed)
            while True:
                try:
                    act = self._actions.get_nowait()
                except queue.Empty:
                    break
                if act.kind is _Kind.START:
                    _settle(act.future, closed)

    def close(self) -> None:
        """Close the client's connection."""
        self.com.close()

    def do_transaction(self, req: bytes) -> None:
        """Run one transaction with the default slave id, raising on failure.

        For writes to the server, the data part is filled in by the handler.
        """
        self.start_transaction_to_server(self.slave_id, req).result()

    def start_transaction_to_server(self, slave_id: int, req: bytes) -> "Future[None]":
        """Queue a transaction to ``slave_id``; the future completes when it is done."""
        future: "Future[None]" = Future()
        with self._lock:
            if self._closed:
                future.set_exception(ModbusError("client is closed"))
                return future
            self._actions.put(
                _Action(_Kind.START, data=make_rtu(slave_id, PDU(req)), future=future)
            )
        return future

    def __enter__(self) -> "RTUClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def do_transactions(client: TransactionStarter, slave_id: int, reqs: Iterable[bytes]) -> int:
    """Run ``reqs`` in order and return how many ran.

    Stops at the first failure, raising TransactionsError with its index.
    """
    count = 0
    for index, req in enumerate(reqs):
        try:
            client.start_transaction_to_server(slave_id, req).result()
        except Exception as err:
            raise TransactionsError(index, err) from err
        count = index + 1
    return count


def make_pdu_request_headers(
    fc: int, address: int, quantity: int, append_to: Optional[Iterable[PDU]] = None
) -> list[PDU]:
    """Split a request into headers of the largest size ``fc`` allows."""
    fc = FunctionCode(fc)
    return make_pdu_request_headers_sized(fc, address, quantity, fc.max_per_packet(), append_to)


def make_pdu_request_headers_sized(
    fc: int,
    address: int,
    quantity: int,
    max_per_packet: int,
    append_to: Optional[Iterable[PDU]] = None,
) -> list[PDU]:
    """Split a request into headers of at most ``max_per_packet`` values each.

    The headers follow those in ``append_to``.
    """
    fc = FunctionCode(fc)
    if address + quantity > fc.max_range():
        raise ModbusError("quantity is out of range")
    if quantity > 0 and max_per_packet <= 0:
        raise ValueError(f"max per packet must be positive, got {max_per_packet}")
    headers = list(append_to) if append_to else []
    while quantity > 0:
        q = min(quantity, max_per_packet)
        headers.append(fc.make_request_header(address, q))
        address += q
        quantity -= q
    return headers