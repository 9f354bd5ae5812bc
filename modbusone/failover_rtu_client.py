"""RTU client that shares a bus with a failover partner client."""

from __future__ import annotations

import contextlib
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, NoReturn, Optional

from .debug import debugf
from .failover import FailoverSerialConn
from .modbus import MAX_RTU_SIZE, PDU, RTU, CrcError, ModbusError, ServerTimeoutError, make_rtu
from .packet_reader import is_request_reply
from .simple_handler import ProtocolHandler


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


class FailoverRTUClient:
    """RTU client with failover; ``is_failover`` marks the secondary.

    Many read packets are expected to be unexpected and many writes to be
    dropped, so it guesses the best interpretation instead of strict checking.
    """

    def __init__(self, com: Any, is_failover: bool, slave_id: int) -> None:
        if not isinstance(com, FailoverSerialConn):
            com = FailoverSerialConn(com, is_failover, True)
        if com.is_failover != is_failover:
            raise ValueError("A SerialContext was provided with conflicting settings.")
        self.com = com
        self.slave_id = slave_id
        self.server_processing_time = 1.0
        self._actions: "queue.Queue[_Action]" = queue.Queue()
        self._pending: deque[_Action] = deque()
        self._lock = threading.Lock()
        self._closed = False
        self._last = b""

    def transaction_timeout(self, req_len: int, ans_len: int) -> float:
        """Seconds to wait for a reply, given request and answer packet lengths."""
        return self.com.bytes_delay(req_len + ans_len) + self.server_processing_time

    def _read_loop(self) -> None:
        while True:
            try:
                data = self.com.read(MAX_RTU_SIZE)
            except Exception as err:  # any read failure ends the client
                debugf("FailoverRTUClient read err:%s\n", err)
                self._actions.put(_Action(_Kind.ERROR, error=err))
                with contextlib.suppress(Exception):
                    self.close()
                return
            debugf("FailoverRTUClient read packet:%s\n", bytes(data).hex())
            self._actions.put(_Action(_Kind.READ, data=RTU(data)))

    def _read_unexpected(
        self, handler: ProtocolHandler, act: _Action, otherwise: Callable[[], None]
    ) -> None:
        if act.error is not None or act.kind is not _Kind.READ or not act.data:
            otherwise()
            return
        try:
            pdu = act.data.pdu()
        except ModbusError as err:
            debugf("readUnexpected GetPDU error: %s", err)
            otherwise()
            return
        if not is_request_reply(self._last, pdu):
            if self._last:
                self.com.stats.add("other_drops")
            debugf("failover client serve set last: %s", pdu.hex())
            self._last = bytes(pdu)
            return
        req = PDU(self._last)
        try:
            if pdu.function_code().is_write_to_server():
                return
            try:
                handler.on_write(req, pdu.reply_values())
            except Exception as err:  # the observed pair could not be applied
                debugf("readUnexpected error: %s", err)
                otherwise()
        finally:
            self._last = b""

    def serve(self, handler: ProtocolHandler) -> NoReturn:
        """Carry out transactions until the connection fails, then close and raise."""
        debugf("serve routine for %s", self.com._describe())
        threading.Thread(target=self._read_loop, name="failover-reader", daemon=True).start()
        try:
            while True:
                act = self._pending.popleft() if self._pending else self._actions.get()
                if act.kind is _Kind.ERROR:
                    assert act.error is not None
                    raise act.error
                if act.kind is _Kind.READ:
                    self._read_unexpected(
                        handler, act, lambda: self.com.stats.add("other_drops")
                    )
                    continue
                self._transact(handler, act)
        finally:
            self._shut_down()
            with contextlib.suppress(OSError):
                self.close()

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
        if data[0] == 0 or not self.com.is_active():
            debugf("FailoverRTUClient skip action:%s\n", data.hex())
            time.sleep(self.com.bytes_delay(len(data)) + self.server_processing_time)
            _settle(future)
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
                debugf("FailoverRTUClient unexpected slaveId:%s in %s\n", data[0], react.data.hex())
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
                stats.add("remote_errors")
                handler.on_error(ap, rp)
                _settle(future, ModbusError(f"server reply with exception:{rp.hex()}"))
                return
            if not is_request_reply(data.fast_pdu(), rp):
                self._read_unexpected(handler, act, lambda: stats.add("other_errors"))
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
        """Run one transaction with the default slave id, raising on failure."""
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

    def __enter__(self) -> "FailoverRTUClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()