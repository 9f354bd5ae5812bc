"""Modbus over TCP: MBAP framing, server and client."""

from __future__ import annotations

import socket
import threading
from concurrent.futures import Future
from typing import Any, NoReturn, Optional

from .debug import debugf
from .modbus import (
    MAX_PDU_SIZE,
    MAX_RTU_SIZE,
    OVER_SIZE,
    PDU,
    ModbusError,
    exception_reply_packet,
    to_exception_code,
)
from .packet_reader import is_request_reply
from .simple_handler import ProtocolHandler

TCP_HEADER_LENGTH = 6
MBAP_HEADER_LENGTH = TCP_HEADER_LENGTH + 1

_ACCEPT_POLL = 0.1


def _read_exact(stream: Any, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            raise EOFError("unexpected EOF" if buf else "EOF")
        buf += chunk
    return bytes(buf)


def read_tcp(stream: Any, max_size: int) -> bytes:
    """Read one MBAP frame (header, unit id and PDU) of at most ``max_size`` bytes."""
    header = _read_exact(stream, TCP_HEADER_LENGTH)
    if header[2] or header[3]:
        raise ModbusError(f"MBAP protocol of {header[2]:X} {header[3]:X} is unknown")
    length = header[4] * 256 + header[5]
    if length <= 2:
        raise ModbusError(f"MBAP data length of {length} is too short, bs:{header.hex()}")
    if max_size < length + TCP_HEADER_LENGTH:
        raise ModbusError(f"MBAP data length of {length} is too long")
    return header + _read_exact(stream, length)


def write_tcp(stream: Any, header: bytes, pdu: bytes) -> int:
    """Write ``pdu`` framed with the transaction, protocol and unit id of ``header``.

    ``stream`` is a socket or any object with ``write``. Returns the frame length.
    """
    length = len(pdu) + 1  # PDU plus the unit id byte
    frame = (
        bytes(header[:4])
        + bytes(((length >> 8) & 0xFF, length & 0xFF))
        + bytes(header[6:7])
        + bytes(pdu)
    )
    sendall = getattr(stream, "sendall", None)
    if sendall is not None:
        sendall(frame)
    else:
        stream.write(frame)
        flush = getattr(stream, "flush", None)
        if flush is not None:
            flush()
    return len(frame)


class TCPServer:
    """Answers Modbus TCP requests on every connection accepted from ``listener``."""

    def __init__(self, listener: socket.socket) -> None:
        self.listener = listener
        self._closed = threading.Event()

    def serve(self, handler: ProtocolHandler) -> NoReturn:
        """Accept connections until the listener fails, then close and raise."""
        try:
            self.listener.settimeout(_ACCEPT_POLL)
            while True:
                try:
                    conn, _ = self.listener.accept()
                except TimeoutError:
                    if self._closed.is_set():
                        raise OSError("accept: use of closed network connection") from None
                    continue
                except OSError as err:
                    if self._closed.is_set():
                        raise OSError("accept: use of closed network connection") from err
                    raise
                conn.settimeout(None)
                threading.Thread(
                    target=self._handle, args=(conn, handler), name="tcp-conn", daemon=True
                ).start()
        finally:
            self.close()

    @staticmethod
    def _reply_error(conn: socket.socket, header: bytes, req: PDU, err: BaseException) -> None:
        write_tcp(conn, header, exception_reply_packet(req, to_exception_code(err)))

    def _handle(self, conn: socket.socket, handler: ProtocolHandler) -> None:
        if OVER_SIZE.support:
            size = MBAP_HEADER_LENGTH + OVER_SIZE.max_rtu + TCP_HEADER_LENGTH
        else:
            size = MBAP_HEADER_LENGTH + MAX_PDU_SIZE
        with conn, conn.makefile("rb") as rfile:
            while True:
                try:
                    frame = read_tcp(rfile, size)
                except (OSError, EOFError, ValueError, ModbusError) as err:
                    debugf("readTCP %s\n", err)
                    return
                header = frame[:MBAP_HEADER_LENGTH]
                pdu = PDU(frame[MBAP_HEADER_LENGTH:])
                try:
                    pdu.validate_request()
                except ModbusError as err:
                    debugf("ValidateRequest %s\n", err)
                    return
                fc = pdu.function_code()
                try:
                    if fc.is_read_to_server():
                        try:
                            data = handler.on_read(pdu)
                        except Exception as err:  # handler errors become exception replies
                            debugf("TCPServer handler.on_read error:%s\n", err)
                            self._reply_error(conn, header, pdu, err)
                            continue
                        write_tcp(conn, header, pdu.make_read_reply(data))
                    elif fc.is_write_to_server():
                        try:
                            handler.on_write(pdu, pdu.request_values())
                        except Exception as err:  # handler errors become exception replies
                            debugf("TCPServer write request error:%s\n", err)
                            self._reply_error(conn, header, pdu, err)
                            continue
                        write_tcp(conn, header, pdu.make_write_reply())
                except OSError as err:
                    debugf("writeTCP %s\n", err)
                    return

    def close(self) -> None:
        """Stop accepting connections and close the listener."""
        self._closed.set()
        self.listener.close()

    def __enter__(self) -> "TCPServer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class TCPClient:
    """Runs Modbus TCP transactions over a connected socket, one at a time.

    ``serve`` must be called to supply the handler before transactions run.
    """

    def __init__(self, conn: socket.socket, slave_id: int) -> None:
        self.conn = conn
        self.slave_id = slave_id
        self._rfile = conn.makefile("rb")
        self._handler: Optional[ProtocolHandler] = None
        self._handler_ready = threading.Event()
        self._done = threading.Event()
        self._exit_error: Optional[BaseException] = None
        self._lock = threading.Lock()

    def serve(self, handler: ProtocolHandler) -> NoReturn:
        """Provide ``handler`` and wait until the client stops, then raise why."""
        self._handler = handler
        self._handler_ready.set()
        try:
            self._done.wait()
        finally:
            self.close()
        assert self._exit_error is not None
        raise self._exit_error

    def _get_handler(self) -> ProtocolHandler:
        self._handler_ready.wait()
        assert self._handler is not None
        return self._handler

    def _fail(self, err: BaseException) -> None:
        self._exit_error = err
        self._done.set()

    def close(self) -> None:
        """Stop the client and close the connection."""
        if self._exit_error is None:
            self._exit_error = ModbusError("closed by user action")
        self._done.set()
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.conn.close()
        self._rfile.close()

    def do_transaction(self, req: bytes) -> None:
        """Run one transaction with the default slave id, raising on failure."""
        self.do_transaction_to(self.slave_id, req)

    def do_transaction_to(self, slave_id: int, req: bytes) -> None:
        """Run one transaction addressed to ``slave_id``, raising on failure.

        For writes to the server, the data part is filled in by the handler.
        """
        with self._lock:
            req = PDU(req)
            if OVER_SIZE.support:
                size = OVER_SIZE.max_rtu + TCP_HEADER_LENGTH
            else:
                size = MAX_RTU_SIZE + TCP_HEADER_LENGTH
            handler = self._get_handler()
            if req.function_code().is_write_to_server():
                req = req.make_write_request(handler.on_read(req))
            try:
                write_tcp(self.conn, bytes((0, 0, 0, 0, 0, 0, slave_id & 0xFF)), req)
            except OSError as err:
                self._fail(err)
                raise
            try:
                frame = read_tcp(self._rfile, size)
            except (OSError, EOFError, ValueError, ModbusError) as err:
                self._fail(err)
                raise
            rp = PDU(frame[MBAP_HEADER_LENGTH:])
            has_err, fc = rp.function_code().separate_error()
            if has_err:
                handler.on_error(req, rp)
                raise ModbusError(f"server reply with exception:{rp.hex()}")
            if not is_request_reply(req, rp):
                err = ModbusError("unexpected packet received")
                self._fail(err)
                raise err
            if fc.is_read_to_server():
                try:
                    values = rp.reply_values()
                except ModbusError as err:
                    self._fail(err)
                    raise
                handler.on_write(req, values)

    def start_transaction_to_server(self, slave_id: int, req: bytes) -> "Future[None]":
        """Run a transaction in the background; the future completes when it is done."""
        future: "Future[None]" = Future()

        def run() -> None:
            try:
                self.do_transaction_to(slave_id, req)
            except BaseException as err:  # reported through the future
                future.set_exception(err)
            else:
                future.set_result(None)

        threading.Thread(target=run, name="tcp-transaction", daemon=True).start()
        return future

    def __enter__(self) -> "TCPClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()