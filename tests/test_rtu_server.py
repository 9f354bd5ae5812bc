import contextlib
import threading
from dataclasses import dataclass, field

import pytest

from modbusone.modbus import OVER_SIZE, RTU, FunctionCode, ExceptionCode, ExceptionCodeError, make_rtu
from modbusone.rtu_server import RTUServer, to_slave_id
from modbusone.serial import SerialContext
from modbusone.simple_handler import SimpleHandler

SLAVE_ID = 0x11

COILS_37 = [
    True, False, True, True, False, False, True, True,
    True, True, False, True, False, True, True, False,
    False, True, False, False, True, True, False, True,
    False, True, True, True, False, False, False, False,
    True, True, False, True, True,
]
INPUTS_22 = [
    False, False, True, True, False, True, False, True,
    True, True, False, True, True, False, True, True,
    True, False, True, False, True, True,
]
COILS_10 = [True, False, True, True, False, False, True, True, True, False]

FC03_REQUEST = bytes([0x11, 0x03, 0x00, 0x6B, 0x00, 0x03, 0x76, 0x87])
FC03_REPLY = bytes([0x11, 0x03, 0x06, 0xAE, 0x41, 0x56, 0x52, 0x43, 0x40, 0x49, 0xAD])
FC03_VALUES = [0xAE41, 0x5652, 0x4340]


class _Pipe:
    def __init__(self):
        self._buf = bytearray()
        self._cond = threading.Condition()
        self._closed = False

    def write(self, data):
        with self._cond:
            if self._closed:
                raise BrokenPipeError("pipe closed")
            self._buf += data
            self._cond.notify_all()
        return len(data)

    def read(self, size, timeout=None):
        with self._cond:
            if not self._cond.wait_for(lambda: self._buf or self._closed, timeout):
                raise TimeoutError("nothing to read")
            if not self._buf:
                return b""
            chunk = bytes(self._buf[:size])
            del self._buf[:size]
            return chunk

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class _End:
    def __init__(self, inbound, outbound):
        self.inbound = inbound
        self.outbound = outbound

    def read(self, size):
        return self.inbound.read(size)

    def write(self, data):
        return self.outbound.write(data)

    def close(self):
        self.inbound.close()
        self.outbound.close()


@dataclass
class _Link:
    to_server: _Pipe
    to_client: _Pipe
    context: SerialContext
    thread: threading.Thread
    errors: list = field(default_factory=list)

    def exchange(self, request, timeout=2.0):
        self.to_server.write(request)
        return self.to_client.read(1000, timeout=timeout)


@contextlib.contextmanager
def _running(handler, slave_id=SLAVE_ID):
    to_server, to_client = _Pipe(), _Pipe()
    context = SerialContext(_End(to_server, to_client), 115200)
    server = RTUServer(context, slave_id)
    errors = []

    def run():
        try:
            server.serve(handler)
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    link = _Link(to_server, to_client, context, thread, errors)
    try:
        yield link
    finally:
        server.close()
        thread.join(timeout=2)


READ_CASES = [
    (
        bytes([0x11, 0x01, 0x00, 0x13, 0x00, 0x25, 0x0E, 0x84]),
        bytes([0x11, 0x01, 0x05, 0xCD, 0x6B, 0xB2, 0x0E, 0x1B, 0x45, 0xE6]),
        "read_coils",
        COILS_37,
    ),
    (
        bytes([0x11, 0x02, 0x00, 0xC4, 0x00, 0x16, 0xBA, 0xA9]),
        bytes([0x11, 0x02, 0x03, 0xAC, 0xDB, 0x35, 0x20, 0x18]),
        "read_discrete_inputs",
        INPUTS_22,
    ),
    (FC03_REQUEST, FC03_REPLY, "read_holding_registers", FC03_VALUES),
    (
        bytes([0x11, 0x04, 0x00, 0x08, 0x00, 0x01, 0xB2, 0x98]),
        bytes([0x11, 0x04, 0x02, 0x00, 0x0A, 0xF8, 0xF4]),
        "read_input_registers",
        [0x000A],
    ),
]

WRITE_CASES = [
    (
        bytes([0x11, 0x05, 0x00, 0xAC, 0xFF, 0x00, 0x4E, 0x8B]),
        bytes([0x11, 0x05, 0x00, 0xAC, 0xFF, 0x00, 0x4E, 0x8B]),
        "write_coils",
        0x00AC,
        [True],
    ),
    (
        bytes([0x11, 0x06, 0x00, 0x01, 0x00, 0x03, 0x9A, 0x9B]),
        bytes([0x11, 0x06, 0x00, 0x01, 0x00, 0x03, 0x9A, 0x9B]),
        "write_holding_registers",
        0x0001,
        [3],
    ),
    (
        bytes([0x11, 0x0F, 0x00, 0x13, 0x00, 0x0A, 0x02, 0xCD, 0x01, 0xBF, 0x0B]),
        bytes([0x11, 0x0F, 0x00, 0x13, 0x00, 0x0A, 0x26, 0x99]),
        "write_coils",
        0x0013,
        COILS_10,
    ),
    (
        bytes([0x11, 0x10, 0x00, 0x01, 0x00, 0x02, 0x04, 0x00, 0x0A, 0x01, 0x02, 0xC6, 0xF0]),
        bytes([0x11, 0x10, 0x00, 0x01, 0x00, 0x02, 0x12, 0x98]),
        "write_holding_registers",
        0x0001,
        [0x000A, 0x0102],
    ),
]


@pytest.mark.parametrize("request_rtu,reply_rtu,attr,values", READ_CASES)
def test_read_requests_wire_format(request_rtu, reply_rtu, attr, values):
    handler = SimpleHandler(**{attr: lambda address, quantity: values})
    with _running(handler) as link:
        assert link.exchange(request_rtu) == reply_rtu


@pytest.mark.parametrize("request_rtu,reply_rtu,attr,address,values", WRITE_CASES)
def test_write_requests_wire_format(request_rtu, reply_rtu, attr, address, values):
    calls = []
    handler = SimpleHandler(**{attr: lambda a, v: calls.append((a, v))})
    with _running(handler) as link:
        assert link.exchange(request_rtu) == reply_rtu
    assert calls == [(address, values)]


def test_over_size_request_is_dropped_by_default():
    handler = SimpleHandler(write_holding_registers=lambda a, v: None)
    request = make_rtu(SLAVE_ID, bytes([16, 0, 0, 0, 200, 0]) + bytes(400))
    with _running(handler) as link:
        link.to_server.write(request)
        with pytest.raises(TimeoutError):
            link.to_client.read(1000, timeout=0.05)


def test_over_size_support(monkeypatch):
    monkeypatch.setattr(OVER_SIZE, "support", True)
    monkeypatch.setattr(OVER_SIZE, "max_rtu", 512)
    handler = SimpleHandler(
        write_holding_registers=lambda a, v: None,
        read_holding_registers=lambda a, q: [0] * q,
    )
    write = make_rtu(SLAVE_ID, bytes([16, 0, 0, 0, 200, 0]) + bytes(400))
    read = make_rtu(SLAVE_ID, bytes([3, 0, 0, 0, 200]))
    with _running(handler) as link:
        assert link.exchange(write).hex() == "1110000000c8c30f"
        # 0x90 is the low byte of 200 * 2 = 0x0190
        assert link.exchange(read)[:5].hex() == "1103900000"


def test_crc_error_is_counted_and_dropped():
    handler = SimpleHandler(read_holding_registers=lambda a, q: FC03_VALUES)
    corrupted = FC03_REQUEST[:-1] + bytes([FC03_REQUEST[-1] ^ 0xFF])
    with _running(handler) as link:
        link.to_server.write(corrupted)
        assert link.exchange(FC03_REQUEST) == FC03_REPLY
        assert link.context.stats.crc_errors == 1


def test_other_slave_id_is_ignored():
    handler = SimpleHandler(read_holding_registers=lambda a, q: FC03_VALUES)
    header = FunctionCode.READ_HOLDING_REGISTERS.make_request_header(0x006B, 3)
    with _running(handler) as link:
        link.to_server.write(make_rtu(0x12, header))
        assert link.exchange(FC03_REQUEST) == FC03_REPLY
        assert link.context.stats.id_drops == 1


def test_multicast_write_gets_no_reply():
    calls = []
    handler = SimpleHandler(
        write_holding_registers=lambda a, v: calls.append((a, v)),
        read_holding_registers=lambda a, q: FC03_VALUES,
    )
    with _running(handler) as link:
        link.to_server.write(make_rtu(0, bytes([0x06, 0x00, 0x01, 0x00, 0x03])))
        assert link.exchange(FC03_REQUEST) == FC03_REPLY
    assert calls == [(1, [3])]


def test_unsupported_function_gets_exception_reply():
    with _running(SimpleHandler()) as link:
        reply = RTU(link.exchange(make_rtu(SLAVE_ID, b"\x07\x00")))
        assert reply.pdu() == bytes([0x87, ExceptionCode.ILLEGAL_FUNCTION])
        assert reply[0] == SLAVE_ID


def test_missing_handler_gets_illegal_function():
    with _running(SimpleHandler()) as link:
        reply = RTU(link.exchange(FC03_REQUEST))
        assert reply.pdu() == bytes([0x83, ExceptionCode.ILLEGAL_FUNCTION])
        assert link.context.stats.other_errors == 1


def test_handler_exception_code_is_replied():
    def read(address, quantity):
        raise ExceptionCodeError(ExceptionCode.ILLEGAL_DATA_ADDRESS)

    with _running(SimpleHandler(read_holding_registers=read)) as link:
        reply = RTU(link.exchange(FC03_REQUEST))
        assert reply.pdu() == bytes([0x83, ExceptionCode.ILLEGAL_DATA_ADDRESS])


def test_serve_raises_when_connection_ends():
    with _running(SimpleHandler()) as link:
        link.to_server.close()
        link.thread.join(timeout=2)
        assert len(link.errors) == 1
        assert isinstance(link.errors[0], EOFError)
        assert link.to_client.read(10, timeout=1) == b""


def test_to_slave_id():
    assert to_slave_id(247) == 247
    assert to_slave_id(0) == 0
    with pytest.raises(ValueError):
        to_slave_id(248)
    with pytest.raises(ValueError):
        to_slave_id(-1)