import queue
import threading

import pytest

from modbusone.failover import FailoverSerialConn
from modbusone.failover_rtu_client import FailoverRTUClient
from modbusone.modbus import FunctionCode, ModbusError, make_rtu
from modbusone.serial import Stats
from modbusone.simple_handler import SimpleHandler

REQUEST = bytes([0x11, 0x03, 0x00, 0x6B, 0x00, 0x03, 0x76, 0x87])
REPLY = bytes([0x11, 0x03, 0x06, 0xAE, 0x41, 0x56, 0x52, 0x43, 0x40, 0x49, 0xAD])


class FakeContext:
    def __init__(self, reply=None):
        self.incoming = queue.Queue()
        self.written = []
        self.reply = reply
        self.stats = Stats()

    def read(self, size):
        try:
            data = self.incoming.get(timeout=5)
        except queue.Empty:
            raise EOFError("no data") from None
        if data is None:
            raise EOFError("closed")
        return data

    def write(self, data):
        self.written.append(bytes(data))
        if self.reply is not None:
            self.incoming.put(self.reply)
        return len(data)

    def close(self):
        self.incoming.put(None)

    def min_delay(self):
        return 0.0

    def bytes_delay(self, n):
        return 0.0


def start(client, handler):
    t = threading.Thread(target=lambda: pytest.raises(Exception, client.serve, handler), daemon=True)
    t.start()
    return t


def header():
    return FunctionCode.READ_HOLDING_REGISTERS.make_request_header(0x6B, 3)


def test_conflicting_settings():
    conn = FailoverSerialConn(FakeContext(), True, True)
    with pytest.raises(ValueError):
        FailoverRTUClient(conn, False, 0x11)


def test_transaction_timeout():
    client = FailoverRTUClient(FakeContext(), False, 0x11)
    client.server_processing_time = 0.5
    assert client.transaction_timeout(8, 256) == 0.5


def test_active_client_reads_reply():
    ctx = FakeContext(reply=REPLY)
    got = []
    handler = SimpleHandler(write_holding_registers=lambda a, v: got.append((a, v)))
    client = FailoverRTUClient(ctx, False, 0x11)
    client.server_processing_time = 0.05
    t = start(client, handler)
    client.do_transaction(header())
    client.do_transaction(header())
    assert ctx.written == []
    client.do_transaction(header())
    client.close()
    t.join(2)
    assert ctx.written == [REQUEST]
    assert got == [(0x6B, [0xAE41, 0x5652, 0x4340])]


def test_exception_reply_raises():
    ctx = FakeContext(reply=make_rtu(0x11, bytes([0x83, 0x02])))
    errors = []
    handler = SimpleHandler(on_error_imp=lambda req, rep: errors.append(bytes(rep)))
    conn = FailoverSerialConn(ctx, False, True)
    conn.misses_max = 0
    client = FailoverRTUClient(conn, False, 0x11)
    client.server_processing_time = 0.05
    t = start(client, handler)
    with pytest.raises(ModbusError, match="exception"):
        client.do_transaction(header())
    client.close()
    t.join(2)
    assert errors == [bytes([0x83, 0x02])]
    assert ctx.stats.remote_errors == 1


def test_closed_client_rejects_transactions():
    ctx = FakeContext()
    client = FailoverRTUClient(ctx, True, 0x11)
    t = start(client, SimpleHandler())
    client.close()
    t.join(2)
    with pytest.raises(ModbusError):
        client.do_transaction(header())