from concurrent.futures import Future

import pytest

from modbusone.cli import Memory, main, parse_request, run_client
from modbusone.data import registers_to_data
from modbusone.modbus import FunctionCode


class FakeClient:
    def __init__(self, fail_at=None):
        self.slave_id = 1
        self.requests = []
        self.fail_at = fail_at

    def start_transaction_to_server(self, slave_id, req):
        future = Future()
        self.requests.append((slave_id, bytes(req)))
        if self.fail_at is not None and len(self.requests) - 1 == self.fail_at:
            future.set_exception(RuntimeError("boom"))
        else:
            future.set_result(None)
        return future


@pytest.fixture(scope="module")
def memory():
    mem = Memory()
    mem.fill_am3()
    return mem


def test_parse_request_full():
    assert parse_request(["3", "0", "10"]) == (3, 0, 10)


def test_parse_request_defaults():
    assert parse_request(["3"]) == (3, 0, 1)
    assert parse_request(["2", "5"]) == (2, 5, 1)


@pytest.mark.parametrize(
    "tokens",
    [[], ["abc"], ["128"], ["7"], ["-1"], ["3", "70000"], ["3", "0", "x"]],
)
def test_parse_request_errors(tokens):
    with pytest.raises(ValueError):
        parse_request(tokens)


def test_parse_request_unsupported_message():
    with pytest.raises(ValueError, match="is not supported"):
        parse_request(["7"])


def test_fill_am3_pattern(memory):
    assert all(memory.discretes[i] == (i % 3 == 0) for i in range(0, 65536, 97))
    assert all(memory.coils[i] == (i % 3 != 0) for i in range(0, 65536, 97))
    assert memory.input_registers[10] == 30
    assert memory.holding_registers[0] == 0xFFFF
    assert memory.holding_registers[0xFFFF] == 0


def test_handler_reads_holding(memory, capsys):
    handler = memory.handler()
    req = FunctionCode.READ_HOLDING_REGISTERS.make_request_header(0, 2)
    assert handler.on_read(req) == registers_to_data(memory.holding_registers[0:2])
    assert "ReadHoldingRegisters from 0, quantity 2" in capsys.readouterr().out


def test_handler_writes_holding(capsys):
    mem = Memory()
    handler = mem.handler()
    header = FunctionCode.WRITE_MULTIPLE_REGISTERS.make_request_header(10, 2)
    data = registers_to_data([0x000A, 0x0102])
    handler.on_write(header.make_write_request(data), data)
    assert mem.holding_registers[10:12] == [0x000A, 0x0102]
    assert "WriteHoldingRegisters from 10, quantity 2" in capsys.readouterr().out


def test_handler_coil_round_trip():
    mem = Memory()
    mem.fill_am3()
    handler = mem.handler()
    req = FunctionCode.READ_COILS.make_request_header(0, 16)
    data = handler.on_read(req)
    other = Memory()
    other.handler().on_write(req, data)
    assert other.coils[:16] == mem.coils[:16]


def test_run_client_splits_requests(capsys):
    client = FakeClient()
    finished = run_client(client, 256, 256, ["3 0 200\n"])
    assert finished == 2
    assert len(client.requests) == 2
    assert all(slave == 1 for slave, _ in client.requests)
    assert "finished 2 requests" in capsys.readouterr().out


def test_run_client_reports_parse_error(capsys):
    client = FakeClient()
    assert run_client(client, 256, 256, ["abc\n"]) == 0
    assert client.requests == []
    assert "parse error" in capsys.readouterr().out


def test_run_client_reports_failed_request(capsys):
    client = FakeClient(fail_at=0)
    assert run_client(client, 256, 256, ["3 0 1"]) == 0
    assert "in request 1 / 1" in capsys.readouterr().out


def test_main_rejects_bad_slave_id(capsys):
    assert main(["-l", "unused", "-id", "300"]) == 1
    assert "set slaveID error" in capsys.readouterr().err


def test_main_rejects_large_size_limit(capsys):
    assert main(["-c", "-l", "unused", "-wsl", "300"]) == 1
    assert "too big" in capsys.readouterr().err


def test_main_reports_open_error(capsys):
    assert main(["-l", "/nonexistent/modbus-port"]) == 1
    assert "open serial error" in capsys.readouterr().err