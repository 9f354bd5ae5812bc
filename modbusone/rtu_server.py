"""Modbus RTU server (slave) over a serial context."""

from __future__ import annotations

import time
from typing import Any, NoReturn

from .debug import debugf
from .modbus import (
    MAX_RTU_SIZE,
    OVER_SIZE,
    PDU,
    RTU,
    CrcError,
    ModbusError,
    exception_reply_packet,
    make_rtu,
    to_exception_code,
)
from .packet_reader import PacketReader, RTUPacketReader
from .simple_handler import ProtocolHandler


class RTUServer:
    """Answers RTU requests addressed to ``slave_id`` (or multicast) using a handler."""

    def __init__(self, com: Any, slave_id: int) -> None:
        self.com = com
        self.slave_id = slave_id
        if isinstance(com, PacketReader):
            self._reader: PacketReader = com
        else:
            self._reader = RTUPacketReader(com, is_client=False)

    def _reply(self, slave_id: int, pdu: PDU, delay: float) -> None:
        if slave_id == 0:
            return
        time.sleep(delay)
        self.com.write(make_rtu(slave_id, pdu))

    def _reply_error(self, slave_id: int, req: PDU, err: BaseException, delay: float) -> None:
        self._reply(slave_id, exception_reply_packet(req, to_exception_code(err)), delay)

    def serve(self, handler: ProtocolHandler) -> NoReturn:
        """Serve requests until an I/O error occurs, then close and raise it."""
        try:
            self._serve(handler)
        finally:
            self.close()

    def _serve(self, handler: ProtocolHandler) -> NoReturn:
        delay = self.com.min_delay()
        size = OVER_SIZE.max_rtu if OVER_SIZE.support else MAX_RTU_SIZE
        stats = self.com.stats
        while True:
            debugf("RTUServer wait for read\n")
            rtu = RTU(self._reader.read(size))
            debugf("RTUServer read packet:%s\n", rtu.hex())
            try:
                pdu = rtu.pdu()
            except CrcError as err:
                stats.add("crc_errors")
                debugf("RTUServer drop read packet:%s\n", err)
                continue
            except ModbusError as err:
                stats.add("other_errors")
                debugf("RTUServer drop read packet:%s\n", err)
                continue
            target = rtu[0]
            if target != 0 and target != self.slave_id:
                stats.add("id_drops")
                debugf("RTUServer drop packet to other id:%s\n", target)
                continue
            try:
                pdu.validate_request()
            except ModbusError as err:
                stats.add("other_errors")
                debugf("RTUServer auto return for error:%s\n", err)
                self._reply_error(target, pdu, err, delay)
                continue
            fc = pdu.function_code()
            if fc.is_read_to_server():
                try:
                    data = handler.on_read(pdu)
                except Exception as err:  # handler errors become exception replies
                    stats.add("other_errors")
                    debugf("RTUServer handler.on_read error:%s\n", err)
                    self._reply_error(target, pdu, err, delay)
                    continue
                self._reply(target, pdu.make_read_reply(data), delay)
            elif fc.is_write_to_server():
                try:
                    data = pdu.request_values()
                    handler.on_write(pdu, data)
                except Exception as err:  # handler errors become exception replies
                    stats.add("other_errors")
                    debugf("RTUServer write request error:%s\n", err)
                    self._reply_error(target, pdu, err, delay)
                    continue
                self._reply(target, pdu.make_write_reply(), delay)

    def close(self) -> None:
        """Close the server's connection."""
        self.com.close()

    def __enter__(self) -> "RTUServer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def to_slave_id(n: int) -> int:
    """Check a configured number is a usable slave id and return it."""
    if n < 0:
        raise ValueError("slaveID must not be negative")
    if n > 247:
        raise ValueError("slaveID must be less than 248")
    return int(n)