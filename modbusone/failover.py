"""Failover over a shared serial bus with a shared slave id."""

from __future__ import annotations

import threading
import time
from typing import Any, Optional

from .debug import debugf
from .modbus import RTU, ModbusError, PDU
from .packet_reader import PacketReader, RTUPacketReader, is_request_reply
from .serial import Stats


class FailoverSerialConn(PacketReader):
    """A serial context shared by a primary and a failover on the same bus.

    Both sides use the same slave id; each watches the traffic to decide
    whether it is active (talking on the bus) or passive (only listening).
    Delays are in seconds.
    """

    def __init__(self, context: Any, is_failover: bool, is_client: bool) -> None:
        self.context = context
        self.is_client = is_client
        self.is_failover = is_failover
        self._active = False
        self._lock = threading.Lock()
        self._request_time: Optional[float] = None
        self._req_packet = b""
        self._last_read: Optional[float] = None
        self._start_time = time.monotonic()
        self._misses = 0
        # Without reads for this long the primary assumes it was disconnected.
        self.primary_disconnect_delay = 10.0
        # While a failover runs, the wait before the primary takes over again.
        self.primary_force_back_delay = 600.0
        # Delay on a secondary so the primary can reply first.
        self.secondary_delay = 0.1
        # Delay used by a passive primary to detect packets missed by the secondary.
        self.miss_delay = 0.2
        # Misses until the other side is taken to be down.
        self.misses_max = 4 if is_failover else 2
        self._reader = RTUPacketReader.bidirectional(context)

    @property
    def stats(self) -> Stats:
        """Statistics of the underlying context."""
        return self.context.stats

    def min_delay(self) -> float:
        """Minimum inter-packet gap of the underlying context."""
        return self.context.min_delay()

    def bytes_delay(self, n: int) -> float:
        """Seconds needed to send ``n`` bytes on the underlying context."""
        return self.context.bytes_delay(n)

    def close(self) -> None:
        """Close the underlying context."""
        self.context.close()

    def is_active(self) -> bool:
        """Whether this side is currently active; for status and tests only."""
        with self._lock:
            return self._active

    def _describe(self) -> str:
        return "FailoverSerialConn {} {} {}".format(
            "Client" if self.is_client else "Server",
            "Failover" if self.is_failover else "Primary",
            "Active" if self._active else "Passive",
        )

    def _reset_request_time(self) -> None:
        self._request_time = None
        self._req_packet = b""

    def _set_last_req_time(self, pdu: bytes, now: float) -> None:
        self._request_time = now
        self._req_packet = bytes(pdu)

    def _disconnected(self, now: float) -> bool:
        return self._last_read is None or self._last_read + self.primary_disconnect_delay < now

    def _server_filter(self, data: bytes) -> Optional[bytes]:
        """Decide on one read packet; None means drop it and read again."""
        now = time.monotonic()
        if not self.is_failover:
            if not self._active and self._start_time + self.primary_force_back_delay < now:
                debugf("force active of primary\n")
                self._active = True
            if self._active:
                if self._disconnected(now):
                    debugf("primary was disconnected for too long\n")
                    self._active = False
                    self._start_time = now
                else:
                    return data
        rtu = RTU(data)
        try:
            pdu = rtu.pdu()
        except ModbusError as err:
            debugf("failover serverRead internal GetPDU error : %s", err)
            self._misses = 0
            return None
        if rtu[0] == 0:
            # multicast has no reply, so none is expected
            self._reset_request_time()
            return data
        if self._active:
            if self._request_time is None:
                self._set_last_req_time(pdu, now)
                return data
            self._active = False
            self._misses = 0
            self._reset_request_time()
            debugf("primary found, going from active to passive\n")
            return None
        if self._request_time is None:
            self._set_last_req_time(pdu, now)
            return data
        if now - self._request_time > self.miss_delay + self.bytes_delay(len(data)):
            self._inc_misses(pdu, now)
            return data
        if is_request_reply(self._req_packet, pdu):
            self._reset_request_time()
            debugf("ignore read of reply from the other server")
            self._misses = 0
            return None
        debugf("switch around request and reply pairs")
        self._set_last_req_time(pdu, now)
        self._inc_misses(pdu, now)
        return data

    def _inc_misses(self, pdu: PDU, now: float) -> None:
        self._misses += 1
        debugf("%s misses\n", self._misses)
        if self._misses > self.misses_max:
            self._active = True
        else:
            self._set_last_req_time(pdu, now)

    def _server_read(self, size: int) -> bytes:
        while True:
            data = self._reader.read(size)
            with self._lock:
                result = self._server_filter(data)
            if result is not None:
                return result

    def _client_read(self, size: int) -> bytes:
        data = self._reader.read(size)
        now = time.monotonic()
        with self._lock:
            try:
                pdu = RTU(data).pdu()
                is_reply = (
                    self._request_time is not None
                    and now - self._request_time < self.miss_delay + self.bytes_delay(len(data))
                    and is_request_reply(self._req_packet, pdu)
                )
                if not is_reply:
                    debugf("got request from other client")
                    self._set_last_req_time(pdu, now)
                    if self.is_failover and self._active:
                        debugf("deactivates failover client")
                        self._active = False
                    return data
                self._reset_request_time()
                return data
            finally:
                self._misses = 0

    def read(self, size: int) -> bytes:
        """Read one packet, dropping those the failover logic hides."""
        try:
            if self.is_client:
                return self._client_read(size)
            return self._server_read(size)
        finally:
            with self._lock:
                self._last_read = time.monotonic()

    def write(self, data: bytes) -> int:
        """Write ``data`` if active; a passive side pretends the write succeeded."""
        data = bytes(data)
        if self.is_client:
            with self._lock:
                debugf("start write %s\n", self._describe())
                now = time.monotonic()
                if not self.is_failover:
                    if self._active and self._disconnected(now):
                        debugf("primary was disconnected for too long for write to be safe\n")
                        self._active = False
                    if not self._active and self._start_time + self.primary_force_back_delay < now:
                        debugf("active server after PrimaryForceBackDelay passed\n")
                        self._active = True
                        self._start_time = now
                if not self._active:
                    if self._misses >= self.misses_max:
                        debugf("activates client with %s misses\n", self._misses)
                        self._active = True
                    else:
                        self._misses += 1
                        debugf("%s misses\n", self._misses)
                send = self._active
                if send:
                    self._set_last_req_time(RTU(data).fast_pdu(), now)
            if send:
                return self.context.write(data)
        else:
            with self._lock:
                debugf("start write %s\n", self._describe())
                active = self._active
            if active:
                if self.is_failover:
                    # give the primary time to react first
                    time.sleep(self.secondary_delay + self.bytes_delay(len(data)))
                with self._lock:
                    active = self._active
                    if active:
                        self._reset_request_time()
                if active:
                    return self.context.write(data)
        debugf("FailoverSerialConn ignore Write:%s\n", data.hex())
        return len(data)