# modbusone

A Modbus library for writing both servers (slaves) and clients (masters)
with one set of APIs. The same handler object answers requests on a server
and receives replies on a client, over serial RTU or TCP.

Features:

- RTU over any serial-like stream, with framing delays worked out from the baud rate
- Modbus TCP client and server
- Function codes 1, 2, 3, 4, 5, 6, 15 and 16
- Splitting of large requests into packets of an allowed size
- Shared-bus failover for a pair of RTU clients or a pair of RTU servers
- Per-connection counters of read packets, CRC errors and dropped packets

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `modbusone.modbus` | `FunctionCode`, `ExceptionCode`, `PDU`, `RTU`, `make_rtu`, the error classes and `OVER_SIZE` |
| `modbusone.data` | `data_to_bools`, `bools_to_data`, `data_to_registers`, `registers_to_data` |
| `modbusone.crc` | `CRC`, `validate`, `with_crc` |
| `modbusone.serial` | `SerialContext`, `Option`, `Stats`, `min_delay`, `bytes_delay`, `packet_cutoff_duration` |
| `modbusone.packet_reader` | `RTUPacketReader`, packet size helpers, `is_request_reply` |
| `modbusone.simple_handler` | `ProtocolHandler`, `SimpleHandler` |
| `modbusone.rtu_server` | `RTUServer`, `to_slave_id` |
| `modbusone.rtu_client` | `RTUClient`, `do_transactions`, `make_pdu_request_headers`, `make_pdu_request_headers_sized`, `TransactionsError` |
| `modbusone.tcp` | `TCPServer`, `TCPClient`, `read_tcp`, `write_tcp` |
| `modbusone.failover` | `FailoverSerialConn` |
| `modbusone.failover_rtu_client` | `FailoverRTUClient` |
| `modbusone.debug` | `set_debug_out`, `debugf` |
| `modbusone.cli` | the `modbusone-memory` command |

## Handlers

A `ProtocolHandler` sees traffic from the local point of view:

- `on_read(req)` returns data that must be read locally: on a server for a
  read request, on a client before it sends a write request.
- `on_write(req, data)` stores data locally: on a server for a write request,
  on a client when a read reply arrives.
- `on_error(req, err_rep)` is called on a client when the server answers with
  an exception reply.

`SimpleHandler` implements this with plain callables. Readers take
`(address, quantity)` and return a sequence of bools or 16 bit integers;
writers take `(address, values)`.

```python
from modbusone.simple_handler import SimpleHandler

registers = [0] * 100

def read_holding(address, quantity):
    return registers[address:address + quantity]

def write_holding(address, values):
    registers[address:address + len(values)] = values

handler = SimpleHandler(
    read_holding_registers=read_holding,
    write_holding_registers=write_holding,
)
```

Any operation without a callable raises `FunctionCodeNotSupportedError`,
which a server answers with an illegal-function exception reply. Errors of
type `ExceptionCodeError` are answered with their own code; any other error
raised by a callable is answered with a server-device-failure reply
(see `to_exception_code`).

## Building requests

```python
from modbusone.modbus import FunctionCode, make_rtu
from modbusone.rtu_client import make_pdu_request_headers

read_holding = FunctionCode.READ_HOLDING_REGISTERS

# 200 registers do not fit in one packet; they are split into 125 + 75.
reqs = make_pdu_request_headers(read_holding, 0, 200)
print(len(reqs))  # 2

# One header, framed for slave 0x11 with its CRC appended.
header = read_holding.make_request_header(0x006B, 3)
print(make_rtu(0x11, header).hex())  # 1103006b00037687
```

`make_pdu_request_headers_sized` does the same with a custom per-packet
limit, and `FunctionCode.max_per_packet_sized(size)` computes such a limit
from a PDU byte budget. Both accept an `append_to` list whose headers come
first in the result.

## Serving and running transactions

Every client and server (`RTUServer`, `RTUClient`, `TCPServer`, `TCPClient`,
`FailoverRTUClient`) has `serve(handler)` and `close()`. `serve` blocks until
the connection fails or is closed; it then closes the connection and raises
the error that ended it. Run it in its own thread when the same program
issues requests.

A client then runs requests with `do_transaction(req)` for its default slave
id, or `start_transaction_to_server(slave_id, req)`, which returns a
`concurrent.futures.Future` that completes when the transaction is done.
`do_transactions(client, slave_id, reqs)` runs a list in order and returns
how many ran; at the first failure it raises `TransactionsError`, whose
`index` and `error` say which request failed and why. An RTU client that
gets no answer in time raises `ServerTimeoutError`.

For read requests the reply values go to the handler's `on_write`. For
write requests the data part of the header is filled in from the handler's
`on_read` before it is sent. Requests to slave id 0 (multicast) expect no
reply.

### Serial RTU

```python
import threading
import serial  # pyserial

from modbusone.modbus import FunctionCode
from modbusone.rtu_client import RTUClient
from modbusone.serial import SerialContext

port = serial.Serial("/dev/ttyUSB0", 19200, parity=serial.PARITY_EVEN, timeout=None)
com = SerialContext(port, 19200)
client = RTUClient(com, slave_id=1)
threading.Thread(target=client.serve, args=(handler,), daemon=True).start()

client.do_transaction(FunctionCode.READ_HOLDING_REGISTERS.make_request_header(0, 10))
print(com.stats)
```

A server is made the same way with `RTUServer(com, slave_id)`; it answers
requests for its own id and for id 0, and counts others in `stats.id_drops`.
`SerialContext` accepts any object with blocking `read`, `write` and `close`;
an empty read is taken as the end of the connection. `client.server_processing_time`
(seconds, default 1.0) plus the transfer time of the packets is how long a
client waits for a reply.

### TCP

```python
import socket
import threading

from modbusone.tcp import TCPClient, TCPServer

server = TCPServer(socket.create_server(("127.0.0.1", 5020)))
threading.Thread(target=server.serve, args=(handler,), daemon=True).start()

client = TCPClient(socket.create_connection(("127.0.0.1", 5020)), slave_id=1)
threading.Thread(target=client.serve, args=(handler,), daemon=True).start()
client.do_transaction(FunctionCode.READ_HOLDING_REGISTERS.make_request_header(0, 10))
```

`TCPServer` handles each accepted connection in its own thread. `TCPClient`
runs one transaction at a time.

### Failover

`FailoverSerialConn(context, is_failover, is_client)` wraps a
`SerialContext` for a primary and a failover that share one bus and one
slave id. Each side watches the traffic and becomes active (talks on the
bus) or passive (only listens); a passive side silently drops its writes.
Pass the wrapped connection to `RTUServer`, or use
`FailoverRTUClient(com, is_failover, slave_id)` for clients. Timing is
tuned through the attributes `primary_disconnect_delay`,
`primary_force_back_delay`, `secondary_delay`, `miss_delay` and
`misses_max`; `is_active()` reports the current state.

### Oversized packets

`modbusone.modbus.OVER_SIZE` holds server-side settings for devices that send
packets larger than the protocol allows: set `OVER_SIZE.support = True` and
`OVER_SIZE.max_rtu` to the largest packet to accept.

## Serial timing

```python
from modbusone.serial import min_delay, bytes_delay

min_delay(19200)     # gap between frames in seconds: 3.5 characters
bytes_delay(9600, 8) # seconds to send 8 bytes
```

## CRC

```python
from modbusone.crc import validate, with_crc

frame = with_crc(bytes([0x02, 0x07]))
assert validate(frame)
```

## Debug output

```python
import sys
from modbusone.debug import set_debug_out

set_debug_out(sys.stdout)  # timestamped trace of frames and decisions
set_debug_out(None)        # silence again
```

## Command line

`modbusone-memory` is a small device backed by in-memory coils, discrete
inputs and registers covering the whole address space. It acts as an RTU
server, or with `-c` as an interactive RTU client, on a serial port.

```
modbusone-memory -l /dev/ttyUSB0 -r 19200 -p E -id 1
modbusone-memory -l /dev/ttyUSB0 -c
modbusone-memory --help
```

Options: `-l` device, `-r` baud rate (19200), `-p` parity N, E or O (E),
`-s` stop bits 1 or 2, `-c` client mode, `-id` slave id (1, at most 247),
`-d` starting data (`am3`, the default, fills bools true where the address
mod 3 is 0 for discrete inputs and not 0 for coils, input registers with
address × 3 and holding registers with 0xFFFF minus the address), `-wsl` and
`-rsl` the largest write and read packet in bytes (client only, at most 256),
`-v` debug output.

As a client it reads lines of the form `function-code address quantity` from
standard input (base 10, such as `3 0 12`; quantity defaults to 1) and
performs each request, split into as many packets as the size limits allow.
Every handler call is printed.

## Limitations

- Only function codes 1, 2, 3, 4, 5, 6, 15 and 16 are supported; others are
  answered with an illegal-function exception reply.
- Serial framing is RTU only.
- `TCPServer` closes a connection that sends a malformed MBAP frame or a
  request with an unsupported function code, without replying.
- Failover works only over a shared serial bus, not over TCP.