"""Modbus RTU and TCP clients and servers sharing one handler interface, with serial failover."""

__version__ = "0.1.0"