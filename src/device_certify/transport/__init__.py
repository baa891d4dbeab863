"""UDP transport to the device under test."""

from .udp_connection import SendResult, UDPConnection
