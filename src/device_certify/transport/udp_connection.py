"""UDP connection to the display under test.

One socket is bound for the whole run. Each request waits for the first
datagram that comes back from the target; anything else arriving during
the wait window is dropped.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8600
RECV_BUFFER_SIZE = 4096
READ_TIMEOUT_MS = 1200


@dataclass
class SendResult:
    """Reply to one request, or ``rx=None`` if the wait timed out."""

    rx: bytes | None
    latency_ms: int | None

    @property
    def replied(self) -> bool:
        return self.rx is not None


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class UDPConnection:
    """Manages the UDP endpoint used to talk to the display.

    Usage::

        conn = UDPConnection("192.168.0.20", 8600)
        conn.open()
        result = conn.send_and_receive(request_bytes, timeout_ms=1200)
        conn.close()
    """

    def __init__(
        self,
        target_host: str,
        target_port: int = DEFAULT_PORT,
        local_port: int = DEFAULT_PORT,
        bind_host: str = "0.0.0.0",
    ) -> None:
        self._target_host = target_host
        self._target_port = target_port
        self._local_port = local_port
        self._bind_host = bind_host
        # Source address is only checked when the target is given as an IP
        self._match_address = _is_ip_literal(target_host)
        self._socket: socket.socket | None = None

    @property
    def connected(self) -> bool:
        return self._socket is not None

    @property
    def local_address(self) -> tuple[str, int]:
        if self._socket is None:
            raise ConnectionError("Socket is not bound")
        return self._socket.getsockname()[:2]

    def open(self) -> tuple[str, int]:
        """Bind the local UDP endpoint.

        Returns:
            The bound ``(address, port)``.

        Raises:
            ConnectionError: If the port cannot be bound.
        """
        if self._socket is not None:
            return self.local_address
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self._bind_host, self._local_port))
        except OSError as e:
            sock.close()
            raise ConnectionError(
                f"Could not bind UDP port {self._bind_host}:{self._local_port}: {e}"
            ) from e
        self._socket = sock
        address = self.local_address
        logger.info("Bound UDP local endpoint: %s:%d", *address)
        logger.info("Remote UDP target: %s:%d", self._target_host, self._target_port)
        return address

    def close(self) -> None:
        """Close the socket."""
        if self._socket is None:
            return
        try:
            self._socket.close()
        except OSError as e:
            logger.warning("Error closing socket: %s", e)
        finally:
            self._socket = None
            logger.info("UDP socket closed")

    def _is_from_target(self, address: tuple) -> bool:
        host, port = address[0], address[1]
        if port != self._target_port:
            return False
        if self._match_address and host != self._target_host:
            return False
        return True

    def drain(self) -> int:
        """Discard datagrams already queued on the socket.

        Returns:
            Number of datagrams dropped.
        """
        if self._socket is None:
            return 0
        dropped = 0
        self._socket.setblocking(False)
        try:
            while True:
                try:
                    packet, address = self._socket.recvfrom(RECV_BUFFER_SIZE)
                except BlockingIOError:
                    break
                except ConnectionResetError:
                    continue
                dropped += 1
                logger.debug(
                    "Dropping stale datagram from %s:%d (%d bytes)",
                    address[0], address[1], len(packet),
                )
        finally:
            self._socket.setblocking(True)
        return dropped

    def send_and_receive(self, data: bytes, timeout_ms: float = READ_TIMEOUT_MS) -> SendResult:
        """Send a request and wait for the first reply from the target.

        Args:
            data: Request bytes.
            timeout_ms: How long to wait for a correlated reply.

        Returns:
            SendResult with the reply and latency, or ``rx=None`` on timeout.

        Raises:
            ConnectionError: If the socket is not bound.
            OSError: If the send fails.
        """
        if self._socket is None:
            raise ConnectionError("Socket is not bound")

        # Late replies to earlier requests must not answer this one
        self.drain()
        started = time.monotonic()
        deadline = started + timeout_ms / 1000
        self._socket.sendto(bytes(data), (self._target_host, self._target_port))

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return SendResult(rx=None, latency_ms=None)
            self._socket.settimeout(remaining)
            try:
                packet, address = self._socket.recvfrom(RECV_BUFFER_SIZE)
            except socket.timeout:
                return SendResult(rx=None, latency_ms=None)
            except ConnectionResetError:
                # ICMP port unreachable surfaces here on some platforms
                continue
            if not self._is_from_target(address):
                logger.debug("Ignoring datagram from %s:%d", address[0], address[1])
                continue
            latency_ms = round((time.monotonic() - started) * 1000)
            return SendResult(rx=packet, latency_ms=latency_ms)
