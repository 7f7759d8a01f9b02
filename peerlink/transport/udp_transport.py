"""
UDP Transport Layer

Fire-and-forget datagram sending and a single background receive loop.

Features:
- Throwaway socket per send (no shared sending state)
- Whole-datagram UTF-8 text, no framing
- One listener per transport; a second start is an error
- Receive loop isolated from callback failures
- Idempotent stop that closes the socket and joins the loop
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from ..core.callbacks import TextCallback, invoke_callback
from ..core.errors import EndpointStateError, describe_error
from ..core.tasks import join_task

logger = logging.getLogger(__name__)


# Transport constants
DEFAULT_BIND_HOST = "0.0.0.0"
STOP_TIMEOUT = 2.0  # Seconds a stop waits for the receive loop

_CLOSED = object()  # Queued by the protocol when the socket closes


class _DatagramQueueProtocol(asyncio.DatagramProtocol):
    """Protocol that queues datagrams, socket errors and closure for the receive loop."""

    def __init__(self):
        self.queue: "asyncio.Queue[Union[Tuple[bytes, Tuple[str, int]], Exception, object]]" = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.queue.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.queue.put_nowait(exc if exc is not None else _CLOSED)


@dataclass
class UDPEndpoint:
    """Live UDP listener: socket, cancellation flag and receive loop."""

    transport: asyncio.DatagramTransport
    protocol: _DatagramQueueProtocol
    port: int
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    async def close(self, timeout: float) -> None:
        """Signal the loop, close the socket and wait for the loop to exit."""
        self.cancelled.set()
        self.transport.close()
        await join_task(self.task, timeout)


class UDPTransport:
    """
    UDP send/listen manager.

    Owns at most one listening endpoint; start and stop are serialized
    by a lock private to this transport.
    """

    def __init__(self, bind_host: str = DEFAULT_BIND_HOST, stop_timeout: float = STOP_TIMEOUT):
        """
        Initialize UDP transport.

        Args:
            bind_host: Interface the listener binds to
            stop_timeout: Seconds a stop waits for the receive loop
        """
        self.bind_host = bind_host
        self.stop_timeout = stop_timeout

        self._endpoint: Optional[UDPEndpoint] = None
        self._lock = asyncio.Lock()

        self.stats = {
            "datagrams_sent": 0,
            "datagrams_received": 0,
            "bytes_sent": 0,
            "bytes_received": 0
        }

    @property
    def is_listening(self) -> bool:
        """True while a listener endpoint exists."""
        return self._endpoint is not None

    @property
    def listening_port(self) -> Optional[int]:
        """Bound port of the active listener, if any."""
        endpoint = self._endpoint
        return endpoint.port if endpoint else None

    async def send_datagram(self, host: str, port: int, payload: Optional[str]) -> None:
        """
        Send one datagram from a throwaway socket.

        Args:
            host: Destination hostname or IPv4 address
            port: Destination port
            payload: Text to send (None or "" sends an empty datagram)

        Raises:
            ValueError: If host is empty
            OSError: If the socket cannot be created or the name not resolved
        """
        if host is None or not host.strip():
            raise ValueError("host must not be empty")

        data = (payload or "").encode("utf-8")
        loop = asyncio.get_running_loop()

        infos = await loop.getaddrinfo(
            host.strip(), port,
            family=socket.AF_INET,
            type=socket.SOCK_DGRAM
        )
        addr = infos[0][4]

        # Raw socket: datagram transports drop empty payloads before 3.13
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            await loop.sock_sendto(sock, data, addr)
        finally:
            sock.close()

        self.stats["datagrams_sent"] += 1
        self.stats["bytes_sent"] += len(data)
        logger.debug(f"Sent {len(data)} bytes to {host}:{port}")

    async def start_listening(self, port: int, on_message: TextCallback) -> int:
        """
        Bind a UDP socket and start the background receive loop.

        Args:
            port: Port to bind (0 picks a free port)
            on_message: Called with the text of every datagram, and once with
                a diagnostic if the loop fails

        Returns:
            Bound port

        Raises:
            EndpointStateError: If already listening
            OSError: If the socket cannot be bound
        """
        if on_message is None:
            raise ValueError("on_message callback is required")

        async with self._lock:
            if self._endpoint is not None:
                raise EndpointStateError("listener already started.")

            loop = asyncio.get_running_loop()
            transport, protocol = await loop.create_datagram_endpoint(
                _DatagramQueueProtocol,
                local_addr=(self.bind_host, port),
                family=socket.AF_INET
            )
            bound_port = transport.get_extra_info("sockname")[1]

            endpoint = UDPEndpoint(transport=transport, protocol=protocol, port=bound_port)
            endpoint.task = asyncio.create_task(
                self._receive_loop(endpoint, on_message),
                name=f"udp-rx-{bound_port}"
            )
            self._endpoint = endpoint

        logger.info(f"UDP listener started on {self.bind_host}:{bound_port}")
        return bound_port

    async def _receive_loop(self, endpoint: UDPEndpoint, on_message: TextCallback) -> None:
        """Receive datagrams until this endpoint is cancelled (background task)."""
        try:
            while not endpoint.cancelled.is_set():
                item = await endpoint.protocol.queue.get()

                if endpoint.cancelled.is_set():
                    break

                if item is _CLOSED:
                    raise ConnectionError("socket closed unexpectedly")
                if isinstance(item, Exception):
                    raise item

                data, addr = item
                self.stats["datagrams_received"] += 1
                self.stats["bytes_received"] += len(data)
                logger.debug(f"Datagram of {len(data)} bytes from {addr[0]}:{addr[1]}")

                await invoke_callback(on_message, data.decode("utf-8", errors="replace"))

        except Exception as e:
            if endpoint.cancelled.is_set():
                return
            logger.error(f"UDP receive loop on port {endpoint.port} failed: {describe_error(e)}")
            await invoke_callback(on_message, f"UDP listen error: {describe_error(e)}")

    async def stop_listening(self) -> None:
        """Stop the listener if one is running. Safe to call at any time."""
        async with self._lock:
            endpoint = self._endpoint
            self._endpoint = None

            if endpoint is None:
                return

            await endpoint.close(self.stop_timeout)

        logger.info(f"UDP listener on port {endpoint.port} stopped")

    def get_stats(self):
        """Get transport statistics."""
        return {
            **self.stats,
            "listening": self.is_listening,
            "port": self.listening_port
        }
