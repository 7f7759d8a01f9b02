"""
TCP Transport Layer

Line-oriented TCP messaging in both roles.

Features:
- Listener role: one accept loop, one independent handler per connection
- Client role: a single outbound connection with a background reader loop
- Newline-delimited UTF-8 text, one message per line
- Greeting line written to every accepted connection
- Per-endpoint cancellation: a stale loop never acts on a newer endpoint
- Start/stop serialized per role, never across roles
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from typing import Optional, Set, Tuple

from ..core.callbacks import TextCallback, invoke_callback, notify
from ..core.errors import EndpointStateError, describe_error
from ..core.tasks import cancel_task, join_task

logger = logging.getLogger(__name__)


# Transport constants
GREETING_LINE = "connection succeeded"  # First line sent to every accepted client
LINE_TERMINATOR = b"\n"
MAX_BACKLOG = 50  # Pending connections queued by the listening socket
DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_LINE_LIMIT = 1024 * 1024  # Longest accepted line (bytes)
CONNECT_TIMEOUT = 10  # Connection attempt timeout (seconds)
STOP_TIMEOUT = 2.0  # Seconds a stop waits for its loops


def decode_line(raw: bytes) -> str:
    """Decode one raw line, dropping its terminator."""
    text = raw.decode("utf-8", errors="replace")
    if text.endswith("\n"):
        text = text[:-1]
    if text.endswith("\r"):
        text = text[:-1]
    return text


async def _next_line(reader: asyncio.StreamReader, cancelled: asyncio.Event) -> Optional[bytes]:
    """
    Read one line, or give up as soon as the endpoint is cancelled.

    Returns:
        Raw line (b"" at end of stream), or None once cancelled
    """
    read = asyncio.ensure_future(reader.readline())
    stop = asyncio.ensure_future(cancelled.wait())
    try:
        done, _ = await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not read.done():
            read.cancel()

    if read in done:
        return read.result()
    return None


async def read_lines(
    reader: asyncio.StreamReader,
    cancelled: asyncio.Event,
    on_line: TextCallback
) -> int:
    """
    Deliver lines to a callback in wire order until end of stream or cancellation.

    A final unterminated line before end of stream is still delivered.

    Args:
        reader: Stream to read from
        cancelled: Cancellation event of the owning endpoint
        on_line: Callback for each line (failures are discarded)

    Returns:
        Number of lines delivered

    Raises:
        OSError, ValueError: On read errors (including over-long lines)
    """
    delivered = 0
    while not cancelled.is_set():
        raw = await _next_line(reader, cancelled)
        if raw is None or cancelled.is_set():
            break
        if not raw:
            break

        await invoke_callback(on_line, decode_line(raw))
        delivered += 1

    return delivered


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    """Close a stream, ignoring errors from an already broken connection."""
    writer.close()
    try:
        await writer.wait_closed()
    except Exception as e:
        logger.debug(f"Error while closing connection: {e}")


# =============================================================================
# Listener role
# =============================================================================

@dataclass
class TCPServerEndpoint:
    """Live TCP listener: socket, cancellation flag, accept loop and handlers."""

    sock: socket.socket
    port: int
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    accept_task: Optional[asyncio.Task] = None
    connections: Set[asyncio.Task] = field(default_factory=set)  # advisory


class TCPServer:
    """
    TCP listener accepting any number of concurrent line-oriented clients.

    Each accepted connection gets a greeting line and its own reader loop;
    lines from all connections are delivered to the same callback.
    """

    def __init__(
        self,
        bind_host: str = DEFAULT_BIND_HOST,
        line_limit: int = DEFAULT_LINE_LIMIT,
        stop_timeout: float = STOP_TIMEOUT
    ):
        """
        Initialize TCP server.

        Args:
            bind_host: Interface to listen on
            line_limit: Longest accepted line in bytes
            stop_timeout: Seconds a stop waits for connection handlers
        """
        self.bind_host = bind_host
        self.line_limit = line_limit
        self.stop_timeout = stop_timeout

        self._endpoint: Optional[TCPServerEndpoint] = None
        self._lock = asyncio.Lock()

        self.stats = {
            "connections_accepted": 0,
            "lines_received": 0
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

    @property
    def active_connections(self) -> int:
        """Number of connection handlers still running."""
        endpoint = self._endpoint
        return len(endpoint.connections) if endpoint else 0

    async def start_listener(
        self,
        port: int,
        on_line: TextCallback,
        on_info: Optional[TextCallback] = None
    ) -> int:
        """
        Bind, listen and start accepting connections in the background.

        Args:
            port: Port to listen on (0 picks a free port)
            on_line: Called with every line received from any client
            on_info: Called with status and error notices

        Returns:
            Bound port

        Raises:
            EndpointStateError: If the listener is already started
            OSError: If the socket cannot be bound
        """
        if on_line is None:
            raise ValueError("on_line callback is required")

        async with self._lock:
            if self._endpoint is not None:
                raise EndpointStateError("listener already started.")

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self.bind_host, port))
                sock.listen(MAX_BACKLOG)
                sock.setblocking(False)
            except OSError:
                sock.close()
                raise

            bound_port = sock.getsockname()[1]
            endpoint = TCPServerEndpoint(sock=sock, port=bound_port)
            endpoint.accept_task = asyncio.create_task(
                self._accept_loop(endpoint, on_line, on_info),
                name=f"tcp-accept-{bound_port}"
            )
            self._endpoint = endpoint

        logger.info(f"TCP listener started on {self.bind_host}:{bound_port}")
        await invoke_callback(on_info, f"TCP listener started on port {bound_port}.")
        return bound_port

    async def _accept_loop(
        self,
        endpoint: TCPServerEndpoint,
        on_line: TextCallback,
        on_info: Optional[TextCallback]
    ) -> None:
        """Accept connections until this endpoint is cancelled (background task)."""
        loop = asyncio.get_running_loop()

        try:
            while not endpoint.cancelled.is_set():
                client_sock, addr = await loop.sock_accept(endpoint.sock)

                if endpoint.cancelled.is_set():
                    client_sock.close()
                    break

                self.stats["connections_accepted"] += 1
                logger.info(f"Incoming connection from {addr[0]}:{addr[1]}")
                await invoke_callback(on_info, f"Client connected to TCP server ({addr[0]}:{addr[1]}).")

                handler = asyncio.create_task(
                    self._handle_connection(endpoint, client_sock, addr, on_line, on_info),
                    name=f"tcp-conn-{addr[0]}:{addr[1]}"
                )
                endpoint.connections.add(handler)
                handler.add_done_callback(endpoint.connections.discard)

        except Exception as e:
            if endpoint.cancelled.is_set():
                return
            logger.error(f"Error accepting connection on port {endpoint.port}: {e}")
            await notify(on_info, on_line, f"TCP listener error: {describe_error(e)}")

    async def _handle_connection(
        self,
        endpoint: TCPServerEndpoint,
        client_sock: socket.socket,
        addr: Tuple[str, int],
        on_line: TextCallback,
        on_info: Optional[TextCallback]
    ) -> None:
        """
        Greet one client and deliver its lines (background task).

        Args:
            endpoint: Listener endpoint that accepted the connection
            client_sock: Accepted socket
            addr: Client address (IP, port)
            on_line: Line callback
            on_info: Info callback
        """
        peer_address = f"{addr[0]}:{addr[1]}"
        writer: Optional[asyncio.StreamWriter] = None

        try:
            reader, writer = await asyncio.open_connection(sock=client_sock, limit=self.line_limit)

            writer.write(GREETING_LINE.encode("utf-8") + LINE_TERMINATOR)
            await writer.drain()

            received = await read_lines(reader, endpoint.cancelled, on_line)
            self.stats["lines_received"] += received

            logger.info(f"Connection from {peer_address} ended after {received} lines")

        except Exception as e:
            if not endpoint.cancelled.is_set():
                logger.warning(f"Error reading from {peer_address}: {e}")
                await notify(on_info, on_line, f"Server-side read error: {describe_error(e)}")
        finally:
            if writer is not None:
                await _close_writer(writer)
            else:
                client_sock.close()

    async def stop_listener(self) -> None:
        """
        Stop accepting connections. Safe to call at any time.

        Connection handlers are not cancelled; they observe the endpoint's
        cancellation on their own and are awaited before returning.
        """
        async with self._lock:
            endpoint = self._endpoint
            self._endpoint = None

            if endpoint is None:
                return

            endpoint.cancelled.set()
            await cancel_task(endpoint.accept_task)
            endpoint.sock.close()

            handlers = list(endpoint.connections)
            if handlers:
                await asyncio.gather(*(join_task(h, self.stop_timeout) for h in handlers))

        logger.info(f"TCP listener on port {endpoint.port} stopped")

    def get_stats(self):
        """Get listener statistics."""
        return {
            **self.stats,
            "listening": self.is_listening,
            "port": self.listening_port,
            "active_connections": self.active_connections
        }


# =============================================================================
# Client role
# =============================================================================

@dataclass
class TCPClientConnection:
    """Live outbound connection: streams, cancellation flag and reader loop."""

    host: str
    port: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return not self.writer.is_closing() and not self.reader.at_eof()

    async def close(self, timeout: float) -> None:
        """Signal the reader loop, wait for it, then close the socket."""
        self.cancelled.set()
        await join_task(self.task, timeout)
        await _close_writer(self.writer)


class TCPClient:
    """
    Single outbound line-oriented TCP connection.

    Connecting always tears down the previous connection first, so at most
    one client socket exists per instance.
    """

    def __init__(
        self,
        line_limit: int = DEFAULT_LINE_LIMIT,
        connect_timeout: float = CONNECT_TIMEOUT,
        stop_timeout: float = STOP_TIMEOUT
    ):
        """
        Initialize TCP client.

        Args:
            line_limit: Longest accepted line in bytes
            connect_timeout: Connection attempt timeout (seconds)
            stop_timeout: Seconds a disconnect waits for the reader loop
        """
        self.line_limit = line_limit
        self.connect_timeout = connect_timeout
        self.stop_timeout = stop_timeout

        self._connection: Optional[TCPClientConnection] = None
        self._lock = asyncio.Lock()

        self.stats = {
            "connections_initiated": 0,
            "connections_failed": 0,
            "lines_sent": 0,
            "lines_received": 0
        }

    @property
    def is_connected(self) -> bool:
        """Best-effort connection state; may be stale under concurrent teardown."""
        connection = self._connection
        return connection is not None and connection.is_open

    async def connect(
        self,
        host: str,
        port: int,
        on_line: TextCallback,
        on_info: Optional[TextCallback] = None
    ) -> None:
        """
        Connect to a line-oriented TCP server, replacing any existing connection.

        Args:
            host: Server hostname or address
            port: Server port
            on_line: Called with every line received from the server
            on_info: Called with status and error notices

        Raises:
            ValueError: If host is empty
            OSError, asyncio.TimeoutError: If the connection cannot be opened
        """
        if on_line is None:
            raise ValueError("on_line callback is required")
        if host is None or not host.strip():
            raise ValueError("host must not be empty")

        host = host.strip()
        error: Optional[Exception] = None

        async with self._lock:
            await self._teardown()

            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port, limit=self.line_limit),
                    timeout=self.connect_timeout
                )
            except Exception as e:
                error = e
                self.stats["connections_failed"] += 1
            else:
                connection = TCPClientConnection(host=host, port=port, reader=reader, writer=writer)
                connection.task = asyncio.create_task(
                    self._reader_loop(connection, on_line, on_info),
                    name=f"tcp-client-{host}:{port}"
                )
                self._connection = connection
                self.stats["connections_initiated"] += 1

        if error is not None:
            logger.error(f"Failed to connect to {host}:{port}: {describe_error(error)}")
            await invoke_callback(on_info, f"TCP connection error: {describe_error(error)}")
            raise error

        logger.info(f"Connected to {host}:{port}")
        await invoke_callback(on_info, f"Connected to server {host}:{port}")

    async def _reader_loop(
        self,
        connection: TCPClientConnection,
        on_line: TextCallback,
        on_info: Optional[TextCallback]
    ) -> None:
        """Deliver lines from the server until disconnect or end of stream (background task)."""
        try:
            received = await read_lines(connection.reader, connection.cancelled, on_line)
            self.stats["lines_received"] += received
        except Exception as e:
            if connection.cancelled.is_set():
                return
            logger.warning(f"Error reading from {connection.host}:{connection.port}: {e}")
            await notify(on_info, on_line, f"Client read error: {describe_error(e)}")
            return

        if not connection.cancelled.is_set():
            logger.info(f"Connection to {connection.host}:{connection.port} closed by server")
            await invoke_callback(on_info, "Connection closed by server.")

    async def send(self, message: Optional[str]) -> None:
        """
        Send one line to the server.

        Args:
            message: Text to send; a newline is appended. Empty sends nothing.

        Raises:
            EndpointStateError: If no connection is established
            ConnectionError, OSError: If the write fails
        """
        if not message:
            return

        connection = self._connection
        if connection is None:
            raise EndpointStateError("client not connected.")
        if connection.writer.is_closing():
            raise ConnectionResetError("connection is closing")

        connection.writer.write(message.encode("utf-8") + LINE_TERMINATOR)
        await connection.writer.drain()
        self.stats["lines_sent"] += 1

    async def disconnect(self) -> None:
        """Close the connection if one is open. Safe to call at any time."""
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        """Tear down the current connection; caller holds the lock."""
        connection = self._connection
        self._connection = None

        if connection is None:
            return

        await connection.close(self.stop_timeout)
        logger.info(f"Disconnected from {connection.host}:{connection.port}")

    def get_stats(self):
        """Get client statistics."""
        connection = self._connection
        return {
            **self.stats,
            "connected": self.is_connected,
            "remote": f"{connection.host}:{connection.port}" if connection else None
        }
