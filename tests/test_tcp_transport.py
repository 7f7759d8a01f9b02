"""
TCP Transport Tests

Listener and client roles over the loopback interface, against each other
and against plain asyncio peers.
"""

import asyncio
import socket

import pytest

from peerlink.core.errors import EndpointStateError
from peerlink.transport.tcp_transport import GREETING_LINE, TCPClient, TCPServer, decode_line

RECEIVE_TIMEOUT = 2.0


def closed_port() -> int:
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def next_item(queue: asyncio.Queue):
    return await asyncio.wait_for(queue.get(), RECEIVE_TIMEOUT)


async def wait_until(predicate, timeout: float = RECEIVE_TIMEOUT) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestLineDecoding:
    """Line terminators are stripped, content is not."""

    def test_decode_line(self):
        """Test line terminators are stripped and content kept."""
        assert decode_line(b"hello\n") == "hello"
        assert decode_line(b"hello\r\n") == "hello"
        assert decode_line(b"tail") == "tail"
        assert decode_line(b"  spaced  \n") == "  spaced  "
        assert decode_line(b"\xff\n") == "�"


class TestTCPServerLifecycle:
    """Start/stop rules of the listener."""

    def setup_method(self):
        self.server = TCPServer(bind_host="127.0.0.1")

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        """Test stopping an idle listener is a no-op."""
        await self.server.stop_listener()
        await self.server.stop_listener()

        assert self.server.is_listening is False

    @pytest.mark.asyncio
    async def test_double_start_is_rejected(self):
        """Test a second start fails while the listener runs."""
        await self.server.start_listener(0, lambda line: None)
        try:
            for _ in range(2):
                with pytest.raises(EndpointStateError, match="listener already started."):
                    await self.server.start_listener(0, lambda line: None)
        finally:
            await self.server.stop_listener()

    @pytest.mark.asyncio
    async def test_start_emits_info(self):
        """Test the start notice names the bound port."""
        info = []
        port = await self.server.start_listener(0, lambda line: None, info.append)
        await self.server.stop_listener()

        assert info == [f"TCP listener started on port {port}."]

    @pytest.mark.asyncio
    async def test_port_is_free_after_stop(self):
        """Test the port refuses connections after stop and can be reused."""
        port = await self.server.start_listener(0, lambda line: None)
        await self.server.stop_listener()

        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", port)

        assert await self.server.start_listener(port, lambda line: None) == port
        await self.server.stop_listener()


class TestTCPServerConnections:
    """Greeting, line delivery and concurrent clients."""

    def setup_method(self):
        self.server = TCPServer(bind_host="127.0.0.1")

    @pytest.mark.asyncio
    async def test_greeting_then_lines_in_order(self):
        """Test the greeting comes first and lines arrive in order."""
        lines = asyncio.Queue()
        info = []
        port = await self.server.start_listener(0, lines.put_nowait, info.append)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)

            greeting = await asyncio.wait_for(reader.readline(), RECEIVE_TIMEOUT)
            assert greeting == GREETING_LINE.encode() + b"\n"

            writer.write(b"one\ntwo\r\nthree\n")
            await writer.drain()

            assert [await next_item(lines) for _ in range(3)] == ["one", "two", "three"]
            assert any(msg.startswith("Client connected to TCP server") for msg in info)

            writer.close()
            await writer.wait_closed()
        finally:
            await self.server.stop_listener()

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_delivered(self):
        """Test a final line without newline is delivered at EOF."""
        lines = asyncio.Queue()
        port = await self.server.start_listener(0, lines.put_nowait)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            await reader.readline()

            writer.write(b"first\nlast")
            await writer.drain()
            writer.close()
            await writer.wait_closed()

            assert await next_item(lines) == "first"
            assert await next_item(lines) == "last"
        finally:
            await self.server.stop_listener()

    @pytest.mark.asyncio
    async def test_multiple_concurrent_clients(self):
        """Test concurrent clients are served independently."""
        lines = asyncio.Queue()
        port = await self.server.start_listener(0, lines.put_nowait)
        try:
            peers = [await asyncio.open_connection("127.0.0.1", port) for _ in range(3)]
            for reader, _ in peers:
                await asyncio.wait_for(reader.readline(), RECEIVE_TIMEOUT)

            await wait_until(lambda: self.server.active_connections == 3)

            # Last client first: no connection blocks another
            for index, (_, writer) in reversed(list(enumerate(peers))):
                writer.write(f"client {index}\n".encode())
                await writer.drain()

            received = {await next_item(lines) for _ in range(3)}
            assert received == {"client 0", "client 1", "client 2"}

            for _, writer in peers:
                writer.close()
                await writer.wait_closed()

            await wait_until(lambda: self.server.active_connections == 0)
        finally:
            await self.server.stop_listener()

        assert self.server.stats["connections_accepted"] == 3

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_connection_alive(self):
        """Test a raising callback does not end the connection."""
        received = []
        done = asyncio.Event()

        def on_line(line):
            received.append(line)
            if line == "bad":
                raise ValueError("handler bug")
            done.set()

        port = await self.server.start_listener(0, on_line)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            await reader.readline()

            writer.write(b"bad\ngood\n")
            await writer.drain()
            await asyncio.wait_for(done.wait(), RECEIVE_TIMEOUT)

            writer.close()
            await writer.wait_closed()
        finally:
            await self.server.stop_listener()

        assert received == ["bad", "good"]

    @pytest.mark.asyncio
    async def test_stop_ends_idle_connections_without_callbacks(self):
        """Test stop closes idle connections without reporting errors."""
        lines = []
        port = await self.server.start_listener(0, lines.append)

        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        await reader.readline()
        await wait_until(lambda: self.server.active_connections == 1)

        await self.server.stop_listener()

        # The handler noticed the stop and closed its side
        assert await asyncio.wait_for(reader.read(), RECEIVE_TIMEOUT) == b""
        writer.close()
        await writer.wait_closed()

        assert lines == []


class TestTCPClient:
    """Client role against the listener and against plain asyncio servers."""

    def setup_method(self):
        self.server = TCPServer(bind_host="127.0.0.1")
        self.client = TCPClient(connect_timeout=2.0)

    @pytest.mark.asyncio
    async def test_disconnect_without_connect(self):
        """Test disconnecting an idle client is a no-op."""
        await self.client.disconnect()
        await self.client.disconnect()

        assert self.client.is_connected is False

    @pytest.mark.asyncio
    async def test_send_requires_connection(self):
        """Test sending without a connection raises."""
        with pytest.raises(EndpointStateError, match="client not connected."):
            await self.client.send("hello")

    @pytest.mark.asyncio
    async def test_empty_message_is_a_no_op(self):
        """Test empty messages are never written."""
        await self.client.send("")
        await self.client.send(None)

        assert self.client.stats["lines_sent"] == 0

    @pytest.mark.asyncio
    async def test_connect_rejects_empty_host(self):
        """Test connecting to a blank host raises ValueError."""
        with pytest.raises(ValueError):
            await self.client.connect("  ", 8000, lambda line: None)

    @pytest.mark.asyncio
    async def test_round_trip_with_listener(self):
        """Test client and listener exchange lines both ways."""
        server_lines = asyncio.Queue()
        client_lines = asyncio.Queue()
        info = []

        port = await self.server.start_listener(0, server_lines.put_nowait)
        try:
            await self.client.connect("127.0.0.1", port, client_lines.put_nowait, info.append)

            assert self.client.is_connected is True
            assert info == [f"Connected to server 127.0.0.1:{port}"]
            assert await next_item(client_lines) == GREETING_LINE

            await self.client.send("hello server")
            await self.client.send("")
            await self.client.send("second")

            assert await next_item(server_lines) == "hello server"
            assert await next_item(server_lines) == "second"
            assert self.client.stats["lines_sent"] == 2
        finally:
            await self.client.disconnect()
            await self.server.stop_listener()

        assert self.client.is_connected is False

    @pytest.mark.asyncio
    async def test_server_lines_arrive_in_order(self):
        """Test server lines reach the client callback in order."""
        async def handle(reader, writer):
            writer.write(b"connection succeeded\nalpha\nbeta\ngamma\n")
            await writer.drain()
            await reader.read()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]

        lines = asyncio.Queue()
        try:
            await self.client.connect("127.0.0.1", port, lines.put_nowait)
            received = [await next_item(lines) for _ in range(4)]
        finally:
            await self.client.disconnect()
            server.close()
            await server.wait_closed()

        assert received == [GREETING_LINE, "alpha", "beta", "gamma"]

    @pytest.mark.asyncio
    async def test_reconnect_tears_down_previous_connection(self):
        """Test reconnecting closes the previous connection."""
        closed = []
        opened = []

        async def handle(reader, writer):
            index = len(opened)
            opened.append(writer)
            await reader.read()
            closed.append(index)
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]

        try:
            await self.client.connect("127.0.0.1", port, lambda line: None)
            await wait_until(lambda: len(opened) == 1)

            await self.client.connect("127.0.0.1", port, lambda line: None)
            await wait_until(lambda: len(opened) == 2)

            # First connection was closed by the client before the second opened
            await wait_until(lambda: closed == [0])
            assert self.client.is_connected is True
        finally:
            await self.client.disconnect()
            server.close()
            await server.wait_closed()

        assert self.client.stats["connections_initiated"] == 2

    @pytest.mark.asyncio
    async def test_connection_failure_raises_and_reports(self):
        """Test a refused connection raises and emits a notice."""
        info = []

        with pytest.raises(OSError):
            await self.client.connect("127.0.0.1", closed_port(), lambda line: None, info.append)

        assert self.client.is_connected is False
        assert len(info) == 1
        assert info[0].startswith("TCP connection error:")
        assert self.client.stats["connections_failed"] == 1

        with pytest.raises(EndpointStateError):
            await self.client.send("nobody listening")

    @pytest.mark.asyncio
    async def test_server_close_is_reported(self):
        """Test the client reports a connection closed by the server."""
        info = asyncio.Queue()
        port = await self.server.start_listener(0, lambda line: None)
        try:
            await self.client.connect("127.0.0.1", port, lambda line: None, info.put_nowait)
            assert (await next_item(info)).startswith("Connected to server")

            await self.server.stop_listener()

            assert await next_item(info) == "Connection closed by server."
            assert self.client.is_connected is False
        finally:
            await self.client.disconnect()
            await self.server.stop_listener()

    @pytest.mark.asyncio
    async def test_disconnect_silences_reader(self):
        """Test no lines are delivered after disconnect."""
        lines = []
        port = await self.server.start_listener(0, lambda line: None)
        try:
            await self.client.connect("127.0.0.1", port, lines.append)
            await wait_until(lambda: lines == [GREETING_LINE])

            await self.client.disconnect()
            await self.client.disconnect()
        finally:
            await self.server.stop_listener()

        assert lines == [GREETING_LINE]
        assert self.client.is_connected is False
