"""
Communication Service

Single entry point for the UI or CLI collaborator: reachability checks,
UDP send/listen, TCP listener and TCP client behind one callback-based API.

Each endpoint category is owned by its own manager with its own lock, so
UDP start/stop never waits on TCP start/stop and vice versa.

Usage:
    >>> async with CommunicationService() as service:
    ...     port = await service.start_listener(8000, print, print)
    ...     await service.connect("127.0.0.1", port, print)
    ...     await service.send("hello")
"""

import logging
from typing import Any, Dict, Optional

from ..config import CommunicationConfig
from ..discovery.reachability import ReachabilityChecker, ReachabilityResult
from ..transport.tcp_transport import TCPClient, TCPServer
from ..transport.udp_transport import UDPTransport
from .callbacks import TextCallback

logger = logging.getLogger(__name__)


class CommunicationService:
    """
    Facade over the four endpoint categories.

    Owns at most one UDP listener, one TCP listener and one TCP client
    connection. Endpoint handles are private to the instance.
    """

    def __init__(
        self,
        config: Optional[CommunicationConfig] = None,
        checker: Optional[ReachabilityChecker] = None
    ):
        """
        Initialize communication service.

        Args:
            config: Service configuration (default: built-in defaults)
            checker: Reachability checker (default: system DNS + icmplib)
        """
        self.config = config or CommunicationConfig()

        self.checker = checker or ReachabilityChecker(
            dns_timeout=self.config.dns_timeout,
            privileged=self.config.privileged_ping
        )
        self.udp = UDPTransport(
            bind_host=self.config.bind_host,
            stop_timeout=self.config.stop_timeout
        )
        self.tcp_server = TCPServer(
            bind_host=self.config.bind_host,
            line_limit=self.config.max_line_bytes,
            stop_timeout=self.config.stop_timeout
        )
        self.tcp_client = TCPClient(
            line_limit=self.config.max_line_bytes,
            connect_timeout=self.config.connect_timeout,
            stop_timeout=self.config.stop_timeout
        )

    # ---------- Reachability ----------

    async def verify_server(self, name: str, timeout_ms: Optional[int] = None) -> ReachabilityResult:
        """Resolve a server name to IPv4 and probe it. Never raises."""
        if timeout_ms is None:
            timeout_ms = self.config.probe_timeout_ms
        return await self.checker.verify_server(name, timeout_ms)

    # ---------- UDP ----------

    async def send_datagram(self, host: str, port: int, text: Optional[str]) -> None:
        """Send one UDP datagram from a throwaway socket."""
        await self.udp.send_datagram(host, port, text)

    async def start_listening(self, port: int, on_message: TextCallback) -> int:
        """Start the UDP listener; returns the bound port."""
        return await self.udp.start_listening(port, on_message)

    async def stop_listening(self) -> None:
        await self.udp.stop_listening()

    # ---------- TCP listener ----------

    async def start_listener(
        self,
        port: int,
        on_line: TextCallback,
        on_info: Optional[TextCallback] = None
    ) -> int:
        """Start the TCP listener; returns the bound port."""
        return await self.tcp_server.start_listener(port, on_line, on_info)

    async def stop_listener(self) -> None:
        await self.tcp_server.stop_listener()

    # ---------- TCP client ----------

    async def connect(
        self,
        host: str,
        port: int,
        on_line: TextCallback,
        on_info: Optional[TextCallback] = None
    ) -> None:
        """Connect the TCP client, replacing any existing connection."""
        await self.tcp_client.connect(host, port, on_line, on_info)

    async def send(self, text: Optional[str]) -> None:
        """Send one line over the TCP client connection."""
        await self.tcp_client.send(text)

    async def disconnect(self) -> None:
        await self.tcp_client.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.tcp_client.is_connected

    # ---------- Lifecycle ----------

    async def shutdown_all(self) -> None:
        """
        Stop every endpoint category, best-effort.

        A failure in one category is logged and does not prevent the others
        from being stopped. Never raises.
        """
        steps = (
            ("UDP listener", self.udp.stop_listening),
            ("TCP listener", self.tcp_server.stop_listener),
            ("TCP client", self.tcp_client.disconnect),
        )

        for name, stop in steps:
            try:
                await stop()
            except Exception as e:
                logger.error(f"Failed to stop {name}: {e}")

        logger.info("Communication service shut down")

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of active endpoints and transport statistics."""
        return {
            "udp_listening": self.udp.is_listening,
            "udp_port": self.udp.listening_port,
            "tcp_listening": self.tcp_server.is_listening,
            "tcp_port": self.tcp_server.listening_port,
            "tcp_server_connections": self.tcp_server.active_connections,
            "tcp_client_connected": self.tcp_client.is_connected,
            "udp": self.udp.get_stats(),
            "tcp_server": self.tcp_server.get_stats(),
            "tcp_client": self.tcp_client.get_stats(),
        }

    async def __aenter__(self) -> "CommunicationService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown_all()
