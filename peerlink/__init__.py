"""
peerlink - Peer-to-Peer Communication Core

DNS resolution with reachability probing, UDP datagrams and line-oriented
TCP messaging (listener and client roles) behind one callback-based API.

Quick Start:
    >>> import asyncio
    >>> from peerlink import CommunicationService
    >>>
    >>> async def main():
    ...     async with CommunicationService() as service:
    ...         result = await service.verify_server("example.com")
    ...         print(result.success, result.resolved_address, result.message)
    ...
    ...         port = await service.start_listening(8080, print)
    ...         await service.send_datagram("127.0.0.1", port, "ping")
    >>>
    >>> asyncio.run(main())

Features:
    - Reachability check (dnspython resolution + icmplib echo probe)
    - Fire-and-forget UDP send and a background UDP receive loop
    - TCP listener with one handler per accepted connection
    - Single TCP client connection with a background reader loop
    - Idempotent stop operations and best-effort shutdown of everything
"""

from .config import CommunicationConfig
from .core.errors import CommunicationError, EndpointStateError
from .core.service import CommunicationService
from .discovery.reachability import ReachabilityChecker, ReachabilityResult
from .transport.tcp_transport import TCPClient, TCPServer, GREETING_LINE
from .transport.udp_transport import UDPTransport

__version__ = "0.1.0"

__all__ = [
    "CommunicationService",
    "CommunicationConfig",
    "CommunicationError",
    "EndpointStateError",
    "ReachabilityChecker",
    "ReachabilityResult",
    "UDPTransport",
    "TCPServer",
    "TCPClient",
    "GREETING_LINE",
]
