"""
Network Transport Layer

UDP datagrams and line-oriented TCP in listener and client roles.
"""

from .udp_transport import UDPTransport, UDPEndpoint
from .tcp_transport import (
    TCPServer,
    TCPClient,
    TCPServerEndpoint,
    TCPClientConnection,
    GREETING_LINE,
    MAX_BACKLOG,
    decode_line,
    read_lines
)

__all__ = [
    "UDPTransport",
    "UDPEndpoint",
    "TCPServer",
    "TCPClient",
    "TCPServerEndpoint",
    "TCPClientConnection",
    "GREETING_LINE",
    "MAX_BACKLOG",
    "decode_line",
    "read_lines"
]
