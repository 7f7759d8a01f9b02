"""
peerlink Configuration

Runtime settings for the communication service and the command-line tool.
Values default to the conventional peerlink ports and timeouts and can be
overridden through PEERLINK_* environment variables.
"""

import os

from pydantic import BaseModel, Field


class CommunicationConfig(BaseModel):
    """Communication service configuration."""

    bind_host: str = Field(
        default="0.0.0.0",
        description="Interface that UDP and TCP listeners bind to"
    )

    # Caller conventions, the core never assumes them
    udp_port: int = Field(default=8080, description="Default UDP port")
    tcp_port: int = Field(default=8000, description="Default TCP port")

    # Reachability
    probe_timeout_ms: int = Field(default=2000, description="ICMP echo timeout (ms)")
    dns_timeout: float = Field(default=5.0, description="DNS resolution lifetime (seconds)")
    privileged_ping: bool = Field(
        default=False,
        description="Use raw ICMP sockets (needs root) instead of datagram sockets"
    )

    # TCP
    connect_timeout: float = Field(default=10.0, description="TCP connect timeout (seconds)")
    max_line_bytes: int = Field(
        default=1024 * 1024,
        description="Longest line accepted on a TCP connection"
    )

    # Lifecycle
    stop_timeout: float = Field(
        default=2.0,
        description="How long a stop operation waits for its loops to exit (seconds)"
    )

    log_level: str = Field(default="INFO", description="Log level for the CLI")

    @classmethod
    def from_env(cls) -> "CommunicationConfig":
        """Build a configuration from PEERLINK_* environment variables."""
        return cls(
            bind_host=os.getenv("PEERLINK_BIND_HOST", "0.0.0.0"),
            udp_port=int(os.getenv("PEERLINK_UDP_PORT", "8080")),
            tcp_port=int(os.getenv("PEERLINK_TCP_PORT", "8000")),
            probe_timeout_ms=int(os.getenv("PEERLINK_PROBE_TIMEOUT_MS", "2000")),
            dns_timeout=float(os.getenv("PEERLINK_DNS_TIMEOUT", "5.0")),
            privileged_ping=os.getenv("PEERLINK_PRIVILEGED_PING", "false").lower() == "true",
            connect_timeout=float(os.getenv("PEERLINK_CONNECT_TIMEOUT", "10.0")),
            max_line_bytes=int(os.getenv("PEERLINK_MAX_LINE_BYTES", str(1024 * 1024))),
            stop_timeout=float(os.getenv("PEERLINK_STOP_TIMEOUT", "2.0")),
            log_level=os.getenv("PEERLINK_LOG_LEVEL", "INFO"),
        )
