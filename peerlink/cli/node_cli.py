#!/usr/bin/env python3
"""
peerlink Command-Line Client

Console front end for the communication service. It collects user input,
calls the service and prints every exchange with a timestamp.

Commands:
- verify: Resolve a server name and probe it
- udp-send: Send one UDP datagram
- udp-listen: Print incoming UDP datagrams
- serve: Run the TCP listener and print received lines
- connect: Connect to a TCP listener and send stdin lines
"""

import argparse
import asyncio
import logging
import socket
import sys
from datetime import datetime
from typing import Optional, TextIO

from loguru import logger

from ..config import CommunicationConfig
from ..core.errors import CommunicationError, describe_error
from ..core.service import CommunicationService

DEFAULT_UDP_MESSAGE = "test message"


class InterceptHandler(logging.Handler):
    """Route stdlib logging records from the library into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str) -> None:
    """Send library and CLI logs to stderr through loguru."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {name} - {message}"
    )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


class PeerlinkCLI:
    """
    CLI for the peerlink communication service.

    Each command runs against a fresh service which is shut down when the
    command returns or is interrupted.
    """

    def __init__(
        self,
        config: Optional[CommunicationConfig] = None,
        service: Optional[CommunicationService] = None,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None
    ):
        """
        Initialize CLI.

        Args:
            config: Configuration (default: from PEERLINK_* environment)
            service: Service to drive (default: built from config)
            stdin: Input for the connect command (default: sys.stdin)
            stdout: Output for exchanges (default: sys.stdout)
        """
        self.config = config or CommunicationConfig.from_env()
        self.service = service or CommunicationService(self.config)
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout

    def exchange(self, text: str) -> None:
        """Print one timestamped exchange line."""
        print(f"{datetime.now():%H:%M:%S} - {text}", file=self.stdout, flush=True)

    async def _run_for(self, duration: Optional[float]) -> None:
        """Keep background loops running for a while, or until interrupted."""
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)

    async def verify(self, args) -> int:
        """Resolve and probe a server."""
        result = await self.service.verify_server(args.server, args.timeout)

        self.exchange(f"Verify: {result.message}")
        if result.resolved_address:
            self.exchange(f"IPv4: {result.resolved_address}")

        return 0 if result.success else 1

    async def udp_send(self, args) -> int:
        """Send one datagram to the UDP port of a host."""
        message = args.message if args.message and args.message.strip() else DEFAULT_UDP_MESSAGE

        await self.service.send_datagram(args.host, args.udp_port, message)
        self.exchange(f"Message sent: {message}")
        return 0

    async def udp_listen(self, args) -> int:
        """Print datagrams received on the UDP port."""
        port = await self.service.start_listening(
            args.udp_port,
            lambda msg: self.exchange(f"Message received: {msg}")
        )
        self.exchange(f"UDP listening started on port {port}")

        try:
            await self._run_for(args.duration)
        finally:
            await self.service.stop_listening()
            self.exchange("UDP listening stopped")
        return 0

    async def serve(self, args) -> int:
        """Run the TCP listener."""
        await self.service.start_listener(
            args.tcp_port,
            lambda line: self.exchange(f"Server received: {line}"),
            self.exchange
        )

        try:
            await self._run_for(args.duration)
        finally:
            await self.service.stop_listener()
            self.exchange("TCP listener stopped")
        return 0

    async def connect(self, args) -> int:
        """Connect to a TCP listener and send each input line."""
        await self.service.connect(
            args.host,
            args.tcp_port,
            lambda line: self.exchange(f"Client received: {line}"),
            self.exchange
        )
        await self.service.send(f"Machine {socket.gethostname()} connected")

        loop = asyncio.get_running_loop()
        try:
            while True:
                line = await loop.run_in_executor(None, self.stdin.readline)
                if not line:
                    break

                message = line.rstrip("\r\n")
                if not message.strip():
                    self.exchange("No message to send.")
                    continue

                await self._send_line(args, message)
        finally:
            was_connected = self.service.is_connected
            await self.service.disconnect()
            self.exchange("TCP client disconnected." if was_connected else "No TCP connection to close.")
        return 0

    async def _send_line(self, args, message: str) -> None:
        """Send over TCP, and over UDP too when asked or when TCP is down."""
        sent = False
        try:
            if self.service.is_connected:
                await self.service.send(message)
                self.exchange(f"Message sent (TCP): {message}")
                sent = True

            if not sent or args.also_udp:
                await self.service.send_datagram(args.host, args.udp_port, message)
                self.exchange(f"Message sent (UDP): {message}")
        except Exception as e:
            self.exchange(f"Error while sending: {describe_error(e)}")

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog="peerlink",
            description="peerlink communication client",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )
        parser.add_argument("--udp-port", type=int, default=self.config.udp_port, help="UDP port")
        parser.add_argument("--tcp-port", type=int, default=self.config.tcp_port, help="TCP port")
        parser.add_argument("--log-level", default=self.config.log_level, help="Log level")

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        verify_parser = subparsers.add_parser("verify", help="Resolve and probe a server")
        verify_parser.add_argument("server", help="Server name or address")
        verify_parser.add_argument(
            "--timeout", type=int, default=self.config.probe_timeout_ms, help="Probe timeout (ms)"
        )

        send_parser = subparsers.add_parser("udp-send", help="Send a UDP datagram")
        send_parser.add_argument("host", help="Destination host")
        send_parser.add_argument("message", nargs="?", default=None, help="Text to send")

        listen_parser = subparsers.add_parser("udp-listen", help="Listen for UDP datagrams")
        listen_parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")

        serve_parser = subparsers.add_parser("serve", help="Run the TCP listener")
        serve_parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")

        connect_parser = subparsers.add_parser("connect", help="Connect to a TCP listener")
        connect_parser.add_argument("host", help="Server host")
        connect_parser.add_argument(
            "--also-udp", action="store_true", help="Send every line over UDP as well"
        )

        return parser

    async def run_async(self, args) -> int:
        """Run CLI command asynchronously."""
        commands = {
            "verify": self.verify,
            "udp-send": self.udp_send,
            "udp-listen": self.udp_listen,
            "serve": self.serve,
            "connect": self.connect,
        }

        command = commands.get(args.command)
        if command is None:
            print("Unknown command. Use --help for usage.", file=self.stdout)
            return 1

        async with self.service:
            try:
                return await command(args)
            except (OSError, ValueError, asyncio.TimeoutError, CommunicationError) as e:
                logger.error("{} failed: {}", args.command, describe_error(e))
                self.exchange(f"Error: {describe_error(e)}")
                return 1

    def run(self, argv=None) -> int:
        """Run CLI (entry point)."""
        parser = self.create_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return 1

        configure_logging(args.log_level)

        try:
            return asyncio.run(self.run_async(args))
        except KeyboardInterrupt:
            self.exchange("Stopped")
            return 0


def main():
    """CLI entry point."""
    cli = PeerlinkCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
