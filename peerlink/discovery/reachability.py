"""
Server Reachability Check

Resolves a server name to an IPv4 address and probes it with an ICMP echo.

Check sequence:
1. Reject blank names without touching the network
2. Resolve the name via the system resolver, then DNS (literal addresses
   skip resolution)
3. Select the first IPv4 address in resolution order
4. Send one echo request bounded by the caller's timeout

Every failure is converted into a ReachabilityResult; nothing is raised
past verify_server().
"""

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import List, Optional

import dns.asyncresolver
import dns.exception
import dns.inet
from icmplib import async_ping

logger = logging.getLogger(__name__)


# Reachability constants
DEFAULT_PROBE_TIMEOUT_MS = 2000  # Echo timeout (ms)
DEFAULT_DNS_TIMEOUT = 5.0  # DNS resolution lifetime (seconds)


@dataclass
class ReachabilityResult:
    """Outcome of a single reachability check."""

    success: bool
    resolved_address: Optional[str]  # Dotted IPv4, None if none was selected
    message: str


class ReachabilityChecker:
    """
    DNS + ICMP reachability checker.

    Holds no state between calls beyond its resolver; concurrent checks
    are independent.
    """

    def __init__(
        self,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
        dns_timeout: float = DEFAULT_DNS_TIMEOUT,
        privileged: bool = False
    ):
        """
        Initialize reachability checker.

        Args:
            resolver: dnspython async resolver (default: system configuration)
            dns_timeout: Lifetime of a DNS resolution (seconds)
            privileged: Use raw ICMP sockets instead of datagram sockets
        """
        self._resolver = resolver
        self.dns_timeout = dns_timeout
        self.privileged = privileged

    @property
    def resolver(self) -> dns.asyncresolver.Resolver:
        """Resolver, created on first use so construction never reads resolv.conf."""
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
        return self._resolver

    async def system_resolve(self, name: str) -> List[str]:
        """
        Resolve a name through the operating system's resolver.

        Honors the hosts file, mDNS and any other configured name service.

        Returns:
            Distinct addresses, in the order the resolver returned them

        Raises:
            OSError: If the name cannot be resolved
            asyncio.TimeoutError: If resolution outlives dns_timeout
        """
        loop = asyncio.get_running_loop()
        infos = await asyncio.wait_for(
            loop.getaddrinfo(name, None, type=socket.SOCK_STREAM),
            timeout=self.dns_timeout
        )

        addresses: List[str] = []
        for _, _, _, _, sockaddr in infos:
            if sockaddr[0] not in addresses:
                addresses.append(sockaddr[0])
        return addresses

    async def resolve(self, name: str) -> List[str]:
        """
        Resolve a name to its addresses, in resolution order.

        The system resolver is tried first; DNS through dnspython is the
        second attempt.

        Args:
            name: Hostname or textual address

        Returns:
            Addresses of every family the resolver returned

        Raises:
            dns.exception.DNSException: If both resolvers fail
        """
        if dns.inet.is_address(name):
            return [name]

        try:
            return await self.system_resolve(name)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"System resolver failed for {name}: {e}, querying DNS")

        answers = await self.resolver.resolve_name(
            name,
            family=socket.AF_UNSPEC,
            lifetime=self.dns_timeout
        )
        return list(answers.addresses())

    @staticmethod
    def first_ipv4(addresses: List[str]) -> Optional[str]:
        """Return the first IPv4 address, skipping every other family."""
        for address in addresses:
            try:
                if dns.inet.af_for_address(address) == socket.AF_INET:
                    return address
            except ValueError:
                continue
        return None

    async def verify_server(
        self,
        name: str,
        timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS
    ) -> ReachabilityResult:
        """
        Check that a server name resolves to IPv4 and answers an echo request.

        Args:
            name: Hostname or textual address
            timeout_ms: Probe timeout in milliseconds

        Returns:
            ReachabilityResult describing the outcome
        """
        if name is None or not name.strip():
            return ReachabilityResult(False, None, "empty server name")

        name = name.strip()

        try:
            addresses = await self.resolve(name)
        except dns.exception.DNSException as e:
            logger.info(f"DNS resolution failed for {name}: {e}")
            return ReachabilityResult(False, None, f"DNS resolution failed: {e}")
        except Exception as e:
            logger.warning(f"Unexpected resolver error for {name}: {e}")
            return ReachabilityResult(False, None, f"DNS resolution failed: {e}")

        ipv4 = self.first_ipv4(addresses)
        if ipv4 is None:
            return ReachabilityResult(False, None, "no IPv4 address found")

        try:
            host = await async_ping(
                ipv4,
                count=1,
                timeout=timeout_ms / 1000,
                privileged=self.privileged
            )
        except Exception as e:
            logger.info(f"Probe of {ipv4} raised: {e}")
            return ReachabilityResult(False, ipv4, f"probe error: {e}")

        if host.is_alive:
            logger.debug(f"{name} ({ipv4}) answered in {host.avg_rtt:.1f} ms")
            return ReachabilityResult(True, ipv4, "probe succeeded")

        status = f"no reply within {timeout_ms} ms (packet loss {host.packet_loss:.0%})"
        return ReachabilityResult(False, ipv4, f"probe failed: {status}")
