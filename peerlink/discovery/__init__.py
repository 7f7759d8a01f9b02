"""
Discovery Layer

DNS resolution and ICMP reachability probing.
"""

from .reachability import (
    ReachabilityChecker,
    ReachabilityResult,
    DEFAULT_PROBE_TIMEOUT_MS,
    DEFAULT_DNS_TIMEOUT
)

__all__ = [
    "ReachabilityChecker",
    "ReachabilityResult",
    "DEFAULT_PROBE_TIMEOUT_MS",
    "DEFAULT_DNS_TIMEOUT"
]
