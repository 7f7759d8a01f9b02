"""
Communication Errors

Exception types raised by the peerlink core.
"""


class CommunicationError(Exception):
    """Base class for errors raised by the communication core."""
    pass


class EndpointStateError(CommunicationError):
    """Raised when an endpoint is used in the wrong lifecycle state."""
    pass


def describe_error(exc: BaseException) -> str:
    """Human-readable text for an exception, falling back to its type name."""
    return str(exc) or type(exc).__name__
