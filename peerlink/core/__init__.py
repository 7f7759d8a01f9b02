"""
peerlink Core

Service facade, error types and callback dispatch shared by every
transport.
"""

from .errors import CommunicationError, EndpointStateError, describe_error
from .callbacks import TextCallback, invoke_callback, notify
from .service import CommunicationService

__all__ = [
    "CommunicationService",
    "CommunicationError",
    "EndpointStateError",
    "describe_error",
    "TextCallback",
    "invoke_callback",
    "notify",
]
