"""WordMatch.

Vocabulary server and client connected by a hybrid RSA/AES-GCM channel.
"""
from .version import __version__
from .exceptions import (
    ChannelError,
    KeyAgreementUnavailable,
    InvalidRequest,
    InvalidWrappedKey,
    IntegrityViolation,
    AuthenticationFailed,
    ResourceNotFound,
    ProtocolError,
    TransportError,
    ChannelTimeout,
)

__all__ = [
    "__version__",
    "ChannelError",
    "KeyAgreementUnavailable",
    "InvalidRequest",
    "InvalidWrappedKey",
    "IntegrityViolation",
    "AuthenticationFailed",
    "ResourceNotFound",
    "ProtocolError",
    "TransportError",
    "ChannelTimeout",
]
