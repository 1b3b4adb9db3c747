"""
Channel errors.

Every failure of the secure channel is terminal for the request that raised
it: no partial plaintext and no fallback to unencrypted data.
``http_status`` is what the server answers when the error escapes a handler.
"""


class ChannelError(Exception):
    """Base class for secure channel failures."""

    http_status: int = 500

    def __init__(self, message: str = "", *args):
        super().__init__(message or self.__class__.__doc__, *args)
        self.message = message or (self.__class__.__doc__ or "")


class KeyAgreementUnavailable(ChannelError):
    """Server public key could not be obtained."""


class InvalidRequest(ChannelError):
    """Malformed request parameters."""

    http_status = 400


class InvalidWrappedKey(InvalidRequest):
    """Session key could not be unwrapped."""


class IntegrityViolation(ChannelError):
    """Payload failed integrity verification."""


class AuthenticationFailed(IntegrityViolation):
    """GCM authentication tag did not verify."""


class ResourceNotFound(ChannelError):
    """Requested resource does not exist."""

    http_status = 404


class ProtocolError(ChannelError):
    """Malformed envelope or response body."""


class TransportError(ChannelError):
    """Network failure or unexpected HTTP status."""

    def __init__(self, message: str = "", *args, status: int | None = None):
        super().__init__(message, *args)
        self.status = status


class ChannelTimeout(TransportError):
    """Operation did not complete within its timeout."""
