"""Errors raised across the coderelay public API.

Only :class:`ConfigurationError` and :class:`TransportError` propagate to
callers. Execution failures are reported as data on
:class:`~coderelay.execution.ExecutionResult` instead.
"""


class CodeRelayError(Exception):
    """Base class for all coderelay errors."""


class ConfigurationError(CodeRelayError):
    """Missing credentials or session, raised before any network activity."""


class TransportError(CodeRelayError):
    """Network or HTTP failure while talking to a provider.

    Args:
        message: Human readable description.
        status_code: HTTP status when the failure was a non-2xx response.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(CodeRelayError):
    """A single stream frame could not be decoded.

    Raised internally by the frame parser; the streaming client logs it and
    moves on to the next frame.
    """
