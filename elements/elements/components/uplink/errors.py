"""
Uplink Errors
Failures surfaced by uplink connections and remote history requests.
"""

from typing import Optional

# Rejection reasons a remote space host may return verbatim
REJECT_INVALID_SIGNATURE = "invalid_signature"
REJECT_INVALID_TOKEN = "invalid_token"
REJECT_INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
REJECT_UNKNOWN_SPACE = "unknown_space"


class UplinkError(Exception):
    """Base class for uplink errors."""


class UplinkConnectionError(UplinkError):
    """The remote host refused the connection. reason is its rejection reason, unmodified."""

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Connection rejected: {reason}")
        self.reason = reason


class UplinkTransportError(UplinkError):
    """
    A local network failure or timeout while talking to the remote host.

    Retryable; the uplink never retries internally, the caller owns backoff.
    """
    retryable = True

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class HistoryUnavailableError(UplinkError):
    """The remote host could not serve the requested history window."""
