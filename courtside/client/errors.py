"""
Error taxonomy for the realtime client.

Transport failures are exposed as ConnectionManager state; these exceptions are
raised to the specific caller of an operation.
"""

from typing import Optional


class MessagingError(Exception):
    """Base class for realtime client errors."""


class NotConnected(MessagingError):
    """Operation attempted while the connection is down. Never queued or retried."""

    def __init__(self, event: Optional[str] = None):
        self.event = event
        message = "Not connected to messaging server"
        if event:
            message = f"{message} (cannot emit {event})"
        super().__init__(message)


class AcknowledgementError(MessagingError):
    """Server acknowledged a request with ``{success: false, error}``."""

    def __init__(self, event: str, error: Optional[str] = None):
        self.event = event
        self.error = error or f"Failed to process {event}"
        super().__init__(self.error)


class RequestTimeout(MessagingError):
    """No acknowledgement arrived within the request timeout."""

    def __init__(self, event: str, timeout: float):
        self.event = event
        self.timeout = timeout
        super().__init__(f"No acknowledgement for {event} within {timeout:g}s")


class ReconnectFailed(MessagingError):
    """Terminal connectivity failure; only an explicit connect() retries."""


class LoadError(MessagingError):
    """REST fetch failure for history, notifications or preferences."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
