from typing import Optional


class QueryError(Exception):
    """Base for failures that end up as a placeholder answer in a session row."""

    kind = "error"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def placeholder(self) -> str:
        return self.message or "Error processing query"


class RateLimited(QueryError):
    kind = "rate_limited"

    def placeholder(self) -> str:
        if self.message:
            return f"Rate limit exceeded: {self.message}"
        return "Rate limit exceeded"


class ServiceUnavailable(QueryError):
    kind = "service_unavailable"

    def placeholder(self) -> str:
        if self.status_code:
            return f"Service unavailable ({self.status_code})"
        return "Service unavailable"


class RequestFailed(QueryError):
    kind = "request_failed"


class TransportError(QueryError):
    kind = "transport_error"

    def placeholder(self) -> str:
        return f"Network error: {self.message}" if self.message else "Network error"


class QueueTimeout(QueryError):
    kind = "queue_timeout"

    def placeholder(self) -> str:
        return "Skipped: no request slot available"


class InputInvalid(QueryError):
    kind = "input_invalid"
