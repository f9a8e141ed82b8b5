from typing import Any, Optional


class QueryRunnerError(Exception):
    """Base class for every error raised by query_runner."""


class ConfigurationError(QueryRunnerError):
    """Missing or ambiguous environment, tenant, auth or query settings."""


class AuthenticationError(QueryRunnerError):
    """The identity provider did not hand out an access token."""


class QueryError(QueryRunnerError):
    """A failure scoped to a single query; the run moves on to the next one."""

    body: Any = None


class NetworkError(QueryError):
    """Transport level failure (connection refused, DNS, TLS, timeout)."""


class HttpError(QueryError):
    def __init__(
        self,
        status: int,
        reason: str = "",
        body: Any = None,
        url: Optional[str] = None,
    ):
        self.status = status
        self.reason = reason or ""
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status} {self.reason}".strip())


class AggregationError(QueryError):
    """A result or merge path did not hold the array it was configured for."""
