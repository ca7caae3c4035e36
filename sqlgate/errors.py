"""
Gateway errors. Each class carries the HTTP status it maps to.

Validation and authorization errors are raised before any database work.
Driver failures surface as ExecutionError with the driver message kept.
"""


class GatewayError(Exception):
    """Base class for errors reported to callers of the gateway."""

    status = 500


class ConfigError(GatewayError):
    """Invalid source or server configuration. Fatal at startup."""


class AuthError(GatewayError):
    status = 403


class NotLoggedIn(AuthError):
    status = 401


class ValidationError(GatewayError):
    """Malformed, oversized, or forbidden query text."""

    status = 400


class NotFoundError(GatewayError):
    """Unknown source, named query, or meta-query."""

    status = 400


class ExecutionError(GatewayError):
    """The backing store failed to run the query."""


class QueryCancelled(ExecutionError):
    """The query deadline passed or the client went away."""


class HandleClosed(ExecutionError):
    def __init__(self, message: str = "handle is closed"):
        super().__init__(message)


def error_code(exc: BaseException) -> int:
    """HTTP status for exc. Anything that is not a GatewayError is a 500."""
    if isinstance(exc, GatewayError):
        return exc.status
    return 500
