"""Domain exception hierarchy for the migration service.

Services raise these instead of bare ``ValueError`` so that the global
exception handler in ``main.py`` can map them to the correct HTTP status
code without fragile string matching.
"""


class MigratorError(Exception):
    """Base for all domain exceptions."""

    def __init__(self, message: str = "An unexpected error occurred", *, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(MigratorError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class BadRequestError(MigratorError):
    """Client sent an invalid request (400)."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, status_code=400)


class AuthError(MigratorError):
    """Authentication or authorization failure (401/403)."""

    def __init__(self, message: str = "Not authorized", *, status_code: int = 401):
        super().__init__(message, status_code=status_code)


class UpstreamError(MigratorError):
    """The source-control API answered with an error status.

    ``upstream_status`` keeps GitHub's own code (403 rate limit, 404, 401 …);
    ``status_code`` is what we return to our client.  Network failures use
    ``upstream_status=0`` and surface as 502.
    """

    def __init__(self, action: str, upstream_status: int, message: str = ""):
        self.action = action
        self.upstream_status = upstream_status
        detail = f"{action} failed (upstream status {upstream_status})"
        if message:
            detail += f": {message}"
        status_code = upstream_status if 400 <= upstream_status < 500 else 502
        super().__init__(detail, status_code=status_code)


class JobTransactionError(MigratorError):
    """A job transaction was rolled back (500)."""

    def __init__(self, message: str = "Migration job transaction failed"):
        super().__init__(message, status_code=500)


class InvalidTransitionError(MigratorError):
    """A job status change that the state machine does not allow (409)."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move job from {current} to {target}", status_code=409)


class ChatRelayError(MigratorError):
    """A chat stream could not be served.  Converted to a ``chat-error`` event."""

    def __init__(self, message: str = "Failed to process chat message"):
        super().__init__(message, status_code=502)


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict:
    """Build a structured error response dict.

    Parameters
    ----------
    error : str
        Short error title (e.g. ``"Internal Server Error"``).
    detail : object
        Human-readable detail string or validation error list.
    request_id : str
        The request ID for tracing.

    Returns
    -------
    dict
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
