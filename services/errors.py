"""
Typed service errors. Every guard failure carries a machine-checkable kind
and a human-readable reason; server.py maps them onto HTTP responses.
"""


class ServiceError(Exception):
    kind = 'error'
    status = 500

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind, **self.details}


class ValidationError(ServiceError):
    """Malformed input, rejected before any mutation."""
    kind = 'validation'
    status = 400


class ConflictError(ServiceError):
    """Guard not satisfied: wrong status, duplicate, or ownership mismatch."""
    kind = 'conflict'
    status = 409


class NotFoundError(ServiceError):
    kind = 'not_found'
    status = 404


class ForbiddenError(ServiceError):
    kind = 'forbidden'
    status = 403


class DependencyError(ServiceError):
    """An external oracle (chain, judge) was unavailable or failed."""
    kind = 'dependency'
    status = 502


class RateLimitedError(ServiceError):
    kind = 'rate_limited'
    status = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after
