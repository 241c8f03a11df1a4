class ServiceError(Exception):
    """Base for errors that map onto a caller-visible HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed or missing input. Always fixable by the caller."""

    status_code = 400


class AuthorizationError(ServiceError):
    """The caller's address does not hold the role the operation needs."""

    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class DependencyError(ServiceError):
    """The pinning service or the chain failed or timed out. Safe to retry."""

    status_code = 502


class ConfigurationError(Exception):
    """Required settings for an external client are missing."""
