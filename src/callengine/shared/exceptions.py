"""
Domain exceptions mapped to HTTP responses by the application factory.
"""


class DomainError(Exception):
    """Base class for errors raised by the engine's services."""


class NotFoundError(DomainError):
    """Requested entity does not exist."""


class ValidationError(DomainError):
    """Input is well-formed but not acceptable."""
