"""Custom exceptions for the bulwark application.

Request rejections are returned as `Outcome` values, not raised. Exceptions
are reserved for misconfiguration detected while the pipeline is built.
"""


class BulwarkError(Exception):
    """Base class for bulwark exceptions."""

    def __init__(self, message: str = "Bulwark error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(BulwarkError):
    """Raised when a pipeline component is given an invalid configuration."""

    def __init__(self, message: str = "Invalid security pipeline configuration"):
        super().__init__(message)
