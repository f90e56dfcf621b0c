"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class TubefetchError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(TubefetchError):
    """Raised for issues related to configuration loading or validation."""


class ToolStartError(TubefetchError):
    """Raised when the external extraction tool could not be launched."""


class PlaylistExtractionError(TubefetchError):
    """Raised when a playlist URL cannot be expanded into individual items."""


class InvalidRequestError(TubefetchError):
    """Raised when a client request is missing or has malformed fields."""
