"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class HlsOfflineError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(HlsOfflineError):
    """Raised for issues related to configuration loading or validation."""


class ManifestParseError(HlsOfflineError):
    """Raised when a manifest lacks a reference the pipeline requires."""


class TransportError(HlsOfflineError):
    """Raised when a fetch fails for a reason other than cancellation."""


class DownloadCancelledError(HlsOfflineError):
    """Delivered as the completion error of a fetch that was cancelled."""


class AssetNotFoundError(HlsOfflineError):
    """Raised when no persisted download exists for the requested asset."""
