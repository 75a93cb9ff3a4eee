"""
Data Models Layer.

This package contains the domain types, events and the Pydantic configuration
model shared across the application.
"""

from .asset import Asset, DownloadState, FetchHandle, StageTag
from .config import DownloadConfig
from .events import ProgressChanged, RestoreComplete, StateChanged
from .stats import DownloadStats

__all__ = [
    "Asset",
    "DownloadConfig",
    "DownloadState",
    "DownloadStats",
    "FetchHandle",
    "ProgressChanged",
    "RestoreComplete",
    "StageTag",
    "StateChanged",
]
