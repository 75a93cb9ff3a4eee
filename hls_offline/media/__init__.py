"""
Media Transfer Layer.

This package moves bytes: it fetches manifests and segments over HTTP into
temporary files for the download pipeline to place.
"""

from .downloader import Downloader, FetchRequest

__all__ = ["Downloader", "FetchRequest"]
