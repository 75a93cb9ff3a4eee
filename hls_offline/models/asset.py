"""
Core domain types: the downloadable asset and the records tracking its fetches.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DownloadState(str, Enum):
    """Lifecycle of an asset on this device."""

    NOT_DOWNLOADED = "notDownloaded"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"


class StageTag(str, Enum):
    """The pipeline phase a fetch belongs to."""

    MASTER = "master"
    VIDEO_MANIFEST = "videoManifest"
    SUBTITLES_MANIFEST = "subtitlesManifest"
    SEGMENT = "segment"
    SUBTITLE_SEGMENT = "subtitleSegment"

    @property
    def is_segment(self) -> bool:
        return self in (StageTag.SEGMENT, StageTag.SUBTITLE_SEGMENT)


@dataclass(eq=False)
class Asset:
    """
    A streamable item the caller wants available offline.

    `name` is the identity used by the persisted index; `program_id` scopes the
    on-disk directory and, together with `content_id`, the DRM key provider.
    """

    name: str
    url: str
    program_id: str
    content_id: str = ""
    protected: bool = False
    state: DownloadState = DownloadState.NOT_DOWNLOADED
    local_manifest_path: str | None = None


@dataclass(eq=False)
class FetchHandle:
    """One in-flight network retrieval, owned by the task registry."""

    id: int
    url: str
    stage: StageTag
    asset_name: str
    key_provider: Any = field(default=None, repr=False)
    media_selection: Any = field(default=None, repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)
