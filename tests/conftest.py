import asyncio
import os
import tempfile
from pathlib import Path

import pytest

from hls_offline.core.drm import DrmBindingStage
from hls_offline.core.notifier import EventNotifier
from hls_offline.core.persistence_manager import AssetPersistenceManager
from hls_offline.exceptions import TransportError
from hls_offline.models.config import DownloadConfig
from hls_offline.models.events import BytesProgress
from hls_offline.models.stats import DownloadStats
from hls_offline.storage.index import PersistedIndex
from hls_offline.storage.kvstore import SqliteKeyValueStore

MASTER_URL = "https://cdn.example.com/x/master.m3u8"
VIDEO_URL = "https://cdn.example.com/x/video/720p.m3u8"
SUBS_URL = "https://cdn.example.com/x/subs/en.m3u8"

MASTER = (
    "#EXTM3U\n"
    "#EXT-X-STREAM-INF:BANDWIDTH=1280000,RESOLUTION=1280x720\n"
    "video/720p.m3u8\n"
)
MASTER_WITH_SUBS = (
    "#EXTM3U\n"
    '#EXT-X-MEDIA:TYPE=SUBTITLES,GROUP-ID="subs",NAME="English",URI="subs/en.m3u8"\n'
    '#EXT-X-STREAM-INF:BANDWIDTH=1280000,SUBTITLES="subs"\n'
    "video/720p.m3u8\n"
)
VIDEO = (
    "#EXTM3U\n"
    "#EXT-X-TARGETDURATION:6\n"
    "#EXTINF:6.0,\n"
    "seg1.ts\n"
    "#EXTINF:6.0,\n"
    "seg2.ts\n"
    "#EXTINF:6.0,\n"
    "https://cdn.example.com/x/video/seg3.ts\n"
    "#EXT-X-ENDLIST\n"
)
SUBS = "#EXTM3U\n#EXTINF:6.0,\nen1.vtt\n#EXTINF:6.0,\nen2.vtt\n#EXT-X-ENDLIST\n"

SEGMENTS = {
    "https://cdn.example.com/x/video/seg1.ts": b"\x47" * 188,
    "https://cdn.example.com/x/video/seg2.ts": b"\x47" * 376,
    "https://cdn.example.com/x/video/seg3.ts": b"\x47" * 188,
}
SUBTITLE_SEGMENTS = {
    "https://cdn.example.com/x/subs/en1.vtt": b"WEBVTT\n\n00:00.000 --> 00:01.000\nHi\n",
    "https://cdn.example.com/x/subs/en2.vtt": b"WEBVTT\n",
}


def stream_resources(with_subtitles: bool = False) -> dict[str, bytes]:
    resources = {
        MASTER_URL: (MASTER_WITH_SUBS if with_subtitles else MASTER).encode(),
        VIDEO_URL: VIDEO.encode(),
        **SEGMENTS,
    }
    if with_subtitles:
        resources[SUBS_URL] = SUBS.encode()
        resources.update(SUBTITLE_SEGMENTS)
    return resources


class FakeTransport:
    """Serves fetches from memory. URLs in `gates` wait for their event first."""

    def __init__(self, resources, failures=(), gates=None, reports=None):
        self.resources = dict(resources)
        self.failures = set(failures)
        self.gates = gates or {}
        self.reports = reports or {}
        self.requests = []
        self.started = asyncio.Event()

    async def fetch(self, request, report):
        self.requests.append(request)
        self.started.set()
        if gate := self.gates.get(request.url):
            await gate.wait()
        if request.url in self.failures or request.url not in self.resources:
            raise TransportError(f"Failed to fetch {request.url}: 404")

        body = self.resources[request.url]
        for extra in self.reports.get(request.url, []):
            report(extra)
        report(BytesProgress(len(body), len(body)))

        request.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(dir=request.temp_dir, suffix=".part")
        with os.fdopen(fd, "wb") as f:
            f.write(body)
        return Path(name)

    def urls(self) -> list[str]:
        return [r.url for r in self.requests]


@pytest.fixture
def download_dir(tmp_path) -> Path:
    return tmp_path / "downloads"


@pytest.fixture
def config(tmp_path, download_dir) -> DownloadConfig:
    return DownloadConfig(download_dir=str(download_dir), config_path=str(tmp_path))


@pytest.fixture
def store(tmp_path) -> SqliteKeyValueStore:
    return SqliteKeyValueStore(tmp_path / "index.sqlite")


@pytest.fixture
def index(store, download_dir) -> PersistedIndex:
    return PersistedIndex(store, download_dir)


@pytest.fixture
def events():
    return []


@pytest.fixture
async def make_manager(config, index, events):
    """Builds a manager around a FakeTransport; closes every one it built."""
    managers = []

    def _make(transport, drm=None, **config_overrides):
        cfg = config.model_copy(update=config_overrides) if config_overrides else config
        notifier = EventNotifier()
        notifier.subscribe(events.append)
        manager = AssetPersistenceManager(
            cfg, transport, index, notifier, drm or DrmBindingStage(), DownloadStats()
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.close()


async def settle(manager, name, timeout=5.0):
    return await asyncio.wait_for(manager.wait_until_settled(name), timeout)
