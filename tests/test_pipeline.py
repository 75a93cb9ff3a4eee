import asyncio

import pytest
from conftest import (
    MASTER_URL,
    SEGMENTS,
    SUBS_URL,
    SUBTITLE_SEGMENTS,
    VIDEO_URL,
    FakeTransport,
    settle,
    stream_resources,
)

from hls_offline.core.drm import DrmBindingStage, KeyProvider
from hls_offline.exceptions import HlsOfflineError
from hls_offline.models.asset import Asset, DownloadState
from hls_offline.models.events import (
    MediaSelectionResolved,
    ProgressChanged,
    RestoreComplete,
    StateChanged,
    TimeRange,
    TimeRangeProgress,
)


def make_asset(**overrides) -> Asset:
    fields = {"name": "episode-1", "url": MASTER_URL, "program_id": "prog-42"}
    fields.update(overrides)
    return Asset(**fields)


def states(events, name="episode-1"):
    return [e.state for e in events if isinstance(e, StateChanged) and e.asset_name == name]


class RecordingKeyProvider(KeyProvider):
    async def fetch_key(self, key_uri: str) -> bytes:
        return b"\x00" * 16


async def test_full_download_mirrors_and_rewrites(make_manager, download_dir, index, events):
    transport = FakeTransport(stream_resources())
    manager = make_manager(transport)
    asset = make_asset()

    assert manager.download(asset) is True
    assert manager.download_state(asset) is DownloadState.DOWNLOADING
    assert await settle(manager, asset.name) is DownloadState.DOWNLOADED

    program_dir = download_dir / "prog-42"
    master = (program_dir / "master.m3u8").read_text()
    assert "cdn.example.com/x/video/720p.m3u8" in master
    assert "https://" not in master

    video = (program_dir / "cdn.example.com/x/video/720p.m3u8").read_text()
    assert "seg1.ts" in video
    assert "cdn.example.com/x/video/seg3.ts" in video
    assert "https://" not in video
    for name in ("seg1.ts", "seg2.ts", "seg3.ts"):
        assert (program_dir / "cdn.example.com/x/video" / name).is_file()

    assert index.get(asset.name) == "prog-42/master.m3u8"
    assert not index.is_pending(asset.name)
    assert asset.state is DownloadState.DOWNLOADED
    assert asset.local_manifest_path == "prog-42/master.m3u8"
    assert states(events) == [DownloadState.DOWNLOADING, DownloadState.DOWNLOADED]


async def test_fetch_order_follows_manifests(make_manager):
    transport = FakeTransport(stream_resources())
    manager = make_manager(transport)
    asset = make_asset()

    manager.download(asset)
    await settle(manager, asset.name)

    urls = transport.urls()
    assert urls[:2] == [MASTER_URL, VIDEO_URL]
    assert urls[2:] == list(SEGMENTS)


async def test_completion_count_without_subtitles(make_manager):
    manager = make_manager(FakeTransport(stream_resources()))
    asset = make_asset()

    manager.download(asset)
    await settle(manager, asset.name)

    # master + video manifest + K segments
    assert manager.stats.fetches_completed == 1 + 1 + len(SEGMENTS)
    assert manager.stats.assets_downloaded == 1
    assert len(manager.registry) == 0


async def test_completion_count_with_subtitles(make_manager, download_dir, events):
    transport = FakeTransport(stream_resources(with_subtitles=True))
    manager = make_manager(transport)
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.DOWNLOADED

    assert manager.stats.fetches_completed == (
        1 + 1 + len(SEGMENTS) + 1 + len(SUBTITLE_SEGMENTS)
    )
    assert SUBS_URL in transport.urls()
    subs_dir = download_dir / "prog-42/cdn.example.com/x/subs"
    assert (subs_dir / "en.m3u8").is_file()
    assert (subs_dir / "en1.vtt").is_file()
    assert (subs_dir / "en2.vtt").is_file()

    master = (download_dir / "prog-42/master.m3u8").read_text()
    assert 'URI="cdn.example.com/x/subs/en.m3u8"' in master
    assert states(events).count(DownloadState.DOWNLOADED) == 1


async def test_progress_events_carry_fractions(make_manager, events):
    manager = make_manager(FakeTransport(stream_resources()))
    asset = make_asset()

    manager.download(asset)
    await settle(manager, asset.name)

    progress = [e for e in events if isinstance(e, ProgressChanged)]
    assert progress
    assert all(e.asset_name == asset.name for e in progress)
    assert all(e.percent == pytest.approx(1.0) for e in progress)


async def test_transport_failure_leaves_nothing_behind(make_manager, download_dir, index, events):
    failing = "https://cdn.example.com/x/video/seg2.ts"
    manager = make_manager(FakeTransport(stream_resources(), failures={failing}))
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    await manager.close()

    assert index.get(asset.name) is None
    assert not index.is_pending(asset.name)
    assert not (download_dir / "prog-42").exists()
    assert asset.state is DownloadState.NOT_DOWNLOADED
    assert manager.download_state(asset) is DownloadState.NOT_DOWNLOADED
    assert manager.stats.fetches_failed == 1
    assert manager.stats.assets_failed == 1
    assert states(events)[-1] is DownloadState.NOT_DOWNLOADED
    assert len(manager.registry) == 0


async def test_master_failure_reverts_state(make_manager, index):
    manager = make_manager(FakeTransport({}))
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    assert index.get(asset.name) is None


async def test_failure_cancels_sibling_fetches(make_manager):
    gate = asyncio.Event()
    failing = "https://cdn.example.com/x/video/seg1.ts"
    slow = "https://cdn.example.com/x/video/seg2.ts"
    transport = FakeTransport(stream_resources(), failures={failing}, gates={slow: gate})
    manager = make_manager(transport)
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    await manager.close()

    assert manager.stats.fetches_cancelled >= 1
    assert len(manager.registry) == 0


async def test_failure_without_cascade_waits_for_siblings(make_manager, download_dir):
    gate = asyncio.Event()
    failing = "https://cdn.example.com/x/video/seg1.ts"
    slow = "https://cdn.example.com/x/video/seg2.ts"
    transport = FakeTransport(stream_resources(), failures={failing}, gates={slow: gate})
    manager = make_manager(transport, cascade_cancel=False)
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    assert manager.registry.outstanding_count(asset.name) >= 1

    gate.set()
    while manager.registry.outstanding_count(asset.name):
        await asyncio.sleep(0.01)
    await asyncio.wait_for(manager.close(), 5)
    assert manager.stats.fetches_cancelled == 0
    assert not (download_dir / "prog-42").exists()


async def test_cancel_mid_pipeline(make_manager, index, download_dir):
    gate = asyncio.Event()
    slow = "https://cdn.example.com/x/video/seg2.ts"
    transport = FakeTransport(stream_resources(), gates={slow: gate})
    manager = make_manager(transport)
    asset = make_asset()

    manager.download(asset)
    while slow not in transport.urls():
        await asyncio.sleep(0.01)

    assert manager.cancel(asset) is True
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    await manager.close()

    assert manager.registry.handles_for(asset.name) == []
    assert manager.download_state(asset) is DownloadState.NOT_DOWNLOADED
    assert index.get(asset.name) is None
    assert not (download_dir / "prog-42").exists()
    assert manager.stats.fetches_cancelled >= 1
    assert manager.stats.assets_failed == 0


async def test_cancel_unknown_asset_is_a_noop(make_manager):
    manager = make_manager(FakeTransport({}))
    assert manager.cancel(make_asset()) is False


async def test_duplicate_download_is_ignored(make_manager):
    gate = asyncio.Event()
    transport = FakeTransport(stream_resources(), gates={MASTER_URL: gate})
    manager = make_manager(transport)
    asset = make_asset()

    assert manager.download(asset) is True
    assert manager.download(make_asset()) is False
    assert manager.stats.duplicate_requests == 1

    gate.set()
    assert await settle(manager, asset.name) is DownloadState.DOWNLOADED
    assert transport.urls().count(MASTER_URL) == 1


async def test_downloaded_asset_is_not_fetched_again(make_manager):
    transport = FakeTransport(stream_resources())
    manager = make_manager(transport)
    manager.download(make_asset())
    await settle(manager, "episode-1")
    fetched = len(transport.requests)

    again = make_asset()
    assert manager.download(again) is False
    assert again.state is DownloadState.DOWNLOADED
    assert again.local_manifest_path == "prog-42/master.m3u8"
    assert len(transport.requests) == fetched


async def test_master_without_variant_fails(make_manager, index):
    resources = {MASTER_URL: b"#EXTM3U\n#EXT-X-VERSION:3\n"}
    manager = make_manager(FakeTransport(resources))
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    assert index.get(asset.name) is None


async def test_video_manifest_without_segments_fails(make_manager, download_dir):
    resources = stream_resources()
    resources[VIDEO_URL] = b"#EXTM3U\n#EXT-X-ENDLIST\n"
    manager = make_manager(FakeTransport(resources))
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    assert not (download_dir / "prog-42").exists()


async def test_protected_asset_binds_key_provider_once(make_manager):
    scopes = []

    def factory(program_id, content_id):
        scopes.append((program_id, content_id))
        return RecordingKeyProvider(program_id, content_id)

    transport = FakeTransport(stream_resources())
    manager = make_manager(transport, drm=DrmBindingStage(factory))
    asset = make_asset(content_id="content-7", protected=True)

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.DOWNLOADED

    assert scopes == [("prog-42", "content-7")]
    by_url = {r.url: r for r in transport.requests}
    assert by_url[MASTER_URL].key_provider is None
    assert by_url[VIDEO_URL].key_provider is None
    providers = {id(by_url[url].key_provider) for url in SEGMENTS}
    assert len(providers) == 1
    assert isinstance(by_url[next(iter(SEGMENTS))].key_provider, RecordingKeyProvider)


async def test_clear_asset_gets_no_key_provider(make_manager):
    transport = FakeTransport(stream_resources())
    manager = make_manager(
        transport, drm=DrmBindingStage(lambda p, c: RecordingKeyProvider(p, c))
    )
    asset = make_asset()

    manager.download(asset)
    await settle(manager, asset.name)
    assert all(r.key_provider is None for r in transport.requests)


async def test_media_selection_is_retained(make_manager, events):
    seg = next(iter(SEGMENTS))
    reports = {
        seg: [
            MediaSelectionResolved(selection={"audio": "en"}),
            TimeRangeProgress((TimeRange(0, 6), TimeRange(3, 6)), 6.0),
        ]
    }
    transport = FakeTransport(stream_resources(), reports=reports)
    manager = make_manager(transport)
    asset = make_asset()

    manager.download(asset)
    await settle(manager, asset.name)

    selections = manager._media_selections[asset.name]
    assert list(selections.values()) == [{"audio": "en"}]
    handle_id = next(iter(selections))
    assert manager.media_selection(asset.name, handle_id) == {"audio": "en"}
    assert manager.media_selection(asset.name, handle_id + 1000) is None

    # Overlapping ranges are summed, not clamped.
    assert any(
        isinstance(e, ProgressChanged) and e.percent == pytest.approx(2.0) for e in events
    )


async def test_restart_reads_downloaded_from_index(make_manager, index, download_dir):
    manifest = download_dir / "prog-42" / "master.m3u8"
    manifest.parent.mkdir(parents=True)
    manifest.write_text("#EXTM3U\ncdn/x/video/720p.m3u8\n")
    index.set("episode-1", "prog-42/master.m3u8")

    manager = make_manager(FakeTransport({}))
    assert len(manager.registry) == 0
    assert manager.download_state(make_asset()) is DownloadState.DOWNLOADED


async def test_restore_discards_interrupted_download(make_manager, index, download_dir, events):
    leftover = download_dir / "prog-42" / "master.m3u8"
    leftover.parent.mkdir(parents=True)
    leftover.write_text("#EXTM3U\n")
    partial = download_dir / ".partial"
    partial.mkdir()
    (partial / "stale.part").write_bytes(b"x")
    index.set("episode-1", "prog-42/master.m3u8")
    index.mark_pending("episode-1")

    manager = make_manager(FakeTransport({}))
    assert manager.download_state(make_asset()) is DownloadState.NOT_DOWNLOADED

    await manager.restore()
    await manager.restore()

    assert index.get("episode-1") is None
    assert not leftover.exists()
    assert not partial.exists()
    assert sum(isinstance(e, RestoreComplete) for e in events) == 1


async def test_dangling_entry_is_replaced_on_download(make_manager, index, download_dir):
    index.set("episode-1", "prog-42/master.m3u8")
    manager = make_manager(FakeTransport(stream_resources()))
    asset = make_asset()

    assert manager.download_state(asset) is DownloadState.NOT_DOWNLOADED
    assert manager.download(asset) is True
    assert await settle(manager, asset.name) is DownloadState.DOWNLOADED
    assert (download_dir / "prog-42" / "master.m3u8").is_file()


async def test_delete_removes_files_and_entry(make_manager, index, download_dir, events):
    manager = make_manager(FakeTransport(stream_resources()))
    asset = make_asset()
    manager.download(asset)
    await settle(manager, asset.name)

    assert manager.delete(asset) is True
    assert index.get(asset.name) is None
    assert not (download_dir / "prog-42").exists()
    assert download_dir.exists()
    assert states(events)[-1] is DownloadState.NOT_DOWNLOADED
    assert manager.delete(asset) is False


async def test_delete_refuses_active_download(make_manager):
    gate = asyncio.Event()
    manager = make_manager(FakeTransport(stream_resources(), gates={MASTER_URL: gate}))
    asset = make_asset()
    manager.download(asset)

    assert manager.delete(asset) is False
    gate.set()
    assert await settle(manager, asset.name) is DownloadState.DOWNLOADED


async def test_asset_lookups(make_manager, config):
    gate = asyncio.Event()
    manager = make_manager(FakeTransport(stream_resources(), gates={MASTER_URL: gate}))
    asset = make_asset()
    manager.download(asset)

    assert manager.asset_for_stream("episode-1") is asset
    assert manager.asset_for_stream("other") is None
    assert manager.local_asset_for_stream("episode-1", "c", "prog-42") is None

    gate.set()
    await settle(manager, asset.name)
    assert manager.asset_for_stream("episode-1") is None

    local = manager.local_asset_for_stream("episode-1", "content-7", "prog-42")
    assert local.url == "http://localhost:8080/prog-42/master.m3u8"
    assert local.content_id == "content-7"
    assert local.state is DownloadState.DOWNLOADED
    assert manager.local_asset_for_stream("missing", "", "") is None


async def test_close_cancels_in_flight_downloads(make_manager, index):
    gate = asyncio.Event()
    slow = "https://cdn.example.com/x/video/seg1.ts"
    manager = make_manager(FakeTransport(stream_resources(), gates={slow: gate}))
    asset = make_asset()
    manager.download(asset)
    waiter = asyncio.ensure_future(manager.wait_until_settled(asset.name))

    while slow not in manager.transport.urls():
        await asyncio.sleep(0.01)
    await asyncio.wait_for(manager.close(), 5)

    assert await waiter is DownloadState.NOT_DOWNLOADED
    assert len(manager.registry) == 0
    assert index.get(asset.name) is None
    with pytest.raises(HlsOfflineError, match="closed"):
        manager.download(make_asset(name="episode-2"))


@pytest.mark.parametrize("program_id", ["", ".", ".."])
async def test_unusable_program_id_is_rejected(make_manager, tmp_path, program_id):
    sentinel = tmp_path / "keep.txt"
    sentinel.write_text("keep")
    transport = FakeTransport(stream_resources())
    manager = make_manager(transport)
    asset = make_asset(program_id=program_id)

    assert manager.download(asset) is False
    assert asset.state is DownloadState.NOT_DOWNLOADED
    assert manager.download_state(asset) is DownloadState.NOT_DOWNLOADED
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    assert transport.urls() == []
    assert sentinel.read_text() == "keep"


async def test_removal_outside_download_dir_is_refused(
    make_manager, tmp_path, download_dir
):
    sentinel = tmp_path / "keep.txt"
    sentinel.write_text("keep")
    download_dir.mkdir(parents=True, exist_ok=True)
    manager = make_manager(FakeTransport({}))

    manager._remove_dir(download_dir / "..")
    manager._remove_dir(download_dir)

    assert sentinel.is_file()
    assert download_dir.is_dir()


async def test_failing_cleanup_still_reverts_state(
    make_manager, index, monkeypatch, events
):
    def broken_remove(name):
        raise OSError("index is read-only")

    monkeypatch.setattr(index, "remove", broken_remove)
    failing = "https://cdn.example.com/x/video/seg2.ts"
    manager = make_manager(FakeTransport(stream_resources(), failures={failing}))
    asset = make_asset()

    manager.download(asset)
    assert await settle(manager, asset.name) is DownloadState.NOT_DOWNLOADED
    assert asset.state is DownloadState.NOT_DOWNLOADED
    assert states(events)[-1] is DownloadState.NOT_DOWNLOADED
