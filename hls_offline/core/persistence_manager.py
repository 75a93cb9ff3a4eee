"""
The download pipeline for HLS assets.

`AssetPersistenceManager` walks an asset's manifests from the master playlist
down to every segment, mirrors each resource under the download directory, and
records finished assets in the persisted index. All bookkeeping happens on a
single coordinator task that drains an inbox; fetches run as their own tasks
and only ever talk to the coordinator through that inbox.
"""

import asyncio
import functools
import logging
import os
import shutil
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urljoin

from hls_offline.exceptions import (
    DownloadCancelledError,
    HlsOfflineError,
    ManifestParseError,
    TransportError,
)
from hls_offline.manifest.parser import Grammar, parse_manifest
from hls_offline.manifest.rewriter import absolutize_manifest, rewrite_manifest
from hls_offline.media.downloader import FetchRequest
from hls_offline.models.asset import Asset, DownloadState, FetchHandle, StageTag
from hls_offline.models.config import DownloadConfig
from hls_offline.models.events import (
    BytesProgress,
    MediaSelectionResolved,
    ProgressChanged,
    RestoreComplete,
    StateChanged,
    TimeRangeProgress,
)
from hls_offline.models.stats import DownloadStats
from hls_offline.storage.index import PersistedIndex
from hls_offline.utils.path import (
    create_dir,
    is_within,
    program_dir_name,
    relative_destination,
)

from .drm import DrmBindingStage, KeyProvider
from .notifier import EventNotifier, percent_from_bytes, percent_from_time_ranges
from .registry import TaskRegistry

log = logging.getLogger(__name__)

PARTIAL_DIR_NAME = ".partial"


class Transport(Protocol):
    async def fetch(
        self, request: FetchRequest, report: Callable[[object], None]
    ) -> Path: ...


@dataclass
class _FetchReport:
    handle_id: int
    report: object


@dataclass
class _FetchFinished:
    handle_id: int
    temp_path: Path | None = None
    error: Exception | None = None


@dataclass(eq=False)
class _Pipeline:
    """Per-asset progress of one download run."""

    asset: Asset
    segments_done: int = 0
    failed: bool = False
    cancel_requested: bool = False
    key_provider: KeyProvider | None = None


class AssetPersistenceManager:
    """
    Starts, cancels and deletes offline downloads, and answers where each asset
    stands.
    """

    def __init__(
        self,
        config: DownloadConfig,
        transport: Transport,
        index: PersistedIndex,
        notifier: EventNotifier | None = None,
        drm: DrmBindingStage | None = None,
        stats: DownloadStats | None = None,
    ):
        self.config = config
        self.transport = transport
        self.index = index
        self.notifier = notifier or EventNotifier()
        self.drm = drm or DrmBindingStage()
        self.stats = stats or DownloadStats()
        self.registry = TaskRegistry()
        self.base_dir = config.base_dir
        self.temp_dir = self.base_dir / PARTIAL_DIR_NAME

        self._pipelines: dict[str, _Pipeline] = {}
        self._media_selections: dict[str, dict[int, object]] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._coordinator: asyncio.Task | None = None
        self._did_restore = False
        self._closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Public API

    def download(self, asset: Asset) -> bool:
        """
        Starts the pipeline for `asset` if it is not downloaded.

        Returns:
            True if a new pipeline was started. Requests for an asset that is
            already downloading are counted as duplicates and ignored.
        """
        self._ensure_coordinator()

        try:
            program_dir_name(asset.program_id)
        except ValueError as e:
            log.error(f"[red]✗ Cannot download '{asset.name}': {e}[/red]")
            asset.state = DownloadState.NOT_DOWNLOADED
            return False

        state = self.download_state(asset)
        if state is DownloadState.DOWNLOADING:
            self.stats.duplicate_requests += 1
            log.info(
                f"[yellow]Download of '{asset.name}' is already in progress, "
                "ignoring duplicate request.[/yellow]"
            )
            return False
        if state is DownloadState.DOWNLOADED:
            asset.state = state
            asset.local_manifest_path = self.index.get(asset.name)
            log.info(f"'{asset.name}' is already downloaded.")
            return False

        if self.index.get(asset.name) is not None:
            log.debug(f"Clearing stale index entry for '{asset.name}'.")
            self._remove_program_dir(asset.program_id)
            self.index.remove(asset.name)

        self._pipelines[asset.name] = _Pipeline(asset)
        self._media_selections.pop(asset.name, None)
        self.stats.assets_processed.add(asset.name)
        asset.local_manifest_path = None

        self._dispatch(asset, StageTag.MASTER, asset.url)
        self._set_state(asset, DownloadState.DOWNLOADING)
        return True

    def cancel(self, asset: Asset) -> bool:
        """
        Requests cancellation of every fetch tracked for `asset`.

        Completions still arrive for each cancelled fetch and drive cleanup.
        """
        pipeline = self._pipelines.get(asset.name)
        if pipeline is None:
            return False
        pipeline.cancel_requested = True
        handles = self.registry.handles_for(asset.name)
        for handle in handles:
            if handle.task is not None:
                handle.task.cancel()
        log.info(f"Cancelling {len(handles)} fetch(es) for '{asset.name}'.")
        return True

    def delete(self, asset: Asset) -> bool:
        """Removes a downloaded asset's files and index entry."""
        if asset.name in self._pipelines:
            log.warning(
                f"[yellow]'{asset.name}' is downloading; cancel it before "
                "deleting.[/yellow]"
            )
            return False
        local_path = self.index.resolve_local_path(asset.name)
        if local_path is None:
            return False
        self._remove_dir(local_path.parent)
        self.index.remove(asset.name)
        self._media_selections.pop(asset.name, None)
        asset.local_manifest_path = None
        self._set_state(asset, DownloadState.NOT_DOWNLOADED)
        return True

    def download_state(self, asset: Asset) -> DownloadState:
        if asset.name in self._pipelines or self.registry.find_active_by_name(
            asset.name
        ):
            return DownloadState.DOWNLOADING
        return self.index.state_of(asset.name)

    def asset_for_stream(self, name: str) -> Asset | None:
        """The asset with an active download under `name`, if any."""
        if pipeline := self._pipelines.get(name):
            return pipeline.asset
        return self.registry.find_active_by_name(name)

    def local_asset_for_stream(
        self, name: str, content_id: str, program_id: str
    ) -> Asset | None:
        """
        An asset addressing the local copy through the local file server, or
        None if nothing is stored under `name`.
        """
        relative = self.index.get(name)
        if not relative:
            return None
        return Asset(
            name=name,
            url=urljoin(self.config.local_server_url, relative),
            program_id=program_id,
            content_id=content_id,
            state=self.index.state_of(name),
            local_manifest_path=relative,
        )

    def media_selection(self, asset_name: str, handle_id: int) -> object | None:
        """The media selection a continuous-media fetch resolved, if reported."""
        return self._media_selections.get(asset_name, {}).get(handle_id)

    async def restore(self) -> None:
        """
        Reconciles state left behind by a previous process, once.

        Pipelines interrupted after their master manifest landed are discarded
        so they can be downloaded again, then `RestoreComplete` is published.
        """
        if self._did_restore:
            return
        self._did_restore = True

        for name in await asyncio.to_thread(self.index.pending_names):
            if name in self._pipelines:
                continue
            log.info(f"[yellow]Discarding interrupted download '{name}'.[/yellow]")
            if local_path := self.index.resolve_local_path(name):
                await asyncio.to_thread(self._remove_dir, local_path.parent)
            self.index.remove(name)

        if not self._pipelines and self.temp_dir.exists():
            await asyncio.to_thread(self._remove_dir, self.temp_dir)

        self.notifier.publish(RestoreComplete())

    async def wait_until_settled(self, name: str) -> DownloadState:
        """Waits for the named asset to leave the downloading state."""
        pipeline = self._pipelines.get(name)
        if pipeline is None:
            return self.index.state_of(name)
        if pipeline.failed:
            return DownloadState.NOT_DOWNLOADED
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(name, []).append(future)
        return await future

    async def close(self) -> None:
        """Cancels everything in flight, drains completions and stops."""
        self._closed = True
        for pipeline in self._pipelines.values():
            pipeline.cancel_requested = True

        while True:
            if self._coordinator and not self._coordinator.done():
                await self._inbox.join()
            handles = self.registry.all_handles()
            if not handles:
                break
            tasks = [h.task for h in handles if h.task is not None]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._coordinator and not self._coordinator.done():
            self._coordinator.cancel()
            with suppress(asyncio.CancelledError):
                await self._coordinator
        log.debug("Persistence manager closed.")

    # Dispatch

    def _ensure_coordinator(self) -> None:
        if self._closed:
            raise HlsOfflineError("The persistence manager has been closed.")
        if self._coordinator is None or self._coordinator.done():
            self._coordinator = asyncio.create_task(
                self._run(), name="hls-offline-coordinator"
            )

    def _dispatch(
        self,
        asset: Asset,
        stage: StageTag,
        url: str,
        key_provider: KeyProvider | None = None,
    ) -> FetchHandle:
        handle = FetchHandle(
            id=self.registry.new_handle_id(),
            url=url,
            stage=stage,
            asset_name=asset.name,
            key_provider=key_provider,
        )
        self.registry.register(handle, asset)

        request = FetchRequest(url=url, temp_dir=self.temp_dir, key_provider=key_provider)
        report = functools.partial(self._post_report, handle.id)
        handle.task = asyncio.create_task(
            self.transport.fetch(request, report), name=f"fetch-{handle.id}"
        )
        handle.task.add_done_callback(functools.partial(self._post_finished, handle))
        log.debug(f"Dispatched {stage.value} fetch #{handle.id}: {url}")
        return handle

    def _post_report(self, handle_id: int, report: object) -> None:
        self._inbox.put_nowait(_FetchReport(handle_id, report))

    def _post_finished(self, handle: FetchHandle, task: asyncio.Task) -> None:
        if task.cancelled():
            message = _FetchFinished(
                handle.id,
                error=DownloadCancelledError(f"Fetch of {handle.url} was cancelled."),
            )
        elif (exc := task.exception()) is not None:
            if not isinstance(exc, HlsOfflineError):
                wrapped = TransportError(f"Failed to fetch {handle.url}: {exc}")
                wrapped.__cause__ = exc
                exc = wrapped
            message = _FetchFinished(handle.id, error=exc)
        else:
            message = _FetchFinished(handle.id, temp_path=task.result())
        self._inbox.put_nowait(message)

    # Coordinator

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                if isinstance(message, _FetchFinished):
                    await self._on_fetch_finished(message)
                else:
                    self._on_fetch_report(message)
            except Exception as e:
                log.error(
                    f"[red]Unexpected error while handling {type(message).__name__}: "
                    f"{e}[/red]",
                    exc_info=True,
                )
            finally:
                self._inbox.task_done()

    def _on_fetch_report(self, message: _FetchReport) -> None:
        handle = self.registry.handle(message.handle_id)
        if handle is None:
            return
        report = message.report

        if isinstance(report, MediaSelectionResolved):
            handle.media_selection = report.selection
            self._media_selections.setdefault(handle.asset_name, {})[handle.id] = (
                report.selection
            )
            return
        if isinstance(report, BytesProgress):
            percent = percent_from_bytes(report.bytes_written, report.bytes_expected)
        elif isinstance(report, TimeRangeProgress):
            percent = percent_from_time_ranges(
                report.loaded_ranges, report.expected_duration
            )
        else:
            log.debug(f"Ignoring unknown transport report {report!r}")
            return

        if percent is not None:
            self.notifier.publish(ProgressChanged(handle.asset_name, percent, handle.url))

    async def _on_fetch_finished(self, message: _FetchFinished) -> None:
        entry = self.registry.unregister(message.handle_id)
        if entry is None:
            log.debug(f"Completion for unknown fetch #{message.handle_id}")
            _discard(message.temp_path)
            return
        handle, asset = entry
        pipeline = self._pipelines.get(asset.name)
        if pipeline is None:
            _discard(message.temp_path)
            return

        try:
            if message.error is not None:
                if isinstance(message.error, DownloadCancelledError):
                    self.stats.fetches_cancelled += 1
                else:
                    self.stats.fetches_failed += 1
                self._fail(pipeline, message.error)
            elif pipeline.failed:
                self.stats.fetches_completed += 1
                _discard(message.temp_path)
            else:
                self.stats.fetches_completed += 1
                await self._advance(pipeline, handle, message.temp_path)
        except Exception as e:
            _discard(message.temp_path)
            self._fail(pipeline, e)
        finally:
            self._evaluate_completion(pipeline)

    async def _advance(
        self, pipeline: _Pipeline, handle: FetchHandle, temp_path: Path
    ) -> None:
        """Places a finished fetch and dispatches whatever it references."""
        self._ensure_live(pipeline)
        asset = pipeline.asset
        relative = relative_destination(
            handle.url, handle.stage, asset.program_id, self.config.master_manifest_name
        )
        destination = self.base_dir / relative
        program_root = self.base_dir / program_dir_name(asset.program_id)
        if not is_within(destination, program_root):
            raise HlsOfflineError(
                f"Refusing to store {handle.url} outside '{program_root}'."
            )
        await asyncio.to_thread(_place_file, temp_path, destination)

        if handle.stage.is_segment:
            pipeline.segments_done += 1
            return

        if handle.stage is StageTag.MASTER:
            log.info(f"Downloaded master manifest for '{asset.name}'.")
            self.index.set(asset.name, relative)
            self.index.mark_pending(asset.name)
            asset.local_manifest_path = relative
            video_url, subtitles_url = await asyncio.to_thread(
                _ingest_master, destination, handle.url
            )
            self._ensure_live(pipeline)
            self._dispatch(asset, StageTag.VIDEO_MANIFEST, video_url)
            if subtitles_url:
                self._dispatch(asset, StageTag.SUBTITLES_MANIFEST, subtitles_url)
            else:
                log.debug(f"No subtitles referenced by '{asset.name}'.")

        elif handle.stage is StageTag.VIDEO_MANIFEST:
            segment_urls = await asyncio.to_thread(
                _ingest_manifest, destination, handle.url, Grammar.VIDEO_SEGMENTS
            )
            self._ensure_live(pipeline)
            if pipeline.key_provider is None:
                pipeline.key_provider = self.drm.bind(asset)
            log.info(f"Fetching {len(segment_urls)} video segment(s) for '{asset.name}'.")
            for url in segment_urls:
                self._dispatch(asset, StageTag.SEGMENT, url, pipeline.key_provider)

        elif handle.stage is StageTag.SUBTITLES_MANIFEST:
            subtitle_urls = await asyncio.to_thread(
                _ingest_manifest, destination, handle.url, Grammar.SUBTITLE_SEGMENTS
            )
            self._ensure_live(pipeline)
            log.info(
                f"Fetching {len(subtitle_urls)} subtitle segment(s) for '{asset.name}'."
            )
            for url in subtitle_urls:
                self._dispatch(asset, StageTag.SUBTITLE_SEGMENT, url)

    def _ensure_live(self, pipeline: _Pipeline) -> None:
        if pipeline.cancel_requested:
            raise DownloadCancelledError(
                f"Download of '{pipeline.asset.name}' was cancelled."
            )

    def _fail(self, pipeline: _Pipeline, error: Exception) -> None:
        """Abandons the pipeline: cleans up and reverts the asset, once."""
        if pipeline.failed:
            return
        pipeline.failed = True
        asset = pipeline.asset
        cancelled = isinstance(error, DownloadCancelledError)

        if cancelled:
            log.info(f"[yellow]Download of '{asset.name}' cancelled.[/yellow]")
        else:
            self.stats.assets_failed += 1
            log.error(f"[red]✗ Download of '{asset.name}' failed: {error}[/red]")

        if cancelled or self.config.cascade_cancel:
            for handle in self.registry.handles_for(asset.name):
                if handle.task is not None:
                    handle.task.cancel()

        try:
            self._remove_program_dir(asset.program_id)
        except Exception as e:
            log.error(f"[red]Could not clean up files of '{asset.name}': {e}[/red]")
        try:
            self.index.remove(asset.name)
        except Exception as e:
            log.error(f"[red]Could not clear index entry of '{asset.name}': {e}[/red]")
        finally:
            asset.local_manifest_path = None
            self._set_state(asset, DownloadState.NOT_DOWNLOADED)

    def _evaluate_completion(self, pipeline: _Pipeline) -> None:
        asset = pipeline.asset
        if self.registry.outstanding_count(asset.name) > 0:
            return
        if self._pipelines.get(asset.name) is not pipeline:
            return
        del self._pipelines[asset.name]
        self.drm.release(asset)

        if pipeline.failed:
            return
        if pipeline.segments_done == 0:
            self._fail(
                pipeline,
                ManifestParseError(f"No segments were downloaded for '{asset.name}'."),
            )
            return

        self.index.clear_pending(asset.name)
        asset.local_manifest_path = self.index.get(asset.name)
        self.stats.assets_downloaded += 1
        log.info(
            f"[green]✓ Downloaded '{asset.name}' "
            f"({pipeline.segments_done} segment(s)).[/green]"
        )
        self._set_state(asset, DownloadState.DOWNLOADED)

    def _set_state(self, asset: Asset, state: DownloadState) -> None:
        asset.state = state
        self.notifier.publish(StateChanged(asset.name, state))
        if state is not DownloadState.DOWNLOADING:
            for future in self._waiters.pop(asset.name, []):
                if not future.done():
                    future.set_result(state)

    # Filesystem

    def _remove_program_dir(self, program_id: str) -> None:
        self._remove_dir(self.base_dir / program_dir_name(program_id))

    def _remove_dir(self, directory: Path) -> None:
        """Best-effort recursive removal, only strictly inside the download root."""
        if directory.resolve() == self.base_dir.resolve() or not is_within(
            directory, self.base_dir
        ):
            log.error(f"[red]Refusing to remove '{directory}'.[/red]")
            return
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.error(f"[red]Could not remove '{directory}': {e}[/red]")


def _place_file(temp_path: Path, destination: Path) -> bool:
    """Moves a fetched file into the mirror. Failures are logged, not raised."""
    try:
        create_dir(destination.parent)
        shutil.move(temp_path, destination)
        return True
    except OSError as e:
        log.error(f"[red]Could not move '{temp_path}' to '{destination}': {e}[/red]")
        _discard(temp_path)
        return False


def _ingest_master(path: Path, source_url: str) -> tuple[str, str | None]:
    """
    Reads a master manifest, extracts the video and subtitle manifests it
    references, and rewrites it for local playback.
    """
    with open(path, encoding="utf-8") as f:
        text = f.read()
    video_url = parse_manifest(text, Grammar.MASTER_VIDEO, source_url)[0]
    subtitles = parse_manifest(text, Grammar.MASTER_SUBTITLES, source_url)
    absolutize_manifest(path, source_url)
    rewrite_manifest(path)
    return video_url, subtitles[0] if subtitles else None


def _ingest_manifest(path: Path, source_url: str, grammar: Grammar) -> list[str]:
    with open(path, encoding="utf-8") as f:
        text = f.read()
    urls = parse_manifest(text, grammar, source_url)
    rewrite_manifest(path)
    return urls


def _discard(path: Path | None) -> None:
    if path is None:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"Could not remove temporary file '{path}': {e}")
