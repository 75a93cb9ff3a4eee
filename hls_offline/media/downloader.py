"""
Handles the low-level fetching of manifests and segments over HTTP with adaptive
chunk sizing. Every fetch lands in a temporary file; placing it in the mirror is
the pipeline's job.
"""

import asyncio
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiohttp

from hls_offline.core.drm import KeyProvider
from hls_offline.exceptions import TransportError
from hls_offline.models.events import BytesProgress
from hls_offline.models.stats import DownloadStats

log = logging.getLogger(__name__)

_connection_pool: aiohttp.ClientSession | None = None
_pool_lock = asyncio.Lock()


async def get_connection_pool(max_workers: int = 8) -> aiohttp.ClientSession:
    """
    Gets or creates a shared aiohttp ClientSession for downloads.

    This function ensures that only one connection pool is created for the
    lifetime of the application run.

    Args:
        max_workers: Maximum concurrent connections per host.
    """
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            return _connection_pool

        connector = aiohttp.TCPConnector(
            limit=max_workers * 2,  # Total connections
            limit_per_host=max_workers,  # Per-host (CDN)
            ttl_dns_cache=600,  # 10 minutes
            keepalive_timeout=30,
            enable_cleanup_closed=True,
            force_close=False,
        )
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
        _connection_pool = aiohttp.ClientSession(connector=connector, timeout=timeout)
        log.debug(f"Created download pool with limit_per_host={max_workers}")

    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared global connection pool."""
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            await _connection_pool.close()
            _connection_pool = None
            log.debug("Shared downloader connection pool closed.")


@dataclass(frozen=True)
class FetchRequest:
    """What to fetch, where temporary files go, and any attached credentials."""

    url: str
    temp_dir: Path
    key_provider: KeyProvider | None = None


Reporter = Callable[[object], None]


class Downloader:
    """
    A low-level file fetcher with adaptive chunk sizing.

    Failures are raised as `TransportError`; there are no retries at this layer.
    """

    MIN_CHUNK_SIZE = 65536  # 64 KB
    MAX_CHUNK_SIZE = 1048576  # 1 MB
    _shared_chunk_size = MIN_CHUNK_SIZE
    _chunk_lock = asyncio.Lock()

    def __init__(self, stats: DownloadStats | None = None, max_workers: int = 8):
        self.stats = stats
        self.max_workers = max_workers

    @classmethod
    async def _adapt_chunk_size_shared(cls, current_speed_bps: float) -> int:
        """Adapts the shared chunk size based on current network speed."""
        async with cls._chunk_lock:
            if current_speed_bps > 10 * 1024 * 1024:  # > 10 MB/s
                cls._shared_chunk_size = cls.MAX_CHUNK_SIZE
            elif current_speed_bps > 5 * 1024 * 1024:  # > 5 MB/s
                cls._shared_chunk_size = 524288  # 512 KB
            elif current_speed_bps > 1 * 1024 * 1024:  # > 1 MB/s
                cls._shared_chunk_size = 262144  # 256 KB
            else:
                cls._shared_chunk_size = cls.MIN_CHUNK_SIZE
            return cls._shared_chunk_size

    async def fetch(self, request: FetchRequest, report: Reporter) -> Path:
        """
        Streams `request.url` into a new temporary file and returns its path.

        `report` receives a `BytesProgress` after every chunk.
        """
        request.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=request.temp_dir, suffix=".part")
        os.close(fd)
        temp_path = Path(temp_name)

        headers: dict[str, str] = {}
        if request.key_provider is not None:
            headers = request.key_provider.prepare_headers(headers)

        try:
            session = await get_connection_pool(self.max_workers)
            async with session.get(
                request.url, headers=headers, allow_redirects=True
            ) as response:
                response.raise_for_status()
                bytes_expected = response.content_length or -1

                async with aiofiles.open(temp_path, "wb") as f:
                    bytes_written = 0
                    last_speed_check = asyncio.get_running_loop().time()
                    chunk_size = self._shared_chunk_size

                    async for chunk in response.content.iter_chunked(chunk_size):
                        await f.write(chunk)
                        bytes_written += len(chunk)

                        if self.stats:
                            self.stats.record_bytes(len(chunk))
                            await self.stats.update_speed_stats()
                            now = asyncio.get_running_loop().time()
                            if now - last_speed_check > 2.0:
                                chunk_size = await self._adapt_chunk_size_shared(
                                    self.stats.current_speed_bps
                                )
                                last_speed_check = now

                        report(BytesProgress(bytes_written, bytes_expected))

                if bytes_written == 0:
                    report(BytesProgress(0, bytes_expected))
            return temp_path
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _discard(temp_path)
            log.debug(f"Fetch of '{request.url}' failed: {e}")
            raise TransportError(f"Failed to fetch {request.url}: {e}") from e
        except BaseException:
            # Cancellation included: the partial file is never handed over.
            _discard(temp_path)
            raise


def _discard(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"Could not remove partial file '{path}': {e}")
