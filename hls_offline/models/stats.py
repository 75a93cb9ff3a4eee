"""
Dataclass for tracking download session statistics.
"""

import asyncio
import time
from dataclasses import dataclass, field


@dataclass
class DownloadStats:
    """Tracks statistics for a download session, including real-time speed."""

    fetches_completed: int = 0
    fetches_failed: int = 0
    fetches_cancelled: int = 0
    assets_downloaded: int = 0
    assets_failed: int = 0
    duplicate_requests: int = 0
    total_size_downloaded: int = 0
    assets_processed: set[str] = field(default_factory=set)

    # Real-time speed calculation fields
    current_speed_bps: float = 0.0
    peak_speed_bps: float = 0.0
    _speed_samples: list[float] = field(default_factory=list, repr=False)
    _last_progress_time: float = field(default=0.0, repr=False)
    _last_progress_bytes: int = field(default=0, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self):
        self._last_progress_time = time.monotonic()

    def record_bytes(self, count: int) -> None:
        self.total_size_downloaded += count

    async def update_speed_stats(self) -> None:
        """
        Updates the download speed from the cumulative byte counter.
        This method is async-safe.
        """
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_progress_time

            # Update speed roughly twice per second
            if elapsed > 0.5:
                bytes_diff = self.total_size_downloaded - self._last_progress_bytes
                if bytes_diff > 0:
                    self._speed_samples.append(bytes_diff / elapsed)
                    # Keep a sliding window of the last 10 speed samples
                    if len(self._speed_samples) > 10:
                        self._speed_samples.pop(0)
                    self.current_speed_bps = sum(self._speed_samples) / len(
                        self._speed_samples
                    )
                    self.peak_speed_bps = max(
                        self.peak_speed_bps, self.current_speed_bps
                    )

                self._last_progress_time = now
                self._last_progress_bytes = self.total_size_downloaded
