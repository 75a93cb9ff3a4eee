"""
The persisted download index: which assets have a local manifest, and where.
"""

import logging
from pathlib import Path

from hls_offline.models.asset import DownloadState

from .kvstore import SqliteKeyValueStore

log = logging.getLogger(__name__)

PENDING_PREFIX = "pending::"


class PersistedIndex:
    """
    Maps an asset name to its local manifest path, relative to `base_dir`.

    An entry is written once the master manifest has landed. While the rest of
    the pipeline runs, a pending marker sits beside it; the marker is cleared
    when the asset is complete, so an entry left pending by a crashed process
    is never mistaken for a finished download.
    """

    def __init__(self, store: SqliteKeyValueStore, base_dir: Path):
        self.store = store
        self.base_dir = Path(base_dir)

    def get(self, name: str) -> str | None:
        return self.store.get(name) or None

    def set(self, name: str, path: str) -> None:
        self.store.set(name, path)

    def remove(self, name: str) -> None:
        self.store.remove(name)
        self.store.remove(PENDING_PREFIX + name)

    def mark_pending(self, name: str) -> None:
        self.store.set(PENDING_PREFIX + name, "1")

    def clear_pending(self, name: str) -> None:
        self.store.remove(PENDING_PREFIX + name)

    def is_pending(self, name: str) -> bool:
        return self.store.get(PENDING_PREFIX + name) is not None

    def pending_names(self) -> list[str]:
        return [k[len(PENDING_PREFIX) :] for k in self.store.keys(PENDING_PREFIX)]

    def entries(self) -> dict[str, str]:
        """All `name -> path` entries, without pending markers."""
        return {
            key: self.store.get(key) or ""
            for key in self.store.keys()
            if not key.startswith(PENDING_PREFIX)
        }

    def resolve_local_path(self, name: str) -> Path | None:
        """The absolute path of the stored manifest, or None if there is no entry."""
        relative = self.get(name)
        if not relative:
            return None
        return self.base_dir / relative

    def is_dangling(self, name: str) -> bool:
        """True when an entry exists but its file is gone."""
        local_path = self.resolve_local_path(name)
        return local_path is not None and not local_path.is_file()

    def state_of(self, name: str) -> DownloadState:
        """
        The persisted state, ignoring anything in flight in this process.

        Dangling and pending entries read as not downloaded.
        """
        local_path = self.resolve_local_path(name)
        if local_path is None or self.is_pending(name):
            return DownloadState.NOT_DOWNLOADED
        if local_path.is_file():
            return DownloadState.DOWNLOADED
        log.debug(f"Index entry for '{name}' points at a missing file: {local_path}")
        return DownloadState.NOT_DOWNLOADED
