"""
The task registry: every fetch in flight, and the asset it belongs to.
"""

import itertools

from hls_offline.models.asset import Asset, FetchHandle


class TaskRegistry:
    """
    An arena of fetch handles keyed by generated integer id.

    Only the coordinator mutates the registry. Lookups by asset name scan the
    active set, which holds a handful of assets at most.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self._entries: dict[int, tuple[FetchHandle, Asset]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def new_handle_id(self) -> int:
        return next(self._ids)

    def register(self, handle: FetchHandle, asset: Asset) -> None:
        if handle.id in self._entries:
            raise KeyError(f"Fetch handle {handle.id} is already registered.")
        self._entries[handle.id] = (handle, asset)

    def resolve(self, handle_id: int) -> Asset | None:
        entry = self._entries.get(handle_id)
        return entry[1] if entry else None

    def handle(self, handle_id: int) -> FetchHandle | None:
        entry = self._entries.get(handle_id)
        return entry[0] if entry else None

    def unregister(self, handle_id: int) -> tuple[FetchHandle, Asset] | None:
        """Removes a handle, returning it with its asset, or None if unknown."""
        return self._entries.pop(handle_id, None)

    def find_active_by_name(self, name: str) -> Asset | None:
        for _, asset in self._entries.values():
            if asset.name == name:
                return asset
        return None

    def handles_for(self, name: str) -> list[FetchHandle]:
        return [h for h, asset in self._entries.values() if asset.name == name]

    def outstanding_count(self, name: str) -> int:
        return sum(1 for _, asset in self._entries.values() if asset.name == name)

    def all_handles(self) -> list[FetchHandle]:
        return [h for h, _ in self._entries.values()]
