"""
The attachment point for DRM credentials on protected assets.

Key exchange itself lives outside this package. A `KeyProvider` is scoped to a
`(program_id, content_id)` pair and bound before the first segment of a
protected asset is fetched; the transport hands it every segment request.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from hls_offline.models.asset import Asset

log = logging.getLogger(__name__)


class KeyProvider(ABC):
    """Supplies decryption credentials for one program/content pair."""

    def __init__(self, program_id: str, content_id: str):
        self.program_id = program_id
        self.content_id = content_id

    def prepare_headers(self, headers: dict[str, str]) -> dict[str, str]:
        """Adds any request headers the licence scheme needs. Default: none."""
        return headers

    @abstractmethod
    async def fetch_key(self, key_uri: str) -> bytes:
        """Returns the content key for `key_uri`."""


KeyProviderFactory = Callable[[str, str], KeyProvider]


class DrmBindingStage:
    """
    Binds a key provider to protected assets, reusing one provider per
    `(program_id, content_id)` scope.
    """

    def __init__(self, factory: KeyProviderFactory | None = None):
        self._factory = factory
        self._providers: dict[tuple[str, str], KeyProvider] = {}

    def bind(self, asset: Asset) -> KeyProvider | None:
        """
        Returns the provider for a protected asset, or None when the asset is
        clear or no factory is configured.
        """
        if not asset.protected:
            return None
        if self._factory is None:
            log.warning(
                f"[yellow]Asset '{asset.name}' is protected but no key provider is "
                "configured; segments will be fetched without credentials.[/yellow]"
            )
            return None
        scope = (asset.program_id, asset.content_id)
        if scope not in self._providers:
            self._providers[scope] = self._factory(*scope)
            log.debug(f"Bound key provider for program {scope[0]} / content {scope[1]}")
        return self._providers[scope]

    def release(self, asset: Asset) -> None:
        self._providers.pop((asset.program_id, asset.content_id), None)
