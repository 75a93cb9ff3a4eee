"""
Storage Layer.

This package handles all data persistence: the configuration file and the
durable index recording which assets are available offline.
"""

from .config_manager import ConfigManager
from .index import PersistedIndex
from .kvstore import SqliteKeyValueStore

__all__ = ["ConfigManager", "PersistedIndex", "SqliteKeyValueStore"]
