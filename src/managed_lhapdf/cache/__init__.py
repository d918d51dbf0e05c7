"""Local cache of PDF sets and the LHAID index.

Key components:
- CacheConfig / ConfigStore: Configuration management
- LockManager: Per-resource cross-process locks
- DatasetFetcher: Download and atomic installation of sets
- IndexResolver: LHAID resolution with refresh on miss
"""

from managed_lhapdf.cache.config import (
    CacheConfig,
    ConfigStore,
    get_config,
    reset_global_config,
    set_global_config,
)
from managed_lhapdf.cache.fetcher import DatasetFetcher
from managed_lhapdf.cache.index import IndexFile, IndexResolver
from managed_lhapdf.cache.locking import INDEX_RESOURCE, LockManager

__all__ = [
    "CacheConfig",
    "ConfigStore",
    "get_config",
    "set_global_config",
    "reset_global_config",
    "DatasetFetcher",
    "IndexFile",
    "IndexResolver",
    "LockManager",
    "INDEX_RESOURCE",
]
