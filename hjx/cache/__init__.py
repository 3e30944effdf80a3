from hjx.cache.base import CacheStore, STATE_KEY, HANDLE_KEY, EXPORT_HANDLE_KEY
from hjx.cache.local import FileCacheStore
from hjx.cache.memory import MemoryCacheStore


def create_cache_store(config=None):
    """Create a cache store from config.

    Config keys:
        cache_backend: "file" (default) or "memory"
        cache_dir: directory for the file backend (default ~/.hjx/cache)
    """
    config = config or {}
    backend = config.get("cache_backend", "file")

    if backend == "memory":
        return MemoryCacheStore()

    if backend == "file":
        return FileCacheStore(config.get("cache_dir"))

    raise ValueError(f"Unknown cache backend: {backend!r}. Use 'file' or 'memory'.")
