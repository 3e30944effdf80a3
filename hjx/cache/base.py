from abc import ABC, abstractmethod

STATE_KEY = "state"
HANDLE_KEY = "handle"
EXPORT_HANDLE_KEY = "export_handle"


class CacheStore(ABC):
    """Base interface for the on-device key/value cache.

    Implementations: FileCacheStore (default), MemoryCacheStore (tests, cache_backend "memory").
    Every operation is best-effort: nothing here may raise on a storage failure.
    """

    @abstractmethod
    def put(self, key, value):
        """Store a JSON-serializable value, replacing any previous one. Returns True on success."""
        pass

    @abstractmethod
    def get(self, key, default=None):
        """Return the stored value, or default if absent or unreadable."""
        pass

    @abstractmethod
    def delete(self, key):
        """Remove a stored value. No-op if absent."""
        pass
