import copy

from hjx.cache.base import CacheStore


class MemoryCacheStore(CacheStore):
    """Cache held in a dict. Values are copied in and out like a real store would."""

    def __init__(self, initial=None):
        self._data = copy.deepcopy(dict(initial or {}))

    def put(self, key, value):
        self._data[key] = copy.deepcopy(value)
        return True

    def get(self, key, default=None):
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def delete(self, key):
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)
