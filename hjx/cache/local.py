import json
import logging
import os
import tempfile
from pathlib import Path

from hjx.cache.base import CacheStore

CACHE_DIR = Path.home() / ".hjx" / "cache"

logger = logging.getLogger(__name__)


class FileCacheStore(CacheStore):
    """One JSON file per key under cache_dir.

    Writes land in a temp file in the same directory and are moved into place
    with os.replace, so a crash mid-write leaves the previous value intact.
    """

    def __init__(self, cache_dir=None):
        self.cache_dir = Path(cache_dir).expanduser() if cache_dir else CACHE_DIR

    def _path(self, key):
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.cache_dir / f"{key}.json"

    def put(self, key, value):
        path = self._path(key)
        try:
            payload = json.dumps(value, ensure_ascii=False)
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error("Cache write for %r failed: %s", key, e)
            return False
        return True

    def get(self, key, default=None):
        path = self._path(key)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return default
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Cache entry %r is unreadable, ignoring it: %s", key, e)
            return default

    def delete(self, key):
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            logger.error("Cache delete for %r failed: %s", key, e)
