"""Ties the cache, the external store, the state container and autosave together.

Control flow:

    mutation -> AppState -> AutosaveScheduler (debounced) -> flush():
        cache.put("state")                     always
        gateway.write(handle)                  if a handle exists and reports granted

    startup -> restore():
        cache "state" -> snapshot
        cache "handle" -> if read is granted, load db.json and reconcile it
        -> AppState (no notification) -> scheduler.start()

Background paths (restore, flush) absorb and log every failure. Foreground
paths (connect, import, export) raise so the user sees what went wrong.
"""

import logging
from collections import namedtuple
from datetime import datetime, timezone
from pathlib import Path

from hjx import document
from hjx.cache import create_cache_store, STATE_KEY, HANDLE_KEY, EXPORT_HANDLE_KEY
from hjx.config import DEFAULT_CONFIG
from hjx.diff import compute_diff, conflicts
from hjx.errors import DocumentError, ExportError, PermissionDenied, SnapshotError
from hjx.gateway import ExternalStoreGateway
from hjx.log import write_log
from hjx.merge import (
    DEFAULT_ORDERING, apply_resolution, choose_side, choose_suggested, merge_snapshots,
)
from hjx.scheduler import AutosaveScheduler
from hjx.snapshot import Snapshot
from hjx.state import AppState
from hjx.storage import DirectoryHandle, handle_from_dict
from hjx.storage.base import READ, READWRITE, GRANTED, DENIED

logger = logging.getLogger(__name__)

RestoreResult = namedtuple("RestoreResult", ["snapshot", "source", "diff"])
FlushResult = namedtuple("FlushResult", ["cached", "external"])


class Workspace:
    """The persistence side of one running application."""

    def __init__(self, config=None, cache=None, gateway=None, clock=None,
                 timer_factory=None, chooser=None, s3_client=None):
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.cache = cache if cache is not None else create_cache_store(self.config)
        self.gateway = gateway or ExternalStoreGateway()
        self.clock = clock
        self.chooser = chooser
        self._s3_client = s3_client

        self.handle = None
        self.export_handle = None
        self.restored = False

        self.state = AppState(clock=clock)
        self.scheduler = AutosaveScheduler(
            self.flush,
            interval=float(self.config.get("debounce_seconds", 0.5)),
            timer_factory=timer_factory,
        )
        self.state.subscribe(self.scheduler.notify)

    def _now(self):
        return self.clock() if self.clock else datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def _load_handle(self, key):
        data = self.cache.get(key)
        if data is None:
            return None
        try:
            return handle_from_dict(data, client=self._s3_client)
        except (ValueError, KeyError) as e:
            logger.warning("Discarding unreadable %s entry in cache: %s", key, e)
            self.cache.delete(key)
            return None

    def _drop_handle(self, reason):
        """Forget the storage location after a DENIED check."""
        handle = self.handle
        if handle is None:
            return
        logger.warning("Storage %s is no longer accessible (%s); using the local cache only", handle.label, reason)
        self.handle = None
        self.cache.delete(HANDLE_KEY)
        write_log({"event": "disconnect", "storage": handle.label, "reason": reason})

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def _cached_snapshot(self):
        cached = self.cache.get(STATE_KEY)
        if cached is None:
            return None
        try:
            return document.from_document(cached)
        except SnapshotError as e:
            logger.warning("Cached state is unusable, starting without it: %s", e)
            return None

    def restore(self):
        """One-time startup: cache first, then reconcile with the external copy if readable."""
        cache_snapshot = self._cached_snapshot()
        self.handle = self._load_handle(HANDLE_KEY)
        self.export_handle = self._load_handle(EXPORT_HANDLE_KEY)

        file_snapshot = None
        if self.handle is not None:
            status = self.gateway.query_permission(self.handle, READ)
            if status == GRANTED:
                file_snapshot = self.gateway.read(self.handle)
            elif status == DENIED:
                self._drop_handle("permission denied")

        diff = None
        if file_snapshot is not None and cache_snapshot is not None:
            snapshot, diff = self.reconcile(file_snapshot, cache_snapshot)
            source = "merged"
        elif file_snapshot is not None:
            snapshot, source = file_snapshot, "external"
        elif cache_snapshot is not None:
            snapshot, source = cache_snapshot, "cache"
        else:
            snapshot, source = Snapshot.empty(), "empty"

        self.state.replace(snapshot, notify=False)
        self.restored = True
        self.scheduler.start()

        # Persist what reconciliation produced so both copies converge
        if source in ("merged", "external") and snapshot != cache_snapshot:
            self.scheduler.notify()

        write_log({"event": "restore", "source": source, "records": len(snapshot)})
        return RestoreResult(snapshot, source, diff)

    def _chooser_for(self, policy, diff):
        if callable(policy):
            return policy
        if policy == "newest":
            return choose_suggested
        if policy in ("file", "cache"):
            return choose_side(policy)
        if policy == "ask":
            picks = self.chooser(diff) if self.chooser else None
            if picks is None:
                logger.info("No conflict choices made; falling back to newest-wins")
                return choose_suggested
            return lambda name, entry: picks.get((name, entry.id), entry.suggested_winner)
        raise ValueError(f"Unknown conflict policy: {policy!r}")

    def reconcile(self, file_snapshot, cache_snapshot, policy=None):
        """Combine the external copy with the local one. Returns (snapshot, diff).

        Without conflicts this is a plain union. With conflicts each one is
        settled by the policy: "newest" (default), "file", "cache", "ask", or a
        callable(collection, entry) -> "file" | "cache".
        """
        diff = compute_diff(file_snapshot, cache_snapshot)
        if not conflicts(diff):
            return merge_snapshots(file_snapshot, cache_snapshot, DEFAULT_ORDERING), diff
        policy = policy or self.config.get("conflict_policy", "newest")
        choose = self._chooser_for(policy, diff)
        return apply_resolution(file_snapshot, cache_snapshot, diff, choose, DEFAULT_ORDERING), diff

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    def flush(self):
        """Write the current state to the cache, then to external storage if allowed. Never raises."""
        snapshot = self.state.snapshot.stamped(self._now())
        cached = self.cache.put(STATE_KEY, document.to_document(snapshot))
        if not cached:
            logger.warning("Local cache write failed; state is still in memory")

        external = None
        handle = self.handle
        if handle is not None:
            # Asked fresh every time: access can be revoked at any moment
            status = self.gateway.query_permission(handle, READWRITE)
            if status == GRANTED:
                external = self.gateway.write(handle, snapshot)
            else:
                external = False
                if status == DENIED:
                    self._drop_handle("permission denied")

        write_log({"event": "flush", "cached": cached, "external": external, "records": len(snapshot)})
        return FlushResult(cached, external)

    # ------------------------------------------------------------------
    # Foreground actions
    # ------------------------------------------------------------------

    def connect(self, handle, prompt=None):
        """Grant and remember a storage location, then sync with it. Returns the diff, if any.

        Raises PermissionDenied if the user or backend refuses.
        """
        status = self.gateway.request_permission(handle, READWRITE, prompt=prompt)
        if status != GRANTED:
            raise PermissionDenied(f"Access to {handle.label} was not granted ({status})")

        diff = None
        existing = self.gateway.read(handle)
        if existing is not None:
            snapshot, diff = self.reconcile(existing, self.state.snapshot)
            self.state.replace(snapshot, notify=False)

        self.handle = handle
        if not self.cache.put(HANDLE_KEY, handle.to_dict()):
            logger.warning("Could not remember %s; it will need reconnecting next time", handle.label)
        write_log({"event": "connect", "storage": handle.label, "existing": existing is not None})
        self.scheduler.flush_now()
        return diff

    def disconnect(self):
        """Forget the storage location. Returns False if none was connected."""
        handle = self.handle or self._load_handle(HANDLE_KEY)
        if handle is None:
            return False
        handle.revoke()
        self.handle = None
        self.cache.delete(HANDLE_KEY)
        write_log({"event": "disconnect", "storage": handle.label, "reason": "user"})
        return True

    def set_export_target(self, handle, prompt=None):
        status = self.gateway.request_permission(handle, READWRITE, prompt=prompt)
        if status != GRANTED:
            raise PermissionDenied(f"Access to {handle.label} was not granted ({status})")
        self.export_handle = handle
        self.cache.put(EXPORT_HANDLE_KEY, handle.to_dict())

    def export(self, destination=None):
        """Write db_<timestamp>.json. Returns its location. Raises ExportError."""
        if isinstance(destination, (str, Path)):
            # Naming a directory on the command line is the grant
            handle = DirectoryHandle(destination, granted=READWRITE)
        else:
            handle = destination or self.export_handle or self.handle
        if handle is None:
            raise ExportError("No export destination. Pass a directory or connect storage first.")
        now = self._now()
        location = self.gateway.export(self.state.snapshot.stamped(now), handle, now)
        write_log({"event": "export", "location": str(location)})
        return location

    def import_text(self, text):
        """Replace the whole state with an exported document. Not merged.

        Raises DocumentError; the current state is untouched on failure.
        """
        snapshot = document.parse_import(text)
        self.state.replace(snapshot)
        write_log({"event": "import", "records": len(snapshot)})
        return snapshot

    def import_file(self, path):
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise DocumentError(f"Cannot read {path}: {e}") from e
        return self.import_text(text)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def external_diff(self):
        """Diff of db.json against the current state, or None if it can't be read."""
        if self.handle is None:
            return None
        file_snapshot = self.gateway.read(self.handle)
        if file_snapshot is None:
            return None
        return compute_diff(file_snapshot, self.state.snapshot)

    def compare(self):
        """Diff db.json against the raw cached state. Reconciles and saves nothing."""
        handle = self.handle or self._load_handle(HANDLE_KEY)
        if handle is None:
            return None
        file_snapshot = self.gateway.read(handle)
        if file_snapshot is None:
            return None
        return compute_diff(file_snapshot, self._cached_snapshot() or Snapshot.empty())

    def status(self):
        handle = self.handle
        return {
            "storage": handle.label if handle else None,
            "permission": self.gateway.query_permission(handle, READWRITE) if handle else None,
            "export_to": self.export_handle.label if self.export_handle else None,
            "autosave": self.scheduler.state,
            "collections": {n: len(self.state.snapshot.ids(n)) for n in self.state.snapshot.names},
            "last_update": self.state.snapshot.last_update,
        }

    def close(self):
        """Stop autosave, writing out anything still pending."""
        self.scheduler.stop(flush=True)
