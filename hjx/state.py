import logging
import threading

from hjx.snapshot import Snapshot, TIMESTAMP_FIELD, now_ms, update_info

logger = logging.getLogger(__name__)


class AppState:
    """Owns the current Snapshot and is the only way to change it.

    Every update produces a new Snapshot and notifies subscribers with it; the
    autosave scheduler is one such subscriber.

        state = AppState()
        unsubscribe = state.subscribe(lambda snapshot: scheduler.notify())
        state.upsert("projects", {"id": "p1", "name": "Riverside"}, actor="Lin")
    """

    def __init__(self, snapshot=None, clock=None):
        self._snapshot = snapshot or Snapshot.empty()
        self._clock = clock
        self._listeners = []
        self._lock = threading.RLock()

    @property
    def snapshot(self):
        return self._snapshot

    def subscribe(self, listener):
        """Call listener(snapshot) after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _now(self):
        return self._clock() if self._clock else None

    def _update(self, actor):
        return update_info(actor, self._now()) if actor else None

    def _commit(self, snapshot, notify=True):
        with self._lock:
            self._snapshot = snapshot
        if not notify:
            return snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener %r failed", listener)
        return snapshot

    # ------------------------------------------------------------------
    # Controlled updates
    # ------------------------------------------------------------------

    def upsert(self, collection, record, actor=None, touch=True):
        """Insert or replace a record by id. Stamps lastModifiedAt unless touch=False."""
        if not isinstance(record, dict) or not record.get("id"):
            raise ValueError("record must be an object with an id")
        record = dict(record)
        if touch:
            record[TIMESTAMP_FIELD] = now_ms(self._now())
        with self._lock:
            snapshot = self._snapshot.with_record(collection, record, update=self._update(actor))
        return self._commit(snapshot)

    def remove(self, collection, record_id, actor=None):
        with self._lock:
            if self._snapshot.get(collection, record_id) is None:
                raise KeyError(f"{collection}/{record_id} not found")
            snapshot = self._snapshot.without_record(collection, record_id, update=self._update(actor))
        return self._commit(snapshot)

    def set_extra(self, key, value, actor=None):
        with self._lock:
            snapshot = self._snapshot.with_extra(key, value, update=self._update(actor))
        return self._commit(snapshot)

    def replace(self, snapshot, notify=True):
        """Swap in a whole snapshot (restore, import). notify=False for the startup restore."""
        if not isinstance(snapshot, Snapshot):
            raise TypeError(f"expected Snapshot, got {type(snapshot).__name__}")
        return self._commit(snapshot, notify=notify)
