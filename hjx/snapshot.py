"""Immutable snapshot of the whole application state.

A snapshot holds every id-keyed entity collection (projects, employees,
suppliers, purchaseOrders, ...) plus the top-level fields that are not
collections ("extras", e.g. systemRules). Records are deep-copied on the way in
and on the way out, so nothing that receives a snapshot can change it.
"""

import copy
from collections import namedtuple
from datetime import datetime, timezone

from hjx.errors import SnapshotError

TIMESTAMP_FIELD = "lastModifiedAt"

UpdateInfo = namedtuple("UpdateInfo", ["actor_label", "time"])


def record_timestamp(record):
    """Return the record's lastModifiedAt as a number, or None when it has none."""
    value = record.get(TIMESTAMP_FIELD)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def now_ms(now=None):
    """Epoch milliseconds, the unit lastModifiedAt is stored in."""
    now = now or datetime.now(timezone.utc)
    return int(now.timestamp() * 1000)


def update_info(actor_label, now=None):
    """Who changed the data last, and when (lastUpdateInfo)."""
    now = now or datetime.now(timezone.utc)
    return UpdateInfo(actor_label, format_time(now))


def _freeze_record(name, record):
    if not isinstance(record, dict):
        raise SnapshotError(f"{name}: records must be objects, got {type(record).__name__}")
    record_id = record.get("id")
    if not isinstance(record_id, str) or not record_id:
        raise SnapshotError(f"{name}: record without a string id: {record!r:.80}")
    return copy.deepcopy(record)


def _check_name(name):
    if not isinstance(name, str) or not name:
        raise SnapshotError(f"Collection name must be a non-empty string, got {name!r}")


def _validate_collection(name, records):
    _check_name(name)
    seen = set()
    result = []
    for record in records:
        frozen = _freeze_record(name, record)
        if frozen["id"] in seen:
            raise SnapshotError(f"{name}: duplicate id {frozen['id']!r}")
        seen.add(frozen["id"])
        result.append(frozen)
    return tuple(result)


class Snapshot:
    """The full application state at one instant. Never mutated after construction.

    A top-level name is either a collection or an extra, never both.
    """

    __slots__ = ("_collections", "_extras", "last_saved_at", "last_update")

    def __init__(self, collections=None, last_saved_at=None, last_update=None, extras=None):
        frozen = {}
        for name, records in (collections or {}).items():
            frozen[name] = _validate_collection(name, records)
        extras = copy.deepcopy(dict(extras or {}))
        for key in extras:
            if key in frozen:
                raise SnapshotError(f"{key!r} is both a collection and a top-level field")
        if last_update is not None and not isinstance(last_update, UpdateInfo):
            last_update = UpdateInfo(*last_update)
        object.__setattr__(self, "_collections", frozen)
        object.__setattr__(self, "_extras", extras)
        object.__setattr__(self, "last_saved_at", last_saved_at)
        object.__setattr__(self, "last_update", last_update)

    def __setattr__(self, name, value):
        raise AttributeError("Snapshot is immutable")

    @classmethod
    def empty(cls):
        return cls()

    # ------------------------------------------------------------------
    # Read access (always copies)
    # ------------------------------------------------------------------

    @property
    def names(self):
        return tuple(self._collections)

    @property
    def collections(self):
        """Collection name -> list of records. A fresh copy on every access."""
        return {name: self.records(name) for name in self._collections}

    @property
    def extras(self):
        return copy.deepcopy(self._extras)

    def records(self, name):
        return [copy.deepcopy(r) for r in self._collections.get(name, ())]

    def ids(self, name):
        return [r["id"] for r in self._collections.get(name, ())]

    def get(self, name, record_id):
        for record in self._collections.get(name, ()):
            if record["id"] == record_id:
                return copy.deepcopy(record)
        return None

    def __len__(self):
        return sum(len(records) for records in self._collections.values())

    # ------------------------------------------------------------------
    # Derivation (always returns a new snapshot)
    # ------------------------------------------------------------------

    def _derive(self, collections=None, extras=None, last_saved_at=None, last_update=None):
        """A sibling built from parts that are already frozen. Nothing is re-validated or copied."""
        derived = object.__new__(Snapshot)
        object.__setattr__(derived, "_collections", self._collections if collections is None else collections)
        object.__setattr__(derived, "_extras", self._extras if extras is None else extras)
        object.__setattr__(derived, "last_saved_at", last_saved_at or self.last_saved_at)
        object.__setattr__(derived, "last_update", last_update or self.last_update)
        return derived

    def with_record(self, name, record, update=None):
        """Insert or replace (by id) one record, keeping its position if it exists.

        update: optional UpdateInfo to set in the same step.
        """
        _check_name(name)
        if name in self._extras:
            raise SnapshotError(f"{name!r} is a top-level field, not a collection")
        frozen = _freeze_record(name, record)
        records = list(self._collections.get(name, ()))
        for i, existing in enumerate(records):
            if existing["id"] == frozen["id"]:
                records[i] = frozen
                break
        else:
            records.append(frozen)
        return self._derive(collections={**self._collections, name: tuple(records)}, last_update=update)

    def without_record(self, name, record_id, update=None):
        if name not in self._collections:
            return self._derive(last_update=update)
        records = tuple(r for r in self._collections[name] if r["id"] != record_id)
        return self._derive(collections={**self._collections, name: records}, last_update=update)

    def with_collection(self, name, records):
        """Replace a whole collection. A top-level field of the same name is dropped."""
        frozen = _validate_collection(name, records)
        extras = self._extras
        if name in extras:
            extras = {k: v for k, v in extras.items() if k != name}
        return self._derive(collections={**self._collections, name: frozen}, extras=extras)

    def with_extra(self, key, value, update=None):
        """Set a top-level field. A collection of the same name is dropped."""
        _check_name(key)
        collections = self._collections
        if key in collections:
            collections = {k: v for k, v in collections.items() if k != key}
        return self._derive(
            collections=collections,
            extras={**self._extras, key: copy.deepcopy(value)},
            last_update=update,
        )

    def with_update(self, actor_label, now=None):
        return self._derive(last_update=update_info(actor_label, now))

    def stamped(self, now=None):
        """A copy whose last_saved_at is now, truncated to what the document keeps (ms)."""
        now = now or datetime.now(timezone.utc)
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        return self._derive(last_saved_at=now)

    # ------------------------------------------------------------------

    def __eq__(self, other):
        if not isinstance(other, Snapshot):
            return NotImplemented
        return (
            self._collections == other._collections
            and self._extras == other._extras
            and self.last_saved_at == other.last_saved_at
            and self.last_update == other.last_update
        )

    __hash__ = None

    def __repr__(self):
        sizes = ", ".join(f"{n}={len(r)}" for n, r in self._collections.items())
        return f"Snapshot({sizes}, last_saved_at={self.last_saved_at!r})"


def format_time(moment):
    """ISO-8601 in UTC with millisecond precision and a Z suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_time(text):
    """Inverse of format_time. Also accepts any ISO-8601 string Python understands."""
    if not isinstance(text, str) or not text:
        return None
    try:
        moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment
