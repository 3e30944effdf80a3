"""Entity-level comparison of two snapshots.

compute_diff() only classifies and suggests; it never decides and never
touches its inputs. Top-level fields that are not collections (systemRules,
weeklySchedules, ...) are compared too, as the FIELDS pseudo-collection: one
entry per differing field, timed by each side's lastSaved.
"""

from collections import namedtuple

from hjx.snapshot import now_ms, record_timestamp

ONLY_FILE = "ONLY_FILE"
ONLY_CACHE = "ONLY_CACHE"
CONFLICT = "CONFLICT"

FILE = "file"
CACHE = "cache"

# Diff key for top-level fields; never a collection name in practice
FIELDS = "top-level fields"


DiffEntry = namedtuple(
    "DiffEntry",
    ["id", "status", "label", "file_record", "cache_record", "file_time", "cache_time", "suggested_winner"],
)


def _same(a, b):
    """Deep equality as JSON sees it: key order ignored, list order kept, true != 1."""
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_same(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(_same(x, y) for x, y in zip(a, b))
    if isinstance(a, (dict, list, tuple)) or isinstance(b, (dict, list, tuple)):
        return False
    return a == b


def records_equal(a, b):
    return _same(a, b)


def record_label(record, fallback):
    """What a person would call the record: its name, a vehicle's plate, else its id."""
    return str(record.get("name") or record.get("plateNumber") or fallback)


def suggest_winner(file_time, cache_time):
    """Side with the strictly newer lastModifiedAt. Missing is older than any time.

    Equal (or both missing) goes to the cache: the device's own copy is kept
    unless the file is provably newer.
    """
    if file_time is not None and (cache_time is None or file_time > cache_time):
        return FILE
    return CACHE


def _diff_collection(file_records, cache_records):
    file_by_id = {r["id"]: r for r in file_records}
    cache_by_id = {r["id"]: r for r in cache_records}
    ordered_ids = list(file_by_id) + [i for i in cache_by_id if i not in file_by_id]

    entries = []
    for record_id in ordered_ids:
        f = file_by_id.get(record_id)
        c = cache_by_id.get(record_id)
        if f is None:
            entries.append(DiffEntry(
                record_id, ONLY_CACHE, record_label(c, record_id),
                None, c, None, record_timestamp(c), CACHE,
            ))
        elif c is None:
            entries.append(DiffEntry(
                record_id, ONLY_FILE, record_label(f, record_id),
                f, None, record_timestamp(f), None, FILE,
            ))
        elif not records_equal(f, c):
            file_time, cache_time = record_timestamp(f), record_timestamp(c)
            entries.append(DiffEntry(
                record_id, CONFLICT, record_label(f, record_id),
                f, c, file_time, cache_time, suggest_winner(file_time, cache_time),
            ))
    return entries


def _saved_ms(snapshot):
    return now_ms(snapshot.last_saved_at) if snapshot.last_saved_at else None


def _diff_fields(file_snapshot, cache_snapshot):
    """Top-level fields as pseudo-records {"id": key, "value": ...}."""
    file_extras, cache_extras = file_snapshot.extras, cache_snapshot.extras
    file_time, cache_time = _saved_ms(file_snapshot), _saved_ms(cache_snapshot)
    keys = list(file_extras) + [k for k in cache_extras if k not in file_extras]

    entries = []
    for key in keys:
        f = {"id": key, "value": file_extras[key]} if key in file_extras else None
        c = {"id": key, "value": cache_extras[key]} if key in cache_extras else None
        if f is None:
            entries.append(DiffEntry(key, ONLY_CACHE, key, None, c, None, cache_time, CACHE))
        elif c is None:
            entries.append(DiffEntry(key, ONLY_FILE, key, f, None, file_time, None, FILE))
        elif not records_equal(f, c):
            entries.append(DiffEntry(
                key, CONFLICT, key, f, c, file_time, cache_time, suggest_winner(file_time, cache_time),
            ))
    return entries


def compute_diff(file_snapshot, cache_snapshot):
    """Compare every collection in either snapshot, then the top-level fields.

    Returns {collection: [DiffEntry, ...]}. Ids whose records are identical on
    both sides are left out; a collection without differences maps to [].
    Differing fields appear under FIELDS, which is absent when they all agree.
    """
    names = list(file_snapshot.names) + [n for n in cache_snapshot.names if n not in file_snapshot.names]
    diff = {
        name: _diff_collection(file_snapshot.records(name), cache_snapshot.records(name))
        for name in names
    }
    fields = _diff_fields(file_snapshot, cache_snapshot)
    if fields:
        diff[FIELDS] = fields
    return diff


def conflicts(diff):
    """Flatten to [(collection, entry)] for CONFLICT entries only."""
    return [(name, e) for name, entries in diff.items() for e in entries if e.status == CONFLICT]


def has_changes(diff):
    return any(diff.values())


def summarize(diff):
    counts = {ONLY_FILE: 0, ONLY_CACHE: 0, CONFLICT: 0}
    for entries in diff.values():
        for e in entries:
            counts[e.status] += 1
    return counts


