"""Id-keyed merge of two snapshots.

merge_snapshots() is a union, not a reconciliation: for every collection it
seeds an id -> record map from base, then overlays incoming. When the same id
differs on both sides, incoming's version wins, always. That bias is
deliberate: the merge is meant for append-like unions (two copies that mostly
added records). Where real edit conflicts are possible, run compute_diff()
first and resolve with apply_resolution().

Top-level fields follow the same rule: incoming replaces base key by key.
"""

from hjx.diff import CONFLICT, FIELDS, FILE, CACHE
from hjx.snapshot import Snapshot


def merge_records(base, incoming):
    """Union of two record lists by id. Base order, then new incoming ids appended."""
    merged = {}
    for record in base:
        merged[record["id"]] = record
    for record in incoming:
        merged[record["id"]] = record
    return list(merged.values())


def project_schedule_key(project):
    """Projects run in appointment order; undated ones sort last."""
    return str(project.get("appointmentDate") or project.get("reportDate") or "9999-12-31")


# Ordering applied after merging on the reconciliation path
DEFAULT_ORDERING = {"projects": project_schedule_key}


def merge_snapshots(base, incoming, order_by=None):
    """Merge incoming into base, collection by collection. Returns a new Snapshot.

    order_by: optional {collection: key function}; listed collections are
    stably sorted after merging.

    A name that is a collection on one side and a top-level field on the
    other takes incoming's kind, except that an empty incoming list never
    replaces a field: an empty list does not say which kind it is.
    """
    order_by = order_by or {}
    base_extras, incoming_extras = base.extras, incoming.extras
    names = list(base.names) + [n for n in incoming.names if n not in base.names]

    collections = {}
    for name in names:
        if name in incoming_extras:
            continue
        if name in base_extras and not incoming.ids(name):
            continue
        records = merge_records(base.records(name), incoming.records(name))
        if name in order_by:
            records = sorted(records, key=order_by[name])
        collections[name] = records

    extras = {k: v for k, v in base_extras.items() if k not in collections}
    extras.update(incoming_extras)

    return Snapshot(
        collections=collections,
        extras=extras,
        last_saved_at=incoming.last_saved_at or base.last_saved_at,
        last_update=incoming.last_update or base.last_update,
    )


def apply_resolution(file_snapshot, cache_snapshot, diff, choose, order_by=None):
    """Resolve conflicts between file and cache one entity at a time.

    Everything that is not a conflict is unioned (cache over file). Then every
    CONFLICT entry whose chosen side is "file" gets the file record (or, under
    FIELDS, the file's value) put back.

    choose: callable(collection, entry) -> "file" | "cache"
    """
    merged = merge_snapshots(file_snapshot, cache_snapshot)
    for name, entries in diff.items():
        for entry in entries:
            if entry.status != CONFLICT:
                continue
            side = choose(name, entry)
            if side not in (FILE, CACHE):
                raise ValueError(f"Resolution for {name}/{entry.id} must be 'file' or 'cache', got {side!r}")
            if side != FILE:
                continue
            if name == FIELDS:
                merged = merged.with_extra(entry.id, entry.file_record["value"])
            else:
                merged = merged.with_record(name, entry.file_record)
    if order_by:
        for name, key in order_by.items():
            if name in merged.names:
                merged = merged.with_collection(name, sorted(merged.records(name), key=key))
    return merged


def choose_suggested(collection, entry):
    return entry.suggested_winner


def choose_side(side):
    """A chooser that always picks the same side."""
    def _choose(collection, entry):
        return side
    return _choose
