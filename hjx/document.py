"""The persisted document format.

db.json (and every export) is one JSON object: each collection flattened to a
top-level key, the non-collection fields alongside them, plus:

    lastSaved       ISO-8601 string (UTC, ms, Z suffix)
    lastUpdateInfo  {"name": str, "time": str}, omitted when unknown
"""

import json
from datetime import datetime, timezone

from hjx.errors import DocumentError, SnapshotError
from hjx.snapshot import Snapshot, UpdateInfo, format_time, parse_time

DB_FILENAME = "db.json"

LAST_SAVED = "lastSaved"
LAST_UPDATE_INFO = "lastUpdateInfo"
_META_KEYS = {LAST_SAVED, LAST_UPDATE_INFO}


def _is_collection(value):
    """A list of objects that all carry an id. Empty lists count."""
    if not isinstance(value, list):
        return False
    return all(isinstance(item, dict) and "id" in item for item in value)


def to_document(snapshot):
    doc = {}
    doc.update(snapshot.extras)
    doc.update(snapshot.collections)
    if snapshot.last_saved_at is not None:
        doc[LAST_SAVED] = format_time(snapshot.last_saved_at)
    if snapshot.last_update is not None:
        doc[LAST_UPDATE_INFO] = {
            "name": snapshot.last_update.actor_label,
            "time": snapshot.last_update.time,
        }
    return doc


def from_document(data):
    """Build a Snapshot from a parsed document. Raises DocumentError if malformed."""
    if not isinstance(data, dict):
        raise DocumentError(f"Expected a JSON object at top level, got {type(data).__name__}")

    collections = {}
    extras = {}
    for key, value in data.items():
        if key in _META_KEYS:
            continue
        if _is_collection(value):
            collections[key] = value
        else:
            extras[key] = value

    info = data.get(LAST_UPDATE_INFO)
    last_update = None
    if isinstance(info, dict) and info.get("name") is not None:
        last_update = UpdateInfo(str(info["name"]), str(info.get("time", "")))

    try:
        return Snapshot(
            collections=collections,
            extras=extras,
            last_saved_at=parse_time(data.get(LAST_SAVED)),
            last_update=last_update,
        )
    except SnapshotError as e:
        raise DocumentError(str(e)) from e


def dumps(snapshot):
    return json.dumps(to_document(snapshot), indent=2, ensure_ascii=False)


def loads(text):
    """Parse document text into a Snapshot. Raises DocumentError with a readable message."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DocumentError(f"Invalid JSON at line {e.lineno}, column {e.colno}: {e.msg}") from e
    return from_document(data)


def validate_import(data):
    """Minimal check before a document may replace the whole state."""
    if not isinstance(data, dict):
        raise DocumentError("Import file must contain a JSON object")
    if "projects" not in data:
        raise DocumentError("Import file has no 'projects' field; is this an hjx export?")
    if not isinstance(data["projects"], list):
        raise DocumentError(
            f"'projects' must be a list, got {type(data['projects']).__name__}"
        )


def parse_import(text):
    """Parse and validate an import document, returning the Snapshot it describes."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DocumentError(f"Import file is not valid JSON (line {e.lineno}): {e.msg}") from e
    validate_import(data)
    return from_document(data)


def export_filename(now=None):
    """db_<ISO-8601 with ':' replaced by '-'>.json"""
    now = now or datetime.now(timezone.utc)
    return f"db_{format_time(now).replace(':', '-')}.json"
