"""Read and write db.json inside a user-authorized storage location.

Background paths (write, read) never raise: every failure degrades to "not
written" / "no data available" and is logged. The explicit export path raises
ExportError so the user who asked for it finds out.
"""

import logging

from hjx import document
from hjx.errors import ExportError, SnapshotError
from hjx.storage.base import READ, READWRITE, GRANTED, DENIED

logger = logging.getLogger(__name__)


class ExternalStoreGateway:

    def __init__(self, filename=document.DB_FILENAME):
        self.filename = filename

    def query_permission(self, handle, mode):
        return handle.query_permission(mode)

    def request_permission(self, handle, mode, prompt=None):
        """May suspend on the user. Backend errors read as DENIED."""
        try:
            return handle.request_permission(mode, prompt=prompt)
        except Exception as e:
            logger.error("Permission request for %s failed: %s", handle.label, e)
            return DENIED

    def write(self, handle, snapshot):
        """Overwrite db.json with snapshot. Returns True if written.

        Permission is re-checked here even if the caller just did.
        """
        status = handle.query_permission(READWRITE)
        if status != GRANTED:
            logger.debug("Skipping write to %s: permission %s", handle.label, status)
            return False
        try:
            handle.write_text(self.filename, document.dumps(snapshot))
        except Exception as e:
            logger.error("Writing %s to %s failed: %s", self.filename, handle.label, e)
            return False
        return True

    def read(self, handle):
        """Return the stored Snapshot, or None if missing, unauthorized or malformed."""
        status = handle.query_permission(READ)
        if status != GRANTED:
            logger.debug("Skipping read from %s: permission %s", handle.label, status)
            return None
        try:
            text = handle.read_text(self.filename)
        except FileNotFoundError:
            return None
        except Exception as e:
            logger.error("Reading %s from %s failed: %s", self.filename, handle.label, e)
            return None
        try:
            return document.loads(text)
        except SnapshotError as e:
            logger.warning("Ignoring malformed %s in %s: %s", self.filename, handle.label, e)
            return None

    def export(self, snapshot, handle, now=None):
        """Write a timestamped copy of snapshot. Returns where it went. Raises ExportError."""
        status = handle.query_permission(READWRITE)
        if status != GRANTED:
            raise ExportError(f"No write access to {handle.label} (permission: {status})")
        name = document.export_filename(now)
        try:
            return handle.write_text(name, document.dumps(snapshot))
        except Exception as e:
            raise ExportError(f"Export to {handle.label} failed: {e}") from e
