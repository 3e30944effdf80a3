"""External store gateway: db.json reads and writes that never raise."""

import json
from datetime import datetime, timezone

import pytest

from hjx.errors import ExportError
from hjx.gateway import ExternalStoreGateway
from hjx.snapshot import Snapshot
from hjx.storage import DENIED, GRANTED, READWRITE, DirectoryHandle
from hjx.storage.base import StorageHandle

SNAP = Snapshot({"projects": [{"id": "p1", "name": "Riverside"}]})


class StubHandle(StorageHandle):
    """Handle with scripted permission answers and optional I/O failures."""

    kind = "stub"

    def __init__(self, permission=GRANTED, fail_with=None):
        super().__init__(READWRITE)
        self.permission = permission
        self.fail_with = fail_with
        self.files = {}
        self.queries = 0

    def query_permission(self, mode):
        self.queries += 1
        return self.permission

    def _probe(self, mode):
        return True

    def read_text(self, name):
        if self.fail_with:
            raise self.fail_with
        if name not in self.files:
            raise FileNotFoundError(name)
        return self.files[name]

    def write_text(self, name, text):
        if self.fail_with:
            raise self.fail_with
        self.files[name] = text
        return name

    def to_dict(self):
        return {"kind": self.kind}

    @property
    def label(self):
        return "stub://"


def test_write_then_read(tmp_path):
    gateway = ExternalStoreGateway()
    handle = DirectoryHandle(tmp_path, granted=READWRITE)

    assert gateway.write(handle, SNAP) is True
    assert json.loads((tmp_path / "db.json").read_text())["projects"][0]["id"] == "p1"
    assert gateway.read(handle) == SNAP


def test_write_while_denied_is_a_silent_no_op():
    handle = StubHandle(permission=DENIED)
    assert ExternalStoreGateway().write(handle, SNAP) is False
    assert handle.files == {}


def test_write_rechecks_permission_every_time():
    handle = StubHandle()
    gateway = ExternalStoreGateway()
    gateway.write(handle, SNAP)
    gateway.write(handle, SNAP)
    assert handle.queries == 2


def test_write_failure_is_absorbed():
    handle = StubHandle(fail_with=OSError("No space left on device"))
    assert ExternalStoreGateway().write(handle, SNAP) is False


def test_read_missing_file_is_none(tmp_path):
    assert ExternalStoreGateway().read(DirectoryHandle(tmp_path, granted=READWRITE)) is None


def test_read_without_grant_is_none(tmp_path):
    (tmp_path / "db.json").write_text(json.dumps({"projects": []}))
    assert ExternalStoreGateway().read(DirectoryHandle(tmp_path)) is None


def test_read_malformed_is_none(tmp_path):
    (tmp_path / "db.json").write_text("{ half a document")
    assert ExternalStoreGateway().read(DirectoryHandle(tmp_path, granted=READWRITE)) is None


def test_read_with_invariant_violation_is_none(tmp_path):
    (tmp_path / "db.json").write_text(json.dumps({"projects": [{"id": "a"}, {"id": "a"}]}))
    assert ExternalStoreGateway().read(DirectoryHandle(tmp_path, granted=READWRITE)) is None


def test_read_io_error_is_none():
    assert ExternalStoreGateway().read(StubHandle(fail_with=PermissionError("revoked"))) is None


def test_request_permission_errors_read_as_denied():
    class Exploding(StubHandle):
        def request_permission(self, mode, prompt=None):
            raise RuntimeError("backend gone")

    assert ExternalStoreGateway().request_permission(Exploding(), READWRITE) == DENIED


def test_export_writes_timestamped_copy(tmp_path):
    moment = datetime(2025, 3, 1, 8, 30, 15, tzinfo=timezone.utc)
    location = ExternalStoreGateway().export(SNAP, DirectoryHandle(tmp_path, granted=READWRITE), moment)
    assert location.name == "db_2025-03-01T08-30-15.000Z.json"
    assert json.loads(location.read_text())["projects"] == [{"id": "p1", "name": "Riverside"}]


def test_export_failures_are_raised():
    with pytest.raises(ExportError, match="No write access"):
        ExternalStoreGateway().export(SNAP, StubHandle(permission=DENIED))
    with pytest.raises(ExportError, match="quota"):
        ExternalStoreGateway().export(SNAP, StubHandle(fail_with=OSError("quota exceeded")))
