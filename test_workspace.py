"""Workspace: restore, reconcile, autosave flush, connect, import and export."""

import json
import shutil
from datetime import datetime, timezone

import pytest

from hjx import document
from hjx.cache import EXPORT_HANDLE_KEY, HANDLE_KEY, STATE_KEY
from hjx.diff import CONFLICT, FIELDS
from hjx.errors import DocumentError, ExportError, PermissionDenied
from hjx.scheduler import IDLE, PENDING
from hjx.snapshot import Snapshot
from hjx.storage import DirectoryHandle, READ, READWRITE
from hjx.workspace import Workspace


def _write_db(directory, snapshot):
    (directory / "db.json").write_text(document.dumps(snapshot), encoding="utf-8")


def _read_db(directory):
    return json.loads((directory / "db.json").read_text(encoding="utf-8"))


def _remember(cache, directory, granted=READWRITE):
    cache.put(HANDLE_KEY, DirectoryHandle(directory, granted=granted).to_dict())


def _cache_state(cache, snapshot):
    cache.put(STATE_KEY, document.to_document(snapshot))


@pytest.fixture
def shared(tmp_path):
    directory = tmp_path / "shared"
    directory.mkdir()
    return directory


# ── Restore ───────────────────────────────────────────────────────────────────

def test_first_run_starts_empty(workspace):
    result = workspace.restore()

    assert result.source == "empty"
    assert len(workspace.state.snapshot) == 0
    assert workspace.scheduler.state == IDLE


def test_restore_from_cache_only(workspace, cache):
    _cache_state(cache, Snapshot({"projects": [{"id": "p1", "name": "Riverside"}]}))

    result = workspace.restore()

    assert result.source == "cache"
    assert workspace.state.snapshot.ids("projects") == ["p1"]
    assert not workspace.scheduler.pending, "restoring is not a mutation"


def test_restore_from_external_only(workspace, cache, shared):
    _write_db(shared, Snapshot({"employees": [{"id": "e1"}]}))
    _remember(cache, shared)

    result = workspace.restore()

    assert result.source == "external"
    assert workspace.state.snapshot.ids("employees") == ["e1"]
    assert workspace.scheduler.pending, "cache gets a copy of what came from the file"


def test_restore_unions_disjoint_copies(workspace, cache, shared):
    _write_db(shared, Snapshot({"projects": [{"id": "from-file", "appointmentDate": "2025-06-01"}]}))
    _cache_state(cache, Snapshot({"projects": [{"id": "offline", "appointmentDate": "2025-04-01"}]}))
    _remember(cache, shared)

    result = workspace.restore()

    assert result.source == "merged"
    assert workspace.state.snapshot.ids("projects") == ["offline", "from-file"]
    assert workspace.scheduler.pending


def test_restore_of_identical_copies_schedules_nothing(workspace, cache, shared):
    snap = Snapshot({"projects": [{"id": "p1"}]})
    _write_db(shared, snap)
    _cache_state(cache, snap)
    _remember(cache, shared)

    assert workspace.restore().source == "merged"
    assert not workspace.scheduler.pending


def test_offline_edit_survives_restore(workspace, cache, shared):
    _write_db(shared, Snapshot({"projects": [{"id": "p1", "name": "old", "lastModifiedAt": 100}]}))
    _cache_state(cache, Snapshot({"projects": [{"id": "p1", "name": "edited offline", "lastModifiedAt": 200}]}))
    _remember(cache, shared)

    result = workspace.restore()

    assert workspace.state.snapshot.get("projects", "p1")["name"] == "edited offline"
    assert [e.id for e in result.diff["projects"]] == ["p1"]


def test_newer_file_edit_wins_restore(workspace, cache, shared):
    _write_db(shared, Snapshot({"projects": [{"id": "p1", "name": "other machine", "lastModifiedAt": 300}]}))
    _cache_state(cache, Snapshot({"projects": [{"id": "p1", "name": "stale", "lastModifiedAt": 200}]}))
    _remember(cache, shared)

    workspace.restore()

    assert workspace.state.snapshot.get("projects", "p1")["name"] == "other machine"


def test_newer_file_field_wins_restore_and_is_written_back(workspace, cache, shared):
    _write_db(shared, Snapshot(
        {"projects": []}, extras={"systemRules": {"v": 2}},
        last_saved_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
    ))
    _cache_state(cache, Snapshot(
        {"projects": []}, extras={"systemRules": {"v": 1}},
        last_saved_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    ))
    _remember(cache, shared)

    result = workspace.restore()
    workspace.scheduler.flush_now()

    assert [e.id for e in result.diff[FIELDS]] == ["systemRules"]
    assert workspace.state.snapshot.extras == {"systemRules": {"v": 2}}
    assert _read_db(shared)["systemRules"] == {"v": 2}
    assert cache.get(STATE_KEY)["systemRules"] == {"v": 2}


def test_offline_field_edit_survives_restore(workspace, cache, shared):
    _write_db(shared, Snapshot(
        extras={"systemRules": {"v": 1}}, last_saved_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    ))
    _cache_state(cache, Snapshot(
        extras={"systemRules": {"v": "offline"}}, last_saved_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
    ))
    _remember(cache, shared)

    workspace.restore()

    assert workspace.state.snapshot.extras == {"systemRules": {"v": "offline"}}


def test_field_set_over_empty_cached_list_is_saved(workspace, cache):
    cache.put(STATE_KEY, {"projects": [], "weeklySchedules": []})
    workspace.restore()

    week = [{"week": "2025-W10", "crew": ["Chen"]}]
    workspace.state.set_extra("weeklySchedules", week)
    workspace.scheduler.flush_now()

    assert cache.get(STATE_KEY)["weeklySchedules"] == week
    assert workspace.state.snapshot.names == ("projects",)


def test_restore_with_denied_handle_drops_it(workspace, cache, shared):
    _cache_state(cache, Snapshot({"projects": [{"id": "p1"}]}))
    _remember(cache, shared)
    shutil.rmtree(shared)

    result = workspace.restore()

    assert result.source == "cache"
    assert workspace.handle is None
    assert cache.get(HANDLE_KEY) is None


def test_restore_with_ungranted_handle_keeps_it(workspace, cache, shared):
    _write_db(shared, Snapshot({"projects": [{"id": "from-file"}]}))
    _cache_state(cache, Snapshot({"projects": [{"id": "p1"}]}))
    _remember(cache, shared, granted=None)

    result = workspace.restore()

    assert result.source == "cache"
    assert workspace.handle is not None
    assert cache.get(HANDLE_KEY) is not None


def test_restore_ignores_malformed_db(workspace, cache, shared):
    (shared / "db.json").write_text("{ broken")
    _cache_state(cache, Snapshot({"projects": [{"id": "p1"}]}))
    _remember(cache, shared)

    assert workspace.restore().source == "cache"


def test_restore_ignores_corrupt_cached_state(workspace, cache):
    cache.put(STATE_KEY, {"projects": [{"id": "a"}, {"id": "a"}]})
    assert workspace.restore().source == "empty"


def test_restore_discards_unreadable_handle(workspace, cache):
    cache.put(HANDLE_KEY, {"kind": "floppy"})
    workspace.restore()
    assert workspace.handle is None
    assert cache.get(HANDLE_KEY) is None


# ── Reconcile policies ────────────────────────────────────────────────────────

def _conflict_pair():
    file_snap = Snapshot({"projects": [{"id": "p1", "name": "file", "lastModifiedAt": 300}]})
    cache_snap = Snapshot({"projects": [{"id": "p1", "name": "cache", "lastModifiedAt": 200}]})
    return file_snap, cache_snap


@pytest.mark.parametrize("policy, expected", [
    ("newest", "file"),
    ("file", "file"),
    ("cache", "cache"),
    (lambda name, entry: "cache", "cache"),
])
def test_reconcile_policies(workspace, policy, expected):
    snapshot, diff = workspace.reconcile(*_conflict_pair(), policy=policy)
    assert snapshot.get("projects", "p1")["name"] == expected
    assert len(diff["projects"]) == 1


def test_reconcile_policy_from_config(cache, clock):
    ws = Workspace({"conflict_policy": "cache"}, cache=cache, clock=clock.datetime, timer_factory=clock.timer)
    snapshot, _ = ws.reconcile(*_conflict_pair())
    assert snapshot.get("projects", "p1")["name"] == "cache"


def test_reconcile_ask_uses_chooser(cache, clock):
    seen = []

    def chooser(diff):
        seen.append(diff)
        return {("projects", "p1"): "cache"}

    ws = Workspace(cache=cache, clock=clock.datetime, timer_factory=clock.timer, chooser=chooser)
    snapshot, _ = ws.reconcile(*_conflict_pair(), policy="ask")

    assert snapshot.get("projects", "p1")["name"] == "cache"
    assert len(seen) == 1


def test_reconcile_ask_without_answer_falls_back_to_newest(cache, clock):
    ws = Workspace(cache=cache, clock=clock.datetime, timer_factory=clock.timer, chooser=lambda diff: None)
    snapshot, _ = ws.reconcile(*_conflict_pair(), policy="ask")
    assert snapshot.get("projects", "p1")["name"] == "file"


def test_reconcile_rejects_unknown_policy(workspace):
    with pytest.raises(ValueError):
        workspace.reconcile(*_conflict_pair(), policy="coin-flip")


def test_reconcile_without_conflicts_does_not_consult_chooser(cache, clock):
    def chooser(diff):
        raise AssertionError("no conflicts to ask about")

    ws = Workspace(cache=cache, clock=clock.datetime, timer_factory=clock.timer, chooser=chooser)
    snapshot, _ = ws.reconcile(Snapshot({"projects": [{"id": "a"}]}), Snapshot({"projects": [{"id": "b"}]}), "ask")
    assert snapshot.ids("projects") == ["a", "b"]


# ── Autosave flush ────────────────────────────────────────────────────────────

def test_mutation_is_flushed_to_cache_and_file(workspace, cache, shared, clock):
    _remember(cache, shared)
    workspace.restore()

    workspace.state.upsert("projects", {"id": "p1", "name": "Riverside"}, actor="Lin")
    assert cache.get(STATE_KEY) is None

    clock.advance(0.5)

    cached = cache.get(STATE_KEY)
    assert cached["projects"][0]["name"] == "Riverside"
    assert cached["lastSaved"] == "2025-03-01T08:00:00.500Z"
    assert cached["lastUpdateInfo"]["name"] == "Lin"
    assert _read_db(shared) == cached
    assert cached["projects"][0]["lastModifiedAt"] == 1740816000000


def test_denied_storage_still_saves_to_cache(workspace, cache, shared, clock):
    _remember(cache, shared)
    workspace.restore()
    shutil.rmtree(shared)

    workspace.state.upsert("projects", {"id": "p1"})
    clock.advance(0.5)

    assert cache.get(STATE_KEY)["projects"] == [{"id": "p1", "lastModifiedAt": 1740816000000}]
    assert not shared.exists()
    assert workspace.handle is None
    assert cache.get(HANDLE_KEY) is None


def test_read_only_grant_skips_file_but_keeps_handle(workspace, cache, shared):
    _remember(cache, shared, granted=READ)
    workspace.restore()
    workspace.state.upsert("projects", {"id": "p1"})

    result = workspace.flush()

    assert result.cached is True
    assert result.external is False
    assert not (shared / "db.json").exists()
    assert workspace.handle is not None


def test_flush_without_storage(workspace, cache):
    workspace.restore()
    result = workspace.flush()
    assert result == (True, None)
    assert cache.get(STATE_KEY) is not None


def test_close_writes_pending_changes(workspace, cache):
    workspace.restore()
    workspace.state.upsert("projects", {"id": "p1"})

    workspace.close()

    assert cache.get(STATE_KEY)["projects"][0]["id"] == "p1"


# ── Connect / disconnect ──────────────────────────────────────────────────────

def test_connect_grants_remembers_and_writes(workspace, cache, shared):
    workspace.restore()
    workspace.state.upsert("projects", {"id": "p1"})

    diff = workspace.connect(DirectoryHandle(shared), prompt=lambda handle, mode: True)

    assert diff is None
    assert cache.get(HANDLE_KEY)["granted"] == READWRITE
    assert _read_db(shared)["projects"][0]["id"] == "p1"
    assert workspace.scheduler.state == IDLE


def test_connect_to_existing_file_reconciles(workspace, shared):
    _write_db(shared, Snapshot({"projects": [{"id": "other-machine"}]}))
    workspace.restore()
    workspace.state.upsert("projects", {"id": "here"})

    diff = workspace.connect(DirectoryHandle(shared), prompt=lambda handle, mode: True)

    assert {e.id for e in diff["projects"]} == {"other-machine", "here"}
    assert sorted(workspace.state.snapshot.ids("projects")) == ["here", "other-machine"]
    assert sorted(r["id"] for r in _read_db(shared)["projects"]) == ["here", "other-machine"]


def test_connect_refused(workspace, cache, shared):
    workspace.restore()
    with pytest.raises(PermissionDenied):
        workspace.connect(DirectoryHandle(shared), prompt=lambda handle, mode: False)
    assert workspace.handle is None
    assert cache.get(HANDLE_KEY) is None


def test_disconnect(workspace, cache, shared):
    _remember(cache, shared)
    workspace.restore()

    assert workspace.disconnect() is True
    assert workspace.handle is None
    assert cache.get(HANDLE_KEY) is None
    assert workspace.disconnect() is False


# ── Import / export ───────────────────────────────────────────────────────────

def test_import_replaces_state_and_schedules_save(workspace):
    workspace.restore()
    workspace.state.upsert("projects", {"id": "old"})

    workspace.import_text(json.dumps({"projects": [{"id": "new"}], "systemRules": {"a": 1}}))

    assert workspace.state.snapshot.ids("projects") == ["new"]
    assert workspace.state.snapshot.extras == {"systemRules": {"a": 1}}
    assert workspace.scheduler.state == PENDING


def test_rejected_import_leaves_state_alone(workspace, clock):
    workspace.restore()
    workspace.state.upsert("projects", {"id": "keep"})
    before = workspace.state.snapshot
    clock.advance(0.5)

    with pytest.raises(DocumentError):
        workspace.import_text(json.dumps({"employees": []}))

    assert workspace.state.snapshot is before
    assert workspace.scheduler.state == IDLE


def test_import_missing_file(workspace, tmp_path):
    with pytest.raises(DocumentError, match="Cannot read"):
        workspace.import_file(tmp_path / "nowhere.json")


def test_export_then_import_round_trip(workspace, tmp_path):
    workspace.restore()
    workspace.state.upsert("projects", {"id": "p1", "name": "河濱"}, actor="Lin")
    workspace.state.set_extra("systemRules", {"productionKeywords": ["防溢座"]})
    original = workspace.state.snapshot

    exports = tmp_path / "exports"
    exports.mkdir()
    location = workspace.export(exports)
    workspace.import_file(location)

    restored = workspace.state.snapshot
    assert location.name == "db_2025-03-01T08-00-00.000Z.json"
    assert restored.collections == original.collections
    assert restored.extras == original.extras
    assert restored.last_update == original.last_update


def test_export_without_destination(workspace):
    workspace.restore()
    with pytest.raises(ExportError):
        workspace.export()


def test_export_uses_remembered_target(workspace, cache, shared):
    workspace.restore()
    workspace.set_export_target(DirectoryHandle(shared), prompt=lambda handle, mode: True)

    location = workspace.export()

    assert location.parent == shared
    assert cache.get(EXPORT_HANDLE_KEY)["path"] == str(shared)


# ── Inspection ────────────────────────────────────────────────────────────────

def test_compare_reports_without_saving(workspace, cache, shared):
    _write_db(shared, Snapshot({"projects": [{"id": "p1", "v": 1}]}))
    _cache_state(cache, Snapshot({"projects": [{"id": "p1", "v": 2}]}))
    _remember(cache, shared)

    diff = workspace.compare()

    assert [e.status for e in diff["projects"]] == [CONFLICT]
    assert _read_db(shared)["projects"] == [{"id": "p1", "v": 1}]
    assert cache.get(STATE_KEY)["projects"] == [{"id": "p1", "v": 2}]


def test_status(workspace, cache, shared):
    _remember(cache, shared)
    workspace.restore()
    workspace.state.upsert("projects", {"id": "p1"})

    status = workspace.status()

    assert status["storage"] == str(shared)
    assert status["permission"] == "granted"
    assert status["autosave"] == PENDING
    assert status["collections"] == {"projects": 1}
