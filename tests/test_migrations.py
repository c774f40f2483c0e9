import sqlite3

import pytest

from syntaxaudio import db as db_module
from syntaxaudio.db import CURRENT_DB_VERSION, Database
from syntaxaudio.errors import SchemaUpgradeFailed
from syntaxaudio.store import TrackStore
from syntaxaudio.workspaces import WorkspaceRegistry


def _make_v1_database(path, rows):
    conn = sqlite3.connect(path)
    for statement in db_module.SCHEMA_V1:
        conn.execute(statement)
    conn.executemany(
        "INSERT INTO tracks (id, name, source, is_favorite, blob, remote_url) VALUES (?, ?, ?, ?, ?, ?)",
        rows,
    )
    conn.execute("PRAGMA user_version=1")
    conn.commit()
    conn.close()


def test_fresh_database_is_current(db):
    assert db.version() == CURRENT_DB_VERSION


def test_v1_database_upgrades_and_migrates_legacy_tracks(tmp_path):
    path = tmp_path / "legacy.db"
    _make_v1_database(path, [
        ("t1", "old song", "local", 0, b"abc", None),
        ("t2", "old episode", "rss", 1, None, "https://cdn.example/ep.mp3"),
    ])

    db = Database(path)
    assert db.version() == CURRENT_DB_VERSION

    store = TrackStore(db)
    tracks = store.load_all("default")
    assert {t.id for t in tracks} == {"t1", "t2"}
    assert all(t.workspace_id == "default" for t in tracks)

    # the migrated tracks have a workspace to belong to
    registry = WorkspaceRegistry(db, store)
    assert [(w.id, w.name) for w in registry.list()] == [("default", "main")]


def test_legacy_rows_are_migrated_once_and_never_duplicated(db, store, registry):
    conn = sqlite3.connect(db.path)
    conn.execute("INSERT INTO tracks (id, name, source) VALUES ('legacy', 'lost track', 'local')")
    conn.commit()
    conn.close()

    first = store.load_all("default")
    second = store.load_all("default")
    assert [t.id for t in first] == ["legacy"]
    assert [t.id for t in second] == ["legacy"]
    assert second[0].workspace_id == "default"

    with db.read() as c:
        assert c.execute("SELECT COUNT(*) FROM tracks").fetchone()[0] == 1
        assert c.execute("SELECT workspace_id FROM tracks WHERE id = 'legacy'").fetchone()[0] == "default"


def test_reopening_is_idempotent(tmp_path):
    path = tmp_path / "twice.db"
    _make_v1_database(path, [("t1", "song", "local", 0, b"x", None)])
    Database(path)
    db = Database(path)
    assert TrackStore(db).count("default") == 1


def test_failed_upgrade_rolls_back(tmp_path, monkeypatch):
    path = tmp_path / "broken.db"
    _make_v1_database(path, [("t1", "song", "local", 0, b"x", None)])

    broken_v3 = db_module.SCHEMA_V3 + ("ALTER TABLE no_such_table ADD COLUMN x TEXT",)
    monkeypatch.setitem(db_module._MIGRATIONS, 3, broken_v3)

    with pytest.raises(SchemaUpgradeFailed):
        Database(path)

    conn = sqlite3.connect(path)
    try:
        assert conn.execute("PRAGMA user_version").fetchone()[0] == 1
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert "workspaces" not in tables
    finally:
        conn.close()
