import pytest

from syntaxaudio.db import Database
from syntaxaudio.store import TrackStore
from syntaxaudio.workspaces import WorkspaceRegistry


@pytest.fixture(autouse=True)
def errors_log(tmp_path, monkeypatch):
    """Keep errors.log writes inside the test's tmp dir."""
    path = tmp_path / "output" / "errors.log"
    monkeypatch.setattr("syntaxaudio.errors.OUTPUT_DIR", path.parent)
    monkeypatch.setattr("syntaxaudio.errors.ERRORS_LOG", path)
    return path


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "test.db")


@pytest.fixture
def store(db):
    return TrackStore(db)


@pytest.fixture
def registry(db, store):
    return WorkspaceRegistry(db, store)
