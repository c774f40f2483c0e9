import pytest
from starlette.testclient import TestClient

from syntaxaudio.errors import FeedUnavailable
from syntaxaudio.web import server
from syntaxaudio.web.server import create_app, parse_range


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(tmp_path / "server.db")) as c:
        yield c


def _upload(client, name, data=b"0123456789", workspace_id="default"):
    r = client.post(
        f"/api/workspaces/{workspace_id}/tracks",
        params={"name": name},
        content=data,
        headers={"content-type": "audio/mpeg"},
    )
    assert r.status_code == 201, r.text
    return r.json()["track"]


def _next_event(ws, kind):
    """Skip unrelated broadcasts until ``kind`` arrives."""
    while True:
        msg = ws.receive_json()
        if msg["type"] == kind:
            return msg["data"]


# ── HTTP ─────────────────────────────────────────────────────────────────────

def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["checks"]["workspace"] == {"ok": True, "active": "default"}


def test_bootstrap_workspace_is_listed(client):
    body = client.get("/api/workspaces").json()
    assert body["active"] == "default"
    assert [(w["id"], w["name"], w["isActive"]) for w in body["workspaces"]] == [("default", "main", True)]


def test_create_and_delete_workspace(client):
    r = client.post("/api/workspaces", json={"name": "Late night", "playMode": "loop"})
    assert r.status_code == 201
    ws = r.json()["workspace"]
    assert ws["playMode"] == "loop"

    r = client.delete(f"/api/workspaces/{ws['id']}")
    assert r.status_code == 200
    assert r.json()["active"]["id"] == "default"
    assert [w["id"] for w in client.get("/api/workspaces").json()["workspaces"]] == ["default"]


def test_create_workspace_validation(client):
    assert client.post("/api/workspaces", json={"name": " "}).status_code == 400
    assert client.post("/api/workspaces", json={"name": "x", "playMode": "shuffle"}).status_code == 400
    assert client.post("/api/workspaces", content=b"not json").status_code == 400


def test_deleting_sole_workspace_conflicts(client):
    r = client.delete("/api/workspaces/default")
    assert r.status_code == 409
    assert r.json()["kind"] == "LastWorkspaceError"


def test_unknown_workspace_is_404(client):
    assert client.get("/api/workspaces/ghost/tracks").status_code == 404
    assert client.delete("/api/workspaces/ghost").status_code == 404
    assert client.put("/api/workspaces/active", json={"id": "ghost"}).status_code == 404


def test_upload_and_list(client):
    track = _upload(client, "song.mp3")
    assert track["source"] == "local"
    assert track["size"] == 10
    assert track["url"] == f"/api/tracks/{track['id']}/stream"

    tracks = client.get("/api/workspaces/default/tracks").json()["tracks"]
    assert [t["id"] for t in tracks] == [track["id"]]


def test_upload_requires_name_and_body(client):
    assert client.post("/api/workspaces/default/tracks", content=b"x").status_code == 400
    assert client.post("/api/workspaces/default/tracks", params={"name": "a"}, content=b"").status_code == 400


def test_upload_to_inactive_workspace(client):
    side = client.post("/api/workspaces", json={"name": "side"}).json()["workspace"]
    track = _upload(client, "b-side.mp3", workspace_id=side["id"])

    assert [t["id"] for t in client.get(f"/api/workspaces/{side['id']}/tracks").json()["tracks"]] == [track["id"]]
    assert client.get("/api/workspaces/default/tracks").json()["tracks"] == []


def test_switch_workspace(client):
    side = client.post("/api/workspaces", json={"name": "side"}).json()["workspace"]
    _upload(client, "b-side.mp3", workspace_id=side["id"])

    r = client.put("/api/workspaces/active", json={"id": side["id"]})
    assert r.json() == {"active": side["id"], "loaded": True}
    listing = client.get("/api/workspaces").json()
    assert listing["active"] == side["id"]
    assert {w["id"]: w["trackCount"] for w in listing["workspaces"]} == {"default": 0, side["id"]: 1}


def test_stream_full_and_ranged(client):
    track = _upload(client, "song.mp3", b"0123456789")
    url = f"/api/tracks/{track['id']}/stream"

    full = client.get(url)
    assert full.status_code == 200
    assert full.content == b"0123456789"
    assert full.headers["accept-ranges"] == "bytes"

    part = client.get(url, headers={"Range": "bytes=2-5"})
    assert part.status_code == 206
    assert part.content == b"2345"
    assert part.headers["content-range"] == "bytes 2-5/10"

    tail = client.get(url, headers={"Range": "bytes=-3"})
    assert tail.content == b"789"

    bad = client.get(url, headers={"Range": "bytes=20-"})
    assert bad.status_code == 416
    assert bad.headers["content-range"] == "bytes */10"


def test_stream_unknown_track(client):
    assert client.get("/api/tracks/nope/stream").status_code == 404


@pytest.mark.parametrize("header, expected", [
    ("bytes=0-0", (0, 0)),
    ("bytes=5-", (5, 9)),
    ("bytes=8-100", (8, 9)),
    ("bytes=-4", (6, 9)),
    ("bytes=-40", (0, 9)),
    ("bytes=10-", None),
    ("bytes=5-2", None),
    ("bytes=0-1,3-4", None),
    ("items=0-1", None),
    ("bytes=a-b", None),
])
def test_parse_range(header, expected):
    assert parse_range(header, 10) == expected


def test_feed_entries_import_dedupes_by_url(client):
    entries = [
        {"name": "Ep 1", "remoteUrl": "https://cdn.example/1.mp3"},
        {"name": "Ep 1 again", "remoteUrl": "https://cdn.example/1.mp3"},
        {"remoteUrl": "https://cdn.example/2.mp3"},
    ]
    added = client.post("/api/workspaces/default/feed", json={"entries": entries}).json()["added"]
    assert [(t["name"], t["source"]) for t in added] == [("Ep 1", "syndicated"), ("Unknown Track", "syndicated")]

    again = client.post("/api/workspaces/default/feed", json={"entries": entries}).json()["added"]
    assert again == []
    assert len(client.get("/api/workspaces/default/tracks").json()["tracks"]) == 2


def test_syndicated_stream_redirects(client):
    entries = [{"name": "Ep", "remoteUrl": "https://cdn.example/ep.mp3"}]
    (track,) = client.post("/api/workspaces/default/feed", json={"entries": entries}).json()["added"]
    r = client.get(f"/api/tracks/{track['id']}/stream", follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"] == "https://cdn.example/ep.mp3"


def test_feed_import_into_inactive_workspace_conflicts(client):
    side = client.post("/api/workspaces", json={"name": "side"}).json()["workspace"]
    r = client.post(f"/api/workspaces/{side['id']}/feed", json={"entries": [{"remoteUrl": "https://x/1.mp3"}]})
    assert r.status_code == 409


def test_feed_url_failure_is_502(client, monkeypatch, errors_log):
    async def unreachable(url):
        raise FeedUnavailable("connection refused")

    monkeypatch.setattr(server, "fetch_feed", unreachable)
    r = client.post("/api/workspaces/default/feed", json={"url": "https://feeds.example/x.xml"})
    assert r.status_code == 502
    assert "feed_import" in errors_log.read_text()


def test_favorite_and_delete(client):
    track = _upload(client, "song.mp3")
    url = f"/api/tracks/{track['id']}"

    assert client.patch(url, json={"isFavorite": True}).json()["track"]["isFavorite"] is True
    assert client.patch(url, json={}).json()["track"]["isFavorite"] is False
    assert client.patch(url, json={"isFavorite": "yes"}).status_code == 400

    assert client.delete(url).status_code == 200
    assert client.delete(url).status_code == 404
    assert client.get("/api/workspaces/default/tracks").json()["tracks"] == []


def test_clear_tracks(client):
    _upload(client, "a.mp3")
    _upload(client, "b.mp3")
    assert client.delete("/api/workspaces/default/tracks").json() == {"deleted": 2}
    assert client.get("/api/workspaces/default/tracks").json()["tracks"] == []


def test_set_play_mode(client):
    r = client.put("/api/workspaces/default/mode", json={"mode": "random"})
    assert r.json()["workspace"]["playMode"] == "random"
    assert client.put("/api/workspaces/default/mode", json={"mode": "nope"}).status_code == 400


# ── WebSocket ────────────────────────────────────────────────────────────────

def test_ws_initial_sync(client):
    track = _upload(client, "song.mp3")
    with client.websocket_connect("/ws") as ws:
        msg = ws.receive_json()
    assert msg["type"] == "sync"
    assert msg["data"]["workspace"]["id"] == "default"
    assert msg["data"]["loaded"] is True
    assert [t["id"] for t in msg["data"]["tracks"]] == [track["id"]]
    assert msg["data"]["playback"] == {"activeTrackId": None, "isPlaying": False, "positionSeconds": 0.0}


def test_ws_commands_reach_every_observer(client):
    _upload(client, "a.mp3")
    b = _upload(client, "b.mp3")

    with client.websocket_connect("/ws") as ws1, client.websocket_connect("/ws") as ws2:
        ws1.receive_json()
        ws2.receive_json()

        ws1.send_json({"type": "SELECT", "payload": {"trackId": b["id"]}})
        expected = {"activeTrackId": b["id"], "isPlaying": True, "positionSeconds": 0.0}
        assert _next_event(ws1, "playback_state") == expected
        assert _next_event(ws2, "playback_state") == expected

        ws1.send_json({"type": "PAUSE", "payload": {"position": 12.5}})
        expected = {"activeTrackId": b["id"], "isPlaying": False, "positionSeconds": 12.5}
        assert _next_event(ws1, "playback_state") == expected
        assert _next_event(ws2, "playback_state") == expected


def test_ws_rejected_command_is_reported_to_sender(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "PLAY"})
        error = _next_event(ws, "error")
        assert error["command"] == "PLAY"
        assert error["kind"] == "NoActiveTrack"

        ws.send_json({"type": "ping"})
        assert _next_event(ws, "pong") == {}


def test_ws_random_advance_never_repeats(client):
    a = _upload(client, "a.mp3")
    b = _upload(client, "b.mp3")
    client.put("/api/workspaces/default/mode", json={"mode": "random"})

    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["data"]["playMode"] == "random"
        ws.send_json({"type": "SELECT", "payload": {"trackId": a["id"]}})
        played = [_next_event(ws, "playback_state")["activeTrackId"]]
        for _ in range(5):
            ws.send_json({"type": "ADVANCE"})
            played.append(_next_event(ws, "playback_state")["activeTrackId"])

    assert b["id"] in played
    assert all(x != y for x, y in zip(played, played[1:]))


def test_ws_mode_change_is_persisted(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "MODE", "payload": {"mode": "loop"}})
        assert _next_event(ws, "play_mode") == {"mode": "loop"}

    (ws_info,) = client.get("/api/workspaces").json()["workspaces"]
    assert ws_info["playMode"] == "loop"


def test_ws_removing_active_track_goes_idle(client):
    a = _upload(client, "a.mp3")
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "SELECT", "payload": {"trackId": a["id"]}})
        _next_event(ws, "playback_state")

        client.delete(f"/api/tracks/{a['id']}")
        assert _next_event(ws, "tracks_updated")["tracks"] == []
        assert _next_event(ws, "playback_state")["activeTrackId"] is None


def test_ws_malformed_switch_payload_keeps_connection(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "switch_workspace", "payload": ["not", "an", "object"]})
        error = _next_event(ws, "error")
        assert error["command"] == "switch_workspace"
        assert error["kind"] == "InvalidCommand"

        ws.send_json({"type": "ping"})
        assert _next_event(ws, "pong") == {}
