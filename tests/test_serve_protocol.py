import asyncio
import re
import time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from spacerelay.cli.serve import _create_app
from spacerelay.leaderboard import LeaderboardStore, sign_submission
from spacerelay.streaming import (
    ConnectionRegistry,
    KeyRing,
    ResolvedSource,
    SessionHistory,
    SourceResolutionError,
    StreamSupervisor,
    TranslationFan,
)

NOW = 10_000.0


class _FakeResolver:
    def __init__(self):
        self.calls = []

    async def resolve(self, url):
        self.calls.append(url)
        if "invalid" in url:
            raise SourceResolutionError("unsupported url")
        return ResolvedSource(stream_url=f"media://{url}", title="Friday Space")


class _FakeProcess:
    def __init__(self, data):
        self.stdout = asyncio.StreamReader()
        self.stdout.feed_data(data)
        self.returncode = None

    def kill(self):
        self.returncode = -9
        self.stdout.feed_eof()

    async def wait(self):
        return self.returncode


class _FakeDecoder:
    chunk_bytes = 4096

    async def spawn(self, stream_url):
        return _FakeProcess(b"\x01\x00" * 160)

    async def terminate(self, process):
        if process.returncode is None:
            process.kill()


class _FakeTranscriber:
    async def transcribe(self, wav, *, language=None):
        return "hello world"


class _FakeChatClient:
    def chat(self, messages, *, model, api_key, temperature, max_tokens):
        target = re.search(r" to (.+?)\. Output", messages[0]["content"]).group(1)
        return f"[{target}] {messages[1]['content']}"


def _make_app(admin_key=""):
    history = SessionHistory()
    registry = ConnectionRegistry(history, passthrough_language="English")
    fan = TranslationFan(_FakeChatClient(), KeyRing(["k"]), passthrough_language="English", rate_limit_backoff_sec=0.0)
    resolver = _FakeResolver()
    supervisor = StreamSupervisor(
        registry,
        history,
        resolver,
        _FakeDecoder(),
        _FakeTranscriber(),
        fan,
        segment_seconds=0.01,
        queue_poll_sec=0.01,
    )
    leaderboard = LeaderboardStore(admin_key="board-key", clock=lambda: NOW)
    app = _create_app(SimpleNamespace(admin_key=admin_key), supervisor, leaderboard)
    return app, supervisor, resolver


def _receive_until(ws, predicate, max_steps=20):
    seen = []
    for _ in range(max_steps):
        msg = ws.receive_json()
        if predicate(msg):
            return msg
        seen.append(msg)
    pytest.fail(f"expected message not received, seen={seen}")


def _join(ws, language):
    ws.send_json({"action": "join", "target_language": language})
    stats = ws.receive_json()
    history = ws.receive_json()
    meta = ws.receive_json()
    return stats, history, meta


def test_join_receives_stats_history_and_blank_title():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            stats, history, meta = _join(ws, "French")
            assert stats == {"type": "stats", "data": {"total": 1, "breakdown": {"French": 1}}}
            assert history == {"type": "history", "data": []}
            assert meta == {"type": "meta", "title": ""}


def test_stream_request_broadcasts_title_and_translated_item():
    app, supervisor, resolver = _make_app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            _join(ws, "French")
            ws.send_json({"action": "stream", "url": "https://x.com/i/spaces/1abc", "src_code": "en"})
            meta = _receive_until(ws, lambda m: m.get("type") == "meta")
            assert meta["title"] == "Friday Space"
            live = _receive_until(ws, lambda m: "transcript" in m)
            assert live["transcript"] == "[French] hello world"
            assert live["is_user"] is False
            assert isinstance(live["timestamp"], float)
    assert resolver.calls == ["https://x.com/i/spaces/1abc"]
    assert supervisor.state.value == "idle"


def test_late_joiner_gets_history_and_current_title():
    app, supervisor, _ = _make_app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            _join(ws, "English")
            ws.send_json({"action": "stream", "url": "https://x.com/i/spaces/1abc"})
            _receive_until(ws, lambda m: "transcript" in m)

            with client.websocket_connect("/ws") as late:
                stats, history, meta = _join(late, "English")
                assert stats["data"] == {"total": 2, "breakdown": {"English": 2}}
                assert [i["transcript"] for i in history["data"]] == ["hello world"]
                assert meta == {"type": "meta", "title": "Friday Space"}

            with client.websocket_connect("/ws") as other:
                _, history, _ = _join(other, "Spanish")
                assert history == {"type": "history", "data": []}


def test_invalid_source_broadcasts_error_title():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            _join(ws, "English")
            ws.send_json({"action": "stream", "url": "https://example.com/invalid"})
            meta = _receive_until(ws, lambda m: m.get("type") == "meta")
            assert meta["title"] == "ERROR: INVALID SOURCE"


def test_stream_control_requires_admin_key_when_configured():
    app, _, resolver = _make_app(admin_key="ops-key")
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "stream", "url": "https://x.com/i/spaces/1abc"})
            assert ws.receive_json() == {"error": "forbidden", "fatal": False}
            ws.send_json({"action": "stop", "key": "nope"})
            assert ws.receive_json() == {"error": "forbidden", "fatal": False}
            ws.send_json({"action": "stream", "url": "https://x.com/i/spaces/1abc", "key": "ops-key"})
            ws.send_json({"action": "ping"})
            _receive_until(ws, lambda m: m.get("type") == "pong")
    assert resolver.calls == ["https://x.com/i/spaces/1abc"]


def test_stream_without_url_is_rejected():
    app, _, resolver = _make_app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "stream"})
            assert ws.receive_json() == {"error": "missing url", "fatal": False}
    assert resolver.calls == []


def test_invalid_json_and_unknown_action_are_not_fatal():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{")
            err = ws.receive_json()
            assert err["fatal"] is False
            assert err["error"].startswith("invalid json")
            ws.send_text("[]")
            assert "object" in ws.receive_json()["error"]
            ws.send_json({"action": "dance"})
            assert ws.receive_json() == {"error": "unknown action", "fatal": False}
            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"type": "pong"}


def test_disconnect_removes_listener():
    app, supervisor, _ = _make_app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            _join(ws, "French")
            assert len(supervisor.registry) == 1
        deadline = time.monotonic() + 2.0
        while len(supervisor.registry) and time.monotonic() < deadline:
            time.sleep(0.01)
        assert len(supervisor.registry) == 0


def test_status_endpoint():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        resp = client.get("/api/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["stream"]["state"] == "idle"
        assert body["listeners"] == {"total": 0, "breakdown": {}}
        assert body["passthrough_language"] == "English"


def test_scores_submit_list_and_clear():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        assert client.get("/scores").json() == []

        ok = client.post(
            "/scores",
            json={"name": "AAA", "score": 500, "start_time": NOW - 30, "signature": sign_submission("AAA", 500)},
        )
        assert ok.json() == {"status": "ok"}

        bad = client.post(
            "/scores",
            json={"name": "AAA", "score": 501, "start_time": NOW - 30, "signature": sign_submission("AAA", 500)},
        )
        assert bad.json() == {"status": "rejected", "reason": "signature_mismatch"}

        rows = client.get("/scores", params={"limit": 5}).json()
        assert [(r["name"], r["score"]) for r in rows] == [("AAA", 500)]

        assert client.delete("/scores", params={"key": "wrong"}).status_code == 403
        assert client.delete("/scores", params={"key": "board-key"}).json() == {"status": "ok"}
        assert client.get("/scores").json() == []


def test_scores_malformed_body_is_rejected_not_422():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        missing = client.post("/scores", json={"name": "AAA"})
        assert missing.status_code == 200
        assert missing.json() == {"status": "rejected", "reason": "invalid_body"}

        wrong_type = client.post(
            "/scores",
            json={"name": "AAA", "score": "lots", "start_time": NOW, "signature": "1"},
        )
        assert wrong_type.json() == {"status": "rejected", "reason": "invalid_body"}

        not_json = client.post("/scores", content=b"{", headers={"Content-Type": "application/json"})
        assert not_json.json() == {"status": "rejected", "reason": "invalid_body"}
        assert client.get("/scores").json() == []


def test_other_validation_errors_keep_default_reply():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        assert client.get("/scores", params={"limit": "many"}).status_code == 422


def test_scores_handlers_run_off_the_event_loop():
    app, _, _ = _make_app()
    handlers = [r.endpoint for r in app.routes if getattr(r, "path", "") == "/scores"]
    assert len(handlers) == 3
    assert not any(asyncio.iscoroutinefunction(h) for h in handlers)


def test_cors_headers_present():
    app, _, _ = _make_app()
    with TestClient(app) as client:
        resp = client.get("/api/status", headers={"Origin": "https://listener.example"})
        assert resp.headers.get("access-control-allow-origin") == "*"
