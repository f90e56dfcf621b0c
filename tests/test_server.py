"""
Tests for the HTTP and WebSocket transport.
"""

import pytest
from aiohttp import WSMsgType, test_utils

from tubefetch.models.config import ExtractionOptions
from tubefetch.web.server import create_app


@pytest.fixture
async def client(engine):
    server = test_utils.TestServer(create_app(engine))
    async with test_utils.TestClient(server) as client:
        yield client


class TestHttpRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        body = await resp.json()
        assert body["status"] == "ok"

    @pytest.mark.asyncio
    async def test_preflight(self, client):
        resp = await client.options("/api/v1/download")
        assert resp.status == 204
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"url": ""},
            {"url": "ftp://example.com/a"},
            {"urls": []},
            {"url": "https://example.com/ok", "format": "flac"},
        ],
    )
    async def test_rejects_bad_requests(self, client, body):
        resp = await client.post("/api/v1/download", json=body)
        assert resp.status == 400
        assert "error" in await resp.json()

    @pytest.mark.asyncio
    async def test_rejects_non_json_body(self, client):
        resp = await client.post("/api/v1/download", data="not json")
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_single_download_and_retrieval(self, client):
        resp = await client.post(
            "/api/v1/download",
            json={"url": "https://example.com/ok?title=Song", "quality": "320"},
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["format"] == "audio"
        assert body["fileName"].startswith("Song [")
        assert body["sessionId"] == body["id"]

        file_resp = await client.get(body["downloadUrl"])
        assert file_resp.status == 200
        payload = await file_resp.read()
        assert payload.startswith(b"fake media payload")

        ranged = await client.get(body["downloadUrl"], headers={"Range": "bytes=0-3"})
        assert ranged.status == 206
        assert await ranged.read() == b"fake"

    @pytest.mark.asyncio
    async def test_single_download_failure(self, client):
        resp = await client.post("/api/v1/download", json={"url": "https://example.com/fail"})
        assert resp.status == 500
        body = await resp.json()
        assert body["errorCode"] == "tool_exit"
        assert body["details"]["url"] == "https://example.com/fail"

    @pytest.mark.asyncio
    async def test_legacy_route_forces_audio(self, client):
        resp = await client.post(
            "/api/download", json={"url": "https://example.com/ok", "format": "video"}
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["format"] == "audio"
        assert body["fileName"].endswith(".mp3")

    @pytest.mark.asyncio
    async def test_playlist_returns_session(self, client, engine):
        resp = await client.post(
            "/api/v1/download",
            json={"url": "https://example.com/playlist?list=PL1&items=ok"},
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["type"] == "playlist"
        assert body["sessionId"].startswith("session_")
        assert f"sessionId={body['sessionId']}" in body["message"]

    @pytest.mark.asyncio
    async def test_cancel_route(self, client, engine, wait_until):
        resp = await client.post("/api/v1/sessions/session_abc/cancel")
        assert resp.status == 202
        assert await resp.json() == {"sessionId": "session_abc", "status": "cancelling"}
        await wait_until(lambda: engine.registry.is_cancelled("session_abc"))

    @pytest.mark.asyncio
    async def test_missing_artifact(self, client):
        resp = await client.get("/downloads/missing.mp3")
        assert resp.status == 404
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.asyncio
    async def test_traversal_is_rejected(self, client, engine):
        (engine.config.download_path.parent / "secret.txt").write_text("nope")
        resp = await client.get("/downloads/..%2Fsecret.txt")
        assert resp.status == 404


class TestWebSocket:
    @pytest.mark.asyncio
    async def test_missing_session_id_closes_with_policy_violation(self, client):
        ws = await client.ws_connect("/ws")
        msg = await ws.receive()
        assert msg.type == WSMsgType.CLOSE
        assert msg.data == 1008

    @pytest.mark.asyncio
    async def test_welcome_and_client_cancel(self, client, engine):
        ws = await client.ws_connect("/ws?sessionId=session_ws")
        welcome = await ws.receive_json(timeout=5)
        assert welcome["type"] == "connected"
        assert welcome["sessionId"] == "session_ws"

        await ws.send_json({"type": "cancel"})
        cancelled = await ws.receive_json(timeout=5)
        assert cancelled == {
            "type": "error",
            "sessionId": "session_ws",
            "error": "Download cancelled by user",
            "errorCode": "cancelled",
        }
        assert engine.registry.is_cancelled("session_ws")
        await ws.close()

    @pytest.mark.asyncio
    async def test_batch_progress_is_streamed(self, client, engine):
        # Subscribe first, then start the batch under the same session.
        session_id = engine.registry.create_session()
        ws = await client.ws_connect(f"/ws?sessionId={session_id}")
        await ws.receive_json(timeout=5)

        await engine.orchestrator.run_sources(
            ["https://example.com/ok?n=1"], session_id, ExtractionOptions()
        )
        kinds = []
        while not kinds or kinds[-1] != "complete":
            kinds.append((await ws.receive_json(timeout=5))["type"])
        assert kinds == ["start", "progress", "success", "complete"]
        await ws.close()

    @pytest.mark.asyncio
    async def test_disconnect_unsubscribes(self, client, engine, wait_until):
        ws = await client.ws_connect("/ws?sessionId=session_gone")
        await ws.receive_json(timeout=5)
        assert engine.channel.is_subscribed("session_gone")

        await ws.close()
        await wait_until(lambda: not engine.channel.is_subscribed("session_gone"))
