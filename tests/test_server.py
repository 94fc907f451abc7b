from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import SubprocessExitError
from agentrelay.engine.registry import SessionRegistry
from agentrelay.shared.services.transcript.reader import project_log_dir
from agentrelay.web.server import RelayServer
from conftest import FAKE_SESSION_ID, ScriptProvider


FIXTURES_DIR = Path(__file__).parent / "fixtures" / "transcripts"
BASIC_ID = "11111111-2222-3333-4444-555555555555"
COMPACTED_ID = "22222222-2222-3333-4444-555555555555"
SIDECHAIN_ID = "33333333-2222-3333-4444-555555555555"


def _make_server(
    tmp_path: Path,
    scenario: str = "complete",
    *,
    provider: ScriptProvider | None = None,
    registry: SessionRegistry | None = None,
) -> RelayServer:
    workspace = tmp_path / "workspace"
    (workspace / "app").mkdir(parents=True)
    (workspace / "other").mkdir()
    (workspace / ".hidden").mkdir()
    config = RelayConfig(
        cwd=str(workspace / "app"),
        projects_root=str(tmp_path / "projects"),
        workspace_root=str(workspace),
        exit_grace_seconds=0.5,
    )
    return RelayServer(config, provider=provider or ScriptProvider(scenario), registry=registry)


def _install(server: RelayServer, fixture: str, session_id: str) -> Path:
    log_dir = project_log_dir(server.cwd, Path(server._config.projects_root))
    log_dir.mkdir(parents=True, exist_ok=True)
    dst = log_dir / f"{session_id}.jsonl"
    dst.write_text((FIXTURES_DIR / fixture).read_text(encoding="utf-8"), encoding="utf-8")
    return dst


def _sse_payloads(body: str) -> list:
    out = []
    for block in body.split("\n\n"):
        if not block:
            continue
        assert block.startswith("data: ")
        data = block[len("data: "):]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


@pytest.mark.asyncio
async def test_health(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["ok"] is True
        assert data["cwd"] == server.cwd
        assert data["active_sessions"] == []
        assert data["provider_available"] is True
        assert resp.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_list_sessions_sorted_and_filtered(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    old = _install(server, "basic_session.jsonl", BASIC_ID)
    new = _install(server, "compacted_session.jsonl", COMPACTED_ID)
    _install(server, "sidechain_session.jsonl", SIDECHAIN_ID)
    os.utime(old, (1_700_000_000, 1_700_000_000))
    os.utime(new, (1_800_000_000, 1_800_000_000))

    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/sessions")
        assert resp.status == 200
        data = await resp.json()

    assert [s["sessionId"] for s in data["sessions"]] == [COMPACTED_ID, BASIC_ID]
    assert data["latestSessionId"] == COMPACTED_ID
    assert data["cwd"] == server.cwd
    first = data["sessions"][1]
    assert first["firstPrompt"] == "fix the bug"
    assert first["gitBranch"] == "main"
    assert first["created"] == "2026-02-18T10:00:00.000Z"


@pytest.mark.asyncio
async def test_list_sessions_empty(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        data = await (await client.get("/api/sessions")).json()
    assert data["sessions"] == []
    assert data["latestSessionId"] is None


@pytest.mark.asyncio
async def test_history(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    _install(server, "basic_session.jsonl", BASIC_ID)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get(f"/api/sessions/{BASIC_ID}/history")
        data = await resp.json()

    assert data["sessionId"] == BASIC_ID
    assert data["isCompacted"] is False
    assert data["firstPrompt"] == "fix the bug"
    assert [m["type"] for m in data["messages"]] == ["user", "assistant", "tools", "assistant"]
    assert data["messages"][2]["tools"][0] == {
        "toolUseId": "t1",
        "name": "Read",
        "input": {"file_path": "a.py"},
        "status": "complete",
    }


@pytest.mark.asyncio
async def test_history_for_compacted_and_missing_sessions(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    _install(server, "compacted_session.jsonl", COMPACTED_ID)
    async with TestClient(TestServer(server.app)) as client:
        compacted = await (await client.get(f"/api/sessions/{COMPACTED_ID}/history")).json()
        missing = await (await client.get("/api/sessions/does-not-exist/history")).json()

    assert compacted["isCompacted"] is True
    assert [m["content"] for m in compacted["messages"]] == ["C", "D"]
    assert missing["messages"] == []
    assert missing["firstPrompt"] is None


@pytest.mark.asyncio
async def test_invalid_session_id_is_rejected(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/sessions/..%5Csecret/history")
        assert resp.status == 400
        resp = await client.post("/api/sessions/a..b/messages", json={"message": "hi"})
        assert resp.status == 400


@pytest.mark.asyncio
async def test_delete_session(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    path = _install(server, "basic_session.jsonl", BASIC_ID)
    async with TestClient(TestServer(server.app)) as client:
        first = await (await client.delete(f"/api/sessions/{BASIC_ID}")).json()
        second = await (await client.delete(f"/api/sessions/{BASIC_ID}")).json()

    assert first == {"ok": True, "deleted": True}
    assert second == {"ok": True, "deleted": False}
    assert not path.exists()


@pytest.mark.asyncio
async def test_send_message_streams_sse(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/sessions/new/messages", json={"message": "hello"})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        payloads = _sse_payloads(await resp.text())

    assert [p["type"] for p in payloads[:-1]] == ["system", "assistant", "user", "result"]
    assert payloads[0]["session_id"] == FAKE_SESSION_ID
    assert payloads[-1] == "[DONE]"
    assert server.registry.active_ids() == []


@pytest.mark.asyncio
async def test_send_message_failure_ends_with_error_frame(tmp_path: Path) -> None:
    server = _make_server(tmp_path, scenario="fail")
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post(f"/api/sessions/{FAKE_SESSION_ID}/messages", json={"message": "hi"})
        payloads = _sse_payloads(await resp.text())

    assert payloads[-2]["type"] == "error"
    assert payloads[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_send_message_validates_body(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        bad_json = await client.post(
            "/api/sessions/new/messages",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert bad_json.status == 400
        empty = await client.post("/api/sessions/new/messages", json={"message": ""})
        assert empty.status == 400
        bad_images = await client.post("/api/sessions/new/messages", json={"message": "x", "images": [1]})
        assert bad_images.status == 400


@pytest.mark.asyncio
async def test_status_cancel_and_busy(tmp_path: Path) -> None:
    server = _make_server(tmp_path, scenario="hang")
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post(f"/api/sessions/{FAKE_SESSION_ID}/messages", json={"message": "wait"})
        assert resp.status == 200
        first = await resp.content.readline()
        assert json.loads(first[len(b"data: "):])["type"] == "system"

        status = await (await client.get(f"/api/sessions/{FAKE_SESSION_ID}/status")).json()
        assert status["busy"] is True
        assert status["state"] == "streaming"
        assert status["messages"][0] == {"type": "user", "id": "entry-0", "content": "wait"}

        busy = await client.post(f"/api/sessions/{FAKE_SESSION_ID}/messages", json={"message": "again"})
        assert busy.status == 409

        cancel = await (await client.post(f"/api/sessions/{FAKE_SESSION_ID}/cancel")).json()
        assert cancel == {"cancelled": True}
        status = await (await client.get(f"/api/sessions/{FAKE_SESSION_ID}/status")).json()
        assert status == {"busy": False}

        rest = await resp.read()
        assert rest.endswith(b"data: [DONE]\n\n")

        again = await (await client.post(f"/api/sessions/{FAKE_SESSION_ID}/cancel")).json()
        assert again == {"cancelled": False}


@pytest.mark.asyncio
async def test_compact(tmp_path: Path) -> None:
    provider = ScriptProvider("complete")
    server = _make_server(tmp_path, provider=provider)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post(f"/api/sessions/{BASIC_ID}/compact")
        assert resp.status == 200
        assert await resp.json() == {"ok": True}
    assert provider.compacted == [BASIC_ID]


@pytest.mark.asyncio
async def test_compact_failure(tmp_path: Path) -> None:
    class FailingProvider(ScriptProvider):
        async def compact_session(self, session_id: str, *, cwd: str) -> None:
            raise SubprocessExitError(1, "no conversation found")

    server = _make_server(tmp_path, provider=FailingProvider("complete"))
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post(f"/api/sessions/{BASIC_ID}/compact")
        assert resp.status == 500
        assert "no conversation found" in (await resp.json())["error"]


@pytest.mark.asyncio
async def test_projects_list_and_switch(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        data = await (await client.get("/api/projects")).json()
        assert data == {"projects": ["app", "other"], "currentProject": "app"}

        resp = await client.post("/api/projects/switch", json={"project": "other"})
        assert resp.status == 200
        assert server.cwd == str(tmp_path / "workspace" / "other")

        missing = await client.post("/api/projects/switch", json={"project": "nope"})
        assert missing.status == 404
        escape = await client.post("/api/projects/switch", json={"project": "../workspace"})
        assert escape.status == 400
        assert server.cwd == str(tmp_path / "workspace" / "other")

        data = await (await client.get("/api/projects")).json()
        assert data["currentProject"] == "other"


@pytest.mark.asyncio
async def test_preflight(tmp_path: Path) -> None:
    server = _make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.options("/api/sessions")
        assert resp.status == 200
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]


@pytest.mark.asyncio
async def test_independent_servers_have_separate_registries(tmp_path: Path) -> None:
    a = _make_server(tmp_path / "a")
    b = _make_server(tmp_path / "b", registry=SessionRegistry())
    assert a.registry is not b.registry
