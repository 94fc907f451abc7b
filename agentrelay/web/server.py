"""HTTP + SSE server for the session event engine.

Each message send is one streaming response that relays the agent
subprocess's events as server-sent events. History, status, cancel
and session management endpoints are plain JSON.

Usage:
    agentrelay [--port PORT] [--cwd DIR]
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import InvalidSessionId, RelayError
from agentrelay.engine.providers.base import AgentProvider
from agentrelay.engine.providers.claude_provider import ClaudeCliProvider
from agentrelay.engine.registry import SessionRegistry
from agentrelay.engine.relay import RelayRequest, RelayRun, resolve_session_id
from agentrelay.shared.models.timeline import timeline_to_dicts
from agentrelay.shared.services.transcript.reader import (
    delete_session,
    list_sessions,
    project_log_dir,
    read_session,
    transcript_path,
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

UNTITLED_SESSION = "Untitled session"


def _error(message: str, status: int = 500) -> web.Response:
    return web.json_response({"error": message}, status=status)


class RelayServer:
    """HTTP + SSE server wrapping the process relay and transcript reader.

    Thin adapter: live state lives in the SessionRegistry and RelayRun
    objects; durable state lives in the agent's transcript files. This
    class only handles HTTP routing and response framing.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        registry: SessionRegistry | None = None,
        provider: AgentProvider | None = None,
    ) -> None:
        self._config = config or RelayConfig.from_env()
        self._host = self._config.host
        self._port = self._config.port
        self._cwd = self._config.resolved_cwd
        self._projects_root = Path(self._config.projects_root).expanduser()
        self._workspace_root = Path(self._config.workspace_root).expanduser()
        self._registry = registry or SessionRegistry()
        self._provider = provider or ClaudeCliProvider(
            command=self._config.claude_command,
            permission_mode=self._config.permission_mode,
            append_system_prompt=self._config.append_system_prompt,
            include_partial_messages=self._config.include_partial_messages,
        )
        self._started_at = time.time()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._cors_middleware],
        )
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "RelayServer init host=%s port=%s cwd=%s projects_root=%s provider=%s pid=%s",
            self._host, self._port, self._cwd, self._projects_root,
            self._provider.name, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def cwd(self) -> str:
        return self._cwd

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        response = await handler(request)
        # Streaming responses send their headers before returning.
        if not response.prepared:
            response.headers.update(CORS_HEADERS)
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Sessions
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_delete("/api/sessions/{session_id}", self._handle_delete_session)
        r.add_get("/api/sessions/{session_id}/history", self._handle_history)
        r.add_get("/api/sessions/{session_id}/status", self._handle_status)
        r.add_post("/api/sessions/{session_id}/messages", self._handle_send_message)
        r.add_post("/api/sessions/{session_id}/cancel", self._handle_cancel)
        r.add_post("/api/sessions/{session_id}/compact", self._handle_compact)
        # Projects
        r.add_get("/api/projects", self._handle_list_projects)
        r.add_post("/api/projects/switch", self._handle_switch_project)
        # CORS preflight
        r.add_route("OPTIONS", "/api/{tail:.*}", self._handle_preflight)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(runner)
        if actual_port is None:
            raise RuntimeError("Server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentrelay listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(runner: web.AppRunner) -> int | None:
        for address in runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    async def _on_shutdown(self, app: web.Application) -> None:
        cancelled = self._registry.cancel_all()
        if cancelled:
            logger.info("Cancelled %d active session(s) on shutdown", cancelled)

    # ── Helpers ──

    def _log_dir(self, project_path: str | None = None) -> Path:
        return project_log_dir(project_path or self._cwd, self._projects_root)

    def _transcript(
        self,
        request: web.Request,
        project_path: str | None = None,
    ) -> tuple[Path | None, web.Response | None]:
        session_id = request.match_info["session_id"]
        try:
            path = transcript_path(session_id, project_path or self._cwd, self._projects_root)
        except InvalidSessionId as exc:
            return None, _error(str(exc), status=400)
        return path, None

    @staticmethod
    async def _read_json(request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None, _error("Invalid JSON body", status=400)
        if not isinstance(body, dict):
            return None, _error("JSON body must be an object", status=400)
        return body, None

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "cwd": self._cwd,
            "provider": self._provider.name,
            "provider_available": self._provider.is_available(),
            "active_sessions": self._registry.active_ids(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        summaries = await asyncio.to_thread(
            list_sessions, self._log_dir(), title_limit=self._config.title_limit,
        )
        visible = sorted(
            (s for s in summaries if not s.is_sidechain),
            key=lambda s: s.modified_at,
            reverse=True,
        )
        sessions = [
            {
                "sessionId": s.session_id,
                "firstPrompt": s.first_user_text or UNTITLED_SESSION,
                "created": s.created_at,
                "modified": s.modified_at,
                "gitBranch": s.branch_label,
            }
            for s in visible
        ]
        return web.json_response({
            "sessions": sessions,
            "cwd": self._cwd,
            "latestSessionId": visible[0].session_id if visible else None,
        })

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        path, err = self._transcript(request, request.query.get("project"))
        if err is not None:
            return err
        try:
            deleted = await asyncio.to_thread(delete_session, path)
        except OSError as exc:
            logger.exception("Failed to delete session transcript %s", path)
            return _error(str(exc))
        return web.json_response({"ok": True, "deleted": deleted})

    async def _handle_history(self, request: web.Request) -> web.Response:
        path, err = self._transcript(request)
        if err is not None:
            return err
        history = await asyncio.to_thread(
            read_session, path, title_limit=self._config.title_limit,
        )
        return web.json_response({
            "messages": timeline_to_dicts(history.timeline),
            "cwd": self._cwd,
            "sessionId": request.match_info["session_id"],
            "isCompacted": history.compacted,
            "firstPrompt": history.first_user_text,
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        entry = self._registry.get(request.match_info["session_id"])
        if entry is None:
            return web.json_response({"busy": False})
        return web.json_response({
            "busy": True,
            "state": entry.run.state.value,
            "messages": timeline_to_dicts(entry.run.timeline()),
        })

    async def _handle_send_message(self, request: web.Request) -> web.StreamResponse:
        body, err = await self._read_json(request)
        if err is not None:
            return err
        message = body.get("message")
        images = body.get("images") or []
        if not isinstance(message, str):
            message = ""
        if not isinstance(images, list) or not all(isinstance(i, str) for i in images):
            return _error("images must be a list of data URLs", status=400)
        if not message and not images:
            return _error("message is required", status=400)

        session_id = resolve_session_id(request.match_info["session_id"])
        if session_id is not None:
            try:
                transcript_path(session_id, self._cwd, self._projects_root)
            except InvalidSessionId as exc:
                return _error(str(exc), status=400)
            if self._registry.is_active(session_id):
                return _error(f"Session {session_id} is busy", status=409)

        logger.debug(
            "Send message session=%s chars=%d images=%d",
            session_id or "<new>", len(message), len(images),
        )
        run = RelayRun(
            RelayRequest(message=message, cwd=self._cwd, session_id=session_id, images=images),
            provider=self._provider,
            registry=self._registry,
            read_chunk_size=self._config.read_chunk_size,
            exit_grace_seconds=self._config.exit_grace_seconds,
            stderr_limit=self._config.stderr_limit,
            title_limit=self._config.title_limit,
        )

        response = web.StreamResponse(
            status=200,
            headers={
                **CORS_HEADERS,
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)
        try:
            async with contextlib.aclosing(run.frames()) as frames:
                async for frame in frames:
                    await response.write(frame)
        except ConnectionResetError:
            logger.info(
                "Client disconnected req=%s session=%s",
                request.get("req_id", "unknown"), run.registry_key,
            )
        finally:
            await run.aclose()
        return response

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        cancelled = self._registry.cancel(request.match_info["session_id"])
        return web.json_response({"cancelled": cancelled})

    async def _handle_compact(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        _, err = self._transcript(request)
        if err is not None:
            return err
        if self._registry.is_active(session_id):
            return _error(f"Session {session_id} is busy", status=409)
        try:
            await self._provider.compact_session(session_id, cwd=self._cwd)
        except NotImplementedError as exc:
            return _error(str(exc), status=501)
        except RelayError as exc:
            return _error(str(exc) or "Compaction failed")
        return web.json_response({"ok": True})

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        root = self._workspace_root
        if root.is_dir():
            projects = sorted(
                p.name for p in root.iterdir()
                if p.is_dir() and not p.name.startswith(".")
            )
        else:
            projects = []
        cwd = Path(self._cwd)
        try:
            current = str(cwd.relative_to(root))
        except ValueError:
            current = cwd.name
        return web.json_response({"projects": projects, "currentProject": current})

    async def _handle_switch_project(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err is not None:
            return err
        project = body.get("project")
        if not isinstance(project, str) or not project.strip():
            return _error("project name required", status=400)
        if ".." in Path(project).parts or Path(project).is_absolute():
            return _error("Invalid project name", status=400)
        path = self._workspace_root / project
        if not path.is_dir():
            return _error("Project not found", status=404)
        self._cwd = str(path)
        logger.info("Switched project cwd=%s", self._cwd)
        return web.json_response({"ok": True, "cwd": self._cwd})

    async def _handle_preflight(self, request: web.Request) -> web.Response:
        return web.Response()
