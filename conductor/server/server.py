"""HTTP + SSE bridge for the session orchestrator.

Exposes the Orchestrator facade as a small REST API, with Server-Sent
Events carrying every normalized event to UI clients in real time.

Usage:
    conductor --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from conductor.adapters.events import event_to_dict
from conductor.adapters.orchestrator import Orchestrator
from conductor.engine.errors import (
    ExecutableNotFoundError,
    OrchestrationError,
    ProcessInactiveError,
    ProcessNotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0

_START_OPTIONS = ("session_id", "continue_last", "permission_mode", "initial_message", "agent_name")
_RESUME_OPTIONS = ("permission_mode", "fork_session", "agent_name", "initial_message")


class ConductorServer:
    """aiohttp application wrapping one Orchestrator.

    Thin adapter: all session state lives in the Orchestrator. This
    class only handles HTTP routing, validation and SSE fan-out.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._orchestrator = orchestrator
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._sse_clients = 0
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-conductor-request-id", str(uuid.uuid4())[:8])
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
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/claude/availability", self._handle_availability)
        r.add_get("/claude/permission-modes", self._handle_permission_modes)
        r.add_post("/claude/invalidate", self._handle_invalidate)
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_start_session)
        r.add_post("/sessions/resume", self._handle_resume_session)
        r.add_post("/sessions/{process_id}/messages", self._handle_send_message)
        r.add_post("/sessions/{process_id}/stop", self._handle_stop_session)
        r.add_post("/query", self._handle_query)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server, print the port to stdout and run until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Conductor server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Conductor server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._orchestrator.shutdown()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Helpers ──

    @staticmethod
    async def _read_body(request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        """Return (body, None) or (None, 400 response)."""
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None, web.json_response({"error": "Request body must be JSON"}, status=400)
        if not isinstance(body, dict):
            return None, web.json_response({"error": "Request body must be a JSON object"}, status=400)
        return body, None

    @staticmethod
    def _missing(body: dict[str, Any], *names: str) -> web.Response | None:
        missing = [n for n in names if not isinstance(body.get(n), str) or not body.get(n)]
        if missing:
            return web.json_response(
                {"error": f"Missing required field(s): {', '.join(missing)}"},
                status=400,
            )
        return None

    @staticmethod
    def _error_response(exc: OrchestrationError) -> web.Response:
        if isinstance(exc, ProcessNotFoundError):
            status = 404
        elif isinstance(exc, ProcessInactiveError):
            status = 409
        elif isinstance(exc, ExecutableNotFoundError):
            return web.json_response(
                {"error": str(exc), "installCommand": exc.condition.install_command},
                status=503,
            )
        elif isinstance(exc, TransportError):
            status = 502
        else:
            status = 500
        return web.json_response({"error": str(exc)}, status=status)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_sessions": len(self._orchestrator.registry.list_active()),
            "sse_clients": self._sse_clients,
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue = self._orchestrator.open_queue()
        self._sse_clients += 1
        req_id = request.get("req_id", "unknown")
        logger.info("SSE client connected req=%s active_clients=%d", req_id, self._sse_clients)

        events = queue.consume().__aiter__()
        pending: asyncio.Task | None = None
        try:
            active = self._orchestrator.list_active_sessions()
            await response.write(
                f"event: connected\ndata: {json.dumps(active)}\n\n".encode()
            )
            while not queue.closed:
                if pending is None:
                    pending = asyncio.ensure_future(events.__anext__())
                done, _ = await asyncio.wait({pending}, timeout=SSE_KEEPALIVE_SECONDS)
                if not done:
                    await response.write(b": keepalive\n\n")
                    continue
                try:
                    event = pending.result()
                except StopAsyncIteration:
                    break
                finally:
                    pending = None
                data = json.dumps(event_to_dict(event))
                await response.write(f"event: message\ndata: {data}\n\n".encode())
        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            if pending is not None:
                pending.cancel()
            queue.close()
            self._sse_clients -= 1
            logger.info("SSE client disconnected req=%s active_clients=%d", req_id, self._sse_clients)
        return response

    async def _handle_availability(self, request: web.Request) -> web.Response:
        return web.json_response(await self._orchestrator.check_availability())

    async def _handle_permission_modes(self, request: web.Request) -> web.Response:
        return web.json_response(await self._orchestrator.list_permission_modes())

    async def _handle_invalidate(self, request: web.Request) -> web.Response:
        self._orchestrator.invalidate_executable()
        return web.json_response({"success": True})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response(self._orchestrator.list_active_sessions())

    async def _handle_start_session(self, request: web.Request) -> web.Response:
        body, err = await self._read_body(request)
        if err:
            return err
        err = self._missing(body, "project_path")
        if err:
            return err
        opts = {k: body[k] for k in _START_OPTIONS if body.get(k) is not None}
        try:
            result = await self._orchestrator.start_session(body["project_path"], **opts)
        except OrchestrationError as exc:
            return self._error_response(exc)
        return web.json_response(result)

    async def _handle_resume_session(self, request: web.Request) -> web.Response:
        body, err = await self._read_body(request)
        if err:
            return err
        err = self._missing(body, "project_path", "session_id")
        if err:
            return err
        opts = {k: body[k] for k in _RESUME_OPTIONS if body.get(k) is not None}
        try:
            result = await self._orchestrator.resume_session(
                body["project_path"], body["session_id"], **opts,
            )
        except OrchestrationError as exc:
            return self._error_response(exc)
        return web.json_response(result)

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        process_id = request.match_info["process_id"]
        body, err = await self._read_body(request)
        if err:
            return err
        err = self._missing(body, "message")
        if err:
            return err
        try:
            result = await self._orchestrator.send_message(
                process_id, body["message"], body.get("project_path"),
            )
        except OrchestrationError as exc:
            return self._error_response(exc)
        return web.json_response(result)

    async def _handle_stop_session(self, request: web.Request) -> web.Response:
        process_id = request.match_info["process_id"]
        return web.json_response(await self._orchestrator.stop_session(process_id))

    async def _handle_query(self, request: web.Request) -> web.Response:
        body, err = await self._read_body(request)
        if err:
            return err
        err = self._missing(body, "prompt", "project_path")
        if err:
            return err
        max_turns = body.get("max_turns")
        if max_turns is not None and not isinstance(max_turns, int):
            return web.json_response({"error": "max_turns must be an integer"}, status=400)
        try:
            result = await self._orchestrator.query_once(
                body["prompt"],
                body["project_path"],
                permission_mode=body.get("permission_mode"),
                max_turns=max_turns,
            )
        except OrchestrationError as exc:
            return self._error_response(exc)
        return web.json_response(result)
