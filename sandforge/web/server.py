"""HTTP + SSE server for the sandforge orchestrator.

Exposes the orchestrator's public API as JSON routes and streams its
events to clients over Server-Sent Events.

Usage:
    sandforge serve [--port PORT] [--workdir DIR]
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from sandforge.adapters.events import dict_to_event, event_to_dict
from sandforge.engine.errors import SandforgeError
from sandforge.engine.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0


class BadRequest(Exception):
    pass


class SandforgeServer:
    """Thin adapter: all state lives in the Orchestrator.

    This class only handles HTTP routing and SSE fan-out.
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
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._background: set[asyncio.Task] = set()
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        self._unsubscribe = orchestrator.subscribe(self._on_event)

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-sandforge-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except BadRequest as exc:
            response = web.json_response({"error": str(exc)}, status=400)
        except (KeyError, IndexError) as exc:
            response = web.json_response({"error": f"Not found: {exc}"}, status=404)
        except SandforgeError as exc:
            response = web.json_response({"error": str(exc)}, status=409)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        # Files
        r.add_get("/files", self._handle_list_files)
        r.add_get("/files/content", self._handle_file_content)
        r.add_post("/files", self._handle_add_file)
        r.add_delete("/files", self._handle_delete_file)
        r.add_post("/folders", self._handle_add_folder)
        r.add_post("/folders/toggle", self._handle_toggle_folder)
        # Editor
        r.add_post("/editor/open", self._handle_open_file)
        r.add_post("/editor/select", self._handle_select_file)
        r.add_post("/editor/close", self._handle_close_file)
        r.add_post("/editor/update", self._handle_update_file)
        r.add_post("/editor/save", self._handle_save_file)
        r.add_post("/editor/save-all", self._handle_save_all)
        r.add_post("/editor/discard", self._handle_discard)
        # Generation
        r.add_post("/generation/start", self._handle_start_generation)
        r.add_post("/generation/chunk", self._handle_chunk)
        r.add_post("/generation/stop", self._handle_stop_generation)
        # Project
        r.add_post("/project/clear", self._handle_clear_project)
        r.add_post("/project/reset", self._handle_reset)
        r.add_post("/dev-server/ensure", self._handle_ensure_dev_server)
        r.add_get("/setup", self._handle_setup_state)
        r.add_get("/artifacts", self._handle_artifacts)
        # Previews, alerts, terminal
        r.add_get("/previews", self._handle_previews)
        r.add_post("/previews/active", self._handle_set_active_preview)
        r.add_get("/alerts", self._handle_alerts)
        r.add_delete("/alerts/{index}", self._handle_dismiss_alert)
        r.add_post("/alerts/clear", self._handle_clear_alerts)
        r.add_get("/terminal", self._handle_terminal)
        r.add_post("/terminal/run", self._handle_run_command)

    # ── Helpers ──

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        try:
            data = await request.json()
        except json.JSONDecodeError as exc:
            raise BadRequest(f"Invalid JSON body: {exc}") from exc
        if not isinstance(data, dict):
            raise BadRequest("JSON body must be an object")
        return data

    @staticmethod
    def _require(data: dict[str, Any], key: str) -> Any:
        value = data.get(key)
        if value is None or value == "":
            raise BadRequest(f"{key} is required")
        return value

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "project_root": self._orchestrator.config.project_root,
        })

    async def _handle_list_files(self, request: web.Request) -> web.Response:
        orch = self._orchestrator
        return web.json_response({
            "files": orch.catalog.snapshot(),
            "unsaved": sorted(orch.unsaved_files),
            "selected": orch.editor.selected,
            "open": list(orch.editor.open_paths),
        })

    async def _handle_file_content(self, request: web.Request) -> web.Response:
        path = request.query.get("path")
        if not path:
            raise BadRequest("path is required")
        normalized = self._orchestrator.normalize(path)
        content = self._orchestrator.editor.document(normalized)
        if content is None:
            return web.json_response({"error": f"No file at {normalized}"}, status=404)
        return web.json_response({"path": normalized, "content": content})

    async def _handle_add_file(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        path = await self._orchestrator.add_file(
            self._require(data, "path"), str(data.get("content", "")),
        )
        return web.json_response({"path": path}, status=201)

    async def _handle_delete_file(self, request: web.Request) -> web.Response:
        path = request.query.get("path")
        if not path:
            raise BadRequest("path is required")
        removed = await self._orchestrator.delete_file(path)
        return web.json_response({"removed": removed})

    async def _handle_add_folder(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        path = await self._orchestrator.add_folder(self._require(data, "path"))
        return web.json_response({"path": path}, status=201)

    async def _handle_toggle_folder(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        expanded = self._orchestrator.toggle_folder(self._require(data, "path"))
        return web.json_response({"expanded": expanded})

    async def _handle_open_file(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        self._orchestrator.open_file(self._require(data, "path"))
        return web.json_response({"selected": self._orchestrator.editor.selected})

    async def _handle_select_file(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        self._orchestrator.select_file(data.get("path"))
        return web.json_response({"selected": self._orchestrator.editor.selected})

    async def _handle_close_file(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        self._orchestrator.close_file(self._require(data, "path"))
        return web.json_response({"selected": self._orchestrator.editor.selected})

    async def _handle_update_file(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        unsaved = self._orchestrator.update_file(
            self._require(data, "path"), str(data.get("content", "")),
        )
        return web.json_response({"unsaved": unsaved})

    async def _handle_save_file(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        saved = await self._orchestrator.save_file(self._require(data, "path"))
        return web.json_response({"saved": saved})

    async def _handle_save_all(self, request: web.Request) -> web.Response:
        saved = await self._orchestrator.save_all_files()
        return web.json_response({"saved": saved})

    async def _handle_discard(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        self._orchestrator.discard_changes(self._require(data, "path"))
        return web.json_response({"ok": True})

    async def _handle_start_generation(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        stream_id = str(self._require(data, "stream_id"))
        self._orchestrator.start_generation(stream_id)
        return web.json_response({"stream_id": stream_id})

    async def _handle_chunk(self, request: web.Request) -> web.Response:
        """Feed the cumulative text of a stream."""
        data = await self._json_body(request)
        stream_id = str(self._require(data, "stream_id"))
        text = data.get("text")
        if not isinstance(text, str):
            raise BadRequest("text must be a string")
        display = self._orchestrator.parse(stream_id, text)
        return web.json_response({"display": display})

    async def _handle_stop_generation(self, request: web.Request) -> web.Response:
        await self._orchestrator.stop_generation()
        return web.json_response({"ok": True})

    async def _handle_clear_project(self, request: web.Request) -> web.Response:
        await self._orchestrator.clear_project()
        return web.json_response({"ok": True})

    async def _handle_reset(self, request: web.Request) -> web.Response:
        await self._orchestrator.reset()
        return web.json_response({"ok": True})

    async def _handle_ensure_dev_server(self, request: web.Request) -> web.Response:
        running = self._orchestrator.ensure_dev_server_running()
        return web.json_response({"running": running})

    async def _handle_setup_state(self, request: web.Request) -> web.Response:
        state = self._orchestrator.setup_state
        return web.json_response({
            "phase": self._orchestrator.setup_phase.value,
            **dataclasses.asdict(state),
        })

    async def _handle_artifacts(self, request: web.Request) -> web.Response:
        artifacts = []
        for artifact in self._orchestrator.artifacts.values():
            runner = self._orchestrator.runner_for(artifact.artifact_id)
            artifacts.append({
                "artifact_id": artifact.artifact_id,
                "title": artifact.title,
                "kind": artifact.kind,
                "closed": artifact.closed,
                "synthetic": artifact.synthetic,
                "actions": [
                    {
                        "action_id": a.action_id,
                        "kind": a.kind.value,
                        "status": a.status.value,
                        "file_path": a.file_path,
                        "error": a.error,
                    }
                    for a in runner.actions.values()
                ],
            })
        return web.json_response({"artifacts": artifacts})

    async def _handle_previews(self, request: web.Request) -> web.Response:
        store = self._orchestrator.preview_store
        return web.json_response({
            "previews": [p.to_dict() for p in store.items()],
            "active_index": store.active_index,
        })

    async def _handle_set_active_preview(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        try:
            index = int(self._require(data, "index"))
        except (TypeError, ValueError) as exc:
            raise BadRequest("index must be an integer") from exc
        self._orchestrator.preview_store.set_active(index)
        return web.json_response({"active_index": index})

    async def _handle_alerts(self, request: web.Request) -> web.Response:
        return web.json_response({
            "alerts": [
                {
                    "kind": a.kind,
                    "title": a.title,
                    "description": a.description,
                    "raw_output": a.raw_output,
                    "source": a.source,
                    "created_at": a.created_at,
                }
                for a in self._orchestrator.alerts
            ],
        })

    async def _handle_dismiss_alert(self, request: web.Request) -> web.Response:
        try:
            index = int(request.match_info["index"])
        except ValueError as exc:
            raise BadRequest("index must be an integer") from exc
        alert = self._orchestrator.dismiss_alert(index)
        return web.json_response({"dismissed": alert.title})

    async def _handle_clear_alerts(self, request: web.Request) -> web.Response:
        self._orchestrator.clear_alerts()
        return web.json_response({"ok": True})

    async def _handle_terminal(self, request: web.Request) -> web.Response:
        try:
            since = int(request.query.get("since", "0"))
        except ValueError as exc:
            raise BadRequest("since must be an integer") from exc
        entries = self._orchestrator.terminal.since(since)
        return web.json_response({"entries": [e.to_dict() for e in entries]})

    async def _handle_run_command(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        command = str(self._require(data, "command"))
        self._spawn(self._orchestrator.run_command(command))
        return web.json_response({"accepted": True}, status=202)

    # ── SSE ──

    async def _on_event(self, event: dict[str, Any]) -> None:
        typed = dict_to_event(event)
        self._broadcast_sse(typed.event_type or "message", event_to_dict(typed))

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": dict(data)}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

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

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            connected = {"phase": self._orchestrator.setup_phase.value}
            await response.write(
                f"event: connected\ndata: {json.dumps(connected)}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Sandforge server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Sandforge server listening on %s:%d", self._host, actual_port)

        self._orchestrator.attach()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            self._unsubscribe()
            for task in list(self._background):
                task.cancel()
            await self._orchestrator.shutdown()
            await runner.cleanup()

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
