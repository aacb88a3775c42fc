"""HTTP + SSE server for the dev server orchestrator.

Exposes the registry as a small REST API with Server-Sent Events for
live dev server output. Clients fetch /dev-servers/logs once to replay
scrollback, then follow /events for new output.

Usage:
    devserve --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from devserve.adapters.event_bus import EventBus
from devserve.adapters.events import event_to_dict
from devserve.engine.config import DevServerConfig
from devserve.engine.registry import DevServerRegistry

logger = logging.getLogger(__name__)

_SSE_KEEPALIVE_SECONDS = 30.0


class DevServeServer:
    """HTTP + SSE front for a DevServerRegistry.

    Thin adapter: all dev server state lives in the registry. This class
    only handles HTTP routing, SSE fan-out and shutdown wiring.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        config: DevServerConfig | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._config = config or DevServerConfig.from_env()
        self._bus = EventBus()
        self._config.event_callback = self._bus.make_callback()
        self._registry = DevServerRegistry(self._config)
        self._sse_queues: list[asyncio.Queue[dict[str, Any] | None]] = []
        self._pump_task: asyncio.Task | None = None
        self._runner: web.AppRunner | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "DevServeServer init host=%s port=%s ports=%d-%d pid=%s",
            self._host, self._port,
            self._config.base_port, self._config.max_port, os.getpid(),
        )

    @property
    def registry(self) -> DevServerRegistry:
        return self._registry

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-devserve-request-id", str(uuid.uuid4())[:8])
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
        r.add_get("/dev-servers", self._handle_list)
        r.add_post("/dev-servers/start", self._handle_start)
        r.add_post("/dev-servers/stop", self._handle_stop)
        r.add_get("/dev-servers/logs", self._handle_logs)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self._bus.reset()
        self._pump_task = asyncio.create_task(self._pump_events())

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._registry.stop_all()
        self._bus.close()
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        # Wake SSE handlers so they return before the server drains connections.
        for queue in list(self._sse_queues):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.debug("SSE client queue full at shutdown")

    async def start(self) -> None:
        """Start listening and print the bound port to stdout."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(self._runner)
        if actual_port is None:
            raise RuntimeError("devserve started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("devserve listening on %s:%d", self._host, actual_port)

    async def run_forever(self) -> None:
        """Serve until SIGINT/SIGTERM, then stop every dev server."""
        self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown_event.set)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support.
                pass
        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            logger.info("Shutdown requested, stopping dev servers")
            await self.shutdown()

    async def shutdown(self) -> None:
        if self._runner is not None:
            # Triggers on_shutdown -> registry.stop_all()
            await self._runner.cleanup()
            self._runner = None

    @staticmethod
    def _resolve_port(runner: web.AppRunner) -> int | None:
        for address in runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    # ── Event fan-out ──

    async def _pump_events(self) -> None:
        async for event in self._bus.consume():
            payload = event_to_dict(event)
            msg = {"event": payload.pop("event", "message"), "data": payload}
            for queue in list(self._sse_queues):
                try:
                    queue.put_nowait(msg)
                except asyncio.QueueFull:
                    logger.warning(
                        "SSE client queue full, dropping %s event", msg["event"],
                    )

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "running_servers": len(self._registry.list_servers()),
            "allocated_ports": self._registry.get_allocated_ports(),
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

        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            servers = self._registry.list_servers()
            await response.write(
                f"event: connected\ndata: {json.dumps({'servers': servers})}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE_SECONDS)
                    if msg is None:
                        break
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

    async def _handle_list(self, request: web.Request) -> web.Response:
        return web.json_response({
            "success": True,
            "result": {"servers": self._registry.list_servers()},
        })

    async def _read_json(self, request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None, web.json_response(
                {"success": False, "error": "Request body must be JSON"}, status=400,
            )
        if not isinstance(body, dict):
            return None, web.json_response(
                {"success": False, "error": "Request body must be a JSON object"}, status=400,
            )
        return body, None

    async def _handle_start(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err is not None:
            return err
        worktree_path = body.get("worktree_path")
        if not worktree_path or not isinstance(worktree_path, str):
            return web.json_response(
                {"success": False, "error": "worktree_path must be a non-empty string"},
                status=400,
            )
        project_path = body.get("project_path") or worktree_path
        if not isinstance(project_path, str):
            return web.json_response(
                {"success": False, "error": "project_path must be a string"}, status=400,
            )
        result = await self._registry.start(project_path, worktree_path)
        return web.json_response(result.to_dict(), status=200 if result.success else 400)

    async def _handle_stop(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err is not None:
            return err
        worktree_path = body.get("worktree_path")
        if not worktree_path or not isinstance(worktree_path, str):
            return web.json_response(
                {"success": False, "error": "worktree_path must be a non-empty string"},
                status=400,
            )
        result = await self._registry.stop(worktree_path)
        return web.json_response(result.to_dict(), status=200 if result.success else 500)

    async def _handle_logs(self, request: web.Request) -> web.Response:
        worktree_path = request.query.get("worktree_path")
        if not worktree_path:
            return web.json_response(
                {"success": False, "error": "worktree_path query parameter is required"},
                status=400,
            )
        result = self._registry.get_logs(worktree_path)
        return web.json_response(result.to_dict(), status=200 if result.success else 404)
