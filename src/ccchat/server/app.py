"""HTTP transport — relay assistant streams to the UI and accept cancels."""

from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import UTC, datetime
from functools import partial
from typing import TYPE_CHECKING, Any

from aiohttp import web

from ccchat.history.store import ChatNotFoundError
from ccchat.project import ProjectInitError, check_project, init_project
from ccchat.server.registry import DuplicateRequestError
from ccchat.service import ChatRequest
from ccchat.stream.events import StreamUpdate

if TYPE_CHECKING:
    from ccchat.context import AppContext

logger = logging.getLogger(__name__)

_STREAM_KINDS = ("raw", "units")
_MODES = ("streaming", "static")


class ChatServer:
    """aiohttp application exposing the chat pipeline.

    ``POST /api/chat`` answers with newline-delimited JSON written as
    records arrive and ends with a ``final_result`` (or ``error``) line
    carrying the finalized message.
    """

    def __init__(self, context: AppContext) -> None:
        self._ctx = context
        self._config = context.config
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_response_prepare.append(self._add_cors_headers)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", uuid.uuid4().hex[:8])
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s", request.method, request.path_qs, req_id)
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    async def _add_cors_headers(self, request: web.Request, response: web.StreamResponse) -> None:
        origin = request.headers.get("Origin")
        if origin is None or not self._origin_allowed(origin):
            return
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Cache-Control"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
        response.headers["Vary"] = "Origin"

    def _origin_allowed(self, origin: str) -> bool:
        allowed = self._config.server.cors_origins
        if "*" in allowed or origin in allowed:
            return True
        # Pages loaded from file:// send the opaque origin "null".
        return origin == "null" and "file://" in allowed

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/api/chat", self._handle_chat)
        r.add_post("/api/chat/cancel", self._handle_cancel)
        r.add_post("/api/project/check", self._handle_project_check)
        r.add_post("/api/project/init", self._handle_project_init)
        r.add_get("/api/chats", self._handle_list_chats)
        r.add_post("/api/chats", self._handle_create_chat)
        r.add_get("/api/chats/{id}", self._handle_get_chat)
        r.add_patch("/api/chats/{id}", self._handle_update_chat)
        r.add_delete("/api/chats/{id}", self._handle_delete_chat)
        r.add_delete("/api/chats/{id}/messages", self._handle_clear_chat)
        r.add_delete("/api/chats", self._handle_clear_all)
        r.add_route("OPTIONS", "/{tail:.*}", self._handle_preflight)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Bind the configured host/port and start serving."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.server.host, self._config.server.port)
        await site.start()
        self._runner = runner
        logger.info(
            "ccchat server listening on http://%s:%d",
            self._config.server.host,
            self._config.server.port,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _on_shutdown(self, app: web.Application) -> None:
        cancelled = self._ctx.registry.cancel_all()
        if cancelled:
            logger.info("cancelled %d in-flight request(s) on shutdown", cancelled)
        await self._ctx.service.shutdown()

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None, web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(data, dict):
            return None, web.json_response({"error": "Expected a JSON object"}, status=400)
        return data, None

    @staticmethod
    def _required_str(data: dict[str, Any], key: str, label: str) -> tuple[str | None, web.Response | None]:
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            return None, web.json_response({"error": f"{label} is required"}, status=400)
        return value, None

    @staticmethod
    def _render(update: StreamUpdate, stream_kind: str) -> bytes | None:
        if update.type == "progress":
            return _ndjson({"type": "progress", "content": update.content})
        if stream_kind == "units":
            if update.unit is None:
                return None
            return _ndjson({
                "type": "content_unit",
                "text": update.unit.text,
                "category": update.unit.category,
            })
        event = update.event
        if event is None or (event.kind == "unknown" and not event.payload):
            # Malformed records are never surfaced to the client.
            return None
        return (event.raw.strip() + "\n").encode()

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_requests": len(self._ctx.registry),
        })

    async def _handle_preflight(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    async def _handle_chat(self, request: web.Request) -> web.StreamResponse:
        data, error = await self._read_json(request)
        if error is not None:
            return error
        message, error = self._required_str(data, "message", "Message")
        if error is not None:
            return error
        working_directory, error = self._required_str(data, "workingDirectory", "Working directory")
        if error is not None:
            return error

        request_id = data.get("requestId") or uuid.uuid4().hex[:12]
        stream_kind = data.get("stream", "raw")
        if stream_kind not in _STREAM_KINDS:
            return web.json_response({"error": f"stream must be one of {', '.join(_STREAM_KINDS)}"}, status=400)
        mode = data.get("mode")
        if mode is not None and mode not in _MODES:
            return web.json_response({"error": f"mode must be one of {', '.join(_MODES)}"}, status=400)
        chat_id = data.get("chatId")
        if chat_id is not None and not isinstance(chat_id, str):
            return web.json_response({"error": "chatId must be a string"}, status=400)
        flags: dict[str, bool] = {}
        for key in ("isExistingChat", "verbose"):
            value = data.get(key, False)
            if not isinstance(value, bool):
                return web.json_response({"error": f"{key} must be a boolean"}, status=400)
            flags[key] = value

        chat_request = ChatRequest(
            message=message,
            working_directory=working_directory,
            request_id=str(request_id),
            is_existing_chat=flags["isExistingChat"],
            chat_id=chat_id,
            mode=mode,
            verbose=flags["verbose"],
        )
        service = self._ctx.service
        registry = self._ctx.registry
        # Registered before start_turn so a cancel or a duplicate id is
        # seen even while the turn waits for the chat's previous one.
        try:
            registry.register(chat_request.request_id, partial(service.cancel, chat_request.request_id))
        except DuplicateRequestError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        try:
            turn = await service.start_turn(chat_request)
        except ChatNotFoundError:
            registry.remove(chat_request.request_id)
            return web.json_response({"error": f"Chat {chat_id} not found"}, status=404)
        except DuplicateRequestError as exc:
            registry.remove(chat_request.request_id)
            return web.json_response({"error": str(exc)}, status=409)
        except BaseException:
            registry.remove(chat_request.request_id)
            raise

        subscription = turn.subscribe()

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "application/x-ndjson",
                "Cache-Control": "no-cache",
                "X-Request-Id": turn.request_id,
            },
        )
        try:
            await response.prepare(request)
            async for update in subscription:
                line = self._render(update, stream_kind)
                if line is not None:
                    await response.write(line)
            final = await turn.result()
            trailer_type = "error" if final.status == "error" else "final_result"
            await response.write(_ndjson({"type": trailer_type, "message": final.model_dump(mode="json")}))
            await response.write_eof()
        except ConnectionResetError as exc:
            logger.warning("%s: client went away: %s", turn.request_id, exc)
        finally:
            self._ctx.registry.remove(turn.request_id)
            subscription.close()
            if not turn.done:
                # Client disconnected or the handler was cancelled mid-stream.
                turn.cancel()
        return response

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        data, error = await self._read_json(request)
        if error is not None:
            return error
        request_id = data.get("requestId")
        if isinstance(request_id, str) and self._ctx.registry.cancel(request_id):
            return web.json_response({"success": True})
        return web.json_response({"error": "Request not found"}, status=404)

    async def _handle_project_check(self, request: web.Request) -> web.Response:
        data, error = await self._read_json(request)
        if error is not None:
            return error
        working_directory, error = self._required_str(data, "workingDirectory", "Working directory")
        if error is not None:
            return error
        info = check_project(working_directory)
        return web.json_response({
            "hasClaudeConfig": info.has_claude_config,
            "claudeConfigPath": info.claude_config_path,
            "needsInit": info.needs_init,
        })

    async def _handle_project_init(self, request: web.Request) -> web.Response:
        data, error = await self._read_json(request)
        if error is not None:
            return error
        working_directory, error = self._required_str(data, "workingDirectory", "Working directory")
        if error is not None:
            return error
        try:
            message = await init_project(working_directory, self._config.assistant)
        except ProjectInitError as exc:
            return web.json_response(
                {"error": "Failed to initialize project", "details": str(exc)},
                status=500,
            )
        return web.json_response({"message": message.model_dump(mode="json")})

    async def _handle_list_chats(self, request: web.Request) -> web.Response:
        chats = [
            chat.model_dump(mode="json", exclude={"messages"})
            for chat in self._ctx.store.list_chats()
        ]
        return web.json_response({"chats": chats})

    async def _handle_create_chat(self, request: web.Request) -> web.Response:
        data: dict[str, Any] = {}
        if request.can_read_body:
            data, error = await self._read_json(request)
            if error is not None:
                return error
        chat = self._ctx.store.create_chat(
            title=str(data.get("title") or "New Chat"),
            project_path=data.get("projectPath"),
            project_name=data.get("projectName"),
        )
        return web.json_response(chat.model_dump(mode="json"), status=201)

    async def _handle_get_chat(self, request: web.Request) -> web.Response:
        chat_id = request.match_info["id"]
        try:
            chat = self._ctx.store.get_chat(chat_id)
        except ChatNotFoundError:
            return web.json_response({"error": f"Chat {chat_id} not found"}, status=404)
        return web.json_response(chat.model_dump(mode="json"))

    async def _handle_update_chat(self, request: web.Request) -> web.Response:
        chat_id = request.match_info["id"]
        data, error = await self._read_json(request)
        if error is not None:
            return error
        store = self._ctx.store
        try:
            chat = store.get_chat(chat_id)
            title = data.get("title")
            if isinstance(title, str) and title.strip():
                chat = store.rename_chat(chat_id, title.strip())
            project_path = data.get("projectPath")
            if isinstance(project_path, str) and project_path:
                project_name = data.get("projectName") or project_path.rstrip("/").rsplit("/", 1)[-1]
                chat = store.set_project(chat_id, project_path, str(project_name))
        except ChatNotFoundError:
            return web.json_response({"error": f"Chat {chat_id} not found"}, status=404)
        return web.json_response(chat.model_dump(mode="json"))

    async def _handle_delete_chat(self, request: web.Request) -> web.Response:
        chat_id = request.match_info["id"]
        if not self._ctx.store.delete_chat(chat_id):
            return web.json_response({"error": f"Chat {chat_id} not found"}, status=404)
        return web.json_response({"status": "deleted"})

    async def _handle_clear_chat(self, request: web.Request) -> web.Response:
        chat_id = request.match_info["id"]
        try:
            chat = self._ctx.store.clear_chat(chat_id)
        except ChatNotFoundError:
            return web.json_response({"error": f"Chat {chat_id} not found"}, status=404)
        return web.json_response(chat.model_dump(mode="json"))

    async def _handle_clear_all(self, request: web.Request) -> web.Response:
        self._ctx.store.clear_all()
        return web.json_response({"status": "cleared"})


def _ndjson(payload: dict[str, Any]) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode()
