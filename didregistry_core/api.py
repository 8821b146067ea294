"""
REST / HTTP API server for the DID registry.

Built on ``aiohttp``.  The caller identity for mutating requests is read
from a header (``X-Caller-Identity`` by default) that the authenticating
proxy in front of this server sets after verifying the request signature.

Endpoints
---------
GET    /health                          Registry summary
GET    /did/{identifier}                Full record (404 if absent)
GET    /did/{identifier}/controller     Controller or null
GET    /did/{identifier}/subject        Subject or null
GET    /did/{identifier}/keys           Four aligned arrays (empty if absent)
POST   /did                             Create  {subject}
DELETE /did/{identifier}                Delete
POST   /did/{identifier}/controller     Transfer control  {controller}
POST   /did/{identifier}/keys           Append key  {x, y, purpose, curve}
GET    /events?since=N                  Event history
GET    /ws                              WebSocket event push

Security
--------
- API-key authentication on POST/DELETE via ``X-API-Key`` header.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(service, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from didregistry_core.errors import (
    AlreadyExists,
    InvalidArgument,
    InvariantViolation,
    NotFound,
    RegistryError,
    Unauthorized,
)
from didregistry_core.events import Event
from didregistry_core.identifiers import canonical_identifier

if TYPE_CHECKING:
    from didregistry_core.config import APIConfig
    from didregistry_core.registry import RegistryService

logger = logging.getLogger("didregistry_api")

_ERROR_STATUS: dict[type, int] = {
    InvalidArgument: 400,
    Unauthorized: 403,
    NotFound: 404,
    AlreadyExists: 409,
    InvariantViolation: 500,
}


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on POST/PUT/DELETE."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """Add CORS headers for explicitly listed origins (no ``*``)."""

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = (
                "Content-Type, X-API-Key, X-Caller-Identity"
            )
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


@web.middleware
async def _registry_error_middleware(request: web.Request, handler):
    """Translate registry faults into JSON error responses."""
    try:
        return await handler(request)
    except RegistryError as exc:
        status = _ERROR_STATUS.get(type(exc), 400)
        if status >= 500:
            logger.error(f"{request.method} {request.path}: {exc}")
        return web.json_response(exc.to_dict(), status=status, dumps=_json_dumps)


# ═══════════════════════════════════════════════════════════════════
#  Server
# ═══════════════════════════════════════════════════════════════════

class APIServer:
    """aiohttp front end for a ``RegistryService``."""

    def __init__(
        self,
        service: RegistryService,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.service = service
        self.host = host
        self.port = port
        self._api_config = api_config
        self._identity_header = (
            api_config.identity_header if api_config else "X-Caller-Identity"
        )
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer_token: int | None = None
        self._event_queue: asyncio.Queue[Event] | None = None
        self._pump_task: asyncio.Task | None = None
        self._ws_clients: dict[int, dict[str, Any]] = {}

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(
                    _make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm))
                )
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))

        middlewares.append(_registry_error_middleware)
        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        app.on_startup.append(self._attach_events)
        app.on_shutdown.append(self._close_websockets)
        app.on_cleanup.append(self._detach_events)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    async def _attach_events(self, _app: web.Application) -> None:
        self._loop = asyncio.get_running_loop()
        self._event_queue = asyncio.Queue()
        self._pump_task = asyncio.create_task(self._pump_events())
        self._observer_token = self.service.events.subscribe(self._on_event)

    async def _detach_events(self, _app: web.Application) -> None:
        if self._observer_token is not None:
            self.service.events.unsubscribe(self._observer_token)
            self._observer_token = None
        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

    async def _close_websockets(self, _app: web.Application) -> None:
        for info in list(self._ws_clients.values()):
            await info["ws"].close()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_post("/did", self._create_did)
        app.router.add_get("/did/{identifier}", self._get_record)
        app.router.add_delete("/did/{identifier}", self._delete_did)
        app.router.add_get("/did/{identifier}/controller", self._get_controller)
        app.router.add_post("/did/{identifier}/controller", self._set_controller)
        app.router.add_get("/did/{identifier}/subject", self._get_subject)
        app.router.add_get("/did/{identifier}/keys", self._get_keys)
        app.router.add_post("/did/{identifier}/keys", self._add_key)
        app.router.add_get("/events", self._events)
        app.router.add_get("/ws", self._websocket_handler)

    # ── helpers ──────────────────────────────────────────────────

    def _caller(self, request: web.Request) -> str:
        caller = request.headers.get(self._identity_header, "").strip()
        if not caller:
            raise web.HTTPUnauthorized(
                text=f"Missing {self._identity_header} header"
            )
        return caller

    @staticmethod
    async def _json_body(request: web.Request) -> dict:
        try:
            body = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="JSON body must be an object")
        return body

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({"ok": True, **self.service.status()})

    async def _get_record(self, request: web.Request) -> web.Response:
        """GET /did/{identifier}"""
        raw = request.match_info["identifier"]
        record = self.service.get_record(raw)
        if record is None:
            raise web.HTTPNotFound(text=f"DID {raw} not found")
        body = record.to_dict()
        body["did"] = self.service.did_uri(record.identifier)
        return web.json_response(body, dumps=_json_dumps)

    async def _get_controller(self, request: web.Request) -> web.Response:
        raw = request.match_info["identifier"]
        return web.json_response({
            "identifier": canonical_identifier(raw),
            "controller": self.service.get_controller(raw),
        })

    async def _get_subject(self, request: web.Request) -> web.Response:
        raw = request.match_info["identifier"]
        return web.json_response({
            "identifier": canonical_identifier(raw),
            "subject": self.service.get_subject(raw),
        })

    async def _get_keys(self, request: web.Request) -> web.Response:
        raw = request.match_info["identifier"]
        xs, ys, purposes, curves = self.service.get_keys(raw)
        return web.json_response({
            "identifier": canonical_identifier(raw),
            "x": [x.hex() for x in xs],
            "y": [y.hex() for y in ys],
            "purposes": list(purposes),
            "curves": list(curves),
        })

    async def _events(self, request: web.Request) -> web.Response:
        """GET /events?since=N"""
        try:
            since = int(request.query.get("since", "0"))
        except ValueError:
            raise web.HTTPBadRequest(text="since must be an integer") from None
        events = self.service.events.history(since)
        return web.json_response({
            "events": [e.to_dict() for e in events],
            "last_sequence": self.service.events.last_sequence,
        })

    # ── mutating handlers ────────────────────────────────────────

    async def _create_did(self, request: web.Request) -> web.Response:
        """POST /did  {"subject": "..."}"""
        caller = self._caller(request)
        body = await self._json_body(request)
        identifier = self.service.create_did(caller, body.get("subject"))
        return web.json_response(
            {"identifier": identifier, "did": self.service.did_uri(identifier)},
            status=201,
        )

    async def _delete_did(self, request: web.Request) -> web.Response:
        caller = self._caller(request)
        self.service.delete_did(caller, request.match_info["identifier"])
        return web.json_response({"status": "deleted"})

    async def _set_controller(self, request: web.Request) -> web.Response:
        """POST /did/{identifier}/controller  {"controller": "..."}"""
        caller = self._caller(request)
        body = await self._json_body(request)
        self.service.set_controller(
            caller, request.match_info["identifier"], body.get("controller"),
        )
        return web.json_response({"status": "controller_changed",
                                  "controller": body.get("controller")})

    async def _add_key(self, request: web.Request) -> web.Response:
        """POST /did/{identifier}/keys  {"x", "y", "purpose", "curve"}"""
        caller = self._caller(request)
        body = await self._json_body(request)
        missing = [f for f in ("x", "y", "purpose", "curve") if f not in body]
        if missing:
            raise web.HTTPBadRequest(text=f"Missing fields: {', '.join(missing)}")
        position = self.service.add_key(
            caller, request.match_info["identifier"],
            body["x"], body["y"], body["purpose"], body["curve"],
        )
        return web.json_response({"status": "key_added", "position": position},
                                 status=201)

    # ── WebSocket push ───────────────────────────────────────────

    async def _websocket_handler(self, request: web.Request) -> web.WebSocketResponse:
        """
        WebSocket /ws: push registry events.

        Optional ``?since=N`` replays buffered events first.  Clients may
        narrow the feed:
          {"command": "subscribe", "identifiers": ["<hex>", ...]}
          {"command": "unsubscribe", "identifiers": ["<hex>"]}
          {"command": "ping"}
        An empty identifier set means every event.
        """
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        ws_id = id(ws)
        filters: set[str] = set()
        since = request.query.get("since")
        replaying = since is not None and since.isdigit()
        info: dict[str, Any] = {"ws": ws, "identifiers": filters,
                                "last_sent": 0, "live": not replaying}
        self._ws_clients[ws_id] = info

        try:
            if replaying:
                # The live feed skips this client until history is drained.
                last = int(since)
                while True:
                    backlog = self.service.events.history(last)
                    if not backlog:
                        break
                    for event in backlog:
                        await ws.send_json(event.to_dict())
                        last = event.sequence
                info["last_sent"] = last
                info["live"] = True

            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        await ws.send_json({"error": "Invalid JSON"})
                        continue
                    if not isinstance(data, dict):
                        await ws.send_json({"error": "Expected a JSON object"})
                        continue

                    cmd = data.get("command", "")
                    if cmd == "subscribe":
                        for raw in data.get("identifiers", []):
                            ident = canonical_identifier(raw)
                            if ident:
                                filters.add(ident)
                        await ws.send_json({"status": "subscribed",
                                            "identifiers": sorted(filters)})
                    elif cmd == "unsubscribe":
                        for raw in data.get("identifiers", []):
                            filters.discard(canonical_identifier(raw) or "")
                        await ws.send_json({"status": "unsubscribed",
                                            "identifiers": sorted(filters)})
                    elif cmd == "ping":
                        await ws.send_json({"type": "pong"})
                    else:
                        await ws.send_json({"error": f"Unknown command: {cmd}"})
                elif msg.type == web.WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
        finally:
            self._ws_clients.pop(ws_id, None)

        return ws

    def _on_event(self, event: Event) -> None:
        # Registry observers run on the mutating thread; hop onto the loop.
        loop, queue = self._loop, self._event_queue
        if loop is None or queue is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, event)

    async def _pump_events(self) -> None:
        """Single consumer, so each client receives events in sequence order."""
        assert self._event_queue is not None
        while True:
            event = await self._event_queue.get()
            try:
                await self.broadcast_event(event)
            except Exception:
                logger.exception(f"Broadcast of event #{event.sequence} failed")

    async def broadcast_event(self, event: Event) -> None:
        """Send *event* to every WebSocket client whose filter matches.

        Clients still replaying history, or that already received this
        sequence number during replay, are skipped.
        """
        payload = event.to_dict()
        for info in list(self._ws_clients.values()):
            ws = info["ws"]
            if ws.closed:
                continue
            if not info["live"] or event.sequence <= info["last_sent"]:
                continue
            filters = info["identifiers"]
            if filters and event.identifier not in filters:
                continue
            try:
                await ws.send_json(payload)
            except ConnectionResetError:
                logger.debug(f"WebSocket client went away during event #{event.sequence}")
            else:
                info["last_sent"] = event.sequence
