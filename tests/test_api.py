"""
Tests for the aiohttp front end (api.py).

Covers:
  - Read endpoints, including absent and malformed identifiers
  - Mutating endpoints and registry error -> HTTP status mapping
  - Caller identity header
  - API key, CORS and rate-limit middleware
  - /events history and WebSocket push
"""

from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from didregistry_core.api import APIServer, _TokenBucket
from didregistry_core.config import APIConfig
from didregistry_core.events import Event, EventType
from didregistry_core.registry import RegistryService

ALICE = {"X-Caller-Identity": "rAlice"}
BOB = {"X-Caller-Identity": "rBob"}
ABSENT = "cd" * 32


def _api_config(**overrides) -> APIConfig:
    defaults = {
        "enabled": True,
        "rate_limit_rpm": 0,
        "cors_origins": [],
        "api_key": "",
    }
    defaults.update(overrides)
    return APIConfig(**defaults)


def _client(service: RegistryService, api_config: APIConfig | None = None):
    api = APIServer(service, host="127.0.0.1", port=0, api_config=api_config)
    return TestClient(TestServer(api.build_app())), api


async def _create(client, subject="rSubjectX", headers=ALICE) -> str:
    resp = await client.post("/did", json={"subject": subject}, headers=headers)
    assert resp.status == 201
    return (await resp.json())["identifier"]


class _FakeWS:
    """Minimal mock for an aiohttp WebSocketResponse."""
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.closed = False
        self._fail = fail

    async def send_json(self, data, **kw):
        if self._fail:
            raise ConnectionResetError
        self.sent.append(data)


def _client_info(ws, identifiers=None, live=True, last_sent=0) -> dict:
    return {"ws": ws, "identifiers": identifiers or set(),
            "live": live, "last_sent": last_sent}


# ═══════════════════════════════════════════════════════════════════
#  Reads
# ═══════════════════════════════════════════════════════════════════

class TestReads:
    @pytest.mark.asyncio
    async def test_health(self, registry, alice_did):
        client, _ = _client(registry)
        async with client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
            assert body["ok"] is True
            assert body["records"] == 1
            assert body["did_method"] == "dreg"

    @pytest.mark.asyncio
    async def test_get_record(self, registry, alice_did):
        client, _ = _client(registry)
        async with client:
            resp = await client.get(f"/did/{alice_did}")
            assert resp.status == 200
            body = await resp.json()
            assert body["identifier"] == alice_did
            assert body["controller"] == "rAlice"
            assert body["did"] == f"did:dreg:{alice_did}"

    @pytest.mark.asyncio
    async def test_get_record_absent(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.get(f"/did/{ABSENT}")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_field_reads_on_absent_are_null(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.get(f"/did/{ABSENT}/controller")
            assert resp.status == 200
            assert (await resp.json())["controller"] is None
            resp = await client.get(f"/did/{ABSENT}/subject")
            assert (await resp.json())["subject"] is None
            resp = await client.get(f"/did/{ABSENT}/keys")
            body = await resp.json()
            assert body["x"] == body["y"] == body["purposes"] == body["curves"] == []

    @pytest.mark.asyncio
    async def test_malformed_identifier_reads(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.get("/did/not-hex/controller")
            assert resp.status == 200
            body = await resp.json()
            assert body == {"identifier": None, "controller": None}


# ═══════════════════════════════════════════════════════════════════
#  Mutations
# ═══════════════════════════════════════════════════════════════════

class TestCreate:
    @pytest.mark.asyncio
    async def test_create(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.post("/did", json={"subject": "rSubjectX"}, headers=ALICE)
            assert resp.status == 201
            body = await resp.json()
            assert len(body["identifier"]) == 64
            assert body["did"] == f"did:dreg:{body['identifier']}"
        assert registry.get_controller(body["identifier"]) == "rAlice"

    @pytest.mark.asyncio
    async def test_missing_identity_header(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.post("/did", json={"subject": "rSubjectX"})
            assert resp.status == 401
        assert len(registry.store) == 0

    @pytest.mark.asyncio
    async def test_null_subject(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.post("/did", json={"subject": ""}, headers=ALICE)
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_argument"

    @pytest.mark.asyncio
    async def test_invalid_json(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.post("/did", data="{nope", headers=ALICE)
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_non_object_body(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.post("/did", json=["rSubjectX"], headers=ALICE)
            assert resp.status == 400


class TestController:
    @pytest.mark.asyncio
    async def test_transfer_then_old_controller_rejected(self, registry):
        client, _ = _client(registry)
        async with client:
            ident = await _create(client)
            resp = await client.post(f"/did/{ident}/controller",
                                     json={"controller": "rBob"}, headers=ALICE)
            assert resp.status == 200
            assert (await resp.json())["controller"] == "rBob"

            resp = await client.post(f"/did/{ident}/controller",
                                     json={"controller": "rAlice"}, headers=ALICE)
            assert resp.status == 403
            body = await resp.json()
            assert body["error"] == "unauthorized"
            assert body["identifier"] == ident

            resp = await client.get(f"/did/{ident}/controller")
            assert (await resp.json())["controller"] == "rBob"

    @pytest.mark.asyncio
    async def test_absent_identifier(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.post(f"/did/{ABSENT}/controller",
                                     json={"controller": "rBob"}, headers=ALICE)
            assert resp.status == 404
            assert (await resp.json())["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_malformed_identifier(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.post("/did/zz/controller",
                                     json={"controller": "rBob"}, headers=ALICE)
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_missing_controller_field(self, registry, alice_did):
        client, _ = _client(registry)
        async with client:
            resp = await client.post(f"/did/{alice_did}/controller", json={}, headers=ALICE)
            assert resp.status == 400
        assert registry.get_controller(alice_did) == "rAlice"


class TestKeys:
    @pytest.mark.asyncio
    async def test_add_and_list(self, registry, alice_did, p256_key):
        x, y = p256_key
        client, _ = _client(registry)
        async with client:
            resp = await client.post(
                f"/did/{alice_did}/keys",
                json={"x": x.hex(), "y": "0x" + y.hex(), "purpose": "signing",
                      "curve": "P-256"},
                headers=ALICE,
            )
            assert resp.status == 201
            assert (await resp.json())["position"] == 0

            resp = await client.get(f"/did/{alice_did}/keys")
            body = await resp.json()
            assert body["x"] == [x.hex()]
            assert body["y"] == [y.hex()]
            assert body["purposes"] == [1]
            assert body["curves"] == ["P-256"]

    @pytest.mark.asyncio
    async def test_missing_fields(self, registry, alice_did):
        client, _ = _client(registry)
        async with client:
            resp = await client.post(f"/did/{alice_did}/keys",
                                     json={"x": "00" * 32}, headers=ALICE)
            assert resp.status == 400
            assert "purpose" in await resp.text()

    @pytest.mark.asyncio
    async def test_off_curve_point(self, registry, alice_did):
        client, _ = _client(registry)
        async with client:
            resp = await client.post(
                f"/did/{alice_did}/keys",
                json={"x": "01" * 32, "y": "02" * 32, "purpose": 0, "curve": "P-256"},
                headers=ALICE,
            )
            assert resp.status == 400
        assert registry.get_keys(alice_did) == ((), (), (), ())

    @pytest.mark.asyncio
    async def test_non_controller(self, registry, alice_did, p256_key):
        x, y = p256_key
        client, _ = _client(registry)
        async with client:
            resp = await client.post(
                f"/did/{alice_did}/keys",
                json={"x": x.hex(), "y": y.hex(), "purpose": 1, "curve": "P-256"},
                headers=BOB,
            )
            assert resp.status == 403


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete(self, registry, alice_did):
        client, _ = _client(registry)
        async with client:
            resp = await client.delete(f"/did/{alice_did}", headers=BOB)
            assert resp.status == 403
            resp = await client.delete(f"/did/{alice_did}", headers=ALICE)
            assert resp.status == 200
            resp = await client.get(f"/did/{alice_did}")
            assert resp.status == 404
            resp = await client.delete(f"/did/{alice_did}", headers=ALICE)
            assert resp.status == 404


# ═══════════════════════════════════════════════════════════════════
#  Middleware
# ═══════════════════════════════════════════════════════════════════

class TestAPIKeyAuth:
    @pytest.mark.asyncio
    async def test_get_allowed_without_key(self, registry):
        client, _ = _client(registry, _api_config(api_key="secret123"))
        async with client:
            resp = await client.get("/health")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_post_rejected_without_key(self, registry):
        client, _ = _client(registry, _api_config(api_key="secret123"))
        async with client:
            resp = await client.post("/did", json={"subject": "rS"}, headers=ALICE)
            assert resp.status == 401
        assert len(registry.store) == 0

    @pytest.mark.asyncio
    async def test_post_allowed_with_key(self, registry):
        client, _ = _client(registry, _api_config(api_key="secret123"))
        async with client:
            resp = await client.post("/did", json={"subject": "rS"},
                                     headers={**ALICE, "X-API-Key": "secret123"})
            assert resp.status == 201


class TestCORS:
    @pytest.mark.asyncio
    async def test_allowed_origin(self, registry):
        client, _ = _client(registry, _api_config(cors_origins=["https://wallet.example"]))
        async with client:
            resp = await client.get("/health", headers={"Origin": "https://wallet.example"})
            assert resp.headers["Access-Control-Allow-Origin"] == "https://wallet.example"

    @pytest.mark.asyncio
    async def test_other_origin(self, registry):
        client, _ = _client(registry, _api_config(cors_origins=["https://wallet.example"]))
        async with client:
            resp = await client.get("/health", headers={"Origin": "https://evil.example"})
            assert "Access-Control-Allow-Origin" not in resp.headers


class TestRateLimit:
    def test_bucket_limits(self):
        bucket = _TokenBucket(3)
        assert all(bucket.allow("1.2.3.4") for _ in range(3))
        assert not bucket.allow("1.2.3.4")
        assert bucket.allow("5.6.7.8")

    def test_unlimited(self):
        bucket = _TokenBucket(0)
        assert all(bucket.allow("x") for _ in range(500))

    @pytest.mark.asyncio
    async def test_429_after_limit(self, registry):
        client, _ = _client(registry, _api_config(rate_limit_rpm=2))
        async with client:
            assert (await client.get("/health")).status == 200
            assert (await client.get("/health")).status == 200
            assert (await client.get("/health")).status == 429


# ═══════════════════════════════════════════════════════════════════
#  Events
# ═══════════════════════════════════════════════════════════════════

class TestEventsEndpoint:
    @pytest.mark.asyncio
    async def test_history(self, registry, alice_did):
        registry.set_controller("rAlice", alice_did, "rBob")
        client, _ = _client(registry)
        async with client:
            resp = await client.get("/events")
            body = await resp.json()
            assert body["last_sequence"] == 2
            assert [e["type"] for e in body["events"]] == ["created", "controller_changed"]
            assert body["events"][1]["new_controller"] == "rBob"

            resp = await client.get("/events?since=1")
            assert len((await resp.json())["events"]) == 1

    @pytest.mark.asyncio
    async def test_bad_since(self, registry):
        client, _ = _client(registry)
        async with client:
            resp = await client.get("/events?since=abc")
            assert resp.status == 400


class TestWebSocket:
    @pytest.mark.asyncio
    async def test_ping(self, registry):
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws")
            await ws.send_json({"command": "ping"})
            assert await ws.receive_json(timeout=5) == {"type": "pong"}
            await ws.close()

    @pytest.mark.asyncio
    async def test_bad_messages(self, registry):
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws")
            await ws.send_str("{nope")
            assert "error" in await ws.receive_json(timeout=5)
            await ws.send_str("[1, 2]")
            assert "error" in await ws.receive_json(timeout=5)
            await ws.send_json({"command": "dance"})
            assert "Unknown command" in (await ws.receive_json(timeout=5))["error"]
            await ws.close()

    @pytest.mark.asyncio
    async def test_replay_since(self, registry, alice_did):
        registry.delete_did("rAlice", alice_did)
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws?since=0")
            first = await ws.receive_json(timeout=5)
            second = await ws.receive_json(timeout=5)
            assert [first["type"], second["type"]] == ["created", "deleted"]
            await ws.close()

    @pytest.mark.asyncio
    async def test_push_in_order(self, registry):
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws")
            await ws.send_json({"command": "ping"})
            await ws.receive_json(timeout=5)

            ident = await _create(client)
            await client.post(f"/did/{ident}/controller",
                              json={"controller": "rBob"}, headers=ALICE)
            await client.delete(f"/did/{ident}", headers=BOB)

            received = [await ws.receive_json(timeout=5) for _ in range(3)]
            assert [m["type"] for m in received] == [
                "created", "controller_changed", "deleted",
            ]
            assert all(m["identifier"] == ident for m in received)
            assert [m["sequence"] for m in received] == [1, 2, 3]
            await ws.close()

    @pytest.mark.asyncio
    async def test_subscription_filter(self, registry, alice_did):
        other = registry.create_did("rBob", "rSubjectY")
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws")
            await ws.send_json({"command": "subscribe", "identifiers": [alice_did]})
            ack = await ws.receive_json(timeout=5)
            assert ack["identifiers"] == [alice_did]

            registry.set_controller("rBob", other, "rCarol")
            registry.set_controller("rAlice", alice_did, "rDave")

            msg = await ws.receive_json(timeout=5)
            assert msg["identifier"] == alice_did
            assert msg["new_controller"] == "rDave"
            await ws.close()

    @pytest.mark.asyncio
    async def test_mutation_from_worker_thread(self, registry, alice_did):
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws")
            await ws.send_json({"command": "ping"})
            await ws.receive_json(timeout=5)

            await asyncio.get_running_loop().run_in_executor(
                None, registry.set_controller, "rAlice", alice_did, "rBob",
            )
            msg = await ws.receive_json(timeout=5)
            assert msg["type"] == "controller_changed"
            await ws.close()

    @pytest.mark.asyncio
    async def test_replay_joins_live_feed_without_gaps(self, registry, alice_did):
        owners = ["rAlice", "rBob"]

        def hand_over(rounds, start):
            for n in range(start, start + rounds):
                registry.set_controller(owners[n % 2], alice_did, owners[(n + 1) % 2])

        hand_over(10, 0)
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws?since=0")
            writer = asyncio.get_running_loop().run_in_executor(None, hand_over, 10, 10)
            sequences: list[int] = []
            while not sequences or sequences[-1] < 21:
                sequences.append((await ws.receive_json(timeout=5))["sequence"])
            await writer
            assert sequences == list(range(1, 22))
            await ws.close()

    @pytest.mark.asyncio
    async def test_since_skips_older_events(self, registry, alice_did):
        registry.set_controller("rAlice", alice_did, "rBob")
        client, _ = _client(registry)
        async with client:
            ws = await client.ws_connect("/ws?since=1")
            first = await ws.receive_json(timeout=5)
            assert first["sequence"] == 2
            registry.delete_did("rBob", alice_did)
            second = await ws.receive_json(timeout=5)
            assert second["sequence"] == 3
            await ws.close()


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_filters_and_dead_clients(self, registry):
        api = APIServer(registry)
        everyone, narrow, dead = _FakeWS(), _FakeWS(), _FakeWS(fail=True)
        api._ws_clients = {
            1: _client_info(everyone),
            2: _client_info(narrow, identifiers={"aa" * 32}),
            3: _client_info(dead),
        }
        event = Event(1, EventType.DELETED, "bb" * 32)
        await api.broadcast_event(event)
        assert everyone.sent == [event.to_dict()]
        assert narrow.sent == []
        assert json.dumps(everyone.sent[0])  # serialisable
        assert api._ws_clients[1]["last_sent"] == 1
        assert api._ws_clients[3]["last_sent"] == 0

    @pytest.mark.asyncio
    async def test_replaying_client_skipped(self, registry):
        api = APIServer(registry)
        replaying = _FakeWS()
        api._ws_clients = {1: _client_info(replaying, live=False)}
        await api.broadcast_event(Event(1, EventType.CREATED, "bb" * 32))
        assert replaying.sent == []

    @pytest.mark.asyncio
    async def test_already_replayed_sequence_not_resent(self, registry):
        api = APIServer(registry)
        caught_up = _FakeWS()
        api._ws_clients = {1: _client_info(caught_up, last_sent=3)}
        for seq in (2, 3, 4):
            await api.broadcast_event(Event(seq, EventType.CREATED, "bb" * 32))
        assert [m["sequence"] for m in caught_up.sent] == [4]
        assert api._ws_clients[1]["last_sent"] == 4
