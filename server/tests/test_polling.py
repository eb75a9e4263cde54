import json

import pytest
from aiohttp import test_utils

from handlers.http_routes import create_http_app
from handlers.polling import PollingTransport
from services.rate_limiter import RateLimiter


async def fake_runner(timeout_ms, url=None):
    return {"ok": True}


def make_client(relay, **kwargs):
    polling = PollingTransport(relay, **kwargs)
    app = create_http_app(relay, "ws://127.0.0.1:1", selftest_runner=fake_runner, polling=polling)
    return polling, test_utils.TestClient(test_utils.TestServer(app))


async def poll(client, connection_id):
    resp = await client.get(f"/poll/{connection_id}")
    assert resp.status == 200
    return [m["msg_type"] for m in (await resp.json())["messages"]]


def frame(msg_type, payload):
    return {"msg_type": msg_type, "payload": payload}


@pytest.mark.asyncio
async def test_polling_session_round_trip(relay):
    _, client = make_client(relay, wait=0.05)
    async with client:
        resp = await client.post("/poll")
        connection_id = (await resp.json())["id"]

        assert await poll(client, connection_id) == ["welcome"]

        resp = await client.post(f"/poll/{connection_id}",
                                 json=[frame("join-room", {"roomId": "jam"}), frame("ping", {"timestamp": 7})])
        assert resp.status == 204
        assert await poll(client, connection_id) == ["joined-room", "presence-updated", "pong"]

        # nothing queued: the poll times out empty
        assert await poll(client, connection_id) == []
        assert relay.registry.rooms() == {"JAM": 1}

        resp = await client.delete(f"/poll/{connection_id}")
        assert resp.status == 204
        assert relay.registry.rooms() == {}
        resp = await client.get(f"/poll/{connection_id}")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_polling_and_memory_clients_share_rooms(relay, connect):
    ann = connect("ann")
    relay.dispatch("ann", "join-room", {"roomId": "jam", "username": "Ann"})

    _, client = make_client(relay, wait=0.05)
    async with client:
        connection_id = (await (await client.post("/poll")).json())["id"]
        await client.post(f"/poll/{connection_id}", json=frame("join-room", {"roomId": "jam"}))
        ann.pending()

        await client.post(f"/poll/{connection_id}",
                          json=frame("signal", {"to": "ann", "roomId": "jam", "data": {"candidate": {}}}))

        [signal] = ann.events("signal")
        assert signal["payload"]["from"] == connection_id


@pytest.mark.asyncio
async def test_unknown_channel_is_404(relay):
    _, client = make_client(relay)
    async with client:
        for method in ("get", "post", "delete"):
            resp = await getattr(client, method)("/poll/nope")
            assert resp.status == 404


@pytest.mark.asyncio
async def test_malformed_submissions_are_ignored(relay):
    _, client = make_client(relay, wait=0.05)
    async with client:
        connection_id = (await (await client.post("/poll")).json())["id"]
        await poll(client, connection_id)

        resp = await client.post(f"/poll/{connection_id}", data="{broken")
        assert resp.status == 204
        resp = await client.post(f"/poll/{connection_id}", json=[1, "x", {"msg_type": "ping"}])
        assert resp.status == 204
        assert await poll(client, connection_id) == ["pong"]


@pytest.mark.asyncio
async def test_deeply_nested_body_is_dropped_silently(relay):
    _, client = make_client(relay, wait=0.05)
    async with client:
        connection_id = (await (await client.post("/poll")).json())["id"]
        await client.post(f"/poll/{connection_id}", json=frame("join-room", {"roomId": "jam"}))
        await poll(client, connection_id)

        resp = await client.post(f"/poll/{connection_id}", data="[" * 200000)
        assert resp.status == 204
        assert relay.registry.rooms() == {"JAM": 1}

        await client.post(f"/poll/{connection_id}", json=frame("ping", {"timestamp": 3}))
        assert await poll(client, connection_id) == ["pong"]


@pytest.mark.asyncio
async def test_rate_limited_channel_gets_429_but_stays_open(relay):
    limiter = RateLimiter(window=5, max_hits=3, ban=30)
    _, client = make_client(relay, limiter=limiter, wait=0.05)
    async with client:
        connection_id = (await (await client.post("/poll")).json())["id"]
        await poll(client, connection_id)

        resp = await client.post(f"/poll/{connection_id}",
                                 json=[frame("join-room", {"roomId": "jam"})] +
                                      [frame("ping", {"timestamp": i}) for i in range(3)])
        assert resp.status == 429

        # frames before the limit were still handled
        assert await poll(client, connection_id) == ["joined-room", "presence-updated", "pong", "pong"]
        assert relay.connection_count() == 1
        assert relay.registry.rooms() == {"JAM": 1}

        # banned: further submissions are refused while the channel lives on
        resp = await client.post(f"/poll/{connection_id}", json=frame("ping", {"timestamp": 9}))
        assert resp.status == 429
        assert await poll(client, connection_id) == []


@pytest.mark.asyncio
async def test_idle_channels_expire(relay):
    polling, client = make_client(relay, idle_timeout=60)
    async with client:
        stale = (await (await client.post("/poll")).json())["id"]
        fresh = (await (await client.post("/poll")).json())["id"]
        await client.post(f"/poll/{stale}", json=frame("join-room", {"roomId": "jam"}))
        polling.channels[stale].last_seen -= 120

        assert polling.sweep() == 1

        assert stale not in relay.sessions
        assert fresh in relay.sessions
        assert relay.registry.rooms() == {}


@pytest.mark.asyncio
async def test_envelopes_are_valid_json(relay):
    _, client = make_client(relay, wait=0.05)
    async with client:
        connection_id = (await (await client.post("/poll")).json())["id"]
        resp = await client.get(f"/poll/{connection_id}")
        body = json.loads(await resp.text())
        [welcome] = body["messages"]
        assert welcome["payload"] == {"id": connection_id}
        assert {"message_id", "timestamp", "msg_type", "payload"} <= set(welcome)
