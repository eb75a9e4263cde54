import asyncio
import json

import pytest
from websockets import connect, serve
from websockets.exceptions import ConnectionClosed

from handlers.connection import ConnectionHandler, new_connection_id
from services.channels import decode_frame
from services.rate_limiter import RateLimiter


def frame(msg_type, payload=None):
    return json.dumps({"msg_type": msg_type, "payload": payload or {}})


async def recv_event(ws, msg_type):
    """Read envelopes until one of the given type arrives."""
    while True:
        message = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
        if message["msg_type"] == msg_type:
            return message


def test_connection_ids_are_unique():
    ids = {new_connection_id() for _ in range(1000)}
    assert len(ids) == 1000


def test_decode_frame():
    assert decode_frame('{"msg_type": "ping", "payload": {"timestamp": 1}}') == {
        "msg_type": "ping", "payload": {"timestamp": 1}}
    assert decode_frame(b'{"msg_type": "ping"}') == {"msg_type": "ping", "payload": {}}
    assert decode_frame("not json") is None
    assert decode_frame("[1, 2]") is None
    assert decode_frame('{"msg_type": 5}') is None
    assert decode_frame('{"msg_type": "ping", "payload": []}') is None
    assert decode_frame(b"\xff\xfe") is None
    assert decode_frame("[" * 200000) is None


@pytest.mark.asyncio
async def test_join_and_ping_over_websocket(relay):
    handler = ConnectionHandler(relay)
    async with serve(handler.handle_connection, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        async with connect(f"ws://127.0.0.1:{port}") as ws:
            welcome = await recv_event(ws, "welcome")
            my_id = welcome["payload"]["id"]

            await ws.send("not json at all")
            await ws.send(frame("join-room", {"roomId": "jam", "username": "Ann"}))
            joined = await recv_event(ws, "joined-room")
            assert joined["payload"]["roomId"] == "JAM"
            assert joined["payload"]["selfId"] == my_id

            await ws.send(frame("ping", {"timestamp": 42}))
            pong = await recv_event(ws, "pong")
            assert pong["payload"] == {"timestamp": 42}
            assert relay.connection_count() == 1


@pytest.mark.asyncio
async def test_deeply_nested_frame_keeps_client_in_room(relay):
    handler = ConnectionHandler(relay)
    async with serve(handler.handle_connection, "127.0.0.1", 0) as server:
        async with connect(f"ws://127.0.0.1:{server.sockets[0].getsockname()[1]}") as ws:
            await recv_event(ws, "welcome")
            await ws.send(frame("join-room", {"roomId": "jam"}))
            await recv_event(ws, "joined-room")

            await ws.send("[" * 200000)
            await ws.send(frame("ping", {"timestamp": 1}))

            assert (await recv_event(ws, "pong"))["payload"] == {"timestamp": 1}
            assert relay.registry.rooms() == {"JAM": 1}
            assert relay.connection_count() == 1


@pytest.mark.asyncio
async def test_closing_socket_announces_departure(relay):
    handler = ConnectionHandler(relay)
    async with serve(handler.handle_connection, "127.0.0.1", 0) as server:
        url = f"ws://127.0.0.1:{server.sockets[0].getsockname()[1]}"
        async with connect(url) as ann, connect(url) as bob:
            ann_id = (await recv_event(ann, "welcome"))["payload"]["id"]
            await recv_event(bob, "welcome")

            await ann.send(frame("join-room", {"roomId": "jam", "username": "Ann"}))
            await recv_event(ann, "joined-room")
            await bob.send(frame("join-room", {"roomId": "jam", "username": "Bob"}))
            await recv_event(bob, "joined-room")

            await ann.close()
            left = await recv_event(bob, "participant-left")
            assert left["payload"] == {"id": ann_id, "username": "Ann"}
            presence = await recv_event(bob, "presence-updated")
            assert [u["username"] for u in presence["payload"]["users"]] == ["Bob"]

    assert relay.registry.rooms() == {}


@pytest.mark.asyncio
async def test_flooding_client_is_closed_with_policy_code(relay):
    handler = ConnectionHandler(relay, RateLimiter(window=5, max_hits=3, ban=30))
    async with serve(handler.handle_connection, "127.0.0.1", 0) as server:
        async with connect(f"ws://127.0.0.1:{server.sockets[0].getsockname()[1]}") as ws:
            for i in range(5):
                await ws.send(frame("ping", {"timestamp": i}))

            with pytest.raises(ConnectionClosed) as excinfo:
                while True:
                    await asyncio.wait_for(ws.recv(), timeout=5)

    assert excinfo.value.rcvd.code == 4008
    assert relay.connection_count() == 0
