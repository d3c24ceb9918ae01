"""Tests for site-scoped WebSocket fan-out."""

import asyncio
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.websocket import (
    SUBSCRIPTION_UPDATED,
    WS_CLOSE_SEND_FAILED,
    SiteBroadcaster,
    dispatch_event,
    handle_client_message,
    router,
)

from conftest import RecordingSender


async def wait_until(predicate, timeout=1.0):
    """Poll until ``predicate()`` holds; writer tasks deliver asynchronously."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


class GatedSender(RecordingSender):
    """Blocks every send until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def send_text(self, data):
        await self.gate.wait()
        self.frames.append(data)


class StuckSender(RecordingSender):
    async def send_text(self, data):
        await asyncio.Event().wait()


class BrokenSender(RecordingSender):
    async def send_text(self, data):
        raise ConnectionResetError("peer gone")


@pytest.fixture
async def broadcaster():
    b = SiteBroadcaster()
    yield b
    await b.close()


class TestMembership:

    async def test_subscribe_is_additive(self, broadcaster):
        cid = await broadcaster.register(RecordingSender())
        assert await broadcaster.subscribe(cid, [5]) == [5]
        assert await broadcaster.subscribe(cid, [7, 5]) == [5, 7]
        assert broadcaster.subscribers_for(5) == {cid}
        assert broadcaster.subscribers_for(7) == {cid}

    async def test_unsubscribe(self, broadcaster):
        cid = await broadcaster.register(RecordingSender())
        await broadcaster.subscribe(cid, [5, 6])
        assert await broadcaster.unsubscribe(cid, [5]) == [6]
        assert broadcaster.subscribers_for(5) == frozenset()
        assert broadcaster.sites_for(cid) == [6]

    async def test_disconnect_clears_membership(self, broadcaster):
        cid = await broadcaster.register(RecordingSender())
        await broadcaster.subscribe(cid, [5, 6])
        await broadcaster.disconnect(cid)
        assert broadcaster.client_count == 0
        assert broadcaster.subscribers_for(5) == frozenset()
        assert broadcaster.subscribers_for(6) == frozenset()
        assert broadcaster.sites_for(cid) == []

    async def test_unknown_client_is_ignored(self, broadcaster):
        assert await broadcaster.subscribe("nobody", [5]) == []
        await broadcaster.disconnect("nobody")


class TestDelivery:

    async def test_event_reaches_only_its_site(self, broadcaster):
        site5, site6 = RecordingSender(), RecordingSender()
        c5 = await broadcaster.register(site5)
        c6 = await broadcaster.register(site6)
        await broadcaster.subscribe(c5, [5])
        await broadcaster.subscribe(c6, [6])

        results = await asyncio.gather(*(
            broadcaster.broadcast(6 if i % 2 else 5, "SensorUpdate", {"seq": i})
            for i in range(20)
        ))
        await wait_until(lambda: len(site5.frames) == 10 and len(site6.frames) == 10)

        assert results == [1] * 20
        assert all(json.loads(f)["data"]["seq"] % 2 == 0 for f in site5.frames)
        assert all(json.loads(f)["data"]["seq"] % 2 == 1 for f in site6.frames)

    async def test_frame_shape(self, broadcaster):
        sender = RecordingSender()
        cid = await broadcaster.register(sender)
        await broadcaster.subscribe(cid, [5])
        await broadcaster.broadcast(5, "NewAlarm", {"sensorTag": "Det_01"})
        await wait_until(lambda: sender.frames)
        assert json.loads(sender.frames[0]) == {"type": "NewAlarm", "data": {"sensorTag": "Det_01"}}

    async def test_no_subscribers(self, broadcaster):
        assert await broadcaster.broadcast(9, "SensorUpdate", {}) == 0

    async def test_stuck_client_does_not_block_others(self):
        broadcaster = SiteBroadcaster(send_timeout=0.05)
        fast, stuck = RecordingSender(), StuckSender()
        try:
            c_stuck = await broadcaster.register(stuck)
            c_fast = await broadcaster.register(fast)
            await broadcaster.subscribe(c_stuck, [5])
            await broadcaster.subscribe(c_fast, [5])

            for i in range(10):
                await broadcaster.broadcast(5, "SensorUpdate", {"seq": i})
            await wait_until(lambda: len(fast.frames) == 10)

            await wait_until(lambda: stuck.close_code is not None)
            assert stuck.close_code == WS_CLOSE_SEND_FAILED
            assert broadcaster.client_count == 1
            assert broadcaster.subscribers_for(5) == {c_fast}
        finally:
            await broadcaster.close()

    async def test_failed_send_closes_socket(self, broadcaster):
        sender = BrokenSender()
        cid = await broadcaster.register(sender)
        await broadcaster.subscribe(cid, [5])
        await broadcaster.broadcast(5, "SensorUpdate", {"seq": 0})

        await wait_until(lambda: sender.close_code is not None)
        assert sender.close_code == WS_CLOSE_SEND_FAILED
        assert broadcaster.client_count == 0
        assert broadcaster.subscribers_for(5) == frozenset()
        assert await broadcaster.send_to(cid, "pong") is False

    async def test_full_outbox_drops_oldest(self):
        broadcaster = SiteBroadcaster(outbox_size=2)
        sender = GatedSender()
        try:
            cid = await broadcaster.register(sender)
            await broadcaster.subscribe(cid, [5])

            for i in range(5):
                await broadcaster.broadcast(5, "SensorUpdate", {"seq": i})
            sender.gate.set()
            await wait_until(lambda: len(sender.frames) == 2)

            assert [json.loads(f)["data"]["seq"] for f in sender.frames] == [3, 4]
        finally:
            await broadcaster.close()


class TestClientMessages:

    async def test_ping(self, broadcaster):
        cid = await broadcaster.register(RecordingSender())
        assert await handle_client_message(broadcaster, cid, "ping") == "pong"

    async def test_subscribe_and_unsubscribe(self, broadcaster):
        cid = await broadcaster.register(RecordingSender())
        reply = await handle_client_message(
            broadcaster, cid, json.dumps({"action": "subscribe", "siteIds": [5, 6]})
        )
        assert reply == {"type": SUBSCRIPTION_UPDATED, "siteIds": [5, 6]}
        reply = await handle_client_message(
            broadcaster, cid, json.dumps({"action": "unsubscribe", "siteIds": [6]})
        )
        assert reply == {"type": SUBSCRIPTION_UPDATED, "siteIds": [5]}

    async def test_invalid_frame(self, broadcaster):
        cid = await broadcaster.register(RecordingSender())
        reply = await handle_client_message(broadcaster, cid, "{not json")
        assert reply["type"] == "error"

    async def test_unknown_action(self, broadcaster):
        cid = await broadcaster.register(RecordingSender())
        reply = await handle_client_message(broadcaster, cid, json.dumps({"action": "explode"}))
        assert reply["type"] == "error"
        assert broadcaster.sites_for(cid) == []


class TestDispatchEvent:

    async def test_routes_by_site(self, broadcaster):
        sender = RecordingSender()
        cid = await broadcaster.register(sender)
        await broadcaster.subscribe(cid, [5])
        frame = json.dumps({"type": "SensorUpdate", "siteId": 5, "data": {"id": "5_41"}})
        assert await dispatch_event(broadcaster, frame.encode()) == 1
        assert await dispatch_event(broadcaster, frame.replace('"siteId": 5', '"siteId": 6')) == 0
        await wait_until(lambda: sender.frames)
        assert len(sender.frames) == 1

    @pytest.mark.parametrize("raw", [b"garbage", b'{"type": "x"}', b'{"type": "x", "siteId": "a", "data": {}}'])
    async def test_malformed_frames_dropped(self, broadcaster, raw):
        assert await dispatch_event(broadcaster, raw) == 0


class TestEndpoint:

    def test_ping_and_subscribe_over_websocket(self):
        app = FastAPI()
        app.include_router(router)
        app.state.broadcaster = SiteBroadcaster()

        with TestClient(app) as client:
            with client.websocket_connect("/ws/monitoring") as ws:
                ws.send_text("ping")
                assert ws.receive_text() == "pong"
                ws.send_text(json.dumps({"action": "subscribe", "siteIds": [5]}))
                assert ws.receive_json() == {"type": SUBSCRIPTION_UPDATED, "siteIds": [5]}
