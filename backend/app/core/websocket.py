"""
Real-time fan-out: WebSocket endpoint + Redis PubSub bridge.

WS /ws/monitoring: clients subscribe to site ids, receive SensorUpdate / NewAlarm
events_to_ws_bridge: background task: Redis PubSub → SiteBroadcaster.broadcast
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis

logger = logging.getLogger("monitoring.websocket")

router = APIRouter()

SUBSCRIPTION_UPDATED = "SubscriptionUpdated"
WS_CLOSE_SEND_FAILED = 1011


class TextSender(Protocol):
    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


# ---------------------------------------------------------------------------
# Site broadcaster
# ---------------------------------------------------------------------------

@dataclass
class _Subscriber:
    client_id: str
    sender: TextSender
    queue: asyncio.Queue
    sites: set[int] = field(default_factory=set)
    task: asyncio.Task | None = None


class SiteBroadcaster:
    """Owns the site → subscriber membership and delivers events per site.

    Membership changes go through one lock. Delivery only enqueues into the
    subscriber's own outbox, drained by a per-subscriber writer task, so a slow
    or dead client never holds up ingestion or other clients.
    """

    def __init__(self, *, outbox_size: int = 500, send_timeout: float = 10.0) -> None:
        self.outbox_size = outbox_size
        self.send_timeout = send_timeout
        self._lock = asyncio.Lock()
        self._subscribers: dict[str, _Subscriber] = {}
        self._by_site: dict[int, set[str]] = {}

    # -- membership ---------------------------------------------------------

    async def register(self, sender: TextSender, client_id: str | None = None) -> str:
        client_id = client_id or uuid.uuid4().hex
        sub = _Subscriber(
            client_id=client_id,
            sender=sender,
            queue=asyncio.Queue(maxsize=self.outbox_size),
        )
        async with self._lock:
            self._subscribers[client_id] = sub
        sub.task = asyncio.create_task(self._writer(sub))
        logger.info("Client %s connected (%d total)", client_id, len(self._subscribers))
        return client_id

    async def subscribe(self, client_id: str, site_ids: Iterable[int]) -> list[int]:
        async with self._lock:
            sub = self._subscribers.get(client_id)
            if sub is None:
                return []
            for site_id in site_ids:
                sub.sites.add(site_id)
                self._by_site.setdefault(site_id, set()).add(client_id)
            current = sorted(sub.sites)
        logger.info("Client %s subscribed to sites: %s", client_id, current)
        return current

    async def unsubscribe(self, client_id: str, site_ids: Iterable[int]) -> list[int]:
        async with self._lock:
            sub = self._subscribers.get(client_id)
            if sub is None:
                return []
            for site_id in site_ids:
                sub.sites.discard(site_id)
                self._drop_member(site_id, client_id)
            current = sorted(sub.sites)
        logger.info("Client %s unsubscribed, remaining sites: %s", client_id, current)
        return current

    async def disconnect(self, client_id: str) -> None:
        async with self._lock:
            sub = self._subscribers.pop(client_id, None)
            if sub is None:
                return
            for site_id in sub.sites:
                self._drop_member(site_id, client_id)
            sub.sites.clear()
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()
        logger.info("Client %s disconnected (%d remaining)", client_id, len(self._subscribers))

    def _drop_member(self, site_id: int, client_id: str) -> None:
        members = self._by_site.get(site_id)
        if members is None:
            return
        members.discard(client_id)
        if not members:
            del self._by_site[site_id]

    def subscribers_for(self, site_id: int) -> frozenset[str]:
        return frozenset(self._by_site.get(site_id, ()))

    def sites_for(self, client_id: str) -> list[int]:
        sub = self._subscribers.get(client_id)
        return sorted(sub.sites) if sub else []

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    # -- delivery -----------------------------------------------------------

    async def send_to(self, client_id: str, message: dict | str) -> bool:
        sub = self._subscribers.get(client_id)
        if sub is None:
            return False
        text = message if isinstance(message, str) else json.dumps(message, default=str)
        return self._enqueue(sub, text)

    async def broadcast(self, site_id: int, event_type: str, data: dict) -> int:
        """Queue one event for every client subscribed to ``site_id``."""
        text = json.dumps({"type": event_type, "data": data}, default=str)
        delivered = 0
        for client_id in self.subscribers_for(site_id):
            sub = self._subscribers.get(client_id)
            if sub is not None and self._enqueue(sub, text):
                delivered += 1
        return delivered

    def _enqueue(self, sub: _Subscriber, text: str) -> bool:
        try:
            sub.queue.put_nowait(text)
            return True
        except asyncio.QueueFull:
            # Drop the oldest frame so the client converges on fresh state.
            try:
                sub.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            sub.queue.put_nowait(text)
            logger.debug("Client %s outbox full, dropped oldest frame", sub.client_id)
            return True

    async def _writer(self, sub: _Subscriber) -> None:
        try:
            while True:
                text = await sub.queue.get()
                await asyncio.wait_for(sub.sender.send_text(text), timeout=self.send_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Client %s send failed: %s", sub.client_id, exc)
            await self.disconnect(sub.client_id)
            await self._close_sender(sub)

    @staticmethod
    async def _close_sender(sub: _Subscriber) -> None:
        try:
            await sub.sender.close(code=WS_CLOSE_SEND_FAILED)
        except Exception as exc:
            logger.debug("Client %s close failed: %s", sub.client_id, exc)

    async def close(self) -> None:
        for client_id in list(self._subscribers):
            await self.disconnect(client_id)


# ---------------------------------------------------------------------------
# WebSocket Endpoint
# ---------------------------------------------------------------------------

class SubscriptionRequest(BaseModel):
    action: str
    siteIds: list[int] = []


async def handle_client_message(broadcaster: SiteBroadcaster, client_id: str, data: str) -> dict | str | None:
    """Apply one inbound control frame; returns the reply to send, if any."""
    if data == "ping":
        return "pong"
    try:
        request = SubscriptionRequest.model_validate_json(data)
    except ValidationError as exc:
        logger.debug("Client %s sent invalid frame: %s", client_id, exc)
        return {"type": "error", "message": "invalid request"}

    action = request.action.lower()
    if action in ("subscribe", "subscribetosites"):
        sites = await broadcaster.subscribe(client_id, request.siteIds)
        return {"type": SUBSCRIPTION_UPDATED, "siteIds": sites}
    if action in ("unsubscribe", "unsubscribefromsites"):
        sites = await broadcaster.unsubscribe(client_id, request.siteIds)
        return {"type": SUBSCRIPTION_UPDATED, "siteIds": sites}
    return {"type": "error", "message": f"unknown action {request.action!r}"}


@router.websocket("/ws/monitoring")
async def ws_monitoring(websocket: WebSocket) -> None:
    broadcaster: SiteBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    client_id = await broadcaster.register(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            reply = await handle_client_message(broadcaster, client_id, data)
            if reply is not None and not await broadcaster.send_to(client_id, reply):
                # Writer gave up on this client and closed the socket.
                break
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.debug("WS error: %s", exc)
    finally:
        await broadcaster.disconnect(client_id)


# ---------------------------------------------------------------------------
# Redis → WebSocket Bridge (background task)
# ---------------------------------------------------------------------------

async def dispatch_event(broadcaster: SiteBroadcaster, raw: bytes | str) -> int:
    """Route one published event frame to the subscribers of its site."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        event = json.loads(raw)
        site_id = int(event["siteId"])
        event_type = event["type"]
        data = event["data"]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Dropping malformed event frame: %s", exc)
        return 0
    return await broadcaster.broadcast(site_id, event_type, data)


async def events_to_ws_bridge(redis: Redis, broadcaster: SiteBroadcaster, channel: str) -> None:
    """Subscribe to the events channel and hand every frame to the broadcaster."""
    logger.info("Redis→WS bridge started, subscribing to %s", channel)
    while True:
        pubsub = redis.pubsub()
        try:
            await pubsub.subscribe(channel)
            async for message in pubsub.listen():
                if message["type"] == "message":
                    await dispatch_event(broadcaster, message["data"])
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Redis→WS bridge error: %s", exc)
            await asyncio.sleep(2)
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.close()
            except Exception:
                pass
