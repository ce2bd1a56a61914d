from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from fastapi import WebSocket, WebSocketDisconnect

from app.api.models import CommittedMutation, Snapshot
from app.canvas.broadcast import Subscription
from app.canvas.service import CanvasService
from app.errors import GridStoreUnavailable

logger = logging.getLogger(__name__)

# "Try again later": the canvas hasn't been loaded from storage yet.
STORE_UNAVAILABLE_CLOSE_CODE = 1013


def snapshot_message(snapshot: Snapshot) -> dict[str, object]:
    return {"type": "snapshot", **snapshot.model_dump()}


def mutation_message(mutation: CommittedMutation) -> dict[str, object]:
    return {"type": "pixel_update", **mutation.model_dump()}


@dataclass(eq=False, slots=True)
class _ObserverSession:
    websocket: WebSocket
    sub: Subscription


class CanvasWebSocketHub:
    """Serves canvas observers over WebSocket.

    Contract, per connection:
      - first message is a `snapshot`, taken atomically with the subscription.
      - then one `pixel_update` per commit, in commit order.
      - a client that falls too far behind gets `{"type": "resync"}` and a fresh snapshot.
      - the client may send `{"type": "snapshot"}` at any time to get a fresh snapshot
        in stream order.
      - if the canvas can't be loaded from storage the client gets
        `{"type": "error", "error": "grid_store_unavailable"}` and a 1013 close.

    Note: this is in-process only. Observers of another replica don't see these commits.
    """

    def __init__(self) -> None:
        self._sessions: set[_ObserverSession] = set()
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._sessions)

    async def serve(self, websocket: WebSocket, service: CanvasService) -> None:
        await websocket.accept()
        try:
            sub, snapshot = await service.attach_observer()
        except GridStoreUnavailable as e:
            logger.warning("Refusing canvas observer: %s", e.detail)
            await websocket.send_json({"type": "error", "error": e.reason.value})
            await websocket.close(code=STORE_UNAVAILABLE_CLOSE_CODE)
            return
        session = _ObserverSession(websocket=websocket, sub=sub)
        async with self._lock:
            self._sessions.add(session)

        pump = asyncio.create_task(self._pump(session, service, snapshot))
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                # Binary frames are ignored.
                raw = message.get("text")
                if raw is not None and _wants_snapshot(raw):
                    await service.resync(session.sub)
        except WebSocketDisconnect:
            pass
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            service.detach_observer(session.sub)
            async with self._lock:
                self._sessions.discard(session)

    async def _pump(self, session: _ObserverSession, service: CanvasService, first: Snapshot) -> None:
        ws = session.websocket
        await ws.send_json(snapshot_message(first))
        while True:
            item = await session.sub.queue.get()
            if item is None:
                await ws.send_json({"type": "resync"})
                session.sub, snapshot = await service.attach_observer()
                await ws.send_json(snapshot_message(snapshot))
            elif isinstance(item, Snapshot):
                await ws.send_json(snapshot_message(item))
            else:
                await ws.send_json(mutation_message(item))


def _wants_snapshot(raw: str) -> bool:
    try:
        msg = json.loads(raw)
    except ValueError:
        return False
    return isinstance(msg, dict) and msg.get("type") == "snapshot"


hub = CanvasWebSocketHub()
