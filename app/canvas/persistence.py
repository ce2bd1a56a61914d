from __future__ import annotations

import asyncio
import logging
import threading
from typing import Protocol

import redis
from pydantic import BaseModel, Field

from app.api.models import Cell, Participant, PendingAuthorization

logger = logging.getLogger(__name__)


CANVAS_KEY_PREFIX = "canvas:"  # + {namespace}:{cells|participants|authorizations|seq}


class PersistedCanvas(BaseModel):
    """Everything that has to survive a restart. Also used as a delta (merge semantics)."""

    cells: list[Cell] = Field(default_factory=list)
    participants: list[Participant] = Field(default_factory=list)
    authorizations: list[PendingAuthorization] = Field(default_factory=list)
    # Authorization ids pruned since the last write.
    removed_authorizations: list[str] = Field(default_factory=list)
    seq: int = 0

    def merge(self, newer: PersistedCanvas) -> PersistedCanvas:
        cells = {(c.x, c.y): c for c in self.cells}
        cells.update({(c.x, c.y): c for c in newer.cells})
        participants = {p.participant_id: p for p in self.participants}
        participants.update({p.participant_id: p for p in newer.participants})
        auths = {a.authorization_id: a for a in self.authorizations}
        auths.update({a.authorization_id: a for a in newer.authorizations})
        removed = set(self.removed_authorizations) - {a.authorization_id for a in newer.authorizations}
        removed.update(newer.removed_authorizations)
        for aid in removed:
            auths.pop(aid, None)
        return PersistedCanvas(
            cells=list(cells.values()),
            participants=list(participants.values()),
            authorizations=list(auths.values()),
            removed_authorizations=sorted(removed),
            seq=max(self.seq, newer.seq),
        )

    def is_empty(self) -> bool:
        return not (self.cells or self.participants or self.authorizations or self.removed_authorizations) and self.seq == 0


class CanvasPersistence(Protocol):
    def load(self) -> PersistedCanvas: ...

    def persist(self, delta: PersistedCanvas) -> None: ...


class InMemoryCanvasPersistence:
    """Process-local persistence; state is lost on restart. For dev and tests."""

    def __init__(self, initial: PersistedCanvas | None = None) -> None:
        self._state = initial or PersistedCanvas()
        self._lock = threading.Lock()

    def load(self) -> PersistedCanvas:
        with self._lock:
            return self._state.model_copy(deep=True)

    def persist(self, delta: PersistedCanvas) -> None:
        with self._lock:
            merged = self._state.merge(delta)
            self._state = merged.model_copy(update={"removed_authorizations": []})


def _cell_field(cell: Cell) -> str:
    return f"{cell.x},{cell.y}"


class RedisCanvasPersistence:
    """Canvas state in four Redis keys: three hashes of pydantic JSON plus the commit seq."""

    def __init__(self, *, r: redis.Redis, namespace: str = "default") -> None:
        self._r = r
        self._prefix = f"{CANVAS_KEY_PREFIX}{namespace}:"

    @property
    def cells_key(self) -> str:
        return f"{self._prefix}cells"

    @property
    def participants_key(self) -> str:
        return f"{self._prefix}participants"

    @property
    def authorizations_key(self) -> str:
        return f"{self._prefix}authorizations"

    @property
    def seq_key(self) -> str:
        return f"{self._prefix}seq"

    def load(self) -> PersistedCanvas:
        raw_cells = self._r.hgetall(self.cells_key)
        raw_participants = self._r.hgetall(self.participants_key)
        raw_auths = self._r.hgetall(self.authorizations_key)
        raw_seq = self._r.get(self.seq_key)
        return PersistedCanvas(
            cells=[Cell.model_validate_json(v) for v in raw_cells.values()],
            participants=[Participant.model_validate_json(v) for v in raw_participants.values()],
            authorizations=[PendingAuthorization.model_validate_json(v) for v in raw_auths.values()],
            seq=int(raw_seq) if raw_seq else 0,
        )

    def persist(self, delta: PersistedCanvas) -> None:
        if delta.is_empty():
            return
        pipe = self._r.pipeline(transaction=True)
        if delta.cells:
            pipe.hset(self.cells_key, mapping={_cell_field(c): c.model_dump_json() for c in delta.cells})
        if delta.participants:
            pipe.hset(
                self.participants_key,
                mapping={p.participant_id: p.model_dump_json() for p in delta.participants},
            )
        if delta.authorizations:
            pipe.hset(
                self.authorizations_key,
                mapping={a.authorization_id: a.model_dump_json() for a in delta.authorizations},
            )
        if delta.removed_authorizations:
            pipe.hdel(self.authorizations_key, *delta.removed_authorizations)
        if delta.seq:
            pipe.set(self.seq_key, str(delta.seq))
        pipe.execute()


class PersistenceWriter:
    """Drains persistence deltas in commit order on a background task.

    `enqueue` never blocks, so it can be called from inside the commit critical
    section. Writes run in a worker thread. A failed write is retried and then
    logged; the in-memory commit it describes stays in effect either way.
    """

    def __init__(self, persistence: CanvasPersistence, *, attempts: int = 3, backoff_s: float = 0.05) -> None:
        self._persistence = persistence
        self._attempts = max(1, attempts)
        self._backoff_s = backoff_s
        self._queue: asyncio.Queue[PersistedCanvas] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self.failures = 0

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="canvas-persistence-writer")

    async def stop(self) -> None:
        if self._task is None:
            return
        await self.flush()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def enqueue(self, delta: PersistedCanvas) -> None:
        self._queue.put_nowait(delta)

    async def flush(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            batch = await self._queue.get()
            taken = 1
            # Coalesce whatever piled up behind it.
            while not self._queue.empty():
                batch = batch.merge(self._queue.get_nowait())
                taken += 1
            try:
                await self._write(batch)
            finally:
                for _ in range(taken):
                    self._queue.task_done()

    async def _write(self, batch: PersistedCanvas) -> None:
        for attempt in range(1, self._attempts + 1):
            try:
                await asyncio.to_thread(self._persistence.persist, batch)
                return
            except (redis.RedisError, OSError) as e:
                logger.warning("Canvas persist attempt %d/%d failed: %s", attempt, self._attempts, e)
                if attempt < self._attempts:
                    await asyncio.sleep(self._backoff_s * attempt)
        self.failures += 1
        logger.error(
            "persistence_failure: dropped %d cells, %d participants after %d attempts",
            len(batch.cells),
            len(batch.participants),
            self._attempts,
        )
