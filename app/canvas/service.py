from __future__ import annotations

import asyncio
import logging
from typing import cast

import redis

from app.api.models import Cell, CommittedMutation, Participant, PendingAuthorization, Snapshot
from app.canvas.broadcast import CanvasBroadcaster, Subscription
from app.canvas.grid_store import GridStore
from app.canvas.participants import Identity, ParticipantRegistry
from app.canvas.persistence import CanvasPersistence, PersistedCanvas, PersistenceWriter
from app.canvas.pipeline import MutationPipeline
from app.canvas.rate_gate import RateGate
from app.canvas.snapshot import take_snapshot
from app.canvas.validators import MutationContext, pipeline_for_action
from app.clock import Clock, SystemClock
from app.colors import normalize_color
from app.config import CanvasSettings
from app.errors import CanvasRejection, GridStoreUnavailable, Rejected, RejectionReason
from app.payments.processor import PaymentProcessor
from app.payments.workflow import BypassWorkflow

logger = logging.getLogger(__name__)


class CanvasService:
    """One canvas instance: store, gate, bypass workflow, pipeline, fan-out and persistence.

    Routes and the WebSocket hub only talk to this class.
    """

    def __init__(
        self,
        *,
        settings: CanvasSettings,
        persistence: CanvasPersistence,
        processor: PaymentProcessor | None = None,
        clock: Clock | None = None,
        broadcaster: CanvasBroadcaster | None = None,
        sweep_interval_s: float = 60.0,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self.persistence = persistence
        self.writer = PersistenceWriter(persistence)
        self.grid = GridStore(width=settings.width, height=settings.height)
        self.participants = ParticipantRegistry()
        self.gate = RateGate(cooldown_ms=settings.cooldown_ms)
        self.broadcaster = broadcaster or CanvasBroadcaster()
        self.bypass = BypassWorkflow(
            ttl_ms=settings.bypass_ttl_ms,
            processor=processor,
            webhook_secret=settings.payment_webhook_secret,
            on_change=self._persist_authorization,
            on_remove=self._forget_authorizations,
        )
        self.pipeline = MutationPipeline(
            grid=self.grid,
            participants=self.participants,
            gate=self.gate,
            bypass=self.bypass,
            broadcaster=self.broadcaster,
            clock=self.clock,
            on_commit=self._persist_commit,
        )
        self._sweep_interval_s = sweep_interval_s
        self._sweeper: asyncio.Task[None] | None = None
        self._load_lock = asyncio.Lock()

    # lifecycle

    async def start(self) -> None:
        await self.load()
        self.writer.start()
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="canvas-bypass-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.writer.stop()

    async def load(self) -> bool:
        """Restore the last persisted state. Until this succeeds the store rejects writes."""

        async with self._load_lock:
            if self.grid.ready:
                return True
            try:
                state = await asyncio.to_thread(self.persistence.load)
            except (redis.RedisError, OSError, ValueError) as e:
                logger.error("grid_store_unavailable: could not load canvas state: %s", e)
                return False
            self.participants.load(state.participants)
            self.bypass.load(state.authorizations)
            n = self.grid.load(state.cells, seq=state.seq)
            logger.info(
                "Canvas %dx%d loaded: %d pixels; participants loaded: %d",
                self.grid.width,
                self.grid.height,
                n,
                len(self.participants),
            )
            return True

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            n = self.bypass.expire_stale(now=self.clock.now_ms())
            if n:
                logger.info("Expired %d unconfirmed bypass authorizations", n)

    # persistence hooks (called inside critical sections; must not block)

    def _persist_commit(self, mutation: CommittedMutation, participant: Participant | None) -> None:
        self.writer.enqueue(
            PersistedCanvas(
                cells=[mutation.as_cell()],
                participants=[participant] if participant is not None else [],
                seq=mutation.seq,
            )
        )

    def _persist_authorization(self, authorization: PendingAuthorization) -> None:
        self.writer.enqueue(PersistedCanvas(authorizations=[authorization]))

    def _forget_authorizations(self, authorization_ids: list[str]) -> None:
        self.writer.enqueue(PersistedCanvas(removed_authorizations=authorization_ids))

    # identity

    def login(self, identity: Identity) -> Participant:
        participant, changed = self.participants.ensure(identity)
        if changed:
            self.writer.enqueue(PersistedCanvas(participants=[participant]))
        return participant

    def retry_after(self, participant: Participant) -> int:
        return self.gate.retry_after(participant, self.clock.now_ms())

    # writes

    async def submit(
        self,
        *,
        participant_id: str | None,
        x: object,
        y: object,
        color: object,
        bypass_authorization_id: str | None = None,
    ) -> CommittedMutation | Rejected:
        if not self.grid.ready:
            # Retry a failed startup load outside the serialization point.
            await self.load()
        return await self.pipeline.submit(
            participant_id=participant_id,
            x=x,
            y=y,
            color=color,
            bypass_authorization_id=bypass_authorization_id,
        )

    async def request_bypass(
        self,
        *,
        participant_id: str | None,
        x: object,
        y: object,
        color: object,
    ) -> PendingAuthorization | Rejected:
        ctx = MutationContext(participant_id=participant_id, x=x, y=y, color=color, action="bypass")
        try:
            pipeline_for_action(ctx.action).validate(ctx=ctx, grid=self.grid, participants=self.participants)
            canonical = normalize_color(color)
            if canonical is None:
                raise CanvasRejection(RejectionReason.invalid_color, f"{color!r} is not a #rrggbb color")
            if participant_id is None:
                raise CanvasRejection(RejectionReason.not_logged_in, "participant is not logged in")
            return await self.bypass.open(
                participant_id=participant_id,
                x=cast(int, x),
                y=cast(int, y),
                color=canonical,
                now=self.clock.now_ms(),
            )
        except CanvasRejection as e:
            return e.to_rejected()

    def get_authorization(self, authorization_id: str, *, participant_id: str | None) -> PendingAuthorization | None:
        auth = self.bypass.get(authorization_id, now=self.clock.now_ms())
        if auth is None or auth.participant_id != participant_id:
            return None
        return auth

    def handle_payment_callback(self, payload: bytes, signature_header: str | None) -> PendingAuthorization | None | Rejected:
        try:
            return self.bypass.handle_callback(payload, signature_header, now=self.clock.now_ms())
        except CanvasRejection as e:
            return e.to_rejected()

    def expire_stale(self) -> int:
        return self.bypass.expire_stale(now=self.clock.now_ms())

    # reads / observers

    def get(self, x: int, y: int) -> Cell | None:
        return self.grid.get(x, y)

    def get_snapshot(self) -> Snapshot:
        return take_snapshot(grid=self.grid, now=self.clock.now_ms())

    async def attach_observer(self) -> tuple[Subscription, Snapshot]:
        """Subscribe and snapshot atomically with respect to commits (no gap, no overlap).

        Raises GridStoreUnavailable if the persisted canvas can't be loaded yet; an empty
        snapshot then would be wrong, not just stale.
        """

        if not self.grid.ready and not await self.load():
            raise GridStoreUnavailable()
        async with self.pipeline.lock:
            sub = self.broadcaster.subscribe()
            return sub, self.get_snapshot()

    async def resync(self, sub: Subscription) -> None:
        """Queue a fresh snapshot in the subscriber's stream, in commit order."""

        async with self.pipeline.lock:
            if sub.dropped:
                return
            if not sub.offer(self.get_snapshot()):
                self.broadcaster.drop(sub)

    def detach_observer(self, sub: Subscription) -> None:
        self.broadcaster.unsubscribe(sub)

    # admin

    def export_cells(self) -> list[Cell]:
        return self.grid.snapshot()

    async def import_cells(self, cells: list[Cell]) -> int:
        if not self.grid.ready and not await self.load():
            raise GridStoreUnavailable()
        committed = await self.pipeline.import_cells(cells)
        return len(committed)
