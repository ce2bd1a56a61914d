from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import cast

from app.api.models import Cell, CommittedMutation, Participant
from app.canvas.broadcast import CanvasBroadcaster
from app.canvas.grid_store import GridStore
from app.canvas.participants import ParticipantRegistry
from app.canvas.rate_gate import RateGate
from app.canvas.validators import MutationContext, pipeline_for_action
from app.clock import Clock, SystemClock
from app.colors import normalize_color
from app.errors import CanvasRejection, Rejected, RejectionReason
from app.payments.workflow import BypassWorkflow

logger = logging.getLogger(__name__)

# Participant is None for administrative writes.
CommitHook = Callable[[CommittedMutation, Participant | None], None]


class MutationPipeline:
    """The single write path into a canvas.

    Every submission goes through one `asyncio.Lock` (the serialization point):
    validation, the bypass/cooldown decision, the store write, the participant
    update and the publish all happen inside it, with no awaits in between, so
    observers never see part of a commit and no two submissions can both pass
    the cooldown check.
    """

    def __init__(
        self,
        *,
        grid: GridStore,
        participants: ParticipantRegistry,
        gate: RateGate,
        bypass: BypassWorkflow,
        broadcaster: CanvasBroadcaster,
        clock: Clock | None = None,
        on_commit: CommitHook | None = None,
    ) -> None:
        self.grid = grid
        self.participants = participants
        self.gate = gate
        self.bypass = bypass
        self.broadcaster = broadcaster
        self.clock = clock or SystemClock()
        self._on_commit = on_commit
        self.lock = asyncio.Lock()

    async def submit(
        self,
        *,
        participant_id: str | None,
        x: object,
        y: object,
        color: object,
        bypass_authorization_id: str | None = None,
    ) -> CommittedMutation | Rejected:
        ctx = MutationContext(participant_id=participant_id, x=x, y=y, color=color, action="paint")
        async with self.lock:
            try:
                return self._submit_locked(ctx=ctx, bypass_authorization_id=bypass_authorization_id)
            except CanvasRejection as e:
                logger.debug("Rejected %s by %s at (%s, %s): %s", ctx.action, participant_id, x, y, e.reason.value)
                return e.to_rejected()

    def _submit_locked(self, *, ctx: MutationContext, bypass_authorization_id: str | None) -> CommittedMutation:
        pipeline_for_action(ctx.action).validate(ctx=ctx, grid=self.grid, participants=self.participants)

        # The paint pipeline has already checked all of these; narrow the types.
        x, y = cast(int, ctx.x), cast(int, ctx.y)
        color = normalize_color(ctx.color)
        if color is None:
            raise CanvasRejection(RejectionReason.invalid_color, f"{ctx.color!r} is not a #rrggbb color")
        participant = self.participants.get(ctx.participant_id)
        if participant is None:
            raise CanvasRejection(RejectionReason.not_logged_in, "participant is not logged in")

        now = self.clock.now_ms()
        free_at: int | None
        if bypass_authorization_id is not None:
            self.bypass.consume(
                authorization_id=bypass_authorization_id,
                participant_id=participant.participant_id,
                x=x,
                y=y,
                color=color,
                now=now,
            )
            free_at = None
        else:
            decision = self.gate.try_consume_free(participant, now)
            if not decision.allowed:
                raise CanvasRejection(
                    RejectionReason.cooldown,
                    "cooldown active",
                    retry_after_ms=decision.retry_after_ms,
                )
            free_at = now

        return self._commit(participant_id=participant.participant_id, x=x, y=y, color=color, now=now, free_at=free_at)

    def _commit(self, *, participant_id: str, x: int, y: int, color: str, now: int, free_at: int | None) -> CommittedMutation:
        mutation = self.grid.set(x, y, color, participant_id, now)
        updated = self.participants.record_commit(participant_id, free_at=free_at)
        self.broadcaster.publish(mutation)
        if self._on_commit is not None:
            self._on_commit(mutation, updated)
        return mutation

    async def import_cells(self, cells: list[Cell]) -> list[CommittedMutation]:
        """Administrative bulk load: same store contract, same fan-out, no cooldown.

        Out-of-bounds or malformed cells are skipped. Participant counters are not touched.
        """

        committed: list[CommittedMutation] = []
        async with self.lock:
            for cell in cells:
                canonical = normalize_color(cell.color)
                if canonical is None or not self.grid.in_bounds(cell.x, cell.y):
                    logger.warning("Skipping invalid imported cell (%s, %s, %r)", cell.x, cell.y, cell.color)
                    continue
                mutation = self.grid.set(cell.x, cell.y, canonical, cell.painted_by, cell.committed_at)
                self.broadcaster.publish(mutation)
                if self._on_commit is not None:
                    self._on_commit(mutation, None)
                committed.append(mutation)
        return committed
