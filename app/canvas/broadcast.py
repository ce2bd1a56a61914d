from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from app.api.models import CommittedMutation, Snapshot

logger = logging.getLogger(__name__)

# None tells the consumer it was dropped and has to resynchronize from a snapshot.
FanoutItem = CommittedMutation | Snapshot | None


@dataclass(eq=False, slots=True)
class Subscription:
    queue: asyncio.Queue[FanoutItem]
    dropped: bool = False

    def offer(self, item: CommittedMutation | Snapshot) -> bool:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True


@dataclass(slots=True)
class CanvasBroadcaster:
    """In-process fan-out of committed mutations.

    Contract:
      - `publish` never awaits and never raises because of an observer, so it can be
        called from inside the commit critical section. Called in commit order, it
        enqueues in commit order.
      - each subscriber has a bounded queue; one that falls `max_pending` items
        behind is dropped and handed a `None` marker instead of stalling commits.
      - subscribers only see what was published after `subscribe`.
    """

    max_pending: int = 1024
    _subs: set[Subscription] = field(default_factory=set)

    def subscribe(self) -> Subscription:
        # +1 leaves room for the drop marker.
        sub = Subscription(queue=asyncio.Queue(maxsize=self.max_pending + 1))
        self._subs.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subs.discard(sub)

    def drop(self, sub: Subscription) -> None:
        if sub.dropped:
            return
        sub.dropped = True
        self._subs.discard(sub)
        while not sub.queue.empty():
            sub.queue.get_nowait()
        sub.queue.put_nowait(None)
        logger.warning("Dropped a slow canvas observer; it will resynchronize")

    def publish(self, mutation: CommittedMutation) -> int:
        delivered = 0
        for sub in list(self._subs):
            if sub.queue.qsize() >= self.max_pending or not sub.offer(mutation):
                self.drop(sub)
                continue
            delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self._subs)
