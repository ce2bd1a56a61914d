from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass

from app.api.models import Participant


@dataclass(frozen=True, slots=True)
class Identity:
    """What the upstream login flow hands us for an authenticated participant."""

    participant_id: str
    display_name: str = ""


class ParticipantRegistry:
    """Known participants and their cooldown bookkeeping.

    Participants are registered the first time their identity is seen, the same
    way a login callback would create a user record. Cooldown fields are only
    changed through `record_commit`, which the mutation pipeline calls on commit.
    """

    def __init__(self) -> None:
        self._by_id: dict[str, Participant] = {}
        self._lock = threading.Lock()

    def load(self, participants: Iterable[Participant]) -> int:
        """Restore persisted participants; anyone registered before the load is kept."""

        with self._lock:
            loaded = {p.participant_id: p for p in participants}
            for pid, p in self._by_id.items():
                loaded.setdefault(pid, p)
            self._by_id = loaded
            return len(self._by_id)

    def ensure(self, identity: Identity) -> tuple[Participant, bool]:
        """Return the participant for `identity`, registering it if needed.

        The bool is True when a new participant was created. A changed display name is
        picked up on later logins.
        """

        with self._lock:
            existing = self._by_id.get(identity.participant_id)
            if existing is None:
                p = Participant(participant_id=identity.participant_id, display_name=identity.display_name)
                self._by_id[p.participant_id] = p
                return p.model_copy(), True
            if identity.display_name and identity.display_name != existing.display_name:
                existing = existing.model_copy(update={"display_name": identity.display_name})
                self._by_id[existing.participant_id] = existing
                return existing.model_copy(), True
            return existing.model_copy(), False

    def get(self, participant_id: str | None) -> Participant | None:
        if not participant_id:
            return None
        with self._lock:
            p = self._by_id.get(participant_id)
            return p.model_copy() if p is not None else None

    def record_commit(self, participant_id: str, *, free_at: int | None) -> Participant:
        """Bump the mutation counter, and the free-mutation clock when `free_at` is given."""

        with self._lock:
            p = self._by_id[participant_id]
            update: dict[str, object] = {"mutation_count": p.mutation_count + 1}
            if free_at is not None:
                last = p.last_free_mutation_at
                update["last_free_mutation_at"] = free_at if last is None else max(last, free_at)
            p = p.model_copy(update=update)
            self._by_id[participant_id] = p
            return p.model_copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
