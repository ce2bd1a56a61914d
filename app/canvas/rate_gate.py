from __future__ import annotations

from dataclasses import dataclass

from app.api.models import Participant


@dataclass(frozen=True, slots=True)
class GateDecision:
    allowed: bool
    retry_after_ms: int = 0


@dataclass(frozen=True, slots=True)
class RateGate:
    """Per-participant cooldown on free mutations.

    The gate only *decides*. Advancing `last_free_mutation_at` is the caller's job and
    must happen in the same critical section as the commit it allowed
    (see `MutationPipeline`).
    """

    cooldown_ms: int

    def retry_after(self, participant: Participant, now: int) -> int:
        last = participant.last_free_mutation_at
        if last is None:
            return 0
        return max(0, self.cooldown_ms - (now - last))

    def try_consume_free(self, participant: Participant, now: int) -> GateDecision:
        wait = self.retry_after(participant, now)
        if wait > 0:
            return GateDecision(allowed=False, retry_after_ms=wait)
        return GateDecision(allowed=True)
