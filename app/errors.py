from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class RejectionReason(StrEnum):
    out_of_bounds = "out_of_bounds"
    invalid_color = "invalid_color"
    not_logged_in = "not_logged_in"
    cooldown = "cooldown"
    invalid_bypass = "invalid_bypass"
    already_consumed = "already_consumed"
    payment_unverified = "payment_unverified"
    payment_unavailable = "payment_unavailable"
    persistence_failure = "persistence_failure"
    grid_store_unavailable = "grid_store_unavailable"


@dataclass(frozen=True, slots=True)
class Rejected:
    """Structured rejection returned (not raised) by the write path."""

    reason: RejectionReason
    detail: str = ""
    # Only set for `cooldown`.
    retry_after_ms: int | None = None


class CanvasRejection(ValueError):
    """Raised inside the canvas core; converted to `Rejected` at the service boundary."""

    def __init__(self, reason: RejectionReason, detail: str = "", *, retry_after_ms: int | None = None) -> None:
        super().__init__(detail or reason.value)
        self.reason = reason
        self.detail = detail
        self.retry_after_ms = retry_after_ms

    def to_rejected(self) -> Rejected:
        return Rejected(reason=self.reason, detail=self.detail, retry_after_ms=self.retry_after_ms)


class GridStoreUnavailable(CanvasRejection):
    def __init__(self, detail: str = "Grid store has not been loaded") -> None:
        super().__init__(RejectionReason.grid_store_unavailable, detail)
