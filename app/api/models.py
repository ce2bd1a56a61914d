from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Cell(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    color: str
    painted_by: str
    committed_at: int


class CommittedMutation(BaseModel):
    """One successful commit, as fanned out to observers."""

    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    color: str
    painted_by: str
    committed_at: int
    # Position in the grid's total commit order, starting at 1.
    seq: int

    def as_cell(self) -> Cell:
        return Cell(x=self.x, y=self.y, color=self.color, painted_by=self.painted_by, committed_at=self.committed_at)


class Participant(BaseModel):
    participant_id: str
    display_name: str = ""

    # Epoch ms of the last free (cooldown-gated) commit; None means never.
    last_free_mutation_at: int | None = None
    mutation_count: int = 0


class AuthorizationStatus(StrEnum):
    pending = "pending"
    confirmed = "confirmed"
    consumed = "consumed"
    expired = "expired"


class PendingAuthorization(BaseModel):
    authorization_id: str
    participant_id: str
    x: int
    y: int
    color: str
    status: AuthorizationStatus = AuthorizationStatus.pending
    created_at: int
    expires_at: int

    # Filled in once the payment processor has opened a checkout session.
    external_ref: str | None = None
    checkout_url: str | None = None


class Snapshot(BaseModel):
    width: int
    height: int
    cells: list[Cell] = Field(default_factory=list)
    # Server clock at snapshot time (epoch ms).
    now: int
    # Seq of the last commit reflected in `cells`.
    seq: int


class PaintRequest(BaseModel):
    # Left untyped so malformed values reach the canvas validators and get
    # out_of_bounds / invalid_color rather than a generic 422.
    x: object
    y: object
    color: object
    bypass_authorization_id: str | None = None


class BypassRequest(BaseModel):
    x: object
    y: object
    color: object


class BypassResponse(BaseModel):
    authorization_id: str
    status: AuthorizationStatus
    checkout_url: str | None = None
    expires_at: int


class MeResponse(BaseModel):
    participant_id: str
    display_name: str
    last_free_mutation_at: int | None
    mutation_count: int
    retry_after_ms: int


class AdminImportRequest(BaseModel):
    cells: list[Cell]


class AdminImportResponse(BaseModel):
    ok: bool = True
    pixels: int


class WebhookAck(BaseModel):
    received: bool = True
    authorization_id: str | None = None
    status: AuthorizationStatus | None = None
