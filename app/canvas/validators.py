from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from app.canvas.grid_store import GridStore
from app.canvas.participants import ParticipantRegistry
from app.colors import normalize_color
from app.errors import CanvasRejection, GridStoreUnavailable, RejectionReason


@dataclass(frozen=True, slots=True)
class MutationContext:
    """Inputs available to validators.

    Keep this tight and serializable-ish so we can safely log it.
    """

    participant_id: str | None
    # Raw request values; BoundsValidator and ColorValidator classify anything malformed.
    x: object
    y: object
    color: object
    action: str


class MutationValidator(ABC):
    """A small, composable validation unit for an incoming write request."""

    @abstractmethod
    def validate(self, *, ctx: MutationContext, grid: GridStore, participants: ParticipantRegistry) -> None:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class BoundsValidator(MutationValidator):
    def validate(self, *, ctx: MutationContext, grid: GridStore, participants: ParticipantRegistry) -> None:
        x, y = ctx.x, ctx.y
        # bool is an int subclass; True/False are not coordinates.
        if not isinstance(x, int) or isinstance(x, bool) or not isinstance(y, int) or isinstance(y, bool):
            raise CanvasRejection(RejectionReason.out_of_bounds, "coordinates must be integers")
        grid.require_in_bounds(x, y)


@dataclass(frozen=True, slots=True)
class ColorValidator(MutationValidator):
    def validate(self, *, ctx: MutationContext, grid: GridStore, participants: ParticipantRegistry) -> None:
        if normalize_color(ctx.color) is None:
            raise CanvasRejection(RejectionReason.invalid_color, f"{ctx.color!r} is not a #rrggbb color")


@dataclass(frozen=True, slots=True)
class IdentityValidator(MutationValidator):
    """The acting participant must be known to the registry."""

    def validate(self, *, ctx: MutationContext, grid: GridStore, participants: ParticipantRegistry) -> None:
        if participants.get(ctx.participant_id) is None:
            raise CanvasRejection(RejectionReason.not_logged_in, "participant is not logged in")


@dataclass(frozen=True, slots=True)
class StoreReadyValidator(MutationValidator):
    """Refuse before anything is consumed if the store can't take the write."""

    def validate(self, *, ctx: MutationContext, grid: GridStore, participants: ParticipantRegistry) -> None:
        if not grid.ready:
            raise GridStoreUnavailable()


@dataclass(frozen=True, slots=True)
class ValidatorPipeline:
    validators: tuple[MutationValidator, ...]

    def validate(self, *, ctx: MutationContext, grid: GridStore, participants: ParticipantRegistry) -> None:
        for v in self.validators:
            v.validate(ctx=ctx, grid=grid, participants=participants)


# Order matters: the first failing check is the one reported.
DEFAULT_ACTION_PIPELINES: dict[str, ValidatorPipeline] = {
    "paint": ValidatorPipeline(
        validators=(
            BoundsValidator(),
            ColorValidator(),
            IdentityValidator(),
            StoreReadyValidator(),
        )
    ),
    "bypass": ValidatorPipeline(
        validators=(
            BoundsValidator(),
            ColorValidator(),
            IdentityValidator(),
        )
    ),
}


def pipeline_for_action(action: str) -> ValidatorPipeline:
    pipe = DEFAULT_ACTION_PIPELINES.get(action)
    if pipe is None:
        raise ValueError(f"Unknown action: {action}")
    return pipe
