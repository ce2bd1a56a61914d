from __future__ import annotations

import asyncio

import pytest

from app.api.models import CommittedMutation
from app.canvas.participants import Identity
from app.canvas.service import CanvasService
from app.canvas.validators import (
    DEFAULT_ACTION_PIPELINES,
    BoundsValidator,
    MutationContext,
    ValidatorPipeline,
    pipeline_for_action,
)
from app.clock import ManualClock
from app.errors import Rejected, RejectionReason


def _login(service: CanvasService, pid: str = "P1") -> str:
    return service.login(Identity(participant_id=pid, display_name=pid)).participant_id


@pytest.mark.asyncio
async def test_scenario_a_successful_paint_is_readable(loaded_service: CanvasService) -> None:
    pid = _login(loaded_service)

    result = await loaded_service.submit(participant_id=pid, x=1, y=1, color="#ff0000")

    assert isinstance(result, CommittedMutation)
    cell = loaded_service.get(1, 1)
    assert cell is not None
    assert (cell.color, cell.painted_by) == ("#ff0000", "P1")


@pytest.mark.asyncio
async def test_every_in_bounds_coordinate_reads_back_what_was_submitted(loaded_service: CanvasService) -> None:
    for x in range(4):
        for y in range(4):
            pid = _login(loaded_service, f"P{x}{y}")
            color = f"#{x:02x}{y:02x}aa"
            result = await loaded_service.submit(participant_id=pid, x=x, y=y, color=color)
            assert isinstance(result, CommittedMutation)
            cell = loaded_service.get(x, y)
            assert cell is not None and (cell.color, cell.painted_by) == (color, pid)


@pytest.mark.asyncio
@pytest.mark.parametrize("x,y", [(-1, 0), (4, 0), (0, 4), (0, -3), (99, 99)])
async def test_out_of_bounds_never_mutates(loaded_service: CanvasService, x: int, y: int) -> None:
    pid = _login(loaded_service)
    result = await loaded_service.submit(participant_id=pid, x=x, y=y, color="#ff0000")

    assert isinstance(result, Rejected)
    assert result.reason == RejectionReason.out_of_bounds
    assert loaded_service.get_snapshot().cells == []
    # A rejected paint doesn't start a cooldown.
    assert loaded_service.participants.get(pid).last_free_mutation_at is None  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_validation_order_first_failing_check_wins(loaded_service: CanvasService) -> None:
    # out of bounds beats a bad color and a missing identity
    r1 = await loaded_service.submit(participant_id=None, x=9, y=9, color="nope")
    assert isinstance(r1, Rejected) and r1.reason == RejectionReason.out_of_bounds

    # bad color beats a missing identity
    r2 = await loaded_service.submit(participant_id=None, x=0, y=0, color="nope")
    assert isinstance(r2, Rejected) and r2.reason == RejectionReason.invalid_color

    r3 = await loaded_service.submit(participant_id=None, x=0, y=0, color="#ffffff")
    assert isinstance(r3, Rejected) and r3.reason == RejectionReason.not_logged_in

    r4 = await loaded_service.submit(participant_id="ghost", x=0, y=0, color="#ffffff")
    assert isinstance(r4, Rejected) and r4.reason == RejectionReason.not_logged_in


@pytest.mark.asyncio
async def test_color_is_stored_in_canonical_form(loaded_service: CanvasService) -> None:
    pid = _login(loaded_service)
    result = await loaded_service.submit(participant_id=pid, x=0, y=0, color="#F0A")
    assert isinstance(result, CommittedMutation)
    assert result.color == "#ff00aa"


@pytest.mark.asyncio
async def test_scenario_b_second_paint_within_cooldown(loaded_service: CanvasService, clock: ManualClock) -> None:
    pid = _login(loaded_service)
    first = await loaded_service.submit(participant_id=pid, x=1, y=1, color="#ff0000")
    assert isinstance(first, CommittedMutation)

    clock.advance(1_000)
    second = await loaded_service.submit(participant_id=pid, x=1, y=1, color="#00ff00")

    assert isinstance(second, Rejected)
    assert second.reason == RejectionReason.cooldown
    assert second.retry_after_ms == 899_000
    assert loaded_service.get(1, 1).color == "#ff0000"  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_cooldown_elapses(loaded_service: CanvasService, clock: ManualClock) -> None:
    pid = _login(loaded_service)
    assert isinstance(await loaded_service.submit(participant_id=pid, x=0, y=0, color="#000000"), CommittedMutation)

    clock.advance(900_000)
    again = await loaded_service.submit(participant_id=pid, x=0, y=1, color="#000000")
    assert isinstance(again, CommittedMutation)

    p = loaded_service.participants.get(pid)
    assert p is not None
    assert p.last_free_mutation_at == clock.now
    assert p.mutation_count == 2


@pytest.mark.asyncio
async def test_concurrent_free_submits_yield_one_success_and_one_cooldown(loaded_service: CanvasService) -> None:
    pid = _login(loaded_service)

    results = await asyncio.gather(
        loaded_service.submit(participant_id=pid, x=0, y=0, color="#111111"),
        loaded_service.submit(participant_id=pid, x=3, y=3, color="#222222"),
    )

    ok = [r for r in results if isinstance(r, CommittedMutation)]
    rejected = [r for r in results if isinstance(r, Rejected)]
    assert len(ok) == 1
    assert len(rejected) == 1
    assert rejected[0].reason == RejectionReason.cooldown
    assert (rejected[0].retry_after_ms or 0) > 0
    assert len(loaded_service.get_snapshot().cells) == 1


@pytest.mark.asyncio
async def test_cooldowns_are_per_participant(loaded_service: CanvasService) -> None:
    p1 = _login(loaded_service, "P1")
    p2 = _login(loaded_service, "P2")

    assert isinstance(await loaded_service.submit(participant_id=p1, x=0, y=0, color="#111111"), CommittedMutation)
    assert isinstance(await loaded_service.submit(participant_id=p2, x=0, y=0, color="#222222"), CommittedMutation)
    # last writer wins
    assert loaded_service.get(0, 0).painted_by == "P2"  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_unloaded_store_rejects_with_grid_store_unavailable(service: CanvasService, monkeypatch: pytest.MonkeyPatch) -> None:
    import redis

    def _boom() -> None:
        raise redis.ConnectionError("redis is down")

    monkeypatch.setattr(service.persistence, "load", _boom)
    pid = _login(service)

    result = await service.submit(participant_id=pid, x=0, y=0, color="#ffffff")

    assert isinstance(result, Rejected)
    assert result.reason == RejectionReason.grid_store_unavailable
    assert service.participants.get(pid).last_free_mutation_at is None  # type: ignore[union-attr]


def test_unknown_action_pipeline_raises() -> None:
    with pytest.raises(ValueError) as e:
        pipeline_for_action("nope")
    assert "Unknown action" in str(e.value)


def test_paint_pipeline_rejects_boolean_coordinates(service: CanvasService) -> None:
    from app.errors import CanvasRejection

    ctx = MutationContext(participant_id=None, x=True, y=0, color="#ffffff", action="paint")
    with pytest.raises(CanvasRejection) as e:
        pipeline_for_action("paint").validate(ctx=ctx, grid=service.grid, participants=service.participants)
    assert e.value.reason == RejectionReason.out_of_bounds


@pytest.mark.asyncio
async def test_commit_still_rejects_when_paint_pipeline_is_reconfigured(
    loaded_service: CanvasService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setitem(DEFAULT_ACTION_PIPELINES, "paint", ValidatorPipeline(validators=(BoundsValidator(),)))
    pid = _login(loaded_service)

    bad_color = await loaded_service.submit(participant_id=pid, x=0, y=0, color="red")
    stranger = await loaded_service.submit(participant_id="nobody", x=0, y=0, color="#ffffff")

    assert isinstance(bad_color, Rejected) and bad_color.reason == RejectionReason.invalid_color
    assert isinstance(stranger, Rejected) and stranger.reason == RejectionReason.not_logged_in
    assert loaded_service.get(0, 0) is None


@pytest.mark.asyncio
async def test_bypass_request_still_rejects_when_its_pipeline_is_reconfigured(
    loaded_service: CanvasService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setitem(DEFAULT_ACTION_PIPELINES, "bypass", ValidatorPipeline(validators=(BoundsValidator(),)))
    pid = _login(loaded_service)

    bad_color = await loaded_service.request_bypass(participant_id=pid, x=0, y=0, color="red")
    anonymous = await loaded_service.request_bypass(participant_id=None, x=0, y=0, color="#ffffff")

    assert isinstance(bad_color, Rejected) and bad_color.reason == RejectionReason.invalid_color
    assert isinstance(anonymous, Rejected) and anonymous.reason == RejectionReason.not_logged_in
    assert len(loaded_service.bypass) == 0
