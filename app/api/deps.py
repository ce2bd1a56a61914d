from __future__ import annotations

from fastapi import Header

from app.canvas.participants import Identity
from app.canvas.service import CanvasService
from app.canvas.singleton import get_canvas


def get_canvas_service() -> CanvasService:
    return get_canvas()


def get_identity(
    x_participant_id: str | None = Header(default=None),
    x_participant_name: str | None = Header(default=None),
) -> Identity | None:
    """Identity asserted by the upstream auth proxy, if any.

    The login flow itself lives outside this service; these headers are trusted as-is.
    """

    pid = (x_participant_id or "").strip()
    if not pid:
        return None
    return Identity(participant_id=pid, display_name=(x_participant_name or "").strip())
