from __future__ import annotations

from app.canvas.service import CanvasService


_CANVAS: CanvasService | None = None


def init_canvas(service: CanvasService) -> CanvasService:
    """Install the process-wide canvas once.

    Safe to call multiple times; subsequent calls return the already installed instance.
    """

    global _CANVAS
    if _CANVAS is None:
        _CANVAS = service
    return _CANVAS


def is_canvas_initialized() -> bool:
    return _CANVAS is not None


def reset_canvas_for_tests() -> None:
    """Forget the installed canvas so tests can install one built from fixtures."""

    global _CANVAS
    _CANVAS = None


def get_canvas() -> CanvasService:
    if _CANVAS is None:
        raise RuntimeError("Canvas not initialized. Call init_canvas() at startup.")
    return _CANVAS
