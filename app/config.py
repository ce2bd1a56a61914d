from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class CanvasSettings:
    width: int = 320
    height: int = 320
    cooldown_ms: int = 15 * 60 * 1000
    bypass_ttl_ms: int = 30 * 60 * 1000

    # "redis" or "memory"
    persistence: str = "redis"

    payment_api_base: str = "https://api.stripe.com/v1"
    payment_api_key: str | None = None
    payment_webhook_secret: str | None = None
    payment_price_cents: int = 100
    payment_currency: str = "usd"

    client_origin: str = "http://localhost:5173"

    # Admin export/import routes are disabled unless a token is configured.
    admin_token: str | None = None


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def settings_from_env() -> CanvasSettings:
    d = CanvasSettings()
    s = CanvasSettings(
        width=_int_env("CANVAS_WIDTH", d.width),
        height=_int_env("CANVAS_HEIGHT", d.height),
        cooldown_ms=_int_env("CANVAS_COOLDOWN_MS", d.cooldown_ms),
        bypass_ttl_ms=_int_env("CANVAS_BYPASS_TTL_MS", d.bypass_ttl_ms),
        persistence=os.environ.get("CANVAS_PERSISTENCE", d.persistence),
        payment_api_base=os.environ.get("PAYMENT_API_BASE", d.payment_api_base),
        payment_api_key=os.environ.get("PAYMENT_API_KEY") or None,
        payment_webhook_secret=os.environ.get("PAYMENT_WEBHOOK_SECRET") or None,
        payment_price_cents=_int_env("PAYMENT_PRICE_CENTS", d.payment_price_cents),
        payment_currency=os.environ.get("PAYMENT_CURRENCY", d.payment_currency),
        client_origin=os.environ.get("CLIENT_ORIGIN", d.client_origin),
        admin_token=os.environ.get("CANVAS_ADMIN_TOKEN") or None,
    )

    if s.width <= 0 or s.height <= 0:
        raise RuntimeError("CANVAS_WIDTH and CANVAS_HEIGHT must be positive")
    if s.cooldown_ms < 0:
        raise RuntimeError("CANVAS_COOLDOWN_MS must not be negative")
    if s.persistence not in {"redis", "memory"}:
        raise RuntimeError(f"Unknown CANVAS_PERSISTENCE: {s.persistence}")
    return s
