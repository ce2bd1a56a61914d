from __future__ import annotations

import logging

from app.canvas.persistence import CanvasPersistence, InMemoryCanvasPersistence, RedisCanvasPersistence
from app.canvas.service import CanvasService
from app.canvas.singleton import get_canvas, init_canvas, is_canvas_initialized
from app.config import CanvasSettings, settings_from_env
from app.infra.redis_client import create_redis, get_canvas_namespace
from app.payments.processor import CheckoutApiProcessor, PaymentProcessor

logger = logging.getLogger(__name__)


def build_persistence(settings: CanvasSettings) -> CanvasPersistence:
    if settings.persistence == "memory":
        logger.warning("CANVAS_PERSISTENCE=memory: canvas state will not survive a restart")
        return InMemoryCanvasPersistence()
    return RedisCanvasPersistence(r=create_redis(), namespace=get_canvas_namespace())


def build_processor(settings: CanvasSettings) -> PaymentProcessor | None:
    if not settings.payment_api_key:
        logger.info("PAYMENT_API_KEY not set; paid cooldown bypass is disabled")
        return None
    if not settings.payment_webhook_secret:
        # Sessions could be opened but never confirmed.
        logger.warning("PAYMENT_WEBHOOK_SECRET not set; payment callbacks will all be rejected")
    return CheckoutApiProcessor(
        api_base=settings.payment_api_base,
        api_key=settings.payment_api_key,
        price_cents=settings.payment_price_cents,
        currency=settings.payment_currency,
        client_origin=settings.client_origin,
    )


def build_canvas_service(settings: CanvasSettings | None = None) -> CanvasService:
    s = settings or settings_from_env()
    return CanvasService(settings=s, persistence=build_persistence(s), processor=build_processor(s))


async def init_canvas_for_app() -> CanvasService:
    if not is_canvas_initialized():
        init_canvas(build_canvas_service())
    service = get_canvas()
    await service.start()
    return service


async def shutdown_canvas_for_app() -> None:
    if is_canvas_initialized():
        await get_canvas().stop()
