from __future__ import annotations

import json
from collections.abc import Callable, Generator
from typing import Any

import fakeredis
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.api.models import PendingAuthorization
from app.canvas.persistence import RedisCanvasPersistence
from app.canvas.service import CanvasService
from app.canvas.singleton import init_canvas, reset_canvas_for_tests
from app.clock import ManualClock
from app.config import CanvasSettings
from app.payments.processor import CheckoutSession, sign_payload

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-test-token"

# 2023-11-14T22:13:20Z, so "never painted" and "painted at 0" can't be confused.
T0_MS = 1_700_000_000_000


class FakeProcessor:
    """Records checkout requests and hands back predictable session refs."""

    def __init__(self) -> None:
        self.initiated: list[PendingAuthorization] = []

    async def initiate(self, authorization: PendingAuthorization) -> CheckoutSession:
        self.initiated.append(authorization)
        ref = f"cs_test_{len(self.initiated)}"
        return CheckoutSession(external_ref=ref, url=f"https://checkout.example/{ref}")


@pytest.fixture(autouse=True)
def _reset_canvas_singleton() -> Generator[None, None, None]:
    """Keep tests hermetic: never let one test's canvas leak into the next."""

    reset_canvas_for_tests()
    yield
    reset_canvas_for_tests()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(now=T0_MS)


@pytest.fixture()
def settings() -> CanvasSettings:
    # Scenario grid: 4x4, 15 minute cooldown.
    return CanvasSettings(
        width=4,
        height=4,
        cooldown_ms=900_000,
        bypass_ttl_ms=30 * 60 * 1000,
        payment_api_key="sk_test",
        payment_webhook_secret=WEBHOOK_SECRET,
        admin_token=ADMIN_TOKEN,
    )


@pytest.fixture()
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture()
def service(
    settings: CanvasSettings,
    redis_client: fakeredis.FakeRedis,
    processor: FakeProcessor,
    clock: ManualClock,
) -> CanvasService:
    return CanvasService(
        settings=settings,
        persistence=RedisCanvasPersistence(r=redis_client, namespace="test"),
        processor=processor,
        clock=clock,
    )


@pytest_asyncio.fixture()
async def loaded_service(service: CanvasService) -> CanvasService:
    assert await service.load()
    return service


@pytest.fixture()
def client(service: CanvasService) -> Generator[TestClient, None, None]:
    from app.main import app

    init_canvas(service)
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def sign(clock: ManualClock) -> Callable[[dict[str, Any]], tuple[bytes, str]]:
    """Serialize a callback event and sign it the way the processor would."""

    def _sign(event: dict[str, Any], *, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        return body, sign_payload(body, secret=secret, timestamp=clock.now_ms() // 1000)

    return _sign


def checkout_event(*, ref: str, authorization_id: str | None = None, type: str = "checkout.session.completed", paid: bool = True) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": ref,
        "object": "checkout.session",
        "payment_status": "paid" if paid else "unpaid",
        "metadata": {},
    }
    if authorization_id:
        obj["metadata"]["authorization_id"] = authorization_id
    return {"id": "evt_test", "type": type, "data": {"object": obj}}


def auth_headers(pid: str = "P1", name: str = "Player One") -> dict[str, str]:
    return {"X-Participant-Id": pid, "X-Participant-Name": name}
