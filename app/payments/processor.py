from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from app.api.models import PendingAuthorization

logger = logging.getLogger(__name__)

# Callbacks whose signed timestamp is further than this from our clock are rejected (replay window).
SIGNATURE_TOLERANCE_S = 300

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"


class PaymentProcessorError(RuntimeError):
    """The processor could not open a checkout session."""


class SignatureVerificationError(ValueError):
    """A callback could not be authenticated."""


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    external_ref: str
    url: str | None = None


@dataclass(frozen=True, slots=True)
class CallbackEvent:
    type: str
    external_ref: str | None
    payment_status: str | None
    # Echo of the metadata we attached in `initiate`.
    authorization_id: str | None


class PaymentProcessor(Protocol):
    async def initiate(self, authorization: PendingAuthorization) -> CheckoutSession: ...


class CheckoutApiProcessor:
    """Opens hosted checkout sessions on a Stripe-compatible REST API."""

    def __init__(
        self,
        *,
        api_base: str,
        api_key: str,
        price_cents: int,
        currency: str,
        client_origin: str,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key
        self._price_cents = price_cents
        self._currency = currency
        self._client_origin = client_origin.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    def _form_for(self, authorization: PendingAuthorization) -> dict[str, str]:
        a = authorization
        return {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": self._currency,
            "line_items[0][price_data][unit_amount]": str(self._price_cents),
            "line_items[0][price_data][product_data][name]": "Instant pixel placement",
            "client_reference_id": a.authorization_id,
            "metadata[authorization_id]": a.authorization_id,
            "metadata[participant_id]": a.participant_id,
            "metadata[x]": str(a.x),
            "metadata[y]": str(a.y),
            "metadata[color]": a.color,
            "success_url": f"{self._client_origin}?checkout=success&authorization={a.authorization_id}",
            "cancel_url": f"{self._client_origin}?checkout=cancel&authorization={a.authorization_id}",
        }

    async def initiate(self, authorization: PendingAuthorization) -> CheckoutSession:
        try:
            async with httpx.AsyncClient(
                base_url=self._api_base,
                timeout=self._timeout_s,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self._api_key}"},
            ) as client:
                resp = await client.post("/checkout/sessions", data=self._form_for(authorization))
                resp.raise_for_status()
                body: dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PaymentProcessorError(f"checkout session creation failed: {e}") from e

        ref = body.get("id")
        if not isinstance(ref, str) or not ref:
            raise PaymentProcessorError("checkout session response has no id")
        url = body.get("url")
        return CheckoutSession(external_ref=ref, url=url if isinstance(url, str) else None)


def sign_payload(payload: bytes, *, secret: str, timestamp: int) -> str:
    """Build a `t=<ts>,v1=<hex hmac>` signature header for `payload`."""

    mac = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + payload, hashlib.sha256)
    return f"t={timestamp},v1={mac.hexdigest()}"


def verify_signature(
    payload: bytes,
    header: str | None,
    *,
    secret: str | None,
    now_s: int,
    tolerance_s: int = SIGNATURE_TOLERANCE_S,
) -> None:
    """Raise SignatureVerificationError unless `header` is a fresh HMAC-SHA256 of `payload`.

    A missing secret never verifies anything.
    """

    if not secret:
        raise SignatureVerificationError("webhook secret is not configured")
    if not header:
        raise SignatureVerificationError("missing signature header")

    timestamp: int | None = None
    candidates: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as e:
                raise SignatureVerificationError("malformed signature timestamp") from e
        elif key == "v1":
            candidates.append(value)

    if timestamp is None or not candidates:
        raise SignatureVerificationError("malformed signature header")
    if abs(now_s - timestamp) > tolerance_s:
        raise SignatureVerificationError("signature timestamp outside tolerance")

    expected = sign_payload(payload, secret=secret, timestamp=timestamp).split("v1=", 1)[1]
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise SignatureVerificationError("signature mismatch")


def parse_callback_event(payload: bytes) -> CallbackEvent:
    """Parse an already-verified callback body."""

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise SignatureVerificationError("callback body is not JSON") from e
    if not isinstance(event, dict):
        raise SignatureVerificationError("callback body is not an object")

    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    def _str_or_none(v: object) -> str | None:
        return v if isinstance(v, str) and v else None

    return CallbackEvent(
        type=str(event.get("type") or ""),
        external_ref=_str_or_none(obj.get("id")),
        payment_status=_str_or_none(obj.get("payment_status")),
        authorization_id=_str_or_none(metadata.get("authorization_id")),
    )
