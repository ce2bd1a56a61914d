from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from uuid import uuid4

from app.api.models import AuthorizationStatus, PendingAuthorization
from app.errors import CanvasRejection, RejectionReason
from app.payments.fsm import transition
from app.payments.processor import (
    CHECKOUT_COMPLETED,
    CHECKOUT_EXPIRED,
    PaymentProcessor,
    PaymentProcessorError,
    SignatureVerificationError,
    parse_callback_event,
    verify_signature,
)

logger = logging.getLogger(__name__)

_TERMINAL = {AuthorizationStatus.consumed, AuthorizationStatus.expired}


class BypassWorkflow:
    """Owns every PendingAuthorization and drives it through AuthorizationFSM.

    All reads and transitions happen under one `threading.Lock`, so a callback
    confirming an authorization and two pipelines trying to consume it never
    interleave. Processor network calls are made without holding it.

    `on_change` receives a copy of each authorization after it changes (used to
    persist them). `on_remove` receives the ids pruned by `expire_stale`.
    """

    def __init__(
        self,
        *,
        ttl_ms: int,
        processor: PaymentProcessor | None,
        webhook_secret: str | None,
        on_change: Callable[[PendingAuthorization], None] | None = None,
        on_remove: Callable[[list[str]], None] | None = None,
        retention_ms: int | None = None,
    ) -> None:
        self.ttl_ms = ttl_ms
        # Expired and consumed authorizations are kept this long past `expires_at`, then dropped.
        self.retention_ms = ttl_ms if retention_ms is None else retention_ms
        self._processor = processor
        self._webhook_secret = webhook_secret
        self._on_change = on_change
        self._on_remove = on_remove
        self._by_id: dict[str, PendingAuthorization] = {}
        self._by_ref: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._processor is not None

    def load(self, authorizations: Iterable[PendingAuthorization]) -> int:
        with self._lock:
            loaded = {a.authorization_id: a for a in authorizations}
            for aid, a in self._by_id.items():
                loaded.setdefault(aid, a)
            self._by_id = loaded
            self._by_ref = {a.external_ref: a.authorization_id for a in self._by_id.values() if a.external_ref}
            return len(self._by_id)

    def _changed(self, auth: PendingAuthorization) -> None:
        if self._on_change is not None:
            self._on_change(auth.model_copy())

    def _expire_if_stale(self, auth: PendingAuthorization, now: int) -> None:
        if auth.status == AuthorizationStatus.pending and now >= auth.expires_at:
            transition(auth, "expire")
            logger.info("Bypass authorization %s expired without confirmation", auth.authorization_id)
            self._changed(auth)

    def create(self, *, participant_id: str, x: int, y: int, color: str, now: int) -> PendingAuthorization:
        auth = PendingAuthorization(
            authorization_id=uuid4().hex,
            participant_id=participant_id,
            x=x,
            y=y,
            color=color,
            created_at=now,
            expires_at=now + self.ttl_ms,
        )
        with self._lock:
            self._by_id[auth.authorization_id] = auth
            self._changed(auth)
            return auth.model_copy()

    async def open(self, *, participant_id: str, x: int, y: int, color: str, now: int) -> PendingAuthorization:
        """Create a pending authorization and open a checkout session for it.

        Inputs must already be validated (bounds, color, identity).
        """

        if self._processor is None:
            raise CanvasRejection(RejectionReason.payment_unavailable, "payments are not configured")

        auth = self.create(participant_id=participant_id, x=x, y=y, color=color, now=now)
        try:
            session = await self._processor.initiate(auth)
        except PaymentProcessorError as e:
            logger.error("Could not open checkout for authorization %s: %s", auth.authorization_id, e)
            with self._lock:
                stored = self._by_id[auth.authorization_id]
                transition(stored, "expire")
                self._changed(stored)
            raise CanvasRejection(RejectionReason.payment_unavailable, "payment processor unavailable") from e

        with self._lock:
            stored = self._by_id[auth.authorization_id]
            stored.external_ref = session.external_ref
            stored.checkout_url = session.url
            self._by_ref[session.external_ref] = stored.authorization_id
            self._changed(stored)
            return stored.model_copy()

    def get(self, authorization_id: str, *, now: int) -> PendingAuthorization | None:
        with self._lock:
            auth = self._by_id.get(authorization_id)
            if auth is None:
                return None
            self._expire_if_stale(auth, now)
            return auth.model_copy()

    def _lookup_for_callback(self, external_ref: str | None, authorization_id: str | None) -> PendingAuthorization | None:
        if external_ref and external_ref in self._by_ref:
            return self._by_id.get(self._by_ref[external_ref])
        # The callback can race the `initiate` response; fall back to our own metadata,
        # but never let it point at an authorization bound to a different session.
        if authorization_id:
            auth = self._by_id.get(authorization_id)
            if auth is not None and auth.external_ref in (None, external_ref):
                return auth
        return None

    def handle_callback(self, payload: bytes, signature_header: str | None, *, now: int) -> PendingAuthorization | None:
        """Apply a processor callback. Returns the affected authorization, or None if ignored.

        Verification happens before the body is even parsed; any failure is a
        `payment_unverified` rejection and changes nothing.
        """

        try:
            verify_signature(payload, signature_header, secret=self._webhook_secret, now_s=now // 1000)
            event = parse_callback_event(payload)
        except SignatureVerificationError as e:
            logger.warning("Rejected unverified payment callback: %s", e)
            raise CanvasRejection(RejectionReason.payment_unverified, str(e)) from e

        if event.type not in {CHECKOUT_COMPLETED, CHECKOUT_EXPIRED}:
            logger.debug("Ignoring payment callback of type %s", event.type)
            return None

        with self._lock:
            auth = self._lookup_for_callback(event.external_ref, event.authorization_id)
            if auth is None:
                logger.warning("Payment callback for unknown session %s", event.external_ref)
                raise CanvasRejection(RejectionReason.invalid_bypass, "unknown checkout session")

            if event.type == CHECKOUT_EXPIRED:
                if transition(auth, "expire"):
                    self._changed(auth)
                return auth.model_copy()

            if event.payment_status != "paid":
                logger.info("Checkout %s completed with status %s; waiting", event.external_ref, event.payment_status)
                return auth.model_copy()

            self._expire_if_stale(auth, now)
            # Processors redeliver callbacks; a repeat confirmation is a no-op.
            if auth.status in {AuthorizationStatus.confirmed, AuthorizationStatus.consumed}:
                return auth.model_copy()
            if not transition(auth, "confirm"):
                logger.warning(
                    "Payment confirmed for authorization %s in state %s; not honoured",
                    auth.authorization_id,
                    auth.status.value,
                )
                raise CanvasRejection(RejectionReason.invalid_bypass, f"authorization is {auth.status.value}")
            if auth.external_ref is None and event.external_ref:
                auth.external_ref = event.external_ref
                self._by_ref[event.external_ref] = auth.authorization_id
            logger.info("Bypass authorization %s confirmed", auth.authorization_id)
            self._changed(auth)
            return auth.model_copy()

    def consume(
        self,
        *,
        authorization_id: str,
        participant_id: str,
        x: int,
        y: int,
        color: str,
        now: int,
    ) -> PendingAuthorization:
        """Mark a confirmed authorization consumed for exactly this placement."""

        with self._lock:
            auth = self._by_id.get(authorization_id)
            if auth is None or auth.participant_id != participant_id:
                raise CanvasRejection(RejectionReason.invalid_bypass, "unknown authorization")
            self._expire_if_stale(auth, now)
            if auth.status == AuthorizationStatus.consumed:
                raise CanvasRejection(RejectionReason.already_consumed, "authorization was already used")
            if (auth.x, auth.y, auth.color) != (x, y, color):
                raise CanvasRejection(RejectionReason.invalid_bypass, "authorization is for a different placement")
            if not transition(auth, "consume"):
                raise CanvasRejection(RejectionReason.invalid_bypass, f"authorization is {auth.status.value}")
            self._changed(auth)
            return auth.model_copy()

    def expire_stale(self, *, now: int) -> int:
        """Expire overdue pending authorizations and prune old terminal ones.

        Returns how many were expired. Pruned ids are unknown afterwards, so any later
        use of them is `invalid_bypass`.
        """

        expired = 0
        pruned: list[str] = []
        with self._lock:
            for auth in self._by_id.values():
                before = auth.status
                self._expire_if_stale(auth, now)
                if auth.status != before:
                    expired += 1
                if auth.status in _TERMINAL and now >= auth.expires_at + self.retention_ms:
                    pruned.append(auth.authorization_id)
            for aid in pruned:
                auth = self._by_id.pop(aid)
                if auth.external_ref:
                    self._by_ref.pop(auth.external_ref, None)
            if pruned:
                logger.info("Pruned %d finished bypass authorizations", len(pruned))
                if self._on_remove is not None:
                    self._on_remove(pruned)
        return expired

    def all(self) -> list[PendingAuthorization]:
        with self._lock:
            return [a.model_copy() for a in self._by_id.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
