from __future__ import annotations

import math
from typing import NoReturn

from fastapi import HTTPException, status

from app.errors import CanvasRejection, Rejected, RejectionReason

_STATUS_FOR: dict[RejectionReason, int] = {
    RejectionReason.out_of_bounds: status.HTTP_400_BAD_REQUEST,
    RejectionReason.invalid_color: status.HTTP_400_BAD_REQUEST,
    RejectionReason.payment_unverified: status.HTTP_400_BAD_REQUEST,
    RejectionReason.not_logged_in: status.HTTP_401_UNAUTHORIZED,
    RejectionReason.invalid_bypass: status.HTTP_403_FORBIDDEN,
    RejectionReason.already_consumed: status.HTTP_409_CONFLICT,
    RejectionReason.cooldown: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectionReason.grid_store_unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    RejectionReason.payment_unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    RejectionReason.persistence_failure: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_error_for(rejected: Rejected | CanvasRejection) -> HTTPException:
    if isinstance(rejected, CanvasRejection):
        rejected = rejected.to_rejected()

    detail: dict[str, object] = {"error": rejected.reason.value}
    if rejected.detail:
        detail["message"] = rejected.detail

    headers: dict[str, str] | None = None
    if rejected.retry_after_ms is not None:
        detail["retry_after_ms"] = rejected.retry_after_ms
        headers = {"Retry-After": str(max(1, math.ceil(rejected.retry_after_ms / 1000)))}

    return HTTPException(
        status_code=_STATUS_FOR.get(rejected.reason, status.HTTP_422_UNPROCESSABLE_ENTITY),
        detail=detail,
        headers=headers,
    )


def raise_rejection(rejected: Rejected | CanvasRejection) -> NoReturn:
    raise http_error_for(rejected)


def not_logged_in() -> NoReturn:
    raise_rejection(Rejected(reason=RejectionReason.not_logged_in, detail="participant is not logged in"))
