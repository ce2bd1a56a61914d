from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, WebSocket, status
from fastapi.responses import JSONResponse

from app.api.deps import get_canvas_service, get_identity
from app.api.errors import not_logged_in, raise_rejection
from app.api.models import (
    AdminImportRequest,
    AdminImportResponse,
    BypassRequest,
    BypassResponse,
    CommittedMutation,
    MeResponse,
    PaintRequest,
    PendingAuthorization,
    Snapshot,
    WebhookAck,
)
from app.canvas.participants import Identity
from app.canvas.service import CanvasService
from app.errors import CanvasRejection, GridStoreUnavailable, Rejected
from app.websocket_hub import hub

router = APIRouter()


def _bypass_response(auth: PendingAuthorization) -> BypassResponse:
    return BypassResponse(
        authorization_id=auth.authorization_id,
        status=auth.status,
        checkout_url=auth.checkout_url,
        expires_at=auth.expires_at,
    )


def require_admin(
    x_admin_token: str | None = Header(default=None),
    service: CanvasService = Depends(get_canvas_service),
) -> None:
    expected = service.settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"error": "forbidden"})


@router.websocket("/ws/canvas")
async def canvas_ws(websocket: WebSocket, service: CanvasService = Depends(get_canvas_service)) -> None:
    await hub.serve(websocket, service)


@router.get("/healthcheck")
async def healthcheck(service: CanvasService = Depends(get_canvas_service)) -> dict[str, object]:
    return {
        "status": "ok" if service.grid.ready else "degraded",
        "observers": hub.connection_count,
        "persistence_failures": service.writer.failures,
        "bypass_enabled": service.bypass.enabled,
    }


@router.get("/auth/me", response_model=MeResponse)
async def me_route(
    identity: Identity | None = Depends(get_identity),
    service: CanvasService = Depends(get_canvas_service),
) -> MeResponse:
    if identity is None:
        not_logged_in()
    p = service.login(identity)
    return MeResponse(
        participant_id=p.participant_id,
        display_name=p.display_name,
        last_free_mutation_at=p.last_free_mutation_at,
        mutation_count=p.mutation_count,
        retry_after_ms=service.retry_after(p),
    )


@router.get("/pixels", response_model=Snapshot)
async def pixels_route(service: CanvasService = Depends(get_canvas_service)) -> Snapshot:
    if not service.grid.ready and not await service.load():
        raise_rejection(GridStoreUnavailable())
    return service.get_snapshot()


@router.post("/paint", response_model=CommittedMutation)
async def paint_route(
    payload: PaintRequest,
    identity: Identity | None = Depends(get_identity),
    service: CanvasService = Depends(get_canvas_service),
) -> CommittedMutation:
    pid = service.login(identity).participant_id if identity is not None else None
    result = await service.submit(
        participant_id=pid,
        x=payload.x,
        y=payload.y,
        color=payload.color,
        bypass_authorization_id=payload.bypass_authorization_id,
    )
    if isinstance(result, Rejected):
        raise_rejection(result)
    return result


@router.post("/bypass", response_model=BypassResponse, status_code=status.HTTP_201_CREATED)
async def request_bypass_route(
    payload: BypassRequest,
    identity: Identity | None = Depends(get_identity),
    service: CanvasService = Depends(get_canvas_service),
) -> BypassResponse:
    pid = service.login(identity).participant_id if identity is not None else None
    result = await service.request_bypass(participant_id=pid, x=payload.x, y=payload.y, color=payload.color)
    if isinstance(result, Rejected):
        raise_rejection(result)
    return _bypass_response(result)


@router.get("/bypass/{authorization_id}", response_model=BypassResponse)
async def get_bypass_route(
    authorization_id: str,
    identity: Identity | None = Depends(get_identity),
    service: CanvasService = Depends(get_canvas_service),
) -> BypassResponse:
    if identity is None:
        not_logged_in()
    auth = service.get_authorization(authorization_id, participant_id=identity.participant_id)
    if auth is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Authorization not found")
    return _bypass_response(auth)


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook_route(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    service: CanvasService = Depends(get_canvas_service),
) -> WebhookAck:
    """Payment processor callback. The raw body is verified before anything is trusted."""

    payload = await request.body()
    result = service.handle_payment_callback(payload, stripe_signature)
    if isinstance(result, Rejected):
        raise_rejection(result)
    if result is None:
        return WebhookAck()
    return WebhookAck(authorization_id=result.authorization_id, status=result.status)


@router.get("/admin/export", dependencies=[Depends(require_admin)])
async def admin_export_route(service: CanvasService = Depends(get_canvas_service)) -> JSONResponse:
    cells = [c.model_dump() for c in service.export_cells()]
    return JSONResponse(
        {"width": service.grid.width, "height": service.grid.height, "cells": cells},
        headers={"Content-Disposition": "attachment; filename=board.json"},
    )


@router.post("/admin/import", response_model=AdminImportResponse, dependencies=[Depends(require_admin)])
async def admin_import_route(
    payload: AdminImportRequest,
    service: CanvasService = Depends(get_canvas_service),
) -> AdminImportResponse:
    try:
        n = await service.import_cells(payload.cells)
    except CanvasRejection as e:
        raise_rejection(e)
    return AdminImportResponse(pixels=n)
