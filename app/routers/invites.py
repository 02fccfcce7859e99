from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional
from app.core.dependencies import (
    correlation_id, get_caller_identity, require_caller_identity
)
from app.core.exceptions import RateLimitError, ValidationError
from app.models.invite import (
    CallerIdentity, InviteAcceptResponse, InviteErrorKind, InviteEventRequest,
    InviteIssueRequest, InviteLegacyPath, InviteListResponse, InviteRevokeRequest,
    InviteRevokeResponse, InviteTokenRequest, InviteValidateResponse, IssuedInvite
)
from app.models.rollout import InviteEventName
from app.services.invite_service import InviteService, get_invite_service

router = APIRouter()


def _status_for(reason: Optional[InviteErrorKind]) -> int:
    if reason == InviteErrorKind.RATE_LIMITED:
        return 429
    if reason == InviteErrorKind.UNAVAILABLE:
        return 503
    return 200


def _render(payload: BaseModel, status_code: int = 200, retry_after: Optional[int] = None) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(
        status_code=status_code,
        content=payload.model_dump(by_alias=True, exclude_none=True, mode="json"),
        headers=headers
    )


@router.post("", response_model=IssuedInvite, response_model_exclude_none=True, status_code=201)
async def issue_invite(
    data: InviteIssueRequest,
    caller: CallerIdentity = Depends(require_caller_identity),
    service: InviteService = Depends(get_invite_service)
):
    """
    Issue an invite token for a property you own.

    The raw token and invite URL are returned only in this response.
    Issuers outside the tokenized-invite rollout get `{ok: false, path: "legacy"}`.
    """
    result = await service.issuer.issue(caller, data)
    if isinstance(result, InviteLegacyPath):
        return _render(result)
    return result


@router.get("/property/{property_id}", response_model=InviteListResponse, response_model_exclude_none=True)
async def list_property_invites(
    property_id: str,
    caller: CallerIdentity = Depends(require_caller_identity),
    service: InviteService = Depends(get_invite_service)
):
    """List the invites you issued for a property, newest first"""
    invites = await service.issuer.list_for_property(caller, property_id)
    return InviteListResponse(invites=invites)


@router.post("/validate", response_model=InviteValidateResponse, response_model_exclude_none=True)
async def validate_invite(
    data: InviteTokenRequest,
    caller: CallerIdentity = Depends(get_caller_identity),
    cid: str = Depends(correlation_id),
    service: InviteService = Depends(get_invite_service)
):
    """
    Validate an invite token and preview the property.

    No session required. Never mutates the token.
    """
    result = await service.validate(data.token, caller, cid)
    if result.ok:
        return InviteValidateResponse(ok=True, property=result.preview)

    payload = InviteValidateResponse(ok=False, reason=result.reason, retry_after=result.retry_after)
    return _render(payload, _status_for(result.reason), result.retry_after)


@router.post("/accept", response_model=InviteAcceptResponse, response_model_exclude_none=True)
async def accept_invite(
    data: InviteTokenRequest,
    caller: CallerIdentity = Depends(require_caller_identity),
    cid: str = Depends(correlation_id),
    service: InviteService = Depends(get_invite_service)
):
    """
    Accept an invite token and link your account to the property.

    Accepting twice returns `alreadyLinked: true` without using another slot.
    """
    result = await service.accept(data.token, caller, cid)
    if result.ok:
        return InviteAcceptResponse(
            ok=True, already_linked=result.already_linked, property_id=result.property_id
        )

    payload = InviteAcceptResponse(ok=False, reason=result.reason, retry_after=result.retry_after)
    return _render(payload, _status_for(result.reason), result.retry_after)


@router.post("/revoke", response_model=InviteRevokeResponse)
async def revoke_invite(
    data: InviteRevokeRequest,
    caller: CallerIdentity = Depends(require_caller_identity),
    service: InviteService = Depends(get_invite_service)
):
    """Revoke an invite you issued. Revoking twice is a no-op."""
    await service.issuer.revoke(caller, data.token_id)
    return InviteRevokeResponse()


@router.post("/events")
async def report_invite_event(
    data: InviteEventRequest,
    caller: CallerIdentity = Depends(get_caller_identity),
    cid: str = Depends(correlation_id),
    service: InviteService = Depends(get_invite_service)
):
    """
    Funnel event reported by the mobile client (invite_view only).

    Rate limited per identity or IP. Views for unknown tokens are accepted
    but not counted.
    """
    if data.event != InviteEventName.VIEW.value:
        raise ValidationError(
            f"Evento no soportado: {data.event}",
            details={"allowed": [InviteEventName.VIEW.value]}
        )
    decision = await service.record_view(data.token, caller, data.correlation_id or cid, data.latency_ms)
    if not decision.allowed:
        raise RateLimitError(decision.retry_after)
    return {"ok": True}
