from __future__ import annotations
import logging
import math
from datetime import timedelta
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, status, Response, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, require_staff, get_connection_registry
from ..core.broadcast import ATTENDEE_CHECKED_IN, RESOURCE_CLAIMED, STAFF_ROLES, ConnectionRegistry, notify
from ..core.qr import TokenVerification, issue_token, verify_token, render_qr_png, render_qr_data_url
from ..core.redis import consume_nonce, release_nonce, allow_request
from ..core.config import get_settings
from ..models import Attendee
from ..schemas import QRCreateResponse, CheckinCreate, ResourceClaimCreate, ScanResult, AttendeeRead
from ..services.checkins import resolve_attendee, record_checkin, record_resource_claim

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/checkin", tags=["checkin"])

def _client_ip(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"

async def _attendee_for_token(db: AsyncSession, attendee_id: str, claims: Dict[str, Any]) -> Attendee:
    attendee = await resolve_attendee(db, attendee_id)
    if attendee is None:
        raise HTTPException(status_code=404, detail="Attendee not found")
    # attendees may only mint codes for themselves
    if claims.get("role") not in STAFF_ROLES and claims.get("sub") != attendee.id:
        raise HTTPException(status_code=403, detail="Not allowed to issue a code for this attendee")
    return attendee

def _issue(attendee: Attendee, request: Request, device_fingerprint: str | None):
    return issue_token(
        attendee.id,
        settings.qr_secret_effective,
        ttl=timedelta(seconds=settings.qr_ttl_seconds),
        client_ip=_client_ip(request) if settings.qr_bind_ip else None,
        device_info=device_fingerprint if settings.qr_bind_device else None,
    )

async def _verify_scan(request: Request, token: str, device_info: str | None, purpose: str) -> TokenVerification:
    ip = _client_ip(request)
    try:
        allowed = await allow_request(ip, f"checkin.{purpose}")
    except Exception:
        logger.warning("rate limiter unavailable, letting %s through", ip)
        allowed = True
    if not allowed:
        raise HTTPException(status_code=429, detail="Too many requests")

    result = verify_token(
        token,
        settings.qr_secret_effective,
        client_ip=ip if settings.qr_bind_ip else None,
        device_info=device_info,
    )
    if not result.valid:
        logger.info("rejected %s scan from %s: %s", purpose, ip, result.reason)
        raise HTTPException(status_code=400, detail=result.reason)
    return result

async def _consume(qr: TokenVerification, purpose: str) -> str | None:
    """Mark the token used for `purpose`; only call once the scan is going to be written."""
    if not (settings.qr_single_use and qr.nonce):
        return None
    key = f"{purpose}:{qr.nonce}"
    ttl = math.ceil((qr.expires_in_ms or 0) / 1000) + 1
    try:
        first = await consume_nonce(key, ttl)
    except Exception:
        logger.error("nonce store unavailable; refusing %s scan", purpose)
        raise HTTPException(status_code=503, detail="Check-in temporarily unavailable")
    if not first:
        raise HTTPException(status_code=409, detail="QR already used")
    return key

async def _release(key: str | None) -> None:
    if key is None:
        return
    try:
        await release_nonce(key)
    except Exception:
        logger.warning("could not release nonce %s after failed write", key)

# --- 1) Issue a short-lived signed+encrypted QR token for an attendee
@router.post("/attendees/{attendee_id}/qr", response_model=QRCreateResponse, status_code=201)
async def create_qr_for_attendee(
    attendee_id: str,
    request: Request,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    x_device_fingerprint: str | None = Header(default=None),
):
    attendee = await _attendee_for_token(db, attendee_id, claims)
    token, exp = _issue(attendee, request, x_device_fingerprint)
    return QRCreateResponse(token=token, expires_at=exp, data_url=render_qr_data_url(token))

# PNG for kiosks / printed badges
@router.get("/attendees/{attendee_id}/qr.png")
async def create_qr_png(
    attendee_id: str,
    request: Request,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    x_device_fingerprint: str | None = Header(default=None),
):
    attendee = await _attendee_for_token(db, attendee_id, claims)
    token, _ = _issue(attendee, request, x_device_fingerprint)
    return Response(content=render_qr_png(token), media_type="image/png", headers={"Cache-Control": "no-store"})

# --- 2) Staff scans a code: verify + check in
@router.post("/scan", response_model=ScanResult)
async def scan_and_checkin(
    payload: CheckinCreate,
    request: Request,
    claims: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_connection_registry),
):
    qr = await _verify_scan(request, payload.token, payload.device_info, "checkin")

    attendee = await resolve_attendee(db, qr.attendee_id, for_update=True)
    if attendee is None:
        raise HTTPException(status_code=404, detail="Attendee not found")

    used = await _consume(qr, "checkin")
    try:
        attendee, created = await record_checkin(
            db, attendee=attendee, staff_id=claims["sub"], location=payload.location
        )
    except Exception:
        await _release(used)
        raise
    if created:
        await notify(registry, attendee.id, {
            "event": ATTENDEE_CHECKED_IN,
            "attendeeId": attendee.id,
            "name": attendee.name,
            "checkedInAt": attendee.checked_in_at.isoformat() if attendee.checked_in_at else None,
            "location": attendee.checked_in_location,
            "eventId": attendee.event_id,
        })
    return ScanResult(status="success" if created else "duplicate", attendee=AttendeeRead.model_validate(attendee))

# --- 3) Staff scans a code at a distribution point: lunch / kit
@router.post("/resource", response_model=ScanResult)
async def scan_and_claim(
    payload: ResourceClaimCreate,
    request: Request,
    claims: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_connection_registry),
):
    qr = await _verify_scan(request, payload.token, payload.device_info, payload.resource_type)

    attendee = await resolve_attendee(db, qr.attendee_id, for_update=True)
    if attendee is None:
        raise HTTPException(status_code=404, detail="Attendee not found")
    if not attendee.is_checked_in:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "NOT_CHECKED_IN", "message": "Attendee must be checked in before receiving resources"},
        )

    used = await _consume(qr, payload.resource_type)
    try:
        attendee, created = await record_resource_claim(
            db, attendee=attendee, resource_type=payload.resource_type, staff_id=claims["sub"], location=payload.location
        )
    except Exception:
        await _release(used)
        raise
    if created:
        await notify(registry, attendee.id, {
            "event": RESOURCE_CLAIMED,
            "attendeeId": attendee.id,
            "name": attendee.name,
            "resourceType": payload.resource_type,
            "location": payload.location,
        })
    return ScanResult(status="success" if created else "duplicate", attendee=AttendeeRead.model_validate(attendee))
