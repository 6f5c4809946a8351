from __future__ import annotations
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, require_staff, get_connection_registry
from ..core.broadcast import ConnectionRegistry
from ..schemas import AttendeeRead, SyncRequest, SyncResponse
from ..services.checkins import attendees_updated_since
from ..services.reconcile import reconcile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

DELEGATING_ROLES = frozenset({"admin", "manager"})

def _attributed_staff(requested: str | None, claims: dict) -> str:
    # only supervisors may upload on behalf of another operator
    if not requested or requested == claims["sub"]:
        return claims["sub"]
    if claims.get("role") in DELEGATING_ROLES:
        return requested
    logger.warning("staff %s tried to attribute offline records to %s; using caller", claims["sub"], requested)
    return claims["sub"]

# Offline station uploads its queued check-ins / claims; gets back a per-record report
@router.post("/offline", response_model=SyncResponse)
async def sync_offline(
    payload: SyncRequest,
    claims: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_connection_registry),
):
    sync_ts = datetime.now(timezone.utc)
    staff_id = _attributed_staff(payload.staff_id, claims)
    results = await reconcile(
        db,
        payload.offline_records,
        staff_id=staff_id,
        station_id=payload.station_id,
        registry=registry,
    )

    updates = []
    if payload.last_sync_timestamp is not None:
        rows = await attendees_updated_since(db, payload.last_sync_timestamp)
        updates = [AttendeeRead.model_validate(r) for r in rows]

    return SyncResponse(results=results, sync_timestamp=sync_ts, updates=updates)
