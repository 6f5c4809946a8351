"""
Offline sync: merge check-in / resource-claim events recorded by a
disconnected station into the canonical attendee store.

Every record is handled on its own and in its own transaction. The merge is
last-write-wins on the instant the fact was recorded: a record older than
what the server already holds is reported as a conflict and not applied, so
replaying a batch never moves a stored instant backwards.
"""
from __future__ import annotations
import logging
from enum import Enum
from typing import Any, Dict, Sequence

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.broadcast import ATTENDEE_CHECKED_IN, RESOURCE_CLAIMED, ConnectionRegistry, notify
from ..schemas import OfflineCheckin, OfflineRecord, OfflineResourceClaim, SyncDetail, SyncResults
from .checkins import apply_checkin, apply_resource_claim, claimed_at, resolve_attendee

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("type", "attendeeId", "data", "timestamp")
RECORD_TYPES = ("check-in", "resource")

_record_adapter: TypeAdapter[OfflineCheckin | OfflineResourceClaim] = TypeAdapter(OfflineRecord)

class SkipReason(str, Enum):
    MISSING_FIELDS = "missing required fields"
    UNKNOWN_RECORD_TYPE = "unknown record type"
    INVALID_PAYLOAD = "invalid payload"
    ATTENDEE_NOT_FOUND = "attendee not found"
    STALE_WRITE = "newer value already on server"
    PERSISTENCE_FAILURE = "persistence failure"

def _missing(raw: Any) -> list[str]:
    if not isinstance(raw, dict):
        return list(REQUIRED_FIELDS)
    return [k for k in REQUIRED_FIELDS if raw.get(k) is None or raw.get(k) == ""]

def _validation_message(err: ValidationError) -> str:
    first = err.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()) if p not in RECORD_TYPES)
    msg = first.get("msg", "")
    return f"{SkipReason.INVALID_PAYLOAD.value}: {where}: {msg}" if where else f"{SkipReason.INVALID_PAYLOAD.value}: {msg}"

def _fact(record: OfflineCheckin | OfflineResourceClaim) -> str:
    return "check-in" if isinstance(record, OfflineCheckin) else record.data.resource_type

async def _apply(
    db: AsyncSession,
    record: OfflineCheckin | OfflineResourceClaim,
    *,
    staff_id: str | None,
) -> tuple[str, SkipReason | None, Any]:
    """
    One record, one transaction. Returns (attendee_id, outcome, server_instant)
    where outcome is None when the record was applied.
    """
    attendee = await resolve_attendee(db, record.attendee_id, for_update=True)
    if attendee is None:
        await db.rollback()
        return record.attendee_id, SkipReason.ATTENDEE_NOT_FOUND, None

    attendee_id = attendee.id
    stored = claimed_at(attendee, _fact(record))
    if stored is not None and stored > record.timestamp:
        # rollback expires the instance; only plain values are used past this point
        await db.rollback()
        return attendee_id, SkipReason.STALE_WRITE, stored

    if isinstance(record, OfflineCheckin):
        await apply_checkin(db, attendee, at=record.timestamp, location=record.data.location, staff_id=staff_id)
    else:
        await apply_resource_claim(
            db,
            attendee,
            resource_type=record.data.resource_type,
            at=record.timestamp,
            location=record.data.location,
            staff_id=staff_id,
        )
    await db.commit()
    return attendee_id, None, None

def _event_payload(record: OfflineCheckin | OfflineResourceClaim, attendee_id: str, station_id: str) -> Dict[str, Any]:
    if isinstance(record, OfflineCheckin):
        return {
            "event": ATTENDEE_CHECKED_IN,
            "attendeeId": attendee_id,
            "checkedInAt": record.timestamp.isoformat(),
            "location": record.data.location,
            "stationId": station_id,
            "offline": True,
        }
    return {
        "event": RESOURCE_CLAIMED,
        "attendeeId": attendee_id,
        "resourceType": record.data.resource_type,
        "claimedAt": record.timestamp.isoformat(),
        "location": record.data.location,
        "stationId": station_id,
        "offline": True,
    }

async def reconcile(
    db: AsyncSession,
    records: Sequence[Any],
    *,
    staff_id: str | None,
    station_id: str,
    registry: ConnectionRegistry | None = None,
) -> SyncResults:
    results = SyncResults(total=len(records))

    def skip(i: int, raw: Any, reason: str):
        fields = raw if isinstance(raw, dict) else {}
        attendee_id, rtype = fields.get("attendeeId"), fields.get("type")
        results.skipped += 1
        results.details.append(SyncDetail(
            index=i,
            attendee_id=str(attendee_id) if attendee_id is not None else None,
            type=str(rtype) if rtype is not None else None,
            status="skipped",
            reason=reason,
        ))

    for i, raw in enumerate(records):
        missing = _missing(raw)
        if missing:
            skip(i, raw, f"{SkipReason.MISSING_FIELDS.value}: {', '.join(missing)}")
            continue
        if raw["type"] not in RECORD_TYPES:
            skip(i, raw, SkipReason.UNKNOWN_RECORD_TYPE.value)
            continue
        try:
            record = _record_adapter.validate_python(raw)
        except ValidationError as e:
            skip(i, raw, _validation_message(e))
            continue

        try:
            attendee_id, outcome, server_at = await _apply(db, record, staff_id=staff_id)
        except Exception as e:
            await db.rollback()
            logger.error(
                "offline record %d (%s for %s) from station %s failed: %s",
                i, record.type, record.attendee_id, station_id, e,
            )
            skip(i, raw, f"{SkipReason.PERSISTENCE_FAILURE.value}: {e}")
            continue

        if outcome is SkipReason.ATTENDEE_NOT_FOUND:
            skip(i, raw, outcome.value)
        elif outcome is SkipReason.STALE_WRITE:
            results.conflicts += 1
            results.details.append(SyncDetail(
                index=i,
                attendee_id=attendee_id,
                type=record.type,
                status="conflict",
                reason=outcome.value,
                server_timestamp=server_at,
            ))
        else:
            results.processed += 1
            results.details.append(SyncDetail(index=i, attendee_id=attendee_id, type=record.type, status="synced"))
            if registry is not None:
                await notify(registry, attendee_id, _event_payload(record, attendee_id, station_id))

    logger.info(
        "offline sync from station %s: %d total, %d processed, %d skipped, %d conflicts",
        station_id, results.total, results.processed, results.skipped, results.conflicts,
    )
    return results
