from __future__ import annotations
from datetime import datetime, timezone
from typing import Literal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from ..models import Attendee, DailyRecord, as_utc

ResourceType = Literal["lunch", "kit"]

DEFAULT_CHECKIN_LOCATION = "Main entrance"
DEFAULT_RESOURCE_LOCATION = "Main distribution"

def _now():
    return datetime.now(timezone.utc)

async def resolve_attendee(db: AsyncSession, identifier: str, *, for_update: bool = False) -> Attendee | None:
    """Internal id first, then public unique id, then email."""
    identifier = identifier.strip()
    if not identifier:
        return None
    for clause in (
        Attendee.id == identifier,
        Attendee.unique_id == identifier,
        Attendee.email == identifier.lower(),
    ):
        stmt = select(Attendee).where(clause)
        if for_update:
            stmt = stmt.with_for_update()
        found = (await db.execute(stmt)).scalar_one_or_none()
        if found is not None:
            return found
    return None

def claimed_at(attendee: Attendee, kind: str) -> datetime | None:
    """Stored instant for a trackable fact ("check-in", "lunch" or "kit")."""
    if kind == "check-in":
        return as_utc(attendee.checked_in_at) if attendee.is_checked_in else None
    if kind == "lunch":
        return as_utc(attendee.lunch_claimed_at) if attendee.lunch_claimed else None
    if kind == "kit":
        return as_utc(attendee.kit_claimed_at) if attendee.kit_claimed else None
    raise ValueError(f"unknown fact: {kind}")

async def _daily_record(db: AsyncSession, attendee_id: str, at: datetime) -> DailyRecord:
    day = at.astimezone(timezone.utc).date()
    row = (await db.execute(
        select(DailyRecord).where(DailyRecord.attendee_id == attendee_id, DailyRecord.day == day)
    )).scalar_one_or_none()
    if row is None:
        row = DailyRecord(attendee_id=attendee_id, day=day)
        db.add(row)
    return row

async def apply_checkin(
    db: AsyncSession,
    attendee: Attendee,
    *,
    at: datetime,
    location: str | None = None,
    staff_id: str | None = None,
) -> Attendee:
    """
    Mark the attendee checked in at `at` and upsert the day bucket.
    Does not commit; the caller owns the transaction.
    """
    attendee.is_checked_in = True
    attendee.checked_in_at = at
    attendee.checked_in_location = location or DEFAULT_CHECKIN_LOCATION
    if staff_id:
        attendee.checked_in_by_id = staff_id

    day = await _daily_record(db, attendee.id, at)
    day.checked_in = True
    day.checked_in_at = at
    await db.flush()
    return attendee

async def apply_resource_claim(
    db: AsyncSession,
    attendee: Attendee,
    *,
    resource_type: ResourceType,
    at: datetime,
    location: str | None = None,
    staff_id: str | None = None,
) -> Attendee:
    location = location or DEFAULT_RESOURCE_LOCATION
    day = await _daily_record(db, attendee.id, at)
    if resource_type == "lunch":
        attendee.lunch_claimed = True
        attendee.lunch_claimed_at = at
        attendee.lunch_claimed_location = location
        attendee.lunch_claimed_by_id = staff_id
        day.lunch_claimed = True
        day.lunch_claimed_at = at
    elif resource_type == "kit":
        attendee.kit_claimed = True
        attendee.kit_claimed_at = at
        attendee.kit_claimed_location = location
        attendee.kit_claimed_by_id = staff_id
        day.kit_claimed = True
        day.kit_claimed_at = at
    else:
        raise ValueError(f"unknown resource type: {resource_type}")
    await db.flush()
    return attendee

# --- online scan path ---

async def record_checkin(
    db: AsyncSession,
    *,
    attendee: Attendee,
    staff_id: str,
    location: str | None = None,
):
    # already checked in: report, don't rewrite
    if attendee.is_checked_in:
        return attendee, False
    await apply_checkin(db, attendee, at=_now(), location=location, staff_id=staff_id)
    await db.commit()
    await db.refresh(attendee)
    return attendee, True

async def record_resource_claim(
    db: AsyncSession,
    *,
    attendee: Attendee,
    resource_type: ResourceType,
    staff_id: str,
    location: str | None = None,
):
    if claimed_at(attendee, resource_type) is not None:
        return attendee, False
    await apply_resource_claim(
        db, attendee, resource_type=resource_type, at=_now(), location=location, staff_id=staff_id
    )
    await db.commit()
    await db.refresh(attendee)
    return attendee, True

async def attendees_updated_since(db: AsyncSession, since: datetime, *, limit: int = 500) -> list[Attendee]:
    since = as_utc(since).astimezone(timezone.utc)
    rows = (await db.execute(
        select(Attendee).where(Attendee.updated_at > since).order_by(Attendee.updated_at.asc()).limit(limit)
    )).scalars().all()
    return list(rows)
