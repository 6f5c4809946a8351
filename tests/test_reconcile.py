from __future__ import annotations
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.models import Attendee, DailyRecord, as_utc
from app.services import reconcile as reconcile_mod
from app.services.reconcile import SkipReason, reconcile

T1 = datetime(2024, 6, 3, 9, 15, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 3, 10, 30, tzinfo=timezone.utc)

def checkin(attendee_id, ts, **data):
    return {"type": "check-in", "attendeeId": attendee_id, "data": data, "timestamp": ts.isoformat()}

def claim(attendee_id, ts, resource_type, **data):
    return {
        "type": "resource",
        "attendeeId": attendee_id,
        "data": {"resourceType": resource_type, **data},
        "timestamp": ts.isoformat(),
    }

async def _reload(session_maker, attendee_id) -> Attendee:
    async with session_maker() as s:
        return (await s.execute(select(Attendee).where(Attendee.id == attendee_id))).scalar_one()

async def _daily(session_maker, attendee_id):
    async with session_maker() as s:
        return (await s.execute(select(DailyRecord).where(DailyRecord.attendee_id == attendee_id))).scalars().all()

async def test_fresh_checkin_is_applied(db, session_maker, make_attendee):
    att = await make_attendee()
    res = await reconcile(db, [checkin(att.id, T1, location="Hall B")], staff_id="staff-9", station_id="gate-2")

    assert (res.total, res.processed, res.skipped, res.conflicts) == (1, 1, 0, 0)
    assert res.details[0].status == "synced"

    fresh = await _reload(session_maker, att.id)
    assert fresh.is_checked_in is True
    assert as_utc(fresh.checked_in_at) == T1
    assert fresh.checked_in_location == "Hall B"
    assert fresh.checked_in_by_id == "staff-9"

    days = await _daily(session_maker, att.id)
    assert len(days) == 1
    assert days[0].day == date(2024, 6, 3)
    assert days[0].checked_in is True

async def test_stale_checkin_is_a_conflict(db, session_maker, make_attendee):
    att = await make_attendee(is_checked_in=True, checked_in_at=T2, checked_in_location="Main entrance")
    res = await reconcile(db, [checkin(att.id, T1, location="Side door")], staff_id="s", station_id="gate-1")

    assert res.conflicts == 1 and res.processed == 0
    detail = res.details[0]
    assert detail.status == "conflict"
    assert detail.reason == SkipReason.STALE_WRITE.value
    assert as_utc(detail.server_timestamp) == T2

    fresh = await _reload(session_maker, att.id)
    assert as_utc(fresh.checked_in_at) == T2
    assert fresh.checked_in_location == "Main entrance"
    assert await _daily(session_maker, att.id) == []

async def test_later_offline_checkin_wins(db, session_maker, make_attendee):
    att = await make_attendee(is_checked_in=True, checked_in_at=T1)
    res = await reconcile(db, [checkin(att.id, T2, location="Gate 4")], staff_id="s", station_id="gate-4")
    assert res.processed == 1
    assert as_utc((await _reload(session_maker, att.id)).checked_in_at) == T2

async def test_replaying_a_batch_is_idempotent(db, session_maker, make_attendee):
    att = await make_attendee()
    batch = [checkin(att.id, T1, location="Hall A"), claim(att.id, T2, "lunch", location="Food court")]

    first = await reconcile(db, batch, staff_id="s", station_id="st")
    snapshot = await _reload(session_maker, att.id)
    second = await reconcile(db, batch, staff_id="s", station_id="st")
    again = await _reload(session_maker, att.id)

    assert first.processed == second.processed == 2
    assert second.conflicts == 0
    for field in ("is_checked_in", "checked_in_location", "lunch_claimed", "lunch_claimed_location"):
        assert getattr(again, field) == getattr(snapshot, field)
    assert as_utc(again.checked_in_at) == as_utc(snapshot.checked_in_at) == T1
    assert as_utc(again.lunch_claimed_at) == T2
    assert len(await _daily(session_maker, att.id)) == 1

@pytest.mark.parametrize("bad_first", [True, False])
async def test_malformed_record_does_not_affect_valid_one(db, session_maker, make_attendee, bad_first):
    att = await make_attendee()
    bad = {"type": "check-in", "data": {}, "timestamp": T1.isoformat()}
    good = checkin(att.id, T1)
    batch = [bad, good] if bad_first else [good, bad]

    res = await reconcile(db, batch, staff_id="s", station_id="st")

    assert (res.processed, res.skipped) == (1, 1)
    skipped = next(d for d in res.details if d.status == "skipped")
    assert skipped.reason.startswith(SkipReason.MISSING_FIELDS.value)
    assert "attendeeId" in skipped.reason
    assert (await _reload(session_maker, att.id)).is_checked_in is True

async def test_resolves_by_unique_id_and_email(db, session_maker, make_attendee):
    att = await make_attendee(unique_id="ATT-ZX81QQ00", email="grace@example.com")
    res = await reconcile(
        db,
        [checkin("ATT-ZX81QQ00", T1), claim("Grace@Example.com", T2, "kit")],
        staff_id="s",
        station_id="st",
    )
    assert res.processed == 2
    assert {d.attendee_id for d in res.details} == {att.id}
    fresh = await _reload(session_maker, att.id)
    assert fresh.kit_claimed is True and fresh.kit_claimed_by_id == "s"

async def test_internal_id_is_preferred_over_unique_id(db, session_maker, make_attendee):
    first = await make_attendee()
    # a second attendee whose public id collides with the first one's internal id
    await make_attendee(unique_id=first.id)
    res = await reconcile(db, [checkin(first.id, T1)], staff_id="s", station_id="st")
    assert res.details[0].attendee_id == first.id

async def test_skip_reasons(db, make_attendee):
    att = await make_attendee()
    batch = [
        checkin("nobody@example.com", T1),
        {"type": "teleport", "attendeeId": att.id, "data": {}, "timestamp": T1.isoformat()},
        claim(att.id, T1, "tshirt"),
        "not even a dict",
        {"type": "check-in", "attendeeId": att.id, "data": {}, "timestamp": "yesterday-ish"},
    ]
    res = await reconcile(db, batch, staff_id="s", station_id="st")

    assert (res.total, res.processed, res.skipped, res.conflicts) == (5, 0, 5, 0)
    reasons = [d.reason for d in res.details]
    assert reasons[0] == SkipReason.ATTENDEE_NOT_FOUND.value
    assert reasons[1] == SkipReason.UNKNOWN_RECORD_TYPE.value
    assert reasons[2].startswith(SkipReason.INVALID_PAYLOAD.value)
    assert reasons[3].startswith(SkipReason.MISSING_FIELDS.value)
    assert reasons[4].startswith(SkipReason.INVALID_PAYLOAD.value)
    assert [d.index for d in res.details] == [0, 1, 2, 3, 4]

async def test_resource_conflict_is_per_resource(db, session_maker, make_attendee):
    att = await make_attendee(is_checked_in=True, checked_in_at=T1, lunch_claimed=True, lunch_claimed_at=T2)
    res = await reconcile(
        db,
        [claim(att.id, T1, "lunch"), claim(att.id, T1, "kit")],
        staff_id="s",
        station_id="st",
    )
    assert [d.status for d in res.details] == ["conflict", "synced"]
    fresh = await _reload(session_maker, att.id)
    assert as_utc(fresh.lunch_claimed_at) == T2
    assert as_utc(fresh.kit_claimed_at) == T1

async def test_epoch_millis_timestamp(db, session_maker, make_attendee):
    att = await make_attendee()
    rec = {"type": "check-in", "attendeeId": att.id, "data": {}, "timestamp": int(T1.timestamp() * 1000)}
    res = await reconcile(db, [rec], staff_id="s", station_id="st")
    assert res.processed == 1
    assert as_utc((await _reload(session_maker, att.id)).checked_in_at) == T1

async def test_records_on_different_days_get_their_own_bucket(db, session_maker, make_attendee):
    att = await make_attendee()
    day2 = T1 + timedelta(days=1)
    await reconcile(db, [checkin(att.id, T1), checkin(att.id, day2)], staff_id="s", station_id="st")
    days = sorted(d.day for d in await _daily(session_maker, att.id))
    assert days == [date(2024, 6, 3), date(2024, 6, 4)]

async def test_persistence_failure_is_isolated(db, session_maker, make_attendee, monkeypatch):
    boom, ok = await make_attendee(), await make_attendee()
    real_apply = reconcile_mod.apply_checkin

    async def flaky_apply(session, attendee, **kw):
        if attendee.id == boom.id:
            raise RuntimeError("disk full")
        return await real_apply(session, attendee, **kw)

    monkeypatch.setattr(reconcile_mod, "apply_checkin", flaky_apply)
    res = await reconcile(db, [checkin(boom.id, T1), checkin(ok.id, T1)], staff_id="s", station_id="st")

    assert (res.processed, res.skipped) == (1, 1)
    assert res.details[0].reason == f"{SkipReason.PERSISTENCE_FAILURE.value}: disk full"
    assert (await _reload(session_maker, boom.id)).is_checked_in is False
    assert (await _reload(session_maker, ok.id)).is_checked_in is True

async def test_processed_records_are_broadcast(db, make_attendee, registry):
    att = await make_attendee()
    await reconcile(
        db,
        [checkin(att.id, T1), claim(att.id, T2, "lunch"), checkin("ghost", T1)],
        staff_id="s",
        station_id="gate-7",
        registry=registry,
    )
    assert [p["event"] for p in registry.sent] == ["attendee-checked-in", "resource-claimed"]
    assert all(p["stationId"] == "gate-7" and p["offline"] for p in registry.sent)
