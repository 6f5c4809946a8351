from __future__ import annotations
import uuid
from datetime import date, datetime, timezone
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import UniqueConstraint, Index, Boolean, ForeignKey
from sqlalchemy.types import Date, DateTime, String

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())

def as_utc(dt: datetime | None) -> datetime | None:
    # some backends (sqlite) hand back naive datetimes for timezone=True columns
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)

class Attendee(Base):
    __tablename__ = "attendees"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    unique_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)  # public "ATT-XXXXXXXX"
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    is_checked_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_in_location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    checked_in_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    lunch_claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lunch_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lunch_claimed_location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lunch_claimed_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    kit_claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    kit_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    kit_claimed_location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    kit_claimed_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, index=True)

# One row per attendee per event day
class DailyRecord(Base):
    __tablename__ = "daily_records"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    attendee_id: Mapped[str] = mapped_column(ForeignKey("attendees.id", ondelete="CASCADE"), nullable=False, index=True)
    day: Mapped[date] = mapped_column("date", Date, nullable=False)

    checked_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lunch_claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lunch_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    kit_claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    kit_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("attendee_id", "date", name="uq_daily_record_attendee_date"),
        Index("ix_daily_records_date", "date"),
    )
