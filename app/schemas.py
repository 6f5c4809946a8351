from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

# --- QR issuance / scanning ---

class QRCreateResponse(BaseModel):
    token: str
    expires_at: int  # epoch ms
    data_url: str  # PNG data URL, ready for an <img>

class CheckinCreate(BaseModel):
    token: str
    location: str | None = None
    device_info: str | None = None

class ResourceClaimCreate(BaseModel):
    token: str
    resource_type: Literal["lunch", "kit"]
    location: str | None = None
    device_info: str | None = None

class AttendeeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    unique_id: str
    email: str
    name: str
    event_id: str | None = None
    is_checked_in: bool
    checked_in_at: datetime | None = None
    checked_in_location: str | None = None
    lunch_claimed: bool
    lunch_claimed_at: datetime | None = None
    kit_claimed: bool
    kit_claimed_at: datetime | None = None
    updated_at: datetime | None = None

class ScanResult(BaseModel):
    status: Literal["success", "duplicate"]
    attendee: AttendeeRead

# --- offline sync ---

def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

class CheckinData(BaseModel):
    location: str | None = None

class ResourceData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resource_type: Literal["lunch", "kit"] = Field(alias="resourceType")
    location: str | None = None

class _OfflineRecordBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attendee_id: str = Field(alias="attendeeId", min_length=1)
    timestamp: datetime  # ISO-8601 or epoch ms; when the action happened on the device

    @field_validator("timestamp")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return _utc(v)

class OfflineCheckin(_OfflineRecordBase):
    type: Literal["check-in"]
    data: CheckinData

class OfflineResourceClaim(_OfflineRecordBase):
    type: Literal["resource"]
    data: ResourceData

OfflineRecord = Annotated[Union[OfflineCheckin, OfflineResourceClaim], Field(discriminator="type")]

class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # raw dicts: each record is validated on its own so one bad record can't reject the batch
    offline_records: list[Any] = Field(alias="offlineRecords")
    station_id: str = Field(alias="stationId")
    staff_id: str | None = Field(default=None, alias="staffId")
    last_sync_timestamp: datetime | None = Field(default=None, alias="lastSyncTimestamp")

    @field_validator("last_sync_timestamp")
    @classmethod
    def _since_utc(cls, v: datetime | None) -> datetime | None:
        return _utc(v) if v is not None else None

class SyncDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    index: int
    attendee_id: str | None = Field(default=None, alias="attendeeId")
    type: str | None = None
    status: Literal["synced", "skipped", "conflict"]
    reason: str | None = None
    server_timestamp: datetime | None = Field(default=None, alias="serverTimestamp")

class SyncResults(BaseModel):
    total: int = 0
    processed: int = 0
    skipped: int = 0
    conflicts: int = 0
    details: list[SyncDetail] = Field(default_factory=list)

class SyncResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    results: SyncResults
    sync_timestamp: datetime = Field(alias="syncTimestamp")
    updates: list[AttendeeRead] = Field(default_factory=list)
