from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from carerota.models import (
    ChangeRequestStatus,
    LeaveCancellationStatus,
    LeaveRequestStatus,
    ShiftInstanceStatus,
    ShiftType,
)


class TimeEntryRead(BaseModel):
    id: int
    care_space_id: int
    carer_id: int
    shift_instance_id: int | None
    start_ts: datetime
    end_ts: datetime
    shift_type: ShiftType
    notes: str | None
    placeholder_bundle_id: str | None = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ShiftInstanceRead(BaseModel):
    id: int
    template_id: int
    carer_id: int
    scheduled_date: date
    status: ShiftInstanceStatus

    model_config = ConfigDict(from_attributes=True)


class ScheduleRangeResponse(BaseModel):
    time_entries: list[TimeEntryRead]
    unmaterialized_instances: list[ShiftInstanceRead]


class MaterializeResponse(BaseModel):
    created: bool
    time_entry: TimeEntryRead


class ChangeRequestCreate(BaseModel):
    time_entry_id: int | None = Field(default=None, ge=1)
    shift_instance_id: int | None = Field(default=None, ge=1)
    new_start_ts: datetime
    new_end_ts: datetime
    new_shift_type: ShiftType | None = None
    reason: str | None = Field(default=None, max_length=1000)
    bundle_id: str | None = Field(default=None, max_length=36)

    @model_validator(mode="after")
    def _validate_target(self) -> "ChangeRequestCreate":
        if self.time_entry_id is None and self.shift_instance_id is None:
            raise ValueError("Either time_entry_id or shift_instance_id is required.")
        if self.time_entry_id is not None and self.shift_instance_id is not None:
            raise ValueError("Provide time_entry_id or shift_instance_id, not both.")
        return self


class ChangeRequestRead(BaseModel):
    id: int
    care_space_id: int
    time_entry_id: int | None
    requested_by: str
    new_start_ts: datetime
    new_end_ts: datetime
    new_shift_type: ShiftType
    reason: str | None
    status: ChangeRequestStatus
    bundle_id: str | None
    original_snapshot: dict[str, Any] | None
    applied_by: str | None
    applied_at: datetime | None
    denied_by: str | None
    denied_at: datetime | None
    denial_reason: str | None
    reverted_by: str | None
    reverted_at: datetime | None
    archived_by: str | None
    archived_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChangeRequestDenyRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class ChangeRequestRevertRequest(BaseModel):
    force: bool = False


class BundleSummaryRead(BaseModel):
    bundle_id: str
    start_date: date
    end_date: date
    member_count: int
    request_ids: list[int]
    status_counts: dict[str, int]
    new_shift_type: ShiftType | None
    requested_by: str

    model_config = ConfigDict(from_attributes=True)


class ChangeRequestQueueResponse(BaseModel):
    bundles: list[BundleSummaryRead] = Field(default_factory=list)
    requests: list[ChangeRequestRead]


class BundleCreateRequest(BaseModel):
    carer_id: int = Field(ge=1)
    start_date: date
    end_date: date
    new_shift_type: ShiftType
    reason: str | None = Field(default=None, max_length=1000)
    hours: float | None = Field(default=None, gt=0, le=24)
    start_hour: int | None = Field(default=None, ge=0, le=23)

    @model_validator(mode="after")
    def _validate_range(self) -> "BundleCreateRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be greater than or equal to start_date")
        return self


class BundleCreateResponse(BaseModel):
    bundle_id: str
    requests: list[ChangeRequestRead]


class BundleDenyRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class BundleOperationResponse(BaseModel):
    bundle_id: str
    succeeded: list[int]
    failed: list[int]
    errors: dict[int, str]
    ok: bool

    model_config = ConfigDict(from_attributes=True)


class LeaveCancellationRequestRead(BaseModel):
    id: int
    care_space_id: int
    time_entry_id: int | None
    requested_by: str
    leave_date: date
    leave_type: ShiftType
    conflict_shift_ids: list[int]
    conflict_details: list[dict[str, Any]]
    status: LeaveCancellationStatus
    reviewed_by: str | None
    reviewed_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaveCancellationOutcomeRead(BaseModel):
    cancelled: bool
    time_entry: TimeEntryRead
    request: LeaveCancellationRequestRead | None = None


class LeaveRequestCreate(BaseModel):
    carer_id: int = Field(ge=1)
    start_date: date
    end_date: date
    leave_type: ShiftType
    hours: float = Field(default=8.0, gt=0, le=24)
    notes: str | None = Field(default=None, max_length=1000)


class LeaveRequestRead(BaseModel):
    id: int
    care_space_id: int
    carer_id: int
    start_date: date
    end_date: date
    leave_type: ShiftType
    hours: float
    notes: str | None
    status: LeaveRequestStatus
    created_by: str
    reviewed_by: str | None
    reviewed_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
