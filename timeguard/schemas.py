from datetime import date, datetime
from datetime import date as date_type
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from timeguard.models import ConflictType, ProfileRole, TimeEntryStatus
from timeguard.services.time_window import is_valid_hhmm

WeekdayName = Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _check_hhmm(value: str | None) -> str | None:
    if value is None:
        return None
    if not is_valid_hhmm(value):
        raise ValueError("Invalid time format. Use HH:MM.")
    return value


def _reject_explicit_nulls(model: BaseModel, field_names: tuple[str, ...]) -> None:
    """PATCH bodies may omit these fields but not clear them."""
    nulls = sorted(name for name in field_names if name in model.model_fields_set and getattr(model, name) is None)
    if nulls:
        raise ValueError(f"{', '.join(nulls)} cannot be null")


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    role: ProfileRole


class PositionPayload(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)
    timestamp: datetime | None = None


class GeofenceCheckRequest(BaseModel):
    site_id: int = Field(ge=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class GeofenceCheckResponse(BaseModel):
    site_id: int
    is_within: bool
    distance_m: int | None
    radius_m: int


class ClockInRequest(BaseModel):
    site_id: int = Field(ge=1)
    position: PositionPayload | None = None
    acknowledge_conflict: bool = False
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=64)


class ClockOutRequest(BaseModel):
    position: PositionPayload | None = None
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=64)


class TimeEntryRead(BaseModel):
    id: int
    employee_id: int
    site_id: int
    clock_in_time: datetime
    clock_in_lat: float
    clock_in_lon: float
    clock_in_accuracy_m: float | None = None
    clock_in_distance_m: int | None = None
    clock_out_time: datetime | None = None
    clock_out_lat: float | None = None
    clock_out_lon: float | None = None
    clock_out_accuracy_m: float | None = None
    status: TimeEntryStatus
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ConflictRead(BaseModel):
    id: int
    employee_id: int
    site_id: int
    time_entry_id: int | None
    conflict_type: ConflictType
    conflict_time: datetime
    acknowledged: bool
    acknowledged_at: datetime | None = None
    acknowledged_by_id: int | None = None
    details: str

    model_config = ConfigDict(from_attributes=True)


class ClockInResponse(BaseModel):
    entry: TimeEntryRead
    conflict: ConflictRead | None = None
    replayed: bool = False


class StatusResponse(BaseModel):
    clocked_in: bool
    entry: TimeEntryRead | None = None
    site_name: str | None = None
    elapsed_minutes: int | None = None


class WeeklyStatsResponse(BaseModel):
    total_hours: float
    expected_hours: float
    progress_percent: int
    days_worked: int
    streak_days: int
    entries_count: int


class ProfileRead(BaseModel):
    id: int
    email: str
    full_name: str | None
    role: ProfileRole
    work_hours: float
    work_days: list[str]
    is_active: bool
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ProfileCreate(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    full_name: str | None = Field(default=None, max_length=255)
    role: ProfileRole = ProfileRole.EMPLOYEE
    password: str = Field(min_length=8, max_length=256)
    work_hours: float = Field(default=8.0, gt=0, le=24)
    work_days: list[WeekdayName] = Field(
        default_factory=lambda: ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
    )
    is_active: bool = True


class ProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, max_length=255)
    role: ProfileRole | None = None
    password: str | None = Field(default=None, min_length=8, max_length=256)
    work_hours: float | None = Field(default=None, gt=0, le=24)
    work_days: list[WeekdayName] | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def validate_not_null(self) -> "ProfileUpdate":
        _reject_explicit_nulls(self, ("role", "work_hours", "work_days", "is_active"))
        return self


class SiteRead(BaseModel):
    id: int
    name: str
    address: str
    latitude: float | None
    longitude: float | None
    geofence_radius: int
    allowed_hours_start: str | None
    allowed_hours_end: str | None
    variance_threshold_percent: float
    manager_id: int | None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class SiteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    address: str = Field(default="", max_length=500)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    geofence_radius: int = Field(default=100, gt=0)
    allowed_hours_start: str | None = None
    allowed_hours_end: str | None = None
    variance_threshold_percent: float = Field(default=5.0, ge=0)
    manager_id: int | None = Field(default=None, ge=1)
    is_active: bool = True

    @field_validator("allowed_hours_start", "allowed_hours_end")
    @classmethod
    def validate_hours(cls, value: str | None) -> str | None:
        return _check_hhmm(value)

    @model_validator(mode="after")
    def validate_pairs(self) -> "SiteCreate":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        if (self.allowed_hours_start is None) != (self.allowed_hours_end is None):
            raise ValueError("allowed_hours_start and allowed_hours_end must be provided together")
        return self


class SiteUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    address: str | None = Field(default=None, max_length=500)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    geofence_radius: int | None = Field(default=None, gt=0)
    allowed_hours_start: str | None = None
    allowed_hours_end: str | None = None
    variance_threshold_percent: float | None = Field(default=None, ge=0)
    manager_id: int | None = Field(default=None, ge=1)
    is_active: bool | None = None

    @field_validator("allowed_hours_start", "allowed_hours_end")
    @classmethod
    def validate_hours(cls, value: str | None) -> str | None:
        return _check_hhmm(value)

    @model_validator(mode="after")
    def validate_not_null(self) -> "SiteUpdate":
        _reject_explicit_nulls(self, ("name", "address", "geofence_radius", "variance_threshold_percent", "is_active"))
        return self


class AssignmentRead(BaseModel):
    id: int
    employee_id: int
    site_id: int
    start_date: date | None
    end_date: date | None
    arrival_time: str
    end_time: str

    model_config = ConfigDict(from_attributes=True)


class AssignmentReplaceRequest(BaseModel):
    site_ids: list[int] = Field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    arrival_time: str = "09:00"
    end_time: str = "17:00"
    confirm_conflicts: bool = False


class VarianceAlertRead(BaseModel):
    id: int
    employee_id: int
    employee_name: str | None = None
    site_id: int
    site_name: str | None = None
    manager_id: int | None
    date: date_type
    expected_hours: float
    actual_hours: float
    variance_percentage: float
    threshold_used: float
    acknowledged: bool
    acknowledged_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class VarianceGenerateResponse(BaseModel):
    day: date_type
    alerts: list[VarianceAlertRead]


class EmployeeHoursRead(BaseModel):
    employee_id: int
    employee_name: str
    hours: float
    expected_hours: float
    variance_hours: float


class SiteHoursRead(BaseModel):
    site_id: int
    site_name: str
    hours: float


class HoursReportResponse(BaseModel):
    start_utc: datetime
    end_utc: datetime
    days: int
    site_id: int | None
    entries_count: int
    by_employee: list[EmployeeHoursRead]
    by_site: list[SiteHoursRead]
