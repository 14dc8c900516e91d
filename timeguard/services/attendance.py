from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from math import isfinite

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from timeguard.errors import ApiError
from timeguard.models import (
    Conflict,
    ConflictType,
    EmployeeSite,
    Profile,
    Site,
    TimeEntry,
    TimeEntryStatus,
)
from timeguard.security import AuthSession
from timeguard.services.geo import GeofenceResult, evaluate_geofence
from timeguard.services.time_window import format_hhmm, is_valid_hhmm, is_within_window
from timeguard.services.variance import attendance_timezone, local_day_of, refresh_daily_variance_alert
from timeguard.settings import get_settings

logger = logging.getLogger("timeguard.attendance")


@dataclass(frozen=True, slots=True)
class PositionSample:
    latitude: float
    longitude: float
    accuracy_m: float | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class ScheduleConflict:
    conflict_type: ConflictType
    current_time: str
    window_start: str
    window_end: str

    @property
    def message(self) -> str:
        return (
            "You are clocking in outside allowed site hours "
            f"({self.window_start}-{self.window_end})."
        )

    @property
    def details(self) -> str:
        return f"Current time: {self.current_time}. This will be logged as a schedule conflict."

    def to_dict(self) -> dict[str, str]:
        return {
            "conflict_type": self.conflict_type.value,
            "current_time": self.current_time,
            "window_start": self.window_start,
            "window_end": self.window_end,
        }


@dataclass(frozen=True, slots=True)
class ClockInDecision:
    geofence: GeofenceResult
    schedule_conflict: ScheduleConflict | None


@dataclass(slots=True)
class ClockInResult:
    entry: TimeEntry
    conflict: Conflict | None = None
    replayed: bool = False


class LocationUnavailableError(ApiError):
    def __init__(self, message: str = "Unable to get your location.") -> None:
        super().__init__(status_code=422, code="LOCATION_UNAVAILABLE", message=message)


class SiteNotGeocodedError(ApiError):
    def __init__(self, site_id: int) -> None:
        super().__init__(
            status_code=422,
            code="SITE_NOT_GEOCODED",
            message="Site location not configured.",
            details={"site_id": site_id},
        )


class OutsideGeofenceError(ApiError):
    def __init__(self, geofence: GeofenceResult) -> None:
        if geofence.distance_m is None:
            message = f"Your location could not be matched to the site. Must be within {geofence.radius_m}m to clock in."
        else:
            message = (
                f"You are {geofence.distance_m}m away from the site. "
                f"Must be within {geofence.radius_m}m to clock in."
            )
        super().__init__(
            status_code=403,
            code="OUTSIDE_GEOFENCE",
            message=message,
            details={"distance_m": geofence.distance_m, "radius_m": geofence.radius_m},
        )
        self.geofence = geofence


class ScheduleConflictError(ApiError):
    def __init__(self, conflict: ScheduleConflict) -> None:
        super().__init__(
            status_code=409,
            code="SCHEDULE_CONFLICT",
            message=f"{conflict.message} {conflict.details}",
            details=conflict.to_dict(),
        )
        self.conflict = conflict


class ActiveEntryExistsError(ApiError):
    def __init__(self, entry_id: int | None = None) -> None:
        super().__init__(
            status_code=409,
            code="ACTIVE_ENTRY_EXISTS",
            message="You are already clocked in. Clock out first.",
            details={"entry_id": entry_id} if entry_id is not None else None,
        )


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)
    return ts_utc.astimezone(timezone.utc)


def local_wall_clock(now_utc: datetime) -> str:
    return format_hhmm(_normalize_ts(now_utc).astimezone(attendance_timezone()))


def usable_position(position: PositionSample | None, *, now_utc: datetime) -> PositionSample | None:
    """Drop samples the client sent too late to count as a current fix."""
    if position is None:
        return None
    if position.timestamp is not None:
        max_age = timedelta(seconds=get_settings().position_max_age_seconds)
        if _normalize_ts(now_utc) - _normalize_ts(position.timestamp) > max_age:
            return None
    return position


def check_schedule(site: Site, local_time: str) -> ScheduleConflict | None:
    start = site.allowed_hours_start
    end = site.allowed_hours_end
    if not (is_valid_hhmm(start) and is_valid_hhmm(end)):
        return None
    if is_within_window(local_time, start, end):
        return None
    return ScheduleConflict(
        conflict_type=ConflictType.OUTSIDE_HOURS,
        current_time=local_time,
        window_start=start,
        window_end=end,
    )


def evaluate_clock_in(
    site: Site,
    position: PositionSample | None,
    *,
    local_time: str,
) -> ClockInDecision:
    """Run the clock-in guards in order; raises on a blocking failure.

    A position outside the allowed hours is not an error here: it comes back as
    ``schedule_conflict`` so the caller can ask the user to acknowledge it.
    """
    if position is None:
        raise LocationUnavailableError()
    if site.latitude is None or site.longitude is None:
        raise SiteNotGeocodedError(site.id)

    geofence = evaluate_geofence(
        position.latitude,
        position.longitude,
        site.latitude,
        site.longitude,
        site.geofence_radius,
    )
    if not geofence.is_within:
        raise OutsideGeofenceError(geofence)

    return ClockInDecision(geofence=geofence, schedule_conflict=check_schedule(site, local_time))


def assignment_covers_day(assignment: EmployeeSite, day: date) -> bool:
    if assignment.start_date is not None and day < assignment.start_date:
        return False
    if assignment.end_date is not None and day > assignment.end_date:
        return False
    return True


def resolve_profile(db: Session, profile_id: int) -> Profile:
    profile = db.get(Profile, profile_id)
    if profile is None:
        raise ApiError(status_code=404, code="PROFILE_NOT_FOUND", message="Profile not found.")
    return profile


def resolve_active_profile(db: Session, profile_id: int) -> Profile:
    profile = resolve_profile(db, profile_id)
    if not profile.is_active:
        raise ApiError(
            status_code=403,
            code="PROFILE_INACTIVE",
            message="Inactive users cannot perform attendance actions.",
        )
    return profile


def list_assigned_sites(db: Session, *, employee_id: int, day: date) -> list[Site]:
    assignments = db.scalars(
        select(EmployeeSite).where(
            EmployeeSite.employee_id == employee_id,
            or_(EmployeeSite.start_date.is_(None), EmployeeSite.start_date <= day),
            or_(EmployeeSite.end_date.is_(None), EmployeeSite.end_date >= day),
        )
    ).all()
    sites: list[Site] = []
    for assignment in assignments:
        site = assignment.site
        if site is None or not site.is_active:
            continue
        sites.append(site)
    return sorted(sites, key=lambda item: item.name.lower())


def _resolve_assigned_site(db: Session, *, employee_id: int, site_id: int, day: date) -> Site:
    site = db.get(Site, site_id)
    if site is None or not site.is_active:
        raise ApiError(status_code=404, code="SITE_NOT_FOUND", message="Work site not found.")

    assignment = db.scalar(
        select(EmployeeSite).where(
            EmployeeSite.employee_id == employee_id,
            EmployeeSite.site_id == site_id,
        )
    )
    if assignment is None or not assignment_covers_day(assignment, day):
        raise ApiError(
            status_code=403,
            code="SITE_NOT_ASSIGNED",
            message="You are not assigned to this work site today.",
        )
    return site


def get_active_entry(db: Session, *, employee_id: int) -> TimeEntry | None:
    return db.scalar(
        select(TimeEntry).where(
            TimeEntry.employee_id == employee_id,
            TimeEntry.status == TimeEntryStatus.ACTIVE,
        )
    )


def _find_entry_by_idempotency_key(db: Session, *, employee_id: int, key: str) -> TimeEntry | None:
    return db.scalar(
        select(TimeEntry).where(
            TimeEntry.employee_id == employee_id,
            TimeEntry.idempotency_key == key,
        )
    )


def _find_entry_by_clock_out_key(db: Session, *, employee_id: int, key: str) -> TimeEntry | None:
    return db.scalar(
        select(TimeEntry).where(
            TimeEntry.employee_id == employee_id,
            TimeEntry.clock_out_idempotency_key == key,
        )
    )


def check_site_geofence(
    db: Session,
    *,
    session: AuthSession,
    site_id: int,
    latitude: float,
    longitude: float,
    now_utc: datetime | None = None,
) -> GeofenceResult:
    now = _normalize_ts(now_utc)
    site = _resolve_assigned_site(
        db,
        employee_id=session.profile_id,
        site_id=site_id,
        day=local_day_of(now, attendance_timezone()),
    )
    if site.latitude is None or site.longitude is None:
        raise SiteNotGeocodedError(site.id)
    return evaluate_geofence(latitude, longitude, site.latitude, site.longitude, site.geofence_radius)


def clock_in(
    db: Session,
    *,
    session: AuthSession,
    site_id: int,
    position: PositionSample | None,
    acknowledge_conflict: bool = False,
    idempotency_key: str | None = None,
    now_utc: datetime | None = None,
) -> ClockInResult:
    now = _normalize_ts(now_utc)
    employee = resolve_active_profile(db, session.profile_id)

    if idempotency_key:
        previous = _find_entry_by_idempotency_key(db, employee_id=employee.id, key=idempotency_key)
        if previous is not None:
            return ClockInResult(entry=previous, replayed=True)

    local_day = local_day_of(now, attendance_timezone())
    site = _resolve_assigned_site(db, employee_id=employee.id, site_id=site_id, day=local_day)

    active_entry = get_active_entry(db, employee_id=employee.id)
    if active_entry is not None:
        raise ActiveEntryExistsError(active_entry.id)

    position = usable_position(position, now_utc=now)
    try:
        decision = evaluate_clock_in(site, position, local_time=local_wall_clock(now))
    except ApiError as exc:
        logger.info(
            "clock_in_rejected",
            extra={
                "employee_id": employee.id,
                "site_id": site.id,
                "reason": exc.code,
                "details": exc.details or {},
            },
        )
        raise

    schedule_conflict = decision.schedule_conflict
    if schedule_conflict is not None and not acknowledge_conflict:
        logger.info(
            "clock_in_schedule_conflict",
            extra={"employee_id": employee.id, "site_id": site.id, **schedule_conflict.to_dict()},
        )
        raise ScheduleConflictError(schedule_conflict)

    entry = TimeEntry(
        employee_id=employee.id,
        site_id=site.id,
        clock_in_time=now,
        clock_in_lat=position.latitude,
        clock_in_lon=position.longitude,
        clock_in_accuracy_m=position.accuracy_m,
        clock_in_distance_m=decision.geofence.distance_m,
        status=TimeEntryStatus.ACTIVE,
        idempotency_key=idempotency_key,
    )
    db.add(entry)

    conflict: Conflict | None = None
    try:
        db.flush()
        if schedule_conflict is not None:
            conflict = Conflict(
                employee_id=employee.id,
                site_id=site.id,
                time_entry_id=entry.id,
                conflict_type=schedule_conflict.conflict_type,
                conflict_time=now,
                acknowledged=True,
                acknowledged_at=now,
                acknowledged_by_id=session.profile_id,
                details=f"{schedule_conflict.message} {schedule_conflict.details}",
            )
            db.add(conflict)
        db.commit()
    except IntegrityError:
        db.rollback()
        if idempotency_key:
            previous = _find_entry_by_idempotency_key(db, employee_id=employee.id, key=idempotency_key)
            if previous is not None:
                return ClockInResult(entry=previous, replayed=True)
        raise ActiveEntryExistsError()

    db.refresh(entry)
    if conflict is not None:
        db.refresh(conflict)
        logger.info(
            "schedule_conflict_logged",
            extra={
                "employee_id": employee.id,
                "site_id": site.id,
                "entry_id": entry.id,
                "conflict_id": conflict.id,
                "conflict_type": conflict.conflict_type.value,
            },
        )
    logger.info(
        "clock_in_accepted",
        extra={
            "employee_id": employee.id,
            "site_id": site.id,
            "entry_id": entry.id,
            "distance_m": decision.geofence.distance_m,
            "radius_m": decision.geofence.radius_m,
        },
    )
    return ClockInResult(entry=entry, conflict=conflict)


def _refresh_variance_for_entry(db: Session, entry: TimeEntry) -> None:
    employee = db.get(Profile, entry.employee_id)
    site = db.get(Site, entry.site_id)
    if employee is None or site is None:
        return
    day = local_day_of(entry.clock_in_time, attendance_timezone())
    try:
        refresh_daily_variance_alert(db, employee=employee, site=site, day=day)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "variance_refresh_failed",
            extra={"employee_id": entry.employee_id, "site_id": entry.site_id, "day": day.isoformat()},
        )


def clock_out(
    db: Session,
    *,
    session: AuthSession,
    position: PositionSample | None = None,
    idempotency_key: str | None = None,
    now_utc: datetime | None = None,
) -> TimeEntry:
    now = _normalize_ts(now_utc)
    # Deactivation must not strand an open entry, so inactive profiles may still clock out.
    employee = resolve_profile(db, session.profile_id)

    entry = get_active_entry(db, employee_id=employee.id)
    if entry is None:
        if idempotency_key:
            previous = _find_entry_by_clock_out_key(db, employee_id=employee.id, key=idempotency_key)
            if previous is not None:
                return previous
        raise ApiError(status_code=409, code="NO_ACTIVE_ENTRY", message="You are not clocked in.")

    position = usable_position(position, now_utc=now)
    if position is not None and not (isfinite(position.latitude) and isfinite(position.longitude)):
        position = None

    entry.clock_out_time = now
    entry.clock_out_lat = position.latitude if position is not None else None
    entry.clock_out_lon = position.longitude if position is not None else None
    entry.clock_out_accuracy_m = position.accuracy_m if position is not None else None
    entry.status = TimeEntryStatus.COMPLETED
    entry.clock_out_idempotency_key = idempotency_key
    db.commit()
    db.refresh(entry)

    logger.info(
        "clock_out_recorded",
        extra={
            "employee_id": employee.id,
            "site_id": entry.site_id,
            "entry_id": entry.id,
            "has_location": position is not None,
        },
    )
    _refresh_variance_for_entry(db, entry)
    return entry


def list_recent_entries(db: Session, *, employee_id: int, since_utc: datetime) -> list[TimeEntry]:
    return list(
        db.scalars(
            select(TimeEntry)
            .where(TimeEntry.employee_id == employee_id, TimeEntry.clock_in_time >= since_utc)
            .order_by(TimeEntry.clock_in_time.desc(), TimeEntry.id.desc())
        ).all()
    )


def invalidate_time_entry(db: Session, *, entry_id: int) -> TimeEntry:
    entry = db.get(TimeEntry, entry_id)
    if entry is None:
        raise ApiError(status_code=404, code="TIME_ENTRY_NOT_FOUND", message="Time entry not found.")
    if entry.status == TimeEntryStatus.INVALID:
        return entry
    was_completed = entry.status == TimeEntryStatus.COMPLETED
    entry.status = TimeEntryStatus.INVALID
    db.commit()
    db.refresh(entry)
    logger.info("time_entry_invalidated", extra={"entry_id": entry.id, "employee_id": entry.employee_id})
    if was_completed:
        _refresh_variance_for_entry(db, entry)
    return entry


def list_conflicts(
    db: Session,
    *,
    site_id: int | None = None,
    employee_id: int | None = None,
    acknowledged: bool | None = None,
) -> list[Conflict]:
    stmt = select(Conflict).order_by(Conflict.conflict_time.desc(), Conflict.id.desc())
    if site_id is not None:
        stmt = stmt.where(Conflict.site_id == site_id)
    if employee_id is not None:
        stmt = stmt.where(Conflict.employee_id == employee_id)
    if acknowledged is not None:
        stmt = stmt.where(Conflict.acknowledged.is_(acknowledged))
    return list(db.scalars(stmt).all())


def list_time_entries(
    db: Session,
    *,
    since_utc: datetime,
    status: TimeEntryStatus | None = None,
    site_id: int | None = None,
    employee_id: int | None = None,
) -> list[TimeEntry]:
    """Entries clocked in since ``since_utc``; active entries are always included, however old."""
    recent = TimeEntry.clock_in_time >= since_utc
    stmt = select(TimeEntry).where(or_(recent, TimeEntry.status == TimeEntryStatus.ACTIVE))
    if status is not None:
        stmt = stmt.where(TimeEntry.status == status)
    if site_id is not None:
        stmt = stmt.where(TimeEntry.site_id == site_id)
    if employee_id is not None:
        stmt = stmt.where(TimeEntry.employee_id == employee_id)
    stmt = stmt.order_by(TimeEntry.clock_in_time.desc(), TimeEntry.id.desc())
    return list(db.scalars(stmt).all())
