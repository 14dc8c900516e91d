from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from timeguard.audit import log_request_audit
from timeguard.db import get_db
from timeguard.models import Site
from timeguard.schemas import (
    ClockInRequest,
    ClockInResponse,
    ClockOutRequest,
    ConflictRead,
    GeofenceCheckRequest,
    GeofenceCheckResponse,
    PositionPayload,
    ProfileRead,
    SiteRead,
    StatusResponse,
    TimeEntryRead,
    WeeklyStatsResponse,
)
from timeguard.security import AuthSession, require_session
from timeguard.services.attendance import (
    PositionSample,
    check_site_geofence,
    clock_in,
    clock_out,
    get_active_entry,
    list_assigned_sites,
    list_recent_entries,
    resolve_active_profile,
)
from timeguard.services.reports import STREAK_LIMIT_DAYS, calculate_weekly_stats
from timeguard.services.variance import attendance_timezone, local_day_of

router = APIRouter(tags=["attendance"])


def _position_sample(payload: PositionPayload | None) -> PositionSample | None:
    if payload is None:
        return None
    return PositionSample(
        latitude=payload.latitude,
        longitude=payload.longitude,
        accuracy_m=payload.accuracy,
        timestamp=payload.timestamp,
    )


@router.get("/api/me", response_model=ProfileRead)
def read_me(
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = resolve_active_profile(db, session.profile_id)
    return ProfileRead.model_validate(profile)


@router.get("/api/me/sites", response_model=list[SiteRead])
def read_my_sites(
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> list[SiteRead]:
    today = local_day_of(datetime.now(timezone.utc), attendance_timezone())
    sites = list_assigned_sites(db, employee_id=session.profile_id, day=today)
    return [SiteRead.model_validate(item) for item in sites]


@router.get("/api/me/status", response_model=StatusResponse)
def read_my_status(
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> StatusResponse:
    entry = get_active_entry(db, employee_id=session.profile_id)
    if entry is None:
        return StatusResponse(clocked_in=False)

    site = db.get(Site, entry.site_id)
    elapsed = datetime.now(timezone.utc) - entry.clock_in_time
    return StatusResponse(
        clocked_in=True,
        entry=TimeEntryRead.model_validate(entry),
        site_name=site.name if site is not None else None,
        elapsed_minutes=max(0, int(elapsed.total_seconds() // 60)),
    )


@router.post("/api/geofence/check", response_model=GeofenceCheckResponse)
def geofence_check(
    payload: GeofenceCheckRequest,
    request: Request,
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> GeofenceCheckResponse:
    result = check_site_geofence(
        db,
        session=session,
        site_id=payload.site_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
    request.state.site_id = payload.site_id
    request.state.geofence_distance_m = result.distance_m
    return GeofenceCheckResponse(site_id=payload.site_id, **result.to_dict())


@router.post(
    "/api/attendance/clock-in",
    response_model=ClockInResponse,
    status_code=status.HTTP_201_CREATED,
)
def clock_in_endpoint(
    payload: ClockInRequest,
    request: Request,
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> ClockInResponse:
    request.state.employee_id = session.profile_id
    request.state.site_id = payload.site_id
    result = clock_in(
        db,
        session=session,
        site_id=payload.site_id,
        position=_position_sample(payload.position),
        acknowledge_conflict=payload.acknowledge_conflict,
        idempotency_key=payload.idempotency_key,
    )
    request.state.entry_id = result.entry.id
    request.state.geofence_distance_m = result.entry.clock_in_distance_m
    if not result.replayed:
        log_request_audit(
            db,
            request,
            action="CLOCK_IN",
            entity_type="time_entry",
            entity_id=result.entry.id,
            details={
                "site_id": result.entry.site_id,
                "distance_m": result.entry.clock_in_distance_m,
                "conflict_id": result.conflict.id if result.conflict is not None else None,
            },
        )
    return ClockInResponse(
        entry=TimeEntryRead.model_validate(result.entry),
        conflict=ConflictRead.model_validate(result.conflict) if result.conflict is not None else None,
        replayed=result.replayed,
    )


@router.post("/api/attendance/clock-out", response_model=TimeEntryRead)
def clock_out_endpoint(
    payload: ClockOutRequest,
    request: Request,
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> TimeEntryRead:
    request.state.employee_id = session.profile_id
    entry = clock_out(
        db,
        session=session,
        position=_position_sample(payload.position),
        idempotency_key=payload.idempotency_key,
    )
    request.state.entry_id = entry.id
    request.state.site_id = entry.site_id
    log_request_audit(
        db,
        request,
        action="CLOCK_OUT",
        entity_type="time_entry",
        entity_id=entry.id,
        details={"site_id": entry.site_id, "has_location": entry.clock_out_lat is not None},
    )
    return TimeEntryRead.model_validate(entry)


@router.get("/api/me/entries", response_model=list[TimeEntryRead])
def read_my_entries(
    days: int = Query(default=7, ge=1, le=366),
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> list[TimeEntryRead]:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    entries = list_recent_entries(db, employee_id=session.profile_id, since_utc=since)
    return [TimeEntryRead.model_validate(item) for item in entries]


@router.get("/api/me/weekly-stats", response_model=WeeklyStatsResponse)
def read_my_weekly_stats(
    session: AuthSession = Depends(require_session),
    db: Session = Depends(get_db),
) -> WeeklyStatsResponse:
    profile = resolve_active_profile(db, session.profile_id)
    now = datetime.now(timezone.utc)
    tz = attendance_timezone()
    # Streaks may reach back past this week.
    since = now - timedelta(days=STREAK_LIMIT_DAYS * 2)
    entries = list_recent_entries(db, employee_id=profile.id, since_utc=since)
    stats = calculate_weekly_stats(entries, profile=profile, now_utc=now, tz=tz)
    return WeeklyStatsResponse(
        total_hours=stats.total_hours,
        expected_hours=stats.expected_hours,
        progress_percent=stats.progress_percent,
        days_worked=stats.days_worked,
        streak_days=stats.streak_days,
        entries_count=stats.entries_count,
    )
