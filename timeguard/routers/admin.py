from datetime import date, datetime, timedelta, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timeguard.audit import client_ip, log_audit, log_request_audit
from timeguard.db import get_db
from timeguard.errors import ApiError
from timeguard.models import AuditActorType, Profile, ProfileRole, Site, TimeEntryStatus, VarianceAlert
from timeguard.schemas import (
    AssignmentRead,
    AssignmentReplaceRequest,
    ConflictRead,
    EmployeeHoursRead,
    HoursReportResponse,
    LoginRequest,
    ProfileCreate,
    ProfileRead,
    ProfileUpdate,
    SiteCreate,
    SiteHoursRead,
    SiteRead,
    SiteUpdate,
    TimeEntryRead,
    TokenResponse,
    VarianceAlertRead,
    VarianceGenerateResponse,
)
from timeguard.security import (
    AuthSession,
    create_access_token,
    hash_password,
    login_throttle,
    require_admin,
    require_manager_or_admin,
    verify_password,
)
from timeguard.services.assignments import list_assignments, replace_employee_assignments
from timeguard.services.attendance import invalidate_time_entry, list_conflicts, list_time_entries
from timeguard.services.exports import (
    build_timesheet_csv,
    build_timesheet_xlsx_bytes,
    timesheet_filename,
    timesheet_rows,
)
from timeguard.services.reports import HoursReport, build_hours_report, display_name
from timeguard.services.variance import (
    acknowledge_variance_alert,
    attendance_timezone,
    generate_variance_alerts_for_day,
    list_variance_alerts,
    local_day_of,
    sort_variance_alerts,
)

router = APIRouter(tags=["admin"])
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MEDIA_TYPE = "text/csv; charset=utf-8"


def _get_profile_or_404(db: Session, profile_id: int) -> Profile:
    profile = db.get(Profile, profile_id)
    if profile is None:
        raise ApiError(status_code=404, code="PROFILE_NOT_FOUND", message="Profile not found.")
    return profile


def _get_site_or_404(db: Session, site_id: int) -> Site:
    site = db.get(Site, site_id)
    if site is None:
        raise ApiError(status_code=404, code="SITE_NOT_FOUND", message="Work site not found.")
    return site


def _check_site_manager(db: Session, manager_id: int | None) -> None:
    if manager_id is None:
        return
    manager = db.get(Profile, manager_id)
    if manager is None or manager.role not in (ProfileRole.MANAGER, ProfileRole.ADMIN):
        raise ApiError(
            status_code=422,
            code="INVALID_MANAGER",
            message="Site manager must be an existing manager or admin profile.",
        )


def _profile_name_maps(db: Session) -> tuple[dict[int, str], dict[int, str]]:
    employees = {item.id: display_name(item) for item in db.scalars(select(Profile)).all()}
    sites = {item.id: item.name for item in db.scalars(select(Site)).all()}
    return employees, sites


@router.post("/api/auth/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> TokenResponse:
    email = payload.email.strip().lower()
    ip = client_ip(request)
    user_agent = request.headers.get("user-agent")
    request_id = getattr(request.state, "request_id", None)

    if ip:
        try:
            login_throttle.check(ip)
        except ApiError:
            log_audit(
                db,
                actor_type=AuditActorType.SYSTEM,
                actor_id=email,
                action="LOGIN_FAIL",
                success=False,
                ip=ip,
                user_agent=user_agent,
                details={"reason": "TOO_MANY_ATTEMPTS"},
                request_id=request_id,
            )
            raise

    profile = db.scalar(select(Profile).where(Profile.email == email))
    if profile is None or not profile.is_active or not verify_password(payload.password, profile.password_hash):
        if ip:
            login_throttle.record_failure(ip)
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id=email,
            action="LOGIN_FAIL",
            success=False,
            ip=ip,
            user_agent=user_agent,
            details={"reason": "INVALID_CREDENTIALS"},
            request_id=request_id,
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid credentials.")

    if ip:
        login_throttle.record_success(ip)

    access_token, expires_in = create_access_token(profile)
    request.state.actor = profile.role.value
    request.state.actor_id = str(profile.id)
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(profile.id),
        action="LOGIN_SUCCESS",
        success=True,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    return TokenResponse(access_token=access_token, expires_in=expires_in, role=profile.role)


@router.get(
    "/api/admin/profiles",
    response_model=list[ProfileRead],
    dependencies=[Depends(require_manager_or_admin)],
)
def list_profiles(
    role: ProfileRole | None = Query(default=None),
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[ProfileRead]:
    stmt = select(Profile).order_by(Profile.id.asc())
    if role is not None:
        stmt = stmt.where(Profile.role == role)
    if not include_inactive:
        stmt = stmt.where(Profile.is_active.is_(True))
    return [ProfileRead.model_validate(item) for item in db.scalars(stmt).all()]


@router.post(
    "/api/admin/profiles",
    response_model=ProfileRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_profile(
    payload: ProfileCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = Profile(
        email=payload.email.strip().lower(),
        full_name=payload.full_name.strip() if payload.full_name else None,
        role=payload.role,
        password_hash=hash_password(payload.password),
        work_hours=payload.work_hours,
        work_days=list(payload.work_days),
        is_active=payload.is_active,
    )
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ApiError(status_code=409, code="EMAIL_TAKEN", message="A profile with this email already exists.")
    db.refresh(profile)
    log_request_audit(
        db,
        request,
        action="PROFILE_CREATED",
        entity_type="profile",
        entity_id=profile.id,
        details={"email": profile.email, "role": profile.role.value},
    )
    return ProfileRead.model_validate(profile)


@router.patch(
    "/api/admin/profiles/{profile_id}",
    response_model=ProfileRead,
    dependencies=[Depends(require_admin)],
)
def update_profile(
    profile_id: int,
    payload: ProfileUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = _get_profile_or_404(db, profile_id)
    changes = payload.model_dump(exclude_unset=True)
    password = changes.pop("password", None)
    for field_name, value in changes.items():
        if field_name == "full_name" and value is not None:
            value = value.strip() or None
        setattr(profile, field_name, value)
    if password:
        profile.password_hash = hash_password(password)
    db.commit()
    db.refresh(profile)
    log_request_audit(
        db,
        request,
        action="PROFILE_UPDATED",
        entity_type="profile",
        entity_id=profile.id,
        details={"fields": sorted(changes) + (["password"] if password else [])},
    )
    return ProfileRead.model_validate(profile)


@router.get(
    "/api/admin/sites",
    response_model=list[SiteRead],
    dependencies=[Depends(require_manager_or_admin)],
)
def list_sites(
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[SiteRead]:
    stmt = select(Site).order_by(Site.name.asc())
    if not include_inactive:
        stmt = stmt.where(Site.is_active.is_(True))
    return [SiteRead.model_validate(item) for item in db.scalars(stmt).all()]


@router.post(
    "/api/admin/sites",
    response_model=SiteRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_site(
    payload: SiteCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> SiteRead:
    _check_site_manager(db, payload.manager_id)
    site = Site(
        name=payload.name.strip(),
        address=payload.address.strip(),
        latitude=payload.latitude,
        longitude=payload.longitude,
        geofence_radius=payload.geofence_radius,
        allowed_hours_start=payload.allowed_hours_start,
        allowed_hours_end=payload.allowed_hours_end,
        variance_threshold_percent=payload.variance_threshold_percent,
        manager_id=payload.manager_id,
        is_active=payload.is_active,
    )
    db.add(site)
    db.commit()
    db.refresh(site)
    log_request_audit(
        db,
        request,
        action="SITE_CREATED",
        entity_type="site",
        entity_id=site.id,
        details={"name": site.name, "geocoded": site.latitude is not None},
    )
    return SiteRead.model_validate(site)


@router.patch(
    "/api/admin/sites/{site_id}",
    response_model=SiteRead,
    dependencies=[Depends(require_admin)],
)
def update_site(
    site_id: int,
    payload: SiteUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> SiteRead:
    site = _get_site_or_404(db, site_id)
    changes = payload.model_dump(exclude_unset=True)
    if "manager_id" in changes:
        _check_site_manager(db, changes["manager_id"])
    for field_name, value in changes.items():
        setattr(site, field_name, value)

    if (site.latitude is None) != (site.longitude is None):
        db.rollback()
        raise ApiError(
            status_code=422,
            code="INVALID_COORDINATES",
            message="Latitude and longitude must be set together.",
        )
    if (site.allowed_hours_start is None) != (site.allowed_hours_end is None):
        db.rollback()
        raise ApiError(
            status_code=422,
            code="INVALID_TIME",
            message="Allowed hours start and end must be set together.",
        )

    db.commit()
    db.refresh(site)
    log_request_audit(
        db,
        request,
        action="SITE_UPDATED",
        entity_type="site",
        entity_id=site.id,
        details={"fields": sorted(changes)},
    )
    return SiteRead.model_validate(site)


@router.get(
    "/api/admin/time-entries",
    response_model=list[TimeEntryRead],
    dependencies=[Depends(require_manager_or_admin)],
)
def read_time_entries(
    status_filter: TimeEntryStatus | None = Query(default=None, alias="status"),
    site_id: int | None = Query(default=None, ge=1),
    employee_id: int | None = Query(default=None, ge=1),
    days: int = Query(default=7, ge=1, le=366),
    db: Session = Depends(get_db),
) -> list[TimeEntryRead]:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    entries = list_time_entries(
        db,
        since_utc=since,
        status=status_filter,
        site_id=site_id,
        employee_id=employee_id,
    )
    return [TimeEntryRead.model_validate(item) for item in entries]


@router.post(
    "/api/admin/time-entries/{entry_id}/invalidate",
    response_model=TimeEntryRead,
    dependencies=[Depends(require_admin)],
)
def invalidate_entry(
    entry_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> TimeEntryRead:
    entry = invalidate_time_entry(db, entry_id=entry_id)
    request.state.entry_id = entry.id
    request.state.employee_id = entry.employee_id
    log_request_audit(
        db,
        request,
        action="TIME_ENTRY_INVALIDATED",
        entity_type="time_entry",
        entity_id=entry.id,
        details={"employee_id": entry.employee_id, "site_id": entry.site_id},
    )
    return TimeEntryRead.model_validate(entry)


@router.get(
    "/api/admin/assignments",
    response_model=list[AssignmentRead],
    dependencies=[Depends(require_manager_or_admin)],
)
def read_assignments(
    employee_id: int | None = Query(default=None, ge=1),
    site_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[AssignmentRead]:
    items = list_assignments(db, employee_id=employee_id, site_id=site_id)
    return [AssignmentRead.model_validate(item) for item in items]


@router.put(
    "/api/admin/assignments/{employee_id}",
    response_model=list[AssignmentRead],
    dependencies=[Depends(require_manager_or_admin)],
)
def replace_assignments(
    employee_id: int,
    payload: AssignmentReplaceRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> list[AssignmentRead]:
    created = replace_employee_assignments(
        db,
        employee_id=employee_id,
        site_ids=payload.site_ids,
        start_date=payload.start_date,
        end_date=payload.end_date,
        arrival_time=payload.arrival_time,
        end_time=payload.end_time,
        confirm_conflicts=payload.confirm_conflicts,
    )
    request.state.employee_id = employee_id
    log_request_audit(
        db,
        request,
        action="ASSIGNMENTS_REPLACED",
        entity_type="profile",
        entity_id=employee_id,
        details={
            "site_ids": [item.site_id for item in created],
            "confirm_conflicts": payload.confirm_conflicts,
        },
    )
    return [AssignmentRead.model_validate(item) for item in created]


@router.get(
    "/api/admin/conflicts",
    response_model=list[ConflictRead],
    dependencies=[Depends(require_manager_or_admin)],
)
def read_conflicts(
    site_id: int | None = Query(default=None, ge=1),
    employee_id: int | None = Query(default=None, ge=1),
    acknowledged: bool | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[ConflictRead]:
    items = list_conflicts(db, site_id=site_id, employee_id=employee_id, acknowledged=acknowledged)
    return [ConflictRead.model_validate(item) for item in items]


def _to_variance_alert_read(
    alert: VarianceAlert,
    *,
    employee_names: dict[int, str],
    site_names: dict[int, str],
) -> VarianceAlertRead:
    read = VarianceAlertRead.model_validate(alert)
    read.employee_name = employee_names.get(alert.employee_id, "Unknown")
    read.site_name = site_names.get(alert.site_id, "Unknown")
    return read


@router.get("/api/manager/variance-alerts", response_model=list[VarianceAlertRead])
def read_variance_alerts(
    site_id: int | None = Query(default=None, ge=1),
    employee_id: int | None = Query(default=None, ge=1),
    acknowledged: bool | None = Query(default=None),
    sort: Literal["date", "variance", "employee", "site"] = Query(default="date"),
    session: AuthSession = Depends(require_manager_or_admin),
    db: Session = Depends(get_db),
) -> list[VarianceAlertRead]:
    alerts = list_variance_alerts(
        db,
        session=session,
        site_id=site_id,
        employee_id=employee_id,
        acknowledged=acknowledged,
    )
    employee_names, site_names = _profile_name_maps(db)
    ordered = sort_variance_alerts(alerts, sort_by=sort, employee_names=employee_names, site_names=site_names)
    return [
        _to_variance_alert_read(item, employee_names=employee_names, site_names=site_names)
        for item in ordered
    ]


@router.post("/api/manager/variance-alerts/{alert_id}/acknowledge", response_model=VarianceAlertRead)
def acknowledge_alert(
    alert_id: int,
    request: Request,
    session: AuthSession = Depends(require_manager_or_admin),
    db: Session = Depends(get_db),
) -> VarianceAlertRead:
    alert = acknowledge_variance_alert(db, session=session, alert_id=alert_id)
    log_request_audit(
        db,
        request,
        action="VARIANCE_ALERT_ACKNOWLEDGED",
        entity_type="variance_alert",
        entity_id=alert.id,
    )
    employee_names, site_names = _profile_name_maps(db)
    return _to_variance_alert_read(alert, employee_names=employee_names, site_names=site_names)


@router.post(
    "/api/manager/variance-alerts/generate",
    response_model=VarianceGenerateResponse,
    dependencies=[Depends(require_manager_or_admin)],
)
def generate_alerts(
    request: Request,
    day: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> VarianceGenerateResponse:
    target_day = day or local_day_of(datetime.now(timezone.utc), attendance_timezone())
    alerts = generate_variance_alerts_for_day(db, day=target_day)
    log_request_audit(
        db,
        request,
        action="VARIANCE_ALERTS_GENERATED",
        details={"day": target_day.isoformat(), "alerts": len(alerts)},
    )
    employee_names, site_names = _profile_name_maps(db)
    return VarianceGenerateResponse(
        day=target_day,
        alerts=[
            _to_variance_alert_read(item, employee_names=employee_names, site_names=site_names)
            for item in alerts
        ],
    )


def _hours_report_response(report: HoursReport) -> HoursReportResponse:
    return HoursReportResponse(
        start_utc=report.start_utc,
        end_utc=report.end_utc,
        days=report.days,
        site_id=report.site_id,
        entries_count=len(report.entries),
        by_employee=[
            EmployeeHoursRead(
                employee_id=item.employee_id,
                employee_name=item.employee_name,
                hours=item.hours,
                expected_hours=item.expected_hours,
                variance_hours=item.variance_hours,
            )
            for item in report.by_employee
        ],
        by_site=[
            SiteHoursRead(site_id=item.site_id, site_name=item.site_name, hours=item.hours)
            for item in report.by_site
        ],
    )


@router.get(
    "/api/admin/reports/hours",
    response_model=HoursReportResponse,
    dependencies=[Depends(require_manager_or_admin)],
)
def read_hours_report(
    days: int = Query(default=7, ge=1, le=366),
    site_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> HoursReportResponse:
    report = build_hours_report(db, days=days, tz=attendance_timezone(), site_id=site_id)
    return _hours_report_response(report)


def _timesheet_report(db: Session, *, days: int, site_id: int | None) -> tuple[HoursReport, list[list[str]]]:
    tz = attendance_timezone()
    report = build_hours_report(db, days=days, tz=tz, site_id=site_id)
    profiles = {item.id: item for item in db.scalars(select(Profile)).all()}
    sites = {item.id: item for item in db.scalars(select(Site)).all()}
    return report, timesheet_rows(report.entries, profiles=profiles, sites=sites, tz=tz)


@router.get(
    "/api/admin/reports/timesheet.csv",
    dependencies=[Depends(require_manager_or_admin)],
)
def export_timesheet_csv(
    request: Request,
    days: int = Query(default=7, ge=1, le=366),
    site_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> Response:
    _, rows = _timesheet_report(db, days=days, site_id=site_id)
    log_request_audit(
        db,
        request,
        action="TIMESHEET_EXPORTED",
        details={"format": "csv", "days": days, "site_id": site_id, "rows": len(rows)},
    )
    filename = timesheet_filename(datetime.now(timezone.utc).astimezone(attendance_timezone()), "csv")
    return Response(
        content=build_timesheet_csv(rows),
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get(
    "/api/admin/reports/timesheet.xlsx",
    dependencies=[Depends(require_manager_or_admin)],
)
def export_timesheet_xlsx(
    request: Request,
    days: int = Query(default=7, ge=1, le=366),
    site_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> Response:
    report, rows = _timesheet_report(db, days=days, site_id=site_id)
    log_request_audit(
        db,
        request,
        action="TIMESHEET_EXPORTED",
        details={"format": "xlsx", "days": days, "site_id": site_id, "rows": len(rows)},
    )
    filename = timesheet_filename(datetime.now(timezone.utc).astimezone(attendance_timezone()), "xlsx")
    return Response(
        content=build_timesheet_xlsx_bytes(rows, report=report),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
