from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from timeguard.errors import ApiError
from timeguard.models import EmployeeSite, Profile, Site, TimeEntry, TimeEntryStatus, VarianceAlert
from timeguard.security import AuthSession
from timeguard.settings import get_settings

logger = logging.getLogger("timeguard.variance")

# Absorbs float noise such as 8 -> 7.2 giving -9.999999999999996 %.
THRESHOLD_EPSILON = 1e-9

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True, slots=True)
class VarianceResult:
    variance_percentage: float
    exceeds_threshold: bool


def compute_variance(
    expected_hours: float,
    actual_hours: float,
    threshold_percent: float,
) -> VarianceResult | None:
    """Signed percentage deviation of actual from expected hours.

    Returns ``None`` when no hours were expected; a ratio against zero has no meaning
    and such a day never raises an alert.
    """
    if not expected_hours:
        return None
    variance = ((actual_hours - expected_hours) / expected_hours) * 100
    return VarianceResult(
        variance_percentage=round(variance, 2),
        exceeds_threshold=abs(variance) >= threshold_percent - THRESHOLD_EPSILON,
    )


def entry_worked_hours(entry: TimeEntry, *, now_utc: datetime | None = None) -> float:
    if entry.clock_out_time is None:
        if now_utc is None:
            return 0.0
        end = now_utc
    else:
        end = entry.clock_out_time
    seconds = (end - entry.clock_in_time).total_seconds()
    return max(0.0, seconds / 3600)


def local_day_of(value: datetime, tz: ZoneInfo) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).date()


def local_day_bounds_utc(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def attendance_timezone() -> ZoneInfo:
    return ZoneInfo((get_settings().attendance_timezone or "").strip() or "UTC")


def expected_hours_for_day(profile: Profile, day: date) -> float:
    work_days = profile.work_days or list(WEEKDAY_NAMES[:5])
    if WEEKDAY_NAMES[day.weekday()] not in work_days:
        return 0.0
    if profile.work_hours is None:
        return float(get_settings().default_work_hours_per_day)
    return float(profile.work_hours)


@dataclass(slots=True)
class DailyHours:
    """Completed hours of one employee on one local day, split by site."""

    employee_id: int
    day: date
    by_site: dict[int, float] = field(default_factory=dict)

    @property
    def total(self) -> float:
        return sum(self.by_site.values())

    @property
    def main_site_id(self) -> int | None:
        # Most hours wins; ties go to the lowest site id.
        if not self.by_site:
            return None
        return min(self.by_site, key=lambda site_id: (-self.by_site[site_id], site_id))


def sum_completed_hours_by_day(
    entries: Iterable[TimeEntry],
    tz: ZoneInfo,
) -> dict[tuple[int, date], DailyHours]:
    """Completed hours keyed by (employee_id, local day of clock-in), across all sites."""
    totals: dict[tuple[int, date], DailyHours] = {}
    for entry in entries:
        if entry.status != TimeEntryStatus.COMPLETED or entry.clock_out_time is None:
            continue
        day = local_day_of(entry.clock_in_time, tz)
        daily = totals.setdefault((entry.employee_id, day), DailyHours(employee_id=entry.employee_id, day=day))
        daily.by_site[entry.site_id] = daily.by_site.get(entry.site_id, 0.0) + entry_worked_hours(entry)
    return totals


def _load_completed_entries(
    db: Session,
    *,
    day: date,
    tz: ZoneInfo,
    employee_id: int | None = None,
) -> list[TimeEntry]:
    start_utc, end_utc = local_day_bounds_utc(day, tz)
    stmt = select(TimeEntry).where(
        TimeEntry.status == TimeEntryStatus.COMPLETED,
        TimeEntry.clock_in_time >= start_utc,
        TimeEntry.clock_in_time < end_utc,
    )
    if employee_id is not None:
        stmt = stmt.where(TimeEntry.employee_id == employee_id)
    return list(db.scalars(stmt).all())


def _assigned_sites_for_day(db: Session, *, day: date) -> dict[int, Site]:
    """First active site (lowest id) each employee is assigned to on ``day``."""
    assignments = db.scalars(
        select(EmployeeSite)
        .where(
            or_(EmployeeSite.start_date.is_(None), EmployeeSite.start_date <= day),
            or_(EmployeeSite.end_date.is_(None), EmployeeSite.end_date >= day),
        )
        .order_by(EmployeeSite.employee_id.asc(), EmployeeSite.site_id.asc())
    ).all()
    assigned: dict[int, Site] = {}
    for assignment in assignments:
        if assignment.employee_id in assigned:
            continue
        site = db.get(Site, assignment.site_id)
        if site is None or not site.is_active:
            continue
        assigned[assignment.employee_id] = site
    return assigned


def _find_alert(db: Session, *, employee_id: int, day: date) -> VarianceAlert | None:
    return db.scalar(
        select(VarianceAlert)
        .where(VarianceAlert.employee_id == employee_id, VarianceAlert.date == day)
        .order_by(VarianceAlert.acknowledged.desc(), VarianceAlert.id.asc())
    )


def apply_daily_variance(
    db: Session,
    *,
    employee: Profile,
    site: Site,
    day: date,
    actual_hours: float,
) -> VarianceAlert | None:
    """Create, update or clear the employee's alert for ``day``, attributed to ``site``. Does not commit."""
    expected = expected_hours_for_day(employee, day)
    threshold = site.variance_threshold_percent
    if threshold is None:
        threshold = get_settings().default_variance_threshold_percent
    result = compute_variance(expected, actual_hours, threshold)
    existing = _find_alert(db, employee_id=employee.id, day=day)

    if result is None or not result.exceeds_threshold:
        if existing is not None and not existing.acknowledged:
            db.delete(existing)
        return None

    if existing is not None and existing.acknowledged:
        return existing

    alert = existing or VarianceAlert(
        employee_id=employee.id,
        date=day,
        acknowledged=False,
    )
    alert.site_id = site.id
    alert.manager_id = site.manager_id
    alert.expected_hours = round(expected, 2)
    alert.actual_hours = round(actual_hours, 2)
    alert.variance_percentage = result.variance_percentage
    alert.threshold_used = threshold
    if existing is None:
        db.add(alert)

    logger.info(
        "variance_alert_raised",
        extra={
            "employee_id": employee.id,
            "site_id": site.id,
            "day": day.isoformat(),
            "expected_hours": alert.expected_hours,
            "actual_hours": alert.actual_hours,
            "variance_percentage": alert.variance_percentage,
            "threshold_used": threshold,
        },
    )
    return alert


def refresh_daily_variance_alert(
    db: Session,
    *,
    employee: Profile,
    site: Site,
    day: date,
) -> VarianceAlert | None:
    """Recompute one employee's day from all of their completed entries.

    ``site`` is used only when no completed entry is left for the day.
    """
    tz = attendance_timezone()
    entries = _load_completed_entries(db, day=day, tz=tz, employee_id=employee.id)
    daily = sum_completed_hours_by_day(entries, tz).get((employee.id, day))
    actual = 0.0
    if daily is not None:
        actual = daily.total
        site = db.get(Site, daily.main_site_id) or site
    alert = apply_daily_variance(db, employee=employee, site=site, day=day, actual_hours=actual)
    db.commit()
    return alert


def generate_variance_alerts_for_day(db: Session, *, day: date) -> list[VarianceAlert]:
    """Evaluate every employee who worked on ``day`` or was assigned and scheduled for it."""
    tz = attendance_timezone()
    entries = _load_completed_entries(db, day=day, tz=tz)
    totals = {key: daily for key, daily in sum_completed_hours_by_day(entries, tz).items() if key[1] == day}

    candidates: dict[int, tuple[Site | None, float]] = {}
    for (employee_id, _), daily in totals.items():
        candidates[employee_id] = (db.get(Site, daily.main_site_id), daily.total)
    for employee_id, site in _assigned_sites_for_day(db, day=day).items():
        candidates.setdefault(employee_id, (site, 0.0))

    alerts: list[VarianceAlert] = []
    for employee_id, (site, actual) in sorted(candidates.items()):
        employee = db.get(Profile, employee_id)
        if employee is None or site is None:
            continue
        if not employee.is_active and actual == 0:
            continue
        alert = apply_daily_variance(db, employee=employee, site=site, day=day, actual_hours=actual)
        if alert is not None:
            alerts.append(alert)

    db.commit()
    logger.info(
        "variance_generation_complete",
        extra={"day": day.isoformat(), "employees": len(candidates), "alerts": len(alerts)},
    )
    return alerts


def list_variance_alerts(
    db: Session,
    *,
    session: AuthSession,
    site_id: int | None = None,
    employee_id: int | None = None,
    acknowledged: bool | None = None,
) -> list[VarianceAlert]:
    stmt = select(VarianceAlert)
    if not session.is_admin:
        stmt = stmt.where(VarianceAlert.manager_id == session.profile_id)
    if site_id is not None:
        stmt = stmt.where(VarianceAlert.site_id == site_id)
    if employee_id is not None:
        stmt = stmt.where(VarianceAlert.employee_id == employee_id)
    if acknowledged is not None:
        stmt = stmt.where(VarianceAlert.acknowledged.is_(acknowledged))
    return list(db.scalars(stmt).all())


def sort_variance_alerts(
    alerts: list[VarianceAlert],
    *,
    sort_by: str,
    employee_names: dict[int, str],
    site_names: dict[int, str],
) -> list[VarianceAlert]:
    if sort_by == "variance":
        return sorted(alerts, key=lambda a: a.variance_percentage, reverse=True)
    if sort_by == "employee":
        return sorted(alerts, key=lambda a: employee_names.get(a.employee_id, "Unknown").lower())
    if sort_by == "site":
        return sorted(alerts, key=lambda a: site_names.get(a.site_id, "Unknown").lower())
    return sorted(alerts, key=lambda a: a.date, reverse=True)


def acknowledge_variance_alert(
    db: Session,
    *,
    session: AuthSession,
    alert_id: int,
    now_utc: datetime | None = None,
) -> VarianceAlert:
    alert = db.get(VarianceAlert, alert_id)
    if alert is None:
        raise ApiError(status_code=404, code="VARIANCE_ALERT_NOT_FOUND", message="Variance alert not found.")
    if not session.is_admin and alert.manager_id != session.profile_id:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Alert belongs to another manager.")
    if alert.acknowledged:
        return alert

    alert.acknowledged = True
    alert.acknowledged_at = now_utc or datetime.now(timezone.utc)
    db.commit()
    db.refresh(alert)
    return alert
