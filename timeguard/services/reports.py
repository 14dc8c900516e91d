from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from timeguard.models import Profile, Site, TimeEntry, TimeEntryStatus
from timeguard.services.variance import WEEKDAY_NAMES, entry_worked_hours, local_day_of
from timeguard.settings import get_settings

WORK_DAYS_PER_WEEK = 5
STREAK_LIMIT_DAYS = 365


@dataclass(frozen=True, slots=True)
class EmployeeHoursRow:
    employee_id: int
    employee_name: str
    hours: float
    expected_hours: float
    variance_hours: float


@dataclass(frozen=True, slots=True)
class SiteHoursRow:
    site_id: int
    site_name: str
    hours: float


@dataclass(slots=True)
class HoursReport:
    start_utc: datetime
    end_utc: datetime
    days: int
    site_id: int | None
    entries: list[TimeEntry] = field(default_factory=list)
    by_employee: list[EmployeeHoursRow] = field(default_factory=list)
    by_site: list[SiteHoursRow] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class WeeklyStats:
    total_hours: float
    expected_hours: float
    progress_percent: int
    days_worked: int
    streak_days: int
    entries_count: int


def display_name(profile: Profile | None) -> str:
    if profile is None:
        return "Unknown"
    return profile.full_name or profile.email or "Unknown"


def completed_hours(entry: TimeEntry) -> float | None:
    if entry.clock_in_time is None or entry.clock_out_time is None:
        return None
    return entry_worked_hours(entry)


def sum_hours(entries: Iterable[TimeEntry]) -> tuple[dict[int, float], dict[int, float]]:
    """Completed hours per employee and per site. Open and invalid entries are left out."""
    employee_hours: dict[int, float] = defaultdict(float)
    site_hours: dict[int, float] = defaultdict(float)
    for entry in entries:
        if entry.status == TimeEntryStatus.INVALID:
            continue
        hours = completed_hours(entry)
        if hours is None:
            continue
        employee_hours[entry.employee_id] += hours
        site_hours[entry.site_id] += hours
    return dict(employee_hours), dict(site_hours)


def report_window(days: int, *, now_utc: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    today = local_day_of(now_utc, tz)
    first_day = today - timedelta(days=max(1, days) - 1)
    start = datetime.combine(first_day, time.min, tzinfo=tz)
    end = datetime.combine(today + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def load_entries(
    db: Session,
    *,
    start_utc: datetime,
    end_utc: datetime,
    site_id: int | None = None,
    employee_id: int | None = None,
) -> list[TimeEntry]:
    stmt = (
        select(TimeEntry)
        .where(TimeEntry.clock_in_time >= start_utc, TimeEntry.clock_in_time < end_utc)
        .order_by(TimeEntry.clock_in_time.asc(), TimeEntry.id.asc())
    )
    if site_id is not None:
        stmt = stmt.where(TimeEntry.site_id == site_id)
    if employee_id is not None:
        stmt = stmt.where(TimeEntry.employee_id == employee_id)
    return list(db.scalars(stmt).all())


def summarize_hours(
    entries: list[TimeEntry],
    *,
    days: int,
    profiles: dict[int, Profile],
    sites: dict[int, Site],
) -> tuple[list[EmployeeHoursRow], list[SiteHoursRow]]:
    employee_hours, site_hours = sum_hours(entries)
    default_hours = get_settings().default_work_hours_per_day
    expected_days = min(days, WORK_DAYS_PER_WEEK)

    by_employee: list[EmployeeHoursRow] = []
    for employee_id, hours in employee_hours.items():
        profile = profiles.get(employee_id)
        per_day = profile.work_hours if profile is not None and profile.work_hours else default_hours
        expected = per_day * expected_days
        by_employee.append(
            EmployeeHoursRow(
                employee_id=employee_id,
                employee_name=display_name(profile),
                hours=round(hours, 2),
                expected_hours=round(expected, 2),
                variance_hours=round(hours - expected, 2),
            )
        )
    by_employee.sort(key=lambda row: row.hours, reverse=True)

    by_site = [
        SiteHoursRow(
            site_id=site_id,
            site_name=sites[site_id].name if site_id in sites else "Unknown",
            hours=round(hours, 2),
        )
        for site_id, hours in site_hours.items()
    ]
    by_site.sort(key=lambda row: row.hours, reverse=True)
    return by_employee, by_site


def build_hours_report(
    db: Session,
    *,
    days: int,
    tz: ZoneInfo,
    site_id: int | None = None,
    now_utc: datetime | None = None,
) -> HoursReport:
    now = now_utc or datetime.now(timezone.utc)
    start_utc, end_utc = report_window(days, now_utc=now, tz=tz)
    entries = load_entries(db, start_utc=start_utc, end_utc=end_utc, site_id=site_id)
    profiles = {item.id: item for item in db.scalars(select(Profile)).all()}
    sites = {item.id: item for item in db.scalars(select(Site)).all()}
    by_employee, by_site = summarize_hours(entries, days=days, profiles=profiles, sites=sites)
    return HoursReport(
        start_utc=start_utc,
        end_utc=end_utc,
        days=days,
        site_id=site_id,
        entries=entries,
        by_employee=by_employee,
        by_site=by_site,
    )


def week_start(day: date) -> date:
    # Weeks run Sunday through Saturday.
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _is_work_day(profile: Profile, day: date) -> bool:
    work_days = profile.work_days or list(WEEKDAY_NAMES[:5])
    return WEEKDAY_NAMES[day.weekday()] in work_days


def calculate_weekly_stats(
    entries: list[TimeEntry],
    *,
    profile: Profile,
    now_utc: datetime,
    tz: ZoneInfo,
) -> WeeklyStats:
    today = local_day_of(now_utc, tz)
    first_day = week_start(today)
    valid_entries = [item for item in entries if item.status != TimeEntryStatus.INVALID]
    week_entries = [item for item in valid_entries if local_day_of(item.clock_in_time, tz) >= first_day]

    total_hours = round(sum(entry_worked_hours(item, now_utc=now_utc) for item in week_entries), 1)
    per_day = profile.work_hours or get_settings().default_work_hours_per_day
    expected_hours = per_day * WORK_DAYS_PER_WEEK
    progress = min(100, round(total_hours / expected_hours * 100)) if expected_hours else 0

    days_with_entries = {local_day_of(item.clock_in_time, tz) for item in valid_entries}
    streak = 0
    cursor = today
    for _ in range(STREAK_LIMIT_DAYS * 2):
        if _is_work_day(profile, cursor):
            if cursor not in days_with_entries:
                break
            streak += 1
            if streak >= STREAK_LIMIT_DAYS:
                break
        cursor -= timedelta(days=1)

    return WeeklyStats(
        total_hours=total_hours,
        expected_hours=expected_hours,
        progress_percent=int(progress),
        days_worked=len({local_day_of(item.clock_in_time, tz) for item in week_entries}),
        streak_days=streak,
        entries_count=len(week_entries),
    )
