from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from timeguard.errors import ApiError
from timeguard.models import EmployeeSite, Profile, Site
from timeguard.services.time_window import is_valid_hhmm, window_contains_window

logger = logging.getLogger("timeguard.assignments")


@dataclass(frozen=True, slots=True)
class AssignmentHoursConflict:
    site_id: int
    site_name: str
    message: str

    def to_dict(self) -> dict[str, object]:
        return {"site_id": self.site_id, "site_name": self.site_name, "message": self.message}


def find_assignment_hours_conflicts(
    sites: Iterable[Site],
    *,
    arrival_time: str,
    end_time: str,
) -> list[AssignmentHoursConflict]:
    conflicts: list[AssignmentHoursConflict] = []
    for site in sites:
        start = site.allowed_hours_start
        end = site.allowed_hours_end
        if not (is_valid_hhmm(start) and is_valid_hhmm(end)):
            continue
        if window_contains_window(start, end, arrival_time, end_time):
            continue
        conflicts.append(
            AssignmentHoursConflict(
                site_id=site.id,
                site_name=site.name,
                message=(
                    f"Assignment hours ({arrival_time}-{end_time}) conflict with "
                    f"allowed hours ({start}-{end})"
                ),
            )
        )
    return conflicts


def list_assignments(
    db: Session,
    *,
    employee_id: int | None = None,
    site_id: int | None = None,
) -> list[EmployeeSite]:
    stmt = select(EmployeeSite).order_by(EmployeeSite.employee_id.asc(), EmployeeSite.site_id.asc())
    if employee_id is not None:
        stmt = stmt.where(EmployeeSite.employee_id == employee_id)
    if site_id is not None:
        stmt = stmt.where(EmployeeSite.site_id == site_id)
    return list(db.scalars(stmt).all())


def _resolve_sites(db: Session, site_ids: list[int]) -> list[Site]:
    sites: list[Site] = []
    for site_id in site_ids:
        site = db.get(Site, site_id)
        if site is None or not site.is_active:
            raise ApiError(
                status_code=404,
                code="SITE_NOT_FOUND",
                message=f"Work site {site_id} not found.",
            )
        sites.append(site)
    return sites


def replace_employee_assignments(
    db: Session,
    *,
    employee_id: int,
    site_ids: list[int],
    start_date: date | None,
    end_date: date | None,
    arrival_time: str,
    end_time: str,
    confirm_conflicts: bool = False,
) -> list[EmployeeSite]:
    """Swap every assignment of one employee for the given set of sites."""
    if not (is_valid_hhmm(arrival_time) and is_valid_hhmm(end_time)):
        raise ApiError(status_code=422, code="INVALID_TIME", message="Invalid time format. Use HH:MM.")
    if start_date is not None and end_date is not None and start_date > end_date:
        raise ApiError(
            status_code=422,
            code="INVALID_DATE_RANGE",
            message="Assignment start date must not be after its end date.",
        )

    employee = db.get(Profile, employee_id)
    if employee is None:
        raise ApiError(status_code=404, code="PROFILE_NOT_FOUND", message="Profile not found.")

    unique_site_ids = list(dict.fromkeys(site_ids))
    sites = _resolve_sites(db, unique_site_ids)

    conflicts = find_assignment_hours_conflicts(sites, arrival_time=arrival_time, end_time=end_time)
    if conflicts and not confirm_conflicts:
        raise ApiError(
            status_code=409,
            code="ASSIGNMENT_HOURS_CONFLICT",
            message="Assignment hours conflict with site allowed hours.",
            details={"conflicts": [item.to_dict() for item in conflicts]},
        )

    for existing in list_assignments(db, employee_id=employee_id):
        db.delete(existing)
    db.flush()

    created: list[EmployeeSite] = []
    for site in sites:
        assignment = EmployeeSite(
            employee_id=employee_id,
            site_id=site.id,
            start_date=start_date,
            end_date=end_date,
            arrival_time=arrival_time,
            end_time=end_time,
        )
        db.add(assignment)
        created.append(assignment)
    db.commit()
    for assignment in created:
        db.refresh(assignment)

    logger.info(
        "assignments_replaced",
        extra={
            "employee_id": employee_id,
            "site_ids": unique_site_ids,
            "conflicts_confirmed": [item.site_id for item in conflicts],
        },
    )
    return created
