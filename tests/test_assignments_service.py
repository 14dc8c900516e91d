from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from timeguard.errors import ApiError
from timeguard.models import EmployeeSite, Profile, ProfileRole, Site
from timeguard.services.assignments import find_assignment_hours_conflicts, replace_employee_assignments
from timeguard.services.attendance import assignment_covers_day


class _DummyDB:
    def __init__(self, objects: dict | None = None) -> None:
        self.objects = objects or {}
        self.added: list[object] = []
        self.deleted: list[object] = []
        self.commits = 0

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        return self.objects.get((model, pk))

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def delete(self, obj: object) -> None:
        self.deleted.append(obj)

    def flush(self) -> None:
        return

    def commit(self) -> None:
        self.commits += 1

    def refresh(self, _obj: object) -> None:
        return


def _site(site_id: int, name: str, start: str | None = "08:00", end: str | None = "18:00") -> Site:
    return Site(
        id=site_id,
        name=name,
        latitude=40.0,
        longitude=-74.0,
        allowed_hours_start=start,
        allowed_hours_end=end,
        is_active=True,
    )


class AssignmentConflictTests(unittest.TestCase):
    def test_hours_inside_site_window_have_no_conflict(self) -> None:
        conflicts = find_assignment_hours_conflicts([_site(1, "HQ")], arrival_time="09:00", end_time="17:00")
        self.assertEqual(conflicts, [])

    def test_each_conflicting_site_is_listed(self) -> None:
        sites = [_site(1, "HQ"), _site(2, "Depot", "10:00", "16:00"), _site(3, "Night", "22:00", "06:00")]
        conflicts = find_assignment_hours_conflicts(sites, arrival_time="09:00", end_time="17:00")
        self.assertEqual([item.site_id for item in conflicts], [2, 3])
        self.assertIn("10:00-16:00", conflicts[0].message)

    def test_sites_without_hours_are_ignored(self) -> None:
        conflicts = find_assignment_hours_conflicts([_site(1, "Open", None, None)], arrival_time="05:00", end_time="23:00")
        self.assertEqual(conflicts, [])


class ReplaceAssignmentsTests(unittest.TestCase):
    def _db(self) -> _DummyDB:
        return _DummyDB(
            {
                (Profile, 7): Profile(id=7, email="w@example.com", role=ProfileRole.EMPLOYEE, is_active=True),
                (Site, 1): _site(1, "HQ"),
                (Site, 2): _site(2, "Depot", "10:00", "16:00"),
            }
        )

    def test_conflicting_hours_require_confirmation(self) -> None:
        db = self._db()
        with patch("timeguard.services.assignments.list_assignments", return_value=[]):
            with self.assertRaises(ApiError) as exc:
                replace_employee_assignments(
                    db,
                    employee_id=7,
                    site_ids=[1, 2],
                    start_date=None,
                    end_date=None,
                    arrival_time="09:00",
                    end_time="17:00",
                )
        self.assertEqual(exc.exception.status_code, 409)
        self.assertEqual(exc.exception.code, "ASSIGNMENT_HOURS_CONFLICT")
        self.assertEqual([item["site_id"] for item in exc.exception.details["conflicts"]], [2])
        self.assertEqual(db.added, [])

    def test_confirmed_conflicts_replace_existing_assignments(self) -> None:
        db = self._db()
        old = EmployeeSite(id=3, employee_id=7, site_id=9)
        with patch("timeguard.services.assignments.list_assignments", return_value=[old]):
            created = replace_employee_assignments(
                db,
                employee_id=7,
                site_ids=[1, 2, 1],
                start_date=date(2026, 3, 1),
                end_date=date(2026, 3, 31),
                arrival_time="09:00",
                end_time="17:00",
                confirm_conflicts=True,
            )
        self.assertEqual(db.deleted, [old])
        self.assertEqual([item.site_id for item in created], [1, 2])
        self.assertEqual(db.commits, 1)

    def test_start_after_end_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as exc:
            replace_employee_assignments(
                self._db(),
                employee_id=7,
                site_ids=[1],
                start_date=date(2026, 4, 1),
                end_date=date(2026, 3, 1),
                arrival_time="09:00",
                end_time="17:00",
            )
        self.assertEqual(exc.exception.code, "INVALID_DATE_RANGE")

    def test_unknown_site_is_404(self) -> None:
        with self.assertRaises(ApiError) as exc:
            replace_employee_assignments(
                self._db(),
                employee_id=7,
                site_ids=[99],
                start_date=None,
                end_date=None,
                arrival_time="09:00",
                end_time="17:00",
            )
        self.assertEqual(exc.exception.code, "SITE_NOT_FOUND")

    def test_assignment_day_bounds_are_inclusive(self) -> None:
        assignment = EmployeeSite(employee_id=7, site_id=1, start_date=date(2026, 3, 1), end_date=date(2026, 3, 31))
        self.assertTrue(assignment_covers_day(assignment, date(2026, 3, 1)))
        self.assertTrue(assignment_covers_day(assignment, date(2026, 3, 31)))
        self.assertFalse(assignment_covers_day(assignment, date(2026, 4, 1)))
        open_ended = EmployeeSite(employee_id=7, site_id=1, start_date=None, end_date=None)
        self.assertTrue(assignment_covers_day(open_ended, date(2030, 1, 1)))


if __name__ == "__main__":
    unittest.main()
