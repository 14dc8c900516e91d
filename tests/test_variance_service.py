from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch
from zoneinfo import ZoneInfo

from timeguard.errors import ApiError
from timeguard.models import EmployeeSite, Profile, ProfileRole, Site, TimeEntry, TimeEntryStatus, VarianceAlert
from timeguard.security import AuthSession
from timeguard.services.variance import (
    acknowledge_variance_alert,
    apply_daily_variance,
    compute_variance,
    expected_hours_for_day,
    generate_variance_alerts_for_day,
    refresh_daily_variance_alert,
    sort_variance_alerts,
    sum_completed_hours_by_day,
)

MONDAY = date(2026, 3, 2)
SATURDAY = date(2026, 3, 7)


class _DummyDB:
    def __init__(self, *, scalar_result: object | None = None, objects: dict | None = None) -> None:
        self.scalar_result = scalar_result
        self.objects = objects or {}
        self.added: list[object] = []
        self.deleted: list[object] = []
        self.commits = 0

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.scalar_result

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        return self.objects.get((model, pk))

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def delete(self, obj: object) -> None:
        self.deleted.append(obj)

    def commit(self) -> None:
        self.commits += 1

    def refresh(self, _obj: object) -> None:
        return


class _ScalarResult:
    def __init__(self, items: list[object]) -> None:
        self._items = items

    def all(self) -> list[object]:
        return list(self._items)


class _StoreDB(_DummyDB):
    def __init__(
        self,
        *,
        entries: list[TimeEntry] | None = None,
        assignments: list[EmployeeSite] | None = None,
        profiles: list[Profile] | None = None,
        sites: list[Site] | None = None,
    ) -> None:
        objects = {(Profile, item.id): item for item in profiles or []}
        objects.update({(Site, item.id): item for item in sites or []})
        super().__init__(objects=objects)
        self.entries = entries or []
        self.assignments = assignments or []

    def scalars(self, statement):  # type: ignore[no-untyped-def]
        sql = str(statement)
        if "FROM time_entries" in sql:
            return _ScalarResult(self.entries)
        if "FROM employee_sites" in sql:
            return _ScalarResult(self.assignments)
        return _ScalarResult([])


def _entry(*, site_id: int, start_hour: int, end_hour: int, employee_id: int = 7) -> TimeEntry:
    return TimeEntry(
        employee_id=employee_id,
        site_id=site_id,
        clock_in_time=datetime(2026, 3, 2, start_hour, 0, tzinfo=timezone.utc),
        clock_out_time=datetime(2026, 3, 2, end_hour, 0, tzinfo=timezone.utc),
        status=TimeEntryStatus.COMPLETED,
    )


def _employee(**overrides) -> Profile:
    values = {
        "id": 7,
        "email": "worker@example.com",
        "full_name": "Worker",
        "role": ProfileRole.EMPLOYEE,
        "work_hours": 8.0,
        "work_days": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"],
        "is_active": True,
    }
    values.update(overrides)
    return Profile(**values)


def _site(**overrides) -> Site:
    values = {"id": 3, "name": "Site A", "variance_threshold_percent": 5.0, "manager_id": 42, "is_active": True}
    values.update(overrides)
    return Site(**values)


class ComputeVarianceTests(unittest.TestCase):
    def test_under_worked_day_exceeds_threshold(self) -> None:
        result = compute_variance(8, 7.2, 5)
        self.assertIsNotNone(result)
        self.assertEqual(result.variance_percentage, -10)
        self.assertTrue(result.exceeds_threshold)

    def test_exact_day_has_no_variance(self) -> None:
        result = compute_variance(8, 8, 5)
        self.assertEqual(result.variance_percentage, 0)
        self.assertFalse(result.exceeds_threshold)

    def test_threshold_is_inclusive(self) -> None:
        result = compute_variance(8, 8.4, 5)
        self.assertEqual(result.variance_percentage, 5)
        self.assertTrue(result.exceeds_threshold)

    def test_over_worked_day_is_positive(self) -> None:
        result = compute_variance(8, 10, 5)
        self.assertEqual(result.variance_percentage, 25)

    def test_threshold_uses_unrounded_variance(self) -> None:
        result = compute_variance(100, 95.004, 5)
        self.assertEqual(result.variance_percentage, -5.0)
        self.assertFalse(result.exceeds_threshold)

    def test_zero_expected_hours_is_skipped(self) -> None:
        self.assertIsNone(compute_variance(0, 4, 5))


class DailyVarianceTests(unittest.TestCase):
    def test_expected_hours_follow_work_days(self) -> None:
        employee = _employee(work_hours=6.5)
        self.assertEqual(expected_hours_for_day(employee, MONDAY), 6.5)
        self.assertEqual(expected_hours_for_day(employee, SATURDAY), 0.0)

    def test_sum_completed_hours_skips_open_and_invalid_entries(self) -> None:
        start = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        entries = [
            TimeEntry(
                employee_id=7,
                site_id=3,
                clock_in_time=start,
                clock_out_time=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc),
                status=TimeEntryStatus.COMPLETED,
            ),
            TimeEntry(
                employee_id=7,
                site_id=3,
                clock_in_time=datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc),
                clock_out_time=datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc),
                status=TimeEntryStatus.COMPLETED,
            ),
            TimeEntry(
                employee_id=7,
                site_id=3,
                clock_in_time=start,
                clock_out_time=datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc),
                status=TimeEntryStatus.INVALID,
            ),
            TimeEntry(employee_id=7, site_id=3, clock_in_time=start, status=TimeEntryStatus.ACTIVE),
        ]
        totals = sum_completed_hours_by_day(entries, ZoneInfo("UTC"))
        self.assertEqual(list(totals), [(7, MONDAY)])
        self.assertEqual(totals[(7, MONDAY)].by_site, {3: 4.5})
        self.assertEqual(totals[(7, MONDAY)].total, 4.5)

    def test_day_split_across_sites_is_one_total(self) -> None:
        entries = [
            _entry(site_id=1, start_hour=8, end_hour=11),
            _entry(site_id=2, start_hour=11, end_hour=12),
            _entry(site_id=2, start_hour=13, end_hour=15),
        ]
        daily = sum_completed_hours_by_day(entries, ZoneInfo("UTC"))[(7, MONDAY)]
        self.assertEqual(daily.by_site, {1: 3.0, 2: 3.0})
        self.assertEqual(daily.total, 6.0)
        self.assertEqual(daily.main_site_id, 1)

    def test_alert_created_when_threshold_exceeded(self) -> None:
        db = _DummyDB()
        alert = apply_daily_variance(db, employee=_employee(), site=_site(), day=MONDAY, actual_hours=6.0)

        self.assertIsNotNone(alert)
        self.assertEqual(db.added, [alert])
        self.assertEqual(alert.variance_percentage, -25)
        self.assertEqual(alert.expected_hours, 8)
        self.assertEqual(alert.actual_hours, 6)
        self.assertEqual(alert.threshold_used, 5.0)
        self.assertEqual(alert.manager_id, 42)
        self.assertFalse(alert.acknowledged)

    def test_existing_unacknowledged_alert_is_updated(self) -> None:
        existing = VarianceAlert(
            id=5,
            employee_id=7,
            site_id=3,
            date=MONDAY,
            expected_hours=8,
            actual_hours=6,
            variance_percentage=-25,
            threshold_used=5,
            acknowledged=False,
        )
        db = _DummyDB(scalar_result=existing)
        alert = apply_daily_variance(db, employee=_employee(), site=_site(), day=MONDAY, actual_hours=7.0)

        self.assertIs(alert, existing)
        self.assertEqual(alert.variance_percentage, -12.5)
        self.assertEqual(db.added, [])

    def test_alert_cleared_when_back_within_threshold(self) -> None:
        existing = VarianceAlert(id=5, employee_id=7, site_id=3, date=MONDAY, acknowledged=False)
        db = _DummyDB(scalar_result=existing)
        alert = apply_daily_variance(db, employee=_employee(), site=_site(), day=MONDAY, actual_hours=8.0)

        self.assertIsNone(alert)
        self.assertEqual(db.deleted, [existing])

    def test_acknowledged_alert_is_left_alone(self) -> None:
        existing = VarianceAlert(
            id=5,
            employee_id=7,
            site_id=3,
            date=MONDAY,
            variance_percentage=-25,
            acknowledged=True,
        )
        db = _DummyDB(scalar_result=existing)
        alert = apply_daily_variance(db, employee=_employee(), site=_site(), day=MONDAY, actual_hours=2.0)
        self.assertIs(alert, existing)
        self.assertEqual(alert.variance_percentage, -25)

        cleared = apply_daily_variance(db, employee=_employee(), site=_site(), day=MONDAY, actual_hours=8.0)
        self.assertIsNone(cleared)
        self.assertEqual(db.deleted, [])

    def test_non_work_day_never_raises_alert(self) -> None:
        db = _DummyDB()
        alert = apply_daily_variance(db, employee=_employee(), site=_site(), day=SATURDAY, actual_hours=5.0)
        self.assertIsNone(alert)
        self.assertEqual(db.added, [])

    def test_missing_threshold_falls_back_to_default(self) -> None:
        db = _DummyDB()
        with patch("timeguard.services.variance.get_settings") as settings_mock:
            settings_mock.return_value.default_variance_threshold_percent = 50.0
            alert = apply_daily_variance(
                db,
                employee=_employee(),
                site=_site(variance_threshold_percent=None),
                day=MONDAY,
                actual_hours=6.0,
            )
        self.assertIsNone(alert)


class VarianceGenerationTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch("timeguard.services.variance.attendance_timezone", return_value=ZoneInfo("UTC"))
        patcher.start()
        self.addCleanup(patcher.stop)
        self.sites = [_site(id=1, name="North Yard", manager_id=42), _site(id=2, name="Depot", manager_id=43)]

    def test_full_day_split_across_sites_raises_nothing(self) -> None:
        db = _StoreDB(
            entries=[_entry(site_id=1, start_hour=8, end_hour=12), _entry(site_id=2, start_hour=12, end_hour=16)],
            profiles=[_employee()],
            sites=self.sites,
        )
        alerts = generate_variance_alerts_for_day(db, day=MONDAY)

        self.assertEqual(alerts, [])
        self.assertEqual(db.added, [])
        self.assertEqual(db.commits, 1)

    def test_short_day_alert_goes_to_main_site(self) -> None:
        db = _StoreDB(
            entries=[_entry(site_id=2, start_hour=8, end_hour=11), _entry(site_id=1, start_hour=11, end_hour=12)],
            profiles=[_employee()],
            sites=self.sites,
        )
        alerts = generate_variance_alerts_for_day(db, day=MONDAY)

        self.assertEqual(len(alerts), 1)
        alert = alerts[0]
        self.assertEqual((alert.employee_id, alert.site_id, alert.manager_id), (7, 2, 43))
        self.assertEqual(alert.actual_hours, 4.0)
        self.assertEqual(alert.variance_percentage, -50)

    def test_scheduled_employee_without_entries_is_flagged(self) -> None:
        db = _StoreDB(
            assignments=[
                EmployeeSite(employee_id=8, site_id=2),
                EmployeeSite(employee_id=9, site_id=1),
                EmployeeSite(employee_id=10, site_id=1),
            ],
            profiles=[
                _employee(id=8, email="absent@example.com"),
                _employee(id=9, email="weekend@example.com", work_days=["Saturday", "Sunday"]),
                _employee(id=10, email="gone@example.com", is_active=False),
            ],
            sites=self.sites,
        )
        alerts = generate_variance_alerts_for_day(db, day=MONDAY)

        self.assertEqual([(item.employee_id, item.site_id) for item in alerts], [(8, 2)])
        self.assertEqual(alerts[0].actual_hours, 0)
        self.assertEqual(alerts[0].variance_percentage, -100)

    def test_worked_employee_is_not_double_counted_by_assignment(self) -> None:
        db = _StoreDB(
            entries=[_entry(site_id=1, start_hour=8, end_hour=16)],
            assignments=[EmployeeSite(employee_id=7, site_id=2)],
            profiles=[_employee()],
            sites=self.sites,
        )
        self.assertEqual(generate_variance_alerts_for_day(db, day=MONDAY), [])

    def test_refresh_counts_every_site_of_the_day(self) -> None:
        db = _StoreDB(
            entries=[_entry(site_id=1, start_hour=8, end_hour=12), _entry(site_id=2, start_hour=12, end_hour=16)],
            sites=self.sites,
        )
        alert = refresh_daily_variance_alert(db, employee=_employee(), site=self.sites[1], day=MONDAY)

        self.assertIsNone(alert)
        self.assertEqual(db.added, [])
        self.assertEqual(db.commits, 1)

    def test_refresh_with_no_entries_left_uses_given_site(self) -> None:
        db = _StoreDB(sites=self.sites)
        alert = refresh_daily_variance_alert(db, employee=_employee(), site=self.sites[0], day=MONDAY)

        self.assertIsNotNone(alert)
        self.assertEqual(alert.site_id, 1)
        self.assertEqual(alert.variance_percentage, -100)

    def test_existing_alert_moves_to_new_main_site(self) -> None:
        existing = VarianceAlert(id=5, employee_id=7, site_id=1, date=MONDAY, acknowledged=False)
        db = _StoreDB(entries=[_entry(site_id=2, start_hour=8, end_hour=10)], sites=self.sites)
        db.scalar_result = existing

        alert = refresh_daily_variance_alert(db, employee=_employee(), site=self.sites[0], day=MONDAY)

        self.assertIs(alert, existing)
        self.assertEqual((alert.site_id, alert.manager_id), (2, 43))
        self.assertEqual(db.added, [])


class VarianceAlertAccessTests(unittest.TestCase):
    def _alert(self, **overrides) -> VarianceAlert:
        values = {
            "id": 11,
            "employee_id": 7,
            "site_id": 3,
            "manager_id": 42,
            "date": MONDAY,
            "variance_percentage": -25,
            "acknowledged": False,
        }
        values.update(overrides)
        return VarianceAlert(**values)

    def test_manager_acknowledges_own_alert(self) -> None:
        alert = self._alert()
        db = _DummyDB(objects={(VarianceAlert, 11): alert})
        session = AuthSession(profile_id=42, role=ProfileRole.MANAGER, email="boss@example.com")
        now = datetime(2026, 3, 3, 8, 0, tzinfo=timezone.utc)

        result = acknowledge_variance_alert(db, session=session, alert_id=11, now_utc=now)

        self.assertTrue(result.acknowledged)
        self.assertEqual(result.acknowledged_at, now)
        self.assertEqual(db.commits, 1)

    def test_manager_cannot_acknowledge_other_managers_alert(self) -> None:
        db = _DummyDB(objects={(VarianceAlert, 11): self._alert(manager_id=99)})
        session = AuthSession(profile_id=42, role=ProfileRole.MANAGER, email="boss@example.com")
        with self.assertRaises(ApiError) as exc:
            acknowledge_variance_alert(db, session=session, alert_id=11)
        self.assertEqual(exc.exception.status_code, 403)

    def test_admin_acknowledges_any_alert(self) -> None:
        db = _DummyDB(objects={(VarianceAlert, 11): self._alert(manager_id=99)})
        session = AuthSession(profile_id=1, role=ProfileRole.ADMIN, email="admin@example.com")
        self.assertTrue(acknowledge_variance_alert(db, session=session, alert_id=11).acknowledged)

    def test_missing_alert_is_404(self) -> None:
        session = AuthSession(profile_id=1, role=ProfileRole.ADMIN, email="admin@example.com")
        with self.assertRaises(ApiError) as exc:
            acknowledge_variance_alert(_DummyDB(), session=session, alert_id=404)
        self.assertEqual(exc.exception.code, "VARIANCE_ALERT_NOT_FOUND")

    def test_sort_orders(self) -> None:
        first = self._alert(id=1, employee_id=1, site_id=2, date=date(2026, 3, 2), variance_percentage=-30)
        second = self._alert(id=2, employee_id=2, site_id=1, date=date(2026, 3, 4), variance_percentage=12)
        names = {1: "Zed", 2: "Amy"}
        sites = {1: "Alpha", 2: "Beta"}
        alerts = [first, second]

        by_date = sort_variance_alerts(alerts, sort_by="date", employee_names=names, site_names=sites)
        by_variance = sort_variance_alerts(alerts, sort_by="variance", employee_names=names, site_names=sites)
        by_employee = sort_variance_alerts(alerts, sort_by="employee", employee_names=names, site_names=sites)
        by_site = sort_variance_alerts(alerts, sort_by="site", employee_names=names, site_names=sites)

        self.assertEqual([item.id for item in by_date], [2, 1])
        self.assertEqual([item.id for item in by_variance], [2, 1])
        self.assertEqual([item.id for item in by_employee], [2, 1])
        self.assertEqual([item.id for item in by_site], [2, 1])


if __name__ == "__main__":
    unittest.main()
