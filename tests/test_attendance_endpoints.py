from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import datetime, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from timeguard.db import get_db
from timeguard.main import app
from timeguard.models import Conflict, ConflictType, Profile, ProfileRole, TimeEntry, TimeEntryStatus
from timeguard.security import AuthSession, require_session
from timeguard.services.attendance import (
    ClockInResult,
    OutsideGeofenceError,
    ScheduleConflict,
    ScheduleConflictError,
)
from timeguard.services.geo import GeofenceResult

CLOCK_IN_AT = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _override_get_db(fake_db):
    def _override() -> Generator[object, None, None]:
        yield fake_db

    return _override


class _FakeDB:
    def __init__(self) -> None:
        self.rows: list[object] = []

    def get(self, _model, _pk):  # type: ignore[no-untyped-def]
        return None

    def add(self, obj: object) -> None:
        self.rows.append(obj)

    def commit(self) -> None:
        return

    def rollback(self) -> None:
        return


def _entry(**overrides) -> TimeEntry:
    values = {
        "id": 10,
        "employee_id": 7,
        "site_id": 1,
        "clock_in_time": CLOCK_IN_AT,
        "clock_in_lat": 40.0,
        "clock_in_lon": -74.0,
        "clock_in_distance_m": 12,
        "status": TimeEntryStatus.ACTIVE,
    }
    values.update(overrides)
    return TimeEntry(**values)


class AttendanceEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(app)
        self.fake_db = _FakeDB()
        self.session = AuthSession(profile_id=7, role=ProfileRole.EMPLOYEE, email="worker@example.com")
        app.dependency_overrides[get_db] = _override_get_db(self.fake_db)
        app.dependency_overrides[require_session] = lambda: self.session

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_requests_without_token_get_error_envelope(self) -> None:
        app.dependency_overrides.pop(require_session)
        response = self.client.get("/api/me/status", headers={"X-Request-Id": "req-123"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers["X-Request-Id"], "req-123")
        body = response.json()
        self.assertEqual(body["error"]["code"], "INVALID_TOKEN")
        self.assertEqual(body["error"]["request_id"], "req-123")

    def test_clock_in_returns_created_entry_and_audits(self) -> None:
        result = ClockInResult(entry=_entry(), conflict=None, replayed=False)
        with (
            patch("timeguard.routers.attendance.clock_in", return_value=result) as clock_in_mock,
            patch("timeguard.routers.attendance.log_request_audit") as audit_mock,
        ):
            response = self.client.post(
                "/api/attendance/clock-in",
                json={
                    "site_id": 1,
                    "position": {"latitude": 40.0, "longitude": -74.0, "accuracy": 8.5},
                    "idempotency_key": "clock-in-key-0001",
                },
            )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["entry"]["id"], 10)
        self.assertEqual(body["entry"]["status"], "active")
        self.assertIsNone(body["conflict"])
        self.assertFalse(body["replayed"])

        kwargs = clock_in_mock.call_args.kwargs
        self.assertEqual(kwargs["site_id"], 1)
        self.assertEqual(kwargs["idempotency_key"], "clock-in-key-0001")
        self.assertEqual(kwargs["position"].accuracy_m, 8.5)
        self.assertFalse(kwargs["acknowledge_conflict"])
        self.assertEqual(audit_mock.call_args.kwargs["action"], "CLOCK_IN")

    def test_clock_in_with_acknowledged_conflict_returns_conflict(self) -> None:
        conflict = Conflict(
            id=4,
            employee_id=7,
            site_id=1,
            time_entry_id=10,
            conflict_type=ConflictType.OUTSIDE_HOURS,
            conflict_time=CLOCK_IN_AT,
            details="Clock-in at 18:00 outside allowed hours 09:00-17:00",
            acknowledged=True,
        )
        result = ClockInResult(entry=_entry(), conflict=conflict, replayed=False)
        with (
            patch("timeguard.routers.attendance.clock_in", return_value=result),
            patch("timeguard.routers.attendance.log_request_audit"),
        ):
            response = self.client.post(
                "/api/attendance/clock-in",
                json={"site_id": 1, "position": {"latitude": 40.0, "longitude": -74.0}, "acknowledge_conflict": True},
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["conflict"]["conflict_type"], "outside_hours")

    def test_replayed_clock_in_is_not_audited_again(self) -> None:
        result = ClockInResult(entry=_entry(), conflict=None, replayed=True)
        with (
            patch("timeguard.routers.attendance.clock_in", return_value=result),
            patch("timeguard.routers.attendance.log_request_audit") as audit_mock,
        ):
            response = self.client.post(
                "/api/attendance/clock-in",
                json={"site_id": 1, "position": {"latitude": 40.0, "longitude": -74.0}, "idempotency_key": "k" * 16},
            )
        self.assertTrue(response.json()["replayed"])
        audit_mock.assert_not_called()

    def test_clock_in_rejections_use_error_envelope(self) -> None:
        cases = [
            (OutsideGeofenceError(GeofenceResult(is_within=False, distance_m=500, radius_m=50)), 403, "OUTSIDE_GEOFENCE"),
            (
                ScheduleConflictError(
                    ScheduleConflict(
                        conflict_type=ConflictType.OUTSIDE_HOURS,
                        current_time="18:00",
                        window_start="09:00",
                        window_end="17:00",
                    )
                ),
                409,
                "SCHEDULE_CONFLICT",
            ),
        ]
        for error, status_code, code in cases:
            with self.subTest(code=code):
                with patch("timeguard.routers.attendance.clock_in", side_effect=error):
                    response = self.client.post(
                        "/api/attendance/clock-in",
                        json={"site_id": 1, "position": {"latitude": 40.0, "longitude": -74.0}},
                    )
                self.assertEqual(response.status_code, status_code)
                self.assertEqual(response.json()["error"]["code"], code)
                self.assertIn("details", response.json()["error"])

    def test_invalid_payload_is_validation_error(self) -> None:
        response = self.client.post(
            "/api/attendance/clock-in",
            json={"site_id": 1, "position": {"latitude": 123.0, "longitude": -74.0}},
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertTrue(response.json()["error"]["details"]["errors"])

    def test_clock_out_returns_completed_entry(self) -> None:
        entry = _entry(
            status=TimeEntryStatus.COMPLETED,
            clock_out_time=datetime(2026, 3, 2, 17, 0, tzinfo=timezone.utc),
        )
        with (
            patch("timeguard.routers.attendance.clock_out", return_value=entry) as clock_out_mock,
            patch("timeguard.routers.attendance.log_request_audit") as audit_mock,
        ):
            response = self.client.post("/api/attendance/clock-out", json={})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "completed")
        self.assertIsNone(clock_out_mock.call_args.kwargs["position"])
        self.assertEqual(audit_mock.call_args.kwargs["details"], {"site_id": 1, "has_location": False})

    def test_status_when_not_clocked_in(self) -> None:
        with patch("timeguard.routers.attendance.get_active_entry", return_value=None):
            response = self.client.get("/api/me/status")
        self.assertEqual(response.json(), {"clocked_in": False, "entry": None, "site_name": None, "elapsed_minutes": None})

    def test_status_reports_elapsed_minutes(self) -> None:
        with patch("timeguard.routers.attendance.get_active_entry", return_value=_entry()):
            response = self.client.get("/api/me/status")
        body = response.json()
        self.assertTrue(body["clocked_in"])
        self.assertEqual(body["entry"]["id"], 10)
        self.assertGreater(body["elapsed_minutes"], 0)

    def test_geofence_check(self) -> None:
        with patch(
            "timeguard.routers.attendance.check_site_geofence",
            return_value=GeofenceResult(is_within=True, distance_m=42, radius_m=100),
        ):
            response = self.client.post(
                "/api/geofence/check",
                json={"site_id": 1, "latitude": 40.0, "longitude": -74.0},
            )
        self.assertEqual(response.json(), {"site_id": 1, "is_within": True, "distance_m": 42, "radius_m": 100})

    def test_me_returns_profile(self) -> None:
        profile = Profile(
            id=7,
            email="worker@example.com",
            full_name="Worker",
            role=ProfileRole.EMPLOYEE,
            work_hours=8.0,
            work_days=["Monday"],
            is_active=True,
        )
        with patch("timeguard.routers.attendance.resolve_active_profile", return_value=profile):
            response = self.client.get("/api/me")
        self.assertEqual(response.json()["email"], "worker@example.com")
        self.assertEqual(response.json()["role"], "employee")

    def test_entries_days_are_bounded(self) -> None:
        response = self.client.get("/api/me/entries", params={"days": 0})
        self.assertEqual(response.status_code, 422)

        with patch("timeguard.routers.attendance.list_recent_entries", return_value=[_entry()]) as list_mock:
            response = self.client.get("/api/me/entries", params={"days": 14})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 1)
        self.assertEqual(list_mock.call_args.kwargs["employee_id"], 7)

    def test_health_reports_schema_guard_state(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertIn("schema_guard", response.json())


if __name__ == "__main__":
    unittest.main()
