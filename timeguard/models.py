from __future__ import annotations

import enum
from datetime import date, datetime
from datetime import date as date_type
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timeguard.db import Base

DEFAULT_WORK_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]


class ProfileRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class TimeEntryStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    INVALID = "invalid"


class ConflictType(str, enum.Enum):
    OUTSIDE_HOURS = "outside_hours"


class AuditActorType(str, enum.Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


def _value_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[ProfileRole] = mapped_column(
        _value_enum(ProfileRole, "profile_role"),
        nullable=False,
        default=ProfileRole.EMPLOYEE,
    )
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    work_hours: Mapped[float] = mapped_column(Float, nullable=False, default=8.0, server_default=text("8"))
    work_days: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=lambda: list(DEFAULT_WORK_DAYS),
        server_default=text(
            "'[\"Monday\", \"Tuesday\", \"Wednesday\", \"Thursday\", \"Friday\"]'::jsonb"
        ),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    assignments: Mapped[list[EmployeeSite]] = relationship(back_populates="employee")
    time_entries: Mapped[list[TimeEntry]] = relationship(back_populates="employee")


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    geofence_radius: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default=text("100"))
    allowed_hours_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    allowed_hours_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    variance_threshold_percent: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=5.0,
        server_default=text("5"),
    )
    manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    manager: Mapped[Profile | None] = relationship(foreign_keys=[manager_id])
    assignments: Mapped[list[EmployeeSite]] = relationship(back_populates="site")


class EmployeeSite(Base):
    __tablename__ = "employee_sites"
    __table_args__ = (
        UniqueConstraint("employee_id", "site_id", name="uq_employee_sites_employee_site"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    site_id: Mapped[int] = mapped_column(
        ForeignKey("sites.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    arrival_time: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00")
    end_time: Mapped[str] = mapped_column(String(5), nullable=False, default="17:00")

    employee: Mapped[Profile] = relationship(back_populates="assignments")
    site: Mapped[Site] = relationship(back_populates="assignments")


class TimeEntry(Base):
    __tablename__ = "time_entries"
    __table_args__ = (
        Index(
            "uq_time_entries_one_active_per_employee",
            "employee_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        UniqueConstraint(
            "employee_id",
            "idempotency_key",
            name="uq_time_entries_employee_idempotency_key",
        ),
        Index("ix_time_entries_employee_clock_in", "employee_id", "clock_in_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    clock_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_in_lat: Mapped[float] = mapped_column(Float, nullable=False)
    clock_in_lon: Mapped[float] = mapped_column(Float, nullable=False)
    clock_in_accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    clock_in_distance_m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    clock_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    clock_out_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    clock_out_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    clock_out_accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[TimeEntryStatus] = mapped_column(
        _value_enum(TimeEntryStatus, "time_entry_status"),
        nullable=False,
        default=TimeEntryStatus.ACTIVE,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    clock_out_idempotency_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    employee: Mapped[Profile] = relationship(back_populates="time_entries")
    site: Mapped[Site] = relationship()


class Conflict(Base):
    __tablename__ = "conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    time_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("time_entries.id", ondelete="SET NULL"),
        nullable=True,
    )
    conflict_type: Mapped[ConflictType] = mapped_column(
        _value_enum(ConflictType, "conflict_type"),
        nullable=False,
    )
    conflict_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    details: Mapped[str] = mapped_column(Text, nullable=False, default="")


class VarianceAlert(Base):
    __tablename__ = "variance_alerts"
    __table_args__ = (
        UniqueConstraint("employee_id", "site_id", "date", name="uq_variance_alerts_employee_site_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    expected_hours: Mapped[float] = mapped_column(Float, nullable=False)
    actual_hours: Mapped[float] = mapped_column(Float, nullable=False)
    variance_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_used: Mapped[float] = mapped_column(Float, nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
