"""Initial timeguard schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

profile_role = postgresql.ENUM(
    "admin",
    "manager",
    "employee",
    name="profile_role",
    create_type=False,
)
time_entry_status = postgresql.ENUM(
    "active",
    "completed",
    "invalid",
    name="time_entry_status",
    create_type=False,
)
conflict_type = postgresql.ENUM(
    "outside_hours",
    name="conflict_type",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "USER",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    profile_role.create(bind, checkfirst=True)
    time_entry_status.create(bind, checkfirst=True)
    conflict_type.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", profile_role, nullable=False, server_default=sa.text("'employee'")),
        sa.Column("password_hash", sa.String(length=255), nullable=False, server_default=sa.text("''")),
        sa.Column("work_hours", sa.Float(), nullable=False, server_default=sa.text("8")),
        sa.Column(
            "work_days",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text(
                "'[\"Monday\", \"Tuesday\", \"Wednesday\", \"Thursday\", \"Friday\"]'::jsonb"
            ),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"], unique=True)

    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=500), nullable=False, server_default=sa.text("''")),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("geofence_radius", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("allowed_hours_start", sa.String(length=5), nullable=True),
        sa.Column("allowed_hours_end", sa.String(length=5), nullable=True),
        sa.Column("variance_threshold_percent", sa.Float(), nullable=False, server_default=sa.text("5")),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.ForeignKeyConstraint(["manager_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.CheckConstraint("geofence_radius > 0", name="ck_sites_geofence_radius_positive"),
        sa.CheckConstraint("variance_threshold_percent >= 0", name="ck_sites_variance_threshold_non_negative"),
    )
    op.create_index("ix_sites_manager_id", "sites", ["manager_id"], unique=False)

    op.create_table(
        "employee_sites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("arrival_time", sa.String(length=5), nullable=False, server_default=sa.text("'09:00'")),
        sa.Column("end_time", sa.String(length=5), nullable=False, server_default=sa.text("'17:00'")),
        sa.ForeignKeyConstraint(["employee_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "site_id", name="uq_employee_sites_employee_site"),
    )
    op.create_index("ix_employee_sites_employee_id", "employee_sites", ["employee_id"], unique=False)
    op.create_index("ix_employee_sites_site_id", "employee_sites", ["site_id"], unique=False)

    op.create_table(
        "time_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("clock_in_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clock_in_lat", sa.Float(), nullable=False),
        sa.Column("clock_in_lon", sa.Float(), nullable=False),
        sa.Column("clock_in_accuracy_m", sa.Float(), nullable=True),
        sa.Column("clock_in_distance_m", sa.Integer(), nullable=True),
        sa.Column("clock_out_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clock_out_lat", sa.Float(), nullable=True),
        sa.Column("clock_out_lon", sa.Float(), nullable=True),
        sa.Column("clock_out_accuracy_m", sa.Float(), nullable=True),
        sa.Column("status", time_entry_status, nullable=False, server_default=sa.text("'active'")),
        sa.Column("idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("clock_out_idempotency_key", sa.String(length=64), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "employee_id",
            "idempotency_key",
            name="uq_time_entries_employee_idempotency_key",
        ),
    )
    op.create_index("ix_time_entries_site_id", "time_entries", ["site_id"], unique=False)
    op.create_index(
        "ix_time_entries_employee_clock_in",
        "time_entries",
        ["employee_id", "clock_in_time"],
        unique=False,
    )
    op.create_index(
        "uq_time_entries_one_active_per_employee",
        "time_entries",
        ["employee_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "conflicts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("time_entry_id", sa.Integer(), nullable=True),
        sa.Column("conflict_type", conflict_type, nullable=False),
        sa.Column("conflict_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.ForeignKeyConstraint(["employee_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["time_entry_id"], ["time_entries.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["acknowledged_by_id"], ["profiles.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_conflicts_employee_id", "conflicts", ["employee_id"], unique=False)
    op.create_index("ix_conflicts_site_id", "conflicts", ["site_id"], unique=False)

    op.create_table(
        "variance_alerts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=False),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("expected_hours", sa.Float(), nullable=False),
        sa.Column("actual_hours", sa.Float(), nullable=False),
        sa.Column("variance_percentage", sa.Float(), nullable=False),
        sa.Column("threshold_used", sa.Float(), nullable=False),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["manager_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_id", "site_id", "date", name="uq_variance_alerts_employee_site_date"),
    )
    op.create_index("ix_variance_alerts_employee_id", "variance_alerts", ["employee_id"], unique=False)
    op.create_index("ix_variance_alerts_site_id", "variance_alerts", ["site_id"], unique=False)
    op.create_index("ix_variance_alerts_manager_id", "variance_alerts", ["manager_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=True),
        sa.Column("entity_id", sa.String(length=100), nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_variance_alerts_manager_id", table_name="variance_alerts")
    op.drop_index("ix_variance_alerts_site_id", table_name="variance_alerts")
    op.drop_index("ix_variance_alerts_employee_id", table_name="variance_alerts")
    op.drop_table("variance_alerts")

    op.drop_index("ix_conflicts_site_id", table_name="conflicts")
    op.drop_index("ix_conflicts_employee_id", table_name="conflicts")
    op.drop_table("conflicts")

    op.drop_index("uq_time_entries_one_active_per_employee", table_name="time_entries")
    op.drop_index("ix_time_entries_employee_clock_in", table_name="time_entries")
    op.drop_index("ix_time_entries_site_id", table_name="time_entries")
    op.drop_table("time_entries")

    op.drop_index("ix_employee_sites_site_id", table_name="employee_sites")
    op.drop_index("ix_employee_sites_employee_id", table_name="employee_sites")
    op.drop_table("employee_sites")

    op.drop_index("ix_sites_manager_id", table_name="sites")
    op.drop_table("sites")

    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    conflict_type.drop(bind, checkfirst=True)
    time_entry_status.drop(bind, checkfirst=True)
    profile_role.drop(bind, checkfirst=True)
