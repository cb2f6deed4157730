"""Initial schema: businesses, services, employees, schedules, appointments.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

capacity_mode = sa.Enum("EXCLUSIVE", "SHARED", name="capacitymode")
owner_kind = sa.Enum("BUSINESS", "EMPLOYEE", name="ownerkind")
appointment_status = sa.Enum(
    "PENDING", "CONFIRMED", "COMPLETED", "CANCELLED", "NO_SHOW", name="appointmentstatus"
)


def upgrade() -> None:
    op.create_table(
        "businesses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("capacity_mode", capacity_mode, nullable=False),
        sa.Column("default_capacity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("default_slot_interval", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("timezone", sa.String(), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "services",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("custom_capacity", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_services_business_id"), "services", ["business_id"], unique=False)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("max_daily_appointments", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_employees_business_id"), "employees", ["business_id"], unique=False)

    op.create_table(
        "employee_services",
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("service_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("employee_id", "service_id"),
    )

    op.create_table(
        "weekly_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_kind", owner_kind, nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("capacity_override", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_kind", "owner_id", "day_of_week", name="uq_weekly_rules_owner_day"),
    )
    op.create_index(op.f("ix_weekly_rules_owner_kind"), "weekly_rules", ["owner_kind"], unique=False)
    op.create_index(op.f("ix_weekly_rules_owner_id"), "weekly_rules", ["owner_id"], unique=False)

    op.create_table(
        "break_intervals",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("weekly_rule_id", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.ForeignKeyConstraint(["weekly_rule_id"], ["weekly_rules.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_break_intervals_weekly_rule_id"), "break_intervals", ["weekly_rule_id"], unique=False)

    op.create_table(
        "date_exceptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_kind", owner_kind, nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("exception_date", sa.Date(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("start_time", sa.Time(), nullable=True),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("capacity_override", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_kind", "owner_id", "exception_date", name="uq_date_exceptions_owner_date"),
    )
    op.create_index(op.f("ix_date_exceptions_owner_kind"), "date_exceptions", ["owner_kind"], unique=False)
    op.create_index(op.f("ix_date_exceptions_owner_id"), "date_exceptions", ["owner_id"], unique=False)
    op.create_index(op.f("ix_date_exceptions_exception_date"), "date_exceptions", ["exception_date"], unique=False)

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("service_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=True),
        sa.Column("client_user_id", sa.Integer(), nullable=True),
        sa.Column("client_first_name", sa.String(), nullable=False),
        sa.Column("client_last_name", sa.String(), nullable=False),
        sa.Column("client_email", sa.String(), nullable=False),
        sa.Column("client_phone", sa.String(), nullable=False),
        sa.Column("client_notes", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("appointment_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("status", appointment_status, nullable=False),
        sa.Column("is_email_confirmed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("email_confirmation_token", sa.String(), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("completed_automatically", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in (
        "business_id", "service_id", "employee_id", "client_user_id",
        "appointment_date", "status", "email_confirmation_token",
    ):
        op.create_index(op.f(f"ix_appointments_{column}"), "appointments", [column], unique=False)


def downgrade() -> None:
    op.drop_table("appointments")
    op.drop_table("date_exceptions")
    op.drop_table("break_intervals")
    op.drop_table("weekly_rules")
    op.drop_table("employee_services")
    op.drop_table("employees")
    op.drop_table("services")
    op.drop_table("businesses")
    appointment_status.drop(op.get_bind(), checkfirst=True)
    owner_kind.drop(op.get_bind(), checkfirst=True)
    capacity_mode.drop(op.get_bind(), checkfirst=True)
