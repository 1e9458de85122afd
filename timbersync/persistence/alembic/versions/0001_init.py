"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("name"),
    )

    # Principals; admin is a global role, everyone else is pinned to a company.
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), sa.ForeignKey("companies.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_company_id", "users", ["company_id"])

    op.create_table(
        "user_categories",
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("category", sa.String(), primary_key=True),
        sa.Column("can_read", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("can_write", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("can_delete", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    )

    op.create_table(
        "applications",
        sa.Column("app_id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("landing_url", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("requires_license", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "company_applications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("company_id", sa.String(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("app_id", sa.String(), sa.ForeignKey("applications.app_id"), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("license_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_devices", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("company_id", "app_id", name="uq_company_applications"),
    )
    op.create_index("ix_company_applications_company_id", "company_applications", ["company_id"])
    op.create_index("ix_company_applications_app_id", "company_applications", ["app_id"])

    op.create_table(
        "user_applications",
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("app_id", sa.String(), sa.ForeignKey("applications.app_id"), primary_key=True),
        sa.Column("access_type", sa.String(), server_default="inherit", nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "licenses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("license_key", sa.String(), nullable=False),
        sa.Column("owner_user_id", sa.String(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("company_id", sa.String(), sa.ForeignKey("companies.id"), nullable=True),
        # '*' scopes a license to every application.
        sa.Column("app_id", sa.String(), server_default="*", nullable=False),
        sa.Column("max_devices", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("grace_period_days", sa.Integer(), server_default=sa.text("7"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_licenses_license_key", "licenses", ["license_key"], unique=True)
    op.create_index("ix_licenses_company_id", "licenses", ["company_id"])

    op.create_table(
        "license_devices",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("license_id", sa.String(), sa.ForeignKey("licenses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("device_name", sa.String(), nullable=False),
        sa.Column("device_model", sa.String(), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        # Backstop for the guarded seat insert: one seat per device per license.
        sa.UniqueConstraint("license_id", "device_id", name="uq_license_devices_device"),
    )
    op.create_index("ix_license_devices_license_id", "license_devices", ["license_id"])
    op.create_index("ix_license_devices_device_last_seen", "license_devices", ["device_id", "last_seen"])

    op.create_table(
        "csv_files",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("uploaded_by", sa.String(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("filename", "category", name="uq_csv_files_filename_category"),
    )
    op.create_index("ix_csv_files_filename", "csv_files", ["filename"])
    op.create_index("ix_csv_files_category", "csv_files", ["category"])

    op.create_table(
        "csv_data",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("file_id", sa.String(), sa.ForeignKey("csv_files.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("row_data", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_csv_data_file_id", "csv_data", ["file_id"])

    op.create_table(
        "inventory_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("company_id", sa.String(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("license_id", sa.String(), nullable=True),
        sa.Column("external_session_key", sa.String(), nullable=False),
        sa.Column("inventory_date", sa.Date(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("operator_name", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tree_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_volume_m3", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "device_id",
            "external_session_key",
            "inventory_date",
            name="uq_inventory_sessions_device_key_date",
        ),
    )
    op.create_index("ix_inventory_sessions_device_id", "inventory_sessions", ["device_id"])
    op.create_index(
        "ix_inventory_sessions_company_date", "inventory_sessions", ["company_id", "inventory_date"]
    )

    op.create_table(
        "inventory_measurements",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.String(),
            sa.ForeignKey("inventory_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("species", sa.String(), nullable=False),
        sa.Column("diameter_cm", sa.Float(), nullable=False),
        sa.Column("height_m", sa.Float(), nullable=True),
        sa.Column("volume_m3", sa.Float(), nullable=True),
        sa.Column("quality", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("measured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extra_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_inventory_measurements_session_id", "inventory_measurements", ["session_id"])
    op.create_index("ix_inventory_measurements_company_id", "inventory_measurements", ["company_id"])

    # Append-only record of every sync attempt, denials included.
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("license_id", sa.String(), nullable=True),
        sa.Column("sessions_received", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("sessions_created", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("sessions_updated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("sessions_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("measurements_written", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
    )
    op.create_index("ix_sync_logs_occurred_at", "sync_logs", ["occurred_at"])
    op.create_index("ix_sync_logs_device_id", "sync_logs", ["device_id"])
    op.create_index("ix_sync_logs_company_id", "sync_logs", ["company_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_company_id", "audit_events", ["company_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    for index_name in (
        "ix_audit_events_request_id",
        "ix_audit_events_event_type",
        "ix_audit_events_company_id",
        "ix_audit_events_occurred_at",
    ):
        op.drop_index(index_name, table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_sync_logs_company_id", table_name="sync_logs")
    op.drop_index("ix_sync_logs_device_id", table_name="sync_logs")
    op.drop_index("ix_sync_logs_occurred_at", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_inventory_measurements_company_id", table_name="inventory_measurements")
    op.drop_index("ix_inventory_measurements_session_id", table_name="inventory_measurements")
    op.drop_table("inventory_measurements")
    op.drop_index("ix_inventory_sessions_company_date", table_name="inventory_sessions")
    op.drop_index("ix_inventory_sessions_device_id", table_name="inventory_sessions")
    op.drop_table("inventory_sessions")
    op.drop_index("ix_csv_data_file_id", table_name="csv_data")
    op.drop_table("csv_data")
    op.drop_index("ix_csv_files_category", table_name="csv_files")
    op.drop_index("ix_csv_files_filename", table_name="csv_files")
    op.drop_table("csv_files")
    op.drop_index("ix_license_devices_device_last_seen", table_name="license_devices")
    op.drop_index("ix_license_devices_license_id", table_name="license_devices")
    op.drop_table("license_devices")
    op.drop_index("ix_licenses_company_id", table_name="licenses")
    op.drop_index("ix_licenses_license_key", table_name="licenses")
    op.drop_table("licenses")
    op.drop_table("user_applications")
    op.drop_index("ix_company_applications_app_id", table_name="company_applications")
    op.drop_index("ix_company_applications_company_id", table_name="company_applications")
    op.drop_table("company_applications")
    op.drop_table("applications")
    op.drop_table("user_categories")
    op.drop_index("ix_users_company_id", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
    op.drop_table("companies")
