from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from timbersync.core.config import APP_SCOPE_ANY


# JSONB on Postgres, plain JSON elsewhere (SQLite test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only auto-increments INTEGER PRIMARY KEY columns.
LogId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True)
    # Deactivation is advisory; callers decide how to treat inactive tenants.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Store only the bcrypt hash; plaintext passwords never reach the database.
    password_hash: Mapped[str] = mapped_column(String)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # admin is a global bypass; everything else is resolved per company and category.
    role: Mapped[str] = mapped_column(String, default="user")
    company_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("companies.id"), nullable=True, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserCategory(Base):
    __tablename__ = "user_categories"

    # Per-dataset-category grants for non-admin users.
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    category: Mapped[str] = mapped_column(String, primary_key=True)
    can_read: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_write: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Application(Base):
    __tablename__ = "applications"

    app_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    landing_url: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    requires_license: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CompanyApplication(Base):
    __tablename__ = "company_applications"
    __table_args__ = (
        UniqueConstraint("company_id", "app_id", name="uq_company_applications"),
    )

    # Tenant-level default allow/deny gate for an application.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, ForeignKey("companies.id"), index=True)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("applications.app_id"), index=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    license_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    max_devices: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserApplication(Base):
    __tablename__ = "user_applications"

    # Per-user override; inherit defers to the company grant.
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    app_id: Mapped[str] = mapped_column(String, ForeignKey("applications.app_id"), primary_key=True)
    access_type: Mapped[str] = mapped_column(String, default="inherit")
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class License(Base):
    __tablename__ = "licenses"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    license_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    owner_user_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    company_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("companies.id"), nullable=True, index=True
    )
    # '*' scopes the license to any application.
    app_id: Mapped[str] = mapped_column(String, default=APP_SCOPE_ANY, nullable=False)
    max_devices: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    # Null means the license never expires.
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LicenseDevice(Base):
    __tablename__ = "license_devices"
    __table_args__ = (
        UniqueConstraint("license_id", "device_id", name="uq_license_devices_device"),
        Index("ix_license_devices_device_last_seen", "device_id", "last_seen"),
    )

    # One row per consumed device seat.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    license_id: Mapped[str] = mapped_column(
        String, ForeignKey("licenses.id", ondelete="CASCADE"), index=True
    )
    device_id: Mapped[str] = mapped_column(String)
    device_name: Mapped[str] = mapped_column(String, default="Unknown")
    device_model: Mapped[str] = mapped_column(String, default="Unknown")
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Dataset(Base):
    __tablename__ = "csv_files"
    __table_args__ = (
        UniqueConstraint("filename", "category", name="uq_csv_files_filename_category"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    filename: Mapped[str] = mapped_column(String, index=True)
    category: Mapped[str] = mapped_column(String, index=True)
    uploaded_by: Mapped[str | None] = mapped_column(String, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DatasetRow(Base):
    __tablename__ = "csv_data"

    id: Mapped[int] = mapped_column(LogId, primary_key=True, autoincrement=True)
    file_id: Mapped[str] = mapped_column(
        String, ForeignKey("csv_files.id", ondelete="CASCADE"), index=True
    )
    # Preserve upload order independently of id allocation.
    position: Mapped[int] = mapped_column(Integer)
    row_data: Mapped[dict[str, Any]] = mapped_column(JSONType)


class InventorySession(Base):
    __tablename__ = "inventory_sessions"
    __table_args__ = (
        UniqueConstraint(
            "device_id",
            "external_session_key",
            "inventory_date",
            name="uq_inventory_sessions_device_key_date",
        ),
        Index("ix_inventory_sessions_company_date", "company_id", "inventory_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Always the company resolved from the device's license, never a client value.
    company_id: Mapped[str] = mapped_column(String, ForeignKey("companies.id"))
    device_id: Mapped[str] = mapped_column(String, index=True)
    license_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_session_key: Mapped[str] = mapped_column(String)
    inventory_date: Mapped[date] = mapped_column(Date)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    operator_name: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tree_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_volume_m3: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class InventoryMeasurement(Base):
    __tablename__ = "inventory_measurements"

    id: Mapped[int] = mapped_column(LogId, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("inventory_sessions.id", ondelete="CASCADE"), index=True
    )
    company_id: Mapped[str] = mapped_column(String, index=True)
    device_id: Mapped[str] = mapped_column(String)
    position: Mapped[int] = mapped_column(Integer)
    species: Mapped[str] = mapped_column(String)
    diameter_cm: Mapped[float] = mapped_column(Float)
    height_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    volume_m3: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality: Mapped[str | None] = mapped_column(String, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    measured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extra_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)


class SyncLog(Base):
    __tablename__ = "sync_logs"

    # Append-only; rows are never updated after insert.
    id: Mapped[int] = mapped_column(LogId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    device_id: Mapped[str] = mapped_column(String, index=True)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    license_id: Mapped[str | None] = mapped_column(String, nullable=True)
    sessions_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sessions_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sessions_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sessions_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    measurements_written: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    outcome: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(LogId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null for pre-auth events and for platform admins without a company.
    company_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
