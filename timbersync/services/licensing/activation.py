from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Union
from uuid import uuid4

from sqlalchemy import DateTime, String, delete, func, literal, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.errors import InfrastructureError, LicenseNotFound, NotFoundError
from timbersync.core.timeutil import as_utc, utc_now
from timbersync.domain.models import License, LicenseDevice
from timbersync.services.licensing.keys import normalize_license_key
from timbersync.services.licensing.registry import (
    find_by_key,
    is_usable,
    is_usable_for_sync,
    is_wildcard_scope,
    sync_deadline,
)


logger = logging.getLogger(__name__)

REASON_APP_SCOPE_REQUIRED = "application scope required"
REASON_WRONG_APPLICATION = "wrong application"
REASON_INACTIVE = "inactive"
REASON_EXPIRED = "expired"
REASON_DEVICE_LIMIT = "device limit reached"
REASON_INVALID_KEY = "invalid key"
REASON_NOT_ACTIVATED = "device not activated"
REASON_VERIFICATION_FAILED = "verification failed"

_DEFAULT_DEVICE_LABEL = "Unknown"


@dataclass(frozen=True)
class Activated:
    license: License
    device: LicenseDevice
    status: str = "activated"


@dataclass(frozen=True)
class AlreadyActive:
    license: License
    device: LicenseDevice
    status: str = "already_active"


@dataclass(frozen=True)
class ActivationDenied:
    reason: str
    context: dict[str, Any] = field(default_factory=dict)
    status: str = "denied"


ActivationResult = Union[Activated, AlreadyActive, ActivationDenied]


@dataclass(frozen=True)
class Valid:
    license: License
    device: LicenseDevice
    verified_at: datetime


@dataclass(frozen=True)
class Invalid:
    reason: str
    retryable: bool
    context: dict[str, Any] = field(default_factory=dict)


VerifyResult = Union[Valid, Invalid]


def check_app_scope(license: License, requested_app_id: str | None) -> ActivationDenied | None:
    # A concrete license must be asked for by name; omission is not treated as a wildcard.
    if is_wildcard_scope(license.app_id):
        return None
    if is_wildcard_scope(requested_app_id):
        return ActivationDenied(REASON_APP_SCOPE_REQUIRED, {"valid_for": license.app_id})
    if requested_app_id != license.app_id:
        return ActivationDenied(REASON_WRONG_APPLICATION, {"valid_for": license.app_id})
    return None


def _usability_denial(license: License, now: datetime) -> ActivationDenied | None:
    # Seats may be (re)claimed during the grace window, matching what sync accepts.
    if is_usable_for_sync(license, now):
        return None
    if not license.is_active:
        return ActivationDenied(REASON_INACTIVE)
    return ActivationDenied(
        REASON_EXPIRED,
        {
            "expires_at": as_utc(license.expires_at).isoformat(),
            "grace_deadline": sync_deadline(license).isoformat(),
        },
    )


async def activate_device(
    session: AsyncSession,
    *,
    license_key: str,
    device_id: str,
    device_name: str | None = None,
    device_model: str | None = None,
    app_id: str | None = None,
    now: datetime | None = None,
) -> ActivationResult:
    """Admit a device onto a license without ever exceeding ``max_devices``.

    Re-activating an already admitted device is idempotent and only refreshes
    ``last_seen``. Seat admission is a single guarded INSERT evaluated inside
    the transaction that holds the license row lock, so concurrent requests at
    the quota boundary cannot overshoot.
    """
    moment = now or utc_now()
    try:
        license = await _lock_license_by_key(session, license_key)
        if license is None:
            raise LicenseNotFound("Invalid license key", resource="license", identity=license_key)

        # Rollback expires loaded instances, so keep plain copies for logging and results.
        license_id = license.id
        max_devices = license.max_devices

        denial = check_app_scope(license, app_id) or _usability_denial(license, moment)
        if denial is not None:
            await session.rollback()
            logger.info(
                "license_activation_denied license_id=%s device_id=%s reason=%s",
                license_id,
                device_id,
                denial.reason,
            )
            return denial

        refreshed = await session.execute(
            update(LicenseDevice)
            .where(LicenseDevice.license_id == license_id, LicenseDevice.device_id == device_id)
            .values(last_seen=moment)
        )
        if refreshed.rowcount:
            await session.commit()
            device = await _get_device(session, license_id, device_id)
            return AlreadyActive(license=license, device=device)

        inserted = await session.execute(
            _guarded_seat_insert(
                license_id=license_id,
                device_id=device_id,
                device_name=device_name or _DEFAULT_DEVICE_LABEL,
                device_model=device_model or _DEFAULT_DEVICE_LABEL,
                now=moment,
            )
        )
        if not inserted.rowcount:
            await session.rollback()
            logger.info(
                "license_activation_denied license_id=%s device_id=%s reason=%s",
                license_id,
                device_id,
                REASON_DEVICE_LIMIT,
            )
            return ActivationDenied(REASON_DEVICE_LIMIT, {"max_devices": max_devices})
        await session.commit()
    except IntegrityError:
        # Backstop: the unique (license_id, device_id) constraint caught a duplicate admission.
        await session.rollback()
        license = await find_by_key(session, license_key)
        device = await _get_device(session, license.id, device_id) if license else None
        if license is None or device is None:
            raise InfrastructureError("Activation failed")
        return AlreadyActive(license=license, device=device)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("license_activation_failed device_id=%s", device_id, exc_info=exc)
        raise InfrastructureError("Activation failed") from exc

    device = await _get_device(session, license_id, device_id)
    logger.info("license_device_activated license_id=%s device_id=%s", license_id, device_id)
    return Activated(license=license, device=device)


def _guarded_seat_insert(
    *,
    license_id: str,
    device_id: str,
    device_name: str,
    device_model: str,
    now: datetime,
):
    # INSERT ... SELECT that yields a row only while a seat is free and the device is new.
    seats_in_use = (
        select(func.count(LicenseDevice.id))
        .where(LicenseDevice.license_id == license_id)
        .scalar_subquery()
    )
    already_admitted = (
        select(LicenseDevice.id)
        .where(LicenseDevice.license_id == license_id, LicenseDevice.device_id == device_id)
        .exists()
    )
    candidate = select(
        literal(uuid4().hex, String),
        literal(license_id, String),
        literal(device_id, String),
        literal(device_name, String),
        literal(device_model, String),
        literal(now, DateTime(timezone=True)),
        literal(now, DateTime(timezone=True)),
    ).where(
        License.id == license_id,
        seats_in_use < License.max_devices,
        ~already_admitted,
    )
    return LicenseDevice.__table__.insert().from_select(
        [
            "id",
            "license_id",
            "device_id",
            "device_name",
            "device_model",
            "activated_at",
            "last_seen",
        ],
        candidate,
    )


async def verify_device(
    session: AsyncSession,
    *,
    license_key: str,
    device_id: str,
    now: datetime | None = None,
) -> VerifyResult:
    """Check a device's license with the hard (no grace) expiry rule.

    Datastore failures come back as ``Invalid(retryable=True)`` so offline
    clients retry instead of treating the license as revoked.
    """
    moment = now or utc_now()
    try:
        result = await session.execute(
            select(License, LicenseDevice)
            .outerjoin(
                LicenseDevice,
                (LicenseDevice.license_id == License.id) & (LicenseDevice.device_id == device_id),
            )
            .where(License.license_key == normalize_license_key(license_key))
        )
        row = result.first()
        if row is None:
            return Invalid(REASON_INVALID_KEY, retryable=False)
        license, device = row
        if not license.is_active:
            return Invalid(REASON_INACTIVE, retryable=False)
        if not is_usable(license, moment):
            return Invalid(
                REASON_EXPIRED,
                retryable=False,
                context={"expired_at": as_utc(license.expires_at).isoformat()},
            )
        if device is None:
            return Invalid(REASON_NOT_ACTIVATED, retryable=False)
        await session.execute(
            update(LicenseDevice).where(LicenseDevice.id == device.id).values(last_seen=moment)
        )
        await session.commit()
        device.last_seen = moment
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("license_verification_failed device_id=%s", device_id, exc_info=exc)
        return Invalid(REASON_VERIFICATION_FAILED, retryable=True)
    return Valid(license=license, device=device, verified_at=moment)


async def deactivate_device(session: AsyncSession, *, license_key: str, device_id: str) -> bool:
    # Idempotent: deactivating an unknown device is not an error.
    try:
        license = await find_by_key(session, license_key)
        if license is None:
            raise LicenseNotFound("Invalid license key", resource="license", identity=license_key)
        result = await session.execute(
            delete(LicenseDevice).where(
                LicenseDevice.license_id == license.id,
                LicenseDevice.device_id == device_id,
            )
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Deactivation failed") from exc
    removed = bool(result.rowcount)
    logger.info("license_device_deactivated license_id=%s device_id=%s removed=%s", license.id, device_id, removed)
    return removed


async def list_devices(session: AsyncSession, license_id: str) -> list[LicenseDevice]:
    try:
        result = await session.execute(
            select(LicenseDevice)
            .where(LicenseDevice.license_id == license_id)
            .order_by(LicenseDevice.activated_at.desc())
        )
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch devices") from exc
    return list(result.scalars().all())


async def remove_device(session: AsyncSession, license_id: str, device_row_id: str) -> bool:
    # Admin-initiated seat release; removing an absent row is a no-op.
    try:
        result = await session.execute(
            delete(LicenseDevice).where(
                LicenseDevice.license_id == license_id,
                LicenseDevice.id == device_row_id,
            )
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to remove device") from exc
    return bool(result.rowcount)


async def _lock_license_by_key(session: AsyncSession, license_key: str) -> License | None:
    # FOR UPDATE serializes admissions per license on Postgres; SQLite ignores it and
    # serializes writers at the database level instead.
    result = await session.execute(
        select(License)
        .where(License.license_key == normalize_license_key(license_key))
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def _get_device(session: AsyncSession, license_id: str, device_id: str) -> LicenseDevice:
    result = await session.execute(
        select(LicenseDevice).where(
            LicenseDevice.license_id == license_id,
            LicenseDevice.device_id == device_id,
        )
    )
    device = result.scalar_one_or_none()
    if device is None:
        raise NotFoundError("Device not found", resource="device", identity=device_id)
    return device
