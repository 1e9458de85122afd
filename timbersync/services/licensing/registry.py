from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.config import APP_SCOPE_ANY, get_settings
from timbersync.core.errors import ConflictError, InfrastructureError, LicenseNotFound, NotFoundError
from timbersync.core.timeutil import as_utc
from timbersync.domain.models import Application, Company, License, LicenseDevice, User
from timbersync.services.licensing.keys import generate_license_key, normalize_license_key


logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "owner_user_id",
    "company_id",
    "app_id",
    "max_devices",
    "grace_period_days",
    "expires_at",
    "is_active",
    "notes",
}


@dataclass(frozen=True)
class LicenseSpec:
    owner_user_id: str | None = None
    company_id: str | None = None
    app_id: str = APP_SCOPE_ANY
    max_devices: int | None = None
    grace_period_days: int | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    notes: str | None = None


@dataclass(frozen=True)
class LicenseSummary:
    license: License
    active_devices: int
    owner_username: str | None


def is_usable(license: License, now: datetime) -> bool:
    """Hard validity check used by license info and verify.

    Expiry is a hard stop here; the grace period only applies to field sync
    and seat activation (see :func:`is_usable_for_sync`).
    """
    expires_at = as_utc(license.expires_at)
    return bool(license.is_active) and (expires_at is None or expires_at > now)


def sync_deadline(license: License) -> datetime | None:
    # Grace extends the nominal expiry; licenses without expiry have no deadline.
    expires_at = as_utc(license.expires_at)
    if expires_at is None:
        return None
    return expires_at + timedelta(days=max(0, int(license.grace_period_days or 0)))


def is_usable_for_sync(license: License, now: datetime) -> bool:
    deadline = sync_deadline(license)
    return bool(license.is_active) and (deadline is None or now <= deadline)


def is_wildcard_scope(app_id: str | None) -> bool:
    return not app_id or app_id == APP_SCOPE_ANY


async def find_by_key(session: AsyncSession, license_key: str) -> License | None:
    result = await session.execute(
        select(License).where(License.license_key == normalize_license_key(license_key))
    )
    return result.scalar_one_or_none()


async def get_license(session: AsyncSession, license_id: str) -> License | None:
    result = await session.execute(select(License).where(License.id == license_id))
    return result.scalar_one_or_none()


async def require_license(session: AsyncSession, license_id: str) -> License:
    license = await get_license(session, license_id)
    if license is None:
        raise NotFoundError("License not found", resource="license", identity=license_id)
    return license


async def license_info(session: AsyncSession, license_key: str) -> dict[str, Any]:
    # Public, offline-friendly summary; never exposes owner or device details.
    try:
        license = await find_by_key(session, license_key)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch license info") from exc
    if license is None:
        raise LicenseNotFound("License not found", resource="license", identity=license_key)
    return {
        "license_key": license.license_key,
        "app_id": license.app_id,
        "max_devices": license.max_devices,
        "grace_period_days": license.grace_period_days,
        "expires_at": as_utc(license.expires_at),
        "is_active": license.is_active,
    }


async def create_license(
    session: AsyncSession,
    spec: LicenseSpec,
    *,
    key_factory: Callable[[], str] = generate_license_key,
) -> License:
    """Create a license with a freshly generated, collision-checked key."""
    settings = get_settings()
    try:
        await _validate_references(
            session,
            owner_user_id=spec.owner_user_id,
            company_id=spec.company_id,
            app_id=spec.app_id,
        )
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to create license") from exc

    attempts = max(1, settings.license_key_max_attempts)
    for attempt in range(1, attempts + 1):
        license_key = key_factory()
        try:
            if await find_by_key(session, license_key) is not None:
                logger.warning("license_key_collision attempt=%s", attempt)
                continue
            license = License(
                id=uuid4().hex,
                license_key=license_key,
                owner_user_id=spec.owner_user_id,
                company_id=spec.company_id,
                app_id=spec.app_id or APP_SCOPE_ANY,
                max_devices=spec.max_devices if spec.max_devices is not None else settings.default_max_devices,
                grace_period_days=(
                    spec.grace_period_days
                    if spec.grace_period_days is not None
                    else settings.default_grace_period_days
                ),
                expires_at=spec.expires_at,
                is_active=spec.is_active,
                notes=spec.notes,
            )
            session.add(license)
            await session.commit()
            await session.refresh(license)
        except IntegrityError:
            # A concurrent insert claimed the same key between the check and the commit.
            await session.rollback()
            logger.warning("license_key_collision attempt=%s", attempt)
            continue
        except SQLAlchemyError as exc:
            await session.rollback()
            raise InfrastructureError("Failed to create license") from exc
        logger.info("license_created license_id=%s company_id=%s", license.id, license.company_id)
        return license

    raise ConflictError("Could not allocate a unique license key", field="license_key")


async def update_license(session: AsyncSession, license_id: str, changes: dict[str, Any]) -> License:
    # Apply only the supplied fields; omitted fields keep their stored values.
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported license fields: {sorted(unknown)}")
    try:
        result = await session.execute(
            select(License).where(License.id == license_id).with_for_update()
        )
        license = result.scalar_one_or_none()
        if license is None:
            await session.rollback()
            raise NotFoundError("License not found", resource="license", identity=license_id)
        await _validate_references(
            session,
            owner_user_id=changes.get("owner_user_id"),
            company_id=changes.get("company_id"),
            app_id=changes.get("app_id"),
        )
        for key, value in changes.items():
            if key == "max_devices":
                continue
            if key == "app_id" and not value:
                value = APP_SCOPE_ANY
            setattr(license, key, value)
        if changes.get("max_devices") is not None:
            await _apply_seat_limit(session, license_id, changes["max_devices"])
        await session.commit()
        await session.refresh(license)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to update license") from exc
    logger.info("license_updated license_id=%s fields=%s", license_id, sorted(changes))
    return license


async def _apply_seat_limit(session: AsyncSession, license_id: str, max_devices: int) -> None:
    # Guarded like seat admission: the limit never drops below the seats already taken.
    seat_count = select(func.count(LicenseDevice.id)).where(LicenseDevice.license_id == license_id)
    result = await session.execute(
        update(License)
        .where(License.id == license_id, seat_count.scalar_subquery() <= max_devices)
        .values(max_devices=max_devices)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        return
    active_devices = (await session.execute(seat_count)).scalar_one()
    await session.rollback()
    logger.info(
        "license_seat_limit_rejected license_id=%s max_devices=%s active_devices=%s",
        license_id,
        max_devices,
        active_devices,
    )
    raise ConflictError(
        "max_devices is below the number of activated devices",
        field="max_devices",
        context={"max_devices": max_devices, "active_devices": active_devices},
    )


async def delete_license(session: AsyncSession, license_id: str) -> bool:
    try:
        license = await get_license(session, license_id)
        if license is None:
            return False
        await session.execute(delete(LicenseDevice).where(LicenseDevice.license_id == license_id))
        await session.execute(delete(License).where(License.id == license_id))
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to delete license") from exc
    logger.info("license_deleted license_id=%s", license_id)
    return True


async def list_licenses(session: AsyncSession) -> list[LicenseSummary]:
    device_counts = (
        select(LicenseDevice.license_id, func.count(LicenseDevice.id).label("active_devices"))
        .group_by(LicenseDevice.license_id)
        .subquery()
    )
    try:
        result = await session.execute(
            select(License, device_counts.c.active_devices, User.username)
            .outerjoin(device_counts, device_counts.c.license_id == License.id)
            .outerjoin(User, User.id == License.owner_user_id)
            .order_by(License.created_at.desc(), License.id)
        )
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch licenses") from exc
    return [
        LicenseSummary(license=row[0], active_devices=int(row[1] or 0), owner_username=row[2])
        for row in result.all()
    ]


async def _validate_references(
    session: AsyncSession,
    *,
    owner_user_id: str | None,
    company_id: str | None,
    app_id: str | None,
) -> None:
    # Fail with a 404-style error instead of a bare FK violation.
    if owner_user_id and await session.get(User, owner_user_id) is None:
        raise NotFoundError("Owner user not found", resource="user", identity=owner_user_id)
    if company_id and await session.get(Company, company_id) is None:
        raise NotFoundError("Company not found", resource="company", identity=company_id)
    if not is_wildcard_scope(app_id) and await session.get(Application, app_id) is None:
        raise NotFoundError("Application not found", resource="application", identity=app_id)
