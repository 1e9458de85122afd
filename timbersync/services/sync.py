from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from typing import Any, Union
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.config import get_settings
from timbersync.core.errors import InfrastructureError, NotFoundError, ValidationFailure
from timbersync.core.timeutil import as_utc, utc_now
from timbersync.domain.models import (
    InventoryMeasurement,
    InventorySession,
    License,
    LicenseDevice,
    SyncLog,
)
from timbersync.persistence.db import SessionLocal
from timbersync.persistence.guards import company_predicate
from timbersync.services.licensing.registry import is_usable_for_sync, sync_deadline


logger = logging.getLogger(__name__)

REASON_NOT_ACTIVATED = "device not activated"
REASON_LICENSE_INACTIVE = "license inactive"
REASON_NO_COMPANY = "no company"
REASON_EXPIRED = "expired"

OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"
OUTCOME_DENIED = "denied"
OUTCOME_FAILURE = "failure"


@dataclass(frozen=True)
class FieldMeasurement:
    species: str
    diameter_cm: float
    height_m: float | None = None
    volume_m3: float | None = None
    quality: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    measured_at: datetime | None = None
    extra: dict[str, Any] | None = None


@dataclass(frozen=True)
class FieldSession:
    external_session_key: str
    inventory_date: date
    name: str | None = None
    location: str | None = None
    operator_name: str | None = None
    notes: str | None = None
    measurements: list[FieldMeasurement] = field(default_factory=list)


@dataclass(frozen=True)
class SyncAuthorized:
    company_id: str
    license_id: str
    allowed: bool = True


@dataclass(frozen=True)
class SyncDenied:
    reason: str
    context: dict[str, Any] = field(default_factory=dict)
    license_id: str | None = None
    company_id: str | None = None
    allowed: bool = False


SyncDecision = Union[SyncAuthorized, SyncDenied]


@dataclass
class SyncResult:
    outcome: str
    sessions_received: int = 0
    sessions_created: int = 0
    sessions_updated: int = 0
    sessions_failed: int = 0
    measurements_written: int = 0
    company_id: str | None = None
    reason: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    failed_keys: list[str] = field(default_factory=list)


async def authorize_sync(
    session: AsyncSession,
    device_id: str,
    *,
    now: datetime | None = None,
) -> SyncDecision:
    """Resolve a device to its license and apply the grace-aware expiry rule.

    The device's prior activation is its only credential. When a device is
    registered on more than one license the most recently seen activation
    wins. The resolved ``company_id`` is the tenant every synced row is
    stamped with.
    """
    moment = now or utc_now()
    try:
        result = await session.execute(
            select(LicenseDevice.id, License)
            .join(License, License.id == LicenseDevice.license_id)
            .where(LicenseDevice.device_id == device_id)
            .order_by(LicenseDevice.last_seen.desc(), LicenseDevice.activated_at.desc())
            .limit(1)
        )
        row = result.first()
    except SQLAlchemyError as exc:
        logger.error("sync_authorization_failed device_id=%s", device_id, exc_info=exc)
        raise InfrastructureError("Sync authorization failed") from exc

    if row is None:
        return SyncDenied(REASON_NOT_ACTIVATED)
    device_row_id, license = row
    if not license.is_active:
        return SyncDenied(REASON_LICENSE_INACTIVE, license_id=license.id)
    if not license.company_id:
        return SyncDenied(REASON_NO_COMPANY, license_id=license.id)
    if not is_usable_for_sync(license, moment):
        return SyncDenied(
            REASON_EXPIRED,
            {
                "expires_at": as_utc(license.expires_at).isoformat(),
                "grace_deadline": sync_deadline(license).isoformat(),
            },
            license_id=license.id,
            company_id=license.company_id,
        )

    company_id = license.company_id
    license_id = license.id
    try:
        await session.execute(
            update(LicenseDevice).where(LicenseDevice.id == device_row_id).values(last_seen=moment)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Sync authorization failed") from exc
    return SyncAuthorized(company_id=company_id, license_id=license_id)


async def sync_field_inventory(
    session: AsyncSession,
    device_id: str,
    sessions: list[FieldSession],
    *,
    now: datetime | None = None,
) -> SyncResult:
    """Upsert a device's inventory sessions, replacing each session's measurements.

    Every session commits on its own; a failing session is rolled back and
    counted without affecting the rest of the batch. Each call appends one
    sync log row regardless of outcome.
    """
    settings = get_settings()
    moment = now or utc_now()
    received = len(sessions)
    if received > settings.sync_max_sessions:
        await _append_sync_log(
            device_id=device_id,
            occurred_at=moment,
            result=SyncResult(outcome=OUTCOME_FAILURE, sessions_received=received, reason="too many sessions"),
            license_id=None,
        )
        logger.info("sync_rejected device_id=%s sessions=%s limit=%s", device_id, received, settings.sync_max_sessions)
        raise ValidationFailure(f"At most {settings.sync_max_sessions} sessions may be synced at once")
    try:
        decision = await authorize_sync(session, device_id, now=moment)
    except InfrastructureError:
        await _append_sync_log(
            device_id=device_id,
            occurred_at=moment,
            result=SyncResult(outcome=OUTCOME_FAILURE, sessions_received=received, reason="authorization failed"),
            license_id=None,
        )
        raise

    if isinstance(decision, SyncDenied):
        result = SyncResult(
            outcome=OUTCOME_DENIED,
            sessions_received=received,
            company_id=decision.company_id,
            reason=decision.reason,
            context=decision.context,
        )
        logger.info("field_sync_denied device_id=%s reason=%s", device_id, decision.reason)
        await _append_sync_log(
            device_id=device_id,
            occurred_at=moment,
            result=result,
            license_id=decision.license_id,
        )
        return result

    result = SyncResult(outcome=OUTCOME_SUCCESS, sessions_received=received, company_id=decision.company_id)
    for payload in sessions:
        try:
            created, written = await _upsert_session(
                session,
                payload,
                device_id=device_id,
                company_id=decision.company_id,
                license_id=decision.license_id,
                synced_at=moment,
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            result.sessions_failed += 1
            result.failed_keys.append(payload.external_session_key)
            logger.warning(
                "field_sync_session_failed device_id=%s session_key=%s",
                device_id,
                payload.external_session_key,
                exc_info=exc,
            )
            continue
        if created:
            result.sessions_created += 1
        else:
            result.sessions_updated += 1
        result.measurements_written += written

    if result.sessions_failed:
        result.outcome = OUTCOME_FAILURE if result.sessions_failed == received else OUTCOME_PARTIAL
    logger.info(
        "field_sync_completed device_id=%s company_id=%s outcome=%s created=%s updated=%s failed=%s",
        device_id,
        decision.company_id,
        result.outcome,
        result.sessions_created,
        result.sessions_updated,
        result.sessions_failed,
    )
    await _append_sync_log(
        device_id=device_id,
        occurred_at=moment,
        result=result,
        license_id=decision.license_id,
    )
    return result


async def _upsert_session(
    session: AsyncSession,
    payload: FieldSession,
    *,
    device_id: str,
    company_id: str,
    license_id: str,
    synced_at: datetime,
) -> tuple[bool, int]:
    # Replace, not merge: the device's latest copy of a session supersedes the stored one.
    result = await session.execute(
        select(InventorySession).where(
            InventorySession.device_id == device_id,
            InventorySession.external_session_key == payload.external_session_key,
            InventorySession.inventory_date == payload.inventory_date,
        )
    )
    row = result.scalar_one_or_none()
    created = row is None
    if row is None:
        row = InventorySession(
            id=uuid4().hex,
            device_id=device_id,
            external_session_key=payload.external_session_key,
            inventory_date=payload.inventory_date,
        )
        session.add(row)
    else:
        await session.execute(
            delete(InventoryMeasurement).where(InventoryMeasurement.session_id == row.id)
        )

    volumes = [item.volume_m3 for item in payload.measurements if item.volume_m3 is not None]
    row.company_id = company_id
    row.license_id = license_id
    row.name = payload.name
    row.location = payload.location
    row.operator_name = payload.operator_name
    row.notes = payload.notes
    row.tree_count = len(payload.measurements)
    row.total_volume_m3 = sum(volumes) if volumes else None
    row.synced_at = synced_at
    await session.flush()

    for position, item in enumerate(payload.measurements):
        session.add(
            InventoryMeasurement(
                session_id=row.id,
                company_id=company_id,
                device_id=device_id,
                position=position,
                species=item.species,
                diameter_cm=item.diameter_cm,
                height_m=item.height_m,
                volume_m3=item.volume_m3,
                quality=item.quality,
                latitude=item.latitude,
                longitude=item.longitude,
                measured_at=item.measured_at,
                extra_json=item.extra,
            )
        )
    await session.flush()
    return created, len(payload.measurements)


async def _append_sync_log(
    *,
    device_id: str,
    occurred_at: datetime,
    result: SyncResult,
    license_id: str | None,
) -> None:
    # Own session and transaction so the log survives rollbacks of the batch itself.
    entry = SyncLog(
        occurred_at=occurred_at,
        device_id=device_id,
        company_id=result.company_id,
        license_id=license_id,
        sessions_received=result.sessions_received,
        sessions_created=result.sessions_created,
        sessions_updated=result.sessions_updated,
        sessions_failed=result.sessions_failed,
        measurements_written=result.measurements_written,
        outcome=result.outcome,
        reason=result.reason,
    )
    async with SessionLocal() as log_session:
        try:
            log_session.add(entry)
            await log_session.commit()
        except SQLAlchemyError as exc:
            await log_session.rollback()
            logger.error("sync_log_write_failed device_id=%s outcome=%s", device_id, result.outcome, exc_info=exc)


async def list_sessions(
    session: AsyncSession,
    *,
    company_id: str | None,
    device_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[InventorySession]:
    # company_id=None is only passed for admins; everyone else reads their own partition.
    query = select(InventorySession)
    if company_id is not None:
        query = query.where(company_predicate(InventorySession, company_id))
    if device_id:
        query = query.where(InventorySession.device_id == device_id)
    if date_from:
        query = query.where(InventorySession.inventory_date >= date_from)
    if date_to:
        query = query.where(InventorySession.inventory_date <= date_to)
    query = query.order_by(InventorySession.inventory_date.desc(), InventorySession.id).limit(limit).offset(offset)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch inventory sessions") from exc
    return list(result.scalars().all())


async def get_session_with_measurements(
    session: AsyncSession,
    session_id: str,
    *,
    company_id: str | None,
) -> tuple[InventorySession, list[InventoryMeasurement]]:
    query = select(InventorySession).where(InventorySession.id == session_id)
    if company_id is not None:
        query = query.where(company_predicate(InventorySession, company_id))
    try:
        result = await session.execute(query)
        row = result.scalar_one_or_none()
        if row is None:
            # Other tenants' sessions are indistinguishable from missing ones.
            raise NotFoundError("Inventory session not found", resource="inventory_session", identity=session_id)
        measurements = await session.execute(
            select(InventoryMeasurement)
            .where(InventoryMeasurement.session_id == row.id)
            .order_by(InventoryMeasurement.position)
        )
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch inventory session") from exc
    return row, list(measurements.scalars().all())


async def list_sync_logs(
    session: AsyncSession,
    *,
    device_id: str | None = None,
    company_id: str | None = None,
    outcome: str | None = None,
    limit: int = 100,
) -> list[SyncLog]:
    query = select(SyncLog)
    if device_id:
        query = query.where(SyncLog.device_id == device_id)
    if company_id:
        query = query.where(SyncLog.company_id == company_id)
    if outcome:
        query = query.where(SyncLog.outcome == outcome)
    query = query.order_by(SyncLog.occurred_at.desc(), SyncLog.id.desc()).limit(limit)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch sync logs") from exc
    return list(result.scalars().all())
