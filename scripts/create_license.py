from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import sys

from timbersync.core.config import APP_SCOPE_ANY
from timbersync.persistence.db import SessionLocal
from timbersync.services.audit import record_event
from timbersync.services.licensing.registry import LicenseSpec, create_license


def _parse_expiry(value: str) -> datetime:
    # Accept a bare date or a full ISO timestamp; naive values are taken as UTC.
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a device license for a company")
    parser.add_argument("--company", default=None, help="Company id the license belongs to")
    parser.add_argument("--owner", default=None, help="Owner user id")
    parser.add_argument("--app", default=APP_SCOPE_ANY, help="Application scope ('*' for any)")
    parser.add_argument("--max-devices", type=int, default=None, help="Device seat limit")
    parser.add_argument("--grace-days", type=int, default=None, help="Sync grace period in days")
    parser.add_argument("--expires", type=_parse_expiry, default=None, help="Expiry date (ISO 8601)")
    parser.add_argument("--notes", default=None, help="Free-form notes")
    return parser


async def _create_license(args: argparse.Namespace) -> int:
    spec = LicenseSpec(
        owner_user_id=args.owner,
        company_id=args.company,
        app_id=args.app,
        max_devices=args.max_devices,
        grace_period_days=args.grace_days,
        expires_at=args.expires,
        notes=args.notes,
    )
    async with SessionLocal() as session:
        license = await create_license(session, spec)

    await record_event(
        event_type="license.created",
        outcome="success",
        actor_type="system",
        actor_id="create_license",
        company_id=license.company_id,
        resource_type="license",
        resource_id=license.id,
        metadata={"app_id": license.app_id, "max_devices": license.max_devices},
    )
    print("License created:")
    print(f"  license_id: {license.id}")
    print(f"  license_key: {license.license_key}")
    print(f"  max_devices: {license.max_devices}")
    print(f"  expires_at: {license.expires_at.isoformat() if license.expires_at else 'never'}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_license(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_license failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
