from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from timbersync.core.config import get_settings
from timbersync.persistence.db import SessionLocal
from timbersync.services.audit import record_event
from timbersync.services.auth.roles import ROLE_ADMIN
from timbersync.services.users import create_user


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Create a platform admin account")
    parser.add_argument("--username", default=settings.bootstrap_admin_username, help="Admin username")
    parser.add_argument(
        "--password",
        default=settings.bootstrap_admin_password,
        help="Admin password (prompted when omitted)",
    )
    parser.add_argument("--full-name", default=None, help="Optional display name")
    return parser


async def _create_admin(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Admin password: ")
    async with SessionLocal() as session:
        user, _grants = await create_user(
            session,
            username=args.username,
            password=password,
            full_name=args.full_name,
            role=ROLE_ADMIN,
        )

    await record_event(
        event_type="user.created",
        outcome="success",
        actor_type="system",
        actor_id="create_admin",
        resource_type="user",
        resource_id=user.id,
        metadata={"username": user.username, "role": ROLE_ADMIN},
    )
    print("Admin created:")
    print(f"  user_id: {user.id}")
    print(f"  username: {user.username}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_admin(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
