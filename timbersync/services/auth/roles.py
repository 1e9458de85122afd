from __future__ import annotations


ROLE_ADMIN = "admin"
ROLE_USER = "user"

ROLES = {ROLE_ADMIN, ROLE_USER}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for access checks.
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def is_admin(role: str | None) -> bool:
    return role == ROLE_ADMIN
