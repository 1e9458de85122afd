from __future__ import annotations

import bcrypt

from timbersync.core.config import get_settings


def hash_password(password: str) -> str:
    # bcrypt embeds the salt and cost in the returned hash.
    rounds = get_settings().password_hash_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hashes never authenticate.
        return False
