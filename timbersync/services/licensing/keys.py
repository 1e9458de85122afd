from __future__ import annotations

import re
import secrets


LICENSE_KEY_PREFIX = "TBR"
# 32 symbols; I, O, 0 and 1 are excluded because they are easily confused when typed.
LICENSE_KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
LICENSE_KEY_BLOCKS = 4
LICENSE_KEY_BLOCK_LENGTH = 4

_KEY_PATTERN = re.compile(
    rf"^{LICENSE_KEY_PREFIX}(-[{LICENSE_KEY_ALPHABET}]{{{LICENSE_KEY_BLOCK_LENGTH}}}){{{LICENSE_KEY_BLOCKS}}}$"
)


def generate_license_key() -> str:
    # Draw from the CSPRNG so keys cannot be predicted from previously issued ones.
    blocks = [
        "".join(secrets.choice(LICENSE_KEY_ALPHABET) for _ in range(LICENSE_KEY_BLOCK_LENGTH))
        for _ in range(LICENSE_KEY_BLOCKS)
    ]
    return "-".join([LICENSE_KEY_PREFIX, *blocks])


def normalize_license_key(raw_key: str) -> str:
    # Devices often submit keys typed by hand; ignore surrounding whitespace and case.
    return raw_key.strip().upper()


def is_well_formed(license_key: str) -> bool:
    return bool(_KEY_PATTERN.match(license_key))
