from __future__ import annotations

from datetime import datetime, timedelta, timezone

from timbersync.domain.models import License
from timbersync.services.licensing.activation import (
    REASON_APP_SCOPE_REQUIRED,
    REASON_WRONG_APPLICATION,
    check_app_scope,
)
from timbersync.services.licensing.registry import is_usable, is_usable_for_sync, sync_deadline


EXPIRY = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _license(**overrides) -> License:
    values = {
        "id": "lic-1",
        "license_key": "TBR-AAAA-BBBB-CCCC-DDDD",
        "app_id": "*",
        "max_devices": 2,
        "grace_period_days": 7,
        "expires_at": EXPIRY,
        "is_active": True,
    }
    values.update(overrides)
    return License(**values)


def test_hard_check_stops_at_expiry() -> None:
    license = _license()
    assert is_usable(license, EXPIRY - timedelta(seconds=1))
    assert not is_usable(license, EXPIRY)
    assert not is_usable(license, EXPIRY + timedelta(days=1))


def test_sync_check_extends_through_grace_window() -> None:
    license = _license()
    deadline = EXPIRY + timedelta(days=7)
    assert sync_deadline(license) == deadline
    assert is_usable_for_sync(license, EXPIRY + timedelta(seconds=1))
    assert is_usable_for_sync(license, deadline)
    assert not is_usable_for_sync(license, deadline + timedelta(seconds=1))


def test_license_without_expiry_never_expires() -> None:
    license = _license(expires_at=None)
    far_future = datetime(2100, 1, 1, tzinfo=timezone.utc)
    assert sync_deadline(license) is None
    assert is_usable(license, far_future)
    assert is_usable_for_sync(license, far_future)


def test_inactive_license_fails_both_checks() -> None:
    license = _license(is_active=False, expires_at=None)
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert not is_usable(license, now)
    assert not is_usable_for_sync(license, now)


def test_naive_expiry_is_treated_as_utc() -> None:
    license = _license(expires_at=EXPIRY.replace(tzinfo=None))
    assert is_usable(license, EXPIRY - timedelta(hours=1))
    assert sync_deadline(license) == EXPIRY + timedelta(days=7)


def test_wildcard_license_accepts_any_app() -> None:
    license = _license(app_id="*")
    assert check_app_scope(license, None) is None
    assert check_app_scope(license, "*") is None
    assert check_app_scope(license, "cruise-app") is None


def test_concrete_license_requires_matching_app() -> None:
    license = _license(app_id="cruise-app")
    assert check_app_scope(license, "cruise-app") is None

    mismatch = check_app_scope(license, "other-app")
    assert mismatch is not None
    assert mismatch.reason == REASON_WRONG_APPLICATION
    assert mismatch.context == {"valid_for": "cruise-app"}

    for requested in (None, "", "*"):
        omitted = check_app_scope(license, requested)
        assert omitted is not None
        assert omitted.reason == REASON_APP_SCOPE_REQUIRED
