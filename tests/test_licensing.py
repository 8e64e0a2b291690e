# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for the licensing engine.

Covers:
- Activation (new binding, idempotent re-activation, seat limit)
- Rejections (unknown key, wrong extension, expired, revoked)
- Deactivation idempotence
- Check status transitions INVALID / INACTIVE / VALID
- Seat accounting under concurrent activation
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from update_relay.cache import Fingerprint, ResponseCache
from update_relay.errors import (
    InvalidRequest,
    LicenseExpired,
    LicenseNotFound,
    SeatLimitExceeded,
)
from update_relay.licensing import LicensingEngine
from update_relay.models import CheckStatus, LicenseRecord, LicenseStatus

GATED_SLUG = "service-box"
VALID_KEY = "SB-0001-AAAA-BBBB"
SINGLE_SEAT_KEY = "SB-0003-EEEE-FFFF"
EXPIRED_KEY = "SB-0004-GGGG-HHHH"
REVOKED_KEY = "SB-0002-CCCC-DDDD"

SITE_A = "https://shop-a.example"
SITE_B = "https://shop-b.example"
SITE_C = "https://shop-c.example"


@pytest.fixture
def engine(license_store, cache):
    return LicensingEngine(license_store, cache=cache)


class TestActivate:
    """Tests for binding a site to a license."""

    @pytest.mark.critical
    def test_first_activation_binds_site(self, engine, license_store):
        result = engine.activate(GATED_SLUG, VALID_KEY, SITE_A)

        assert result.already_bound is False
        assert result.seats_used == 1
        assert result.seat_limit == 2
        assert license_store.is_bound(VALID_KEY, SITE_A)
        assert result.to_dict()["message"] == "License activated successfully."

    def test_reactivation_is_idempotent(self, engine, license_store):
        """Activating the same site twice consumes one seat."""
        engine.activate(GATED_SLUG, SINGLE_SEAT_KEY, SITE_A)
        again = engine.activate(GATED_SLUG, SINGLE_SEAT_KEY, SITE_A)

        assert again.already_bound is True
        assert again.seats_used == 1
        assert license_store.get_license(SINGLE_SEAT_KEY).bound_sites == {SITE_A}
        assert again.to_dict()["message"] == "License already active for this site."

    def test_trailing_slash_binds_same_seat(self, engine):
        engine.activate(GATED_SLUG, SINGLE_SEAT_KEY, SITE_A + "/")
        result = engine.activate(GATED_SLUG, SINGLE_SEAT_KEY, f"  {SITE_A}  ")

        assert result.already_bound is True

    @pytest.mark.critical
    def test_seat_limit_enforced(self, engine, license_store):
        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)
        engine.activate(GATED_SLUG, VALID_KEY, SITE_B)

        with pytest.raises(SeatLimitExceeded) as exc_info:
            engine.activate(GATED_SLUG, VALID_KEY, SITE_C)

        assert exc_info.value.seat_limit == 2
        assert exc_info.value.status == 403
        assert license_store.get_license(VALID_KEY).bound_sites == {SITE_A, SITE_B}

    def test_released_seat_can_be_reused(self, engine):
        engine.activate(GATED_SLUG, SINGLE_SEAT_KEY, SITE_A)
        engine.deactivate(GATED_SLUG, SINGLE_SEAT_KEY, SITE_A)

        result = engine.activate(GATED_SLUG, SINGLE_SEAT_KEY, SITE_B)

        assert result.already_bound is False

    def test_unknown_key_rejected(self, engine):
        with pytest.raises(LicenseNotFound) as exc_info:
            engine.activate(GATED_SLUG, "NO-SUCH-KEY", SITE_A)

        assert exc_info.value.message == "Invalid license key."
        assert exc_info.value.status == 404

    def test_key_for_other_extension_rejected(self, engine):
        with pytest.raises(LicenseNotFound):
            engine.activate("icon-list", VALID_KEY, SITE_A)

    def test_expired_license_rejected(self, engine, license_store):
        with pytest.raises(LicenseExpired) as exc_info:
            engine.activate(GATED_SLUG, EXPIRED_KEY, SITE_A)

        assert exc_info.value.license_status == "expired"
        assert not license_store.is_bound(EXPIRED_KEY, SITE_A)

    def test_revoked_license_rejected(self, engine):
        with pytest.raises(LicenseExpired) as exc_info:
            engine.activate(GATED_SLUG, REVOKED_KEY, SITE_A)

        assert exc_info.value.license_status == "revoked"

    def test_license_lapses_when_time_passes(self, engine):
        engine._advance_time(timedelta(days=400).total_seconds())

        with pytest.raises(LicenseExpired):
            engine.activate(GATED_SLUG, VALID_KEY, SITE_A)

    def test_blank_site_rejected(self, engine):
        with pytest.raises(InvalidRequest):
            engine.activate(GATED_SLUG, VALID_KEY, "   ")


class TestDeactivate:
    """Tests for releasing a site's seat."""

    def test_deactivate_removes_binding(self, engine, license_store):
        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)

        assert engine.deactivate(GATED_SLUG, VALID_KEY, SITE_A) is True
        assert not license_store.is_bound(VALID_KEY, SITE_A)

    def test_deactivate_unbound_site_is_noop(self, engine):
        assert engine.deactivate(GATED_SLUG, VALID_KEY, SITE_A) is False

    def test_deactivate_unknown_key_is_noop(self, engine):
        assert engine.deactivate(GATED_SLUG, "NO-SUCH-KEY", SITE_A) is False

    def test_deactivate_leaves_other_sites_bound(self, engine, license_store):
        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)
        engine.activate(GATED_SLUG, VALID_KEY, SITE_B)

        engine.deactivate(GATED_SLUG, VALID_KEY, SITE_A)

        assert license_store.get_license(VALID_KEY).bound_sites == {SITE_B}


class TestCheck:
    """Tests for license status reporting."""

    @pytest.mark.critical
    def test_status_transitions(self, engine):
        """INACTIVE until activated, VALID while bound, INACTIVE after release."""
        assert engine.check(GATED_SLUG, VALID_KEY, SITE_A).status == CheckStatus.INACTIVE

        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)
        valid = engine.check(GATED_SLUG, VALID_KEY, SITE_A)
        assert valid.status == CheckStatus.VALID
        assert valid.expiry is not None
        assert "expiry" in valid.to_dict()

        engine.deactivate(GATED_SLUG, VALID_KEY, SITE_A)
        assert engine.check(GATED_SLUG, VALID_KEY, SITE_A).status == CheckStatus.INACTIVE

    def test_unknown_key_is_invalid(self, engine):
        result = engine.check(GATED_SLUG, "NO-SUCH-KEY", SITE_A)

        assert result.status == CheckStatus.INVALID
        assert result.message == "Invalid license key."
        assert "expiry" not in result.to_dict()

    def test_missing_key_is_invalid(self, engine):
        assert engine.check(GATED_SLUG, "", SITE_A).status == CheckStatus.INVALID

    def test_expired_is_invalid(self, engine):
        result = engine.check(GATED_SLUG, EXPIRED_KEY, SITE_A)

        assert result.status == CheckStatus.INVALID
        assert result.message == "License has expired."

    def test_revoked_is_invalid(self, engine):
        result = engine.check(GATED_SLUG, REVOKED_KEY, SITE_A)

        assert result.status == CheckStatus.INVALID
        assert result.message == "License has been revoked."

    def test_valid_for_one_site_only(self, engine):
        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)

        assert engine.check(GATED_SLUG, VALID_KEY, SITE_B).status == CheckStatus.INACTIVE

    def test_bound_license_becomes_invalid_after_expiry(self, engine):
        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)
        engine._advance_time(timedelta(days=400).total_seconds())

        assert engine.check(GATED_SLUG, VALID_KEY, SITE_A).status == CheckStatus.INVALID


class TestCacheInvalidation:
    """Binding changes drop cached responses for the same (extension, key)."""

    def test_activate_invalidates_matching_entries(self, engine, cache):
        mine = Fingerprint.of("updates/info", GATED_SLUG, VALID_KEY)
        other = Fingerprint.of("updates/info", GATED_SLUG, SINGLE_SEAT_KEY)
        cache.put(mine, {"cached": True})
        cache.put(other, {"cached": True})

        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)

        assert cache.get(mine) is None
        assert cache.get(other) == {"cached": True}

    def test_deactivate_invalidates_even_when_nothing_bound(self, engine, cache):
        fp = Fingerprint.of("updates/check", GATED_SLUG, VALID_KEY, version="1.0.0")
        cache.put(fp, {"cached": True})

        engine.deactivate(GATED_SLUG, VALID_KEY, SITE_A)

        assert cache.get(fp) is None

    def test_engine_without_cache(self, license_store):
        engine = LicensingEngine(license_store)

        result = engine.activate(GATED_SLUG, VALID_KEY, SITE_A)

        assert result.seats_used == 1


class TestConcurrentActivation:
    """Seat accounting under concurrent activations of the same key."""

    @pytest.mark.critical
    @pytest.mark.slow
    def test_exactly_one_winner_for_single_seat(self, license_store):
        engine = LicensingEngine(license_store, cache=ResponseCache())
        threads_count = 16
        barrier = threading.Barrier(threads_count)
        outcomes = []
        outcomes_lock = threading.Lock()

        def activate(n):
            barrier.wait()
            try:
                engine.activate(GATED_SLUG, SINGLE_SEAT_KEY, f"https://site-{n}.example")
                outcome = "ok"
            except SeatLimitExceeded:
                outcome = "full"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=activate, args=(n,)) for n in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("full") == threads_count - 1
        assert len(license_store.get_license(SINGLE_SEAT_KEY).bound_sites) == 1

    def test_lock_table_is_released(self, engine):
        engine.activate(GATED_SLUG, VALID_KEY, SITE_A)
        engine.check(GATED_SLUG, VALID_KEY, SITE_A)

        assert engine._locks == {}


class TestLicenseRecord:
    """Tests for LicenseRecord invariants."""

    def test_rejects_zero_seats(self):
        with pytest.raises(ValueError):
            LicenseRecord("K", GATED_SLUG, LicenseStatus.ACTIVE, datetime.now(timezone.utc), 0)

    def test_rejects_overbound_record(self):
        with pytest.raises(ValueError):
            LicenseRecord(
                "K",
                GATED_SLUG,
                LicenseStatus.ACTIVE,
                datetime.now(timezone.utc),
                seat_limit=1,
                bound_sites={SITE_A, SITE_B},
            )

    def test_naive_expiry_treated_as_utc(self):
        record = LicenseRecord("K", GATED_SLUG, LicenseStatus.ACTIVE, datetime(2030, 1, 1))

        assert record.expiry.tzinfo == timezone.utc

    def test_copy_isolates_bindings(self):
        record = LicenseRecord(
            "K", GATED_SLUG, LicenseStatus.ACTIVE, datetime(2030, 1, 1), seat_limit=2
        )
        clone = record.copy()
        clone.bound_sites.add(SITE_A)

        assert record.bound_sites == set()
