# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for data model helpers and error envelopes."""

from datetime import datetime, timezone

import pytest

from update_relay.errors import (
    DownloadFailed,
    ExtensionNotFound,
    InvalidRequest,
    LicenseExpired,
    LicenseNotFound,
    LicenseRequired,
    OperationNotFound,
    RateLimitExceeded,
    SeatLimitExceeded,
    ServiceError,
    StoreUnavailable,
)
from update_relay.models import (
    CheckStatus,
    Extension,
    LicenseCheck,
    UpdateCheck,
    mask_key,
    normalize_site_url,
)


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("https://a.example/", "https://a.example"),
            ("  https://a.example  ", "https://a.example"),
            ("https://a.example/shop/", "https://a.example/shop"),
            ("http://a.example", "http://a.example"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize_site_url(self, raw, expected):
        assert normalize_site_url(raw) == expected

    def test_mask_key_hides_middle(self):
        masked = mask_key("SB-0001-AAAA-BBBB")

        assert masked.startswith("SB-0")
        assert masked.endswith("BBBB")
        assert "0001-AAAA" not in masked

    def test_mask_short_key(self):
        assert mask_key("SHORT") == "*****"
        assert mask_key("") == ""


class TestExtensionFromDict:
    def test_changelog_mapping_form(self):
        extension = Extension.from_dict(
            "icon-list",
            {"latest_version": "1.2.3", "changelog": {"1.2.3": ["Fix A", "Fix B"]}},
        )

        assert extension.changelog[0].version == "1.2.3"
        assert extension.changelog[0].notes == ("Fix A", "Fix B")

    def test_defaults(self):
        extension = Extension.from_dict("bare", {"latest_version": 1.0})

        assert extension.latest_version == "1.0"
        assert extension.changelog == ()
        assert extension.banner_urls == {}
        assert extension.is_gated is False


class TestResultPayloads:
    def test_update_check_available(self):
        payload = UpdateCheck(
            available=True,
            slug="service-box",
            new_version="2.0.0",
            package_url="https://updates.example.com/downloads/service-box.zip",
            tested="6.4",
            requires="5.0",
            requires_runtime="7.0",
        ).to_dict()

        assert payload["available"] is True
        assert payload["new_version"] == "2.0.0"
        assert set(payload) == {
            "available",
            "slug",
            "new_version",
            "package_url",
            "tested",
            "requires",
            "requires_runtime",
        }

    def test_check_expiry_only_when_valid(self):
        expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)

        assert "expiry" not in LicenseCheck(CheckStatus.INACTIVE, "x", expiry).to_dict()
        assert LicenseCheck(CheckStatus.VALID, "x", expiry).to_dict()["expiry"] == (
            "2030-01-01T00:00:00+00:00"
        )


class TestErrors:
    """Every error kind maps to a stable code and status."""

    @pytest.mark.parametrize(
        "error,kind,status",
        [
            (RateLimitExceeded(12.2, 60, 60.0), "rate_limit_exceeded", 429),
            (ExtensionNotFound("x"), "extension_not_found", 404),
            (LicenseNotFound("x"), "license_not_found", 404),
            (OperationNotFound("x/y"), "operation_not_found", 404),
            (LicenseExpired("x", "revoked"), "license_expired", 403),
            (SeatLimitExceeded("x", 2), "seat_limit_exceeded", 403),
            (LicenseRequired("x"), "license_required", 403),
            (InvalidRequest("bad", field="slug"), "invalid_request", 400),
            (DownloadFailed("x"), "download_failed", 500),
            (StoreUnavailable("catalog", "get_extension"), "store_unavailable", 503),
        ],
    )
    def test_kind_and_status(self, error, kind, status):
        assert isinstance(error, ServiceError)
        assert error.kind == kind
        assert error.status == status

        envelope = error.to_dict()
        assert envelope["code"] == kind
        assert envelope["data"]["status"] == status
        assert envelope["message"]

    def test_only_store_unavailable_is_retryable(self):
        assert StoreUnavailable("catalog", "get_extension").retryable is True
        assert LicenseRequired("x").retryable is False

    def test_retry_after_rounds_up(self):
        error = RateLimitExceeded(12.2, 60, 60.0)

        assert error.retry_after_seconds == 13
        assert error.to_dict()["data"]["retry_after"] == 13
