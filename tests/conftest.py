# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Root pytest configuration with shared fixtures and markers.

This file is automatically loaded by pytest and provides:
- Custom markers for test categories
- Shared fixtures: catalog, license store, cache and a wired service
"""

from datetime import datetime, timedelta, timezone

import pytest

from update_relay.cache import ResponseCache
from update_relay.config import ServiceConfig
from update_relay.models import ChangelogEntry, Extension, LicenseRecord, LicenseStatus
from update_relay.service import UpdateService
from update_relay.stores import InMemoryCatalog, InMemoryLicenseStore

GATED_SLUG = "service-box"
FREE_SLUG = "icon-list"
VALID_KEY = "SB-0001-AAAA-BBBB"
SINGLE_SEAT_KEY = "SB-0003-EEEE-FFFF"
EXPIRED_KEY = "SB-0004-GGGG-HHHH"
REVOKED_KEY = "SB-0002-CCCC-DDDD"
DOWNLOAD_BASE = "https://updates.example.com/downloads"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "critical: Mark test as critical priority",
    )
    config.addinivalue_line(
        "markers",
        "integration: Mark test as integration test (full service wiring)",
    )
    config.addinivalue_line(
        "markers",
        "slow: Mark test as slow-running (may be skipped in quick runs)",
    )


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def gated_extension() -> Extension:
    return Extension(
        slug=GATED_SLUG,
        name="Service Box",
        latest_version="2.0.0",
        requires="5.0",
        tested="6.4",
        requires_runtime="7.0",
        description="Create service boxes with icons and descriptions.",
        changelog=(
            ChangelogEntry("2.0.0", ("Added Hub integration", "Improved UI")),
            ChangelogEntry("1.9.0", ("Fixed icon alignment",)),
        ),
        banner_urls={
            "high": "https://cdn.example.com/service-box-1544x500.jpg",
            "low": "https://cdn.example.com/service-box-772x250.jpg",
        },
        is_gated=True,
    )


@pytest.fixture
def free_extension() -> Extension:
    return Extension(
        slug=FREE_SLUG,
        name="Icon List",
        latest_version="1.2.3",
        requires="5.0",
        tested="6.4",
        requires_runtime="7.4",
        author="Icon Works",
    )


@pytest.fixture
def catalog(gated_extension, free_extension) -> InMemoryCatalog:
    return InMemoryCatalog([gated_extension, free_extension])


@pytest.fixture
def license_store() -> InMemoryLicenseStore:
    future = datetime.now(timezone.utc) + timedelta(days=365)
    past = datetime.now(timezone.utc) - timedelta(days=1)
    return InMemoryLicenseStore(
        [
            LicenseRecord(VALID_KEY, GATED_SLUG, LicenseStatus.ACTIVE, future, seat_limit=2),
            LicenseRecord(SINGLE_SEAT_KEY, GATED_SLUG, LicenseStatus.ACTIVE, future, seat_limit=1),
            LicenseRecord(EXPIRED_KEY, GATED_SLUG, LicenseStatus.ACTIVE, past, seat_limit=1),
            LicenseRecord(REVOKED_KEY, GATED_SLUG, LicenseStatus.REVOKED, future, seat_limit=1),
        ]
    )


@pytest.fixture
def cache() -> ResponseCache:
    return ResponseCache(max_size=100, ttl_seconds=3600)


@pytest.fixture
def service_config() -> ServiceConfig:
    return ServiceConfig(
        rate_limit=1000,
        download_base_url=DOWNLOAD_BASE,
        author="Example Studio",
        author_profile="https://studio.example.com",
    )


@pytest.fixture
def service(catalog, license_store, cache, service_config) -> UpdateService:
    """Service wired directly to in-memory stores (no timeout guard)."""
    return UpdateService(
        catalog=catalog,
        licenses=license_store,
        cache=cache,
        config=service_config,
    )


# ============================================================================
# Test Collection Hooks
# ============================================================================


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add automatic markers based on paths."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
