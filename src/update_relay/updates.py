# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Update decision engine.

Answers "is there a newer release?", builds the plugin-info payload for an
"about this plugin" page, and hands out package URLs, gating downloads of
licensed extensions on a valid site binding.

Caching:
- check_update and get_plugin_info are read-only and deterministic for
  their inputs, so results are cached per (operation, slug, key[, version])
- get_download_url depends on live binding state and is never cached
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

from packaging.version import InvalidVersion, Version

from update_relay.cache import Fingerprint, ResponseCache
from update_relay.errors import (
    DownloadFailed,
    ExtensionNotFound,
    InvalidRequest,
    LicenseRequired,
)
from update_relay.licensing import LicensingEngine
from update_relay.models import CheckStatus, Extension, UpdateCheck, mask_key
from update_relay.protocols import CatalogLookup

logger = logging.getLogger(__name__)

OP_CHECK_UPDATE = "updates/check"
OP_PLUGIN_INFO = "updates/info"

DEFAULT_DOWNLOAD_BASE_URL = "https://updates.example.com/downloads"


def parse_version(value: str, field: str = "version") -> Version:
    """Parse a version string for ordering.

    Raises:
        InvalidRequest: If the string is not a valid version.
    """
    try:
        return Version(str(value).strip())
    except InvalidVersion:
        raise InvalidRequest(f"Invalid version string: {value!r}", field=field)


def build_package_url(base_url: str, slug: str) -> str:
    """Stable download location for an extension.

    A pure function of the slug; license keys never appear in the URL.

    Raises:
        DownloadFailed: If no URL can be formed.
    """
    if not base_url or not slug:
        raise DownloadFailed(slug, "no download base URL or slug")
    return f"{base_url.rstrip('/')}/{quote(slug, safe='')}.zip"


def render_changelog(extension: Extension) -> str:
    """Render release notes as text, newest release first.

    Example:
        = 2.0.0 =
        * Added Hub integration
        * Improved UI
    """
    blocks = []
    for entry in extension.changelog:
        lines = [f"= {entry.version} ="]
        lines.extend(f"* {note}" for note in entry.notes)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class UpdateDecisionEngine:
    """Update checks, plugin info and gated download URLs.

    Attributes:
        catalog: Extension metadata source.
        licensing: Licensing engine consulted for gated downloads.
        cache: Optional response cache for read-only operations.
        download_base_url: Prefix of every package URL.
        author: Default author shown on info pages.
        author_profile: Default author URL shown on info pages.
    """

    def __init__(
        self,
        catalog: CatalogLookup,
        licensing: LicensingEngine,
        cache: Optional[ResponseCache] = None,
        download_base_url: str = DEFAULT_DOWNLOAD_BASE_URL,
        author: str = "",
        author_profile: str = "",
    ):
        self.catalog = catalog
        self.licensing = licensing
        self.cache = cache
        self.download_base_url = download_base_url
        self.author = author
        self.author_profile = author_profile

    def _require_extension(self, slug: str) -> Extension:
        extension = self.catalog.get_extension(slug)
        if extension is None:
            logger.info("extension_not_found", extra={"slug": slug})
            raise ExtensionNotFound(slug)
        return extension

    def package_url(self, slug: str) -> str:
        return build_package_url(self.download_base_url, slug)

    def check_update(
        self,
        slug: str,
        current_version: str,
        license_key: Optional[str] = None,
    ) -> UpdateCheck:
        """
        Decide whether a newer release exists.

        An update is available when current_version < latest_version
        (PEP 440 ordering, which agrees with semantic versioning for
        MAJOR.MINOR.PATCH strings).

        Raises:
            ExtensionNotFound: If the slug is unknown.
            InvalidRequest: If current_version cannot be parsed.
        """
        installed = parse_version(current_version)
        fingerprint = Fingerprint.of(
            OP_CHECK_UPDATE, slug, license_key, version=str(current_version).strip()
        )

        if self.cache is not None:
            cached = self.cache.get(fingerprint)
            if cached is not None:
                return cached

        extension = self._require_extension(slug)
        latest = parse_version(extension.latest_version, field="latest_version")

        if installed < latest:
            result = UpdateCheck(
                available=True,
                slug=slug,
                new_version=extension.latest_version,
                package_url=self.package_url(slug),
                tested=extension.tested,
                requires=extension.requires,
                requires_runtime=extension.requires_runtime,
            )
        else:
            result = UpdateCheck(available=False, slug=slug)

        if self.cache is not None:
            self.cache.put(fingerprint, result)
        return result

    def get_plugin_info(self, slug: str, license_key: Optional[str] = None) -> dict[str, Any]:
        """
        Build the metadata payload for an extension's info page.

        Raises:
            ExtensionNotFound: If the slug is unknown.
        """
        fingerprint = Fingerprint.of(OP_PLUGIN_INFO, slug, license_key)

        if self.cache is not None:
            cached = self.cache.get(fingerprint)
            if cached is not None:
                return cached

        extension = self._require_extension(slug)
        info = {
            "name": extension.name,
            "slug": extension.slug,
            "version": extension.latest_version,
            "author": extension.author or self.author,
            "author_profile": extension.author_profile or self.author_profile,
            "requires": extension.requires,
            "tested": extension.tested,
            "requires_runtime": extension.requires_runtime,
            "sections": {
                "description": extension.description,
                "changelog": render_changelog(extension),
            },
            "banners": dict(extension.banner_urls),
            "download_link": self.package_url(slug),
        }

        if self.cache is not None:
            self.cache.put(fingerprint, info)
        return info

    def get_download_url(
        self,
        extension_slug: str,
        license_key: Optional[str],
        site_url: str,
    ) -> str:
        """
        Resolve the package URL, enforcing the license gate.

        Raises:
            LicenseRequired: If the extension is gated and the license is not
                valid and bound to site_url.
            DownloadFailed: If the extension is unknown or no URL can be formed.
        """
        extension = self.catalog.get_extension(extension_slug)
        if extension is None:
            raise DownloadFailed(extension_slug, "unknown extension")

        if extension.is_gated:
            check = self.licensing.check(extension_slug, license_key or "", site_url)
            if check.status != CheckStatus.VALID:
                logger.info(
                    "download_denied",
                    extra={
                        "extension": extension_slug,
                        "key": mask_key(license_key or ""),
                        "site": site_url,
                        "license_status": check.status.value,
                    },
                )
                raise LicenseRequired(extension_slug)

        return self.package_url(extension_slug)
