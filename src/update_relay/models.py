# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Data model for Update Relay.

Entities:
- Extension: catalog entry, immutable from the service's perspective
- LicenseRecord: license key with its site bindings
- LicenseCheck / ActivationResult / UpdateCheck: operation results

Related: update_relay.protocols for the stores owning these records.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Optional


class LicenseStatus(str, Enum):
    """Lifecycle status of a license record."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class CheckStatus(str, Enum):
    """Outcome of a license check for one site."""

    INVALID = "invalid"
    INACTIVE = "inactive"
    VALID = "valid"


def normalize_site_url(site_url: str) -> str:
    """Canonical form used for binding comparisons.

    Matching stays exact apart from surrounding whitespace and a
    trailing slash, so ``https://a.test/`` and ``https://a.test`` bind
    the same seat while ``http://a.test`` does not.
    """
    return (site_url or "").strip().rstrip("/")


def mask_key(key: str) -> str:
    """Mask a license key for log output."""
    if not key:
        return ""
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}…{key[-4:]}"


def parse_expiry(value: Any) -> datetime:
    """Parse an expiry value into an aware UTC datetime.

    A bare date means the license is valid through the end of that day.

    Raises:
        ValueError: If the value cannot be interpreted.
    """
    if isinstance(value, datetime):
        expiry = value
    elif isinstance(value, date):
        expiry = datetime.combine(value, time.max)
    elif isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            expiry = datetime.combine(date.fromisoformat(text), time.max)
        else:
            expiry = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported expiry value: {value!r}")

    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


@dataclass(frozen=True)
class ChangelogEntry:
    """Release notes for one version.

    Attributes:
        version: Version the notes apply to.
        notes: Individual change lines.
    """

    version: str
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class Extension:
    """A distributable extension as described by the catalog.

    Attributes:
        slug: Unique identifier.
        name: Display name.
        latest_version: Newest released version.
        requires: Minimum host version.
        tested: Highest host version the release was verified against.
        requires_runtime: Minimum runtime version.
        description: Long description for the info page.
        changelog: Release notes, newest first.
        banner_urls: Banner image URLs keyed by resolution tier ("low", "high").
        is_gated: Whether downloads require a valid, site-bound license.
        author: Optional per-extension author override.
        author_profile: Optional per-extension author URL override.
    """

    slug: str
    name: str
    latest_version: str
    requires: str = ""
    tested: str = ""
    requires_runtime: str = ""
    description: str = ""
    changelog: tuple[ChangelogEntry, ...] = ()
    banner_urls: dict[str, str] = field(default_factory=dict)
    is_gated: bool = False
    author: Optional[str] = None
    author_profile: Optional[str] = None

    @classmethod
    def from_dict(cls, slug: str, data: dict[str, Any]) -> "Extension":
        """Build an Extension from a catalog mapping.

        ``changelog`` may be a list of ``{version, notes}`` mappings or a
        mapping of version to notes; notes may be a string or a list. A
        single string in the rendered ``= version =`` / ``* note`` form is
        also accepted.

        Raises:
            KeyError: If ``latest_version`` is missing.
            ValueError: If ``changelog`` is malformed.
        """
        return cls(
            slug=slug,
            name=str(data.get("name") or slug),
            latest_version=str(data["latest_version"]),
            requires=str(data.get("requires", "")),
            tested=str(data.get("tested", "")),
            requires_runtime=str(data.get("requires_runtime", data.get("requires_php", ""))),
            description=str(data.get("description", "")),
            changelog=_parse_changelog(data.get("changelog")),
            banner_urls={str(k): str(v) for k, v in (data.get("banners") or {}).items()},
            is_gated=bool(data.get("is_gated", data.get("pro", False))),
            author=data.get("author"),
            author_profile=data.get("author_profile"),
        )


_CHANGELOG_HEADER = re.compile(r"^=\s*(?P<version>[^=]+?)\s*=$")


def _parse_changelog_text(text: str) -> tuple[ChangelogEntry, ...]:
    """Parse ``= 2.0.0 =`` headers each followed by ``* note`` lines.

    Literal ``\\n`` sequences count as line breaks.
    """
    entries: list[ChangelogEntry] = []
    version: Optional[str] = None
    notes: list[str] = []

    for line in text.replace("\\n", "\n").splitlines():
        line = line.strip()
        if not line:
            continue
        header = _CHANGELOG_HEADER.match(line)
        if header:
            if version is not None:
                entries.append(ChangelogEntry(version, tuple(notes)))
            version, notes = header.group("version"), []
        elif version is None:
            raise ValueError(f"changelog: note {line!r} appears before any '= version =' header")
        else:
            notes.append(line[1:].strip() if line.startswith("*") else line)

    if version is not None:
        entries.append(ChangelogEntry(version, tuple(notes)))
    return tuple(entries)


def _parse_changelog(raw: Any) -> tuple[ChangelogEntry, ...]:
    if not raw:
        return ()

    if isinstance(raw, str):
        return _parse_changelog_text(raw)

    if isinstance(raw, dict):
        items = [{"version": k, "notes": v} for k, v in raw.items()]
    else:
        items = list(raw)

    entries = []
    for item in items:
        if not isinstance(item, dict) or "version" not in item:
            raise ValueError(f"changelog: expected a mapping with 'version', got {item!r}")
        notes = item.get("notes", ())
        if isinstance(notes, str):
            notes = [line for line in notes.splitlines() if line.strip()]
        entries.append(
            ChangelogEntry(version=str(item["version"]), notes=tuple(str(n) for n in notes))
        )
    return tuple(entries)


@dataclass
class LicenseRecord:
    """A license key and the sites currently bound to it.

    Invariant: ``len(bound_sites) <= seat_limit``.

    Attributes:
        key: Opaque secret, unique per record.
        extension_slug: Extension the license unlocks.
        status: ACTIVE, EXPIRED or REVOKED.
        expiry: Aware UTC timestamp after which the license lapses.
        seat_limit: Maximum number of concurrently bound sites (>= 1).
        bound_sites: Normalized site URLs holding a seat.
    """

    key: str
    extension_slug: str
    status: LicenseStatus
    expiry: datetime
    seat_limit: int = 1
    bound_sites: set[str] = field(default_factory=set)

    def __post_init__(self):
        if self.seat_limit < 1:
            raise ValueError(f"seat_limit must be >= 1, got {self.seat_limit}")
        if len(self.bound_sites) > self.seat_limit:
            raise ValueError(
                f"{len(self.bound_sites)} bound sites exceed seat_limit {self.seat_limit}"
            )
        if self.expiry.tzinfo is None:
            self.expiry = self.expiry.replace(tzinfo=timezone.utc)

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """True if the license is active and not past its expiry."""
        now = now or datetime.now(timezone.utc)
        return self.status == LicenseStatus.ACTIVE and self.expiry >= now

    def seats_available(self) -> int:
        return self.seat_limit - len(self.bound_sites)

    def copy(self) -> "LicenseRecord":
        """Return a copy whose binding set can be mutated independently."""
        return LicenseRecord(
            key=self.key,
            extension_slug=self.extension_slug,
            status=self.status,
            expiry=self.expiry,
            seat_limit=self.seat_limit,
            bound_sites=set(self.bound_sites),
        )

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> "LicenseRecord":
        return cls(
            key=key,
            extension_slug=str(data["extension"]),
            status=LicenseStatus(data.get("status", LicenseStatus.ACTIVE.value)),
            expiry=parse_expiry(data["expiry"]),
            seat_limit=int(data.get("seat_limit", 1)),
            bound_sites={normalize_site_url(s) for s in data.get("bound_sites", [])},
        )


@dataclass(frozen=True)
class LicenseCheck:
    """Result of checking a license against one site."""

    status: CheckStatus
    message: str
    expiry: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value, "message": self.message}
        if self.status == CheckStatus.VALID and self.expiry is not None:
            result["expiry"] = self.expiry.isoformat()
        return result


@dataclass(frozen=True)
class ActivationResult:
    """Result of a successful activation.

    Attributes:
        expiry: License expiry.
        already_bound: True when the site held a seat before the call.
        seats_used: Bound sites after the call.
        seat_limit: License seat limit.
    """

    expiry: datetime
    already_bound: bool
    seats_used: int
    seat_limit: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": (
                "License already active for this site."
                if self.already_bound
                else "License activated successfully."
            ),
            "expiry": self.expiry.isoformat(),
        }


@dataclass(frozen=True)
class UpdateCheck:
    """Outcome of an update check."""

    available: bool
    slug: str
    new_version: Optional[str] = None
    package_url: Optional[str] = None
    tested: Optional[str] = None
    requires: Optional[str] = None
    requires_runtime: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if not self.available:
            return {"available": False, "slug": self.slug}
        return {
            "available": True,
            "slug": self.slug,
            "new_version": self.new_version,
            "package_url": self.package_url,
            "tested": self.tested,
            "requires": self.requires,
            "requires_runtime": self.requires_runtime,
        }
