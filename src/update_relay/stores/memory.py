# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""In-memory implementations of CatalogLookup and LicenseStore.

Suitable for:
- Development and testing
- Small deployments whose catalog and licenses live in YAML files
- Ephemeral bindings (lost on restart unless the caller persists them)

YAML layout:

    # catalog.yaml
    extensions:
      service-box:
        name: Service Box
        latest_version: 2.0.0
        requires: "5.0"
        tested: "6.4"
        requires_runtime: "7.0"
        is_gated: true
        changelog:
          - version: 2.0.0
            notes: ["Added Hub integration", "Improved UI"]
        banners:
          high: https://cdn.example.com/service-box-1544x500.jpg
          low: https://cdn.example.com/service-box-772x250.jpg

    # licenses.yaml
    licenses:
      SB-0001-AAAA:
        extension: service-box
        status: active
        expiry: 2026-12-31
        seat_limit: 2
"""

import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml

from update_relay.models import Extension, LicenseRecord, normalize_site_url

logger = logging.getLogger(__name__)


def _load_yaml(path: Union[str, Path], section: str) -> dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    entries = data.get(section) or {}
    if not isinstance(entries, dict):
        raise ValueError(f"{path}: '{section}' must be a mapping")
    return entries


class InMemoryCatalog:
    """Dict-backed extension catalog.

    Extensions are immutable, so lookups hand out the stored instance.
    """

    def __init__(self, extensions: Iterable[Extension] = ()):
        self._lock = threading.RLock()
        self._extensions: dict[str, Extension] = {}
        for extension in extensions:
            self.add(extension)

    def add(self, extension: Extension) -> None:
        """Add or replace an extension."""
        with self._lock:
            self._extensions[extension.slug] = extension

    def remove(self, slug: str) -> None:
        with self._lock:
            self._extensions.pop(slug, None)

    def get_extension(self, slug: str) -> Optional[Extension]:
        with self._lock:
            return self._extensions.get(slug)

    def list_extensions(self) -> list[Extension]:
        with self._lock:
            return sorted(self._extensions.values(), key=lambda e: e.slug)

    def __len__(self) -> int:
        with self._lock:
            return len(self._extensions)

    @classmethod
    def from_dict(cls, entries: dict[str, Any]) -> "InMemoryCatalog":
        return cls(Extension.from_dict(str(slug), data or {}) for slug, data in entries.items())

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "InMemoryCatalog":
        """Load a catalog from the ``extensions:`` mapping of a YAML file.

        Raises:
            OSError: If the file cannot be read.
            yaml.YAMLError: If the file is not valid YAML.
            ValueError / KeyError: If an entry is malformed.
        """
        catalog = cls.from_dict(_load_yaml(path, "extensions"))
        logger.info("Loaded %d extension(s) from %s", len(catalog), path)
        return catalog


class InMemoryLicenseStore:
    """Dict-backed license store.

    Every read returns a copy of the stored record, so bindings change only
    through bind_site/unbind_site.
    """

    def __init__(self, records: Iterable[LicenseRecord] = ()):
        self._lock = threading.RLock()
        self._records: dict[str, LicenseRecord] = {}
        for record in records:
            self.add(record)

    def add(self, record: LicenseRecord) -> None:
        """Add or replace a license record."""
        with self._lock:
            self._records[record.key] = record.copy()

    def get_license(self, key: str) -> Optional[LicenseRecord]:
        with self._lock:
            record = self._records.get(key)
            return record.copy() if record is not None else None

    def bind_site(self, key: str, site_url: str) -> None:
        """Add a site binding.

        Raises:
            KeyError: If the key is unknown.
            ValueError: If binding would exceed the seat limit.
        """
        site = normalize_site_url(site_url)
        with self._lock:
            record = self._records[key]
            if site in record.bound_sites:
                return
            if len(record.bound_sites) >= record.seat_limit:
                raise ValueError(f"seat limit {record.seat_limit} reached")
            record.bound_sites.add(site)

    def unbind_site(self, key: str, site_url: str) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                record.bound_sites.discard(normalize_site_url(site_url))

    def is_bound(self, key: str, site_url: str) -> bool:
        with self._lock:
            record = self._records.get(key)
            return record is not None and normalize_site_url(site_url) in record.bound_sites

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @classmethod
    def from_dict(cls, entries: dict[str, Any]) -> "InMemoryLicenseStore":
        return cls(LicenseRecord.from_dict(str(key), data or {}) for key, data in entries.items())

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "InMemoryLicenseStore":
        """Load license records from the ``licenses:`` mapping of a YAML file."""
        store = cls.from_dict(_load_yaml(path, "licenses"))
        logger.info("Loaded %d license record(s) from %s", len(store), path)
        return store
