# Copyright 2024-2025 Amiable Development
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Store protocols for Update Relay.

The extension catalog and the license records live outside this service.
These Protocol classes define the only operations the engines need, so any
backend (database, remote API, YAML file) can be plugged in, and tests can
substitute doubles.

Design Principles:
1. Composition over inheritance - no base classes to subclass
2. Synchronous calls; timeouts are applied by update_relay.stores.guard
3. Versioned - protocols follow semantic versioning

Protocol Versioning:
- MAJOR: Breaking changes to method signatures
- MINOR: New optional methods with defaults
- PATCH: Documentation or type hint fixes
"""

from typing import Iterable, Optional, Protocol, runtime_checkable

from update_relay.models import Extension, LicenseRecord

CATALOG_LOOKUP_VERSION = "1.0.0"
LICENSE_STORE_VERSION = "1.0.0"


@runtime_checkable
class CatalogLookup(Protocol):
    """
    Read-only access to extension metadata.

    The catalog owns and mutates Extension entries; this service only
    consumes them.

    Version: 1.0.0
    """

    def get_extension(self, slug: str) -> Optional[Extension]:
        """
        Look up an extension by slug.

        Args:
            slug: Unique extension identifier

        Returns:
            The Extension, or None if the slug is unknown.
        """
        ...

    def list_extensions(self) -> Iterable[Extension]:
        """Return every extension in the catalog."""
        ...


@runtime_checkable
class LicenseStore(Protocol):
    """
    Read/write access to license records and their site bindings.

    Consistency required by the licensing engine:
    - bind_site/unbind_site are visible to the next get_license/is_bound
      call for the same key
    - Implementations never return a record that shares mutable state
      with their storage

    Version: 1.0.0
    """

    def get_license(self, key: str) -> Optional[LicenseRecord]:
        """
        Look up a license record by key.

        Returns:
            A copy of the record, or None if the key is unknown.
        """
        ...

    def bind_site(self, key: str, site_url: str) -> None:
        """
        Add a site to the key's bound sites.

        The caller has already verified seat availability.
        """
        ...

    def unbind_site(self, key: str, site_url: str) -> None:
        """Remove a site from the key's bound sites; absence is not an error."""
        ...

    def is_bound(self, key: str, site_url: str) -> bool:
        """True if the site currently holds a seat under the key."""
        ...
