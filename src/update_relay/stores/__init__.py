"""
Store implementations for Update Relay.

- InMemoryCatalog / InMemoryLicenseStore: thread-safe dict-backed stores,
  loadable from YAML files
- GuardedCatalog / GuardedLicenseStore: wrap any store so slow or failing
  calls surface as StoreUnavailable instead of hanging the caller
"""

from .guard import DEFAULT_STORE_TIMEOUT, GuardedCatalog, GuardedLicenseStore
from .memory import InMemoryCatalog, InMemoryLicenseStore

__all__ = [
    "DEFAULT_STORE_TIMEOUT",
    "GuardedCatalog",
    "GuardedLicenseStore",
    "InMemoryCatalog",
    "InMemoryLicenseStore",
]
