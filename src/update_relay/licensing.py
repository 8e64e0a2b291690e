# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Licensing engine: activate, deactivate and check site bindings.

State per license record:
- A key is usable while its status is ACTIVE and its expiry is not past
- activate() binds a site, consuming a seat unless the site already holds one
- deactivate() releases the site's seat; releasing an unbound site is a no-op
- check() reports INVALID, INACTIVE (usable but unbound) or VALID

Thread Safety:
- All operations on the same key serialize on a per-key lock, so seat
  checks and binding changes are atomic with respect to each other
- Operations on different keys never contend
- Lock entries are reference counted and dropped when unused
- A store change that timed out keeps the key locked until the store
  has rolled it back, so a failed call never leaves a binding behind

Cache interaction: every successful activate/deactivate drops cached
responses computed for the same (extension, key) pair.
"""

import logging
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from update_relay.cache import ResponseCache
from update_relay.errors import (
    InvalidRequest,
    LicenseExpired,
    LicenseNotFound,
    SeatLimitExceeded,
    StoreUnavailable,
)
from update_relay.models import (
    ActivationResult,
    CheckStatus,
    LicenseCheck,
    LicenseRecord,
    LicenseStatus,
    mask_key,
    normalize_site_url,
)
from update_relay.protocols import LicenseStore

logger = logging.getLogger(__name__)


@dataclass
class _KeyLock:
    lock: threading.Lock
    holders: int = 0


class LicensingEngine:
    """Implements the license lifecycle against a LicenseStore.

    Example:
        >>> engine = LicensingEngine(store, cache=cache)
        >>> engine.activate("service-box", "SB-0001-AAAA", "https://shop.example")
        >>> engine.check("service-box", "SB-0001-AAAA", "https://shop.example").status
        <CheckStatus.VALID: 'valid'>
    """

    def __init__(
        self,
        store: LicenseStore,
        cache: Optional[ResponseCache] = None,
        lock_timeout: Optional[float] = None,
    ):
        """
        Args:
            store: License record store
            cache: Response cache to invalidate on binding changes
            lock_timeout: Seconds to wait for a busy key before failing with
                StoreUnavailable (None waits indefinitely)
        """
        self.store = store
        self.cache = cache
        self.lock_timeout = lock_timeout
        self._locks: dict[str, _KeyLock] = {}
        self._locks_guard = threading.Lock()

        # Time offset for testing
        self._time_offset = timedelta(0)

    def _current_time(self) -> datetime:
        return datetime.now(timezone.utc) + self._time_offset

    def _advance_time(self, seconds: float) -> None:
        """Advance time for testing purposes."""
        self._time_offset += timedelta(seconds=seconds)

    @contextmanager
    def _key_lock(self, key: str) -> Iterator[list[Future]]:
        """Hold the key's lock for the duration of the block.

        Futures appended to the yielded list postpone the release until
        they complete, so a store mutation still in flight is settled
        before anyone else sees the key.
        """
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock(lock=threading.Lock())
            entry.holders += 1

        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not entry.lock.acquire(timeout=timeout):
            self._drop_holder(key, entry)
            logger.warning("license_key_busy", extra={"key": mask_key(key)})
            raise StoreUnavailable("license_store", "lock", "license is busy settling a change")

        pending: list[Future] = []
        try:
            yield pending
        finally:
            if pending:
                # threading.Lock may be released by a thread other than its owner
                pending[-1].add_done_callback(lambda _: self._settled(key, entry))
            else:
                self._release(key, entry)

    def _settled(self, key: str, entry: _KeyLock) -> None:
        self._release(key, entry)
        logger.info("license_change_settled", extra={"key": mask_key(key)})

    def _release(self, key: str, entry: _KeyLock) -> None:
        entry.lock.release()
        self._drop_holder(key, entry)

    def _drop_holder(self, key: str, entry: _KeyLock) -> None:
        with self._locks_guard:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    def _lookup(self, extension_slug: str, key: str) -> Optional[LicenseRecord]:
        if not key:
            return None
        record = self.store.get_license(key)
        # A key for a different extension is indistinguishable from an unknown key
        if record is None or record.extension_slug != extension_slug:
            return None
        return record

    def _status_of(self, record: LicenseRecord) -> str:
        if record.status == LicenseStatus.ACTIVE and record.expiry < self._current_time():
            return LicenseStatus.EXPIRED.value
        return record.status.value

    def _mutate(
        self,
        pending: list[Future],
        change: Callable[[str, str], None],
        key: str,
        site: str,
    ) -> None:
        try:
            change(key, site)
        except StoreUnavailable as e:
            # The abandoned change is rolled back before the key is released
            if e.settling is not None:
                pending.append(e.settling)
            raise

    def _invalidate(self, extension_slug: str, key: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_license(extension_slug, key)

    def activate(self, extension_slug: str, key: str, site_url: str) -> ActivationResult:
        """
        Bind a site to a license.

        Re-activating a site that already holds a seat succeeds without
        consuming another one.

        Raises:
            InvalidRequest: If site_url is blank.
            LicenseNotFound: If the key is unknown for this extension.
            LicenseExpired: If the license is expired or revoked.
            SeatLimitExceeded: If every seat is bound to another site.
            StoreUnavailable: If the store failed or timed out. Nothing was
                bound; a late bind is rolled back before the key is released.
        """
        site = normalize_site_url(site_url)
        if not site:
            raise InvalidRequest("site_url is required.", field="site_url")

        with self._key_lock(key) as pending:
            record = self._lookup(extension_slug, key)
            if record is None:
                logger.info(
                    "license_activation_rejected",
                    extra={"extension": extension_slug, "key": mask_key(key), "reason": "not_found"},
                )
                raise LicenseNotFound(extension_slug)

            if not record.is_usable(self._current_time()):
                status = self._status_of(record)
                logger.info(
                    "license_activation_rejected",
                    extra={"extension": extension_slug, "key": mask_key(key), "reason": status},
                )
                raise LicenseExpired(extension_slug, status)

            already_bound = site in record.bound_sites
            if not already_bound:
                if len(record.bound_sites) >= record.seat_limit:
                    logger.warning(
                        "license_seat_limit_reached",
                        extra={
                            "extension": extension_slug,
                            "key": mask_key(key),
                            "seat_limit": record.seat_limit,
                            "site": site,
                        },
                    )
                    raise SeatLimitExceeded(extension_slug, record.seat_limit)
                self._mutate(pending, self.store.bind_site, key, site)

            self._invalidate(extension_slug, key)

        seats_used = len(record.bound_sites) + (0 if already_bound else 1)
        logger.info(
            "license_activated",
            extra={
                "extension": extension_slug,
                "key": mask_key(key),
                "site": site,
                "already_bound": already_bound,
                "seats_used": seats_used,
                "seat_limit": record.seat_limit,
            },
        )
        return ActivationResult(
            expiry=record.expiry,
            already_bound=already_bound,
            seats_used=seats_used,
            seat_limit=record.seat_limit,
        )

    def deactivate(self, extension_slug: str, key: str, site_url: str) -> bool:
        """
        Release a site's seat.

        Idempotent: an unbound site, or a key unknown for this extension,
        leaves nothing to release and is not an error.

        Returns:
            True if a binding was removed.

        Raises:
            StoreUnavailable: If the store failed or timed out. The binding
                is kept; a late unbind is rolled back before the key is released.
        """
        site = normalize_site_url(site_url)
        if not site:
            raise InvalidRequest("site_url is required.", field="site_url")

        with self._key_lock(key) as pending:
            record = self._lookup(extension_slug, key)
            removed = False
            if record is not None and self.store.is_bound(key, site):
                self._mutate(pending, self.store.unbind_site, key, site)
                removed = True
            self._invalidate(extension_slug, key)

        logger.info(
            "license_deactivated",
            extra={
                "extension": extension_slug,
                "key": mask_key(key),
                "site": site,
                "removed": removed,
            },
        )
        return removed

    def check(self, extension_slug: str, key: str, site_url: str) -> LicenseCheck:
        """
        Report whether a license is valid and bound to a site.

        Returns:
            LicenseCheck with status INVALID, INACTIVE or VALID. Only VALID
            carries the expiry.
        """
        site = normalize_site_url(site_url)

        with self._key_lock(key):
            record = self._lookup(extension_slug, key)
            if record is None:
                return LicenseCheck(CheckStatus.INVALID, "Invalid license key.")

            if not record.is_usable(self._current_time()):
                status = self._status_of(record)
                if status == LicenseStatus.REVOKED.value:
                    return LicenseCheck(CheckStatus.INVALID, "License has been revoked.")
                return LicenseCheck(CheckStatus.INVALID, "License has expired.")

            if not site or not self.store.is_bound(key, site):
                return LicenseCheck(CheckStatus.INACTIVE, "License not activated for this site.")

            return LicenseCheck(
                CheckStatus.VALID, "License is valid and active.", expiry=record.expiry
            )
