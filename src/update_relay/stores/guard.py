# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Timeout guards for external stores.

The catalog and license store are external dependencies. Each call made
through a guard runs on a worker pool and is abandoned after ``timeout``
seconds, so a stalled backend surfaces as StoreUnavailable instead of
blocking the caller indefinitely. Failures raised by the backend itself
are mapped the same way. ServiceError subclasses raised by a store are
domain answers and pass through untouched.

No call is retried here; retries are the backend's responsibility.

A mutating call that times out keeps running on its worker. The caller
has been told it failed, so once it lands its effect is undone by a
compensating call (unbind after bind, rebind after unbind). The error
carries a ``settling`` future that completes after that; the licensing
engine holds the key's lock until then.
"""

import concurrent.futures
import logging
from typing import Any, Callable, Iterable, Optional

from update_relay.errors import ServiceError, StoreUnavailable
from update_relay.models import Extension, LicenseRecord, mask_key
from update_relay.protocols import CatalogLookup, LicenseStore

logger = logging.getLogger(__name__)

DEFAULT_STORE_TIMEOUT = 5.0
DEFAULT_MAX_WORKERS = 16


class _StoreGuard:
    """Runs store calls with a timeout on a (possibly shared) worker pool."""

    store_name = "store"

    def __init__(
        self,
        timeout: float = DEFAULT_STORE_TIMEOUT,
        executor: Optional[concurrent.futures.ThreadPoolExecutor] = None,
    ):
        self.timeout = timeout
        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=DEFAULT_MAX_WORKERS,
            thread_name_prefix=f"update-relay-{self.store_name}",
        )

    def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        compensate: Optional[Callable[[], None]] = None,
    ) -> Any:
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as e:
            # Executor already shut down
            raise StoreUnavailable(self.store_name, operation, str(e)) from e

        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            logger.warning(
                "store_timeout",
                extra={
                    "store": self.store_name,
                    "operation": operation,
                    "timeout": self.timeout,
                },
            )
            error = StoreUnavailable(
                self.store_name, operation, f"timed out after {self.timeout}s"
            )
            if compensate is not None:
                error.settling = self._settle(operation, future, compensate)
            raise error from e
        except ServiceError:
            raise
        except Exception as e:
            logger.warning(
                "store_failure",
                extra={"store": self.store_name, "operation": operation, "error": repr(e)},
            )
            raise StoreUnavailable(self.store_name, operation, str(e)) from e

    def _settle(
        self,
        operation: str,
        future: concurrent.futures.Future,
        compensate: Callable[[], None],
    ) -> concurrent.futures.Future:
        """Undo an abandoned mutation once it completes.

        Returns:
            Future resolved after the abandoned call finished and, if it
            succeeded, after the compensating call ran.
        """
        settled: concurrent.futures.Future = concurrent.futures.Future()

        def _on_done(done: concurrent.futures.Future) -> None:
            try:
                # Cancelled or failed calls left nothing behind
                if not done.cancelled() and done.exception() is None:
                    compensate()
                    logger.warning(
                        "store_call_compensated",
                        extra={"store": self.store_name, "operation": operation},
                    )
            except Exception as e:
                logger.error(
                    "store_compensation_failed",
                    extra={"store": self.store_name, "operation": operation, "error": repr(e)},
                )
            finally:
                settled.set_result(None)

        future.add_done_callback(_on_done)
        return settled

    def close(self) -> None:
        """Shut down the worker pool if this guard created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)


class GuardedCatalog(_StoreGuard):
    """CatalogLookup wrapper applying a timeout to every call."""

    store_name = "catalog"

    def __init__(
        self,
        catalog: CatalogLookup,
        timeout: float = DEFAULT_STORE_TIMEOUT,
        executor: Optional[concurrent.futures.ThreadPoolExecutor] = None,
    ):
        super().__init__(timeout, executor)
        self.inner = catalog

    def get_extension(self, slug: str) -> Optional[Extension]:
        return self._call("get_extension", self.inner.get_extension, slug)

    def list_extensions(self) -> Iterable[Extension]:
        return self._call("list_extensions", lambda: list(self.inner.list_extensions()))


class GuardedLicenseStore(_StoreGuard):
    """LicenseStore wrapper applying a timeout to every call."""

    store_name = "license_store"

    def __init__(
        self,
        store: LicenseStore,
        timeout: float = DEFAULT_STORE_TIMEOUT,
        executor: Optional[concurrent.futures.ThreadPoolExecutor] = None,
    ):
        super().__init__(timeout, executor)
        self.inner = store

    def get_license(self, key: str) -> Optional[LicenseRecord]:
        return self._call("get_license", self.inner.get_license, key)

    def bind_site(self, key: str, site_url: str) -> None:
        logger.debug("bind_site %s -> %s", mask_key(key), site_url)
        self._call(
            "bind_site",
            self.inner.bind_site,
            key,
            site_url,
            compensate=lambda: self.inner.unbind_site(key, site_url),
        )

    def unbind_site(self, key: str, site_url: str) -> None:
        """Remove a binding.

        Only called for a site that is currently bound, so a late unbind
        is undone by binding the site again.
        """
        logger.debug("unbind_site %s -> %s", mask_key(key), site_url)
        self._call(
            "unbind_site",
            self.inner.unbind_site,
            key,
            site_url,
            compensate=lambda: self.inner.bind_site(key, site_url),
        )

    def is_bound(self, key: str, site_url: str) -> bool:
        return self._call("is_bound", self.inner.is_bound, key, site_url)
