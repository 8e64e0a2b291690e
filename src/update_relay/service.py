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
Update Relay service facade.

An explicitly constructed service object wiring the rate limiter, response
cache, licensing engine and update decision engine around injected stores.
Transport layers (HTTP routing, CORS, input escaping) sit outside and call
``handle()`` with an operation name, a parameter mapping and the caller's
identity.

Control flow per call:
1. Rate limiter admits or denies the caller
2. Read-only operations consult the response cache, then the engines
3. License-mutating operations go straight to the licensing engine, which
   invalidates cached responses for the affected (extension, key) pair
4. ServiceError kinds are mapped to status codes in the response envelope

Operations:
- updates/check       {slug, version, license_key?}
- updates/info        {slug, license_key?}
- license/activate    {extension, license_key, site_url}
- license/deactivate  {extension, license_key, site_url}
- license/check       {extension, license_key, site_url}
- download            {extension, license_key?, site_url}
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional
import concurrent.futures
import itertools
import logging
import time

from update_relay.cache import ResponseCache
from update_relay.config import ServiceConfig
from update_relay.errors import InvalidRequest, OperationNotFound, RateLimitExceeded, ServiceError
from update_relay.licensing import LicensingEngine
from update_relay.metrics import ServiceMetrics
from update_relay.protocols import CatalogLookup, LicenseStore
from update_relay.rate_limiter import FixedWindowRateLimiter, RateLimitConfig, RateLimitResult
from update_relay.stores.guard import GuardedCatalog, GuardedLicenseStore
from update_relay.updates import OP_CHECK_UPDATE, OP_PLUGIN_INFO, UpdateDecisionEngine

logger = logging.getLogger(__name__)

OP_ACTIVATE = "license/activate"
OP_DEACTIVATE = "license/deactivate"
OP_CHECK_LICENSE = "license/check"
OP_DOWNLOAD = "download"

# Expired buckets and cache entries are swept every N calls
SWEEP_INTERVAL = 1000

# Metrics kind for calls that raised something other than a ServiceError
INTERNAL_ERROR_KIND = "internal_error"


@dataclass
class ServiceResponse:
    """
    Transport-agnostic response envelope.

    Attributes:
        status: HTTP-equivalent status code
        body: JSON-serializable payload
        headers: Response headers
    """

    status: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _required(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    if value is None or not str(value).strip():
        raise InvalidRequest(f"Missing required parameter: {name}", field=name)
    return str(value).strip()


def _optional(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    return "" if value is None else str(value).strip()


class UpdateService:
    """
    License and update distribution service.

    Example:
        service = UpdateService.build(
            ServiceConfig(),
            catalog=InMemoryCatalog.from_yaml("catalog.yaml"),
            licenses=InMemoryLicenseStore.from_yaml("licenses.yaml"),
        )
        response = service.handle(
            "license/activate",
            {"extension": "service-box", "license_key": "SB-1", "site_url": "https://a.test"},
            identity="203.0.113.7",
        )
        print(response.status, response.body)
    """

    def __init__(
        self,
        catalog: CatalogLookup,
        licenses: LicenseStore,
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        config: Optional[ServiceConfig] = None,
        metrics: Optional[ServiceMetrics] = None,
    ):
        """
        Initialize the service with injected dependencies.

        Args:
            catalog: Extension metadata source
            licenses: License record store
            cache: Response cache (None disables caching)
            rate_limiter: Per-caller limiter (None builds one from config)
            config: Service configuration (defaults if omitted)
            metrics: Telemetry sink (a fresh one if omitted)
        """
        self.config = config or ServiceConfig()
        self.catalog = catalog
        self.licenses = licenses
        self.cache = cache
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            RateLimitConfig(
                max_requests=self.config.rate_limit,
                window_seconds=self.config.rate_window_seconds,
            )
        )
        self.metrics = metrics or ServiceMetrics()

        self.licensing = LicensingEngine(
            licenses, cache=cache, lock_timeout=self.config.store_timeout_seconds
        )
        self.updates = UpdateDecisionEngine(
            catalog,
            self.licensing,
            cache=cache,
            download_base_url=self.config.download_base_url,
            author=self.config.author,
            author_profile=self.config.author_profile,
        )

        self._handlers: Dict[str, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
            OP_CHECK_UPDATE: self._check_update,
            OP_PLUGIN_INFO: self._plugin_info,
            OP_ACTIVATE: self._activate,
            OP_DEACTIVATE: self._deactivate,
            OP_CHECK_LICENSE: self._check_license,
            OP_DOWNLOAD: self._download,
        }
        self._call_counter = itertools.count(1)
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    @classmethod
    def build(
        cls,
        config: ServiceConfig,
        catalog: CatalogLookup,
        licenses: LicenseStore,
    ) -> "UpdateService":
        """
        Build a service with timeout-guarded stores and a configured cache.

        Both store guards share one worker pool, released by close().
        """
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=16, thread_name_prefix="update-relay-store"
        )
        cache = None
        if config.cache_ttl_seconds > 0:
            cache = ResponseCache(
                max_size=config.cache_max_size, ttl_seconds=config.cache_ttl_seconds
            )
        service = cls(
            catalog=GuardedCatalog(catalog, config.store_timeout_seconds, executor),
            licenses=GuardedLicenseStore(licenses, config.store_timeout_seconds, executor),
            cache=cache,
            config=config,
        )
        service._executor = executor
        return service

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    def call(self, operation: str, params: Mapping[str, Any], identity: str) -> Dict[str, Any]:
        """
        Run one operation and return its payload.

        Raises:
            RateLimitExceeded: If the caller is over budget (checked first)
            OperationNotFound: If the operation name is unknown
            ServiceError: Any other error kind raised by the engines
        """
        self._admit(identity)
        handler = self._handlers.get(operation)
        if handler is None:
            raise OperationNotFound(operation)
        return handler(params or {})

    def handle(
        self, operation: str, params: Mapping[str, Any], identity: str
    ) -> ServiceResponse:
        """
        Run one operation and wrap the outcome in a response envelope.

        ServiceErrors become error envelopes with their mapped status;
        any other exception is counted as ``internal_error`` and propagates.
        """
        started = time.perf_counter()
        headers = {"X-API-Version": self.config.api_version}
        error_kind = None

        try:
            body = self.call(operation, params, identity)
            response = ServiceResponse(status=200, body=body, headers=headers)
        except RateLimitExceeded as e:
            error_kind = e.kind
            headers["Retry-After"] = str(e.retry_after_seconds)
            response = ServiceResponse(status=e.status, body=e.to_dict(), headers=headers)
        except ServiceError as e:
            error_kind = e.kind
            response = ServiceResponse(status=e.status, body=e.to_dict(), headers=headers)
        except Exception:
            error_kind = INTERNAL_ERROR_KIND
            logger.exception("%s crashed for %s", operation, identity)
            raise
        finally:
            latency_ms = (time.perf_counter() - started) * 1000
            self.metrics.record_call(operation, latency_ms, error_kind)

        if error_kind is not None:
            logger.debug("%s failed for %s: %s", operation, identity, error_kind)
        return response

    def _admit(self, identity: str) -> RateLimitResult:
        result = self.rate_limiter.enforce(identity or "unknown")
        if next(self._call_counter) % SWEEP_INTERVAL == 0:
            self.sweep()
        return result

    def sweep(self) -> Dict[str, int]:
        """Drop expired rate-limit buckets and cache entries."""
        swept = {
            "rate_limit_buckets": self.rate_limiter.purge_expired(),
            "cache_entries": self.cache.purge_expired() if self.cache is not None else 0,
        }
        logger.debug("sweep removed %s", swept)
        return swept

    # -------------------------------------------------------------------------
    # Operation handlers
    # -------------------------------------------------------------------------

    def _check_update(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        result = self.updates.check_update(
            _required(params, "slug"),
            _required(params, "version"),
            _optional(params, "license_key"),
        )
        return result.to_dict()

    def _plugin_info(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return self.updates.get_plugin_info(
            _required(params, "slug"),
            _optional(params, "license_key"),
        )

    def _activate(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        result = self.licensing.activate(
            _required(params, "extension"),
            _required(params, "license_key"),
            _required(params, "site_url"),
        )
        return result.to_dict()

    def _deactivate(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        self.licensing.deactivate(
            _required(params, "extension"),
            _required(params, "license_key"),
            _required(params, "site_url"),
        )
        return {"success": True, "message": "License deactivated successfully."}

    def _check_license(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        result = self.licensing.check(
            _required(params, "extension"),
            _optional(params, "license_key"),
            _required(params, "site_url"),
        )
        return result.to_dict()

    def _download(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        url = self.updates.get_download_url(
            _required(params, "extension"),
            _optional(params, "license_key"),
            _required(params, "site_url"),
        )
        return {"success": True, "download_url": url}

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Configuration and component statistics."""
        return {
            "api_version": self.config.api_version,
            "operations": self.operations,
            "rate_limiter": self.rate_limiter.get_stats(),
            "cache": self.cache.get_metrics() if self.cache is not None else None,
            "metrics": self.metrics.get_summary(),
        }

    def close(self) -> None:
        """Release the store worker pool created by build()."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
