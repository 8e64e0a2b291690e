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
Error kinds for Update Relay.

Every failure surfaced to a caller is a ServiceError subclass with a stable
``kind`` code and an HTTP-equivalent ``status``. Errors are terminal for the
current call; only StoreUnavailable marks a transient condition.

Status mapping:
- RateLimitExceeded -> 429
- ExtensionNotFound, LicenseNotFound, OperationNotFound -> 404
- LicenseRequired, LicenseExpired, SeatLimitExceeded -> 403
- InvalidRequest -> 400
- DownloadFailed -> 500
- StoreUnavailable -> 503
"""

import math
from concurrent.futures import Future
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for all Update Relay errors."""

    kind: str = "service_error"
    status: int = 500
    retryable: bool = False

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.message = message
        self.data = dict(data or {})
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to an error envelope.

        Returns:
            Dict with stable ``code``, ``message`` and ``data.status``.
        """
        return {
            "code": self.kind,
            "message": self.message,
            "data": {"status": self.status, **self.data},
        }


class RateLimitExceeded(ServiceError):
    """Caller exceeded its request budget for the current window."""

    kind = "rate_limit_exceeded"
    status = 429

    def __init__(self, retry_after: float, limit: int, window_seconds: float):
        self.retry_after = max(0.0, retry_after)
        self.limit = limit
        self.window_seconds = window_seconds
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            {"retry_after": self.retry_after_seconds, "limit": limit},
        )

    @property
    def retry_after_seconds(self) -> int:
        """Retry-after hint rounded up to whole seconds."""
        return int(math.ceil(self.retry_after))


class ExtensionNotFound(ServiceError):
    """No extension with the requested slug exists in the catalog."""

    kind = "extension_not_found"
    status = 404

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__("Extension not found.", {"slug": slug})


class LicenseNotFound(ServiceError):
    """No license record matches the supplied key for this extension."""

    kind = "license_not_found"
    status = 404

    def __init__(self, extension_slug: str):
        self.extension_slug = extension_slug
        super().__init__("Invalid license key.", {"extension": extension_slug})


class LicenseExpired(ServiceError):
    """License is past its expiry, or has been expired/revoked."""

    kind = "license_expired"
    status = 403

    def __init__(self, extension_slug: str, license_status: str):
        self.extension_slug = extension_slug
        self.license_status = license_status
        super().__init__(
            "License is expired or no longer active.",
            {"extension": extension_slug, "license_status": license_status},
        )


class SeatLimitExceeded(ServiceError):
    """All seats of the license are bound to other sites."""

    kind = "seat_limit_exceeded"
    status = 403

    def __init__(self, extension_slug: str, seat_limit: int):
        self.extension_slug = extension_slug
        self.seat_limit = seat_limit
        super().__init__(
            f"License activation limit reached ({seat_limit} site(s)).",
            {"extension": extension_slug, "seat_limit": seat_limit},
        )


class LicenseRequired(ServiceError):
    """Download of a gated extension without a valid site-bound license."""

    kind = "license_required"
    status = 403

    def __init__(self, extension_slug: str):
        self.extension_slug = extension_slug
        super().__init__(
            "Valid license required for this extension.",
            {"extension": extension_slug},
        )


class DownloadFailed(ServiceError):
    """A package URL could not be produced."""

    kind = "download_failed"
    status = 500

    def __init__(self, extension_slug: str, reason: str = ""):
        self.extension_slug = extension_slug
        data = {"extension": extension_slug}
        if reason:
            data["reason"] = reason
        super().__init__("Failed to generate download URL.", data)


class StoreUnavailable(ServiceError):
    """An external store timed out or failed. The caller may retry later.

    When a mutating call timed out, ``settling`` is a future that completes
    once the abandoned call has finished and any effect it had has been
    rolled back.
    """

    kind = "store_unavailable"
    status = 503
    retryable = True

    def __init__(self, store: str, operation: str, reason: str = ""):
        self.store = store
        self.operation = operation
        self.settling: Optional[Future] = None
        super().__init__(
            "Backing store is temporarily unavailable.",
            {"store": store, "operation": operation, "reason": reason},
        )


class InvalidRequest(ServiceError):
    """A required parameter is missing or malformed."""

    kind = "invalid_request"
    status = 400

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, {"field": field} if field else None)


class OperationNotFound(ServiceError):
    """Dispatch received an operation name it does not serve."""

    kind = "operation_not_found"
    status = 404

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Unknown operation: {operation}", {"operation": operation})
