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
ServiceMetrics - Telemetry for Update Relay operations.

Tracks per operation:
- Call count
- Latency (p50, p95) over a bounded recent window
- Errors by kind

Version: 1.0.0
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Optional
import logging
import statistics
import threading

logger = logging.getLogger(__name__)

DEFAULT_LATENCY_WINDOW = 1000


@dataclass
class CallMetric:
    """
    Individual call record.

    Attributes:
        operation: Operation name
        latency_ms: Handling time in milliseconds
        error_kind: Error kind if the call failed
        timestamp: When the call finished
    """

    operation: str
    latency_ms: float
    error_kind: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


class ServiceMetrics:
    """
    Thread-safe per-operation counters.

    Example:
        metrics = ServiceMetrics()
        metrics.record_call("updates/check", latency_ms=3.2)
        metrics.record_call("license/activate", latency_ms=8.0, error_kind="seat_limit_exceeded")

        stats = metrics.get_latency_stats("updates/check")
        print(f"p95: {stats['p95']}ms")
    """

    def __init__(self, latency_window: int = DEFAULT_LATENCY_WINDOW):
        self._lock = threading.RLock()
        self._latency_window = latency_window
        self._calls: Dict[str, int] = defaultdict(int)
        self._errors: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._latencies: Dict[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=self._latency_window)
        )

    def record_call(
        self,
        operation: str,
        latency_ms: float,
        error_kind: Optional[str] = None,
    ) -> CallMetric:
        """
        Record one handled call.

        Args:
            operation: Operation name
            latency_ms: Handling time in milliseconds
            error_kind: ServiceError kind when the call failed ("internal_error"
                for any other exception)
        """
        metric = CallMetric(operation=operation, latency_ms=latency_ms, error_kind=error_kind)
        with self._lock:
            self._calls[operation] += 1
            self._latencies[operation].append(latency_ms)
            if error_kind:
                self._errors[operation][error_kind] += 1
        return metric

    def get_latency_stats(self, operation: str) -> Dict[str, float]:
        """
        Get latency percentiles for an operation.

        Returns:
            Dict with p50, p95 and max in milliseconds (zeros when no data)
        """
        with self._lock:
            samples = sorted(self._latencies.get(operation, ()))

        if not samples:
            return {"p50": 0.0, "p95": 0.0, "max": 0.0}

        p95_index = min(len(samples) - 1, int(round(0.95 * (len(samples) - 1))))
        return {
            "p50": statistics.median(samples),
            "p95": samples[p95_index],
            "max": samples[-1],
        }

    def get_error_counts(self, operation: Optional[str] = None) -> Dict[str, int]:
        """Errors by kind, for one operation or summed over all."""
        with self._lock:
            if operation is not None:
                return dict(self._errors.get(operation, {}))
            totals: Dict[str, int] = defaultdict(int)
            for per_op in self._errors.values():
                for kind, count in per_op.items():
                    totals[kind] += count
            return dict(totals)

    def get_summary(self) -> Dict[str, Any]:
        """Per-operation call counts, error counts and latency stats."""
        with self._lock:
            operations = sorted(self._calls)
            calls = dict(self._calls)

        return {
            op: {
                "calls": calls[op],
                "errors": self.get_error_counts(op),
                "latency_ms": self.get_latency_stats(op),
            }
            for op in operations
        }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._calls.clear()
            self._errors.clear()
            self._latencies.clear()
        logger.info("Metrics reset")
