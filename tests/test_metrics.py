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
Tests for ServiceMetrics.
"""

from update_relay.metrics import ServiceMetrics


class TestServiceMetrics:
    """Tests for per-operation counters."""

    def test_empty_stats(self):
        metrics = ServiceMetrics()

        assert metrics.get_latency_stats("updates/check") == {"p50": 0.0, "p95": 0.0, "max": 0.0}
        assert metrics.get_summary() == {}

    def test_latency_percentiles(self):
        metrics = ServiceMetrics()
        for latency in range(1, 101):
            metrics.record_call("updates/check", float(latency))

        stats = metrics.get_latency_stats("updates/check")

        assert stats["p50"] == 50.5
        assert stats["p95"] == 95.0
        assert stats["max"] == 100.0

    def test_latency_window_is_bounded(self):
        metrics = ServiceMetrics(latency_window=10)
        for latency in range(100):
            metrics.record_call("updates/info", float(latency))

        stats = metrics.get_latency_stats("updates/info")

        assert stats["max"] == 99.0
        assert stats["p50"] == 94.5

    def test_error_counts(self):
        metrics = ServiceMetrics()
        metrics.record_call("license/activate", 1.0, "seat_limit_exceeded")
        metrics.record_call("license/activate", 1.0, "seat_limit_exceeded")
        metrics.record_call("download", 1.0, "license_required")
        metrics.record_call("download", 1.0)

        assert metrics.get_error_counts("license/activate") == {"seat_limit_exceeded": 2}
        assert metrics.get_error_counts() == {"seat_limit_exceeded": 2, "license_required": 1}
        assert metrics.get_summary()["download"]["calls"] == 2

    def test_reset(self):
        metrics = ServiceMetrics()
        metrics.record_call("download", 1.0, "license_required")

        metrics.reset()

        assert metrics.get_summary() == {}
        assert metrics.get_error_counts() == {}
