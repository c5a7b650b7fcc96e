from __future__ import annotations

import time
from collections import deque, defaultdict
from dataclasses import dataclass
from typing import Deque, Dict


@dataclass
class MetricSample:
    ts: float
    model: str
    provider: str
    duration_ms: float
    stream: bool
    status: int
    bytes_out: int = 0


class MetricsAggregator:
    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self.samples: Deque[MetricSample] = deque(maxlen=capacity)
        self.start_ts = time.time()
        self.provider_counters: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"total_requests": 0, "streaming_requests": 0, "failed_requests": 0}
        )

    def add(self, sample: MetricSample):
        self.samples.append(sample)
        counters = self.provider_counters[sample.provider]
        counters["total_requests"] += 1
        if sample.stream:
            counters["streaming_requests"] += 1
        if sample.status >= 400:
            counters["failed_requests"] += 1

    def summary(self) -> dict:
        if not self.samples:
            return {
                "uptime_seconds": time.time() - self.start_ts,
                "rolling": {"count": 0},
                "requests_by_provider": dict(self.provider_counters),
            }
        durations = sorted(s.duration_ms for s in self.samples)
        p95 = durations[int(0.95 * (len(durations) - 1))]
        return {
            "uptime_seconds": time.time() - self.start_ts,
            "rolling": {
                "count": len(durations),
                "avg_duration_ms": sum(durations) / len(durations),
                "p95_duration_ms": p95,
            },
            "requests_by_provider": dict(self.provider_counters),
        }
