"""Request counters shared by the dispatcher and the health reporter."""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List


@dataclass(frozen=True)
class CounterSnapshot:
    """A consistent point-in-time copy of the request counters."""

    total: int
    successful: int
    failed: int
    in_flight: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RequestMetrics:
    """
    Thread-safe request counters.

    Every dispatch calls record_start() once and exactly one of
    record_success()/record_failure() once, so after all calls settle
    total == successful + failed.
    """

    def __init__(self, latency_window: int = 500):
        self._lock = threading.Lock()

        self._total = 0
        self._successful = 0
        self._failed = 0

        self._by_tool: Dict[str, int] = defaultdict(int)
        self._failures_by_kind: Dict[str, int] = defaultdict(int)
        self._latency_samples: Deque[float] = deque(maxlen=latency_window)

        self._start_time = time.time()

    def record_start(self, tool_name: str) -> None:
        with self._lock:
            self._total += 1
            self._by_tool[tool_name] += 1

    def record_success(self, latency_ms: float) -> None:
        with self._lock:
            self._successful += 1
            self._latency_samples.append(latency_ms)

    def record_failure(self, kind: str, latency_ms: float) -> None:
        with self._lock:
            self._failed += 1
            self._failures_by_kind[kind] += 1
            self._latency_samples.append(latency_ms)

    @property
    def start_time(self) -> float:
        return self._start_time

    def get_uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                total=self._total,
                successful=self._successful,
                failed=self._failed,
                in_flight=self._total - self._successful - self._failed,
            )

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            samples: List[float] = list(self._latency_samples)
            counters = {
                "total": self._total,
                "successful": self._successful,
                "failed": self._failed,
                "byTool": dict(self._by_tool),
                "failuresByKind": dict(self._failures_by_kind),
            }

        return {
            "requests": counters,
            "latency": {
                "averageMs": sum(samples) / len(samples) if samples else 0.0,
                "p95Ms": self._p95(samples),
            },
        }

    @staticmethod
    def _p95(samples: List[float]) -> float:
        if not samples:
            return 0.0
        ordered = sorted(samples)
        index = min(int(len(ordered) * 0.95), len(ordered) - 1)
        return ordered[index]

    @staticmethod
    def _format_uptime(seconds: float) -> str:
        """Format uptime in human-readable format."""
        days = int(seconds // 86400)
        hours = int((seconds % 86400) // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)

        parts = []
        if days > 0:
            parts.append(f"{days}d")
        if hours > 0:
            parts.append(f"{hours}h")
        if minutes > 0:
            parts.append(f"{minutes}m")
        parts.append(f"{secs}s")

        return " ".join(parts)
