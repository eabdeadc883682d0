"""Liveness and metrics probes. Read-only over already-published counters."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil

from core.metrics import RequestMetrics


_process: Optional[psutil.Process] = None


def memory_used() -> int:
    """Resident set size of this process in bytes."""
    global _process
    if _process is None:
        _process = psutil.Process()
    return int(_process.memory_info().rss)


class HealthReporter:
    def __init__(self, state: Any):
        self._state = state

    def _uptime(self) -> float:
        return time.time() - self._state.started_at

    def health(self) -> Dict[str, Any]:
        pool = self._state.pool
        uptime = self._uptime()
        return {
            "status": "draining" if pool.is_draining else "healthy",
            "uptime": round(uptime, 3),
            "uptimeHuman": RequestMetrics._format_uptime(uptime),
            "activeConnections": pool.size,
            "totalConnections": pool.total_accepted,
            "memoryUsed": memory_used(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": self._state.version,
        }

    def metrics(self) -> Dict[str, Any]:
        pool = self._state.pool
        summary = self._state.metrics.get_summary()
        summary["connections"] = {
            "active": pool.size,
            "total": pool.total_accepted,
            "maxConnections": pool.max_connections,
            "recentEvents": [event.to_dict() for event in pool.events(limit=20)],
        }
        summary["uptime"] = round(self._uptime(), 3)
        summary["memoryUsed"] = memory_used()
        return summary
