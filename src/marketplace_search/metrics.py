from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
from typing import Any

from marketplace_search.db import MarketplaceDB


_LOGGER = logging.getLogger(__name__)
P95_BUDGET_MS = 250


class MetricsRecorder:
    """Writes one row per request off the request thread."""

    def __init__(self, db: MarketplaceDB) -> None:
        self.db = db
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="metrics-writer")

    def _write(self, **fields: Any) -> None:
        try:
            self.db.create_metric(**fields)
        except Exception:
            _LOGGER.exception("Failed to record metric for %s %s", fields.get("method"), fields.get("route"))

    def record(
        self,
        *,
        route: str,
        method: str,
        status_code: int,
        duration_ms: int,
        user_id: str | None = None,
        user_role: str | None = None,
        user_agent: str | None = None,
    ) -> Future:
        if duration_ms > P95_BUDGET_MS:
            _LOGGER.warning("Endpoint %s %s exceeded p95 budget: %dms", method, route, duration_ms)
        return self._executor.submit(
            self._write,
            route=route,
            method=method,
            status_code=status_code,
            duration_ms=duration_ms,
            user_id=user_id,
            user_role=user_role,
            user_agent=user_agent,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def summarize(metrics: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_route: dict[str, list[int]] = {}
    for metric in metrics:
        by_route.setdefault(metric["route"], []).append(int(metric["duration_ms"]))

    summary: list[dict[str, Any]] = []
    for route, durations in by_route.items():
        ordered = sorted(durations)
        p95_index = int(len(ordered) * 0.95)
        p99_index = int(len(ordered) * 0.99)
        summary.append(
            {
                "route": route,
                "count": len(ordered),
                "p95": ordered[p95_index] if p95_index < len(ordered) else 0,
                "p99": ordered[p99_index] if p99_index < len(ordered) else 0,
            }
        )
    return summary
