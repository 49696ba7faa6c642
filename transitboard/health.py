from __future__ import annotations

import threading
import time
from typing import Dict, Iterable, Optional, TypedDict


START_TIME = time.time()

DEFAULT_STALENESS_WARNING_SEC = 60
DEFAULT_STALENESS_CRITICAL_SEC = 120


class GroupEntry(TypedDict):
    last_updated: Optional[int]
    last_error: Optional[str]
    last_error_at: Optional[int]
    fetch_count: int
    error_count: int


class GroupHealth(TypedDict):
    last_update: str
    status: str
    fetch_count: int
    error_count: int


class HealthStatus(TypedDict):
    status: str
    uptime_seconds: int
    groups: Dict[str, GroupHealth]


class HealthTracker:
    """Thread-safe record of when each arrival group last succeeded or failed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: Dict[str, GroupEntry] = {}

    def _ensure_key(self, key: str) -> GroupEntry:
        if key not in self._store:
            self._store[key] = {
                "last_updated": None,
                "last_error": None,
                "last_error_at": None,
                "fetch_count": 0,
                "error_count": 0,
            }
        return self._store[key]

    def record_success(self, key: str, now: Optional[int] = None) -> None:
        stamp = int(time.time()) if now is None else now
        with self._lock:
            entry = self._ensure_key(key)
            entry["last_updated"] = stamp
            entry["fetch_count"] += 1

    def record_error(self, key: str, error: str, now: Optional[int] = None) -> None:
        stamp = int(time.time()) if now is None else now
        with self._lock:
            entry = self._ensure_key(key)
            entry["last_error"] = error
            entry["last_error_at"] = stamp
            entry["error_count"] += 1

    def record_snapshot(
        self,
        groups: Iterable[str],
        warnings: Iterable[str],
        now: Optional[int] = None,
    ) -> None:
        """Record one aggregation call; ``groups`` and ``warnings`` use ``kind.id`` keys."""
        failed = set(warnings)
        for key in groups:
            if key in failed:
                self.record_error(key, "unavailable", now)
            else:
                self.record_success(key, now)

    def get_all(self) -> Dict[str, GroupEntry]:
        with self._lock:
            return {key: GroupEntry(**entry) for key, entry in self._store.items()}


def _format_age(last_updated: Optional[int], now: int) -> str:
    if not last_updated:
        return "never"
    delta = max(0, now - last_updated)
    return f"{delta}s ago"


def _group_status(
    last_updated: Optional[int],
    last_error_at: Optional[int],
    now: int,
    staleness_warning_sec: int,
    staleness_critical_sec: int,
) -> str:
    if last_error_at and (last_updated is None or last_error_at >= last_updated):
        return "error"
    if last_updated is None:
        return "error"
    age = now - last_updated
    if age >= staleness_critical_sec:
        return "error"
    if age >= staleness_warning_sec:
        return "stale"
    return "healthy"


def get_health_status(
    tracker: HealthTracker,
    staleness_warning_sec: int = DEFAULT_STALENESS_WARNING_SEC,
    staleness_critical_sec: int = DEFAULT_STALENESS_CRITICAL_SEC,
    now: Optional[int] = None,
) -> HealthStatus:
    current = int(time.time()) if now is None else now
    groups: Dict[str, GroupHealth] = {}
    for key, entry in sorted(tracker.get_all().items()):
        groups[key] = {
            "last_update": _format_age(entry["last_updated"], current),
            "status": _group_status(
                last_updated=entry["last_updated"],
                last_error_at=entry["last_error_at"],
                now=current,
                staleness_warning_sec=staleness_warning_sec,
                staleness_critical_sec=staleness_critical_sec,
            ),
            "fetch_count": entry["fetch_count"],
            "error_count": entry["error_count"],
        }

    statuses = [group["status"] for group in groups.values()]
    overall_status = "healthy"
    if not statuses or all(status == "error" for status in statuses):
        overall_status = "down"
    elif any(status != "healthy" for status in statuses):
        overall_status = "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": int(current - START_TIME),
        "groups": groups,
    }
