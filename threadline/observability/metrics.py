"""Lightweight relay metrics collector backed by JSONL."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from threadline.utils.helpers import ensure_dir


def _now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _to_iso(ts: datetime | None = None) -> str:
    return (ts or _now_utc()).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except ValueError:
        return None


def _pct(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round((numerator / denominator) * 100.0, 2)


def _p95(values: list[float]) -> float:
    if not values:
        return 0.0
    data = sorted(float(v) for v in values)
    index = int(0.95 * (len(data) - 1))
    return round(data[index], 2)


class MetricsStore:
    """Append-only relay event store with aggregated snapshots."""

    def __init__(self, events_path: Path):
        self.events_path = events_path
        ensure_dir(events_path.parent)

    def _append(self, payload: dict[str, Any]) -> bool:
        record = dict(payload)
        record.setdefault("ts", _to_iso())
        line = json.dumps(record, ensure_ascii=False)
        try:
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            return True
        except OSError:
            return False

    def record_run(
        self,
        *,
        contact_id: str,
        thread_id: str,
        outcome: str,
        latency_ms: float,
        attempts: int = 0,
        budget: int = 0,
        status_checks: int = 0,
        delivered: bool = False,
        new_thread: bool = False,
        error: str = "",
    ) -> bool:
        """Record the handling of one inbound message."""
        return self._append(
            {
                "type": "relay",
                "contact_id": (contact_id or "").strip(),
                "thread_id": (thread_id or "").strip(),
                "outcome": (outcome or "").strip(),
                "latency_ms": round(float(latency_ms), 2),
                "attempts": max(0, int(attempts)),
                "budget": max(0, int(budget)),
                "status_checks": max(0, int(status_checks)),
                "delivered": bool(delivered),
                "new_thread": bool(new_thread),
                "error": (error or "").strip()[:500],
            }
        )

    def record_upload(
        self,
        *,
        success: bool,
        size_bytes: int,
        latency_ms: float,
        error: str = "",
    ) -> bool:
        return self._append(
            {
                "type": "upload",
                "success": bool(success),
                "size_bytes": max(0, int(size_bytes)),
                "latency_ms": round(float(latency_ms), 2),
                "error": (error or "").strip()[:500],
            }
        )

    def _iter_events(self, since: datetime | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        try:
            if not self.events_path.exists():
                return []
            for raw_line in self.events_path.read_text(encoding="utf-8").splitlines():
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(event, dict):
                    continue
                if since is not None:
                    ts = _parse_iso(str(event.get("ts", "")))
                    if ts is None or ts < since:
                        continue
                items.append(event)
        except OSError:
            return []
        return items

    def snapshot(self, hours: int = 24) -> dict[str, Any]:
        """Build aggregated metrics snapshot for the given window."""
        window_hours = max(1, int(hours))
        since = _now_utc() - timedelta(hours=window_hours)
        events = self._iter_events(since=since)

        relay_events = [e for e in events if e.get("type") == "relay"]
        upload_events = [e for e in events if e.get("type") == "upload"]

        delivered = sum(1 for e in relay_events if bool(e.get("delivered")))
        completed = sum(1 for e in relay_events if e.get("outcome") == "completed")
        escalations = sum(max(0, int(e.get("attempts", 0) or 0) - 1) for e in relay_events)
        new_threads = sum(1 for e in relay_events if bool(e.get("new_thread")))
        uploads_ok = sum(1 for e in upload_events if bool(e.get("success")))
        outcomes = Counter(str(e.get("outcome", "") or "unknown") for e in relay_events)

        return {
            "window_hours": window_hours,
            "generated_at": _to_iso(),
            "totals": {"events": len(events)},
            "relay": {
                "messages": len(relay_events),
                "delivered": delivered,
                "delivery_rate": _pct(delivered, len(relay_events)),
                "completion_rate": _pct(completed, len(relay_events)),
                "escalations": escalations,
                "new_threads": new_threads,
                "latency_p95_ms": _p95([float(e.get("latency_ms", 0.0)) for e in relay_events]),
                "outcomes": [
                    {"outcome": name, "count": count} for name, count in outcomes.most_common()
                ],
            },
            "uploads": {
                "count": len(upload_events),
                "success_rate": _pct(uploads_ok, len(upload_events)),
                "latency_p95_ms": _p95([float(e.get("latency_ms", 0.0)) for e in upload_events]),
            },
        }
