from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from binario.models import FREE_NEURONS_PER_DAY

MAX_RECORDS = 10_000
REPORT_WINDOW_DAYS = 7


@dataclass(slots=True)
class UsageRecord:
    model: str
    provider: str
    input_tokens: int
    output_tokens: int
    neurons: int
    cached: bool
    latency_ms: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class DailyUsage:
    date: str
    neurons_used: int = 0
    neurons_limit: int = FREE_NEURONS_PER_DAY
    request_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    model_breakdown: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class UsageTracker:
    """In-memory usage ledger, bounded to the most recent records."""

    def __init__(
        self,
        *,
        free_limit: int = FREE_NEURONS_PER_DAY,
        max_records: int = MAX_RECORDS,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.free_limit = free_limit
        self._records: deque[UsageRecord] = deque(maxlen=max_records)
        self._daily: dict[str, DailyUsage] = {}
        self._today = today or (lambda: datetime.now(tz=timezone.utc).date())
        self._lock = threading.Lock()

    def track(self, record: UsageRecord) -> UsageRecord:
        today = self._today()
        key = today.isoformat()
        with self._lock:
            self._records.append(record)
            daily = self._daily.get(key)
            if daily is None:
                # Days outside the report window are never read again.
                oldest = (today - timedelta(days=REPORT_WINDOW_DAYS - 1)).isoformat()
                for stale in [day for day in self._daily if day < oldest]:
                    del self._daily[stale]
                daily = DailyUsage(date=key, neurons_limit=self.free_limit)
                self._daily[key] = daily
            daily.neurons_used += record.neurons
            daily.request_count += 1
            daily.total_input_tokens += record.input_tokens
            daily.total_output_tokens += record.output_tokens
            breakdown = daily.model_breakdown.setdefault(record.model, {"requests": 0, "neurons": 0})
            breakdown["requests"] += 1
            breakdown["neurons"] += record.neurons
        return record

    def records(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._records)

    def daily_usage(self, day: date | None = None) -> DailyUsage:
        key = (day or self._today()).isoformat()
        with self._lock:
            daily = self._daily.get(key)
            if daily is None:
                return DailyUsage(date=key, neurons_limit=self.free_limit)
            return DailyUsage(
                date=daily.date,
                neurons_used=daily.neurons_used,
                neurons_limit=daily.neurons_limit,
                request_count=daily.request_count,
                total_input_tokens=daily.total_input_tokens,
                total_output_tokens=daily.total_output_tokens,
                model_breakdown={k: dict(v) for k, v in daily.model_breakdown.items()},
            )

    def remaining_neurons(self) -> int:
        return max(0, self.free_limit - self.daily_usage().neurons_used)

    def report(self) -> dict[str, Any]:
        today = self._today()
        current = self.daily_usage(today)
        last_7_days = [
            self.daily_usage(day)
            for day in (today - timedelta(days=offset) for offset in range(REPORT_WINDOW_DAYS - 1, -1, -1))
        ]
        last_7_days = [d for d in last_7_days if d.request_count]
        neurons_used = sum(d.neurons_used for d in last_7_days)
        request_count = sum(d.request_count for d in last_7_days)
        return {
            "current_day": current.to_dict(),
            "last_7_days": [d.to_dict() for d in last_7_days],
            "totals": {
                "neurons_used": neurons_used,
                "request_count": request_count,
                "avg_neurons_per_request": neurons_used / request_count if request_count else 0,
            },
            "recommendations": self._recommendations(current),
        }

    def _recommendations(self, current: DailyUsage) -> list[str]:
        recommendations: list[str] = []
        percent_used = current.neurons_used / self.free_limit * 100 if self.free_limit else 0
        if percent_used >= 90:
            recommendations.append("You have used 90%+ of your daily free neurons. Consider using smaller models.")
        elif percent_used >= 70:
            recommendations.append("You have used 70%+ of your daily free neurons.")

        if current.model_breakdown:
            model, stats = max(current.model_breakdown.items(), key=lambda item: item[1]["neurons"])
            if stats["neurons"] > self.free_limit * 0.5:
                share = round(stats["neurons"] / current.neurons_used * 100)
                recommendations.append(
                    f"{model} is consuming {share}% of your neurons. Consider llama-3.2-1b for lower consumption."
                )

        if not recommendations:
            recommendations.append("Usage is healthy. You have plenty of free neurons remaining.")
        return recommendations

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._daily.clear()
