"""
Metrics Collector
==================
In-memory counters and ring-buffer histograms for turns, routing and
provider calls. Exposed through the /metrics endpoint; no external sink.
"""

import logging
import threading
import time
from collections import OrderedDict, defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class Counter:
    """Monotonically increasing counter."""
    def __init__(self, name: str):
        self.name = name
        self._value: int = 0
        self._per_label: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def inc(self, label: str = "__total__", amount: int = 1):
        with self._lock:
            self._value += amount
            self._per_label[label] += amount

    @property
    def value(self) -> int:
        return self._value

    def by_label(self) -> Dict[str, int]:
        return dict(self._per_label)

    def to_dict(self) -> dict:
        return {"name": self.name, "total": self._value, "by_label": self.by_label()}


class Histogram:
    """Distribution tracker (latency, etc.)."""
    def __init__(self, name: str, max_samples: int = 500):
        self.name = name
        self._samples: deque = deque(maxlen=max_samples)

    def observe(self, value: float):
        self._samples.append(value)

    @property
    def count(self) -> int:
        return len(self._samples)

    @property
    def avg(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    @property
    def p50(self) -> float:
        return self._percentile(50)

    @property
    def p95(self) -> float:
        return self._percentile(95)

    def _percentile(self, pct: int) -> float:
        if not self._samples:
            return 0.0
        sorted_s = sorted(self._samples)
        idx = int(len(sorted_s) * pct / 100)
        return sorted_s[min(idx, len(sorted_s) - 1)]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "count": self.count,
            "avg": round(self.avg, 3),
            "p50": round(self.p50, 3),
            "p95": round(self.p95, 3),
        }


class MetricsCollector:
    """
    Central metrics collection for the orchestrator.

    Metrics tracked:
    - turns_total            (Counter)   — by primary domain
    - routing_outcomes       (Counter)   — single | multi | clarify | low_confidence
    - turn_latency_ms        (Histogram) — end-to-end process() time
    - provider_calls         (Counter)   — by "domain:status"
    - provider_latency_ms    (Histogram)
    - circuit_breaker_trips  (Counter)   — by provider
    - skill_changes          (Counter)   — by "domain:direction"
    - context_conflicts      (Counter)
    - unsaved_turns          (Counter)
    - errors_total           (Counter)   — by error kind
    """

    def __init__(
        self,
        buffer_size: int = 1000,
        session_ttl_s: float = 3600.0,
        max_tracked_sessions: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._start_time = clock()
        self._session_ttl_s = session_ttl_s
        self._max_tracked_sessions = max_tracked_sessions

        self.turns_total = Counter("turns_total")
        self.routing_outcomes = Counter("routing_outcomes")
        self.provider_calls = Counter("provider_calls")
        self.circuit_breaker_trips = Counter("circuit_breaker_trips")
        self.skill_changes = Counter("skill_changes")
        self.context_conflicts = Counter("context_conflicts")
        self.unsaved_turns = Counter("unsaved_turns")
        self.errors_total = Counter("errors_total")

        self.turn_latency = Histogram("turn_latency_ms", buffer_size)
        self.provider_latency = Histogram("provider_latency_ms", buffer_size)

        self._active_sessions: "OrderedDict[str, float]" = OrderedDict()   # session_id → last seen
        self._sessions_lock = threading.Lock()
        self._recent_turns: deque = deque(maxlen=50)

    def record_turn(
        self,
        session_id: str,
        domains: List[str],
        latency_ms: float,
        degraded: bool,
        saved: bool,
    ):
        """Record one completed turn."""
        self.turns_total.inc(domains[0] if domains else "none")
        self.turn_latency.observe(latency_ms)
        self._touch_session(session_id)
        if not saved:
            self.unsaved_turns.inc()
        self._recent_turns.append({
            "session_id": session_id[:8] + "...",
            "domains": domains,
            "degraded": degraded,
            "saved": saved,
            "latency_ms": round(latency_ms, 1),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def _touch_session(self, session_id: str):
        with self._sessions_lock:
            self._active_sessions[session_id] = self._clock()
            self._active_sessions.move_to_end(session_id)
            self._prune_sessions()

    def _prune_sessions(self):
        cutoff = self._clock() - self._session_ttl_s
        while self._active_sessions:
            oldest = next(iter(self._active_sessions.values()))
            if oldest >= cutoff and len(self._active_sessions) <= self._max_tracked_sessions:
                break
            self._active_sessions.popitem(last=False)

    def record_routing(self, outcome: str):
        self.routing_outcomes.inc(outcome)

    def record_provider_call(self, domain: str, status: str, latency_ms: float):
        self.provider_calls.inc(f"{domain}:{status}")
        self.provider_latency.observe(latency_ms)

    def record_circuit_trip(self, provider: str):
        self.circuit_breaker_trips.inc(provider)

    def record_skill_change(self, domain: str, direction: str):
        self.skill_changes.inc(f"{domain}:{direction}")

    def record_conflict(self):
        self.context_conflicts.inc()

    def record_error(self, error_type: str):
        self.errors_total.inc(error_type)

    @property
    def uptime_seconds(self) -> float:
        return self._clock() - self._start_time

    @property
    def active_session_count(self) -> int:
        """Sessions seen within the idle timeout."""
        with self._sessions_lock:
            self._prune_sessions()
            return len(self._active_sessions)

    def summary(self) -> Dict[str, Any]:
        """Full metrics summary for /metrics endpoint."""
        return {
            "uptime_seconds": round(self.uptime_seconds, 1),
            "active_sessions": self.active_session_count,
            "turns": self.turns_total.to_dict(),
            "routing_outcomes": self.routing_outcomes.to_dict(),
            "turn_latency": self.turn_latency.to_dict(),
            "provider_calls": self.provider_calls.to_dict(),
            "provider_latency": self.provider_latency.to_dict(),
            "circuit_breaker_trips": self.circuit_breaker_trips.to_dict(),
            "skill_changes": self.skill_changes.to_dict(),
            "context_conflicts": self.context_conflicts.to_dict(),
            "unsaved_turns": self.unsaved_turns.to_dict(),
            "errors": self.errors_total.to_dict(),
            "recent_turns": list(self._recent_turns)[-10:],
        }

    def health_summary(self) -> Dict[str, Any]:
        """Compact summary for health endpoint."""
        return {
            "uptime_s": round(self.uptime_seconds, 0),
            "total_turns": self.turns_total.value,
            "active_sessions": self.active_session_count,
            "avg_latency_ms": round(self.turn_latency.avg, 1),
            "p95_latency_ms": round(self.turn_latency.p95, 1),
            "error_rate": (
                round(self.errors_total.value / max(self.turns_total.value, 1), 4)
            ),
        }
