"""
Circuit Breaker Pattern
========================
Stops calling a capability provider whose recent calls mostly fail.

State Machine:
  CLOSED    ──[failure rate >= threshold in window]──►  OPEN
  OPEN      ──[cooldown elapsed]─────────────────────►  HALF_OPEN
  HALF_OPEN ──[trial call succeeds]──────────────────►  CLOSED
  HALF_OPEN ──[trial call fails]─────────────────────►  OPEN

Each provider gets its own breaker. Breakers are shared by every session in
the process, so all bookkeeping happens under a lock.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class CBState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Permit(Enum):
    """What `try_acquire` granted. Falsy when the call was rejected."""
    DENIED = "denied"
    NORMAL = "normal"
    TRIAL = "trial"          # The single half-open call

    def __bool__(self) -> bool:
        return self is not Permit.DENIED


@dataclass
class CircuitBreakerStats:
    """Observable stats for monitoring."""
    total_calls: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_rejections: int = 0       # Calls rejected while OPEN / trial busy
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    state_changes: int = 0
    opened_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "consecutive_failures": self.consecutive_failures,
            "success_rate": (
                round(self.total_successes / self.total_calls, 3)
                if self.total_calls > 0 else 1.0
            ),
        }


class CircuitBreaker:
    """
    Per-provider circuit breaker over a rolling window of outcomes.

    Usage:
        cb = CircuitBreaker("debug", failure_rate_threshold=0.5, window_s=60)
        permit = cb.try_acquire()
        if permit:
            ...call provider...
            cb.record_success()  # or cb.record_failure()
    """

    def __init__(
        self,
        name: str,
        failure_rate_threshold: float = 0.5,
        window_s: float = 60.0,
        min_calls: int = 4,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_trip: Optional[Callable[[str], None]] = None,
    ):
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.window_s = window_s
        self.min_calls = min_calls
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._on_trip = on_trip

        self._state = CBState.CLOSED
        self._stats = CircuitBreakerStats()
        self._window: Deque[Tuple[float, bool]] = deque()
        self._trial_in_flight = False
        self._lock = threading.RLock()

    @property
    def state(self) -> CBState:
        with self._lock:
            # Auto-transition from OPEN → HALF_OPEN on cooldown
            if self._state == CBState.OPEN and self._stats.opened_at is not None:
                if self._clock() - self._stats.opened_at >= self.cooldown_s:
                    self._transition(CBState.HALF_OPEN)
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    @property
    def failure_rate(self) -> float:
        with self._lock:
            self._prune()
            if not self._window:
                return 0.0
            failures = sum(1 for _, ok in self._window if not ok)
            return failures / len(self._window)

    def try_acquire(self) -> Permit:
        """Reserve permission for one call. Half-open admits a single trial."""
        with self._lock:
            s = self.state
            if s == CBState.CLOSED:
                return Permit.NORMAL
            if s == CBState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return Permit.TRIAL
            self._stats.total_rejections += 1
            return Permit.DENIED

    def release(self, permit: Permit):
        """Give back a reservation that ended without an outcome (cancelled call)."""
        if permit is not Permit.TRIAL:
            return
        with self._lock:
            self._trial_in_flight = False

    def _transition(self, new_state: CBState):
        old = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CBState.OPEN:
            self._stats.opened_at = self._clock()
        if new_state == CBState.HALF_OPEN:
            self._trial_in_flight = False
        if new_state == CBState.CLOSED:
            self._stats.consecutive_failures = 0
            self._stats.opened_at = None
            self._window.clear()

        logger.info(
            f"🔌 Circuit breaker [{self.name}]: {old.value} → {new_state.value} "
            f"(failures={self._stats.consecutive_failures})"
        )
        if new_state == CBState.OPEN and self._on_trip:
            self._on_trip(self.name)

    def _prune(self):
        cutoff = self._clock() - self.window_s
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def record_success(self):
        """Record a successful call."""
        with self._lock:
            now = self._clock()
            self._stats.total_calls += 1
            self._stats.total_successes += 1
            self._stats.consecutive_failures = 0
            self._stats.last_success_time = now
            self._window.append((now, True))

            if self._state == CBState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(CBState.CLOSED)

    def record_failure(self):
        """Record a failed call (error or timeout)."""
        with self._lock:
            now = self._clock()
            self._stats.total_calls += 1
            self._stats.total_failures += 1
            self._stats.consecutive_failures += 1
            self._stats.last_failure_time = now
            self._window.append((now, False))
            self._prune()

            if self._state == CBState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(CBState.OPEN)
            elif self._state == CBState.CLOSED and len(self._window) >= self.min_calls:
                failures = sum(1 for _, ok in self._window if not ok)
                if failures / len(self._window) >= self.failure_rate_threshold:
                    self._transition(CBState.OPEN)

    def time_until_recovery(self) -> float:
        with self._lock:
            if self._state != CBState.OPEN or self._stats.opened_at is None:
                return 0.0
            elapsed = self._clock() - self._stats.opened_at
            return max(0.0, self.cooldown_s - elapsed)

    def reset(self):
        """Manual reset (admin action)."""
        with self._lock:
            self._transition(CBState.CLOSED)
            self._trial_in_flight = False
        logger.info(f"🔄 Circuit breaker [{self.name}] manually reset")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_rate": round(self.failure_rate, 3),
            "recovery_in_s": round(self.time_until_recovery(), 1),
            "stats": self._stats.to_dict(),
            "config": {
                "failure_rate_threshold": self.failure_rate_threshold,
                "window_s": self.window_s,
                "min_calls": self.min_calls,
                "cooldown_s": self.cooldown_s,
            },
        }


class CircuitBreakerRegistry:
    """
    Holds one breaker per provider. Creates breakers on first access.
    Passed explicitly into the resilience wrapper; tests build a fresh one per case.
    """

    def __init__(
        self,
        failure_rate_threshold: float = 0.5,
        window_s: float = 60.0,
        min_calls: int = 4,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_trip: Optional[Callable[[str], None]] = None,
    ):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self._failure_rate_threshold = failure_rate_threshold
        self._window_s = window_s
        self._min_calls = min_calls
        self._cooldown_s = cooldown_s
        self._clock = clock
        self._on_trip = on_trip

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the circuit breaker for a provider."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(
                    name=name,
                    failure_rate_threshold=self._failure_rate_threshold,
                    window_s=self._window_s,
                    min_calls=self._min_calls,
                    cooldown_s=self._cooldown_s,
                    clock=self._clock,
                    on_trip=self._on_trip,
                )
            return self._breakers[name]

    def all_status(self) -> Dict[str, dict]:
        """Get status of all circuit breakers."""
        return {name: cb.to_dict() for name, cb in list(self._breakers.items())}

    def reset_all(self):
        for cb in list(self._breakers.values()):
            cb.reset()
