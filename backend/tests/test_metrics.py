"""
Tests for the in-memory metrics collector.
"""

from assistant_orchestrator.metrics import Histogram, MetricsCollector


def test_histogram_percentiles():
    h = Histogram("latency", max_samples=100)
    for v in range(1, 101):
        h.observe(float(v))
    assert h.count == 100
    assert h.avg == 50.5
    assert h.p50 == 51.0
    assert h.p95 == 96.0


def test_histogram_ring_buffer():
    h = Histogram("latency", max_samples=3)
    for v in (1.0, 2.0, 3.0, 100.0):
        h.observe(v)
    assert h.count == 3
    assert h.avg == 35.0


def test_turn_recording():
    m = MetricsCollector()
    m.record_turn("session-abcdef", ["debug", "code"], 12.5, degraded=True, saved=False)
    m.record_turn("session-abcdef", [], 3.0, degraded=False, saved=True)
    assert m.turns_total.by_label() == {"debug": 1, "none": 1}
    assert m.unsaved_turns.value == 1
    assert m.active_session_count == 1
    summary = m.summary()
    assert summary["recent_turns"][0]["session_id"] == "session-..."


def test_health_summary_error_rate():
    m = MetricsCollector()
    m.record_turn("s1", ["concept"], 5.0, degraded=False, saved=True)
    m.record_error("context_unavailable")
    assert m.health_summary()["error_rate"] == 1.0


def test_idle_sessions_drop_out_of_active_count(clock):
    m = MetricsCollector(session_ttl_s=60, clock=clock)
    m.record_turn("s1", ["code"], 1.0, degraded=False, saved=True)
    clock.advance(30)
    m.record_turn("s2", ["code"], 1.0, degraded=False, saved=True)
    assert m.active_session_count == 2

    clock.advance(45)
    assert m.active_session_count == 1
    clock.advance(60)
    assert m.active_session_count == 0


def test_tracked_sessions_are_bounded(clock):
    m = MetricsCollector(max_tracked_sessions=3, clock=clock)
    for i in range(10):
        m.record_turn(f"s{i}", [], 1.0, degraded=False, saved=True)
    assert m.active_session_count == 3
    assert list(m._active_sessions) == ["s7", "s8", "s9"]
