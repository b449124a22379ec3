"""
Tests for the in-memory session store and SessionContext bookkeeping.
"""

import pytest

from assistant_orchestrator.errors import ContextConflict
from assistant_orchestrator.models import (
    ConversationEntry,
    Domain,
    SessionContext,
    SignalRecord,
    SkillLevel,
    SkillSignal,
    UserProfile,
)
from assistant_orchestrator.store import InMemorySessionStore

from conftest import FakeClock


def entry(turn_id, topic=None):
    return ConversationEntry(turn_id=turn_id, request=f"q{turn_id}", response=f"a{turn_id}", topic=topic)


class TestVersioning:

    async def test_missing_session_loads_none(self, store):
        assert await store.load("nope") is None

    async def test_first_save_expects_zero(self, store):
        ctx = SessionContext(session_id="s1", user_id="u1")
        assert await store.save(ctx, 0) == 1
        loaded = await store.load("s1")
        assert loaded.version == 1
        assert loaded.user_id == "u1"

    async def test_stale_version_conflicts(self, store):
        ctx = SessionContext(session_id="s1", user_id="u1")
        await store.save(ctx, 0)
        stale = await store.load("s1")
        fresh = await store.load("s1")
        await store.save(fresh, fresh.version)

        with pytest.raises(ContextConflict) as exc:
            await store.save(stale, stale.version)
        assert exc.value.expected == 1
        assert exc.value.actual == 2
        assert stale.version == 1

    async def test_loaded_objects_are_independent(self, store):
        ctx = SessionContext(session_id="s1", user_id="u1")
        await store.save(ctx, 0)
        first = await store.load("s1")
        first.active_topic = "recursion"
        second = await store.load("s1")
        assert second.active_topic is None

    async def test_profile_versioning(self, store):
        profile = UserProfile(user_id="u1")
        profile.skill.levels[Domain.CODE] = SkillLevel.ADVANCED
        await store.save_profile(profile, 0)
        loaded = await store.load_profile("u1")
        assert loaded.version == 1
        assert loaded.skill.levels[Domain.CODE] == SkillLevel.ADVANCED
        with pytest.raises(ContextConflict) as exc:
            await store.save_profile(UserProfile(user_id="u1"), 0)
        assert exc.value.key == "profile:u1"


class TestExpiry:

    async def test_idle_session_expires(self):
        clock = FakeClock()
        store = InMemorySessionStore(idle_timeout_s=60, clock=clock)
        await store.save(SessionContext(session_id="s1", user_id="u1"), 0)
        clock.advance(61)
        assert await store.load("s1") is None

    async def test_profiles_outlive_sessions(self):
        clock = FakeClock()
        store = InMemorySessionStore(idle_timeout_s=60, clock=clock)
        await store.save(SessionContext(session_id="s1", user_id="u1"), 0)
        await store.save_profile(UserProfile(user_id="u1"), 0)
        clock.advance(61)
        assert await store.purge_expired() == 1
        assert await store.load_profile("u1") is not None


class TestHistory:

    def test_cap_evicts_oldest(self):
        ctx = SessionContext(session_id="s1", user_id="u1")
        for i in range(4):
            ctx.append_entry(entry(str(i)), cap=3)
        assert [e.turn_id for e in ctx.conversation_history] == ["1", "2", "3"]

    def test_duplicate_turn_is_ignored(self):
        ctx = SessionContext(session_id="s1", user_id="u1")
        ctx.append_entry(entry("a"), cap=3)
        ctx.append_entry(entry("a"), cap=3)
        assert len(ctx.conversation_history) == 1

    def test_active_topic_entry_survives_eviction(self):
        ctx = SessionContext(session_id="s1", user_id="u1", active_topic="docker")
        ctx.append_entry(entry("0", topic="docker"), cap=2)
        ctx.append_entry(entry("1"), cap=2)
        evicted = ctx.append_entry(entry("2"), cap=2)
        assert [e.turn_id for e in evicted] == ["1"]
        assert [e.turn_id for e in ctx.conversation_history] == ["0", "2"]

    def test_signal_window_trims(self):
        ctx = SessionContext(session_id="s1", user_id="u1")
        for i in range(5):
            ctx.push_signal(
                SignalRecord(
                    turn_id=str(i),
                    domain=Domain.CODE,
                    signal=SkillSignal.NEUTRAL,
                    level_at=SkillLevel.BEGINNER,
                ),
                window=3,
            )
        assert [r.turn_id for r in ctx.recent_signals] == ["2", "3", "4"]
