"""
PostgreSQL Session Store
=========================
asyncpg-backed implementation of the SessionStore contract.

Tables:
- orchestrator_sessions (session_id PK, user_id, version, payload JSONB, updated_at)
- orchestrator_profiles (user_id PK, version, payload JSONB, updated_at)

Versioning: inserts only succeed for version 0, updates only succeed when
`version = expected`. Driver and network errors surface as ContextUnavailable.
"""

import asyncio
import logging
import time
from typing import Optional

import asyncpg

from .errors import ContextConflict, ContextUnavailable
from .models import SessionContext, UserProfile

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS orchestrator_sessions (
    session_id  TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    version     INTEGER NOT NULL,
    payload     JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS orchestrator_sessions_updated_idx
    ON orchestrator_sessions (updated_at);
CREATE TABLE IF NOT EXISTS orchestrator_profiles (
    user_id     TEXT PRIMARY KEY,
    version     INTEGER NOT NULL,
    payload     JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# Errors meaning "the store is down", as opposed to a bug in our SQL.
STORE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)


class PostgresSessionStore:
    """
    Manages session/profile persistence for the orchestrator.

    Usage:
        pool = await asyncpg.create_pool(dsn=DB_URL)
        store = PostgresSessionStore(pool, idle_timeout_s=3600)
        await store.ensure_schema()
    """

    def __init__(self, pool: asyncpg.Pool, idle_timeout_s: int = 3600):
        self.pool = pool
        self.idle_timeout_s = idle_timeout_s

    async def ensure_schema(self) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except STORE_ERRORS as e:
            raise ContextUnavailable(f"Session store unreachable: {e}") from e

    # ── Sessions ──────────────────────────────────────────────────

    async def load(self, session_id: str) -> Optional[SessionContext]:
        start = time.monotonic()
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT version, payload::text AS payload
                    FROM orchestrator_sessions
                    WHERE session_id = $1
                      AND updated_at > NOW() - make_interval(secs => $2)
                """, session_id, float(self.idle_timeout_s))
        except STORE_ERRORS as e:
            logger.error(f"Failed to load session {session_id}: {e}")
            raise ContextUnavailable(f"Session store unreachable: {e}") from e

        elapsed = (time.monotonic() - start) * 1000
        logger.debug(f"Session load for {session_id} took {elapsed:.1f}ms")
        if not row:
            return None
        context = SessionContext.model_validate_json(row["payload"])
        context.version = row["version"]
        return context

    async def save(self, context: SessionContext, expected_version: int) -> int:
        new_version = expected_version + 1
        context.version = new_version
        payload = context.model_dump_json()
        try:
            async with self.pool.acquire() as conn:
                if expected_version == 0:
                    row = await conn.fetchrow("""
                        INSERT INTO orchestrator_sessions
                            (session_id, user_id, version, payload, updated_at)
                        VALUES ($1, $2, $3, $4::jsonb, NOW())
                        ON CONFLICT (session_id) DO NOTHING
                        RETURNING version
                    """, context.session_id, context.user_id, new_version, payload)
                else:
                    row = await conn.fetchrow("""
                        UPDATE orchestrator_sessions
                        SET version = $3, payload = $4::jsonb, updated_at = NOW()
                        WHERE session_id = $1 AND version = $2
                        RETURNING version
                    """, context.session_id, expected_version, new_version, payload)
        except STORE_ERRORS as e:
            context.version = expected_version
            logger.error(f"Failed to save session {context.session_id}: {e}")
            raise ContextUnavailable(f"Session store unreachable: {e}") from e

        if not row:
            context.version = expected_version
            raise ContextConflict(context.session_id, expected_version)
        return row["version"]

    async def purge_expired(self) -> int:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    DELETE FROM orchestrator_sessions
                    WHERE updated_at <= NOW() - make_interval(secs => $1)
                """, float(self.idle_timeout_s))
        except STORE_ERRORS as e:
            raise ContextUnavailable(f"Session store unreachable: {e}") from e
        # asyncpg returns the command tag, e.g. "DELETE 3"
        purged = int(result.split()[-1]) if result else 0
        if purged:
            logger.info(f"Purged {purged} idle session(s)")
        return purged

    # ── Profiles ──────────────────────────────────────────────────

    async def load_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT version, payload::text AS payload
                    FROM orchestrator_profiles
                    WHERE user_id = $1
                """, user_id)
        except STORE_ERRORS as e:
            logger.error(f"Failed to load profile for {user_id}: {e}")
            raise ContextUnavailable(f"Profile store unreachable: {e}") from e

        if not row:
            return None
        profile = UserProfile.model_validate_json(row["payload"])
        profile.version = row["version"]
        return profile

    async def save_profile(self, profile: UserProfile, expected_version: int) -> int:
        new_version = expected_version + 1
        profile.version = new_version
        payload = profile.model_dump_json()
        try:
            async with self.pool.acquire() as conn:
                if expected_version == 0:
                    row = await conn.fetchrow("""
                        INSERT INTO orchestrator_profiles (user_id, version, payload, updated_at)
                        VALUES ($1, $2, $3::jsonb, NOW())
                        ON CONFLICT (user_id) DO NOTHING
                        RETURNING version
                    """, profile.user_id, new_version, payload)
                else:
                    row = await conn.fetchrow("""
                        UPDATE orchestrator_profiles
                        SET version = $3, payload = $4::jsonb, updated_at = NOW()
                        WHERE user_id = $1 AND version = $2
                        RETURNING version
                    """, profile.user_id, expected_version, new_version, payload)
        except STORE_ERRORS as e:
            profile.version = expected_version
            logger.error(f"Failed to save profile for {profile.user_id}: {e}")
            raise ContextUnavailable(f"Profile store unreachable: {e}") from e

        if not row:
            profile.version = expected_version
            raise ContextConflict(f"profile:{profile.user_id}", expected_version)
        return row["version"]
