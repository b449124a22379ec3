"""
Session Store
==============
Holds SessionContext and UserProfile records with optimistic concurrency.

Contract:
- load / load_profile     → record or None (missing and expired look the same)
- save / save_profile     → new version, or ContextConflict when the stored
                            version differs from `expected_version`
- backend failures        → ContextUnavailable

Version 0 means "never saved"; the first save must expect 0.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from .errors import ContextConflict
from .models import SessionContext, UserProfile, utcnow

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def load(self, session_id: str) -> Optional[SessionContext]:
        ...

    async def save(self, context: SessionContext, expected_version: int) -> int:
        ...

    async def load_profile(self, user_id: str) -> Optional[UserProfile]:
        ...

    async def save_profile(self, profile: UserProfile, expected_version: int) -> int:
        ...

    async def purge_expired(self) -> int:
        ...


class InMemorySessionStore:
    """
    Process-local store. Records are kept as JSON so callers never share
    mutable objects with the store.
    """

    def __init__(
        self,
        idle_timeout_s: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_timeout_s = idle_timeout_s
        self._clock = clock
        self._sessions: Dict[str, Tuple[int, str, float]] = {}   # id → (version, json, touched)
        self._profiles: Dict[str, Tuple[int, str]] = {}
        self._lock = threading.Lock()

    def _expired(self, touched: float) -> bool:
        return self._clock() - touched > self.idle_timeout_s

    async def load(self, session_id: str) -> Optional[SessionContext]:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            version, payload, touched = record
            if self._expired(touched):
                del self._sessions[session_id]
                logger.info(f"Session {session_id} expired after {self.idle_timeout_s}s idle")
                return None
        context = SessionContext.model_validate_json(payload)
        context.version = version
        return context

    async def save(self, context: SessionContext, expected_version: int) -> int:
        with self._lock:
            record = self._sessions.get(context.session_id)
            current = record[0] if record else 0
            if current != expected_version:
                raise ContextConflict(context.session_id, expected_version, current)
            new_version = current + 1
            context.version = new_version
            context.updated_at = utcnow()
            self._sessions[context.session_id] = (
                new_version, context.model_dump_json(), self._clock()
            )
        return new_version

    async def load_profile(self, user_id: str) -> Optional[UserProfile]:
        with self._lock:
            record = self._profiles.get(user_id)
        if record is None:
            return None
        version, payload = record
        profile = UserProfile.model_validate_json(payload)
        profile.version = version
        return profile

    async def save_profile(self, profile: UserProfile, expected_version: int) -> int:
        with self._lock:
            record = self._profiles.get(profile.user_id)
            current = record[0] if record else 0
            if current != expected_version:
                raise ContextConflict(f"profile:{profile.user_id}", expected_version, current)
            new_version = current + 1
            profile.version = new_version
            profile.updated_at = utcnow()
            self._profiles[profile.user_id] = (new_version, profile.model_dump_json())
        return new_version

    async def purge_expired(self) -> int:
        with self._lock:
            expired = [sid for sid, (_, _, t) in self._sessions.items() if self._expired(t)]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info(f"Purged {len(expired)} idle session(s)")
        return len(expired)
