"""
Orchestrator Models
====================
Pydantic models for API contracts, session state, and provider exchange.
Single source of truth — imported by the orchestrator, the stores and the HTTP layer.
"""

from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ─────────────────────────────────────────────────────────

class Domain(str, Enum):
    """Capability provider domains."""
    CONCEPT = "concept"
    CODE = "code"
    DEBUG = "debug"
    DOCS = "docs"
    DEPLOY = "deploy"
    WORKFLOW = "workflow"
    TECH_ADVICE = "tech_advice"


class SkillLevel(str, Enum):
    """Ordinal proficiency estimate. Declaration order is the total order."""
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def shift(self, steps: int) -> "SkillLevel":
        """Move up (positive) or down (negative), clamped to the ends."""
        idx = min(max(self.rank + steps, 0), len(_LEVEL_ORDER) - 1)
        return _LEVEL_ORDER[idx]

    def __lt__(self, other):
        if not isinstance(other, SkillLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, SkillLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, SkillLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, SkillLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_ORDER = list(SkillLevel)


class SkillSignal(str, Enum):
    """Evidence extracted from one turn."""
    CONFUSION = "confusion"
    CORRECT_ATTEMPT = "correct_attempt"
    INCORRECT_ATTEMPT = "incorrect_attempt"
    MASTERY_DECLARED = "mastery_declared"
    NEUTRAL = "neutral"


class TurnPhase(str, Enum):
    """Per-request orchestrator state machine."""
    IDLE = "idle"
    CONTEXT_LOADED = "context_loaded"
    ROUTED = "routed"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    CONTEXT_UPDATED = "context_updated"
    RESPONDED = "responded"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"   # Substituted fallback content
    ERROR = "error"         # Provider rejected the input permanently


# ── User Profile ──────────────────────────────────────────────────

class Preferences(BaseModel):
    languages: List[str] = Field(default_factory=list)
    communication_style: str = "balanced"   # concise | balanced | detailed


class Milestone(BaseModel):
    at: datetime = Field(default_factory=utcnow)
    level: SkillLevel
    description: str


class LearningProgress(BaseModel):
    """Progress on one topic across sessions."""
    topic: str
    started_at: datetime = Field(default_factory=utcnow)
    current_level: SkillLevel = SkillLevel.BEGINNER
    target_level: SkillLevel = SkillLevel.INTERMEDIATE
    milestones: List[Milestone] = Field(default_factory=list)


class SkillProfile(BaseModel):
    """Per-domain levels plus the derived overall level."""
    levels: Dict[Domain, SkillLevel] = Field(default_factory=dict)
    overall: SkillLevel = SkillLevel.BEGINNER

    def level_for(self, domain: Domain) -> SkillLevel:
        return self.levels.get(domain, self.overall)

    def recompute_overall(self) -> SkillLevel:
        """Mode of domain levels; ties go to the lower level."""
        if not self.levels:
            return self.overall
        counts = Counter(self.levels.values())
        top = max(counts.values())
        self.overall = min(level for level, n in counts.items() if n == top)
        return self.overall


class UserProfile(BaseModel):
    """Identity-scoped, durable learner state."""
    user_id: str
    skill: SkillProfile = Field(default_factory=SkillProfile)
    preferences: Preferences = Field(default_factory=Preferences)
    progress_history: List[LearningProgress] = Field(default_factory=list)
    applied_turns: List[str] = Field(default_factory=list)   # Recent turn ids already folded in
    version: int = 0                      # 0 = never persisted
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def progress_for(self, topic: str) -> Optional[LearningProgress]:
        for progress in reversed(self.progress_history):
            if progress.topic == topic:
                return progress
        return None

    def has_applied(self, turn_id: str) -> bool:
        return turn_id in self.applied_turns

    def mark_applied(self, turn_id: str, keep: int) -> None:
        if turn_id in self.applied_turns:
            return
        self.applied_turns.append(turn_id)
        if len(self.applied_turns) > keep:
            del self.applied_turns[: len(self.applied_turns) - keep]


# ── Session Context ───────────────────────────────────────────────

class SignalRecord(BaseModel):
    """One classified turn, kept in the rolling signal window."""
    turn_id: str
    domain: Domain
    signal: SkillSignal
    level_at: SkillLevel                  # Domain level when the signal was observed
    at: datetime = Field(default_factory=utcnow)


class ConversationEntry(BaseModel):
    turn_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    request: str
    response: str
    domains: List[Domain] = Field(default_factory=list)
    topic: Optional[str] = None
    feedback: Optional[SkillSignal] = None
    degraded: bool = False


class SessionContext(BaseModel):
    """Conversation-scoped state. `user_id` is a lookup key, never an owner."""
    session_id: str
    user_id: str
    learning_mode_active: bool = False
    conversation_history: List[ConversationEntry] = Field(default_factory=list)
    active_topic: Optional[str] = None
    active_domain: Optional[Domain] = None    # Primary domain of the last routed turn
    recent_signals: List[SignalRecord] = Field(default_factory=list)
    version: int = 0                      # 0 = never persisted
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def has_turn(self, turn_id: str) -> bool:
        return any(e.turn_id == turn_id for e in self.conversation_history)

    def signal_for(self, turn_id: str) -> Optional[SignalRecord]:
        for record in self.recent_signals:
            if record.turn_id == turn_id:
                return record
        return None

    def append_entry(self, entry: ConversationEntry, cap: int) -> List[ConversationEntry]:
        """
        Append a turn and evict down to `cap`.

        Eviction takes the oldest entry, skipping the active topic's most
        recent entry. Appending a turn_id already present is a no-op.
        Returns the evicted entries.
        """
        if self.has_turn(entry.turn_id):
            return []
        self.conversation_history.append(entry)

        evicted = []
        while len(self.conversation_history) > cap:
            protected = self._latest_topic_index()
            victim = 0 if protected != 0 else 1
            evicted.append(self.conversation_history.pop(victim))
        return evicted

    def _latest_topic_index(self) -> Optional[int]:
        if not self.active_topic:
            return None
        for idx in range(len(self.conversation_history) - 1, -1, -1):
            if self.conversation_history[idx].topic == self.active_topic:
                return idx
        return None

    def push_signal(self, record: SignalRecord, window: int) -> None:
        if any(r.turn_id == record.turn_id for r in self.recent_signals):
            return
        self.recent_signals.append(record)
        if len(self.recent_signals) > window:
            del self.recent_signals[: len(self.recent_signals) - window]


# ── Routing ───────────────────────────────────────────────────────

class RoutingDecision(BaseModel):
    """Transient output of the router; never persisted."""
    domains: List[Domain] = Field(default_factory=list)   # Ordered by confidence desc
    confidence: Dict[Domain, float] = Field(default_factory=dict)
    topic: Optional[str] = None
    explicit: bool = False
    cross_domain: bool = False
    low_confidence: bool = False

    @property
    def primary(self) -> Optional[Domain]:
        return self.domains[0] if self.domains else None

    @property
    def is_empty(self) -> bool:
        return not self.domains


# ── Provider Exchange ─────────────────────────────────────────────

class RecentTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    request: str
    response: str


class DomainContext(BaseModel):
    """Read-only snapshot of the session fields a provider may see."""
    model_config = ConfigDict(frozen=True)

    active_topic: Optional[str] = None
    overall_level: SkillLevel = SkillLevel.BEGINNER
    languages: Tuple[str, ...] = ()
    communication_style: str = "balanced"
    recent_turns: Tuple[RecentTurn, ...] = ()


class DomainRequest(BaseModel):
    """What a capability provider receives."""
    model_config = ConfigDict(frozen=True)

    domain: Domain
    message: str
    skill_level: SkillLevel
    learning_mode_active: bool = False
    attachments: Tuple[Tuple[str, str], ...] = ()   # (kind, text): code_snippet, error_text
    domain_context: DomainContext = Field(default_factory=DomainContext)

    def attachment(self, kind: str) -> Optional[str]:
        for name, text in self.attachments:
            if name == kind:
                return text
        return None


class ProviderResult(BaseModel):
    content: str
    suggestions: List[str] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list)


class ErrorInfo(BaseModel):
    """User-visible error description."""
    kind: str
    message: str
    retry_hint: Optional[str] = None


class DomainOutcome(BaseModel):
    """Result of one resilient provider invocation."""
    domain: Domain
    status: OutcomeStatus
    content: str
    suggestions: List[str] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None
    attempts: int = 0
    latency_ms: float = 0.0
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.OK


# ── API Models ────────────────────────────────────────────────────

class UserRequest(BaseModel):
    """One user turn as received from the transport layer."""
    session_id: str
    user_id: str
    message: str
    request_type: Optional[Domain] = None       # Explicit hint from the caller
    code_snippet: Optional[str] = None
    error_text: Optional[str] = None
    feedback: Optional[SkillSignal] = None      # Explicit signal about the previous answer
    request_id: str = Field(default_factory=lambda: uuid4().hex)


class SkillUpdate(BaseModel):
    domain: Domain
    signal: SkillSignal
    previous: SkillLevel
    level: SkillLevel
    rationale: str

    @property
    def changed(self) -> bool:
        return self.previous != self.level


class AssistantResponse(BaseModel):
    request_id: str
    session_id: str
    content: str
    domains: List[Domain] = Field(default_factory=list)
    outcomes: List[DomainOutcome] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list)
    skill_level: SkillLevel = SkillLevel.BEGINNER     # Overall level after this turn
    skill_update: Optional[SkillUpdate] = None
    learning_mode_active: bool = False
    needs_clarification: bool = False
    degraded: bool = False
    context_saved: bool = True
    error: Optional[ErrorInfo] = None
    phase: TurnPhase = TurnPhase.RESPONDED


class SessionSummary(BaseModel):
    """Snapshot returned by get_session_summary."""
    session_id: str
    user_id: str
    learning_mode_active: bool
    active_topic: Optional[str] = None
    turn_count: int = 0
    recent_entries: List[ConversationEntry] = Field(default_factory=list)
    recent_signals: List[SignalRecord] = Field(default_factory=list)
    skill: SkillProfile = Field(default_factory=SkillProfile)
    progress_history: List[LearningProgress] = Field(default_factory=list)
    version: int = 0


class LearningModeRequest(BaseModel):
    """Request body for POST /sessions/{session_id}/learning-mode."""
    enabled: bool
    skill_level: Optional[SkillLevel] = None
    user_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    service: str = "assistant-orchestrator"
    version: str = "1.0.0"
    store: str = "unknown"
    providers: Dict[str, Any] = Field(default_factory=dict)
    uptime_seconds: float = 0.0
    metrics_summary: Dict[str, Any] = Field(default_factory=dict)
