"""
Orchestrator — Request Lifecycle
==================================
Facade composing router, resilience wrapper, merger, adaptation engine and
session store.

Per-request state machine:
  idle → context_loaded → routed → dispatching → merging → context_updated → responded
                                                                       └──► failed

Pipeline:
1. Load SessionContext + UserProfile (fresh on miss, cached snapshot on outage)
2. Route the message (zero domains → clarification, no provider called)
3. Invoke every selected provider concurrently through the resilience wrapper
4. Merge outputs in routing confidence order
5. Classify the turn's skill signal, update the primary domain's level
6. Persist with optimistic concurrency (reload + re-apply on conflict)

Same-session turns are serialized by a per-session lock; different sessions
never wait on each other. Persistence is shielded from cancellation so a
turn is either fully committed or not at all.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .adaptation import SkillAdaptationEngine
from .config import DOMAINS, OrchestratorConfig
from .errors import (
    ContextConflict,
    ContextUnavailable,
    OrchestratorError,
    ProviderUnavailable,
    RoutingAmbiguous,
    ValidationError,
)
from .merger import MergedContent, ResponseMerger
from .metrics import MetricsCollector
from .models import (
    AssistantResponse,
    ConversationEntry,
    Domain,
    DomainContext,
    DomainOutcome,
    DomainRequest,
    LearningProgress,
    Milestone,
    OutcomeStatus,
    RecentTurn,
    RoutingDecision,
    SessionContext,
    SessionSummary,
    SignalRecord,
    SkillLevel,
    SkillSignal,
    SkillUpdate,
    TurnPhase,
    UserProfile,
    UserRequest,
)
from .providers import ProviderRegistry
from .resilience import ResilienceWrapper
from .router import RequestRouter
from .store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T", SessionContext, UserProfile)

_APPLIED_TURNS_KEPT = 50


@dataclass
class _Commit:
    context: SessionContext
    profile: UserProfile
    update: Optional[SkillUpdate]
    saved: bool


class Orchestrator:
    """
    Usage:
        orchestrator = Orchestrator(store, providers, resilience, config)
        response = await orchestrator.process(UserRequest(...))
    """

    def __init__(
        self,
        store: SessionStore,
        providers: ProviderRegistry,
        resilience: ResilienceWrapper,
        config: Optional[OrchestratorConfig] = None,
        router: Optional[RequestRouter] = None,
        engine: Optional[SkillAdaptationEngine] = None,
        merger: Optional[ResponseMerger] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.store = store
        self.providers = providers
        self.resilience = resilience
        self.router = router or RequestRouter(self.config)
        self.engine = engine or SkillAdaptationEngine(self.config.promotion_window)
        self.merger = merger or ResponseMerger()
        self.metrics = metrics

        self._locks: Dict[str, List] = {}   # session_id → [asyncio.Lock, holders]
        self._snapshots: "OrderedDict[str, Tuple[SessionContext, UserProfile]]" = OrderedDict()

    # ══════════════════════════════════════════════════════════════
    #  Public API
    # ══════════════════════════════════════════════════════════════

    async def process(self, request: UserRequest) -> AssistantResponse:
        """Handle one user turn. Raises ValidationError for malformed requests only."""
        self._validate(request)
        start = time.monotonic()

        async with self._session_lock(request.session_id):
            try:
                response = await self._run_turn(request)
            except ValidationError:
                raise
            except asyncio.CancelledError:
                logger.info(f"Turn {request.request_id} cancelled by caller")
                raise
            except Exception as e:
                logger.error(
                    f"Turn pipeline failed for session {request.session_id}: {e}",
                    exc_info=True,
                )
                self._record_error("pipeline")
                response = AssistantResponse(
                    request_id=request.request_id,
                    session_id=request.session_id,
                    content="Something went wrong while handling your request. Please try again.",
                    context_saved=False,
                    error=OrchestratorError(str(e), "Send the request again.").to_info(),
                    phase=TurnPhase.FAILED,
                )

        elapsed = (time.monotonic() - start) * 1000
        if self.metrics:
            self.metrics.record_turn(
                session_id=request.session_id,
                domains=[d.value for d in response.domains],
                latency_ms=elapsed,
                degraded=response.degraded,
                saved=response.context_saved,
            )
        logger.info(
            f"Turn {request.request_id[:8]} for {request.session_id}: "
            f"{[d.value for d in response.domains]} phase={response.phase.value} "
            f"degraded={response.degraded} saved={response.context_saved} "
            f"latency={elapsed:.0f}ms"
        )
        return response

    async def set_learning_mode(
        self,
        session_id: str,
        enabled: bool,
        explicit_skill_level: Optional[SkillLevel] = None,
        user_id: Optional[str] = None,
    ) -> SessionSummary:
        """Toggle learning mode; optionally override every skill level (explicit downgrade allowed)."""
        if not session_id or not session_id.strip():
            raise ValidationError("A session id is required.")

        async with self._session_lock(session_id):
            context = await self.store.load(session_id)
            if context is None:
                if not user_id:
                    raise ValidationError(
                        f"Unknown session {session_id}; a user id is required to start it."
                    )
                context = SessionContext(session_id=session_id, user_id=user_id)

            def toggle(ctx: SessionContext) -> None:
                ctx.learning_mode_active = enabled

            async def reload_context() -> SessionContext:
                fresh = await self.store.load(session_id)
                return fresh or SessionContext(session_id=session_id, user_id=context.user_id)

            context, _ = await self._versioned(context, toggle, self.store.save, reload_context)

            profile = await self._load_profile(context.user_id)
            if explicit_skill_level is not None:

                def override(p: UserProfile) -> None:
                    self._override_level(p, explicit_skill_level)

                async def reload_profile() -> UserProfile:
                    return await self._load_profile(context.user_id)

                profile, _ = await self._versioned(
                    profile, override, self.store.save_profile, reload_profile
                )

            self._remember(context, profile)
            logger.info(
                f"Learning mode {'on' if enabled else 'off'} for {session_id}"
                + (f", level set to {explicit_skill_level.value}" if explicit_skill_level else "")
            )
            return self._summary(context, profile)

    async def get_session_summary(self, session_id: str) -> Optional[SessionSummary]:
        """Snapshot of a session and its user's skill profile, or None if unknown/expired."""
        try:
            context = await self.store.load(session_id)
            if context is None:
                return None
            profile = await self._load_profile(context.user_id)
        except ContextUnavailable:
            cached = self._snapshot(session_id)
            if cached is None:
                raise
            context, profile = cached
        return self._summary(context, profile)

    # ══════════════════════════════════════════════════════════════
    #  Turn pipeline
    # ══════════════════════════════════════════════════════════════

    async def _run_turn(self, request: UserRequest) -> AssistantResponse:
        phase = TurnPhase.IDLE

        # ── ContextLoaded ─────────────────────────────────────────
        try:
            context, profile = await self._load(request)
        except ContextUnavailable as e:
            cached = self._snapshot(request.session_id)
            if cached is None:
                logger.error(f"No context for {request.session_id} and store is down: {e.message}")
                self._record_error(e.kind)
                return AssistantResponse(
                    request_id=request.request_id,
                    session_id=request.session_id,
                    content=(
                        "I can't reach your conversation history right now, so I can't "
                        "answer safely. Please try again in a moment."
                    ),
                    context_saved=False,
                    error=e.to_info(),
                    phase=TurnPhase.FAILED,
                )
            logger.warning(f"Store down; using cached context for {request.session_id}")
            context, profile = cached

        if context.user_id != request.user_id:
            raise ValidationError("This session belongs to a different user.")
        phase = self._advance(request, phase, TurnPhase.CONTEXT_LOADED)

        # ── Routed ────────────────────────────────────────────────
        decision = self.router.route(
            request.message, request.request_type, context.active_topic, context.active_domain
        )
        phase = self._advance(request, phase, TurnPhase.ROUTED)
        self._record_routing(decision)

        # ── Dispatching ───────────────────────────────────────────
        outcomes: List[DomainOutcome] = []
        if not decision.is_empty:
            phase = self._advance(request, phase, TurnPhase.DISPATCHING)
            outcomes = await self._dispatch(decision, request, context, profile)

        # ── Merging ───────────────────────────────────────────────
        phase = self._advance(request, phase, TurnPhase.MERGING)
        error = None
        if decision.is_empty:
            ambiguous = RoutingAmbiguous("I'm not sure what kind of help you need.")
            merged = MergedContent(content=f"{ambiguous.message} {ambiguous.retry_hint}")
            error = ambiguous.to_info()
        else:
            merged = self.merger.merge(outcomes, decision.domains)

        # ── ContextUpdated (shielded: commit fully or not at all) ─
        commit = await asyncio.shield(
            self._commit(request, decision, merged, context, profile)
        )
        phase = self._advance(request, phase, TurnPhase.CONTEXT_UPDATED)

        if not commit.saved:
            error = ContextUnavailable("Context not saved for this turn.").to_info()

        self._advance(request, phase, TurnPhase.RESPONDED)
        return AssistantResponse(
            request_id=request.request_id,
            session_id=request.session_id,
            content=merged.content,
            domains=list(decision.domains),
            outcomes=outcomes,
            suggestions=merged.suggestions,
            follow_ups=merged.follow_ups,
            skill_level=commit.profile.skill.overall,
            skill_update=commit.update,
            learning_mode_active=commit.context.learning_mode_active,
            needs_clarification=decision.is_empty,
            degraded=merged.degraded,
            context_saved=commit.saved,
            error=error,
            phase=TurnPhase.RESPONDED,
        )

    async def _load(self, request: UserRequest) -> Tuple[SessionContext, UserProfile]:
        context = await self.store.load(request.session_id)
        if context is None:
            logger.info(f"Starting new session {request.session_id} for {request.user_id}")
            context = SessionContext(session_id=request.session_id, user_id=request.user_id)
        profile = await self._load_profile(context.user_id)
        return context, profile

    async def _load_profile(self, user_id: str) -> UserProfile:
        profile = await self.store.load_profile(user_id)
        return profile or UserProfile(user_id=user_id)

    # ── Dispatch ──────────────────────────────────────────────────

    async def _dispatch(
        self,
        decision: RoutingDecision,
        request: UserRequest,
        context: SessionContext,
        profile: UserProfile,
    ) -> List[DomainOutcome]:
        calls = []
        for domain in decision.domains:
            domain_request = self._build_request(domain, request, decision, context, profile)
            provider = self.providers.get(domain)
            if provider is None:
                calls.append(self._unregistered(domain_request))
            else:
                calls.append(
                    self.resilience.invoke(provider, domain_request, self.config.provider_timeout_s)
                )
        return list(await asyncio.gather(*calls))

    def _build_request(
        self,
        domain: Domain,
        request: UserRequest,
        decision: RoutingDecision,
        context: SessionContext,
        profile: UserProfile,
    ) -> DomainRequest:
        attachments = tuple(
            (kind, text)
            for kind, text in (("code_snippet", request.code_snippet), ("error_text", request.error_text))
            if text
        )
        recent = context.conversation_history[-self.config.context_snapshot_turns:]
        return DomainRequest(
            domain=domain,
            message=request.message,
            skill_level=profile.skill.level_for(domain),
            learning_mode_active=context.learning_mode_active,
            attachments=attachments,
            domain_context=DomainContext(
                active_topic=decision.topic or context.active_topic,
                overall_level=profile.skill.overall,
                languages=tuple(profile.preferences.languages),
                communication_style=profile.preferences.communication_style,
                recent_turns=tuple(RecentTurn(request=e.request, response=e.response) for e in recent),
            ),
        )

    @staticmethod
    async def _unregistered(request: DomainRequest) -> DomainOutcome:
        err = ProviderUnavailable(f"No provider is registered for {request.domain.value}")
        return DomainOutcome(
            domain=request.domain,
            status=OutcomeStatus.DEGRADED,
            content=DOMAINS[request.domain].fallback,
            error=err.to_info(),
        )

    # ── Context update + persistence ─────────────────────────────

    async def _commit(
        self,
        request: UserRequest,
        decision: RoutingDecision,
        merged: MergedContent,
        context: SessionContext,
        profile: UserProfile,
    ) -> _Commit:
        """
        Persist the session first (entry + signal evidence), then the profile.

        A turn id already folded into the profile is a replay: its recorded
        update is returned and the level is left alone.
        """
        turn_id = request.request_id
        signal = self.engine.classify(request.message, request.feedback)
        domain = decision.primary
        topic = decision.topic or context.active_topic or (domain.value if domain else None)
        prior = [r for r in context.recent_signals if r.turn_id != turn_id]
        learning_mode = context.learning_mode_active

        entry = ConversationEntry(
            turn_id=turn_id,
            request=request.message,
            response=merged.content,
            domains=list(decision.domains),
            topic=topic,
            feedback=request.feedback,
            degraded=merged.degraded,
        )

        update: Optional[SkillUpdate] = None
        preview = profile.model_copy(deep=True)
        replay = profile.has_applied(turn_id)
        if replay:
            update = self._replayed_update(context.signal_for(turn_id), profile)
            logger.info(f"Turn {turn_id[:8]} already applied to {profile.user_id}; replaying")
        elif domain is not None:
            update = self._apply_skill(preview, prior, domain, signal, learning_mode, topic)

        record = context.signal_for(turn_id)
        if record is None and update is not None:
            record = SignalRecord(
                turn_id=turn_id, domain=update.domain, signal=signal, level_at=update.previous
            )

        def apply_entry(ctx: SessionContext) -> None:
            if topic:
                ctx.active_topic = topic
            if domain is not None:
                ctx.active_domain = domain
            ctx.append_entry(entry, self.config.history_cap)
            if record is not None:
                ctx.push_signal(record, self.config.signal_window)

        async def reload_context() -> SessionContext:
            fresh = await self.store.load(context.session_id)
            return fresh or SessionContext(
                session_id=context.session_id,
                user_id=context.user_id,
                learning_mode_active=context.learning_mode_active,
            )

        # ── Session phase ─────────────────────────────────────────
        recorded = context.has_turn(turn_id) and (
            record is None or context.signal_for(turn_id) is not None
        )
        if not recorded:
            try:
                context, _ = await self._versioned(
                    context.model_copy(deep=True), apply_entry, self.store.save, reload_context
                )
            except (ContextUnavailable, ContextConflict) as e:
                logger.error(f"Context not saved for {request.session_id}: {e.message}")
                self._record_error(e.kind)
                apply_entry(context)
                return self._finish_commit(context, preview, update, saved=False, replay=replay)

        # ── Profile phase ─────────────────────────────────────────
        if update is None or replay:
            return self._finish_commit(context, profile, update, saved=True, replay=replay)
        target = update.domain

        def apply_skill(p: UserProfile) -> Optional[SkillUpdate]:
            if p.has_applied(turn_id):
                return self._replayed_update(record, p)
            p.mark_applied(turn_id, _APPLIED_TURNS_KEPT)
            return self._apply_skill(p, prior, target, signal, learning_mode, topic)

        async def reload_profile() -> UserProfile:
            return await self._load_profile(context.user_id)

        try:
            profile, update = await self._versioned(
                profile.model_copy(deep=True), apply_skill, self.store.save_profile, reload_profile
            )
        except (ContextUnavailable, ContextConflict) as e:
            # Evidence is stored; a retry of this turn id folds it into the profile.
            logger.error(f"Skill profile not saved for {profile.user_id}: {e.message}")
            self._record_error(e.kind)
            return self._finish_commit(context, preview, update, saved=False)
        return self._finish_commit(context, profile, update, saved=True)

    def _finish_commit(
        self,
        context: SessionContext,
        profile: UserProfile,
        update: Optional[SkillUpdate],
        saved: bool,
        replay: bool = False,
    ) -> _Commit:
        if saved:
            self._remember(context, profile)
        if update is not None and update.changed and self.metrics and not replay:
            direction = "up" if update.level > update.previous else "down"
            self.metrics.record_skill_change(update.domain.value, direction)
        return _Commit(context=context, profile=profile, update=update, saved=saved)

    @staticmethod
    def _replayed_update(
        record: Optional[SignalRecord], profile: UserProfile
    ) -> Optional[SkillUpdate]:
        if record is None:
            return None
        return SkillUpdate(
            domain=record.domain,
            signal=record.signal,
            previous=record.level_at,
            level=profile.skill.level_for(record.domain),
            rationale="Already applied for this turn",
        )

    def _apply_skill(
        self,
        profile: UserProfile,
        prior: List[SignalRecord],
        domain: Domain,
        signal: SkillSignal,
        learning_mode: bool,
        topic: Optional[str],
    ) -> SkillUpdate:
        current = profile.skill.level_for(domain)
        level, rationale = self.engine.next_level(
            current, prior, signal, domain=domain, learning_mode_active=learning_mode
        )
        profile.skill.levels[domain] = level
        profile.skill.recompute_overall()
        if level != current:
            self._record_progress(profile, topic or domain.value, current, level, rationale)
        return SkillUpdate(
            domain=domain, signal=signal, previous=current, level=level, rationale=rationale
        )

    @staticmethod
    def _record_progress(
        profile: UserProfile,
        topic: str,
        previous: SkillLevel,
        level: SkillLevel,
        rationale: str,
    ) -> None:
        progress = profile.progress_for(topic)
        if progress is None:
            progress = LearningProgress(
                topic=topic, current_level=previous, target_level=previous.shift(1)
            )
            profile.progress_history.append(progress)
        progress.current_level = level
        progress.milestones.append(
            Milestone(level=level, description=f"{previous.value} → {level.value}: {rationale}")
        )
        if level >= progress.target_level and level != SkillLevel.EXPERT:
            progress.target_level = level.shift(1)

    @staticmethod
    def _override_level(profile: UserProfile, level: SkillLevel) -> None:
        for domain in list(profile.skill.levels):
            profile.skill.levels[domain] = level
        profile.skill.overall = level
        for progress in profile.progress_history:
            if progress.current_level != level:
                progress.milestones.append(
                    Milestone(level=level, description=f"Level set to {level.value} by user")
                )
                progress.current_level = level

    async def _versioned(
        self,
        working: T,
        mutate: Callable[[T], object],
        save: Callable[[T, int], Awaitable[int]],
        reload: Callable[[], Awaitable[T]],
    ) -> Tuple[T, object]:
        """Apply `mutate` and save; on version conflict reload and re-apply."""
        last: Optional[ContextConflict] = None
        for attempt in range(self.config.max_conflict_retries + 1):
            result = mutate(working)
            try:
                await save(working, working.version)
                return working, result
            except ContextConflict as e:
                last = e
                if self.metrics:
                    self.metrics.record_conflict()
                logger.info(f"{e.message}; reloading and re-applying (attempt {attempt + 1})")
                working = await reload()
        raise last

    # ══════════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════════

    @staticmethod
    def _validate(request: UserRequest) -> None:
        if not request.session_id or not request.session_id.strip():
            raise ValidationError("A session id is required.")
        if not request.user_id or not request.user_id.strip():
            raise ValidationError("A user id is required.")
        if not request.message or not request.message.strip():
            raise ValidationError("Your message is empty.")

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        entry = self._locks.setdefault(session_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(session_id, None)

    def _remember(self, context: SessionContext, profile: UserProfile) -> None:
        if self.config.context_cache_size <= 0:
            return
        self._snapshots[context.session_id] = (
            context.model_copy(deep=True),
            profile.model_copy(deep=True),
        )
        self._snapshots.move_to_end(context.session_id)
        while len(self._snapshots) > self.config.context_cache_size:
            self._snapshots.popitem(last=False)

    def _snapshot(self, session_id: str) -> Optional[Tuple[SessionContext, UserProfile]]:
        cached = self._snapshots.get(session_id)
        if cached is None:
            return None
        context, profile = cached
        return context.model_copy(deep=True), profile.model_copy(deep=True)

    @staticmethod
    def _summary(context: SessionContext, profile: UserProfile) -> SessionSummary:
        return SessionSummary(
            session_id=context.session_id,
            user_id=context.user_id,
            learning_mode_active=context.learning_mode_active,
            active_topic=context.active_topic,
            turn_count=len(context.conversation_history),
            recent_entries=context.conversation_history[-10:],
            recent_signals=list(context.recent_signals),
            skill=profile.skill,
            progress_history=profile.progress_history,
            version=context.version,
        )

    @staticmethod
    def _advance(request: UserRequest, old: TurnPhase, new: TurnPhase) -> TurnPhase:
        logger.debug(f"Turn {request.request_id[:8]}: {old.value} → {new.value}")
        return new

    def _record_routing(self, decision: RoutingDecision) -> None:
        if not self.metrics:
            return
        if decision.is_empty:
            outcome = "clarify"
        elif decision.low_confidence:
            outcome = "low_confidence"
        elif len(decision.domains) > 1:
            outcome = "multi"
        else:
            outcome = "single"
        self.metrics.record_routing(outcome)

    def _record_error(self, kind: str) -> None:
        if self.metrics:
            self.metrics.record_error(kind)
