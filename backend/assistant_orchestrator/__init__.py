"""
Assistant Orchestrator Package v1.0
====================================
Orchestration layer for a developer assistant: routes each message to one or
more capability providers, keeps per-session context, and adapts answers to
the learner's skill level.

Architecture:
- config.py          → Thresholds, domain registry, topic catalog
- models.py          → Pydantic models (API contracts, session state)
- errors.py          → Error taxonomy
- router.py          → Keyword-scored multi-domain request router
- adaptation.py      → Skill adaptation state machine (pure)
- circuit_breaker.py → Per-provider rolling-window circuit breaker
- providers.py       → Provider contract, HTTP provider, registry
- resilience.py      → Breaker + deadline + retry + degraded fallback
- merger.py          → Multi-domain response merging
- store.py           → Session store contract + in-memory store
- pg_store.py        → asyncpg session store
- metrics.py         → In-memory metrics (counters, histograms)
- orchestrator.py    → Request lifecycle facade
- main.py            → FastAPI application (HTTP layer)
"""

from .config import DOMAINS, OrchestratorConfig, load_config
from .models import (
    AssistantResponse,
    Domain,
    DomainRequest,
    ProviderResult,
    RoutingDecision,
    SessionContext,
    SkillLevel,
    SkillSignal,
    UserProfile,
    UserRequest,
)
from .errors import (
    ContextConflict,
    ContextUnavailable,
    OrchestratorError,
    ProviderUnavailable,
    RoutingAmbiguous,
    ValidationError,
)
from .router import RequestRouter
from .adaptation import SkillAdaptationEngine, classify_signal, next_level
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .providers import CapabilityProvider, FunctionProvider, HttpProvider, ProviderRegistry
from .resilience import ResilienceWrapper
from .store import InMemorySessionStore, SessionStore
from .metrics import MetricsCollector
from .orchestrator import Orchestrator

__all__ = [
    "DOMAINS",
    "OrchestratorConfig",
    "load_config",
    "AssistantResponse",
    "Domain",
    "DomainRequest",
    "ProviderResult",
    "RoutingDecision",
    "SessionContext",
    "SkillLevel",
    "SkillSignal",
    "UserProfile",
    "UserRequest",
    "ContextConflict",
    "ContextUnavailable",
    "OrchestratorError",
    "ProviderUnavailable",
    "RoutingAmbiguous",
    "ValidationError",
    "RequestRouter",
    "SkillAdaptationEngine",
    "classify_signal",
    "next_level",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CapabilityProvider",
    "FunctionProvider",
    "HttpProvider",
    "ProviderRegistry",
    "ResilienceWrapper",
    "InMemorySessionStore",
    "SessionStore",
    "MetricsCollector",
    "Orchestrator",
]
