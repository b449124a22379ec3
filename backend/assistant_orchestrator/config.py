"""
Orchestrator Configuration
===========================
Centralized configuration with environment variable overrides.
All magic numbers, thresholds, and domain definitions live here.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Tuple

from .models import Domain


@dataclass(frozen=True)
class DomainDefinition:
    """Defines a capability domain the router can dispatch to."""
    domain: Domain
    label: str
    description: str
    keywords: Dict[str, float] = field(default_factory=dict)  # phrase → evidence weight
    fallback: str = ""               # Pointer returned when the provider is degraded
    base_url: str | None = None      # None = in-process provider


# ── Domain Registry ──────────────────────────────────────────────
DOMAINS: Dict[Domain, DomainDefinition] = {
    Domain.CONCEPT: DomainDefinition(
        domain=Domain.CONCEPT,
        label="Concept Explanation",
        description="Explains programming concepts at the learner's level.",
        keywords={
            "explain": 0.6, "what is": 0.55, "what are": 0.5, "how does": 0.5,
            "concept": 0.5, "difference between": 0.5, "teach": 0.5,
            "understand": 0.4, "meaning": 0.35, "learn": 0.35, "why does": 0.3,
        },
        fallback=(
            "A detailed explanation is unavailable right now. As a general pointer, "
            "start from the official documentation's introduction to this topic."
        ),
    ),
    Domain.CODE: DomainDefinition(
        domain=Domain.CODE,
        label="Code Generation",
        description="Generates code samples and implementations.",
        keywords={
            "implement": 0.6, "example code": 0.55, "generate": 0.5, "write": 0.45,
            "script": 0.45, "snippet": 0.4, "code": 0.35, "function": 0.35,
            "build": 0.3, "create": 0.3, "class": 0.25,
        },
        fallback=(
            "Code generation is unavailable right now. Try sketching the function "
            "signature and the inputs/outputs first; we can fill it in next turn."
        ),
    ),
    Domain.DEBUG: DomainDefinition(
        domain=Domain.DEBUG,
        label="Debugging",
        description="Diagnoses errors, stack traces and failing behaviour.",
        keywords={
            "debug": 0.7, "traceback": 0.7, "stack trace": 0.65, "bug": 0.6,
            "error": 0.55, "exception": 0.55, "crash": 0.55, "not working": 0.55,
            "doesn't work": 0.55, "broken": 0.45, "fix": 0.45, "fails": 0.4,
            "failing": 0.4,
        },
        fallback=(
            "Detailed analysis is unavailable right now. As a general pointer, read "
            "the last frame of the traceback and check the values passed into it."
        ),
    ),
    Domain.DOCS: DomainDefinition(
        domain=Domain.DOCS,
        label="Documentation",
        description="Writes and improves docstrings, READMEs and API docs.",
        keywords={
            "documentation": 0.7, "docstring": 0.7, "readme": 0.7, "api docs": 0.7,
            "document": 0.6, "comments": 0.35, "comment": 0.35, "write up": 0.3,
        },
        fallback=(
            "Documentation help is unavailable right now. A good start is a one-line "
            "summary, the parameters, the return value and one usage example."
        ),
    ),
    Domain.DEPLOY: DomainDefinition(
        domain=Domain.DEPLOY,
        label="Deployment Guidance",
        description="Guides packaging, hosting and release of applications.",
        keywords={
            "deploy": 0.7, "deployment": 0.7, "kubernetes": 0.55, "k8s": 0.55,
            "docker": 0.5, "hosting": 0.5, "heroku": 0.5, "aws": 0.4, "ci": 0.4,
            "release": 0.35, "production": 0.35, "pipeline": 0.3, "server": 0.25,
        },
        fallback=(
            "Deployment guidance is unavailable right now. Check your platform's "
            "quickstart guide and make sure the app runs from a clean checkout first."
        ),
    ),
    Domain.WORKFLOW: DomainDefinition(
        domain=Domain.WORKFLOW,
        label="Workflow Optimization",
        description="Suggests tooling and process improvements.",
        keywords={
            "workflow": 0.7, "streamline": 0.6, "productivity": 0.55, "automate": 0.5,
            "optimize": 0.45, "efficient": 0.4, "shortcut": 0.4, "git": 0.35,
            "faster": 0.3, "process": 0.3,
        },
        fallback=(
            "Workflow suggestions are unavailable right now. Look for the step you "
            "repeat most often each day; that is usually the best one to automate."
        ),
    ),
    Domain.TECH_ADVICE: DomainDefinition(
        domain=Domain.TECH_ADVICE,
        label="Technology Advice",
        description="Compares technologies and recommends options.",
        keywords={
            "should i use": 0.65, "pros and cons": 0.6, "recommend": 0.5,
            "compare": 0.5, "versus": 0.5, "vs": 0.45, "choose": 0.45,
            "alternative": 0.45, "tradeoff": 0.45, "best": 0.3, "framework": 0.3,
            "library": 0.3, "which": 0.25,
        },
        fallback=(
            "Technology advice is unavailable right now. List your constraints "
            "(team skills, scale, hosting) and compare options against them."
        ),
    ),
}


# ── Topic Catalog ────────────────────────────────────────────────
# Topics detected in a message become the session's active topic and bias
# routing of follow-up turns toward the associated domains.
TOPIC_DOMAINS: Dict[str, Tuple[Domain, ...]] = {
    "recursion": (Domain.CONCEPT, Domain.CODE),
    "closures": (Domain.CONCEPT, Domain.CODE),
    "asyncio": (Domain.CONCEPT, Domain.CODE, Domain.DEBUG),
    "decorators": (Domain.CONCEPT, Domain.CODE),
    "generators": (Domain.CONCEPT, Domain.CODE),
    "sql": (Domain.CONCEPT, Domain.TECH_ADVICE),
    "database": (Domain.TECH_ADVICE, Domain.DEPLOY),
    "react": (Domain.CODE, Domain.TECH_ADVICE),
    "api": (Domain.CODE, Domain.DOCS),
    "testing": (Domain.CODE, Domain.WORKFLOW),
    "pytest": (Domain.CODE, Domain.WORKFLOW),
    "docker": (Domain.DEPLOY, Domain.WORKFLOW),
    "kubernetes": (Domain.DEPLOY,),
    "git": (Domain.WORKFLOW,),
}


def topic_domains(topic: str | None) -> Tuple[Domain, ...]:
    """Domains associated with a topic; a bare domain name maps to itself."""
    if not topic:
        return ()
    if topic in TOPIC_DOMAINS:
        return TOPIC_DOMAINS[topic]
    try:
        return (Domain(topic),)
    except ValueError:
        return ()


# ── Orchestrator Config ──────────────────────────────────────────

@dataclass(frozen=True)
class OrchestratorConfig:
    """Tuning knobs for routing, adaptation, resilience and persistence."""

    # Router
    route_threshold: float = 0.5          # T: every domain above this is selected
    route_epsilon: float = 0.1            # Top two within this → cross-domain request
    continuity_bonus: float = 0.2         # Added to active-topic domains
    explicit_hint_weight: float = 0.9     # Evidence weight of a caller-named type
    min_confidence: float = 0.15          # Below this nothing is guessed → clarify
    max_domains: int = len(Domain)        # Upper bound on concurrent providers per turn

    # Session state
    history_cap: int = 50                 # N: max conversation entries per session
    signal_window: int = 12               # Rolling window of recent skill signals
    context_snapshot_turns: int = 3       # History turns shown to providers
    session_idle_timeout_s: int = 3600    # Store-side expiry
    context_cache_size: int = 256         # Last-known contexts kept for store outages
    purge_interval_s: float = 300.0       # Background expiry sweep period
    max_conflict_retries: int = 3         # Reload/re-apply attempts on version conflict

    # Skill adaptation
    promotion_window: int = 3             # K: signals needed for promotion

    # Provider calls
    provider_timeout_s: float = 8.0       # Hard deadline per invocation (incl. retry)
    result_cache_size: int = 512          # Good answers kept for open-circuit fallback

    # Circuit breaker
    cb_window_s: float = 60.0             # Rolling window for the failure rate
    cb_failure_rate_threshold: float = 0.5
    cb_min_calls: int = 4                 # Outcomes needed before the rate is trusted
    cb_cooldown_s: float = 30.0           # Seconds before half-open trial

    # Metrics
    metrics_buffer_size: int = 1000

    def __post_init__(self):
        if self.history_cap < 2:
            raise ValueError("history_cap must be at least 2")
        if self.promotion_window < 1:
            raise ValueError("promotion_window must be at least 1")
        if not 0.0 < self.route_threshold < 1.0:
            raise ValueError("route_threshold must be in (0, 1)")


def load_config() -> OrchestratorConfig:
    """Load config with environment variable overrides."""
    overrides = {}
    env_map = {
        "ORCH_ROUTE_THRESHOLD": ("route_threshold", float),
        "ORCH_ROUTE_EPSILON": ("route_epsilon", float),
        "ORCH_CONTINUITY_BONUS": ("continuity_bonus", float),
        "ORCH_MAX_DOMAINS": ("max_domains", int),
        "ORCH_HISTORY_CAP": ("history_cap", int),
        "ORCH_SIGNAL_WINDOW": ("signal_window", int),
        "ORCH_SESSION_IDLE_TIMEOUT": ("session_idle_timeout_s", int),
        "ORCH_PURGE_INTERVAL": ("purge_interval_s", float),
        "ORCH_PROMOTION_WINDOW": ("promotion_window", int),
        "ORCH_PROVIDER_TIMEOUT": ("provider_timeout_s", float),
        "ORCH_CB_WINDOW": ("cb_window_s", float),
        "ORCH_CB_FAILURE_RATE": ("cb_failure_rate_threshold", float),
        "ORCH_CB_MIN_CALLS": ("cb_min_calls", int),
        "ORCH_CB_COOLDOWN": ("cb_cooldown_s", float),
    }
    for env_key, (field_name, cast_fn) in env_map.items():
        val = os.getenv(env_key)
        if val is not None:
            try:
                overrides[field_name] = cast_fn(val)
            except (ValueError, TypeError):
                pass
    return OrchestratorConfig(**overrides)


def provider_urls() -> Dict[Domain, str]:
    """Remote provider base URLs from ORCH_PROVIDER_URL_<DOMAIN> variables."""
    urls = {}
    for domain, definition in DOMAINS.items():
        url = os.getenv(f"ORCH_PROVIDER_URL_{domain.value.upper()}") or definition.base_url
        if url:
            urls[domain] = url.rstrip("/")
    return urls
