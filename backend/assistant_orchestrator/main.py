"""
Assistant Orchestrator Service
===============================
Port: 8020

HTTP surface over the orchestrator:

┌────────────────────────────────────────────────────────────────────┐
│                      Assistant Orchestrator                        │
│                                                                    │
│  ┌──────────┐  ┌──────────┐  ┌────────────┐  ┌──────────────────┐  │
│  │ API Layer│──► Router   │──► Resilience │──► Capability       │  │
│  │ (FastAPI)│  │ (scoring)│  │ (breakers) │  │ providers (httpx)│  │
│  └──────────┘  └──────────┘  └────────────┘  └──────────────────┘  │
│       │             │              │                               │
│       ▼             ▼              ▼                               │
│  ┌──────────┐  ┌──────────┐  ┌────────────┐                        │
│  │ Metrics  │  │ Skill    │  │ Session    │                        │
│  │ Collector│  │ Adapter  │  │ Store (pg) │                        │
│  └──────────┘  └──────────┘  └────────────┘                        │
└────────────────────────────────────────────────────────────────────┘

Environment:
- ORCH_DB_URL                  PostgreSQL DSN; in-memory store when unset
- ORCH_PROVIDER_URL_<DOMAIN>   Base URL of a remote capability provider
- ORCH_*                       Threshold overrides (see config.py)
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import asyncpg
import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .circuit_breaker import CBState, CircuitBreakerRegistry
from .config import load_config, provider_urls
from .errors import ContextUnavailable, ValidationError
from .metrics import MetricsCollector
from .models import (
    AssistantResponse,
    Domain,
    HealthResponse,
    LearningModeRequest,
    SessionSummary,
    UserRequest,
)
from .orchestrator import Orchestrator
from .pg_store import STORE_ERRORS, PostgresSessionStore
from .providers import HttpProvider, ProviderRegistry
from .resilience import ResilienceWrapper
from .store import InMemorySessionStore

# ── Environment ──────────────────────────────────────────────────
backend_root = Path(__file__).parent.parent
load_dotenv(dotenv_path=backend_root / ".env")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("assistant_orchestrator")


# ══════════════════════════════════════════════════════════════════
#  LIFESPAN: initialize all subsystems
# ══════════════════════════════════════════════════════════════════

async def _purge_loop(app: FastAPI, interval_s: float):
    """Periodically drop sessions idle past the timeout."""
    while True:
        try:
            await asyncio.sleep(interval_s)
            await app.state.store.purge_expired()
        except asyncio.CancelledError:
            break
        except ContextUnavailable as e:
            logger.warning(f"Session purge skipped: {e.message}")


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Build the FastAPI app. A prebuilt orchestrator (tests, embedding) skips
    store and provider wiring.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: Config → Metrics → Circuit Breakers → Providers → Store → Orchestrator
        Shutdown: Stop purge loop → Close HTTP client → Close pool
        """
        config = load_config()
        app.state.config = config
        app.state.pool = None
        app.state.http = None

        if orchestrator is not None:
            app.state.orchestrator = orchestrator
            app.state.store = orchestrator.store
            app.state.providers = orchestrator.providers
            app.state.circuit_breakers = orchestrator.resilience.circuit_breakers
            app.state.metrics = orchestrator.metrics or MetricsCollector()
        else:
            # 1. Metrics collector
            metrics = MetricsCollector(
                buffer_size=config.metrics_buffer_size,
                session_ttl_s=config.session_idle_timeout_s,
            )
            app.state.metrics = metrics

            # 2. Circuit breakers
            app.state.circuit_breakers = CircuitBreakerRegistry(
                failure_rate_threshold=config.cb_failure_rate_threshold,
                window_s=config.cb_window_s,
                min_calls=config.cb_min_calls,
                cooldown_s=config.cb_cooldown_s,
                on_trip=metrics.record_circuit_trip,
            )
            logger.info(
                f"✅ Circuit breakers ready (failure rate={config.cb_failure_rate_threshold}, "
                f"cooldown={config.cb_cooldown_s}s)"
            )

            # 3. Remote capability providers
            app.state.http = httpx.AsyncClient(timeout=config.provider_timeout_s)
            app.state.providers = ProviderRegistry(app.state.circuit_breakers)
            for domain, url in provider_urls().items():
                app.state.providers.register(HttpProvider(domain, url, client=app.state.http))
            if not app.state.providers.domains():
                logger.warning("⚠️  No ORCH_PROVIDER_URL_* set — every domain will degrade")

            # 4. Session store
            db_url = os.getenv("ORCH_DB_URL", "")
            if db_url:
                try:
                    app.state.pool = await asyncpg.create_pool(
                        dsn=db_url,
                        min_size=2,
                        max_size=10,
                        command_timeout=30,
                        statement_cache_size=0,  # PgBouncer compatibility
                    )
                    store = PostgresSessionStore(app.state.pool, config.session_idle_timeout_s)
                    await store.ensure_schema()
                    app.state.store = store
                    logger.info("✅ PostgreSQL session store ready (2–10 connections)")
                except STORE_ERRORS + (asyncpg.PostgresError, ContextUnavailable) as e:
                    logger.error(f"❌ Database pool failed: {e}; falling back to in-memory store")
                    if app.state.pool is not None:
                        await app.state.pool.close()
                    app.state.pool = None
            if app.state.pool is None:
                app.state.store = InMemorySessionStore(config.session_idle_timeout_s)
                logger.warning("⚠️  Using in-memory session store — sessions are lost on restart")

            # 5. Orchestrator
            resilience = ResilienceWrapper(
                app.state.circuit_breakers,
                default_timeout_s=config.provider_timeout_s,
                cache_size=config.result_cache_size,
                metrics=metrics,
            )
            app.state.orchestrator = Orchestrator(
                app.state.store,
                app.state.providers,
                resilience,
                config,
                metrics=metrics,
            )

        purge_task = asyncio.create_task(_purge_loop(app, config.purge_interval_s))
        logger.info("🚀 Assistant orchestrator ready on port 8020")

        yield

        # Shutdown
        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            pass
        if app.state.http is not None:
            await app.state.http.aclose()
        if app.state.pool is not None:
            await app.state.pool.close()
        logger.info("Assistant orchestrator shut down cleanly")

    app = FastAPI(
        title="Assistant Orchestrator",
        version="1.0.0",
        description="Routes developer questions to capability providers with adaptive skill tracking",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════════
    #  ROUTES: core API
    # ══════════════════════════════════════════════════════════════

    @app.get("/")
    async def root():
        return {
            "service": "Assistant Orchestrator",
            "version": "1.0.0",
            "port": 8020,
            "domains": [d.value for d in Domain],
            "features": [
                "keyword-routing",
                "multi-domain-merge",
                "circuit-breakers",
                "skill-adaptation",
                "learning-mode",
                "optimistic-session-store",
            ],
        }

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        """Health with store type, provider status, and metrics summary."""
        state = request.app.state
        providers = state.providers.all_status()
        any_open = any(
            cb["state"] == CBState.OPEN.value
            for cb in state.circuit_breakers.all_status().values()
        )
        return HealthResponse(
            status="degraded" if any_open or not state.providers.domains() else "healthy",
            store="postgres" if isinstance(state.store, PostgresSessionStore) else "memory",
            providers=providers,
            uptime_seconds=state.metrics.uptime_seconds,
            metrics_summary=state.metrics.health_summary(),
        )

    @app.post("/process", response_model=AssistantResponse)
    async def process(body: UserRequest, request: Request):
        """Handle one user turn."""
        orch: Orchestrator = request.app.state.orchestrator
        try:
            return await orch.process(body)
        except ValidationError as e:
            raise HTTPException(
                status_code=400, detail={"message": e.message, "retry_hint": e.retry_hint}
            )

    @app.post("/sessions/{session_id}/learning-mode", response_model=SessionSummary)
    async def set_learning_mode(session_id: str, body: LearningModeRequest, request: Request):
        """Enable/disable learning mode, optionally overriding the skill level."""
        orch: Orchestrator = request.app.state.orchestrator
        try:
            return await orch.set_learning_mode(
                session_id, body.enabled, body.skill_level, user_id=body.user_id
            )
        except ValidationError as e:
            raise HTTPException(
                status_code=400, detail={"message": e.message, "retry_hint": e.retry_hint}
            )
        except ContextUnavailable as e:
            raise HTTPException(
                status_code=503, detail={"message": e.message, "retry_hint": e.retry_hint}
            )

    @app.get("/sessions/{session_id}", response_model=SessionSummary)
    async def get_session(session_id: str, request: Request):
        """Session snapshot with skill profile and learning progress."""
        orch: Orchestrator = request.app.state.orchestrator
        try:
            summary = await orch.get_session_summary(session_id)
        except ContextUnavailable as e:
            raise HTTPException(
                status_code=503, detail={"message": e.message, "retry_hint": e.retry_hint}
            )
        if summary is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found or expired")
        return summary

    # ══════════════════════════════════════════════════════════════
    #  ROUTES: observability
    # ══════════════════════════════════════════════════════════════

    @app.get("/metrics")
    async def get_metrics(request: Request):
        """Full metrics dashboard (counters, histograms, recent turns)."""
        metrics: MetricsCollector = request.app.state.metrics
        return metrics.summary()

    @app.get("/circuit-breakers")
    async def get_circuit_breakers(request: Request):
        """Circuit breaker status for all providers."""
        cb: CircuitBreakerRegistry = request.app.state.circuit_breakers
        return cb.all_status()

    @app.post("/circuit-breakers/{domain}/reset")
    async def reset_circuit_breaker(domain: Domain, request: Request):
        """Manually reset a provider's circuit breaker (admin action)."""
        registry: ProviderRegistry = request.app.state.providers
        provider = registry.get(domain)
        if provider is None:
            raise HTTPException(status_code=404, detail=f"No provider registered for {domain.value}")
        breaker = request.app.state.circuit_breakers.get(provider.name)
        breaker.reset()
        return {"status": "ok", "domain": domain.value, "new_state": breaker.state.value}

    @app.get("/providers")
    async def get_providers(request: Request):
        """Provider registry joined with circuit breaker state."""
        registry: ProviderRegistry = request.app.state.providers
        return registry.all_status()

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════════
#  Run Server
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "assistant_orchestrator.main:app",
        host="0.0.0.0",
        port=8020,
        reload=True,
        log_level="info",
    )
