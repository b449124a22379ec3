"""
Shared pytest fixtures for the assistant orchestrator tests.

Providers are in-process FunctionProviders; the session store is the
in-memory implementation unless a test swaps in a failing one.
"""

import asyncio
import logging

import pytest

from assistant_orchestrator.circuit_breaker import CircuitBreakerRegistry
from assistant_orchestrator.config import OrchestratorConfig
from assistant_orchestrator.metrics import MetricsCollector
from assistant_orchestrator.models import Domain, ProviderResult
from assistant_orchestrator.orchestrator import Orchestrator
from assistant_orchestrator.providers import FunctionProvider, ProviderRegistry
from assistant_orchestrator.resilience import ResilienceWrapper
from assistant_orchestrator.store import InMemorySessionStore

logging.basicConfig(level=logging.WARNING)
logging.getLogger("assistant_orchestrator").setLevel(logging.DEBUG)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def echo_provider(domain: Domain, content: str = None, **extra) -> FunctionProvider:
    """Provider that answers with fixed content (default: '<domain> answer')."""

    async def handle(request):
        return ProviderResult(content=content or f"{domain.value} answer", **extra)

    return FunctionProvider(domain, handle)


def slow_provider(domain: Domain, delay: float = 1.0) -> FunctionProvider:
    async def handle(request):
        await asyncio.sleep(delay)
        return ProviderResult(content="too late")

    return FunctionProvider(domain, handle)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return OrchestratorConfig(provider_timeout_s=0.2, history_cap=5)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def breakers(metrics):
    return CircuitBreakerRegistry(
        failure_rate_threshold=0.5,
        window_s=60,
        min_calls=4,
        cooldown_s=30,
        on_trip=metrics.record_circuit_trip,
    )


@pytest.fixture
def registry(breakers):
    reg = ProviderRegistry(breakers)
    for domain in Domain:
        reg.register(echo_provider(domain))
    return reg


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def resilience(breakers, metrics, config):
    return ResilienceWrapper(
        breakers,
        default_timeout_s=config.provider_timeout_s,
        cache_size=config.result_cache_size,
        metrics=metrics,
    )


@pytest.fixture
def orchestrator(store, registry, resilience, config, metrics):
    return Orchestrator(store, registry, resilience, config, metrics=metrics)
