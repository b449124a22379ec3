"""
Tests for the resilience wrapper: breaker, deadline, retry, fallback.
"""

import asyncio
import time

import pytest

from assistant_orchestrator.circuit_breaker import CBState, CircuitBreakerRegistry, Permit
from assistant_orchestrator.config import DOMAINS
from assistant_orchestrator.errors import ProviderPermanentError, ProviderTransientError
from assistant_orchestrator.models import Domain, DomainRequest, OutcomeStatus, ProviderResult, SkillLevel
from assistant_orchestrator.providers import FunctionProvider
from assistant_orchestrator.resilience import ResilienceWrapper

from conftest import echo_provider, slow_provider


def make_request(domain=Domain.DEBUG, message="why does this crash"):
    return DomainRequest(domain=domain, message=message, skill_level=SkillLevel.BEGINNER)


class FlakyProvider:
    """Fails with the given exceptions in order, then answers."""

    def __init__(self, domain, errors):
        self.domain = domain
        self.name = domain.value
        self.errors = list(errors)
        self.calls = 0

    async def handle(self, request):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return ProviderResult(content="recovered", suggestions=["check logs"])


@pytest.fixture
def wrapper(breakers, metrics):
    return ResilienceWrapper(breakers, default_timeout_s=0.2, metrics=metrics)


async def test_success_passes_through(wrapper):
    outcome = await wrapper.invoke(echo_provider(Domain.DEBUG, "look at line 3"), make_request())
    assert outcome.status == OutcomeStatus.OK
    assert outcome.content == "look at line 3"
    assert outcome.attempts == 1
    assert outcome.error is None


async def test_timeout_degrades_and_counts_as_failure(wrapper, breakers):
    outcome = await wrapper.invoke(slow_provider(Domain.DEBUG), make_request(), timeout=0.05)
    assert outcome.status == OutcomeStatus.DEGRADED
    assert outcome.content == DOMAINS[Domain.DEBUG].fallback
    assert outcome.error.kind == "provider_timeout"
    assert breakers.get("debug").stats.total_failures == 1


async def test_transient_failure_retried_once(wrapper):
    provider = FlakyProvider(Domain.DEBUG, [ProviderTransientError("busy")])
    outcome = await wrapper.invoke(provider, make_request())
    assert outcome.ok
    assert outcome.content == "recovered"
    assert outcome.attempts == 2
    assert provider.calls == 2


async def test_second_transient_failure_degrades(wrapper):
    provider = FlakyProvider(
        Domain.DEBUG, [ProviderTransientError("busy"), ProviderTransientError("busy")]
    )
    outcome = await wrapper.invoke(provider, make_request())
    assert outcome.status == OutcomeStatus.DEGRADED
    assert provider.calls == 2
    assert outcome.error.kind == "provider_transient_error"


async def test_permanent_failure_not_retried(wrapper, breakers):
    provider = FlakyProvider(Domain.DEBUG, [ProviderPermanentError("unsupported language")])
    outcome = await wrapper.invoke(provider, make_request())
    assert outcome.status == OutcomeStatus.ERROR
    assert provider.calls == 1
    assert "unsupported language" in outcome.content
    assert outcome.error.retry_hint
    assert breakers.get("debug").stats.total_failures == 0


async def test_unexpected_exception_degrades(wrapper):
    async def broken(request):
        raise KeyError("boom")

    outcome = await wrapper.invoke(FunctionProvider(Domain.DEBUG, broken), make_request())
    assert outcome.status == OutcomeStatus.DEGRADED
    assert outcome.error.kind == "provider_error"


async def test_open_circuit_returns_without_calling_provider(breakers, metrics):
    wrapper = ResilienceWrapper(breakers, default_timeout_s=5.0, metrics=metrics)
    provider = slow_provider(Domain.DEBUG, delay=5.0)
    breaker = breakers.get("debug")
    for _ in range(4):
        breaker.record_failure()
    assert breaker.state == CBState.OPEN

    start = time.monotonic()
    outcome = await wrapper.invoke(provider, make_request())
    assert time.monotonic() - start < 0.5
    assert outcome.status == OutcomeStatus.DEGRADED
    assert outcome.error.kind == "provider_unavailable"
    assert outcome.attempts == 0


async def test_open_circuit_serves_cached_answer(breakers):
    wrapper = ResilienceWrapper(breakers, default_timeout_s=0.2)
    request = make_request()
    await wrapper.invoke(echo_provider(Domain.DEBUG, "cached advice"), request)

    breaker = breakers.get("debug")
    for _ in range(4):
        breaker.record_failure()

    outcome = await wrapper.invoke(echo_provider(Domain.DEBUG, "fresh"), request)
    assert outcome.status == OutcomeStatus.DEGRADED
    assert outcome.from_cache
    assert outcome.content == "cached advice"


async def test_repeated_timeouts_trip_breaker(breakers, metrics):
    wrapper = ResilienceWrapper(breakers, default_timeout_s=0.02, metrics=metrics)
    provider = slow_provider(Domain.DEBUG)
    for _ in range(4):
        await wrapper.invoke(provider, make_request())
    assert breakers.get("debug").state == CBState.OPEN
    assert metrics.circuit_breaker_trips.by_label() == {"debug": 1}


async def test_cancellation_releases_trial(clock):
    breakers = CircuitBreakerRegistry(min_calls=1, cooldown_s=30, clock=clock)
    breaker = breakers.get("debug")
    breaker.record_failure()
    clock.advance(30)
    wrapper = ResilienceWrapper(breakers, default_timeout_s=5.0)

    task = asyncio.create_task(wrapper.invoke(slow_provider(Domain.DEBUG, 5.0), make_request()))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert breaker.try_acquire() == Permit.TRIAL


async def test_cancelled_call_from_closed_state_keeps_trial(clock):
    breakers = CircuitBreakerRegistry(min_calls=1, cooldown_s=30, clock=clock)
    breaker = breakers.get("debug")
    wrapper = ResilienceWrapper(breakers, default_timeout_s=5.0)

    task = asyncio.create_task(wrapper.invoke(slow_provider(Domain.DEBUG, 5.0), make_request()))
    await asyncio.sleep(0.01)
    breaker.record_failure()
    clock.advance(30)
    assert breaker.try_acquire() == Permit.TRIAL

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not breaker.try_acquire()


async def test_records_provider_metrics(wrapper, metrics):
    await wrapper.invoke(echo_provider(Domain.CODE), make_request(Domain.CODE))
    assert metrics.provider_calls.by_label() == {"code:ok": 1}
    assert metrics.provider_latency.count == 1
