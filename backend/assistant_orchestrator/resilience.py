"""
Resilience Wrapper
===================
Every provider call goes through here: circuit breaker → hard deadline →
one retry for transient failures → degraded fallback.

Outcomes:
  OK        provider answered
  DEGRADED  circuit open, timeout, or repeated/unknown failure → fallback pointer
  ERROR     provider rejected the input permanently → explanation, no retry

Only breaker statistics are touched. Session state is never mutated here.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Optional, Tuple

from .circuit_breaker import CircuitBreakerRegistry
from .config import DOMAINS
from .errors import (
    ProviderError,
    ProviderPermanentError,
    ProviderTimeout,
    ProviderTransientError,
    ProviderUnavailable,
)
from .metrics import MetricsCollector
from .models import DomainOutcome, DomainRequest, OutcomeStatus, ProviderResult
from .providers import CapabilityProvider
from .router import normalize

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, str]


class ResilienceWrapper:
    """
    Usage:
        wrapper = ResilienceWrapper(CircuitBreakerRegistry(), default_timeout_s=8.0)
        outcome = await wrapper.invoke(provider, domain_request)
    """

    def __init__(
        self,
        circuit_breakers: CircuitBreakerRegistry,
        default_timeout_s: float = 8.0,
        cache_size: int = 512,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.circuit_breakers = circuit_breakers
        self.default_timeout_s = default_timeout_s
        self.cache_size = cache_size
        self.metrics = metrics
        self._cache: "OrderedDict[CacheKey, ProviderResult]" = OrderedDict()

    async def invoke(
        self,
        provider: CapabilityProvider,
        request: DomainRequest,
        timeout: Optional[float] = None,
    ) -> DomainOutcome:
        timeout = self.default_timeout_s if timeout is None else timeout
        breaker = self.circuit_breakers.get(provider.name)
        start = time.monotonic()

        permit = breaker.try_acquire()
        if not permit:
            err = ProviderUnavailable(
                f"{provider.name} is temporarily disabled after repeated failures "
                f"(recovery in {breaker.time_until_recovery():.0f}s)"
            )
            return self._finish(self._degraded(request, err, attempts=0), start)

        deadline = start + timeout
        attempts = 0
        while True:
            attempts += 1
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                result = await asyncio.wait_for(provider.handle(request), timeout=remaining)

            except (asyncio.TimeoutError, ProviderTimeout):
                breaker.record_failure()
                err = ProviderTimeout(f"{provider.name} did not answer within {timeout:.1f}s")
                logger.warning(f"Provider [{provider.name}] timed out after {attempts} attempt(s)")
                return self._finish(self._degraded(request, err, attempts), start)

            except ProviderPermanentError as e:
                # The provider answered; the input is the problem.
                breaker.record_success()
                logger.warning(f"Provider [{provider.name}] rejected input: {e.message}")
                outcome = DomainOutcome(
                    domain=request.domain,
                    status=OutcomeStatus.ERROR,
                    content=(
                        f"The {DOMAINS[request.domain].label.lower()} service could not "
                        f"handle this request: {e.message}"
                    ),
                    error=e.to_info(),
                    attempts=attempts,
                )
                return self._finish(outcome, start)

            except ProviderTransientError as e:
                breaker.record_failure()
                if attempts == 1:
                    permit = breaker.try_acquire()
                    if permit:
                        logger.info(f"Provider [{provider.name}] transient failure, retrying once: {e.message}")
                        continue
                logger.warning(f"Provider [{provider.name}] failed after {attempts} attempt(s): {e.message}")
                return self._finish(self._degraded(request, e, attempts), start)

            except asyncio.CancelledError:
                breaker.release(permit)
                raise

            except Exception as e:
                breaker.record_failure()
                logger.warning(f"Provider [{provider.name}] raised {type(e).__name__}: {e}")
                err = ProviderError(f"{provider.name} failed unexpectedly")
                return self._finish(self._degraded(request, err, attempts), start)

            breaker.record_success()
            self._remember(request, result)
            outcome = DomainOutcome(
                domain=request.domain,
                status=OutcomeStatus.OK,
                content=result.content,
                suggestions=list(result.suggestions),
                follow_ups=list(result.follow_ups),
                attempts=attempts,
            )
            return self._finish(outcome, start)

    # ── Fallbacks ─────────────────────────────────────────────────

    def _degraded(self, request: DomainRequest, err: ProviderError, attempts: int) -> DomainOutcome:
        cached = self._cache.get(self._key(request))
        if cached is not None:
            return DomainOutcome(
                domain=request.domain,
                status=OutcomeStatus.DEGRADED,
                content=cached.content,
                suggestions=list(cached.suggestions),
                follow_ups=list(cached.follow_ups),
                error=err.to_info(),
                attempts=attempts,
                from_cache=True,
            )
        return DomainOutcome(
            domain=request.domain,
            status=OutcomeStatus.DEGRADED,
            content=DOMAINS[request.domain].fallback,
            error=err.to_info(),
            attempts=attempts,
        )

    def _finish(self, outcome: DomainOutcome, start: float) -> DomainOutcome:
        outcome.latency_ms = round((time.monotonic() - start) * 1000, 1)
        if self.metrics:
            self.metrics.record_provider_call(
                outcome.domain.value, outcome.status.value, outcome.latency_ms
            )
        return outcome

    # ── Result cache (served only while degraded) ─────────────────

    @staticmethod
    def _key(request: DomainRequest) -> CacheKey:
        return (request.domain.value, normalize(request.message), request.skill_level.value)

    def _remember(self, request: DomainRequest, result: ProviderResult) -> None:
        if self.cache_size <= 0:
            return
        key = self._key(request)
        self._cache[key] = result
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
