"""
Capability Providers & Registry
================================
One provider contract with a domain tag. New domains are added by
registering another object that satisfies `CapabilityProvider`.

Implementations:
- FunctionProvider → wraps an in-process async callable
- HttpProvider     → remote provider service reached over HTTP (httpx)
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from .circuit_breaker import CircuitBreakerRegistry
from .errors import ProviderPermanentError, ProviderTimeout, ProviderTransientError
from .models import Domain, DomainRequest, ProviderResult

logger = logging.getLogger(__name__)

# Status codes worth one retry: throttling and upstream hiccups.
RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


@runtime_checkable
class CapabilityProvider(Protocol):
    domain: Domain
    name: str

    async def handle(self, request: DomainRequest) -> ProviderResult:
        ...


class FunctionProvider:
    """
    Adapts an async callable to the provider contract.

    Usage:
        async def explain(req): return ProviderResult(content="...")
        provider = FunctionProvider(Domain.CONCEPT, explain)
    """

    def __init__(
        self,
        domain: Domain,
        fn: Callable[[DomainRequest], Awaitable[Any]],
        name: Optional[str] = None,
    ):
        self.domain = domain
        self.name = name or domain.value
        self._fn = fn

    async def handle(self, request: DomainRequest) -> ProviderResult:
        result = await self._fn(request)
        if isinstance(result, ProviderResult):
            return result
        if isinstance(result, str):
            return ProviderResult(content=result)
        return ProviderResult.model_validate(result)


class HttpProvider:
    """
    Remote provider. POSTs the domain request to `<base_url>/handle`.

    Error mapping:
    - httpx.TimeoutException     → ProviderTimeout
    - transport errors, 429, 5xx → ProviderTransientError (retried once)
    - other 4xx, bad payload     → ProviderPermanentError
    """

    def __init__(
        self,
        domain: Domain,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        name: Optional[str] = None,
    ):
        self.domain = domain
        self.name = name or domain.value
        self.base_url = base_url.rstrip("/")
        self._client = client

    async def handle(self, request: DomainRequest) -> ProviderResult:
        if self._client is not None:
            return await self._post(self._client, request)
        async with httpx.AsyncClient() as client:
            return await self._post(client, request)

    async def _post(self, client: httpx.AsyncClient, request: DomainRequest) -> ProviderResult:
        url = f"{self.base_url}/handle"
        try:
            resp = await client.post(url, json=request.model_dump(mode="json"))
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{self.name} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"{self.name} unreachable: {e}") from e

        if resp.status_code in RETRYABLE_STATUS:
            raise ProviderTransientError(f"{self.name} returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise ProviderPermanentError(
                f"{self.name} rejected the request (HTTP {resp.status_code}): {resp.text[:200]}"
            )
        try:
            return ProviderResult.model_validate(resp.json())
        except ValueError as e:
            raise ProviderPermanentError(f"{self.name} returned an invalid payload: {e}") from e


class ProviderRegistry:
    """
    Central registry of capability providers, one per domain.
    Status reporting joins each provider with its circuit breaker.
    """

    def __init__(self, circuit_breakers: CircuitBreakerRegistry):
        self.circuit_breakers = circuit_breakers
        self._providers: Dict[Domain, CapabilityProvider] = {}

    def register(self, provider: CapabilityProvider) -> None:
        if not isinstance(provider, CapabilityProvider):
            raise TypeError(f"{provider!r} does not implement CapabilityProvider")
        self._providers[provider.domain] = provider
        logger.info(f"📋 Registered provider: {provider.domain.value} → {provider.name}")

    def get(self, domain: Domain) -> Optional[CapabilityProvider]:
        return self._providers.get(domain)

    def domains(self) -> List[Domain]:
        return list(self._providers)

    def all_status(self) -> Dict[str, dict]:
        """Status dashboard keyed by domain."""
        result = {}
        for domain in Domain:
            provider = self._providers.get(domain)
            if provider is None:
                result[domain.value] = {"registered": False}
                continue
            cb = self.circuit_breakers.get(provider.name)
            result[domain.value] = {
                "registered": True,
                "provider": provider.name,
                "remote": isinstance(provider, HttpProvider),
                "circuit_breaker": cb.state.value,
            }
        return result
