"""
Tests for provider adapters and the registry.
"""

import json

import httpx
import pytest

from assistant_orchestrator.circuit_breaker import CircuitBreakerRegistry
from assistant_orchestrator.errors import ProviderPermanentError, ProviderTimeout, ProviderTransientError
from assistant_orchestrator.models import Domain, DomainRequest, ProviderResult, SkillLevel
from assistant_orchestrator.providers import FunctionProvider, HttpProvider, ProviderRegistry

REQUEST = DomainRequest(
    domain=Domain.DEBUG,
    message="why does this fail",
    skill_level=SkillLevel.INTERMEDIATE,
    attachments=(("error_text", "KeyError: 'id'"),),
)


def http_provider(handler) -> HttpProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProvider(Domain.DEBUG, "http://debug.local/", client=client)


async def test_http_provider_posts_request():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": "check the dict key", "follow_ups": ["Show the data"]})

    result = await http_provider(handler).handle(REQUEST)
    assert result.content == "check the dict key"
    assert result.follow_ups == ["Show the data"]
    assert seen["url"] == "http://debug.local/handle"
    assert seen["body"]["skill_level"] == "intermediate"
    assert seen["body"]["attachments"] == [["error_text", "KeyError: 'id'"]]


@pytest.mark.parametrize("status", [429, 500, 503])
async def test_retryable_status_is_transient(status):
    provider = http_provider(lambda request: httpx.Response(status))
    with pytest.raises(ProviderTransientError):
        await provider.handle(REQUEST)


async def test_client_error_is_permanent():
    provider = http_provider(lambda request: httpx.Response(422, text="unsupported language"))
    with pytest.raises(ProviderPermanentError, match="unsupported language"):
        await provider.handle(REQUEST)


async def test_bad_payload_is_permanent():
    provider = http_provider(lambda request: httpx.Response(200, json={"nope": 1}))
    with pytest.raises(ProviderPermanentError):
        await provider.handle(REQUEST)


async def test_connect_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderTransientError):
        await http_provider(handler).handle(REQUEST)


async def test_read_timeout_maps_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderTimeout):
        await http_provider(handler).handle(REQUEST)


async def test_function_provider_accepts_plain_values():
    async def as_text(request):
        return "plain"

    async def as_dict(request):
        return {"content": "dict", "suggestions": ["x"]}

    assert (await FunctionProvider(Domain.DOCS, as_text).handle(REQUEST)).content == "plain"
    result = await FunctionProvider(Domain.DOCS, as_dict).handle(REQUEST)
    assert result == ProviderResult(content="dict", suggestions=["x"])


def test_registry_rejects_non_providers():
    registry = ProviderRegistry(CircuitBreakerRegistry())
    with pytest.raises(TypeError):
        registry.register(object())


def test_registry_status_joins_breaker_state():
    registry = ProviderRegistry(CircuitBreakerRegistry())

    async def fn(request):
        return "x"

    registry.register(FunctionProvider(Domain.CODE, fn, name="codegen"))
    status = registry.all_status()
    assert status["code"] == {
        "registered": True,
        "provider": "codegen",
        "remote": False,
        "circuit_breaker": "closed",
    }
    assert status["debug"] == {"registered": False}
    assert registry.domains() == [Domain.CODE]
