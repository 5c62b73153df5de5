import httpx
import pytest

from conftest import StubProvider, make_result
from greylit_app.errors import ProviderAuthError, ProviderNetworkError
from greylit_app.providers import SerpApiProvider, SerperProvider
from greylit_app.search.executor import ProviderExecutor
from greylit_app.search.models import ProcessingContext, SearchParams


@pytest.mark.asyncio
async def test_partial_failure_keeps_successful_results():
    b_results = [make_result(provider="b", title="B1", url="https://b.org/1")]
    executor = ProviderExecutor({
        "a": StubProvider("a", error=ProviderAuthError("bad key", provider="a", status_code=401)),
        "b": StubProvider("b", results=b_results),
    })

    execution = await executor.execute(SearchParams(query="q", providers=["a", "b"]))

    assert execution.results == b_results
    assert execution.succeeded == ["b"]
    assert len(execution.failures) == 1
    failure = execution.failures[0]
    assert failure.provider == "a"
    assert failure.error_type == "ProviderAuthError"
    assert failure.status_code == 401
    assert execution.degraded is True
    assert execution.all_failed is False


@pytest.mark.asyncio
async def test_real_adapters_with_one_rejected_key():
    def serper(request):
        return httpx.Response(401, text="invalid key")

    def serpapi(request):
        return httpx.Response(200, json={
            "organic_results": [{"title": "Kept", "link": "https://kept.org", "position": 1}],
        })

    executor = ProviderExecutor({
        "serper": SerperProvider("bad", client=httpx.AsyncClient(transport=httpx.MockTransport(serper))),
        "serpapi": SerpApiProvider("good", client=httpx.AsyncClient(transport=httpx.MockTransport(serpapi))),
    })

    execution = await executor.execute(SearchParams(query="q", providers=["serper", "serpapi"]))

    assert [r.title for r in execution.results] == ["Kept"]
    assert [f.provider for f in execution.failures] == ["serper"]


@pytest.mark.asyncio
async def test_all_providers_failing_is_reported_not_raised():
    executor = ProviderExecutor({
        "a": StubProvider("a", error=ProviderNetworkError("down", provider="a")),
        "b": StubProvider("b", error=ProviderAuthError("bad key", provider="b")),
    })

    execution = await executor.execute(SearchParams(query="q", providers=["a", "b"]))

    assert execution.results == []
    assert execution.all_failed is True
    assert {f.provider for f in execution.failures} == {"a", "b"}
    assert execution.failures[0].retryable is True


@pytest.mark.asyncio
async def test_unknown_provider_is_a_failure():
    executor = ProviderExecutor({"a": StubProvider("a", results=[make_result(provider="a")])})

    execution = await executor.execute(SearchParams(query="q", providers=["a", "bing"]))

    assert execution.succeeded == ["a"]
    assert execution.failures[0].provider == "bing"
    assert execution.failures[0].error_type == "ProviderUnavailableError"


@pytest.mark.asyncio
async def test_timeout_keeps_fast_results():
    fast = StubProvider("fast", results=[make_result(provider="fast")])
    slow = StubProvider("slow", results=[make_result(provider="slow")], delay=5)
    executor = ProviderExecutor({"fast": fast, "slow": slow}, timeout=0.2)

    execution = await executor.execute(SearchParams(query="q", providers=["fast", "slow"]))

    assert [r.provider for r in execution.results] == ["fast"]
    assert execution.timed_out is True
    assert execution.failures[0].provider == "slow"
    assert execution.failures[0].retryable is True


@pytest.mark.asyncio
async def test_default_providers_used_when_none_requested():
    a = StubProvider("a")
    b = StubProvider("b")
    executor = ProviderExecutor({"a": a, "b": b}, default_providers=["b"])

    execution = await executor.execute(SearchParams(query="q"))

    assert execution.succeeded == ["b"]
    assert a.calls == 0
    assert b.calls == 1


@pytest.mark.asyncio
async def test_unexpected_exception_is_recorded():
    executor = ProviderExecutor({
        "a": StubProvider("a", error=RuntimeError("boom")),
        "b": StubProvider("b", results=[make_result(provider="b")]),
    })

    execution = await executor.execute(
        SearchParams(query="q", providers=["a", "b"]),
        context=ProcessingContext(batch_id="batch-1", batch_index=0, batch_total=2),
    )

    assert execution.failures[0].error_type == "RuntimeError"
    assert execution.failures[0].message == "boom"
    assert execution.succeeded == ["b"]


def test_resolve_normalizes_and_dedupes_ids():
    executor = ProviderExecutor({})

    assert executor.resolve(SearchParams(query="q", providers=["Serper", "serper ", "serpapi"])) == [
        "serper", "serpapi",
    ]


def test_rate_limit_status_per_provider():
    executor = ProviderExecutor({"serper": SerperProvider("k")})

    status = executor.rate_limit_status()

    assert status["serper"]["max_tokens"] == 10
    assert status["serper"]["is_limited"] is False
