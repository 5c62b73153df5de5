import json

import httpx
import pytest

from greylit_app.config import Settings
from greylit_app.errors import (
    ProviderAuthError,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderRequestError,
)
from greylit_app.providers import SerpApiProvider, SerperProvider, build_providers
from greylit_app.search.models import SearchParams


SERPER_PAYLOAD = {
    "searchParameters": {"q": "housing strategy", "originalUrl": "https://www.google.com/search?q=housing"},
    "searchInformation": {"totalResults": "4200"},
    "organic": [
        {
            "title": "National Housing Strategy",
            "link": "https://housing.gov/strategy.pdf",
            "snippet": "The strategy sets out...",
            "position": 1,
            "date": "2021-03-01",
        },
        {
            "title": "Housing evidence review",
            "link": "https://evidence.org/review",
            "snippet": "A review of...",
            "position": 2,
        },
    ],
    "relatedSearches": [{"query": "housing strategy 2030"}],
    "peopleAlsoAsk": [{"question": "What is a housing strategy?"}],
    "credits": 1,
    "answerBox": {"title": "Housing strategy", "answer": "A ten year plan"},
}

SERPAPI_PAYLOAD = {
    "search_metadata": {"id": "search-123", "google_url": "https://www.google.com/search?q=flood"},
    "search_information": {"total_results": "1,230"},
    "organic_results": [
        {"title": "Flood risk report", "link": "https://flood.gov/report", "snippet": "Report", "position": 11},
    ],
    "related_searches": [{"query": "flood maps"}],
    "answer_box": {"type": "organic_result", "title": "Flood zones"},
}


class Recorder:
    """MockTransport handler that replays canned responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _serper(handler, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    return SerperProvider("serper-key", client=_client(handler), **kwargs)


@pytest.mark.asyncio
async def test_serper_request_and_canonical_results():
    recorder = Recorder(httpx.Response(200, json=SERPER_PAYLOAD))
    provider = _serper(recorder)
    params = SearchParams(query="housing strategy", domain="gov.uk", file_types=["pdf"], max_results=10)

    results = await provider.search(params)

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.headers["X-API-KEY"] == "serper-key"
    body = json.loads(request.content)
    assert body["q"] == "housing strategy site:gov.uk (filetype:pdf)"
    assert body["num"] == 10

    assert len(results) == 2
    first = results[0]
    assert first.provider == "serper"
    assert first.url == "https://housing.gov/strategy.pdf"
    assert first.rank == 1
    assert first.total_results == 4200
    assert first.related_searches == ["housing strategy 2030"]
    assert first.similar_questions == ["What is a housing strategy?"]
    assert first.metadata["date"] == "2021-03-01"
    assert first.search_url == "https://www.google.com/search?q=housing"


@pytest.mark.asyncio
async def test_serpapi_query_parameters_and_totals():
    recorder = Recorder(httpx.Response(200, json=SERPAPI_PAYLOAD))
    provider = SerpApiProvider("serpapi-key", client=_client(recorder), retry_delay=0)

    results = await provider.search(SearchParams(query="flood", max_results=10, page=2))

    request = recorder.requests[0]
    assert request.method == "GET"
    assert request.url.params["api_key"] == "serpapi-key"
    assert request.url.params["engine"] == "google"
    assert request.url.params["start"] == "10"

    assert results[0].total_results == 1230
    assert results[0].search_id == "search-123"
    assert results[0].rank == 11
    assert results[0].related_searches == ["flood maps"]


@pytest.mark.asyncio
async def test_serper_keeps_unmapped_response_fields():
    provider = _serper(Recorder(httpx.Response(200, json=SERPER_PAYLOAD)))

    results = await provider.search(SearchParams(query="housing strategy"))

    response = results[0].metadata["response"]
    assert response["answerBox"] == {"title": "Housing strategy", "answer": "A ten year plan"}
    assert response["searchParameters"]["q"] == "housing strategy"
    assert response["credits"] == 1
    assert "organic" not in response
    assert "relatedSearches" not in response
    assert results[1].metadata["response"] == response


@pytest.mark.asyncio
async def test_serpapi_keeps_unmapped_response_fields():
    recorder = Recorder(httpx.Response(200, json=SERPAPI_PAYLOAD))
    provider = SerpApiProvider("serpapi-key", client=_client(recorder), retry_delay=0)

    results = await provider.search(SearchParams(query="flood"))

    response = results[0].metadata["response"]
    assert response["answer_box"]["title"] == "Flood zones"
    assert response["search_metadata"]["id"] == "search-123"
    assert set(response).isdisjoint({"organic_results", "related_searches", "related_questions"})


@pytest.mark.asyncio
async def test_empty_organic_list_is_not_an_error():
    provider = _serper(Recorder(httpx.Response(200, json={"organic": []})))

    assert await provider.search(SearchParams(query="nothing here")) == []


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried():
    recorder = Recorder(httpx.Response(401, text="bad key"))
    provider = _serper(recorder)

    with pytest.raises(ProviderAuthError) as excinfo:
        await provider.search(SearchParams(query="q"))

    assert excinfo.value.status_code == 401
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_rate_limited_then_success():
    recorder = Recorder(
        httpx.Response(429, text="slow down"),
        httpx.Response(200, json=SERPER_PAYLOAD),
    )
    provider = _serper(recorder)

    results = await provider.search(SearchParams(query="q"))

    assert len(results) == 2
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries():
    recorder = Recorder(httpx.Response(503, text="unavailable"))
    provider = _serper(recorder, max_retries=2)

    with pytest.raises(ProviderNetworkError) as excinfo:
        await provider.search(SearchParams(query="q"))

    assert excinfo.value.status_code == 503
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_bad_request_is_not_retried():
    recorder = Recorder(httpx.Response(400, text="bad query"))
    provider = _serper(recorder)

    with pytest.raises(ProviderRequestError):
        await provider.search(SearchParams(query="q"))
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_timeout_becomes_network_error():
    recorder = Recorder(httpx.ConnectTimeout("timed out"))
    provider = _serper(recorder, max_retries=0)

    with pytest.raises(ProviderNetworkError):
        await provider.search(SearchParams(query="q"))


@pytest.mark.asyncio
async def test_missing_key_fails_without_a_request():
    recorder = Recorder(httpx.Response(200, json=SERPER_PAYLOAD))
    provider = SerperProvider(None, client=_client(recorder))

    with pytest.raises(ProviderAuthError):
        await provider.search(SearchParams(query="q"))
    assert recorder.requests == []


def test_classify_error_reads_retry_after():
    provider = SerperProvider("k")
    error = provider.classify_error(httpx.Response(429, headers={"Retry-After": "7"}))

    assert isinstance(error, ProviderRateLimitError)
    assert error.retry_after == 7.0


def test_build_providers_skips_providers_without_keys():
    providers = build_providers(Settings(serper_api_key="k"))

    assert list(providers) == ["serper"]
    assert providers["serper"].api_key == "k"
