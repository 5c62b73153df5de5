import pytest

from conftest import StubProvider, make_result
from greylit_app import create_app
from greylit_app.database import get_db_session
from greylit_app.errors import ProviderAuthError
from greylit_app.extensions import set_processor
from greylit_app.models import SearchRequest
from greylit_app.search import CacheStore, ProviderExecutor, ResultsProcessor, SearchStorage


OWNER = {"X-User-Id": "u1"}


@pytest.fixture
def providers():
    return {
        "serper": StubProvider("serper", results=[
            make_result(provider="serper", title="Water quality report", url="https://water.gov/report", rank=1),
            make_result(provider="serper", title="Transport review", url="https://roads.gov/review", rank=2),
        ]),
        "serpapi": StubProvider("serpapi", results=[
            make_result(provider="serpapi", title="Water quality figures", url="https://water.gov/report/", rank=1),
        ]),
    }


@pytest.fixture
def client(db, providers):
    set_processor(ResultsProcessor(
        ProviderExecutor(providers, default_providers=["serper", "serpapi"]),
        cache=CacheStore(ttl=60),
        storage=SearchStorage(),
    ))
    app = create_app({"TESTING": True, "DISABLE_RATE_LIMITING": True, "INIT_DATABASE": False})
    with app.test_client() as client:
        yield client
    set_processor(None)


def _create(client, **payload):
    payload.setdefault("query", "water quality")
    payload.setdefault("providers", ["serper", "serpapi"])
    return client.post("/api/search", json=payload, headers=OWNER)


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["database"] is True
    assert resp.get_json()["tables"]["search_requests"] == 0
    assert resp.headers["X-Request-Id"]


def test_create_runs_pipeline(client):
    resp = _create(client, search_title="Water")
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["duplicates_removed"] == 1
    assert len(data["unique_results"]) == 2
    assert data["persisted_count"] == 2
    assert data["search_request"]["status"] == "completed"
    assert data["search_request"]["search_title"] == "Water"


def test_results_endpoint_with_duplicates(client):
    request_id = _create(client).get_json()["search_request_id"]

    resp = client.get(f"/api/search/{request_id}/results", headers=OWNER)
    assert resp.status_code == 200
    assert resp.get_json()["count"] == 2

    resp = client.get(f"/api/search/{request_id}/results?include_duplicates=true", headers=OWNER)
    rows = resp.get_json()["results"]
    assert len(rows) == 3
    duplicate = next(r for r in rows if not r["deduped"])
    assert duplicate["relationships"][0]["reason"] == "url_match"


def test_other_owner_sees_nothing(client):
    request_id = _create(client).get_json()["search_request_id"]

    assert client.get(f"/api/search/{request_id}", headers={"X-User-Id": "u2"}).status_code == 404
    assert client.get(f"/api/search/{request_id}").status_code == 404
    assert client.get(f"/api/search/{request_id}", headers=OWNER).status_code == 200


def test_invalid_payload(client):
    resp = _create(client, max_results=500)
    assert resp.status_code == 400
    data = resp.get_json()
    assert data["code"] == "invalid_request"
    assert data["detail"]["field"] == "max_results"

    assert client.post("/api/search", data="not json", headers=OWNER).status_code == 400


def test_all_providers_failed(client, providers):
    for provider in providers.values():
        provider.error = ProviderAuthError("bad key", provider=provider.id)

    resp = _create(client)
    assert resp.status_code == 502
    assert resp.get_json()["code"] == "all_providers_failed"

    with get_db_session() as session:
        row = session.query(SearchRequest).one()
        assert row.status == "error"
        assert row.error_message.startswith("All providers failed")


def test_execute_reuses_cache(client, providers):
    request_id = _create(client).get_json()["search_request_id"]

    resp = client.post(f"/api/search/{request_id}/execute", json={}, headers=OWNER)
    assert resp.status_code == 200
    assert resp.get_json()["cache_hit"] is True
    assert providers["serper"].calls == 1

    resp = client.post(f"/api/search/{request_id}/execute", json={"use_cache": False}, headers=OWNER)
    assert resp.get_json()["cache_hit"] is False
    assert providers["serper"].calls == 2


def test_cache_stats(client):
    _create(client)

    resp = client.get("/api/search/cache/stats")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["cache"]["size"] == 1
    assert data["cache"]["misses"] == 1
    assert data["providers"]["serper"]["is_limited"] is False
