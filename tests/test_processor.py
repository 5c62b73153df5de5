import pytest

from conftest import StubProvider, make_result
from greylit_app.database import get_db_session
from greylit_app.errors import (
    AllProvidersFailedError,
    CacheCorruptionError,
    PersistenceError,
    PipelineCancelledError,
    PipelineError,
    ProviderAuthError,
    ValidationError,
)
from greylit_app.models import SearchRequest
from greylit_app.search.cache import CacheStore
from greylit_app.search.executor import ProviderExecutor
from greylit_app.search.models import (
    PipelineState,
    ProcessingContext,
    ProcessingResult,
    SearchParams,
)
from greylit_app.search.processor import PipelineRun, ResultsProcessor
from greylit_app.search.storage import SearchStorage


def _a_results():
    return [
        make_result(provider="a", title="Water quality report", url="https://water.gov/report", rank=1),
        make_result(provider="a", title="Transport review", url="https://roads.gov/review", rank=2),
    ]


def _b_results():
    return [
        make_result(provider="b", title="Water quality annual figures", url="https://water.gov/report/", rank=1),
        make_result(provider="b", title="Flood maps", url="https://flood.gov/maps", rank=3),
    ]


@pytest.fixture
def providers():
    return {
        "a": StubProvider("a", results=_a_results()),
        "b": StubProvider("b", results=_b_results()),
    }


@pytest.fixture
def storage(db):
    return SearchStorage()


def _processor(providers, storage=None, cache=None):
    return ResultsProcessor(ProviderExecutor(providers), cache=cache, storage=storage)


def _tracked(storage, params, owner_id="u1"):
    row = storage.create_request(params, owner_id=owner_id)
    return ProcessingContext(owner_id=owner_id, search_request_id=row["id"])


@pytest.mark.asyncio
async def test_full_run_persists_and_completes(providers, storage):
    params = SearchParams(query="water quality", providers=["a", "b"])
    context = _tracked(storage, params)
    run = PipelineRun()

    result = await _processor(providers, storage).process(params, context, run)

    assert run.history == [
        PipelineState.INIT, PipelineState.CACHE_CHECK, PipelineState.EXECUTE,
        PipelineState.DEDUPLICATE, PipelineState.ENRICH, PipelineState.PERSIST,
        PipelineState.CACHE_UPDATE, PipelineState.COMPLETE,
    ]
    assert [r.url for r in result.unique_results] == [
        "https://water.gov/report", "https://roads.gov/review", "https://flood.gov/maps",
    ]
    assert result.duplicates_removed == 1
    assert result.persisted_count == 3
    assert result.cache_hit is False
    assert result.degraded is False
    assert all(r.search_request_id == context.search_request_id for r in result.unique_results)
    assert len(result.duplicate_logs) == 1

    request_id = context.search_request_id
    assert storage.get_request(request_id)["status"] == "completed"
    assert len(storage.get_results(request_id)) == 3
    rows = storage.get_results(request_id, include_duplicates=True)
    assert len(rows) == 4
    duplicate_row = next(r for r in rows if not r["deduped"])
    relationships = storage.get_relationships(duplicate_row["id"])
    assert len(relationships) == 1
    assert relationships[0]["reason"] == "url_match"


@pytest.mark.asyncio
async def test_cache_hit_skips_providers(providers):
    processor = _processor(providers, cache=CacheStore(ttl=60))
    params = SearchParams(query="water quality", providers=["a", "b"])

    first = await processor.process(params)
    run = PipelineRun()
    second = await processor.process(params, run=run)

    assert first.cache_hit is False
    assert second.cache_hit is True
    assert second.duplicates_removed == first.duplicates_removed
    assert [r.url for r in second.unique_results] == [r.url for r in first.unique_results]
    assert providers["a"].calls == 1
    assert run.history == [PipelineState.INIT, PipelineState.CACHE_CHECK, PipelineState.COMPLETE]


@pytest.mark.asyncio
async def test_cache_hit_when_defaults_are_named_explicitly(providers):
    processor = ResultsProcessor(
        ProviderExecutor(providers, default_providers=["a", "b"]), cache=CacheStore(ttl=60)
    )

    await processor.process(SearchParams(query="water quality"))
    second = await processor.process(SearchParams(query="water quality", providers=["b", "a"]))

    assert second.cache_hit is True
    assert providers["a"].calls == 1


@pytest.mark.asyncio
async def test_use_cache_false_bypasses_lookup(providers):
    processor = _processor(providers, cache=CacheStore(ttl=60))
    params = SearchParams(query="water quality", providers=["a", "b"])
    await processor.process(params)

    params.use_cache = False
    result = await processor.process(params)

    assert result.cache_hit is False
    assert providers["a"].calls == 2


@pytest.mark.asyncio
async def test_cache_hit_marks_tracked_request_completed(providers, storage):
    cache = CacheStore(ttl=60)
    processor = _processor(providers, storage, cache)
    params = SearchParams(query="water quality", providers=["a", "b"])
    await processor.process(params, _tracked(storage, params))

    context = _tracked(storage, params)
    result = await processor.process(params, context)

    assert result.cache_hit is True
    assert result.persisted_count == 0
    assert result.search_request_id == context.search_request_id
    assert storage.get_request(context.search_request_id)["status"] == "completed"


@pytest.mark.asyncio
async def test_deduplication_can_be_disabled(providers):
    params = SearchParams(query="water quality", providers=["a", "b"], deduplication=False)

    result = await _processor(providers).process(params)

    assert len(result.unique_results) == 4
    assert result.duplicates_removed == 0
    assert result.duplicate_logs == []


@pytest.mark.asyncio
async def test_duplicate_logs_follow_option(providers):
    params = SearchParams(query="water quality", providers=["a", "b"], deduplication={"log_duplicates": False})

    result = await _processor(providers).process(params)

    assert result.duplicates_removed == 1
    assert result.duplicate_logs is None


@pytest.mark.asyncio
async def test_all_providers_failed_marks_request_error(storage):
    providers = {
        "a": StubProvider("a", error=ProviderAuthError("bad key", provider="a")),
        "b": StubProvider("b", error=ProviderAuthError("bad key", provider="b")),
    }
    params = SearchParams(query="water quality", providers=["a", "b"])
    context = _tracked(storage, params)
    run = PipelineRun()

    with pytest.raises(AllProvidersFailedError) as excinfo:
        await _processor(providers, storage).process(params, context, run)

    assert set(excinfo.value.failures) == {"a", "b"}
    assert run.state == PipelineState.ERROR
    row = storage.get_request(context.search_request_id)
    assert row["status"] == "error"
    assert "All providers failed" in row["error_message"]
    assert row["error_at"] is not None


@pytest.mark.asyncio
async def test_no_providers_at_all_is_fatal():
    with pytest.raises(AllProvidersFailedError):
        await _processor({}).process(SearchParams(query="q"))


@pytest.mark.asyncio
async def test_degraded_results_are_returned_but_not_cached():
    cache = CacheStore(ttl=60)
    providers = {
        "a": StubProvider("a", results=_a_results()),
        "b": StubProvider("b", error=ProviderAuthError("bad key", provider="b")),
    }

    result = await _processor(providers, cache=cache).process(
        SearchParams(query="water quality", providers=["a", "b"])
    )

    assert result.degraded is True
    assert result.failed_providers["b"].startswith("ProviderAuthError")
    assert len(result.unique_results) == 2
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_failed_row_is_skipped(providers, db):
    class FlakyStorage(SearchStorage):
        def save_result(self, request_id, result, deduped=True):
            if "roads.gov" in result.url:
                raise PersistenceError("disk full")
            return super().save_result(request_id, result, deduped)

    storage = FlakyStorage()
    params = SearchParams(query="water quality", providers=["a", "b"])
    context = _tracked(storage, params)

    result = await _processor(providers, storage).process(params, context)

    assert result.persisted_count == 2
    assert len(result.unique_results) == 3
    assert storage.get_request(context.search_request_id)["status"] == "completed"


@pytest.mark.asyncio
async def test_owner_change_mid_run_cancels_writes(storage):
    params = SearchParams(query="water quality", providers=["a"])
    context = _tracked(storage, params)

    def reassign(_params):
        with get_db_session() as session:
            session.get(SearchRequest, context.search_request_id).owner_id = "u2"

    providers = {"a": StubProvider("a", results=_a_results(), on_search=reassign)}

    with pytest.raises(PipelineCancelledError):
        await _processor(providers, storage).process(params, context)

    assert storage.get_results(context.search_request_id) == []
    assert storage.get_request(context.search_request_id)["status"] == "processing"


@pytest.mark.asyncio
async def test_invalid_request_is_rejected_before_anything_runs(providers, storage):
    params = SearchParams(query="   ", providers=["a"])
    context = _tracked(storage, params)
    run = PipelineRun()

    with pytest.raises(ValidationError):
        await _processor(providers, storage).process(params, context, run)

    assert run.state == PipelineState.ERROR
    assert providers["a"].calls == 0
    assert storage.get_request(context.search_request_id)["status"] == "pending"


@pytest.mark.asyncio
async def test_request_already_processing_is_rejected(providers, storage):
    params = SearchParams(query="water quality", providers=["a"])
    context = _tracked(storage, params)
    storage.begin(context.search_request_id, "u1")

    with pytest.raises(PipelineError) as excinfo:
        await _processor(providers, storage).process(params, context)

    assert excinfo.value.reason == "in_progress"
    assert storage.get_request(context.search_request_id)["status"] == "processing"


@pytest.mark.asyncio
async def test_corrupt_cache_entry_fails_the_run(providers, storage):
    cache = CacheStore(ttl=60)
    params = SearchParams(query="water quality", providers=["a", "b"])
    key = cache.set(params, ProcessingResult(unique_results=[make_result()], duplicates_removed=0))
    cache._cache[key]["data"] = {"unique_results": "not a list"}
    context = _tracked(storage, params)

    with pytest.raises(CacheCorruptionError):
        await _processor(providers, storage, cache).process(params, context)

    assert storage.get_request(context.search_request_id)["status"] == "error"
    assert providers["a"].calls == 0


def test_pipeline_run_rejects_illegal_transitions():
    run = PipelineRun()
    run.advance(PipelineState.CACHE_CHECK)

    with pytest.raises(PipelineError):
        run.advance(PipelineState.PERSIST)

    run.advance(PipelineState.ERROR)
    with pytest.raises(PipelineError):
        run.advance(PipelineState.ERROR)
