import pytest

from greylit_app.errors import ValidationError
from greylit_app.routes.validators import (
    parse_search_payload,
    sanitize_string,
    set_allowed_providers,
    validate_provider_id,
)
from greylit_app.search.models import SearchParams


@pytest.fixture(autouse=True)
def allowed_providers():
    set_allowed_providers(["serper", "serpapi"])
    yield
    set_allowed_providers([])


def test_parse_full_payload():
    params = parse_search_payload({
        "query": "  housing strategy\x00 ",
        "maxResults": "20",
        "fileTypes": "PDF, docx",
        "domain": "Gov.UK",
        "providers": ["Serper"],
        "useCache": False,
        "deduplication": {"threshold": 0.9, "merge": True},
    })

    assert params.query == "housing strategy"
    assert params.max_results == 20
    assert params.file_types == ["pdf", "docx"]
    assert params.domain == "gov.uk"
    assert params.providers == ["serper"]
    assert params.use_cache is False
    assert params.dedup_overrides() == {"threshold": 0.9, "merge": True}


def test_defaults_fill_missing_fields():
    params = parse_search_payload({"query": "q"}, default_providers=["serpapi"], default_max_results=30)

    assert params.providers == ["serpapi"]
    assert params.max_results == 30
    assert params.page == 1
    assert params.deduplication is True


@pytest.mark.parametrize("payload,field", [
    ({}, "query"),
    ({"query": "   "}, "query"),
    ({"query": "x" * 3000}, "query"),
    ({"query": "q", "providers": ["bing"]}, "providers"),
    ({"query": "q", "providers": ["bad id!"]}, "providers"),
    ({"query": "q", "providers": {"serper": True}}, "providers"),
    ({"query": "q", "domain": "not a domain"}, "domain"),
    ({"query": "q", "max_results": 0}, "max_results"),
    ({"query": "q", "max_results": 101}, "max_results"),
    ({"query": "q", "max_results": "many"}, "max_results"),
    ({"query": "q", "page": 0}, "page"),
    ({"query": "q", "file_types": ["exe"]}, "file_types"),
    ({"query": "q", "deduplication": {"threshold": 1.5}}, "deduplication.threshold"),
    ({"query": "q", "deduplication": {"enabled": "false"}}, "deduplication.enabled"),
    ({"query": "q", "deduplication": {"merge": "no"}}, "deduplication.merge"),
    ({"query": "q", "deduplication": {"log_duplicates": 0}}, "deduplication.log_duplicates"),
    ({"query": "q", "deduplication": {"ignore_www": 1}}, "deduplication.ignore_www"),
    ({"query": "q", "deduplication": {"treat_subdomains_as_same": "true"}}, "deduplication.treat_subdomains_as_same"),
    ({"query": "q", "deduplication": {"fuzzy": True}}, "deduplication"),
    ({"query": "q", "deduplication": "yes"}, "deduplication"),
    ({"query": "q", "use_cache": "no"}, "use_cache"),
])
def test_invalid_payloads_name_the_field(payload, field):
    with pytest.raises(ValidationError) as excinfo:
        parse_search_payload(payload)
    assert excinfo.value.field == field


def test_non_object_body_is_rejected():
    with pytest.raises(ValidationError):
        parse_search_payload(["query"])


def test_validate_provider_id():
    assert validate_provider_id("serper") is None
    assert validate_provider_id("") == "Missing provider ID"
    assert validate_provider_id("a/b") == "Invalid provider ID format"
    assert validate_provider_id("bing") == "Unknown provider: bing"


def test_sanitize_string():
    assert sanitize_string("a\x00b\nc") == "abc"
    assert sanitize_string("a\nb", allow_newlines=True) == "a\nb"
    assert sanitize_string("abcdef", max_length=3) == "abc"
    assert sanitize_string(None) == ""


def test_from_filters_round_trip():
    params = SearchParams(query="q", max_results=10, file_types=["pdf"], domain="gov.uk", providers=["serper"], page=2)

    rebuilt = SearchParams.from_filters("q", params.filters())

    assert rebuilt == params


def test_direct_params_reject_non_boolean_dedup_switches():
    params = SearchParams(query="q", deduplication={"enable_title_matching": "off"})

    with pytest.raises(ValidationError) as excinfo:
        params.validate()
    assert excinfo.value.field == "deduplication.enable_title_matching"

    SearchParams(query="q", deduplication={"enabled": False, "merge": None}).validate()
