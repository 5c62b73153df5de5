import asyncio
import os
import tempfile

# Must be set before greylit_app is imported
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="greylit-logs-"))
os.environ["DEBUG_LOGGING"] = "false"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["CELERY_ENABLED"] = "false"
os.environ["DISABLE_RATE_LIMITING"] = "true"

import pytest

from greylit_app.database import configure_database
from greylit_app.models import Base
from greylit_app.providers.base import RateLimitStatus
from greylit_app.search.models import CanonicalResult


def make_result(provider="serper", title="Untitled", url="https://example.org/", rank=1, **kwargs):
    return CanonicalResult(provider=provider, title=title, url=url, rank=rank, **kwargs)


class StubProvider:
    """Stands in for a BaseSearchProvider: canned results or a canned error."""

    def __init__(self, provider_id, results=None, error=None, delay=0.0, on_search=None):
        self.id = provider_id
        self.results = list(results or [])
        self.error = error
        self.delay = delay
        self.on_search = on_search
        self.calls = 0

    async def search(self, params):
        self.calls += 1
        if self.on_search:
            self.on_search(params)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.results)

    def get_rate_limit_status(self):
        return RateLimitStatus(available=10.0, max_tokens=10, is_limited=False)


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def db():
    engine = configure_database("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def clock():
    return FakeClock()
