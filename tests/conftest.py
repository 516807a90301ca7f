"""Shared test fixtures for all test modules."""

import asyncio

import pytest
import pytest_asyncio

from artive.models.config import LLMConfig
from artive.models.rewrite import ContentItem, FetchedArticle, RewriteRequest
from artive.services.article_fetcher import ArticleFetchError
from artive.services.source_resolver import SourceResolver
from artive.services.task_engine import RewriteEngine
from artive.services.task_store import TaskStore
from artive.utils.logging import configure_logging


WECHAT_URL = "https://mp.weixin.qq.com/s/abc"


class FakeFetcher:
    """Stands in for ArticleFetcher; records every URL it is asked for."""

    def __init__(self, title="T", html="<p>orig</p>", error=None):
        self.article = FetchedArticle(title=title, html=html, author="author")
        self.error = error
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        if self.error is not None:
            raise ArticleFetchError(self.error)
        return self.article


class FakeLLMClient:
    """
    Stands in for LLMClient.stream_completion.

    Yields the scripted deltas, optionally sleeping before each one, then
    raises ``error`` if given.
    """

    def __init__(self, deltas=(), error=None, delay=0.0):
        self.deltas = list(deltas)
        self.error = error
        self.delay = delay
        self.calls = []

    async def stream_completion(self, model, system_prompt, user_prompt, request_id=None, **kwargs):
        self.calls.append({
            "model": model,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "request_id": request_id,
        })
        for delta in self.deltas:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield delta
        if self.error is not None:
            raise self.error


@pytest.fixture(scope="session", autouse=True)
def log_to_tmp(tmp_path_factory):
    """Keep structured logs out of captured stdout."""
    configure_logging(tmp_path_factory.mktemp("logs"))


@pytest.fixture
def llm_config():
    return LLMConfig(api_key="test-key")


@pytest_asyncio.fixture
async def store(tmp_path):
    """Empty task store in a temporary SQLite file."""
    store = TaskStore(tmp_path / "artive.db")
    await store.init_schema()
    return store


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def llm_client():
    return FakeLLMClient(deltas=['{"title":"T2",', '"content":"<p>new</p>"}'])


@pytest.fixture
def engine(store, fetcher, llm_client, llm_config):
    return RewriteEngine(store, SourceResolver(store, fetcher), llm_client, llm_config)


@pytest_asyncio.fixture
async def content(store):
    """A content item c1 pointing at a WeChat article."""
    return await store.add_content(ContentItem(id="c1", title="Original", original_url=WECHAT_URL))


@pytest_asyncio.fixture
async def request_for(engine, content):
    """Factory: submit a task for the c1 content item and return its run request."""

    async def make(prompt_template=None):
        task = await engine.submit(content.id, prompt_template=prompt_template)
        return RewriteRequest.for_task(task)

    return make
