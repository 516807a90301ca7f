"""Unit tests for the rewrite task engine."""

import asyncio

import pytest

from artive.models.config import LLMConfig
from artive.models.events import CompleteEvent, ErrorEvent
from artive.models.rewrite import ContentItem, RewriteRequest, TaskStatus
from artive.services.events import EventChannel
from artive.services.exceptions import ContentNotFound, TaskAlreadyRunning, TaskNotFound, UpstreamUnavailable
from artive.services.prompts import REWRITE_SYSTEM_PROMPT
from artive.services.source_resolver import SourceResolver
from artive.services.task_engine import RewriteEngine

from conftest import FakeFetcher, FakeLLMClient


def make_engine(store, llm_client, fetcher=None, llm_config=None):
    return RewriteEngine(
        store,
        SourceResolver(store, fetcher or FakeFetcher()),
        llm_client,
        llm_config or LLMConfig(api_key="test-key"),
    )


async def run_to_end(engine, request):
    channel = EventChannel(request.task_id)
    task = await engine.run(request, channel)
    return task, channel.emitted


def assert_single_terminal_last(events):
    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert events[-1] is terminal[0]


class TestSubmit:

    @pytest.mark.asyncio
    async def test_creates_pending_tasks_with_default_template(self, engine, content):
        tasks = await engine.submit_many([content.id])

        assert len(tasks) == 1
        assert tasks[0].status == TaskStatus.PENDING
        assert tasks[0].ai_model == "claude-4"
        assert "{{title}}" in tasks[0].prompt_template
        assert (await engine.store.get_task(tasks[0].id)).id == tasks[0].id

    @pytest.mark.asyncio
    async def test_accepts_provider_model_id(self, engine, content):
        task = await engine.submit(content.id, ai_model="openai/gpt-4o-mini")
        assert task.ai_model == "openai/gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_rejects_empty_ids(self, engine):
        with pytest.raises(ValueError):
            await engine.submit_many([])

    @pytest.mark.asyncio
    async def test_rejects_unknown_model(self, engine, content):
        with pytest.raises(ValueError, match="有效的AI模型"):
            await engine.submit(content.id, ai_model="gpt-99")

    @pytest.mark.asyncio
    async def test_rejects_missing_content(self, engine):
        with pytest.raises(ContentNotFound):
            await engine.submit("nope")


class TestRun:

    @pytest.mark.asyncio
    async def test_successful_run(self, engine, request_for, llm_client):
        request = await request_for()

        task, events = await run_to_end(engine, request)

        assert [e.type for e in events] == [
            "start", "status", "progress", "progress", "progress", "content", "progress", "complete",
        ]
        assert_single_terminal_last(events)
        assert events[5].content == "<p>new</p>..."

        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at is not None
        result = events[-1].result
        assert (result.version, result.title, result.content_html) == (1, "T2", "<p>new</p>")
        assert result.content_text == "new"

        call = llm_client.calls[0]
        assert call["model"] == "claude-4"
        assert call["system_prompt"] == REWRITE_SYSTEM_PROMPT
        assert call["user_prompt"].endswith("原文标题：T\n原文内容：<p>orig</p>")

    @pytest.mark.asyncio
    async def test_custom_template(self, engine, request_for, llm_client):
        request = await request_for(prompt_template="Rewrite {{title}}: {{content}}")

        await run_to_end(engine, request)

        assert llm_client.calls[0]["user_prompt"] == "Rewrite T: <p>orig</p>"

    @pytest.mark.asyncio
    async def test_second_run_adds_version_and_uses_cache(self, engine, request_for, fetcher):
        request = await request_for()

        await run_to_end(engine, request)
        task, events = await run_to_end(engine, request)

        assert task.status == TaskStatus.COMPLETED
        assert events[-1].result.version == 2
        assert "使用缓存的原文" in [getattr(e, "message", None) for e in events]
        assert len(fetcher.calls) == 1
        assert [r.version for r in await engine.store.list_results(request.task_id)] == [1, 2]

    @pytest.mark.asyncio
    async def test_resumes_abandoned_processing_task(self, engine, request_for):
        request = await request_for()
        await engine.store.mark_processing(request.task_id)

        task, _ = await run_to_end(engine, request)

        assert task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unparseable_output_persists_fallback(self, store, content):
        engine = make_engine(store, FakeLLMClient(deltas=["Sorry, ", "I can't do that."]))
        task = await engine.submit(content.id)

        task, events = await run_to_end(engine, RewriteRequest.for_task(task))

        assert task.status == TaskStatus.COMPLETED
        result = events[-1].result
        assert result.title == "T (改写版)"
        assert result.content_html == "<p>改写失败，请重试</p>"
        assert "content" not in [e.type for e in events]


class TestRunFailures:

    @pytest.mark.asyncio
    async def test_unsupported_source_fails_task(self, store):
        await store.add_content(ContentItem(id="c2", title="Other", original_url="https://example.com/post"))
        fetcher = FakeFetcher()
        llm_client = FakeLLMClient(deltas=["{}"])
        engine = make_engine(store, llm_client, fetcher=fetcher)
        task = await engine.submit("c2")

        task, events = await run_to_end(engine, RewriteRequest.for_task(task))

        assert_single_terminal_last(events)
        assert isinstance(events[-1], ErrorEvent)
        assert "只支持微信公众号文章链接" in events[-1].error
        assert task.status == TaskStatus.FAILED
        assert task.error_message == events[-1].error
        assert fetcher.calls == []
        assert llm_client.calls == []
        assert await store.list_results(task.id) == []

    @pytest.mark.asyncio
    async def test_upstream_rejection_fails_task(self, store, content):
        error = UpstreamUnavailable("OpenRouter API失败: 500", status_code=500)
        engine = make_engine(store, FakeLLMClient(error=error))
        task = await engine.submit(content.id)

        task, events = await run_to_end(engine, RewriteRequest.for_task(task))

        assert_single_terminal_last(events)
        assert events[-1].error == "OpenRouter API失败: 500"
        assert task.status == TaskStatus.FAILED
        assert task.error_message == "OpenRouter API失败: 500"
        assert await store.list_results(task.id) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_task(self, store, content):
        engine = make_engine(store, FakeLLMClient(deltas=['{"title":'], error=RuntimeError("boom")))
        task = await engine.submit(content.id)

        task, events = await run_to_end(engine, RewriteRequest.for_task(task))

        assert task.status == TaskStatus.FAILED
        assert task.error_message == "boom"
        assert_single_terminal_last(events)

    @pytest.mark.asyncio
    async def test_stream_timeout(self, store, content):
        engine = make_engine(
            store,
            FakeLLMClient(deltas=["{", "}"], delay=5.0),
            llm_config=LLMConfig(api_key="test-key", stream_timeout=0.05),
        )
        task = await engine.submit(content.id)

        task, events = await run_to_end(engine, RewriteRequest.for_task(task))

        assert task.status == TaskStatus.FAILED
        assert task.error_message == "AI响应超时 (0.05s)"
        assert isinstance(events[-1], ErrorEvent)

    @pytest.mark.asyncio
    async def test_failed_task_is_not_rerun(self, store, content):
        engine = make_engine(store, FakeLLMClient(error=UpstreamUnavailable("down")))
        task = await engine.submit(content.id)
        request = RewriteRequest.for_task(task)
        await run_to_end(engine, request)

        task, events = await run_to_end(engine, request)

        assert [e.type for e in events] == ["start", "error"]
        assert "failed" in events[-1].error
        assert task.status == TaskStatus.FAILED
        assert task.error_message == "down"

    @pytest.mark.asyncio
    async def test_unknown_task(self, engine, content):
        request = RewriteRequest(task_id="nope", content_id=content.id, ai_model="claude-4", prompt_template="x")

        task, events = await run_to_end(engine, request)

        assert task is None
        assert [e.type for e in events] == ["start", "error"]
        assert "nope" in events[-1].error


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_second_start_is_rejected_while_running(self, engine, request_for):
        request = await request_for()

        channel, run = engine.start(request)
        with pytest.raises(TaskAlreadyRunning):
            engine.start(request)
        assert engine.locks.is_running(request.task_id)

        events = [event async for event in channel]
        task = await run

        assert task.status == TaskStatus.COMPLETED
        assert isinstance(events[-1], CompleteEvent)
        assert not engine.locks.is_running(request.task_id)

    @pytest.mark.asyncio
    async def test_run_rejected_while_running_emits_nothing(self, engine, request_for):
        request = await request_for()
        channel, run = engine.start(request)

        other = EventChannel(request.task_id)
        with pytest.raises(TaskAlreadyRunning):
            await engine.run(request, other)

        assert other.closed
        assert other.emitted == []
        await run

    @pytest.mark.asyncio
    async def test_different_tasks_run_concurrently(self, store, content):
        engine = make_engine(
            store,
            FakeLLMClient(deltas=['{"title":"A",', '"content":"<p>a</p>"}'], delay=0.01),
        )
        first = await engine.submit(content.id)
        second = await engine.submit(content.id)

        (_, run1), (_, run2) = engine.start(RewriteRequest.for_task(first)), engine.start(RewriteRequest.for_task(second))
        tasks = await asyncio.gather(run1, run2)

        assert [t.status for t in tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_detached_subscriber_does_not_stop_run(self, store, content):
        engine = make_engine(
            store,
            FakeLLMClient(deltas=['{"title":"A",', '"content":"<p>a</p>"}'], delay=0.01),
        )
        task = await engine.submit(content.id)

        channel, run = engine.start(RewriteRequest.for_task(task))
        async for event in channel:
            assert event.type == "start"
            break
        channel.detach()

        task = await run

        assert task.status == TaskStatus.COMPLETED
        assert len(await store.list_results(task.id)) == 1
        assert isinstance(channel.emitted[-1], CompleteEvent)

    @pytest.mark.asyncio
    async def test_engine_holds_started_runs_until_done(self, engine, request_for):
        request = await request_for()

        _, run = engine.start(request)
        assert run in engine._runs

        await run
        await asyncio.sleep(0)

        assert run not in engine._runs


class TestRunBatch:

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_batch(self, engine, store, content):
        await store.add_content(ContentItem(id="c2", title="Other", original_url="https://example.com/post"))
        bad = await engine.submit("c2")
        good = await engine.submit(content.id)
        missing = RewriteRequest(task_id="nope", content_id=content.id, ai_model="claude-4", prompt_template="x")

        outcomes = await engine.run_batch(
            [RewriteRequest.for_task(bad), RewriteRequest.for_task(good), missing],
            delay=0,
        )

        assert outcomes[bad.id].status == TaskStatus.FAILED
        assert outcomes[good.id].status == TaskStatus.COMPLETED
        assert isinstance(outcomes["nope"], TaskNotFound)
