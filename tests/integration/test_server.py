"""Integration tests for the HTTP API using Quart's test client."""

import pytest

from artive.models.events import parse_event
from artive.server import create_app

from conftest import WECHAT_URL, FakeFetcher


@pytest.fixture
def client(engine):
    return create_app(engine, init_schema=False).test_client()


def parse_sse(body):
    return [parse_event(frame[len("data: "):]) for frame in body.split("\n\n") if frame.startswith("data: ")]


async def create_task(client, content_id="c1"):
    response = await client.post("/api/rewrite", json={"contentIds": [content_id], "aiModel": "claude-4"})
    assert response.status_code == 200
    return (await response.get_json())["tasks"][0]


async def stream(client, task):
    return await client.post("/api/rewrite/stream", json={
        "taskId": task["id"],
        "contentId": task["content_id"],
        "aiModel": task["ai_model"],
        "promptTemplate": task["prompt_template"],
    })


class TestCreateTasks:

    @pytest.mark.asyncio
    async def test_creates_pending_tasks(self, client, content):
        response = await client.post("/api/rewrite", json={"contentIds": ["c1"], "aiModel": "gpt-5"})

        assert response.status_code == 200
        data = await response.get_json()
        assert data["message"] == "已创建1个改写任务"
        assert data["tasks"][0]["status"] == "pending"
        assert data["tasks"][0]["ai_model"] == "gpt-5"

    @pytest.mark.asyncio
    async def test_empty_content_ids(self, client):
        response = await client.post("/api/rewrite", json={"contentIds": [], "aiModel": "claude-4"})

        assert response.status_code == 400
        assert (await response.get_json())["error"] == "请选择要改写的内容"

    @pytest.mark.asyncio
    async def test_invalid_model(self, client, content):
        response = await client.post("/api/rewrite", json={"contentIds": ["c1"], "aiModel": "gpt-99"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_content(self, client):
        response = await client.post("/api/rewrite", json={"contentIds": ["nope"], "aiModel": "claude-4"})
        assert response.status_code == 404


class TestStream:

    @pytest.mark.asyncio
    async def test_streams_events_until_complete(self, client, content):
        task = await create_task(client)

        response = await stream(client, task)

        assert response.status_code == 200
        assert response.headers["Content-Type"].startswith("text/event-stream")
        events = parse_sse(await response.get_data(as_text=True))
        assert events[0].type == "start"
        assert events[-1].type == "complete"
        assert events[-1].result.title == "T2"
        assert sum(1 for e in events if e.is_terminal) == 1

    @pytest.mark.asyncio
    async def test_running_task_is_rejected(self, client, engine, content):
        task = await create_task(client)
        engine.locks.acquire(task["id"])
        try:
            response = await stream(client, task)
        finally:
            engine.locks.release(task["id"])

        assert response.status_code == 409
        assert "任务正在处理中" in (await response.get_json())["error"]

    @pytest.mark.asyncio
    async def test_missing_fields(self, client):
        response = await client.post("/api/rewrite/stream", json={"taskId": "t1"})
        assert response.status_code == 400


class TestListAndEdit:

    @pytest.mark.asyncio
    async def test_lists_tasks_with_results(self, client, content):
        task = await create_task(client)
        await (await stream(client, task)).get_data()

        response = await client.get("/api/rewrite?contentIds=c1,c9&status=completed")

        tasks = await response.get_json()
        assert [t["id"] for t in tasks] == [task["id"]]
        assert [r["version"] for r in tasks[0]["rewrite_results"]] == [1]

    @pytest.mark.asyncio
    async def test_invalid_status_filter(self, client):
        response = await client.get("/api/rewrite?status=bogus")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_edit_result(self, client, content):
        task = await create_task(client)
        await (await stream(client, task)).get_data()
        listed = await (await client.get("/api/rewrite")).get_json()
        result_id = listed[0]["rewrite_results"][0]["id"]

        response = await client.put("/api/rewrite", json={
            "resultId": result_id,
            "title": "Edited",
            "contentHtml": "<p>edited</p>",
        })

        assert response.status_code == 200
        data = await response.get_json()
        assert data["title"] == "Edited"
        assert data["is_edited"] is True
        assert data["edited_content_html"] == "<p>edited</p>"
        assert data["content_html"] == "<p>new</p>"

    @pytest.mark.asyncio
    async def test_edit_unknown_result(self, client):
        response = await client.put("/api/rewrite", json={"resultId": "nope", "title": "x", "contentHtml": "y"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_edit_missing_fields(self, client):
        response = await client.put("/api/rewrite", json={"resultId": "nope"})
        assert response.status_code == 400


class TestOriginalArticle:

    @pytest.mark.asyncio
    async def test_wechat_article(self, client, fetcher):
        fetcher.article = fetcher.article.model_copy(update={"html": "<p>orig</p><script>x()</script>"})

        response = await client.post("/api/article/original", json={"url": WECHAT_URL})

        data = await response.get_json()
        assert data["title"] == "T"
        assert data["html"] == "<p>orig</p>"
        assert fetcher.calls == [WECHAT_URL]

    @pytest.mark.asyncio
    async def test_non_wechat_url_returns_placeholder(self, client, fetcher):
        response = await client.post("/api/article/original", json={"url": "https://example.com/post"})

        data = await response.get_json()
        assert data["title"] == "非微信文章"
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_missing_url(self, client):
        response = await client.post("/api/article/original", json={})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_fetch_failure(self, client, engine):
        engine.resolver.fetcher = FakeFetcher(error="余额不足")

        response = await client.post("/api/article/original", json={"url": WECHAT_URL})

        assert response.status_code == 500
        assert (await response.get_json())["error"] == "余额不足"
