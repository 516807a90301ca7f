"""Quart application exposing the rewrite engine over HTTP and Server-Sent Events."""

from typing import Optional

from pydantic import ValidationError
from quart import Quart, jsonify, make_response, request

from artive.models.rewrite import RewriteRequest, RewriteTask, TaskStatus
from artive.services.article_fetcher import ArticleFetchError, is_wechat_article_url
from artive.services.exceptions import ContentNotFound, StorageError, TaskAlreadyRunning
from artive.services.task_engine import RewriteEngine
from artive.utils.html import clean_article_html
from artive.utils.logging import get_logger


logger = get_logger(__name__)

NON_WECHAT_ARTICLE = {
    "title": "非微信文章",
    "html": "<p>该链接不是微信公众号文章，无法获取原文内容。</p>",
    "author": "",
    "nickname": "",
    "publishTime": "",
    "cover": "",
}

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def create_app(engine: RewriteEngine, init_schema: bool = True) -> Quart:
    """
    Build the HTTP app around an engine.

    Args:
        engine: Engine whose store, resolver and locks back every route
        init_schema: Create the database tables before serving

    Returns:
        Quart application
    """
    app = Quart(__name__)
    store = engine.store

    if init_schema:
        @app.before_serving
        async def startup():
            await store.init_schema()
            logger.info("server_started", database=store.path)

    @app.errorhandler(StorageError)
    async def handle_storage_error(error: StorageError):
        logger.error("request_storage_error", path=request.path, error=error.message)
        return _error("服务器错误", 500)

    async def _task_with_results(task: RewriteTask) -> dict:
        data = task.model_dump(mode="json")
        results = await store.list_results(task.id)
        data["rewrite_results"] = [result.model_dump(mode="json") for result in results]
        return data

    @app.route("/api/rewrite", methods=["GET"])
    async def list_tasks():
        content_ids = [c for c in request.args.get("contentIds", "").split(",") if c]
        status: Optional[TaskStatus] = None
        if request.args.get("status"):
            try:
                status = TaskStatus(request.args["status"])
            except ValueError:
                return _error(f"无效的任务状态: {request.args['status']}", 400)

        tasks = await store.list_tasks(content_ids=content_ids or None, status=status)
        return jsonify([await _task_with_results(task) for task in tasks])

    @app.route("/api/rewrite", methods=["POST"])
    async def create_tasks():
        body = await request.get_json(silent=True) or {}
        content_ids = body.get("contentIds")
        if not isinstance(content_ids, list) or not content_ids:
            return _error("请选择要改写的内容", 400)
        if not body.get("aiModel"):
            return _error("请选择有效的AI模型", 400)

        try:
            tasks = await engine.submit_many(
                content_ids,
                ai_model=body["aiModel"],
                prompt_template=body.get("promptTemplate"),
            )
        except ValueError as e:
            return _error(str(e), 400)
        except ContentNotFound as e:
            return _error(e.message, 404)

        return jsonify({
            "message": f"已创建{len(tasks)}个改写任务",
            "tasks": [task.model_dump(mode="json") for task in tasks],
        })

    @app.route("/api/rewrite", methods=["PUT"])
    async def edit_result():
        body = await request.get_json(silent=True) or {}
        result_id = body.get("resultId")
        title = body.get("title")
        content_html = body.get("contentHtml")
        if not result_id or title is None or content_html is None:
            return _error("缺少必要参数", 400)

        result = await store.save_result_edit(result_id, title, content_html)
        if result is None:
            return _error(f"改写结果不存在: {result_id}", 404)

        logger.info("result_edited", result_id=result_id)
        return jsonify(result.model_dump(mode="json"))

    @app.route("/api/rewrite/stream", methods=["POST"])
    async def stream_rewrite():
        body = await request.get_json(silent=True) or {}
        try:
            rewrite_request = RewriteRequest.model_validate(body)
        except ValidationError:
            return _error("缺少必要参数", 400)

        try:
            channel, _ = engine.start(rewrite_request)
        except TaskAlreadyRunning as e:
            return _error(e.message, 409)

        async def send_events():
            drained = False
            try:
                async for event in channel:
                    yield event.to_sse().encode("utf-8")
                drained = True
            finally:
                if not drained:
                    # Client went away; the run keeps going without a subscriber
                    channel.detach()

        response = await make_response(send_events(), SSE_HEADERS)
        response.timeout = None
        return response

    @app.route("/api/article/original", methods=["POST"])
    async def original_article():
        body = await request.get_json(silent=True) or {}
        url = body.get("url")
        if not url:
            return _error("缺少文章链接", 400)

        if not is_wechat_article_url(url):
            return jsonify(NON_WECHAT_ARTICLE)

        try:
            article = await engine.resolver.fetcher.fetch(url)
        except ArticleFetchError as e:
            logger.error("original_article_failed", url=url, error=str(e))
            return _error(str(e) or "获取原文失败", 500)

        return jsonify({
            "title": article.title,
            "html": clean_article_html(article.html),
            "author": article.author,
            "nickname": article.nickname,
            "publishTime": article.publish_time,
            "cover": article.cover_url,
        })

    return app
