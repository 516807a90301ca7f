"""Rewrite task engine: drives one task from pending to completed or failed."""

import asyncio
from contextlib import aclosing
from typing import Iterable, Optional

import structlog

from artive.models.config import Config, LLMConfig
from artive.models.events import (
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    ProgressEvent,
    StartEvent,
    StatusEvent,
)
from artive.models.rewrite import RewriteRequest, RewriteResult, RewriteTask, TaskStatus
from artive.services.events import EventChannel
from artive.services.exceptions import (
    ContentNotFound,
    TaskAlreadyRunning,
    TaskNotFound,
    TaskNotRunnable,
    UpstreamUnavailable,
)
from artive.services.article_fetcher import ArticleFetcher
from artive.services.llm_client import LLMClient
from artive.services.prompts import DEFAULT_PROMPT_TEMPLATE, REWRITE_SYSTEM_PROMPT, compile_prompt
from artive.services.result_extractor import ResultExtractor
from artive.services.source_resolver import SourceResolver
from artive.services.task_store import TaskStore
from artive.utils.html import html_to_text
from artive.utils.logging import get_logger


logger = get_logger(__name__)

UNKNOWN_ERROR = "未知错误"


class TaskLocks:
    """
    Per-task-id locks guaranteeing at most one active run per task.

    Acquisition never waits: a second run for a busy task id fails fast
    with TaskAlreadyRunning. ``acquire`` is synchronous so a caller can
    claim the id before scheduling the run.
    """

    def __init__(self):
        self._held: set[str] = set()

    def is_running(self, task_id: str) -> bool:
        return task_id in self._held

    def acquire(self, task_id: str) -> None:
        if task_id in self._held:
            raise TaskAlreadyRunning(task_id)
        self._held.add(task_id)

    def release(self, task_id: str) -> None:
        self._held.discard(task_id)


def _error_message(error: BaseException) -> str:
    message = getattr(error, "message", None) or str(error)
    return message or UNKNOWN_ERROR


class RewriteEngine:
    """
    Orchestrates a rewrite run.

    load source -> compile prompt -> stream -> extract -> persist version ->
    finalize state, emitting events to the run's channel in order: start,
    then status/progress/content, then exactly one of complete or error.
    """

    def __init__(
        self,
        store: TaskStore,
        resolver: SourceResolver,
        llm_client: LLMClient,
        llm_config: LLMConfig,
        locks: Optional[TaskLocks] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.llm_client = llm_client
        self.llm_config = llm_config
        self.locks = locks or TaskLocks()
        self._runs: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: Config) -> "RewriteEngine":
        """Wire a store, fetcher, resolver and LLM client from configuration."""
        store = TaskStore(config.storage.database_path)
        resolver = SourceResolver(store, ArticleFetcher(config.fetcher))
        return cls(store, resolver, LLMClient(config.llm), config.llm)

    # Submission

    async def submit_many(
        self,
        content_ids: Iterable[str],
        ai_model: Optional[str] = None,
        prompt_template: Optional[str] = None,
    ) -> list[RewriteTask]:
        """
        Create one pending task per content id.

        Raises:
            ValueError: No content ids, or an unknown model key
            ContentNotFound: A content id does not exist
        """
        content_ids = list(content_ids)
        if not content_ids:
            raise ValueError("请选择要改写的内容")

        ai_model = ai_model or self.llm_config.default_model
        if not self.llm_config.is_known_model(ai_model):
            raise ValueError(f"请选择有效的AI模型: {ai_model}")

        for content_id in content_ids:
            if await self.store.get_content(content_id) is None:
                raise ContentNotFound(content_id)

        template = prompt_template or DEFAULT_PROMPT_TEMPLATE
        tasks = await self.store.create_tasks(
            RewriteTask(content_id=content_id, ai_model=ai_model, prompt_template=template)
            for content_id in content_ids
        )
        logger.info("tasks_submitted", count=len(tasks), ai_model=ai_model)
        return tasks

    async def submit(
        self,
        content_id: str,
        ai_model: Optional[str] = None,
        prompt_template: Optional[str] = None,
    ) -> RewriteTask:
        tasks = await self.submit_many([content_id], ai_model, prompt_template)
        return tasks[0]

    # Running

    def start(self, request: RewriteRequest) -> tuple[EventChannel, "asyncio.Task[Optional[RewriteTask]]"]:
        """
        Run a task in the background and return its event channel.

        The task id is claimed before this returns, and the run is a separate
        asyncio task, so a subscriber that stops listening (or is cancelled)
        does not stop the run.

        Raises:
            TaskAlreadyRunning: Another run holds this task id
        """
        self.locks.acquire(request.task_id)
        channel = EventChannel(request.task_id)
        run = asyncio.create_task(
            self._run_claimed(request, channel),
            name=f"rewrite-{request.task_id}",
        )
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)
        return channel, run

    async def run(self, request: RewriteRequest, channel: EventChannel) -> Optional[RewriteTask]:
        """
        Execute one run of a task and close the channel.

        Raises:
            TaskAlreadyRunning: Another run holds this task id (nothing is emitted)

        Returns:
            The task as stored after the run (None if the task does not exist)
        """
        try:
            self.locks.acquire(request.task_id)
        except TaskAlreadyRunning:
            channel.close()
            raise
        return await self._run_claimed(request, channel)

    async def _run_claimed(self, request: RewriteRequest, channel: EventChannel) -> Optional[RewriteTask]:
        try:
            with structlog.contextvars.bound_contextvars(task_id=request.task_id):
                return await self._run_locked(request, channel)
        finally:
            channel.close()
            self.locks.release(request.task_id)

    async def _run_locked(self, request: RewriteRequest, channel: EventChannel) -> Optional[RewriteTask]:
        logger.info(
            "rewrite_run_started",
            content_id=request.content_id,
            ai_model=request.ai_model,
        )
        channel.emit(StartEvent(message="开始处理任务..."))

        try:
            task = await self._begin(request.task_id)
        except Exception as e:
            # Nothing upstream was touched; the stored state stays as it was
            logger.error("rewrite_run_not_started", error=_error_message(e), error_type=type(e).__name__)
            channel.emit(ErrorEvent(error=_error_message(e)))
            return await self._current_task(request.task_id)

        channel.emit(StatusEvent(message="正在处理..."))

        try:
            result = await self._execute(request, channel)
        except Exception as e:
            message = _error_message(e)
            logger.error(
                "rewrite_run_failed",
                error=message,
                error_type=type(e).__name__,
                exc_info=True,
            )
            task = await self._record_failure(request.task_id, message) or task
            channel.emit(ErrorEvent(error=message))
            return task

        try:
            task = await self.store.mark_completed(request.task_id)
        except Exception as e:
            message = _error_message(e)
            logger.error("rewrite_complete_state_failed", error=message)
            task = await self._record_failure(request.task_id, message) or task
            channel.emit(ErrorEvent(error=message))
            return task

        logger.info("rewrite_run_completed", version=result.version, result_id=result.id)
        channel.emit(CompleteEvent(result=result))
        return task

    async def _begin(self, task_id: str) -> RewriteTask:
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if task.status == TaskStatus.FAILED:
            raise TaskNotRunnable(task_id, task.status.value)
        if task.status == TaskStatus.PROCESSING:
            logger.warning("rewrite_run_resuming_abandoned_task")
        return await self.store.mark_processing(task_id)

    async def _execute(self, request: RewriteRequest, channel: EventChannel) -> RewriteResult:
        content = await self.store.get_content(request.content_id)
        if content is None:
            raise ContentNotFound(request.content_id)

        channel.emit(ProgressEvent(message="正在获取原文内容..."))
        source = await self.resolver.resolve(content.id, content.original_url)
        if source.from_cache:
            channel.emit(ProgressEvent(message="使用缓存的原文"))
        else:
            channel.emit(ProgressEvent(message="已获取微信文章"))

        prompt = compile_prompt(request.prompt_template, source.title, source.html)
        extractor = ResultExtractor(source.title)

        channel.emit(ProgressEvent(message="正在调用AI进行改写..."))
        await self._stream_into(request, prompt, extractor, channel)

        record = extractor.finalize()
        if record.is_fallback:
            logger.warning("rewrite_result_fallback", buffer_length=len(extractor.buffer))

        channel.emit(ProgressEvent(message="正在保存结果..."))
        return await self.store.insert_next_result(
            request.task_id,
            title=record.title,
            content_html=record.content,
            content_text=html_to_text(record.content),
        )

    async def _stream_into(
        self,
        request: RewriteRequest,
        prompt: str,
        extractor: ResultExtractor,
        channel: EventChannel,
    ) -> None:
        async def consume() -> None:
            deltas = self.llm_client.stream_completion(
                model=request.ai_model,
                system_prompt=REWRITE_SYSTEM_PROMPT,
                user_prompt=prompt,
                request_id=request.task_id,
            )
            async with aclosing(deltas):
                async for delta in deltas:
                    extractor.feed(delta)
                    preview = extractor.preview()
                    if preview is not None:
                        channel.emit(ContentEvent(content=preview))

        timeout = self.llm_config.stream_timeout
        if timeout is None:
            await consume()
            return

        try:
            async with asyncio.timeout(timeout):
                await consume()
        except TimeoutError as e:
            raise UpstreamUnavailable(f"AI响应超时 ({timeout:g}s)") from e

    async def _record_failure(self, task_id: str, message: str) -> Optional[RewriteTask]:
        try:
            return await self.store.mark_failed(task_id, message)
        except Exception as e:
            logger.error("rewrite_failed_state_not_saved", error=_error_message(e))
            return None

    async def _current_task(self, task_id: str) -> Optional[RewriteTask]:
        try:
            return await self.store.get_task(task_id)
        except Exception as e:
            logger.error("rewrite_task_reload_failed", error=_error_message(e))
            return None

    # Batch

    async def run_batch(
        self,
        requests: Iterable[RewriteRequest],
        delay: float = 1.0,
    ) -> dict[str, RewriteTask | Exception]:
        """
        Run tasks one after another with a pause between them.

        A failing task does not stop the batch; its entry holds the stored
        task (usually failed) or the exception that prevented the run.
        """
        requests = list(requests)
        outcomes: dict[str, RewriteTask | Exception] = {}

        for index, request in enumerate(requests):
            channel = EventChannel(request.task_id)
            channel.detach()
            try:
                task = await self.run(request, channel)
                outcomes[request.task_id] = task if task is not None else TaskNotFound(request.task_id)
            except Exception as e:
                logger.error("batch_task_error", task_id=request.task_id, error=_error_message(e))
                outcomes[request.task_id] = e

            if index < len(requests) - 1 and delay > 0:
                await asyncio.sleep(delay)

        return outcomes
