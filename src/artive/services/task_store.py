"""SQLite-backed persistence for content items, cached originals, tasks and results."""

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

import aiosqlite

from artive.models.rewrite import (
    ContentItem,
    OriginalSource,
    RewriteResult,
    RewriteTask,
    TaskStatus,
    new_id,
    utcnow,
)
from artive.services.exceptions import StorageError, TaskNotFound
from artive.utils.logging import get_logger


logger = get_logger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS contents (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        original_url TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_originals (
        content_id TEXT NOT NULL UNIQUE REFERENCES contents(id),
        original_title TEXT NOT NULL,
        original_html TEXT NOT NULL,
        original_author TEXT NOT NULL DEFAULT '',
        source_url TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rewrite_tasks (
        id TEXT PRIMARY KEY,
        content_id TEXT NOT NULL REFERENCES contents(id),
        ai_model TEXT NOT NULL,
        prompt_template TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        error_message TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rewrite_results (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES rewrite_tasks(id),
        version INTEGER NOT NULL,
        title TEXT NOT NULL,
        content_html TEXT NOT NULL,
        content_text TEXT NOT NULL DEFAULT '',
        is_edited INTEGER NOT NULL DEFAULT 0,
        edited_content_html TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (task_id, version)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rewrite_tasks_content ON rewrite_tasks(content_id)",
    "CREATE INDEX IF NOT EXISTS idx_rewrite_tasks_created ON rewrite_tasks(created_at)",
]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _task_from_row(row: aiosqlite.Row) -> RewriteTask:
    return RewriteTask(**dict(row))


def _result_from_row(row: aiosqlite.Row) -> RewriteResult:
    data = dict(row)
    data["is_edited"] = bool(data["is_edited"])
    return RewriteResult(**data)


class TaskStore:
    """
    Persistent store for the rewrite pipeline.

    Every operation opens its own short-lived connection, so one store
    instance can be shared by concurrently running pipelines. sqlite errors
    are raised as StorageError.
    """

    def __init__(self, path: str | Path):
        self.path = str(path)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            conn = await aiosqlite.connect(self.path)
        except aiosqlite.Error as e:
            raise StorageError(f"数据库连接失败: {e}") from e
        conn.row_factory = aiosqlite.Row
        try:
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        except aiosqlite.Error as e:
            logger.error("storage_error", path=self.path, error=str(e))
            raise StorageError(f"数据库操作失败: {e}") from e
        finally:
            await conn.close()

    async def init_schema(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        async with self.connect() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()
        logger.info("storage_schema_ready", path=self.path)

    # Content items

    async def add_content(self, item: ContentItem) -> ContentItem:
        async with self.connect() as conn:
            await conn.execute(
                "INSERT INTO contents (id, title, original_url, created_at) VALUES (?, ?, ?, ?)",
                (item.id, item.title, item.original_url, _ts(item.created_at)),
            )
            await conn.commit()
        return item

    async def get_content(self, content_id: str) -> Optional[ContentItem]:
        async with self.connect() as conn:
            cursor = await conn.execute(
                "SELECT id, title, original_url, created_at FROM contents WHERE id = ?",
                (content_id,),
            )
            row = await cursor.fetchone()
        return ContentItem(**dict(row)) if row else None

    # Source cache

    async def get_original(self, content_id: str) -> Optional[OriginalSource]:
        async with self.connect() as conn:
            cursor = await conn.execute(
                """
                SELECT content_id, original_title AS title, original_html AS html,
                       original_author AS author, source_url, created_at
                FROM content_originals WHERE content_id = ?
                """,
                (content_id,),
            )
            row = await cursor.fetchone()
        return OriginalSource(**dict(row)) if row else None

    async def insert_original(self, original: OriginalSource) -> bool:
        """
        Cache an original article; an existing entry for the content id wins.

        Returns:
            True if this call inserted the row, False if one already existed
        """
        async with self.connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO content_originals
                    (content_id, original_title, original_html, original_author, source_url, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (content_id) DO NOTHING
                """,
                (
                    original.content_id,
                    original.title,
                    original.html,
                    original.author,
                    original.source_url,
                    _ts(original.created_at),
                ),
            )
            await conn.commit()
            inserted = cursor.rowcount == 1
        if not inserted:
            logger.debug("source_cache_insert_conflict", content_id=original.content_id)
        return inserted

    # Tasks

    async def create_tasks(self, tasks: Iterable[RewriteTask]) -> list[RewriteTask]:
        tasks = list(tasks)
        async with self.connect() as conn:
            await conn.executemany(
                """
                INSERT INTO rewrite_tasks
                    (id, content_id, ai_model, prompt_template, status, error_message,
                     created_at, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        t.id,
                        t.content_id,
                        t.ai_model,
                        t.prompt_template,
                        t.status.value,
                        t.error_message,
                        _ts(t.created_at),
                        _ts(t.started_at),
                        _ts(t.completed_at),
                    )
                    for t in tasks
                ],
            )
            await conn.commit()
        return tasks

    async def create_task(self, task: RewriteTask) -> RewriteTask:
        await self.create_tasks([task])
        return task

    async def get_task(self, task_id: str) -> Optional[RewriteTask]:
        async with self.connect() as conn:
            cursor = await conn.execute("SELECT * FROM rewrite_tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
        return _task_from_row(row) if row else None

    async def list_tasks(
        self,
        content_ids: Optional[list[str]] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[RewriteTask]:
        """List tasks newest first, optionally filtered by content ids and status."""
        query = "SELECT * FROM rewrite_tasks"
        clauses: list[str] = []
        params: list[str] = []
        if content_ids:
            clauses.append(f"content_id IN ({', '.join('?' for _ in content_ids)})")
            params.extend(content_ids)
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(status).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [_task_from_row(row) for row in rows]

    async def mark_processing(self, task_id: str) -> RewriteTask:
        """Move a task to processing, recording started_at and clearing old outcome fields."""
        return await self._update_task(
            task_id,
            status=TaskStatus.PROCESSING,
            started_at=utcnow(),
            completed_at=None,
            error_message=None,
        )

    async def mark_completed(self, task_id: str) -> RewriteTask:
        return await self._update_task(
            task_id,
            status=TaskStatus.COMPLETED,
            completed_at=utcnow(),
            error_message=None,
        )

    async def mark_failed(self, task_id: str, error_message: str) -> RewriteTask:
        return await self._update_task(
            task_id,
            status=TaskStatus.FAILED,
            completed_at=utcnow(),
            error_message=error_message,
        )

    async def _update_task(self, task_id: str, **fields) -> RewriteTask:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [
            value.value if isinstance(value, TaskStatus) else _ts(value) if isinstance(value, datetime) else value
            for value in fields.values()
        ]
        async with self.connect() as conn:
            cursor = await conn.execute(
                f"UPDATE rewrite_tasks SET {assignments} WHERE id = ?",
                (*params, task_id),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                raise TaskNotFound(task_id)
            cursor = await conn.execute("SELECT * FROM rewrite_tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
        task = _task_from_row(row)
        logger.info("task_status_changed", task_id=task_id, status=task.status.value)
        return task

    # Results

    async def max_version(self, task_id: str) -> int:
        async with self.connect() as conn:
            cursor = await conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM rewrite_results WHERE task_id = ?",
                (task_id,),
            )
            row = await cursor.fetchone()
        return int(row[0])

    async def insert_next_result(
        self,
        task_id: str,
        title: str,
        content_html: str,
        content_text: str,
    ) -> RewriteResult:
        """
        Append a result at version max(existing) + 1.

        The maximum is re-read inside the same write transaction as the insert,
        and UNIQUE(task_id, version) rejects a concurrent duplicate.
        """
        now = utcnow()
        async with self.connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            cursor = await conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM rewrite_results WHERE task_id = ?",
                (task_id,),
            )
            row = await cursor.fetchone()
            result = RewriteResult(
                id=new_id(),
                task_id=task_id,
                version=int(row[0]) + 1,
                title=title,
                content_html=content_html,
                content_text=content_text,
                created_at=now,
                updated_at=now,
            )
            await conn.execute(
                """
                INSERT INTO rewrite_results
                    (id, task_id, version, title, content_html, content_text,
                     is_edited, edited_content_html, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?, ?)
                """,
                (
                    result.id,
                    result.task_id,
                    result.version,
                    result.title,
                    result.content_html,
                    result.content_text,
                    _ts(now),
                    _ts(now),
                ),
            )
            await conn.commit()
        logger.info("result_saved", task_id=task_id, result_id=result.id, version=result.version)
        return result

    async def list_results(self, task_id: str) -> list[RewriteResult]:
        async with self.connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM rewrite_results WHERE task_id = ? ORDER BY version ASC",
                (task_id,),
            )
            rows = await cursor.fetchall()
        return [_result_from_row(row) for row in rows]

    async def get_result(self, result_id: str) -> Optional[RewriteResult]:
        async with self.connect() as conn:
            cursor = await conn.execute("SELECT * FROM rewrite_results WHERE id = ?", (result_id,))
            row = await cursor.fetchone()
        return _result_from_row(row) if row else None

    async def save_result_edit(
        self,
        result_id: str,
        title: str,
        edited_content_html: str,
    ) -> Optional[RewriteResult]:
        """
        Store a user edit of a result.

        Only title, edited_content_html, is_edited and updated_at change;
        content_html keeps the generated HTML.

        Returns:
            Updated result, or None if the result does not exist
        """
        async with self.connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE rewrite_results
                SET title = ?, edited_content_html = ?, is_edited = 1, updated_at = ?
                WHERE id = ?
                """,
                (title, edited_content_html, _ts(utcnow()), result_id),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                return None
        return await self.get_result(result_id)
