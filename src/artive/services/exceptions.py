"""Custom exceptions for Artive services."""


class RewriteError(Exception):
    """Base class for errors that end a rewrite run.

    Attributes:
        message: Human-readable error message (stored as the task's error_message)
        retryable: Whether running a new task for the same content may succeed
    """

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnsupportedSource(RewriteError):
    """Raised when a content item's URL is missing or not a WeChat article."""

    def __init__(self, url: str | None):
        self.url = url
        if url:
            message = f"只支持微信公众号文章链接: {url}"
        else:
            message = "素材缺少原文链接"
        super().__init__(message)


class SourceUnavailable(RewriteError):
    """Raised when the article API fails to return the original article."""

    retryable = True

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"获取微信文章内容失败: {reason}")


class UpstreamUnavailable(RewriteError):
    """Raised when the chat-completion API rejects or never answers the request.

    Attributes:
        status_code: HTTP status of the rejected request, if any
    """

    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class UnparseableResult(RewriteError):
    """Raised when no record at all, not even the fallback, could be built."""


class StorageError(RewriteError):
    """Raised when the task store fails a read or write."""

    retryable = True


class ContentNotFound(RewriteError):
    """Raised when a task refers to a content item that does not exist."""

    def __init__(self, content_id: str):
        self.content_id = content_id
        super().__init__(f"内容不存在: {content_id}")


class TaskNotFound(RewriteError):
    """Raised when a task id does not exist."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"任务不存在: {task_id}")


class TaskNotRunnable(RewriteError):
    """Raised when a run is requested for a task in a terminal failed state."""

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"任务状态为 {status}，无法执行: {task_id}")


class TaskAlreadyRunning(RewriteError):
    """Raised when a second run is started for a task that is still running."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"任务正在处理中: {task_id}")
