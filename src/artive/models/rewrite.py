"""Rewrite task data models: content items, cached originals, tasks and results."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new record identifier."""
    return str(uuid4())


class TaskStatus(str, Enum):
    """Lifecycle states of a rewrite task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class ContentItem(BaseModel):
    """A stashed piece of source material (read-only for the engine)."""

    id: str = Field(default_factory=new_id, description="Content identifier")

    title: str = Field(..., description="Title as shown in the materials list")

    original_url: Optional[str] = Field(
        default=None,
        description="Canonical article URL the original text is fetched from"
    )

    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class OriginalSource(BaseModel):
    """Write-once cache entry holding the fetched original article."""

    content_id: str = Field(..., description="ContentItem this original belongs to")

    title: str = Field(..., description="Original article title")

    html: str = Field(..., description="Sanitized original article HTML")

    author: str = Field(default="", description="Original article author")

    source_url: str = Field(default="", description="URL the article was fetched from")

    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class RewriteTask(BaseModel):
    """One rewrite attempt for a content item."""

    id: str = Field(default_factory=new_id)

    content_id: str = Field(..., description="ContentItem being rewritten")

    ai_model: str = Field(..., description="Model key (alias or provider model id)")

    prompt_template: str = Field(..., description="Template with {{title}}/{{content}} placeholders")

    status: TaskStatus = Field(default=TaskStatus.PENDING)

    error_message: Optional[str] = Field(
        default=None,
        description="Human-readable failure reason when status is 'failed'"
    )

    created_at: datetime = Field(default_factory=utcnow)

    started_at: Optional[datetime] = None

    completed_at: Optional[datetime] = None

    model_config = {"frozen": False}  # Status advances as the engine runs


class RewriteResult(BaseModel):
    """One persisted, versioned output of a task."""

    id: str = Field(default_factory=new_id)

    task_id: str = Field(...)

    version: int = Field(..., ge=1, description="1-based, strictly increasing per task")

    title: str = Field(...)

    content_html: str = Field(..., description="HTML as generated; never modified after insert")

    content_text: str = Field(default="", description="Plain-text rendering of content_html")

    is_edited: bool = Field(default=False)

    edited_content_html: Optional[str] = Field(
        default=None,
        description="User-edited HTML (edits never touch content_html)"
    )

    created_at: datetime = Field(default_factory=utcnow)

    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class RewriteRequest(BaseModel):
    """Request to run a task, as posted by the client."""

    task_id: str = Field(..., alias="taskId")

    content_id: str = Field(..., alias="contentId")

    ai_model: str = Field(..., alias="aiModel")

    prompt_template: str = Field(..., alias="promptTemplate")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @classmethod
    def for_task(cls, task: RewriteTask) -> "RewriteRequest":
        """Build a run request from a stored task."""
        return cls(
            task_id=task.id,
            content_id=task.content_id,
            ai_model=task.ai_model,
            prompt_template=task.prompt_template,
        )


class FetchedArticle(BaseModel):
    """Article as returned by the article API."""

    title: str = Field(default="")

    html: str = Field(default="")

    author: str = Field(default="")

    nickname: str = Field(default="")

    publish_time: str = Field(default="", alias="post_time_str")

    cover_url: str = Field(default="")

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @field_validator("title", "html", "author", "nickname", "publish_time", "cover_url", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        return "" if v is None else v


class ResolvedSource(BaseModel):
    """Original title/HTML ready for prompt compilation."""

    title: str

    html: str

    from_cache: bool = False

    model_config = {"frozen": True}


class ParsedRecord(BaseModel):
    """A structured {title, content} record recovered from model output."""

    title: str

    content: str

    strategy: str = Field(
        default="strict",
        description="Name of the extraction strategy that produced the record"
    )

    model_config = {"frozen": True}

    @property
    def is_fallback(self) -> bool:
        return self.strategy == "fallback"
