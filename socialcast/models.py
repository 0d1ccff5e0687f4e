"""Records shared by the orchestrator, credential layer and dispatcher.

Every record round-trips through ``to_record`` / ``from_record`` so the
JSON-backed stores can persist it: enums are stored by value and
datetimes as ISO 8601 strings in UTC.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from socialcast.capabilities import Platform


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class PostStatus(Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    POSTING = "posting"
    PUBLISHED = "published"
    FAILED = "failed"
    DELETED = "deleted"


class PostPriority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# Legal post status moves. DELETED is a tombstone reachable from any
# status except POSTING; nothing leaves it.
POST_TRANSITIONS: dict[PostStatus, frozenset[PostStatus]] = {
    PostStatus.DRAFT: frozenset({PostStatus.SCHEDULED, PostStatus.POSTING, PostStatus.DELETED}),
    PostStatus.SCHEDULED: frozenset({PostStatus.DRAFT, PostStatus.POSTING, PostStatus.DELETED}),
    PostStatus.POSTING: frozenset({PostStatus.PUBLISHED, PostStatus.FAILED}),
    PostStatus.PUBLISHED: frozenset({PostStatus.DELETED}),
    PostStatus.FAILED: frozenset({PostStatus.SCHEDULED, PostStatus.POSTING, PostStatus.DELETED}),
    PostStatus.DELETED: frozenset(),
}

PUBLISHABLE_STATUSES = frozenset({PostStatus.DRAFT, PostStatus.SCHEDULED, PostStatus.FAILED})


@dataclass
class MediaAttachment:
    """A media reference produced by the media subsystem."""
    url: str
    mime_type: str
    size: int
    filename: str = ""
    kind: str = "image"  # image, video, audio, gif, document
    alt: str = ""
    width: int | None = None
    height: int | None = None

    @property
    def label(self) -> str:
        return self.filename or self.url


@dataclass
class PlatformOverride:
    """Per-platform replacement for a post's body, hashtags or mentions."""
    content: str | None = None
    hashtags: list[str] | None = None
    mentions: list[str] | None = None


@dataclass
class PostContent:
    """The resolved text, tags and media sent to a single platform."""
    text: str
    hashtags: list[str] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)
    media: list[MediaAttachment] = field(default_factory=list)


@dataclass
class PlatformResult:
    success: bool
    platform_post_id: str | None = None
    url: str | None = None
    error: str | None = None
    attempted_at: datetime | None = None


@dataclass
class Post:
    id: str
    owner_id: str
    content: str
    platforms: list[Platform]
    tenant_id: str = "default"
    title: str = ""
    hashtags: list[str] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)
    media: list[MediaAttachment] = field(default_factory=list)
    overrides: dict[Platform, PlatformOverride] = field(default_factory=dict)
    priority: PostPriority = PostPriority.NORMAL
    status: PostStatus = PostStatus.DRAFT
    scheduled_at: datetime | None = None
    published_at: datetime | None = None
    results: dict[Platform, PlatformResult] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def content_for(self, platform: Platform) -> PostContent:
        """Resolve the body, hashtags and mentions for one platform."""
        override = self.overrides.get(platform) or PlatformOverride()
        return PostContent(
            text=override.content if override.content is not None else self.content,
            hashtags=list(override.hashtags if override.hashtags is not None else self.hashtags),
            mentions=list(override.mentions if override.mentions is not None else self.mentions),
            media=list(self.media),
        )

    def can_transition(self, new_status: PostStatus) -> bool:
        return new_status in POST_TRANSITIONS[self.status]

    def transition(self, new_status: PostStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(
                f"Illegal post status change {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        self.updated_at = utcnow()

    def succeeded_on(self, platform: Platform) -> bool:
        result = self.results.get(platform)
        return bool(result and result.success)


@dataclass
class CreatePostRequest:
    content: str
    platforms: list[Platform]
    tenant_id: str = "default"
    title: str = ""
    hashtags: list[str] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)
    media: list[MediaAttachment] = field(default_factory=list)
    overrides: dict[Platform, PlatformOverride] = field(default_factory=dict)
    priority: PostPriority = PostPriority.NORMAL
    scheduled_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdatePostRequest:
    """Partial update; ``None`` leaves a field unchanged.

    ``unschedule`` clears ``scheduled_at`` and returns the post to draft.
    """
    id: str
    content: str | None = None
    platforms: list[Platform] | None = None
    title: str | None = None
    hashtags: list[str] | None = None
    mentions: list[str] | None = None
    media: list[MediaAttachment] | None = None
    overrides: dict[Platform, PlatformOverride] | None = None
    priority: PostPriority | None = None
    scheduled_at: datetime | None = None
    unschedule: bool = False
    metadata: dict[str, Any] | None = None

    @property
    def changes_content(self) -> bool:
        return any(
            v is not None
            for v in (self.content, self.platforms, self.hashtags,
                      self.mentions, self.media, self.overrides)
        )


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class AccountInfo:
    id: str
    username: str
    display_name: str = ""
    profile_url: str = ""
    profile_image_url: str = ""


class CredentialStatus(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"
    ERROR = "error"


@dataclass
class PlatformCredential:
    owner_id: str
    platform: Platform
    tokens: OAuthTokens
    tenant_id: str = "default"
    id: str = field(default_factory=new_id)
    status: CredentialStatus = CredentialStatus.CONNECTED
    account_id: str = ""
    account_username: str = ""
    account_display_name: str = ""
    scopes: list[str] = field(default_factory=list)
    last_connected_at: datetime | None = None
    last_error: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def expires_at(self) -> datetime | None:
        return self.tokens.expires_at


class WorkItemStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_WORK_STATUSES = frozenset({
    WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.CANCELLED,
})


@dataclass
class ScheduledWorkItem:
    """Dispatcher-owned execution record for one scheduled post."""
    post_id: str
    owner_id: str
    due_at: datetime
    platforms: list[Platform] = field(default_factory=list)
    priority: PostPriority = PostPriority.NORMAL
    id: str = field(default_factory=new_id)
    status: WorkItemStatus = WorkItemStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str = ""
    results: dict[Platform, PlatformResult] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORK_STATUSES


class VariableType(Enum):
    TEXT = "text"
    URL = "url"
    DATE = "date"
    NUMBER = "number"


@dataclass
class TemplateVariable:
    key: str
    label: str = ""
    type: VariableType = VariableType.TEXT
    required: bool = False
    default: str | None = None


@dataclass
class PostTemplate:
    """Reusable post body with ``{{key}}`` placeholders."""
    id: str
    owner_id: str
    name: str
    content: str
    platforms: list[Platform] = field(default_factory=list)
    hashtags: list[str] = field(default_factory=list)
    description: str = ""
    category: str = ""
    variables: list[TemplateVariable] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# --- persistence helpers ---


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {_encode(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def to_record(obj: Any) -> Any:
    """Convert a record, or any single field value, into JSON-safe data."""
    return _encode(obj)


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _results(raw: dict[str, Any] | None) -> dict[Platform, PlatformResult]:
    out: dict[Platform, PlatformResult] = {}
    for key, rec in (raw or {}).items():
        out[Platform(key)] = PlatformResult(
            success=rec.get("success", False),
            platform_post_id=rec.get("platform_post_id"),
            url=rec.get("url"),
            error=rec.get("error"),
            attempted_at=_dt(rec.get("attempted_at")),
        )
    return out


def post_from_record(rec: dict[str, Any]) -> Post:
    return Post(
        id=rec["id"],
        owner_id=rec["owner_id"],
        tenant_id=rec.get("tenant_id", "default"),
        title=rec.get("title", ""),
        content=rec.get("content", ""),
        platforms=[Platform(p) for p in rec.get("platforms", [])],
        hashtags=list(rec.get("hashtags", [])),
        mentions=list(rec.get("mentions", [])),
        media=[MediaAttachment(**m) for m in rec.get("media", [])],
        overrides={
            Platform(k): PlatformOverride(**v) for k, v in rec.get("overrides", {}).items()
        },
        priority=PostPriority(rec.get("priority", "normal")),
        status=PostStatus(rec["status"]),
        scheduled_at=_dt(rec.get("scheduled_at")),
        published_at=_dt(rec.get("published_at")),
        results=_results(rec.get("results")),
        created_at=_dt(rec.get("created_at")) or utcnow(),
        updated_at=_dt(rec.get("updated_at")) or utcnow(),
        metadata=dict(rec.get("metadata", {})),
    )


def tokens_from_record(rec: dict[str, Any]) -> OAuthTokens:
    return OAuthTokens(
        access_token=rec["access_token"],
        refresh_token=rec.get("refresh_token"),
        token_type=rec.get("token_type", "Bearer"),
        expires_at=_dt(rec.get("expires_at")),
        scopes=list(rec.get("scopes", [])),
    )


def credential_from_record(rec: dict[str, Any]) -> PlatformCredential:
    return PlatformCredential(
        id=rec["id"],
        owner_id=rec["owner_id"],
        tenant_id=rec.get("tenant_id", "default"),
        platform=Platform(rec["platform"]),
        status=CredentialStatus(rec["status"]),
        tokens=tokens_from_record(rec["tokens"]),
        account_id=rec.get("account_id", ""),
        account_username=rec.get("account_username", ""),
        account_display_name=rec.get("account_display_name", ""),
        scopes=list(rec.get("scopes", [])),
        last_connected_at=_dt(rec.get("last_connected_at")),
        last_error=rec.get("last_error", ""),
        created_at=_dt(rec.get("created_at")) or utcnow(),
        updated_at=_dt(rec.get("updated_at")) or utcnow(),
    )


def work_item_from_record(rec: dict[str, Any]) -> ScheduledWorkItem:
    return ScheduledWorkItem(
        id=rec["id"],
        post_id=rec["post_id"],
        owner_id=rec["owner_id"],
        due_at=_dt(rec["due_at"]),  # type: ignore[arg-type]
        platforms=[Platform(p) for p in rec.get("platforms", [])],
        priority=PostPriority(rec.get("priority", "normal")),
        status=WorkItemStatus(rec["status"]),
        attempts=rec.get("attempts", 0),
        started_at=_dt(rec.get("started_at")),
        finished_at=_dt(rec.get("finished_at")),
        error=rec.get("error", ""),
        results=_results(rec.get("results")),
        created_at=_dt(rec.get("created_at")) or utcnow(),
        updated_at=_dt(rec.get("updated_at")) or utcnow(),
    )


def template_from_record(rec: dict[str, Any]) -> PostTemplate:
    return PostTemplate(
        id=rec["id"],
        owner_id=rec["owner_id"],
        name=rec["name"],
        content=rec.get("content", ""),
        platforms=[Platform(p) for p in rec.get("platforms", [])],
        hashtags=list(rec.get("hashtags", [])),
        description=rec.get("description", ""),
        category=rec.get("category", ""),
        variables=[
            TemplateVariable(
                key=v["key"],
                label=v.get("label", ""),
                type=VariableType(v.get("type", "text")),
                required=v.get("required", False),
                default=v.get("default"),
            )
            for v in rec.get("variables", [])
        ],
        created_at=_dt(rec.get("created_at")) or utcnow(),
        updated_at=_dt(rec.get("updated_at")) or utcnow(),
    )
