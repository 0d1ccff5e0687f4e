"""Post lifecycle: create, update, publish across platforms, delete.

Publishing fans out to every target platform independently. Each
platform call runs through that platform's guard (concurrency slot,
throttle, circuit breaker, retry). A platform's failure is recorded in
its result and never stops the others.

The post's own status is the publish lock: ``publish`` moves the record
to POSTING with a compare-and-set and anything that observes a
non-publishable status fails fast.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from socialcast.capabilities import Platform, PlatformCapabilityRegistry
from socialcast.credentials import CredentialManager
from socialcast.models import (
    PUBLISHABLE_STATUSES,
    CreatePostRequest,
    PlatformResult,
    Post,
    PostStatus,
    PostTemplate,
    TemplateVariable,
    UpdatePostRequest,
    VariableType,
    new_id,
    utcnow,
)
from socialcast.resilience import PlatformGuard, PostRateTracker
from socialcast.store import PostStore, TemplateStore
from socialcast.work_queue import Frequency, WorkQueue, posting_schedule

logger = logging.getLogger(__name__)


class PostError(Exception):
    """Base class for errors the caller of the orchestrator can act on."""


class PostValidationError(PostError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [])
        super().__init__(message)


class PostAuthorizationError(PostError):
    def __init__(self, message: str, platform: Platform | None = None) -> None:
        self.platform = platform
        super().__init__(message)


class PostNotFoundError(PostError):
    pass


class PostStateError(PostError):
    pass


@dataclass
class PublishOutcome:
    success: bool
    results: dict[Platform, PlatformResult] = field(default_factory=dict)
    post: Post | None = None


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _unique(platforms: list[Platform]) -> list[Platform]:
    return list(dict.fromkeys(platforms))


_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_VARIABLE_KEY = re.compile(r"\w+")


def _check_variable(var: TemplateVariable, value: str) -> str | None:
    if var.type == VariableType.NUMBER:
        try:
            float(value)
        except ValueError:
            return f"{var.key} must be a number"
    elif var.type == VariableType.URL:
        if not value.startswith(("http://", "https://")):
            return f"{var.key} must be an http(s) URL"
    elif var.type == VariableType.DATE:
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return f"{var.key} must be an ISO 8601 date"
    return None


class PostOrchestrator:
    """Owns every post mutation; the dispatcher reaches posts only through here."""

    def __init__(
        self,
        posts: PostStore,
        credentials: CredentialManager,
        work_queue: WorkQueue,
        registry: PlatformCapabilityRegistry | None = None,
        rate_tracker: PostRateTracker | None = None,
        guards: dict[Platform, PlatformGuard] | None = None,
        templates: TemplateStore | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._posts = posts
        self._templates = templates or TemplateStore()
        self._credentials = credentials
        self._queue = work_queue
        self._registry = registry or PlatformCapabilityRegistry()
        self._now = now or utcnow
        self._rate_tracker = rate_tracker or PostRateTracker(now=self._now)
        self._guards = guards or {}

    @property
    def registry(self) -> PlatformCapabilityRegistry:
        return self._registry

    # --- checks shared by create and update ---

    def _owned(self, owner_id: str, post_id: str) -> Post:
        post = self._posts.get(post_id)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")
        if post.owner_id != owner_id:
            raise PostAuthorizationError(f"Not authorized to access post {post_id}")
        return post

    def _check_platform_access(self, owner_id: str, platforms: list[Platform]) -> None:
        if not platforms:
            raise PostValidationError(
                "At least one target platform is required",
                ["At least one target platform is required"],
            )
        connected = set(self._credentials.connected_platforms(owner_id))
        for platform in platforms:
            if platform not in connected:
                raise PostAuthorizationError(f"Not connected to {platform.value}", platform)

    def _validate(self, post: Post) -> None:
        errors: list[str] = []
        for platform in post.platforms:
            result = self._registry.validate(platform, post.content_for(platform))
            errors.extend(f"{platform.value}: {e}" for e in result.errors)
            if post.scheduled_at and not self._registry.capabilities(platform).can_schedule:
                errors.append(f"{platform.value}: Scheduled posts are not supported")
        if errors:
            raise PostValidationError("Content validation failed: " + "; ".join(errors), errors)

    # --- lifecycle ---

    def create_post(self, owner_id: str, request: CreatePostRequest) -> Post:
        """Validate and persist a new post, queueing it when scheduled.

        Raises PostAuthorizationError naming the first platform the owner
        is not connected to, or PostValidationError with every platform's
        problems. Nothing is persisted in either case.
        """
        platforms = _unique(request.platforms)
        self._check_platform_access(owner_id, platforms)

        now = self._now()
        scheduled_at = _aware(request.scheduled_at)
        post = Post(
            id=new_id(),
            owner_id=owner_id,
            tenant_id=request.tenant_id,
            title=request.title,
            content=request.content,
            platforms=platforms,
            hashtags=list(request.hashtags),
            mentions=list(request.mentions),
            media=list(request.media),
            overrides=dict(request.overrides),
            priority=request.priority,
            status=PostStatus.SCHEDULED if scheduled_at else PostStatus.DRAFT,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
            metadata=dict(request.metadata),
        )
        self._validate(post)

        self._posts.insert(post)
        if post.status == PostStatus.SCHEDULED:
            self._queue.schedule(post)
        logger.info("Created post %s for %s on %s (%s)", post.id, owner_id,
                    ",".join(p.value for p in platforms), post.status.value)
        return post

    def update_post(self, owner_id: str, request: UpdatePostRequest) -> Post:
        post = self._owned(owner_id, request.id)
        if post.status == PostStatus.PUBLISHED:
            raise PostStateError("Cannot update published posts")
        if post.status == PostStatus.POSTING:
            raise PostStateError("Cannot update a post while it is being published")
        if post.status == PostStatus.DELETED:
            raise PostStateError("Cannot update deleted posts")
        original_status = post.status
        original_due = post.scheduled_at

        for name in ("content", "title", "hashtags", "mentions", "media", "overrides",
                     "priority", "metadata"):
            value = getattr(request, name)
            if value is not None:
                setattr(post, name, value)
        if request.platforms is not None:
            post.platforms = _unique(request.platforms)
        if request.changes_content:
            self._check_platform_access(owner_id, post.platforms)

        if request.unschedule:
            post.scheduled_at = None
            if post.status == PostStatus.SCHEDULED:
                post.transition(PostStatus.DRAFT)
        elif request.scheduled_at is not None:
            post.scheduled_at = _aware(request.scheduled_at)
            if post.status != PostStatus.SCHEDULED:
                post.transition(PostStatus.SCHEDULED)

        if request.changes_content or request.scheduled_at is not None:
            self._validate(post)

        if self._posts.save_if(post, [original_status]) is None:
            current = self._posts.get(post.id)
            status = current.status.value if current else "missing"
            raise PostStateError(f"Post {post.id} changed to {status} during update")

        if original_status == PostStatus.SCHEDULED and post.status != PostStatus.SCHEDULED:
            self._queue.cancel(post.id)
        elif post.status == PostStatus.SCHEDULED and (
            original_status != PostStatus.SCHEDULED
            or post.scheduled_at != original_due
            or request.platforms is not None
            or request.priority is not None
        ):
            self._queue.reschedule(post)
        return post

    def delete_post(self, owner_id: str, post_id: str) -> None:
        """Soft-delete a post, cancelling its pending dispatch first."""
        post = self._owned(owner_id, post_id)
        if post.status == PostStatus.DELETED:
            return
        if post.status == PostStatus.POSTING:
            raise PostStateError("Cannot delete a post while it is being published")

        if post.status == PostStatus.SCHEDULED:
            self._queue.cancel(post_id)
        original_status = post.status
        post.transition(PostStatus.DELETED)
        if self._posts.save_if(post, [original_status]) is None:
            raise PostStateError(f"Post {post_id} changed status during delete")
        logger.info("Deleted post %s", post_id)

    # --- publishing ---

    def publish(self, owner_id: str, post_id: str) -> PublishOutcome:
        """Fan the post out to every target platform.

        Raises PostStateError without touching any platform when the post
        is already published or another publish holds it. Platform
        failures never raise; they are in the returned results.
        """
        post = self._owned(owner_id, post_id)
        if post.status == PostStatus.PUBLISHED:
            raise PostStateError("Post is already published")

        claimed = self._posts.claim_for_publish(post_id, PUBLISHABLE_STATUSES)
        if claimed is None:
            current = self._posts.get(post_id)
            if current is not None and current.status == PostStatus.PUBLISHED:
                raise PostStateError("Post is already published")
            status = current.status.value if current else "missing"
            raise PostStateError(f"Post cannot be published while {status}")
        # A manual publish supersedes the scheduled dispatch; the dispatcher's
        # own item is PROCESSING by now and is finished by the dispatcher.
        self._queue.cancel_pending(post_id)

        results: dict[Platform, PlatformResult] = {}
        for platform in claimed.platforms:
            if claimed.succeeded_on(platform):
                logger.info("Post %s already on %s, not publishing again", post_id, platform.value)
                results[platform] = claimed.results[platform]
                continue
            results[platform] = self._publish_to(claimed, platform)

        success = all(r.success for r in results.values())
        claimed.results = results
        claimed.transition(PostStatus.PUBLISHED if success else PostStatus.FAILED)
        if success:
            claimed.published_at = self._now()
        self._posts.save(claimed)

        failed = [p.value for p, r in results.items() if not r.success]
        if failed:
            logger.warning("Post %s failed on %s", post_id, ",".join(failed))
        else:
            logger.info("Post %s published to %d platforms", post_id, len(results))
        return PublishOutcome(success=success, results=results, post=claimed)

    def recover_interrupted(self, post_id: str) -> Post | None:
        """Move a post left in POSTING by a crash to FAILED.

        Earlier successful results are kept so a later publish skips those
        platforms; every other platform is marked with an unknown outcome.
        Returns None when the post is not in POSTING.
        """
        post = self._posts.get(post_id)
        if post is None or post.status != PostStatus.POSTING:
            return None
        for platform in post.platforms:
            if not post.succeeded_on(platform):
                post.results[platform] = PlatformResult(
                    success=False,
                    error="Outcome unknown: publish was interrupted",
                    attempted_at=post.updated_at,
                )
        post.status = PostStatus.FAILED
        if self._posts.save_if(post, [PostStatus.POSTING]) is None:
            return None
        logger.warning("Post %s was interrupted mid-publish and is now failed", post_id)
        return post

    def _publish_to(self, post: Post, platform: Platform) -> PlatformResult:
        attempted_at = self._now()
        hour, day = self._rate_tracker.counts(post.owner_id, platform)
        decision = self._registry.check_rate_limit(platform, hour, day)
        if not decision.allowed:
            return PlatformResult(success=False, error=decision.reason, attempted_at=attempted_at)

        try:
            tokens = self._credentials.ensure_valid_token(post.owner_id, platform)
            if tokens is None:
                return PlatformResult(
                    success=False,
                    error=f"No valid token for {platform.value}",
                    attempted_at=attempted_at,
                )
            driver = self._credentials.driver(platform)
            content = post.content_for(platform)
            caps = self._registry.capabilities(platform)
            media = []
            for item in content.media:
                if caps.supports_media_type(item.mime_type):
                    media.append(item)
                else:
                    logger.info("Skipping %s media %s on %s", item.mime_type, item.label, platform.value)
            text = self._registry.format(platform, content)
            receipt = self._guarded(platform, driver.post, tokens.access_token, text, media)
        except Exception as exc:
            logger.warning("Publishing post %s to %s failed: %s", post.id, platform.value, exc)
            return PlatformResult(
                success=False,
                error=str(exc) or exc.__class__.__name__,
                attempted_at=attempted_at,
            )

        self._rate_tracker.record(post.owner_id, platform)
        return PlatformResult(
            success=True,
            platform_post_id=receipt.id,
            url=receipt.url,
            attempted_at=attempted_at,
        )

    def _guarded(self, platform: Platform, func: Callable[..., Any], *args: Any) -> Any:
        guard = self._guards.get(platform)
        if guard is None:
            return func(*args)
        return guard.run(func, *args)

    # --- bulk scheduling ---

    def bulk_schedule(
        self, owner_id: str, entries: list[tuple[str, datetime]],
    ) -> list[Post]:
        """Schedule several posts at once, each at its own time.

        Every post is checked before any is written, so one bad entry
        leaves all of them untouched.
        """
        ids = [post_id for post_id, _ in entries]
        if len(set(ids)) != len(ids):
            raise PostValidationError("A post can only be scheduled once per batch")

        pending: list[tuple[Post, PostStatus]] = []
        for post_id, when in entries:
            post = self._owned(owner_id, post_id)
            if post.status not in (PostStatus.DRAFT, PostStatus.SCHEDULED, PostStatus.FAILED):
                raise PostStateError(f"Post {post_id} cannot be scheduled while {post.status.value}")
            original_status = post.status
            post.scheduled_at = _aware(when)
            if post.status != PostStatus.SCHEDULED:
                post.transition(PostStatus.SCHEDULED)
            self._validate(post)
            pending.append((post, original_status))

        saved: list[Post] = []
        lost: Post | None = None
        for post, original_status in pending:
            if self._posts.save_if(post, [original_status]) is None:
                lost = post
                break
            saved.append(post)
        self._queue.bulk_schedule(saved)
        if lost is not None:
            raise PostStateError(f"Post {lost.id} changed status during scheduling")
        logger.info("Scheduled %d posts for %s", len(saved), owner_id)
        return saved

    def schedule_series(
        self,
        owner_id: str,
        post_ids: list[str],
        start: datetime,
        frequency: Frequency | str,
        time_of_day: str = "10:00",
    ) -> list[Post]:
        """Spread posts over a daily, weekly or monthly series in the given order."""
        try:
            times = posting_schedule(start, frequency, len(post_ids), time_of_day)
        except ValueError as exc:
            raise PostValidationError(str(exc), [str(exc)]) from None
        return self.bulk_schedule(owner_id, list(zip(post_ids, times)))

    # --- templates ---

    def create_template(
        self,
        owner_id: str,
        name: str,
        content: str,
        platforms: list[Platform],
        hashtags: list[str] | None = None,
        description: str = "",
        category: str = "",
        variables: list[TemplateVariable] | None = None,
    ) -> PostTemplate:
        errors: list[str] = []
        if not name.strip():
            errors.append("Template name is required")
        if not content.strip():
            errors.append("Template content is required")
        keys = [v.key for v in variables or []]
        for key in keys:
            if not _VARIABLE_KEY.fullmatch(key):
                errors.append(f"Invalid variable key: {key!r}")
        if len(set(keys)) != len(keys):
            errors.append("Variable keys must be unique")
        if errors:
            raise PostValidationError("Invalid template: " + "; ".join(errors), errors)

        now = self._now()
        template = PostTemplate(
            id=new_id(),
            owner_id=owner_id,
            name=name.strip(),
            content=content,
            platforms=_unique(platforms),
            hashtags=list(hashtags or []),
            description=description,
            category=category,
            variables=list(variables or []),
            created_at=now,
            updated_at=now,
        )
        self._templates.insert(template)
        logger.info("Created template %s (%s) for %s", template.id, template.name, owner_id)
        return template

    def list_templates(self, owner_id: str) -> list[PostTemplate]:
        """Newest first."""
        templates = self._templates.for_owner(owner_id)
        templates.sort(key=lambda t: t.created_at, reverse=True)
        return templates

    def get_template(self, owner_id: str, template_id: str) -> PostTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise PostNotFoundError(f"Template {template_id} not found")
        if template.owner_id != owner_id:
            raise PostAuthorizationError(f"Not authorized to access template {template_id}")
        return template

    def post_from_template(
        self, owner_id: str, template_id: str, values: dict[str, Any] | None = None,
    ) -> CreatePostRequest:
        """Fill a template's placeholders and return a ready-to-create request.

        Declared variables fall back to their defaults; a required variable
        with neither a value nor a default is an error. Placeholders with no
        value are left in the text as written.
        """
        template = self.get_template(owner_id, template_id)
        values = {k: v for k, v in (values or {}).items() if v is not None and v != ""}
        errors: list[str] = []
        for var in template.variables:
            if var.key not in values and var.default is not None:
                values[var.key] = var.default
            if var.key not in values:
                if var.required:
                    errors.append(f"Missing required variable: {var.key}")
                continue
            problem = _check_variable(var, str(values[var.key]))
            if problem:
                errors.append(problem)
        if errors:
            raise PostValidationError("Template variables invalid: " + "; ".join(errors), errors)

        def fill(match: re.Match) -> str:
            key = match.group(1)
            return str(values[key]) if key in values else match.group(0)

        return CreatePostRequest(
            content=_PLACEHOLDER.sub(fill, template.content),
            platforms=list(template.platforms),
            hashtags=list(template.hashtags),
            metadata={"template_id": template.id},
        )

    # --- lookups ---

    def get_post(self, owner_id: str, post_id: str) -> Post:
        return self._owned(owner_id, post_id)

    def list_posts(
        self,
        owner_id: str,
        status: PostStatus | None = None,
        platform: Platform | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Post]:
        """Newest first; deleted posts are never listed."""
        posts = [
            p for p in self._posts.for_owner(owner_id)
            if p.status != PostStatus.DELETED
            and (status is None or p.status == status)
            and (platform is None or platform in p.platforms)
        ]
        posts.sort(key=lambda p: p.created_at, reverse=True)
        end = offset + limit if limit is not None else None
        return posts[offset:end]

    def get_post_analytics(self, owner_id: str, post_id: str) -> dict[Platform, dict[str, Any]]:
        post = self._owned(owner_id, post_id)
        analytics: dict[Platform, dict[str, Any]] = {}
        for platform, result in post.results.items():
            if not result.success or not result.platform_post_id:
                continue
            if not self._registry.capabilities(platform).can_get_analytics:
                continue
            try:
                tokens = self._credentials.ensure_valid_token(owner_id, platform)
                if tokens is None:
                    analytics[platform] = {"error": f"No valid token for {platform.value}"}
                    continue
                driver = self._credentials.driver(platform)
                analytics[platform] = driver.get_analytics(tokens.access_token, result.platform_post_id)
            except Exception as exc:
                logger.warning("Analytics for post %s on %s failed: %s", post_id, platform.value, exc)
                analytics[platform] = {"error": str(exc) or exc.__class__.__name__}
        return analytics
