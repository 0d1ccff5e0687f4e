"""Scheduled work items: the dispatcher's own record of what is due.

Kept apart from the post's status so a crash mid-dispatch leaves a
PROCESSING item behind instead of silently corrupting the post.

Item lifecycle: PENDING → PROCESSING → COMPLETED | FAILED, and
PENDING | PROCESSING → CANCELLED. Cancelling only prevents future
dispatch; a publish already in flight runs to completion.
"""

from __future__ import annotations

import calendar
import logging
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable

from socialcast.capabilities import Platform
from socialcast.models import (
    PlatformResult,
    Post,
    PostPriority,
    ScheduledWorkItem,
    WorkItemStatus,
    utcnow,
)
from socialcast.store import WorkItemStore

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {
    PostPriority.URGENT: 0,
    PostPriority.HIGH: 1,
    PostPriority.NORMAL: 2,
    PostPriority.LOW: 3,
}

_OPEN = (WorkItemStatus.PENDING, WorkItemStatus.PROCESSING)

_TIME_OF_DAY = re.compile(r"(\d{1,2}):(\d{2})")


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def _add_months(when: datetime, months: int) -> datetime:
    index = when.month - 1 + months
    year, month = when.year + index // 12, index % 12 + 1
    day = min(when.day, calendar.monthrange(year, month)[1])
    return when.replace(year=year, month=month, day=day)


def posting_schedule(
    start: datetime,
    frequency: Frequency | str,
    count: int,
    time_of_day: str = "10:00",
) -> list[datetime]:
    """Times for a series of ``count`` posts beginning on ``start``'s date.

    Every time lands on ``time_of_day`` (HH:MM) in ``start``'s timezone,
    UTC when ``start`` is naive. Monthly steps clamp to the month's last day.
    """
    frequency = Frequency(frequency)
    if count < 0:
        raise ValueError("count must not be negative")
    match = _TIME_OF_DAY.fullmatch(time_of_day.strip())
    if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
        raise ValueError(f"Invalid time of day: {time_of_day!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)

    times = []
    for i in range(count):
        if frequency == Frequency.DAILY:
            when = start + timedelta(days=i)
        elif frequency == Frequency.WEEKLY:
            when = start + timedelta(weeks=i)
        else:
            when = _add_months(start, i)
        times.append(when.replace(hour=hour, minute=minute, second=0, microsecond=0))
    return times


class WorkQueue:
    """Scheduling entry points and state transitions for work items."""

    def __init__(
        self,
        store: WorkItemStore | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store or WorkItemStore()
        self._now = now or utcnow

    def schedule(self, post: Post) -> ScheduledWorkItem:
        if post.scheduled_at is None:
            raise ValueError("Post must have a scheduled time")
        item = ScheduledWorkItem(
            post_id=post.id,
            owner_id=post.owner_id,
            due_at=post.scheduled_at,
            platforms=list(post.platforms),
            priority=post.priority,
        )
        self._store.insert(item)
        logger.info("Post %s scheduled for %s", post.id, post.scheduled_at.isoformat())
        return item

    def reschedule(self, post: Post) -> ScheduledWorkItem:
        """Move the pending item to the post's new time, or queue a new one."""
        if post.scheduled_at is None:
            raise ValueError("Post must have a scheduled time")
        for item in self._store.for_post(post.id):
            if item.status != WorkItemStatus.PENDING:
                continue
            updated = self._store.transition(
                item.id, [WorkItemStatus.PENDING], WorkItemStatus.PENDING,
                due_at=post.scheduled_at,
                platforms=list(post.platforms),
                priority=post.priority,
            )
            # None means the dispatcher claimed it after the read.
            if updated is not None:
                logger.info("Post %s rescheduled for %s", post.id, post.scheduled_at.isoformat())
                return updated
        return self.schedule(post)

    def bulk_schedule(self, posts: Iterable[Post]) -> list[ScheduledWorkItem]:
        """Queue, or move, the items for several scheduled posts."""
        return [self.reschedule(post) for post in posts]

    def cancel(self, post_id: str) -> int:
        """Cancel open items for a post; terminal items are left untouched."""
        return self._cancel(post_id, _OPEN)

    def cancel_pending(self, post_id: str) -> int:
        """Cancel PENDING items only; an item being dispatched is left alone."""
        return self._cancel(post_id, [WorkItemStatus.PENDING])

    def _cancel(self, post_id: str, statuses: Iterable[WorkItemStatus]) -> int:
        cancelled = 0
        for item in self._store.for_post(post_id):
            if self._store.transition(
                item.id, statuses, WorkItemStatus.CANCELLED, finished_at=self._now(),
            ):
                cancelled += 1
        if cancelled:
            logger.info("Scheduled post %s cancelled", post_id)
        return cancelled

    def claim_due(self, limit: int) -> list[ScheduledWorkItem]:
        """Atomically move up to ``limit`` due PENDING items to PROCESSING."""
        now = self._now()
        due = self._store.select(
            lambda i: i.status == WorkItemStatus.PENDING and i.due_at <= now
        )
        due.sort(key=lambda i: (i.due_at, _PRIORITY_RANK[i.priority]))

        claimed: list[ScheduledWorkItem] = []
        for item in due:
            if len(claimed) >= limit:
                break
            updated = self._store.transition(
                item.id, [WorkItemStatus.PENDING], WorkItemStatus.PROCESSING,
                started_at=now, attempts=item.attempts + 1, error="",
            )
            # Lost the race to a cancel; skip.
            if updated is not None:
                claimed.append(updated)
        return claimed

    def complete(
        self, item_id: str, results: dict[Platform, PlatformResult] | None = None,
    ) -> ScheduledWorkItem | None:
        return self._store.transition(
            item_id, [WorkItemStatus.PROCESSING], WorkItemStatus.COMPLETED,
            finished_at=self._now(), results=results or {},
        )

    def fail(
        self,
        item_id: str,
        error: str,
        results: dict[Platform, PlatformResult] | None = None,
    ) -> ScheduledWorkItem | None:
        return self._store.transition(
            item_id, [WorkItemStatus.PROCESSING], WorkItemStatus.FAILED,
            finished_at=self._now(), error=error, results=results or {},
        )

    def requeue(self, item_id: str) -> ScheduledWorkItem | None:
        """Return a PROCESSING or FAILED item to PENDING for another attempt."""
        return self._store.transition(
            item_id, [WorkItemStatus.PROCESSING, WorkItemStatus.FAILED], WorkItemStatus.PENDING,
            started_at=None, finished_at=None,
        )

    def get(self, item_id: str) -> ScheduledWorkItem | None:
        return self._store.get(item_id)

    def items_for_post(self, post_id: str) -> list[ScheduledWorkItem]:
        return sorted(self._store.for_post(post_id), key=lambda i: i.created_at)

    def items_for(
        self, owner_id: str, status: WorkItemStatus | None = None,
    ) -> list[ScheduledWorkItem]:
        items = self._store.select(
            lambda i: i.owner_id == owner_id and (status is None or i.status == status)
        )
        return sorted(items, key=lambda i: i.due_at)

    def processing(self) -> list[ScheduledWorkItem]:
        return self._store.select(lambda i: i.status == WorkItemStatus.PROCESSING)

    def stale(self, older_than: timedelta) -> list[ScheduledWorkItem]:
        """PROCESSING items started longer ago than ``older_than``."""
        cutoff = self._now() - older_than
        return [
            i for i in self.processing()
            if i.started_at is None or i.started_at <= cutoff
        ]

