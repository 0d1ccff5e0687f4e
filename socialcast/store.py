"""JSON file-backed record tables for posts, templates, credentials and work items.

Stands in for the external record store: insert, update-by-id and
select-by-filter, with no cross-record transactions. Each table owns a
lock so concurrent callers never interleave a read-modify-write, and
``compare_and_set`` gives the single-record conditional update the
orchestrator and dispatcher use as their only synchronization primitive.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Iterable

from socialcast.capabilities import Platform
from socialcast.models import (
    CredentialStatus,
    PlatformCredential,
    Post,
    PostStatus,
    PostTemplate,
    ScheduledWorkItem,
    WorkItemStatus,
    credential_from_record,
    post_from_record,
    template_from_record,
    to_record,
    utcnow,
    work_item_from_record,
)

logger = logging.getLogger(__name__)


class RecordNotFound(KeyError):
    """Raised when updating a record id that does not exist."""


class JsonTable:
    """A keyed table of dict records, persisted as one JSON document."""

    def __init__(self, path: Path | None = None, name: str = "records") -> None:
        self._path = path
        self._name = name
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()
        if path and path.exists():
            self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._rows = {row["id"]: row for row in data.get(self._name, [])}
        except (json.JSONDecodeError, TypeError, KeyError):
            logger.warning("Unreadable %s table at %s, starting empty", self._name, self._path)
            self._rows = {}

    def _save(self) -> None:
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {self._name: list(self._rows.values())}
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(str(tmp), str(self._path))

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            if row["id"] in self._rows:
                raise ValueError(f"Duplicate {self._name} id {row['id']}")
            self._rows[row["id"]] = dict(row)
            self._save()
            return dict(row)

    def replace(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            if row["id"] not in self._rows:
                raise RecordNotFound(row["id"])
            self._rows[row["id"]] = dict(row)
            self._save()
            return dict(row)

    def update(self, row_id: str, **fields: Any) -> dict[str, Any]:
        with self._lock:
            if row_id not in self._rows:
                raise RecordNotFound(row_id)
            self._rows[row_id].update(fields)
            self._save()
            return dict(self._rows[row_id])

    def compare_and_set(
        self,
        row_id: str,
        field_name: str,
        expected: Iterable[Any],
        new_value: Any,
        **extra: Any,
    ) -> dict[str, Any] | None:
        """Set ``field_name`` only if its current value is in ``expected``.

        Returns the updated row, or None when the row is missing or the
        current value did not match.
        """
        allowed = set(expected)
        with self._lock:
            row = self._rows.get(row_id)
            if row is None or row.get(field_name) not in allowed:
                return None
            row[field_name] = new_value
            row.update(extra)
            self._save()
            return dict(row)

    def get(self, row_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(row_id)
            return dict(row) if row is not None else None

    def select(self, predicate: Callable[[dict[str, Any]], bool] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows.values() if predicate is None or predicate(r)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class PostStore:
    """Typed access to post records."""

    def __init__(self, path: Path | None = None) -> None:
        self._table = JsonTable(path, name="posts")

    def insert(self, post: Post) -> Post:
        self._table.insert(to_record(post))
        return post

    def save(self, post: Post) -> Post:
        post.updated_at = utcnow()
        self._table.replace(to_record(post))
        return post

    def save_if(self, post: Post, expected: Iterable[PostStatus]) -> Post | None:
        """Write the whole post only if the stored status is still in ``expected``."""
        post.updated_at = utcnow()
        record = to_record(post)
        status = record.pop("status")
        row = self._table.compare_and_set(
            post.id, "status", [s.value for s in expected], status, **record,
        )
        return post if row else None

    def get(self, post_id: str) -> Post | None:
        row = self._table.get(post_id)
        return post_from_record(row) if row else None

    def claim_for_publish(self, post_id: str, allowed: Iterable[PostStatus]) -> Post | None:
        """Atomically move a post into POSTING if its status is in ``allowed``."""
        row = self._table.compare_and_set(
            post_id, "status",
            [s.value for s in allowed],
            PostStatus.POSTING.value,
            updated_at=to_record(utcnow()),
        )
        return post_from_record(row) if row else None

    def for_owner(self, owner_id: str) -> list[Post]:
        return [
            post_from_record(r)
            for r in self._table.select(lambda r: r["owner_id"] == owner_id)
        ]

    @property
    def total_posts(self) -> int:
        return len(self._table)


class TemplateStore:
    """Typed access to post templates."""

    def __init__(self, path: Path | None = None) -> None:
        self._table = JsonTable(path, name="templates")

    def insert(self, template: PostTemplate) -> PostTemplate:
        self._table.insert(to_record(template))
        return template

    def get(self, template_id: str) -> PostTemplate | None:
        row = self._table.get(template_id)
        return template_from_record(row) if row else None

    def for_owner(self, owner_id: str) -> list[PostTemplate]:
        return [
            template_from_record(r)
            for r in self._table.select(lambda r: r["owner_id"] == owner_id)
        ]


class CredentialStore:
    """Typed access to OAuth credential records."""

    def __init__(self, path: Path | None = None) -> None:
        self._table = JsonTable(path, name="credentials")

    def insert(self, credential: PlatformCredential) -> PlatformCredential:
        self._table.insert(to_record(credential))
        return credential

    def save(self, credential: PlatformCredential) -> PlatformCredential:
        credential.updated_at = utcnow()
        self._table.replace(to_record(credential))
        return credential

    def find(
        self,
        owner_id: str,
        platform: Platform,
        statuses: Iterable[CredentialStatus] | None = None,
    ) -> list[PlatformCredential]:
        wanted = {s.value for s in statuses} if statuses else None
        rows = self._table.select(
            lambda r: r["owner_id"] == owner_id
            and r["platform"] == platform.value
            and (wanted is None or r["status"] in wanted)
        )
        creds = [credential_from_record(r) for r in rows]
        creds.sort(key=lambda c: c.updated_at, reverse=True)
        return creds

    def latest(self, owner_id: str, platform: Platform) -> PlatformCredential | None:
        creds = self.find(owner_id, platform)
        return creds[0] if creds else None

    def connected(self, owner_id: str, platform: Platform) -> PlatformCredential | None:
        creds = self.find(owner_id, platform, [CredentialStatus.CONNECTED])
        return creds[0] if creds else None

    def for_owner(self, owner_id: str, status: CredentialStatus | None = None) -> list[PlatformCredential]:
        rows = self._table.select(
            lambda r: r["owner_id"] == owner_id
            and (status is None or r["status"] == status.value)
        )
        return [credential_from_record(r) for r in rows]


class WorkItemStore:
    """Typed access to dispatcher work items."""

    def __init__(self, path: Path | None = None) -> None:
        self._table = JsonTable(path, name="work_items")

    def insert(self, item: ScheduledWorkItem) -> ScheduledWorkItem:
        self._table.insert(to_record(item))
        return item

    def save(self, item: ScheduledWorkItem) -> ScheduledWorkItem:
        item.updated_at = utcnow()
        self._table.replace(to_record(item))
        return item

    def get(self, item_id: str) -> ScheduledWorkItem | None:
        row = self._table.get(item_id)
        return work_item_from_record(row) if row else None

    def transition(
        self,
        item_id: str,
        expected: Iterable[WorkItemStatus],
        new_status: WorkItemStatus,
        **extra: Any,
    ) -> ScheduledWorkItem | None:
        fields = {k: to_record(v) for k, v in extra.items()}
        fields["updated_at"] = to_record(utcnow())
        row = self._table.compare_and_set(
            item_id, "status", [s.value for s in expected], new_status.value, **fields,
        )
        return work_item_from_record(row) if row else None

    def select(
        self,
        predicate: Callable[[ScheduledWorkItem], bool] | None = None,
    ) -> list[ScheduledWorkItem]:
        items = [work_item_from_record(r) for r in self._table.select()]
        if predicate is not None:
            items = [i for i in items if predicate(i)]
        return items

    def for_post(self, post_id: str) -> list[ScheduledWorkItem]:
        return self.select(lambda i: i.post_id == post_id)
