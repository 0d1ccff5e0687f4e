"""Tests for the JSON-backed record stores."""

import json

import pytest
from socialcast.capabilities import Platform
from socialcast.models import (
    CredentialStatus,
    OAuthTokens,
    PlatformCredential,
    Post,
    PostStatus,
    PostTemplate,
    PUBLISHABLE_STATUSES,
    ScheduledWorkItem,
    TemplateVariable,
    VariableType,
    WorkItemStatus,
    utcnow,
)
from socialcast.store import (
    CredentialStore,
    JsonTable,
    PostStore,
    RecordNotFound,
    TemplateStore,
    WorkItemStore,
)


def _post(post_id="p1", owner="u1", status=PostStatus.DRAFT):
    return Post(id=post_id, owner_id=owner, content="hi", platforms=[Platform.TWITTER],
                status=status)


class TestJsonTable:
    def test_insert_and_get(self):
        table = JsonTable()
        table.insert({"id": "a", "n": 1})
        assert table.get("a") == {"id": "a", "n": 1}
        assert table.get("missing") is None

    def test_duplicate_insert_rejected(self):
        table = JsonTable()
        table.insert({"id": "a"})
        with pytest.raises(ValueError):
            table.insert({"id": "a"})

    def test_update_missing_raises(self):
        with pytest.raises(RecordNotFound):
            JsonTable().update("nope", n=1)

    def test_returned_rows_are_copies(self):
        table = JsonTable()
        table.insert({"id": "a", "n": 1})
        row = table.get("a")
        row["n"] = 99
        assert table.get("a")["n"] == 1

    def test_compare_and_set(self):
        table = JsonTable()
        table.insert({"id": "a", "status": "draft"})
        assert table.compare_and_set("a", "status", ["draft"], "posting", note="x")["status"] == "posting"
        assert table.compare_and_set("a", "status", ["draft"], "posting") is None
        assert table.get("a")["note"] == "x"
        assert table.compare_and_set("missing", "status", ["draft"], "posting") is None

    def test_persists_to_file(self, tmp_path):
        path = tmp_path / "data" / "rows.json"
        table = JsonTable(path, name="rows")
        table.insert({"id": "a", "n": 1})
        assert json.loads(path.read_text())["rows"] == [{"id": "a", "n": 1}]
        reloaded = JsonTable(path, name="rows")
        assert reloaded.get("a") == {"id": "a", "n": 1}
        assert not path.with_suffix(".tmp").exists()

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "rows.json"
        path.write_text("{not json")
        assert len(JsonTable(path, name="rows")) == 0

    def test_select(self):
        table = JsonTable()
        for i in range(4):
            table.insert({"id": str(i), "even": i % 2 == 0})
        assert {r["id"] for r in table.select(lambda r: r["even"])} == {"0", "2"}


class TestPostStore:
    def test_claim_for_publish_is_exclusive(self):
        store = PostStore()
        store.insert(_post())
        first = store.claim_for_publish("p1", PUBLISHABLE_STATUSES)
        second = store.claim_for_publish("p1", PUBLISHABLE_STATUSES)
        assert first.status == PostStatus.POSTING
        assert second is None

    def test_claim_refuses_published(self):
        store = PostStore()
        store.insert(_post(status=PostStatus.PUBLISHED))
        assert store.claim_for_publish("p1", PUBLISHABLE_STATUSES) is None

    def test_save_if_checks_stored_status(self):
        store = PostStore()
        store.insert(_post())
        stale = store.get("p1")
        store.claim_for_publish("p1", PUBLISHABLE_STATUSES)
        stale.content = "edited"
        assert store.save_if(stale, [PostStatus.DRAFT]) is None
        assert store.get("p1").content == "hi"
        assert store.get("p1").status == PostStatus.POSTING

    def test_save_if_writes_whole_post(self):
        store = PostStore()
        store.insert(_post())
        post = store.get("p1")
        post.content = "edited"
        post.status = PostStatus.SCHEDULED
        assert store.save_if(post, [PostStatus.DRAFT]) is post
        assert store.get("p1").content == "edited"
        assert store.get("p1").status == PostStatus.SCHEDULED

    def test_for_owner(self, tmp_path):
        store = PostStore(tmp_path / "posts.json")
        store.insert(_post("p1", "u1"))
        store.insert(_post("p2", "u2"))
        reloaded = PostStore(tmp_path / "posts.json")
        assert [p.id for p in reloaded.for_owner("u1")] == ["p1"]
        assert reloaded.total_posts == 2


class TestTemplateStore:
    def test_survives_reload(self, tmp_path):
        path = tmp_path / "templates.json"
        TemplateStore(path).insert(PostTemplate(
            id="t1", owner_id="u1", name="Launch", content="{{product}} is live",
            platforms=[Platform.LINKEDIN], hashtags=["launch"],
            variables=[TemplateVariable("product", "Product", VariableType.TEXT, True),
                       TemplateVariable("when", type=VariableType.DATE, default="2026-01-01")],
        ))
        store = TemplateStore(path)
        template = store.get("t1")
        assert template.platforms == [Platform.LINKEDIN]
        assert template.variables[0].required is True
        assert template.variables[1].type == VariableType.DATE
        assert template.variables[1].default == "2026-01-01"
        assert [t.id for t in store.for_owner("u1")] == ["t1"]
        assert store.for_owner("u2") == []


class TestCredentialStore:
    def test_connected_lookup(self):
        store = CredentialStore()
        store.insert(PlatformCredential(owner_id="u1", platform=Platform.TWITTER,
                                        tokens=OAuthTokens("a"),
                                        status=CredentialStatus.DISCONNECTED))
        assert store.connected("u1", Platform.TWITTER) is None
        store.insert(PlatformCredential(owner_id="u1", platform=Platform.TWITTER,
                                        tokens=OAuthTokens("b")))
        assert store.connected("u1", Platform.TWITTER).tokens.access_token == "b"
        assert len(store.for_owner("u1")) == 2
        assert len(store.for_owner("u1", CredentialStatus.CONNECTED)) == 1


class TestWorkItemStore:
    def test_transition_guards_status(self):
        store = WorkItemStore()
        item = store.insert(ScheduledWorkItem(post_id="p1", owner_id="u1", due_at=utcnow()))
        moved = store.transition(item.id, [WorkItemStatus.PENDING], WorkItemStatus.PROCESSING,
                                 attempts=1)
        assert moved.status == WorkItemStatus.PROCESSING
        assert moved.attempts == 1
        assert store.transition(item.id, [WorkItemStatus.PENDING],
                                WorkItemStatus.PROCESSING) is None

    def test_for_post(self):
        store = WorkItemStore()
        store.insert(ScheduledWorkItem(post_id="p1", owner_id="u1", due_at=utcnow()))
        store.insert(ScheduledWorkItem(post_id="p2", owner_id="u1", due_at=utcnow()))
        assert len(store.for_post("p1")) == 1
