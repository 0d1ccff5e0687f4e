"""Shared fakes: a controllable clock and in-memory platform drivers."""

from __future__ import annotations

import io
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from socialcast.capabilities import Platform, PlatformCapabilityRegistry
from socialcast.credentials import CredentialManager
from socialcast.dispatcher import Dispatcher
from socialcast.driver import AuthConfig, PlatformAPIError, PostReceipt
from socialcast.models import AccountInfo, OAuthTokens
from socialcast.orchestrator import PostOrchestrator
from socialcast.store import CredentialStore, PostStore, WorkItemStore
from socialcast.work_queue import WorkQueue

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeDriver:
    """Records every call; set ``post_error`` or ``refresh_error`` to fail."""

    def __init__(self, platform: Platform) -> None:
        self.platform = platform
        self.posts: list[tuple[str, str, list]] = []
        self.refresh_calls: list[str] = []
        self.revoked: list[str] = []
        self.analytics_calls: list[str | None] = []
        self.post_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.revoke_error: Exception | None = None
        self.refreshed_token = "fresh-token"

    def get_auth_config(self) -> AuthConfig:
        return AuthConfig(
            client_id="client-id",
            client_secret="client-secret",
            scopes=["read", "write"],
            auth_url=f"https://{self.platform.value}.test/oauth/authorize",
            token_url=f"https://{self.platform.value}.test/oauth/token",
            pkce=self.platform == Platform.TWITTER,
        )

    def exchange_code_for_tokens(self, code, redirect_uri, code_verifier=None):
        if code == "bad-code":
            raise PlatformAPIError(self.platform, "invalid_grant", status=400)
        return OAuthTokens(access_token=f"access-{code}", refresh_token="refresh-1",
                           scopes=["read", "write"])

    def refresh_tokens(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        return OAuthTokens(access_token=self.refreshed_token, refresh_token="refresh-2",
                           expires_at=START + timedelta(days=30))

    def revoke_tokens(self, access_token):
        self.revoked.append(access_token)
        if self.revoke_error:
            raise self.revoke_error

    def get_user_info(self, access_token):
        return AccountInfo(id="acct-1", username="tester", display_name="Test User")

    def post(self, access_token, content, media):
        self.posts.append((access_token, content, list(media)))
        if self.post_error:
            raise self.post_error
        n = len(self.posts)
        return PostReceipt(id=f"{self.platform.value}-{n}",
                           url=f"https://{self.platform.value}.test/p/{n}")

    def get_analytics(self, access_token, post_id=None, date_range=None):
        self.analytics_calls.append(post_id)
        return {"likes": 3, "post_id": post_id}


@dataclass
class Harness:
    clock: Clock
    drivers: dict[Platform, FakeDriver]
    posts: PostStore
    credentials: CredentialManager
    queue: WorkQueue
    orchestrator: PostOrchestrator
    dispatcher: Dispatcher

    def connect(
        self,
        owner: str,
        platform: Platform,
        expires_at: datetime | None = None,
        refresh_token: str | None = "refresh-1",
    ):
        tokens = OAuthTokens(access_token=f"token-{platform.value}",
                             refresh_token=refresh_token, expires_at=expires_at)
        return self.credentials.store_credential(
            owner, "default", platform, tokens, AccountInfo(id="acct-1", username="tester"),
        )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def drivers():
    return {p: FakeDriver(p) for p in (Platform.TWITTER, Platform.LINKEDIN)}


@pytest.fixture
def harness(clock, drivers):
    posts = PostStore()
    credentials = CredentialManager(CredentialStore(), drivers, now=clock)
    queue = WorkQueue(WorkItemStore(), now=clock)
    orchestrator = PostOrchestrator(
        posts=posts,
        credentials=credentials,
        work_queue=queue,
        registry=PlatformCapabilityRegistry(),
        now=clock,
    )
    dispatcher = Dispatcher(queue, orchestrator, batch_size=50, workers=2, interval=0.01)
    yield Harness(clock, drivers, posts, credentials, queue, orchestrator, dispatcher)
    dispatcher.stop()


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200) -> None:
        self._body = body
        self.status = status

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeHTTP:
    """Stands in for urllib.request.urlopen; replies from a queue."""

    def __init__(self) -> None:
        self.requests: list[urllib.request.Request] = []
        self.timeouts: list[float | None] = []
        self._replies: list[tuple[int, bytes, dict]] = []

    def reply(self, body: dict | str | bytes | None = None, status: int = 200,
              headers: dict | None = None):
        if isinstance(body, dict):
            raw = json.dumps(body).encode("utf-8")
        elif isinstance(body, bytes):
            raw = body
        else:
            raw = (body or "").encode("utf-8")
        self._replies.append((status, raw, headers or {}))

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        self.timeouts.append(timeout)
        status, raw, headers = self._replies.pop(0)
        if status >= 400:
            raise urllib.error.HTTPError(req.full_url, status, "error", headers, io.BytesIO(raw))
        return FakeResponse(raw, status)

    def form(self, index: int = -1) -> dict[str, str]:
        return dict(urllib.parse.parse_qsl(self.requests[index].data.decode("utf-8")))

    def json(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].data.decode("utf-8"))


@pytest.fixture
def http(monkeypatch):
    fake = FakeHTTP()
    monkeypatch.setattr(urllib.request, "urlopen", fake)
    return fake
