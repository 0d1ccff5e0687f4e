"""Platform driver interface and the HTTP plumbing shared by drivers.

Each network gets one module implementing ``PlatformDriver`` (see
twitter.py and linkedin.py). Drivers follow the live/mock pattern:
with ``live=False`` nothing leaves the process and calls are recorded
locally with mock identifiers. Network failures surface as
``PlatformAPIError``; callers convert them to structured results.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from socialcast.capabilities import Platform
from socialcast.models import AccountInfo, MediaAttachment, OAuthTokens, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class PlatformAPIError(RuntimeError):
    """A call to a platform's API failed."""

    def __init__(
        self,
        platform: Platform,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.platform = platform
        self.status = status
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def transient(self) -> bool:
        """Timeouts, connection errors, 429 and 5xx are worth retrying."""
        if self.status is None:
            return True
        return self.status == 429 or self.status >= 500


@dataclass
class AuthConfig:
    client_id: str
    client_secret: str
    scopes: list[str]
    auth_url: str
    token_url: str
    revoke_url: str = ""
    pkce: bool = False
    extra_params: dict[str, str] = field(default_factory=dict)


@dataclass
class PostReceipt:
    id: str
    url: str | None = None


@dataclass
class DateRange:
    start: datetime
    end: datetime


@runtime_checkable
class PlatformDriver(Protocol):
    """One implementation per network."""

    platform: Platform

    def get_auth_config(self) -> AuthConfig:
        ...

    def exchange_code_for_tokens(
        self, code: str, redirect_uri: str, code_verifier: str | None = None,
    ) -> OAuthTokens:
        ...

    def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        ...

    def revoke_tokens(self, access_token: str) -> None:
        ...

    def get_user_info(self, access_token: str) -> AccountInfo:
        ...

    def post(
        self, access_token: str, content: str, media: list[MediaAttachment],
    ) -> PostReceipt:
        ...

    def get_analytics(
        self,
        access_token: str,
        post_id: str | None = None,
        date_range: DateRange | None = None,
    ) -> dict[str, Any]:
        ...


def tokens_from_response(
    data: dict[str, Any],
    fallback_refresh: str | None = None,
    now: datetime | None = None,
) -> OAuthTokens:
    """Build OAuthTokens from a standard OAuth 2.0 token response."""
    expires_in = data.get("expires_in")
    issued = now or utcnow()
    scope = data.get("scope") or ""
    return OAuthTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or fallback_refresh,
        token_type=data.get("token_type") or "Bearer",
        expires_at=issued + timedelta(seconds=int(expires_in)) if expires_in else None,
        scopes=scope.replace(",", " ").split() if isinstance(scope, str) else list(scope),
    )


class HttpDriver:
    """Shared live/mock bookkeeping and urllib request helper."""

    platform: Platform

    def __init__(self, live: bool = False, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._live = live
        self._timeout = timeout
        self._posted: list[dict[str, Any]] = []

    @property
    def live(self) -> bool:
        return self._live

    @property
    def post_count(self) -> int:
        return len(self._posted)

    def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: dict[str, Any] | None = None,
        form: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send one HTTP request and decode the JSON response."""
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        all_headers = dict(headers or {})
        data: bytes | None = None
        if json_body is not None:
            data = json.dumps(json_body).encode("utf-8")
            all_headers.setdefault("Content-Type", "application/json")
        elif form is not None:
            data = urllib.parse.urlencode(
                {k: v for k, v in form.items() if v is not None}
            ).encode("utf-8")
            all_headers.setdefault("Content-Type", "application/x-www-form-urlencoded")

        req = urllib.request.Request(url, data=data, headers=all_headers, method=method)
        status, raw = self._send(req)
        body = raw.decode("utf-8")
        if not body:
            return {"status": status}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise PlatformAPIError(
                self.platform, f"{self.platform.value} returned malformed JSON: {exc}",
            ) from exc

    def _fetch(self, url: str) -> bytes:
        """Download raw bytes, such as a media file to re-upload."""
        status, raw = self._send(urllib.request.Request(url, method="GET"))
        if not raw:
            raise PlatformAPIError(self.platform, f"Download of {url} was empty", status=status)
        return raw

    def _send(self, req: urllib.request.Request) -> tuple[int, bytes]:
        name = self.platform.value
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                return resp.status, resp.read()
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            retry_after = exc.headers.get("Retry-After") if exc.headers else None
            raise PlatformAPIError(
                self.platform,
                f"{name} API error {exc.code}: {body}",
                status=exc.code,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            ) from exc
        except urllib.error.URLError as exc:
            raise PlatformAPIError(
                self.platform, f"{name} connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise PlatformAPIError(
                self.platform, f"{name} request timed out after {self._timeout:.0f}s",
            ) from exc

    def _record(self, result: dict[str, Any]) -> dict[str, Any]:
        self._posted.append(result)
        return result
